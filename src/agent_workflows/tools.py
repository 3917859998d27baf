"""Tool executor interface and the default shell-backed implementation."""

from __future__ import annotations

import asyncio
import inspect
import os
import time
from typing import Any, Awaitable, Protocol, Union, runtime_checkable

from loguru import logger

from .models import ExecutionContext, ToolConfig, ToolResult
from .process import NOT_FOUND_EXIT_CODE, run_process


@runtime_checkable
class ToolExecutor(Protocol):
    """Performs one unit of work for a workflow step.

    ``execute`` may be a coroutine function or a plain function; plain
    functions are run in a worker thread.
    """

    def execute(
        self, config: ToolConfig, context: ExecutionContext
    ) -> Union[ToolResult, Awaitable[ToolResult]]:
        ...


async def invoke_tool(executor: Any, config: ToolConfig, context: ExecutionContext) -> ToolResult:
    """Call ``executor.execute`` whether it is sync or async."""
    if inspect.iscoroutinefunction(executor.execute):
        result = await executor.execute(config, context)
    else:
        result = await asyncio.to_thread(executor.execute, config, context)
        if inspect.isawaitable(result):
            result = await result
    if not isinstance(result, ToolResult):
        raise TypeError(f"Tool executor returned {type(result).__name__}, expected ToolResult")
    return result


def build_tool_config(tool: str, args: dict[str, Any], default_timeout: float | None = None) -> ToolConfig:
    """Map resolved step arguments onto a ``ToolConfig``.

    ``command`` defaults to the tool name; ``args``, ``working_dir``, ``env``
    and ``timeout`` are taken from the arguments when present.
    """
    raw_args = args.get("args")
    if raw_args is not None and not isinstance(raw_args, list):
        raw_args = [raw_args]
    env = args.get("env")
    timeout = args.get("timeout", default_timeout)
    return ToolConfig(
        name=tool,
        command=str(args.get("command") or tool),
        args=[str(a) for a in raw_args] if raw_args is not None else None,
        working_dir=str(args["working_dir"]) if args.get("working_dir") else None,
        env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else None,
        timeout=float(timeout) if timeout is not None else None,
        requires_approval=bool(args.get("requires_approval", False)),
        arguments=dict(args),
    )


class ShellToolExecutor:
    """Run ``ToolConfig.command`` as a local subprocess.

    A command with ``args`` is executed directly; a bare command string goes
    through the shell.
    """

    def __init__(self, working_dir: str | None = None) -> None:
        self.working_dir = working_dir

    def _describe(self, config: ToolConfig) -> str:
        parts = [config.command, *(config.args or [])]
        return " ".join(parts)

    async def execute(self, config: ToolConfig, context: ExecutionContext) -> ToolResult:
        start = time.monotonic()
        cwd = config.working_dir or context.working_dir or self.working_dir
        if context.dry_run:
            return ToolResult(
                success=True,
                output=f"[dry-run] {config.name}: {self._describe(config)} (cwd={cwd or '.'})",
                duration_seconds=time.monotonic() - start,
            )

        env = dict(os.environ)
        if config.env:
            env.update(config.env)
        command: Union[str, list[str]] = (
            [config.command, *config.args] if config.args else config.command
        )
        logger.debug("Running tool {}: {}", config.name, self._describe(config))
        try:
            result = await run_process(command, cwd=cwd, env=env, timeout=config.timeout)
        except OSError as exc:
            return ToolResult(
                success=False,
                error=f"{exc.__class__.__name__}: {exc}",
                exit_code=NOT_FOUND_EXIT_CODE,
                duration_seconds=time.monotonic() - start,
            )

        success = result.exit_code == 0 and not result.timed_out
        error = None
        if not success:
            error = result.stderr.strip() or f"Command exited with code {result.exit_code}"
        return ToolResult(
            success=success,
            output=result.stdout,
            error=error,
            exit_code=result.exit_code,
            duration_seconds=time.monotonic() - start,
        )
