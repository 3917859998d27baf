"""Per-agent sandbox lifecycle: create, run the agent task, clean up.

An ``AgentSandbox`` exclusively owns the root it creates. Use ``session()`` so
cleanup runs on every exit path, including task failures, timeouts and
cancellation::

    sandbox = AgentSandbox("git-worktree", project_dir)
    async with sandbox.session("agent-7") as ctx:
        result = await sandbox.execute_in_sandbox(agent)
"""

from __future__ import annotations

import asyncio
import json
import os
import shlex
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from loguru import logger

from ..errors import SandboxError
from ..git_coordinator import GitCoordinator
from ..models import Agent, SandboxExecutionResult
from ..process import TIMEOUT_EXIT_CODE
from ..utils import _now_iso
from .context import SandboxContext
from .strategies import (
    GitWorktreeIsolation,
    IsolationStrategy,
    ProvisionedSandbox,
    TempDirectoryIsolation,
    isolation_for,
)

TASK_MANIFEST = ".agent-task.json"

ENV_SANDBOX = "AGENT_WORKFLOWS_SANDBOX"
ENV_AGENT_MODE = "AGENT_WORKFLOWS_AGENT_MODE"
ENV_AGENT_ID = "AGENT_WORKFLOWS_AGENT_ID"

# Runs when an agent has no command: reports the task from the manifest.
_DEFAULT_RUNNER = """\
import json, sys, datetime
with open(sys.argv[1], encoding="utf-8") as fh:
    task = json.load(fh)
print("Agent %s executing task: %s" % (task["role"], task["task"]))
print(json.dumps({
    "role": task["role"],
    "task": task["task"],
    "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    "output": "Task completed successfully",
}, indent=2))
"""


def _snapshot(root: Path) -> dict[str, tuple[int, int]]:
    state: dict[str, tuple[int, int]] = {}
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d != ".git"]
        base = Path(current)
        for name in filenames:
            path = base / name
            try:
                st = path.stat()
            except OSError:
                continue
            state[path.relative_to(root).as_posix()] = (st.st_mtime_ns, st.st_size)
    return state


def _changed_files(before: dict[str, tuple[int, int]], after: dict[str, tuple[int, int]]) -> list[str]:
    return sorted(
        rel for rel, stamp in after.items()
        if rel != TASK_MANIFEST and before.get(rel) != stamp
    )


class AgentSandbox:
    """Isolated working directory and environment for one agent."""

    def __init__(
        self,
        strategy: Union[IsolationStrategy, str],
        base_dir: Union[str, Path],
        *,
        sandbox_root: Union[str, Path, None] = None,
        git_coordinator: Optional[GitCoordinator] = None,
        default_timeout: float = 120.0,
    ) -> None:
        self.strategy = IsolationStrategy.parse(strategy)
        self.base_dir = Path(base_dir)
        self.sandbox_root = Path(sandbox_root) if sandbox_root else None
        self.default_timeout = default_timeout
        self._isolation = isolation_for(
            self.strategy,
            self.base_dir,
            sandbox_root=self.sandbox_root,
            coordinator=git_coordinator,
        )
        self._provisioned: Optional[ProvisionedSandbox] = None
        self._context: Optional[SandboxContext] = None
        self.agent_id: Optional[str] = None
        self.cleanup_errors: list[str] = []

    # -- state ---------------------------------------------------------------

    @property
    def path(self) -> Optional[Path]:
        return self._provisioned.root if self._provisioned else None

    @property
    def effective_strategy(self) -> Optional[IsolationStrategy]:
        """The strategy actually used, which differs after a worktree fallback."""
        return self._provisioned.strategy if self._provisioned else None

    @property
    def context(self) -> SandboxContext:
        if self._context is None:
            raise SandboxError("Sandbox has not been created")
        return self._context

    # -- lifecycle -----------------------------------------------------------

    async def create(self, agent_id: str) -> Path:
        """Provision and seed the sandbox root for *agent_id*.

        A git worktree that cannot be created falls back to a temp directory.

        Raises:
            SandboxError: If the sandbox already exists or no strategy could
                provision a root.
        """
        if self._provisioned is not None:
            raise SandboxError(f"Sandbox already created at {self._provisioned.root}")
        try:
            provisioned = await self._provision(agent_id)
        except Exception as exc:
            if not isinstance(self._isolation, GitWorktreeIsolation):
                raise SandboxError(f"Failed to create sandbox for {agent_id}: {exc}") from exc
            logger.warning("Git worktree creation failed, falling back to temp directory: {}", exc)
            self._isolation = TempDirectoryIsolation(self.base_dir, self.sandbox_root)
            try:
                provisioned = await self._provision(agent_id)
            except Exception as fallback_exc:
                raise SandboxError(f"Failed to create sandbox for {agent_id}: {fallback_exc}") from fallback_exc

        self._provisioned = provisioned
        self.agent_id = agent_id
        env = self._isolation.base_env()
        env.update({
            "PWD": str(provisioned.root),
            ENV_SANDBOX: "true",
            ENV_AGENT_MODE: "true",
            ENV_AGENT_ID: agent_id,
        })
        self._context = SandboxContext(provisioned.root, env, default_timeout=self.default_timeout)
        logger.info("Created {} sandbox for {} at {}", provisioned.strategy.value, agent_id, provisioned.root)
        return provisioned.root

    async def _provision(self, agent_id: str) -> ProvisionedSandbox:
        """Run the blocking provision in a worker thread.

        If the caller is cancelled mid-provision, the thread still finishes;
        wait for it and tear down whatever it created before re-raising.
        """
        isolation = self._isolation
        task = asyncio.ensure_future(asyncio.to_thread(isolation.provision, agent_id))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            try:
                orphan = await task
            except Exception as exc:
                logger.debug("Provision for {} failed after cancellation: {}", agent_id, exc)
                raise asyncio.CancelledError() from None
            try:
                await asyncio.to_thread(isolation.teardown, orphan)
                logger.info("Removed sandbox {} after cancelled create", orphan.root)
            except Exception as exc:
                message = f"Failed to clean up sandbox {orphan.root}: {exc}"
                self.cleanup_errors.append(message)
                logger.warning(message)
            raise

    async def cleanup(self) -> None:
        """Tear the sandbox down. Idempotent; failures are logged, never raised."""
        provisioned = self._provisioned
        if provisioned is None:
            return
        self._provisioned = None
        self._context = None
        try:
            await asyncio.to_thread(self._isolation.teardown, provisioned)
            logger.debug("Removed sandbox {}", provisioned.root)
        except Exception as exc:
            message = f"Failed to clean up sandbox {provisioned.root}: {exc}"
            self.cleanup_errors.append(message)
            logger.warning(message)

    @asynccontextmanager
    async def session(self, agent_id: str) -> AsyncIterator[SandboxContext]:
        await self.create(agent_id)
        try:
            yield self.context
        finally:
            await self.cleanup()

    # -- execution -----------------------------------------------------------

    def _task_argv(self, agent: Agent, manifest: Path) -> list[str]:
        if agent.command is None:
            return [sys.executable, "-c", _DEFAULT_RUNNER, str(manifest)]
        parts = shlex.split(agent.command) if isinstance(agent.command, str) else list(agent.command)
        if not parts:
            raise ValueError(f"Agent {agent.id} has an empty command")
        replacements = {
            "{task_file}": str(manifest),
            "{task}": agent.task,
            "{role}": agent.role,
            "{sandbox}": str(self.context.work_dir),
        }
        argv = []
        for part in parts:
            for placeholder, value in replacements.items():
                part = str(part).replace(placeholder, value)
            argv.append(part)
        return argv

    async def execute_in_sandbox(self, agent: Agent) -> SandboxExecutionResult:
        """Run the agent's task inside the sandbox and collect what it left behind.

        Internal faults are returned as a failed result (empty output, exit
        code 1) rather than raised. A timeout kills the task's process group
        and yields exit code 124.
        """
        start = time.monotonic()
        agent_id = agent.id or self.agent_id or "agent"
        timeout = agent.timeout if agent.timeout is not None else self.default_timeout
        try:
            context = self.context
            manifest = context.write_file(
                TASK_MANIFEST,
                json.dumps(
                    {
                        "agent_id": agent_id,
                        "role": agent.role,
                        "task": agent.task,
                        "working_dir": agent.context.working_dir,
                        "files": agent.context.files or [],
                        "framework": agent.context.framework,
                        "language": agent.context.language,
                        "created_at": _now_iso(),
                    },
                    indent=2,
                ),
            )
            argv = self._task_argv(agent, manifest)
            before = await asyncio.to_thread(_snapshot, context.work_dir)
            logger.debug("Agent {} running {} (timeout {}s)", agent_id, argv[0], timeout)
            result = await context.execute_command(argv[0], argv[1:], timeout=timeout, env=agent.env)
            after = await asyncio.to_thread(_snapshot, context.work_dir)
        except Exception as exc:
            logger.warning("Agent {} failed inside sandbox: {}", agent_id, exc)
            return SandboxExecutionResult(
                output="",
                artifacts=[],
                exit_code=1,
                error=f"{exc.__class__.__name__}: {exc}",
                duration_seconds=time.monotonic() - start,
            )

        artifacts = _changed_files(before, after)
        duration = time.monotonic() - start
        if result.timed_out:
            logger.warning("Agent {} timed out after {}s", agent_id, timeout)
            return SandboxExecutionResult(
                output=result.stdout,
                artifacts=artifacts,
                exit_code=TIMEOUT_EXIT_CODE,
                error=f"Agent {agent_id} timed out after {timeout}s",
                timed_out=True,
                duration_seconds=duration,
            )

        error = None
        if result.exit_code != 0:
            error = result.stderr.strip() or f"Agent task exited with code {result.exit_code}"
        return SandboxExecutionResult(
            output=result.stdout,
            artifacts=artifacts,
            exit_code=result.exit_code,
            error=error,
            duration_seconds=duration,
        )
