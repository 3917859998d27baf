"""Subprocess execution bound to a cancellable scope.

Every child is started in its own session so that a timeout or a cancelled
caller can kill the whole process tree, not just the direct child.
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from typing import Optional, Sequence, Union

from loguru import logger

from .models import CommandResult

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        if os.name == "nt":
            proc.kill()
        else:
            os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    _kill_process_group(proc)
    try:
        await asyncio.wait_for(proc.wait(), timeout=5)
    except asyncio.TimeoutError:
        logger.warning("Process {} did not exit after SIGKILL", proc.pid)


async def _drain(stream: asyncio.StreamReader, chunks: list[bytes]) -> None:
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        chunks.append(chunk)


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


async def run_process(
    command: Union[str, Sequence[str]],
    *,
    cwd: Union[str, Path, None] = None,
    env: Optional[dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run *command* and capture its output.

    A string runs through the shell; a sequence is executed directly. On
    timeout the process group is killed and a result with exit code 124 is
    returned, carrying whatever output was read before the kill. On
    cancellation the process group is killed and the cancellation propagates.

    Raises:
        OSError: If the executable cannot be started.
    """
    kwargs = {
        "cwd": str(cwd) if cwd is not None else None,
        "env": env,
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
        "stdin": asyncio.subprocess.DEVNULL,
    }
    if os.name != "nt":
        kwargs["start_new_session"] = True

    if isinstance(command, str):
        proc = await asyncio.create_subprocess_shell(command, **kwargs)
    else:
        argv = [str(part) for part in command]
        proc = await asyncio.create_subprocess_exec(*argv, **kwargs)
    logger.debug("Spawned pid {} for {}", proc.pid, command)

    out_chunks: list[bytes] = []
    err_chunks: list[bytes] = []

    async def collect() -> None:
        await asyncio.gather(_drain(proc.stdout, out_chunks), _drain(proc.stderr, err_chunks))
        await proc.wait()

    try:
        await asyncio.wait_for(collect(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        logger.warning("Command timed out after {}s (pid {}): {}", timeout, proc.pid, command)
        notice = f"[runner] Command timed out after {timeout}s"
        partial_err = _decode(err_chunks)
        return CommandResult(
            stdout=_decode(out_chunks),
            stderr=f"{partial_err.rstrip()}\n{notice}" if partial_err.strip() else notice,
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
        )
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    exit_code = proc.returncode if proc.returncode is not None else -1
    return CommandResult(
        stdout=_decode(out_chunks),
        stderr=_decode(err_chunks),
        exit_code=exit_code,
    )
