"""Filesystem and process access confined to one sandbox root."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Sequence, Union

from ..errors import SandboxPathError
from ..models import CommandResult
from ..process import run_process


class SandboxContext:
    """Read/write/execute helpers bound to ``work_dir``.

    Relative paths are resolved against the sandbox root; any path that
    resolves outside it (``..`` segments, absolute paths, symlinks) raises
    ``SandboxPathError``.
    """

    def __init__(self, work_dir: Path, env: dict[str, str], default_timeout: Optional[float] = None) -> None:
        self.work_dir = Path(work_dir).resolve()
        self.env = dict(env)
        self.default_timeout = default_timeout

    def resolve(self, path: Union[str, Path]) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.work_dir / candidate
        resolved = candidate.resolve()
        if resolved != self.work_dir and self.work_dir not in resolved.parents:
            raise SandboxPathError(f"Path escapes sandbox {self.work_dir}: {path}")
        return resolved

    def exists(self, path: Union[str, Path]) -> bool:
        return self.resolve(path).exists()

    def read_file(self, path: Union[str, Path], encoding: str = "utf-8") -> str:
        with open(self.resolve(path), "r", encoding=encoding, newline="") as handle:
            return handle.read()

    def read_bytes(self, path: Union[str, Path]) -> bytes:
        return self.resolve(path).read_bytes()

    def write_file(self, path: Union[str, Path], content: Union[str, bytes], encoding: str = "utf-8") -> Path:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            with open(target, "w", encoding=encoding, newline="") as handle:
                handle.write(content)
        return target

    def list_files(self) -> list[str]:
        """All files under the root as sorted POSIX paths, ignoring ``.git``."""
        found: list[str] = []
        for current, dirnames, filenames in os.walk(self.work_dir):
            dirnames[:] = [d for d in dirnames if d != ".git"]
            base = Path(current).relative_to(self.work_dir)
            for name in filenames:
                if name == ".git":
                    continue
                found.append((base / name).as_posix())
        return sorted(found)

    async def execute_command(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: Optional[float] = None,
        env: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        """Run ``command args...`` with the sandbox root as working directory.

        On timeout the process group is killed and the result carries exit
        code 124 with ``timed_out`` set.
        """
        merged = dict(self.env)
        if env:
            merged.update(env)
        return await run_process(
            [command, *args],
            cwd=self.work_dir,
            env=merged,
            timeout=timeout if timeout is not None else self.default_timeout,
        )
