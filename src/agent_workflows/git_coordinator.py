"""Per-repository serialization of git operations.

Git is not designed for concurrent metadata updates on one repository (two
``git worktree add`` calls racing on ``.git/worktrees`` can corrupt it). The
coordinator hands out one lock per base repository so sandboxes provisioned
concurrently against the same repository take turns, while different
repositories proceed independently.
"""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Callable, Optional, Sequence, TypeVar

from loguru import logger

T = TypeVar("T")


class GitCoordinator:
    """Table of re-entrant locks keyed by resolved repository path."""

    def __init__(self) -> None:
        self._table_lock = threading.Lock()
        self._locks: dict[Path, threading.RLock] = {}

    def lock_for(self, repo: Path) -> threading.RLock:
        key = Path(repo).resolve()
        with self._table_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def execute_git_operation(
        self,
        repo: Path,
        operation: Callable[[], T],
        operation_name: str = "git operation",
    ) -> T:
        """Execute *operation* while holding the lock for *repo*.

        Raises:
            Any exception raised by the operation.
        """
        thread_id = threading.current_thread().name
        logger.debug("Thread {} waiting for git lock on {} ({})", thread_id, repo, operation_name)
        with self.lock_for(repo):
            try:
                return operation()
            except Exception as e:
                logger.error("Git operation failed on {} ({}): {}", repo, operation_name, e)
                raise
            finally:
                logger.debug("Thread {} releasing git lock on {} ({})", thread_id, repo, operation_name)


def run_git(args: Sequence[str], cwd: Path, timeout: float = 60) -> subprocess.CompletedProcess:
    """Run ``git <args>`` in *cwd*, raising ``CalledProcessError`` on failure."""
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def find_repo_root(path: Path) -> Optional[Path]:
    """Return the top-level directory of the git work tree containing *path*."""
    try:
        result = run_git(["rev-parse", "--show-toplevel"], cwd=path, timeout=15)
    except (OSError, subprocess.SubprocessError):
        return None
    top = result.stdout.strip()
    return Path(top).resolve() if top else None


# Global instance
_git_coordinator = GitCoordinator()


def get_git_coordinator() -> GitCoordinator:
    """Get the process-wide coordinator used when none is injected."""
    return _git_coordinator
