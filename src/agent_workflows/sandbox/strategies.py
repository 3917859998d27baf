"""Isolation strategies that realize an agent sandbox on disk.

Each ``IsolationStrategy`` maps to exactly one isolation class:

- ``temp-directory``: copy the project tree into a fresh temporary directory.
- ``git-worktree``: add a git worktree on a per-agent branch.
- ``sandbox``: a temp-directory copy whose subprocess environment is reduced
  to a minimal allow-list.
"""

from __future__ import annotations

import fnmatch
import os
import re
import shutil
import subprocess
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from ..errors import SandboxError
from ..git_coordinator import GitCoordinator, find_repo_root, get_git_coordinator, run_git

SKIP_NAMES = frozenset({"node_modules", ".git", ".vibe", "dist", "build", "coverage", ".DS_Store"})
SKIP_PATTERNS = ("*.log",)

# Variables a constrained sandbox passes through from the parent environment.
CONSTRAINED_ENV_ALLOW = ("PATH", "LANG", "LC_ALL", "TERM", "TZ", "SYSTEMROOT")


class IsolationStrategy(str, Enum):
    TEMP_DIRECTORY = "temp-directory"
    GIT_WORKTREE = "git-worktree"
    SANDBOX = "sandbox"

    @classmethod
    def parse(cls, value: "IsolationStrategy | str") -> "IsolationStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown isolation strategy '{value}' (expected one of: {choices})") from None


def should_skip(name: str) -> bool:
    if name in SKIP_NAMES:
        return True
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in SKIP_PATTERNS)


def _safe_fragment(agent_id: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", agent_id).strip("-.")
    return cleaned[:40] or "agent"


def copy_project_tree(source: Path, dest: Path, exclude: Iterable[Path] = ()) -> int:
    """Copy *source* into *dest*, skipping ignored names at every depth.

    Directories in *exclude* (and *dest* itself) are never descended into.
    Unreadable entries are logged and skipped. Returns the number of files copied.
    """
    source = source.resolve()
    pruned = {dest.resolve(), *(Path(p).resolve() for p in exclude)}
    copied = 0
    for current, dirnames, filenames in os.walk(source):
        current_path = Path(current)
        dirnames[:] = [
            d for d in dirnames
            if not should_skip(d) and (current_path / d).resolve() not in pruned
        ]
        rel = current_path.relative_to(source)
        target_dir = dest / rel
        target_dir.mkdir(parents=True, exist_ok=True)
        for name in filenames:
            if should_skip(name):
                continue
            try:
                shutil.copy2(current_path / name, target_dir / name, follow_symlinks=False)
                copied += 1
            except OSError as exc:
                logger.warning("Failed to copy {} into sandbox: {}", current_path / name, exc)
    return copied


@dataclass
class ProvisionedSandbox:
    """What an isolation left on disk for one agent."""

    root: Path
    strategy: IsolationStrategy
    holder: Optional[Path] = None      # directory to delete on teardown
    repo: Optional[Path] = None
    branch: Optional[str] = None
    worktree: Optional[Path] = None


# ---------------------------------------------------------------------------
# Isolation implementations
# ---------------------------------------------------------------------------

class Isolation(ABC):
    """Provision and tear down a sandbox root for one agent."""

    strategy: IsolationStrategy

    def __init__(self, base_dir: Path, sandbox_root: Optional[Path] = None) -> None:
        self.base_dir = Path(base_dir)
        self.sandbox_root = Path(sandbox_root) if sandbox_root else None

    def _make_holder(self, prefix: str) -> Path:
        if self.sandbox_root is not None:
            self.sandbox_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=prefix, dir=self.sandbox_root))

    def base_env(self) -> dict[str, str]:
        return dict(os.environ)

    @abstractmethod
    def provision(self, agent_id: str) -> ProvisionedSandbox:
        """Create and seed the sandbox root. Blocking; run it off the event loop."""

    def teardown(self, sandbox: ProvisionedSandbox) -> None:
        target = sandbox.holder or sandbox.root
        if target.exists():
            shutil.rmtree(target)


class TempDirectoryIsolation(Isolation):
    strategy = IsolationStrategy.TEMP_DIRECTORY

    def provision(self, agent_id: str) -> ProvisionedSandbox:
        if not self.base_dir.is_dir():
            raise SandboxError(f"Project directory does not exist: {self.base_dir}")
        root = self._make_holder(f"agent-{_safe_fragment(agent_id)}-")
        try:
            exclude = [self.sandbox_root] if self.sandbox_root is not None else []
            count = copy_project_tree(self.base_dir, root, exclude=exclude)
        except OSError as exc:
            shutil.rmtree(root, ignore_errors=True)
            raise SandboxError(f"Failed to seed sandbox from {self.base_dir}: {exc}") from exc
        logger.debug("Seeded {} with {} files from {}", root, count, self.base_dir)
        return ProvisionedSandbox(root=root, strategy=self.strategy, holder=root)


class ConstrainedIsolation(TempDirectoryIsolation):
    """Temp-directory copy with a minimal subprocess environment."""

    strategy = IsolationStrategy.SANDBOX

    def base_env(self) -> dict[str, str]:
        return {k: os.environ[k] for k in CONSTRAINED_ENV_ALLOW if k in os.environ}

    def provision(self, agent_id: str) -> ProvisionedSandbox:
        provisioned = super().provision(agent_id)
        provisioned.strategy = self.strategy
        return provisioned


class GitWorktreeIsolation(Isolation):
    """Check the base repository out into a worktree on a per-agent branch."""

    strategy = IsolationStrategy.GIT_WORKTREE

    def __init__(
        self,
        base_dir: Path,
        sandbox_root: Optional[Path] = None,
        coordinator: Optional[GitCoordinator] = None,
    ) -> None:
        super().__init__(base_dir, sandbox_root)
        self.coordinator = coordinator or get_git_coordinator()

    def provision(self, agent_id: str) -> ProvisionedSandbox:
        repo = find_repo_root(self.base_dir)
        if repo is None:
            raise SandboxError(f"{self.base_dir} is not inside a git repository")
        fragment = _safe_fragment(agent_id)
        branch = f"agent-{fragment}-{uuid.uuid4().hex[:8]}"
        holder = self._make_holder(f"agent-worktree-{fragment}-")
        worktree = holder / "repo"

        def _add() -> None:
            run_git(["worktree", "add", "-b", branch, str(worktree), "HEAD"], cwd=repo)

        try:
            self.coordinator.execute_git_operation(repo, _add, operation_name=f"worktree add {branch}")
        except (OSError, subprocess.SubprocessError) as exc:
            shutil.rmtree(holder, ignore_errors=True)
            detail = getattr(exc, "stderr", None) or str(exc)
            raise SandboxError(f"git worktree add failed: {str(detail).strip()}") from exc

        rel = self.base_dir.resolve().relative_to(repo)
        root = worktree / rel
        root.mkdir(parents=True, exist_ok=True)
        return ProvisionedSandbox(
            root=root,
            strategy=self.strategy,
            holder=holder,
            repo=repo,
            branch=branch,
            worktree=worktree,
        )

    def teardown(self, sandbox: ProvisionedSandbox) -> None:
        repo = sandbox.repo
        errors: list[str] = []
        if repo is not None and sandbox.worktree is not None:
            def _remove() -> None:
                try:
                    run_git(["worktree", "remove", "--force", str(sandbox.worktree)], cwd=repo)
                except subprocess.CalledProcessError as exc:
                    errors.append(f"worktree remove: {(exc.stderr or '').strip() or exc}")
                    run_git(["worktree", "prune"], cwd=repo)
                if sandbox.branch:
                    try:
                        run_git(["branch", "-D", sandbox.branch], cwd=repo)
                    except subprocess.CalledProcessError as exc:
                        errors.append(f"branch -D {sandbox.branch}: {(exc.stderr or '').strip() or exc}")

            self.coordinator.execute_git_operation(repo, _remove, operation_name="worktree remove")
        super().teardown(sandbox)
        if errors:
            raise SandboxError("; ".join(errors))


ISOLATION_CLASSES: dict[IsolationStrategy, type[Isolation]] = {
    IsolationStrategy.TEMP_DIRECTORY: TempDirectoryIsolation,
    IsolationStrategy.GIT_WORKTREE: GitWorktreeIsolation,
    IsolationStrategy.SANDBOX: ConstrainedIsolation,
}


def isolation_for(
    strategy: IsolationStrategy,
    base_dir: Path,
    *,
    sandbox_root: Optional[Path] = None,
    coordinator: Optional[GitCoordinator] = None,
) -> Isolation:
    cls = ISOLATION_CLASSES[strategy]
    if cls is GitWorktreeIsolation:
        return GitWorktreeIsolation(base_dir, sandbox_root, coordinator)
    return cls(base_dir, sandbox_root)
