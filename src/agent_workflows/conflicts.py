"""Pre-flight conflict detection between agents scheduled together."""

from __future__ import annotations

import os
import posixpath
from pathlib import Path
from typing import Iterable, Sequence, Union

from loguru import logger

from .models import Agent, ConflictReport
from .sandbox.context import SandboxContext

SAME_WORKING_DIR = "Same working directory"
SAME_ROLE = "Same agent role may cause conflicts"
SHARED_SANDBOX_DIR = "Multiple agents using same working directory"


def _normalize_file(path: str) -> str:
    return posixpath.normpath(str(path).replace("\\", "/"))


def _normalize_dir(path: Union[str, Path]) -> str:
    return os.path.normpath(str(path))


class ConflictDetector:
    """Compares agents' declared resources for scheduling safety.

    Only file conflicts block concurrent scheduling; a shared working
    directory or a shared role is reported as a warning signal.
    """

    def detect_file_conflicts(self, agent_a: Agent, agent_b: Agent) -> ConflictReport:
        report = ConflictReport()
        files_a = agent_a.context.files or []
        files_b = {_normalize_file(f) for f in agent_b.context.files or []}
        seen: set[str] = set()
        for raw in files_a:
            path = _normalize_file(raw)
            if path in files_b and path not in seen:
                report.file_conflicts.append(path)
                seen.add(path)

        if agent_a.role == agent_b.role:
            report.env_conflicts.append(SAME_ROLE)
        if _normalize_dir(agent_a.context.working_dir) == _normalize_dir(agent_b.context.working_dir):
            report.resource_conflicts.append(SAME_WORKING_DIR)
        return report

    def detect_env_conflicts(self, contexts: Iterable[Union[SandboxContext, str, Path]]) -> list[str]:
        dirs = [
            _normalize_dir(c.work_dir if isinstance(c, SandboxContext) else c)
            for c in contexts
        ]
        if len(dirs) != len(set(dirs)):
            return [SHARED_SANDBOX_DIR]
        return []

    def pairwise(self, agents: Sequence[Agent]) -> list[tuple[int, int, ConflictReport]]:
        """Reports for every pair ``(i, j)`` with ``i < j`` that has any conflict."""
        found = []
        for i in range(len(agents)):
            for j in range(i + 1, len(agents)):
                report = self.detect_file_conflicts(agents[i], agents[j])
                if report.has_conflicts:
                    found.append((i, j, report))
        return found

    def plan_batches(self, agents: Sequence[Agent], allow_conflicts: bool = False) -> list[list[Agent]]:
        """Partition *agents* so no batch holds a pair with file conflicts.

        Greedy first-fit in input order: each agent joins the first batch it
        does not conflict with, otherwise it opens a new batch. Conflicting
        agents are serialized, never dropped.
        """
        if not agents:
            return []
        if allow_conflicts:
            return [list(agents)]

        batches: list[list[Agent]] = []
        for agent in agents:
            for batch in batches:
                if all(not self.detect_file_conflicts(other, agent).blocks_concurrency for other in batch):
                    batch.append(agent)
                    break
            else:
                batches.append([agent])
        if len(batches) > 1:
            logger.info("Serialized {} agents into {} batches due to file conflicts", len(agents), len(batches))
        return batches
