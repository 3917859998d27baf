"""Agent sandboxes: isolated working directories and environments."""

from .agent_sandbox import ENV_AGENT_ID, ENV_AGENT_MODE, ENV_SANDBOX, TASK_MANIFEST, AgentSandbox
from .context import SandboxContext
from .strategies import (
    ConstrainedIsolation,
    GitWorktreeIsolation,
    IsolationStrategy,
    TempDirectoryIsolation,
    copy_project_tree,
    should_skip,
)

__all__ = [
    "AgentSandbox",
    "ConstrainedIsolation",
    "ENV_AGENT_ID",
    "ENV_AGENT_MODE",
    "ENV_SANDBOX",
    "GitWorktreeIsolation",
    "IsolationStrategy",
    "SandboxContext",
    "TASK_MANIFEST",
    "TempDirectoryIsolation",
    "copy_project_tree",
    "should_skip",
]
