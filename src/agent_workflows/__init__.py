"""Provide the public `agent_workflows` package exports."""

from __future__ import annotations

from .config import OrchestratorConfig, load_config
from .conflicts import ConflictDetector
from .errors import (
    ExecutionNotFoundError,
    OrchestrationError,
    SandboxError,
    SandboxPathError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .models import (
    Agent,
    AgentResult,
    ConflictReport,
    ExecutionContext,
    ProjectContext,
    SandboxExecutionResult,
    ToolConfig,
    ToolResult,
    Workflow,
    WorkflowExecution,
    WorkflowMetadata,
    WorkflowParameter,
    WorkflowStep,
)
from .orchestrator import Orchestrator
from .sandbox import AgentSandbox, IsolationStrategy, SandboxContext
from .tools import ShellToolExecutor
from .workflows import WorkflowExecutor, WorkflowRegistry

__all__ = [
    "Agent",
    "AgentResult",
    "AgentSandbox",
    "ConflictDetector",
    "ConflictReport",
    "ExecutionContext",
    "ExecutionNotFoundError",
    "IsolationStrategy",
    "OrchestrationError",
    "Orchestrator",
    "OrchestratorConfig",
    "ProjectContext",
    "SandboxContext",
    "SandboxError",
    "SandboxExecutionResult",
    "SandboxPathError",
    "ShellToolExecutor",
    "ToolConfig",
    "ToolResult",
    "Workflow",
    "WorkflowExecution",
    "WorkflowExecutor",
    "WorkflowMetadata",
    "WorkflowNotFoundError",
    "WorkflowParameter",
    "WorkflowRegistry",
    "WorkflowStep",
    "WorkflowValidationError",
    "load_config",
]
