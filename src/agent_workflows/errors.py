"""Exception types raised by the orchestration core."""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for orchestration errors."""


class WorkflowNotFoundError(OrchestrationError, KeyError):
    def __init__(self, workflow_id: str, available: list[str] | None = None) -> None:
        self.workflow_id = workflow_id
        self.available = sorted(available or [])
        super().__init__(workflow_id)

    def __str__(self) -> str:
        msg = f"Workflow not found: {self.workflow_id}"
        if self.available:
            msg += f" (available: {', '.join(self.available)})"
        return msg


class ExecutionNotFoundError(OrchestrationError, KeyError):
    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(execution_id)

    def __str__(self) -> str:
        return f"Execution not found: {self.execution_id}"


class WorkflowValidationError(OrchestrationError, ValueError):
    """A workflow document or definition is malformed."""


class SandboxError(OrchestrationError):
    """A sandbox could not be provisioned or used."""


class SandboxPathError(SandboxError):
    """A path resolved outside of the sandbox root."""
