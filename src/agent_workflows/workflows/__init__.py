"""Workflow definitions, registry and execution engine."""

from .engine import WorkflowExecutor, build_plan, resolve_groups
from .registry import BUILTIN_WORKFLOWS, WorkflowRegistry, validate_workflow

__all__ = [
    "BUILTIN_WORKFLOWS",
    "WorkflowExecutor",
    "WorkflowRegistry",
    "build_plan",
    "resolve_groups",
    "validate_workflow",
]
