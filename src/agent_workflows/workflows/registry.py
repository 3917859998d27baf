"""Workflow registry: built-in workflows plus user-registered definitions.

Workflows are immutable once registered; re-registering under the same id
replaces the previous definition. Definitions can be loaded from and saved to
JSON documents (YAML is accepted on load) whose shape mirrors
``Workflow.to_dict()``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from ..errors import WorkflowNotFoundError, WorkflowValidationError
from ..io_utils import _atomic_write_json, _load_data
from ..models import Workflow, WorkflowMetadata, WorkflowStep
from ..schema import WorkflowDocument, parse_workflow_document


# ---------------------------------------------------------------------------
# Built-in workflows
# ---------------------------------------------------------------------------

CICD_WORKFLOW = Workflow(
    id="cicd",
    name="CI/CD Pipeline",
    description="Build, test, and deploy",
    version="1.0.0",
    steps=(
        WorkflowStep.build("install", "run_shell_command", {"command": "npm ci"},
                           name="Install Dependencies", on_success="lint"),
        WorkflowStep.build("lint", "run_shell_command", {"command": "npm run lint"},
                           name="Run Linter", on_success="test"),
        WorkflowStep.build("test", "run_shell_command", {"command": "npm test"},
                           name="Run Tests", on_success="build"),
        WorkflowStep.build("build", "run_shell_command", {"command": "npm run build"},
                           name="Build Project", on_success="deploy"),
        WorkflowStep.build("deploy", "run_shell_command", {"command": "npm run deploy"},
                           name="Deploy", on_failure="rollback"),
    ),
    rollback_steps=(
        WorkflowStep.build("rollback", "run_shell_command", {"command": "npm run rollback"},
                           name="Rollback"),
    ),
    metadata=WorkflowMetadata(author="agent-workflows", tags=("ci", "cd", "deployment")),
)

CODE_REVIEW_WORKFLOW = Workflow(
    id="code-review",
    name="Code Review",
    description="Analyze, test, and review changes",
    version="1.0.0",
    steps=(
        WorkflowStep.build("analyze", "analyze_code_quality", {"path": "${path}"},
                           name="Code Analysis", on_success="security"),
        WorkflowStep.build("security", "security_scan", {"path": "${path}"},
                           name="Security Scan", on_success="test"),
        WorkflowStep.build("test", "run_tests", {}, name="Run Tests", on_success="report"),
        WorkflowStep.build("report", "generate_report", {}, name="Generate Report"),
    ),
    metadata=WorkflowMetadata(
        author="agent-workflows",
        tags=("review", "analysis"),
    ),
)

BUILTIN_WORKFLOWS: dict[str, Workflow] = {w.id: w for w in (CICD_WORKFLOW, CODE_REVIEW_WORKFLOW)}


def validate_workflow(workflow: Workflow) -> None:
    """Check step ids, group membership and routing targets.

    Raises:
        WorkflowValidationError: If the definition is inconsistent.
    """
    try:
        WorkflowDocument.model_validate(workflow.to_dict())
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {"msg": str(exc)}
        raise WorkflowValidationError(f"Invalid workflow '{workflow.id}': {first.get('msg')}") from exc


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class WorkflowRegistry:
    """Registry of workflow definitions keyed by id."""

    def __init__(self, include_builtins: bool = True) -> None:
        self._workflows: dict[str, Workflow] = dict(BUILTIN_WORKFLOWS) if include_builtins else {}

    # -- query ---------------------------------------------------------------

    def get(self, workflow_id: str) -> Workflow:
        if workflow_id not in self._workflows:
            raise WorkflowNotFoundError(workflow_id, list(self._workflows))
        return self._workflows[workflow_id]

    def has(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    def list_workflows(self) -> list[Workflow]:
        return list(self._workflows.values())

    def summaries(self) -> list[dict[str, Any]]:
        return [
            {
                "id": w.id,
                "name": w.name,
                "description": w.description,
                "step_count": len(w.steps),
                "tags": list(w.metadata.tags),
            }
            for w in self._workflows.values()
        ]

    # -- mutation ------------------------------------------------------------

    def register(self, workflow: Workflow) -> None:
        validate_workflow(workflow)
        if workflow.id in self._workflows:
            logger.debug("Replacing workflow '{}'", workflow.id)
        self._workflows[workflow.id] = workflow

    def unregister(self, workflow_id: str) -> None:
        self._workflows.pop(workflow_id, None)

    # -- persistence ---------------------------------------------------------

    def load_from_file(self, path: Path) -> Workflow:
        """Load one workflow document and register it."""
        try:
            data = _load_data(path, None)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise WorkflowValidationError(f"Failed to read workflow file {path}: {exc}") from exc
        if data is None:
            raise WorkflowValidationError(f"Workflow file not found or empty: {path}")
        workflow = parse_workflow_document(data)
        self.register(workflow)
        logger.info("Loaded workflow '{}' from {}", workflow.id, path)
        return workflow

    def load_from_directory(self, path: Path) -> list[Workflow]:
        """Load every ``.json``/``.yaml`` document in *path*; bad files are logged and skipped."""
        loaded: list[Workflow] = []
        if not path.is_dir():
            logger.debug("Workflow directory does not exist: {}", path)
            return loaded
        for child in sorted(path.iterdir()):
            if child.is_file() and child.suffix in (".json", ".yaml", ".yml"):
                try:
                    loaded.append(self.load_from_file(child))
                except WorkflowValidationError as exc:
                    logger.warning("Skipping workflow file {}: {}", child, exc)
        return loaded

    def save_to_file(self, workflow_id: str, path: Path) -> None:
        workflow = self.get(workflow_id)
        _atomic_write_json(path, workflow.to_dict())
        logger.info("Saved workflow '{}' to {}", workflow_id, path)
