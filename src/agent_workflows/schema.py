"""Pydantic models for workflow JSON documents."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import WorkflowValidationError
from .models import ABORT, CONTINUE, ROLLBACK, Workflow

_RESERVED_ROUTES = {CONTINUE, ABORT, ROLLBACK}


class ParameterDocument(BaseModel):
    """Declared workflow parameter."""

    name: str
    type: Literal["string", "number", "boolean", "choice"] = "string"
    description: str = ""
    default: Any = None
    required: bool = False
    choices: list[str] = Field(default_factory=list)


class MetadataDocument(BaseModel):
    """Workflow metadata."""

    author: Optional[str] = None
    created_at: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    parameters: list[ParameterDocument] = Field(default_factory=list)


class StepDocument(BaseModel):
    """One workflow step."""

    id: str = Field(min_length=1)
    name: Optional[str] = None
    description: str = ""
    tool: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)
    condition: Optional[str] = None
    parallel: bool = False
    retry: Optional[int] = Field(default=None, ge=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    on_success: Optional[str] = None
    on_failure: Optional[str] = None
    requires_approval: bool = False


class WorkflowDocument(BaseModel):
    """A persisted workflow; mirrors ``Workflow.to_dict()``."""

    id: str = Field(min_length=1)
    name: str
    version: str = "1.0.0"
    description: str = ""
    steps: list[StepDocument]
    parallel_groups: list[list[str]] = Field(default_factory=list)
    metadata: MetadataDocument = Field(default_factory=MetadataDocument)
    rollback_steps: list[StepDocument] = Field(default_factory=list)

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: list[StepDocument]) -> list[StepDocument]:
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            seen.add(step.id)
        return steps

    @model_validator(mode="after")
    def _check_references(self) -> "WorkflowDocument":
        ids = {step.id for step in self.steps}
        for group in self.parallel_groups:
            unknown = [sid for sid in group if sid not in ids]
            if unknown:
                raise ValueError(f"parallel group references unknown steps: {', '.join(unknown)}")
        grouped: set[str] = set()
        for group in self.parallel_groups:
            overlap = grouped.intersection(group)
            if overlap:
                raise ValueError(f"steps appear in more than one parallel group: {', '.join(sorted(overlap))}")
            grouped.update(group)
        for step in self.steps:
            for attr in ("on_success", "on_failure"):
                target = getattr(step, attr)
                if target and target not in _RESERVED_ROUTES and target not in ids:
                    raise ValueError(f"step '{step.id}' {attr} references unknown step '{target}'")
        return self

    def to_workflow(self) -> Workflow:
        return Workflow.from_dict(self.model_dump())


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_workflow_document(data: Any) -> Workflow:
    """Validate a decoded JSON document and build a ``Workflow``.

    Raises:
        WorkflowValidationError: If the document does not match the schema.
    """
    try:
        document = WorkflowDocument.model_validate(data)
    except ValidationError as exc:
        raise WorkflowValidationError(f"Invalid workflow document: {_format_validation_error(exc)}") from exc
    return document.to_workflow()
