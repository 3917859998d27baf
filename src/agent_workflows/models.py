"""Shared data model for workflows, executions, agents and sandboxes."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal as TypingLiteral, Optional, Union

from .expressions import Condition, Value, args_to_raw, parse_args, parse_condition
from .utils import _now, _parse_iso

ExecutionStatus = TypingLiteral["pending", "running", "completed", "failed", "cancelled"]
ParameterType = TypingLiteral["string", "number", "boolean", "choice"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

# Reserved routing values for on_success / on_failure.
CONTINUE = "continue"
ABORT = "abort"
ROLLBACK = "rollback"


# ---------------------------------------------------------------------------
# Workflow definitions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WorkflowParameter:
    name: str
    type: ParameterType = "string"
    description: str = ""
    default: Any = None
    required: bool = False
    choices: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
        }
        if self.default is not None:
            data["default"] = self.default
        if self.choices:
            data["choices"] = list(self.choices)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowParameter":
        return cls(
            name=str(data["name"]),
            type=data.get("type") or "string",
            description=str(data.get("description") or ""),
            default=data.get("default"),
            required=bool(data.get("required", False)),
            choices=tuple(data.get("choices") or ()),
        )


@dataclass(frozen=True)
class WorkflowMetadata:
    author: Optional[str] = None
    created_at: Optional[datetime] = None
    tags: tuple[str, ...] = ()
    parameters: tuple[WorkflowParameter, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"tags": list(self.tags)}
        if self.author is not None:
            data["author"] = self.author
        if self.created_at is not None:
            data["created_at"] = self.created_at.isoformat()
        if self.parameters:
            data["parameters"] = [p.to_dict() for p in self.parameters]
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "WorkflowMetadata":
        data = dict(data or {})
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = _parse_iso(created_at)
        return cls(
            author=data.get("author"),
            created_at=created_at,
            tags=tuple(data.get("tags") or ()),
            parameters=tuple(
                WorkflowParameter.from_dict(p) for p in data.get("parameters") or () if isinstance(p, dict)
            ),
        )


@dataclass(frozen=True)
class WorkflowStep:
    """One tool invocation plus its retry/timeout/condition/branching policy."""

    id: str
    name: str
    tool: str
    args: dict[str, Value] = field(default_factory=dict)
    description: str = ""
    condition: Optional[Condition] = None
    parallel: bool = False
    retry: Optional[int] = None          # None = executor default
    timeout: Optional[float] = None      # seconds
    on_success: Optional[str] = None     # "continue" or a step id
    on_failure: Optional[str] = None     # "continue" | "abort" | "rollback" | step id
    requires_approval: bool = False

    @classmethod
    def build(
        cls,
        id: str,
        tool: str,
        args: Optional[dict[str, Any]] = None,
        *,
        name: Optional[str] = None,
        condition: Union[str, Condition, None] = None,
        **kwargs: Any,
    ) -> "WorkflowStep":
        """Build a step from raw values, parsing args and condition."""
        return cls(
            id=id,
            name=name or id.replace("_", " ").replace("-", " ").title(),
            tool=tool,
            args=parse_args(args),
            condition=parse_condition(condition),
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "tool": self.tool,
            "args": args_to_raw(self.args),
        }
        if self.description:
            data["description"] = self.description
        if self.condition is not None:
            data["condition"] = self.condition.source
        if self.parallel:
            data["parallel"] = True
        if self.retry is not None:
            data["retry"] = self.retry
        if self.timeout is not None:
            data["timeout"] = self.timeout
        if self.on_success is not None:
            data["on_success"] = self.on_success
        if self.on_failure is not None:
            data["on_failure"] = self.on_failure
        if self.requires_approval:
            data["requires_approval"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowStep":
        timeout = data.get("timeout")
        retry = data.get("retry")
        return cls.build(
            id=str(data["id"]),
            tool=str(data["tool"]),
            args=data.get("args") or {},
            name=data.get("name"),
            condition=data.get("condition"),
            description=str(data.get("description") or ""),
            parallel=bool(data.get("parallel", False)),
            retry=int(retry) if retry is not None else None,
            timeout=float(timeout) if timeout is not None else None,
            on_success=data.get("on_success"),
            on_failure=data.get("on_failure"),
            requires_approval=bool(data.get("requires_approval", False)),
        )


@dataclass(frozen=True)
class Workflow:
    """A named, versioned, ordered list of steps. Immutable once registered."""

    id: str
    name: str
    version: str
    steps: tuple[WorkflowStep, ...]
    description: str = ""
    parallel_groups: tuple[tuple[str, ...], ...] = ()
    metadata: WorkflowMetadata = field(default_factory=WorkflowMetadata)
    rollback_steps: tuple[WorkflowStep, ...] = ()

    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]

    def find_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
            "metadata": self.metadata.to_dict(),
        }
        if self.parallel_groups:
            data["parallel_groups"] = [list(g) for g in self.parallel_groups]
        if self.rollback_steps:
            data["rollback_steps"] = [s.to_dict() for s in self.rollback_steps]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workflow":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            version=str(data.get("version") or "1.0.0"),
            description=str(data.get("description") or ""),
            steps=tuple(WorkflowStep.from_dict(s) for s in data.get("steps") or ()),
            parallel_groups=tuple(tuple(str(i) for i in g) for g in data.get("parallel_groups") or ()),
            metadata=WorkflowMetadata.from_dict(data.get("metadata")),
            rollback_steps=tuple(WorkflowStep.from_dict(s) for s in data.get("rollback_steps") or ()),
        )


# ---------------------------------------------------------------------------
# Tool invocation
# ---------------------------------------------------------------------------

@dataclass
class ToolConfig:
    name: str
    command: str
    args: Optional[list[str]] = None
    working_dir: Optional[str] = None
    env: Optional[dict[str, str]] = None
    timeout: Optional[float] = None
    requires_approval: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)   # every resolved step argument


@dataclass
class ExecutionContext:
    session_id: str
    approved: bool = False
    dry_run: bool = False
    sandbox: bool = False
    working_dir: Optional[str] = None


@dataclass
class ToolResult:
    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0
    files_changed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResult":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------

@dataclass
class WorkflowExecution:
    """Runtime record of one workflow run."""

    workflow_id: str
    execution_id: str
    status: ExecutionStatus = "pending"
    current_step: Optional[str] = None
    results: dict[str, ToolResult] = field(default_factory=dict)
    rollback_results: dict[str, ToolResult] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or _now()
        return max(0.0, (end - self.started_at).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "status": self.status,
            "current_step": self.current_step,
            "results": {k: v.to_dict() for k, v in self.results.items()},
            "rollback_results": {k: v.to_dict() for k, v in self.rollback_results.items()},
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Agents and sandboxes
# ---------------------------------------------------------------------------

@dataclass
class ProjectContext:
    working_dir: str
    files: Optional[list[str]] = None
    dependencies: Optional[list[str]] = None
    framework: Optional[str] = None
    language: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectContext":
        return cls(
            working_dir=str(data.get("working_dir") or "."),
            files=list(data["files"]) if data.get("files") is not None else None,
            dependencies=list(data["dependencies"]) if data.get("dependencies") is not None else None,
            framework=data.get("framework"),
            language=data.get("language"),
        )


@dataclass
class Agent:
    """One independently dispatched, isolated task descriptor.

    ``command`` is the opaque task invocation run inside the sandbox. It may be
    a string (split with shell rules) or an argv list and may contain the
    placeholders ``{task_file}``, ``{task}``, ``{role}`` and ``{sandbox}``.
    """

    role: str
    task: str
    context: ProjectContext
    sandbox: Optional[str] = None
    timeout: Optional[float] = None      # seconds
    id: Optional[str] = None
    command: Union[str, list[str], None] = None
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Agent":
        context = data.get("context") or {}
        timeout = data.get("timeout")
        return cls(
            role=str(data.get("role") or "developer"),
            task=str(data.get("task") or ""),
            context=ProjectContext.from_dict(context if isinstance(context, dict) else {}),
            sandbox=data.get("sandbox"),
            timeout=float(timeout) if timeout is not None else None,
            id=data.get("id"),
            command=data.get("command"),
            env={str(k): str(v) for k, v in dict(data.get("env") or {}).items()},
        )


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


@dataclass
class SandboxExecutionResult:
    output: str
    artifacts: list[str]
    exit_code: int
    error: Optional[str] = None
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None


@dataclass
class AgentResult:
    agent_id: str
    role: str
    success: bool
    output: str
    execution_time: float
    error: Optional[str] = None
    artifacts: list[str] = field(default_factory=list)
    exit_code: Optional[int] = None
    sandbox_path: Optional[str] = None
    score: Optional[float] = None
    confidence: Optional[float] = None
    reasoning: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConflictReport:
    """Why two agents should not run concurrently."""

    file_conflicts: list[str] = field(default_factory=list)
    env_conflicts: list[str] = field(default_factory=list)
    resource_conflicts: list[str] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.file_conflicts or self.env_conflicts or self.resource_conflicts)

    @property
    def blocks_concurrency(self) -> bool:
        return bool(self.file_conflicts)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
