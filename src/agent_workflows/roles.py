"""Agent role catalogue: default timeouts, priorities and tool allow-lists.

Roles only parameterize dispatch (an agent without an explicit timeout gets its
role's default). The task body itself stays an opaque caller-supplied command.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class AgentRole(str, Enum):
    ARCHITECT = "architect"
    DEVELOPER = "developer"
    VALIDATOR = "validator"
    DEBUGGER = "debugger"
    REVIEWER = "reviewer"


@dataclass(frozen=True)
class RoleDefinition:
    """Immutable blueprint for one agent role."""
    role: AgentRole
    description: str
    timeout_seconds: float
    priority: int                           # lower runs first
    allowed_tools: tuple[str, ...] = ()


ROLE_DEFINITIONS: dict[AgentRole, RoleDefinition] = {
    AgentRole.ARCHITECT: RoleDefinition(
        role=AgentRole.ARCHITECT,
        description="Designs system architecture and creates implementation plans",
        timeout_seconds=180.0,
        priority=1,
        allowed_tools=("read_file", "analyze_code", "search_files", "list_directory", "get_project_structure"),
    ),
    AgentRole.DEVELOPER: RoleDefinition(
        role=AgentRole.DEVELOPER,
        description="Implements features and writes production code",
        timeout_seconds=300.0,
        priority=2,
        allowed_tools=("read_file", "write_file", "create_file", "run_shell", "install_package", "git_operations"),
    ),
    AgentRole.VALIDATOR: RoleDefinition(
        role=AgentRole.VALIDATOR,
        description="Tests code and ensures quality standards",
        timeout_seconds=240.0,
        priority=3,
        allowed_tools=("run_tests", "analyze_coverage", "generate_reports", "security_scan", "lint_code"),
    ),
    AgentRole.DEBUGGER: RoleDefinition(
        role=AgentRole.DEBUGGER,
        description="Diagnoses failures and proposes fixes",
        timeout_seconds=360.0,
        priority=2,
        allowed_tools=("read_file", "run_shell", "analyze_logs", "trace_execution", "performance_profile"),
    ),
    AgentRole.REVIEWER: RoleDefinition(
        role=AgentRole.REVIEWER,
        description="Reviews code quality and adherence to standards",
        timeout_seconds=180.0,
        priority=3,
        allowed_tools=("read_file", "analyze_code", "generate_reports", "check_standards", "documentation_review"),
    ),
}


def get_role(role: str) -> Optional[RoleDefinition]:
    """Look up a role by name; unknown (custom) roles return None."""
    try:
        return ROLE_DEFINITIONS[AgentRole(str(role).lower())]
    except ValueError:
        return None


def default_timeout_for(role: str, fallback: float) -> float:
    definition = get_role(role)
    return definition.timeout_seconds if definition else fallback


def role_priority(role: str) -> int:
    definition = get_role(role)
    return definition.priority if definition else max(d.priority for d in ROLE_DEFINITIONS.values()) + 1
