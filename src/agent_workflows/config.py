"""Load optional orchestrator configuration from `.agent_workflows/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .io_utils import _load_data_with_error

STATE_DIR_NAME = ".agent_workflows"
CONFIG_FILE = "config.yaml"
WORKFLOWS_DIR = "workflows"

VALID_STRATEGIES = {"temp-directory", "git-worktree", "sandbox"}
VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class OrchestratorConfig:
    """Tunables for workflow execution and agent dispatch."""

    max_concurrent_agents: int = 5
    max_parallel_steps: Optional[int] = None   # None = parallel group size
    default_step_timeout: float = 300.0
    auto_retry: bool = True
    default_retries: int = 3
    default_agent_timeout: float = 120.0
    isolation_strategy: str = "temp-directory"
    sandbox_root: Optional[str] = None
    max_step_transitions: int = 1000
    log_level: str = "INFO"

    def step_retries(self, retry: Optional[int]) -> int:
        if retry is not None:
            return max(0, int(retry))
        return self.default_retries if self.auto_retry else 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorConfig":
        """Build a config from a mapping, ignoring unknown or invalid keys."""
        known = {f.name: f for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, raw in data.items():
            if key not in known:
                logger.warning("Ignoring unknown config key '{}'", key)
                continue
            try:
                values[key] = _coerce(key, raw)
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring invalid value for '{}': {}", key, exc)
        return cls(**values)

    def merged(self, **overrides: Any) -> "OrchestratorConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _coerce(key: str, raw: Any) -> Any:
    if key in ("max_concurrent_agents", "default_retries", "max_step_transitions"):
        value = int(raw)
        if value < (1 if key != "default_retries" else 0):
            raise ValueError(f"{key} out of range: {value}")
        return value
    if key == "max_parallel_steps":
        if raw is None:
            return None
        value = int(raw)
        if value < 1:
            raise ValueError(f"{key} must be >= 1")
        return value
    if key in ("default_step_timeout", "default_agent_timeout"):
        value = float(raw)
        if value <= 0:
            raise ValueError(f"{key} must be positive")
        return value
    if key == "auto_retry":
        if isinstance(raw, str):
            return raw.strip().lower() in {"1", "true", "yes", "on"}
        return bool(raw)
    if key == "isolation_strategy":
        if raw not in VALID_STRATEGIES:
            raise ValueError(f"expected one of {sorted(VALID_STRATEGIES)}, got {raw!r}")
        return raw
    if key == "log_level":
        level = str(raw).upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"unknown log level {raw!r}")
        return level
    if key == "sandbox_root":
        return None if raw is None else str(raw)
    return raw


def config_path(project_dir: Path) -> Path:
    return project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE


def load_config(project_dir: Path) -> tuple[OrchestratorConfig, str | None]:
    """Load the optional orchestrator config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns
        the default config and None. Parse failures also return the defaults,
        together with a message describing the problem.
    """
    path = config_path(project_dir)
    data, err = _load_data_with_error(path, {})
    if err:
        return OrchestratorConfig(), err
    return OrchestratorConfig.from_dict(data), None
