"""Tests for orchestrator configuration loading."""

from __future__ import annotations

from pathlib import Path

from agent_workflows.config import CONFIG_FILE, STATE_DIR_NAME, OrchestratorConfig, load_config


def _write_config(project_dir: Path, text: str) -> None:
    state = project_dir / STATE_DIR_NAME
    state.mkdir(parents=True, exist_ok=True)
    (state / CONFIG_FILE).write_text(text, encoding="utf-8")


def test_defaults_when_missing(tmp_path: Path) -> None:
    config, err = load_config(tmp_path)
    assert err is None
    assert config == OrchestratorConfig()
    assert config.max_concurrent_agents == 5
    assert config.default_step_timeout == 300.0
    assert config.default_retries == 3
    assert config.isolation_strategy == "temp-directory"


def test_values_are_loaded_and_coerced(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        "max_concurrent_agents: '2'\n"
        "default_step_timeout: 12\n"
        "auto_retry: 'no'\n"
        "isolation_strategy: git-worktree\n"
        "log_level: debug\n",
    )
    config, err = load_config(tmp_path)
    assert err is None
    assert config.max_concurrent_agents == 2
    assert config.default_step_timeout == 12.0
    assert config.auto_retry is False
    assert config.isolation_strategy == "git-worktree"
    assert config.log_level == "DEBUG"


def test_invalid_and_unknown_keys_are_ignored(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        "max_concurrent_agents: 0\n"
        "isolation_strategy: docker\n"
        "default_agent_timeout: 45\n"
        "colour: blue\n",
    )
    config, err = load_config(tmp_path)
    assert err is None
    assert config.max_concurrent_agents == 5
    assert config.isolation_strategy == "temp-directory"
    assert config.default_agent_timeout == 45.0


def test_malformed_file_reports_error(tmp_path: Path) -> None:
    _write_config(tmp_path, "max_concurrent_agents: [unclosed\n")
    config, err = load_config(tmp_path)
    assert config == OrchestratorConfig()
    assert err is not None and "YAMLError" in err


def test_non_mapping_reports_error(tmp_path: Path) -> None:
    _write_config(tmp_path, "- just\n- a list\n")
    config, err = load_config(tmp_path)
    assert config == OrchestratorConfig()
    assert "expected object" in err


def test_step_retries() -> None:
    config = OrchestratorConfig(default_retries=2)
    assert config.step_retries(None) == 2
    assert config.step_retries(0) == 0
    assert config.step_retries(-4) == 0
    assert OrchestratorConfig(auto_retry=False).step_retries(None) == 0


def test_merged_skips_none() -> None:
    config = OrchestratorConfig().merged(max_concurrent_agents=3, sandbox_root=None)
    assert config.max_concurrent_agents == 3
    assert config.sandbox_root is None
