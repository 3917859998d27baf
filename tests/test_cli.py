from __future__ import annotations

import json
import sys
from pathlib import Path

from agent_workflows.cli import main


def _write_workflow(path: Path, script: str, workflow_id: str = "smoke") -> Path:
    path.write_text(
        json.dumps({
            "id": workflow_id,
            "name": "Smoke",
            "steps": [
                {
                    "id": "check",
                    "tool": "run_shell_command",
                    "args": {"command": sys.executable, "args": ["-c", script, "${target}"]},
                    "retry": 0,
                }
            ],
            "metadata": {"parameters": [{"name": "target", "default": "local"}]},
        }),
        encoding="utf-8",
    )
    return path


def _write_agents(path: Path, agents: list[dict]) -> Path:
    path.write_text(json.dumps({"agents": agents}), encoding="utf-8")
    return path


def test_workflow_list_json(tmp_path: Path, capsys) -> None:
    assert main(["--project-dir", str(tmp_path), "workflow", "list", "--json"]) == 0
    ids = {w["id"] for w in json.loads(capsys.readouterr().out)["workflows"]}
    assert {"cicd", "code-review"} <= ids


def test_workflow_list_table(tmp_path: Path) -> None:
    assert main(["--project-dir", str(tmp_path), "workflow", "list"]) == 0


def test_workflow_show(tmp_path: Path, capsys) -> None:
    assert main(["--project-dir", str(tmp_path), "workflow", "show", "cicd", "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert [s["id"] for s in data["steps"]] == ["install", "lint", "test", "build", "deploy"]
    assert main(["--project-dir", str(tmp_path), "workflow", "show", "cicd"]) == 0


def test_unknown_workflow_exits_2(tmp_path: Path, capsys) -> None:
    assert main(["--project-dir", str(tmp_path), "workflow", "show", "nope"]) == 2
    assert "Workflow not found: nope" in capsys.readouterr().err


def test_export_writes_json(tmp_path: Path) -> None:
    target = tmp_path / "out" / "review.json"
    assert main(["--project-dir", str(tmp_path), "workflow", "export", "code-review", str(target)]) == 0
    assert json.loads(target.read_text(encoding="utf-8"))["id"] == "code-review"


def test_run_from_file_with_params(tmp_path: Path, capsys) -> None:
    wf = _write_workflow(tmp_path / "smoke.json", "import sys; print('target=' + sys.argv[1])")
    rc = main([
        "--project-dir", str(tmp_path),
        "workflow", "run", "smoke", "--file", str(wf), "--param", "target=prod", "--json",
    ])
    assert rc == 0
    execution = json.loads(capsys.readouterr().out)
    assert execution["status"] == "completed"
    assert execution["results"]["check"]["output"].strip() == "target=prod"


def test_failed_run_exits_1(tmp_path: Path, capsys) -> None:
    wf = _write_workflow(tmp_path / "smoke.json", "import sys; sys.exit(3)")
    rc = main(["--project-dir", str(tmp_path), "workflow", "run", "smoke", "--file", str(wf), "--json"])
    assert rc == 1
    execution = json.loads(capsys.readouterr().out)
    assert execution["status"] == "failed"
    assert execution["results"]["check"]["exit_code"] == 3


def test_project_workflows_are_loaded(tmp_path: Path) -> None:
    workflows_dir = tmp_path / ".agent_workflows" / "workflows"
    workflows_dir.mkdir(parents=True)
    _write_workflow(workflows_dir / "local.json", "print('ok')", workflow_id="local")
    assert main(["--project-dir", str(tmp_path), "workflow", "run", "local"]) == 0


def test_dry_run_builtin(tmp_path: Path, capsys) -> None:
    rc = main(["--project-dir", str(tmp_path), "workflow", "run", "cicd", "--dry-run", "--json"])
    assert rc == 0
    execution = json.loads(capsys.readouterr().out)
    assert list(execution["results"]) == ["install", "lint", "test", "build", "deploy"]
    assert execution["results"]["deploy"]["output"].startswith("[dry-run]")


def test_bad_param_exits_1(tmp_path: Path, capsys) -> None:
    assert main(["--project-dir", str(tmp_path), "workflow", "run", "cicd", "--param", "novalue"]) == 1
    assert "expected KEY=VALUE" in capsys.readouterr().err


def test_agents_check_reports_conflicts(tmp_path: Path, capsys) -> None:
    agents = _write_agents(tmp_path / "agents.json", [
        {"id": "a", "role": "developer", "task": "one", "context": {"files": ["shared.js"]}},
        {"id": "b", "role": "developer", "task": "two", "context": {"files": ["shared.js"]}},
        {"id": "c", "role": "validator", "task": "three", "context": {"files": ["other.js"]}},
    ])
    assert main(["--project-dir", str(tmp_path), "agents", "check", str(agents), "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["batches"] == [["a", "c"], ["b"]]
    shared = [c for c in data["conflicts"] if c["file_conflicts"]]
    assert shared[0]["agents"] == ["a", "b"]
    assert shared[0]["file_conflicts"] == ["shared.js"]


def test_agents_dispatch(tmp_path: Path, capsys) -> None:
    (tmp_path / "README.md").write_text("hi", encoding="utf-8")
    agents = _write_agents(tmp_path / "agents.json", [
        {"id": "a", "role": "developer", "task": "one", "command": [sys.executable, "-c", "print('a done')"]},
        {"id": "b", "role": "reviewer", "task": "two"},
    ])
    rc = main(["--project-dir", str(tmp_path), "agents", "dispatch", str(agents), "--consensus", "--json"])
    assert rc == 0
    results = json.loads(capsys.readouterr().out)["results"]
    assert [r["agent_id"] for r in results] == ["a", "b"]
    assert results[0]["output"].strip() == "a done"
    assert "Agent reviewer executing task: two" in results[1]["output"]
    assert all(r["score"] is not None for r in results)


def test_agents_file_must_list_agents(tmp_path: Path, capsys) -> None:
    bad = tmp_path / "agents.json"
    bad.write_text("{}", encoding="utf-8")
    assert main(["--project-dir", str(tmp_path), "agents", "check", str(bad)]) == 1
    assert "expected a non-empty list of agents" in capsys.readouterr().err
