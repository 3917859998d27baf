"""Tests for workflow registration, validation and persistence."""

import json

import pytest

from agent_workflows.errors import WorkflowNotFoundError, WorkflowValidationError
from agent_workflows.models import Workflow, WorkflowStep
from agent_workflows.schema import parse_workflow_document
from agent_workflows.workflows.registry import BUILTIN_WORKFLOWS, WorkflowRegistry


def _document(**overrides):
    doc = {
        "id": "release",
        "name": "Release",
        "version": "2.1.0",
        "description": "Tag and publish",
        "steps": [
            {"id": "tag", "tool": "run_shell_command", "args": {"command": "git tag ${version}"}},
            {
                "id": "publish",
                "tool": "run_shell_command",
                "args": {"command": "twine", "args": ["upload", "${dist}"]},
                "condition": "${publish}",
                "retry": 1,
                "timeout": 30,
                "on_failure": "abort",
                "requires_approval": True,
            },
        ],
        "metadata": {
            "author": "release-team",
            "tags": ["release"],
            "parameters": [{"name": "version", "required": True}],
        },
    }
    doc.update(overrides)
    return doc


class TestBuiltins:
    def test_builtins_registered(self):
        registry = WorkflowRegistry()
        assert registry.has("cicd")
        assert registry.has("code-review")
        assert [s.id for s in registry.get("cicd").steps] == ["install", "lint", "test", "build", "deploy"]
        assert [s.id for s in registry.get("code-review").steps] == ["analyze", "security", "test", "report"]

    def test_cicd_routes_deploy_failure_to_rollback(self):
        cicd = BUILTIN_WORKFLOWS["cicd"]
        assert cicd.find_step("deploy").on_failure == "rollback"
        assert [s.id for s in cicd.rollback_steps] == ["rollback"]

    def test_get_is_side_effect_free(self):
        registry = WorkflowRegistry()
        first = registry.get("cicd").to_dict()
        second = registry.get("cicd").to_dict()
        assert first == second

    def test_summaries(self):
        summaries = {s["id"]: s for s in WorkflowRegistry().summaries()}
        assert summaries["cicd"]["step_count"] == 5
        assert summaries["code-review"]["tags"] == ["review", "analysis"]

    def test_without_builtins(self):
        registry = WorkflowRegistry(include_builtins=False)
        assert registry.list_workflows() == []
        with pytest.raises(WorkflowNotFoundError):
            registry.get("cicd")


class TestRegistration:
    def test_register_overwrites_by_id(self):
        registry = WorkflowRegistry()
        replacement = Workflow(
            id="cicd",
            name="Tiny",
            version="9",
            steps=(WorkflowStep.build("only", "noop"),),
        )
        registry.register(replacement)
        assert registry.get("cicd").name == "Tiny"

    def test_duplicate_step_ids_rejected(self):
        registry = WorkflowRegistry()
        bad = Workflow(
            id="dup",
            name="dup",
            version="1",
            steps=(WorkflowStep.build("a", "noop"), WorkflowStep.build("a", "noop")),
        )
        with pytest.raises(WorkflowValidationError, match="duplicate step id"):
            registry.register(bad)

    def test_unknown_routing_target_rejected(self):
        registry = WorkflowRegistry()
        bad = Workflow(
            id="route",
            name="route",
            version="1",
            steps=(WorkflowStep.build("a", "noop", on_success="nowhere"),),
        )
        with pytest.raises(WorkflowValidationError, match="unknown step 'nowhere'"):
            registry.register(bad)

    def test_unregister(self):
        registry = WorkflowRegistry()
        registry.unregister("cicd")
        assert not registry.has("cicd")


class TestDocuments:
    def test_parse_document(self):
        workflow = parse_workflow_document(_document())
        publish = workflow.find_step("publish")
        assert publish.retry == 1
        assert publish.timeout == 30.0
        assert publish.requires_approval is True
        assert str(publish.condition) == "${publish}"
        assert workflow.metadata.parameters[0].required is True

    def test_invalid_document_names_field(self):
        doc = _document()
        doc["steps"][1]["retry"] = -1
        with pytest.raises(WorkflowValidationError, match="steps.1.retry"):
            parse_workflow_document(doc)

    def test_missing_tool_rejected(self):
        doc = _document()
        del doc["steps"][0]["tool"]
        with pytest.raises(WorkflowValidationError, match="tool"):
            parse_workflow_document(doc)

    def test_overlapping_parallel_groups_rejected(self):
        doc = _document(parallel_groups=[["tag", "publish"], ["publish"]])
        with pytest.raises(WorkflowValidationError, match="more than one parallel group"):
            parse_workflow_document(doc)

    def test_save_and_load_json(self, tmp_path):
        registry = WorkflowRegistry()
        registry.register(parse_workflow_document(_document()))
        path = tmp_path / "out" / "release.json"
        registry.save_to_file("release", path)

        saved = json.loads(path.read_text(encoding="utf-8"))
        assert saved["steps"][0]["args"] == {"command": "git tag ${version}"}

        other = WorkflowRegistry(include_builtins=False)
        loaded = other.load_from_file(path)
        assert loaded == registry.get("release")
        assert loaded.to_dict() == saved

    def test_builtin_round_trips_through_json(self, tmp_path):
        registry = WorkflowRegistry()
        path = tmp_path / "cicd.json"
        registry.save_to_file("cicd", path)
        loaded = WorkflowRegistry(include_builtins=False).load_from_file(path)
        assert loaded == BUILTIN_WORKFLOWS["cicd"]

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "release.yaml"
        path.write_text(
            "id: lint-only\n"
            "name: Lint\n"
            "steps:\n"
            "  - id: lint\n"
            "    tool: run_shell_command\n"
            "    args: {command: ruff check .}\n",
            encoding="utf-8",
        )
        registry = WorkflowRegistry(include_builtins=False)
        workflow = registry.load_from_file(path)
        assert workflow.version == "1.0.0"
        assert registry.get("lint-only").steps[0].tool == "run_shell_command"

    def test_load_malformed_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(WorkflowValidationError, match="Failed to read workflow file"):
            WorkflowRegistry().load_from_file(path)

    def test_load_directory_skips_bad_files(self, tmp_path):
        (tmp_path / "good.json").write_text(json.dumps(_document()), encoding="utf-8")
        (tmp_path / "bad.json").write_text(json.dumps({"id": "x"}), encoding="utf-8")
        (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
        registry = WorkflowRegistry(include_builtins=False)
        loaded = registry.load_from_directory(tmp_path)
        assert [w.id for w in loaded] == ["release"]
