"""Tests for the shell tool executor, subprocess runner and approval gates."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest

from agent_workflows.approvals import ApprovalRequest, AutoApproval, ask_approval
from agent_workflows.models import ExecutionContext, ToolConfig
from agent_workflows.process import run_process
from agent_workflows.tools import ShellToolExecutor, build_tool_config, invoke_tool


def _ctx(**kwargs) -> ExecutionContext:
    return ExecutionContext(session_id="test", **kwargs)


class TestBuildToolConfig:
    def test_command_defaults_to_tool_name(self):
        config = build_tool_config("run_tests", {})
        assert config.name == "run_tests"
        assert config.command == "run_tests"
        assert config.args is None

    def test_arguments_are_mapped(self):
        config = build_tool_config(
            "deploy",
            {"command": "kubectl", "args": ["apply", 3], "env": {"N": 1}, "timeout": "5", "extra": "kept"},
            default_timeout=60,
        )
        assert config.command == "kubectl"
        assert config.args == ["apply", "3"]
        assert config.env == {"N": "1"}
        assert config.timeout == 5.0
        assert config.arguments["extra"] == "kept"

    def test_scalar_args_become_list(self):
        assert build_tool_config("x", {"args": "--fast"}).args == ["--fast"]

    def test_default_timeout(self):
        assert build_tool_config("x", {}, default_timeout=30).timeout == 30.0


class TestShellToolExecutor:
    def test_dry_run_describes_command(self):
        result = asyncio.run(
            ShellToolExecutor().execute(ToolConfig(name="build", command="npm run build"), _ctx(dry_run=True))
        )
        assert result.success
        assert result.output.startswith("[dry-run] build: npm run build")

    def test_shell_command_success(self, tmp_path: Path):
        config = ToolConfig(name="echo", command="echo hello")
        result = asyncio.run(ShellToolExecutor(working_dir=str(tmp_path)).execute(config, _ctx()))
        assert result.success
        assert result.output.strip() == "hello"
        assert result.exit_code == 0

    def test_failing_command(self):
        config = ToolConfig(name="fail", command=sys.executable, args=["-c", "import sys; sys.stderr.write('broken'); sys.exit(4)"])
        result = asyncio.run(ShellToolExecutor().execute(config, _ctx()))
        assert not result.success
        assert result.exit_code == 4
        assert result.error == "broken"

    def test_missing_executable(self):
        config = ToolConfig(name="ghost", command="definitely-not-a-real-binary-xyz", args=["--version"])
        result = asyncio.run(ShellToolExecutor().execute(config, _ctx()))
        assert not result.success
        assert result.exit_code == 127

    def test_env_and_working_dir(self, tmp_path: Path):
        config = ToolConfig(
            name="env",
            command=sys.executable,
            args=["-c", "import os; print(os.environ['STAGE'], os.getcwd())"],
            env={"STAGE": "qa"},
            working_dir=str(tmp_path),
        )
        result = asyncio.run(ShellToolExecutor().execute(config, _ctx()))
        stage, cwd = result.output.split()
        assert stage == "qa"
        assert Path(cwd).resolve() == tmp_path.resolve()

    def test_timeout(self):
        config = ToolConfig(name="sleep", command=sys.executable, args=["-c", "import time; time.sleep(30)"], timeout=0.3)
        start = time.monotonic()
        result = asyncio.run(ShellToolExecutor().execute(config, _ctx()))
        assert time.monotonic() - start < 10
        assert not result.success
        assert result.exit_code == 124


class TestRunProcess:
    def test_cancellation_kills_child(self, tmp_path: Path):
        marker = tmp_path / "finished"
        script = f"import time, pathlib; time.sleep(1.5); pathlib.Path({str(marker)!r}).write_text('x')"

        async def scenario():
            task = asyncio.ensure_future(run_process([sys.executable, "-c", script]))
            await asyncio.sleep(0.3)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                return True
            return False

        assert asyncio.run(scenario())
        time.sleep(2.0)
        assert not marker.exists()

    def test_timeout_keeps_output_written_before_kill(self):
        script = (
            "import sys, time\n"
            "print('partial', flush=True)\n"
            "print('warming up', file=sys.stderr, flush=True)\n"
            "time.sleep(30)\n"
        )

        start = time.monotonic()
        result = asyncio.run(run_process([sys.executable, "-c", script], timeout=1.0))
        assert time.monotonic() - start < 10
        assert result.timed_out
        assert result.exit_code == 124
        assert result.stdout.strip() == "partial"
        assert result.stderr.startswith("warming up")
        assert result.stderr.endswith("[runner] Command timed out after 1.0s")

    def test_output_is_captured_on_normal_exit(self):
        script = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"
        result = asyncio.run(run_process([sys.executable, "-c", script]))
        assert result.exit_code == 3
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert not result.timed_out


class TestInvokeTool:
    def test_sync_executor_runs_in_thread(self):
        class Sync:
            def execute(self, config, context):
                from agent_workflows.models import ToolResult
                return ToolResult(success=True, output=config.command)

        result = asyncio.run(invoke_tool(Sync(), ToolConfig(name="a", command="b"), _ctx()))
        assert result.output == "b"

    def test_wrong_return_type_is_rejected(self):
        class Broken:
            def execute(self, config, context):
                return "not a result"

        with pytest.raises(TypeError, match="expected ToolResult"):
            asyncio.run(invoke_tool(Broken(), ToolConfig(name="a", command="b"), _ctx()))


class TestApprovals:
    def test_auto_approval_records_requests(self):
        gate = AutoApproval(False)
        request = ApprovalRequest(workflow_id="cicd", execution_id="e1", step_id="deploy", tool="run_shell_command")
        assert asyncio.run(ask_approval(gate, request)) is False
        assert gate.requests == [request]

    def test_async_approval_system(self):
        class AsyncGate:
            async def request_approval(self, request):
                return request.step_id == "deploy"

        request = ApprovalRequest(workflow_id="cicd", execution_id="e1", step_id="deploy", tool="t")
        assert asyncio.run(ask_approval(AsyncGate(), request)) is True
