from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger
from rich.console import Console

from .approvals import AutoApproval, ConsoleApproval
from .config import STATE_DIR_NAME, WORKFLOWS_DIR, load_config
from .errors import OrchestrationError, WorkflowNotFoundError
from .io_utils import _load_data
from .logging_utils import configure_logging, pretty
from .models import Agent, ExecutionContext
from .orchestrator import Orchestrator
from .reporting import (
    render_agent_results,
    render_batches,
    render_conflicts,
    render_execution,
    render_workflow,
    render_workflows,
)
from .sandbox import IsolationStrategy
from .tools import ShellToolExecutor


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _emit_json(data: Any) -> None:
    sys.stdout.write(pretty(data) + "\n")


def _ctx(args: argparse.Namespace) -> tuple[Path, Orchestrator]:
    project_dir = _resolve_project_dir(args.project_dir)
    config, err = load_config(project_dir)
    configure_logging(args.log_level or config.log_level)
    if err:
        logger.warning("Ignoring config file: {}", err)
    approval = AutoApproval(True) if getattr(args, "yes", False) else ConsoleApproval(Console(stderr=True))
    orchestrator = Orchestrator(
        tool_executor=ShellToolExecutor(working_dir=str(project_dir)),
        approval_system=approval,
        config=config,
    )
    orchestrator.executor.registry.load_from_directory(project_dir / STATE_DIR_NAME / WORKFLOWS_DIR)
    return project_dir, orchestrator


def _parse_params(pairs: list[str]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --param '{pair}', expected KEY=VALUE")
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        params[key.strip()] = value if isinstance(value, (str, int, float, bool)) or value is None else raw
    return params


def _load_agents(path: Path, project_dir: Path) -> list[Agent]:
    data = _load_data(path, None)
    if isinstance(data, dict):
        data = data.get("agents")
    if not isinstance(data, list) or not data:
        raise ValueError(f"{path}: expected a non-empty list of agents")
    agents = []
    for entry in data:
        if not isinstance(entry, dict):
            raise ValueError(f"{path}: every agent must be a mapping")
        agent = Agent.from_dict(entry)
        working_dir = Path((entry.get("context") or {}).get("working_dir") or project_dir)
        if not working_dir.is_absolute():
            working_dir = (project_dir / working_dir).resolve()
        agent.context.working_dir = str(working_dir)
        agents.append(agent)
    return agents


# ---------------------------------------------------------------------------
# workflow commands
# ---------------------------------------------------------------------------

def _workflow_list(args: argparse.Namespace) -> int:
    _, orchestrator = _ctx(args)
    summaries = orchestrator.list_workflows()
    if args.json:
        _emit_json({"workflows": summaries})
    else:
        render_workflows(summaries)
    return 0


def _workflow_show(args: argparse.Namespace) -> int:
    _, orchestrator = _ctx(args)
    workflow = orchestrator.executor.get(args.workflow_id)
    if args.json:
        _emit_json(workflow.to_dict())
    else:
        render_workflow(workflow)
    return 0


def _workflow_run(args: argparse.Namespace) -> int:
    project_dir, orchestrator = _ctx(args)
    if args.file:
        orchestrator.load_workflow(Path(args.file).expanduser().resolve())
    params = _parse_params(args.param or [])
    context = ExecutionContext(session_id="cli", dry_run=args.dry_run, working_dir=str(project_dir))
    execution = asyncio.run(orchestrator.run_workflow(args.workflow_id, params, context))
    if args.json:
        _emit_json(execution.to_dict())
    else:
        render_execution(execution)
    return 0 if execution.status == "completed" else 1


def _workflow_export(args: argparse.Namespace) -> int:
    _, orchestrator = _ctx(args)
    path = Path(args.path).expanduser().resolve()
    orchestrator.executor.save_to_file(args.workflow_id, path)
    sys.stdout.write(f"{path}\n")
    return 0


# ---------------------------------------------------------------------------
# agent commands
# ---------------------------------------------------------------------------

def _agents_check(args: argparse.Namespace) -> int:
    project_dir, orchestrator = _ctx(args)
    agents = _load_agents(Path(args.file).expanduser().resolve(), project_dir)
    batches = orchestrator.plan(agents, allow_conflicts=args.allow_conflicts)
    planned = [agent for batch in batches for agent in batch]
    pairs = orchestrator.check_conflicts(planned)
    if args.json:
        _emit_json({
            "batches": [[agent.id for agent in batch] for batch in batches],
            "conflicts": [
                {"agents": [planned[i].id, planned[j].id], **report.to_dict()} for i, j, report in pairs
            ],
        })
    else:
        render_conflicts(planned, pairs)
        render_batches(batches)
    return 0


def _agents_dispatch(args: argparse.Namespace) -> int:
    project_dir, orchestrator = _ctx(args)
    agents = _load_agents(Path(args.file).expanduser().resolve(), project_dir)
    results = asyncio.run(orchestrator.dispatch_agents(
        agents,
        max_parallel=args.max_parallel,
        strategy=args.strategy,
        allow_conflicts=args.allow_conflicts,
        require_consensus=args.consensus,
    ))
    if args.json:
        _emit_json({"results": [r.to_dict() for r in results]})
    else:
        render_agent_results(results)
    return 0 if all(r.success for r in results) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run tool workflows and dispatch isolated agents")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--log-level", default=None, help="Log level (default: from config, else INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    workflow = subparsers.add_parser("workflow", help="Inspect and run workflows")
    wf_sub = workflow.add_subparsers(dest="workflow_cmd", required=True)
    wlist = wf_sub.add_parser("list", help="List registered workflows")
    wlist.add_argument("--json", action="store_true")
    wlist.set_defaults(func=_workflow_list)
    wshow = wf_sub.add_parser("show", help="Show a workflow's steps")
    wshow.add_argument("workflow_id")
    wshow.add_argument("--json", action="store_true")
    wshow.set_defaults(func=_workflow_show)
    wrun = wf_sub.add_parser("run", help="Run a workflow")
    wrun.add_argument("workflow_id")
    wrun.add_argument("--param", action="append", metavar="KEY=VALUE", help="Workflow parameter (repeatable)")
    wrun.add_argument("--file", default=None, help="Load the workflow definition from this JSON/YAML file first")
    wrun.add_argument("--dry-run", action="store_true", help="Describe tool calls without running them")
    wrun.add_argument("--yes", action="store_true", help="Approve every step that requires approval")
    wrun.add_argument("--json", action="store_true")
    wrun.set_defaults(func=_workflow_run)
    wexport = wf_sub.add_parser("export", help="Save a workflow definition as JSON")
    wexport.add_argument("workflow_id")
    wexport.add_argument("path")
    wexport.set_defaults(func=_workflow_export)

    agents = subparsers.add_parser("agents", help="Check and dispatch agent batches")
    ag_sub = agents.add_subparsers(dest="agents_cmd", required=True)
    acheck = ag_sub.add_parser("check", help="Report conflicts and the batch plan for an agents file")
    acheck.add_argument("file")
    acheck.add_argument("--allow-conflicts", action="store_true")
    acheck.add_argument("--json", action="store_true")
    acheck.set_defaults(func=_agents_check)
    adispatch = ag_sub.add_parser("dispatch", help="Run every agent in its own sandbox")
    adispatch.add_argument("file")
    adispatch.add_argument("--max-parallel", type=int, default=None)
    adispatch.add_argument("--strategy", default=None, choices=[s.value for s in IsolationStrategy])
    adispatch.add_argument("--allow-conflicts", action="store_true")
    adispatch.add_argument("--consensus", action="store_true", help="Score results against each other")
    adispatch.add_argument("--json", action="store_true")
    adispatch.set_defaults(func=_agents_dispatch)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except WorkflowNotFoundError as exc:
        sys.stderr.write(f"{exc}\n")
        return 2
    except (OrchestrationError, ValueError, OSError, yaml.YAMLError) as exc:
        sys.stderr.write(f"{exc}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
