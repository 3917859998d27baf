"""Rich renderings of workflows, executions, batch plans and conflict reports."""

from __future__ import annotations

from typing import Any, Optional, Sequence

from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from .logging_utils import truncate
from .models import Agent, AgentResult, ConflictReport, Workflow, WorkflowExecution
from .workflows.engine import build_plan

_STATUS_STYLE = {
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
    "running": "cyan",
    "pending": "dim",
}


def _mark(success: bool) -> str:
    return "[green]ok[/green]" if success else "[red]failed[/red]"


def render_workflows(summaries: Sequence[dict[str, Any]], console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Workflows", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Steps", justify="right")
    table.add_column("Tags", style="dim")
    table.add_column("Description")
    for summary in summaries:
        table.add_row(
            summary["id"],
            summary["name"],
            str(summary["step_count"]),
            ", ".join(summary.get("tags") or []),
            summary.get("description") or "",
        )
    console.print(table)


def render_workflow(workflow: Workflow, console: Optional[Console] = None) -> None:
    """Show a workflow as a tree of execution units with routing annotations."""
    console = console or Console()
    tree = Tree(f"[bold]{workflow.name}[/bold] [dim]({workflow.id} v{workflow.version})[/dim]")
    units, _ = build_plan(workflow)
    for unit in units:
        parent = tree.add("[magenta]parallel[/magenta]") if unit.is_group else tree
        for step in unit.steps:
            label = f"[cyan]{step.id}[/cyan] → {step.tool}"
            extras = []
            if step.condition is not None:
                extras.append(f"if {step.condition}")
            if step.on_success:
                extras.append(f"on_success={step.on_success}")
            if step.on_failure:
                extras.append(f"on_failure={step.on_failure}")
            if step.requires_approval:
                extras.append("approval")
            if extras:
                label += f" [dim]({'; '.join(extras)})[/dim]"
            parent.add(label)
    if workflow.rollback_steps:
        rollback = tree.add("[yellow]rollback[/yellow]")
        for step in workflow.rollback_steps:
            rollback.add(f"[cyan]{step.id}[/cyan] → {step.tool}")
    console.print(tree)


def render_execution(execution: WorkflowExecution, console: Optional[Console] = None) -> None:
    console = console or Console()
    style = _STATUS_STYLE.get(execution.status, "bold")
    table = Table(
        title=f"{execution.workflow_id} [{style}]{execution.status}[/{style}] ({execution.execution_id})",
        show_header=True,
    )
    table.add_column("Step", style="cyan")
    table.add_column("Result", style="bold")
    table.add_column("Exit", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Output / Error")
    for label, results in (("", execution.results), ("rollback: ", execution.rollback_results)):
        for step_id, result in results.items():
            detail = result.error if not result.success else result.output
            table.add_row(
                f"{label}{step_id}",
                _mark(result.success),
                "" if result.exit_code is None else str(result.exit_code),
                f"{result.duration_seconds:.2f}s",
                truncate((detail or "").strip(), 120),
            )
    console.print(table)
    if execution.error:
        console.print(f"[red]Error:[/red] {execution.error}")


def render_batches(batches: Sequence[Sequence[Agent]], console: Optional[Console] = None) -> None:
    console = console or Console()
    console.print("\n[bold]Agent Dispatch Plan[/bold]")
    console.print(f"Agents: {sum(len(b) for b in batches)}")
    console.print(f"Batches: {len(batches)}")
    console.print()
    for index, batch in enumerate(batches, start=1):
        console.print(f"[bold cyan]Batch {index}:[/bold cyan] ({len(batch)} agent(s) in parallel)")
        for agent in batch:
            files = ", ".join(agent.context.files or []) or "no declared files"
            console.print(f"  • {agent.id or agent.role} [dim]({agent.role}; {files})[/dim]")
            console.print(f"    {truncate(agent.task, 80)}")
        console.print()


def render_conflicts(
    agents: Sequence[Agent],
    pairs: Sequence[tuple[int, int, ConflictReport]],
    console: Optional[Console] = None,
) -> None:
    console = console or Console()
    if not pairs:
        console.print("[green]No conflicts detected[/green]")
        return
    table = Table(title="Agent Conflicts", show_header=True)
    table.add_column("Agents", style="cyan")
    table.add_column("Files", style="red")
    table.add_column("Environment", style="yellow")
    table.add_column("Resources", style="yellow")
    for i, j, report in pairs:
        a, b = agents[i], agents[j]
        table.add_row(
            f"{a.id or f'#{i}'} ({a.role}) / {b.id or f'#{j}'} ({b.role})",
            ", ".join(report.file_conflicts),
            "; ".join(report.env_conflicts),
            "; ".join(report.resource_conflicts),
        )
    console.print(table)


def render_agent_results(results: Sequence[AgentResult], console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Agent Results", show_header=True)
    table.add_column("Agent", style="cyan")
    table.add_column("Role")
    table.add_column("Result", style="bold")
    table.add_column("Time", justify="right")
    table.add_column("Artifacts", justify="right")
    scored = any(r.score is not None for r in results)
    if scored:
        table.add_column("Score", justify="right")
    table.add_column("Error", style="red")
    for result in results:
        row = [
            result.agent_id,
            result.role,
            _mark(result.success),
            f"{result.execution_time:.2f}s",
            str(len(result.artifacts)),
        ]
        if scored:
            row.append("" if result.score is None else f"{result.score:.2f}")
        row.append(truncate(result.error or "", 80))
        table.add_row(*row)
    console.print(table)
