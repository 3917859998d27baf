"""Workflow execution engine: drives a workflow's steps to a terminal state.

The engine walks the declared steps in order, evaluates conditions, resolves
parameter references, invokes the tool executor with retries and timeouts and
applies the ``on_success``/``on_failure`` routing of each step. Steps listed in
a parallel group (or chained with ``parallel=True``) run together as one unit.

The ``execute()`` method is async so tool invocations can do IO-bound work and
so a running execution can be cancelled.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..approvals import ApprovalRequest, ask_approval
from ..config import OrchestratorConfig
from ..errors import ExecutionNotFoundError, WorkflowValidationError
from ..expressions import resolve_args
from ..logging_utils import truncate
from ..models import (
    ABORT,
    CONTINUE,
    ROLLBACK,
    ExecutionContext,
    ToolResult,
    Workflow,
    WorkflowExecution,
    WorkflowStep,
)
from ..process import TIMEOUT_EXIT_CODE
from ..tools import build_tool_config, invoke_tool
from ..utils import _new_id, _now
from .registry import WorkflowRegistry


# ---------------------------------------------------------------------------
# Execution plan
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Unit:
    """One position in the forward walk: a single step or a parallel group."""

    steps: tuple[WorkflowStep, ...]

    @property
    def is_group(self) -> bool:
        return len(self.steps) > 1


def reserved_rollback_ids(workflow: Workflow) -> set[str]:
    """Main-sequence steps that only run as compensation.

    When a workflow declares no ``rollback_steps``, a main-sequence step with
    id ``rollback`` is the compensating step and is skipped by the forward walk.
    """
    if workflow.rollback_steps:
        return set()
    return {s.id for s in workflow.steps if s.id == ROLLBACK}


def resolve_groups(workflow: Workflow) -> list[tuple[str, ...]]:
    """Explicit ``parallel_groups`` plus groups implied by ``parallel=True`` runs.

    A run of consecutive ``parallel`` steps forms a group together with the step
    that follows it. Steps already in an explicit group never join an implicit one.
    """
    reserved = reserved_rollback_ids(workflow)
    groups = [tuple(sid for sid in g if sid not in reserved) for g in workflow.parallel_groups]
    explicit = {sid for g in groups for sid in g}

    run: list[str] = []
    for step in workflow.steps:
        if step.id in explicit or step.id in reserved:
            if len(run) > 1:
                groups.append(tuple(run))
            run = []
            continue
        if step.parallel:
            run.append(step.id)
            continue
        if run:
            run.append(step.id)
            groups.append(tuple(run))
            run = []
    if len(run) > 1:
        groups.append(tuple(run))
    return [g for g in groups if len(g) > 1]


def build_plan(workflow: Workflow) -> tuple[list[_Unit], dict[str, int]]:
    """Lay the workflow out as units and map every step id to its unit index.

    A group is placed at the position of its first declared member.
    """
    reserved = reserved_rollback_ids(workflow)
    group_of: dict[str, tuple[str, ...]] = {}
    for group in resolve_groups(workflow):
        for sid in group:
            group_of[sid] = group

    units: list[_Unit] = []
    unit_of: dict[str, int] = {}
    for step in workflow.steps:
        if step.id in reserved or step.id in unit_of:
            continue
        group = group_of.get(step.id)
        if group:
            members = tuple(s for s in workflow.steps if s.id in group)
            for member in members:
                unit_of[member.id] = len(units)
            units.append(_Unit(members))
        else:
            unit_of[step.id] = len(units)
            units.append(_Unit((step,)))
    return units, unit_of


class _Halt(Exception):
    """Internal signal that the forward walk stopped on a failure policy."""

    def __init__(self, step: WorkflowStep, policy: str, result: ToolResult) -> None:
        super().__init__(step.id)
        self.step = step
        self.policy = policy
        self.result = result


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class WorkflowExecutor:
    """Registers workflows and runs them against a tool executor.

    The executor owns the workflow registry and the execution table; it is
    meant to be constructed once (usually by the ``Orchestrator``) and passed
    around rather than reached through module state.
    """

    def __init__(
        self,
        tool_executor: Any,
        approval_system: Optional[Any] = None,
        config: Optional[OrchestratorConfig] = None,
        registry: Optional[WorkflowRegistry] = None,
    ) -> None:
        self.tool_executor = tool_executor
        self.approval_system = approval_system
        self.config = config or OrchestratorConfig()
        self.registry = registry or WorkflowRegistry()
        self._executions: dict[str, WorkflowExecution] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()

    # -- registry ------------------------------------------------------------

    def register(self, workflow: Workflow) -> None:
        self.registry.register(workflow)

    def get(self, workflow_id: str) -> Workflow:
        return self.registry.get(workflow_id)

    def list(self) -> list[dict[str, Any]]:
        return self.registry.summaries()

    def load_from_file(self, path: Path) -> Workflow:
        return self.registry.load_from_file(path)

    def save_to_file(self, workflow_id: str, path: Path) -> None:
        self.registry.save_to_file(workflow_id, path)

    # -- executions ----------------------------------------------------------

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        if execution_id not in self._executions:
            raise ExecutionNotFoundError(execution_id)
        return self._executions[execution_id]

    def list_executions(self) -> list[WorkflowExecution]:
        return list(self._executions.values())

    def cancel(self, execution_id: str) -> bool:
        """Cancel a running execution.

        Must be called from the event loop running the execution. Returns
        False when the execution already reached a terminal state.
        """
        execution = self.get_execution(execution_id)
        task = self._tasks.get(execution_id)
        if task is None or task.done() or execution.is_terminal:
            return False
        logger.info("Cancelling execution {} ({})", execution_id, execution.workflow_id)
        self._cancel_requested.add(execution_id)
        task.cancel()
        return True

    async def execute(
        self,
        workflow_id: str,
        params: Optional[dict[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
    ) -> WorkflowExecution:
        """Run a registered workflow to a terminal state.

        Raises:
            WorkflowNotFoundError: If *workflow_id* is not registered. Every
                other problem is recorded on the returned execution.
        """
        workflow = self.registry.get(workflow_id)
        execution = WorkflowExecution(workflow_id=workflow.id, execution_id=_new_id("exec"))
        self._executions[execution.execution_id] = execution
        base = context or ExecutionContext(session_id=execution.execution_id)

        execution.status = "running"
        logger.info("Starting workflow '{}' as {}", workflow.id, execution.execution_id)

        task = asyncio.ensure_future(self._drive(workflow, execution, dict(params or {}), base))
        self._tasks[execution.execution_id] = task
        try:
            await task
        except asyncio.CancelledError:
            execution.status = "cancelled"
            execution.error = execution.error or "Execution cancelled"
            logger.warning("Workflow '{}' ({}) cancelled", workflow.id, execution.execution_id)
            if execution.execution_id not in self._cancel_requested:
                # The caller itself was cancelled; stop the walk and propagate.
                task.cancel()
                execution.completed_at = _now()
                raise
        finally:
            self._tasks.pop(execution.execution_id, None)
            self._cancel_requested.discard(execution.execution_id)
            if execution.completed_at is None:
                execution.completed_at = _now()

        logger.info(
            "Workflow '{}' ({}) finished with status {} in {:.2f}s",
            workflow.id,
            execution.execution_id,
            execution.status,
            execution.duration_seconds,
        )
        return execution

    # -- step loop -----------------------------------------------------------

    async def _drive(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        params: dict[str, Any],
        base: ExecutionContext,
    ) -> None:
        try:
            params = self._bind_parameters(workflow, params)
            await self._walk(workflow, execution, params, base)
        except _Halt as halt:
            execution.status = "failed"
            if halt.policy == ROLLBACK:
                execution.error = await self._rollback(workflow, execution, params, base, halt.step)
            else:
                execution.error = f"Step {halt.step.id} failed: {halt.result.error or 'unknown error'}"
            logger.warning("Workflow '{}' halted: {}", workflow.id, execution.error)
        except Exception as exc:
            logger.exception("Workflow '{}' crashed", workflow.id)
            execution.status = "failed"
            execution.error = f"{exc.__class__.__name__}: {exc}"
        else:
            execution.status = "completed"

    @staticmethod
    def _bind_parameters(workflow: Workflow, params: dict[str, Any]) -> dict[str, Any]:
        bound = dict(params)
        missing: list[str] = []
        for param in workflow.metadata.parameters:
            if param.name not in bound:
                if param.default is not None:
                    bound[param.name] = param.default
                elif param.required:
                    missing.append(param.name)
                continue
            value = bound[param.name]
            if param.type == "choice" and param.choices and str(value) not in param.choices:
                raise WorkflowValidationError(
                    f"Parameter '{param.name}' must be one of {', '.join(param.choices)}; got {value!r}"
                )
        if missing:
            raise WorkflowValidationError(f"Missing required parameters: {', '.join(missing)}")
        return bound

    async def _walk(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        params: dict[str, Any],
        base: ExecutionContext,
    ) -> None:
        units, unit_of = build_plan(workflow)
        budget = self.config.max_step_transitions
        transitions = 0
        index = 0
        while index < len(units):
            transitions += 1
            if transitions > budget:
                raise RuntimeError(
                    f"Exceeded {budget} step transitions; check on_success/on_failure routing for cycles"
                )
            unit = units[index]
            active = [s for s in unit.steps if s.condition is None or s.condition.evaluate(params)]
            for skipped in unit.steps:
                if skipped not in active:
                    logger.debug("Skipping step {}: condition '{}' is false", skipped.id, skipped.condition)
            if not active:
                index += 1
                continue

            execution.current_step = active[0].id
            if len(active) == 1:
                results = [await self._run_step(workflow, execution, active[0], params, base)]
            else:
                results = await self._run_group(workflow, execution, active, params, base)

            jump: Optional[str] = None
            for step, result in zip(active, results):
                execution.results.pop(step.id, None)
                execution.results[step.id] = result
            for step, result in zip(active, results):
                target = self._route(step, result)
                if target in (ABORT, ROLLBACK):
                    raise _Halt(step, target, result)
                if target is not None and jump is None:
                    jump = target

            if jump is not None and jump in unit_of:
                logger.debug("Routing to step {}", jump)
                index = unit_of[jump]
            else:
                index += 1

    @staticmethod
    def _route(step: WorkflowStep, result: ToolResult) -> Optional[str]:
        """Return ``abort``/``rollback``, a step id to jump to, or None to continue."""
        target = step.on_success if result.success else step.on_failure
        if target is None or target == CONTINUE:
            return None
        if result.success and target in (ABORT, ROLLBACK):
            return None
        return target

    async def _run_group(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        steps: list[WorkflowStep],
        params: dict[str, Any],
        base: ExecutionContext,
    ) -> list[ToolResult]:
        limit = min(len(steps), self.config.max_parallel_steps or len(steps))
        semaphore = asyncio.Semaphore(limit)
        logger.info("Running parallel group [{}] (concurrency {})", ", ".join(s.id for s in steps), limit)

        async def _bounded(step: WorkflowStep) -> ToolResult:
            async with semaphore:
                return await self._run_step(workflow, execution, step, params, base)

        return list(await asyncio.gather(*(_bounded(s) for s in steps)))

    async def _run_step(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        step: WorkflowStep,
        params: dict[str, Any],
        base: ExecutionContext,
    ) -> ToolResult:
        """Run one step with its approval gate, retry budget and timeout.

        Faults while preparing the call or consulting the approval system are
        returned as the step's failed result, never raised.
        """
        try:
            return await self._run_prepared_step(workflow, execution, step, params, base)
        except Exception as exc:
            logger.warning("Step {} could not be run: {!r}", step.id, exc)
            return ToolResult(success=False, error=f"Step {step.id}: {exc.__class__.__name__}: {exc}")

    async def _run_prepared_step(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        step: WorkflowStep,
        params: dict[str, Any],
        base: ExecutionContext,
    ) -> ToolResult:
        timeout = step.timeout if step.timeout is not None else self.config.default_step_timeout
        args = resolve_args(step.args, params)
        tool_config = build_tool_config(step.tool, args, default_timeout=timeout)
        context = ExecutionContext(
            session_id=base.session_id or execution.execution_id,
            approved=base.approved,
            dry_run=base.dry_run,
            sandbox=base.sandbox,
            working_dir=base.working_dir,
        )

        if (step.requires_approval or tool_config.requires_approval) and not context.approved:
            if self.approval_system is None:
                return ToolResult(success=False, error=f"Step {step.id} requires approval")
            request = ApprovalRequest(
                workflow_id=workflow.id,
                execution_id=execution.execution_id,
                step_id=step.id,
                tool=step.tool,
                description=step.description,
                args=args,
            )
            if not await ask_approval(self.approval_system, request):
                return ToolResult(success=False, error=f"Approval denied for step {step.id}")
            context.approved = True

        attempts = 1 + self.config.step_retries(step.retry)
        result = ToolResult(success=False, error="not run")
        for attempt in range(1, attempts + 1):
            logger.debug("Step {} attempt {}/{} ({})", step.id, attempt, attempts, step.tool)
            result = await self._attempt(step, tool_config, context, timeout)
            if result.success:
                break
            logger.warning(
                "Step {} failed (attempt {}/{}): {}",
                step.id,
                attempt,
                attempts,
                truncate(result.error or ""),
            )
        return result

    async def _attempt(self, step: WorkflowStep, tool_config, context: ExecutionContext, timeout: float) -> ToolResult:
        start = time.monotonic()
        try:
            return await asyncio.wait_for(invoke_tool(self.tool_executor, tool_config, context), timeout=timeout)
        except asyncio.TimeoutError:
            return ToolResult(
                success=False,
                error=f"Step {step.id} timed out after {timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
                duration_seconds=time.monotonic() - start,
            )
        except Exception as exc:
            logger.debug("Tool {} raised {!r}", step.tool, exc)
            return ToolResult(
                success=False,
                error=f"{exc.__class__.__name__}: {exc}",
                duration_seconds=time.monotonic() - start,
            )

    # -- rollback ------------------------------------------------------------

    async def _rollback(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        params: dict[str, Any],
        base: ExecutionContext,
        failed: WorkflowStep,
    ) -> str:
        message = f"Step {failed.id} failed, rollback triggered"
        reserved = reserved_rollback_ids(workflow)
        steps = list(workflow.rollback_steps) or [s for s in workflow.steps if s.id in reserved]
        if not steps:
            logger.warning("Workflow '{}' has no rollback step", workflow.id)
            return message + " (no rollback step defined)"

        failures: list[str] = []
        for step in steps:
            if step.condition is not None and not step.condition.evaluate(params):
                continue
            execution.current_step = step.id
            logger.info("Running rollback step {}", step.id)
            result = await self._run_step(workflow, execution, step, params, base)
            execution.rollback_results[step.id] = result
            if not result.success:
                failures.append(step.id)
        if failures:
            message += f"; rollback step(s) failed: {', '.join(failures)}"
        return message
