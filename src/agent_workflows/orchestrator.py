"""Composition root: workflows plus isolated, conflict-aware agent dispatch.

One ``Orchestrator`` owns the workflow executor (and through it the workflow
and execution tables) and the conflict detector. Construct it once and pass it
where it is needed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from loguru import logger

from .config import OrchestratorConfig
from .conflicts import ConflictDetector
from .errors import SandboxError
from .git_coordinator import GitCoordinator
from .models import Agent, AgentResult, ConflictReport, ExecutionContext, SandboxExecutionResult, Workflow, WorkflowExecution
from .roles import default_timeout_for
from .sandbox import AgentSandbox, IsolationStrategy
from .scoring import score_results
from .tools import ShellToolExecutor
from .utils import _new_id
from .workflows import WorkflowExecutor

EventCallback = Callable[[str, dict[str, Any]], None]


class Orchestrator:
    """Runs workflows and dispatches agents into their own sandboxes."""

    def __init__(
        self,
        tool_executor: Optional[Any] = None,
        approval_system: Optional[Any] = None,
        config: Optional[OrchestratorConfig] = None,
        on_event: Optional[EventCallback] = None,
        git_coordinator: Optional[GitCoordinator] = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.executor = WorkflowExecutor(
            tool_executor or ShellToolExecutor(),
            approval_system=approval_system,
            config=self.config,
        )
        self.detector = ConflictDetector()
        self.git_coordinator = git_coordinator
        self._on_event = on_event

    # -- workflows -----------------------------------------------------------

    def register_workflow(self, workflow: Workflow) -> None:
        self.executor.register(workflow)

    def load_workflow(self, path: Path) -> Workflow:
        return self.executor.load_from_file(path)

    def list_workflows(self) -> list[dict[str, Any]]:
        return self.executor.list()

    async def run_workflow(
        self,
        workflow_id: str,
        params: Optional[dict[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
    ) -> WorkflowExecution:
        return await self.executor.execute(workflow_id, params, context)

    def cancel_workflow(self, execution_id: str) -> bool:
        return self.executor.cancel(execution_id)

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        return self.executor.get_execution(execution_id)

    # -- agents --------------------------------------------------------------

    def check_conflicts(self, agents: Sequence[Agent]) -> list[tuple[int, int, ConflictReport]]:
        return self.detector.pairwise(agents)

    def plan(self, agents: Sequence[Agent], allow_conflicts: bool = False) -> list[list[Agent]]:
        return self.detector.plan_batches(self._prepare(agents), allow_conflicts=allow_conflicts)

    def _prepare(self, agents: Sequence[Agent]) -> list[Agent]:
        prepared = []
        for agent in agents:
            timeout = agent.timeout
            if timeout is None:
                timeout = default_timeout_for(agent.role, self.config.default_agent_timeout)
            prepared.append(replace(agent, id=agent.id or _new_id("agent"), timeout=timeout))
        return prepared

    async def dispatch_agents(
        self,
        agents: Sequence[Agent],
        *,
        max_parallel: Optional[int] = None,
        strategy: Optional[IsolationStrategy | str] = None,
        allow_conflicts: bool = False,
        require_consensus: bool = False,
    ) -> list[AgentResult]:
        """Run every agent in its own sandbox and return results in input order.

        Agents whose declared files overlap are placed in separate batches and
        run one batch after another; within a batch at most *max_parallel*
        agents run at once.

        Raises:
            ValueError: If *agents* is empty or *max_parallel* is below 1.
        """
        if not agents:
            raise ValueError("At least one agent is required")
        limit = max_parallel if max_parallel is not None else self.config.max_concurrent_agents
        if limit < 1:
            raise ValueError(f"max_parallel must be >= 1, got {limit}")
        isolation = IsolationStrategy.parse(strategy or self.config.isolation_strategy)

        prepared = self._prepare(agents)
        batches = self.detector.plan_batches(prepared, allow_conflicts=allow_conflicts)
        position = {id(agent): index for index, agent in enumerate(prepared)}
        self._notify("execution_started", {
            "agent_count": len(prepared),
            "batch_count": len(batches),
            "strategy": isolation.value,
        })

        semaphore = asyncio.Semaphore(limit)
        results: list[Optional[AgentResult]] = [None] * len(prepared)
        for number, batch in enumerate(batches, start=1):
            logger.info("Dispatching batch {}/{} ({} agents)", number, len(batches), len(batch))
            outcomes = await asyncio.gather(*(self._run_agent(a, isolation, semaphore) for a in batch))
            for agent, result in zip(batch, outcomes):
                results[position[id(agent)]] = result
            self._check_sandbox_dirs(number, outcomes)

        final = [r for r in results if r is not None]
        if require_consensus:
            score_results(final)
        self._notify("execution_completed", {"results": [r.to_dict() for r in final]})
        return final

    def _check_sandbox_dirs(self, batch_number: int, outcomes: Sequence[AgentResult]) -> list[str]:
        """Warn when agents of one batch ran in the same sandbox directory."""
        paths = [r.sandbox_path for r in outcomes if r.sandbox_path]
        conflicts = self.detector.detect_env_conflicts(paths)
        if conflicts:
            logger.warning("Batch {} sandbox conflicts: {} ({})", batch_number, "; ".join(conflicts), paths)
            self._notify("env_conflicts", {
                "batch": batch_number,
                "conflicts": conflicts,
                "sandbox_paths": paths,
            })
        return conflicts

    async def _run_agent(
        self,
        agent: Agent,
        strategy: IsolationStrategy,
        semaphore: asyncio.Semaphore,
    ) -> AgentResult:
        async with semaphore:
            agent_id = agent.id or _new_id("agent")
            self._notify("agent_started", {"agent_id": agent_id, "role": agent.role})
            start = time.monotonic()
            sandbox = AgentSandbox(
                strategy,
                agent.context.working_dir,
                sandbox_root=self.config.sandbox_root,
                git_coordinator=self.git_coordinator,
                default_timeout=agent.timeout or self.config.default_agent_timeout,
            )
            sandbox_path: Optional[str] = None
            try:
                async with sandbox.session(agent_id) as ctx:
                    sandbox_path = str(ctx.work_dir)
                    outcome = await sandbox.execute_in_sandbox(replace(agent, sandbox=sandbox_path))
            except SandboxError as exc:
                outcome = SandboxExecutionResult(output="", artifacts=[], exit_code=1, error=str(exc))
            except Exception as exc:
                logger.exception("Agent {} crashed outside its sandbox run", agent_id)
                outcome = SandboxExecutionResult(
                    output="", artifacts=[], exit_code=1, error=f"{exc.__class__.__name__}: {exc}"
                )

            result = AgentResult(
                agent_id=agent_id,
                role=agent.role,
                success=outcome.succeeded,
                output=outcome.output,
                execution_time=time.monotonic() - start,
                error=outcome.error,
                artifacts=list(outcome.artifacts),
                exit_code=outcome.exit_code,
                sandbox_path=sandbox_path,
            )
            if result.success:
                self._notify("agent_completed", {
                    "agent_id": agent_id,
                    "role": agent.role,
                    "execution_time": result.execution_time,
                })
            else:
                self._notify("agent_failed", {
                    "agent_id": agent_id,
                    "role": agent.role,
                    "error": result.error,
                    "execution_time": result.execution_time,
                })
            return result

    def _notify(self, event_type: str, data: dict[str, Any]) -> None:
        """Fire an event notification if a callback is registered."""
        if self._on_event:
            try:
                self._on_event(event_type, data)
            except Exception:
                logger.exception("Error in orchestrator event callback")
