"""Approval gate consulted before running steps that need sign-off."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Protocol, Union, runtime_checkable

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm


@dataclass
class ApprovalRequest:
    workflow_id: str
    execution_id: str
    step_id: str
    tool: str
    description: str = ""
    args: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ApprovalSystem(Protocol):
    def request_approval(self, request: ApprovalRequest) -> Union[bool, Awaitable[bool]]:
        ...


class AutoApproval:
    """Answer every request with a fixed decision."""

    def __init__(self, decision: bool = True) -> None:
        self.decision = decision
        self.requests: list[ApprovalRequest] = []

    def request_approval(self, request: ApprovalRequest) -> bool:
        self.requests.append(request)
        return self.decision


class ConsoleApproval:
    """Ask on the terminal before a step runs."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def request_approval(self, request: ApprovalRequest) -> bool:
        body = f"[bold]{request.step_id}[/bold] → {request.tool}"
        if request.description:
            body += f"\n{request.description}"
        if request.args:
            body += "\n" + "\n".join(f"  {k} = {v}" for k, v in request.args.items())
        self.console.print(Panel(body, title=f"Approval required ({request.workflow_id})"))
        return Confirm.ask("Run this step?", console=self.console, default=False)


async def ask_approval(system: Any, request: ApprovalRequest) -> bool:
    """Consult *system*, which may answer synchronously or asynchronously."""
    if inspect.iscoroutinefunction(system.request_approval):
        decision = await system.request_approval(request)
    else:
        decision = await asyncio.to_thread(system.request_approval, request)
        if inspect.isawaitable(decision):
            decision = await decision
    logger.info("Approval for step {} ({}): {}", request.step_id, request.workflow_id, bool(decision))
    return bool(decision)
