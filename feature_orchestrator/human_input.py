"""Human-in-the-loop: terminal prompts for plan approval."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Literal, NamedTuple

from .errors import OrchestratorError
from .events import EventType

if TYPE_CHECKING:
    from .models import OrchestratorEvent
    from .orchestrator import FeatureOrchestrator

logger = logging.getLogger("orchestrator")

PLAN_PREVIEW_LINES = 60


class ApprovalChoice(NamedTuple):
    action: Literal["approve", "reject", "cancel"]
    feedback: str | None = None


def parse_choice(response: str, feedback: str | None = None) -> ApprovalChoice:
    """Map a terminal answer to an action. Anything unrecognised approves."""
    r = response.strip().lower()
    if r.startswith("r"):
        return ApprovalChoice("reject", feedback.strip() if feedback and feedback.strip() else None)
    if r.startswith("c"):
        return ApprovalChoice("cancel")
    return ApprovalChoice("approve", feedback.strip() if feedback and feedback.strip() else None)


class TerminalApprovalHandler:
    """Answers ``plan_approval_required`` events from stdin, one plan at a time.

    Rejecting with feedback asks the planner for a revised plan; cancelling is a
    rejection without feedback and sends the feature back to the backlog.
    """

    def __init__(self, orchestrator: FeatureOrchestrator, input_timeout: float | None = None):
        self.orchestrator = orchestrator
        self.input_timeout = input_timeout
        self._queue: asyncio.Queue[OrchestratorEvent] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._unsubscribe = orchestrator.events.subscribe(self._on_event)

    def _on_event(self, event: OrchestratorEvent) -> None:
        if event.type != EventType.PLAN_APPROVAL_REQUIRED.value:
            return
        self._queue.put_nowait(event)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._prompt(event)
            except asyncio.TimeoutError:
                print(f"\n  [TIMEOUT] No response after {self.input_timeout:.0f}s, plan left pending.")
            except OrchestratorError as e:
                logger.error(f"Could not deliver approval decision: {e}")

    async def _prompt(self, event: OrchestratorEvent) -> None:
        feature_id = event.data.get("feature_id", "?")
        content = event.data.get("plan_content") or ""
        version = event.data.get("plan_version", 1)

        print("\n" + "=" * 60)
        print(f"  PLAN APPROVAL: {feature_id} (v{version})")
        print("=" * 60)
        lines = content.splitlines()
        for line in lines[:PLAN_PREVIEW_LINES]:
            print(f"  {line}")
        if len(lines) > PLAN_PREVIEW_LINES:
            print(f"  ... ({len(lines) - PLAN_PREVIEW_LINES} more lines)")
        print("-" * 60)
        print("Options: [a]pprove  [r]eject with feedback  [c]ancel")

        response = await self._ask("Choice: ")
        feedback = None
        if response.strip().lower().startswith(("a", "r")) or not response.strip():
            feedback = await self._ask("Feedback (optional): ")
        choice = parse_choice(response, feedback)

        if not self.orchestrator.approvals.has_pending(feature_id):
            print(f"  Plan for {feature_id} is no longer waiting for approval.")
            return

        approved = choice.action == "approve"
        self.orchestrator.resolve_plan_approval(feature_id, approved, feedback=choice.feedback)
        print("=" * 60 + "\n")

    async def _ask(self, prompt: str) -> str:
        if self.input_timeout is None:
            return await _async_input(prompt)
        return await asyncio.wait_for(_async_input(prompt), timeout=self.input_timeout)

    def close(self) -> None:
        self._unsubscribe()
        if self._worker is not None:
            self._worker.cancel()


async def _async_input(prompt: str) -> str:
    """Non-blocking input that works with asyncio."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: input(prompt))
