"""Pending plan approvals: one suspended waiter per feature, resolved exactly once."""

from __future__ import annotations

import asyncio
import logging
from typing import NamedTuple

from pydantic import BaseModel

from .errors import ApprovalError, ApprovalTimeoutError, FeatureAbortedError

logger = logging.getLogger("orchestrator")


class ApprovalDecision(BaseModel):
    approved: bool
    edited_plan: str | None = None
    feedback: str | None = None


class _Waiter(NamedTuple):
    future: asyncio.Future[ApprovalDecision]
    timer: asyncio.TimerHandle


class ApprovalRegistry:
    """Owned by the orchestrator. Not a process-wide singleton."""

    def __init__(self) -> None:
        self._pending: dict[str, _Waiter] = {}

    def has_pending(self, feature_id: str) -> bool:
        return feature_id in self._pending

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def register(self, feature_id: str, timeout: float) -> asyncio.Future[ApprovalDecision]:
        """Arm a waiter and its timeout timer. Raises if one is already outstanding."""
        if feature_id in self._pending:
            raise ApprovalError(feature_id, f"Plan approval already pending for feature {feature_id}")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[ApprovalDecision] = loop.create_future()
        timer = loop.call_later(timeout, self._expire, feature_id, future, timeout)
        self._pending[feature_id] = _Waiter(future, timer)
        future.add_done_callback(lambda f: self._discard(feature_id, f))
        return future

    def resolve(self, feature_id: str, decision: ApprovalDecision) -> bool:
        waiter = self._pop(feature_id)
        if waiter is None or waiter.future.done():
            return False
        waiter.future.set_result(decision)
        return True

    def reject(self, feature_id: str, error: BaseException) -> bool:
        waiter = self._pop(feature_id)
        if waiter is None or waiter.future.done():
            return False
        waiter.future.set_exception(error)
        return True

    def cancel(self, feature_id: str) -> bool:
        """Force-reject the waiter because the feature was stopped."""
        return self.reject(feature_id, FeatureAbortedError("Plan approval cancelled: feature stopped"))

    def _pop(self, feature_id: str) -> _Waiter | None:
        waiter = self._pending.pop(feature_id, None)
        if waiter is not None:
            waiter.timer.cancel()
        return waiter

    def _discard(self, feature_id: str, future: asyncio.Future[ApprovalDecision]) -> None:
        waiter = self._pending.get(feature_id)
        if waiter is not None and waiter.future is future:
            self._pop(feature_id)

    def _expire(self, feature_id: str, future: asyncio.Future[ApprovalDecision], timeout: float) -> None:
        waiter = self._pending.get(feature_id)
        if waiter is None or waiter.future is not future:
            return
        logger.warning(f"Plan approval for {feature_id} timed out after {timeout:.0f}s")
        self.reject(
            feature_id,
            ApprovalTimeoutError(feature_id, f"Plan approval timed out after {timeout / 60:.0f} minutes"),
        )
