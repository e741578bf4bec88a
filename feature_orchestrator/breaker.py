"""Consecutive-failure circuit breaker for the auto-loop."""

from __future__ import annotations

import logging
import time
from typing import Callable, NamedTuple

logger = logging.getLogger("orchestrator")

FATAL_ERROR_TYPES = frozenset({"quota_exhausted", "rate_limit"})


class _Failure(NamedTuple):
    at: float
    error_type: str
    message: str


class FailureTracker:
    """Counts failures inside a rolling window.

    ``record_failure`` returns True when the loop should pause: the window holds
    ``threshold`` failures, or the error is a quota / rate-limit error. A success
    clears the window.
    """

    def __init__(
        self,
        threshold: int = 3,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._failures: list[_Failure] = []
        self.paused = False

    @property
    def failure_count(self) -> int:
        return len(self._failures)

    def record_failure(self, error_type: str, message: str) -> bool:
        now = self._clock()
        self._failures.append(_Failure(now, error_type, message))
        self._failures = [f for f in self._failures if now - f.at < self.window_seconds]

        if len(self._failures) >= self.threshold:
            return True
        return error_type in FATAL_ERROR_TYPES

    def record_success(self) -> None:
        if self._failures:
            logger.debug(f"Success after {len(self._failures)} failures, resetting breaker")
        self._failures = []

    def mark_paused(self) -> bool:
        """Latch the paused flag. Returns False if it was already set."""
        if self.paused:
            return False
        self.paused = True
        return True

    def reset(self) -> None:
        self._failures = []
        self.paused = False

    def pause_message(self, error_type: str) -> str:
        if len(self._failures) >= self.threshold:
            return (
                f"Auto mode paused: {len(self._failures)} consecutive failures detected. "
                "This may indicate a quota limit or API issue."
            )
        return f"Auto mode paused: {error_type.replace('_', ' ')} error detected."
