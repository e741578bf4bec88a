"""Fire-and-forget event bus for observability. Never a source of control flow."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable

from .models import OrchestratorEvent

logger = logging.getLogger("orchestrator")

Subscriber = Callable[[OrchestratorEvent], Any]


class EventType(str, Enum):
    FEATURE_START = "auto_mode_feature_start"
    PROGRESS = "auto_mode_progress"
    TOOL = "auto_mode_tool"
    FEATURE_COMPLETE = "auto_mode_feature_complete"
    ERROR = "auto_mode_error"

    PLANNING_STARTED = "planning_started"
    PLAN_QUALITY_GATE_FAILED = "plan_quality_gate_failed"
    PLAN_APPROVAL_REQUIRED = "plan_approval_required"
    PLAN_AUTO_APPROVED = "plan_auto_approved"
    PLAN_APPROVED = "plan_approved"
    PLAN_REJECTED = "plan_rejected"
    PLAN_REVISION_REQUESTED = "plan_revision_requested"

    TASK_STARTED = "auto_mode_task_started"
    TASK_COMPLETE = "auto_mode_task_complete"
    PHASE_COMPLETE = "auto_mode_phase_complete"

    PIPELINE_STEP_STARTED = "pipeline_step_started"
    PIPELINE_STEP_COMPLETE = "pipeline_step_complete"

    QUALITY_METRICS = "auto_mode_quality_metrics"
    JUDGE_RESULT = "auto_mode_judge_result"
    METRICS_UPDATED = "auto_mode_metrics_updated"

    AUTO_MODE_STARTED = "auto_mode_started"
    AUTO_MODE_STOPPED = "auto_mode_stopped"
    AUTO_MODE_IDLE = "auto_mode_idle"
    AUTO_MODE_PAUSED = "auto_mode_paused_failures"
    RESUMING_FEATURES = "auto_mode_resuming_features"


class EventBus:
    """Publishes events to subscribers. Subscriber errors are logged and dropped."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event_type: EventType | str, **data: Any) -> None:
        type_name = event_type.value if isinstance(event_type, EventType) else event_type
        event = OrchestratorEvent(type=type_name, data=data)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {type_name}")


class EventRecorder:
    """Subscriber that keeps every event. Handy for status views and tests."""

    def __init__(self) -> None:
        self.events: list[OrchestratorEvent] = []

    def __call__(self, event: OrchestratorEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType | str) -> list[OrchestratorEvent]:
        type_name = event_type.value if isinstance(event_type, EventType) else event_type
        return [e for e in self.events if e.type == type_name]
