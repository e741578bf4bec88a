"""Per-run metrics history and rolling aggregates."""

from __future__ import annotations

import json
import logging
import math
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from pydantic import ValidationError

from .events import EventType
from .models import (
    MetricsRun,
    MetricsStore,
    MetricsSummary,
    StageDurations,
    TaskComplexity,
)
from .state import atomic_write_json
from .worktree import run_git

if TYPE_CHECKING:
    from .events import EventBus
    from .models import Feature

logger = logging.getLogger("orchestrator")

METRICS_FILE = Path("metrics") / "auto-mode-metrics.json"
GIT_DIFF_TIMEOUT = 30.0
STAGES = ("planning", "execution", "pipeline", "verification", "judge")


class MetricsSnapshot(MetricsStore):
    summary: MetricsSummary


def feature_complexity(feature: Feature) -> TaskComplexity | None:
    """Bucket the plan's average task weight into low / medium / high."""
    tasks = feature.plan_spec.tasks if feature.plan_spec else []
    if not tasks:
        return None
    average = sum(t.weight for t in tasks) / len(tasks)
    if average <= 1.5:
        return TaskComplexity.LOW
    if average <= 2.3:
        return TaskComplexity.MEDIUM
    return TaskComplexity.HIGH


def count_changed_lines(numstat: str) -> int:
    changed = 0
    for line in numstat.splitlines():
        parts = line.strip().split("\t")
        if len(parts) < 2:
            continue
        for value in parts[:2]:
            if value.isdigit():
                changed += int(value)
    return changed


async def estimate_token_efficiency(agent_output: str, working_dir: Path) -> float | None:
    """Approximate output tokens per changed line of code (``git diff --numstat``)."""
    if not agent_output.strip():
        return None
    numstat = await run_git(["diff", "--numstat"], working_dir, GIT_DIFF_TIMEOUT)
    if numstat is None:
        return None

    changed = count_changed_lines(numstat)
    if changed == 0:
        return None
    return round(math.ceil(len(agent_output) / 4) / changed, 2)


def summarize_runs(runs: list[MetricsRun], utilization: float | None = None) -> MetricsSummary:
    completed = [r for r in runs if r.status != "running" and r.duration_ms is not None]
    total = len(completed)
    if total == 0:
        return MetricsSummary(utilization=utilization)

    by_complexity: dict[str, list[int]] = {}
    for run in completed:
        if run.complexity is not None:
            by_complexity.setdefault(run.complexity.value, []).append(run.duration_ms or 0)

    token_values = [r.token_efficiency for r in completed if r.token_efficiency is not None]

    bottleneck = None
    bottleneck_value = 0.0
    for stage in STAGES:
        values = [
            getattr(r.stage_durations, f"{stage}_ms")
            for r in completed
            if getattr(r.stage_durations, f"{stage}_ms") is not None
        ]
        if values:
            mean = sum(values) / len(values)
            if mean > bottleneck_value:
                bottleneck_value = mean
                bottleneck = stage

    return MetricsSummary(
        total_runs=total,
        success_rate=sum(1 for r in completed if r.status == "success") / total,
        revision_rate=sum(r.revisions for r in completed) / total,
        average_duration_ms=round(sum(r.duration_ms or 0 for r in completed) / total),
        average_duration_by_complexity={
            key: round(sum(values) / len(values)) for key, values in by_complexity.items()
        },
        token_efficiency=sum(token_values) / len(token_values) if token_values else None,
        utilization=utilization,
        bottleneck=bottleneck,
    )


class MetricsCollector:
    """Owns the metrics JSON for one project and keeps it cached in memory."""

    def __init__(
        self,
        state_dir: Path,
        events: EventBus | None = None,
        max_history: int = 200,
        utilization: Callable[[], float | None] | None = None,
    ):
        self.path = state_dir / METRICS_FILE
        self.events = events
        self.max_history = max_history
        self._utilization = utilization
        self._store: MetricsStore | None = None

    def load(self) -> MetricsStore:
        if self._store is not None:
            return self._store
        store = MetricsStore()
        if self.path.exists():
            try:
                with open(self.path) as f:
                    store = MetricsStore.model_validate(json.load(f))
            except (json.JSONDecodeError, ValidationError, OSError) as e:
                logger.warning(f"Starting a fresh metrics history, could not read {self.path}: {e}")
        self._store = store
        return store

    def _save(self, store: MetricsStore) -> None:
        store.updated_at = datetime.now()
        if len(store.runs) > self.max_history:
            store.runs = store.runs[-self.max_history:]
        atomic_write_json(self.path, store.model_dump(mode="json", exclude_none=True))
        self._store = store

        if self.events is not None:
            self.events.emit(
                EventType.METRICS_UPDATED,
                summary=self.summarize().model_dump(mode="json"),
                latest_run=store.runs[-1].model_dump(mode="json") if store.runs else None,
            )

    def start_run(self, feature: Feature, model: str | None = None, provider: str | None = None) -> str:
        run_id = f"{feature.id}-{int(time.time() * 1000):x}"
        store = self.load()
        store.runs.append(MetricsRun(
            run_id=run_id,
            feature_id=feature.id,
            title=feature.title,
            started_at=datetime.now(),
            complexity=feature_complexity(feature),
            model=model,
            provider=provider,
            stage_durations=StageDurations(),
        ))
        self._save(store)
        return run_id

    def update_run(self, run_id: str, updater: Callable[[MetricsRun], None]) -> MetricsRun | None:
        store = self.load()
        run = next((r for r in store.runs if r.run_id == run_id), None)
        if run is None:
            logger.debug(f"Metrics run {run_id} not found (history trimmed?)")
            return None
        updater(run)
        self._save(store)
        return run

    def add_stage_time(self, run_id: str, stage: str, ms: int) -> None:
        self.update_run(run_id, lambda run: run.stage_durations.add(stage, ms))

    def finish_run(self, run_id: str, success: bool) -> None:
        def _finish(run: MetricsRun) -> None:
            if run.status != "running":
                return
            run.completed_at = datetime.now()
            run.duration_ms = int((run.completed_at - run.started_at).total_seconds() * 1000)
            run.status = "success" if success else "failed"

        self.update_run(run_id, _finish)

    def summarize(self) -> MetricsSummary:
        utilization = self._utilization() if self._utilization is not None else None
        return summarize_runs(self.load().runs, utilization)

    def snapshot(self) -> MetricsSnapshot:
        store = self.load()
        return MetricsSnapshot(**store.model_dump(), summary=self.summarize())
