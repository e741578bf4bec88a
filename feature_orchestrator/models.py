"""Data models for the orchestrator."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

PIPELINE_STATUS_PREFIX = "pipeline_"


class FeatureStatus(str, Enum):
    BACKLOG = "backlog"
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"
    COMPLETED = "completed"


class PlanningMode(str, Enum):
    SKIP = "skip"
    LITE = "lite"
    SPEC = "spec"
    FULL = "full"


class PlanSpecStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


class TaskComplexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


COMPLEXITY_WEIGHTS: dict[TaskComplexity, int] = {
    TaskComplexity.LOW: 1,
    TaskComplexity.MEDIUM: 2,
    TaskComplexity.HIGH: 3,
}


class Task(BaseModel):
    """One scheduled unit of implementation work parsed out of a plan."""

    id: str
    description: str
    file_path: str | None = None
    phase: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    complexity: TaskComplexity | None = None
    status: TaskStatus = TaskStatus.PENDING

    @property
    def weight(self) -> int:
        return COMPLEXITY_WEIGHTS[self.complexity or TaskComplexity.MEDIUM]


class PlanSpec(BaseModel):
    """Generated implementation plan plus its approval/task-tracking state."""

    status: PlanSpecStatus = PlanSpecStatus.PENDING
    content: str | None = None
    version: int = 1
    generated_at: datetime | None = None
    approved_at: datetime | None = None
    reviewed_by_user: bool = False
    tasks: list[Task] = Field(default_factory=list)
    tasks_total: int = 0
    tasks_completed: int = 0
    current_task_ids: list[str] = Field(default_factory=list)
    task_state_version: int = 0
    quality_issues: list[str] = Field(default_factory=list)


class Feature(BaseModel):
    """A unit of work tracked through the lifecycle. Unknown keys survive a round trip."""

    model_config = ConfigDict(extra="allow")

    id: str
    title: str | None = None
    description: str = ""
    spec: str | None = None
    status: str = FeatureStatus.BACKLOG.value
    planning_mode: PlanningMode = PlanningMode.SKIP
    require_plan_approval: bool = False
    skip_tests: bool = False
    branch_name: str | None = None
    model: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    plan_spec: PlanSpec | None = None
    updated_at: datetime | None = None
    just_finished_at: datetime | None = None

    @property
    def is_pipeline_status(self) -> bool:
        return self.status.startswith(PIPELINE_STATUS_PREFIX)


class PipelineStep(BaseModel):
    id: str
    name: str
    order: int = 0
    instructions: str = ""


class PipelineConfig(BaseModel):
    version: int = 1
    steps: list[PipelineStep] = Field(default_factory=list)

    def sorted_steps(self) -> list[PipelineStep]:
        return sorted(self.steps, key=lambda step: step.order)


class ExecutionState(BaseModel):
    """Durable snapshot of in-flight work, read once at startup for recovery."""

    version: int = 1
    auto_loop_was_running: bool = False
    max_concurrency: int = 3
    project_path: str = ""
    running_feature_ids: list[str] = Field(default_factory=list)
    saved_at: datetime | None = None


QualityGateStatus = Literal["pass", "fail", "skipped"]


class QualityGateResult(BaseModel):
    name: str
    status: QualityGateStatus
    duration_ms: int | None = None
    output: str | None = None


class QualityCheckOutcome(BaseModel):
    passed: bool
    results: list[QualityGateResult] = Field(default_factory=list)

    @property
    def failing(self) -> list[QualityGateResult]:
        return [r for r in self.results if r.status == "fail"]


class JudgeVerdict(str, Enum):
    PASS = "pass"
    REVISE = "revise"
    FAIL = "fail"


class JudgeResult(BaseModel):
    verdict: JudgeVerdict
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    confidence: float | None = None


class StageDurations(BaseModel):
    planning_ms: int | None = None
    execution_ms: int | None = None
    pipeline_ms: int | None = None
    verification_ms: int | None = None
    judge_ms: int | None = None

    def add(self, stage: str, ms: int) -> None:
        key = f"{stage}_ms"
        setattr(self, key, (getattr(self, key) or 0) + ms)


MetricsRunStatus = Literal["running", "success", "failed"]


class MetricsRun(BaseModel):
    """One row per feature execution attempt."""

    run_id: str
    feature_id: str
    title: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    status: MetricsRunStatus = "running"
    complexity: TaskComplexity | None = None
    attempts: int = 1
    revisions: int = 0
    model: str | None = None
    provider: str | None = None
    stage_durations: StageDurations = Field(default_factory=StageDurations)
    quality: list[QualityGateResult] = Field(default_factory=list)
    token_efficiency: float | None = None


class MetricsStore(BaseModel):
    version: int = 1
    updated_at: datetime = Field(default_factory=datetime.now)
    runs: list[MetricsRun] = Field(default_factory=list)


class MetricsSummary(BaseModel):
    total_runs: int = 0
    success_rate: float = 0.0
    revision_rate: float = 0.0
    average_duration_ms: int | None = None
    average_duration_by_complexity: dict[str, int] = Field(default_factory=dict)
    token_efficiency: float | None = None
    utilization: float | None = None
    bottleneck: str | None = None


class ProgressEntry(BaseModel):
    """A single entry in the progress log."""

    timestamp: datetime
    feature_id: str
    feature_title: str
    status: str
    summary: str
    error: str | None = None


class OrchestratorEvent(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
