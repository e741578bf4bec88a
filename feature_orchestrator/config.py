"""Configuration loading: defaults → orchestrator.toml → CLI flags."""

from __future__ import annotations

import sys

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

MAX_TASK_CONCURRENCY_CAP = 8


class QualityCheck(BaseModel):
    """A single verification command run by the quality gate."""

    name: str
    command: str


def _default_quality_checks() -> list[QualityCheck]:
    return [
        QualityCheck(name="Lint", command="npm run lint"),
        QualityCheck(name="Type check", command="npm run typecheck"),
        QualityCheck(name="Tests", command="npm test"),
        QualityCheck(name="Build", command="npm run build"),
    ]


class OrchestratorConfig(BaseModel):
    """All orchestrator settings. Loaded from defaults, then orchestrator.toml, then CLI flags."""

    # Project paths
    project_dir: Path = Field(default_factory=lambda: Path.cwd())
    data_dir: Path = Path(".orchestrator")

    # Models per role
    planner_model: str = "opus"
    worker_model: str = "sonnet"
    judge_model: str = "sonnet"
    planner_system_prompt: str | None = None
    worker_system_prompt: str | None = None
    judge_system_prompt: str | None = None

    # Concurrency
    max_concurrency: int = 3
    max_task_concurrency: int = 3
    use_worktrees: bool = True
    skip_verification_in_auto_mode: bool = False

    # Bounded retry loops
    max_plan_quality_revisions: int = 2
    max_subplanning_passes: int = 1
    task_refinement_count_threshold: int = 8
    task_refinement_score_threshold: int = 14
    max_quality_fix_attempts: int = 2
    max_judge_revisions: int = 2
    plan_spec_write_retries: int = 5

    # Timeouts
    plan_approval_timeout_seconds: float = 30 * 60
    quality_check_timeout_seconds: float = 120.0
    approval_handoff_poll_seconds: float = 1.0

    # Quality gate
    quality_checks: list[QualityCheck] = Field(default_factory=_default_quality_checks)

    # Auto-loop pacing and circuit breaker
    loop_interval_seconds: float = 2.0
    idle_interval_seconds: float = 10.0
    capacity_wait_seconds: float = 5.0
    failure_threshold: int = 3
    failure_window_seconds: float = 60.0

    # Metrics
    max_metrics_history: int = 200

    # Agent SDK options
    permission_mode: Literal["default", "acceptEdits", "bypassPermissions"] = "acceptEdits"
    allowed_tools: list[str] = Field(default_factory=lambda: [
        "Read", "Write", "Edit", "Bash", "Glob", "Grep",
        "WebFetch", "WebSearch", "Task",
    ])
    max_turns: int = 200
    task_max_turns: int = 50
    mcp_servers: dict[str, dict[str, Any]] = Field(default_factory=dict)

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Path(".orchestrator/logs")
    structured_log: bool = True

    @field_validator("max_task_concurrency")
    @classmethod
    def _clamp_task_concurrency(cls, value: int) -> int:
        return max(1, min(value, MAX_TASK_CONCURRENCY_CAP))

    @property
    def state_dir(self) -> Path:
        return self.project_dir / self.data_dir


def load_config(cli_args: dict[str, Any]) -> OrchestratorConfig:
    """Load config from defaults → orchestrator.toml → CLI args."""
    project_dir = Path(cli_args.get("project", ".")).resolve()
    toml_path = project_dir / "orchestrator.toml"

    # Start with defaults
    config_data: dict[str, Any] = {"project_dir": project_dir}

    # Layer in TOML if present
    if toml_path.exists():
        with open(toml_path, "rb") as f:
            toml_data = tomllib.load(f)
        config_data.update(toml_data)

    # Layer in CLI overrides (only non-None values)
    for key, value in cli_args.items():
        if value is not None and key != "project":
            config_data[key] = value

    # Ensure project_dir is always set
    config_data["project_dir"] = project_dir

    return OrchestratorConfig(**config_data)
