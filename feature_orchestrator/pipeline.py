"""Post-implementation pipeline steps and the ``pipeline_<stepId>`` status markers."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ValidationError

from .models import PIPELINE_STATUS_PREFIX, PipelineConfig, PipelineStep
from .state import atomic_write_json

logger = logging.getLogger("orchestrator")

PIPELINE_FILE = "pipeline.json"


def pipeline_status(step_id: str) -> str:
    return f"{PIPELINE_STATUS_PREFIX}{step_id}"


def step_id_from_status(status: str) -> str | None:
    if not status.startswith(PIPELINE_STATUS_PREFIX):
        return None
    step_id = status[len(PIPELINE_STATUS_PREFIX):]
    return step_id or None


class PipelineStatusInfo(BaseModel):
    """Where a feature stands relative to the current pipeline configuration."""

    is_pipeline: bool = False
    step_id: str | None = None
    step_index: int = -1
    step: PipelineStep | None = None
    steps: list[PipelineStep] = []

    @property
    def step_missing(self) -> bool:
        return self.is_pipeline and self.step is None


class PipelineStore:
    def __init__(self, state_dir: Path):
        self.path = state_dir / PIPELINE_FILE

    def load(self) -> PipelineConfig:
        """Load pipeline.json. A missing or unreadable file means no steps."""
        if not self.path.exists():
            return PipelineConfig()
        try:
            with open(self.path) as f:
                return PipelineConfig.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError, OSError) as e:
            logger.warning(f"Ignoring unreadable pipeline config {self.path}: {e}")
            return PipelineConfig()

    def save(self, config: PipelineConfig) -> None:
        atomic_write_json(self.path, config.model_dump(mode="json"))

    def detect_status(self, status: str) -> PipelineStatusInfo:
        """Resolve a ``pipeline_<id>`` status against the current (possibly edited) config."""
        step_id = step_id_from_status(status)
        if step_id is None:
            return PipelineStatusInfo(is_pipeline=status.startswith(PIPELINE_STATUS_PREFIX))

        steps = self.load().sorted_steps()
        for index, step in enumerate(steps):
            if step.id == step_id:
                logger.info(f"Detected pipeline step {index + 1}/{len(steps)} ({step.name})")
                return PipelineStatusInfo(
                    is_pipeline=True, step_id=step_id, step_index=index, step=step, steps=steps,
                )

        logger.warning(f"Pipeline step {step_id} no longer exists in {self.path}")
        return PipelineStatusInfo(is_pipeline=True, step_id=step_id, steps=steps)
