"""On-disk state: feature records, agent output, progress log, execution-state snapshot and owner lock."""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from .errors import FeatureNotFoundError, ProjectLockedError, StateCorruptionError
from .models import ExecutionState, Feature, FeatureStatus, PlanSpec, ProgressEntry

logger = logging.getLogger("orchestrator")

FEATURE_FILE = "feature.json"
AGENT_OUTPUT_FILE = "agent-output.md"
EXECUTION_STATE_FILE = "execution-state.json"
PROGRESS_FILE = "progress.txt"
APPROVAL_HANDOFF_FILE = "approval-decision.json"
LOCK_FILE = "orchestrator.lock"

_TASK_FIELDS = {"tasks", "tasks_total", "tasks_completed", "current_task_ids"}

PlanSpecUpdater = Callable[[PlanSpec], None]


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to a tmp file, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    tmp_path.replace(path)


class FeatureStore:
    """Feature records under ``<state_dir>/features/<id>/``."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.features_dir = state_dir / "features"
        self.progress_path = state_dir / PROGRESS_FILE

    def feature_dir(self, feature_id: str) -> Path:
        return self.features_dir / feature_id

    # --- Feature records ---

    def load_feature(self, feature_id: str) -> Feature | None:
        path = self.feature_dir(feature_id) / FEATURE_FILE
        if not path.exists():
            return None
        try:
            with open(path) as f:
                raw = json.load(f)
            return Feature.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            raise StateCorruptionError(f"Corrupted feature record {path}: {e}") from e

    def require_feature(self, feature_id: str) -> Feature:
        feature = self.load_feature(feature_id)
        if feature is None:
            raise FeatureNotFoundError(feature_id)
        return feature

    def list_features(self) -> list[Feature]:
        """All readable features, sorted by id. Corrupted records are logged and skipped."""
        if not self.features_dir.exists():
            return []
        features = []
        for entry in sorted(self.features_dir.iterdir()):
            if not entry.is_dir():
                continue
            try:
                feature = self.load_feature(entry.name)
            except StateCorruptionError as e:
                logger.warning(str(e))
                continue
            if feature is not None:
                features.append(feature)
        return features

    def save_feature(self, feature: Feature) -> None:
        feature.updated_at = datetime.now()
        path = self.feature_dir(feature.id) / FEATURE_FILE
        atomic_write_json(path, feature.model_dump(mode="json", exclude_none=True))

    def update_status(self, feature_id: str, status: str) -> Feature:
        feature = self.require_feature(feature_id)
        feature.status = status
        if status == FeatureStatus.WAITING_APPROVAL.value:
            feature.just_finished_at = datetime.now()
        self.save_feature(feature)
        logger.debug(f"Feature {feature_id} status -> {status}")
        return feature

    # --- PlanSpec ---

    def update_plan_spec(self, feature_id: str, **updates: Any) -> PlanSpec:
        """Plain read-modify-write of the embedded PlanSpec.

        Replacing ``content`` bumps ``version`` unless one is given; touching task
        fields bumps ``task_state_version``.
        """
        feature = self.require_feature(feature_id)
        plan = feature.plan_spec or PlanSpec()

        if "content" in updates and "version" not in updates:
            if plan.content is not None and updates["content"] != plan.content:
                updates["version"] = plan.version + 1
        if _TASK_FIELDS & updates.keys():
            updates.setdefault("task_state_version", plan.task_state_version + 1)

        feature.plan_spec = PlanSpec.model_validate({**plan.model_dump(), **updates})
        self.save_feature(feature)
        return feature.plan_spec

    def update_plan_spec_with_retry(
        self,
        feature_id: str,
        updater: PlanSpecUpdater,
        max_retries: int = 5,
    ) -> PlanSpec | None:
        """Compare-and-swap on ``task_state_version``.

        Reads the current version, applies ``updater`` in place, writes with the
        version bumped, then re-reads to confirm nobody overwrote it. Retries on
        mismatch; after ``max_retries`` the update is dropped and None returned.
        """
        for attempt in range(1, max_retries + 1):
            feature = self.require_feature(feature_id)
            plan = feature.plan_spec or PlanSpec()
            expected = plan.task_state_version + 1

            updater(plan)
            plan.task_state_version = expected
            feature.plan_spec = plan
            self.save_feature(feature)

            stored = self.require_feature(feature_id).plan_spec
            if stored is not None and stored.task_state_version == expected:
                return stored
            logger.debug(
                f"PlanSpec write for {feature_id} lost a race "
                f"(attempt {attempt}/{max_retries}), retrying"
            )

        logger.warning(f"PlanSpec update for {feature_id} dropped after {max_retries} attempts")
        return None

    # --- Agent output ---

    def output_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / AGENT_OUTPUT_FILE

    def read_agent_output(self, feature_id: str) -> str | None:
        path = self.output_path(feature_id)
        if not path.exists():
            return None
        return path.read_text()

    def has_agent_output(self, feature_id: str) -> bool:
        content = self.read_agent_output(feature_id)
        return bool(content and content.strip())

    def write_agent_output(self, feature_id: str, content: str) -> None:
        path = self.output_path(feature_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    def archive_agent_output(self, feature_id: str, label: str) -> Path | None:
        """Move the output aside so it is no longer picked up as resume context."""
        path = self.output_path(feature_id)
        if not path.exists():
            return None
        target = path.with_name(f"agent-output.{label}.md")
        path.replace(target)
        logger.debug(f"Archived agent output for {feature_id} to {target.name}")
        return target

    # --- Approval hand-off ---

    def write_approval_handoff(self, feature_id: str, decision: dict[str, Any]) -> None:
        atomic_write_json(self.feature_dir(feature_id) / APPROVAL_HANDOFF_FILE, decision)

    def take_approval_handoffs(self) -> list[tuple[str, dict[str, Any]]]:
        """Collect and remove decisions written by other processes."""
        if not self.features_dir.exists():
            return []
        taken = []
        for path in sorted(self.features_dir.glob(f"*/{APPROVAL_HANDOFF_FILE}")):
            try:
                with open(path) as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Discarding unreadable approval decision {path}: {e}")
                data = None
            path.unlink(missing_ok=True)
            if isinstance(data, dict):
                taken.append((path.parent.name, data))
        return taken

    # --- Progress log ---

    def append_progress(self, entry: ProgressEntry) -> None:
        """Append a run summary to the progress log."""
        self.progress_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.progress_path, "a") as f:
            header = (
                f"\n=== Feature {entry.feature_id}: {entry.feature_title} "
                f"-- {entry.status} -- "
                f"{entry.timestamp.strftime('%Y-%m-%d %H:%M')} ==="
            )
            f.write(f"{header}\n")
            f.write(f"{entry.summary}\n")
            if entry.error:
                f.write(f"- Error: {entry.error}\n")
            f.write("\n")


class ExecutionStateStore:
    """Snapshot of in-flight work at ``<state_dir>/execution-state.json``."""

    def __init__(self, state_dir: Path):
        self.path = state_dir / EXECUTION_STATE_FILE

    def save(self, state: ExecutionState) -> None:
        state.saved_at = datetime.now()
        atomic_write_json(self.path, state.model_dump(mode="json"))
        logger.debug(f"Saved execution state: {len(state.running_feature_ids)} running features")

    def load(self) -> ExecutionState:
        """Return the saved snapshot, or defaults when missing or unreadable."""
        if not self.path.exists():
            return ExecutionState()
        try:
            with open(self.path) as f:
                return ExecutionState.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError, OSError) as e:
            logger.warning(f"Could not read execution state {self.path}: {e}")
            return ExecutionState()

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.debug("Cleared execution state")


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProjectLock:
    """Owner marker at ``<state_dir>/orchestrator.lock``.

    Held while an orchestrator has feature runs or the auto-loop active. Each
    instance carries its own token, so two orchestrators in one process are
    still distinct owners. A lock whose pid is gone is stale and ignored.
    """

    def __init__(self, state_dir: Path):
        self.path = state_dir / LOCK_FILE
        self.token = uuid.uuid4().hex
        self.held = False

    def read(self) -> dict[str, Any] | None:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable lock file {self.path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def holder(self) -> int | None:
        """Pid of a live owner other than this instance, else None."""
        data = self.read()
        if data is None or data.get("token") == self.token:
            return None
        pid = data.get("pid")
        if not isinstance(pid, int) or not _pid_alive(pid):
            return None
        return pid

    def acquire(self) -> None:
        if self.held:
            return
        pid = self.holder()
        if pid is not None:
            raise ProjectLockedError(pid)
        atomic_write_json(self.path, {
            "pid": os.getpid(),
            "token": self.token,
            "acquired_at": datetime.now().isoformat(),
        })
        self.held = True
        logger.debug(f"Acquired project lock {self.path}")

    def release(self) -> None:
        if not self.held:
            return
        self.held = False
        data = self.read()
        if data is not None and data.get("token") == self.token:
            self.path.unlink(missing_ok=True)
            logger.debug(f"Released project lock {self.path}")
