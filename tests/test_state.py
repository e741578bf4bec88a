"""Tests for on-disk state management."""

from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path

import pytest

from feature_orchestrator.errors import FeatureNotFoundError, ProjectLockedError, StateCorruptionError
from feature_orchestrator.models import (
    ExecutionState,
    Feature,
    PlanSpec,
    PlanSpecStatus,
    ProgressEntry,
    Task,
)
from feature_orchestrator.state import ExecutionStateStore, FeatureStore, ProjectLock


class TestFeatureRecords:
    def test_save_and_load(self, store: FeatureStore):
        store.save_feature(Feature(id="f1", title="Header", description="Add a header"))
        loaded = store.require_feature("f1")

        assert loaded.title == "Header"
        assert loaded.status == "backlog"
        assert loaded.updated_at is not None
        assert (store.feature_dir("f1") / "feature.json").exists()

    def test_no_tmp_file_left_behind(self, store: FeatureStore):
        store.save_feature(Feature(id="f1"))
        assert not (store.feature_dir("f1") / "feature.json.tmp").exists()

    def test_unknown_keys_survive_round_trip(self, store: FeatureStore):
        path = store.feature_dir("f1") / "feature.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"id": "f1", "category": "ui", "priority": 2}))

        feature = store.require_feature("f1")
        store.save_feature(feature)

        raw = json.loads(path.read_text())
        assert raw["category"] == "ui"
        assert raw["priority"] == 2

    def test_missing_feature(self, store: FeatureStore):
        assert store.load_feature("nope") is None
        with pytest.raises(FeatureNotFoundError):
            store.require_feature("nope")

    def test_corrupt_feature_raises(self, store: FeatureStore):
        path = store.feature_dir("bad") / "feature.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        with pytest.raises(StateCorruptionError):
            store.load_feature("bad")

    def test_list_skips_corrupt_records(self, store: FeatureStore):
        store.save_feature(Feature(id="a"))
        store.save_feature(Feature(id="b"))
        bad = store.feature_dir("c") / "feature.json"
        bad.parent.mkdir(parents=True)
        bad.write_text("garbage")

        assert [f.id for f in store.list_features()] == ["a", "b"]

    def test_waiting_approval_sets_just_finished(self, store: FeatureStore):
        store.save_feature(Feature(id="f1"))
        feature = store.update_status("f1", "waiting_approval")
        assert feature.just_finished_at is not None

        feature = store.update_status("f1", "in_progress")
        assert feature.status == "in_progress"


class TestPlanSpecUpdates:
    def test_content_change_bumps_version(self, store: FeatureStore):
        store.save_feature(Feature(id="f1", plan_spec=PlanSpec(content="v1 plan")))
        plan = store.update_plan_spec("f1", content="v2 plan", status=PlanSpecStatus.GENERATED)

        assert plan.version == 2
        assert plan.status == PlanSpecStatus.GENERATED

    def test_same_content_keeps_version(self, store: FeatureStore):
        store.save_feature(Feature(id="f1", plan_spec=PlanSpec(content="plan")))
        assert store.update_plan_spec("f1", content="plan").version == 1

    def test_task_fields_bump_task_state_version(self, store: FeatureStore):
        store.save_feature(Feature(id="f1"))
        plan = store.update_plan_spec("f1", tasks=[Task(id="T001", description="x")], tasks_total=1)

        assert plan.task_state_version == 1
        assert plan.tasks[0].id == "T001"

    def test_retry_applies_update(self, store: FeatureStore):
        store.save_feature(Feature(id="f1", plan_spec=PlanSpec(tasks_total=3)))

        def complete_one(plan: PlanSpec) -> None:
            plan.tasks_completed += 1

        stored = store.update_plan_spec_with_retry("f1", complete_one)
        assert stored is not None
        assert stored.tasks_completed == 1
        assert stored.task_state_version == 1

    def test_retry_recovers_from_lost_update(self, store: FeatureStore, monkeypatch):
        store.save_feature(Feature(id="f1", plan_spec=PlanSpec()))
        original_save = store.save_feature
        raced: list[bool] = []

        def racing_save(feature: Feature) -> None:
            original_save(feature)
            if not raced:
                raced.append(True)
                other = store.require_feature("f1")
                other.plan_spec.task_state_version += 10
                original_save(other)

        monkeypatch.setattr(store, "save_feature", racing_save)
        calls: list[int] = []

        stored = store.update_plan_spec_with_retry("f1", lambda plan: calls.append(1))
        assert stored is not None
        assert len(calls) == 2
        assert stored.task_state_version == 12

    def test_retry_gives_up_after_bound(self, store: FeatureStore, monkeypatch):
        store.save_feature(Feature(id="f1", plan_spec=PlanSpec()))
        original_save = store.save_feature

        def always_racing(feature: Feature) -> None:
            original_save(feature)
            feature.plan_spec.task_state_version += 100
            original_save(feature)

        monkeypatch.setattr(store, "save_feature", always_racing)
        calls: list[int] = []

        assert store.update_plan_spec_with_retry("f1", lambda plan: calls.append(1), max_retries=3) is None
        assert len(calls) == 3


class TestAgentOutput:
    def test_write_and_read(self, store: FeatureStore):
        assert store.has_agent_output("f1") is False
        store.write_agent_output("f1", "partial work")
        assert store.read_agent_output("f1") == "partial work"
        assert store.has_agent_output("f1") is True

    def test_whitespace_is_not_output(self, store: FeatureStore):
        store.write_agent_output("f1", "  \n")
        assert store.has_agent_output("f1") is False

    def test_archive_moves_output_aside(self, store: FeatureStore):
        store.write_agent_output("f1", "rejected plan")

        target = store.archive_agent_output("f1", "rejected")

        assert target.name == "agent-output.rejected.md"
        assert target.read_text() == "rejected plan"
        assert store.has_agent_output("f1") is False
        assert store.archive_agent_output("f1", "rejected") is None


class TestApprovalHandoff:
    def test_take_removes_decisions(self, store: FeatureStore):
        store.write_approval_handoff("f1", {"approved": True, "feedback": "go"})
        store.write_approval_handoff("f2", {"approved": False})

        assert store.take_approval_handoffs() == [
            ("f1", {"approved": True, "feedback": "go"}),
            ("f2", {"approved": False}),
        ]
        assert store.take_approval_handoffs() == []

    def test_unreadable_decision_is_discarded(self, store: FeatureStore):
        path = store.feature_dir("f1") / "approval-decision.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        assert store.take_approval_handoffs() == []
        assert not path.exists()


class TestProjectLock:
    def test_acquire_and_release(self, tmp_path: Path):
        lock = ProjectLock(tmp_path)
        lock.acquire()

        data = json.loads(lock.path.read_text())
        assert data["pid"] == os.getpid()
        assert data["token"] == lock.token
        assert lock.holder() is None

        lock.release()
        assert not lock.path.exists()

    def test_other_instance_in_same_process_is_an_owner(self, tmp_path: Path):
        first, second = ProjectLock(tmp_path), ProjectLock(tmp_path)
        first.acquire()

        assert second.holder() == os.getpid()
        with pytest.raises(ProjectLockedError):
            second.acquire()

        second.release()
        assert first.path.exists()
        first.release()
        second.acquire()
        assert second.held is True

    def test_dead_owner_is_ignored(self, tmp_path: Path):
        lock = ProjectLock(tmp_path)
        lock.path.write_text(json.dumps({"pid": 2 ** 22 + 1, "token": "crashed"}))

        assert lock.holder() is None
        lock.acquire()
        assert json.loads(lock.path.read_text())["token"] == lock.token

    def test_corrupt_lock_is_ignored(self, tmp_path: Path):
        lock = ProjectLock(tmp_path)
        lock.path.write_text("garbage")
        assert lock.holder() is None


class TestProgressLog:
    def test_append_progress(self, store: FeatureStore):
        store.append_progress(ProgressEntry(
            timestamp=datetime(2025, 1, 15, 10, 30),
            feature_id="f1",
            feature_title="Add footer",
            status="verified",
            summary="Footer with links",
        ))

        content = store.progress_path.read_text()
        assert "=== Feature f1: Add footer -- verified -- 2025-01-15 10:30 ===" in content
        assert "Footer with links" in content

    def test_append_progress_with_error(self, store: FeatureStore):
        store.append_progress(ProgressEntry(
            timestamp=datetime.now(),
            feature_id="f2",
            feature_title="Nav",
            status="backlog",
            summary="(no summary)",
            error="Build failed",
        ))
        assert "- Error: Build failed" in store.progress_path.read_text()


class TestExecutionState:
    def test_save_load_clear(self, tmp_path: Path):
        states = ExecutionStateStore(tmp_path)
        states.save(ExecutionState(
            auto_loop_was_running=True, max_concurrency=2, running_feature_ids=["a", "b"],
        ))

        loaded = states.load()
        assert loaded.auto_loop_was_running is True
        assert loaded.running_feature_ids == ["a", "b"]
        assert loaded.saved_at is not None

        states.clear()
        assert not states.path.exists()
        assert states.load().auto_loop_was_running is False

    def test_corrupt_file_returns_defaults(self, tmp_path: Path):
        states = ExecutionStateStore(tmp_path)
        states.path.write_text("{{{{")
        assert states.load() == ExecutionState()
