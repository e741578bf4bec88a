"""End-to-end tests for the feature orchestrator (with a scripted agent)."""

from __future__ import annotations

import asyncio
import json

import pytest

from feature_orchestrator.agent import AgentEvent
from feature_orchestrator.config import QualityCheck
from feature_orchestrator.errors import AlreadyRunningError, AutoLoopAlreadyRunningError, ProjectLockedError
from feature_orchestrator.events import EventType
from feature_orchestrator.models import (
    PipelineConfig,
    PipelineStep,
    PlanningMode,
    PlanSpec,
    PlanSpecStatus,
    TaskStatus,
)
from feature_orchestrator.orchestrator import FeatureOrchestrator
from feature_orchestrator.pipeline import PipelineStore

from test_planning import SPEC_PLAN

PASS = '{"verdict": "pass", "issues": [], "recommendations": [], "confidence": 0.9}'
REVISE = '{"verdict": "revise", "issues": ["Missing tests"], "recommendations": ["Add tests"]}'


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def orchestrator(config, events, fake_client) -> FeatureOrchestrator:
    return FeatureOrchestrator(config, client=fake_client, events=events)


def worker_prompts(client) -> list[str]:
    return [c["prompt"] for c in client.calls if not c["read_only"]]


class TestExecuteFeature:
    @pytest.mark.asyncio
    async def test_happy_path_verifies(self, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1")

        await orchestrator.execute_feature("f1")

        feature = store.require_feature("f1")
        assert feature.status == "verified"
        complete = recorder.of_type(EventType.FEATURE_COMPLETE)
        assert len(complete) == 1
        assert complete[0].data["passes"] is True
        assert [e.type for e in recorder.events][0] == EventType.FEATURE_START.value
        assert len(fake_client.calls) == 2
        assert fake_client.calls[1]["read_only"] is True

        run = orchestrator.metrics.load().runs[-1]
        assert run.status == "success"
        assert run.stage_durations.execution_ms is not None
        assert run.stage_durations.judge_ms is not None
        assert "Implemented the change." in store.read_agent_output("f1")
        assert "Did the work." in store.progress_path.read_text()
        assert not orchestrator.is_running("f1")

    @pytest.mark.asyncio
    async def test_only_one_run_per_feature(self, orchestrator, make_feature, fake_client):
        make_feature("f1")
        release = asyncio.Event()

        async def slow(prompt, call):
            if not call["read_only"]:
                await release.wait()
            return PASS if call["read_only"] else "done"

        fake_client.responder = slow
        first = asyncio.create_task(orchestrator.execute_feature("f1"))
        await wait_until(lambda: orchestrator.is_running("f1"))

        with pytest.raises(AlreadyRunningError, match="already running"):
            await orchestrator.execute_feature("f1")
        running = orchestrator.get_running_features()
        assert [r["feature_id"] for r in running] == ["f1"]
        assert "cancellation" not in running[0]
        status = orchestrator.get_status()
        assert status.running_count == 1
        assert status.auto_loop_running is False

        release.set()
        await asyncio.wait_for(first, timeout=5)
        assert orchestrator.get_running_features() == []

    @pytest.mark.asyncio
    async def test_skip_tests_waits_for_review(self, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1", skip_tests=True)

        await orchestrator.execute_feature("f1")

        assert store.require_feature("f1").status == "waiting_approval"
        assert store.require_feature("f1").just_finished_at is not None
        metrics = recorder.of_type(EventType.QUALITY_METRICS)
        assert [c["status"] for c in metrics[0].data["checks"]] == ["skipped"]
        assert sum(c["read_only"] for c in fake_client.calls) == 1

    @pytest.mark.asyncio
    async def test_failing_gate_retries_then_gives_up(
        self, orchestrator, config, make_feature, store, recorder, fake_client,
    ):
        config.quality_checks = [
            QualityCheck(name="lint", command="true"),
            QualityCheck(name="typecheck", command="echo 'TS2304' && false"),
            QualityCheck(name="test", command="true"),
        ]
        make_feature("f1")

        await orchestrator.execute_feature("f1")

        fix_prompts = [p for p in worker_prompts(fake_client) if "Quality Gate Fix Required" in p]
        assert len(fix_prompts) == 2
        assert "TS2304" in fix_prompts[0]
        assert not any(c["read_only"] for c in fake_client.calls)

        assert store.require_feature("f1").status == "waiting_approval"
        assert recorder.of_type(EventType.FEATURE_COMPLETE)[0].data["passes"] is False
        assert len(recorder.of_type(EventType.QUALITY_METRICS)) == 3

        run = orchestrator.metrics.load().runs[-1]
        assert run.status == "failed"
        assert run.attempts == 3
        assert run.revisions == 2
        assert [q.status for q in run.quality] == ["pass", "fail", "skipped"]
        assert orchestrator.breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_judge_revision(self, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1")
        verdicts = iter([REVISE, PASS])
        fake_client.responder = lambda prompt, call: next(verdicts) if call["read_only"] else "done"

        await orchestrator.execute_feature("f1")

        judge_fixes = [p for p in worker_prompts(fake_client) if "Judge Revision Required" in p]
        assert len(judge_fixes) == 1
        assert "Missing tests" in judge_fixes[0]
        assert [e.data["verdict"] for e in recorder.of_type(EventType.JUDGE_RESULT)] == ["revise", "pass"]
        assert store.require_feature("f1").status == "verified"
        assert orchestrator.metrics.load().runs[-1].revisions == 1

    @pytest.mark.asyncio
    async def test_judge_never_passes(self, orchestrator, make_feature, store, fake_client):
        make_feature("f1")
        fake_client.responder = lambda prompt, call: REVISE if call["read_only"] else "done"

        await orchestrator.execute_feature("f1")

        assert sum(c["read_only"] for c in fake_client.calls) == 3
        assert store.require_feature("f1").status == "waiting_approval"

    @pytest.mark.asyncio
    async def test_agent_error_reverts_to_backlog(self, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1")
        fake_client.responder = lambda prompt, call: [AgentEvent.error("model overloaded")]

        await orchestrator.execute_feature("f1")

        assert store.require_feature("f1").status == "backlog"
        errors = recorder.of_type(EventType.ERROR)
        assert len(errors) == 1
        assert errors[0].data["error_type"] == "execution"
        assert "model overloaded" in errors[0].data["error"]
        assert recorder.of_type(EventType.FEATURE_COMPLETE) == []
        assert orchestrator.metrics.load().runs[-1].status == "failed"
        assert not orchestrator.is_running("f1")

    @pytest.mark.asyncio
    async def test_stop_feature(self, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1")
        release = asyncio.Event()

        async def slow(prompt, call):
            await release.wait()
            return "never seen"

        fake_client.responder = slow
        run = asyncio.create_task(orchestrator.execute_feature("f1"))
        await wait_until(lambda: len(fake_client.calls) == 1)

        assert orchestrator.stop_feature("f1") is True
        assert not orchestrator.is_running("f1")
        assert orchestrator.stop_feature("f1") is False

        release.set()
        await asyncio.wait_for(run, timeout=5)

        complete = recorder.of_type(EventType.FEATURE_COMPLETE)
        assert complete[0].data["message"] == "Feature stopped by user"
        assert complete[0].data["passes"] is False
        assert store.require_feature("f1").status == "in_progress"
        assert recorder.of_type(EventType.ERROR) == []
        assert orchestrator.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_stop_during_quality_gate(
        self, orchestrator, config, tmp_project, make_feature, recorder, fake_client,
    ):
        config.quality_checks = [
            QualityCheck(name="test", command="touch gate-started && exec sleep 5"),
            QualityCheck(name="build", command="touch build-ran"),
        ]
        make_feature("f1")

        run = asyncio.create_task(orchestrator.execute_feature("f1"))
        await wait_until(lambda: (tmp_project / "gate-started").exists())
        orchestrator.stop_feature("f1")
        await asyncio.wait_for(run, timeout=2)

        assert recorder.of_type(EventType.FEATURE_COMPLETE)[0].data["message"] == "Feature stopped by user"
        assert not (tmp_project / "build-ran").exists()
        assert not any(c["read_only"] for c in fake_client.calls)
        assert recorder.of_type(EventType.JUDGE_RESULT) == []

    @pytest.mark.asyncio
    async def test_verify_feature(self, orchestrator, make_feature, recorder):
        make_feature("f1")
        assert await orchestrator.verify_feature("f1") is True
        assert recorder.of_type(EventType.FEATURE_COMPLETE)[0].data["message"] == "All verification checks passed"


class TestPlanning:
    @staticmethod
    def planner(prompt, call):
        if call["read_only"]:
            return PASS
        if call["model"] == "opus":
            return SPEC_PLAN + "\n[SPEC_GENERATED]\nthis tail is ignored"
        return "done"

    @pytest.mark.asyncio
    async def test_auto_approved_plan_runs_tasks(self, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1", planning_mode=PlanningMode.SPEC)
        fake_client.responder = self.planner

        await orchestrator.execute_feature("f1")

        task_prompts = [p for p in worker_prompts(fake_client) if p.startswith("# Task Execution")]
        assert [p.splitlines()[0] for p in task_prompts] == [
            "# Task Execution: T001", "# Task Execution: T002", "# Task Execution: T003",
        ]
        plan = store.require_feature("f1").plan_spec
        assert plan.status == PlanSpecStatus.APPROVED
        assert plan.tasks_completed == 3
        assert all(t.status == TaskStatus.COMPLETED for t in plan.tasks)
        assert plan.current_task_ids == []
        assert len(recorder.of_type(EventType.PLANNING_STARTED)) == 1
        assert len(recorder.of_type(EventType.PLAN_AUTO_APPROVED)) == 1
        assert store.require_feature("f1").status == "verified"

    @pytest.mark.asyncio
    async def test_rejecting_without_feedback_cancels(self, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1", planning_mode=PlanningMode.SPEC, require_plan_approval=True)
        fake_client.responder = self.planner

        run = asyncio.create_task(orchestrator.execute_feature("f1"))
        await wait_until(lambda: orchestrator.approvals.has_pending("f1"))
        assert orchestrator.resolve_plan_approval("f1", approved=False) is True
        await asyncio.wait_for(run, timeout=5)

        feature = store.require_feature("f1")
        assert feature.status == "backlog"
        assert feature.plan_spec.status == PlanSpecStatus.REJECTED
        assert recorder.of_type(EventType.FEATURE_COMPLETE)[0].data["message"] == "Plan rejected, feature cancelled"
        assert recorder.of_type(EventType.PLAN_REJECTED) == []
        assert orchestrator.breaker.failure_count == 0
        assert not store.has_agent_output("f1")
        assert "POST /login." in (store.feature_dir("f1") / "agent-output.rejected.md").read_text()

    @pytest.mark.asyncio
    async def test_approval_continues_to_tasks(self, orchestrator, make_feature, store, fake_client):
        make_feature("f1", planning_mode=PlanningMode.SPEC, require_plan_approval=True)
        fake_client.responder = self.planner

        run = asyncio.create_task(orchestrator.execute_feature("f1"))
        await wait_until(lambda: orchestrator.approvals.has_pending("f1"))
        assert store.require_feature("f1").plan_spec.status == PlanSpecStatus.GENERATED

        orchestrator.resolve_plan_approval("f1", approved=True, feedback="Prefer small commits")
        await asyncio.wait_for(run, timeout=5)

        task_prompts = [p for p in worker_prompts(fake_client) if p.startswith("# Task Execution")]
        assert len(task_prompts) == 3
        assert all("Prefer small commits" in p for p in task_prompts)
        plan = store.require_feature("f1").plan_spec
        assert plan.reviewed_by_user is True
        assert store.require_feature("f1").status == "verified"

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_approval(self, orchestrator, make_feature, recorder, fake_client):
        make_feature("f1", planning_mode=PlanningMode.SPEC, require_plan_approval=True)
        fake_client.responder = self.planner

        run = asyncio.create_task(orchestrator.execute_feature("f1"))
        await wait_until(lambda: orchestrator.approvals.has_pending("f1"))
        orchestrator.stop_feature("f1")
        await asyncio.wait_for(run, timeout=5)

        assert not orchestrator.approvals.has_pending("f1")
        assert recorder.of_type(EventType.FEATURE_COMPLETE)[0].data["message"] == "Feature stopped by user"

    @pytest.mark.asyncio
    async def test_recovered_approval_starts_implementation(self, orchestrator, make_feature, store, fake_client):
        make_feature(
            "f1",
            status="in_progress",
            planning_mode=PlanningMode.SPEC,
            require_plan_approval=True,
            plan_spec=PlanSpec(status=PlanSpecStatus.GENERATED, content=SPEC_PLAN),
        )

        assert orchestrator.resolve_plan_approval("f1", approved=True) is True
        await orchestrator.drain()

        first = worker_prompts(fake_client)[0]
        assert "The plan/specification has been approved" in first
        assert "POST /login." in first
        feature = store.require_feature("f1")
        assert feature.plan_spec.status == PlanSpecStatus.APPROVED
        assert feature.status == "verified"

    @pytest.mark.asyncio
    async def test_recovered_rejection(self, orchestrator, make_feature, store, recorder):
        make_feature(
            "f1",
            status="in_progress",
            plan_spec=PlanSpec(status=PlanSpecStatus.GENERATED, content=SPEC_PLAN),
        )

        assert orchestrator.resolve_plan_approval("f1", approved=False, feedback="Not now") is True

        feature = store.require_feature("f1")
        assert feature.status == "backlog"
        assert feature.plan_spec.status == PlanSpecStatus.REJECTED
        assert recorder.of_type(EventType.PLAN_REJECTED)[0].data["feedback"] == "Not now"

    def test_nothing_to_approve(self, orchestrator, make_feature):
        make_feature("f1")
        assert orchestrator.resolve_plan_approval("f1", approved=True) is False


class TestRecovery:
    @pytest.mark.asyncio
    async def test_resumes_with_saved_output(self, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1", status="in_progress")
        store.write_agent_output("f1", "PARTIAL WORK FROM BEFORE")
        make_feature("f2", status="in_progress")

        resumed = orchestrator.resume_interrupted_features()
        await orchestrator.drain()

        assert resumed == ["f1"]
        assert len(recorder.of_type(EventType.RESUMING_FEATURES)) == 1
        first = worker_prompts(fake_client)[0]
        assert first.startswith("## Continuing Feature Implementation")
        assert "PARTIAL WORK FROM BEFORE" in first
        assert store.read_agent_output("f1").startswith("PARTIAL WORK FROM BEFORE")
        assert store.require_feature("f1").status == "verified"
        assert store.require_feature("f2").status == "in_progress"

    @pytest.mark.asyncio
    async def test_no_output_starts_from_zero(self, orchestrator, make_feature, fake_client):
        make_feature("f2", status="in_progress")

        await orchestrator.resume_feature("f2")

        first = worker_prompts(fake_client)[0]
        assert "Previous Context" not in first
        assert first.startswith("## Feature Implementation Task")

    @pytest.mark.asyncio
    async def test_execute_with_saved_output_resumes(self, orchestrator, make_feature, store, fake_client):
        make_feature("f1")
        store.write_agent_output("f1", "earlier attempt")

        await orchestrator.execute_feature("f1")

        assert "earlier attempt" in worker_prompts(fake_client)[0]

    @pytest.mark.asyncio
    async def test_rejected_plan_output_is_not_resumed(self, orchestrator, make_feature, store, fake_client):
        make_feature(
            "f1",
            planning_mode=PlanningMode.SPEC,
            plan_spec=PlanSpec(status=PlanSpecStatus.REJECTED, content="old rejected plan"),
        )
        store.write_agent_output("f1", "old rejected plan")
        fake_client.responder = TestPlanning.planner

        await orchestrator.execute_feature("f1")

        assert fake_client.calls[0]["model"] == "opus"
        assert not any("old rejected plan" in p for p in fake_client.prompts())
        plan = store.require_feature("f1").plan_spec
        assert plan.status == PlanSpecStatus.APPROVED
        assert store.require_feature("f1").status == "verified"


class TestPipeline:
    @pytest.fixture
    def steps(self, config):
        PipelineStore(config.state_dir).save(PipelineConfig(steps=[
            PipelineStep(id="docs", name="Docs", order=2, instructions="Update the README."),
            PipelineStep(id="review", name="Review", order=1, instructions="Review the diff."),
        ]))

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, steps, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1")

        await orchestrator.execute_feature("f1")

        started = recorder.of_type(EventType.PIPELINE_STEP_STARTED)
        assert [e.data["step_id"] for e in started] == ["review", "docs"]
        step_prompts = [p for p in worker_prompts(fake_client) if p.startswith("## Pipeline Step")]
        assert "Review the diff." in step_prompts[0]
        assert "Implemented the change." in step_prompts[0]
        assert store.require_feature("f1").status == "verified"
        assert orchestrator.metrics.load().runs[-1].stage_durations.pipeline_ms is not None

    @pytest.mark.asyncio
    async def test_resume_from_step(self, steps, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1", status="pipeline_docs")
        store.write_agent_output("f1", "implementation done")

        await orchestrator.resume_feature("f1")

        prompts = worker_prompts(fake_client)
        assert len(prompts) == 1
        assert prompts[0].startswith("## Pipeline Step: Docs")
        assert store.require_feature("f1").status == "verified"
        assert recorder.of_type(EventType.FEATURE_COMPLETE)[0].data["passes"] is True

    @pytest.mark.asyncio
    async def test_resume_removed_step_completes(self, steps, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1", status="pipeline_security", skip_tests=True)
        store.write_agent_output("f1", "implementation done")

        await orchestrator.resume_feature("f1")

        assert fake_client.calls == []
        assert store.require_feature("f1").status == "waiting_approval"
        assert recorder.of_type(EventType.FEATURE_COMPLETE)[0].data["passes"] is True
        assert not orchestrator.is_running("f1")

    @pytest.mark.asyncio
    async def test_pipeline_status_without_output_restarts(self, steps, orchestrator, make_feature, fake_client):
        make_feature("f1", status="pipeline_docs")

        await orchestrator.resume_feature("f1")

        assert worker_prompts(fake_client)[0].startswith("## Feature Implementation Task")


class TestAutoLoop:
    @pytest.mark.asyncio
    async def test_runs_in_dependency_order(self, orchestrator, config, make_feature, store, recorder):
        make_feature("b", dependencies=["a"])
        make_feature("a")

        orchestrator.start_auto_loop(max_concurrency=2)
        with pytest.raises(AutoLoopAlreadyRunningError):
            orchestrator.start_auto_loop()
        saved = json.loads((config.state_dir / "execution-state.json").read_text())
        assert saved["auto_loop_was_running"] is True

        await wait_until(lambda: store.require_feature("b").status == "verified")
        await wait_until(lambda: bool(recorder.of_type(EventType.AUTO_MODE_IDLE)))
        assert await orchestrator.stop_auto_loop() == 0
        await orchestrator.drain()

        starts = [e.data["feature_id"] for e in recorder.of_type(EventType.FEATURE_START)]
        assert starts == ["a", "b"]
        assert len(recorder.of_type(EventType.AUTO_MODE_STARTED)) == 1
        assert len(recorder.of_type(EventType.AUTO_MODE_STOPPED)) == 1
        assert not (config.state_dir / "execution-state.json").exists()

    @pytest.mark.asyncio
    async def test_three_failures_pause_loop(self, orchestrator, make_feature, recorder, fake_client):
        for name in ("a", "b", "c"):
            make_feature(name)
        fake_client.responder = lambda prompt, call: [AgentEvent.error("boom")]

        orchestrator.start_auto_loop(max_concurrency=1)
        await wait_until(lambda: not orchestrator.auto_loop_running)
        await orchestrator.drain()

        paused = recorder.of_type(EventType.AUTO_MODE_PAUSED)
        assert len(paused) == 1
        assert paused[0].data["failure_count"] == 3
        assert len(recorder.of_type(EventType.ERROR)) == 3

    @pytest.mark.asyncio
    async def test_quota_error_pauses_immediately(self, orchestrator, make_feature, recorder, fake_client):
        make_feature("a")
        fake_client.responder = lambda prompt, call: [AgentEvent.error("Usage limit reached for this month")]

        orchestrator.start_auto_loop(max_concurrency=1)
        await wait_until(lambda: not orchestrator.auto_loop_running)
        await orchestrator.drain()

        paused = recorder.of_type(EventType.AUTO_MODE_PAUSED)
        assert len(paused) == 1
        assert paused[0].data["error_type"] == "quota_exhausted"
        assert len(recorder.of_type(EventType.ERROR)) == 1

    @pytest.mark.asyncio
    async def test_success_resets_breaker(self, orchestrator, make_feature, fake_client):
        make_feature("ok")
        make_feature("bad1")
        make_feature("bad2")
        fake_client.responder = lambda prompt, call: [AgentEvent.error("boom")]

        await orchestrator.execute_feature("bad1")
        await orchestrator.execute_feature("bad2")
        assert orchestrator.breaker.failure_count == 2

        fake_client.responder = lambda prompt, call: PASS if call["read_only"] else "done"
        await orchestrator.execute_feature("ok")
        assert orchestrator.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_plan_is_planned_again(self, orchestrator, make_feature, store, recorder, fake_client):
        make_feature("f1", planning_mode=PlanningMode.SPEC, require_plan_approval=True)
        fake_client.responder = TestPlanning.planner

        orchestrator.start_auto_loop(max_concurrency=1)
        await wait_until(lambda: orchestrator.approvals.has_pending("f1"))
        assert orchestrator.resolve_plan_approval("f1", approved=False) is True

        await wait_until(lambda: len(recorder.of_type(EventType.PLAN_APPROVAL_REQUIRED)) == 2)
        await wait_until(lambda: orchestrator.approvals.has_pending("f1"))

        prompts = worker_prompts(fake_client)
        assert not any(p.startswith("# Task Execution") for p in prompts)
        assert not any(p.startswith("## Continuing Feature Implementation") for p in prompts)
        assert len(recorder.of_type(EventType.PLANNING_STARTED)) == 2
        assert len(recorder.of_type(EventType.FEATURE_START)) == 2
        feature = store.require_feature("f1")
        assert feature.status == "in_progress"
        assert feature.plan_spec.status == PlanSpecStatus.GENERATED

        await orchestrator.shutdown()
        assert store.require_feature("f1").status != "verified"


class TestProjectOwnership:
    @pytest.mark.asyncio
    async def test_decision_from_another_instance_reaches_the_owner(
        self, config, events, make_feature, store, client_factory,
    ):
        make_feature("f1", planning_mode=PlanningMode.SPEC, require_plan_approval=True)
        owner_client = client_factory(TestPlanning.planner)
        other_client = client_factory(TestPlanning.planner)
        owner = FeatureOrchestrator(config, client=owner_client, events=events)
        other = FeatureOrchestrator(config, client=other_client)

        run = asyncio.create_task(owner.execute_feature("f1"))
        await wait_until(lambda: owner.approvals.has_pending("f1"))

        assert other.resolve_plan_approval("f1", approved=True, feedback="Ship it") is True
        assert not other.is_running("f1")
        await asyncio.wait_for(run, timeout=5)
        await other.drain()

        assert other_client.calls == []
        assert not owner.approvals.has_pending("f1")
        task_prompts = [p for p in worker_prompts(owner_client) if p.startswith("# Task Execution")]
        assert len(task_prompts) == 3
        assert all("Ship it" in p for p in task_prompts)
        feature = store.require_feature("f1")
        assert feature.plan_spec.status == PlanSpecStatus.APPROVED
        assert feature.status == "verified"
        assert not (config.state_dir / "orchestrator.lock").exists()

    @pytest.mark.asyncio
    async def test_second_instance_cannot_run_while_owned(
        self, config, events, make_feature, store, client_factory,
    ):
        make_feature("f1", planning_mode=PlanningMode.SPEC, require_plan_approval=True)
        make_feature("f2")
        owner = FeatureOrchestrator(config, client=client_factory(TestPlanning.planner), events=events)
        other = FeatureOrchestrator(config, client=client_factory(TestPlanning.planner))

        run = asyncio.create_task(owner.execute_feature("f1"))
        await wait_until(lambda: owner.approvals.has_pending("f1"))

        with pytest.raises(ProjectLockedError):
            await other.execute_feature("f2")
        with pytest.raises(ProjectLockedError):
            other.start_auto_loop()
        assert not other.is_running("f2")
        assert not other.auto_loop_running

        owner.stop_feature("f1")
        await asyncio.wait_for(run, timeout=5)

        await other.execute_feature("f2")
        assert store.require_feature("f2").status == "verified"
