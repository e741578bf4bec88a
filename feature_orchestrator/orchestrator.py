"""Feature lifecycle state machine, crash recovery and the auto-loop controller."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Coroutine

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .agent import CancellationToken, ClaudeAgentClient
from .approvals import ApprovalDecision, ApprovalRegistry
from .breaker import FailureTracker
from .dependencies import are_dependencies_satisfied, resolve_dependencies
from .errors import (
    AlreadyRunningError,
    AutoLoopAlreadyRunningError,
    ErrorInfo,
    FeatureAbortedError,
    OrchestratorError,
    PlanCancelledError,
    classify_error,
)
from .events import EventBus, EventType
from .judge import evaluate
from .logging_config import feature_context, setup_logger
from .metrics import MetricsCollector, estimate_token_efficiency, feature_complexity
from .models import (
    ExecutionState,
    Feature,
    FeatureStatus,
    JudgeVerdict,
    PipelineStep,
    PlanSpecStatus,
    ProgressEntry,
    QualityCheckOutcome,
)
from .pipeline import PipelineStore, pipeline_status
from .prompts import (
    build_approved_plan_prompt,
    build_initial_prompt,
    build_judge_fix_prompt,
    build_pipeline_step_prompt,
    build_quality_fix_prompt,
    build_resume_prompt,
)
from .quality import run_quality_checks, skipped_outcome
from .runner import FeatureRunner, OutputBuffer
from .state import ExecutionStateStore, FeatureStore, ProjectLock
from .worktree import resolve_working_dir

if TYPE_CHECKING:
    from .agent import AgentClient
    from .config import OrchestratorConfig

logger = logging.getLogger("orchestrator")

SUMMARY_RE = re.compile(r"<summary>([\s\S]*?)</summary>")
PROGRESS_TAIL_CHARS = 500
READY_STATUSES = (FeatureStatus.BACKLOG.value, FeatureStatus.PENDING.value, FeatureStatus.READY.value)


class RunningFeature(BaseModel):
    """In-memory record of an active feature run. At most one per feature id."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    feature_id: str
    project_path: Path
    working_dir: Path | None = None
    branch_name: str | None = None
    cancellation: CancellationToken = Field(default_factory=CancellationToken)
    is_auto_mode: bool = False
    started_at: datetime = Field(default_factory=datetime.now)
    model: str | None = None
    provider: str | None = None
    metrics_run_id: str | None = None


class OrchestratorStatus(BaseModel):
    auto_loop_running: bool
    max_concurrency: int
    running_count: int
    running_feature_ids: list[str]
    pending_approvals: list[str]


class FeatureOrchestrator:
    """Drives features through plan -> approve -> implement -> verify -> judge."""

    def __init__(
        self,
        config: OrchestratorConfig,
        client: AgentClient | None = None,
        events: EventBus | None = None,
    ):
        self.config = config
        self.logger = setup_logger(config)
        self.events = events or EventBus()
        self.client = client or ClaudeAgentClient(
            permission_mode=config.permission_mode,
            allowed_tools=config.allowed_tools,
            max_turns=config.max_turns,
        )
        self.store = FeatureStore(config.state_dir)
        self.execution_state = ExecutionStateStore(config.state_dir)
        self.pipelines = PipelineStore(config.state_dir)
        self.approvals = ApprovalRegistry()
        self.lock = ProjectLock(config.state_dir)
        self.breaker = FailureTracker(config.failure_threshold, config.failure_window_seconds)
        self.metrics = MetricsCollector(
            config.state_dir,
            self.events,
            max_history=config.max_metrics_history,
            utilization=self._utilization,
        )
        self.runner = FeatureRunner(config, self.client, self.store, self.events, self.approvals)

        self._running: dict[str, RunningFeature] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._handoff_task: asyncio.Task[None] | None = None
        self._auto_loop_running = False
        self._idle_reported = False
        self._max_concurrency = config.max_concurrency

    # --- Registry ---

    def _register(self, feature_id: str, is_auto_mode: bool = False) -> RunningFeature:
        """Check-then-insert with no await in between."""
        if feature_id in self._running:
            raise AlreadyRunningError(feature_id)
        self._claim()
        entry = RunningFeature(
            feature_id=feature_id,
            project_path=self.config.project_dir,
            is_auto_mode=is_auto_mode,
            model=self.config.worker_model,
            provider="claude",
        )
        self._running[feature_id] = entry
        return entry

    def _release(self, entry: RunningFeature) -> None:
        if self._running.get(entry.feature_id) is entry:
            del self._running[entry.feature_id]
        self._release_claim_if_idle()

    def _claim(self) -> None:
        """Take the project lock and start applying decisions handed over by other processes."""
        self.lock.acquire()
        if self._handoff_task is None or self._handoff_task.done():
            self._handoff_task = asyncio.create_task(self._watch_handoffs(), name="approval-handoffs")

    def _release_claim_if_idle(self) -> None:
        if self._running or self._auto_loop_running:
            return
        self.lock.release()
        task, self._handoff_task = self._handoff_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _watch_handoffs(self) -> None:
        while True:
            await asyncio.sleep(self.config.approval_handoff_poll_seconds)
            for feature_id, raw in self.store.take_approval_handoffs():
                try:
                    decision = ApprovalDecision.model_validate(raw)
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed approval decision for {feature_id}: {e}")
                    continue
                logger.info(f"Applying plan decision for {feature_id} from another process")
                try:
                    applied = self.resolve_plan_approval(
                        feature_id, decision.approved, decision.edited_plan, decision.feedback,
                    )
                except OrchestratorError as e:
                    logger.warning(f"Could not apply plan decision for {feature_id}: {e}")
                    continue
                if not applied:
                    logger.warning(f"Plan decision for {feature_id} arrived but no plan is waiting")

    def is_running(self, feature_id: str) -> bool:
        return feature_id in self._running

    def get_running_features(self) -> list[dict[str, Any]]:
        return [
            entry.model_dump(mode="json", exclude={"cancellation"})
            for entry in self._running.values()
        ]

    def get_status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            auto_loop_running=self._auto_loop_running,
            max_concurrency=self._max_concurrency,
            running_count=len(self._running),
            running_feature_ids=list(self._running),
            pending_approvals=self.approvals.pending_ids(),
        )

    def _utilization(self) -> float | None:
        if not self._auto_loop_running or self._max_concurrency <= 0:
            return None
        return min(1.0, len(self._running) / self._max_concurrency)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background run {task.get_name()} failed: {error}")

    async def drain(self) -> None:
        """Wait until every background feature run has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _save_execution_state(self) -> None:
        self.execution_state.save(ExecutionState(
            auto_loop_was_running=self._auto_loop_running,
            max_concurrency=self._max_concurrency,
            project_path=str(self.config.project_dir),
            running_feature_ids=list(self._running),
        ))

    # --- Feature lifecycle ---

    async def execute_feature(
        self,
        feature_id: str,
        use_worktrees: bool = True,
        is_auto_mode: bool = False,
        continuation_prompt: str | None = None,
    ) -> None:
        """Run one feature to a terminal status. Raises AlreadyRunningError if it is active."""
        entry = self._register(feature_id, is_auto_mode)
        try:
            feature = self.store.require_feature(feature_id)
        except OrchestratorError:
            self._release(entry)
            raise

        if continuation_prompt is None and self._has_resumable_output(feature):
            logger.info(f"Feature {feature_id} has saved output, resuming instead of starting fresh")
            self._release(entry)
            await self.resume_feature(feature_id, use_worktrees, is_auto_mode)
            return

        await self._run_lifecycle(entry, feature, use_worktrees, continuation_prompt=continuation_prompt)

    def _has_resumable_output(self, feature: Feature) -> bool:
        """Saved output counts as resume context unless it belongs to a rejected plan."""
        if feature.plan_spec is not None and feature.plan_spec.status == PlanSpecStatus.REJECTED:
            return False
        return self.store.has_agent_output(feature.id)

    async def resume_feature(
        self,
        feature_id: str,
        use_worktrees: bool = True,
        is_auto_mode: bool = False,
    ) -> None:
        """Continue an interrupted feature from saved output or its pipeline step."""
        if feature_id in self._running:
            raise AlreadyRunningError(feature_id)
        feature = self.store.require_feature(feature_id)
        has_output = self.store.has_agent_output(feature_id)

        info = self.pipelines.detect_status(feature.status)
        if info.is_pipeline:
            if not has_output:
                logger.warning(f"No saved output for pipeline feature {feature_id}, restarting from scratch")
                self.store.update_status(feature_id, FeatureStatus.IN_PROGRESS.value)
                await self.execute_feature(feature_id, use_worktrees, is_auto_mode)
                return

            entry = self._register(feature_id, is_auto_mode)
            if info.step_missing:
                try:
                    logger.warning(
                        f"Pipeline step {info.step_id} was removed, completing {feature_id} "
                        "without remaining pipeline steps"
                    )
                    final = self._final_status(feature, passed=True)
                    self.store.update_status(feature_id, final)
                    self.events.emit(
                        EventType.FEATURE_COMPLETE,
                        feature_id=feature_id,
                        passes=True,
                        status=final,
                        message="Pipeline step no longer exists, feature completed without remaining steps",
                    )
                finally:
                    self._release(entry)
                return

            await self._run_lifecycle(entry, feature, use_worktrees, pipeline_from=info.step_index)
            return

        previous = self.store.read_agent_output(feature_id) if self._has_resumable_output(feature) else None
        if previous and previous.strip():
            logger.info(f"Resuming {feature_id} with saved output as context")
            await self.execute_feature(
                feature_id,
                use_worktrees,
                is_auto_mode,
                continuation_prompt=build_resume_prompt(feature, previous),
            )
        else:
            logger.info(f"No saved output for {feature_id}, starting fresh")
            await self.execute_feature(feature_id, use_worktrees, is_auto_mode)

    async def _run_lifecycle(
        self,
        entry: RunningFeature,
        feature: Feature,
        use_worktrees: bool,
        continuation_prompt: str | None = None,
        pipeline_from: int | None = None,
    ) -> None:
        with feature_context(feature.id):
            await self._drive(entry, feature, use_worktrees, continuation_prompt, pipeline_from)

    async def _drive(
        self,
        entry: RunningFeature,
        feature: Feature,
        use_worktrees: bool,
        continuation_prompt: str | None,
        pipeline_from: int | None,
    ) -> None:
        fid = feature.id
        output: OutputBuffer | None = None
        passed = False
        plan_cancelled = False

        try:
            working_dir = await resolve_working_dir(self.config.project_dir, feature.branch_name, use_worktrees)
            entry.working_dir = working_dir
            entry.branch_name = feature.branch_name
            if entry.is_auto_mode and self._auto_loop_running:
                self._save_execution_state()

            self.events.emit(
                EventType.FEATURE_START,
                feature_id=fid,
                title=feature.title,
                description=feature.description,
                branch_name=feature.branch_name,
                model=entry.model,
            )
            entry.metrics_run_id = self.metrics.start_run(feature, entry.model, entry.provider)

            resuming = continuation_prompt is not None or pipeline_from is not None
            initial = (self.store.read_agent_output(fid) or "") if resuming else ""
            output = OutputBuffer(self.store, fid, initial=initial)

            steps = self.pipelines.load().sorted_steps()
            if pipeline_from is None:
                self.store.update_status(fid, FeatureStatus.IN_PROGRESS.value)
                await self._implement(entry, feature, working_dir, output, continuation_prompt)
                await self._run_pipeline(entry, feature, steps, working_dir, output)
                feature = self.store.require_feature(fid)
                passed = await self._verify_and_judge(entry, feature, working_dir, output)
            else:
                self.events.emit(
                    EventType.PROGRESS,
                    feature_id=fid,
                    content=f"Resuming from pipeline step {pipeline_from + 1}/{len(steps)}",
                )
                await self._run_pipeline(entry, feature, steps[pipeline_from:], working_dir, output)
                passed = True

            final = self._final_status(feature, passed)
            self.store.update_status(fid, final)
            await self._record_token_efficiency(entry, output.text, working_dir)

            if passed:
                self.breaker.record_success()
            else:
                await self._record_failure(ErrorInfo(type="quality_gate", message="Quality gates failed"))

            self._capture_learnings(feature, output.text, final)
            logger.info(f"Feature {fid} finished: {final}")
            self.events.emit(
                EventType.FEATURE_COMPLETE,
                feature_id=fid,
                passes=passed,
                status=final,
                message=f"Feature completed in {self._elapsed(entry):.0f}s"
                + ("" if passed else " (quality checks or judge did not pass)"),
            )

        except FeatureAbortedError as e:
            if isinstance(e, PlanCancelledError):
                logger.info(f"Plan for {fid} rejected without feedback, returning to backlog")
                self._set_status_quietly(fid, FeatureStatus.BACKLOG.value)
                plan_cancelled = True
                message = "Plan rejected, feature cancelled"
            else:
                logger.info(f"Feature {fid} stopped by user")
                message = "Feature stopped by user"
            self.events.emit(EventType.FEATURE_COMPLETE, feature_id=fid, passes=False, message=message)

        except Exception as e:
            info = classify_error(e)
            logger.error(f"Feature {fid} failed ({info.type}): {info.message}")
            self._set_status_quietly(fid, FeatureStatus.BACKLOG.value)
            self.events.emit(
                EventType.ERROR,
                feature_id=fid,
                error=info.message,
                error_type=info.type,
            )
            await self._record_failure(info)

        finally:
            if output is not None:
                output.flush()
            if plan_cancelled:
                try:
                    self.store.archive_agent_output(fid, "rejected")
                except OSError as e:
                    logger.warning(f"Could not archive rejected plan output for {fid}: {e}")
            self._release(entry)
            if entry.metrics_run_id:
                self.metrics.finish_run(entry.metrics_run_id, passed)
            if self._auto_loop_running:
                self._save_execution_state()

    async def _implement(
        self,
        entry: RunningFeature,
        feature: Feature,
        working_dir: Path,
        output: OutputBuffer,
        continuation_prompt: str | None,
    ) -> None:
        if continuation_prompt is not None:
            output.append("\n\n---\n\n## Continuing\n\n")
        prompt = continuation_prompt or build_initial_prompt(feature)

        started = time.monotonic()
        result = await self.runner.run_feature_agent(
            feature,
            prompt,
            working_dir,
            output,
            entry.cancellation,
            planning=continuation_prompt is None,
        )
        total_ms = int((time.monotonic() - started) * 1000)

        refreshed = self.store.require_feature(feature.id)
        complexity = feature_complexity(refreshed)

        def record(run) -> None:
            if result.planning_ms:
                run.stage_durations.add("planning", result.planning_ms)
            run.stage_durations.add("execution", max(0, total_ms - result.planning_ms))
            run.complexity = complexity or run.complexity
            run.title = refreshed.title or run.title

        self.metrics.update_run(entry.metrics_run_id, record)

    async def _run_pipeline(
        self,
        entry: RunningFeature,
        feature: Feature,
        steps: list[PipelineStep],
        working_dir: Path,
        output: OutputBuffer,
    ) -> None:
        """Run post-implementation steps in order, exposing each as a status marker."""
        if not steps:
            return
        fid = feature.id
        started = time.monotonic()
        for index, step in enumerate(steps):
            entry.cancellation.raise_if_cancelled()
            self.store.update_status(fid, pipeline_status(step.id))
            logger.info(f"Pipeline step {step.name} for {fid}")
            self.events.emit(
                EventType.PIPELINE_STEP_STARTED,
                feature_id=fid,
                step_id=step.id,
                step_name=step.name,
                step_index=index,
                total_steps=len(steps),
            )
            output.append(f"\n\n---\n\n## Pipeline Step: {step.name}\n\n")
            await self.runner.stream(
                fid,
                build_pipeline_step_prompt(step, feature, output.text),
                working_dir,
                output,
                entry.cancellation,
            )
            self.events.emit(
                EventType.PIPELINE_STEP_COMPLETE,
                feature_id=fid,
                step_id=step.id,
                step_name=step.name,
                step_index=index,
                total_steps=len(steps),
            )
        self.metrics.add_stage_time(entry.metrics_run_id, "pipeline", int((time.monotonic() - started) * 1000))

    async def _revise(
        self, entry: RunningFeature, prompt: str, working_dir: Path, output: OutputBuffer, label: str,
    ) -> None:
        """One revision call. Counts as an extra attempt and as execution time."""
        output.append(f"\n\n---\n\n## {label}\n\n")
        started = time.monotonic()
        await self.runner.stream(entry.feature_id, prompt, working_dir, output, entry.cancellation)
        elapsed = int((time.monotonic() - started) * 1000)

        def record(run) -> None:
            run.attempts += 1
            run.revisions += 1
            run.stage_durations.add("execution", elapsed)

        self.metrics.update_run(entry.metrics_run_id, record)

    async def _run_quality_gate(
        self, entry: RunningFeature, feature: Feature, working_dir: Path, attempt: int,
    ) -> QualityCheckOutcome:
        started = time.monotonic()
        if feature.skip_tests:
            outcome = skipped_outcome(self.config.quality_checks)
        else:
            outcome = await run_quality_checks(
                self.config.quality_checks,
                working_dir,
                self.config.quality_check_timeout_seconds,
                cancellation=entry.cancellation,
            )
        elapsed = int((time.monotonic() - started) * 1000)

        self.events.emit(
            EventType.QUALITY_METRICS,
            feature_id=feature.id,
            passed=outcome.passed,
            attempt=attempt,
            checks=[r.model_dump(mode="json") for r in outcome.results],
        )

        def record(run) -> None:
            run.quality = outcome.results
            if not feature.skip_tests:
                run.stage_durations.add("verification", elapsed)

        self.metrics.update_run(entry.metrics_run_id, record)
        return outcome

    async def _verify_and_judge(
        self, entry: RunningFeature, feature: Feature, working_dir: Path, output: OutputBuffer,
    ) -> bool:
        """Quality gate with fix loop, then judge with revision loop. True if both passed."""
        outcome = await self._run_quality_gate(entry, feature, working_dir, attempt=0)
        fixes = 0
        while not outcome.passed and fixes < self.config.max_quality_fix_attempts:
            fixes += 1
            logger.info(f"Quality gate failed for {feature.id}, fix attempt {fixes}")
            await self._revise(
                entry, build_quality_fix_prompt(feature, outcome.failing), working_dir, output,
                f"Quality Fix {fixes}",
            )
            outcome = await self._run_quality_gate(entry, feature, working_dir, attempt=fixes)

        if not outcome.passed:
            logger.warning(f"Quality gate still failing for {feature.id} after {fixes} fix attempts")
            return False

        entry.cancellation.raise_if_cancelled()
        tasks = feature.plan_spec.tasks if feature.plan_spec else []
        verdict = await self._judge(entry, feature, tasks, outcome, working_dir, output)
        revisions = 0
        while verdict.verdict != JudgeVerdict.PASS and revisions < self.config.max_judge_revisions:
            revisions += 1
            logger.info(f"Judge asked for revisions on {feature.id} ({revisions})")
            await self._revise(
                entry, build_judge_fix_prompt(feature, verdict), working_dir, output,
                f"Judge Revision {revisions}",
            )
            verdict = await self._judge(entry, feature, tasks, outcome, working_dir, output)

        return verdict.verdict == JudgeVerdict.PASS

    async def _judge(self, entry, feature, tasks, outcome, working_dir, output):
        started = time.monotonic()
        result = await evaluate(
            self.client,
            feature,
            tasks,
            outcome.results,
            output.text,
            model=self.config.judge_model,
            working_dir=working_dir,
            system_prompt=self.config.judge_system_prompt,
            cancellation=entry.cancellation,
        )
        elapsed = int((time.monotonic() - started) * 1000)
        self.metrics.add_stage_time(entry.metrics_run_id, "judge", elapsed)
        self.events.emit(
            EventType.JUDGE_RESULT,
            feature_id=feature.id,
            verdict=result.verdict.value,
            issue_count=len(result.issues),
            confidence=result.confidence,
        )
        return result

    @staticmethod
    def _final_status(feature: Feature, passed: bool) -> str:
        if passed and not feature.skip_tests:
            return FeatureStatus.VERIFIED.value
        return FeatureStatus.WAITING_APPROVAL.value

    @staticmethod
    def _elapsed(entry: RunningFeature) -> float:
        return (datetime.now() - entry.started_at).total_seconds()

    def _set_status_quietly(self, feature_id: str, status: str) -> None:
        try:
            self.store.update_status(feature_id, status)
        except OrchestratorError as e:
            logger.error(f"Could not set status of {feature_id} to {status}: {e}")

    async def _record_token_efficiency(self, entry: RunningFeature, text: str, working_dir: Path) -> None:
        efficiency = await estimate_token_efficiency(text, working_dir)
        if efficiency is not None and entry.metrics_run_id:
            self.metrics.update_run(entry.metrics_run_id, lambda run: setattr(run, "token_efficiency", efficiency))

    def _capture_learnings(self, feature: Feature, text: str, status: str) -> None:
        """Append the agent's summary to the progress log. Failures here never affect the run."""
        match = SUMMARY_RE.search(text)
        summary = match.group(1).strip() if match else text[-PROGRESS_TAIL_CHARS:].strip()
        try:
            self.store.append_progress(ProgressEntry(
                timestamp=datetime.now(),
                feature_id=feature.id,
                feature_title=feature.title or feature.id,
                status=status,
                summary=summary or "(no summary)",
            ))
        except OSError as e:
            logger.warning(f"Could not record learnings for {feature.id}: {e}")

    # --- Stop / verify ---

    def stop_feature(self, feature_id: str) -> bool:
        """Cancel a running feature and free its slot immediately."""
        entry = self._running.get(feature_id)
        if entry is None:
            return False
        self.approvals.cancel(feature_id)
        entry.cancellation.cancel()
        del self._running[feature_id]
        self._release_claim_if_idle()
        logger.info(f"Stop requested for {feature_id}")
        return True

    async def verify_feature(self, feature_id: str, use_worktrees: bool = True) -> bool:
        """Run the quality gate on demand in the feature's working directory."""
        if feature_id in self._running:
            raise AlreadyRunningError(feature_id)
        feature = self.store.require_feature(feature_id)
        working_dir = await resolve_working_dir(self.config.project_dir, feature.branch_name, use_worktrees)
        outcome = await run_quality_checks(
            self.config.quality_checks, working_dir, self.config.quality_check_timeout_seconds,
        )
        self.events.emit(
            EventType.QUALITY_METRICS,
            feature_id=feature_id,
            passed=outcome.passed,
            attempt=0,
            checks=[r.model_dump(mode="json") for r in outcome.results],
        )
        failing = ", ".join(r.name for r in outcome.failing)
        self.events.emit(
            EventType.FEATURE_COMPLETE,
            feature_id=feature_id,
            passes=outcome.passed,
            message="All verification checks passed" if outcome.passed else f"Verification failed: {failing}",
        )
        return outcome.passed

    # --- Plan approval ---

    def resolve_plan_approval(
        self,
        feature_id: str,
        approved: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
    ) -> bool:
        """Deliver a human decision.

        With no waiter here, the decision goes to the live orchestrator that owns the
        project, or recovers a plan whose waiter was lost in a restart.
        """
        feature = self.store.require_feature(feature_id)

        if not self.approvals.has_pending(feature_id):
            owner = self.lock.holder()
            if owner is not None:
                return self._hand_off_decision(feature, owner, approved, edited_plan, feedback)
            return self._recover_plan_decision(feature, approved, edited_plan, feedback)

        if approved:
            self.store.update_plan_spec(
                feature_id,
                status=PlanSpecStatus.APPROVED,
                approved_at=datetime.now(),
                reviewed_by_user=True,
            )
        else:
            self.store.update_plan_spec(feature_id, status=PlanSpecStatus.REJECTED, reviewed_by_user=True)
            if feedback:
                self.events.emit(EventType.PLAN_REJECTED, feature_id=feature_id, feedback=feedback)

        return self.approvals.resolve(
            feature_id,
            ApprovalDecision(approved=approved, edited_plan=edited_plan, feedback=feedback),
        )

    def _hand_off_decision(
        self, feature: Feature, owner: int, approved: bool, edited_plan: str | None, feedback: str | None,
    ) -> bool:
        plan = feature.plan_spec
        if plan is None or plan.status != PlanSpecStatus.GENERATED:
            logger.warning(f"No pending approval for {feature.id}")
            return False
        decision = ApprovalDecision(approved=approved, edited_plan=edited_plan, feedback=feedback)
        self.store.write_approval_handoff(feature.id, decision.model_dump(mode="json"))
        logger.info(f"Handed plan decision for {feature.id} to orchestrator pid {owner}")
        return True

    def _recover_plan_decision(
        self, feature: Feature, approved: bool, edited_plan: str | None, feedback: str | None,
    ) -> bool:
        fid = feature.id
        plan = feature.plan_spec
        if plan is None or plan.status != PlanSpecStatus.GENERATED:
            logger.warning(f"No pending approval for {fid}")
            return False
        if fid in self._running:
            raise AlreadyRunningError(fid)

        if approved:
            self._claim()
            content = edited_plan or plan.content or ""
            self.store.update_plan_spec(
                fid,
                status=PlanSpecStatus.APPROVED,
                approved_at=datetime.now(),
                reviewed_by_user=True,
                content=content,
            )
            logger.info(f"Recovered approval for {fid}, starting implementation")
            self._spawn(
                self.execute_feature(
                    fid,
                    self.config.use_worktrees,
                    continuation_prompt=build_approved_plan_prompt(content, feedback),
                ),
                name=f"approved-{fid}",
            )
            return True

        self.store.update_plan_spec(fid, status=PlanSpecStatus.REJECTED, reviewed_by_user=True)
        self.store.update_status(fid, FeatureStatus.BACKLOG.value)
        self.store.archive_agent_output(fid, "rejected")
        self.events.emit(EventType.PLAN_REJECTED, feature_id=fid, feedback=feedback)
        return True

    # --- Crash recovery ---

    def resume_interrupted_features(self) -> list[str]:
        """Resume features left in progress (or mid-pipeline) that have saved output."""
        interrupted = [
            f for f in self.store.list_features()
            if (f.status == FeatureStatus.IN_PROGRESS.value or f.is_pipeline_status)
            and f.id not in self._running
            and self.store.has_agent_output(f.id)
        ]
        if not interrupted:
            return []

        logger.info(f"Resuming {len(interrupted)} interrupted features")
        self.events.emit(
            EventType.RESUMING_FEATURES,
            message=f"Resuming {len(interrupted)} interrupted feature(s)",
            features=[{"id": f.id, "title": f.title, "status": f.status} for f in interrupted],
        )
        for feature in interrupted:
            self._spawn(
                self.resume_feature(feature.id, self.config.use_worktrees),
                name=f"resume-{feature.id}",
            )
        return [f.id for f in interrupted]

    # --- Auto-loop ---

    @property
    def auto_loop_running(self) -> bool:
        return self._auto_loop_running

    def start_auto_loop(self, max_concurrency: int | None = None) -> None:
        if self._auto_loop_running:
            raise AutoLoopAlreadyRunningError()
        self._claim()
        self._auto_loop_running = True
        self._idle_reported = False
        self._max_concurrency = max_concurrency or self.config.max_concurrency
        self.breaker.reset()
        logger.info(f"Auto mode started (max concurrency {self._max_concurrency})")
        self.events.emit(
            EventType.AUTO_MODE_STARTED,
            message=f"Auto mode started with max {self._max_concurrency} concurrent features",
            max_concurrency=self._max_concurrency,
        )
        self._save_execution_state()
        self._loop_task = asyncio.create_task(self._run_auto_loop(), name="auto-loop")

    async def stop_auto_loop(self) -> int:
        """Stop picking up new features. In-flight features keep running."""
        was_running = self._auto_loop_running
        self._auto_loop_running = False
        self._release_claim_if_idle()
        loop_task, self._loop_task = self._loop_task, None
        if loop_task is not None and loop_task is not asyncio.current_task():
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        self.execution_state.clear()
        if was_running:
            logger.info("Auto mode stopped")
            self.events.emit(EventType.AUTO_MODE_STOPPED, message="Auto mode stopped")
        return len(self._running)

    def _ready_features(self) -> list[Feature]:
        features = self.store.list_features()
        candidates = [f for f in features if f.status in READY_STATUSES]
        return [
            f for f in resolve_dependencies(candidates)
            if are_dependencies_satisfied(f, features, self.config.skip_verification_in_auto_mode)
        ]

    async def _run_auto_loop(self) -> None:
        while self._auto_loop_running:
            try:
                if len(self._running) >= self._max_concurrency:
                    await asyncio.sleep(self.config.capacity_wait_seconds)
                    continue

                candidates = [f for f in self._ready_features() if f.id not in self._running]
                if not candidates:
                    if not self._running and not self._idle_reported:
                        self._idle_reported = True
                        self.events.emit(EventType.AUTO_MODE_IDLE, message="No pending features, auto mode idle")
                    await asyncio.sleep(self.config.idle_interval_seconds)
                    continue

                self._idle_reported = False
                feature = candidates[0]
                logger.info(f"Auto mode starting feature {feature.id}")
                self._spawn(
                    self.execute_feature(feature.id, self.config.use_worktrees, is_auto_mode=True),
                    name=f"auto-{feature.id}",
                )
                await asyncio.sleep(self.config.loop_interval_seconds)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Auto loop iteration failed")
                await asyncio.sleep(self.config.idle_interval_seconds)

    async def _record_failure(self, info: ErrorInfo) -> None:
        if not self.breaker.record_failure(info.type, info.message):
            return
        if not self._auto_loop_running or not self.breaker.mark_paused():
            return
        message = self.breaker.pause_message(info.type)
        logger.warning(f"{message} Last error: {info.message}")
        self.events.emit(
            EventType.AUTO_MODE_PAUSED,
            message=message,
            error_type=info.type,
            original_error=info.message,
            failure_count=self.breaker.failure_count,
        )
        await self.stop_auto_loop()

    async def shutdown(self) -> None:
        """Stop the loop and cancel every running feature."""
        await self.stop_auto_loop()
        for feature_id in list(self._running):
            self.stop_feature(feature_id)
        await self.drain()
