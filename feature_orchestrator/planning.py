"""Plan quality gate, plan revisions, human approval loop and sub-planning refinement."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from pydantic import BaseModel, Field

from .agent import collect_response
from .errors import AgentError, PlanCancelledError
from .events import EventType
from .models import Feature, PlanningMode, PlanSpecStatus, Task
from .plan_parser import extract_plan, needs_refinement, parse_tasks
from .prompts import (
    build_plan_quality_revision_prompt,
    build_plan_revision_prompt,
    build_subplan_prompt,
)

if TYPE_CHECKING:
    from .agent import AgentClient, CancellationToken
    from .approvals import ApprovalRegistry
    from .config import OrchestratorConfig
    from .events import EventBus
    from .state import FeatureStore

logger = logging.getLogger("orchestrator")

MIN_SPEC_TASKS = 3

LITE_SECTIONS: list[tuple[str, re.Pattern[str]]] = [
    ("Goal", re.compile(r"\bGoal\b", re.IGNORECASE)),
    ("Approach", re.compile(r"\bApproach\b", re.IGNORECASE)),
    ("Files to Touch", re.compile(r"Files?\s+to\s+Touch", re.IGNORECASE)),
    ("Tasks", re.compile(r"\bTasks?\b", re.IGNORECASE)),
    ("Risks", re.compile(r"\bRisks?\b", re.IGNORECASE)),
]

SPEC_SECTIONS: list[tuple[str, re.Pattern[str]]] = [
    ("Acceptance Criteria", re.compile(r"Acceptance\s+Criteria", re.IGNORECASE)),
    ("Verification / Test Strategy", re.compile(r"Verification|Test\s+Strategy", re.IGNORECASE)),
    ("Security / Privacy / Auth", re.compile(r"Security|Privacy|Auth", re.IGNORECASE)),
    ("Performance / Scalability", re.compile(r"Performance|Scalability|Latency", re.IGNORECASE)),
    (
        "UX states (loading / empty / error)",
        re.compile(r"UX|User\s+Experience|Loading|Empty\s+State|Error\s+State", re.IGNORECASE),
    ),
    ("Data schema / API contract", re.compile(r"Schema|Contract|API|Validation", re.IGNORECASE)),
]


def plan_quality_issues(content: str, mode: PlanningMode) -> list[str]:
    """Structural checks for a generated plan. Empty list means the plan passes."""
    if mode == PlanningMode.SKIP:
        return []
    if mode == PlanningMode.LITE:
        return [f"Missing section: {name}" for name, pattern in LITE_SECTIONS if not pattern.search(content)]

    issues = [f"Missing section: {name}" for name, pattern in SPEC_SECTIONS if not pattern.search(content)]
    task_count = len(parse_tasks(content))
    if task_count == 0:
        issues.append("Missing tasks block.")
    elif task_count < MIN_SPEC_TASKS:
        issues.append("Too few tasks for the scope.")
    return issues


def requires_approval(feature: Feature) -> bool:
    """Only spec / full / lite plans can be gated, and only when the feature asks for it."""
    if not feature.require_plan_approval:
        return False
    return feature.planning_mode in (PlanningMode.LITE, PlanningMode.SPEC, PlanningMode.FULL)


class ApprovedPlan(BaseModel):
    content: str
    tasks: list[Task] = Field(default_factory=list)
    feedback: str | None = None
    version: int = 1


class PlanningSession:
    """Takes a candidate plan from the first agent call through to an approved plan."""

    def __init__(
        self,
        feature: Feature,
        config: OrchestratorConfig,
        client: AgentClient,
        store: FeatureStore,
        events: EventBus,
        approvals: ApprovalRegistry,
        working_dir: Path,
        cancellation: CancellationToken | None = None,
        on_text: Callable[[str], None] | None = None,
    ):
        self.feature = feature
        self.config = config
        self.client = client
        self.store = store
        self.events = events
        self.approvals = approvals
        self.working_dir = working_dir
        self.cancellation = cancellation
        self.on_text = on_text

    async def _ask_planner(self, prompt: str) -> str:
        if self.on_text is not None:
            self.on_text("\n\n---\n\n")
        return await collect_response(
            self.client.execute(
                prompt,
                model=self.config.planner_model,
                working_dir=self.working_dir,
                system_prompt=self.config.planner_system_prompt,
                cancellation=self.cancellation,
                mcp_servers=self.config.mcp_servers,
                allowed_tools=self.config.allowed_tools,
                max_turns=self.config.max_turns,
            ),
            self.feature.id,
            on_text=self.on_text,
        )

    async def finalize(self, candidate: str) -> ApprovedPlan:
        """Quality-gate, persist, approve and refine a candidate plan."""
        fid = self.feature.id
        mode = self.feature.planning_mode

        content, issues = await self.improve_plan_quality(candidate, mode)
        tasks = parse_tasks(content)
        current = self.store.require_feature(fid).plan_spec
        version = current.version if current and current.content else 1
        self.store.update_plan_spec(
            fid,
            status=PlanSpecStatus.GENERATED,
            content=content,
            version=version,
            generated_at=datetime.now(),
            tasks=tasks,
            tasks_total=len(tasks),
            tasks_completed=0,
            current_task_ids=[],
            quality_issues=issues,
        )
        if issues:
            logger.warning(f"Plan for {fid} still has quality issues: {'; '.join(issues)}")

        feedback = None
        reviewed = False
        if requires_approval(self.feature):
            content, tasks, feedback, version = await self.await_approval(content, tasks, version)
            reviewed = True
        else:
            logger.info(f"Plan for {fid} auto-approved")
            self.events.emit(
                EventType.PLAN_AUTO_APPROVED,
                feature_id=fid,
                plan_content=content,
                planning_mode=mode.value,
            )

        self.store.update_plan_spec(
            fid,
            status=PlanSpecStatus.APPROVED,
            content=content,
            version=version,
            approved_at=datetime.now(),
            reviewed_by_user=reviewed,
            tasks=tasks,
            tasks_total=len(tasks),
        )

        tasks = await self.refine_tasks(content, tasks)
        return ApprovedPlan(content=content, tasks=tasks, feedback=feedback, version=version)

    async def improve_plan_quality(self, content: str, mode: PlanningMode) -> tuple[str, list[str]]:
        """Bounded automatic revisions until the plan passes its structural checks."""
        issues = plan_quality_issues(content, mode)
        for attempt in range(1, self.config.max_plan_quality_revisions + 1):
            if not issues:
                break
            logger.info(
                f"Plan quality gate failed for {self.feature.id} "
                f"(revision {attempt}/{self.config.max_plan_quality_revisions}): {'; '.join(issues)}"
            )
            self.events.emit(
                EventType.PLAN_QUALITY_GATE_FAILED,
                feature_id=self.feature.id,
                issues=issues,
                attempt=attempt,
            )
            revised = await self._ask_planner(build_plan_quality_revision_prompt(content, issues, mode))
            if not revised.strip():
                logger.warning(f"Plan quality revision for {self.feature.id} returned nothing")
                break
            content = extract_plan(revised) or revised.strip()
            issues = plan_quality_issues(content, mode)
        return content, issues

    async def await_approval(
        self, content: str, tasks: list[Task], version: int,
    ) -> tuple[str, list[Task], str | None, int]:
        """Suspend until a human approves. Rejections with feedback trigger a revision."""
        fid = self.feature.id
        while True:
            waiter = self.approvals.register(fid, self.config.plan_approval_timeout_seconds)
            logger.info(f"Waiting for plan approval on {fid} (v{version})")
            self.events.emit(
                EventType.PLAN_APPROVAL_REQUIRED,
                feature_id=fid,
                plan_content=content,
                planning_mode=self.feature.planning_mode.value,
                plan_version=version,
            )
            decision = await waiter

            if decision.approved:
                if decision.edited_plan:
                    content = decision.edited_plan
                    tasks = parse_tasks(content)
                logger.info(f"Plan for {fid} approved")
                self.events.emit(EventType.PLAN_APPROVED, feature_id=fid, has_edits=bool(decision.edited_plan))
                return content, tasks, decision.feedback, version

            if not decision.feedback and not decision.edited_plan:
                raise PlanCancelledError("Plan rejected without feedback, feature cancelled")

            version += 1
            logger.info(f"Plan for {fid} rejected with feedback, regenerating v{version}")
            self.events.emit(
                EventType.PLAN_REVISION_REQUESTED,
                feature_id=fid,
                feedback=decision.feedback,
                has_edits=bool(decision.edited_plan),
                plan_version=version,
            )
            self.store.update_plan_spec(fid, status=PlanSpecStatus.GENERATING, version=version)

            previous = decision.edited_plan or content
            revised = await self._ask_planner(
                build_plan_revision_prompt(previous, version - 1, decision.feedback)
            )
            content = extract_plan(revised) or revised.strip() or previous
            tasks = parse_tasks(content)
            self.store.update_plan_spec(
                fid,
                status=PlanSpecStatus.GENERATED,
                content=content,
                version=version,
                generated_at=datetime.now(),
                tasks=tasks,
                tasks_total=len(tasks),
                tasks_completed=0,
            )

    async def refine_tasks(self, content: str, tasks: list[Task]) -> list[Task]:
        """One sub-planning pass for large task lists, kept only if it splits tasks further."""
        passes = 0
        while passes < self.config.max_subplanning_passes and needs_refinement(
            tasks,
            self.config.task_refinement_count_threshold,
            self.config.task_refinement_score_threshold,
        ):
            passes += 1
            logger.info(f"Refining {len(tasks)} tasks for {self.feature.id} (pass {passes})")
            try:
                refined = parse_tasks(await self._ask_planner(build_subplan_prompt(content, tasks)))
            except AgentError as e:
                logger.warning(f"Task refinement failed for {self.feature.id}: {e}")
                break
            if len(refined) <= len(tasks):
                logger.info("Refinement did not split tasks further, keeping the original list")
                break
            tasks = refined
            self.store.update_plan_spec(
                self.feature.id, tasks=tasks, tasks_total=len(tasks), tasks_completed=0,
            )
        return tasks
