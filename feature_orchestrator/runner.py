"""Agent invocation for one feature: stream consumption, output persistence, plan fan-out."""

from __future__ import annotations

import logging
import time
from contextlib import aclosing
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from .agent import AgentEventKind, describe_tool_use
from .errors import AgentError
from .events import EventType
from .models import Feature, PlanningMode, Task, TaskStatus
from .plan_parser import extract_plan
from .planning import ApprovedPlan, PlanningSession
from .prompts import PLAN_MARKER, build_approved_plan_prompt, build_task_prompt
from .scheduler import TaskScheduler

if TYPE_CHECKING:
    from .agent import AgentClient, CancellationToken
    from .approvals import ApprovalRegistry
    from .config import OrchestratorConfig
    from .events import EventBus
    from .state import FeatureStore

logger = logging.getLogger("orchestrator")

AUTH_FAILURE_PHRASES = (
    "Invalid API key",
    "authentication_failed",
    "Fix external API key",
)

FLUSH_INTERVAL_SECONDS = 0.5


class OutputBuffer:
    """Accumulates agent text and mirrors it to agent-output.md."""

    def __init__(self, store: FeatureStore, feature_id: str, initial: str = ""):
        self.store = store
        self.feature_id = feature_id
        self.text = initial
        self._last_flush = 0.0
        self._dirty = False

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        self.text += chunk
        self._dirty = True
        if time.monotonic() - self._last_flush >= FLUSH_INTERVAL_SECONDS:
            self.flush()

    def flush(self) -> None:
        if not self._dirty:
            return
        self.store.write_agent_output(self.feature_id, self.text)
        self._last_flush = time.monotonic()
        self._dirty = False


class RunResult(BaseModel):
    planning_ms: int = 0
    plan: ApprovedPlan | None = None
    tasks: list[Task] = Field(default_factory=list)


class FeatureRunner:
    """Runs agent calls on behalf of the orchestrator."""

    def __init__(
        self,
        config: OrchestratorConfig,
        client: AgentClient,
        store: FeatureStore,
        events: EventBus,
        approvals: ApprovalRegistry,
    ):
        self.config = config
        self.client = client
        self.store = store
        self.events = events
        self.approvals = approvals

    async def stream(
        self,
        feature_id: str,
        prompt: str,
        working_dir: Path,
        output: OutputBuffer,
        cancellation: CancellationToken | None = None,
        model: str | None = None,
        system_prompt: str | None = None,
        max_turns: int | None = None,
        stop_at_marker: bool = False,
    ) -> str:
        """Consume one agent call, mirroring text to the output buffer. Returns this call's text."""
        text = ""
        tool_count = 0
        call = self.client.execute(
            prompt,
            model=model or self.config.worker_model,
            working_dir=working_dir,
            system_prompt=system_prompt if system_prompt is not None else self.config.worker_system_prompt,
            cancellation=cancellation,
            mcp_servers=self.config.mcp_servers,
            allowed_tools=self.config.allowed_tools,
            max_turns=max_turns or self.config.max_turns,
        )
        try:
            async with aclosing(call) as events:
                async for event in events:
                    if event.kind == AgentEventKind.TEXT and event.text:
                        if text and not text.endswith("\n"):
                            output.append("\n\n")
                        text += event.text
                        output.append(event.text)
                        self._log_assistant_text(event.text)
                        if any(phrase in event.text for phrase in AUTH_FAILURE_PHRASES):
                            raise AgentError(
                                feature_id,
                                "Authentication failed: invalid or missing API key. "
                                "Check your agent credentials.",
                                retriable=False,
                            )
                        self.events.emit(EventType.PROGRESS, feature_id=feature_id, content=event.text)
                        if stop_at_marker and PLAN_MARKER in text:
                            break
                    elif event.kind == AgentEventKind.TOOL_USE:
                        tool_count += 1
                        summary = describe_tool_use(event.tool_name or "", event.tool_input)
                        logger.info(f"  [{tool_count:3d}] {summary}")
                        output.append(f"\n\nTool: {summary}\n")
                        self.events.emit(
                            EventType.TOOL,
                            feature_id=feature_id,
                            tool=event.tool_name,
                            input=event.tool_input,
                        )
                    elif event.kind == AgentEventKind.ERROR:
                        raise AgentError(feature_id, event.text or "Unknown agent error")
                    elif event.kind == AgentEventKind.RESULT:
                        if event.is_error:
                            raise AgentError(feature_id, event.text or "Agent returned an error result")
                        if not text and event.text:
                            text = event.text
                            output.append(event.text)
        finally:
            output.flush()
        return text

    async def run_feature_agent(
        self,
        feature: Feature,
        prompt: str,
        working_dir: Path,
        output: OutputBuffer,
        cancellation: CancellationToken,
        planning: bool = True,
    ) -> RunResult:
        """First implementation call plus, when a plan is produced, approval and task fan-out."""
        planning = planning and feature.planning_mode != PlanningMode.SKIP
        started = time.monotonic()
        if planning:
            self.events.emit(
                EventType.PLANNING_STARTED,
                feature_id=feature.id,
                planning_mode=feature.planning_mode.value,
            )

        text = await self.stream(
            feature.id,
            prompt,
            working_dir,
            output,
            cancellation,
            model=self.config.planner_model if planning else self.config.worker_model,
            system_prompt=self.config.planner_system_prompt if planning else None,
            stop_at_marker=planning,
        )

        candidate = extract_plan(text) if planning else None
        if candidate is None:
            return RunResult()

        logger.info(f"Plan generated for {feature.id}")
        session = PlanningSession(
            feature,
            self.config,
            self.client,
            self.store,
            self.events,
            self.approvals,
            working_dir,
            cancellation,
            on_text=output.append,
        )
        plan = await session.finalize(candidate)
        planning_ms = int((time.monotonic() - started) * 1000)

        if plan.tasks:
            await self.run_tasks(feature, plan, working_dir, output, cancellation)
        else:
            logger.info(f"No parsed tasks for {feature.id}, using a single implementation call")
            output.append("\n\n---\n\n## Implementation\n\n")
            await self.stream(
                feature.id,
                build_approved_plan_prompt(plan.content, plan.feedback),
                working_dir,
                output,
                cancellation,
            )
        return RunResult(planning_ms=planning_ms, plan=plan, tasks=plan.tasks)

    async def run_tasks(
        self,
        feature: Feature,
        plan: ApprovedPlan,
        working_dir: Path,
        output: OutputBuffer,
        cancellation: CancellationToken,
    ) -> None:
        fid = feature.id
        logger.info(f"Executing {len(plan.tasks)} planned tasks for {fid}")

        async def execute_task(task: Task, completed: list[Task], upcoming: list[Task]) -> None:
            output.append(f"\n\n---\n\n## {task.id}: {task.description}\n\n")
            await self.stream(
                fid,
                build_task_prompt(task, completed, upcoming, plan.content, plan.feedback),
                working_dir,
                output,
                cancellation,
                max_turns=self.config.task_max_turns,
            )

        def sync_plan_spec(tasks: list[Task], in_flight: list[str]) -> None:
            snapshot = [t.model_copy() for t in tasks]
            completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)

            def apply(plan_spec) -> None:
                plan_spec.tasks = snapshot
                plan_spec.tasks_total = len(snapshot)
                plan_spec.tasks_completed = completed
                plan_spec.current_task_ids = list(in_flight)

            self.store.update_plan_spec_with_retry(fid, apply, self.config.plan_spec_write_retries)

        scheduler = TaskScheduler(
            fid,
            plan.tasks,
            execute_task,
            max_concurrency=self.config.max_task_concurrency,
            on_update=sync_plan_spec,
            events=self.events,
            cancellation=cancellation,
        )
        await scheduler.run()

    @staticmethod
    def _log_assistant_text(text: str) -> None:
        """Log the first meaningful line as progress."""
        for line in text.split("\n"):
            line = line.strip()
            if line:
                if len(line) > 120:
                    line = line[:117] + "..."
                logger.info(f"  Agent: {line}")
                break
        logger.debug(f"  [full text] {text[:500]}")
