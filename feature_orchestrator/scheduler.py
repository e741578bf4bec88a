"""Dependency-aware task scheduler: a bounded worker pool over a ready set."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from .errors import DependencyCycleError, FeatureAbortedError, TaskExecutionError
from .events import EventType
from .models import Task, TaskStatus
from .plan_parser import phase_number

if TYPE_CHECKING:
    from .agent import CancellationToken
    from .events import EventBus

logger = logging.getLogger("orchestrator")

TaskExecutor = Callable[[Task, list[Task], list[Task]], Awaitable[None]]
"""Runs one task given (task, completed tasks, upcoming tasks). Raises on failure."""

TaskUpdateHook = Callable[[list[Task], list[str]], None]
"""Called after every status transition with (tasks, in-flight task ids)."""


class TaskScheduler:
    """Runs a feature's task graph.

    A task is ready when it is pending and every dependency is completed. After
    the first failure no new tasks are admitted; in-flight tasks drain, leftover
    pending tasks become blocked and ``TaskExecutionError`` is raised. A point with
    nothing running, nothing ready and tasks still pending is a dependency cycle.
    """

    def __init__(
        self,
        feature_id: str,
        tasks: list[Task],
        execute_task: TaskExecutor,
        max_concurrency: int = 3,
        on_update: TaskUpdateHook | None = None,
        events: EventBus | None = None,
        cancellation: CancellationToken | None = None,
    ):
        self.feature_id = feature_id
        self.tasks = tasks
        self.execute_task = execute_task
        self.max_concurrency = max(1, max_concurrency)
        self.on_update = on_update
        self.events = events
        self.cancellation = cancellation
        self._running: dict[asyncio.Task[None], Task] = {}
        self._phases_done: set[int] = set()

    def _by_status(self, status: TaskStatus) -> list[Task]:
        return [t for t in self.tasks if t.status == status]

    def ready_tasks(self) -> list[Task]:
        completed = {t.id for t in self._by_status(TaskStatus.COMPLETED)}
        return [
            t for t in self.tasks
            if t.status == TaskStatus.PENDING and all(d in completed for d in t.depends_on)
        ]

    def _sync(self) -> None:
        if self.on_update is not None:
            self.on_update(self.tasks, [t.id for t in self._running.values()])

    def _emit(self, event_type: EventType, **data) -> None:
        if self.events is not None:
            self.events.emit(event_type, feature_id=self.feature_id, **data)

    def _block_unresolvable(self) -> None:
        known = {t.id for t in self.tasks}
        for task in self.tasks:
            missing = [d for d in task.depends_on if d not in known]
            if missing and task.status == TaskStatus.PENDING:
                logger.warning(f"  Task {task.id} blocked: unknown dependencies {', '.join(missing)}")
                task.status = TaskStatus.BLOCKED

    def _block_pending(self) -> list[Task]:
        pending = self._by_status(TaskStatus.PENDING)
        for task in pending:
            task.status = TaskStatus.BLOCKED
        return pending

    def _start(self, task: Task) -> None:
        task.status = TaskStatus.IN_PROGRESS
        completed = self._by_status(TaskStatus.COMPLETED)
        upcoming = [t for t in self._by_status(TaskStatus.PENDING) if t.id != task.id]
        worker = asyncio.create_task(self.execute_task(task, completed, upcoming))
        self._running[worker] = task
        logger.info(f"  Starting task {task.id}: {task.description}")
        self._emit(
            EventType.TASK_STARTED,
            task_id=task.id,
            task_description=task.description,
            task_index=self.tasks.index(task),
            tasks_total=len(self.tasks),
        )
        self._sync()

    def _check_phase(self, task: Task) -> None:
        number = phase_number(task.phase)
        if number is None or number in self._phases_done:
            return
        group = [t for t in self.tasks if phase_number(t.phase) == number]
        if all(t.status == TaskStatus.COMPLETED for t in group):
            self._phases_done.add(number)
            self._emit(EventType.PHASE_COMPLETE, phase_number=number)

    async def run(self) -> None:
        self._block_unresolvable()
        self._sync()

        failed: list[Task] = []
        aborted = False
        cancel_waiter = (
            asyncio.create_task(self.cancellation.wait()) if self.cancellation is not None else None
        )

        try:
            while True:
                if aborted or (self.cancellation is not None and self.cancellation.cancelled):
                    for task in self._running.values():
                        task.status = TaskStatus.FAILED
                    self._sync()
                    raise FeatureAbortedError("Feature execution aborted")

                if not failed:
                    for task in self.ready_tasks():
                        if len(self._running) >= self.max_concurrency:
                            break
                        self._start(task)

                if not self._running:
                    break

                wait_set: set[asyncio.Future] = set(self._running)
                if cancel_waiter is not None:
                    wait_set.add(cancel_waiter)
                done, _ = await asyncio.wait(wait_set, return_when=asyncio.FIRST_COMPLETED)

                for finished in done:
                    if finished is cancel_waiter:
                        continue
                    task = self._running.pop(finished)
                    error = None if finished.cancelled() else finished.exception()
                    if finished.cancelled() or isinstance(error, FeatureAbortedError):
                        task.status = TaskStatus.FAILED
                        aborted = True
                    elif error is not None:
                        task.status = TaskStatus.FAILED
                        failed.append(task)
                        logger.error(f"  Task {task.id} failed: {error}")
                    else:
                        task.status = TaskStatus.COMPLETED
                        logger.info(f"  Task {task.id} completed")
                        self._emit(
                            EventType.TASK_COMPLETE,
                            task_id=task.id,
                            tasks_completed=len(self._by_status(TaskStatus.COMPLETED)),
                            tasks_total=len(self.tasks),
                        )
                        self._check_phase(task)
                    self._sync()
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            leftover = list(self._running)
            self._running.clear()
            for worker in leftover:
                worker.cancel()
            if leftover:
                await asyncio.gather(*leftover, return_exceptions=True)

        if failed:
            self._block_pending()
            self._sync()
            ids = ", ".join(t.id for t in failed)
            raise TaskExecutionError(self.feature_id, f"One or more tasks failed: {ids}")

        stalled = self._block_pending()
        if stalled:
            self._sync()
            ids = ", ".join(t.id for t in stalled)
            raise DependencyCycleError(
                self.feature_id, f"Task dependency cycle detected: {ids} can never become ready",
            )
