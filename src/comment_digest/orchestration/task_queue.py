"""Dependency-aware async task scheduler with bounded concurrency.

Tasks move through ``pending -> ready -> running -> completed | failed``.
The scheduler keeps at most ``concurrency`` tasks running, guarded by a
semaphore; every finished task posts an event on a completion channel, and each
event triggers recomputation of the ready set for the finished task's
dependents. All bookkeeping happens between awaits on a single event loop, so
no locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from functools import partial
from types import MappingProxyType
from typing import Any, Generic, TypeVar

from comment_digest.orchestration.errors import (
    CircularDependencyError,
    MissingDependencyError,
    TaskFailedError,
    TaskGraphError,
)
from comment_digest.orchestration.tasks import Task

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

GetResult = Callable[[str], Any]
Processor = Callable[[Task, GetResult], Awaitable[ResultT]]


class TaskStatus(str, Enum):
    """Scheduler-side task lifecycle states."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class QueueHooks:
    """Progress callbacks. They observe scheduling and cannot change it."""

    on_task_start: Callable[[Task], None] | None = None
    on_task_complete: Callable[[Task, Any], None] | None = None
    on_task_error: Callable[[Task, BaseException], None] | None = None
    on_queue_update: Callable[[int, int, int], None] | None = None


@dataclass(slots=True)
class _Outcome:
    task: Task
    result: Any = None
    error: BaseException | None = None


class TaskQueue(Generic[ResultT]):
    """Runs a DAG of tasks, exposing finished results to dependents."""

    def __init__(
        self,
        tasks: Iterable[Task],
        *,
        concurrency: int,
        hooks: QueueHooks | None = None,
        max_failures: int = 0,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if max_failures < 0:
            raise ValueError(f"max_failures must be >= 0, got {max_failures}")

        self.concurrency = concurrency
        self.max_failures = max_failures
        self.hooks = hooks or QueueHooks()

        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if task.id in self._tasks:
                raise TaskGraphError(f"Duplicate task id: {task.id}")
            self._tasks[task.id] = task

        self._dependents: dict[str, list[str]] = {task_id: [] for task_id in self._tasks}
        for task in self._tasks.values():
            unknown = sorted(dep for dep in task.dependencies if dep not in self._tasks)
            if unknown:
                raise TaskGraphError(
                    f"Task {task.id} depends on unknown tasks: {', '.join(unknown)}",
                )
            for dep in task.dependencies:
                self._dependents[dep].append(task.id)

        self._completed: dict[str, ResultT] = {}
        self._failed: dict[str, BaseException] = {}
        self._queue: deque[str] = deque()
        self._queued: set[str] = set()
        self._running: set[str] = set()
        self._blocked: set[str] = set()

    @property
    def completed(self) -> Mapping[str, ResultT]:
        return MappingProxyType(self._completed)

    @property
    def failed(self) -> Mapping[str, BaseException]:
        return MappingProxyType(self._failed)

    @property
    def blocked(self) -> frozenset[str]:
        """Tasks never dispatched because a dependency failed."""

        return frozenset(self._blocked)

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def __len__(self) -> int:
        return len(self._tasks)

    def status(self, task_id: str) -> TaskStatus:
        if task_id not in self._tasks:
            raise KeyError(task_id)
        if task_id in self._completed:
            return TaskStatus.COMPLETED
        if task_id in self._failed:
            return TaskStatus.FAILED
        if task_id in self._running:
            return TaskStatus.RUNNING
        if task_id in self._queued:
            return TaskStatus.READY
        return TaskStatus.PENDING

    def get_result(self, task_id: str) -> ResultT | None:
        return self._completed.get(task_id)

    async def process(self, processor: Processor[ResultT]) -> dict[str, ResultT]:
        """Execute every task and return results keyed by task id.

        ``processor(task, get_result)`` receives a lookup for dependency results
        instead of eagerly resolved values. A processor failure aborts the run
        with :class:`TaskFailedError` once more than ``max_failures`` tasks
        failed; tasks already running are allowed to finish first.
        """

        events: asyncio.Queue[_Outcome] = asyncio.Queue()
        slots = asyncio.Semaphore(self.concurrency)
        in_flight: set[asyncio.Task[None]] = set()
        abort: tuple[str, BaseException] | None = None

        self._enqueue_ready(self._tasks)
        self._notify_queue_update()

        try:
            while True:
                if abort is None:
                    while self._queue and len(self._running) < self.concurrency:
                        await slots.acquire()
                        in_flight.add(self._dispatch(processor, slots, events))

                if not self._running:
                    if abort is not None:
                        task_id, error = abort
                        raise TaskFailedError(task_id, error, self._failed) from error
                    if self._finish_or_detect_cycle():
                        return dict(self._completed)

                outcome = await events.get()
                in_flight = {job for job in in_flight if not job.done()}
                failure = self._record(outcome)
                if failure is not None and abort is None:
                    abort = failure
        finally:
            for job in in_flight:
                if not job.done():
                    job.cancel()

    def _dispatch(
        self,
        processor: Processor[ResultT],
        slots: asyncio.Semaphore,
        events: asyncio.Queue[_Outcome],
    ) -> asyncio.Task[None]:
        task = self._tasks[self._queue.popleft()]
        self._queued.discard(task.id)
        self._running.add(task.id)
        self._call_hook("on_task_start", task)
        return asyncio.create_task(
            self._run_one(task, processor, slots, events),
            name=f"task-queue:{task.id}",
        )

    async def _run_one(
        self,
        task: Task,
        processor: Processor[ResultT],
        slots: asyncio.Semaphore,
        events: asyncio.Queue[_Outcome],
    ) -> None:
        try:
            result = await processor(task, partial(self._lookup, task.id))
        except Exception as error:  # noqa: BLE001
            events.put_nowait(_Outcome(task=task, error=error))
        except BaseException as error:
            # cancellation and interrupts still report the task, then propagate
            events.put_nowait(_Outcome(task=task, error=error))
            raise
        else:
            events.put_nowait(_Outcome(task=task, result=result))
        finally:
            slots.release()

    def _record(self, outcome: _Outcome) -> tuple[str, BaseException] | None:
        task = outcome.task
        self._running.discard(task.id)
        failure: tuple[str, BaseException] | None = None

        if outcome.error is None:
            self._completed[task.id] = outcome.result
            self._call_hook("on_task_complete", task, outcome.result)
            self._enqueue_ready(self._dependents[task.id])
        else:
            self._failed[task.id] = outcome.error
            logger.error("Task %s failed: %s", task.id, outcome.error)
            self._call_hook("on_task_error", task, outcome.error)
            if len(self._failed) > self.max_failures or not isinstance(outcome.error, Exception):
                failure = (task.id, outcome.error)
            else:
                logger.warning(
                    "Continuing despite failure (%d/%d failures allowed)",
                    len(self._failed),
                    self.max_failures,
                )

        self._notify_queue_update()
        return failure

    def _enqueue_ready(self, candidates: Iterable[str]) -> None:
        for task_id in candidates:
            if (
                task_id in self._completed
                or task_id in self._failed
                or task_id in self._running
                or task_id in self._queued
            ):
                continue
            task = self._tasks[task_id]
            if all(dep in self._completed for dep in task.dependencies):
                self._queue.append(task_id)
                self._queued.add(task_id)

    def _finish_or_detect_cycle(self) -> bool:
        remaining = [
            task_id
            for task_id in self._tasks
            if task_id not in self._completed and task_id not in self._failed
        ]
        if not remaining:
            return True

        blocked = self._blocked_by_failures(remaining)
        stuck = [task_id for task_id in remaining if task_id not in blocked]
        if stuck:
            raise CircularDependencyError(stuck)

        self._blocked = blocked
        logger.warning(
            "%d task(s) skipped because a dependency failed: %s",
            len(blocked),
            ", ".join(sorted(blocked)),
        )
        return True

    def _blocked_by_failures(self, remaining: list[str]) -> set[str]:
        blocked: set[str] = set()
        frontier = deque(self._failed)
        while frontier:
            for dependent in self._dependents[frontier.popleft()]:
                if dependent in remaining and dependent not in blocked:
                    blocked.add(dependent)
                    frontier.append(dependent)
        return blocked

    def _lookup(self, requester: str, dependency_id: str) -> ResultT:
        if dependency_id not in self._completed:
            raise MissingDependencyError(requester, dependency_id)
        return self._completed[dependency_id]

    def _notify_queue_update(self) -> None:
        self._call_hook(
            "on_queue_update",
            len(self._queue),
            len(self._running),
            len(self._completed),
        )

    def _call_hook(self, name: str, *args: Any) -> None:
        hook = getattr(self.hooks, name)
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:  # noqa: BLE001
            logger.exception("Queue hook %s raised; ignoring", name)
