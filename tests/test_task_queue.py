from __future__ import annotations

import asyncio

import allure
import pytest

from comment_digest.orchestration.errors import (
    CircularDependencyError,
    MissingDependencyError,
    TaskFailedError,
    TaskGraphError,
)
from comment_digest.orchestration.task_queue import QueueHooks, TaskQueue, TaskStatus
from comment_digest.orchestration.tasks import (
    InitialPayload,
    MergePayload,
    Task,
    build_hierarchical_tasks,
)

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Dependency-Aware Task Queue"),
]


def _leaf(task_id: str, value: int = 1) -> Task:
    return Task(id=task_id, payload=InitialPayload(value))


def _merge(task_id: str, *inputs: str) -> Task:
    return Task(id=task_id, payload=MergePayload(tuple(inputs)), dependencies=frozenset(inputs))


async def _sum_processor(task: Task, get_result) -> int:
    await asyncio.sleep(0)
    if isinstance(task.payload, InitialPayload):
        return task.payload.item
    return sum(get_result(input_id) for input_id in task.payload.input_ids)


def test_queue_never_exceeds_concurrency_limit() -> None:
    running = 0
    peak = 0

    async def processor(task: Task, _get_result) -> str:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return task.id

    queue: TaskQueue[str] = TaskQueue([_leaf(f"t{i}") for i in range(6)], concurrency=2)
    results = asyncio.run(queue.process(processor))

    assert peak == 2
    assert sorted(results) == [f"t{i}" for i in range(6)]
    assert queue.running_count == 0


def test_merge_tasks_start_only_after_their_inputs_complete() -> None:
    tasks = build_hierarchical_tasks(
        list(range(1, 8)),
        lambda _item, index: f"batch_{index}",
        merge_width=3,
    )
    finished: set[str] = set()

    async def processor(task: Task, get_result) -> int:
        assert task.dependencies <= finished
        value = await _sum_processor(task, get_result)
        finished.add(task.id)
        return value

    queue: TaskQueue[int] = TaskQueue(tasks, concurrency=4)
    results = asyncio.run(queue.process(processor))

    assert results["merge_L2_P0"] == sum(range(1, 8))
    assert len(results) == 11
    assert queue.status("merge_L2_P0") is TaskStatus.COMPLETED


def test_circular_dependencies_are_detected_instead_of_hanging() -> None:
    tasks = [
        _leaf("root"),
        _merge("a", "b"),
        _merge("b", "a"),
    ]
    queue: TaskQueue[int] = TaskQueue(tasks, concurrency=2)

    with pytest.raises(CircularDependencyError) as excinfo:
        asyncio.run(queue.process(_sum_processor))

    assert excinfo.value.remaining == ["a", "b"]
    assert dict(queue.completed) == {"root": 1}


def test_malformed_task_sets_are_rejected_up_front() -> None:
    with pytest.raises(TaskGraphError, match="Duplicate task id"):
        TaskQueue([_leaf("a"), _leaf("a")], concurrency=1)
    with pytest.raises(TaskGraphError, match="unknown tasks: ghost"):
        TaskQueue([_merge("m", "ghost")], concurrency=1)
    with pytest.raises(ValueError, match="concurrency"):
        TaskQueue([_leaf("a")], concurrency=0)


def test_first_failure_aborts_by_default() -> None:
    tasks = [_leaf("ok"), _leaf("bad"), _merge("merge", "ok", "bad")]

    async def processor(task: Task, get_result) -> int:
        if task.id == "bad":
            raise RuntimeError("provider exploded")
        return await _sum_processor(task, get_result)

    queue: TaskQueue[int] = TaskQueue(tasks, concurrency=1)
    with pytest.raises(TaskFailedError) as excinfo:
        asyncio.run(queue.process(processor))

    assert excinfo.value.task_id == "bad"
    assert "provider exploded" in str(excinfo.value)
    assert "merge" not in queue.completed


def test_failure_budget_lets_independent_work_finish_and_blocks_dependents() -> None:
    tasks = [
        _leaf("a", 2),
        _leaf("b", 3),
        _leaf("bad"),
        _merge("good_merge", "a", "b"),
        _merge("bad_merge", "a", "bad"),
    ]

    async def processor(task: Task, get_result) -> int:
        if task.id == "bad":
            raise RuntimeError("boom")
        return await _sum_processor(task, get_result)

    queue: TaskQueue[int] = TaskQueue(tasks, concurrency=2, max_failures=1)
    results = asyncio.run(queue.process(processor))

    assert results == {"a": 2, "b": 3, "good_merge": 5}
    assert set(queue.failed) == {"bad"}
    assert queue.blocked == frozenset({"bad_merge"})


def test_hooks_observe_lifecycle_and_broken_hooks_are_ignored() -> None:
    events: list[str] = []
    updates: list[tuple[int, int, int]] = []

    def on_start(task: Task) -> None:
        events.append(f"start:{task.id}")
        raise RuntimeError("hook bug")

    hooks = QueueHooks(
        on_task_start=on_start,
        on_task_complete=lambda task, result: events.append(f"done:{task.id}={result}"),
        on_queue_update=lambda queued, running, completed: updates.append(
            (queued, running, completed),
        ),
    )
    queue: TaskQueue[int] = TaskQueue(
        [_leaf("a", 1), _leaf("b", 2), _merge("m", "a", "b")],
        concurrency=1,
        hooks=hooks,
    )
    asyncio.run(queue.process(_sum_processor))

    assert events == ["start:a", "done:a=1", "start:b", "done:b=2", "start:m", "done:m=3"]
    assert updates[0] == (2, 0, 0)
    assert updates[-1] == (0, 0, 3)


def test_reading_an_undeclared_dependency_fails_the_task() -> None:
    async def processor(task: Task, get_result) -> int:
        if task.id == "sneaky":
            return get_result("later")
        return 1

    tasks = [_leaf("sneaky"), _leaf("later")]
    queue: TaskQueue[int] = TaskQueue(tasks, concurrency=1)

    with pytest.raises(TaskFailedError) as excinfo:
        asyncio.run(queue.process(processor))

    assert isinstance(excinfo.value.__cause__, MissingDependencyError)
    assert excinfo.value.__cause__.dependency_id == "later"


def test_cancelled_processor_ends_the_run_instead_of_hanging() -> None:
    async def processor(task: Task, _get_result) -> int:
        raise asyncio.CancelledError()

    queue: TaskQueue[int] = TaskQueue([_leaf("only"), _leaf("other")], concurrency=1, max_failures=5)

    async def run() -> dict[str, int]:
        return await asyncio.wait_for(queue.process(processor), timeout=2)

    with pytest.raises(TaskFailedError) as excinfo:
        asyncio.run(run())

    assert excinfo.value.task_id == "only"
    assert "only" in queue.failed
    assert "other" not in queue.completed
