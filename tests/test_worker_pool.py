from __future__ import annotations

import asyncio

import allure
import pytest

from comment_digest.orchestration.worker_pool import ActiveJobRegistry, run_pool

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Worker Pool"),
]


def test_pool_processes_every_item_with_bounded_concurrency() -> None:
    seen: list[tuple[str, int, int]] = []
    active = ActiveJobRegistry()
    peak = 0

    async def handler(item: str, index: int, total: int) -> None:
        nonlocal peak
        with active.track(item):
            peak = max(peak, len(active))
            await asyncio.sleep(0.01)
            seen.append((item, index, total))

    asyncio.run(run_pool(list("abcde"), 2, handler))

    assert peak == 2
    assert sorted(item for item, _, _ in seen) == list("abcde")
    assert sorted(index for _, index, _ in seen) == [1, 2, 3, 4, 5]
    assert {total for _, _, total in seen} == {5}
    assert len(active) == 0


def test_pool_starts_items_in_input_order() -> None:
    started: list[int] = []

    async def handler(item: int, _index: int, _total: int) -> None:
        started.append(item)
        await asyncio.sleep(0.001 * (5 - item))

    asyncio.run(run_pool([1, 2, 3, 4], 2, handler))

    assert started[:2] == [1, 2]
    assert sorted(started) == [1, 2, 3, 4]


def test_pool_stops_starting_items_after_first_failure() -> None:
    started: list[int] = []

    async def handler(item: int, _index: int, _total: int) -> None:
        started.append(item)
        if item == 1:
            raise RuntimeError("bad item")
        await asyncio.sleep(0.01)

    with pytest.raises(RuntimeError, match="bad item"):
        asyncio.run(run_pool([1, 2, 3, 4, 5], 1, handler))

    assert started == [1]


def test_pool_with_no_items_returns_immediately() -> None:
    async def handler(_item: object, _index: int, _total: int) -> None:
        raise AssertionError("never called")

    asyncio.run(run_pool([], 3, handler))


def test_registry_tracks_jobs_even_when_block_raises() -> None:
    registry = ActiveJobRegistry()

    with pytest.raises(ValueError):
        with registry.track("job-1"):
            assert "job-1" in registry
            assert registry.snapshot() == frozenset({"job-1"})
            raise ValueError("fail inside")

    assert "job-1" not in registry
    assert len(registry) == 0
