"""Bounded-concurrency async pool for independent work items."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import TypeVar

ItemT = TypeVar("ItemT")

PoolHandler = Callable[[ItemT, int, int], Awaitable[None]]


async def run_pool(
    items: Sequence[ItemT],
    concurrency: int,
    handler: PoolHandler[ItemT],
) -> None:
    """Run ``handler(item, index, total)`` over items with at most ``concurrency`` in flight.

    Items start in input order (``index`` is 1-based) and may finish in any
    order. The pool neither retries nor swallows errors: after the first
    handler failure no further items are started, running siblings are awaited,
    and the failure is re-raised. Callers that want log-and-continue semantics
    catch inside the handler.
    """

    pending: deque[ItemT] = deque(items)
    total = len(items)
    started = 0
    failures: list[Exception] = []

    async def worker() -> None:
        nonlocal started
        while pending and not failures:
            item = pending.popleft()
            started += 1
            index = started
            try:
                await handler(item, index, total)
            except Exception as error:
                failures.append(error)
                raise

    worker_count = min(max(1, concurrency), max(1, total))
    await asyncio.gather(*(worker() for _ in range(worker_count)), return_exceptions=True)
    if failures:
        raise failures[0]


class ActiveJobRegistry:
    """Ids of jobs currently in flight, scoped to one stage run."""

    def __init__(self) -> None:
        self._active: set[str] = set()

    def __len__(self) -> int:
        return len(self._active)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._active

    def snapshot(self) -> frozenset[str]:
        return frozenset(self._active)

    @contextmanager
    def track(self, job_id: str) -> Iterator[None]:
        """Mark ``job_id`` active for the duration of the block."""

        self._active.add(job_id)
        try:
            yield
        finally:
            self._active.discard(job_id)
