"""Word-count based batch partitioning for LLM prompts."""

from __future__ import annotations

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

DEFAULT_TOTAL_WORD_LIMIT = 250_000
DEFAULT_BATCH_WORD_LIMIT = 150_000

_WHITESPACE = re.compile(r"\s+")


class WordCounted(Protocol):
    """Anything that knows its own word count."""

    @property
    def word_count(self) -> int: ...


T = TypeVar("T", bound=WordCounted)


@dataclass(slots=True)
class Batch(Generic[T]):
    """Ordered group of items processed together as one unit of work."""

    items: list[T] = field(default_factory=list)
    word_count: int = 0
    number: int = 1


@dataclass(slots=True, frozen=True)
class BatchOptions:
    """Batching thresholds.

    ``total_word_limit`` is the trigger: inputs at or below it stay in one batch.
    ``batch_word_limit`` is the target size of each batch once batching kicks in.
    """

    total_word_limit: int = DEFAULT_TOTAL_WORD_LIMIT
    batch_word_limit: int = DEFAULT_BATCH_WORD_LIMIT


def count_words(text: str) -> int:
    """Count whitespace-separated tokens."""

    return len([token for token in _WHITESPACE.split(text) if token])


def total_words(items: Sequence[WordCounted]) -> int:
    return sum(item.word_count for item in items)


def create_even_batches(
    items: Sequence[T],
    options: BatchOptions | None = None,
) -> list[Batch[T]]:
    """Split items into near-equal batches by word count.

    Uses the longest-processing-time-first heuristic: items are visited largest
    first and each goes to the currently lightest batch. Inside every batch the
    items are returned in their original input order. Single items larger than
    the batch limit are never split.
    """

    opts = options or BatchOptions()
    if opts.batch_word_limit <= 0:
        raise ValueError("batch_word_limit must be a positive integer.")
    if not items:
        return []

    words = total_words(items)
    if words <= opts.total_word_limit:
        return [Batch(items=list(items), word_count=words, number=1)]

    num_batches = max(1, math.ceil(words / opts.batch_word_limit))
    buckets: list[list[int]] = [[] for _ in range(num_batches)]
    loads = [0] * num_batches

    # sorted() is stable, so equal-sized items keep input order
    by_size = sorted(range(len(items)), key=lambda index: items[index].word_count, reverse=True)
    for index in by_size:
        target = min(range(num_batches), key=lambda slot: loads[slot])
        buckets[target].append(index)
        loads[target] += items[index].word_count

    batches: list[Batch[T]] = []
    for bucket, load in zip(buckets, loads, strict=True):
        if not bucket:
            continue
        batches.append(
            Batch(
                items=[items[index] for index in sorted(bucket)],
                word_count=load,
                number=len(batches) + 1,
            ),
        )
    return batches
