"""Task model and hierarchical merge-tree construction."""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

ItemT = TypeVar("ItemT")

_LEVEL_PATTERN = re.compile(r"_L(\d+)_P\d+$")


@dataclass(slots=True, frozen=True)
class InitialPayload(Generic[ItemT]):
    """Leaf payload: the item (usually a batch) to process."""

    item: ItemT


@dataclass(slots=True, frozen=True)
class MergePayload:
    """Merge payload: ids of the tasks whose results are combined, in order."""

    input_ids: tuple[str, ...]


TaskPayload = InitialPayload[Any] | MergePayload


@dataclass(slots=True, frozen=True)
class Task:
    """Unit of scheduled work with explicit dependencies."""

    id: str
    payload: TaskPayload
    dependencies: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_merge(self) -> bool:
        return isinstance(self.payload, MergePayload)


def merge_task_id(prefix: str, level: int, position: int) -> str:
    return f"{prefix}_L{level}_P{position}"


def merge_level(task_id: str) -> int:
    """Tree depth encoded in a merge task id, 0 for leaves."""

    match = _LEVEL_PATTERN.search(task_id)
    return int(match.group(1)) if match else 0


def split_evenly(ids: Sequence[str], group_count: int) -> list[list[str]]:
    """Split ids into ``group_count`` contiguous groups, remainder to the first groups."""

    base, remainder = divmod(len(ids), group_count)
    groups: list[list[str]] = []
    start = 0
    for position in range(group_count):
        size = base + (1 if position < remainder else 0)
        groups.append(list(ids[start : start + size]))
        start += size
    return groups


def build_hierarchical_tasks(
    items: Sequence[ItemT],
    get_id: Callable[[ItemT, int], str],
    task_prefix: str = "merge",
    merge_width: int = 2,
    force_finalize: bool = False,
) -> list[Task]:
    """Build leaf tasks plus a balanced reduction tree of merge tasks.

    Each level is split into ``ceil(n / merge_width)`` groups of near-equal size
    and every multi-member group becomes one merge task. Single-member groups
    pass through to the next level, except at level 1 with ``force_finalize``,
    where the lone leaf is still wrapped so the final task is always a merge.
    The last task of the returned list is the root of the tree.
    """

    if merge_width < 2:
        raise ValueError(f"merge_width must be >= 2, got {merge_width}")

    tasks = [
        Task(id=get_id(item, index), payload=InitialPayload(item))
        for index, item in enumerate(items)
    ]
    current_level = [task.id for task in tasks]
    level = 1

    while len(current_level) > 1 or (force_finalize and len(current_level) == 1 and level == 1):
        group_count = math.ceil(len(current_level) / merge_width)
        next_level: list[str] = []
        for position, group in enumerate(split_evenly(current_level, group_count)):
            if len(group) > 1 or (force_finalize and level == 1):
                merge_id = merge_task_id(task_prefix, level, position)
                tasks.append(
                    Task(
                        id=merge_id,
                        payload=MergePayload(tuple(group)),
                        dependencies=frozenset(group),
                    ),
                )
                next_level.append(merge_id)
            else:
                next_level.append(group[0])
        current_level = next_level
        level += 1

    return tasks


def final_task_id(tasks: Sequence[Task]) -> str | None:
    """Id of the task no other task depends on, ``None`` for an empty list."""

    if not tasks:
        return None
    return tasks[-1].id
