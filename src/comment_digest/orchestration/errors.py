"""Errors raised by the orchestration layer."""

from __future__ import annotations

from collections.abc import Iterable


class OrchestrationError(RuntimeError):
    """Base class for scheduling and supervision failures."""


class TaskGraphError(OrchestrationError):
    """Task set is malformed (duplicate ids, unknown dependencies)."""


class CircularDependencyError(OrchestrationError):
    """No task can make progress although some are not completed."""

    def __init__(self, remaining: Iterable[str]) -> None:
        self.remaining = sorted(remaining)
        super().__init__(
            f"Circular dependency detected. Remaining tasks: {', '.join(self.remaining)}",
        )


class MissingDependencyError(OrchestrationError):
    """A processor asked for a dependency result that was never recorded."""

    def __init__(self, task_id: str, dependency_id: str) -> None:
        self.task_id = task_id
        self.dependency_id = dependency_id
        super().__init__(f"Missing dependency {dependency_id} for {task_id}")


class TaskFailedError(OrchestrationError):
    """A task processor raised and the failure budget is exhausted."""

    def __init__(self, task_id: str, error: BaseException, failed: Iterable[str] = ()) -> None:
        self.task_id = task_id
        self.failed = sorted(failed)
        super().__init__(f"Task {task_id} failed: {error}")


class PipelineCrashError(OrchestrationError):
    """Pipeline gave up after too many crashes."""

    def __init__(self, step: int, crash_count: int, error: BaseException) -> None:
        self.step = step
        self.crash_count = crash_count
        super().__init__(f"Pipeline failed at step {step} after {crash_count} crashes: {error}")
