"""Task orchestration for batch LLM stages.

Why not Prefect / Celery?
~~~~~~~~~~~~~~~~~~~~~~~~~
Every stage is a handful of I/O-bound LLM calls on one machine against one
SQLite file. What the stages need is narrow: word-count batching, a merge tree
of dependent prompts, a bounded number of concurrent calls, and the ability to
rerun a crashed stage cheaply because finished prompts are already cached.
An asyncio scheduler plus the content-addressed cache covers that without a
broker or an orchestration server.
"""

from comment_digest.orchestration.batching import (
    Batch,
    BatchOptions,
    count_words,
    create_even_batches,
)
from comment_digest.orchestration.errors import (
    CircularDependencyError,
    MissingDependencyError,
    OrchestrationError,
    PipelineCrashError,
    TaskFailedError,
    TaskGraphError,
)
from comment_digest.orchestration.supervisor import (
    PipelineRunResult,
    PipelineStep,
    PipelineSupervisor,
)
from comment_digest.orchestration.task_queue import QueueHooks, TaskQueue, TaskStatus
from comment_digest.orchestration.tasks import (
    InitialPayload,
    MergePayload,
    Task,
    build_hierarchical_tasks,
)
from comment_digest.orchestration.worker_pool import ActiveJobRegistry, run_pool

__all__ = [
    "ActiveJobRegistry",
    "Batch",
    "BatchOptions",
    "CircularDependencyError",
    "InitialPayload",
    "MergePayload",
    "MissingDependencyError",
    "OrchestrationError",
    "PipelineCrashError",
    "PipelineRunResult",
    "PipelineStep",
    "PipelineSupervisor",
    "QueueHooks",
    "Task",
    "TaskFailedError",
    "TaskGraphError",
    "TaskQueue",
    "TaskStatus",
    "build_hierarchical_tasks",
    "count_words",
    "create_even_batches",
    "run_pool",
]
