"""Crash-recovering supervisor for multi-step pipelines."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from comment_digest.orchestration.errors import PipelineCrashError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CRASHES = 10
DEFAULT_RETRY_DELAY_SECONDS = 5.0


@dataclass(slots=True)
class PipelineStep:
    """One independently resumable stage of a pipeline."""

    number: int
    name: str
    execute: Callable[[], Awaitable[None]]


@dataclass(slots=True)
class PipelineStepResult:
    """Execution record of a single step."""

    number: int
    name: str
    status: str = "pending"
    runs: int = 0
    error: str | None = None


@dataclass(slots=True)
class PipelineRunResult:
    """Result of a supervised pipeline run."""

    start_at: int
    max_crashes: int
    steps: list[PipelineStepResult] = field(default_factory=list)
    crash_count: int = 0
    status: str = "running"
    error: str | None = None

    def step(self, number: int) -> PipelineStepResult:
        for step in self.steps:
            if step.number == number:
                return step
        raise KeyError(number)


class PipelineSupervisor:
    """Runs steps in order and restarts from the failing step after a crash.

    The supervisor holds no progress state below step level: each step must be
    resumable on its own (for example by only processing items whose status is
    not yet ``completed``).
    """

    def __init__(
        self,
        steps: Sequence[PipelineStep],
        *,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        numbers = [step.number for step in steps]
        if not steps:
            raise ValueError("Pipeline needs at least one step.")
        if numbers != sorted(set(numbers)):
            raise ValueError(f"Step numbers must be unique and increasing: {numbers}")
        self.steps = list(steps)
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep
        self._on_progress = on_progress or (lambda _msg: None)
        self.result: PipelineRunResult | None = None

    def _emit(self, msg: str) -> None:
        logger.info(msg)
        self._on_progress(msg)

    async def run(
        self,
        *,
        start_at: int | None = None,
        max_crashes: int = DEFAULT_MAX_CRASHES,
    ) -> PipelineRunResult:
        """Execute steps from ``start_at`` onward, surviving up to ``max_crashes - 1`` crashes."""

        first, last = self.steps[0].number, self.steps[-1].number
        current = first if start_at is None else start_at
        if not first <= current <= last:
            raise ValueError(f"Invalid start step {current}; expected {first}..{last}.")
        if max_crashes < 1:
            raise ValueError("max_crashes must be >= 1.")

        result = PipelineRunResult(
            start_at=current,
            max_crashes=max_crashes,
            steps=[PipelineStepResult(number=step.number, name=step.name) for step in self.steps],
        )
        self.result = result
        self._emit(f"Starting pipeline at step {current} (max crashes: {max_crashes})")
        for step in self.steps:
            if step.number < current:
                result.step(step.number).status = "skipped"
                self._emit(f"Skipping step {step.number}/{last}: {step.name}")

        while True:
            try:
                for step in self.steps:
                    if step.number < current:
                        continue
                    current = step.number
                    record = result.step(current)
                    self._emit(f"Step {step.number}/{last}: {step.name}...")
                    record.runs += 1
                    record.status = "running"
                    await step.execute()
                    record.status = "completed"
                    record.error = None
                break
            except Exception as error:
                result.crash_count += 1
                record = result.step(current)
                record.status = "crashed"
                record.error = str(error)
                logger.exception("Pipeline crashed at step %s", current)
                self._emit(
                    f"Pipeline crashed at step {current} "
                    f"(crash {result.crash_count}/{max_crashes}): {error}",
                )
                if result.crash_count >= max_crashes:
                    result.status = "failed"
                    result.error = str(error)
                    self._emit(f"Pipeline failed after {max_crashes} crashes. Giving up.")
                    raise PipelineCrashError(current, result.crash_count, error) from error
                self._emit(
                    f"Restarting from step {current} in {self.retry_delay_seconds:g} seconds...",
                )
                await self._sleep(self.retry_delay_seconds)

        result.status = "completed"
        self._emit("Pipeline completed successfully!")
        return result
