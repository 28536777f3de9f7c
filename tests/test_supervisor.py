from __future__ import annotations

import asyncio

import allure
import pytest

from comment_digest.orchestration.errors import PipelineCrashError
from comment_digest.orchestration.supervisor import PipelineStep, PipelineSupervisor

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Pipeline Crash Recovery"),
]


class _Recorder:
    def __init__(self, *, failures: dict[int, int] | None = None) -> None:
        self.calls: list[int] = []
        self.remaining_failures = dict(failures or {})
        self.sleeps: list[float] = []
        self.messages: list[str] = []

    def steps(self, count: int = 5) -> list[PipelineStep]:
        return [
            PipelineStep(number=number, name=f"step-{number}", execute=self._executor(number))
            for number in range(1, count + 1)
        ]

    def _executor(self, number: int):
        async def execute() -> None:
            self.calls.append(number)
            if self.remaining_failures.get(number, 0) > 0:
                self.remaining_failures[number] -= 1
                raise RuntimeError(f"step {number} exploded")

        return execute

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def _supervisor(recorder: _Recorder, **kwargs) -> PipelineSupervisor:
    return PipelineSupervisor(
        recorder.steps(),
        retry_delay_seconds=5.0,
        sleep=recorder.sleep,
        on_progress=recorder.messages.append,
        **kwargs,
    )


def test_crashed_step_restarts_in_place_without_rerunning_earlier_steps() -> None:
    recorder = _Recorder(failures={3: 1})

    result = asyncio.run(_supervisor(recorder).run(max_crashes=10))

    assert recorder.calls == [1, 2, 3, 3, 4, 5]
    assert recorder.sleeps == [5.0]
    assert result.status == "completed"
    assert result.crash_count == 1
    assert result.step(3).runs == 2
    assert result.step(3).error is None
    assert "Restarting from step 3 in 5 seconds..." in recorder.messages
    assert recorder.messages[-1] == "Pipeline completed successfully!"


def test_supervisor_gives_up_after_max_crashes() -> None:
    recorder = _Recorder(failures={2: 99})
    supervisor = _supervisor(recorder)

    with pytest.raises(PipelineCrashError) as excinfo:
        asyncio.run(supervisor.run(max_crashes=3))

    assert excinfo.value.step == 2
    assert excinfo.value.crash_count == 3
    assert recorder.calls == [1, 2, 2, 2]
    assert len(recorder.sleeps) == 2
    assert supervisor.result is not None
    assert supervisor.result.status == "failed"
    assert "Pipeline failed after 3 crashes. Giving up." in recorder.messages


def test_start_at_skips_earlier_steps() -> None:
    recorder = _Recorder()

    result = asyncio.run(_supervisor(recorder).run(start_at=4))

    assert recorder.calls == [4, 5]
    assert [step.status for step in result.steps] == [
        "skipped",
        "skipped",
        "skipped",
        "completed",
        "completed",
    ]


def test_invalid_arguments_are_rejected() -> None:
    recorder = _Recorder()
    supervisor = _supervisor(recorder)

    with pytest.raises(ValueError, match="Invalid start step"):
        asyncio.run(supervisor.run(start_at=9))
    with pytest.raises(ValueError, match="max_crashes"):
        asyncio.run(supervisor.run(max_crashes=0))
    with pytest.raises(ValueError, match="at least one step"):
        PipelineSupervisor([])
    assert recorder.calls == []


def test_sparse_step_numbers_restart_the_crashed_step() -> None:
    recorder = _Recorder(failures={3: 1})
    steps = [step for step in recorder.steps() if step.number in (1, 3, 5)]
    supervisor = PipelineSupervisor(steps, sleep=recorder.sleep, on_progress=recorder.messages.append)

    result = asyncio.run(supervisor.run())

    assert recorder.calls == [1, 3, 3, 5]
    assert result.crash_count == 1
    assert result.step(3).runs == 2
    assert "Pipeline crashed at step 3 (crash 1/10): step 3 exploded" in recorder.messages
