"""End-to-end pipeline: load, condense, discover, score, summarize, extract entities."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from comment_digest.orchestration.supervisor import (
    PipelineRunResult,
    PipelineStep,
    PipelineSupervisor,
)
from comment_digest.stages.base import StageContext, StageError
from comment_digest.stages.condense import CondenseOptions, condense_comments
from comment_digest.stages.discover_entities import DiscoverEntitiesOptions, discover_entities
from comment_digest.stages.discover_themes import DiscoverThemesOptions, discover_themes
from comment_digest.stages.load import load_comments
from comment_digest.stages.score_themes import ScoreThemesOptions, score_themes
from comment_digest.stages.summarize_themes import SummarizeThemesOptions, summarize_themes

logger = logging.getLogger(__name__)

STEP_NAMES = {
    1: "Loading comments",
    2: "Condensing comments",
    3: "Discovering themes",
    4: "Scoring themes",
    5: "Summarizing themes",
    6: "Discovering entities",
}


@dataclass(slots=True)
class PipelineOptions:
    csv_path: Path | None = None
    load_limit: int | None = None
    start_at: int | None = None
    max_crashes: int | None = None
    concurrency: int | None = None
    model: str | None = None


def build_pipeline_steps(context: StageContext, options: PipelineOptions) -> list[PipelineStep]:
    """Wrap each stage as a supervisor step. Every stage resumes from its own ledger."""

    async def load() -> None:
        if options.csv_path is not None:
            await asyncio.to_thread(
                load_comments,
                context,
                options.csv_path,
                limit=options.load_limit,
            )
            return
        existing = await asyncio.to_thread(context.repository.count_comments)
        if not existing:
            raise StageError("load", "No comments in the database and no CSV file given")
        context.emit(f"No CSV given; using {existing} comments already loaded")

    async def condense() -> None:
        await condense_comments(
            context,
            CondenseOptions(concurrency=options.concurrency, model=options.model),
        )

    async def discover() -> None:
        await discover_themes(
            context,
            DiscoverThemesOptions(concurrency=options.concurrency, model=options.model),
        )

    async def score() -> None:
        await score_themes(
            context,
            ScoreThemesOptions(concurrency=options.concurrency, model=options.model),
        )

    async def summarize() -> None:
        await summarize_themes(
            context,
            SummarizeThemesOptions(concurrency=options.concurrency, model=options.model),
        )

    async def entities() -> None:
        await discover_entities(
            context,
            DiscoverEntitiesOptions(concurrency=options.concurrency, model=options.model),
        )

    executors = {1: load, 2: condense, 3: discover, 4: score, 5: summarize, 6: entities}
    return [
        PipelineStep(number=number, name=name, execute=executors[number])
        for number, name in STEP_NAMES.items()
    ]


async def run_pipeline(context: StageContext, options: PipelineOptions) -> PipelineRunResult:
    """Run all steps under the crash-recovering supervisor.

    ``max_crashes`` comes from the option, then the batch-config file, then
    the environment settings. The retry delay follows the same order minus the
    option.
    """

    pipeline_settings = context.settings.pipeline
    max_crashes = (
        options.max_crashes or context.batch_config.max_crashes or pipeline_settings.max_crashes
    )
    retry_delay = context.batch_config.retry_delay_seconds
    if retry_delay is None:
        retry_delay = pipeline_settings.retry_delay_seconds

    context.emit(f"Starting pipeline for {context.document_id}")
    supervisor = PipelineSupervisor(
        build_pipeline_steps(context, options),
        retry_delay_seconds=retry_delay,
        on_progress=context.on_progress,
    )
    return await supervisor.run(start_at=options.start_at, max_crashes=max_crashes)
