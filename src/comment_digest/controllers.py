"""CLI controller for comment-digest commands."""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from collections.abc import Callable, Coroutine, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from comment_digest.cache.llm_cache import LlmCache
from comment_digest.config import BatchConfig, Settings
from comment_digest.orchestration.supervisor import PipelineRunResult
from comment_digest.stages.base import StageContext, StageSummary
from comment_digest.stages.condense import CondenseOptions, condense_comments
from comment_digest.stages.discover_entities import DiscoverEntitiesOptions, discover_entities
from comment_digest.stages.discover_themes import DiscoverThemesOptions, discover_themes
from comment_digest.stages.load import load_comments
from comment_digest.stages.pipeline import PipelineOptions, run_pipeline
from comment_digest.stages.score_themes import ScoreThemesOptions, score_themes
from comment_digest.stages.summarize_themes import SummarizeThemesOptions, summarize_themes
from comment_digest.storage.repository import CommentRepository

logger = logging.getLogger(__name__)

_SENTINEL = object()
ResultT = TypeVar("ResultT")


class DigestCommandError(RuntimeError):
    """Command failed after its progress lines were streamed."""


@dataclass(slots=True)
class LoadCommand:
    """Input for the load CLI command."""

    document_id: str
    csv_path: Path
    limit: int | None = None
    db_dir: Path | None = None


@dataclass(slots=True)
class StageCommand:
    """Input for commands that run one analysis stage."""

    document_id: str
    options: (
        CondenseOptions
        | DiscoverThemesOptions
        | ScoreThemesOptions
        | SummarizeThemesOptions
        | DiscoverEntitiesOptions
    )
    db_dir: Path | None = None
    debug: bool = False


@dataclass(slots=True)
class PipelineCommand:
    """Input for the pipeline CLI command."""

    document_id: str
    options: PipelineOptions
    db_dir: Path | None = None
    debug: bool = False


@dataclass(slots=True)
class CacheStatsCommand:
    document_id: str
    db_dir: Path | None = None


@dataclass(slots=True)
class CacheClearCommand:
    document_id: str
    task_type: str | None = None
    level: int | None = None
    clear_all: bool = False
    older_than_days: int | None = None
    db_dir: Path | None = None


@dataclass(slots=True)
class CacheVerifyCommand:
    document_id: str
    db_dir: Path | None = None


StageRunner = Callable[[StageContext, Any], Coroutine[Any, Any, StageSummary]]

_STAGE_RUNNERS: dict[type, StageRunner] = {
    CondenseOptions: condense_comments,
    DiscoverThemesOptions: discover_themes,
    ScoreThemesOptions: score_themes,
    SummarizeThemesOptions: summarize_themes,
    DiscoverEntitiesOptions: discover_entities,
}


class DigestCliController:
    """CLI controller; every command yields progress lines as they happen."""

    def load(self, command: LoadCommand) -> Iterator[str]:
        settings = _settings(command.db_dir)
        with _repository(settings, command.document_id) as repository:

            def _run(on_progress: Callable[[str], None]) -> StageSummary:
                context = _context(settings, command.document_id, repository, on_progress)
                return load_comments(context, command.csv_path, limit=command.limit)

            summary = yield from _stream(_run)
        yield from _format_summary(summary)

    def run_stage(self, command: StageCommand) -> Iterator[str]:
        """Run one analysis stage: condense, theme discovery, scoring, summaries or entities."""

        runner = _STAGE_RUNNERS[type(command.options)]
        settings = _settings(command.db_dir)
        with _repository(settings, command.document_id) as repository:

            def _run(on_progress: Callable[[str], None]) -> StageSummary:
                context = _context(
                    settings,
                    command.document_id,
                    repository,
                    on_progress,
                    debug=command.debug,
                )
                return asyncio.run(runner(context, command.options))

            summary = yield from _stream(_run)
        yield from _format_summary(summary)

    def pipeline(self, command: PipelineCommand) -> Iterator[str]:
        settings = _settings(command.db_dir)
        with _repository(settings, command.document_id) as repository:

            def _run(on_progress: Callable[[str], None]) -> PipelineRunResult:
                context = _context(
                    settings,
                    command.document_id,
                    repository,
                    on_progress,
                    debug=command.debug,
                )
                return asyncio.run(run_pipeline(context, command.options))

            result = yield from _stream(_run)
        yield from _format_pipeline_result(result)

    def cache_stats(self, command: CacheStatsCommand) -> Iterator[str]:
        settings = _settings(command.db_dir)
        with _repository(settings, command.document_id) as repository:
            cache = LlmCache(repository.engine)
            rows = cache.stats()
            yield f"LLM cache for {command.document_id}"
            yield f"  Entries: {cache.count()}"
            yield f"  Size:    {cache.size_bytes() / 1024:.1f} KiB"
            if not rows:
                yield "  Cache is empty."
                return
            yield ""
            for row in rows:
                yield (
                    f"  {row.task_type:28s} level={row.task_level}  count={row.count}  "
                    f"oldest={row.oldest:%Y-%m-%d %H:%M}  newest={row.newest:%Y-%m-%d %H:%M}"
                )

    def cache_clear(self, command: CacheClearCommand) -> Iterator[str]:
        selectors = [
            command.clear_all,
            command.task_type is not None,
            command.older_than_days is not None,
        ]
        if sum(selectors) != 1:
            raise DigestCommandError("Specify exactly one of --all, --task-type or --old.")
        if command.level is not None and command.task_type is None:
            raise DigestCommandError("--level requires --task-type.")

        settings = _settings(command.db_dir)
        with _repository(settings, command.document_id) as repository:
            cache = LlmCache(repository.engine)
            if command.clear_all:
                deleted = cache.clear_all()
                yield f"Cleared {deleted} cache entries."
            elif command.task_type is not None:
                deleted = cache.clear(command.task_type, level=command.level)
                level = "" if command.level is None else f" level {command.level}"
                yield f"Cleared {deleted} cache entries for {command.task_type}{level}."
            else:
                days = command.older_than_days or 0
                deleted = cache.clear_older_than(days)
                yield f"Cleared {deleted} cache entries older than {days} days."

    def cache_verify(self, command: CacheVerifyCommand) -> Iterator[str]:
        settings = _settings(command.db_dir)
        with _repository(settings, command.document_id) as repository:
            report = LlmCache(repository.engine).verify()
        yield f"Checked {report.total} cache entries."
        yield f"  Empty results:    {report.empty_results}"
        yield f"  Duplicate hashes: {report.duplicate_hashes}"
        if not report.ok:
            raise DigestCommandError("Cache verification found problems.")
        yield "Cache is consistent."


def _settings(db_dir: Path | None) -> Settings:
    settings = Settings.from_env(db_dir=db_dir)
    try:
        settings.validate()
    except ValueError as exc:
        raise DigestCommandError(str(exc)) from exc
    return settings


def _context(
    settings: Settings,
    document_id: str,
    repository: CommentRepository,
    on_progress: Callable[[str], None],
    *,
    debug: bool = False,
) -> StageContext:
    return StageContext(
        document_id=document_id,
        repository=repository,
        settings=settings,
        batch_config=BatchConfig.load(settings.batch_config_path),
        debug=debug,
        on_progress=on_progress,
    )


def _stream(run: Callable[[Callable[[str], None]], ResultT]) -> Iterator[str]:
    """Run ``run(on_progress)`` in a worker thread, yielding progress lines live.

    The generator's return value is the result of ``run``; a failure is
    re-raised as :class:`DigestCommandError` after all progress was yielded.
    """

    progress_q: queue.Queue[str | object] = queue.Queue()
    result_holder: list[ResultT] = []
    error_holder: list[Exception] = []

    def _on_progress(msg: str) -> None:
        progress_q.put(msg)

    def _run() -> None:
        try:
            result_holder.append(run(_on_progress))
        except Exception as exc:  # noqa: BLE001
            error_holder.append(exc)
        finally:
            progress_q.put(_SENTINEL)

    worker_thread = threading.Thread(target=_run, daemon=True)
    worker_thread.start()

    while True:
        item = progress_q.get()
        if item is _SENTINEL:
            break
        yield str(item)

    worker_thread.join(timeout=10)

    if error_holder:
        logger.debug("Command failed", exc_info=error_holder[0])
        raise DigestCommandError(str(error_holder[0])) from error_holder[0]
    return result_holder[0]


def _format_summary(summary: StageSummary) -> Iterator[str]:
    if summary.skipped:
        return
    yield ""
    yield (
        f"{summary.stage}: {summary.selected} selected, {summary.succeeded} succeeded, "
        f"{summary.failed} failed"
    )
    for note in summary.notes:
        yield f"  {note}"


def _format_pipeline_result(result: PipelineRunResult) -> Iterator[str]:
    yield ""
    yield f"Pipeline status: {result.status} (crashes: {result.crash_count}/{result.max_crashes})"
    for step in result.steps:
        marker = "ok" if step.status == "completed" else step.status
        runs = f" runs={step.runs}" if step.runs > 1 else ""
        yield f"  [{marker}] {step.number}. {step.name}{runs}"
        if step.error and step.status != "completed":
            yield f"    Error: {step.error}"


@contextmanager
def _repository(settings: Settings, document_id: str) -> Iterator[CommentRepository]:
    try:
        db_path = settings.db_path(document_id)
    except ValueError as exc:
        raise DigestCommandError(str(exc)) from exc
    repository = CommentRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
