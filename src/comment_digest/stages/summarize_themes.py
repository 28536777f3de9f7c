"""Summarize what commenters say about each theme.

Themes run side by side in a worker pool. Inside a theme the relevant
condensed comments are split into even batches, each batch is summarized on its
own, and the partial summaries are reduced through a merge tree.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from comment_digest import prompts
from comment_digest.llm.client import CacheMeta, CachedLlmClient
from comment_digest.llm.failure_classifier import classify_failure
from comment_digest.llm.json_parser import parse_json_response
from comment_digest.models import CondensedRecord, ThemeNode, ThemeSummaryRecord
from comment_digest.orchestration.batching import Batch, BatchOptions, create_even_batches, total_words
from comment_digest.orchestration.task_queue import TaskQueue
from comment_digest.orchestration.tasks import (
    InitialPayload,
    MergePayload,
    Task,
    build_hierarchical_tasks,
    final_task_id,
    merge_level,
)
from comment_digest.orchestration.worker_pool import ActiveJobRegistry, run_pool
from comment_digest.stages.base import StageContext, StageSummary

logger = logging.getLogger(__name__)

STAGE_NAME = "summarize-themes"
TASK_NAME = "summarizeThemes"
DEFAULT_TRIGGER_WORD_LIMIT = 200_000
DEFAULT_BATCH_WORD_LIMIT = 125_000
DEFAULT_MIN_COMMENTS = 1
SUMMARY_KEYS = ("overview", "consensusPoints", "debatePoints", "keyRecommendations")


@dataclass(slots=True)
class SummarizeThemesOptions:
    themes: list[str] | None = None
    min_comments: int | None = None
    batch_limit: int | None = None
    batch_size: int | None = None
    merge_width: int | None = None
    concurrency: int | None = None
    model: str | None = None


def format_summary_block(record: CondensedRecord) -> str:
    sections = record.sections
    parts = [f'<comment id="{record.comment_id}">']
    parts.append(
        "<commenter_profile>\n"
        f"{sections.get('commenterProfile') or 'No profile information provided'}\n"
        "</commenter_profile>",
    )
    for key, tag in (
        ("corePosition", "core_position"),
        ("keyRecommendations", "key_recommendations"),
        ("mainConcerns", "main_concerns"),
        ("notableExperiences", "notable_experiences"),
        ("keyQuotations", "key_quotations"),
    ):
        value = sections.get(key)
        if value:
            parts.append(f"<{tag}>\n{value}\n</{tag}>")
    parts.append("</comment>")
    return "\n".join(parts)


def format_partial_summaries(inputs: list[dict[str, Any]]) -> str:
    return "\n\n".join(
        f'<batch_analysis number="{number}">\n'
        f"{json.dumps(summary, ensure_ascii=False, indent=2)}\n"
        "</batch_analysis>"
        for number, summary in enumerate(inputs, start=1)
    )


def parse_theme_summary(text: str) -> dict[str, Any]:
    """Parse a summary answer; it must be a JSON object with an overview."""

    parsed = parse_json_response(text)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object summary, got {type(parsed).__name__}")
    if not parsed.get("overview"):
        raise ValueError("Summary JSON is missing 'overview'")
    for key in SUMMARY_KEYS[1:]:
        parsed.setdefault(key, [])
    return parsed


async def summarize_theme(
    client: CachedLlmClient,
    theme: ThemeNode,
    records: list[CondensedRecord],
    *,
    batch_options: BatchOptions,
    merge_width: int,
    concurrency: int,
    max_failures: int = 0,
    timeout_seconds: float | None = None,
) -> dict[str, Any]:
    """Summarize one theme, reducing batch summaries to a single JSON summary."""

    batches = create_even_batches(records, batch_options)
    tasks = build_hierarchical_tasks(
        batches,
        lambda _batch, index: f"summary_{theme.code}_batch_{index}",
        task_prefix=f"summary_{theme.code}",
        merge_width=merge_width,
    )
    root_id = final_task_id(tasks)
    if len(batches) > 1:
        logger.info(
            "Theme %s split into %d batches (%s words each)",
            theme.code,
            len(batches),
            ", ".join(str(batch.word_count) for batch in batches),
        )

    async def process(task: Task, get_result: Any) -> dict[str, Any]:
        if isinstance(task.payload, InitialPayload):
            batch: Batch[CondensedRecord] = task.payload.item
            prompt = prompts.render(
                prompts.THEME_SUMMARY_PROMPT,
                THEME_CODE=theme.code,
                THEME_DESCRIPTION=theme.full_description,
                COMMENTS="\n\n---\n\n".join(format_summary_block(record) for record in batch.items),
            )
            meta = CacheMeta(
                task_type="theme_summary",
                task_level=0,
                params={
                    "themeCode": theme.code,
                    "batchNum": batch.number,
                    "totalBatches": len(batches),
                    "commentCount": len(batch.items),
                },
            )
        else:
            payload: MergePayload = task.payload
            inputs = [get_result(input_id) for input_id in payload.input_ids]
            prompt = prompts.render(
                prompts.SUMMARY_MERGE_PROMPT,
                THEME_CODE=theme.code,
                THEME_DESCRIPTION=theme.full_description,
                SUMMARIES=format_partial_summaries(inputs),
            )
            meta = CacheMeta(
                task_type="theme_summary_merge",
                task_level=merge_level(task.id),
                params={"themeCode": theme.code, "inputIds": list(payload.input_ids)},
            )
        return await client.generate(
            prompt,
            cache_meta=meta,
            post_process=parse_theme_summary,
            timeout_seconds=timeout_seconds,
            debug_prefix=task.id,
        )

    queue: TaskQueue[dict[str, Any]] = TaskQueue(
        tasks,
        concurrency=concurrency,
        max_failures=max_failures,
    )
    results = await queue.process(process)
    if root_id is None or root_id not in results:
        raise RuntimeError(f"No final summary produced for theme {theme.code}")
    return results[root_id]


async def summarize_themes(
    context: StageContext,
    options: SummarizeThemesOptions,
) -> StageSummary:
    repository = context.repository
    summary = StageSummary(stage=STAGE_NAME)
    task_config = context.task_config(TASK_NAME, options.model)
    client = context.client_for(TASK_NAME, options.model)
    concurrency = options.concurrency or task_config.concurrency
    context.emit(f"Summarizing themes for document {context.document_id}")
    context.emit(f"   Using model: {client.model}")

    min_comments = (
        options.min_comments
        or int(task_config.thresholds.get("minCommentsPerTheme") or 0)
        or DEFAULT_MIN_COMMENTS
    )
    themes = {theme.code: theme for theme in await asyncio.to_thread(repository.list_themes)}
    if not themes:
        context.emit("No theme hierarchy found. Run 'discover-themes' first.")
        summary.skipped = True
        return summary

    coverage = await asyncio.to_thread(repository.theme_coverage)
    wanted = set(options.themes) if options.themes else None
    candidates = [
        themes[row.code]
        for row in coverage
        if row.relevant_count >= min_comments and (wanted is None or row.code in wanted)
    ]
    if not candidates:
        context.emit(f"No themes found with at least {min_comments} relevant comments")
        summary.skipped = True
        return summary

    done = await asyncio.to_thread(repository.summarized_theme_codes)
    to_process = [theme for theme in candidates if theme.code not in done]
    context.emit(f"Found {len(candidates)} themes to analyze")
    if not to_process:
        context.emit("All themes already summarized")
        return summary
    context.emit(f"{len(to_process)} themes need summarization")
    summary.selected = len(to_process)

    defaults = task_config.batching or BatchOptions(
        total_word_limit=DEFAULT_TRIGGER_WORD_LIMIT,
        batch_word_limit=DEFAULT_BATCH_WORD_LIMIT,
    )
    batch_options = BatchOptions(
        total_word_limit=options.batch_limit or defaults.total_word_limit,
        batch_word_limit=options.batch_size or defaults.batch_word_limit,
    )
    merge_width = options.merge_width or task_config.merge_width
    active = ActiveJobRegistry()

    async def handle(theme: ThemeNode, index: int, total: int) -> None:
        with active.track(theme.code):
            context.emit(f"[{index}/{total}] Processing theme {theme.code}: {theme.description}")
            try:
                records = await asyncio.to_thread(repository.condensed_for_theme, theme.code)
                if not records:
                    context.emit(f"  [{theme.code}] No condensed comments; skipping")
                    return
                words = total_words(records)
                context.emit(f"  [{theme.code}] {len(records)} comments, {words} words")
                result = await summarize_theme(
                    client,
                    theme,
                    records,
                    batch_options=batch_options,
                    merge_width=merge_width,
                    concurrency=concurrency,
                    max_failures=task_config.max_failures,
                    timeout_seconds=task_config.timeout_per_batch_seconds,
                )
                await asyncio.to_thread(
                    repository.save_theme_summary,
                    ThemeSummaryRecord(
                        theme_code=theme.code,
                        summary=result,
                        comment_count=len(records),
                        word_count=words,
                    ),
                )
                summary.succeeded += 1
                context.emit(f"  [{theme.code}] Summary saved")
            except Exception as error:
                summary.failed += 1
                message = classify_failure(error).describe(error)
                logger.warning("Theme %s summary failed: %s", theme.code, message)
                context.emit(f"  [{theme.code}] Error: {message}")

    await run_pool(to_process, concurrency, handle)
    context.emit(
        f"Theme summarization complete: {summary.succeeded} succeeded, {summary.failed} failed",
    )
    return summary
