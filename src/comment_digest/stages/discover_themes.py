"""Discover a theme taxonomy: batch prompts reduced through a merge tree."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

from comment_digest import prompts
from comment_digest.llm.client import CacheMeta
from comment_digest.models import CondensedRecord, ThemeNode
from comment_digest.orchestration.batching import (
    Batch,
    BatchOptions,
    create_even_batches,
    total_words,
)
from comment_digest.orchestration.task_queue import QueueHooks, TaskQueue
from comment_digest.orchestration.tasks import (
    InitialPayload,
    MergePayload,
    Task,
    build_hierarchical_tasks,
    final_task_id,
    merge_level,
)
from comment_digest.stages.base import StageContext, StageError, StageSummary

logger = logging.getLogger(__name__)

STAGE_NAME = "discover-themes"
TASK_NAME = "discoverThemes"

_THEME_START_RE = re.compile(r"^(\d+(?:\.\d+)*)\.\s+", re.MULTILINE)
_LABEL_RE = re.compile(r"^(.*?)(?<!vs)\.\s(.*)$", re.DOTALL)
_NO_RECOMMENDATIONS = "No specific recommendations provided"
_NO_CONCERNS = "No specific concerns raised"


@dataclass(slots=True)
class DiscoverThemesOptions:
    limit: int | None = None
    batch_limit: int | None = None
    batch_size: int | None = None
    merge_width: int | None = None
    concurrency: int | None = None
    model: str | None = None
    force: bool = False


def parse_theme_hierarchy(text: str) -> list[ThemeNode]:
    """Parse ``1.2. Label. Brief description || Guidelines`` lines into theme nodes."""

    starts = list(_THEME_START_RE.finditer(text))
    themes: list[ThemeNode] = []
    for position, start in enumerate(starts):
        end = starts[position + 1].start() if position + 1 < len(starts) else len(text)
        code = start.group(1)
        after_code = text[start.end() : end].strip()
        label_match = _LABEL_RE.match(after_code)
        if label_match is None:
            logger.debug("Skipping theme %s without a label: %r", code, after_code[:80])
            continue
        label, rest = label_match.group(1).strip(), label_match.group(2).strip()

        if " || " in rest:
            brief, _, guidelines = rest.partition(" || ")
            brief, guidelines = brief.strip(), guidelines.strip()
        else:
            period = rest.find(". ")
            if 0 < period < 200:
                brief, guidelines = rest[:period], rest[period + 2 :].strip()
            else:
                brief, guidelines = rest, ""
        brief = brief.removesuffix(".")

        parts = code.split(".")
        themes.append(
            ThemeNode(
                code=code,
                description=label,
                level=len(parts),
                parent_code=".".join(parts[:-1]) or None,
                detailed_guidelines=brief + (f". {guidelines}" if guidelines else ""),
            ),
        )
    return themes


def format_comment_block(record: CondensedRecord) -> str:
    sections = record.sections
    lines = [f'<comment id="{record.comment_id}">']
    profile = sections.get("commenterProfile")
    if profile:
        lines.append(f"<commenter_profile>{profile}</commenter_profile>")
    position = sections.get("corePosition")
    if position:
        lines.append(f"<core_position>{position}</core_position>")
    recommendations = sections.get("keyRecommendations")
    if recommendations and recommendations != _NO_RECOMMENDATIONS:
        lines.append(f"<key_recommendations>{recommendations}</key_recommendations>")
    concerns = sections.get("mainConcerns")
    if concerns and concerns != _NO_CONCERNS:
        lines.append(f"<main_concerns>{concerns}</main_concerns>")
    if len(lines) == 1:
        lines.append("<note>No structured content available</note>")
    lines.append("</comment>")
    return "\n".join(lines)


def format_taxonomies(inputs: list[str]) -> str:
    return "\n\n".join(
        f"--- INPUT TAXONOMY {number} ---\n{content}\n--- END OF INPUT TAXONOMY {number} ---"
        for number, content in enumerate(inputs, start=1)
    )


async def discover_themes(
    context: StageContext,
    options: DiscoverThemesOptions,
) -> StageSummary:
    repository = context.repository
    summary = StageSummary(stage=STAGE_NAME)
    task_config = context.task_config(TASK_NAME, options.model)
    client = context.client_for(TASK_NAME, options.model)
    context.emit(f"Discovering themes for document {context.document_id}")
    context.emit(f"   Using model: {client.model}")

    existing = await asyncio.to_thread(repository.count_themes)
    if existing and not options.force:
        context.emit(f"Themes already discovered ({existing} themes in hierarchy)")
        context.emit("   To re-run, pass --force")
        summary.skipped = True
        return summary

    records = await asyncio.to_thread(repository.list_condensed, limit=options.limit)
    if not records:
        context.emit("No condensed comments found. Run 'condense' first.")
        summary.skipped = True
        return summary
    summary.selected = len(records)

    defaults = task_config.batching or BatchOptions()
    batch_options = BatchOptions(
        total_word_limit=options.batch_limit or defaults.total_word_limit,
        batch_word_limit=options.batch_size or defaults.batch_word_limit,
    )
    words = total_words(records)
    context.emit(f"Loaded {len(records)} condensed comments ({words} words)")
    batches = create_even_batches(records, batch_options)
    context.emit(f"Created {len(batches)} batch(es)")

    merge_width = options.merge_width or task_config.merge_width
    tasks = build_hierarchical_tasks(
        batches,
        lambda _batch, index: f"batch_{index}",
        task_prefix="merge",
        merge_width=merge_width,
        force_finalize=True,
    )
    root_id = final_task_id(tasks)
    context.emit(
        f"Total tasks: {len(tasks)} (batches: {len(batches)}, "
        f"merges: {len(tasks) - len(batches)}, {merge_width}-way)",
    )

    concurrency = options.concurrency or task_config.concurrency
    timeout = task_config.timeout_per_batch_seconds
    queue: TaskQueue[str]

    def on_start(task: Task) -> None:
        context.emit(f"   [{task.id}] Starting ({queue.running_count}/{concurrency} workers active)")

    def on_complete(task: Task, _result: Any) -> None:
        context.emit(f"   [{task.id}] Completed ({len(queue.completed)}/{len(tasks)} total)")

    def on_error(task: Task, error: BaseException) -> None:
        context.emit(f"   [{task.id}] Failed: {error}")

    async def process(task: Task, get_result: Any) -> str:
        if isinstance(task.payload, InitialPayload):
            batch: Batch[CondensedRecord] = task.payload.item
            prompt = prompts.render(
                prompts.THEME_DISCOVERY_PROMPT,
                COMMENTS="\n\n".join(format_comment_block(record) for record in batch.items),
            )
            meta = CacheMeta(
                task_type="theme_discovery",
                task_level=0,
                params={
                    "taskId": task.id,
                    "commentCount": len(batch.items),
                    "wordCount": batch.word_count,
                },
            )
        else:
            payload: MergePayload = task.payload
            inputs = [get_result(input_id) for input_id in payload.input_ids]
            prompt = prompts.render(
                prompts.THEME_MERGE_PROMPT,
                TAXONOMIES=format_taxonomies(inputs),
            )
            meta = CacheMeta(
                task_type="theme_discovery_merge",
                task_level=merge_level(task.id),
                params={
                    "taskId": task.id,
                    "inputIds": list(payload.input_ids),
                    "mergeCount": len(inputs),
                },
            )
        response = await client.generate(
            prompt,
            cache_meta=meta,
            timeout_seconds=timeout,
            debug_prefix=f"themes_{task.id}",
        )
        return response.strip()

    queue = TaskQueue(
        tasks,
        concurrency=concurrency,
        hooks=QueueHooks(on_task_start=on_start, on_task_complete=on_complete, on_task_error=on_error),
        max_failures=task_config.max_failures,
    )
    results = await queue.process(process)
    summary.succeeded = len(queue.completed)
    summary.failed = len(queue.failed)

    if root_id is None or root_id not in results:
        raise StageError(STAGE_NAME, "Failed to get final taxonomy result")
    themes = parse_theme_hierarchy(results[root_id])
    if not themes:
        raise StageError(STAGE_NAME, "Final taxonomy contained no parseable themes")

    saved = await asyncio.to_thread(repository.replace_theme_hierarchy, themes)
    context.emit(f"Theme discovery complete! Themes: {saved}")
    return summary
