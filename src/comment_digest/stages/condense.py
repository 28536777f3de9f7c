"""Condense raw comments into structured outlines, one LLM call per comment."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass

from comment_digest import prompts
from comment_digest.llm.client import CacheMeta
from comment_digest.models import CommentRecord
from comment_digest.orchestration.batching import count_words
from comment_digest.orchestration.worker_pool import ActiveJobRegistry, run_pool
from comment_digest.stages.base import StageContext, StageSummary, mark_item_failed

logger = logging.getLogger(__name__)

STAGE_NAME = "condense"
TASK_NAME = "condense"

SECTION_HEADERS: dict[str, str] = {
    "ONE-LINE SUMMARY": "oneLineSummary",
    "COMMENTER PROFILE": "commenterProfile",
    "CORE POSITION": "corePosition",
    "KEY RECOMMENDATIONS": "keyRecommendations",
    "MAIN CONCERNS": "mainConcerns",
    "NOTABLE EXPERIENCES & INSIGHTS": "notableExperiences",
    "KEY QUOTATIONS": "keyQuotations",
    "DETAILED CONTENT": "detailedContent",
}
_SECTION_SPLIT_RE = re.compile(r"^###\s+", re.MULTILINE)


@dataclass(slots=True)
class CondenseOptions:
    limit: int | None = None
    retry_failed: bool = False
    concurrency: int | None = None
    model: str | None = None


def parse_condensed_sections(text: str) -> tuple[dict[str, str], list[str]]:
    """Split a ``### HEADER`` outline into section keys; returns (sections, warnings)."""

    sections: dict[str, str] = {}
    errors: list[str] = []
    parts = _SECTION_SPLIT_RE.split(text)
    intro = parts[0].strip()
    if intro and not intro.startswith("#"):
        errors.append(f'Unexpected content before first section: "{intro[:50]}..."')

    for part in parts[1:]:
        header, _, body = part.partition("\n")
        key = SECTION_HEADERS.get(header.strip().upper())
        if key is None:
            errors.append(f"Unknown section header: {header.strip()}")
            continue
        if key in sections:
            errors.append(f"Duplicate section: {header.strip()}")
        sections[key] = body.strip()

    missing = [header for header, key in SECTION_HEADERS.items() if key not in sections]
    if missing:
        errors.append(f"Missing sections: {', '.join(missing)}")
    return sections, errors


def build_comment_text(comment: CommentRecord) -> str:
    """Comment body with a short metadata header, as sent to the model."""

    lines = [
        f"Submitter: {comment.submitter}",
        f"Submitter type: {comment.submitter_type}",
    ]
    state = comment.attributes.get("stateProvinceRegion")
    if state:
        lines.append(f"Location: {state}")
    lines.append("")
    lines.append(comment.text)
    return "\n".join(lines)


async def condense_comments(context: StageContext, options: CondenseOptions) -> StageSummary:
    repository = context.repository
    ledger = repository.condense_ledger
    summary = StageSummary(stage=STAGE_NAME)

    task_config = context.task_config(TASK_NAME, options.model)
    client = context.client_for(TASK_NAME, options.model)
    concurrency = options.concurrency or task_config.concurrency
    context.emit(f"Condensing comments for document {context.document_id}")
    context.emit(f"   Using model: {client.model}")

    counts = await asyncio.to_thread(ledger.counts)
    context.emit(
        f"Status: {counts['completed']} completed, {counts['failed']} failed, "
        f"{counts['pending'] + counts['processing']} pending",
    )

    candidate_ids = await asyncio.to_thread(repository.list_comment_ids)
    pending_ids = await asyncio.to_thread(
        ledger.pending_ids,
        candidate_ids,
        retry_failed=options.retry_failed,
    )
    if options.limit is not None:
        pending_ids = pending_ids[: options.limit]
    comments = await asyncio.to_thread(repository.get_comments, pending_ids)
    summary.selected = len(comments)
    context.emit(f"Found {len(comments)} comments to process")
    if not comments:
        context.emit("No comments to process")
        return summary

    active = ActiveJobRegistry()

    async def handle(comment: CommentRecord, index: int, total: int) -> None:
        with active.track(comment.id):
            context.emit(
                f"[{index}/{total}] Processing comment {comment.id} "
                f"({len(active)} workers active)",
            )
            try:
                await asyncio.to_thread(ledger.mark_processing, comment.id)
                if not comment.text:
                    summary.failed += 1
                    await asyncio.to_thread(ledger.mark_failed, comment.id, "Empty comment content")
                    context.emit(f"  [{comment.id}] Skipped (empty content)")
                    return

                prompt = prompts.render(
                    prompts.CONDENSE_PROMPT,
                    COMMENT_TEXT=build_comment_text(comment),
                )
                response = await client.generate(
                    prompt,
                    cache_meta=CacheMeta(
                        task_type="condense",
                        task_level=0,
                        params={"commentId": comment.id},
                    ),
                    debug_prefix=f"condense_{comment.id}",
                )
                sections, warnings = parse_condensed_sections(response)
                for warning in warnings:
                    logger.warning("[%s] %s", comment.id, warning)
                await asyncio.to_thread(
                    ledger.mark_completed,
                    comment.id,
                    structured_sections=json.dumps(sections, ensure_ascii=False),
                    word_count=count_words(" ".join(sections.values())),
                )
                summary.succeeded += 1
                suffix = " (with warnings)" if warnings else ""
                context.emit(f"  [{comment.id}] Condensed successfully{suffix}")
            except Exception as error:
                summary.failed += 1
                message = await mark_item_failed(ledger.mark_failed, comment.id, error)
                context.emit(f"  [{comment.id}] Error: {message}")

    await run_pool(comments, concurrency, handle)

    final = await asyncio.to_thread(ledger.counts)
    context.emit(
        f"Condensing complete: {summary.succeeded} succeeded, {summary.failed} failed; "
        f"overall {final['completed']} completed, {final['failed']} failed, "
        f"{final['pending'] + final['processing']} remaining",
    )
    return summary
