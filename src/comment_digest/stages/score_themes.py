"""Score every condensed comment against the discovered theme hierarchy."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass

from comment_digest import prompts
from comment_digest.llm.client import CacheMeta
from comment_digest.llm.json_parser import parse_json_response
from comment_digest.models import CondensedRecord, ThemeNode
from comment_digest.orchestration.worker_pool import ActiveJobRegistry, run_pool
from comment_digest.stages.base import StageContext, StageSummary, mark_item_failed

logger = logging.getLogger(__name__)

STAGE_NAME = "score-themes"
TASK_NAME = "scoreThemes"
DEFAULT_SCORING_GRACE = 5
VALID_SCORES = frozenset({1, 2, 3})
COVERAGE_TOP_N = 10


@dataclass(slots=True)
class ScoreThemesOptions:
    limit: int | None = None
    retry_failed: bool = False
    concurrency: int | None = None
    model: str | None = None


def format_theme_hierarchy(themes: list[ThemeNode]) -> str:
    return "\n".join(f"{theme.code}. {theme.full_description}" for theme in themes)


def scoring_text(record: CondensedRecord) -> str:
    return record.sections.get("detailedContent") or json.dumps(record.sections, ensure_ascii=False)


def build_score_validator(
    theme_codes: list[str],
    *,
    grace: int = DEFAULT_SCORING_GRACE,
) -> Callable[[str], dict[str, int]]:
    """Return a post-processor that parses a scoring answer and rejects incomplete ones.

    Only scores of 1, 2 or 3 for known theme codes are kept. An answer
    covering fewer than ``len(theme_codes) - grace`` themes fails first with a
    count message; any missing code then fails with the list of codes.
    """

    known = set(theme_codes)

    def validate(text: str) -> dict[str, int]:
        parsed = parse_json_response(text)
        if not isinstance(parsed, dict):
            raise ValueError(f"Expected a JSON object of scores, got {type(parsed).__name__}")
        scores: dict[str, int] = {}
        for code, value in parsed.items():
            code = str(code)
            if code not in known:
                logger.debug("Ignoring score for unknown theme %s", code)
                continue
            if isinstance(value, bool) or value not in VALID_SCORES:
                continue
            scores[code] = int(value)

        missing = [code for code in theme_codes if code not in parsed]
        if len(scores) < len(theme_codes) - grace:
            raise ValueError(
                f"Expected at least {len(theme_codes) - grace} theme scores, but got "
                f"{len(scores)}. Missing themes: {', '.join(missing)}",
            )
        if missing:
            raise ValueError(f"Missing scores for themes: {', '.join(missing)}")
        return scores

    return validate


async def score_themes(context: StageContext, options: ScoreThemesOptions) -> StageSummary:
    repository = context.repository
    ledger = repository.scoring_ledger
    summary = StageSummary(stage=STAGE_NAME)

    task_config = context.task_config(TASK_NAME, options.model)
    client = context.client_for(TASK_NAME, options.model)
    concurrency = options.concurrency or task_config.concurrency
    context.emit(f"Scoring comments against themes for document {context.document_id}")
    context.emit(f"   Using model: {client.model}")

    themes = await asyncio.to_thread(repository.list_themes)
    if not themes:
        context.emit("No theme hierarchy found. Run 'discover-themes' first.")
        summary.skipped = True
        return summary
    context.emit(f"Loaded {len(themes)} themes")

    theme_codes = [theme.code for theme in themes]
    hierarchy_text = format_theme_hierarchy(themes)
    grace = int(task_config.validation.get("scoringGrace") or DEFAULT_SCORING_GRACE)
    validate = build_score_validator(theme_codes, grace=grace)

    condensed = await asyncio.to_thread(repository.list_condensed)
    by_id = {record.comment_id: record for record in condensed}
    counts = await asyncio.to_thread(ledger.counts)
    context.emit(
        f"Status: {counts['completed']} completed, {counts['failed']} failed, "
        f"{len(condensed) - counts['completed'] - counts['failed']} pending",
    )

    pending_ids = await asyncio.to_thread(
        ledger.pending_ids,
        list(by_id),
        retry_failed=options.retry_failed,
    )
    if options.limit is not None:
        pending_ids = pending_ids[: options.limit]
    records = [by_id[comment_id] for comment_id in pending_ids]
    summary.selected = len(records)
    context.emit(f"Found {len(records)} comments to process")
    if not records:
        context.emit("No comments to process")
        return summary

    active = ActiveJobRegistry()

    async def handle(record: CondensedRecord, index: int, total: int) -> None:
        comment_id = record.comment_id
        with active.track(comment_id):
            context.emit(
                f"[{index}/{total}] Processing comment {comment_id} ({len(active)} workers active)",
            )
            try:
                await asyncio.to_thread(ledger.mark_processing, comment_id)
                prompt = prompts.render(
                    prompts.THEME_SCORING_PROMPT,
                    THEME_COUNT=str(len(themes)),
                    THEME_HIERARCHY=hierarchy_text,
                    COMMENT=scoring_text(record),
                )
                scores = await client.generate(
                    prompt,
                    cache_meta=CacheMeta(
                        task_type="theme_scoring",
                        task_level=0,
                        params={"commentId": comment_id, "themeCount": len(themes)},
                    ),
                    post_process=validate,
                    debug_prefix=f"score_themes_{comment_id}",
                )
                await asyncio.to_thread(repository.save_comment_scores, comment_id, scores)
                breakdown = Counter(scores.values())
                summary.succeeded += 1
                context.emit(
                    f"  [{comment_id}] Scored successfully ({len(themes)} themes: "
                    f"{breakdown[1]} direct, {breakdown[2]} touches, "
                    f"{breakdown[3]} not addressed)",
                )
            except Exception as error:
                summary.failed += 1
                message = await mark_item_failed(ledger.mark_failed, comment_id, error)
                context.emit(f"  [{comment_id}] Error: {message}")

    await run_pool(records, concurrency, handle)

    context.emit(
        f"Theme scoring complete: {summary.succeeded} succeeded, {summary.failed} failed, "
        f"{summary.processed} processed",
    )
    coverage = await asyncio.to_thread(repository.theme_coverage, limit=COVERAGE_TOP_N)
    if coverage:
        context.emit("Top themes by coverage:")
        for row in coverage:
            context.emit(
                f"   {row.code}. {row.description}: {row.direct_count} direct, "
                f"{row.touch_count} touches",
            )
    return summary
