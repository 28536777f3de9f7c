"""Import comments from a regulations.gov bulk CSV export."""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from comment_digest.models import CSV_FIELD_MAP, CommentRecord
from comment_digest.stages.base import StageContext, StageError, StageSummary

logger = logging.getLogger(__name__)

STAGE_NAME = "load"
_INSERT_CHUNK = 500


def read_comment_csv(csv_path: Path) -> Iterator[CommentRecord]:
    """Yield comments from a CSV file; rows without a document id get ``row<N>``."""

    with csv_path.open(encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        for row_number, row in enumerate(reader, start=1):
            attributes: dict[str, Any] = {}
            for column, key in CSV_FIELD_MAP.items():
                value = (row.get(column) or "").strip()
                if not value:
                    continue
                if key == "pageCount":
                    try:
                        attributes[key] = int(value)
                    except ValueError:
                        logger.debug("Ignoring non-numeric page count %r", value)
                    continue
                attributes[key] = value
            comment_id = str(attributes.get("id") or f"row{row_number}")
            yield CommentRecord(id=comment_id, attributes=attributes)


def load_comments(
    context: StageContext,
    csv_path: Path,
    *,
    limit: int | None = None,
) -> StageSummary:
    """Upsert comments from ``csv_path``, stopping after ``limit`` rows when given."""

    if not csv_path.is_file():
        raise StageError(STAGE_NAME, f"CSV file not found: {csv_path}")

    summary = StageSummary(stage=STAGE_NAME)
    existing = context.repository.count_comments()
    context.emit(f"Loading comments from {csv_path} (existing: {existing})")

    chunk: list[CommentRecord] = []
    for record in read_comment_csv(csv_path):
        if limit is not None and summary.selected >= limit:
            context.emit(f"Reached limit of {limit} comments")
            break
        summary.selected += 1
        chunk.append(record)
        if len(chunk) >= _INSERT_CHUNK:
            summary.succeeded += context.repository.upsert_comments(chunk)
            chunk = []
    if chunk:
        summary.succeeded += context.repository.upsert_comments(chunk)

    context.emit(
        f"Loaded {summary.selected} rows ({summary.succeeded} new, "
        f"{summary.selected - summary.succeeded} updated); "
        f"total comments: {context.repository.count_comments()}",
    )
    return summary
