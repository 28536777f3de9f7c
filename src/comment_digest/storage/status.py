"""Per-item processing status ledger used to make stages resumable."""

from __future__ import annotations

import logging
from collections import Counter
from enum import StrEnum

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from comment_digest.storage.common import utc_now
from comment_digest.storage.sqlmodel_models import CondensedComment, ThemeScoringStatus

logger = logging.getLogger(__name__)

LedgerRow = CondensedComment | ThemeScoringStatus


class ItemStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StatusLedger:
    """Tracks ``pending -> processing -> completed | failed`` per comment.

    Every transition runs in its own transaction so a crash between items never
    leaves a half-written row. The ledger is opaque to the schedulers; stages
    consult it to pick the items that still need work.
    """

    def __init__(self, engine: Engine, model: type[LedgerRow]) -> None:
        self.engine = engine
        self.model = model

    def _get_or_new(self, session: Session, comment_id: str) -> LedgerRow:
        row = session.get(self.model, comment_id)
        if row is not None:
            return row
        if self.model is CondensedComment:
            return CondensedComment(comment_id=comment_id, created_at=utc_now())
        return ThemeScoringStatus(comment_id=comment_id)

    def mark_processing(self, comment_id: str) -> None:
        with Session(self.engine) as session:
            row = self._get_or_new(session, comment_id)
            row.status = ItemStatus.PROCESSING.value
            row.attempt_count += 1
            row.last_attempt_at = utc_now()
            row.error_message = None
            session.add(row)
            session.commit()

    def mark_completed(self, comment_id: str, **fields: object) -> None:
        """Mark done, optionally writing stage output columns in the same transaction."""

        with Session(self.engine) as session:
            row = self._get_or_new(session, comment_id)
            for name, value in fields.items():
                if not hasattr(row, name):
                    raise AttributeError(f"{self.model.__name__} has no column {name!r}")
                setattr(row, name, value)
            row.status = ItemStatus.COMPLETED.value
            row.error_message = None
            session.add(row)
            session.commit()

    def mark_failed(self, comment_id: str, error_message: str) -> None:
        with Session(self.engine) as session:
            row = self._get_or_new(session, comment_id)
            row.status = ItemStatus.FAILED.value
            row.error_message = error_message
            row.last_attempt_at = utc_now()
            session.add(row)
            session.commit()
        logger.warning(
            "Marked %s for %s as failed: %s",
            self.model.__tablename__,
            comment_id,
            error_message,
        )

    def status_of(self, comment_id: str) -> str | None:
        with Session(self.engine) as session:
            row = session.get(self.model, comment_id)
            return None if row is None else row.status

    def counts(self) -> dict[str, int]:
        """Return rows per status; every status key is always present."""

        with Session(self.engine) as session:
            statuses = session.exec(select(self.model.status)).all()
        counter = Counter(statuses)
        return {status.value: counter.get(status.value, 0) for status in ItemStatus}

    def pending_ids(self, candidate_ids: list[str], *, retry_failed: bool = False) -> list[str]:
        """Filter ``candidate_ids`` down to items that still need processing.

        Completed items are always skipped. Failed items are retried only with
        ``retry_failed``. Items left in ``processing`` by a crashed run are
        picked up again.
        """

        with Session(self.engine) as session:
            rows = session.exec(
                select(self.model.comment_id, self.model.status).where(
                    col(self.model.comment_id).in_(candidate_ids),
                ),
            ).all()
        status_by_id = {comment_id: status for comment_id, status in rows}
        pending: list[str] = []
        for comment_id in candidate_ids:
            status = status_by_id.get(comment_id)
            if status == ItemStatus.COMPLETED.value:
                continue
            if status == ItemStatus.FAILED.value and not retry_failed:
                continue
            pending.append(comment_id)
        return pending

    def failed_ids(self) -> list[str]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(self.model.comment_id)
                    .where(self.model.status == ItemStatus.FAILED.value)
                    .order_by(col(self.model.comment_id)),
                ).all(),
            )
