"""Content-addressed cache of raw LLM responses stored in the docket database."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, delete, select

from comment_digest.storage.common import as_utc, utc_now
from comment_digest.storage.sqlmodel_models import LlmCacheEntry

logger = logging.getLogger(__name__)


class CacheStoreOutcome(StrEnum):
    STORED = "stored"
    CONFLICT = "conflict"


@dataclass(slots=True, frozen=True)
class CacheEntry:
    """Immutable view of one cached response."""

    prompt_hash: str
    task_type: str
    task_level: int
    task_params: dict[str, Any] | None
    result: str
    model: str | None
    created_at: datetime


@dataclass(slots=True)
class CacheStatsRow:
    task_type: str
    task_level: int
    count: int
    oldest: datetime
    newest: datetime


@dataclass(slots=True)
class CacheVerifyReport:
    total: int
    empty_results: int
    duplicate_hashes: int

    @property
    def ok(self) -> bool:
        return self.empty_results == 0 and self.duplicate_hashes == 0


def prompt_hash(prompt: str) -> str:
    """SHA-256 hex digest of the exact prompt bytes."""

    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()


def _encode_params(params: dict[str, Any] | None) -> str | None:
    if params is None:
        return None
    return json.dumps(params, sort_keys=True, ensure_ascii=False, default=str)


class LlmCache:
    """Insert-only store keyed by prompt hash.

    A second write for an existing key never replaces the stored result; it is
    reported as ``CONFLICT`` with a diagnostic stating whether the metadata of
    the two writes agrees. Replacing an entry takes an explicit ``invalidate``.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def lookup(self, prompt: str) -> CacheEntry | None:
        key = prompt_hash(prompt)
        with Session(self.engine) as session:
            row = session.get(LlmCacheEntry, key)
            if row is None:
                return None
            return _to_entry(row)

    def store(
        self,
        prompt: str,
        *,
        task_type: str,
        result: str,
        task_level: int = 0,
        params: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> CacheStoreOutcome:
        key = prompt_hash(prompt)
        encoded_params = _encode_params(params)
        with Session(self.engine) as session:
            existing = session.get(LlmCacheEntry, key)
            if existing is not None:
                self._log_conflict(existing, key=key, task_type=task_type, params=encoded_params)
                return CacheStoreOutcome.CONFLICT
            session.add(
                LlmCacheEntry(
                    prompt_hash=key,
                    task_type=task_type,
                    task_level=task_level,
                    task_params=encoded_params,
                    result=result,
                    model=model,
                    created_at=utc_now(),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning(
                    "Cache entry %s for %s was written concurrently; keeping the first result.",
                    key[:12],
                    task_type,
                )
                return CacheStoreOutcome.CONFLICT
        logger.debug("Cached %s result under %s", task_type, key[:12])
        return CacheStoreOutcome.STORED

    @staticmethod
    def _log_conflict(
        existing: LlmCacheEntry,
        *,
        key: str,
        task_type: str,
        params: str | None,
    ) -> None:
        params_match = existing.task_params == params and existing.task_type == task_type
        logger.warning(
            "Cache key %s already exists for %s (level %s); not overwriting. Params %s.",
            key[:12],
            existing.task_type,
            existing.task_level,
            "match" if params_match else f"differ: stored={existing.task_params} new={params}",
        )

    # Administration

    def stats(self) -> list[CacheStatsRow]:
        """Entry counts grouped by task type and level."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    LlmCacheEntry.task_type,
                    LlmCacheEntry.task_level,
                    func.count(),
                    func.min(LlmCacheEntry.created_at),
                    func.max(LlmCacheEntry.created_at),
                )
                .group_by(col(LlmCacheEntry.task_type), col(LlmCacheEntry.task_level))
                .order_by(col(LlmCacheEntry.task_type), col(LlmCacheEntry.task_level)),
            ).all()
        return [
            CacheStatsRow(
                task_type=task_type,
                task_level=task_level,
                count=int(count),
                oldest=as_utc(oldest),
                newest=as_utc(newest),
            )
            for task_type, task_level, count, oldest, newest in rows
        ]

    def count(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(LlmCacheEntry)).one())

    def size_bytes(self) -> int:
        """Approximate payload size (results plus params)."""

        with Session(self.engine) as session:
            total = session.exec(
                select(
                    func.coalesce(func.sum(func.length(LlmCacheEntry.result)), 0)
                    + func.coalesce(func.sum(func.length(LlmCacheEntry.task_params)), 0),
                ),
            ).one()
        return int(total or 0)

    def invalidate(self, prompt: str) -> bool:
        """Drop the entry for ``prompt``; the only way a stored result is ever replaced."""

        return self._delete_where(col(LlmCacheEntry.prompt_hash) == prompt_hash(prompt)) > 0

    def clear(self, task_type: str, *, level: int | None = None) -> int:
        conditions = [col(LlmCacheEntry.task_type) == task_type]
        if level is not None:
            conditions.append(col(LlmCacheEntry.task_level) == level)
        return self._delete_where(*conditions)

    def clear_all(self) -> int:
        return self._delete_where()

    def clear_older_than(self, days: int) -> int:
        if days < 0:
            raise ValueError("days must be >= 0")
        cutoff = utc_now() - timedelta(days=days)
        return self._delete_where(col(LlmCacheEntry.created_at) < cutoff)

    def _delete_where(self, *conditions: Any) -> int:
        with Session(self.engine) as session:
            count_statement = select(func.count()).select_from(LlmCacheEntry)
            delete_statement = delete(LlmCacheEntry)
            if conditions:
                count_statement = count_statement.where(*conditions)
                delete_statement = delete_statement.where(*conditions)
            deleted = int(session.exec(count_statement).one())
            session.exec(delete_statement)
            session.commit()
        logger.info("Deleted %s cache entries", deleted)
        return deleted

    def verify(self) -> CacheVerifyReport:
        """Count entries with empty results and duplicate hashes."""

        with Session(self.engine) as session:
            total = int(session.exec(select(func.count()).select_from(LlmCacheEntry)).one())
            empty = int(
                session.exec(
                    select(func.count())
                    .select_from(LlmCacheEntry)
                    .where(func.trim(func.coalesce(LlmCacheEntry.result, "")) == ""),
                ).one(),
            )
            distinct = int(
                session.exec(select(func.count(func.distinct(LlmCacheEntry.prompt_hash)))).one(),
            )
        return CacheVerifyReport(
            total=total,
            empty_results=empty,
            duplicate_hashes=total - distinct,
        )


def _to_entry(row: LlmCacheEntry) -> CacheEntry:
    return CacheEntry(
        prompt_hash=row.prompt_hash,
        task_type=row.task_type,
        task_level=row.task_level,
        task_params=json.loads(row.task_params) if row.task_params else None,
        result=row.result,
        model=row.model,
        created_at=as_utc(row.created_at),
    )
