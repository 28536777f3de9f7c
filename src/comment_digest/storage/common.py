"""SQLite policy and small helpers shared by the per-document stores."""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

_DOCUMENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(slots=True, frozen=True)
class SqlitePolicy:
    """Pragmas applied to every new connection."""

    journal_mode: str = "WAL"
    busy_timeout_ms: int = 5_000
    foreign_keys: bool = True

    def apply(self, connection: sqlite3.Connection) -> None:
        cursor = connection.cursor()
        cursor.execute(f"PRAGMA journal_mode = {self.journal_mode}")
        cursor.execute(f"PRAGMA busy_timeout = {max(1, self.busy_timeout_ms)}")
        cursor.execute(f"PRAGMA foreign_keys = {'ON' if self.foreign_keys else 'OFF'}")
        cursor.close()


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on read; treat naive values as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def db_path_for_document(db_dir: Path, document_id: str) -> Path:
    """``<db_dir>/<document_id>.sqlite``; ids that could escape ``db_dir`` are rejected."""

    if not _DOCUMENT_ID_RE.match(document_id):
        raise ValueError(f"Invalid document id: {document_id!r}")
    return db_dir / f"{document_id}.sqlite"


def build_sqlite_engine(*, db_path: Path, policy: SqlitePolicy | None = None) -> Engine:
    """Engine for one document database; connections are not pooled across threads."""

    effective = policy or SqlitePolicy()
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, effective.busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        effective.apply(dbapi_connection)

    return engine
