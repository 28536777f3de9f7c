"""SQLite persistence for docket documents."""

from comment_digest.storage.common import (
    SqlitePolicy,
    build_sqlite_engine,
    db_path_for_document,
    utc_now,
)
from comment_digest.storage.repository import CommentRepository
from comment_digest.storage.status import ItemStatus, StatusLedger

__all__ = [
    "CommentRepository",
    "ItemStatus",
    "SqlitePolicy",
    "StatusLedger",
    "build_sqlite_engine",
    "db_path_for_document",
    "utc_now",
]
