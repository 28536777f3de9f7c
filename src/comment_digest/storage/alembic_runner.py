"""Programmatic Alembic upgrades for per-document SQLite files."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

# src/comment_digest/storage -> project root holding alembic.ini
PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, ``None`` for a fresh file."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def ensure_schema(engine: Engine, db_path: Path) -> bool:
    """Upgrade ``db_path`` to head unless it is already there; returns True if migrated."""

    head = head_revision(db_path)
    current = current_revision(engine)
    if current == head:
        return False
    logger.info("Migrating %s from %s to %s", db_path.name, current or "empty", head)
    command.upgrade(alembic_config(db_path), "head")
    return True
