"""Shared test fixtures."""

from __future__ import annotations

import csv
from pathlib import Path

import pytest

from comment_digest.config import BatchConfig, Settings
from comment_digest.llm.providers import generate_with_echo
from comment_digest.stages.base import StageContext
from comment_digest.storage.repository import CommentRepository

SAMPLE_ROWS = [
    {
        "Document ID": "DOC-0001",
        "Comment": "Rural clinics are closing and patients drive hours for basic care.",
        "First Name": "Ana",
        "Last Name": "Lopez",
        "Category": "Individual",
        "State/Province": "NM",
        "Page Count": "1",
    },
    {
        "Document ID": "DOC-0002",
        "Comment": "The reporting deadlines add paperwork that small practices cannot absorb.",
        "Organization Name": "Small Practice Alliance",
        "Category": "Organization",
        "Page Count": "2",
    },
    {
        "Document ID": "DOC-0003",
        "Comment": "Premiums keep rising while coverage shrinks for working families.",
        "First Name": "Sam",
        "Last Name": "Reed",
        "Page Count": "n/a",
    },
]


def write_comment_csv(path: Path, rows: list[dict[str, str]]) -> Path:
    fieldnames: list[str] = []
    for row in rows:
        for key in row:
            if key not in fieldnames:
                fieldnames.append(key)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)
    return path


@pytest.fixture()
def sample_rows() -> list[dict[str, str]]:
    return [dict(row) for row in SAMPLE_ROWS]


@pytest.fixture()
def csv_writer():
    """The CSV helper, for tests that need rows beyond the sample."""

    return write_comment_csv


@pytest.fixture()
def sample_csv(tmp_path: Path) -> Path:
    return write_comment_csv(tmp_path / "comments.csv", SAMPLE_ROWS)


@pytest.fixture()
def repository(tmp_path: Path):
    repo = CommentRepository(tmp_path / "dbs" / "TEST-DOC.sqlite")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def echo_env(tmp_path: Path, monkeypatch) -> Path:
    """Point settings at a temp db dir and the offline echo model."""

    db_dir = tmp_path / "dbs"
    monkeypatch.setenv("COMMENT_DIGEST_DB_DIR", str(db_dir))
    monkeypatch.setenv("COMMENT_DIGEST_MODEL", "echo")
    monkeypatch.setenv("COMMENT_DIGEST_BATCH_CONFIG", str(tmp_path / "missing-batch-config.json"))
    monkeypatch.setenv("COMMENT_DIGEST_RETRY_DELAY_SECONDS", "0")
    return db_dir


@pytest.fixture()
def make_context(repository: CommentRepository, tmp_path: Path):
    """Build a StageContext on the temp repository that records progress lines."""

    def _make(*, generate=generate_with_echo, batch_config: BatchConfig | None = None):
        lines: list[str] = []
        settings = Settings(db_dir=tmp_path / "dbs")
        context = StageContext(
            document_id="TEST-DOC",
            repository=repository,
            settings=settings,
            batch_config=batch_config or BatchConfig(default_model="echo"),
            on_progress=lines.append,
            generate_override=generate,
        )
        return context, lines

    return _make
