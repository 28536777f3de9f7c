from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError

from comment_digest.models import (
    CommentRecord,
    EntityDefinition,
    EntityMention,
    ThemeNode,
    ThemeSummaryRecord,
)
from comment_digest.storage.alembic_runner import current_revision, ensure_schema, head_revision
from comment_digest.storage.repository import CommentRepository
from comment_digest.storage.status import ItemStatus

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Repository and Status Ledger"),
]

_THEMES = [
    ThemeNode(code="1.1", description="Rural Access", level=2, parent_code="1"),
    ThemeNode(code="1", description="Access", level=1, detailed_guidelines="Cost and coverage"),
    ThemeNode(code="2", description="Burden", level=1),
    ThemeNode(code="3.1", description="Orphan", level=2, parent_code="3"),
]


def _seed_comments(repository: CommentRepository, *ids: str) -> None:
    repository.upsert_comments(
        [CommentRecord(id=comment_id, attributes={"comment": f"text {comment_id}"}) for comment_id in ids],
    )


def _complete_condense(repository: CommentRepository, comment_id: str, words: int = 10) -> None:
    repository.condense_ledger.mark_completed(
        comment_id,
        structured_sections=json.dumps({"detailedContent": f"content {comment_id}"}),
        word_count=words,
    )


def test_schema_is_migrated_to_head(tmp_path: Path) -> None:
    repository = CommentRepository(tmp_path / "nested" / "doc.sqlite")
    repository.init_schema()

    assert current_revision(repository.engine) == head_revision(repository.db_path)
    assert ensure_schema(repository.engine, repository.db_path) is False

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = set(inspect(connection).get_table_names())
    repository.close()

    assert version == "20261019_0003"
    assert {
        "comments",
        "condensed_comments",
        "theme_hierarchy",
        "comment_themes",
        "theme_scoring_status",
        "theme_summaries",
        "llm_cache",
        "entity_taxonomy",
        "comment_entities",
    } <= tables


def test_upsert_counts_new_rows_and_updates_existing(repository) -> None:
    assert repository.upsert_comments([CommentRecord(id="A", attributes={"comment": "one"})]) == 1
    created = repository.upsert_comments(
        [
            CommentRecord(id="A", attributes={"comment": "one, edited"}),
            CommentRecord(id="B", attributes={"comment": "two"}),
        ],
    )

    assert created == 1
    assert repository.count_comments() == 2
    assert repository.list_comment_ids() == ["A", "B"]
    assert [comment.text for comment in repository.get_comments(["B", "A", "missing"])] == [
        "two",
        "one, edited",
    ]


def test_ledger_transitions_and_resume_selection(repository) -> None:
    _seed_comments(repository, "A", "B", "C", "D")
    ledger = repository.condense_ledger

    ledger.mark_processing("A")
    _complete_condense(repository, "A")
    ledger.mark_processing("B")
    ledger.mark_failed("B", "[unknown] boom")
    ledger.mark_processing("C")

    assert ledger.status_of("A") == ItemStatus.COMPLETED
    assert ledger.status_of("D") is None
    assert ledger.counts() == {"pending": 0, "processing": 1, "completed": 1, "failed": 1}
    assert ledger.pending_ids(["A", "B", "C", "D"]) == ["C", "D"]
    assert ledger.pending_ids(["A", "B", "C", "D"], retry_failed=True) == ["B", "C", "D"]
    assert ledger.failed_ids() == ["B"]

    ledger.mark_processing("B")
    with repository.engine.connect() as connection:
        attempts = connection.execute(
            text("SELECT attempt_count, error_message FROM condensed_comments WHERE comment_id = 'B'"),
        ).one()
    assert attempts == (2, None)


def test_mark_completed_rejects_unknown_columns(repository) -> None:
    _seed_comments(repository, "A")

    with pytest.raises(AttributeError, match="no column 'nonsense'"):
        repository.condense_ledger.mark_completed("A", nonsense=1)


def test_theme_hierarchy_is_replaced_parents_first(repository) -> None:
    assert repository.replace_theme_hierarchy(_THEMES) == 4

    themes = {theme.code: theme for theme in repository.list_themes()}
    assert sorted(themes) == ["1", "1.1", "2", "3.1"]
    assert themes["1.1"].parent_code == "1"
    assert themes["3.1"].parent_code is None
    assert themes["1"].full_description == "Access. Cost and coverage"

    repository.replace_theme_hierarchy([ThemeNode(code="9", description="Only", level=1)])
    assert [theme.code for theme in repository.list_themes()] == ["9"]


def test_scores_replace_atomically_and_feed_coverage(repository) -> None:
    _seed_comments(repository, "A", "B")
    _complete_condense(repository, "A", words=7)
    _complete_condense(repository, "B", words=9)
    repository.replace_theme_hierarchy(_THEMES[:3])

    repository.save_comment_scores("A", {"1": 3, "1.1": 3, "2": 3})
    repository.save_comment_scores("A", {"1": 1, "1.1": 2, "2": 3})
    repository.save_comment_scores("B", {"1": 2, "1.1": 3, "2": 3})

    assert repository.get_comment_scores("A") == {"1": 1, "1.1": 2, "2": 3}
    assert repository.scoring_ledger.status_of("A") == ItemStatus.COMPLETED

    coverage = repository.theme_coverage()
    assert [(row.code, row.direct_count, row.touch_count) for row in coverage] == [
        ("1", 1, 1),
        ("1.1", 0, 1),
        ("2", 0, 0),
    ]
    assert coverage[0].relevant_count == 2
    assert [record.comment_id for record in repository.condensed_for_theme("1")] == ["A", "B"]
    assert [record.comment_id for record in repository.condensed_for_theme("1.1")] == ["A"]
    assert repository.condensed_for_theme("2") == []


def test_invalid_score_is_rejected_by_schema(repository) -> None:
    _seed_comments(repository, "A")
    repository.replace_theme_hierarchy(_THEMES[:1])

    with pytest.raises(IntegrityError):
        repository.save_comment_scores("A", {"1": 4})
    assert repository.get_comment_scores("A") == {}


def test_theme_summaries_round_trip_and_skip_set(repository) -> None:
    repository.replace_theme_hierarchy(_THEMES[:3])
    record = ThemeSummaryRecord(
        theme_code="2",
        summary={"overview": "Paperwork is heavy", "consensusPoints": []},
        comment_count=4,
        word_count=120,
    )

    repository.save_theme_summary(record)
    repository.save_theme_summary(record)

    assert repository.summarized_theme_codes() == {"2"}
    assert repository.list_theme_summaries() == [record]


def test_entities_replace_taxonomy_and_drop_orphan_mentions(repository) -> None:
    _seed_comments(repository, "A", "B")
    rural = EntityDefinition("Places", "Rural Clinic", "Clinic outside a city", ["rural clinic", "RHC"])
    cms = EntityDefinition("Agencies", "CMS", "Centers for Medicare & Medicaid Services", ["CMS"])

    saved = repository.replace_entities(
        [rural, cms],
        [
            EntityMention("A", "Places", "Rural Clinic"),
            EntityMention("A", "Places", "Rural Clinic"),
            EntityMention("B", "Agencies", "CMS"),
            EntityMention("B", "Agencies", "Unknown"),
        ],
    )

    assert saved == (2, 2)
    assert repository.count_entities() == 2
    assert [entity.label for entity in repository.list_entities()] == ["CMS", "Rural Clinic"]
    assert repository.list_entities()[1].terms == ["rural clinic", "RHC"]
    assert repository.list_entity_mentions("A") == [EntityMention("A", "Places", "Rural Clinic")]

    assert repository.replace_entities([cms], [EntityMention("A", "Agencies", "CMS")]) == (1, 1)
    assert repository.list_entity_mentions() == [EntityMention("A", "Agencies", "CMS")]
