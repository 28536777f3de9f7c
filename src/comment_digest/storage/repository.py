"""SQLModel-backed storage facade for one docket document."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from sqlalchemy import case, func
from sqlmodel import Session, col, delete, select

from comment_digest.models import (
    CommentRecord,
    CondensedRecord,
    EntityDefinition,
    EntityMention,
    ThemeCoverage,
    ThemeNode,
    ThemeSummaryRecord,
)
from comment_digest.storage.alembic_runner import ensure_schema
from comment_digest.storage.common import build_sqlite_engine, utc_now
from comment_digest.storage.sqlmodel_models import (
    Comment,
    CommentEntity,
    CommentTheme,
    CondensedComment,
    EntityTaxonomy,
    ThemeHierarchy,
    ThemeScoringStatus,
    ThemeSummary,
)
from comment_digest.storage.status import ItemStatus, StatusLedger

logger = logging.getLogger(__name__)


class CommentRepository:
    """Facade that persists comments, themes and stage status using SQLModel and Alembic."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path)
        self.condense_ledger = StatusLedger(self.engine, CondensedComment)
        self.scoring_ledger = StatusLedger(self.engine, ThemeScoringStatus)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        ensure_schema(self.engine, self.db_path)

    # Comments

    def upsert_comments(self, records: list[CommentRecord]) -> int:
        """Insert or replace comments; returns how many rows were new."""

        created = 0
        with Session(self.engine) as session:
            for record in records:
                row = session.get(Comment, record.id)
                payload = json.dumps(record.attributes, ensure_ascii=False, sort_keys=True)
                if row is None:
                    created += 1
                    row = Comment(id=record.id, attributes_json=payload, created_at=utc_now())
                else:
                    row.attributes_json = payload
                session.add(row)
            session.commit()
        return created

    def count_comments(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(Comment)).one())

    def list_comment_ids(self) -> list[str]:
        with Session(self.engine) as session:
            return list(session.exec(select(Comment.id).order_by(col(Comment.id))).all())

    def get_comments(self, comment_ids: list[str]) -> list[CommentRecord]:
        """Return comments in the order of ``comment_ids``; unknown ids are skipped."""

        with Session(self.engine) as session:
            rows = session.exec(select(Comment).where(col(Comment.id).in_(comment_ids))).all()
        by_id = {row.id: row for row in rows}
        return [
            CommentRecord(id=comment_id, attributes=json.loads(by_id[comment_id].attributes_json))
            for comment_id in comment_ids
            if comment_id in by_id
        ]

    def list_condensed(self, *, limit: int | None = None) -> list[CondensedRecord]:
        """Completed condensed comments ordered by id."""

        statement = (
            select(CondensedComment)
            .where(CondensedComment.status == ItemStatus.COMPLETED.value)
            .order_by(col(CondensedComment.comment_id))
        )
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_condensed(row) for row in rows]

    # Themes

    def count_themes(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(ThemeHierarchy)).one())

    def replace_theme_hierarchy(self, themes: list[ThemeNode]) -> int:
        """Replace the whole hierarchy in one transaction, parents before children."""

        now = utc_now()
        known_codes = {theme.code for theme in themes}
        with Session(self.engine) as session:
            session.exec(delete(CommentTheme))
            session.exec(delete(ThemeSummary))
            session.exec(delete(ThemeHierarchy))
            for theme in sorted(themes, key=lambda item: (item.level, item.code)):
                parent_code = theme.parent_code if theme.parent_code in known_codes else None
                if theme.parent_code and parent_code is None:
                    logger.warning(
                        "Theme %s references unknown parent %s; storing as top level.",
                        theme.code,
                        theme.parent_code,
                    )
                session.add(
                    ThemeHierarchy(
                        code=theme.code,
                        description=theme.description,
                        level=theme.level,
                        parent_code=parent_code,
                        detailed_guidelines=theme.detailed_guidelines,
                        created_at=now,
                    ),
                )
                session.flush()
            session.commit()
        return len(themes)

    def list_themes(self) -> list[ThemeNode]:
        with Session(self.engine) as session:
            rows = session.exec(select(ThemeHierarchy).order_by(col(ThemeHierarchy.code))).all()
        return [
            ThemeNode(
                code=row.code,
                description=row.description,
                level=row.level,
                parent_code=row.parent_code,
                detailed_guidelines=row.detailed_guidelines,
            )
            for row in rows
        ]

    # Scores

    def save_comment_scores(self, comment_id: str, scores: dict[str, int]) -> None:
        """Replace a comment's scores and mark scoring completed atomically."""

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(delete(CommentTheme).where(col(CommentTheme.comment_id) == comment_id))
            for theme_code, score in sorted(scores.items()):
                session.add(
                    CommentTheme(
                        comment_id=comment_id,
                        theme_code=theme_code,
                        score=score,
                        created_at=now,
                    ),
                )
            status = session.get(ThemeScoringStatus, comment_id)
            if status is None:
                status = ThemeScoringStatus(comment_id=comment_id)
            status.status = ItemStatus.COMPLETED.value
            status.error_message = None
            session.add(status)
            session.commit()

    def get_comment_scores(self, comment_id: str) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CommentTheme).where(col(CommentTheme.comment_id) == comment_id),
            ).all()
        return {row.theme_code: row.score for row in rows}

    def theme_coverage(self, *, limit: int | None = None) -> list[ThemeCoverage]:
        """Themes ordered by how many comments address them directly or in passing."""

        direct = func.sum(case((col(CommentTheme.score) == 1, 1), else_=0))
        touch = func.sum(case((col(CommentTheme.score) == 2, 1), else_=0))
        not_addressed = func.sum(case((col(CommentTheme.score) == 3, 1), else_=0))
        statement = (
            select(ThemeHierarchy.code, ThemeHierarchy.description, direct, touch, not_addressed)
            .join(
                CommentTheme,
                col(CommentTheme.theme_code) == col(ThemeHierarchy.code),
                isouter=True,
            )
            .group_by(col(ThemeHierarchy.code))
            .order_by((direct + touch).desc(), col(ThemeHierarchy.code))
        )
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [
            ThemeCoverage(
                code=code,
                description=description,
                direct_count=int(direct_count or 0),
                touch_count=int(touch_count or 0),
                not_addressed_count=int(not_addressed_count or 0),
            )
            for code, description, direct_count, touch_count, not_addressed_count in rows
        ]

    def condensed_for_theme(self, theme_code: str, *, max_score: int = 2) -> list[CondensedRecord]:
        """Condensed comments scored at or below ``max_score`` for a theme."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(CondensedComment)
                .join(
                    CommentTheme,
                    col(CommentTheme.comment_id) == col(CondensedComment.comment_id),
                )
                .where(
                    col(CommentTheme.theme_code) == theme_code,
                    col(CommentTheme.score) <= max_score,
                    CondensedComment.status == ItemStatus.COMPLETED.value,
                )
                .order_by(col(CondensedComment.comment_id)),
            ).all()
        return [_to_condensed(row) for row in rows]

    # Summaries

    def summarized_theme_codes(self) -> set[str]:
        with Session(self.engine) as session:
            return set(session.exec(select(ThemeSummary.theme_code)).all())

    def save_theme_summary(self, record: ThemeSummaryRecord) -> None:
        with Session(self.engine) as session:
            row = session.get(ThemeSummary, record.theme_code)
            if row is None:
                row = ThemeSummary(
                    theme_code=record.theme_code,
                    summary="{}",
                    comment_count=0,
                    word_count=0,
                    created_at=utc_now(),
                )
            row.summary = json.dumps(record.summary, ensure_ascii=False)
            row.comment_count = record.comment_count
            row.word_count = record.word_count
            session.add(row)
            session.commit()

    def list_theme_summaries(self) -> list[ThemeSummaryRecord]:
        with Session(self.engine) as session:
            rows = session.exec(select(ThemeSummary).order_by(col(ThemeSummary.theme_code))).all()
        return [
            ThemeSummaryRecord(
                theme_code=row.theme_code,
                summary=json.loads(row.summary),
                comment_count=row.comment_count,
                word_count=row.word_count,
            )
            for row in rows
        ]

    # Entities

    def count_entities(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(EntityTaxonomy)).one())

    def replace_entities(
        self,
        entities: list[EntityDefinition],
        mentions: list[EntityMention],
    ) -> tuple[int, int]:
        """Replace the taxonomy and its annotations in one transaction.

        Mentions of entities that are not in ``entities`` are dropped. Returns
        ``(entities saved, mentions saved)``.
        """

        known = {entity.key for entity in entities}
        kept = sorted(
            {mention for mention in mentions if (mention.category, mention.label) in known},
            key=lambda item: (item.comment_id, item.category, item.label),
        )
        with Session(self.engine) as session:
            session.exec(delete(CommentEntity))
            session.exec(delete(EntityTaxonomy))
            for entity in entities:
                session.add(
                    EntityTaxonomy(
                        category=entity.category,
                        label=entity.label,
                        definition=entity.definition,
                        terms=json.dumps(entity.terms, ensure_ascii=False),
                    ),
                )
            session.flush()
            for mention in kept:
                session.add(
                    CommentEntity(
                        comment_id=mention.comment_id,
                        category=mention.category,
                        entity_label=mention.label,
                    ),
                )
            session.commit()
        return len(entities), len(kept)

    def list_entities(self) -> list[EntityDefinition]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(EntityTaxonomy).order_by(
                    col(EntityTaxonomy.category),
                    col(EntityTaxonomy.label),
                ),
            ).all()
        return [
            EntityDefinition(
                category=row.category,
                label=row.label,
                definition=row.definition or "",
                terms=list(json.loads(row.terms)),
            )
            for row in rows
        ]

    def list_entity_mentions(self, comment_id: str | None = None) -> list[EntityMention]:
        statement = select(CommentEntity).order_by(
            col(CommentEntity.comment_id),
            col(CommentEntity.category),
            col(CommentEntity.entity_label),
        )
        if comment_id is not None:
            statement = statement.where(col(CommentEntity.comment_id) == comment_id)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [
            EntityMention(comment_id=row.comment_id, category=row.category, label=row.entity_label)
            for row in rows
        ]


def _to_condensed(row: CondensedComment) -> CondensedRecord:
    sections = json.loads(row.structured_sections or "{}")
    return CondensedRecord(
        comment_id=row.comment_id,
        sections={str(key): str(value) for key, value in sections.items()},
        word_count=row.word_count or 0,
    )
