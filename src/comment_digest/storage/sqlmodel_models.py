"""SQLModel ORM tables for docket storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    PrimaryKeyConstraint,
    Text,
)
from sqlmodel import Field, SQLModel

PROCESSING_STATUSES = ("pending", "processing", "completed", "failed")
_STATUS_CHECK = "status IN ('pending', 'processing', 'completed', 'failed')"


class Comment(SQLModel, table=True):
    __tablename__ = "comments"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    attributes_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CondensedComment(SQLModel, table=True):
    __tablename__ = "condensed_comments"  # type: ignore[bad-override]
    __table_args__ = (CheckConstraint(_STATUS_CHECK, name="ck_condensed_comments_status"),)

    comment_id: str = Field(
        sa_column=Column(
            ForeignKey("comments.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    structured_sections: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    word_count: int | None = None
    status: str = Field(default="pending", index=True)
    error_message: str | None = None
    attempt_count: int = Field(default=0, index=True)
    last_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ThemeHierarchy(SQLModel, table=True):
    __tablename__ = "theme_hierarchy"  # type: ignore[bad-override]

    code: str = Field(primary_key=True)
    description: str
    level: int
    parent_code: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("theme_hierarchy.code"), nullable=True),
    )
    detailed_guidelines: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CommentTheme(SQLModel, table=True):
    __tablename__ = "comment_themes"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("comment_id", "theme_code"),
        CheckConstraint("score IN (1, 2, 3)", name="ck_comment_themes_score"),
        Index("idx_comment_themes_theme", "theme_code"),
    )

    comment_id: str = Field(
        sa_column=Column(ForeignKey("comments.id", ondelete="CASCADE"), nullable=False),
    )
    theme_code: str = Field(
        sa_column=Column(ForeignKey("theme_hierarchy.code", ondelete="CASCADE"), nullable=False),
    )
    score: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ThemeScoringStatus(SQLModel, table=True):
    __tablename__ = "theme_scoring_status"  # type: ignore[bad-override]
    __table_args__ = (CheckConstraint(_STATUS_CHECK, name="ck_theme_scoring_status_status"),)

    comment_id: str = Field(
        sa_column=Column(
            ForeignKey("comments.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    status: str = Field(default="pending", index=True)
    error_message: str | None = None
    attempt_count: int = 0
    last_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class ThemeSummary(SQLModel, table=True):
    __tablename__ = "theme_summaries"  # type: ignore[bad-override]

    theme_code: str = Field(
        sa_column=Column(
            ForeignKey("theme_hierarchy.code", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    summary: str = Field(sa_column=Column(Text, nullable=False))
    comment_count: int
    word_count: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LlmCacheEntry(SQLModel, table=True):
    __tablename__ = "llm_cache"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_llm_cache_task_type_level", "task_type", "task_level"),
        Index("idx_llm_cache_created_at", "created_at"),
    )

    prompt_hash: str = Field(primary_key=True)
    task_type: str
    task_level: int = 0
    task_params: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    result: str = Field(sa_column=Column(Text, nullable=False))
    model: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EntityTaxonomy(SQLModel, table=True):
    __tablename__ = "entity_taxonomy"  # type: ignore[bad-override]

    category: str = Field(primary_key=True)
    label: str = Field(primary_key=True)
    definition: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    terms: str = Field(sa_column=Column(Text, nullable=False))


class CommentEntity(SQLModel, table=True):
    __tablename__ = "comment_entities"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("comment_id", "category", "entity_label"),
        ForeignKeyConstraint(
            ["category", "entity_label"],
            ["entity_taxonomy.category", "entity_taxonomy.label"],
            ondelete="CASCADE",
        ),
        Index("idx_comment_entities_entity", "category", "entity_label"),
    )

    comment_id: str = Field(
        sa_column=Column(ForeignKey("comments.id", ondelete="CASCADE"), nullable=False),
    )
    category: str
    entity_label: str
