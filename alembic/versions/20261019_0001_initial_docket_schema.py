"""Initial docket schema: comments, condensed status, themes, scores, summaries."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

_STATUS_CHECK = "status IN ('pending', 'processing', 'completed', 'failed')"


def upgrade() -> None:
    op.create_table(
        "comments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("attributes_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_comments_created", "comments", ["created_at"])

    op.create_table(
        "condensed_comments",
        sa.Column("comment_id", sa.String(), nullable=False),
        sa.Column("structured_sections", sa.Text(), nullable=False),
        sa.Column("word_count", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("comment_id"),
        sa.ForeignKeyConstraint(["comment_id"], ["comments.id"], ondelete="CASCADE"),
        sa.CheckConstraint(_STATUS_CHECK, name="ck_condensed_comments_status"),
    )
    op.create_index(
        "ix_condensed_comments_status",
        "condensed_comments",
        ["status"],
    )
    op.create_index(
        "ix_condensed_comments_attempt_count",
        "condensed_comments",
        ["attempt_count"],
    )

    op.create_table(
        "theme_hierarchy",
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("parent_code", sa.String(), nullable=True),
        sa.Column("detailed_guidelines", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("code"),
        sa.ForeignKeyConstraint(["parent_code"], ["theme_hierarchy.code"]),
    )

    op.create_table(
        "comment_themes",
        sa.Column("comment_id", sa.String(), nullable=False),
        sa.Column("theme_code", sa.String(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("comment_id", "theme_code"),
        sa.ForeignKeyConstraint(["comment_id"], ["comments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["theme_code"],
            ["theme_hierarchy.code"],
            ondelete="CASCADE",
        ),
        sa.CheckConstraint("score IN (1, 2, 3)", name="ck_comment_themes_score"),
    )
    op.create_index("idx_comment_themes_theme", "comment_themes", ["theme_code"])

    op.create_table(
        "theme_scoring_status",
        sa.Column("comment_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("comment_id"),
        sa.ForeignKeyConstraint(["comment_id"], ["comments.id"], ondelete="CASCADE"),
        sa.CheckConstraint(_STATUS_CHECK, name="ck_theme_scoring_status_status"),
    )
    op.create_index(
        "ix_theme_scoring_status_status",
        "theme_scoring_status",
        ["status"],
    )

    op.create_table(
        "theme_summaries",
        sa.Column("theme_code", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("comment_count", sa.Integer(), nullable=False),
        sa.Column("word_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("theme_code"),
        sa.ForeignKeyConstraint(
            ["theme_code"],
            ["theme_hierarchy.code"],
            ondelete="CASCADE",
        ),
    )


def downgrade() -> None:
    op.drop_table("theme_summaries")
    op.drop_table("theme_scoring_status")
    op.drop_table("comment_themes")
    op.drop_table("theme_hierarchy")
    op.drop_table("condensed_comments")
    op.drop_table("comments")
