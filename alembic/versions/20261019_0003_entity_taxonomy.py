"""Add entity taxonomy and per-comment entity annotations."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0003"
down_revision = "20261019_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "entity_taxonomy",
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("definition", sa.Text(), nullable=True),
        sa.Column("terms", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("category", "label"),
    )

    op.create_table(
        "comment_entities",
        sa.Column("comment_id", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("entity_label", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("comment_id", "category", "entity_label"),
        sa.ForeignKeyConstraint(["comment_id"], ["comments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["category", "entity_label"],
            ["entity_taxonomy.category", "entity_taxonomy.label"],
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "idx_comment_entities_entity",
        "comment_entities",
        ["category", "entity_label"],
    )


def downgrade() -> None:
    op.drop_index("idx_comment_entities_entity", table_name="comment_entities")
    op.drop_table("comment_entities")
    op.drop_table("entity_taxonomy")
