"""Add content-addressed LLM response cache."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "llm_cache",
        sa.Column("prompt_hash", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("task_level", sa.Integer(), server_default="0", nullable=False),
        sa.Column("task_params", sa.Text(), nullable=True),
        sa.Column("result", sa.Text(), nullable=False),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("prompt_hash"),
    )
    op.create_index(
        "idx_llm_cache_task_type_level",
        "llm_cache",
        ["task_type", "task_level"],
    )
    op.create_index("idx_llm_cache_created_at", "llm_cache", ["created_at"])


def downgrade() -> None:
    op.drop_index("idx_llm_cache_created_at", table_name="llm_cache")
    op.drop_index("idx_llm_cache_task_type_level", table_name="llm_cache")
    op.drop_table("llm_cache")
