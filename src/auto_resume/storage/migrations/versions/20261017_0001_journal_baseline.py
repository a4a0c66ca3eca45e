"""Journal baseline: task events and usage-limit occurrences."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_task_id", "task_events", ["task_id"])
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"])
    op.create_index("idx_task_events_task_time", "task_events", ["task_id", "created_at"])

    op.create_table(
        "usage_limit_occurrences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("context_id", sa.String(), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("matched_pattern", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("computed_wait_seconds", sa.Integer(), nullable=False),
        sa.Column("resume_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_usage_limit_occurrences_context_id",
        "usage_limit_occurrences",
        ["context_id"],
    )
    op.create_index(
        "idx_usage_limit_occurrences_context_time",
        "usage_limit_occurrences",
        ["context_id", "detected_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_usage_limit_occurrences_context_time", "usage_limit_occurrences")
    op.drop_index("ix_usage_limit_occurrences_context_id", "usage_limit_occurrences")
    op.drop_table("usage_limit_occurrences")
    op.drop_index("idx_task_events_task_time", "task_events")
    op.drop_index("ix_task_events_event_type", "task_events")
    op.drop_index("ix_task_events_task_id", "task_events")
    op.drop_table("task_events")
