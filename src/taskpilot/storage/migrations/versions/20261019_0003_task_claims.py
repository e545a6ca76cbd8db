"""Add task claim marker, heartbeat, optimistic version, and pause flag."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0003"
down_revision = "20261019_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("tasks", sa.Column("claimed_by", sa.String(), nullable=True))
    op.add_column("tasks", sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column(
        "tasks",
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column(
        "tasks",
        sa.Column(
            "pause_requested",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
    )
    op.create_index("ix_tasks_claimed_by", "tasks", ["claimed_by"])


def downgrade() -> None:
    op.drop_index("ix_tasks_claimed_by", table_name="tasks")
    with op.batch_alter_table("tasks") as batch_op:
        batch_op.drop_column("pause_requested")
        batch_op.drop_column("version")
        batch_op.drop_column("heartbeat_at")
        batch_op.drop_column("claimed_by")
