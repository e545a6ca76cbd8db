"""Add durable priority job queue table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queue_jobs_job_id", "queue_jobs", ["job_id"], unique=True)
    op.create_index("ix_queue_jobs_task_id", "queue_jobs", ["task_id"])
    op.create_index("ix_queue_jobs_user_id", "queue_jobs", ["user_id"])
    op.create_index("ix_queue_jobs_status", "queue_jobs", ["status"])
    op.create_index("idx_queue_jobs_ready", "queue_jobs", ["status", "priority", "id"])


def downgrade() -> None:
    op.drop_index("idx_queue_jobs_ready", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_status", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_user_id", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_task_id", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_job_id", table_name="queue_jobs")
    op.drop_table("queue_jobs")
