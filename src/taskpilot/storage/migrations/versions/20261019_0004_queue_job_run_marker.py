"""Record the task run a queue job was enqueued for."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0004"
down_revision = "20261019_0003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("queue_jobs", sa.Column("run_no", sa.Integer(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("queue_jobs") as batch_op:
        batch_op.drop_column("run_no")
