"""Track completed jobs whose follow-up jobs are not all enqueued yet."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "pipeline_jobs",
        sa.Column(
            "follow_ups_pending",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
    )
    op.execute(
        sa.text(
            """
            UPDATE pipeline_jobs
            SET follow_ups_pending = 1
            WHERE status = 'completed'
              AND follow_up_kinds IS NOT NULL
              AND NOT EXISTS (
                SELECT 1 FROM pipeline_jobs AS child
                WHERE child.parent_job_id = pipeline_jobs.job_id
              )
            """,
        ),
    )
    op.create_index(
        "idx_pipeline_jobs_follow_ups_pending",
        "pipeline_jobs",
        ["follow_ups_pending", "finished_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_pipeline_jobs_follow_ups_pending", table_name="pipeline_jobs")
    op.drop_column("pipeline_jobs", "follow_ups_pending")
