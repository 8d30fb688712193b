"""Initial job pipeline schema: jobs, job events, quota ledger and commits."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pipeline_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("stalled_count", sa.Integer(), nullable=False),
        sa.Column("max_concurrent", sa.Integer(), nullable=False),
        sa.Column("payload_uri", sa.String(), nullable=False),
        sa.Column("payload_size_bytes", sa.Integer(), nullable=False),
        sa.Column("payload_duration_seconds", sa.Float(), nullable=True),
        sa.Column("payload_format", sa.String(), nullable=False),
        sa.Column("estimated_units", sa.Float(), nullable=False),
        sa.Column("actual_units", sa.Float(), nullable=True),
        sa.Column("parent_job_id", sa.String(), nullable=True),
        sa.Column("follow_up_kinds", sa.String(), nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_token", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("progress_percent", sa.Integer(), nullable=True),
        sa.Column("last_provider", sa.String(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_pipeline_jobs_owner_id", "pipeline_jobs", ["owner_id"], unique=False)
    op.create_index("ix_pipeline_jobs_kind", "pipeline_jobs", ["kind"], unique=False)
    op.create_index(
        "ix_pipeline_jobs_parent_job_id",
        "pipeline_jobs",
        ["parent_job_id"],
        unique=False,
    )
    op.create_index("ix_pipeline_jobs_worker_id", "pipeline_jobs", ["worker_id"], unique=False)
    op.create_index(
        "idx_pipeline_jobs_dispatch",
        "pipeline_jobs",
        ["status", "priority", "available_at", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_pipeline_jobs_owner_status",
        "pipeline_jobs",
        ["owner_id", "status"],
        unique=False,
    )
    op.create_index(
        "idx_pipeline_jobs_lease",
        "pipeline_jobs",
        ["status", "lease_expires_at"],
        unique=False,
    )

    op.create_table(
        "pipeline_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_pipeline_job_events_job_id",
        "pipeline_job_events",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "idx_pipeline_job_events_job_time",
        "pipeline_job_events",
        ["job_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "quota_ledger",
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("unit", sa.String(), nullable=False),
        sa.Column("consumed_units", sa.Float(), nullable=False),
        sa.Column("limit_units", sa.Float(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id", "period", "unit"),
    )

    op.create_table(
        "quota_commits",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("unit", sa.String(), nullable=False),
        sa.Column("units", sa.Float(), nullable=False),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_quota_commits_owner_id", "quota_commits", ["owner_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_quota_commits_owner_id", table_name="quota_commits")
    op.drop_table("quota_commits")
    op.drop_table("quota_ledger")
    op.drop_index("idx_pipeline_job_events_job_time", table_name="pipeline_job_events")
    op.drop_index("ix_pipeline_job_events_job_id", table_name="pipeline_job_events")
    op.drop_table("pipeline_job_events")
    op.drop_index("idx_pipeline_jobs_lease", table_name="pipeline_jobs")
    op.drop_index("idx_pipeline_jobs_owner_status", table_name="pipeline_jobs")
    op.drop_index("idx_pipeline_jobs_dispatch", table_name="pipeline_jobs")
    op.drop_index("ix_pipeline_jobs_worker_id", table_name="pipeline_jobs")
    op.drop_index("ix_pipeline_jobs_parent_job_id", table_name="pipeline_jobs")
    op.drop_index("ix_pipeline_jobs_kind", table_name="pipeline_jobs")
    op.drop_index("ix_pipeline_jobs_owner_id", table_name="pipeline_jobs")
    op.drop_table("pipeline_jobs")
