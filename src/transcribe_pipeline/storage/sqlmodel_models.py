"""SQLModel ORM tables for the job pipeline."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class PipelineJob(SQLModel, table=True):
    __tablename__ = "pipeline_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_pipeline_jobs_dispatch", "status", "priority", "available_at", "created_at"),
        Index("idx_pipeline_jobs_owner_status", "owner_id", "status"),
        Index("idx_pipeline_jobs_lease", "status", "lease_expires_at"),
        Index("idx_pipeline_jobs_follow_ups_pending", "follow_ups_pending", "finished_at"),
    )

    job_id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    kind: str = Field(index=True)
    tier: str
    priority: int = Field(default=0)
    status: str
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    stalled_count: int = Field(default=0)
    max_concurrent: int = Field(default=1)
    payload_uri: str
    payload_size_bytes: int = Field(default=0)
    payload_duration_seconds: float | None = None
    payload_format: str
    estimated_units: float = Field(default=0.0)
    actual_units: float | None = None
    parent_job_id: str | None = Field(default=None, index=True)
    follow_up_kinds: str | None = None
    follow_ups_pending: bool = Field(default=False)
    available_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_token: str | None = None
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    worker_id: str | None = Field(default=None, index=True)
    progress_percent: int | None = None
    last_provider: str | None = None
    failure_class: str | None = None
    error_code: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    version: int = Field(default=0)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PipelineJobEvent(SQLModel, table=True):
    __tablename__ = "pipeline_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_pipeline_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QuotaLedgerEntry(SQLModel, table=True):
    __tablename__ = "quota_ledger"  # type: ignore[bad-override]
    owner_id: str = Field(primary_key=True)
    period: str = Field(primary_key=True)
    unit: str = Field(primary_key=True)
    consumed_units: float = Field(default=0.0)
    limit_units: float | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QuotaCommit(SQLModel, table=True):
    __tablename__ = "quota_commits"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    period: str
    unit: str
    units: float
    committed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
