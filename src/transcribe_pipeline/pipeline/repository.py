"""Persistent job store and dispatch queue."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import ColumnElement, func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from transcribe_pipeline.pipeline.job_fsm import ensure_transition
from transcribe_pipeline.pipeline.models import (
    DeadLetterCode,
    FailureClass,
    JobCreate,
    JobDetails,
    JobEventView,
    JobKind,
    JobStatus,
    JobView,
    PayloadDescriptor,
    QueueHealth,
    StalledJobOutcome,
)
from transcribe_pipeline.storage.alembic_runner import upgrade_head
from transcribe_pipeline.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from transcribe_pipeline.storage.sqlmodel_models import PipelineJob, PipelineJobEvent, QuotaCommit


class JobRepository:
    """Job store facade backed by SQLModel + SQLite.

    Every status change is a conditional UPDATE guarded by the expected status and
    either the lease token or the row version, so concurrent workers and the stall
    monitor can never both win the same transition.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Insert a queued job."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = PipelineJob(
                job_id=job_id,
                owner_id=payload.owner_id,
                kind=payload.kind.value,
                tier=payload.tier,
                priority=payload.priority,
                status=JobStatus.QUEUED.value,
                attempts=0,
                max_attempts=payload.max_attempts,
                stalled_count=0,
                max_concurrent=payload.max_concurrent,
                payload_uri=payload.payload.uri,
                payload_size_bytes=payload.payload.size_bytes,
                payload_duration_seconds=payload.payload.duration_seconds,
                payload_format=payload.payload.format,
                estimated_units=payload.estimated_units,
                parent_job_id=payload.parent_job_id,
                follow_up_kinds=",".join(kind.value for kind in payload.follow_ups) or None,
                available_at=to_db_datetime(payload.available_at or now),
                version=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "owner_id": payload.owner_id,
                    "kind": payload.kind.value,
                    "tier": payload.tier,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                    "estimated_units": payload.estimated_units,
                    "parent_job_id": payload.parent_job_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next_ready_job(
        self,
        *,
        worker_id: str,
        lock_duration_seconds: float,
    ) -> JobView | None:
        """Atomically claim the highest-priority eligible job under a fresh lease."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(PipelineJob)
                    .where(
                        PipelineJob.status == JobStatus.QUEUED.value,
                        PipelineJob.available_at <= to_db_datetime(now),
                        col(PipelineJob.attempts) < col(PipelineJob.max_attempts),
                        _owner_has_capacity(),
                    )
                    .order_by(
                        col(PipelineJob.priority).desc(),
                        col(PipelineJob.available_at).asc(),
                        col(PipelineJob.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                ensure_transition(JobStatus(candidate.status), JobStatus.ACTIVE)
                lease_token = uuid4().hex
                result = session.exec(
                    sa_update(PipelineJob)
                    .where(
                        col(PipelineJob.job_id) == candidate.job_id,
                        col(PipelineJob.status) == JobStatus.QUEUED.value,
                        col(PipelineJob.version) == candidate.version,
                        col(PipelineJob.attempts) < col(PipelineJob.max_attempts),
                        _owner_has_capacity(),
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempts=PipelineJob.attempts + 1,
                        lease_token=lease_token,
                        lease_expires_at=to_db_datetime(
                            now + timedelta(seconds=lock_duration_seconds),
                        ),
                        heartbeat_at=to_db_datetime(now),
                        started_at=to_db_datetime(now),
                        finished_at=None,
                        worker_id=worker_id,
                        progress_percent=0,
                        version=PipelineJob.version + 1,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(PipelineJob).where(PipelineJob.job_id == candidate.job_id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.ACTIVE,
                    details={"worker_id": worker_id, "attempt": claimed.attempts},
                )
                session.commit()
                session.refresh(claimed)
                return _to_job_view(claimed)

    def renew_lease(
        self,
        *,
        job_id: str,
        lease_token: str,
        lock_duration_seconds: float,
    ) -> bool:
        """Extend the lease of an active job; False once the lease has been lost."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PipelineJob)
                .where(*_lease_guard(job_id=job_id, lease_token=lease_token))
                .values(
                    lease_expires_at=to_db_datetime(
                        now + timedelta(seconds=lock_duration_seconds),
                    ),
                    heartbeat_at=to_db_datetime(now),
                    version=PipelineJob.version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_progress(self, *, job_id: str, lease_token: str, progress_percent: int) -> bool:
        """Store the latest progress percentage of an active job."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PipelineJob)
                .where(*_lease_guard(job_id=job_id, lease_token=lease_token))
                .values(
                    progress_percent=max(0, min(100, progress_percent)),
                    version=PipelineJob.version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_attempt_route(
        self,
        *,
        job_id: str,
        lease_token: str,
        provider: str,
        details: dict[str, object],
    ) -> bool:
        """Remember which provider this attempt uses and why."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PipelineJob)
                .where(*_lease_guard(job_id=job_id, lease_token=lease_token))
                .values(
                    last_provider=provider,
                    version=PipelineJob.version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="strategy_selected",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.ACTIVE,
                details={"provider": provider, **details},
            )
            session.commit()
            return True

    def complete_job(
        self,
        *,
        job_id: str,
        lease_token: str,
        result: dict[str, Any],
        actual_units: float,
    ) -> bool:
        """Mark an active job as completed; False if the lease was lost meanwhile."""

        ensure_transition(JobStatus.ACTIVE, JobStatus.COMPLETED)
        now = utc_now()
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(PipelineJob)
                .where(*_lease_guard(job_id=job_id, lease_token=lease_token))
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_json=json.dumps(result, ensure_ascii=False, sort_keys=True),
                    follow_ups_pending=col(PipelineJob.follow_up_kinds).is_not(None),
                    actual_units=actual_units,
                    progress_percent=100,
                    failure_class=None,
                    error_code=None,
                    error_summary=None,
                    finished_at=to_db_datetime(now),
                    **_cleared_lease(),
                    version=PipelineJob.version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.COMPLETED,
                details={"actual_units": actual_units},
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        lease_token: str,
        available_at: datetime,
        failure_class: FailureClass,
        error_summary: str,
        provider: str | None,
    ) -> bool:
        """Requeue an active job after a retryable failure (active -> failed -> queued)."""

        ensure_transition(JobStatus.ACTIVE, JobStatus.FAILED)
        ensure_transition(JobStatus.FAILED, JobStatus.QUEUED)
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PipelineJob)
                .where(*_lease_guard(job_id=job_id, lease_token=lease_token))
                .values(
                    status=JobStatus.QUEUED.value,
                    available_at=to_db_datetime(available_at),
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    last_provider=provider,
                    progress_percent=None,
                    **_cleared_lease(),
                    version=PipelineJob.version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="attempt_failed",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.FAILED,
                details={
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    "provider": provider,
                },
            )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.FAILED,
                status_to=JobStatus.QUEUED,
                details={"available_at": to_utc_aware_datetime(available_at).isoformat()},
            )
            session.commit()
            return True

    def dead_letter(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        lease_token: str,
        error_code: DeadLetterCode,
        failure_class: FailureClass,
        error_summary: str,
        provider: str | None,
    ) -> bool:
        """Move an active job to the dead-letter state."""

        ensure_transition(JobStatus.ACTIVE, JobStatus.DEAD)
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PipelineJob)
                .where(*_lease_guard(job_id=job_id, lease_token=lease_token))
                .values(
                    status=JobStatus.DEAD.value,
                    error_code=error_code.value,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    last_provider=provider,
                    finished_at=to_db_datetime(now),
                    **_cleared_lease(),
                    version=PipelineJob.version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="dead_lettered",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.DEAD,
                details={
                    "error_code": error_code.value,
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                },
            )
            session.commit()
            return True

    def recover_stalled_jobs(
        self,
        *,
        stall_ceiling: int,
        limit: int = 100,
    ) -> list[StalledJobOutcome]:
        """Requeue or dead-letter active jobs whose lease expired without a heartbeat.

        A requeue hands the stalled attempt back so that infrastructure failures do
        not eat into the retry budget; stalls are bounded by their own counter.
        """

        now = utc_now()
        outcomes: list[StalledJobOutcome] = []
        with Session(self.engine) as session:
            stalled = session.exec(
                select(PipelineJob)
                .where(
                    PipelineJob.status == JobStatus.ACTIVE.value,
                    col(PipelineJob.lease_expires_at).is_not(None),
                    col(PipelineJob.lease_expires_at) < to_db_datetime(now),
                )
                .order_by(col(PipelineJob.lease_expires_at).asc())
                .limit(limit),
            ).all()
            candidates = [
                (row.job_id, row.owner_id, row.version, row.stalled_count, row.attempts)
                for row in stalled
            ]

        for job_id, owner_id, version, stalled_count, attempts in candidates:
            new_count = stalled_count + 1
            target = JobStatus.DEAD if new_count >= stall_ceiling else JobStatus.QUEUED
            ensure_transition(JobStatus.ACTIVE, target)
            values: dict[str, Any] = {
                "status": target.value,
                "stalled_count": new_count,
                "failure_class": FailureClass.STALLED.value,
                "progress_percent": None,
                **_cleared_lease(),
                "version": PipelineJob.version + 1,
                "updated_at": to_db_datetime(now),
            }
            if target is JobStatus.DEAD:
                values.update(
                    error_code=DeadLetterCode.STALLED_TOO_MANY_TIMES.value,
                    error_summary=f"Lease expired without heartbeat {new_count} times.",
                    finished_at=to_db_datetime(now),
                )
            else:
                values.update(
                    attempts=max(attempts - 1, 0),
                    available_at=to_db_datetime(now),
                    error_summary="Lease expired without heartbeat; job requeued.",
                )
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(PipelineJob)
                    .where(
                        col(PipelineJob.job_id) == job_id,
                        col(PipelineJob.status) == JobStatus.ACTIVE.value,
                        col(PipelineJob.version) == version,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=(
                        "stalled_dead_lettered" if target is JobStatus.DEAD else "stalled_requeued"
                    ),
                    status_from=JobStatus.ACTIVE,
                    status_to=target,
                    details={"stalled_count": new_count, "stall_ceiling": stall_ceiling},
                )
                session.commit()
            outcomes.append(
                StalledJobOutcome(
                    job_id=job_id,
                    owner_id=owner_id,
                    stalled_count=new_count,
                    status=target,
                ),
            )
        return outcomes

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(PipelineJob).where(PipelineJob.job_id == job_id),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(
                select(PipelineJob).where(PipelineJob.job_id == job_id),
            ).one_or_none()
            if job is None:
                return None

            event_rows = session.exec(
                select(PipelineJobEvent)
                .where(PipelineJobEvent.job_id == job_id)
                .order_by(col(PipelineJobEvent.created_at).asc(), col(PipelineJobEvent.id).asc()),
            ).all()

            events: list[JobEventView] = []
            for row in event_rows:
                details = {}
                if row.details_json:
                    parsed = json.loads(row.details_json)
                    if isinstance(parsed, dict):
                        details = parsed
                events.append(
                    JobEventView(
                        event_id=row.id or 0,
                        job_id=row.job_id,
                        event_type=row.event_type,
                        status_from=(
                            JobStatus(row.status_from) if row.status_from is not None else None
                        ),
                        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                        created_at=to_utc_aware_datetime(row.created_at),
                        details=details,
                    ),
                )
            return JobDetails(job=_to_job_view(job), events=events)

    def list_jobs(
        self,
        *,
        owner_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by owner and status."""

        with Session(self.engine) as session:
            statement = select(PipelineJob).order_by(col(PipelineJob.created_at).desc()).limit(limit)
            if owner_id is not None:
                statement = statement.where(PipelineJob.owner_id == owner_id)
            if status is not None:
                statement = statement.where(PipelineJob.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def list_completed_without_commit(self, *, limit: int = 100) -> list[JobView]:
        """Completed jobs whose quota usage has not been committed yet."""

        with Session(self.engine) as session:
            committed = sa_select(QuotaCommit.job_id)
            rows = session.exec(
                select(PipelineJob)
                .where(
                    PipelineJob.status == JobStatus.COMPLETED.value,
                    col(PipelineJob.job_id).not_in(committed),
                )
                .order_by(col(PipelineJob.finished_at).asc())
                .limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def count_by_status(self) -> dict[JobStatus, int]:
        """Queue statistics grouped by status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(PipelineJob.status, func.count()).group_by(PipelineJob.status),
            ).all()
        counts = dict.fromkeys(JobStatus, 0)
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return counts

    def queue_health(self, *, dead_threshold: int = 100) -> QueueHealth:
        """Status counts plus backoff-delayed jobs; unhealthy once dead jobs pile up."""

        counts = self.count_by_status()
        with Session(self.engine) as session:
            delayed = session.exec(
                select(func.count())
                .select_from(PipelineJob)
                .where(
                    PipelineJob.status == JobStatus.QUEUED.value,
                    PipelineJob.available_at > to_db_datetime(utc_now()),
                ),
            ).one()
        return QueueHealth(
            counts=counts,
            delayed=int(delayed),
            healthy=counts[JobStatus.DEAD] < dead_threshold,
        )

    def list_pending_follow_ups(self, *, limit: int = 100) -> list[JobView]:
        """Completed jobs whose follow-up jobs have not all been settled."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(PipelineJob)
                .where(
                    PipelineJob.status == JobStatus.COMPLETED.value,
                    col(PipelineJob.follow_ups_pending).is_(True),
                )
                .order_by(col(PipelineJob.finished_at).asc())
                .limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def child_kinds(self, *, parent_job_id: str) -> set[JobKind]:
        """Kinds of the jobs already enqueued as follow-ups of a parent."""

        with Session(self.engine) as session:
            kinds = session.exec(
                select(PipelineJob.kind).where(PipelineJob.parent_job_id == parent_job_id),
            ).all()
        return {JobKind(kind) for kind in kinds}

    def resolve_follow_ups(self, *, job_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(PipelineJob)
                .where(col(PipelineJob.job_id) == job_id)
                .values(follow_ups_pending=False),
            )
            session.commit()

    def add_job_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object],
        status_from: JobStatus | None = None,
        status_to: JobStatus | None = None,
    ) -> None:
        """Append an audit event without touching job state."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
            session.commit()

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            PipelineJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _owner_has_capacity() -> ColumnElement[bool]:
    active = aliased(PipelineJob)
    active_count = (
        sa_select(func.count())
        .select_from(active)
        .where(
            active.owner_id == PipelineJob.owner_id,
            active.status == JobStatus.ACTIVE.value,
        )
        .correlate(PipelineJob)
        .scalar_subquery()
    )
    return active_count < PipelineJob.max_concurrent


def _lease_guard(*, job_id: str, lease_token: str) -> Iterable[ColumnElement[bool]]:
    return (
        col(PipelineJob.job_id) == job_id,
        col(PipelineJob.status) == JobStatus.ACTIVE.value,
        col(PipelineJob.lease_token) == lease_token,
    )


def _cleared_lease() -> dict[str, None]:
    return {
        "lease_token": None,
        "lease_expires_at": None,
        "heartbeat_at": None,
        "worker_id": None,
    }


def _parse_follow_ups(raw: str | None) -> tuple[JobKind, ...]:
    if not raw:
        return ()
    return tuple(JobKind(part) for part in raw.split(",") if part)


def _to_job_view(row: PipelineJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        owner_id=row.owner_id,
        kind=JobKind(row.kind),
        tier=row.tier,
        priority=row.priority,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        stalled_count=row.stalled_count,
        max_concurrent=row.max_concurrent,
        payload=PayloadDescriptor(
            uri=row.payload_uri,
            size_bytes=row.payload_size_bytes,
            format=row.payload_format,
            duration_seconds=row.payload_duration_seconds,
        ),
        estimated_units=row.estimated_units,
        actual_units=row.actual_units,
        parent_job_id=row.parent_job_id,
        follow_ups=_parse_follow_ups(row.follow_up_kinds),
        available_at=to_utc_aware_datetime(row.available_at),
        lease_token=row.lease_token,
        lease_expires_at=optional_utc(row.lease_expires_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        worker_id=row.worker_id,
        progress_percent=row.progress_percent,
        last_provider=row.last_provider,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_code=row.error_code,
        error_summary=row.error_summary,
        result=json.loads(row.result_json) if row.result_json else None,
        version=row.version,
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        follow_ups_pending=bool(row.follow_ups_pending),
    )
