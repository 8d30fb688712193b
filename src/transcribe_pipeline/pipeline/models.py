"""Domain models for the job pipeline: jobs, quota, admission and progress."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobKind(str, Enum):
    """Fixed set of job kinds the pipeline knows how to execute."""

    TRANSCRIBE = "transcribe"
    SUMMARIZE = "summarize"
    TRANSLATE = "translate"
    INDEX = "index"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


class QuotaUnit(str, Enum):
    """Unit a job kind is metered in."""

    HOURS = "hours"
    JOBS = "jobs"


KIND_UNITS: dict[JobKind, QuotaUnit] = {
    JobKind.TRANSCRIBE: QuotaUnit.HOURS,
    JobKind.SUMMARIZE: QuotaUnit.JOBS,
    JobKind.TRANSLATE: QuotaUnit.JOBS,
    JobKind.INDEX: QuotaUnit.JOBS,
}


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    PROVIDER_TIMEOUT = "provider_timeout"
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_RATE_LIMITED = "provider_rate_limited"
    PROVIDER_NON_RETRYABLE = "provider_non_retryable"
    CONTENT_INVALID = "content_invalid"
    STALLED = "stalled"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.PROVIDER_TIMEOUT,
        FailureClass.PROVIDER_TRANSIENT,
        FailureClass.PROVIDER_RATE_LIMITED,
    },
)


class RejectionReason(str, Enum):
    """Admission-time rejection reasons; a rejected submission never creates a job."""

    QUOTA_EXCEEDED = "quota_exceeded"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    UNSUPPORTED_FORMAT = "unsupported_format"
    RATE_LIMITED = "rate_limited"


class DeadLetterCode(str, Enum):
    """Stable error codes surfaced for dead-lettered jobs."""

    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    PROVIDER_FATAL = "provider_fatal"
    STALLED_TOO_MANY_TIMES = "stalled_too_many_times"


@dataclass(slots=True)
class PayloadDescriptor:
    """Reference to an input artifact; the artifact itself lives in external storage."""

    uri: str
    size_bytes: int
    format: str
    duration_seconds: float | None = None


@dataclass(slots=True)
class TierLimits:
    """Per-tier limits; `None` unit limits mean unlimited."""

    name: str
    max_hours_per_period: float | None
    max_jobs_per_period: float | None
    max_payload_bytes: int
    max_payload_seconds: float
    priority: int
    max_concurrent_jobs: int = 1

    def limit_for(self, unit: QuotaUnit) -> float | None:
        if unit is QuotaUnit.HOURS:
            return self.max_hours_per_period
        return self.max_jobs_per_period


@dataclass(slots=True)
class JobCreate:
    """Input payload for inserting an admitted job."""

    owner_id: str
    kind: JobKind
    tier: str
    priority: int
    payload: PayloadDescriptor
    estimated_units: float
    max_attempts: int = 3
    max_concurrent: int = 1
    job_id: str | None = None
    parent_job_id: str | None = None
    follow_ups: tuple[JobKind, ...] = ()
    available_at: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job row for worker and status logic."""

    job_id: str
    owner_id: str
    kind: JobKind
    tier: str
    priority: int
    status: JobStatus
    attempts: int
    max_attempts: int
    stalled_count: int
    max_concurrent: int
    payload: PayloadDescriptor
    estimated_units: float
    actual_units: float | None
    parent_job_id: str | None
    follow_ups: tuple[JobKind, ...]
    available_at: datetime
    lease_token: str | None
    lease_expires_at: datetime | None
    heartbeat_at: datetime | None
    worker_id: str | None
    progress_percent: int | None
    last_provider: str | None
    failure_class: FailureClass | None
    error_code: str | None
    error_summary: str | None
    result: dict[str, Any] | None
    version: int
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime
    follow_ups_pending: bool = False


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class JobStatusView:
    """Durable status answer for clients that missed progress events."""

    job_id: str
    kind: JobKind
    status: JobStatus
    attempts: int
    progress_percent: int | None = None
    error_code: str | None = None
    error: str | None = None
    result: dict[str, Any] | None = None


@dataclass(slots=True)
class StalledJobOutcome:
    """One job reclaimed by a stall sweep."""

    job_id: str
    owner_id: str
    stalled_count: int
    status: JobStatus


@dataclass(slots=True)
class QueueHealth:
    """Queue depth per status, with backoff-delayed jobs split out of `queued`."""

    counts: dict[JobStatus, int]
    delayed: int
    healthy: bool

    @property
    def waiting(self) -> int:
        return self.counts.get(JobStatus.QUEUED, 0) - self.delayed


@dataclass(slots=True)
class QuotaUsage:
    """Consumed vs allowed units for one owner, unit and period."""

    owner_id: str
    period: str
    unit: QuotaUnit
    consumed_units: float
    limit_units: float | None

    @property
    def remaining_units(self) -> float | None:
        if self.limit_units is None:
            return None
        return max(0.0, self.limit_units - self.consumed_units)


@dataclass(slots=True)
class SubmitAccepted:
    """Admission accepted the submission and inserted a queued job."""

    job_id: str
    priority: int
    estimated_units: float


@dataclass(slots=True)
class SubmitRejected:
    """Admission refused the submission; nothing was enqueued."""

    reason: RejectionReason
    message: str


SubmitResult = SubmitAccepted | SubmitRejected


class ProgressEventType(str, Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class ProgressEvent:
    """Transient progress notification; the job row remains the system of record."""

    job_id: str
    event_type: ProgressEventType
    status: JobStatus
    timestamp: datetime
    progress_percent: int | None = None
    message: str | None = None
    error_code: str | None = None
    error: str | None = None

    def to_message(self) -> dict[str, object]:
        """Serialize to the per-client stream message shape."""

        payload: dict[str, object] = {
            "jobId": self.job_id,
            "event": self.event_type.value,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.progress_percent is not None:
            payload["progressPercent"] = self.progress_percent
        if self.message:
            payload["message"] = self.message
        if self.error_code is not None:
            payload["errorCode"] = self.error_code
        if self.error is not None:
            payload["error"] = self.error
        return payload
