"""Job lifecycle transition rules."""

from __future__ import annotations

from transcribe_pipeline.pipeline.errors import InvalidTransitionError
from transcribe_pipeline.pipeline.models import JobStatus

TERMINAL_STATES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.DEAD})

_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.ACTIVE, JobStatus.DEAD},
    JobStatus.ACTIVE: {JobStatus.COMPLETED, JobStatus.QUEUED, JobStatus.FAILED, JobStatus.DEAD},
    JobStatus.FAILED: {JobStatus.QUEUED, JobStatus.DEAD},
    JobStatus.COMPLETED: set(),
    JobStatus.DEAD: set(),
}


def allowed_next_statuses(status: JobStatus) -> list[JobStatus]:
    """Return deterministically ordered allowed successors for a status."""
    return sorted(_ALLOWED_TRANSITIONS.get(status, set()), key=lambda s: s.value)


def ensure_transition(old_status: JobStatus, new_status: JobStatus) -> None:
    """Validate transition according to lifecycle rules."""
    if old_status in TERMINAL_STATES:
        raise InvalidTransitionError(
            f"Terminal job status {old_status.value!r} cannot change to {new_status.value!r}",
        )
    if new_status not in _ALLOWED_TRANSITIONS.get(old_status, set()):
        allowed = ", ".join(status.value for status in allowed_next_statuses(old_status))
        raise InvalidTransitionError(
            f"Invalid job status transition {old_status.value!r} -> {new_status.value!r} "
            f"(allowed: {allowed})",
        )
