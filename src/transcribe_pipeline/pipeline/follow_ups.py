"""Chain analysis jobs after a completed transcription."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from transcribe_pipeline.pipeline.admission import AdmissionController
from transcribe_pipeline.pipeline.errors import QuotaStoreError
from transcribe_pipeline.pipeline.models import JobKind, JobView, PayloadDescriptor, SubmitAccepted
from transcribe_pipeline.pipeline.repository import JobRepository

logger = logging.getLogger(__name__)


class FollowUpDispatcher:
    """Submit a parent's follow-up kinds through admission.

    A parent stays flagged as pending until every kind is either enqueued or
    rejected. Kinds that fail on a store error are left for `replay`, and kinds
    that already have a child job are skipped, so replays never duplicate work.
    """

    def __init__(self, *, repository: JobRepository, admission: AdmissionController) -> None:
        self.repository = repository
        self.admission = admission

    def dispatch(self, job: JobView, *, result_text: str) -> bool:
        """Enqueue the missing follow-ups of `job`; True once all are settled."""

        if not job.follow_ups:
            return True
        existing = self.repository.child_kinds(parent_job_id=job.job_id)
        payload = PayloadDescriptor(
            uri=f"job://{job.job_id}/result",
            size_bytes=len(result_text.encode("utf-8")),
            format="json",
        )
        deferred: list[JobKind] = []
        for kind in job.follow_ups:
            if kind in existing:
                continue
            try:
                outcome = self.admission.submit(
                    job.owner_id,
                    kind,
                    payload,
                    parent_job_id=job.job_id,
                    apply_rate_limit=False,
                )
            except (QuotaStoreError, SQLAlchemyError) as error:
                logger.warning(
                    "Follow-up %s of job %s deferred: %s",
                    kind.value,
                    job.job_id,
                    error,
                )
                deferred.append(kind)
                self._record(
                    job.job_id,
                    "follow_up_deferred",
                    {"kind": kind.value, "error": f"{type(error).__name__}: {error}"},
                )
                continue
            if isinstance(outcome, SubmitAccepted):
                self._record(
                    job.job_id,
                    "follow_up_enqueued",
                    {"kind": kind.value, "child_job_id": outcome.job_id},
                )
            else:
                self._record(
                    job.job_id,
                    "follow_up_rejected",
                    {
                        "kind": kind.value,
                        "reason": outcome.reason.value,
                        "message": outcome.message,
                    },
                )
        if deferred:
            return False
        self.repository.resolve_follow_ups(job_id=job.job_id)
        return True

    def replay(self, *, limit: int = 100) -> int:
        """Retry follow-ups of completed parents that are still pending."""

        settled = 0
        for job in self.repository.list_pending_follow_ups(limit=limit):
            text = (job.result or {}).get("text", "")
            if self.dispatch(job, result_text=str(text)):
                settled += 1
                logger.info("Follow-ups of job %s settled on replay", job.job_id)
        return settled

    def _record(self, job_id: str, event_type: str, details: dict[str, object]) -> None:
        try:
            self.repository.add_job_event(job_id=job_id, event_type=event_type, details=details)
        except SQLAlchemyError:
            logger.warning("Could not record %s event for job %s", event_type, job_id)
