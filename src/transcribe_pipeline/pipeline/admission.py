"""Admission control: gate submissions before any job row exists."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from transcribe_pipeline.pipeline.formats import is_supported_format
from transcribe_pipeline.pipeline.models import (
    JobCreate,
    JobKind,
    PayloadDescriptor,
    RejectionReason,
    SubmitAccepted,
    SubmitRejected,
    SubmitResult,
)
from transcribe_pipeline.pipeline.policy import RetryPolicy
from transcribe_pipeline.pipeline.quota import QuotaLedger, TierSource, estimate_duration_seconds
from transcribe_pipeline.pipeline.rate_limit import SlidingWindowRateLimiter
from transcribe_pipeline.pipeline.repository import JobRepository

logger = logging.getLogger(__name__)

_SECONDS_PER_HOUR = 3600.0


def estimate_units(kind: JobKind, payload: PayloadDescriptor) -> float:
    """Quota units a job is expected to consume: media hours or one job."""

    if kind is JobKind.TRANSCRIBE:
        return effective_duration_seconds(payload) / _SECONDS_PER_HOUR
    return 1.0


def effective_duration_seconds(payload: PayloadDescriptor) -> float:
    if payload.duration_seconds is not None:
        return payload.duration_seconds
    return estimate_duration_seconds(payload.size_bytes, payload.format)


class AdmissionController:
    """Accept or reject submissions; rejected submissions never create a job."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        ledger: QuotaLedger,
        tiers: TierSource,
        rate_limiter: SlidingWindowRateLimiter,
        policy: RetryPolicy,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.tiers = tiers
        self.rate_limiter = rate_limiter
        self.policy = policy

    def submit(  # noqa: PLR0913
        self,
        owner_id: str,
        kind: JobKind,
        payload: PayloadDescriptor,
        *,
        follow_ups: Sequence[JobKind] = (),
        parent_job_id: str | None = None,
        apply_rate_limit: bool = True,
    ) -> SubmitResult:
        """Run admission checks cheapest first and enqueue on success."""

        if apply_rate_limit and not self.rate_limiter.allow(owner_id):
            retry_after = self.rate_limiter.retry_after(owner_id)
            return self._reject(
                owner_id,
                RejectionReason.RATE_LIMITED,
                f"Too many submissions; retry in {retry_after:.0f}s.",
            )

        if not is_supported_format(kind, payload.format):
            return self._reject(
                owner_id,
                RejectionReason.UNSUPPORTED_FORMAT,
                f"Format {payload.format!r} is not accepted for {kind.value} jobs.",
            )

        tier = self.tiers.tier_for(owner_id)
        if payload.size_bytes > tier.max_payload_bytes:
            return self._reject(
                owner_id,
                RejectionReason.PAYLOAD_TOO_LARGE,
                f"Payload is {payload.size_bytes} bytes; tier {tier.name!r} allows "
                f"{tier.max_payload_bytes}.",
            )
        if kind is JobKind.TRANSCRIBE:
            duration = effective_duration_seconds(payload)
            if duration > tier.max_payload_seconds:
                return self._reject(
                    owner_id,
                    RejectionReason.PAYLOAD_TOO_LARGE,
                    f"Payload lasts {duration:.0f}s; tier {tier.name!r} allows "
                    f"{tier.max_payload_seconds:.0f}s.",
                )

        units = estimate_units(kind, payload)
        if self.ledger.would_exceed(owner_id, kind, units):
            return self._reject(
                owner_id,
                RejectionReason.QUOTA_EXCEEDED,
                f"Submission needs {units:.2f} units beyond the {tier.name!r} tier limit.",
            )

        job = self.repository.enqueue_job(
            JobCreate(
                owner_id=owner_id,
                kind=kind,
                tier=tier.name,
                priority=tier.priority,
                payload=payload,
                estimated_units=units,
                max_attempts=self.policy.max_attempts,
                max_concurrent=tier.max_concurrent_jobs,
                parent_job_id=parent_job_id,
                follow_ups=tuple(follow_ups),
            ),
        )
        logger.info(
            "Admitted job %s (%s) for owner %s with priority %s",
            job.job_id,
            kind.value,
            owner_id,
            job.priority,
        )
        return SubmitAccepted(job_id=job.job_id, priority=job.priority, estimated_units=units)

    def _reject(self, owner_id: str, reason: RejectionReason, message: str) -> SubmitRejected:
        logger.info("Rejected submission from %s: %s (%s)", owner_id, reason.value, message)
        return SubmitRejected(reason=reason, message=message)
