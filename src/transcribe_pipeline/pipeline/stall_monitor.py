"""Periodic sweep that reclaims jobs whose worker stopped heartbeating."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from transcribe_pipeline.pipeline.errors import QuotaStoreError
from transcribe_pipeline.pipeline.events import ProgressPublisher
from transcribe_pipeline.pipeline.follow_ups import FollowUpDispatcher
from transcribe_pipeline.pipeline.models import (
    DeadLetterCode,
    JobStatus,
    QueueHealth,
    StalledJobOutcome,
)
from transcribe_pipeline.pipeline.policy import RetryPolicy
from transcribe_pipeline.pipeline.quota import QuotaLedger
from transcribe_pipeline.pipeline.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StallSweepSummary:
    """Result of one stall sweep."""

    requeued: int = 0
    dead: int = 0
    quota_reconciled: int = 0
    follow_ups_replayed: int = 0
    queue_health: QueueHealth | None = None
    outcomes: list[StalledJobOutcome] = field(default_factory=list)


class StallMonitor:
    """Requeue or dead-letter expired leases and replay deferred side effects.

    Each sweep also re-commits quota for completed jobs without a commit record
    and re-submits follow-ups that a worker could not enqueue.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        policy: RetryPolicy,
        interval_seconds: float,
        ledger: QuotaLedger | None = None,
        publisher: ProgressPublisher | None = None,
        follow_ups: FollowUpDispatcher | None = None,
        batch_size: int = 100,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0.")
        self.repository = repository
        self.policy = policy
        self.interval_seconds = interval_seconds
        self.ledger = ledger
        self.publisher = publisher
        self.follow_ups = follow_ups
        self.batch_size = batch_size
        self._stop = threading.Event()

    def run_once(self) -> StallSweepSummary:
        """Run one sweep over expired leases."""

        summary = StallSweepSummary()
        outcomes = self.repository.recover_stalled_jobs(
            stall_ceiling=self.policy.stall_ceiling,
            limit=self.batch_size,
        )
        summary.outcomes = outcomes
        for outcome in outcomes:
            if outcome.status is JobStatus.DEAD:
                summary.dead += 1
                logger.warning(
                    "Job %s dead-lettered after %s stalls",
                    outcome.job_id,
                    outcome.stalled_count,
                )
                if self.publisher is not None:
                    self.publisher.failed(
                        outcome.job_id,
                        error_code=DeadLetterCode.STALLED_TOO_MANY_TIMES.value,
                        error=f"Job stalled {outcome.stalled_count} times",
                    )
            else:
                summary.requeued += 1
                logger.info(
                    "Job %s requeued after stall %s",
                    outcome.job_id,
                    outcome.stalled_count,
                )

        if self.ledger is not None:
            try:
                summary.quota_reconciled = self.ledger.reconcile(
                    self.repository,
                    limit=self.batch_size,
                )
            except QuotaStoreError as error:
                logger.warning("Quota reconciliation failed: %s", error)

        if self.follow_ups is not None:
            try:
                summary.follow_ups_replayed = self.follow_ups.replay(limit=self.batch_size)
            except SQLAlchemyError as error:
                logger.warning("Follow-up replay failed: %s", error)

        health = self.repository.queue_health()
        summary.queue_health = health
        log = logger.info if health.healthy else logger.warning
        log(
            "Queue stats: %s, delayed=%s, healthy=%s",
            ", ".join(f"{status.value}={count}" for status, count in health.counts.items()),
            health.delayed,
            health.healthy,
        )
        return summary

    def run_loop(self, *, max_sweeps: int | None = None) -> int:
        """Sweep every `interval_seconds` until stopped; returns the number of sweeps."""

        sweeps = 0
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Stall sweep failed")
            sweeps += 1
            if max_sweeps is not None and sweeps >= max_sweeps:
                break
            self._stop.wait(self.interval_seconds)
        return sweeps

    def stop(self) -> None:
        self._stop.set()
