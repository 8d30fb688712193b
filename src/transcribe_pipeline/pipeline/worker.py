"""Queue workers that claim jobs, run a processing strategy and record the outcome."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from transcribe_pipeline.pipeline.admission import AdmissionController
from transcribe_pipeline.pipeline.errors import LeaseLostError
from transcribe_pipeline.pipeline.events import ProgressPublisher
from transcribe_pipeline.pipeline.failure_classifier import classify_provider_error
from transcribe_pipeline.pipeline.follow_ups import FollowUpDispatcher
from transcribe_pipeline.pipeline.models import (
    DeadLetterCode,
    FailureClass,
    JobStatus,
    JobView,
)
from transcribe_pipeline.pipeline.policy import RetryPolicy
from transcribe_pipeline.pipeline.providers.base import Provider
from transcribe_pipeline.pipeline.quota import QuotaLedger
from transcribe_pipeline.pipeline.repository import JobRepository
from transcribe_pipeline.pipeline.routing import ProviderRouting
from transcribe_pipeline.pipeline.strategies import StrategyResult, select_strategy
from transcribe_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

PROGRESS_SAVING = 90


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead: int = 0
    lease_lost: int = 0
    abandoned: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.dead += other.dead
        self.lease_lost += other.lease_lost
        self.abandoned += other.abandoned
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class Completed:
    result: StrategyResult


@dataclass(slots=True)
class Retryable:
    failure_class: FailureClass
    error_summary: str
    provider: str | None


@dataclass(slots=True)
class Fatal:
    failure_class: FailureClass
    error_summary: str
    provider: str | None


@dataclass(slots=True)
class LeaseLost:
    reason: str


@dataclass(slots=True)
class Abandoned:
    """The job store failed mid-attempt; the lease is left to expire."""

    reason: str


AttemptOutcome = Completed | Retryable | Fatal | LeaseLost | Abandoned


class LeaseKeeper:
    """Background heartbeat that renews one job lease until stopped."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        job_id: str,
        lease_token: str,
        lock_duration_seconds: float,
        interval_seconds: float,
    ) -> None:
        self.repository = repository
        self.job_id = job_id
        self.lease_token = lease_token
        self.lock_duration_seconds = lock_duration_seconds
        self.interval_seconds = interval_seconds
        self.lost = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"heartbeat-{self.job_id[:8]}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_seconds + 5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                renewed = self.repository.renew_lease(
                    job_id=self.job_id,
                    lease_token=self.lease_token,
                    lock_duration_seconds=self.lock_duration_seconds,
                )
            except SQLAlchemyError:
                logger.warning("Heartbeat for job %s failed; will retry", self.job_id, exc_info=True)
                continue
            if not renewed:
                logger.warning("Lease for job %s was reclaimed", self.job_id)
                self.lost.set()
                return


class _AttemptContext:
    def __init__(
        self,
        *,
        job: JobView,
        keeper: LeaseKeeper,
        repository: JobRepository,
        publisher: ProgressPublisher | None,
    ) -> None:
        self.job = job
        self.keeper = keeper
        self.repository = repository
        self.publisher = publisher

    def ensure_lease(self) -> None:
        if self.keeper.lost.is_set():
            raise LeaseLostError(f"Lease for job {self.job.job_id} is no longer held")

    def report_progress(self, percent: int, message: str | None = None) -> None:
        lease_token = self.job.lease_token or ""
        if not self.repository.update_progress(
            job_id=self.job.job_id,
            lease_token=lease_token,
            progress_percent=percent,
        ):
            self.keeper.lost.set()
            raise LeaseLostError(f"Lease for job {self.job.job_id} is no longer held")
        if self.publisher is not None:
            self.publisher.progress(self.job.job_id, percent, message)


class JobWorker:
    """Claims one job at a time and drives it to completed, queued or dead."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        ledger: QuotaLedger,
        providers: dict[str, Provider],
        routing: ProviderRouting,
        policy: RetryPolicy,
        worker_id: str,
        admission: AdmissionController | None = None,
        publisher: ProgressPublisher | None = None,
        poll_interval_seconds: float = 2.0,
        chunk_parallelism: int = 1,
        graceful_shutdown_seconds: int = 30,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.providers = providers
        self.routing = routing
        self.policy = policy
        self.worker_id = worker_id
        self.admission = admission
        self.publisher = publisher
        self.follow_ups = (
            FollowUpDispatcher(repository=repository, admission=admission)
            if admission is not None
            else None
        )
        self.poll_interval_seconds = poll_interval_seconds
        self.chunk_parallelism = chunk_parallelism
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._stop_requested = threading.Event()
        self._current_job_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        job = self.repository.claim_next_ready_job(
            worker_id=self.worker_id,
            lock_duration_seconds=self.policy.lock_duration_seconds,
        )
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        logger.info(
            "Worker %s claimed job %s (%s, attempt %s/%s)",
            self.worker_id,
            job.job_id,
            job.kind.value,
            job.attempts,
            job.max_attempts,
        )
        keeper = LeaseKeeper(
            repository=self.repository,
            job_id=job.job_id,
            lease_token=job.lease_token or "",
            lock_duration_seconds=self.policy.lock_duration_seconds,
            interval_seconds=self.policy.heartbeat_seconds,
        )
        keeper.start()
        try:
            outcome = self._execute_attempt(job=job, keeper=keeper)
        finally:
            keeper.stop()
            self._current_job_id = None

        self._finalize_attempt(job=job, outcome=outcome, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
        handle_signals: bool = True,
    ) -> WorkerRunSummary:
        """Run until the queue is idle, `max_jobs` were processed or a stop is requested.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
            handle_signals: Install SIGINT/SIGTERM handlers for graceful stop.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers(enabled=handle_signals):
            while True:
                if self.stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self.wait_for_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self, *, reason: str = "requested") -> None:
        """Finish the current job, then stop claiming new ones."""

        if self.stop_requested:
            return
        self._stop_requested.set()
        job_id = self._current_job_id
        logger.info("Worker %s stopping (%s)", self.worker_id, reason)
        if job_id is None:
            return
        try:
            self.repository.add_job_event(
                job_id=job_id,
                event_type="shutdown_requested",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.ACTIVE,
                details={
                    "worker_id": self.worker_id,
                    "reason": reason,
                    "graceful_shutdown_seconds": self.graceful_shutdown_seconds,
                },
            )
        except SQLAlchemyError:  # pragma: no cover - best effort
            logger.debug("Could not record shutdown event for job %s", job_id)

    def _execute_attempt(self, *, job: JobView, keeper: LeaseKeeper) -> AttemptOutcome:
        route = self.routing.route_for(tier=job.tier, kind=job.kind)
        selection = select_strategy(
            job,
            route=route,
            providers=self.providers,
            chunk_parallelism=self.chunk_parallelism,
        )
        provider_name = selection.strategy.provider.name
        context = _AttemptContext(
            job=job,
            keeper=keeper,
            repository=self.repository,
            publisher=self.publisher,
        )
        try:
            if not self.repository.record_attempt_route(
                job_id=job.job_id,
                lease_token=job.lease_token or "",
                provider=provider_name,
                details={"attempt": job.attempts, **selection.to_event_details()},
            ):
                return LeaseLost(reason="lease lost before processing started")
            result = selection.strategy.execute(job, context)
            context.ensure_lease()
            context.report_progress(PROGRESS_SAVING, "saving result")
        except LeaseLostError as error:
            return LeaseLost(reason=str(error))
        except SQLAlchemyError as error:
            return Abandoned(reason=f"{type(error).__name__}: {error}")
        except Exception as error:  # noqa: BLE001
            classification = classify_provider_error(error)
            provider = getattr(error, "provider", None) or provider_name
            summary = f"{type(error).__name__}: {error}"
            self._record_event(
                job_id=job.job_id,
                event_type="provider_failed",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.ACTIVE,
                details={
                    "attempt": job.attempts,
                    "error_summary": summary,
                    **classification.to_event_details(provider=provider),
                },
            )
            if classification.retryable:
                return Retryable(classification.failure_class, summary, provider)
            return Fatal(classification.failure_class, summary, provider)
        return Completed(result=result)

    def _finalize_attempt(
        self,
        *,
        job: JobView,
        outcome: AttemptOutcome,
        summary: WorkerRunSummary,
    ) -> None:
        lease_token = job.lease_token or ""
        if isinstance(outcome, Completed):
            self._persist_success(job=job, result=outcome.result, summary=summary)
            return

        if isinstance(outcome, LeaseLost):
            summary.lease_lost = 1
            logger.warning("Discarding attempt %s of job %s: %s", job.attempts, job.job_id, outcome.reason)
            self.repository.add_job_event(
                job_id=job.job_id,
                event_type="attempt_discarded",
                details={
                    "worker_id": self.worker_id,
                    "attempt": job.attempts,
                    "reason": outcome.reason,
                },
            )
            return

        if isinstance(outcome, Abandoned):
            summary.abandoned = 1
            logger.warning(
                "Abandoning attempt %s of job %s after a job store error; "
                "the stall monitor will requeue it: %s",
                job.attempts,
                job.job_id,
                outcome.reason,
            )
            self._record_event(
                job_id=job.job_id,
                event_type="attempt_abandoned",
                details={
                    "worker_id": self.worker_id,
                    "attempt": job.attempts,
                    "reason": outcome.reason,
                },
            )
            return

        if isinstance(outcome, Retryable) and self.policy.retries_left(
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        ):
            delay_seconds = self.policy.backoff_delay(attempts=job.attempts)
            if self.repository.schedule_retry(
                job_id=job.job_id,
                lease_token=lease_token,
                available_at=utc_now() + timedelta(seconds=delay_seconds),
                failure_class=outcome.failure_class,
                error_summary=outcome.error_summary,
                provider=outcome.provider,
            ):
                summary.retried = 1
                logger.info(
                    "Job %s attempt %s failed (%s); retry in %.0fs",
                    job.job_id,
                    job.attempts,
                    outcome.failure_class.value,
                    delay_seconds,
                )
                if self.publisher is not None:
                    self.publisher.progress(job.job_id, 0, "retry scheduled")
            else:
                summary.lease_lost = 1
            return

        error_code = (
            DeadLetterCode.ATTEMPTS_EXHAUSTED
            if isinstance(outcome, Retryable)
            else DeadLetterCode.PROVIDER_FATAL
        )
        if self.repository.dead_letter(
            job_id=job.job_id,
            lease_token=lease_token,
            error_code=error_code,
            failure_class=outcome.failure_class,
            error_summary=outcome.error_summary,
            provider=outcome.provider,
        ):
            summary.dead = 1
            logger.warning("Job %s dead-lettered: %s", job.job_id, error_code.value)
            if self.publisher is not None:
                self.publisher.failed(
                    job.job_id,
                    error_code=error_code.value,
                    error=outcome.error_summary,
                )
        else:
            summary.lease_lost = 1

    def _persist_success(
        self,
        *,
        job: JobView,
        result: StrategyResult,
        summary: WorkerRunSummary,
    ) -> None:
        actual_units = result.units if result.units is not None else job.estimated_units
        stored = self.repository.complete_job(
            job_id=job.job_id,
            lease_token=job.lease_token or "",
            result={
                "text": result.text,
                "provider": result.provider,
                "strategy": result.strategy,
                "segments": result.segments,
                "segment_metadata": result.segment_metadata,
            },
            actual_units=actual_units,
        )
        if not stored:
            summary.lease_lost = 1
            logger.warning("Job %s lost its lease before completion was stored", job.job_id)
            return

        summary.succeeded = 1
        if not self.ledger.settle(job.owner_id, job.kind, actual_units, job_id=job.job_id):
            self._record_event(
                job_id=job.job_id,
                event_type="quota_commit_deferred",
                details={"units": actual_units},
            )
        if self.publisher is not None:
            self.publisher.completed(job.job_id)
        self._enqueue_follow_ups(job=job, result=result)

    def _enqueue_follow_ups(self, *, job: JobView, result: StrategyResult) -> None:
        if not job.follow_ups:
            return
        if self.follow_ups is None:
            logger.warning("Job %s has follow-ups but no admission controller", job.job_id)
            return
        try:
            self.follow_ups.dispatch(job, result_text=result.text)
        except SQLAlchemyError:
            logger.warning(
                "Follow-ups of job %s left pending for the stall monitor",
                job.job_id,
                exc_info=True,
            )

    def _record_event(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object],
        status_from: JobStatus | None = None,
        status_to: JobStatus | None = None,
    ) -> None:
        try:
            self.repository.add_job_event(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
        except SQLAlchemyError:
            logger.warning("Could not record %s event for job %s", event_type, job_id)

    def wait_for_stop(self, seconds: float) -> None:
        """Sleep up to `seconds`, waking early when a stop is requested."""

        self._stop_requested.wait(max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self, *, enabled: bool = True) -> Iterator[None]:
        if not enabled:
            yield
            return
        with install_stop_handlers(lambda name: self.request_stop(reason=name)):
            yield


@contextmanager
def install_stop_handlers(on_signal: Callable[[str], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to `on_signal` while the block runs."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_signal(name)

    try:
        original_sigint = signal.signal(signal.SIGINT, _handler)
        original_sigterm = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


class _JobBudget:
    def __init__(self, limit: int | None) -> None:
        self._limit = limit
        self._taken = 0
        self._lock = threading.Lock()

    def take(self) -> bool:
        with self._lock:
            if self._limit is not None and self._taken >= self._limit:
                return False
            self._taken += 1
            return True

    def give_back(self) -> None:
        with self._lock:
            self._taken -= 1


class WorkerPool:
    """Run several `JobWorker`s in threads against the same job store."""

    def __init__(
        self,
        worker_factory: Callable[[str], JobWorker],
        *,
        slots: int,
        worker_id_prefix: str,
        graceful_shutdown_seconds: int = 30,
    ) -> None:
        if slots < 1:
            raise ValueError("slots must be >= 1.")
        self.workers = [worker_factory(f"{worker_id_prefix}-{index}") for index in range(slots)]
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._lock = threading.Lock()

    def request_stop(self, *, reason: str = "requested") -> None:
        for worker in self.workers:
            worker.request_stop(reason=reason)

    def run(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run all workers until each exits; returns combined counters."""

        budget = _JobBudget(max_jobs)
        aggregate = WorkerRunSummary()
        threads = [
            threading.Thread(
                target=self._run_worker,
                args=(worker, budget, max_idle_polls, aggregate),
                name=f"worker-{worker.worker_id}",
                daemon=True,
            )
            for worker in self.workers
        ]
        with install_stop_handlers(lambda name: self.request_stop(reason=name)):
            for thread in threads:
                thread.start()
            for thread in threads:
                while thread.is_alive():
                    thread.join(timeout=0.5)
        return aggregate

    def _run_worker(
        self,
        worker: JobWorker,
        budget: _JobBudget,
        max_idle_polls: int | None,
        aggregate: WorkerRunSummary,
    ) -> None:
        consecutive_idle = 0
        while not worker.stop_requested:
            if not budget.take():
                return
            try:
                summary = worker.run_once()
            except Exception:
                logger.exception("Worker %s crashed while processing a job", worker.worker_id)
                summary = WorkerRunSummary(processed=1)
                time.sleep(min(worker.poll_interval_seconds, 1.0))
            with self._lock:
                aggregate.add(summary)
            if summary.processed:
                consecutive_idle = 0
                continue
            budget.give_back()
            consecutive_idle += 1
            if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                return
            worker.wait_for_stop(worker.poll_interval_seconds)
