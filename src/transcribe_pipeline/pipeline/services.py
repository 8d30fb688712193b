"""Use-case facade wiring admission, queue, workers and progress streams."""

from __future__ import annotations

from collections.abc import Sequence

from transcribe_pipeline.config import Settings
from transcribe_pipeline.pipeline.admission import AdmissionController
from transcribe_pipeline.pipeline.errors import JobNotFoundError
from transcribe_pipeline.pipeline.events import Connection, ProgressPublisher, SubscriptionRegistry
from transcribe_pipeline.pipeline.follow_ups import FollowUpDispatcher
from transcribe_pipeline.pipeline.models import (
    JobKind,
    JobStatus,
    JobStatusView,
    PayloadDescriptor,
    QuotaUnit,
    QuotaUsage,
    SubmitResult,
)
from transcribe_pipeline.pipeline.policy import RetryPolicy
from transcribe_pipeline.pipeline.providers import Provider, build_providers
from transcribe_pipeline.pipeline.quota import QuotaLedger, StaticTierSource, TierSource
from transcribe_pipeline.pipeline.rate_limit import SlidingWindowRateLimiter
from transcribe_pipeline.pipeline.repository import JobRepository
from transcribe_pipeline.pipeline.routing import ProviderRouting
from transcribe_pipeline.pipeline.stall_monitor import StallMonitor
from transcribe_pipeline.pipeline.worker import JobWorker, WorkerPool


class PipelineService:
    """Single entry point for clients and process runners.

    Components share one job store, one quota ledger and one subscription
    registry, so workers built here publish to the connections registered here.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        repository: JobRepository,
        providers: dict[str, Provider] | None = None,
        tiers: TierSource | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.policy = RetryPolicy.from_settings(settings.retry)
        self.tiers = tiers or StaticTierSource(settings.tiers)
        self.ledger = QuotaLedger(engine=repository.engine, tiers=self.tiers)
        self.admission = AdmissionController(
            repository=repository,
            ledger=self.ledger,
            tiers=self.tiers,
            rate_limiter=SlidingWindowRateLimiter(
                max_requests=settings.admission.rate_limit_requests,
                window_seconds=settings.admission.rate_limit_window_seconds,
            ),
            policy=self.policy,
        )
        self.providers = providers if providers is not None else build_providers(settings.providers)
        self.routing = ProviderRouting.from_settings(settings.providers)
        self.registry = SubscriptionRegistry()
        self.publisher = ProgressPublisher(self.registry)

    def submit(
        self,
        owner_id: str,
        kind: JobKind,
        payload: PayloadDescriptor,
        *,
        follow_ups: Sequence[JobKind] = (),
    ) -> SubmitResult:
        """Admit a job; follow-ups chain analysis jobs after a transcription."""

        if follow_ups and kind is not JobKind.TRANSCRIBE:
            raise ValueError("Follow-up jobs can only be chained after a transcribe job.")
        if JobKind.TRANSCRIBE in follow_ups:
            raise ValueError("A transcribe job cannot follow another job.")
        return self.admission.submit(owner_id, kind, payload, follow_ups=tuple(follow_ups))

    def get_status(self, job_id: str) -> JobStatusView:
        """Durable status; error details are exposed only once a job is dead."""

        job = self.repository.get_job(job_id=job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        is_dead = job.status is JobStatus.DEAD
        return JobStatusView(
            job_id=job.job_id,
            kind=job.kind,
            status=job.status,
            attempts=job.attempts,
            progress_percent=job.progress_percent,
            error_code=job.error_code if is_dead else None,
            error=job.error_summary if is_dead else None,
            result=job.result if job.status is JobStatus.COMPLETED else None,
        )

    def usage(self, owner_id: str) -> list[QuotaUsage]:
        return [self.ledger.usage_for_unit(owner_id, unit) for unit in QuotaUnit]

    def connect(self, connection: Connection) -> None:
        self.registry.connect(connection)

    def disconnect(self, connection_id: str) -> None:
        self.registry.disconnect(connection_id)

    def subscribe(self, connection_id: str, job_id: str) -> None:
        if self.repository.get_job(job_id=job_id) is None:
            raise JobNotFoundError(job_id)
        self.registry.subscribe(connection_id, job_id)

    def unsubscribe(self, connection_id: str, job_id: str) -> None:
        self.registry.unsubscribe(connection_id, job_id)

    def build_worker(self, worker_id: str) -> JobWorker:
        return JobWorker(
            repository=self.repository,
            ledger=self.ledger,
            providers=self.providers,
            routing=self.routing,
            policy=self.policy,
            worker_id=worker_id,
            admission=self.admission,
            publisher=self.publisher,
            poll_interval_seconds=self.settings.worker.poll_interval_seconds,
            chunk_parallelism=self.settings.worker.chunk_parallelism,
            graceful_shutdown_seconds=self.settings.worker.graceful_shutdown_seconds,
        )

    def build_worker_pool(self, *, worker_id_prefix: str, slots: int | None = None) -> WorkerPool:
        return WorkerPool(
            self.build_worker,
            slots=slots or self.settings.worker.slots,
            worker_id_prefix=worker_id_prefix,
            graceful_shutdown_seconds=self.settings.worker.graceful_shutdown_seconds,
        )

    def build_stall_monitor(self) -> StallMonitor:
        return StallMonitor(
            repository=self.repository,
            policy=self.policy,
            interval_seconds=self.settings.retry.stall_interval_seconds,
            ledger=self.ledger,
            publisher=self.publisher,
            follow_ups=FollowUpDispatcher(repository=self.repository, admission=self.admission),
        )
