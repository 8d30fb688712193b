"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from transcribe_pipeline.config import Settings
from transcribe_pipeline.pipeline.events import JsonLinesConnection
from transcribe_pipeline.pipeline.models import (
    JobKind,
    JobStatus,
    PayloadDescriptor,
    QueueHealth,
    SubmitAccepted,
)
from transcribe_pipeline.pipeline.repository import JobRepository
from transcribe_pipeline.pipeline.services import PipelineService
from transcribe_pipeline.pipeline.worker import WorkerRunSummary, install_stop_handlers

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    owner_id: str
    kind: str
    uri: str
    size_bytes: int
    payload_format: str
    duration_seconds: float | None
    follow_ups: tuple[str, ...]


@dataclass(slots=True)
class StatusCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    owner_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = 1
    slots: int | None = None
    with_monitor: bool = True
    watch_job_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class MonitorCommand:
    db_path: Path | None
    once: bool
    max_sweeps: int | None = None


@dataclass(slots=True)
class UsageCommand:
    db_path: Path | None
    owner_id: str


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


class PipelineCliController:
    """Coordinates submission, worker, monitor and inspection CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            result = service.submit(
                command.owner_id,
                JobKind(command.kind),
                PayloadDescriptor(
                    uri=command.uri,
                    size_bytes=command.size_bytes,
                    format=command.payload_format,
                    duration_seconds=command.duration_seconds,
                ),
                follow_ups=tuple(JobKind(kind) for kind in command.follow_ups),
            )
        if isinstance(result, SubmitAccepted):
            return [
                "Job accepted: "
                f"job_id={result.job_id} priority={result.priority} "
                f"estimated_units={result.estimated_units:.3f}",
            ]
        return [f"Job rejected: reason={result.reason.value} message={result.message}"]

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            view = service.get_status(command.job_id)
        lines = [
            f"Job: {view.job_id}",
            f"Kind: {view.kind.value}",
            f"Status: {view.status.value}",
            f"Attempts: {view.attempts}",
            f"Progress: {view.progress_percent if view.progress_percent is not None else '-'}",
        ]
        if view.error_code is not None:
            lines.append(f"Error code: {view.error_code}")
            lines.append(f"Error: {view.error or '-'}")
        if view.result is not None:
            lines.append(f"Result: {str(view.result.get('text', ''))[:200]}")
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = JobStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                owner_id=command.owner_id,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} owner={job.owner_id} kind={job.kind.value} "
                f"status={job.status.value} priority={job.priority} "
                f"attempts={job.attempts}/{job.max_attempts} stalls={job.stalled_count} "
                f"available_at={job.available_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Owner: {job.owner_id} (tier {job.tier}, priority {job.priority})",
            f"Kind: {job.kind.value}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Stalls: {job.stalled_count}",
            f"Payload: {job.payload.uri} ({job.payload.size_bytes} bytes, {job.payload.format})",
            f"Units: estimated={job.estimated_units:.3f} actual="
            f"{f'{job.actual_units:.3f}' if job.actual_units is not None else '-'}",
            f"Last provider: {job.last_provider or '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error code: {job.error_code or '-'}",
            f"Error: {job.error_summary or '-'}",
            f"Parent: {job.parent_job_id or '-'}",
            f"Follow-ups: {', '.join(kind.value for kind in job.follow_ups) or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        worker_prefix = f"worker-{uuid4().hex[:8]}"
        with _service(settings) as service:
            connection: JsonLinesConnection | None = None
            if command.watch_job_ids:
                connection = JsonLinesConnection(f"{worker_prefix}-watch", sys.stdout)
                service.connect(connection)
                for job_id in command.watch_job_ids:
                    service.subscribe(connection.connection_id, job_id)

            with _embedded_monitor(service, enabled=command.with_monitor and not command.once):
                summary: WorkerRunSummary
                if command.once:
                    summary = service.build_worker(f"{worker_prefix}-0").run_once()
                else:
                    pool = service.build_worker_pool(
                        worker_id_prefix=worker_prefix,
                        slots=command.slots,
                    )
                    summary = pool.run(
                        max_jobs=command.max_jobs,
                        max_idle_polls=command.max_idle_polls,
                    )
            if connection is not None:
                service.disconnect(connection.connection_id)

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"retried={summary.retried} dead={summary.dead} "
            f"lease_lost={summary.lease_lost} abandoned={summary.abandoned} "
            f"idle_polls={summary.idle_polls}",
        ]

    def run_monitor(self, command: MonitorCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            monitor = service.build_stall_monitor()
            if command.once:
                summary = monitor.run_once()
                return [
                    "Stall sweep: "
                    f"requeued={summary.requeued} dead={summary.dead} "
                    f"quota_reconciled={summary.quota_reconciled} "
                    f"follow_ups_replayed={summary.follow_ups_replayed}",
                    *(_health_lines(summary.queue_health) if summary.queue_health else []),
                ]
            with install_stop_handlers(lambda _name: monitor.stop()):
                sweeps = monitor.run_loop(max_sweeps=command.max_sweeps)
        return [f"Stall monitor stopped after {sweeps} sweeps"]

    def usage(self, command: UsageCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            usages = service.usage(command.owner_id)
            tier = service.tiers.tier_for(command.owner_id)

        lines = [f"Owner: {command.owner_id} (tier {tier.name})"]
        for usage in usages:
            limit = f"{usage.limit_units:.2f}" if usage.limit_units is not None else "unlimited"
            remaining = (
                f"{usage.remaining_units:.2f}" if usage.remaining_units is not None else "unlimited"
            )
            lines.append(
                f"  {usage.period} {usage.unit.value}: consumed={usage.consumed_units:.2f} "
                f"limit={limit} remaining={remaining}",
            )
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        """Show queue depth per status, delayed retries and overall health."""

        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            health = repository.queue_health()
        return ["Queue stats:", *_health_lines(health)]


def _health_lines(health: QueueHealth) -> list[str]:
    lines = [f"  {status.value}: {count}" for status, count in health.counts.items()]
    lines.append(f"  delayed: {health.delayed} (waiting: {health.waiting})")
    lines.append(f"  healthy: {'yes' if health.healthy else 'no'}")
    return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _service(settings: Settings) -> Iterator[PipelineService]:
    with _repository(settings) as repository:
        yield PipelineService(settings=settings, repository=repository)


@contextmanager
def _embedded_monitor(service: PipelineService, *, enabled: bool) -> Iterator[None]:
    if not enabled:
        yield
        return
    monitor = service.build_stall_monitor()
    thread = threading.Thread(target=monitor.run_loop, name="stall-monitor", daemon=True)
    thread.start()
    try:
        yield
    finally:
        monitor.stop()
        thread.join(timeout=5)
        if thread.is_alive():
            logger.warning("Stall monitor did not stop within 5s")
