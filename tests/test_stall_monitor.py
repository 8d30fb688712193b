from __future__ import annotations

import time
from collections.abc import Callable

import allure
import pytest

from transcribe_pipeline.pipeline.errors import QuotaStoreError
from transcribe_pipeline.pipeline.events import QueueConnection
from transcribe_pipeline.pipeline.models import (
    DeadLetterCode,
    FailureClass,
    JobCreate,
    JobKind,
    JobStatus,
)
from transcribe_pipeline.pipeline.policy import RetryPolicy
from transcribe_pipeline.pipeline.repository import JobRepository
from transcribe_pipeline.pipeline.services import PipelineService
from transcribe_pipeline.pipeline.stall_monitor import StallMonitor
from transcribe_pipeline.pipeline.worker import LeaseKeeper

pytestmark = [
    allure.epic("Worker Pool"),
    allure.feature("Stall Recovery"),
]


def _claim_expired(repository: JobRepository) -> str:
    job = repository.claim_next_ready_job(worker_id="crashed", lock_duration_seconds=-1)
    assert job is not None
    return job.job_id


def test_expired_lease_is_requeued_with_attempt_refunded(
    service: PipelineService,
    job_create: Callable[..., JobCreate],
) -> None:
    queued = service.repository.enqueue_job(job_create())
    job_id = _claim_expired(service.repository)
    assert job_id == queued.job_id

    summary = service.build_stall_monitor().run_once()

    assert (summary.requeued, summary.dead) == (1, 0)
    assert summary.queue_health is not None
    assert summary.queue_health.counts[JobStatus.QUEUED] == 1
    job = service.repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.QUEUED
    assert job.stalled_count == 1
    assert job.attempts == 0
    assert job.lease_token is None
    assert job.failure_class is FailureClass.STALLED

    completed = service.build_worker("w-2").run_once()

    assert completed.succeeded == 1
    done = service.repository.get_job(job_id=job_id)
    assert done is not None
    assert done.status is JobStatus.COMPLETED
    assert done.stalled_count == 1


def test_repeated_stalls_dead_letter_the_job(
    service: PipelineService,
    job_create: Callable[..., JobCreate],
) -> None:
    service.repository.enqueue_job(job_create())
    connection = QueueConnection("client-1")
    monitor = service.build_stall_monitor()

    job_id = _claim_expired(service.repository)
    service.connect(connection)
    service.subscribe("client-1", job_id)
    monitor.run_once()
    _claim_expired(service.repository)
    summary = monitor.run_once()

    assert (summary.requeued, summary.dead) == (0, 1)
    job = service.repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.DEAD
    assert job.stalled_count == 2
    assert job.error_code == DeadLetterCode.STALLED_TOO_MANY_TIMES.value
    assert service.repository.claim_next_ready_job(worker_id="w", lock_duration_seconds=60) is None

    details = service.repository.get_job_details(job_id=job_id)
    assert details is not None
    assert [event.event_type for event in details.events if "stalled" in event.event_type] == [
        "stalled_requeued",
        "stalled_dead_lettered",
    ]
    failed = connection.drain()[-1]
    assert failed["event"] == "failed"
    assert failed["errorCode"] == "stalled_too_many_times"


def test_live_leases_are_left_alone(
    service: PipelineService,
    job_create: Callable[..., JobCreate],
) -> None:
    service.repository.enqueue_job(job_create())
    job = service.repository.claim_next_ready_job(worker_id="alive", lock_duration_seconds=300)
    assert job is not None

    summary = service.build_stall_monitor().run_once()

    assert summary.outcomes == []
    current = service.repository.get_job(job_id=job.job_id)
    assert current is not None
    assert current.status is JobStatus.ACTIVE
    assert current.lease_token == job.lease_token


def test_reclaimed_lease_is_detected_by_heartbeat(
    repository: JobRepository,
    job_create: Callable[..., JobCreate],
) -> None:
    repository.enqueue_job(job_create())
    job_id = _claim_expired(repository)
    job = repository.get_job(job_id=job_id)
    assert job is not None
    repository.recover_stalled_jobs(stall_ceiling=2)
    keeper = LeaseKeeper(
        repository=repository,
        job_id=job_id,
        lease_token=job.lease_token or "",
        lock_duration_seconds=60,
        interval_seconds=0.01,
    )

    keeper.start()
    try:
        assert keeper.lost.wait(timeout=5)
    finally:
        keeper.stop()


def test_heartbeat_keeps_lease_alive(
    repository: JobRepository,
    job_create: Callable[..., JobCreate],
) -> None:
    repository.enqueue_job(job_create())
    job = repository.claim_next_ready_job(worker_id="w", lock_duration_seconds=60)
    assert job is not None
    keeper = LeaseKeeper(
        repository=repository,
        job_id=job.job_id,
        lease_token=job.lease_token or "",
        lock_duration_seconds=60,
        interval_seconds=0.01,
    )

    keeper.start()
    time.sleep(0.2)
    keeper.stop()

    renewed = repository.get_job(job_id=job.job_id)
    assert renewed is not None
    assert renewed.version > job.version
    assert renewed.heartbeat_at is not None
    assert job.heartbeat_at is not None
    assert renewed.heartbeat_at > job.heartbeat_at
    assert not keeper.lost.is_set()


def test_sweep_reconciles_deferred_quota_commits(
    service: PipelineService,
    job_create: Callable[..., JobCreate],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    service.repository.enqueue_job(job_create())

    def _fail(*_args: object, **_kwargs: object) -> bool:
        raise QuotaStoreError("ledger offline")

    monkeypatch.setattr(service.ledger, "commit", _fail)
    assert service.build_worker("w-1").run_once().succeeded == 1
    monkeypatch.undo()

    summary = service.build_stall_monitor().run_once()

    assert summary.quota_reconciled == 1
    assert service.ledger.pending_job_ids == ()
    assert service.usage("owner-1")[0].consumed_units == pytest.approx(60 / 3600)


def test_run_loop_stops_after_max_sweeps(repository: JobRepository) -> None:
    monitor = StallMonitor(
        repository=repository,
        policy=RetryPolicy(),
        interval_seconds=0.01,
    )

    assert monitor.run_loop(max_sweeps=3) == 3


def test_monitor_rejects_non_positive_interval(repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="interval_seconds"):
        StallMonitor(repository=repository, policy=RetryPolicy(), interval_seconds=0)


def test_stall_ceiling_of_one_dead_letters_first_stall(
    repository: JobRepository,
    job_create: Callable[..., JobCreate],
) -> None:
    repository.enqueue_job(job_create(kind=JobKind.SUMMARIZE, payload_format="json"))
    job_id = _claim_expired(repository)

    outcomes = repository.recover_stalled_jobs(stall_ceiling=1)

    assert [(outcome.job_id, outcome.status) for outcome in outcomes] == [
        (job_id, JobStatus.DEAD),
    ]
