from __future__ import annotations

import io
import json

import allure
import pytest

from transcribe_pipeline.pipeline.errors import ConnectionClosedError, JobNotFoundError
from transcribe_pipeline.pipeline.events import (
    JsonLinesConnection,
    ProgressPublisher,
    QueueConnection,
    SubscriptionRegistry,
)
from transcribe_pipeline.pipeline.models import (
    JobKind,
    JobStatus,
    PayloadDescriptor,
    SubmitAccepted,
)
from transcribe_pipeline.pipeline.services import PipelineService

pytestmark = [
    allure.epic("Progress"),
    allure.feature("Subscriptions & Publishing"),
]


@pytest.fixture()
def registry() -> SubscriptionRegistry:
    return SubscriptionRegistry()


@pytest.fixture()
def publisher(registry: SubscriptionRegistry) -> ProgressPublisher:
    return ProgressPublisher(registry)


def test_progress_reaches_only_subscribers_of_the_job(
    registry: SubscriptionRegistry,
    publisher: ProgressPublisher,
) -> None:
    watching = QueueConnection("a")
    other = QueueConnection("b")
    registry.connect(watching)
    registry.connect(other)
    registry.subscribe("a", "job-1")
    registry.subscribe("b", "job-2")

    delivered = publisher.progress("job-1", 40, "halfway")

    assert delivered == 1
    [message] = watching.drain()
    assert message["jobId"] == "job-1"
    assert message["event"] == "progress"
    assert message["status"] == "active"
    assert message["progressPercent"] == 40
    assert message["message"] == "halfway"
    assert "timestamp" in message
    assert other.drain() == []


def test_several_connections_can_watch_one_job(
    registry: SubscriptionRegistry,
    publisher: ProgressPublisher,
) -> None:
    connections = [QueueConnection(f"c-{index}") for index in range(3)]
    for connection in connections:
        registry.connect(connection)
        registry.subscribe(connection.connection_id, "job-1")

    assert publisher.completed("job-1") == 3
    assert all(len(connection.drain()) == 1 for connection in connections)


def test_closed_connection_is_dropped_with_its_subscriptions(
    registry: SubscriptionRegistry,
    publisher: ProgressPublisher,
) -> None:
    alive = QueueConnection("alive")
    gone = QueueConnection("gone")
    for connection in (alive, gone):
        registry.connect(connection)
        registry.subscribe(connection.connection_id, "job-1")
    registry.subscribe("gone", "job-2")
    gone.close()

    delivered = publisher.failed("job-1", error_code="provider_fatal", error="boom")

    assert delivered == 1
    assert registry.connection_count() == 1
    assert registry.subscriptions("gone") == set()
    assert registry.watchers("job-2") == []
    [message] = alive.drain()
    assert message["status"] == "dead"
    assert message["errorCode"] == "provider_fatal"
    assert message["error"] == "boom"


def test_full_queue_counts_as_closed_connection(
    registry: SubscriptionRegistry,
    publisher: ProgressPublisher,
) -> None:
    slow = QueueConnection("slow", maxsize=1)
    registry.connect(slow)
    registry.subscribe("slow", "job-1")

    assert publisher.progress("job-1", 10) == 1
    assert publisher.progress("job-1", 20) == 0
    assert registry.connection_count() == 0


def test_unsubscribe_stops_delivery(
    registry: SubscriptionRegistry,
    publisher: ProgressPublisher,
) -> None:
    connection = QueueConnection("a")
    registry.connect(connection)
    registry.subscribe("a", "job-1")
    registry.subscribe("a", "job-2")

    registry.unsubscribe("a", "job-1")

    assert publisher.progress("job-1", 50) == 0
    assert publisher.progress("job-2", 50) == 1
    assert registry.subscriptions("a") == {"job-2"}


def test_subscribe_requires_connected_client(registry: SubscriptionRegistry) -> None:
    with pytest.raises(ValueError, match="Unknown connection"):
        registry.subscribe("nobody", "job-1")


def test_publish_without_watchers_is_a_no_op(publisher: ProgressPublisher) -> None:
    assert publisher.progress("job-1", 10) == 0


def test_queue_connection_raises_after_close() -> None:
    connection = QueueConnection("a")
    connection.close()

    assert connection.closed
    with pytest.raises(ConnectionClosedError):
        connection.send({"event": "progress"})


def test_json_lines_connection_writes_one_line_per_message() -> None:
    stream = io.StringIO()
    connection = JsonLinesConnection("cli", stream)

    connection.send({"jobId": "job-1", "event": "progress"})
    connection.send({"jobId": "job-1", "event": "completed"})

    lines = stream.getvalue().splitlines()
    assert [json.loads(line)["event"] for line in lines] == ["progress", "completed"]


def test_json_lines_connection_reports_closed_stream() -> None:
    stream = io.StringIO()
    connection = JsonLinesConnection("cli", stream)
    stream.close()

    with pytest.raises(ConnectionClosedError):
        connection.send({"event": "progress"})


def test_status_query_recovers_missed_events(service: PipelineService) -> None:
    submitted = service.submit(
        "owner-1",
        JobKind.TRANSCRIBE,
        PayloadDescriptor(uri="s3://a.mp3", size_bytes=1024, format="mp3", duration_seconds=30),
    )
    assert isinstance(submitted, SubmitAccepted)
    late = QueueConnection("late")
    service.connect(late)

    queued = service.get_status(submitted.job_id)
    service.build_worker("w-1").run_once()
    service.subscribe("late", submitted.job_id)
    completed = service.get_status(submitted.job_id)

    assert queued.status is JobStatus.QUEUED
    assert queued.result is None
    assert late.drain() == []
    assert completed.status is JobStatus.COMPLETED
    assert completed.progress_percent == 100
    assert completed.result is not None
    assert completed.result["text"] == "primary:s3://a.mp3"
    assert completed.error_code is None


def test_subscribing_to_unknown_job_fails(service: PipelineService) -> None:
    service.connect(QueueConnection("a"))

    with pytest.raises(JobNotFoundError):
        service.subscribe("a", "missing")
    with pytest.raises(JobNotFoundError):
        service.get_status("missing")


def test_disconnect_removes_all_subscriptions(service: PipelineService) -> None:
    connection = QueueConnection("a")
    service.connect(connection)
    service.registry.subscribe("a", "job-1")

    service.disconnect("a")

    assert service.registry.connection_count() == 0
    assert service.publisher.progress("job-1", 10) == 0
