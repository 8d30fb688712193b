"""Best-effort progress fan-out to subscribed client connections.

Nothing here is durable: a client that misses an event reads the job row
through the status query instead.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Protocol, TextIO

from transcribe_pipeline.pipeline.errors import ConnectionClosedError
from transcribe_pipeline.pipeline.models import JobStatus, ProgressEvent, ProgressEventType
from transcribe_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Client stream; `send` raises `ConnectionClosedError` once the client is gone."""

    connection_id: str

    def send(self, message: dict[str, object]) -> None: ...


class QueueConnection:
    """In-process connection backed by a queue, used by embedding code and tests."""

    def __init__(self, connection_id: str, *, maxsize: int = 0) -> None:
        self.connection_id = connection_id
        self.messages: queue.Queue[dict[str, object]] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def send(self, message: dict[str, object]) -> None:
        if self._closed.is_set():
            raise ConnectionClosedError(f"Connection {self.connection_id} is closed")
        try:
            self.messages.put_nowait(message)
        except queue.Full as error:
            raise ConnectionClosedError(
                f"Connection {self.connection_id} is not draining its queue",
            ) from error

    def drain(self) -> list[dict[str, object]]:
        """Return and remove every buffered message."""

        drained: list[dict[str, object]] = []
        while True:
            try:
                drained.append(self.messages.get_nowait())
            except queue.Empty:
                return drained


class JsonLinesConnection:
    """Write each message as one JSON line to a text stream."""

    def __init__(self, connection_id: str, stream: TextIO) -> None:
        self.connection_id = connection_id
        self._stream = stream
        self._lock = threading.Lock()

    def send(self, message: dict[str, object]) -> None:
        line = json.dumps(message, ensure_ascii=False, sort_keys=True)
        try:
            with self._lock:
                self._stream.write(line + "\n")
                self._stream.flush()
        except (OSError, ValueError) as error:
            raise ConnectionClosedError(
                f"Connection {self.connection_id} stream failed: {error}",
            ) from error


class SubscriptionRegistry:
    """Thread-safe job -> connections index with cleanup on disconnect."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, Connection] = {}
        self._by_job: dict[str, set[str]] = {}
        self._by_connection: dict[str, set[str]] = {}

    def connect(self, connection: Connection) -> None:
        with self._lock:
            self._connections[connection.connection_id] = connection
            self._by_connection.setdefault(connection.connection_id, set())

    def disconnect(self, connection_id: str) -> None:
        """Drop a connection and every subscription it holds."""

        with self._lock:
            self._connections.pop(connection_id, None)
            for job_id in self._by_connection.pop(connection_id, set()):
                watchers = self._by_job.get(job_id)
                if watchers is None:
                    continue
                watchers.discard(connection_id)
                if not watchers:
                    del self._by_job[job_id]

    def subscribe(self, connection_id: str, job_id: str) -> None:
        with self._lock:
            if connection_id not in self._connections:
                raise ValueError(f"Unknown connection: {connection_id}")
            self._by_job.setdefault(job_id, set()).add(connection_id)
            self._by_connection[connection_id].add(job_id)

    def unsubscribe(self, connection_id: str, job_id: str) -> None:
        with self._lock:
            watchers = self._by_job.get(job_id)
            if watchers is not None:
                watchers.discard(connection_id)
                if not watchers:
                    del self._by_job[job_id]
            subscriptions = self._by_connection.get(connection_id)
            if subscriptions is not None:
                subscriptions.discard(job_id)

    def watchers(self, job_id: str) -> list[Connection]:
        with self._lock:
            return [
                self._connections[connection_id]
                for connection_id in sorted(self._by_job.get(job_id, ()))
                if connection_id in self._connections
            ]

    def subscriptions(self, connection_id: str) -> set[str]:
        with self._lock:
            return set(self._by_connection.get(connection_id, ()))

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)


class ProgressPublisher:
    """Deliver progress events to current watchers; never raises into the caller."""

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self.registry = registry

    def publish(self, event: ProgressEvent) -> int:
        """Send to every watcher of the job and return how many received it."""

        message = event.to_message()
        delivered = 0
        for connection in self.registry.watchers(event.job_id):
            try:
                connection.send(message)
            except ConnectionClosedError as error:
                logger.debug("Dropping connection %s: %s", connection.connection_id, error)
                self.registry.disconnect(connection.connection_id)
                continue
            delivered += 1
        return delivered

    def progress(self, job_id: str, percent: int, message: str | None = None) -> int:
        return self.publish(
            ProgressEvent(
                job_id=job_id,
                event_type=ProgressEventType.PROGRESS,
                status=JobStatus.ACTIVE,
                timestamp=utc_now(),
                progress_percent=percent,
                message=message,
            ),
        )

    def completed(self, job_id: str) -> int:
        return self.publish(
            ProgressEvent(
                job_id=job_id,
                event_type=ProgressEventType.COMPLETED,
                status=JobStatus.COMPLETED,
                timestamp=utc_now(),
                progress_percent=100,
            ),
        )

    def failed(self, job_id: str, *, error_code: str, error: str) -> int:
        return self.publish(
            ProgressEvent(
                job_id=job_id,
                event_type=ProgressEventType.FAILED,
                status=JobStatus.DEAD,
                timestamp=utc_now(),
                error_code=error_code,
                error=error,
            ),
        )
