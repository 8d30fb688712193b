"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path

import pytest

from transcribe_pipeline.config import (
    JOB_KIND_NAMES,
    AdmissionSettings,
    ProviderSettings,
    ProviderSpec,
    RetrySettings,
    Settings,
    TierSettings,
    TierSpec,
    WorkerSettings,
)
from transcribe_pipeline.pipeline.models import JobCreate, JobKind, PayloadDescriptor
from transcribe_pipeline.pipeline.providers.base import (
    ProviderLimits,
    ProviderOutput,
    ProviderRequest,
)
from transcribe_pipeline.pipeline.repository import JobRepository
from transcribe_pipeline.pipeline.services import PipelineService

MB = 1024 * 1024
PRIMARY_LIMITS = ProviderLimits(max_segment_bytes=50 * MB)
FALLBACK_LIMITS = ProviderLimits(max_segment_bytes=10 * MB, max_segment_seconds=600)


class ScriptedProvider:
    """Provider double that replays scripted outputs and exceptions, then echoes."""

    def __init__(
        self,
        name: str,
        *,
        limits: ProviderLimits | None = None,
        script: Sequence[ProviderOutput | BaseException] = (),
        available: bool = True,
        on_call: Callable[[ProviderRequest], None] | None = None,
    ) -> None:
        self.name = name
        self.limits = limits or ProviderLimits()
        self.available = available
        self.on_call = on_call
        self.requests: list[ProviderRequest] = []
        self._script = list(script)
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return self.available

    def process(self, request: ProviderRequest) -> ProviderOutput:
        with self._lock:
            self.requests.append(request)
            step = self._script.pop(0) if self._script else None
        if self.on_call is not None:
            self.on_call(request)
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, ProviderOutput):
            return step
        suffix = "" if request.segment is None else f"#{request.segment.index}"
        return ProviderOutput(text=f"{self.name}:{request.payload.uri}{suffix}")


def build_settings(db_path: Path, **retry_overrides: object) -> Settings:
    retry = RetrySettings(
        max_attempts=3,
        base_delay_seconds=0.0,
        backoff_multiplier=2.0,
        max_delay_seconds=3600.0,
        lock_duration_seconds=300.0,
        heartbeat_interval_seconds=30.0,
        stall_ceiling=2,
        stall_interval_seconds=1.0,
    )
    for key, value in retry_overrides.items():
        setattr(retry, key, value)
    return Settings(
        db_path=db_path,
        retry=retry,
        worker=WorkerSettings(slots=2, poll_interval_seconds=0.01, chunk_parallelism=2),
        admission=AdmissionSettings(rate_limit_requests=100, rate_limit_window_seconds=60.0),
        tiers=TierSettings(
            tiers={
                "free": TierSpec(
                    max_hours_per_period=5.0,
                    max_jobs_per_period=10,
                    max_payload_bytes=100 * MB,
                    max_payload_seconds=3600,
                    priority=1,
                    max_concurrent_jobs=1,
                ),
                "pro": TierSpec(
                    max_hours_per_period=50.0,
                    max_jobs_per_period=500,
                    max_payload_bytes=250 * MB,
                    max_payload_seconds=3 * 3600,
                    priority=5,
                    max_concurrent_jobs=3,
                ),
                "enterprise": TierSpec(
                    max_hours_per_period=None,
                    max_jobs_per_period=None,
                    max_payload_bytes=500 * MB,
                    max_payload_seconds=4 * 3600,
                    priority=10,
                    max_concurrent_jobs=10,
                ),
            },
            owner_tiers={"pro-owner": "pro", "ent-owner": "enterprise"},
            default_tier="free",
        ),
        providers=ProviderSettings(
            providers={
                "primary": ProviderSpec(max_segment_bytes=50 * MB),
                "fallback": ProviderSpec(max_segment_bytes=10 * MB, max_segment_seconds=600),
            },
            routes={"default": {kind: ("primary", "fallback") for kind in JOB_KIND_NAMES}},
        ),
    )


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "pipeline.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    return build_settings(db_path)


@pytest.fixture()
def providers() -> dict[str, ScriptedProvider]:
    return {
        "primary": ScriptedProvider("primary", limits=PRIMARY_LIMITS),
        "fallback": ScriptedProvider("fallback", limits=FALLBACK_LIMITS),
    }


@pytest.fixture()
def service(
    settings: Settings,
    repository: JobRepository,
    providers: dict[str, ScriptedProvider],
) -> PipelineService:
    return PipelineService(settings=settings, repository=repository, providers=providers)


@pytest.fixture()
def job_create() -> Callable[..., JobCreate]:
    def _factory(  # noqa: PLR0913
        owner_id: str = "owner-1",
        *,
        kind: JobKind = JobKind.TRANSCRIBE,
        priority: int = 1,
        max_attempts: int = 3,
        max_concurrent: int = 1,
        size_bytes: int = 1 * MB,
        duration_seconds: float | None = 60.0,
        payload_format: str = "mp3",
        follow_ups: tuple[JobKind, ...] = (),
    ) -> JobCreate:
        return JobCreate(
            owner_id=owner_id,
            kind=kind,
            tier="free",
            priority=priority,
            payload=PayloadDescriptor(
                uri=f"s3://media/{owner_id}.{payload_format}",
                size_bytes=size_bytes,
                format=payload_format,
                duration_seconds=duration_seconds,
            ),
            estimated_units=(duration_seconds or 0) / 3600,
            max_attempts=max_attempts,
            max_concurrent=max_concurrent,
            follow_ups=follow_ups,
        )

    return _factory
