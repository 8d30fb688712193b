from __future__ import annotations

import dataclasses
import time
from collections.abc import Callable

import allure
import pytest

from transcribe_pipeline.pipeline.errors import LeaseLostError
from transcribe_pipeline.pipeline.models import (
    FailureClass,
    JobCreate,
    JobKind,
    JobView,
    PayloadDescriptor,
)
from transcribe_pipeline.pipeline.providers.base import ProviderLimits, ProviderOutput, ProviderRequest
from transcribe_pipeline.pipeline.repository import JobRepository
from transcribe_pipeline.pipeline.routing import ProviderRoute
from transcribe_pipeline.pipeline.strategies import (
    ChunkedStrategy,
    WholeFileStrategy,
    plan_segments,
    select_strategy,
)
from conftest import FALLBACK_LIMITS, MB, PRIMARY_LIMITS, ScriptedProvider

pytestmark = [
    allure.epic("Worker Pool"),
    allure.feature("Chunking & Fallback Strategies"),
]

ROUTE = ProviderRoute(primary="primary", fallback="fallback")


class RecordingContext:
    def __init__(self) -> None:
        self.progress: list[int] = []
        self.lost = False

    def ensure_lease(self) -> None:
        if self.lost:
            raise LeaseLostError("lease reclaimed")

    def report_progress(self, percent: int, message: str | None = None) -> None:
        self.progress.append(percent)


@pytest.fixture()
def claimed_job(
    repository: JobRepository,
    job_create: Callable[..., JobCreate],
) -> Callable[..., JobView]:
    def _factory(**kwargs: object) -> JobView:
        repository.enqueue_job(job_create(**kwargs))
        job = repository.claim_next_ready_job(worker_id="w", lock_duration_seconds=60)
        assert job is not None
        return job

    return _factory


def _providers(*, primary_available: bool = True) -> dict[str, ScriptedProvider]:
    return {
        "primary": ScriptedProvider(
            "primary",
            limits=PRIMARY_LIMITS,
            available=primary_available,
        ),
        "fallback": ScriptedProvider("fallback", limits=FALLBACK_LIMITS),
    }


def test_plan_segments_cuts_contiguous_pieces_by_size() -> None:
    payload = PayloadDescriptor(uri="s3://a.wav", size_bytes=25 * MB, format="wav")

    segments = plan_segments(payload, ProviderLimits(max_segment_bytes=10 * MB))

    assert len(segments) == 3
    assert segments[0].start_byte == 0
    assert segments[-1].end_byte == 25 * MB
    for previous, current in zip(segments, segments[1:], strict=False):
        assert previous.end_byte == current.start_byte
    assert all(segment.size_bytes <= 10 * MB for segment in segments)


def test_plan_segments_respects_time_limit() -> None:
    payload = PayloadDescriptor(uri="s3://a.mp3", size_bytes=1 * MB, format="mp3")

    segments = plan_segments(
        payload,
        ProviderLimits(max_segment_bytes=10 * MB, max_segment_seconds=600),
        duration_seconds=1500,
    )

    assert [segment.index for segment in segments] == [0, 1, 2]
    assert segments[0].start_seconds == 0
    assert segments[1].start_seconds == pytest.approx(500)
    assert segments[-1].end_seconds == pytest.approx(1500)


def test_plan_segments_keeps_empty_payload_whole() -> None:
    payload = PayloadDescriptor(uri="s3://empty.mp3", size_bytes=0, format="mp3")

    segments = plan_segments(payload, ProviderLimits(max_segment_bytes=1))

    assert len(segments) == 1


def test_primary_takes_whole_file_when_available_and_fits(
    claimed_job: Callable[..., JobView],
) -> None:
    selection = select_strategy(claimed_job(), route=ROUTE, providers=_providers())

    assert isinstance(selection.strategy, WholeFileStrategy)
    assert selection.strategy.provider.name == "primary"
    assert selection.to_event_details() == {
        "strategy": "whole_file",
        "primary_available": True,
        "fits_primary": True,
        "fits_fallback": True,
    }


def test_unavailable_primary_falls_back_whole_file(
    claimed_job: Callable[..., JobView],
) -> None:
    selection = select_strategy(
        claimed_job(),
        route=ROUTE,
        providers=_providers(primary_available=False),
    )

    assert isinstance(selection.strategy, WholeFileStrategy)
    assert selection.strategy.provider.name == "fallback"
    assert not selection.primary_available


def test_retryable_failure_on_primary_switches_to_fallback(
    claimed_job: Callable[..., JobView],
) -> None:
    job = dataclasses.replace(
        claimed_job(),
        last_provider="primary",
        failure_class=FailureClass.PROVIDER_TIMEOUT,
    )

    selection = select_strategy(job, route=ROUTE, providers=_providers())

    assert selection.strategy.provider.name == "fallback"


def test_stall_on_primary_keeps_primary(claimed_job: Callable[..., JobView]) -> None:
    job = dataclasses.replace(
        claimed_job(),
        last_provider="primary",
        failure_class=FailureClass.STALLED,
    )

    selection = select_strategy(job, route=ROUTE, providers=_providers())

    assert selection.strategy.provider.name == "primary"


def test_payload_too_large_for_fallback_is_chunked(
    claimed_job: Callable[..., JobView],
) -> None:
    selection = select_strategy(
        claimed_job(size_bytes=20 * MB),
        route=ROUTE,
        providers=_providers(primary_available=False),
        chunk_parallelism=3,
    )

    assert isinstance(selection.strategy, ChunkedStrategy)
    assert selection.strategy.provider.name == "fallback"
    assert selection.strategy.parallelism == 3
    assert selection.fits_primary
    assert not selection.fits_fallback


def test_payload_too_large_for_both_is_chunked_on_fallback(
    claimed_job: Callable[..., JobView],
) -> None:
    selection = select_strategy(
        claimed_job(size_bytes=60 * MB, duration_seconds=3000),
        route=ROUTE,
        providers=_providers(),
    )

    assert isinstance(selection.strategy, ChunkedStrategy)
    assert not selection.fits_primary


def test_whole_file_reports_progress_around_the_call(
    claimed_job: Callable[..., JobView],
) -> None:
    provider = ScriptedProvider(
        "primary",
        script=[ProviderOutput(text="hello", units=0.01, metadata={"lang": "en"})],
    )
    context = RecordingContext()

    result = WholeFileStrategy(provider).execute(claimed_job(), context)

    assert context.progress == [10, 60]
    assert result.text == "hello"
    assert result.units == 0.01
    assert result.segments == 1
    assert result.segment_metadata == [{"lang": "en"}]


def test_chunks_are_recombined_in_segment_order(claimed_job: Callable[..., JobView]) -> None:
    def _slow_first_segments(request: ProviderRequest) -> None:
        assert request.segment is not None
        time.sleep(0.05 * (3 - request.segment.index))

    provider = ScriptedProvider("fallback", limits=FALLBACK_LIMITS, on_call=_slow_first_segments)
    job = claimed_job(size_bytes=25 * MB, duration_seconds=300)
    context = RecordingContext()

    result = ChunkedStrategy(provider, parallelism=3).execute(job, context)

    assert result.segments == 3
    assert result.strategy == "chunked"
    assert result.text.split("\n") == [
        f"fallback:{job.payload.uri}#0",
        f"fallback:{job.payload.uri}#1",
        f"fallback:{job.payload.uri}#2",
    ]
    assert result.units is None
    assert context.progress[0] == 10
    assert context.progress[-1] == 60
    assert context.progress == sorted(context.progress)


def test_chunk_units_are_summed_when_every_segment_reports_them(
    claimed_job: Callable[..., JobView],
) -> None:
    provider = ScriptedProvider(
        "fallback",
        limits=FALLBACK_LIMITS,
        script=[ProviderOutput(text="a", units=0.1), ProviderOutput(text="b", units=0.2)],
    )

    result = ChunkedStrategy(provider).execute(
        claimed_job(size_bytes=15 * MB),
        RecordingContext(),
    )

    assert result.text == "a\nb"
    assert result.units == pytest.approx(0.3)


def test_lost_lease_stops_chunking_at_segment_boundary(
    claimed_job: Callable[..., JobView],
) -> None:
    context = RecordingContext()

    def _lose_lease(_: ProviderRequest) -> None:
        context.lost = True

    provider = ScriptedProvider("fallback", limits=FALLBACK_LIMITS, on_call=_lose_lease)

    with pytest.raises(LeaseLostError):
        ChunkedStrategy(provider, parallelism=1).execute(
            claimed_job(size_bytes=25 * MB),
            context,
        )

    assert len(provider.requests) == 1


def test_chunk_failure_propagates(claimed_job: Callable[..., JobView]) -> None:
    provider = ScriptedProvider(
        "fallback",
        limits=FALLBACK_LIMITS,
        script=[ProviderOutput(text="a"), TimeoutError("segment timed out")],
    )

    with pytest.raises(TimeoutError):
        ChunkedStrategy(provider).execute(claimed_job(size_bytes=15 * MB), RecordingContext())


def test_kind_routing_uses_job_kind(claimed_job: Callable[..., JobView]) -> None:
    job = claimed_job(kind=JobKind.SUMMARIZE, payload_format="json", duration_seconds=None)

    selection = select_strategy(job, route=ROUTE, providers=_providers())

    assert selection.strategy.provider.name == "primary"
