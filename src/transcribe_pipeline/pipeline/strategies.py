"""Processing strategies: whole-file on one provider, or chunked on the fallback."""

from __future__ import annotations

import logging
import math
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Protocol

from transcribe_pipeline.pipeline.admission import effective_duration_seconds
from transcribe_pipeline.pipeline.models import (
    RETRYABLE_FAILURE_CLASSES,
    JobKind,
    JobView,
    PayloadDescriptor,
)
from transcribe_pipeline.pipeline.providers.base import (
    Provider,
    ProviderLimits,
    ProviderOutput,
    ProviderRequest,
    Segment,
)
from transcribe_pipeline.pipeline.routing import ProviderRoute

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_PROCESSED = 60
SEGMENT_SEPARATOR = "\n"


class AttemptContext(Protocol):
    """Hooks a running attempt uses to talk back to its worker."""

    def ensure_lease(self) -> None:
        """Raise `LeaseLostError` once the attempt no longer owns the job."""

    def report_progress(self, percent: int, message: str | None = None) -> None: ...


@dataclass(slots=True)
class StrategyResult:
    """Recombined output of one attempt."""

    provider: str
    strategy: str
    text: str
    units: float | None
    segments: int
    segment_metadata: list[dict[str, object]] = field(default_factory=list)


class ProcessingStrategy(Protocol):
    name: str
    provider: Provider

    def execute(self, job: JobView, context: AttemptContext) -> StrategyResult: ...


class WholeFileStrategy:
    """Send the entire payload to one provider in a single call."""

    name = "whole_file"

    def __init__(self, provider: Provider) -> None:
        self.provider = provider

    def execute(self, job: JobView, context: AttemptContext) -> StrategyResult:
        context.ensure_lease()
        context.report_progress(PROGRESS_STARTED, f"processing with {self.provider.name}")
        output = self.provider.process(
            ProviderRequest(job_id=job.job_id, kind=job.kind, payload=job.payload),
        )
        context.ensure_lease()
        context.report_progress(PROGRESS_PROCESSED, "processing finished")
        return StrategyResult(
            provider=self.provider.name,
            strategy=self.name,
            text=output.text,
            units=output.units,
            segments=1,
            segment_metadata=[output.metadata] if output.metadata else [],
        )


class ChunkedStrategy:
    """Split the payload into provider-sized segments and recombine them in order.

    Segment boundaries are cut by size and time only, so words spanning a cut may
    be split or repeated in the joined text.
    """

    name = "chunked"

    def __init__(self, provider: Provider, *, parallelism: int = 1) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1.")
        self.provider = provider
        self.parallelism = parallelism

    def execute(self, job: JobView, context: AttemptContext) -> StrategyResult:
        segments = plan_segments(
            job.payload,
            self.provider.limits,
            duration_seconds=_duration_hint(job),
        )
        context.ensure_lease()
        context.report_progress(
            PROGRESS_STARTED,
            f"processing {len(segments)} segments with {self.provider.name}",
        )
        outputs: dict[int, ProviderOutput] = {}
        with ThreadPoolExecutor(
            max_workers=min(self.parallelism, len(segments)),
            thread_name_prefix=f"chunk-{job.job_id[:8]}",
        ) as executor:
            pending: dict[Future[ProviderOutput], Segment] = {}
            queue = list(segments)
            try:
                while queue or pending:
                    while queue and len(pending) < self.parallelism:
                        segment = queue.pop(0)
                        context.ensure_lease()
                        future = executor.submit(
                            self.provider.process,
                            ProviderRequest(
                                job_id=job.job_id,
                                kind=job.kind,
                                payload=job.payload,
                                segment=segment,
                            ),
                        )
                        pending[future] = segment
                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        segment = pending.pop(future)
                        outputs[segment.index] = future.result()
                    context.ensure_lease()
                    context.report_progress(
                        PROGRESS_STARTED
                        + (PROGRESS_PROCESSED - PROGRESS_STARTED) * len(outputs) // len(segments),
                        f"{len(outputs)}/{len(segments)} segments processed",
                    )
            except BaseException:
                for future in pending:
                    future.cancel()
                raise

        ordered = [outputs[segment.index] for segment in segments]
        units: float | None = None
        if all(output.units is not None for output in ordered):
            units = sum(output.units or 0.0 for output in ordered)
        return StrategyResult(
            provider=self.provider.name,
            strategy=self.name,
            text=SEGMENT_SEPARATOR.join(output.text for output in ordered),
            units=units,
            segments=len(segments),
            segment_metadata=[output.metadata for output in ordered if output.metadata],
        )


def plan_segments(
    payload: PayloadDescriptor,
    limits: ProviderLimits,
    *,
    duration_seconds: float | None = None,
) -> list[Segment]:
    """Cut a payload into equal contiguous segments that fit the provider limits."""

    size = max(payload.size_bytes, 0)
    count = 1
    if limits.max_segment_bytes is not None and limits.max_segment_bytes > 0:
        count = max(count, math.ceil(size / limits.max_segment_bytes))
    if (
        limits.max_segment_seconds is not None
        and limits.max_segment_seconds > 0
        and duration_seconds is not None
    ):
        count = max(count, math.ceil(duration_seconds / limits.max_segment_seconds))
    count = max(1, min(count, size)) if size > 0 else 1

    segments: list[Segment] = []
    for index in range(count):
        start_byte = size * index // count
        end_byte = size * (index + 1) // count
        start_seconds = end_seconds = None
        if duration_seconds is not None:
            start_seconds = duration_seconds * index / count
            end_seconds = duration_seconds * (index + 1) / count
        segments.append(
            Segment(
                index=index,
                start_byte=start_byte,
                end_byte=end_byte,
                start_seconds=start_seconds,
                end_seconds=end_seconds,
            ),
        )
    return segments


@dataclass(slots=True)
class StrategySelection:
    """Chosen strategy plus the facts that drove the choice, for the audit trail."""

    strategy: ProcessingStrategy
    primary_available: bool
    fits_primary: bool
    fits_fallback: bool

    def to_event_details(self) -> dict[str, object]:
        return {
            "strategy": self.strategy.name,
            "primary_available": self.primary_available,
            "fits_primary": self.fits_primary,
            "fits_fallback": self.fits_fallback,
        }


def select_strategy(
    job: JobView,
    *,
    route: ProviderRoute,
    providers: dict[str, Provider],
    chunk_parallelism: int = 1,
) -> StrategySelection:
    """Pick the strategy for one attempt.

    The primary is skipped when it reports itself unavailable or the previous
    attempt failed retryably on it. The fallback takes the whole payload when it
    fits its limits and chunks it otherwise.
    """

    primary = providers[route.primary]
    fallback = providers[route.fallback]
    duration = _duration_hint(job)

    primary_failed_last = (
        job.last_provider == primary.name
        and job.failure_class is not None
        and job.failure_class in RETRYABLE_FAILURE_CLASSES
    )
    primary_available = primary.is_available() and not primary_failed_last
    fits_primary = primary.limits.fits(size_bytes=job.payload.size_bytes, duration_seconds=duration)
    fits_fallback = fallback.limits.fits(
        size_bytes=job.payload.size_bytes,
        duration_seconds=duration,
    )

    strategy: ProcessingStrategy
    if primary_available and fits_primary:
        strategy = WholeFileStrategy(primary)
    elif fits_fallback:
        strategy = WholeFileStrategy(fallback)
    else:
        strategy = ChunkedStrategy(fallback, parallelism=chunk_parallelism)
    logger.debug(
        "Job %s attempt %s uses %s on %s",
        job.job_id,
        job.attempts,
        strategy.name,
        strategy.provider.name,
    )
    return StrategySelection(
        strategy=strategy,
        primary_available=primary_available,
        fits_primary=fits_primary,
        fits_fallback=fits_fallback,
    )


def _duration_hint(job: JobView) -> float | None:
    if job.kind is JobKind.TRANSCRIBE:
        return effective_duration_seconds(job.payload)
    return job.payload.duration_seconds
