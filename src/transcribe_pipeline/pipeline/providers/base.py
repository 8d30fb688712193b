"""Provider contract shared by processing strategies."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from transcribe_pipeline.pipeline.models import JobKind, PayloadDescriptor


@dataclass(slots=True, frozen=True)
class ProviderLimits:
    """Documented per-call limits; `None` means no limit on that axis."""

    max_segment_bytes: int | None = None
    max_segment_seconds: float | None = None

    def fits(self, *, size_bytes: int, duration_seconds: float | None) -> bool:
        if self.max_segment_bytes is not None and size_bytes > self.max_segment_bytes:
            return False
        return not (
            self.max_segment_seconds is not None
            and duration_seconds is not None
            and duration_seconds > self.max_segment_seconds
        )


@dataclass(slots=True, frozen=True)
class Segment:
    """Contiguous slice of a payload, addressed by byte and time ranges."""

    index: int
    start_byte: int
    end_byte: int
    start_seconds: float | None = None
    end_seconds: float | None = None

    @property
    def size_bytes(self) -> int:
        return self.end_byte - self.start_byte

    def to_dict(self) -> dict[str, object]:
        return {
            "index": self.index,
            "start_byte": self.start_byte,
            "end_byte": self.end_byte,
            "start_seconds": self.start_seconds,
            "end_seconds": self.end_seconds,
        }


@dataclass(slots=True)
class ProviderRequest:
    """One provider call: a whole payload or one segment of it."""

    job_id: str
    kind: JobKind
    payload: PayloadDescriptor
    segment: Segment | None = None


@dataclass(slots=True)
class ProviderOutput:
    """Provider response; `units` overrides the admission estimate when reported."""

    text: str
    units: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class Provider(Protocol):
    """External processing service.

    `process` raises `ProviderRetryableError` for transient failures and
    `ProviderFatalError` when the input itself cannot be processed.
    """

    name: str
    limits: ProviderLimits

    def is_available(self) -> bool: ...

    def process(self, request: ProviderRequest) -> ProviderOutput: ...
