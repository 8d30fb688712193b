"""Deterministic local provider for smoke runs and development."""

from __future__ import annotations

from transcribe_pipeline.pipeline.errors import ProviderUnavailableError
from transcribe_pipeline.pipeline.providers.base import ProviderLimits, ProviderOutput, ProviderRequest


class EchoProvider:
    """Return a text rendering of the request instead of calling a vendor."""

    def __init__(self, *, name: str, limits: ProviderLimits, enabled: bool = True) -> None:
        self.name = name
        self.limits = limits
        self.enabled = enabled

    def is_available(self) -> bool:
        return self.enabled

    def process(self, request: ProviderRequest) -> ProviderOutput:
        if not self.enabled:
            raise ProviderUnavailableError(f"{self.name} is disabled", provider=self.name)
        segment = request.segment
        if segment is None:
            text = f"{request.kind.value}:{request.payload.uri}"
        else:
            text = (
                f"{request.kind.value}:{request.payload.uri}"
                f"#{segment.index}[{segment.start_byte}:{segment.end_byte}]"
            )
        return ProviderOutput(text=text, metadata={"provider": self.name})
