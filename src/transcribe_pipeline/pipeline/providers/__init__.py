"""Processing provider adapters and the provider registry."""

from __future__ import annotations

from transcribe_pipeline.config import ProviderSettings
from transcribe_pipeline.pipeline.providers.base import (
    Provider,
    ProviderLimits,
    ProviderOutput,
    ProviderRequest,
    Segment,
)
from transcribe_pipeline.pipeline.providers.echo_provider import EchoProvider
from transcribe_pipeline.pipeline.providers.http_provider import HttpProvider

__all__ = [
    "EchoProvider",
    "HttpProvider",
    "Provider",
    "ProviderLimits",
    "ProviderOutput",
    "ProviderRequest",
    "Segment",
    "build_providers",
]


def build_providers(settings: ProviderSettings) -> dict[str, Provider]:
    """Instantiate every configured provider by name."""

    providers: dict[str, Provider] = {}
    for name, spec in settings.providers.items():
        limits = ProviderLimits(
            max_segment_bytes=spec.max_segment_bytes,
            max_segment_seconds=spec.max_segment_seconds,
        )
        if spec.backend == "http":
            if not spec.endpoint:
                raise ValueError(f"HTTP provider {name!r} requires an endpoint.")
            providers[name] = HttpProvider(
                name=name,
                limits=limits,
                endpoint=spec.endpoint,
                timeout_seconds=spec.timeout_seconds,
                enabled=spec.enabled,
            )
        else:
            providers[name] = EchoProvider(name=name, limits=limits, enabled=spec.enabled)
    return providers
