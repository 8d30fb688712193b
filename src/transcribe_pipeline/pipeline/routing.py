"""Tier and job-kind routing to a primary and fallback provider."""

from __future__ import annotations

from dataclasses import dataclass

from transcribe_pipeline.config import ProviderSettings
from transcribe_pipeline.pipeline.models import JobKind


@dataclass(slots=True, frozen=True)
class ProviderRoute:
    """Provider pair for one tier and job kind."""

    primary: str
    fallback: str


@dataclass(slots=True)
class ProviderRouting:
    """Resolve routes; tiers without an entry use the `default` table."""

    routes: dict[str, dict[str, ProviderRoute]]

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> ProviderRouting:
        return cls(
            routes={
                tier: {
                    kind: ProviderRoute(primary=primary, fallback=fallback)
                    for kind, (primary, fallback) in kinds.items()
                }
                for tier, kinds in settings.routes.items()
            },
        )

    def route_for(self, *, tier: str, kind: JobKind) -> ProviderRoute:
        tier_routes = self.routes.get(tier, {})
        route = tier_routes.get(kind.value)
        if route is not None:
            return route
        default = self.routes.get("default", {}).get(kind.value)
        if default is None:
            raise ValueError(f"No provider route for tier={tier!r}, kind={kind.value!r}")
        return default
