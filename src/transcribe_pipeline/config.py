"""Runtime configuration for admission, queueing, workers and providers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_MB = 1024 * 1024
_GB = 1024 * _MB

JOB_KIND_NAMES = ("transcribe", "summarize", "translate", "index")
PROVIDER_BACKENDS = ("echo", "http")


@dataclass(slots=True)
class RetrySettings:
    """Retry, lease and stall recovery timings."""

    max_attempts: int = 3
    base_delay_seconds: float = 60.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 3600.0
    lock_duration_seconds: float = 300.0
    heartbeat_interval_seconds: float | None = None
    stall_ceiling: int = 2
    stall_interval_seconds: float = 30.0


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool sizing and polling."""

    slots: int = 2
    poll_interval_seconds: float = 2.0
    chunk_parallelism: int = 1
    graceful_shutdown_seconds: int = 30
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class AdmissionSettings:
    """Submission rate limiting, independent of queue ordering."""

    rate_limit_requests: int = 10
    rate_limit_window_seconds: float = 60.0


@dataclass(slots=True)
class TierSpec:
    """Raw tier limits as configured."""

    max_hours_per_period: float | None
    max_jobs_per_period: float | None
    max_payload_bytes: int
    max_payload_seconds: float
    priority: int
    max_concurrent_jobs: int


def _default_tiers() -> dict[str, TierSpec]:
    return {
        "free": TierSpec(
            max_hours_per_period=5.0,
            max_jobs_per_period=10,
            max_payload_bytes=100 * _MB,
            max_payload_seconds=60 * 60,
            priority=1,
            max_concurrent_jobs=1,
        ),
        "pro": TierSpec(
            max_hours_per_period=50.0,
            max_jobs_per_period=500,
            max_payload_bytes=250 * _MB,
            max_payload_seconds=180 * 60,
            priority=5,
            max_concurrent_jobs=3,
        ),
        "enterprise": TierSpec(
            max_hours_per_period=None,
            max_jobs_per_period=None,
            max_payload_bytes=500 * _MB,
            max_payload_seconds=240 * 60,
            priority=10,
            max_concurrent_jobs=10,
        ),
    }


@dataclass(slots=True)
class TierSettings:
    """Tier table and owner assignments (billing is an external collaborator)."""

    tiers: dict[str, TierSpec] = field(default_factory=_default_tiers)
    owner_tiers: dict[str, str] = field(default_factory=dict)
    default_tier: str = "free"


@dataclass(slots=True)
class ProviderSpec:
    """One provider endpoint and its documented per-call limits."""

    backend: str = "echo"
    endpoint: str | None = None
    max_segment_bytes: int | None = None
    max_segment_seconds: float | None = None
    timeout_seconds: float = 120.0
    enabled: bool = True


def _default_providers() -> dict[str, ProviderSpec]:
    return {
        "whole-file-asr": ProviderSpec(max_segment_bytes=5 * _GB),
        "precision-asr": ProviderSpec(max_segment_bytes=5 * _GB),
        "chunked-asr": ProviderSpec(max_segment_bytes=25 * _MB, max_segment_seconds=20 * 60),
        "analysis-llm": ProviderSpec(max_segment_bytes=2 * _MB),
        "analysis-llm-lite": ProviderSpec(max_segment_bytes=256 * 1024),
    }


def _default_routes() -> dict[str, dict[str, tuple[str, str]]]:
    analysis = ("analysis-llm", "analysis-llm-lite")
    standard = {
        "transcribe": ("whole-file-asr", "chunked-asr"),
        "summarize": analysis,
        "translate": analysis,
        "index": analysis,
    }
    return {
        "default": standard,
        "enterprise": {**standard, "transcribe": ("precision-asr", "chunked-asr")},
    }


@dataclass(slots=True)
class ProviderSettings:
    """Provider registry and tier-based routing table."""

    providers: dict[str, ProviderSpec] = field(default_factory=_default_providers)
    routes: dict[str, dict[str, tuple[str, str]]] = field(default_factory=_default_routes)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".transcribe_pipeline.db")
    log_level: str = "WARNING"
    retry: RetrySettings = field(default_factory=RetrySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    admission: AdmissionSettings = field(default_factory=AdmissionSettings)
    tiers: TierSettings = field(default_factory=TierSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        heartbeat_raw = os.getenv("TRANSCRIBE_PIPELINE_HEARTBEAT_INTERVAL_SECONDS", "").strip()
        return cls(
            db_path=db_path
            or Path(os.getenv("TRANSCRIBE_PIPELINE_DB_PATH", ".transcribe_pipeline.db")),
            log_level=os.getenv("TRANSCRIBE_PIPELINE_LOG_LEVEL", "WARNING").strip().upper(),
            retry=RetrySettings(
                max_attempts=int(os.getenv("TRANSCRIBE_PIPELINE_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(
                    os.getenv("TRANSCRIBE_PIPELINE_RETRY_BASE_SECONDS", "60"),
                ),
                backoff_multiplier=float(
                    os.getenv("TRANSCRIBE_PIPELINE_BACKOFF_MULTIPLIER", "2.0"),
                ),
                max_delay_seconds=float(
                    os.getenv("TRANSCRIBE_PIPELINE_RETRY_MAX_SECONDS", "3600"),
                ),
                lock_duration_seconds=float(
                    os.getenv("TRANSCRIBE_PIPELINE_LOCK_DURATION_SECONDS", "300"),
                ),
                heartbeat_interval_seconds=float(heartbeat_raw) if heartbeat_raw else None,
                stall_ceiling=int(os.getenv("TRANSCRIBE_PIPELINE_STALL_CEILING", "2")),
                stall_interval_seconds=float(
                    os.getenv("TRANSCRIBE_PIPELINE_STALL_INTERVAL_SECONDS", "30"),
                ),
            ),
            worker=WorkerSettings(
                slots=int(os.getenv("TRANSCRIBE_PIPELINE_WORKER_SLOTS", "2")),
                poll_interval_seconds=float(
                    os.getenv("TRANSCRIBE_PIPELINE_WORKER_POLL_SECONDS", "2.0"),
                ),
                chunk_parallelism=int(os.getenv("TRANSCRIBE_PIPELINE_CHUNK_PARALLELISM", "1")),
                graceful_shutdown_seconds=int(
                    os.getenv("TRANSCRIBE_PIPELINE_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("TRANSCRIBE_PIPELINE_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            admission=AdmissionSettings(
                rate_limit_requests=int(
                    os.getenv("TRANSCRIBE_PIPELINE_RATE_LIMIT_REQUESTS", "10"),
                ),
                rate_limit_window_seconds=float(
                    os.getenv("TRANSCRIBE_PIPELINE_RATE_LIMIT_WINDOW_SECONDS", "60"),
                ),
            ),
            tiers=TierSettings(
                tiers=_collect_tiers(),
                owner_tiers=_collect_owner_tiers(),
                default_tier=os.getenv("TRANSCRIBE_PIPELINE_DEFAULT_TIER", "free").strip(),
            ),
            providers=ProviderSettings(
                providers=_collect_providers(),
                routes=_collect_routes(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent settings."""

        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Invalid TRANSCRIBE_PIPELINE_LOG_LEVEL: {self.log_level!r}")
        if self.retry.max_attempts < 1:
            raise ValueError("TRANSCRIBE_PIPELINE_MAX_ATTEMPTS must be >= 1.")
        if self.retry.lock_duration_seconds <= 0:
            raise ValueError("TRANSCRIBE_PIPELINE_LOCK_DURATION_SECONDS must be > 0.")
        if (
            self.retry.heartbeat_interval_seconds is not None
            and self.retry.heartbeat_interval_seconds >= self.retry.lock_duration_seconds
        ):
            raise ValueError(
                "TRANSCRIBE_PIPELINE_HEARTBEAT_INTERVAL_SECONDS must be shorter than "
                "TRANSCRIBE_PIPELINE_LOCK_DURATION_SECONDS.",
            )
        if self.retry.stall_ceiling < 1:
            raise ValueError("TRANSCRIBE_PIPELINE_STALL_CEILING must be >= 1.")
        if self.retry.stall_interval_seconds <= 0:
            raise ValueError("TRANSCRIBE_PIPELINE_STALL_INTERVAL_SECONDS must be > 0.")
        if self.worker.slots < 1:
            raise ValueError("TRANSCRIBE_PIPELINE_WORKER_SLOTS must be >= 1.")
        if self.worker.chunk_parallelism < 1:
            raise ValueError("TRANSCRIBE_PIPELINE_CHUNK_PARALLELISM must be >= 1.")
        if self.admission.rate_limit_requests < 1:
            raise ValueError("TRANSCRIBE_PIPELINE_RATE_LIMIT_REQUESTS must be >= 1.")
        if self.admission.rate_limit_window_seconds <= 0:
            raise ValueError("TRANSCRIBE_PIPELINE_RATE_LIMIT_WINDOW_SECONDS must be > 0.")
        if self.tiers.default_tier not in self.tiers.tiers:
            raise ValueError(
                f"TRANSCRIBE_PIPELINE_DEFAULT_TIER refers to unknown tier "
                f"{self.tiers.default_tier!r}.",
            )
        for owner_id, tier in self.tiers.owner_tiers.items():
            if tier not in self.tiers.tiers:
                raise ValueError(
                    f"TRANSCRIBE_PIPELINE_OWNER_TIERS maps {owner_id!r} to unknown tier {tier!r}.",
                )
        for name, spec in self.providers.providers.items():
            if spec.backend not in PROVIDER_BACKENDS:
                raise ValueError(f"Unsupported backend {spec.backend!r} for provider {name!r}.")
            if spec.backend == "http" and not spec.endpoint:
                raise ValueError(f"HTTP provider {name!r} requires an endpoint.")
        if "default" not in self.providers.routes:
            raise ValueError("TRANSCRIBE_PIPELINE_ROUTES_JSON must define a 'default' route.")
        for tier, kinds in self.providers.routes.items():
            for kind, (primary, fallback) in kinds.items():
                if kind not in JOB_KIND_NAMES:
                    raise ValueError(f"Route for tier {tier!r} names unknown job kind {kind!r}.")
                for provider in (primary, fallback):
                    if provider not in self.providers.providers:
                        raise ValueError(
                            f"Route {tier}/{kind} refers to unknown provider {provider!r}.",
                        )
        missing = set(JOB_KIND_NAMES) - set(self.providers.routes["default"])
        if missing:
            raise ValueError(
                f"Default route is missing job kinds: {', '.join(sorted(missing))}.",
            )


def _collect_tiers() -> dict[str, TierSpec]:
    raw = _load_json_env("TRANSCRIBE_PIPELINE_TIERS_JSON")
    if raw is None:
        return _default_tiers()
    if not isinstance(raw, dict):
        raise ValueError("TRANSCRIBE_PIPELINE_TIERS_JSON must be a JSON object.")
    tiers: dict[str, TierSpec] = {}
    for name, spec in raw.items():
        if not isinstance(spec, dict):
            raise ValueError(f"Tier {name!r} in TRANSCRIBE_PIPELINE_TIERS_JSON must be an object.")
        try:
            tiers[str(name)] = TierSpec(
                max_hours_per_period=_optional_float(spec.get("max_hours_per_period")),
                max_jobs_per_period=_optional_float(spec.get("max_jobs_per_period")),
                max_payload_bytes=int(spec["max_payload_bytes"]),
                max_payload_seconds=float(spec["max_payload_seconds"]),
                priority=int(spec["priority"]),
                max_concurrent_jobs=int(spec.get("max_concurrent_jobs", 1)),
            )
        except KeyError as error:
            raise ValueError(
                f"Tier {name!r} in TRANSCRIBE_PIPELINE_TIERS_JSON is missing {error.args[0]!r}.",
            ) from error
    return tiers


def _collect_owner_tiers() -> dict[str, str]:
    raw = os.getenv("TRANSCRIBE_PIPELINE_OWNER_TIERS", "").strip()
    if not raw:
        return {}

    assignments: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid TRANSCRIBE_PIPELINE_OWNER_TIERS entry: "
                f"{token!r}. Expected format '<owner_id>:<tier>'.",
            )
        owner_id, tier = token.rsplit(":", 1)
        assignments[owner_id.strip()] = tier.strip()
    return assignments


def _collect_providers() -> dict[str, ProviderSpec]:
    providers = _default_providers()
    raw = _load_json_env("TRANSCRIBE_PIPELINE_PROVIDERS_JSON")
    if raw is None:
        return providers
    if not isinstance(raw, dict):
        raise ValueError("TRANSCRIBE_PIPELINE_PROVIDERS_JSON must be a JSON object.")
    for name, spec in raw.items():
        if not isinstance(spec, dict):
            raise ValueError(f"Provider {name!r} in TRANSCRIBE_PIPELINE_PROVIDERS_JSON must be an object.")
        providers[str(name)] = ProviderSpec(
            backend=str(spec.get("backend", "echo")),
            endpoint=spec.get("endpoint"),
            max_segment_bytes=_optional_int(spec.get("max_segment_bytes")),
            max_segment_seconds=_optional_float(spec.get("max_segment_seconds")),
            timeout_seconds=float(spec.get("timeout_seconds", 120.0)),
            enabled=bool(spec.get("enabled", True)),
        )
    return providers


def _collect_routes() -> dict[str, dict[str, tuple[str, str]]]:
    routes = _default_routes()
    raw = _load_json_env("TRANSCRIBE_PIPELINE_ROUTES_JSON")
    if raw is None:
        return routes
    if not isinstance(raw, dict):
        raise ValueError("TRANSCRIBE_PIPELINE_ROUTES_JSON must be a JSON object.")
    for tier, kinds in raw.items():
        if not isinstance(kinds, dict):
            raise ValueError(f"Route for tier {tier!r} must map job kinds to [primary, fallback].")
        merged = dict(routes.get(str(tier), routes["default"]))
        for kind, pair in kinds.items():
            if not isinstance(pair, list | tuple) or len(pair) != 2:  # noqa: PLR2004
                raise ValueError(
                    f"Route {tier}/{kind} must be a [primary, fallback] pair, got {pair!r}.",
                )
            merged[str(kind)] = (str(pair[0]), str(pair[1]))
        routes[str(tier)] = merged
    return routes


def _load_json_env(name: str) -> Any:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid JSON in {name}: {error}") from error


def _optional_float(value: object) -> float | None:
    if value is None:
        return None
    return float(value)  # type: ignore[arg-type]


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)  # type: ignore[call-overload]
