from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from transcribe_pipeline.config import ProviderSpec, Settings
from transcribe_pipeline.pipeline.models import JobKind
from transcribe_pipeline.pipeline.quota import StaticTierSource
from transcribe_pipeline.pipeline.routing import ProviderRoute, ProviderRouting

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TRANSCRIBE_PIPELINE_DB_PATH",
        "TRANSCRIBE_PIPELINE_LOG_LEVEL",
        "TRANSCRIBE_PIPELINE_MAX_ATTEMPTS",
        "TRANSCRIBE_PIPELINE_HEARTBEAT_INTERVAL_SECONDS",
        "TRANSCRIBE_PIPELINE_LOCK_DURATION_SECONDS",
        "TRANSCRIBE_PIPELINE_OWNER_TIERS",
        "TRANSCRIBE_PIPELINE_TIERS_JSON",
        "TRANSCRIBE_PIPELINE_PROVIDERS_JSON",
        "TRANSCRIBE_PIPELINE_ROUTES_JSON",
        "TRANSCRIBE_PIPELINE_WORKER_SLOTS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_are_valid() -> None:
    settings = Settings.from_env()

    settings.validate()
    assert settings.db_path == Path(".transcribe_pipeline.db")
    assert settings.retry.max_attempts == 3
    assert settings.retry.stall_ceiling == 2
    assert settings.tiers.default_tier == "free"
    assert settings.providers.routes["enterprise"]["transcribe"] == ("precision-asr", "chunked-asr")


def test_env_overrides_timings_and_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TRANSCRIBE_PIPELINE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TRANSCRIBE_PIPELINE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("TRANSCRIBE_PIPELINE_HEARTBEAT_INTERVAL_SECONDS", "7.5")
    monkeypatch.setenv("TRANSCRIBE_PIPELINE_WORKER_SLOTS", "4")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.retry.max_attempts == 5
    assert settings.retry.heartbeat_interval_seconds == 7.5
    assert settings.worker.slots == 4
    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_owner_tiers_are_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSCRIBE_PIPELINE_OWNER_TIERS", "acme:enterprise, solo:pro,")

    settings = Settings.from_env()
    settings.validate()

    assert settings.tiers.owner_tiers == {"acme": "enterprise", "solo": "pro"}
    tiers = StaticTierSource(settings.tiers)
    assert tiers.tier_for("acme").priority == 10
    assert tiers.tier_for("acme").max_hours_per_period is None
    assert tiers.tier_for("stranger").name == "free"


def test_malformed_owner_tier_entry_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSCRIBE_PIPELINE_OWNER_TIERS", "acme-enterprise")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


def test_unknown_owner_tier_fails_validation(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSCRIBE_PIPELINE_OWNER_TIERS", "acme:platinum")

    with pytest.raises(ValueError, match="unknown tier 'platinum'"):
        Settings.from_env().validate()


def test_tiers_json_replaces_tier_table(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "TRANSCRIBE_PIPELINE_TIERS_JSON",
        json.dumps(
            {
                "free": {
                    "max_hours_per_period": 1,
                    "max_jobs_per_period": 3,
                    "max_payload_bytes": 1000,
                    "max_payload_seconds": 60,
                    "priority": 2,
                },
            },
        ),
    )

    settings = Settings.from_env()

    assert list(settings.tiers.tiers) == ["free"]
    assert settings.tiers.tiers["free"].max_concurrent_jobs == 1
    assert settings.tiers.tiers["free"].max_hours_per_period == 1.0


def test_tiers_json_requires_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSCRIBE_PIPELINE_TIERS_JSON", json.dumps({"free": {"priority": 1}}))

    with pytest.raises(ValueError, match="missing 'max_payload_bytes'"):
        Settings.from_env()


def test_routes_json_merges_into_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "TRANSCRIBE_PIPELINE_PROVIDERS_JSON",
        json.dumps({"vendor-x": {"backend": "http", "endpoint": "https://x.test/asr"}}),
    )
    monkeypatch.setenv(
        "TRANSCRIBE_PIPELINE_ROUTES_JSON",
        json.dumps({"pro": {"transcribe": ["vendor-x", "chunked-asr"]}}),
    )

    settings = Settings.from_env()
    settings.validate()

    routing = ProviderRouting.from_settings(settings.providers)
    assert routing.route_for(tier="pro", kind=JobKind.TRANSCRIBE) == ProviderRoute(
        "vendor-x",
        "chunked-asr",
    )
    assert routing.route_for(tier="pro", kind=JobKind.SUMMARIZE).primary == "analysis-llm"
    assert routing.route_for(tier="unknown", kind=JobKind.TRANSCRIBE).primary == "whole-file-asr"


def test_route_to_unknown_provider_fails_validation(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "TRANSCRIBE_PIPELINE_ROUTES_JSON",
        json.dumps({"default": {"index": ["ghost", "analysis-llm"]}}),
    )

    with pytest.raises(ValueError, match="unknown provider 'ghost'"):
        Settings.from_env().validate()


def test_invalid_json_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSCRIBE_PIPELINE_ROUTES_JSON", "{not json")

    with pytest.raises(ValueError, match="Invalid JSON in TRANSCRIBE_PIPELINE_ROUTES_JSON"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda s: setattr(s.retry, "max_attempts", 0), "MAX_ATTEMPTS"),
        (lambda s: setattr(s.retry, "heartbeat_interval_seconds", 400.0), "HEARTBEAT"),
        (lambda s: setattr(s.retry, "stall_ceiling", 0), "STALL_CEILING"),
        (lambda s: setattr(s.worker, "slots", 0), "WORKER_SLOTS"),
        (lambda s: setattr(s, "log_level", "CHATTY"), "LOG_LEVEL"),
        (
            lambda s: s.providers.providers.update(broken=ProviderSpec(backend="http")),
            "requires an endpoint",
        ),
        (
            lambda s: s.providers.providers.update(odd=ProviderSpec(backend="grpc")),
            "Unsupported backend",
        ),
    ],
)
def test_validate_rejects_inconsistent_settings(mutate, message: str) -> None:
    settings = Settings()
    mutate(settings)

    with pytest.raises(ValueError, match=message):
        settings.validate()
