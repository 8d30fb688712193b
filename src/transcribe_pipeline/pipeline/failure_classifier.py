"""Deterministic provider failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from transcribe_pipeline.pipeline.errors import (
    ProviderFatalError,
    ProviderRetryableError,
)
from transcribe_pipeline.pipeline.models import RETRYABLE_FAILURE_CLASSES, FailureClass

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "bad gateway",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "502",
    "503",
    "504",
)
_CONTENT_INVALID_PATTERNS: tuple[str, ...] = (
    "unsupported format",
    "invalid audio",
    "corrupt",
    "could not decode",
    "no speech",
    "empty input",
)


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self, *, provider: str | None) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "provider": provider,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_error(error: BaseException) -> ProviderFailureClassification:
    """Classify a provider exception into a deterministic retry class.

    Typed provider errors keep their declared retryability; anything else is
    classified by message patterns and defaults to non-retryable.
    """

    if isinstance(error, ProviderRetryableError):
        if error.rate_limited:
            return ProviderFailureClassification(
                FailureClass.PROVIDER_RATE_LIMITED, "typed_rate_limited", None
            )
        if error.timed_out:
            return ProviderFailureClassification(
                FailureClass.PROVIDER_TIMEOUT, "typed_timeout", None
            )
        return ProviderFailureClassification(
            FailureClass.PROVIDER_TRANSIENT, "typed_retryable", None
        )
    if isinstance(error, ProviderFatalError):
        return ProviderFailureClassification(
            FailureClass.CONTENT_INVALID, "typed_fatal", None
        )
    if isinstance(error, TimeoutError):
        return ProviderFailureClassification(
            FailureClass.PROVIDER_TIMEOUT, "builtin_timeout", None
        )
    if isinstance(error, ConnectionError):
        return ProviderFailureClassification(
            FailureClass.PROVIDER_TRANSIENT, "builtin_connection", None
        )

    haystack = str(error).lower()
    pattern = _first_match(haystack, _CONTENT_INVALID_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            FailureClass.CONTENT_INVALID, "content_invalid", pattern
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            FailureClass.PROVIDER_RATE_LIMITED, "rate_limited", pattern
        )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(FailureClass.PROVIDER_TIMEOUT, "timeout", pattern)

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            FailureClass.PROVIDER_TRANSIENT, "generic_transient", pattern
        )

    return ProviderFailureClassification(
        FailureClass.PROVIDER_NON_RETRYABLE, "fallback_non_retryable", None
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
