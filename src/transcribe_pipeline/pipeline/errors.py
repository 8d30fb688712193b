"""Exceptions raised across the job pipeline."""

from __future__ import annotations


class JobNotFoundError(RuntimeError):
    """Raised when a job id does not exist in the job store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(RuntimeError):
    """Raised when a status change violates the job lifecycle."""


class LeaseLostError(RuntimeError):
    """Raised inside an attempt once its lease was reclaimed by the stall monitor."""


class QuotaStoreError(RuntimeError):
    """Raised when the quota ledger cannot be read or persisted."""


class ProviderError(Exception):
    """Base class for provider call failures."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderRetryableError(ProviderError):
    """Transient provider failure: timeout, network error, rate limit."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        rate_limited: bool = False,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message, provider=provider)
        self.rate_limited = rate_limited
        self.timed_out = timed_out


class ProviderFatalError(ProviderError):
    """Content-level failure; retrying the same input cannot succeed."""


class ProviderUnavailableError(ProviderRetryableError):
    """Provider is switched off or unreachable before any work was sent."""


class ConnectionClosedError(RuntimeError):
    """Raised by a client connection that can no longer receive messages."""
