"""Retry, lease and stall policy shared by the worker pool and stall monitor."""

from __future__ import annotations

from dataclasses import dataclass

from transcribe_pipeline.config import RetrySettings


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Explicit timing policy; tests construct it with compressed values."""

    max_attempts: int = 3
    base_delay_seconds: float = 60.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 3600.0
    lock_duration_seconds: float = 300.0
    heartbeat_interval_seconds: float | None = None
    stall_ceiling: int = 2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0.")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1.")
        if self.lock_duration_seconds <= 0:
            raise ValueError("lock_duration_seconds must be > 0.")
        if self.stall_ceiling < 1:
            raise ValueError("stall_ceiling must be >= 1.")
        if self.heartbeat_seconds >= self.lock_duration_seconds:
            raise ValueError("heartbeat interval must be shorter than lock_duration_seconds.")

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_delay_seconds=settings.max_delay_seconds,
            lock_duration_seconds=settings.lock_duration_seconds,
            heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
            stall_ceiling=settings.stall_ceiling,
        )

    @property
    def heartbeat_seconds(self) -> float:
        if self.heartbeat_interval_seconds is not None:
            return self.heartbeat_interval_seconds
        return self.lock_duration_seconds / 10

    def backoff_delay(self, *, attempts: int) -> float:
        """Delay before the next attempt after `attempts` failed attempts."""

        exponent = max(attempts - 1, 0)
        return min(
            self.max_delay_seconds,
            self.base_delay_seconds * (self.backoff_multiplier**exponent),
        )

    def retries_left(self, *, attempts: int, max_attempts: int) -> bool:
        return attempts < max_attempts
