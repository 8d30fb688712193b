"""Per-caller sliding-window submission limiter."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable


class SlidingWindowRateLimiter:
    """Allow at most `max_requests` per caller within any `window_seconds` span.

    State is process-local; horizontally scaled deployments need a shared store.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1.")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0.")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}

    def allow(self, caller_id: str) -> bool:
        """Record a request and return whether it fits in the window."""

        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            hits = self._hits.setdefault(caller_id, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def retry_after(self, caller_id: str) -> float:
        """Seconds until the caller regains a slot (0 when one is free)."""

        now = self._clock()
        with self._lock:
            hits = self._hits.get(caller_id)
            if not hits or len(hits) < self.max_requests:
                return 0.0
            return max(0.0, hits[0] + self.window_seconds - now)
