"""Sliding-window limiter for connection attempts, keyed by client identity."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable


class ConnectionRateLimiter:
    """Allow at most ``max_requests`` attempts per ``window_seconds`` per client."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()

    def check(self, client_id: str) -> tuple[bool, float]:
        """Record an attempt.

        Returns:
            (allowed, retry_after_seconds)
        """
        with self._lock:
            now = self._clock()
            hits = self._hits.setdefault(client_id, deque())
            cutoff = now - self.window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= self.max_requests:
                return False, hits[0] + self.window_seconds - now

            hits.append(now)
            self._cleanup(cutoff)
            return True, 0.0

    def _cleanup(self, cutoff: float) -> None:
        """Remove clients with no attempts left in the window."""
        stale = [k for k, v in self._hits.items() if not v or v[-1] <= cutoff]
        for k in stale:
            del self._hits[k]
