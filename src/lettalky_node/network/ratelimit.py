"""Per-client request rate limiting (sliding window)."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable


@dataclass
class RateLimitConfig:
    """Request budgets, per client address."""

    max_requests: int = 200
    window_seconds: float = 15 * 60.0
    max_registrations: int = 10
    registration_window_seconds: float = 60.0


class RateLimiter:
    """Allows at most ``max_requests`` hits per key within a rolling window."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}

    def allow(self, key: str) -> bool:
        """Record a hit for *key*; False if the budget is already spent."""
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            self._expire(hits, now)
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def retry_after(self, key: str) -> float:
        """Seconds until *key* may make another request (0 if it may now)."""
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return 0.0
            self._expire(hits, now)
            if len(hits) < self.max_requests:
                return 0.0
            return max(0.0, hits[0] + self.window_seconds - now)

    def remaining(self, key: str) -> int:
        """Hits *key* may still make in the current window."""
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return self.max_requests
            self._expire(hits, now)
            return max(0, self.max_requests - len(hits))

    def reset_after(self, key: str) -> float:
        """Seconds until the oldest hit of *key* leaves the window."""
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return 0.0
            self._expire(hits, now)
            if not hits:
                return 0.0
            return max(0.0, hits[0] + self.window_seconds - now)

    def cleanup(self) -> int:
        """Forget keys with no hits left in the window.

        Returns:
            Number of keys removed.
        """
        now = self._clock()
        with self._lock:
            idle = []
            for key, hits in self._hits.items():
                self._expire(hits, now)
                if not hits:
                    idle.append(key)
            for key in idle:
                del self._hits[key]
        return len(idle)

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def _expire(self, hits: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
