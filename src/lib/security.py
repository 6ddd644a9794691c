"""
Security helpers for Receipt Insights.

Components:
- hash_uid: log-safe user identification
- RollingWindowRateLimiter: non-blocking sliding-window request budget
  for outbound calls to external services

Usage:
    from src.lib.security import RollingWindowRateLimiter, hash_uid

    limiter = RollingWindowRateLimiter(max_requests=100, window_seconds=60)
    if not limiter.try_acquire():
        ...  # fail fast, use the local fallback

    logger.info("processing receipts for %s", hash_uid(user_id))
"""

from __future__ import annotations

import hashlib
import time
from collections import deque
from collections.abc import Callable


def hash_uid(user_id: int) -> str:
    """Return a 12-char SHA-256 prefix for log-safe user identification."""
    return hashlib.sha256(str(user_id).encode()).hexdigest()[:12]


# ============================================
# Rate Limiter
# ============================================

class RollingWindowRateLimiter:
    """
    Sliding-window rate limiter for one external service.

    Each instance owns its own counter and clock, so separate services (or
    tests) never share state. Requests beyond the cap are rejected
    immediately instead of waiting for the window to move.

    Args:
        max_requests: Maximum requests allowed within the window.
        window_seconds: Window length in seconds.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 0:
            raise ValueError("max_requests must be >= 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: deque[float] = deque()

    def _evict_expired(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()

    def try_acquire(self) -> bool:
        """
        Record a request if the window still has room.

        Returns:
            True if the request may proceed, False if the cap is reached.
        """
        now = self._clock()
        self._evict_expired(now)
        if len(self._requests) >= self.max_requests:
            return False
        self._requests.append(now)
        return True

    def remaining(self) -> int:
        """Return how many requests are left in the current window."""
        self._evict_expired(self._clock())
        return max(0, self.max_requests - len(self._requests))

    def retry_after(self) -> float:
        """Seconds until the oldest request leaves the window (0 if room is left)."""
        now = self._clock()
        self._evict_expired(now)
        if len(self._requests) < self.max_requests or not self._requests:
            return 0.0
        return max(0.0, self._requests[0] + self.window_seconds - now)

    def reset(self) -> None:
        """Forget all recorded requests."""
        self._requests.clear()
