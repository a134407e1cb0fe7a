"""
In-memory sliding window rate limiter.

Each provider gateway owns one limiter sized to the backend's per-minute
quota. Before every call:
1. timestamps older than the window (60s) are evicted
2. if the window already holds ``limit`` timestamps the call is rejected
   with RateLimitExceededError (retryable, carries the wait time)
3. otherwise the current timestamp is recorded

After a successful admission the window never holds more than ``limit``
entries. Single process only; there is no cross-process coordination.
"""
import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, Dict, Optional

from codeintel.core.errors import RateLimitExceededError
from codeintel.core.logging import get_logger
from codeintel.core.metrics import record_rate_limit_hit

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """Counts admissions whose timestamps fall within the trailing window."""

    def __init__(
        self,
        name: str,
        limit: int,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = Lock()
        self._timestamps: Deque[float] = deque()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def acquire(self, request_id: Optional[str] = None) -> None:
        """
        Admit one call or raise RateLimitExceededError.

        The evict/check/record sequence runs under a single lock so concurrent
        callers cannot overshoot the limit.
        """
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._timestamps) >= self.limit:
                oldest = self._timestamps[0]
                retry_after_ms = max(0.0, (oldest + self.window_seconds - now) * 1000.0)
                rejected = True
            else:
                self._timestamps.append(now)
                rejected = False

        if rejected:
            record_rate_limit_hit(self.name)
            logger.warning(
                "rate_limit_exceeded",
                provider=self.name,
                limit=self.limit,
                window_seconds=self.window_seconds,
                retry_after_ms=retry_after_ms,
            )
            raise RateLimitExceededError(
                f"Rate limit exceeded for {self.name}. Try again in {retry_after_ms / 1000.0:.1f}s",
                retry_after_ms=retry_after_ms,
                request_id=request_id,
            )

    def remaining(self) -> int:
        """Admissions still available in the current window."""
        with self._lock:
            self._evict(self._clock())
            return self.limit - len(self._timestamps)

    def reset(self) -> None:
        with self._lock:
            self._timestamps.clear()

    def get_metrics(self) -> Dict[str, float]:
        with self._lock:
            self._evict(self._clock())
            return {
                "name": self.name,
                "limit": self.limit,
                "window_seconds": self.window_seconds,
                "in_window": len(self._timestamps),
            }
