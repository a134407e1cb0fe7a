"""
Circuit breaker for backend providers.

Each ProviderGateway wraps its transport in one breaker:
- Opens at a 50% error rate over the last 60 seconds (minimum 10 calls)
- Stays open for 30 seconds, rejecting calls without touching the network
- Half-open: lets every Nth call through as a probe; 3 successes out of
  5 probes close it again, otherwise it re-opens

Rejections raise CircuitBreakerOpenError which the gateway maps to
ModelUnavailable.
"""
import time
from collections import deque
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from codeintel.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised when the breaker rejects a call."""

    def __init__(self, name: str, state: CircuitState):
        super().__init__(f"Circuit breaker {name} is {state.value.upper()}")
        self.name = name
        self.state = state


class CircuitBreaker:

    def __init__(
        self,
        name: str,
        failure_threshold: float = 0.5,
        time_window_seconds: float = 60,
        open_duration_seconds: float = 30,
        half_open_probe_every: int = 10,
        half_open_probes: int = 5,
        half_open_successes_to_close: int = 3,
        min_requests_for_threshold: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.time_window_seconds = time_window_seconds
        self.open_duration_seconds = open_duration_seconds
        self.half_open_probe_every = max(1, half_open_probe_every)
        self.half_open_probes = half_open_probes
        self.half_open_successes_to_close = half_open_successes_to_close
        self.min_requests_for_threshold = min_requests_for_threshold
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._history: Deque[Tuple[float, bool]] = deque()  # (timestamp, success)
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._probe_successes = 0
        self._probe_failures = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._update_state()
            return self._state

    def _update_state(self) -> None:
        """Evict stale history and apply time/threshold transitions. Caller holds the lock."""
        now = self._clock()
        cutoff = now - self.time_window_seconds
        while self._history and self._history[0][0] < cutoff:
            self._history.popleft()

        if self._state == CircuitState.OPEN:
            if self._opened_at is not None and now - self._opened_at >= self.open_duration_seconds:
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
                self._probe_successes = 0
                self._probe_failures = 0
                logger.info("circuit_breaker_half_open", circuit_breaker=self.name)

        elif self._state == CircuitState.CLOSED:
            total = len(self._history)
            if total >= self.min_requests_for_threshold:
                failures = sum(1 for _, ok in self._history if not ok)
                error_rate = failures / total
                if error_rate >= self.failure_threshold:
                    self._open(now)
                    logger.warning(
                        "circuit_breaker_opened",
                        circuit_breaker=self.name,
                        error_rate=error_rate,
                        failures=failures,
                        total=total,
                    )

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._history.clear()

    def _admit(self) -> None:
        with self._lock:
            self._update_state()
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerOpenError(self.name, self._state)
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_calls += 1
                if self._half_open_calls % self.half_open_probe_every != 0:
                    raise CircuitBreakerOpenError(self.name, self._state)

    def _record_result(self, success: bool) -> None:
        with self._lock:
            now = self._clock()
            if self._state != CircuitState.HALF_OPEN:
                self._history.append((now, success))
                return

            if success:
                self._probe_successes += 1
            else:
                self._probe_failures += 1

            if self._probe_successes + self._probe_failures < self.half_open_probes:
                return

            if self._probe_successes >= self.half_open_successes_to_close:
                self._state = CircuitState.CLOSED
                self._opened_at = None
                logger.info(
                    "circuit_breaker_closed",
                    circuit_breaker=self.name,
                    success_count=self._probe_successes,
                    failure_count=self._probe_failures,
                )
            else:
                self._open(now)
                logger.warning(
                    "circuit_breaker_reopened",
                    circuit_breaker=self.name,
                    success_count=self._probe_successes,
                    failure_count=self._probe_failures,
                )

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a sync callable under breaker protection."""
        self._admit()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self._record_result(False)
            raise
        self._record_result(True)
        return result

    async def call_async(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        is_failure: Optional[Callable[[BaseException], bool]] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Await an async callable under breaker protection.

        Args:
            is_failure: Decides whether an exception counts against the
                breaker (client errors such as 400/401 should not trip it).
                Defaults to counting every exception.
        """
        self._admit()
        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            if is_failure is None or is_failure(exc):
                self._record_result(False)
            else:
                self._record_result(True)
            raise
        self._record_result(True)
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._opened_at = None
            self._history.clear()
            self._half_open_calls = 0
            self._probe_successes = 0
            self._probe_failures = 0

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            self._update_state()
            failures = sum(1 for _, ok in self._history if not ok)
            total = len(self._history)
            return {
                "name": self.name,
                "state": self._state.value,
                "recent_requests": total,
                "recent_failures": failures,
                "error_rate": failures / total if total else 0.0,
                "opened_at": self._opened_at,
                "half_open_probe_successes": self._probe_successes,
                "half_open_probe_failures": self._probe_failures,
            }
