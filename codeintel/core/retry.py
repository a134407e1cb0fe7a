"""
Caller-level retry policy for AI requests.

The orchestrator classifies and propagates errors but never retries. Callers
that want retries (the /assist route, batch jobs) wrap their call with
``retry_ai_call`` which only retries errors flagged retryable, waits using
``compute_retry_delay`` and honours the configured fallback strategy:

- fail_fast: a single attempt, errors propagate immediately
- graceful_degradation / best_effort: up to ``retry_attempts`` attempts
"""
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from codeintel.core.config import FallbackStrategy
from codeintel.core.errors import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_MAX_DELAY_MS,
    compute_retry_delay,
    is_retryable,
)
from codeintel.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class wait_backoff_with_jitter:
    """tenacity wait strategy using the AI backoff formula (returns seconds)."""

    def __init__(
        self,
        base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
        rng: Optional[random.Random] = None,
    ):
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        delay_ms = compute_retry_delay(
            retry_state.attempt_number,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            rng=self.rng,
        )
        return delay_ms / 1000.0


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "ai_request_retry_scheduled",
        attempt=retry_state.attempt_number,
        error_code=getattr(getattr(exc, "code", None), "value", None),
        error=str(exc) if exc else None,
        sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
    )


def build_retrying(
    retry_attempts: int,
    fallback_strategy: FallbackStrategy = FallbackStrategy.GRACEFUL_DEGRADATION,
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    rng: Optional[random.Random] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> AsyncRetrying:
    """Build an AsyncRetrying controller for the given strategy."""
    attempts = 1 if fallback_strategy == FallbackStrategy.FAIL_FAST else max(1, retry_attempts)
    kwargs: dict = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_backoff_with_jitter(base_delay_ms, max_delay_ms, rng),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_before_sleep,
        reraise=True,
        **kwargs,
    )


async def retry_ai_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    retry_attempts: int = 3,
    fallback_strategy: FallbackStrategy = FallbackStrategy.GRACEFUL_DEGRADATION,
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    rng: Optional[random.Random] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    **kwargs: Any,
) -> T:
    """
    Call ``func`` with retries on retryable AIErrors.

    Non-retryable errors and the last retryable error propagate unchanged.
    """
    retrying = build_retrying(
        retry_attempts,
        fallback_strategy=fallback_strategy,
        base_delay_ms=base_delay_ms,
        max_delay_ms=max_delay_ms,
        rng=rng,
        sleep=sleep,
    )
    return await retrying(func, *args, **kwargs)
