"""
Tests for the caller-level retry policy (tenacity based).
"""
import random

import pytest

from codeintel.core.config import FallbackStrategy
from codeintel.core.errors import InvalidRequestError, ModelUnavailableError
from codeintel.core.retry import retry_ai_call, wait_backoff_with_jitter


class Flaky:
    def __init__(self, failures):
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return value


@pytest.fixture
def sleeps():
    recorded = []

    async def fake_sleep(seconds):
        recorded.append(seconds)

    fake_sleep.recorded = recorded
    return fake_sleep


@pytest.mark.asyncio
async def test_retries_retryable_errors_until_success(sleeps):
    func = Flaky([ModelUnavailableError("down"), ModelUnavailableError("down")])

    result = await retry_ai_call(func, "ok", retry_attempts=3, sleep=sleeps, rng=random.Random(1))

    assert result == "ok"
    assert func.calls == 3
    assert len(sleeps.recorded) == 2
    assert 1.0 <= sleeps.recorded[0] <= 1.1
    assert 2.0 <= sleeps.recorded[1] <= 2.2


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately(sleeps):
    func = Flaky([InvalidRequestError("bad")])

    with pytest.raises(InvalidRequestError):
        await retry_ai_call(func, "ok", retry_attempts=3, sleep=sleeps)

    assert func.calls == 1
    assert sleeps.recorded == []


@pytest.mark.asyncio
async def test_last_retryable_error_is_reraised(sleeps):
    func = Flaky([ModelUnavailableError("down")] * 5)

    with pytest.raises(ModelUnavailableError):
        await retry_ai_call(func, "ok", retry_attempts=3, sleep=sleeps)

    assert func.calls == 3


@pytest.mark.asyncio
async def test_fail_fast_makes_a_single_attempt(sleeps):
    func = Flaky([ModelUnavailableError("down")])

    with pytest.raises(ModelUnavailableError):
        await retry_ai_call(
            func,
            "ok",
            retry_attempts=3,
            fallback_strategy=FallbackStrategy.FAIL_FAST,
            sleep=sleeps,
        )

    assert func.calls == 1


def test_wait_strategy_returns_seconds():
    class State:
        attempt_number = 3

    wait = wait_backoff_with_jitter(base_delay_ms=1000, max_delay_ms=2500, rng=random.Random(0))
    assert wait(State()) == 2.5
