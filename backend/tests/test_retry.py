"""Tests for the backoff executor (assemblychat/utils/retry.py).

The delay schedule is checked through decide_retry without timers; the
executor itself runs with a recording sleep and a seeded RNG.
"""

import asyncio
import random

import pytest

from assemblychat.utils.retry import (
    OperationCancelledError,
    RetryDecision,
    RetryPolicy,
    decide_retry,
    execute_with_backoff,
)
from tests.fakes import ProviderError, retry_info

RATE_LIMITED = ProviderError("Too Many Requests", status=429)


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _failing(errors: list[BaseException], result: str = "ok"):
    """Operation that raises the given errors in order, then returns ``result``."""
    calls = {"n": 0}

    async def operation() -> str:
        calls["n"] += 1
        if errors:
            raise errors.pop(0)
        return result

    return operation, calls


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 5
        assert policy.base_delay_ms == 2000
        assert policy.max_delay_ms == 60_000

    def test_exponential_schedule(self):
        policy = RetryPolicy()
        assert [policy.exponential_delay_ms(a) for a in range(5)] == [
            2000,
            4000,
            8000,
            16000,
            32000,
        ]

    def test_clamped_to_max_delay(self):
        policy = RetryPolicy(max_retries=10)
        assert policy.exponential_delay_ms(5) == 60_000
        assert all(policy.exponential_delay_ms(a) <= 60_000 for a in range(10))


class TestDecideRetry:
    def test_consecutive_429s_follow_schedule(self):
        policy = RetryPolicy()
        delays = [decide_retry(a, RATE_LIMITED, policy).delay_ms for a in range(5)]
        assert delays == [2000, 4000, 8000, 16000, 32000]

    def test_budget_exhausted(self):
        assert decide_retry(5, RATE_LIMITED, RetryPolicy()) == RetryDecision(retry=False)

    def test_non_retryable_fails_immediately(self):
        decision = decide_retry(0, ValueError("malformed request"), RetryPolicy())
        assert decision.retry is False

    def test_suggested_delay_overrides_exponential(self):
        err = ProviderError("quota", status=429, error_details=[retry_info("13.5s")])
        decision = decide_retry(3, err, RetryPolicy())
        assert decision == RetryDecision(retry=True, delay_ms=13500)

    def test_jitter_added(self):
        decision = decide_retry(0, RATE_LIMITED, RetryPolicy(), jitter_ms=120)
        assert decision.delay_ms == 2120

    def test_suggested_delay_not_clamped(self):
        err = ProviderError("quota", status=429, error_details=[retry_info("90s")])
        assert decide_retry(0, err, RetryPolicy()).delay_ms == 90_000


class TestExecuteWithBackoff:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        sleep = _RecordingSleep()
        operation, calls = _failing([])
        assert await execute_with_backoff(operation, sleep=sleep) == "ok"
        assert calls["n"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_transient_errors_then_succeeds(self):
        sleep = _RecordingSleep()
        operation, calls = _failing([RATE_LIMITED, ProviderError("unavailable", status=503)])
        result = await execute_with_backoff(
            operation, RetryPolicy(max_jitter_ms=0), sleep=sleep
        )
        assert result == "ok"
        assert calls["n"] == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_fail_fast_on_non_retryable(self):
        sleep = _RecordingSleep()
        err = ProviderError("Invalid argument", status=400)
        operation, calls = _failing([err])
        with pytest.raises(ProviderError) as exc_info:
            await execute_with_backoff(operation, sleep=sleep)
        assert exc_info.value is err
        assert calls["n"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausted_budget_surfaces_last_error_unchanged(self):
        sleep = _RecordingSleep()
        errors = [ProviderError(f"rate limit #{i}", status=429) for i in range(6)]
        last = errors[-1]
        operation, calls = _failing(list(errors))
        with pytest.raises(ProviderError) as exc_info:
            await execute_with_backoff(operation, RetryPolicy(max_jitter_ms=0), sleep=sleep)
        assert exc_info.value is last
        assert calls["n"] == 6
        assert sleep.delays == [2.0, 4.0, 8.0, 16.0, 32.0]

    @pytest.mark.asyncio
    async def test_jitter_bounded(self):
        sleep = _RecordingSleep()
        operation, _ = _failing([RATE_LIMITED] * 5)
        await execute_with_backoff(operation, sleep=sleep, rng=random.Random(7))
        base = [2.0, 4.0, 8.0, 16.0, 32.0]
        for delay, expected in zip(sleep.delays, base, strict=True):
            assert expected <= delay < expected + 0.25

    @pytest.mark.asyncio
    async def test_provider_delay_used(self):
        sleep = _RecordingSleep()
        err = ProviderError("quota", status=429, error_details=[retry_info("1.5s")])
        operation, _ = _failing([err])
        await execute_with_backoff(operation, RetryPolicy(max_jitter_ms=0), sleep=sleep)
        assert sleep.delays == [1.5]

    @pytest.mark.asyncio
    async def test_cancel_event_set_before_wait(self):
        cancel = asyncio.Event()
        cancel.set()
        operation, calls = _failing([RATE_LIMITED])
        with pytest.raises(OperationCancelledError):
            await execute_with_backoff(operation, cancel_event=cancel)
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_cancel_event_interrupts_backoff(self):
        cancel = asyncio.Event()
        operation, calls = _failing([RATE_LIMITED])
        task = asyncio.create_task(
            execute_with_backoff(operation, RetryPolicy(base_delay_ms=10_000), cancel_event=cancel)
        )
        await asyncio.sleep(0.05)
        cancel.set()
        with pytest.raises(OperationCancelledError):
            await asyncio.wait_for(task, timeout=2)
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_cancel_event_unset_waits_then_retries(self):
        cancel = asyncio.Event()
        operation, calls = _failing([RATE_LIMITED])
        result = await execute_with_backoff(
            operation,
            RetryPolicy(base_delay_ms=1, max_jitter_ms=0),
            cancel_event=cancel,
        )
        assert result == "ok"
        assert calls["n"] == 2
