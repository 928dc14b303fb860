"""Exponential backoff for Gemini calls.

The retry decision is a pure function of ``(attempt, error, policy, jitter)``
so tests can walk the delay schedule without timers. ``execute_with_backoff``
drives it with an injectable sleep and random source.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from assemblychat.config import settings
from assemblychat.utils.errors import details_of, is_retryable, status_of, suggested_delay_ms

logger = structlog.get_logger()

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class OperationCancelledError(Exception):
    """Raised when a cancel token is set while waiting between attempts."""


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    base_delay_ms: int = 2000
    max_delay_ms: int = 60_000
    max_jitter_ms: int = 250

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )

    def exponential_delay_ms(self, attempt: int) -> int:
        """Pre-jitter delay for a zero-based attempt: min(base * 2^attempt, max)."""
        return min(self.base_delay_ms * 2**attempt, self.max_delay_ms)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_ms: int = 0


def decide_retry(
    attempt: int,
    error: BaseException,
    policy: RetryPolicy,
    jitter_ms: int = 0,
) -> RetryDecision:
    """Transition function: fail on non-retryable errors or an exhausted budget."""
    if attempt >= policy.max_retries or not is_retryable(error):
        return RetryDecision(retry=False)
    suggested = suggested_delay_ms(details_of(error))
    base = suggested if suggested is not None else policy.exponential_delay_ms(attempt)
    return RetryDecision(retry=True, delay_ms=base + jitter_ms)


async def _wait(delay_s: float, sleep: SleepFn, cancel_event: asyncio.Event | None) -> None:
    if cancel_event is None:
        await sleep(delay_s)
        return
    if cancel_event.is_set():
        raise OperationCancelledError("Operation cancelled before retry")
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay_s)
    except TimeoutError:
        return
    raise OperationCancelledError("Operation cancelled during retry backoff")


async def execute_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: SleepFn = asyncio.sleep,
    rng: random.Random | None = None,
    cancel_event: asyncio.Event | None = None,
    operation_name: str = "operation",
) -> T:
    """Run ``operation`` and retry transient failures with exponential backoff.

    The last error is re-raised unchanged when it is not retryable or the
    retry budget is spent. A provider RetryInfo delay overrides the
    exponential schedule. ``sleep`` is only used when no ``cancel_event``
    is given.
    """
    policy = policy or RetryPolicy()
    rand = rng or random
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            jitter_ms = rand.randrange(policy.max_jitter_ms) if policy.max_jitter_ms > 0 else 0
            decision = decide_retry(attempt, exc, policy, jitter_ms)
            if not decision.retry:
                raise
            logger.warning(
                "retry_scheduled",
                operation=operation_name,
                attempt=attempt + 1,
                max_attempts=policy.max_retries + 1,
                delay_ms=decision.delay_ms,
                status=status_of(exc),
                error_type=type(exc).__name__,
            )
            await _wait(decision.delay_ms / 1000, sleep, cancel_event)
            attempt += 1
