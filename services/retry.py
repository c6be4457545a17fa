"""Exponential backoff retry for adapter calls, layered over a circuit breaker."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from config import AppConfig
from constants import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY_MS,
    DEFAULT_RETRY_JITTER_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
)
from errors import RetryCancelled, RetryExhausted, TransientAdapterError
from services.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar('T')
SleepFn = Callable[[float, Optional[asyncio.Event]], Awaitable[bool]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY_MS / 1000
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    jitter: float = DEFAULT_RETRY_JITTER_SECONDS

    @classmethod
    def from_config(cls, config: AppConfig) -> 'RetryPolicy':
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay_ms / 1000,
        )

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Backoff before retry number ``attempt + 1`` (0-based)."""
        jitter = (rng or random).uniform(0, self.jitter) if self.jitter > 0 else 0.0
        return min(self.max_delay, self.base_delay * (2 ** attempt) + jitter)


async def interruptible_sleep(delay: float, stop_event: Optional[asyncio.Event] = None) -> bool:
    """Sleep for ``delay`` seconds; returns True early if ``stop_event`` is set."""
    if stop_event is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    breaker: Optional[CircuitBreaker] = None,
    description: str = 'adapter call',
    stop_event: Optional[asyncio.Event] = None,
    rng: Optional[random.Random] = None,
    sleep: SleepFn = interruptible_sleep,
) -> T:
    """Run ``operation`` until it succeeds or the retry budget is spent.

    Only TransientAdapterError is retried. Permanent adapter errors and
    CircuitOpenError propagate on the first occurrence.
    """
    attempts = 0
    last_error: Optional[TransientAdapterError] = None
    for attempt in range(policy.max_attempts):
        if stop_event is not None and stop_event.is_set():
            raise RetryCancelled(description, attempts)
        attempts += 1
        try:
            if breaker is not None:
                return await breaker.call(operation)
            return await operation()
        except TransientAdapterError as exc:
            last_error = exc
            if attempts >= policy.max_attempts:
                break
            delay = policy.delay(attempt, rng)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempts,
                policy.max_attempts,
                exc,
                delay,
            )
            if await sleep(delay, stop_event):
                raise RetryCancelled(description, attempts) from exc
    raise RetryExhausted(description, attempts, last_error) from last_error
