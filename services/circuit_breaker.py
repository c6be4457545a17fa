"""Per-dependency circuit breaker for external price sources."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from analysis.models import BreakerStatus, CircuitBreakerState
from constants import DEFAULT_BREAKER_COOLDOWN_SECONDS, DEFAULT_BREAKER_THRESHOLD
from errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class CircuitBreaker:
    """Closed -> Open after ``threshold`` consecutive failures, Open -> HalfOpen
    once ``cooldown`` seconds pass, and HalfOpen -> Closed/Open on the probe result.

    The Open -> HalfOpen transition is evaluated lazily whenever the state is read.
    """

    def __init__(
        self,
        name: str,
        *,
        threshold: int = DEFAULT_BREAKER_THRESHOLD,
        cooldown: float = DEFAULT_BREAKER_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.name = name
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._status = BreakerStatus.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def status(self) -> BreakerStatus:
        if self._status is BreakerStatus.OPEN and self._cooldown_elapsed():
            self._status = BreakerStatus.HALF_OPEN
            self._probe_in_flight = False
            logger.info("Circuit '%s' half-open; probing", self.name)
        return self._status

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            name=self.name,
            status=self.status,
            consecutive_failures=self._consecutive_failures,
            opened_at=self._opened_at,
            cooldown=self.cooldown,
        )

    def retry_in(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.cooldown - (self._clock() - self._opened_at))

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.cooldown

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpenError without touching the network."""
        status = self.status
        if status is BreakerStatus.OPEN:
            raise CircuitOpenError(self.name, self.retry_in())
        if status is BreakerStatus.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._probe_in_flight = True

    def record_success(self) -> None:
        if self._status is not BreakerStatus.CLOSED:
            logger.info("Circuit '%s' closed after successful probe", self.name)
        self._status = BreakerStatus.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        self._probe_in_flight = False
        if self._status is BreakerStatus.HALF_OPEN:
            self._trip("probe failed")
        elif self._status is BreakerStatus.CLOSED and self._consecutive_failures >= self.threshold:
            self._trip(f"{self._consecutive_failures} consecutive failures")

    def _trip(self, reason: str) -> None:
        self._status = BreakerStatus.OPEN
        self._opened_at = self._clock()
        logger.warning("Circuit '%s' opened (%s); cooling down %.0fs", self.name, reason, self.cooldown)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self.before_call()
        try:
            result = await operation()
        except asyncio.CancelledError:
            self._probe_in_flight = False
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result
