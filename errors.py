"""Exception types shared by adapters, the reliability layer and startup code."""
from __future__ import annotations

from typing import Optional


class ConfigurationError(Exception):
    """Invalid or missing configuration; fatal at startup."""


class AdapterError(Exception):
    """Failure talking to an external price source."""

    transient = False

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message


class TransientAdapterError(AdapterError):
    """Timeouts, rate limits and 5xx responses. Safe to retry."""

    transient = True


class PermanentAdapterError(AdapterError):
    """Malformed payloads, auth failures and invalid data. Never retried."""


class CircuitOpenError(Exception):
    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"circuit '{name}' is open; retry in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in


class RetryExhausted(Exception):
    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class RetryCancelled(Exception):
    """Raised when shutdown is requested while a retry is backing off."""

    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__(f"{operation} cancelled after {attempts} attempts")
        self.operation = operation
        self.attempts = attempts
