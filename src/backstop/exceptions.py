"""
Backstop exception hierarchy.

All library-specific exceptions inherit from BackstopError, so callers can
catch anything raised by backstop itself with a single base class. Errors
raised by the wrapped operation are never wrapped: they propagate as-is.

Hierarchy::

    BackstopError
    ├── ConfigurationError        - invalid options, config loading/parsing
    └── RetryError                - retry/circuit layer refusing to proceed
        ├── RetryCancelledError   - retry loop cancelled via cancel_event
        └── CircuitBreakerOpenError - breaker rejecting calls (fail fast)
"""

from __future__ import annotations


class BackstopError(Exception):
    """Base exception for all backstop errors."""

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# --- Configuration -----------------------------------------------------------


class ConfigurationError(BackstopError, ValueError):
    """Raised when options or configuration files are invalid."""


# --- Retry / circuit breaker -------------------------------------------------


class RetryError(BackstopError):
    """Raised when the resilience layer itself stops a call."""


class RetryCancelledError(RetryError):
    """Raised when a retry loop observes its cancel event.

    The last operation error (if any) is attached as ``__cause__``.
    """

    def __init__(self, operation: str, *, attempts: int) -> None:
        super().__init__(
            f"Retry of '{operation}' cancelled after {attempts} attempt(s)",
            details={"operation": operation, "attempts": attempts},
        )
        self.operation = operation
        self.attempts = attempts


class CircuitBreakerOpenError(RetryError):
    """Raised when the circuit breaker is open and rejecting calls.

    The wrapped operation was not invoked.
    """

    def __init__(
        self,
        breaker: str,
        *,
        state: str = "OPEN",
        retry_after: float | None = None,
        message: str | None = None,
    ) -> None:
        if message is None:
            message = f"Circuit breaker is {state} for '{breaker}'"
            if retry_after is not None:
                message += f", retry after {retry_after:.2f}s"
        super().__init__(
            message,
            details={"breaker": breaker, "state": state, "retry_after": retry_after},
        )
        self.breaker = breaker
        self.state = state
        self.retry_after = retry_after
