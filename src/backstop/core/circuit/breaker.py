"""
Circuit breaker pattern for fail-fast behavior.

Stops calling a downstream dependency once it has failed repeatedly, gives
it reset_timeout seconds to recover, then probes it before resuming traffic.

Based on Martin Fowler's Circuit Breaker pattern:
https://martinfowler.com/bliki/CircuitBreaker.html

State lives in memory and is mutated without locks: all transitions happen
between awaits on a single event loop.
"""

import functools
import inspect
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, TypeVar

from backstop.exceptions import CircuitBreakerOpenError, ConfigurationError
from backstop.observability.metrics import circuit_breaker_gauge, circuit_breaker_rejection_counter
from backstop.utils.logging import get_logger

logger = get_logger("backstop.circuit.breaker")

T = TypeVar("T")


class CircuitState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation, calls pass through
    OPEN = "OPEN"  # Failure threshold reached, calls fail fast
    HALF_OPEN = "HALF_OPEN"  # Probing whether the dependency recovered


class CircuitBreaker:
    """
    Circuit breaker guarding one downstream resource.

    States:
    - CLOSED: all calls allowed; consecutive failures are counted
    - OPEN: calls rejected with CircuitBreakerOpenError until reset_timeout elapses
    - HALF_OPEN: probes allowed; success_threshold consecutive successes close
      the circuit, any failure re-opens it

    The OPEN -> HALF_OPEN transition is lazy: it happens when a call arrives
    after the timeout, and that call becomes the probe. get_state() reports
    the last settled state only.

    Examples:
        >>> breaker = CircuitBreaker(failure_threshold=3, reset_timeout=30.0, success_threshold=2)
        >>> try:
        ...     timeline = await breaker.execute(lambda: client.get_timeline(user_id))
        ... except CircuitBreakerOpenError:
        ...     # Dependency is down, don't hammer it
        ...     timeline = cached_timeline(user_id)
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = 2,
        *,
        name: str = "default",
        half_open_max_calls: int = 1,
        tracked_exceptions: tuple[type[BaseException], ...] = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening the circuit
            reset_timeout: Seconds the circuit stays open before allowing a probe
            success_threshold: Consecutive successes needed in HALF_OPEN to close
            name: Label for logs, metrics and error details
            half_open_max_calls: Probes allowed in flight at once while HALF_OPEN
            tracked_exceptions: Exception types counted as failures; anything
                else propagates without affecting the breaker
            clock: Monotonic time source in seconds
        """
        if failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")
        if reset_timeout < 0:
            raise ConfigurationError("reset_timeout must be >= 0")
        if success_threshold < 1:
            raise ConfigurationError("success_threshold must be >= 1")
        if half_open_max_calls < 1:
            raise ConfigurationError("half_open_max_calls must be >= 1")

        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.name = name
        self.half_open_max_calls = half_open_max_calls
        self.tracked_exceptions = tracked_exceptions
        self._clock = clock

        # State tracking
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None

        # Bumped on every state transition; calls settle only against the epoch they were admitted in
        self._epoch = 0

        # Probes in flight for the current HALF_OPEN period
        self._half_open_calls = 0

        # Lifetime totals, for get_stats()
        self._total_calls = 0
        self._total_successes = 0
        self._total_failures = 0
        self._total_rejections = 0

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self._state.value})"

    @property
    def state(self) -> CircuitState:
        """Last settled circuit state."""
        return self._state

    def get_state(self) -> CircuitState:
        """Last settled circuit state (no lazy OPEN -> HALF_OPEN prediction)."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def opened_at(self) -> float | None:
        return self._opened_at

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run operation through the breaker.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            The operation's result

        Raises:
            CircuitBreakerOpenError: Circuit is open (operation not invoked)
            Exception: Whatever the operation raised
        """
        epoch, probe = self._admit()

        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except self.tracked_exceptions:
            self._settle(epoch, failed=True)
            raise
        else:
            self._settle(epoch, failed=False)
            return result
        finally:
            if probe:
                self._release_probe(epoch)

    def protect(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Decorator running every call of an async function through execute()."""

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.execute(functools.partial(func, *args, **kwargs))

        return wrapper

    def _admit(self) -> tuple[int, bool]:
        """
        Decide whether a call may proceed.

        Returns:
            (epoch the call was admitted in, whether the call is a HALF_OPEN probe)

        Raises:
            CircuitBreakerOpenError: If the call must fail fast
        """
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - (self._opened_at or 0.0)
            if elapsed < self.reset_timeout:
                self._reject(retry_after=self.reset_timeout - elapsed)
            self._half_open_circuit()

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_calls >= self.half_open_max_calls:
                self._reject(retry_after=None)
            self._half_open_calls += 1
            self._total_calls += 1
            return self._epoch, True

        self._total_calls += 1
        return self._epoch, False

    def _settle(self, epoch: int, failed: bool) -> None:
        if epoch != self._epoch:
            # Admitted before the last transition; the outcome says nothing about the current state
            if failed:
                self._total_failures += 1
            else:
                self._total_successes += 1
            logger.debug(f"Circuit breaker '{self.name}' ignored stale {'failure' if failed else 'success'}")
            return

        if failed:
            self.record_failure()
        else:
            self.record_success()

    def _release_probe(self, epoch: int) -> None:
        # Probes from an earlier HALF_OPEN period no longer hold a slot
        if epoch == self._epoch and self._half_open_calls > 0:
            self._half_open_calls -= 1

    def _reject(self, retry_after: float | None) -> None:
        self._total_rejections += 1
        circuit_breaker_rejection_counter(self.name)
        logger.debug(f"Circuit breaker '{self.name}' rejected call ({self._state.value})")

        if self._state == CircuitState.OPEN:
            raise CircuitBreakerOpenError(self.name, state=self._state.value, retry_after=retry_after)
        raise CircuitBreakerOpenError(
            self.name,
            state=self._state.value,
            message=f"Circuit breaker is {self._state.value} for '{self.name}', probe limit reached",
        )

    def record_success(self) -> None:
        """Record a successful call."""
        self._total_successes += 1

        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1

            if self._success_count >= self.success_threshold:
                self._close_circuit()
                logger.info(f"Circuit breaker '{self.name}' closed after successful recovery")

        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        self._total_failures += 1

        if self._state == CircuitState.OPEN:
            # Straggler from a call admitted before the circuit opened.
            # Moving opened_at here would postpone recovery.
            return

        if self._state == CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self.failure_threshold:
                self._open_circuit()
                logger.warning(
                    f"Circuit breaker '{self.name}' opened after {self._failure_count} consecutive failures"
                )

        elif self._state == CircuitState.HALF_OPEN:
            self._open_circuit()
            logger.warning(f"Circuit breaker '{self.name}' re-opened after failure during recovery")

    def _open_circuit(self) -> None:
        """Transition to OPEN state."""
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._success_count = 0
        self._half_open_calls = 0
        self._epoch += 1
        circuit_breaker_gauge(self.name, self._state.value)

    def _half_open_circuit(self) -> None:
        """Transition to HALF_OPEN state."""
        self._state = CircuitState.HALF_OPEN
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._epoch += 1
        circuit_breaker_gauge(self.name, self._state.value)
        logger.info(f"Circuit breaker '{self.name}' entering half-open state")

    def _close_circuit(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._half_open_calls = 0
        self._epoch += 1
        circuit_breaker_gauge(self.name, self._state.value)

    def reset(self) -> None:
        """Manually reset circuit breaker to CLOSED state."""
        self._close_circuit()
        logger.info(f"Circuit breaker '{self.name}' manually reset")

    def get_stats(self) -> dict:
        """
        Get circuit breaker statistics.

        Returns:
            Dictionary with current state and metrics
        """
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "opened_at": self._opened_at,
            "half_open_calls": self._half_open_calls,
            "time_until_half_open": (
                max(0.0, self.reset_timeout - (self._clock() - self._opened_at))
                if self._state == CircuitState.OPEN and self._opened_at is not None
                else None
            ),
            "total_calls": self._total_calls,
            "total_successes": self._total_successes,
            "total_failures": self._total_failures,
            "total_rejections": self._total_rejections,
        }
