"""
Retry options for calls to flaky external services.

Options are immutable; callers merge partial overrides over a default value
instead of mutating shared module state.
"""

import random
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any

from backstop.exceptions import ConfigurationError


@dataclass(frozen=True)
class RetryOptions:
    """
    Configuration for retry behavior when an operation fails.

    Implements exponential backoff with optional jitter. Delays are seconds.

    Examples:
        >>> # Defaults: 3 attempts, 1s, 2s between them
        >>> options = RetryOptions()

        >>> # Derive a variant without touching the original
        >>> fast = DEFAULT_RETRY_OPTIONS.merge(initial_delay=0.1, max_delay=1.0)

        >>> # Retry application-specific errors only
        >>> options = RetryOptions(retryable_errors=("QUOTA_PENDING", "ECONNRESET"))
    """

    # Total attempts including the first
    max_attempts: int = 3

    # Delay before the first retry (seconds)
    initial_delay: float = 1.0

    # Upper bound on any computed delay (seconds)
    max_delay: float = 30.0

    # delay = initial_delay * backoff_factor ** retry_index
    backoff_factor: float = 2.0

    # Explicit allow-list of error signatures (None = built-in classification)
    retryable_errors: tuple[str, ...] | None = None

    # Randomize each delay within jitter_range
    jitter: bool = False

    # Fractions of the computed delay bounding the jittered value
    jitter_range: tuple[float, float] = (0.5, 1.0)

    def __post_init__(self):
        """Validate configuration."""
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ConfigurationError("max_attempts must be an integer")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        for name in ("initial_delay", "max_delay", "backoff_factor"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{name} must be a number, got {value!r}")
        if self.initial_delay < 0:
            raise ConfigurationError("initial_delay must be >= 0")
        if self.max_delay < 0:
            raise ConfigurationError("max_delay must be >= 0")
        if self.backoff_factor < 1.0:
            raise ConfigurationError("backoff_factor must be >= 1.0")

        try:
            low, high = (float(bound) for bound in self.jitter_range)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"jitter_range must be a (low, high) pair of numbers, got {self.jitter_range!r}") from e
        if not 0.0 <= low <= high <= 1.0:
            raise ConfigurationError("jitter_range must satisfy 0 <= low <= high <= 1")
        object.__setattr__(self, "jitter_range", (low, high))

        if self.retryable_errors is not None:
            # Accept any iterable of strings, store a tuple so the value stays hashable
            if isinstance(self.retryable_errors, str):
                raise ConfigurationError("retryable_errors must be a sequence of strings, not a string")
            try:
                errors = tuple(str(e) for e in self.retryable_errors)
            except TypeError as e:
                raise ConfigurationError(f"retryable_errors must be a sequence of strings, got {self.retryable_errors!r}") from e
            object.__setattr__(self, "retryable_errors", errors)

    def merge(self, **overrides: Any) -> "RetryOptions":
        """Return a copy with the given fields replaced."""
        if not overrides:
            return self
        _check_keys(overrides)
        return replace(self, **overrides)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], base: "RetryOptions | None" = None) -> "RetryOptions":
        """
        Build options from configuration data.

        Numeric strings are coerced, since environment substitution in config
        files always yields strings.

        Args:
            data: Mapping of field names to values
            base: Options to merge over (default: DEFAULT_RETRY_OPTIONS)

        Returns:
            New RetryOptions
        """
        base = base or DEFAULT_RETRY_OPTIONS
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Retry options must be a mapping, got {type(data).__name__}")
        _check_keys(data)

        values: dict[str, Any] = {}
        for key, value in data.items():
            try:
                if key == "max_attempts":
                    values[key] = int(value)
                elif key in ("initial_delay", "max_delay", "backoff_factor"):
                    values[key] = float(value)
                elif key == "jitter":
                    values[key] = _coerce_bool(value)
                elif key == "jitter_range":
                    low, high = value
                    values[key] = (float(low), float(high))
                elif key == "retryable_errors":
                    # A single YAML scalar means a one-entry list
                    if isinstance(value, str):
                        value = [value]
                    values[key] = None if value is None else tuple(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid value for retry option '{key}': {value!r}") from e

        return replace(base, **values)

    def get_delay(self, retry_index: int) -> float:
        """
        Calculate delay before the next attempt using exponential backoff.

        Implements: delay = min(initial_delay * factor^retry_index, max_delay)

        Args:
            retry_index: Retries already performed (0 before the 2nd attempt)

        Returns:
            Delay in seconds
        """
        if retry_index < 0:
            raise ValueError("retry_index must be >= 0")

        # Stop multiplying once past the cap so huge exponents cannot overflow
        delay = self.initial_delay
        for _ in range(retry_index):
            if delay >= self.max_delay:
                break
            delay *= self.backoff_factor

        return min(delay, self.max_delay)

    def get_jittered_delay(self, retry_index: int, rng: random.Random | None = None) -> float:
        """
        Exponential delay randomized uniformly within jitter_range.

        With the default range the result lies in [0.5 * d, 1.0 * d], so it
        never exceeds the non-jittered value (and therefore max_delay).
        """
        delay = self.get_delay(retry_index)
        low, high = self.jitter_range
        uniform = rng.uniform if rng is not None else random.uniform
        return delay * uniform(low, high)


def _check_keys(data: Mapping[str, Any]) -> None:
    known = {f.name for f in fields(RetryOptions)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown retry option(s): {', '.join(unknown)}")


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1", "on"):
            return True
        if lowered in ("false", "no", "0", "off"):
            return False
        raise ValueError(value)
    return bool(value)


def resolve_options(
    options: "RetryOptions | Mapping[str, Any] | None" = None,
    overrides: Mapping[str, Any] | None = None,
) -> RetryOptions:
    """
    Merge caller options over DEFAULT_RETRY_OPTIONS.

    Args:
        options: Full options, a partial mapping of fields, or None
        overrides: Extra field overrides applied last

    Returns:
        Resolved RetryOptions
    """
    if options is None:
        resolved = DEFAULT_RETRY_OPTIONS
    elif isinstance(options, RetryOptions):
        resolved = options
    elif isinstance(options, Mapping):
        resolved = DEFAULT_RETRY_OPTIONS.merge(**options)
    else:
        raise ConfigurationError(f"options must be RetryOptions or a mapping, got {type(options).__name__}")

    if overrides:
        resolved = resolved.merge(**overrides)
    return resolved


@dataclass
class RetryState:
    """
    State tracking for one retry execution.

    Stores attempt history for observability and debugging. Handed to
    on_retry hooks; never used to alter the propagated error.
    """

    # Operation being retried
    operation: str

    # Attempts made so far
    attempts: int = 0

    # Errors encountered (summaries, for debugging)
    errors: list = field(default_factory=list)

    # Timestamps of each attempt
    attempt_timestamps: list = field(default_factory=list)

    # Delays slept between attempts
    delays: list = field(default_factory=list)

    # Final result (if succeeded)
    result: Any = None

    # Final exception (if the call failed)
    final_exception: BaseException | None = None

    # Whether execution succeeded
    succeeded: bool = False

    def record_attempt(self, error: BaseException | None = None):
        """Record an attempt and, if it failed, its error."""
        now = time.time()
        self.attempts += 1
        self.attempt_timestamps.append(now)

        if error is not None:
            self.errors.append({
                'attempt': self.attempts,
                'error_type': type(error).__name__,
                'error_message': str(error),
                'timestamp': now,
            })

    def record_delay(self, delay: float):
        """Record the delay before the next attempt."""
        self.delays.append(delay)

    def mark_success(self, result: Any):
        """Mark execution as successful."""
        self.succeeded = True
        self.result = result

    def mark_failure(self, error: BaseException):
        """Mark execution as failed."""
        self.succeeded = False
        self.final_exception = error


# Pre-configured options for common scenarios

DEFAULT_RETRY_OPTIONS = RetryOptions()

# Social platform / AI provider HTTP APIs: more attempts, jittered
API_RETRY_OPTIONS = RetryOptions(
    max_attempts=5,
    initial_delay=2.0,
    max_delay=60.0,
    backoff_factor=2.0,
    jitter=True,
)

FAST_RETRY_OPTIONS = RetryOptions(
    max_attempts=2,
    initial_delay=0.1,
    max_delay=1.0,
    backoff_factor=2.0,
)

NO_RETRY_OPTIONS = RetryOptions(max_attempts=1)
