"""
Core resilience components: retry executor and circuit breaker.
"""

from backstop.core.circuit import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from backstop.core.retry import RetryOptions, with_retry, with_retry_and_jitter

__all__ = [
    "with_retry",
    "with_retry_and_jitter",
    "RetryOptions",
    "CircuitBreaker",
    "CircuitState",
    "CircuitBreakerRegistry",
]
