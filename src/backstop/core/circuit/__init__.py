"""
Circuit breaker for fail-fast calls to unavailable dependencies.
"""

from backstop.core.circuit.breaker import CircuitBreaker, CircuitState
from backstop.core.circuit.registry import (
    CircuitBreakerRegistry,
    get_circuit_breaker_registry,
    set_circuit_breaker_registry,
)

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CircuitBreakerRegistry",
    "get_circuit_breaker_registry",
    "set_circuit_breaker_registry",
]
