"""
Observability module for backstop.

Prometheus metrics for retry outcomes and circuit breaker state.
"""

from backstop.observability.metrics import (
    MetricsRegistry,
    circuit_breaker_gauge,
    circuit_breaker_rejection_counter,
    configure_metrics,
    get_metrics_registry,
    retry_counter,
)

__all__ = [
    "MetricsRegistry",
    "get_metrics_registry",
    "configure_metrics",
    "retry_counter",
    "circuit_breaker_gauge",
    "circuit_breaker_rejection_counter",
]
