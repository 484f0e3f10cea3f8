"""
Prometheus metrics for backstop.

Exports retry outcomes and circuit breaker state for the protected
dependencies.

Usage:
    from backstop.observability import get_metrics_registry

    registry = get_metrics_registry()
    registry.enable()  # Enable metrics collection

    # Retry executor and circuit breakers record automatically once enabled.
    # Start metrics server for Prometheus scraping:
    registry.start_http_server(port=9090)
"""

import threading
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
    start_http_server,
)

from backstop.utils.logging import get_logger

logger = get_logger("backstop.observability.metrics")

CIRCUIT_STATE_VALUES = {"CLOSED": 0, "OPEN": 1, "HALF_OPEN": 2}


class MetricsRegistry:
    """
    Central registry for all backstop metrics.

    Values go to a private Prometheus CollectorRegistry and to an internal
    snapshot that can be read back via get_metrics().
    """

    def __init__(self):
        self._enabled = False
        self._internal_metrics: dict[str, Any] = {
            "retry_total": {},  # operation -> {outcome: N}
            "circuit_breaker_state": {},  # breaker -> state
            "circuit_breaker_rejections": {},  # breaker -> count
        }
        self._lock = threading.Lock()
        self._registry = CollectorRegistry()
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self):
        """Setup Prometheus metrics."""
        self._retry_counter = Counter(
            "backstop_retry_attempts_total",
            "Retry executor outcomes per attempt",
            ["operation", "outcome"],  # outcome: success, retry, exhausted, fatal, cancelled
            registry=self._registry,
        )

        self._circuit_breaker_gauge = Gauge(
            "backstop_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=open, 2=half_open)",
            ["breaker"],
            registry=self._registry,
        )

        self._rejection_counter = Counter(
            "backstop_circuit_breaker_rejections_total",
            "Calls rejected without invoking the protected operation",
            ["breaker"],
            registry=self._registry,
        )

    def enable(self):
        """Enable metrics collection."""
        self._enabled = True
        logger.info("Metrics collection enabled")

    def disable(self):
        """Disable metrics collection."""
        self._enabled = False
        logger.info("Metrics collection disabled")

    @property
    def enabled(self) -> bool:
        """Check if metrics collection is enabled."""
        return self._enabled

    def record_retry(self, operation: str, outcome: str):
        """
        Record a retry executor outcome.

        Args:
            operation: Operation name
            outcome: success, retry, exhausted, fatal or cancelled
        """
        if not self._enabled:
            return

        with self._lock:
            outcomes = self._internal_metrics["retry_total"].setdefault(operation, {})
            outcomes[outcome] = outcomes.get(outcome, 0) + 1

        self._retry_counter.labels(operation=operation, outcome=outcome).inc()

    def record_circuit_breaker_state(self, breaker: str, state: str):
        """
        Record circuit breaker state.

        Args:
            breaker: Breaker name
            state: CLOSED, OPEN or HALF_OPEN
        """
        if not self._enabled:
            return

        with self._lock:
            self._internal_metrics["circuit_breaker_state"][breaker] = state

        self._circuit_breaker_gauge.labels(breaker=breaker).set(CIRCUIT_STATE_VALUES.get(state, 0))

    def record_circuit_breaker_rejection(self, breaker: str):
        """Record a call rejected by an open breaker."""
        if not self._enabled:
            return

        with self._lock:
            rejections = self._internal_metrics["circuit_breaker_rejections"]
            rejections[breaker] = rejections.get(breaker, 0) + 1

        self._rejection_counter.labels(breaker=breaker).inc()

    def get_metrics(self) -> dict[str, Any]:
        """
        Get all internal metrics.

        Returns:
            Dictionary with all tracked metrics
        """
        with self._lock:
            return {
                "retry_total": {op: dict(outcomes) for op, outcomes in self._internal_metrics["retry_total"].items()},
                "circuit_breaker_state": dict(self._internal_metrics["circuit_breaker_state"]),
                "circuit_breaker_rejections": dict(self._internal_metrics["circuit_breaker_rejections"]),
            }

    def start_http_server(self, port: int = 9090, addr: str = "0.0.0.0"):
        """
        Start HTTP server for Prometheus scraping.

        Args:
            port: Port to listen on
            addr: Address to bind to
        """
        start_http_server(port=port, addr=addr, registry=self._registry)
        logger.info(f"Prometheus metrics server started on port {port}")

    def generate_prometheus_metrics(self) -> bytes:
        """
        Generate Prometheus metrics in text format.

        Returns:
            Prometheus metrics as bytes
        """
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get Prometheus content type for HTTP response."""
        return CONTENT_TYPE_LATEST


# Global metrics registry instance
_metrics_registry: MetricsRegistry | None = None


def get_metrics_registry() -> MetricsRegistry:
    """
    Get global metrics registry instance.

    Returns:
        MetricsRegistry instance
    """
    global _metrics_registry
    if _metrics_registry is None:
        _metrics_registry = MetricsRegistry()
    return _metrics_registry


def configure_metrics(config: dict[str, Any]) -> MetricsRegistry:
    """
    Enable metrics (and optionally the scrape server) from the 'metrics' config section.

    Args:
        config: Configuration dictionary

    Returns:
        The global MetricsRegistry
    """
    registry = get_metrics_registry()
    metrics_config = config.get("metrics") or {}

    if metrics_config.get("enabled", False):
        registry.enable()
        port = metrics_config.get("port")
        if port is not None:
            registry.start_http_server(port=int(port), addr=metrics_config.get("addr", "0.0.0.0"))

    return registry


# Convenience functions for common metrics
def retry_counter(operation: str, outcome: str):
    """Record retry counter."""
    get_metrics_registry().record_retry(operation, outcome)


def circuit_breaker_gauge(breaker: str, state: str):
    """Record circuit breaker state gauge."""
    get_metrics_registry().record_circuit_breaker_state(breaker, state)


def circuit_breaker_rejection_counter(breaker: str):
    """Record circuit breaker rejection counter."""
    get_metrics_registry().record_circuit_breaker_rejection(breaker)
