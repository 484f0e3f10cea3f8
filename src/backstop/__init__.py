"""
Backstop - retry with exponential backoff and circuit breaking for calls to
flaky external services (social platform APIs, AI providers).
"""

__version__ = "0.1.0"

from backstop.config import Config, load_config
from backstop.core.circuit import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    get_circuit_breaker_registry,
)
from backstop.core.retry import (
    API_RETRY_OPTIONS,
    DEFAULT_RETRY_OPTIONS,
    FAST_RETRY_OPTIONS,
    NO_RETRY_OPTIONS,
    ErrorSignature,
    RetryOptions,
    RetryState,
    extract_signature,
    is_retryable,
    retrying,
    with_retry,
    with_retry_and_jitter,
)

# Exceptions
from backstop.exceptions import (
    BackstopError,
    CircuitBreakerOpenError,
    ConfigurationError,
    RetryCancelledError,
    RetryError,
)
from backstop.observability import get_metrics_registry

# Logging utilities
from backstop.utils.logging import get_logger, setup_logging, setup_logging_from_config

__all__ = [
    # Retry
    "with_retry",
    "with_retry_and_jitter",
    "retrying",
    "RetryOptions",
    "RetryState",
    "DEFAULT_RETRY_OPTIONS",
    "API_RETRY_OPTIONS",
    "FAST_RETRY_OPTIONS",
    "NO_RETRY_OPTIONS",
    "ErrorSignature",
    "extract_signature",
    "is_retryable",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitState",
    "CircuitBreakerRegistry",
    "get_circuit_breaker_registry",
    # Config
    "Config",
    "load_config",
    # Logging
    "setup_logging",
    "setup_logging_from_config",
    "get_logger",
    # Metrics
    "get_metrics_registry",
    # Exceptions
    "BackstopError",
    "ConfigurationError",
    "RetryError",
    "RetryCancelledError",
    "CircuitBreakerOpenError",
]
