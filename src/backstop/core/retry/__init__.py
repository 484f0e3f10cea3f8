"""
Retry executor with exponential backoff, jitter and error classification.
"""

from backstop.core.retry.executor import retrying, with_retry, with_retry_and_jitter
from backstop.core.retry.policy import (
    API_RETRY_OPTIONS,
    DEFAULT_RETRY_OPTIONS,
    FAST_RETRY_OPTIONS,
    NO_RETRY_OPTIONS,
    RetryOptions,
    RetryState,
    resolve_options,
)
from backstop.core.retry.signatures import (
    ErrorSignature,
    SignatureExtractor,
    extract_signature,
    is_retryable,
)

__all__ = [
    # Executor
    "with_retry",
    "with_retry_and_jitter",
    "retrying",
    # Options
    "RetryOptions",
    "RetryState",
    "resolve_options",
    "DEFAULT_RETRY_OPTIONS",
    "API_RETRY_OPTIONS",
    "FAST_RETRY_OPTIONS",
    "NO_RETRY_OPTIONS",
    # Classification
    "ErrorSignature",
    "SignatureExtractor",
    "extract_signature",
    "is_retryable",
]
