"""
Tests for the exception hierarchy.
"""

import pytest

from backstop.exceptions import (
    BackstopError,
    CircuitBreakerOpenError,
    ConfigurationError,
    RetryCancelledError,
    RetryError,
)


class TestHierarchy:
    """Verify all exceptions inherit from BackstopError."""

    @pytest.mark.parametrize(
        "exc_class",
        [ConfigurationError, RetryError, RetryCancelledError, CircuitBreakerOpenError],
    )
    def test_inherits_from_backstop_error(self, exc_class):
        assert issubclass(exc_class, BackstopError)

    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)

    def test_circuit_breaker_inherits_retry(self):
        assert issubclass(CircuitBreakerOpenError, RetryError)

    def test_cancelled_inherits_retry(self):
        assert issubclass(RetryCancelledError, RetryError)


class TestDetails:
    def test_base_details_default(self):
        err = BackstopError("boom")
        assert err.message == "boom"
        assert err.details == {}
        assert str(err) == "boom"

    def test_circuit_open_message(self):
        err = CircuitBreakerOpenError("twitter", retry_after=2.5)
        assert str(err) == "Circuit breaker is OPEN for 'twitter', retry after 2.50s"
        assert err.details == {"breaker": "twitter", "state": "OPEN", "retry_after": 2.5}

    def test_circuit_open_without_retry_after(self):
        err = CircuitBreakerOpenError("openai", state="HALF_OPEN")
        assert str(err) == "Circuit breaker is HALF_OPEN for 'openai'"
        assert err.retry_after is None

    def test_cancelled_details(self):
        err = RetryCancelledError("publish_post", attempts=2)
        assert err.operation == "publish_post"
        assert err.attempts == 2
        assert "cancelled after 2 attempt(s)" in str(err)

    def test_catch_all(self):
        with pytest.raises(BackstopError):
            raise CircuitBreakerOpenError("linkedin")
