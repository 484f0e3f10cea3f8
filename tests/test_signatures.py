"""
Tests for error signature extraction and retryable/fatal classification.
"""

import errno
import socket
from types import SimpleNamespace
from unittest.mock import MagicMock

import aiohttp
import pytest

from backstop.core.retry.signatures import (
    ErrorSignature,
    OSErrorExtractor,
    extract_signature,
    is_retryable,
)


class ApiError(Exception):
    def __init__(self, message, *, code=None, response=None):
        super().__init__(message)
        self.code = code
        self.response = response


def _client_response_error(status):
    return aiohttp.ClientResponseError(
        request_info=MagicMock(real_url="https://api.example.com/v2/posts"),
        history=(),
        status=status,
        message="Service Unavailable",
    )


class TestErrorSignature:
    """Tests for ErrorSignature matching and merging."""

    def test_matches_message_substring(self):
        signature = ErrorSignature(message="read ECONNRESET while posting")
        assert signature.matches("ECONNRESET")
        assert not signature.matches("ETIMEDOUT")

    def test_matches_code(self):
        assert ErrorSignature(code="ECONNREFUSED").matches("ECONNREFUSED")

    def test_matches_status(self):
        assert ErrorSignature(status=429).matches("429")

    def test_empty_token_never_matches(self):
        assert not ErrorSignature(message="anything").matches("")

    def test_merge_keeps_existing_fields(self):
        merged = ErrorSignature(message="first", status=503).merge(ErrorSignature(message="second", code="X"))
        assert merged == ErrorSignature(message="first", code="X", status=503)


class TestExtractSignature:
    """Tests for the per-shape extractors."""

    def test_plain_exception(self):
        signature = extract_signature(Exception("ETIMEDOUT"))
        assert signature.message == "ETIMEDOUT"
        assert signature.code is None
        assert signature.status is None

    def test_code_attribute(self):
        signature = extract_signature(ApiError("socket hang up", code="ECONNRESET"))
        assert signature.code == "ECONNRESET"

    def test_errno_mapped_to_name(self):
        signature = extract_signature(OSError(errno.ECONNREFUSED, "Connection refused"))
        assert signature.code == "ECONNREFUSED"

    @pytest.mark.parametrize(
        "error,code",
        [
            (ConnectionResetError(), "ECONNRESET"),
            (ConnectionRefusedError(), "ECONNREFUSED"),
            (TimeoutError(), "ETIMEDOUT"),
            (socket.gaierror(socket.EAI_NONAME, "Name or service not known"), "ENOTFOUND"),
        ],
    )
    def test_builtin_socket_errors(self, error, code):
        assert OSErrorExtractor().extract(error).code == code

    def test_response_mapping(self):
        signature = extract_signature(ApiError("Rate limit exceeded", response={"status": 429}))
        assert signature.status == 429
        assert signature.message == "Rate limit exceeded"

    def test_response_object_status_code(self):
        response = SimpleNamespace(status_code=502)
        assert extract_signature(ApiError("bad gateway", response=response)).status == 502

    def test_aiohttp_client_response_error(self):
        assert extract_signature(_client_response_error(503)).status == 503

    def test_mapping_payload(self):
        signature = extract_signature({"message": "Rate limit exceeded", "response": {"status": 429}})
        assert signature.status == 429
        assert signature.message == "Rate limit exceeded"

    def test_mapping_payload_code(self):
        assert extract_signature({"code": "ENOTFOUND"}).code == "ENOTFOUND"

    def test_http_code_attribute_as_status(self):
        """urllib-style errors keep the HTTP status in .code."""
        assert extract_signature(ApiError("Service Unavailable", code=503)).status == 503

    def test_numeric_string_status(self):
        assert extract_signature(ApiError("x", response={"status": "504"})).status == 504


class TestIsRetryable:
    """Tests for the retryable/fatal classification."""

    @pytest.mark.parametrize("message", ["ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED"])
    def test_network_signatures(self, message):
        assert is_retryable(Exception(message))

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        assert is_retryable(ApiError("failed", response={"status": status}))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 501])
    def test_fatal_statuses(self, status):
        assert not is_retryable(ApiError("failed", response={"status": status}))

    def test_aiohttp_status(self):
        assert is_retryable(_client_response_error(503))
        assert not is_retryable(_client_response_error(400))

    def test_unrelated_error_is_fatal(self):
        assert not is_retryable(ValueError("Invalid input"))

    def test_unrelated_os_error_is_fatal(self):
        assert not is_retryable(FileNotFoundError(errno.ENOENT, "No such file"))

    def test_allow_list_match(self):
        assert is_retryable(Exception("custom error"), ["custom error"])

    def test_allow_list_replaces_heuristics(self):
        assert not is_retryable(Exception("ECONNRESET"), ["QUOTA_PENDING"])
        assert not is_retryable(ApiError("x", response={"status": 503}), ["QUOTA_PENDING"])

    def test_allow_list_matches_code_and_status(self):
        assert is_retryable(ApiError("quota", code="QUOTA_PENDING"), ["QUOTA_PENDING"])
        assert is_retryable(ApiError("x", response={"status": 409}), ["409"])

    def test_empty_allow_list_retries_nothing(self):
        assert not is_retryable(Exception("ECONNRESET"), [])
