"""
Error signatures and retryable/fatal classification.

Errors reaching the retry executor come in several shapes: socket errors
from the standard library, aiohttp response errors, client exceptions
carrying a ``response`` object, or plain payload mappings. Each shape has an
extractor producing a normalized ErrorSignature; classification only ever
looks at signatures.
"""

import errno
import socket
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import aiohttp

# Canonical transient network failure codes
TRANSIENT_NETWORK_CODES = ("ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED")

RATE_LIMITED_STATUS = 429

RETRYABLE_SERVER_STATUSES = frozenset({500, 502, 503, 504})


@dataclass(frozen=True)
class ErrorSignature:
    """Normalized identity of an error: message text, code and HTTP-like status."""

    message: str = ""
    code: str | None = None
    status: int | None = None

    def merge(self, other: "ErrorSignature") -> "ErrorSignature":
        """Fill fields missing here from other."""
        return ErrorSignature(
            message=self.message or other.message,
            code=self.code if self.code is not None else other.code,
            status=self.status if self.status is not None else other.status,
        )

    def matches(self, token: str) -> bool:
        """True if token appears in the message or code, or equals the status."""
        if not token:
            return False
        if token in self.message:
            return True
        if self.code is not None and token in self.code:
            return True
        return self.status is not None and token == str(self.status)


def _as_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


def _status_of(obj: Any) -> int | None:
    """Read status/status_code from a response-like object or mapping."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        status = _as_status(obj.get("status"))
        return status if status is not None else _as_status(obj.get("status_code"))
    status = _as_status(getattr(obj, "status", None))
    return status if status is not None else _as_status(getattr(obj, "status_code", None))


class SignatureExtractor(ABC):
    """Produces an ErrorSignature for one error shape."""

    @abstractmethod
    def applies_to(self, error: Any) -> bool:
        """Whether this extractor understands error."""

    @abstractmethod
    def extract(self, error: Any) -> ErrorSignature:
        """Build the signature of error."""


class MappingExtractor(SignatureExtractor):
    """Plain payloads, e.g. {"message": ..., "code": ..., "response": {"status": 429}}."""

    def applies_to(self, error: Any) -> bool:
        return isinstance(error, Mapping)

    def extract(self, error: Any) -> ErrorSignature:
        code = error.get("code")
        status = _status_of(error)
        if status is None:
            status = _status_of(error.get("response"))
        return ErrorSignature(
            message=str(error.get("message") or ""),
            code=None if code is None else str(code),
            status=status,
        )


class OSErrorExtractor(SignatureExtractor):
    """Socket-level failures: errno names, DNS lookup errors, timeouts."""

    _BY_TYPE = (
        (ConnectionResetError, "ECONNRESET"),
        (ConnectionRefusedError, "ECONNREFUSED"),
        (TimeoutError, "ETIMEDOUT"),
    )

    def applies_to(self, error: Any) -> bool:
        return isinstance(error, OSError)

    def extract(self, error: Any) -> ErrorSignature:
        return ErrorSignature(message=str(error), code=self._code(error))

    def _code(self, error: OSError) -> str | None:
        # aiohttp connector errors keep the underlying socket error in os_error
        if isinstance(error, socket.gaierror) or isinstance(getattr(error, "os_error", None), socket.gaierror):
            return "ENOTFOUND"
        if error.errno is not None and error.errno in errno.errorcode:
            return errno.errorcode[error.errno]
        for exc_type, code in self._BY_TYPE:
            if isinstance(error, exc_type):
                return code
        return None


class ClientResponseErrorExtractor(SignatureExtractor):
    """aiohttp.ClientResponseError raised by response.raise_for_status()."""

    def applies_to(self, error: Any) -> bool:
        return isinstance(error, aiohttp.ClientResponseError)

    def extract(self, error: Any) -> ErrorSignature:
        return ErrorSignature(message=str(error), status=_as_status(error.status))


class ResponseAttributeExtractor(SignatureExtractor):
    """Client exceptions carrying the failed response (requests, httpx, SDK errors)."""

    def applies_to(self, error: Any) -> bool:
        return getattr(error, "response", None) is not None

    def extract(self, error: Any) -> ErrorSignature:
        return ErrorSignature(message=str(error), status=_status_of(error.response))


class AttributeExtractor(SignatureExtractor):
    """Fallback for any error: message text plus code/status attributes."""

    def applies_to(self, error: Any) -> bool:
        return True

    def extract(self, error: Any) -> ErrorSignature:
        # Instance attributes only: aiohttp exposes a deprecated .code property
        code = getattr(error, "__dict__", {}).get("code")
        status = _status_of(error)

        # urllib's HTTPError exposes the HTTP status as .code
        code_status = _as_status(code)
        if status is None and code_status is not None and 100 <= code_status <= 599:
            status = code_status

        return ErrorSignature(
            message=str(error),
            code=None if code is None else str(code),
            status=status,
        )


DEFAULT_EXTRACTORS: tuple[SignatureExtractor, ...] = (
    MappingExtractor(),
    OSErrorExtractor(),
    ClientResponseErrorExtractor(),
    ResponseAttributeExtractor(),
    AttributeExtractor(),
)


def extract_signature(
    error: Any,
    extractors: Iterable[SignatureExtractor] = DEFAULT_EXTRACTORS,
) -> ErrorSignature:
    """
    Normalize error into an ErrorSignature.

    Every applicable extractor contributes; earlier extractors win when two
    provide the same field.

    Args:
        error: Exception or error payload
        extractors: Extractors to consult, most specific first

    Returns:
        Merged ErrorSignature
    """
    signature = ErrorSignature()
    for extractor in extractors:
        if extractor.applies_to(error):
            signature = signature.merge(extractor.extract(error))
    return signature


def is_retryable(error: Any, retryable_errors: Iterable[str] | None = None) -> bool:
    """
    Classify error as retryable (transient) or fatal.

    Args:
        error: Exception or error payload
        retryable_errors: Explicit allow-list of signatures. When given, the
            built-in heuristics are ignored and only entries found in the
            error's message, code or status count.

    Returns:
        True if the error should be retried
    """
    signature = extract_signature(error)

    if retryable_errors is not None:
        return any(signature.matches(token) for token in retryable_errors)

    if any(signature.matches(code) for code in TRANSIENT_NETWORK_CODES):
        return True

    return signature.status == RATE_LIMITED_STATUS or signature.status in RETRYABLE_SERVER_STATUSES
