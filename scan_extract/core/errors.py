"""Error taxonomy and classification.

The extraction provider exposes no structured error codes, so errors are
classified from their message text. All such inspection lives in
classify_error() so it can be swapped for structured codes later.
"""

from enum import Enum
from typing import Any, Optional

RETRYABLE_STATUS_CODES = {500, 502, 503, 504}

_RATE_LIMIT_MARKERS = ("429", "rate limit", "quota", "resource_exhausted", "resource exhausted")
_NETWORK_MARKERS = ("network", "fetch", "timeout", "connection")


class ScanExtractError(Exception):
    """Base exception for the package."""


class ExtractionClientError(ScanExtractError):
    """Transport or HTTP failure reported by the extraction provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ResponseValidationError(ScanExtractError):
    """Structured response was malformed or incomplete."""


class KeysExhaustedError(ScanExtractError):
    """No credential can serve a request within the tolerable wait."""

    def __init__(self, message: str = "All API keys exhausted"):
        super().__init__(message)


class DispatchCancelled(ScanExtractError):
    """The run was cancelled by the caller.

    snapshot holds the last progress snapshot of the run, when known.
    """

    def __init__(self, message: str = "Processing cancelled", snapshot: Any = None):
        super().__init__(message)
        self.snapshot = snapshot


class ErrorKind(str, Enum):
    """Classification buckets for dispatch failures."""

    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    NETWORK = "network"
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    OTHER = "other"


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an error for retry and key-rotation decisions.

    Args:
        error: The exception raised by a dispatch attempt.

    Returns:
        The ErrorKind bucket the error falls into.
    """
    if isinstance(error, DispatchCancelled):
        return ErrorKind.CANCELLED
    if isinstance(error, ResponseValidationError):
        return ErrorKind.VALIDATION

    message = str(error).lower()

    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMIT

    for code in RETRYABLE_STATUS_CODES:
        if str(code) in message:
            return ErrorKind.SERVER

    if any(marker in message for marker in _NETWORK_MARKERS):
        return ErrorKind.NETWORK

    return ErrorKind.OTHER


def is_rate_limit_error(error: BaseException) -> bool:
    """Check if an error signals upstream quota exhaustion."""
    return classify_error(error) is ErrorKind.RATE_LIMIT


def is_retryable_error(error: BaseException) -> bool:
    """Check if an error is worth retrying with backoff."""
    return classify_error(error) in (
        ErrorKind.RATE_LIMIT,
        ErrorKind.SERVER,
        ErrorKind.NETWORK,
    )
