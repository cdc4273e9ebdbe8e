"""Core infrastructure for the scan extraction tool."""

from .config import DispatchConfig, ExtractConfig, get_config
from .errors import (
    DispatchCancelled,
    ErrorKind,
    ExtractionClientError,
    KeysExhaustedError,
    ResponseValidationError,
    ScanExtractError,
    classify_error,
    is_rate_limit_error,
    is_retryable_error,
)

__all__ = [
    # Config
    "get_config",
    "ExtractConfig",
    "DispatchConfig",
    # Errors
    "ScanExtractError",
    "ExtractionClientError",
    "ResponseValidationError",
    "KeysExhaustedError",
    "DispatchCancelled",
    "ErrorKind",
    "classify_error",
    "is_rate_limit_error",
    "is_retryable_error",
]
