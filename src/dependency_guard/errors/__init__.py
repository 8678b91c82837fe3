"""
Error hierarchy for dependency-guard.

Provides the typed outcomes of a protected call and the retryability
classification used by the retry orchestrator.
"""

from dependency_guard.errors.base import (
    CircuitOpenError,
    ConfigurationError,
    ErrorContext,
    GuardError,
    MaxRetriesExceededError,
    OperationTimeoutError,
    RateLimitExceededError,
)
from dependency_guard.errors.classification import (
    RETRYABLE_STATUS,
    ErrorKind,
    TransientSignal,
    classify_error,
    detect_signal,
    extract_status_code,
    get_retry_after,
    http_status_for,
    is_retryable,
)

__all__ = [
    "RETRYABLE_STATUS",
    # Base errors
    "CircuitOpenError",
    "ConfigurationError",
    "ErrorContext",
    # Classification
    "ErrorKind",
    "GuardError",
    "MaxRetriesExceededError",
    "OperationTimeoutError",
    "RateLimitExceededError",
    "TransientSignal",
    "classify_error",
    "detect_signal",
    "extract_status_code",
    "get_retry_after",
    "http_status_for",
    "is_retryable",
]
