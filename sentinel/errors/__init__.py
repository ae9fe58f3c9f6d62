"""Unified exception hierarchy for Sentinel.

Exception Hierarchy:
    SentinelError (base)
    +-- ConfigurationError - Invalid settings (the only errors services raise)
    +-- NetworkError - Host or network unreachable
    +-- OperationTimeoutError - Attempt exceeded its time budget
    +-- ServiceUnavailableError - Service reachable but not serving
    +-- RateLimitedError - Service throttling the client
    +-- ValidationError - Non-retryable caller input
    +-- PermissionDeniedError - Generic authorization denial
    +-- OperationCancelledError - Aborted at a cancellation checkpoint
    +-- StoreError - Store adapter read/write failure

Every error carries an ErrorKind; ``classify_error`` reads it for retry
decisions.

Usage:
    from sentinel.errors import NetworkError, classify_error

    try:
        await store.fetch()
    except Exception as e:
        if classify_error(e) is ErrorKind.NETWORK:
            ...
"""

# --- base ---
from sentinel.errors.base import (
    ConfigurationError,
    ErrorCode,
    SentinelError,
)

# --- domain errors ---
from sentinel.errors.domain import (
    NetworkError,
    OperationCancelledError,
    OperationTimeoutError,
    PermissionDeniedError,
    RateLimitedError,
    ServiceUnavailableError,
    StoreError,
    ValidationError,
    classify_error,
)

# --- convenience factories ---
from sentinel.errors.factories import (
    nothing_to_retry,
    operation_cancelled,
    operation_timed_out,
    permission_denied,
    unknown_recovery_action,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Base exception
    "SentinelError",
    "ConfigurationError",
    # Domain errors
    "NetworkError",
    "OperationTimeoutError",
    "ServiceUnavailableError",
    "RateLimitedError",
    "ValidationError",
    "PermissionDeniedError",
    "OperationCancelledError",
    "StoreError",
    "classify_error",
    # Convenience functions
    "permission_denied",
    "operation_cancelled",
    "operation_timed_out",
    "nothing_to_retry",
    "unknown_recovery_action",
]
