"""Domain error classes for connectivity, recovery, authorization and stores.

Each class fixes a default ErrorKind so adapters can raise a typed error
at the boundary and the core never inspects message text.
"""

from __future__ import annotations

from typing import Any

from contracts.resilience import ErrorKind
from sentinel.errors.base import ErrorCode, SentinelError

# Connectivity Errors


class NetworkError(SentinelError):
    """Raised when the network or the service host cannot be reached."""

    default_message = "Network unreachable"
    default_code = ErrorCode.NET_UNREACHABLE
    default_kind = ErrorKind.NETWORK


class OperationTimeoutError(SentinelError):
    """Raised when an operation does not complete within its time budget."""

    default_message = "Operation timed out"
    default_code = ErrorCode.RCV_TIMEOUT
    default_kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        message: str | None = None,
        *,
        timeout_seconds: float | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        details = details or {}
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(message, code=code, details=details, cause=cause)


class ServiceUnavailableError(SentinelError):
    """Raised when the backing service answered but cannot serve requests."""

    default_message = "Service unavailable"
    default_code = ErrorCode.NET_SERVICE_UNAVAILABLE
    default_kind = ErrorKind.SERVICE_UNAVAILABLE


class RateLimitedError(SentinelError):
    """Raised when the backing service throttles the client."""

    default_message = "Too many requests"
    default_code = ErrorCode.NET_RATE_LIMITED
    default_kind = ErrorKind.RATE_LIMITED


# Input and authorization errors


class ValidationError(SentinelError):
    """Raised for caller input that can never succeed on retry."""

    default_message = "Validation error"
    default_code = ErrorCode.VAL_INVALID_INPUT
    default_kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, code=code, details=details, cause=cause)


class PermissionDeniedError(SentinelError):
    """Raised when the acting principal lacks a required permission.

    The message is deliberately generic; the required permission is kept
    in ``details`` for logs only.
    """

    default_message = "You do not have permission to perform this action"
    default_code = ErrorCode.AUTH_PERMISSION_DENIED
    default_kind = ErrorKind.PERMISSION_DENIED


# Recovery errors


class OperationCancelledError(SentinelError):
    """Raised at a cancellation checkpoint after an operation was aborted."""

    default_message = "Operation aborted"
    default_code = ErrorCode.RCV_CANCELLED
    default_kind = ErrorKind.CANCELLATION

    def __init__(
        self,
        message: str | None = None,
        *,
        operation_id: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        details = details or {}
        if operation_id:
            details["operation_id"] = operation_id
        super().__init__(message, code=code, details=details, cause=cause)


# Store errors


class StoreError(SentinelError):
    """Raised by store adapters when a read or write fails.

    Adapters choose the ``kind`` so the recovery engine can tell a dropped
    connection (retryable) from a rejected query (not retryable).
    """

    default_message = "Store operation failed"
    default_code = ErrorCode.STO_READ_FAILED
    default_kind = ErrorKind.SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str | None = None,
        *,
        table: str | None = None,
        store_code: str | None = None,
        code: ErrorCode | None = None,
        kind: ErrorKind | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        details = details or {}
        if table:
            details["table"] = table
        if store_code:
            details["store_code"] = store_code
        self.store_code = store_code
        super().__init__(message, code=code, kind=kind, details=details, cause=cause)


def classify_error(error: BaseException) -> ErrorKind:
    """Return the typed failure kind of an error.

    Looks at the ``kind`` tag of Sentinel errors (or any exception that
    exposes an ``ErrorKind`` as ``kind``), then at the built-in exception
    type. Message text is never inspected.

    Args:
        error: The exception raised by an operation.

    Returns:
        The ErrorKind, ``UNKNOWN`` if nothing identifies it.
    """
    kind = getattr(error, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorKind.NETWORK
    if isinstance(error, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    return ErrorKind.UNKNOWN
