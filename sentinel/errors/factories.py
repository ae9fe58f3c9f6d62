"""Convenience factory functions for common error scenarios.

Provides shorthand functions for creating commonly-used error instances
with appropriate error codes and details pre-filled.
"""

from __future__ import annotations

from sentinel.errors.base import ErrorCode
from sentinel.errors.domain import (
    OperationCancelledError,
    OperationTimeoutError,
    PermissionDeniedError,
    ValidationError,
)


def permission_denied(permission: str | None = None) -> PermissionDeniedError:
    """Create a generic PermissionDeniedError.

    The required permission is recorded in details but never in the message.
    """
    details = {"required_permission": permission} if permission else None
    return PermissionDeniedError(details=details)


def operation_cancelled(operation_id: str) -> OperationCancelledError:
    """Create an OperationCancelledError for an aborted operation."""
    return OperationCancelledError(
        f"Operation {operation_id} was aborted",
        operation_id=operation_id,
    )


def operation_timed_out(operation_id: str, timeout_seconds: float) -> OperationTimeoutError:
    """Create an OperationTimeoutError for an attempt that ran out of time."""
    return OperationTimeoutError(
        f"Operation {operation_id} timed out after {timeout_seconds:g}s",
        timeout_seconds=timeout_seconds,
        details={"operation_id": operation_id},
    )


def nothing_to_retry(operation_type: str) -> ValidationError:
    """Create a ValidationError when no failed operation is recorded for a type."""
    return ValidationError(
        f"No failed {operation_type} operation to retry",
        field="operation_type",
        value=operation_type,
        code=ErrorCode.RCV_NOTHING_TO_RETRY,
    )


def unknown_recovery_action(action: object) -> ValidationError:
    """Create a ValidationError for an unrecognized user recovery action."""
    return ValidationError(
        f"Unknown recovery action: {action}",
        field="action",
        value=action,
        code=ErrorCode.VAL_UNKNOWN_ACTION,
    )
