"""Base error classes and error codes for Sentinel.

Contains ErrorCode enum, SentinelError base class, and ConfigurationError.
All Sentinel-specific exceptions inherit from SentinelError and carry a
typed ErrorKind that the recovery engine uses for retry decisions.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from contracts.resilience import ErrorKind


class ErrorCode(StrEnum):
    """Standard error codes for Sentinel errors.

    These codes can be used to programmatically identify error types
    and are included in serialized error payloads.
    """

    # Configuration errors (CFG_*)
    CFG_INVALID = "CFG_INVALID"

    # Connectivity errors (NET_*)
    NET_UNREACHABLE = "NET_UNREACHABLE"
    NET_TIMEOUT = "NET_TIMEOUT"
    NET_SERVICE_UNAVAILABLE = "NET_SERVICE_UNAVAILABLE"
    NET_RATE_LIMITED = "NET_RATE_LIMITED"

    # Validation errors (VAL_*)
    VAL_INVALID_INPUT = "VAL_INVALID_INPUT"
    VAL_UNKNOWN_ACTION = "VAL_UNKNOWN_ACTION"

    # Authorization errors (AUTH_*)
    AUTH_PERMISSION_DENIED = "AUTH_PERMISSION_DENIED"

    # Recovery errors (RCV_*)
    RCV_CANCELLED = "RCV_CANCELLED"
    RCV_TIMEOUT = "RCV_TIMEOUT"
    RCV_NOTHING_TO_RETRY = "RCV_NOTHING_TO_RETRY"

    # Store errors (STO_*)
    STO_READ_FAILED = "STO_READ_FAILED"
    STO_WRITE_FAILED = "STO_WRITE_FAILED"

    # Generic errors
    UNKNOWN = "UNKNOWN"


class SentinelError(Exception):
    """Base exception for all Sentinel errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code from ErrorCode enum.
        kind: Typed failure tag used for retry classification.
        details: Optional additional context about the error.
        cause: Optional original exception that caused this error.
    """

    default_message: str = "An error occurred"
    default_code: ErrorCode = ErrorCode.UNKNOWN
    default_kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | None = None,
        kind: ErrorKind | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.kind = kind or self.default_kind
        self.details = details or {}
        self.cause = cause

        super().__init__(self.message)

        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        parts = [f"{self.__class__.__name__}({self.message!r}"]
        if self.code != self.default_code:
            parts.append(f", code={self.code.value!r}")
        if self.kind != self.default_kind:
            parts.append(f", kind={self.kind.value!r}")
        if self.details:
            parts.append(f", details={self.details!r}")
        if self.cause:
            parts.append(f", cause={self.cause!r}")
        parts.append(")")
        return "".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary for logs and UI payloads."""
        result: dict[str, Any] = {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "kind": self.kind.value,
            "detail": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# Configuration Errors


class ConfigurationError(SentinelError):
    """Raised when a service is constructed or reconfigured with invalid settings."""

    default_message = "Configuration error"
    default_code = ErrorCode.CFG_INVALID
    default_kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str | None = None,
        *,
        config_key: str | None = None,
        config_path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        details = details or {}
        if config_key:
            details["config_key"] = config_key
        if config_path:
            details["config_path"] = config_path
        super().__init__(message, code=code, details=details, cause=cause)
