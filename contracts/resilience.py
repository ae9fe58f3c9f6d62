"""Shared types for the client-side resilience layer.

The connectivity monitor, recovery engine, permission verifier and
performance monitor all exchange these types with each other and with
the presentation layer.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ConnectionQuality(Enum):
    """Coarse connection quality bucket derived from round-trip latency."""

    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    OFFLINE = "offline"


class OperationType(Enum):
    """Kind of operation routed through the recovery engine."""

    AUTH = "auth"
    DATABASE = "database"
    NETWORK = "network"
    UI = "ui"
    SYSTEM = "system"


class RecoveryMethod(Enum):
    """Which resilience layer produced a recovery result."""

    NONE = "none"
    RETRY = "retry"
    FALLBACK = "fallback"
    CACHED = "cached"
    DEGRADED = "degraded"
    USER_INITIATED = "user_initiated"


class UserRecoveryAction(Enum):
    """Recovery actions a user can trigger from the presentation layer."""

    RETRY = "retry"
    REFRESH = "refresh"
    RESET = "reset"
    CLEAR_CACHE = "clear_cache"
    FORCE_LOGOUT = "force_logout"


class ErrorKind(Enum):
    """Typed failure tag attached to errors at the adapter boundary.

    Retry eligibility is decided from this tag alone, never from the
    error's message text.
    """

    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    RATE_LIMITED = "rate_limited"
    VALIDATION = "validation"
    PERMISSION_DENIED = "permission_denied"
    CANCELLATION = "cancellation"
    UNKNOWN = "unknown"


class ConnectionErrorType(Enum):
    """Classification of a raw connectivity failure."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVICE = "service"
    UNKNOWN = "unknown"


class PerfCategory(Enum):
    """Category a performance span is measured under."""

    AUTH = "auth"
    DATABASE = "database"
    NETWORK = "network"
    UI = "ui"
    SYSTEM = "system"
    GENERAL = "general"


class Severity(Enum):
    """Bottleneck severity, ordered from least to most urgent."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ConnectivityState:
    """Immutable snapshot of network and service reachability.

    Attributes:
        is_online: Whether the local network interface reports connectivity.
        is_service_connected: Whether the backing service answered the last probe.
        last_connected_at: When the service was last reached.
        last_disconnected_at: When connectivity was last lost.
        reconnect_attempts: Consecutive failed reconnection attempts.
        connection_quality: Bucket derived from the last measured latency.
        latency_ms: Last measured round-trip latency, if any.
    """

    is_online: bool = True
    is_service_connected: bool = False
    last_connected_at: datetime | None = None
    last_disconnected_at: datetime | None = None
    reconnect_attempts: int = 0
    connection_quality: ConnectionQuality = ConnectionQuality.OFFLINE
    latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dictionary."""
        return {
            "is_online": self.is_online,
            "is_service_connected": self.is_service_connected,
            "last_connected_at": (
                self.last_connected_at.isoformat() if self.last_connected_at else None
            ),
            "last_disconnected_at": (
                self.last_disconnected_at.isoformat() if self.last_disconnected_at else None
            ),
            "reconnect_attempts": self.reconnect_attempts,
            "connection_quality": self.connection_quality.value,
            "latency_ms": self.latency_ms,
        }


@dataclass(frozen=True)
class ConnectionErrorReport:
    """User-facing description of a connectivity failure.

    Attributes:
        type: Failure classification.
        message: Short status message for the user.
        troubleshooting_steps: Fixed, ordered list of steps to try.
        can_retry: Whether retrying is worthwhile.
        retry_delay: Suggested wait before retrying, in seconds.
    """

    type: ConnectionErrorType
    message: str
    troubleshooting_steps: tuple[str, ...]
    can_retry: bool
    retry_delay: float


@dataclass
class OperationContext:
    """Per-invocation context for an operation run through the recovery engine."""

    operation_type: OperationType
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecoveryResult:
    """Outcome of an operation executed with recovery.

    Attributes:
        success: Whether any layer produced a usable result.
        data: The result payload when successful.
        error: The last real error when unsuccessful.
        recovery_method: Layer that produced the result.
        attempts_used: Number of times the primary operation was invoked.
        fallback_used: Whether the registered fallback produced the result.
        offline_mode: Whether the result came from offline (cached) state.
    """

    success: bool
    data: Any = None
    error: BaseException | None = None
    recovery_method: RecoveryMethod = RecoveryMethod.NONE
    attempts_used: int = 0
    fallback_used: bool = False
    offline_mode: bool = False
