"""Contract interfaces for the Sentinel resilience layer.

This module exports the Protocol interfaces and shared types that the
services and their collaborators agree on. Implementations should code
against these contracts, not against each other's concrete classes.
"""

from contracts.resilience import (
    ConnectionErrorReport,
    ConnectionErrorType,
    ConnectionQuality,
    ConnectivityState,
    ErrorKind,
    OperationContext,
    OperationType,
    PerfCategory,
    RecoveryMethod,
    RecoveryResult,
    Severity,
    UserRecoveryAction,
)
from contracts.stores import (
    IdentityStore,
    Principal,
    RoleRecord,
    ServiceProbe,
)

__all__ = [
    # Connectivity
    "ConnectionQuality",
    "ConnectivityState",
    "ConnectionErrorReport",
    "ConnectionErrorType",
    # Recovery
    "ErrorKind",
    "OperationContext",
    "OperationType",
    "RecoveryMethod",
    "RecoveryResult",
    "UserRecoveryAction",
    # Performance
    "PerfCategory",
    "Severity",
    # Collaborators
    "IdentityStore",
    "Principal",
    "RoleRecord",
    "ServiceProbe",
]
