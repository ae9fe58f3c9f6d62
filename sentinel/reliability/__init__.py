"""Sentinel Reliability - keep working when the network or a service degrades.

This package provides:

- AuthStateCache: Time-boxed snapshot of the last verified principal
- ConnectivityMonitor: Network/service reachability with reconnection
- RecoveryEngine: Retry -> fallback -> cached -> degraded execution
- QueryRunner: Instrumented data-store queries
- CancellationToken: Cooperative cancellation checkpoints

Example:
    >>> from sentinel.reliability import RecoveryEngine
    >>> engine = RecoveryEngine()
    >>> result = await engine.execute_with_recovery(fetch, OperationContext(OperationType.DATABASE))
"""

from __future__ import annotations

from sentinel.reliability.auth_cache import AuthStateCache, CachedPrincipalSnapshot
from sentinel.reliability.cancellation import CancellationToken
from sentinel.reliability.connectivity import (
    ConnectivityMonitor,
    HttpHealthProbe,
    classify_latency,
    interface_is_up,
)
from sentinel.reliability.queries import QueryResult, QueryRunner
from sentinel.reliability.recovery import RecoveryEngine, default_degradation_handlers

__all__ = [
    # Offline state
    "AuthStateCache",
    "CachedPrincipalSnapshot",
    # Connectivity
    "ConnectivityMonitor",
    "HttpHealthProbe",
    "classify_latency",
    "interface_is_up",
    # Recovery
    "CancellationToken",
    "RecoveryEngine",
    "default_degradation_handlers",
    # Queries
    "QueryResult",
    "QueryRunner",
]
