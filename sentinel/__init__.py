"""Sentinel - client-side resilience layer.

Keeps an application functioning, and enforcing authorization, while the
network or a backing service degrades.

Services:
- ConnectivityMonitor (sentinel.reliability.connectivity)
- RecoveryEngine (sentinel.reliability.recovery)
- PermissionVerifier (sentinel.auth.permissions)
- PerformanceMonitor (sentinel.observability.performance)
- AuthStateCache (sentinel.reliability.auth_cache)

Wire them with ``sentinel.runtime.build_runtime``.
"""

from sentinel.config import SentinelConfig, get_config, load_config, reset_config, save_config
from sentinel.auth.permissions import PermissionVerifier, RoleVerification
from sentinel.observability.performance import PerformanceMonitor
from sentinel.reliability import (
    AuthStateCache,
    ConnectivityMonitor,
    QueryRunner,
    RecoveryEngine,
)
from sentinel.runtime import Runtime, build_runtime

__version__ = "1.0.0"

__all__ = [
    "AuthStateCache",
    "ConnectivityMonitor",
    "PerformanceMonitor",
    "PermissionVerifier",
    "QueryRunner",
    "RecoveryEngine",
    "RoleVerification",
    "Runtime",
    "SentinelConfig",
    "build_runtime",
    "get_config",
    "load_config",
    "reset_config",
    "save_config",
]
