"""Composition root: builds one wired set of Sentinel services.

Services are plain instances owned by the returned Runtime; nothing is
registered globally. Tests build their own isolated runtimes.

Usage:
    runtime = build_runtime(identity_store, probe)
    await runtime.start()
    result = await runtime.recovery.execute_with_recovery(op, OperationContext(OperationType.AUTH))
    await runtime.stop()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from contracts.stores import IdentityStore, ServiceProbe
from sentinel.auth.permissions import PermissionVerifier
from sentinel.config import SentinelConfig, get_config
from sentinel.errors import ConfigurationError
from sentinel.observability.logging import log_event
from sentinel.observability.performance import PerformanceMonitor
from sentinel.reliability.auth_cache import AuthStateCache
from sentinel.reliability.connectivity import ConnectivityMonitor, HttpHealthProbe, interface_is_up
from sentinel.reliability.queries import QueryRunner
from sentinel.reliability.recovery import (
    LogoutHook,
    RecoveryEngine,
    default_degradation_handlers,
)

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """The wired services of one application session."""

    config: SentinelConfig
    auth_cache: AuthStateCache
    connectivity: ConnectivityMonitor
    verifier: PermissionVerifier
    performance: PerformanceMonitor
    recovery: RecoveryEngine
    queries: QueryRunner

    async def start(self) -> None:
        """Run an initial connectivity check and start the background tasks."""
        state = await self.connectivity.check_connectivity()
        self.connectivity.start()
        self.performance.start()
        if state.is_online and not state.is_service_connected:
            self.connectivity.start_reconnection()
        log_event(logger, "runtime.started", quality=state.connection_quality.value)

    async def stop(self) -> None:
        """Abort in-flight operations and stop the background tasks."""
        aborted = self.recovery.abort_all_operations()
        await self.connectivity.stop()
        await self.performance.stop()
        log_event(logger, "runtime.stopped", aborted_operations=aborted)


def build_runtime(
    identity_store: IdentityStore,
    probe: ServiceProbe | None = None,
    *,
    config: SentinelConfig | None = None,
    network_flag: Callable[[], bool] = interface_is_up,
    logout_hook: LogoutHook | None = None,
    install_default_degradation: bool = True,
) -> Runtime:
    """Construct and wire every service.

    Args:
        identity_store: Authoritative identity and authorization store.
        probe: Service reachability check. Defaults to an HTTP probe of
            ``config.connectivity.health_url``.
        config: Configuration. Defaults to the file-backed configuration.
        network_flag: Local network interface flag.
        logout_hook: Called by the ``force_logout`` recovery action.
        install_default_degradation: Register the minimal auth/database/ui
            degradation payloads.

    Raises:
        ConfigurationError: If neither a probe nor a health URL is available,
            or a service rejects its settings.
    """
    config = config or get_config()

    if probe is None:
        url = config.connectivity.health_url
        if not url:
            raise ConfigurationError(
                "A service probe or connectivity.health_url is required",
                config_key="connectivity.health_url",
            )
        probe = HttpHealthProbe(url, timeout=config.connectivity.probe_timeout)

    auth_cache = AuthStateCache(ttl_seconds=config.auth_cache.ttl_seconds)
    connectivity = ConnectivityMonitor(probe, network_flag, config.connectivity)
    verifier = PermissionVerifier(identity_store, config.permissions, auth_cache)
    performance = PerformanceMonitor(config.performance)
    recovery = RecoveryEngine(
        config,
        connectivity=connectivity,
        auth_cache=auth_cache,
        verifier=verifier,
        performance=performance,
        logout_hook=logout_hook,
    )
    if install_default_degradation:
        for operation_type, handler in default_degradation_handlers().items():
            recovery.register_degradation_handler(operation_type, handler)

    return Runtime(
        config=config,
        auth_cache=auth_cache,
        connectivity=connectivity,
        verifier=verifier,
        performance=performance,
        recovery=recovery,
        queries=QueryRunner(recovery, performance),
    )
