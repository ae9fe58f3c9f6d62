"""Connectivity monitoring for the local network and the backing service.

Provides:
- ConnectivityMonitor: state machine over network/service reachability,
  latency-based quality buckets, subscriber broadcast and a reconnection loop
- HttpHealthProbe: default ServiceProbe backed by ``requests``
- interface_is_up: default local network flag backed by ``psutil``
- classify_latency: latency -> ConnectionQuality bucket
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

import psutil
import requests

from contracts.resilience import (
    ConnectionErrorReport,
    ConnectionErrorType,
    ConnectionQuality,
    ConnectivityState,
    ErrorKind,
)
from contracts.stores import ServiceProbe
from sentinel.config import ConnectivitySettings
from sentinel.errors import (
    NetworkError,
    OperationTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
    StoreError,
    classify_error,
)
from sentinel.observability.logging import log_event

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectivityState], None]

_NETWORK_STEPS = (
    "Check your internet connection",
    "Verify your WiFi or ethernet connection",
    "Try refreshing the page",
    "Contact your network administrator if the problem persists",
)
_TIMEOUT_STEPS = (
    "Check your internet connection speed",
    "Try refreshing the page",
    "Clear your browser cache and cookies",
    "Disable browser extensions temporarily",
    "Try using a different browser or device",
)
_SERVICE_STEPS = (
    "The service may be temporarily unavailable",
    "Try refreshing the page in a few moments",
    "Check if other users are experiencing similar issues",
    "Contact support if the problem continues",
)
_UNKNOWN_STEPS = (
    "Try refreshing the page",
    "Check your internet connection",
    "Clear your browser cache",
    "Try using a different browser",
    "Contact support if the issue persists",
)


def classify_latency(
    latency_ms: float | None,
    settings: ConnectivitySettings | None = None,
) -> ConnectionQuality:
    """Map a round-trip latency to a quality bucket.

    A latency exactly on a bucket edge belongs to the better bucket. Any
    measured latency above the good bucket is poor, however slow; only no
    response (None) is offline.
    """
    if latency_ms is None:
        return ConnectionQuality.OFFLINE
    settings = settings or ConnectivitySettings()
    if latency_ms <= settings.excellent_max_ms:
        return ConnectionQuality.EXCELLENT
    if latency_ms <= settings.good_max_ms:
        return ConnectionQuality.GOOD
    return ConnectionQuality.POOR


def interface_is_up() -> bool:
    """Check whether any non-loopback network interface is up.

    Returns True when interface status cannot be read, so the service
    probe decides instead.
    """
    try:
        stats = psutil.net_if_stats()
    except (OSError, psutil.Error) as e:
        logger.debug("Cannot read interface status: %s", e)
        return True
    for name, nic in stats.items():
        if name == "lo" or name.startswith("lo") or "loopback" in getattr(nic, "flags", ""):
            continue
        if nic.isup:
            return True
    return False


class HttpHealthProbe:
    """ServiceProbe that issues a GET against a health endpoint.

    The blocking ``requests`` call runs in a worker thread. Failures are
    raised as typed Sentinel errors so callers never inspect messages.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def url(self) -> str:
        return self._url

    async def check(self) -> None:
        await asyncio.to_thread(self._check_sync)

    def _check_sync(self) -> None:
        try:
            response = self._session.get(self._url, timeout=self._timeout)
        except requests.exceptions.Timeout as e:
            raise OperationTimeoutError(
                f"Health check timed out after {self._timeout:g}s",
                timeout_seconds=self._timeout,
                cause=e,
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Cannot reach {self._url}", cause=e) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Health check failed: {e}", cause=e) from e

        if response.status_code == 429:
            raise RateLimitedError(details={"status_code": 429})
        if response.status_code >= 500:
            raise ServiceUnavailableError(
                f"HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )


class ConnectivityMonitor:
    """Tracks network and service reachability and publishes transitions.

    There is exactly one state snapshot, replaced (never mutated) on every
    transition. Listeners run synchronously in registration order; an
    exception in one listener is logged and does not reach the others.
    Only one probe runs at a time; a check requested while a probe is in
    flight returns the current state without probing again.

    Example:
        >>> monitor = ConnectivityMonitor(HttpHealthProbe("https://api.example.com/health"))
        >>> unsubscribe = monitor.subscribe(lambda s: print(s.connection_quality))
        >>> state = await monitor.check_connectivity()
        >>> monitor.start()
    """

    def __init__(
        self,
        probe: ServiceProbe,
        network_flag: Callable[[], bool] = interface_is_up,
        settings: ConnectivitySettings | None = None,
        *,
        now: Callable[[], datetime] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Reachability check against the backing service.
            network_flag: Returns False when the local network interface is down.
            settings: Probe timeout, reconnection and bucket settings.
            now: Wall-clock source for connected/disconnected timestamps.
            rng: Source of [0, 1) values for reconnection jitter.
        """
        self._probe = probe
        self._network_flag = network_flag
        self._settings = settings or ConnectivitySettings()
        self._now = now or (lambda: datetime.now(UTC))
        self._rng = rng

        self._state = ConnectivityState()
        self._listeners: list[StateListener] = []
        self._probe_active = False
        self._last_error: BaseException | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None

    @property
    def settings(self) -> ConnectivitySettings:
        return self._settings

    @property
    def last_error(self) -> BaseException | None:
        """Error from the most recent failed service probe, cleared on success."""
        return self._last_error

    @property
    def probe_active(self) -> bool:
        """Whether a service probe is currently in flight."""
        return self._probe_active

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def get_state(self) -> ConnectivityState:
        """Return the current immutable connectivity snapshot."""
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener and call it once with the current state.

        Returns:
            A callable that removes the listener. Calling it twice is harmless.
        """
        self._listeners.append(listener)
        self._deliver(listener, self._state)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def check_connectivity(self) -> ConnectivityState:
        """Check the local network flag, then probe the service.

        If the local flag reports offline no probe is attempted. Expected
        failures are reflected in the returned state, never raised.
        """
        if self._probe_active:
            log_event(logger, "connectivity.probe.suppressed", logging.DEBUG)
            return self._state

        if not self._read_network_flag():
            self._go_offline()
            return self._state

        latency_ms, error = await self._run_probe()
        self._last_error = error
        if error is None:
            self._set_state(
                replace(
                    self._state,
                    is_online=True,
                    is_service_connected=True,
                    last_connected_at=self._now(),
                    reconnect_attempts=0,
                    connection_quality=classify_latency(latency_ms, self._settings),
                    latency_ms=latency_ms,
                )
            )
        else:
            was_connected = self._state.is_service_connected
            self._set_state(
                replace(
                    self._state,
                    is_online=True,
                    is_service_connected=False,
                    last_disconnected_at=(
                        self._now() if was_connected else self._state.last_disconnected_at
                    ),
                    connection_quality=ConnectionQuality.OFFLINE,
                    latency_ms=None,
                )
            )
        return self._state

    async def measure_latency(self) -> float | None:
        """Probe once and update only latency and quality.

        Returns:
            The measured latency in milliseconds, or None if the probe failed,
            was suppressed, or the network is offline.
        """
        if self._probe_active or not self._state.is_online:
            return None
        latency_ms, error = await self._run_probe()
        if error is not None:
            return None
        self._set_state(
            replace(
                self._state,
                latency_ms=latency_ms,
                connection_quality=classify_latency(latency_ms, self._settings),
            )
        )
        log_event(logger, "connectivity.latency.measured", logging.DEBUG, latency_ms=latency_ms)
        return latency_ms

    async def handle_online(self) -> ConnectivityState:
        """React to the local network interface coming back up."""
        log_event(logger, "connectivity.interface.online")
        self._set_state(replace(self._state, is_online=True, reconnect_attempts=0))
        state = await self.check_connectivity()
        if not state.is_service_connected:
            self.start_reconnection()
        return state

    def handle_offline(self) -> ConnectivityState:
        """React to the local network interface going down."""
        log_event(logger, "connectivity.interface.offline", logging.WARNING)
        self.stop_reconnection()
        self._go_offline()
        return self._state

    def start_reconnection(self) -> None:
        """Start the reconnection loop. Idempotent while a loop is running."""
        if self.is_reconnecting:
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())
        log_event(logger, "connectivity.reconnect.started")

    def stop_reconnection(self) -> None:
        """Stop the reconnection loop. Idempotent."""
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            log_event(logger, "connectivity.reconnect.stopped")

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff before the next reconnection attempt (1-based), with jitter."""
        s = self._settings
        delay = s.reconnect_base_delay * s.reconnect_multiplier ** (attempt - 1)
        return min(s.reconnect_max_delay, delay) + self._rng() * s.reconnect_jitter

    def start(self) -> None:
        """Start the periodic health check. Idempotent."""
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.get_running_loop().create_task(self._health_loop())
        log_event(
            logger,
            "connectivity.monitor.started",
            interval_seconds=self._settings.health_check_interval,
        )

    async def stop(self) -> None:
        """Stop the health check and the reconnection loop."""
        tasks = [t for t in (self._health_task, self._reconnect_task) if t is not None]
        self._health_task = None
        self._reconnect_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        log_event(logger, "connectivity.monitor.stopped")

    def generate_connection_error(self, raw_error: BaseException | None) -> ConnectionErrorReport:
        """Turn a raw failure into a user-facing report with troubleshooting steps.

        Classification uses the local network flag and the error's typed kind.
        """
        kind = classify_error(raw_error) if raw_error is not None else ErrorKind.UNKNOWN
        if not self._state.is_online or not self._read_network_flag():
            report = ConnectionErrorReport(
                type=ConnectionErrorType.NETWORK,
                message="No internet connection detected",
                troubleshooting_steps=_NETWORK_STEPS,
                can_retry=True,
                retry_delay=10.0,
            )
        elif kind in (ErrorKind.TIMEOUT, ErrorKind.NETWORK):
            report = ConnectionErrorReport(
                type=ConnectionErrorType.TIMEOUT,
                message="Connection timed out",
                troubleshooting_steps=_TIMEOUT_STEPS,
                can_retry=True,
                retry_delay=15.0,
            )
        elif kind in (ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.RATE_LIMITED) or isinstance(
            raw_error, StoreError
        ):
            report = ConnectionErrorReport(
                type=ConnectionErrorType.SERVICE,
                message="Database connection failed",
                troubleshooting_steps=_SERVICE_STEPS,
                can_retry=True,
                retry_delay=20.0,
            )
        else:
            detail = str(raw_error) if raw_error is not None else ""
            report = ConnectionErrorReport(
                type=ConnectionErrorType.UNKNOWN,
                message=detail or "An unexpected connection error occurred",
                troubleshooting_steps=_UNKNOWN_STEPS,
                can_retry=True,
                retry_delay=5.0,
            )
        log_event(
            logger,
            "connectivity.error.generated",
            logging.WARNING,
            error_type=report.type.value,
            error_kind=kind.value,
        )
        return report

    async def _run_probe(self) -> tuple[float | None, BaseException | None]:
        self._probe_active = True
        start = time.perf_counter()
        try:
            await asyncio.wait_for(self._probe.check(), timeout=self._settings.probe_timeout)
        except TimeoutError:
            error: BaseException = OperationTimeoutError(
                f"Service probe timed out after {self._settings.probe_timeout:g}s",
                timeout_seconds=self._settings.probe_timeout,
            )
            log_event(logger, "connectivity.probe.failed", logging.WARNING, error_kind="timeout")
            return None, error
        except Exception as e:
            log_event(
                logger,
                "connectivity.probe.failed",
                logging.WARNING,
                error_kind=classify_error(e).value,
                error=str(e),
            )
            return None, e
        finally:
            self._probe_active = False
        latency_ms = (time.perf_counter() - start) * 1000
        log_event(logger, "connectivity.probe.success", logging.DEBUG, latency_ms=latency_ms)
        return latency_ms, None

    def _read_network_flag(self) -> bool:
        try:
            return bool(self._network_flag())
        except Exception:
            logger.exception("Network flag check failed, assuming online")
            return True

    def _go_offline(self) -> None:
        was_up = self._state.is_online or self._state.is_service_connected
        self._set_state(
            replace(
                self._state,
                is_online=False,
                is_service_connected=False,
                last_disconnected_at=self._now() if was_up else self._state.last_disconnected_at,
                connection_quality=ConnectionQuality.OFFLINE,
                latency_ms=None,
            )
        )

    def _set_state(self, new_state: ConnectivityState) -> None:
        old_state = self._state
        if new_state == old_state:
            return
        self._state = new_state
        if old_state.is_service_connected != new_state.is_service_connected:
            log_event(
                logger,
                "connectivity.state.changed",
                logging.INFO if new_state.is_service_connected else logging.WARNING,
                is_online=new_state.is_online,
                is_service_connected=new_state.is_service_connected,
                quality=new_state.connection_quality.value,
            )
        for listener in list(self._listeners):
            self._deliver(listener, new_state)

    def _deliver(self, listener: StateListener, state: ConnectivityState) -> None:
        try:
            listener(state)
        except Exception:
            logger.exception("Connectivity listener %r failed", listener)

    async def _reconnect_loop(self) -> None:
        max_attempts = self._settings.max_reconnect_attempts
        while True:
            state = await self.check_connectivity()
            if state.is_service_connected:
                log_event(logger, "connectivity.reconnect.succeeded")
                return

            attempts = self._state.reconnect_attempts + 1
            self._set_state(replace(self._state, reconnect_attempts=attempts))
            if attempts >= max_attempts:
                log_event(
                    logger,
                    "connectivity.reconnect.gave_up",
                    logging.ERROR,
                    attempts=attempts,
                )
                return

            delay = self.reconnect_delay(attempts)
            log_event(
                logger,
                "connectivity.reconnect.scheduled",
                logging.DEBUG,
                attempt=attempts,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.health_check_interval)
            if not self._state.is_online:
                # Only the local flag is polled while offline; no probe runs.
                if self._read_network_flag():
                    await self.handle_online()
                continue
            state = await self.check_connectivity()
            if state.is_online and not state.is_service_connected:
                self.start_reconnection()
