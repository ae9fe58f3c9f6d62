"""Sentinel Configuration System.

Loads and validates configuration from ~/.sentinel/config.json.
Uses Pydantic for schema validation with sensible defaults.

Usage:
    from sentinel.config import load_config, save_config

    config = load_config()
    print(config.retry[OperationType.AUTH].max_attempts)

    # Modify and save
    config.auth_cache.ttl_seconds = 900
    save_config(config)
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from contracts.resilience import ErrorKind, OperationType, PerfCategory
from sentinel.auth.roles import (
    BASE_ROLE,
    DEFAULT_PERMISSION_HIERARCHY,
    DEFAULT_ROLE_PERMISSIONS,
)
from sentinel.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".sentinel" / "config.json"

# Current config schema version
CONFIG_VERSION = 1


class RetryPolicy(BaseModel):
    """Immutable retry policy for one operation.

    Attributes:
        max_attempts: Maximum number of times the operation is invoked.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound on any single backoff delay, in seconds.
        backoff_multiplier: Growth factor applied per attempt.
        retryable_kinds: Error kinds that make an attempt worth repeating.
        jitter: Maximum random delay added to each backoff wait, in seconds.
        timeout: Per-attempt time budget in seconds (None for no limit).
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=100)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=10.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retryable_kinds: frozenset[ErrorKind] = frozenset(
        {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVICE_UNAVAILABLE}
    )
    jitter: float = Field(default=1.0, ge=0.0)
    timeout: float | None = Field(default=None, gt=0.0)

    def is_retryable(self, kind: ErrorKind) -> bool:
        """Check whether an error kind is worth another attempt."""
        return kind in self.retryable_kinds

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based), without jitter."""
        delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay)

    def with_overrides(self, **overrides: Any) -> RetryPolicy:
        """Return a validated copy with selected fields replaced.

        Raises:
            ConfigurationError: If an override is invalid.
        """
        try:
            return RetryPolicy.model_validate({**self.model_dump(), **overrides})
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid retry policy override: {e}", config_key="retry", cause=e
            ) from e


def _default_retry_policies() -> dict[OperationType, RetryPolicy]:
    return {
        OperationType.AUTH: RetryPolicy(
            max_attempts=3,
            base_delay=1.0,
            max_delay=10.0,
            backoff_multiplier=2.0,
            retryable_kinds=frozenset(
                {
                    ErrorKind.NETWORK,
                    ErrorKind.TIMEOUT,
                    ErrorKind.RATE_LIMITED,
                    ErrorKind.SERVICE_UNAVAILABLE,
                }
            ),
            timeout=15.0,
        ),
        OperationType.DATABASE: RetryPolicy(
            max_attempts=5,
            base_delay=0.5,
            max_delay=5.0,
            backoff_multiplier=1.5,
            retryable_kinds=frozenset(
                {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVICE_UNAVAILABLE}
            ),
            timeout=10.0,
        ),
        OperationType.NETWORK: RetryPolicy(
            max_attempts=10,
            base_delay=1.0,
            max_delay=30.0,
            backoff_multiplier=2.0,
            retryable_kinds=frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT}),
            timeout=20.0,
        ),
        OperationType.UI: RetryPolicy(
            max_attempts=2,
            base_delay=0.5,
            max_delay=2.0,
            backoff_multiplier=2.0,
            retryable_kinds=frozenset({ErrorKind.TIMEOUT, ErrorKind.SERVICE_UNAVAILABLE}),
            timeout=5.0,
        ),
        OperationType.SYSTEM: RetryPolicy(
            max_attempts=3,
            base_delay=2.0,
            max_delay=15.0,
            backoff_multiplier=2.0,
            retryable_kinds=frozenset(
                {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVICE_UNAVAILABLE}
            ),
            timeout=20.0,
        ),
    }


class RecoveryOptions(BaseModel):
    """Which recovery layers are active.

    Attributes:
        enable_retry: Repeat retryable failures with backoff.
        enable_fallback: Invoke the registered fallback method.
        enable_cached: Serve auth operations from the cached principal snapshot.
        enable_degradation: Invoke the degradation handler for the operation type.
    """

    model_config = ConfigDict(frozen=True)

    enable_retry: bool = True
    enable_fallback: bool = True
    enable_cached: bool = True
    enable_degradation: bool = True


class ConnectivitySettings(BaseModel):
    """Connectivity probing and reconnection settings.

    A latency exactly on a bucket edge falls into the better bucket:
    ``excellent_max_ms`` itself is still excellent. Any answer slower than
    ``good_max_ms`` is poor.
    """

    probe_timeout: float = Field(default=10.0, gt=0.0)
    health_url: str | None = None
    health_check_interval: float = Field(default=30.0, gt=0.0)
    reconnect_base_delay: float = Field(default=1.0, ge=0.0)
    reconnect_multiplier: float = Field(default=2.0, ge=1.0)
    reconnect_max_delay: float = Field(default=30.0, ge=0.0)
    reconnect_jitter: float = Field(default=0.5, ge=0.0)
    max_reconnect_attempts: int = Field(default=10, ge=1)
    excellent_max_ms: float = Field(default=150.0, gt=0.0)
    good_max_ms: float = Field(default=500.0, gt=0.0)

    @model_validator(mode="after")
    def _check_buckets(self) -> ConnectivitySettings:
        if not self.excellent_max_ms < self.good_max_ms:
            msg = "latency buckets must be strictly increasing"
            raise ValueError(msg)
        return self


class AuthCacheSettings(BaseModel):
    """Offline principal snapshot settings."""

    ttl_seconds: float = Field(default=3600.0, gt=0.0)


class PermissionSettings(BaseModel):
    """Role table, hierarchy and verification cache settings."""

    base_role: str = BASE_ROLE
    verification_cache_ttl: float = Field(default=5.0, ge=0.0)
    role_permissions: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_ROLE_PERMISSIONS.items()}
    )
    hierarchy: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_PERMISSION_HIERARCHY.items()}
    )

    @model_validator(mode="after")
    def _check_base_role(self) -> PermissionSettings:
        if self.base_role not in self.role_permissions:
            msg = f"base_role {self.base_role!r} has no permission set"
            raise ValueError(msg)
        return self


class PerformanceSettings(BaseModel):
    """Bottleneck thresholds and retention limits.

    Attributes:
        thresholds_ms: Per-category duration above which a span is a bottleneck.
        store_timeout_ms: Store error duration above which a slow query is critical.
        max_spans: Cap on retained spans (oldest dropped first).
        max_store_errors: Cap on retained store errors.
        max_bottlenecks: Cap on retained bottlenecks.
        max_debug_contexts: Cap on retained debug contexts.
        purge_interval_seconds: How often the age purge runs.
        retention_hours: Age after which entries are purged.
    """

    thresholds_ms: dict[PerfCategory, float] = Field(
        default_factory=lambda: {
            PerfCategory.AUTH: 5000.0,
            PerfCategory.DATABASE: 2000.0,
            PerfCategory.NETWORK: 1000.0,
            PerfCategory.UI: 100.0,
            PerfCategory.SYSTEM: 2000.0,
        }
    )
    store_timeout_ms: float = Field(default=10000.0, gt=0.0)
    max_spans: int = Field(default=1000, ge=1)
    max_store_errors: int = Field(default=500, ge=1)
    max_bottlenecks: int = Field(default=100, ge=1)
    max_debug_contexts: int = Field(default=50, ge=1)
    purge_interval_seconds: float = Field(default=300.0, gt=0.0)
    retention_hours: float = Field(default=24.0, gt=0.0)


class SentinelConfig(BaseModel):
    """Sentinel configuration schema.

    Attributes:
        config_version: Schema version for migration tracking.
        retry: Default retry policy per operation type.
        recovery: Default recovery layer flags.
        connectivity: Probe and reconnection settings.
        auth_cache: Offline principal snapshot settings.
        permissions: Role table and verification settings.
        performance: Bottleneck thresholds and retention.
    """

    config_version: int = CONFIG_VERSION
    retry: dict[OperationType, RetryPolicy] = Field(default_factory=_default_retry_policies)
    recovery: RecoveryOptions = Field(default_factory=RecoveryOptions)
    connectivity: ConnectivitySettings = Field(default_factory=ConnectivitySettings)
    auth_cache: AuthCacheSettings = Field(default_factory=AuthCacheSettings)
    permissions: PermissionSettings = Field(default_factory=PermissionSettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)

    @model_validator(mode="after")
    def _fill_missing_policies(self) -> SentinelConfig:
        for op_type, policy in _default_retry_policies().items():
            self.retry.setdefault(op_type, policy)
        return self


# Module-level singleton with thread safety
_config: SentinelConfig | None = None
_config_lock = threading.Lock()


def load_config(config_path: Path | None = None) -> SentinelConfig:
    """Load configuration from file, return defaults if missing/invalid.

    Args:
        config_path: Optional path to config file. Defaults to ~/.sentinel/config.json.

    Returns:
        SentinelConfig instance with loaded or default values.
    """
    path = config_path or CONFIG_PATH

    if not path.exists():
        logger.debug("Config file not found at %s, using defaults", path)
        return SentinelConfig()

    try:
        with path.open() as f:
            data: dict[str, Any] = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in config file %s: %s, using defaults", path, e)
        return SentinelConfig()
    except OSError as e:
        logger.warning("Cannot read config file %s: %s, using defaults", path, e)
        return SentinelConfig()

    try:
        return SentinelConfig.model_validate(data)
    except ValidationError as e:
        logger.warning("Config validation failed: %s, using defaults", e)
        return SentinelConfig()


def save_config(config: SentinelConfig, config_path: Path | None = None) -> bool:
    """Save configuration to file atomically.

    Args:
        config: Configuration to save.
        config_path: Optional path to config file. Defaults to ~/.sentinel/config.json.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or CONFIG_PATH

    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".config-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(config.model_dump(mode="json"), f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug("Configuration saved to %s", path)
        return True

    except OSError as e:
        logger.error("Failed to save config to %s: %s", path, e)
        return False


def get_config() -> SentinelConfig:
    """Get the process-wide configuration loaded from the default path.

    Returns:
        Shared SentinelConfig instance.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config
    with _config_lock:
        _config = None
