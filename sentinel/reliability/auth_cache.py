"""Time-boxed storage of the last verified principal.

Used as the offline fallback for auth operations: when the identity
store is unreachable, the recovery engine can serve the last snapshot
until it expires.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from contracts.stores import Principal
from sentinel.errors import ConfigurationError
from sentinel.observability.logging import log_event

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0


@dataclass(frozen=True)
class CachedPrincipalSnapshot:
    """Last verified identity and authorization state.

    Attributes:
        principal: The verified principal.
        role: Role resolved for the principal.
        permissions: Permission set of that role.
        verified_at: Wall-clock time of verification (epoch seconds).
        expires_at: Wall-clock time after which the snapshot is unusable.
    """

    principal: Principal
    role: str
    permissions: tuple[str, ...]
    verified_at: float
    expires_at: float

    def to_dict(self) -> dict[str, object]:
        """Serialize for UI payloads (identity only, no credentials)."""
        return {
            "principal_id": self.principal.id,
            "role": self.role,
            "permissions": list(self.permissions),
            "verified_at": datetime.fromtimestamp(self.verified_at, UTC).isoformat(),
            "expires_at": datetime.fromtimestamp(self.expires_at, UTC).isoformat(),
        }


class AuthStateCache:
    """Single-slot, TTL-bounded cache of the last verified principal.

    Writes overwrite the slot; a snapshot is never returned once
    ``now >= expires_at``. An expired slot and an empty slot look the same
    to callers.

    Example:
        >>> cache = AuthStateCache(ttl_seconds=3600)
        >>> cache.cache(principal, "admin")
        >>> snapshot = cache.get()
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl_seconds: Lifetime of a snapshot.
            clock: Wall-clock source in epoch seconds.

        Raises:
            ConfigurationError: If ttl_seconds is not positive.
        """
        if ttl_seconds <= 0:
            raise ConfigurationError(
                f"ttl_seconds must be > 0, got {ttl_seconds}", config_key="auth_cache.ttl_seconds"
            )
        self._ttl = ttl_seconds
        self._clock = clock
        self._snapshot: CachedPrincipalSnapshot | None = None

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def cache(
        self,
        principal: Principal,
        role: str,
        permissions: Iterable[str] = (),
    ) -> CachedPrincipalSnapshot:
        """Store a freshly verified principal, replacing any previous snapshot."""
        now = self._clock()
        snapshot = CachedPrincipalSnapshot(
            principal=principal,
            role=role,
            permissions=tuple(permissions),
            verified_at=now,
            expires_at=now + self._ttl,
        )
        # Value and expiry are written together as one immutable object.
        self._snapshot = snapshot
        log_event(
            logger,
            "auth_cache.stored",
            logging.DEBUG,
            principal_id=principal.id,
            role=role,
            ttl_seconds=self._ttl,
        )
        return snapshot

    def get(self) -> CachedPrincipalSnapshot | None:
        """Return the snapshot if it has not expired, else None."""
        snapshot = self._snapshot
        if snapshot is None:
            return None
        if self._clock() >= snapshot.expires_at:
            self._snapshot = None
            log_event(
                logger, "auth_cache.expired", logging.DEBUG, principal_id=snapshot.principal.id
            )
            return None
        return snapshot

    def clear(self) -> None:
        """Invalidate the snapshot (logout, security events)."""
        had_snapshot = self._snapshot is not None
        self._snapshot = None
        if had_snapshot:
            log_event(logger, "auth_cache.cleared")
