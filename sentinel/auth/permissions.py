"""Role and permission verification against the identity store.

Every resolution ends in an actionable role and permission set: store
failures and missing records degrade to the base role instead of raising.
Permission checks follow the implication hierarchy exactly one hop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from contracts.stores import IdentityStore, Principal
from sentinel.auth.roles import (
    MANAGE_ADMINS,
    MANAGE_MEMBERS,
    VIEW_ADMIN_DASHBOARD,
    find_cycle,
    implied_permissions,
)
from sentinel.config import PermissionSettings
from sentinel.errors import ConfigurationError, permission_denied
from sentinel.observability.logging import log_event
from sentinel.reliability.auth_cache import AuthStateCache

logger = logging.getLogger(__name__)

NO_PRINCIPAL_ERROR = "No principal available"

ADMIN_ROLES = frozenset({"admin", "superuser"})


@dataclass(frozen=True)
class RoleVerification:
    """Resolved role and permission set for one principal.

    Attributes:
        principal_id: Principal the result is for (None if none could be resolved).
        role: Resolved role, or the base role on fallback.
        permissions: Permissions statically configured for ``role``.
        is_verified: Whether the store actually answered.
        fallback_applied: Whether the base role was substituted.
        last_verified: When the resolution happened.
        error: Failure description when the store could not be read.
    """

    principal_id: str | None
    role: str
    permissions: tuple[str, ...]
    is_verified: bool
    fallback_applied: bool
    last_verified: datetime
    error: str | None = None


@dataclass(frozen=True)
class PermissionCheck:
    """Outcome of a forced permission re-verification."""

    has_permission: bool
    fallback_applied: bool
    error: str | None = None


@dataclass(frozen=True)
class RoleUpdateResult:
    """Outcome of a role update."""

    success: bool
    verification: RoleVerification | None = None
    error: str | None = None


@dataclass
class _CacheEntry:
    expires_at: float
    verification: RoleVerification


class PermissionVerifier:
    """Resolves roles and permissions with deterministic fallback.

    Successful resolutions are cached for a few seconds per principal;
    ``re_verify_admin_permissions`` and role updates always bypass the cache.

    Example:
        >>> verifier = PermissionVerifier(store)
        >>> await verifier.check_permission("view_admin_dashboard")
        True
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: PermissionSettings | None = None,
        auth_cache: AuthStateCache | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the verifier.

        Args:
            store: Authoritative identity and authorization store.
            settings: Role table, hierarchy, base role and cache TTL.
            auth_cache: Offline snapshot refreshed when the current principal verifies.
            clock: Monotonic source for the verification cache.

        Raises:
            ConfigurationError: If the hierarchy contains a cycle.
        """
        self._store = store
        self._settings = settings or PermissionSettings()
        self._auth_cache = auth_cache
        self._clock = clock

        cycle = find_cycle(self._settings.hierarchy)
        if cycle:
            raise ConfigurationError(
                f"Permission hierarchy contains a cycle: {' -> '.join(cycle)}",
                config_key="permissions.hierarchy",
            )

        self._role_permissions = {
            role: tuple(perms) for role, perms in self._settings.role_permissions.items()
        }
        self._hierarchy = {k: tuple(v) for k, v in self._settings.hierarchy.items()}
        self._cache: dict[str, _CacheEntry] = {}

    @property
    def base_role(self) -> str:
        return self._settings.base_role

    def permissions_for(self, role: str) -> tuple[str, ...]:
        """Statically configured permissions of a role (empty for unknown roles)."""
        return self._role_permissions.get(role, ())

    def has_permission(self, permissions: Iterable[str], permission: str) -> bool:
        """Check a permission against a granted set, following one hierarchy hop."""
        return permission in implied_permissions(permissions, self._hierarchy)

    def invalidate(self, principal_id: str | None = None) -> None:
        """Drop cached verifications for one principal, or for all."""
        if principal_id is None:
            self._cache.clear()
        else:
            self._cache.pop(principal_id, None)

    async def verify_user_role(
        self,
        principal_id: str | None = None,
        *,
        use_cache: bool = True,
    ) -> RoleVerification:
        """Resolve a principal's role and permissions.

        Args:
            principal_id: Principal to verify. Defaults to the current principal.
            use_cache: Serve a recent verification if one is cached.

        Returns:
            The resolution. Never raises for store failures.
        """
        current: Principal | None = None
        if principal_id is None:
            try:
                current = await self._store.get_principal()
            except Exception as e:
                log_event(
                    logger,
                    "permissions.verify.fallback",
                    logging.WARNING,
                    reason="principal_lookup_failed",
                    error=str(e),
                )
                return self._fallback(None, is_verified=False, error=str(e) or type(e).__name__)
            if current is None:
                log_event(
                    logger,
                    "permissions.verify.fallback",
                    logging.WARNING,
                    reason="no_principal",
                )
                return self._fallback(None, is_verified=False, error=NO_PRINCIPAL_ERROR)
            principal_id = current.id

        if use_cache:
            entry = self._cache.get(principal_id)
            if entry is not None and self._clock() < entry.expires_at:
                return entry.verification

        try:
            record = await self._store.get_role(principal_id)
        except Exception as e:
            log_event(
                logger,
                "permissions.verify.fallback",
                logging.WARNING,
                reason="store_error",
                principal_id=principal_id,
                error=str(e),
            )
            return self._fallback(principal_id, is_verified=False, error=str(e) or type(e).__name__)

        if record is None:
            log_event(
                logger,
                "permissions.verify.fallback",
                logging.INFO,
                reason="record_absent",
                principal_id=principal_id,
            )
            verification = self._fallback(principal_id, is_verified=True)
        elif record.role not in self._role_permissions:
            log_event(
                logger,
                "permissions.verify.fallback",
                logging.WARNING,
                reason="unknown_role",
                principal_id=principal_id,
                role=record.role,
            )
            verification = self._fallback(
                principal_id, is_verified=True, error=f"Unknown role: {record.role}"
            )
        else:
            verification = RoleVerification(
                principal_id=principal_id,
                role=record.role,
                permissions=self._role_permissions[record.role],
                is_verified=True,
                fallback_applied=False,
                last_verified=datetime.now(UTC),
            )
            log_event(
                logger,
                "permissions.verify.success",
                logging.DEBUG,
                principal_id=principal_id,
                role=record.role,
            )

        ttl = self._settings.verification_cache_ttl
        if ttl > 0:
            self._cache[principal_id] = _CacheEntry(self._clock() + ttl, verification)

        if current is not None and self._auth_cache is not None:
            self._auth_cache.cache(current, verification.role, verification.permissions)

        return verification

    async def check_permission(self, permission: str, principal_id: str | None = None) -> bool:
        """Check whether a principal holds a permission, directly or by one hop.

        Unknown permissions and failed resolutions are denied beyond the
        base role's own permissions.
        """
        verification = await self.verify_user_role(principal_id)
        allowed = self.has_permission(verification.permissions, permission)
        if not allowed:
            log_event(
                logger,
                "permissions.check.denied",
                logging.DEBUG,
                principal_id=verification.principal_id,
                permission=permission,
                role=verification.role,
            )
        return allowed

    async def re_verify_admin_permissions(
        self,
        permission: str = VIEW_ADMIN_DASHBOARD,
        principal_id: str | None = None,
    ) -> PermissionCheck:
        """Re-check a permission with a fresh store read, ignoring the cache."""
        if principal_id is not None:
            self.invalidate(principal_id)
        verification = await self.verify_user_role(principal_id, use_cache=False)
        has_permission = self.has_permission(verification.permissions, permission)
        log_event(
            logger,
            "permissions.reverify.completed",
            principal_id=verification.principal_id,
            permission=permission,
            granted=has_permission,
            fallback_applied=verification.fallback_applied,
        )
        return PermissionCheck(
            has_permission=has_permission,
            fallback_applied=verification.fallback_applied,
            error=verification.error,
        )

    async def update_user_role_dynamic(
        self,
        target_id: str,
        new_role: str,
        on_updated: Callable[[RoleVerification], Any] | None = None,
    ) -> RoleUpdateResult:
        """Assign a role to a principal on behalf of the current principal.

        The acting principal needs ``manage_admins``. Other principals'
        live sessions are not notified; ``on_updated`` runs only when the
        acting principal changed its own role.
        """
        acting = await self._acting_principal()
        if acting is None:
            return RoleUpdateResult(success=False, error=NO_PRINCIPAL_ERROR)

        acting_verification = await self.verify_user_role(acting.id, use_cache=False)
        if not self.has_permission(acting_verification.permissions, MANAGE_ADMINS):
            denial = permission_denied(MANAGE_ADMINS)
            log_event(
                logger,
                "permissions.update.denied",
                logging.WARNING,
                principal_id=acting.id,
                target_id=target_id,
                error_code=denial.code.value,
                required_permission=MANAGE_ADMINS,
            )
            return RoleUpdateResult(success=False, error=denial.message)

        if new_role not in self._role_permissions:
            return RoleUpdateResult(success=False, error=f"Unknown role: {new_role}")

        try:
            await self._store.upsert_role(target_id, new_role)
        except Exception as e:
            log_event(
                logger,
                "permissions.update.failed",
                logging.ERROR,
                target_id=target_id,
                role=new_role,
                error=str(e),
            )
            return RoleUpdateResult(success=False, error=str(e) or type(e).__name__)

        self.invalidate(target_id)
        verification = await self.verify_user_role(target_id, use_cache=False)
        log_event(
            logger,
            "permissions.update.completed",
            principal_id=acting.id,
            target_id=target_id,
            role=new_role,
        )

        if target_id == acting.id:
            if self._auth_cache is not None and verification.is_verified:
                self._auth_cache.cache(acting, verification.role, verification.permissions)
            if on_updated is not None:
                await self._notify(on_updated, verification)

        return RoleUpdateResult(success=True, verification=verification)

    async def batch_verify_roles(self, principal_ids: Iterable[str]) -> dict[str, RoleVerification]:
        """Verify many principals concurrently; requires ``manage_members``.

        On denial every id gets the base role with a fixed error and no
        store lookups happen. On grant each id is resolved independently.
        """
        ids = list(principal_ids)
        acting = await self._acting_principal()
        allowed = False
        if acting is not None:
            acting_verification = await self.verify_user_role(acting.id)
            allowed = self.has_permission(acting_verification.permissions, MANAGE_MEMBERS)

        if not allowed:
            denial = permission_denied(MANAGE_MEMBERS)
            log_event(
                logger,
                "permissions.batch.denied",
                logging.WARNING,
                principal_id=acting.id if acting else None,
                count=len(ids),
                error_code=denial.code.value,
                required_permission=MANAGE_MEMBERS,
            )
            return {
                pid: self._fallback(pid, is_verified=False, error=denial.message) for pid in ids
            }

        results = await asyncio.gather(*(self.verify_user_role(pid) for pid in ids))
        log_event(logger, "permissions.batch.completed", logging.DEBUG, count=len(ids))
        return dict(zip(ids, results, strict=True))

    async def is_admin(self, principal_id: str | None = None) -> bool:
        verification = await self.verify_user_role(principal_id)
        return verification.role in ADMIN_ROLES

    async def is_superuser(self, principal_id: str | None = None) -> bool:
        verification = await self.verify_user_role(principal_id)
        return verification.role == "superuser"

    async def _acting_principal(self) -> Principal | None:
        try:
            return await self._store.get_principal()
        except Exception as e:
            log_event(
                logger,
                "permissions.principal.lookup_failed",
                logging.WARNING,
                error=str(e),
            )
            return None

    async def _notify(
        self,
        callback: Callable[[RoleVerification], Any],
        verification: RoleVerification,
    ) -> None:
        try:
            result = callback(verification)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Role update callback failed")

    def _fallback(
        self,
        principal_id: str | None,
        *,
        is_verified: bool,
        error: str | None = None,
    ) -> RoleVerification:
        base = self._settings.base_role
        return RoleVerification(
            principal_id=principal_id,
            role=base,
            permissions=self._role_permissions.get(base, ()),
            is_verified=is_verified,
            fallback_applied=True,
            last_verified=datetime.now(UTC),
            error=error,
        )
