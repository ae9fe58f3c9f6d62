"""Tests for PermissionVerifier."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from sentinel.auth.permissions import NO_PRINCIPAL_ERROR, PermissionVerifier
from sentinel.auth.roles import (
    DEFAULT_PERMISSION_HIERARCHY,
    DEFAULT_ROLE_PERMISSIONS,
    MANAGE_ADMINS,
    SYSTEM_ADMIN,
    VIEW_ADMIN_DASHBOARD,
)
from sentinel.config import PermissionSettings
from sentinel.errors import ConfigurationError, PermissionDeniedError, StoreError
from sentinel.reliability.auth_cache import AuthStateCache
from tests.fakes import MEMBER, SUPERUSER, FakeClock

ALL_PERMISSIONS = sorted(
    set(DEFAULT_PERMISSION_HIERARCHY) | {p for ps in DEFAULT_ROLE_PERMISSIONS.values() for p in ps}
)


@pytest.fixture
def verifier(identity_store) -> PermissionVerifier:
    return PermissionVerifier(identity_store, clock=FakeClock())


class TestConstruction:
    """Tests for verifier construction."""

    def test_cyclic_hierarchy_rejected(self, identity_store):
        settings = PermissionSettings(hierarchy={"a": ["b"], "b": ["a"]})
        with pytest.raises(ConfigurationError):
            PermissionVerifier(identity_store, settings)

    def test_permissions_for_unknown_role(self, verifier):
        assert verifier.permissions_for("ghost") == ()


class TestCheckPermission:
    """Tests for check_permission."""

    @pytest.mark.asyncio
    async def test_admin_permissions(self, verifier):
        """An admin sees the dashboard but is not a system admin."""
        verification = await verifier.verify_user_role()
        assert verification.permissions == (
            "read_profile",
            "update_own_profile",
            "manage_members",
            "manage_events",
            "view_admin_dashboard",
            "manage_admins",
        )
        assert await verifier.check_permission(VIEW_ADMIN_DASHBOARD) is True
        assert await verifier.check_permission(SYSTEM_ADMIN) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", sorted(DEFAULT_ROLE_PERMISSIONS))
    async def test_granted_or_one_hop(self, identity_store, role):
        """A permission is granted iff held directly or implied one hop away."""
        identity_store.roles["admin-1"] = role
        verifier = PermissionVerifier(identity_store)
        granted = set(DEFAULT_ROLE_PERMISSIONS[role])
        reachable = granted | {
            implied for p in granted for implied in DEFAULT_PERMISSION_HIERARCHY.get(p, ())
        }

        for permission in ALL_PERMISSIONS:
            expected = permission in reachable
            assert await verifier.check_permission(permission) is expected, permission

    @pytest.mark.asyncio
    async def test_unknown_permission_denied(self, verifier):
        assert await verifier.check_permission("launch_rockets") is False

    @pytest.mark.asyncio
    async def test_other_principal(self, verifier):
        assert await verifier.check_permission(VIEW_ADMIN_DASHBOARD, "member-1") is False


class TestVerifyUserRole:
    """Tests for verify_user_role fallbacks and caching."""

    @pytest.mark.asyncio
    async def test_success(self, verifier):
        verification = await verifier.verify_user_role("super-1")
        assert verification.role == "superuser"
        assert verification.is_verified
        assert not verification.fallback_applied
        assert verification.error is None

    @pytest.mark.asyncio
    async def test_no_principal(self, identity_store):
        identity_store.principal = None
        verification = await PermissionVerifier(identity_store).verify_user_role()
        assert verification.principal_id is None
        assert verification.role == "user"
        assert verification.fallback_applied
        assert not verification.is_verified
        assert verification.error == NO_PRINCIPAL_ERROR

    @pytest.mark.asyncio
    async def test_principal_lookup_failure(self, identity_store):
        identity_store.principal_error = StoreError("auth down")
        verification = await PermissionVerifier(identity_store).verify_user_role()
        assert verification.fallback_applied
        assert verification.error == "auth down"

    @pytest.mark.asyncio
    async def test_store_error_falls_back(self, identity_store, verifier):
        """A failed read degrades to the base role instead of raising."""
        identity_store.read_errors["admin-1"] = StoreError("connection reset")
        verification = await verifier.verify_user_role()
        assert verification.role == "user"
        assert verification.permissions == DEFAULT_ROLE_PERMISSIONS["user"]
        assert verification.fallback_applied
        assert not verification.is_verified
        assert verification.error == "connection reset"

    @pytest.mark.asyncio
    async def test_absent_record_is_verified_base_role(self, verifier):
        verification = await verifier.verify_user_role("nobody")
        assert verification.role == "user"
        assert verification.is_verified
        assert verification.fallback_applied
        assert verification.error is None

    @pytest.mark.asyncio
    async def test_unknown_role(self, identity_store, verifier):
        identity_store.roles["member-1"] = "wizard"
        verification = await verifier.verify_user_role("member-1")
        assert verification.role == "user"
        assert verification.error == "Unknown role: wizard"

    @pytest.mark.asyncio
    async def test_cached_for_ttl(self, identity_store):
        clock = FakeClock()
        verifier = PermissionVerifier(identity_store, clock=clock)

        await verifier.verify_user_role("member-1")
        await verifier.verify_user_role("member-1")
        assert identity_store.get_role_calls == ["member-1"]

        clock.advance(5.0)
        await verifier.verify_user_role("member-1")
        assert identity_store.get_role_calls == ["member-1", "member-1"]

    @pytest.mark.asyncio
    async def test_store_errors_not_cached(self, identity_store, verifier):
        identity_store.read_errors["member-1"] = StoreError()
        await verifier.verify_user_role("member-1")
        del identity_store.read_errors["member-1"]
        verification = await verifier.verify_user_role("member-1")
        assert verification.is_verified

    @pytest.mark.asyncio
    async def test_invalidate(self, identity_store, verifier):
        await verifier.verify_user_role("member-1")
        verifier.invalidate("member-1")
        await verifier.verify_user_role("member-1")
        verifier.invalidate()
        await verifier.verify_user_role("member-1")
        assert len(identity_store.get_role_calls) == 3

    @pytest.mark.asyncio
    async def test_current_principal_refreshes_auth_cache(self, identity_store, clock):
        cache = AuthStateCache(clock=clock)
        verifier = PermissionVerifier(identity_store, auth_cache=cache)

        await verifier.verify_user_role("member-1")
        assert cache.get() is None

        await verifier.verify_user_role()
        snapshot = cache.get()
        assert snapshot.principal.id == "admin-1"
        assert snapshot.role == "admin"


class TestReVerify:
    """Tests for re_verify_admin_permissions."""

    @pytest.mark.asyncio
    async def test_bypasses_cache(self, identity_store, verifier):
        assert await verifier.check_permission(VIEW_ADMIN_DASHBOARD)
        identity_store.roles["admin-1"] = "user"

        check = await verifier.re_verify_admin_permissions()

        assert not check.has_permission
        assert not check.fallback_applied

    @pytest.mark.asyncio
    async def test_reports_fallback(self, identity_store, verifier):
        identity_store.read_errors["admin-1"] = StoreError("down")
        check = await verifier.re_verify_admin_permissions(MANAGE_ADMINS)
        assert not check.has_permission
        assert check.fallback_applied
        assert check.error == "down"


class TestUpdateUserRole:
    """Tests for update_user_role_dynamic."""

    @pytest.mark.asyncio
    async def test_admin_updates_other(self, identity_store, verifier):
        callback = MagicMock()
        await verifier.verify_user_role("member-1")

        result = await verifier.update_user_role_dynamic("member-1", "admin", callback)

        assert result.success
        assert result.verification.role == "admin"
        assert identity_store.upserts == [("member-1", "admin")]
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_self_update_notifies(self, identity_store, clock):
        cache = AuthStateCache(clock=clock)
        verifier = PermissionVerifier(identity_store, auth_cache=cache)
        callback = AsyncMock()

        result = await verifier.update_user_role_dynamic("admin-1", "superuser", callback)

        assert result.success
        callback.assert_awaited_once_with(result.verification)
        assert cache.get().role == "superuser"

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_fail_update(self, verifier):
        def broken(_verification):
            raise RuntimeError("ui gone")

        result = await verifier.update_user_role_dynamic("admin-1", "admin", broken)
        assert result.success

    @pytest.mark.asyncio
    async def test_non_admin_denied(self, identity_store):
        identity_store.principal = MEMBER
        verifier = PermissionVerifier(identity_store)

        result = await verifier.update_user_role_dynamic("member-1", "superuser")

        assert not result.success
        assert result.error == PermissionDeniedError.default_message
        assert MANAGE_ADMINS not in result.error
        assert identity_store.upserts == []

    @pytest.mark.asyncio
    async def test_unknown_role_rejected(self, identity_store, verifier):
        result = await verifier.update_user_role_dynamic("member-1", "wizard")
        assert not result.success
        assert result.error == "Unknown role: wizard"
        assert identity_store.upserts == []

    @pytest.mark.asyncio
    async def test_write_failure(self, identity_store, verifier):
        identity_store.write_error = StoreError("read only")
        result = await verifier.update_user_role_dynamic("member-1", "admin")
        assert not result.success
        assert result.error == "read only"

    @pytest.mark.asyncio
    async def test_no_principal(self, identity_store, verifier):
        identity_store.principal = None
        result = await verifier.update_user_role_dynamic("member-1", "admin")
        assert result.error == NO_PRINCIPAL_ERROR


class TestBatchVerify:
    """Tests for batch_verify_roles."""

    @pytest.mark.asyncio
    async def test_granted(self, verifier):
        results = await verifier.batch_verify_roles(["member-1", "super-1", "nobody"])
        assert {pid: v.role for pid, v in results.items()} == {
            "member-1": "user",
            "super-1": "superuser",
            "nobody": "user",
        }

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, identity_store, verifier):
        identity_store.read_errors["member-1"] = StoreError()
        results = await verifier.batch_verify_roles(["member-1", "super-1"])
        assert results["member-1"].fallback_applied
        assert results["super-1"].role == "superuser"

    @pytest.mark.asyncio
    async def test_denied(self, identity_store):
        identity_store.principal = MEMBER
        verifier = PermissionVerifier(identity_store)

        results = await verifier.batch_verify_roles(["super-1", "admin-1"])

        assert all(v.role == "user" for v in results.values())
        assert all(v.error == PermissionDeniedError.default_message for v in results.values())
        assert identity_store.get_role_calls == ["member-1"]


class TestRoleShortcuts:
    """Tests for is_admin/is_superuser."""

    @pytest.mark.asyncio
    async def test_admin(self, verifier):
        assert await verifier.is_admin()
        assert not await verifier.is_superuser()

    @pytest.mark.asyncio
    async def test_superuser(self, identity_store):
        identity_store.principal = SUPERUSER
        verifier = PermissionVerifier(identity_store)
        assert await verifier.is_admin()
        assert await verifier.is_superuser()
