"""Static role table and permission hierarchy.

The hierarchy is data, not a class tree: each permission maps to the
set of lesser permissions it implies. Implication is followed exactly one
hop, so every entry already lists everything it implies.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

BASE_ROLE = "user"

# Permission names
READ_PROFILE = "read_profile"
UPDATE_OWN_PROFILE = "update_own_profile"
MANAGE_MEMBERS = "manage_members"
MANAGE_EVENTS = "manage_events"
VIEW_ADMIN_DASHBOARD = "view_admin_dashboard"
MANAGE_ADMINS = "manage_admins"
SYSTEM_ADMIN = "system_admin"

DEFAULT_ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "user": (READ_PROFILE, UPDATE_OWN_PROFILE),
    "admin": (
        READ_PROFILE,
        UPDATE_OWN_PROFILE,
        MANAGE_MEMBERS,
        MANAGE_EVENTS,
        VIEW_ADMIN_DASHBOARD,
        MANAGE_ADMINS,
    ),
    "superuser": (
        READ_PROFILE,
        UPDATE_OWN_PROFILE,
        MANAGE_MEMBERS,
        MANAGE_EVENTS,
        VIEW_ADMIN_DASHBOARD,
        MANAGE_ADMINS,
        SYSTEM_ADMIN,
    ),
}

DEFAULT_PERMISSION_HIERARCHY: dict[str, tuple[str, ...]] = {
    SYSTEM_ADMIN: (
        MANAGE_ADMINS,
        VIEW_ADMIN_DASHBOARD,
        MANAGE_EVENTS,
        MANAGE_MEMBERS,
        UPDATE_OWN_PROFILE,
        READ_PROFILE,
    ),
    MANAGE_ADMINS: (
        VIEW_ADMIN_DASHBOARD,
        MANAGE_EVENTS,
        MANAGE_MEMBERS,
        UPDATE_OWN_PROFILE,
        READ_PROFILE,
    ),
    VIEW_ADMIN_DASHBOARD: (MANAGE_EVENTS, MANAGE_MEMBERS, UPDATE_OWN_PROFILE, READ_PROFILE),
    MANAGE_EVENTS: (UPDATE_OWN_PROFILE, READ_PROFILE),
    MANAGE_MEMBERS: (UPDATE_OWN_PROFILE, READ_PROFILE),
    UPDATE_OWN_PROFILE: (READ_PROFILE,),
    READ_PROFILE: (),
}


def find_cycle(hierarchy: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return one implication cycle in the hierarchy, or None if acyclic."""
    visiting: list[str] = []
    done: set[str] = set()

    def visit(permission: str) -> list[str] | None:
        if permission in done:
            return None
        if permission in visiting:
            return visiting[visiting.index(permission) :] + [permission]
        visiting.append(permission)
        for implied in hierarchy.get(permission, ()):
            cycle = visit(implied)
            if cycle:
                return cycle
        visiting.pop()
        done.add(permission)
        return None

    for permission in hierarchy:
        cycle = visit(permission)
        if cycle:
            return cycle
    return None


def implied_permissions(
    granted: Iterable[str],
    hierarchy: Mapping[str, Iterable[str]],
) -> frozenset[str]:
    """Return granted permissions plus everything one hop below them."""
    granted = tuple(granted)
    effective = set(granted)
    for permission in granted:
        effective.update(hierarchy.get(permission, ()))
    return frozenset(effective)
