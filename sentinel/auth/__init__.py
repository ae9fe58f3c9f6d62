"""Authorization: static role table, permission hierarchy and verification.

The verifier lives in ``sentinel.auth.permissions``; this package root
only re-exports the static tables so configuration can load them without
pulling in the verifier.
"""

from __future__ import annotations

from sentinel.auth.roles import (
    BASE_ROLE,
    DEFAULT_PERMISSION_HIERARCHY,
    DEFAULT_ROLE_PERMISSIONS,
    find_cycle,
    implied_permissions,
)

__all__ = [
    "BASE_ROLE",
    "DEFAULT_PERMISSION_HIERARCHY",
    "DEFAULT_ROLE_PERMISSIONS",
    "find_cycle",
    "implied_permissions",
]
