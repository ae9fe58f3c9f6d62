"""Collaborator contracts for the identity store and the service probe.

The resilience layer only depends on these protocols; concrete adapters
(HTTP APIs, databases, auth providers) live with the application.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class Principal:
    """An authenticated actor.

    Attributes:
        id: Stable principal identifier.
        email: Contact address, if known.
        attributes: Additional provider-specific claims.
    """

    id: str
    email: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class RoleRecord:
    """Role assignment as stored by the identity store."""

    principal_id: str
    role: str


class IdentityStore(Protocol):
    """Authoritative identity and authorization store.

    "Not found" and "error" are distinct: a missing record is reported by
    returning None, a failed lookup by raising (ideally a
    ``sentinel.errors.StoreError`` carrying an ``ErrorKind``).
    """

    async def get_principal(self) -> Principal | None:
        """Return the currently authenticated principal, or None."""
        ...

    async def get_role(self, principal_id: str) -> RoleRecord | None:
        """Return the principal's role record, or None if absent.

        Raises:
            Exception: If the store could not be read.
        """
        ...

    async def upsert_role(self, principal_id: str, role: str) -> None:
        """Insert or overwrite the principal's role.

        Raises:
            Exception: If the write failed.
        """
        ...


class ServiceProbe(Protocol):
    """Lightweight reachability check against the backing service."""

    async def check(self) -> None:
        """Return normally if the service answered, raise otherwise."""
        ...
