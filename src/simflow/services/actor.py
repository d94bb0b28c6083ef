"""Caller identity attached to ledger rows and activity entries."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

MANAGER_ROLES = frozenset({"Manager", "Admin"})


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation.

    Authentication happens upstream; services only record the identity.
    """

    user_id: UUID | None
    name: str
    role: str = "User"

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES
