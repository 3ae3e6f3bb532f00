from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    user = "user"
    admin = "admin"
    super_admin = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    @property
    def is_admin(self) -> bool:
        return self in (Role.admin, Role.super_admin)

    @classmethod
    def parse(cls, value: "Role | str | None") -> "Role | None":
        """Return the matching role, or ``None`` for unknown values."""
        if isinstance(value, Role):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


_ROLE_RANK = {Role.user: 0, Role.admin: 1, Role.super_admin: 2}


class AccountStatus(str, Enum):
    active = "active"
    suspended = "suspended"
    blocked = "blocked"
    deleted = "deleted"


# Status provenance columns grouped by the status they describe.
SUSPENSION_FIELDS = ("suspended_by", "suspended_at", "suspension_reason", "suspension_end_date")
BLOCK_FIELDS = ("blocked_by", "blocked_at", "block_reason")
DELETION_FIELDS = ("deleted_by", "deleted_at", "deletion_reason")
REACTIVATION_FIELDS = ("reactivated_by", "reactivated_at")
STATUS_PROVENANCE = {
    AccountStatus.suspended: SUSPENSION_FIELDS,
    AccountStatus.blocked: BLOCK_FIELDS,
    AccountStatus.deleted: DELETION_FIELDS,
    AccountStatus.active: REACTIVATION_FIELDS,
}


def cleared_provenance(keep: AccountStatus) -> dict[str, None]:
    """Return ``None`` assignments for every status group except ``keep``'s."""
    cleared: dict[str, None] = {}
    for status, fields in STATUS_PROVENANCE.items():
        if status is keep:
            continue
        cleared.update({name: None for name in fields})
    return cleared


@dataclass(slots=True)
class Account:
    """Aggregate root for a principal and its lifecycle provenance."""

    account_id: str
    email: str
    name: str
    role: Role
    status: AccountStatus
    created_at: datetime
    updated_at: datetime
    provider: str | None = None
    provider_id: str | None = None
    suspended_by: str | None = None
    suspended_at: datetime | None = None
    suspension_reason: str | None = None
    suspension_end_date: datetime | None = None
    blocked_by: str | None = None
    blocked_at: datetime | None = None
    block_reason: str | None = None
    deleted_by: str | None = None
    deleted_at: datetime | None = None
    deletion_reason: str | None = None
    promoted_by: str | None = None
    promoted_at: datetime | None = None
    demoted_by: str | None = None
    demoted_at: datetime | None = None
    reactivated_by: str | None = None
    reactivated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.active
