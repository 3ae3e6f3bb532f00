"""Append-only audit trail of privileged and session-mutating actions."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import json
from typing import TYPE_CHECKING, Tuple

from .account import Role
from .contracts import AuditLogFilters
from .errors import ValidationError

if TYPE_CHECKING:
    from ..repository import AuditLogRepository


class AuditAction(str, Enum):
    USER_SUSPENDED = "USER_SUSPENDED"
    USER_BLOCKED = "USER_BLOCKED"
    USER_DELETED = "USER_DELETED"
    USER_REACTIVATED = "USER_REACTIVATED"
    USER_RESTORED = "USER_RESTORED"
    USER_PROMOTED = "USER_PROMOTED"
    USER_DEMOTED = "USER_DEMOTED"
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_REVOKED = "SESSION_REVOKED"
    INVITATION_CREATED = "INVITATION_CREATED"
    INVITATION_REVOKED = "INVITATION_REVOKED"
    INVITATION_USED = "INVITATION_USED"


@dataclass(frozen=True, slots=True)
class AuditLogEntry:
    """Immutable audit fact as stored in ``admin_audit_log``."""

    audit_id: int
    action: AuditAction
    actor_email: str | None
    target_email: str | None
    role: Role | None
    ip_address: str | None
    details: str
    created_at: datetime


class AuditLog:
    """Writes and pages through audit entries; there is no update or delete path."""

    def __init__(self, repository: "AuditLogRepository") -> None:
        self._repository = repository

    def record(
        self,
        action: AuditAction,
        *,
        actor_email: str | None,
        target_email: str | None,
        details: str,
        role: Role | None = None,
        ip_address: str | None = None,
    ) -> AuditLogEntry:
        """Append one entry. Store failures propagate to the caller."""
        return self._repository.write_audit_event(
            action=action,
            actor_email=actor_email,
            target_email=target_email,
            role=role,
            ip_address=ip_address,
            details=details,
        )

    def query(
        self,
        filters: AuditLogFilters,
        *,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogEntry], str | None]:
        """Return entries newest-first with an opaque cursor for the next page."""
        if filters.action is not None and filters.action not in AuditAction.__members__:
            raise ValidationError(f"unknown audit action: {filters.action}")
        decoded = decode_cursor(cursor) if cursor else None
        records, next_cursor = self._repository.list_audit_events(
            filters=filters,
            limit=max(1, min(limit, 100)),
            cursor=decoded,
        )
        return records, encode_cursor(next_cursor)


def encode_cursor(cursor: Tuple[datetime, int] | None) -> str | None:
    if cursor is None:
        return None
    created_at, audit_id = cursor
    payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
    return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")


def decode_cursor(cursor: str) -> Tuple[datetime, int]:
    try:
        data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
        return datetime.fromisoformat(data["created_at"]), int(data["audit_id"])
    except Exception as exc:
        raise ValidationError("invalid cursor") from exc
