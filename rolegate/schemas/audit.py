"""Audit log and invitation DTOs."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from ..domain.audit import AuditLogEntry
from ..domain.invitations import Invitation


class AuditEntryOut(BaseModel):
    audit_id: int
    action: str
    actor_email: str | None
    target_email: str | None
    role: str | None
    ip_address: str | None
    details: str
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: AuditLogEntry) -> "AuditEntryOut":
        return cls(
            audit_id=entry.audit_id,
            action=entry.action.value,
            actor_email=entry.actor_email,
            target_email=entry.target_email,
            role=entry.role.value if entry.role else None,
            ip_address=entry.ip_address,
            details=entry.details,
            created_at=entry.created_at,
        )


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditEntryOut]
    next_cursor: str | None = None


class InvitationOut(BaseModel):
    """Invitation view; the token is never echoed back."""

    invitation_id: str
    email: str
    role: str
    invited_by: str
    created_at: datetime
    expires_at: datetime
    is_used: bool
    is_active: bool

    @classmethod
    def from_domain(cls, invitation: Invitation) -> "InvitationOut":
        return cls(
            invitation_id=invitation.invitation_id,
            email=invitation.email,
            role=invitation.role.value,
            invited_by=invitation.invited_by,
            created_at=invitation.created_at,
            expires_at=invitation.expires_at,
            is_used=invitation.is_used,
            is_active=invitation.is_active,
        )
