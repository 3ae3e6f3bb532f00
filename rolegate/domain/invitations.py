"""Role-grant invitations consumed at an invitee's first sign-in."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from ..security.tokens import generate_invitation_token
from .account import Role
from .audit import AuditAction, AuditLog
from .errors import ConflictError, ForbiddenError, NotFoundError, RoleGateError, UnavailableError, ValidationError
from .permissions import require_actor
from .results import ActionResult

if TYPE_CHECKING:
    from ..repository import AccountRepository, InvitationRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Invitation:
    invitation_id: str
    email: str
    role: Role
    invited_by: str
    token: str
    created_at: datetime
    expires_at: datetime
    is_used: bool = False
    used_at: datetime | None = None
    is_active: bool = True
    revoked_by: str | None = None
    revoked_at: datetime | None = None

    def is_pending(self, now: datetime) -> bool:
        return not self.is_used and self.is_active and self.expires_at > now


class InvitationService:
    """Creates, revokes and consumes admin invitations."""

    def __init__(
        self,
        accounts: "AccountRepository",
        invitations: "InvitationRepository",
        audit: AuditLog,
        *,
        default_ttl_hours: int = 72,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._accounts = accounts
        self._invitations = invitations
        self._audit = audit
        self._default_ttl_hours = default_ttl_hours
        self._clock = clock

    def create(
        self,
        inviter_email: str,
        invitee_email: str,
        role: Role = Role.admin,
        expiration_hours: int | None = None,
        ip_address: str | None = None,
    ) -> ActionResult:
        try:
            inviter = require_actor(self._accounts, inviter_email, Role.admin)
            if not role.is_admin:
                raise ValidationError("Invitations can only grant admin or super_admin")
            if role is Role.super_admin and inviter.role is not Role.super_admin:
                raise ForbiddenError("Insufficient permissions to create this invitation")
            hours = self._default_ttl_hours if expiration_hours is None else expiration_hours
            if hours <= 0:
                raise ValidationError("Expiration must be a positive number of hours")

            existing = self._accounts.get_account_by_email(invitee_email)
            if existing is not None and existing.role.is_admin:
                raise ConflictError("User already has admin privileges")
            if self._invitations.find_pending(invitee_email) is not None:
                raise ConflictError("Active invitation already exists for this email")

            expires_at = self._clock() + timedelta(hours=hours)
            invitation = self._invitations.create_invitation(
                email=invitee_email,
                role=role,
                invited_by=inviter.email,
                token=generate_invitation_token(),
                expires_at=expires_at,
            )
        except UnavailableError:
            raise
        except RoleGateError as exc:
            logger.warning("invitation for %s by %s refused: %s", invitee_email, inviter_email, exc.message)
            return ActionResult.failure(exc)

        self._audit.record(
            AuditAction.INVITATION_CREATED,
            actor_email=inviter.email,
            target_email=invitation.email,
            role=role,
            ip_address=ip_address,
            details=f"Admin invitation created for role: {role.value}, expires: {expires_at.isoformat()}",
        )
        return ActionResult.ok(invitation)

    def revoke(self, actor_email: str, invitation_id: str, ip_address: str | None = None) -> ActionResult:
        try:
            actor = require_actor(self._accounts, actor_email, Role.admin)
            invitation = self._invitations.get_invitation(invitation_id)
            if invitation is None:
                raise NotFoundError("Invitation not found")
            if invitation.is_used:
                raise ConflictError("Invitation has already been used")
            if not invitation.is_active:
                raise ConflictError("Invitation has already been revoked")
            revoked = self._invitations.revoke_invitation(invitation_id, actor.email)
            if revoked is None:
                raise ConflictError("Invitation changed concurrently; reload and retry")
        except UnavailableError:
            raise
        except RoleGateError as exc:
            logger.warning("revoking invitation %s by %s refused: %s", invitation_id, actor_email, exc.message)
            return ActionResult.failure(exc)

        self._audit.record(
            AuditAction.INVITATION_REVOKED,
            actor_email=actor.email,
            target_email=revoked.email,
            role=revoked.role,
            ip_address=ip_address,
            details=f"Admin invitation revoked for {revoked.email}",
        )
        return ActionResult.ok(revoked)

    def list_pending(self) -> list[Invitation]:
        return self._invitations.list_pending()

    def consume(self, email: str) -> Role:
        """Return the role granted to ``email`` by a pending invitation, marking it used."""
        invitation = self._invitations.consume_pending(email)
        if invitation is None:
            return Role.user
        self._audit.record(
            AuditAction.INVITATION_USED,
            actor_email=None,
            target_email=invitation.email,
            role=invitation.role,
            details=f"Admin invitation used for role: {invitation.role.value} (invited by {invitation.invited_by})",
        )
        logger.info("invitation %s consumed at first sign-in", invitation.invitation_id)
        return invitation.role
