from __future__ import annotations

from datetime import datetime, timedelta, timezone

from rolegate.domain.account import Role
from rolegate.domain.audit import AuditAction


def test_admin_creates_admin_invitation(invitations, audit_repo, staff):
    result = invitations.create("admin@example.com", "New.Admin@Example.com", ip_address="10.1.1.1")
    assert result.success
    invitation = result.value
    assert invitation.email == "new.admin@example.com"
    assert invitation.role is Role.admin
    assert len(invitation.token) == 64
    assert invitation.expires_at - datetime.now(timezone.utc) > timedelta(hours=71)

    entry = audit_repo.entries[-1]
    assert entry.action is AuditAction.INVITATION_CREATED
    assert entry.ip_address == "10.1.1.1"


def test_super_admin_invitation_needs_super_admin(invitations, staff):
    assert invitations.create("admin@example.com", "x@example.com", Role.super_admin).status_code == 403
    assert invitations.create("root@example.com", "x@example.com", Role.super_admin).success


def test_plain_users_cannot_invite(invitations, staff):
    assert invitations.create("user@example.com", "x@example.com").status_code == 403


def test_invitation_cannot_grant_user_role(invitations, staff):
    assert invitations.create("admin@example.com", "x@example.com", Role.user).status_code == 400


def test_duplicate_and_existing_admin_are_conflicts(invitations, staff):
    assert invitations.create("admin@example.com", "x@example.com").success
    duplicate = invitations.create("admin@example.com", "x@example.com")
    assert (duplicate.status_code, duplicate.error) == (400, "Active invitation already exists for this email")

    existing = invitations.create("root@example.com", "admin@example.com")
    assert existing.error == "User already has admin privileges"


def test_non_positive_expiration_is_rejected(invitations, staff):
    assert invitations.create("admin@example.com", "x@example.com", expiration_hours=0).status_code == 400


def test_revoke(invitations, audit_repo, staff):
    invitation = invitations.create("admin@example.com", "x@example.com").value

    assert invitations.revoke("user@example.com", invitation.invitation_id).status_code == 403
    assert invitations.revoke("admin@example.com", "missing").status_code == 404

    revoked = invitations.revoke("admin@example.com", invitation.invitation_id)
    assert revoked.success and revoked.value.revoked_by == "admin@example.com"
    assert audit_repo.entries[-1].action is AuditAction.INVITATION_REVOKED

    again = invitations.revoke("admin@example.com", invitation.invitation_id)
    assert again.error == "Invitation has already been revoked"
    assert invitations.list_pending() == []


def test_consume_is_single_use(invitations, audit_repo, staff):
    invitations.create("root@example.com", "boss@example.com", Role.super_admin)

    assert invitations.consume("BOSS@example.com") is Role.super_admin
    assert invitations.consume("boss@example.com") is Role.user

    used = audit_repo.entries[-1]
    assert used.action is AuditAction.INVITATION_USED
    assert used.actor_email is None


def test_used_invitation_cannot_be_revoked(invitations, invitation_repo, staff):
    invitation = invitations.create("admin@example.com", "x@example.com").value
    invitations.consume("x@example.com")
    result = invitations.revoke("admin@example.com", invitation.invitation_id)
    assert result.error == "Invitation has already been used"


def test_expired_invitation_is_not_consumed(invitations, invitation_repo, staff):
    invitation = invitations.create("admin@example.com", "late@example.com").value
    invitation.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    assert invitations.consume("late@example.com") is Role.user
