"""Tests for account status and role transitions."""

from __future__ import annotations

import threading

import pytest

from rolegate.domain.account import AccountStatus, Role
from rolegate.domain.audit import AuditAction
from rolegate.domain.errors import UnavailableError

ROOT = "root@example.com"
ADMIN = "admin@example.com"
USER = "user@example.com"


def _apply(lifecycle, name, actor, target):
    """Invoke one status operation with valid arguments."""
    if name == "suspend":
        return lifecycle.suspend(actor, target.account_id, "spam", 7)
    if name == "block":
        return lifecycle.block(actor, target.account_id, "abuse")
    if name == "delete":
        return lifecycle.delete(actor, target.account_id, "gdpr request")
    if name == "reactivate":
        return lifecycle.reactivate(actor, target.account_id)
    if name == "restore":
        return lifecycle.restore(actor, target.account_id)
    raise AssertionError(name)


LEGAL = {
    (AccountStatus.active, "suspend"): AccountStatus.suspended,
    (AccountStatus.active, "block"): AccountStatus.blocked,
    (AccountStatus.active, "delete"): AccountStatus.deleted,
    (AccountStatus.suspended, "reactivate"): AccountStatus.active,
    (AccountStatus.blocked, "reactivate"): AccountStatus.active,
    (AccountStatus.deleted, "restore"): AccountStatus.active,
}


@pytest.mark.parametrize("start", list(AccountStatus))
@pytest.mark.parametrize("operation", ["suspend", "block", "delete", "reactivate", "restore"])
def test_state_machine_closure(lifecycle, accounts, audit_repo, staff, start, operation):
    target = accounts.add("target@example.com", Role.user, start)
    entries_before = len(audit_repo.entries)

    result = _apply(lifecycle, operation, ROOT, target)
    after = accounts.get_account(target.account_id)

    expected = LEGAL.get((start, operation))
    if expected is None:
        assert not result.success
        assert result.status_code == 400
        assert after.status is start
        assert len(audit_repo.entries) == entries_before
    else:
        assert result.success, result.error
        assert after.status is expected
        assert len(audit_repo.entries) == entries_before + 1


@pytest.mark.parametrize(
    "actor, target_role, operation, allowed",
    [
        (USER, Role.user, "suspend", False),
        (USER, Role.user, "block", False),
        (ADMIN, Role.user, "suspend", True),
        (ADMIN, Role.user, "block", True),
        (ADMIN, Role.admin, "suspend", False),
        (ADMIN, Role.super_admin, "block", False),
        (ROOT, Role.admin, "suspend", True),
        (ROOT, Role.super_admin, "block", True),
        (ADMIN, Role.user, "delete", False),
        (ROOT, Role.user, "delete", True),
        (ROOT, Role.admin, "delete", True),
    ],
)
def test_permission_matrix(lifecycle, accounts, audit_repo, staff, actor, target_role, operation, allowed):
    target = accounts.add("target@example.com", target_role)
    result = _apply(lifecycle, operation, actor, target)
    if allowed:
        assert result.success, result.error
    else:
        assert result.status_code == 403
        assert accounts.get_account(target.account_id).status is AccountStatus.active
        assert audit_repo.entries == []


def test_reactivate_and_restore_permissions(lifecycle, accounts, staff):
    suspended = accounts.add("s@example.com", Role.user, AccountStatus.suspended)
    deleted = accounts.add("d@example.com", Role.user, AccountStatus.deleted)

    assert lifecycle.reactivate(USER, suspended.account_id).status_code == 403
    assert lifecycle.reactivate(ADMIN, suspended.account_id).success
    assert lifecycle.restore(ADMIN, deleted.account_id).status_code == 403
    assert lifecycle.restore(ROOT, deleted.account_id).success


def test_inactive_actor_is_refused(lifecycle, accounts, staff):
    accounts.update_account_if(
        staff["admin"].account_id,
        expected_status=AccountStatus.active,
        expected_role=Role.admin,
        changes={"status": AccountStatus.blocked},
    )
    result = lifecycle.suspend(ADMIN, staff["user"].account_id, "spam")
    assert (result.success, result.status_code, result.error) == (False, 403, "Insufficient permissions")


def test_unknown_target_is_not_found(lifecycle, staff):
    result = lifecycle.block(ADMIN, "missing", "abuse")
    assert result.status_code == 404


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_reason_is_mandatory(lifecycle, staff, reason):
    for result in (
        lifecycle.suspend(ROOT, staff["user"].account_id, reason),
        lifecycle.block(ROOT, staff["user"].account_id, reason),
        lifecycle.delete(ROOT, staff["user"].account_id, reason),
    ):
        assert result.status_code == 400
        assert "reason is required" in result.error


@pytest.mark.parametrize("duration", [0, -3, True, 2.5])
def test_suspension_duration_must_be_positive_integer(lifecycle, staff, duration):
    result = lifecycle.suspend(ADMIN, staff["user"].account_id, "spam", duration)
    assert result.status_code == 400


def test_suspend_records_provenance_and_revokes_sessions(lifecycle, registry, audit_repo, staff):
    session_id = registry.create(staff["user"].account_id)

    result = lifecycle.suspend(ADMIN, staff["user"].account_id, "spam", 7, ip_address="10.0.0.1")
    account = result.value

    assert account.status is AccountStatus.suspended
    assert account.suspended_by == ADMIN
    assert account.suspension_reason == "spam"
    assert (account.suspension_end_date - account.suspended_at).days == 7
    assert not registry.touch(session_id)

    entry = audit_repo.entries[-1]
    assert entry.action is AuditAction.USER_SUSPENDED
    assert (entry.actor_email, entry.target_email, entry.ip_address) == (ADMIN, USER, "10.0.0.1")
    assert entry.details == "User suspended. Reason: spam, Duration: 7 days"


def test_permanent_suspension_detail(lifecycle, audit_repo, staff):
    lifecycle.suspend(ADMIN, staff["user"].account_id, "spam")
    assert audit_repo.entries[-1].details == "User suspended. Reason: spam (Permanent)"


def test_provenance_groups_are_exclusive(lifecycle, accounts, staff):
    uid = staff["user"].account_id
    lifecycle.block(ADMIN, uid, "abuse")
    reactivated = lifecycle.reactivate(ADMIN, uid).value
    assert reactivated.blocked_by is None and reactivated.block_reason is None
    assert reactivated.reactivated_by == ADMIN

    deleted = lifecycle.delete(ROOT, uid, "cleanup").value
    assert deleted.reactivated_by is None and deleted.deleted_by == ROOT

    restored = lifecycle.restore(ROOT, uid).value
    assert restored.deleted_by is None and restored.deletion_reason is None
    assert restored.reactivated_by == ROOT


def test_delete_self_is_forbidden(lifecycle, staff):
    result = lifecycle.delete(ROOT, staff["super"].account_id, "leaving")
    assert result.status_code == 403


def test_restore_uses_default_reason(lifecycle, accounts, audit_repo, staff):
    deleted = accounts.add("gone@example.com", Role.user, AccountStatus.deleted)
    lifecycle.restore(ROOT, deleted.account_id)
    assert audit_repo.entries[-1].details == "User restored. Reason: User restoration requested"
    assert audit_repo.entries[-1].action is AuditAction.USER_RESTORED


def test_promote_rules(lifecycle, accounts, audit_repo, staff):
    uid = staff["user"].account_id
    assert lifecycle.promote(ADMIN, uid, "user").status_code == 400
    assert lifecycle.promote(ADMIN, uid, "wizard").status_code == 400
    assert lifecycle.promote(ADMIN, uid, Role.super_admin).status_code == 403

    promoted = lifecycle.promote(ADMIN, uid, "admin")
    assert promoted.success and promoted.value.role is Role.admin
    assert promoted.value.promoted_by == ADMIN
    assert audit_repo.entries[-1].details == "User promoted from user to admin"

    assert lifecycle.promote(ROOT, uid, Role.admin).status_code == 400
    assert lifecycle.promote(ROOT, staff["super"].account_id, Role.admin).status_code == 400


def test_promote_requires_active_target(lifecycle, accounts, staff):
    blocked = accounts.add("b@example.com", Role.user, AccountStatus.blocked)
    result = lifecycle.promote(ROOT, blocked.account_id, Role.admin)
    assert result.status_code == 400
    assert accounts.get_account(blocked.account_id).role is Role.user


def test_self_promotion_to_super_admin_is_forbidden(lifecycle, accounts, staff):
    result = lifecycle.promote(ADMIN, staff["admin"].account_id, Role.super_admin)
    assert result.status_code == 403
    assert accounts.get_account(staff["admin"].account_id).role is Role.admin


def test_demote(lifecycle, registry, audit_repo, staff):
    session_id = registry.create(staff["admin"].account_id)
    result = lifecycle.demote(ROOT, ADMIN)
    assert result.success
    assert result.value.role is Role.user and result.value.demoted_by == ROOT
    assert not registry.touch(session_id)
    assert audit_repo.entries[-1].details == "User demoted from admin to user"

    assert lifecycle.demote(ROOT, ADMIN).status_code == 400
    assert lifecycle.demote(ROOT, "nobody@example.com").status_code == 404


def test_admin_cannot_demote_super_admin(lifecycle, staff):
    assert lifecycle.demote(ADMIN, ROOT).status_code == 403


def test_forbidden_messages_do_not_name_the_required_role(lifecycle, invitations, staff):
    refusals = [
        lifecycle.suspend(ADMIN, staff["super"].account_id, "spam"),
        lifecycle.block(ADMIN, staff["admin"].account_id, "abuse"),
        lifecycle.delete(ADMIN, staff["user"].account_id, "gdpr"),
        lifecycle.restore(ADMIN, staff["user"].account_id),
        lifecycle.promote(ADMIN, staff["user"].account_id, Role.super_admin),
        lifecycle.promote(ADMIN, staff["admin"].account_id, Role.super_admin),
        lifecycle.demote(ADMIN, ROOT),
        lifecycle.reactivate(USER, staff["user"].account_id),
        invitations.create(ADMIN, "new@example.com", Role.super_admin),
    ]
    for result in refusals:
        assert result.status_code == 403
        assert "super" not in result.error.lower()
        assert "admin" not in result.error.lower()


def test_sole_super_admin_cannot_self_demote(lifecycle, accounts, audit_repo, staff):
    result = lifecycle.demote(ROOT, ROOT)
    assert result.status_code == 400
    assert "only super admin" in result.error
    assert accounts.get_account(staff["super"].account_id).role is Role.super_admin
    assert audit_repo.entries == []


def test_super_admin_can_self_demote_when_another_exists(lifecycle, accounts, staff):
    accounts.add("root2@example.com", Role.super_admin)
    assert lifecycle.demote(ROOT, ROOT).success


def test_lost_race_leaves_no_audit_entry(lifecycle, accounts, audit_repo, staff, monkeypatch):
    uid = staff["user"].account_id
    real_update = accounts.update_account_if

    def interleaved(account_id, **kwargs):
        # a concurrent block lands between the read and the write
        real_update(
            account_id,
            expected_status=AccountStatus.active,
            expected_role=Role.user,
            changes={"status": AccountStatus.blocked},
        )
        return real_update(account_id, **kwargs)

    monkeypatch.setattr(accounts, "update_account_if", interleaved)
    result = lifecycle.suspend(ADMIN, uid, "spam")
    assert result.status_code == 400
    assert "concurrently" in result.error
    assert audit_repo.entries == []


def test_concurrent_delete_and_promote_do_not_both_succeed(lifecycle, accounts, audit_repo, staff, monkeypatch):
    target = accounts.add("race@example.com", Role.user)
    real_update = accounts.update_account_if
    both_loaded = threading.Barrier(2, timeout=5)
    results = {}

    def after_both_reads(account_id, **kwargs):
        # each side has loaded the target before either writes
        both_loaded.wait()
        return real_update(account_id, **kwargs)

    monkeypatch.setattr(accounts, "update_account_if", after_both_reads)

    def run(name, fn):
        results[name] = fn()

    threads = [
        threading.Thread(target=run, args=("delete", lambda: lifecycle.delete(ROOT, target.account_id, "spam"))),
        threading.Thread(target=run, args=("promote", lambda: lifecycle.promote(ROOT, target.account_id, "admin"))),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    final = accounts.get_account(target.account_id)
    assert len(results) == 2
    assert sum(result.success for result in results.values()) == 1
    loser = next(result for result in results.values() if not result.success)
    assert "concurrently" in loser.error
    assert len(audit_repo.entries) == 1
    assert (final.status, final.role) in {
        (AccountStatus.deleted, Role.user),
        (AccountStatus.active, Role.admin),
    }


def test_audit_failure_after_mutation_propagates(lifecycle, audit_repo, accounts, staff):
    audit_repo.fail_writes = True
    with pytest.raises(UnavailableError):
        lifecycle.block(ADMIN, staff["user"].account_id, "abuse")
    assert accounts.get_account(staff["user"].account_id).status is AccountStatus.blocked


def test_end_to_end_suspend_then_reactivate(lifecycle, registry, audit_repo, accounts, staff):
    uid = staff["user"].account_id
    session_id = registry.create(uid)
    assert registry.touch(session_id)

    assert lifecycle.suspend(ADMIN, uid, "spam", 7).success
    assert not registry.touch(session_id)

    assert lifecycle.reactivate(ADMIN, uid).success
    assert not registry.touch(session_id)
    assert registry.touch(registry.create(uid))

    assert audit_repo.actions() == [AuditAction.USER_SUSPENDED, AuditAction.USER_REACTIVATED]
    account = accounts.get_account(uid)
    assert account.suspended_by is None and account.suspension_reason is None
    assert account.reactivated_by == ADMIN
