"""Account status and role transitions with permission checks and audit trail.

Legal status transitions::

    active    --suspend-->    suspended
    active    --block-->      blocked
    active    --delete-->     deleted     (super_admin only)
    suspended --reactivate--> active
    blocked   --reactivate--> active
    deleted   --restore-->    active      (super_admin only)

Role transitions are ``promote`` (strictly upward, target must be active) and
``demote`` (back to ``user``). Every write is a compare-and-swap on the status
and role the decision was based on, so a concurrent change makes the loser
fail with ``ConflictError`` and leaves no audit entry behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable

from ..metrics import LIFECYCLE_ACTIONS
from .account import Account, AccountStatus, Role, cleared_provenance
from .audit import AuditAction, AuditLog
from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RoleGateError,
    UnavailableError,
    ValidationError,
)
from .permissions import require_actor
from .results import ActionResult

if TYPE_CHECKING:
    from ..repository import AccountRepository
    from ..security.sessions import SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_RESTORE_REASON = "User restoration requested"


@dataclass(slots=True)
class _Plan:
    """The write, audit text and side effects a permitted transition implies."""

    changes: dict[str, Any]
    details: str
    audit_role: Role | None = None
    invalidate_sessions: bool = False
    keep_one_super_admin: bool = False


PlanFn = Callable[[Account, Account, datetime], _Plan]


class AccountLifecycleManager:
    """The only writer of account ``status`` and ``role``."""

    def __init__(
        self,
        accounts: "AccountRepository",
        sessions: "SessionRegistry",
        audit: AuditLog,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._accounts = accounts
        self._sessions = sessions
        self._audit = audit
        self._clock = clock

    # ------------------------------------------------------------------ status

    def suspend(
        self,
        actor_email: str,
        target_id: str,
        reason: str | None,
        duration_days: int | None = None,
        ip_address: str | None = None,
    ) -> ActionResult:
        def plan(actor: Account, target: Account, now: datetime) -> _Plan:
            reason_text = _require_reason(reason, "Suspension")
            if duration_days is not None and (
                isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days <= 0
            ):
                raise ValidationError("Suspension duration must be a positive number of days")
            _guard_privileged_target(actor, target, "suspend")
            _require_status(target, "suspend", AccountStatus.active)
            end_date = now + timedelta(days=duration_days) if duration_days else None
            span = f", Duration: {duration_days} days" if duration_days else " (Permanent)"
            return _Plan(
                changes={
                    **cleared_provenance(AccountStatus.suspended),
                    "status": AccountStatus.suspended,
                    "suspended_by": actor.email,
                    "suspended_at": now,
                    "suspension_reason": reason_text,
                    "suspension_end_date": end_date,
                },
                details=f"User suspended. Reason: {reason_text}{span}",
                audit_role=target.role,
                invalidate_sessions=True,
            )

        return self._apply(
            "suspend", AuditAction.USER_SUSPENDED, actor_email, Role.admin, self._by_id(target_id), plan, ip_address
        )

    def block(
        self,
        actor_email: str,
        target_id: str,
        reason: str | None,
        ip_address: str | None = None,
    ) -> ActionResult:
        def plan(actor: Account, target: Account, now: datetime) -> _Plan:
            reason_text = _require_reason(reason, "Block")
            _guard_privileged_target(actor, target, "block")
            _require_status(target, "block", AccountStatus.active)
            return _Plan(
                changes={
                    **cleared_provenance(AccountStatus.blocked),
                    "status": AccountStatus.blocked,
                    "blocked_by": actor.email,
                    "blocked_at": now,
                    "block_reason": reason_text,
                },
                details=f"User blocked. Reason: {reason_text}",
                audit_role=target.role,
                invalidate_sessions=True,
            )

        return self._apply(
            "block", AuditAction.USER_BLOCKED, actor_email, Role.admin, self._by_id(target_id), plan, ip_address
        )

    def delete(
        self,
        actor_email: str,
        target_id: str,
        reason: str | None,
        ip_address: str | None = None,
    ) -> ActionResult:
        """Soft delete: the row stays, status becomes ``deleted``."""

        def plan(actor: Account, target: Account, now: datetime) -> _Plan:
            reason_text = _require_reason(reason, "Deletion")
            if actor.account_id == target.account_id:
                raise ForbiddenError("Cannot delete yourself")
            _require_status(target, "delete", AccountStatus.active)
            return _Plan(
                changes={
                    **cleared_provenance(AccountStatus.deleted),
                    "status": AccountStatus.deleted,
                    "deleted_by": actor.email,
                    "deleted_at": now,
                    "deletion_reason": reason_text,
                },
                details=f"User soft deleted. Reason: {reason_text}",
                audit_role=target.role,
                invalidate_sessions=True,
            )

        return self._apply(
            "delete", AuditAction.USER_DELETED, actor_email, Role.super_admin, self._by_id(target_id), plan, ip_address
        )

    def reactivate(self, actor_email: str, target_id: str, ip_address: str | None = None) -> ActionResult:
        def plan(actor: Account, target: Account, now: datetime) -> _Plan:
            if target.status is AccountStatus.active:
                raise ConflictError("User is already active")
            if target.status is AccountStatus.deleted:
                raise ConflictError("Deleted accounts must be restored, not reactivated")
            return _Plan(
                changes={
                    **cleared_provenance(AccountStatus.active),
                    "status": AccountStatus.active,
                    "reactivated_by": actor.email,
                    "reactivated_at": now,
                },
                details=f"User account reactivated (was {target.status.value})",
                audit_role=target.role,
            )

        return self._apply(
            "reactivate", AuditAction.USER_REACTIVATED, actor_email, Role.admin, self._by_id(target_id), plan, ip_address
        )

    def restore(
        self,
        actor_email: str,
        target_id: str,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> ActionResult:
        def plan(actor: Account, target: Account, now: datetime) -> _Plan:
            _require_status(target, "restore", AccountStatus.deleted)
            reason_text = (reason or "").strip() or DEFAULT_RESTORE_REASON
            return _Plan(
                changes={
                    **cleared_provenance(AccountStatus.active),
                    "status": AccountStatus.active,
                    "reactivated_by": actor.email,
                    "reactivated_at": now,
                },
                details=f"User restored. Reason: {reason_text}",
                audit_role=target.role,
            )

        return self._apply(
            "restore", AuditAction.USER_RESTORED, actor_email, Role.super_admin, self._by_id(target_id), plan, ip_address
        )

    # -------------------------------------------------------------------- role

    def promote(
        self,
        actor_email: str,
        target_id: str,
        new_role: Role | str,
        ip_address: str | None = None,
    ) -> ActionResult:
        def plan(actor: Account, target: Account, now: datetime) -> _Plan:
            role = Role.parse(new_role)
            if role is None or not role.is_admin:
                raise ValidationError("New role must be admin or super_admin")
            if role is Role.super_admin and actor.account_id == target.account_id:
                raise ForbiddenError("Cannot promote yourself")
            if role is Role.super_admin and actor.role is not Role.super_admin:
                raise ForbiddenError("Insufficient permissions for this role change")
            if not target.is_active:
                raise ConflictError(f"Cannot promote a {target.status.value} account")
            if target.role is role:
                raise ConflictError(f"User already has {role.value} role")
            if target.role.rank > role.rank:
                raise ConflictError("Promotion cannot lower a role; use demote")
            return _Plan(
                changes={"role": role, "promoted_by": actor.email, "promoted_at": now},
                details=f"User promoted from {target.role.value} to {role.value}",
                audit_role=role,
            )

        return self._apply(
            "promote", AuditAction.USER_PROMOTED, actor_email, Role.admin, self._by_id(target_id), plan, ip_address
        )

    def demote(self, actor_email: str, target_email: str, ip_address: str | None = None) -> ActionResult:
        def plan(actor: Account, target: Account, now: datetime) -> _Plan:
            if target.role is Role.user:
                raise ConflictError("User is already a regular user")
            if target.role is Role.super_admin and actor.role is not Role.super_admin:
                raise ForbiddenError("Insufficient permissions for this role change")
            self_demotion = actor.account_id == target.account_id and target.role is Role.super_admin
            if self_demotion and self._accounts.count_active_super_admins() <= 1:
                raise ConflictError("Cannot demote yourself as the only super admin")
            return _Plan(
                changes={"role": Role.user, "demoted_by": actor.email, "demoted_at": now},
                details=f"User demoted from {target.role.value} to user",
                audit_role=Role.user,
                invalidate_sessions=True,
                keep_one_super_admin=self_demotion,
            )

        return self._apply(
            "demote", AuditAction.USER_DEMOTED, actor_email, Role.admin, self._by_email(target_email), plan, ip_address
        )

    # --------------------------------------------------------------- internals

    def _by_id(self, target_id: str) -> Callable[[], Account]:
        def load() -> Account:
            target = self._accounts.get_account(target_id)
            if target is None:
                raise NotFoundError("User not found")
            return target

        return load

    def _by_email(self, email: str) -> Callable[[], Account]:
        def load() -> Account:
            target = self._accounts.get_account_by_email(email) if email else None
            if target is None:
                raise NotFoundError("Target user not found")
            return target

        return load

    def _apply(
        self,
        action: str,
        audit_action: AuditAction,
        actor_email: str,
        minimum: Role,
        load_target: Callable[[], Account],
        plan: PlanFn,
        ip_address: str | None,
    ) -> ActionResult:
        try:
            actor = require_actor(self._accounts, actor_email, minimum)
            target = load_target()
            step = plan(actor, target, self._clock())
            updated = self._accounts.update_account_if(
                target.account_id,
                expected_status=target.status,
                expected_role=target.role,
                changes=step.changes,
                keep_one_super_admin=step.keep_one_super_admin,
            )
            if updated is None:
                raise ConflictError("Account was changed concurrently; reload and retry")
        except UnavailableError:
            LIFECYCLE_ACTIONS.labels(action=action, outcome="error").inc()
            raise
        except RoleGateError as exc:
            LIFECYCLE_ACTIONS.labels(action=action, outcome="refused").inc()
            logger.warning("%s requested by %s refused: %s", action, actor_email, exc.message)
            return ActionResult.failure(exc)

        # The account row is committed past this point.
        try:
            if step.invalidate_sessions:
                removed = self._sessions.invalidate_all_for_account(updated.account_id)
                logger.info("%s: revoked %d sessions for account %s", action, removed, updated.account_id)
            self._audit.record(
                audit_action,
                actor_email=actor.email,
                target_email=updated.email,
                role=step.audit_role,
                ip_address=ip_address,
                details=step.details,
            )
        except UnavailableError:
            LIFECYCLE_ACTIONS.labels(action=action, outcome="error").inc()
            logger.error(
                "%s of account %s was applied but session revocation or audit failed",
                action,
                updated.account_id,
            )
            raise

        LIFECYCLE_ACTIONS.labels(action=action, outcome="success").inc()
        return ActionResult.ok(updated)


def _require_reason(reason: str | None, label: str) -> str:
    text = (reason or "").strip()
    if not text:
        raise ValidationError(f"{label} reason is required")
    return text


def _require_status(target: Account, action: str, *allowed: AccountStatus) -> None:
    if target.status not in allowed:
        raise ConflictError(f"Cannot {action} a {target.status.value} account")


def _guard_privileged_target(actor: Account, target: Account, action: str) -> None:
    if target.role.is_admin and actor.role is not Role.super_admin:
        raise ForbiddenError(f"Insufficient permissions to {action} this account")
