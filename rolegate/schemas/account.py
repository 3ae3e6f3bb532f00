"""Account-related DTOs returned by the HTTP surface."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from ..domain.account import Account


class AccountOut(BaseModel):
    """Public view of an account, including lifecycle provenance."""

    account_id: str
    email: str
    name: str
    role: str
    status: str
    provider: str | None = None
    created_at: datetime
    updated_at: datetime
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

    @classmethod
    def from_domain(cls, account: Account) -> "AccountOut":
        return cls(
            account_id=account.account_id,
            email=account.email,
            name=account.name,
            role=account.role.value,
            status=account.status.value,
            provider=account.provider,
            created_at=account.created_at,
            updated_at=account.updated_at,
            suspended_by=account.suspended_by,
            suspended_at=account.suspended_at,
            suspension_reason=account.suspension_reason,
            suspension_end_date=account.suspension_end_date,
            blocked_by=account.blocked_by,
            blocked_at=account.blocked_at,
            block_reason=account.block_reason,
            deleted_by=account.deleted_by,
            deleted_at=account.deleted_at,
            deletion_reason=account.deletion_reason,
            promoted_by=account.promoted_by,
            promoted_at=account.promoted_at,
            demoted_by=account.demoted_by,
            demoted_at=account.demoted_at,
            reactivated_by=account.reactivated_by,
            reactivated_at=account.reactivated_at,
        )


class AdminOut(BaseModel):
    account_id: str
    email: str
    name: str
    role: str
    status: str
    created_at: datetime
    promoted_by: str | None = None
    promoted_at: datetime | None = None

    @classmethod
    def from_domain(cls, account: Account) -> "AdminOut":
        return cls(
            account_id=account.account_id,
            email=account.email,
            name=account.name,
            role=account.role.value,
            status=account.status.value,
            created_at=account.created_at,
            promoted_by=account.promoted_by,
            promoted_at=account.promoted_at,
        )


class Pagination(BaseModel):
    current: int
    total: int
    count: int


class AccountListResponse(BaseModel):
    accounts: list[AccountOut]
    pagination: Pagination
