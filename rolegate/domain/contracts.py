"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .account import AccountStatus, Role


@dataclass(slots=True)
class CreateAccountInput:
    """Validated inputs required to create an account at first sign-in."""

    email: str
    name: str
    role: Role = Role.user
    provider: str | None = None
    provider_id: str | None = None


@dataclass(slots=True)
class FederatedIdentity:
    """Verified identity handed over by an OAuth-style provider callback."""

    email: str
    provider: str
    provider_account_id: str
    name: str | None = None


@dataclass(slots=True)
class AccountListFilters:
    page: int = 1
    limit: int = 20
    search: str | None = None
    role: Role | None = None
    status: AccountStatus | None = None


@dataclass(slots=True)
class AuditLogFilters:
    action: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    search: str | None = None
