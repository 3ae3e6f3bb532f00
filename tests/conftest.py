from __future__ import annotations

import pytest

from fakes import FakeAccountRepository, FakeAuditLogRepository, FakeCredentialVerifier, FakeInvitationRepository
from rolegate.domain.account import Role
from rolegate.domain.audit import AuditLog
from rolegate.domain.invitations import InvitationService
from rolegate.domain.lifecycle import AccountLifecycleManager
from rolegate.security.sessions import InMemorySessionRegistry, SessionPolicy


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def accounts() -> FakeAccountRepository:
    return FakeAccountRepository()


@pytest.fixture
def audit_repo() -> FakeAuditLogRepository:
    return FakeAuditLogRepository()


@pytest.fixture
def audit(audit_repo) -> AuditLog:
    return AuditLog(audit_repo)


@pytest.fixture
def registry(accounts, clock) -> InMemorySessionRegistry:
    policy = SessionPolicy(max_age_seconds=3600, inactivity_seconds=600, sweep_probability=0.0)
    return InMemorySessionRegistry(accounts.get_account_status, policy, clock=clock)


@pytest.fixture
def lifecycle(accounts, registry, audit) -> AccountLifecycleManager:
    return AccountLifecycleManager(accounts, registry, audit)


@pytest.fixture
def invitation_repo() -> FakeInvitationRepository:
    return FakeInvitationRepository()


@pytest.fixture
def invitations(accounts, invitation_repo, audit) -> InvitationService:
    return InvitationService(accounts, invitation_repo, audit)


@pytest.fixture
def verifier() -> FakeCredentialVerifier:
    return FakeCredentialVerifier()


@pytest.fixture
def staff(accounts):
    """One account per role, all active."""
    return {
        "super": accounts.add("root@example.com", Role.super_admin),
        "admin": accounts.add("admin@example.com", Role.admin),
        "user": accounts.add("user@example.com", Role.user),
    }
