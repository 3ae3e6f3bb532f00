"""Account service orchestrating sign-in, session issuance, and read-side queries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import jwt

from ..metrics import SIGN_INS
from ..security.credentials import CredentialStatus, CredentialVerifier
from ..security.rate_limiter import LoginThrottle
from ..security.tokens import decode_access_token, issue_access_token
from .account import Account, Role
from .audit import AuditAction, AuditLog, AuditLogEntry
from .contracts import AccountListFilters, AuditLogFilters, CreateAccountInput, FederatedIdentity
from .errors import AuthenticationError, ConflictError, RateLimitedError, UnavailableError, ValidationError
from .invitations import InvitationService

if TYPE_CHECKING:
    from ..repository import AccountRepository
    from ..security.sessions import SessionRegistry

logger = logging.getLogger(__name__)

CREDENTIALS_PROVIDER = "credentials"
_GRANT_ATTEMPTS = 3


@dataclass(slots=True)
class SignInResult:
    """What a successful sign-in hands back to API consumers."""

    account: Account
    session_id: str
    access_token: str
    expires_in: int


@dataclass(slots=True)
class Principal:
    """An authenticated caller with its account freshly reloaded."""

    account: Account
    session_id: str

    @property
    def email(self) -> str:
        return self.account.email

    @property
    def role(self) -> Role:
        return self.account.role


class AccountService:
    """Account workflows backed by Postgres storage and the session registry."""

    def __init__(
        self,
        accounts: "AccountRepository",
        sessions: "SessionRegistry",
        audit: AuditLog,
        invitations: InvitationService,
        verifier: CredentialVerifier,
        throttle: LoginThrottle,
    ) -> None:
        self._accounts = accounts
        self._sessions = sessions
        self._audit = audit
        self._invitations = invitations
        self._verifier = verifier
        self._throttle = throttle

    # ----------------------------------------------------------------- sign-in

    def sign_in_with_credentials(
        self, email: str, secret: str, ip_address: str | None = None
    ) -> SignInResult:
        """Verify an email/secret pair and open a session.

        Failed attempts are counted per email; once the budget is spent the
        caller gets :class:`RateLimitedError` until the window slides.
        """
        key = (email or "").strip().lower()
        if not key or not secret:
            raise AuthenticationError("Invalid email or password")
        if self._throttle.is_blocked(key):
            SIGN_INS.labels(method="credentials", outcome="throttled").inc()
            logger.warning("credential sign-in for %s throttled", key)
            raise RateLimitedError("Too many failed sign-in attempts; try again later")

        check = self._verifier.verify(key, secret)
        if check.status is not CredentialStatus.ok:
            self._throttle.record_failure(key)
            SIGN_INS.labels(method="credentials", outcome="rejected").inc()
            logger.warning("credential sign-in for %s rejected: %s", key, check.status.value)
            if check.status is CredentialStatus.wrong_provider:
                raise AuthenticationError(
                    f"This account uses {check.provider} sign-in. Please sign in with {check.provider}."
                )
            raise AuthenticationError("Invalid email or password")

        self._throttle.reset(key)
        account = self._ensure_account(
            email=check.email or key,
            name=check.name or key,
            provider=CREDENTIALS_PROVIDER,
            provider_id=None,
        )
        return self._open_session(account, "credentials", ip_address)

    def sign_in_with_provider(
        self, identity: FederatedIdentity, ip_address: str | None = None
    ) -> SignInResult:
        """Map a verified federated identity onto an account and open a session."""
        email = (identity.email or "").strip().lower()
        if not email or not identity.provider:
            raise AuthenticationError("Federated identity is missing an email or provider")

        account = self._accounts.get_account_by_email(email)
        if account is None:
            account = self._ensure_account(
                email=email,
                name=identity.name or email,
                provider=identity.provider,
                provider_id=identity.provider_account_id,
            )
        elif account.provider is None:
            account = self._accounts.bind_provider(
                account.account_id, identity.provider, identity.provider_account_id
            ) or account
        elif account.provider not in (CREDENTIALS_PROVIDER, identity.provider):
            SIGN_INS.labels(method="federated", outcome="rejected").inc()
            logger.warning(
                "federated sign-in for %s via %s rejected: bound to %s",
                email,
                identity.provider,
                account.provider,
            )
            raise AuthenticationError(
                f"This account is linked to {account.provider}. Please sign in with {account.provider}."
            )
        return self._open_session(account, "federated", ip_address)

    def authenticate(self, token: str) -> Principal | None:
        """Resolve a bearer token to a live principal, or ``None``.

        The token must decode, its session must still touch successfully, and
        the account must be active. Every failure looks the same to callers.
        """
        try:
            claims = decode_access_token(token)
        except jwt.PyJWTError:
            return None

        self._sessions.maybe_sweep()
        try:
            if not self._sessions.touch(claims["sid"]):
                return None
            account = self._accounts.get_account(claims["sub"])
        except UnavailableError:
            logger.warning("store unavailable while authenticating a request")
            return None
        if account is None or not account.is_active:
            return None
        return Principal(account=account, session_id=claims["sid"])

    def logout(self, session_id: str, ip_address: str | None = None) -> bool:
        """Invalidate one session. Returns ``False`` when it was already gone."""
        record = self._sessions.get(session_id)
        self._sessions.invalidate(session_id)
        if record is None:
            return False
        account = self._accounts.get_account(record.account_id)
        email = account.email if account else None
        self._audit.record(
            AuditAction.SESSION_REVOKED,
            actor_email=email,
            target_email=email,
            role=account.role if account else None,
            ip_address=ip_address,
            details="Session revoked by logout",
        )
        return True

    # ----------------------------------------------------------------- queries

    def get_account(self, account_id: str) -> Account | None:
        return self._accounts.get_account(account_id)

    def list_accounts(self, filters: AccountListFilters) -> tuple[list[Account], int]:
        if filters.page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= filters.limit <= 100:
            raise ValidationError("limit must be between 1 and 100")
        return self._accounts.list_accounts(filters)

    def list_admins(self) -> list[Account]:
        return self._accounts.list_admins()

    def list_audit_events(
        self,
        filters: AuditLogFilters,
        *,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogEntry], str | None]:
        """Return audit entries newest-first with an opaque continuation cursor."""
        return self._audit.query(filters, limit=limit, cursor=cursor)

    # --------------------------------------------------------------- internals

    def _ensure_account(
        self, *, email: str, name: str, provider: str, provider_id: str | None
    ) -> Account:
        existing = self._accounts.get_account_by_email(email)
        if existing is not None:
            if existing.provider is None:
                return self._accounts.bind_provider(existing.account_id, provider, provider_id) or existing
            return existing

        role = self._invitations.consume(email)
        account, created = self._accounts.create_account(
            CreateAccountInput(email=email, name=name, role=role, provider=provider, provider_id=provider_id)
        )
        if created:
            self._audit.record(
                AuditAction.ACCOUNT_CREATED,
                actor_email=None,
                target_email=account.email,
                role=account.role,
                details=f"Account created at first {provider} sign-in with role {account.role.value}",
            )
            logger.info("account %s created with role %s", account.account_id, account.role.value)
        elif role.rank > account.role.rank:
            account = self._apply_invited_role(account, role)
        return account

    def _apply_invited_role(self, account: Account, role: Role) -> Account:
        """Grant a consumed invitation to an account a concurrent sign-in created first."""
        for _ in range(_GRANT_ATTEMPTS):
            updated = self._accounts.update_account_if(
                account.account_id,
                expected_status=account.status,
                expected_role=account.role,
                changes={"role": role, "promoted_at": datetime.now(timezone.utc)},
            )
            if updated is not None:
                self._audit.record(
                    AuditAction.USER_PROMOTED,
                    actor_email=None,
                    target_email=updated.email,
                    role=role,
                    details=f"User promoted from {account.role.value} to {role.value} by invitation",
                )
                logger.info("invited role %s applied to existing account %s", role.value, account.account_id)
                return updated
            current = self._accounts.get_account(account.account_id)
            if current is None or current.role.rank >= role.rank:
                return current or account
            account = current
        logger.error("could not apply invited role %s to account %s", role.value, account.account_id)
        raise ConflictError("Account was changed concurrently; sign in again")

    def _open_session(self, account: Account, method: str, ip_address: str | None) -> SignInResult:
        if not account.is_active:
            SIGN_INS.labels(method=method, outcome="inactive").inc()
            logger.warning("%s sign-in refused for %s account %s", method, account.status.value, account.account_id)
            raise AuthenticationError(f"Your account is {account.status.value}")

        session_id = self._sessions.create(account.account_id)
        token, expires_in = issue_access_token(
            subject=account.account_id,
            role=account.role.value,
            session_id=session_id,
        )
        self._audit.record(
            AuditAction.SESSION_CREATED,
            actor_email=account.email,
            target_email=account.email,
            role=account.role,
            ip_address=ip_address,
            details=f"Session created via {method} sign-in",
        )
        SIGN_INS.labels(method=method, outcome="success").inc()
        return SignInResult(account=account, session_id=session_id, access_token=token, expires_in=expires_in)
