"""Per-request routing decision: allow, or redirect somewhere else."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Protocol
from urllib.parse import quote

from ..metrics import GATE_DECISIONS
from .account import Account, Role
from .errors import UnavailableError
from .redirects import RedirectRules, is_auth_page, resolve

if TYPE_CHECKING:
    from ..security.sessions import SessionRegistry

logger = logging.getLogger(__name__)

ALLOW = "allow"
REDIRECT = "redirect"


class AccountLookup(Protocol):
    def get_account(self, account_id: str) -> Account | None: ...


@dataclass(frozen=True, slots=True)
class GateRequest:
    path: str
    authenticated: bool = False
    role: str | None = None
    session_id: str | None = None
    callback_url: str | None = None
    account_id: str | None = None


@dataclass(frozen=True, slots=True)
class GateDecision:
    action: str
    location: str | None = None
    authenticated: bool = False

    @property
    def allowed(self) -> bool:
        return self.action == ALLOW


class AuthorizationGate:
    """Classifies the path and decides using the post-touch session state.

    Paths fall into three classes: the root (exactly ``/``), public paths and
    private paths, matched as whole-segment prefixes with public taking
    precedence. Anything else is left alone.
    """

    def __init__(
        self,
        registry: "SessionRegistry",
        rules: RedirectRules,
        public_paths: Iterable[str],
        private_paths: Iterable[str],
        accounts: AccountLookup | None = None,
    ) -> None:
        self._registry = registry
        self._accounts = accounts
        self._rules = rules
        self._public = tuple(_normalise(p) for p in public_paths)
        self._private = tuple(_normalise(p) for p in private_paths)

    def classify(self, path: str) -> str | None:
        if path == "/":
            return "root"
        if any(_segment_prefix(path, prefix) for prefix in self._public):
            return "public"
        if any(_segment_prefix(path, prefix) for prefix in self._private):
            return "private"
        return None

    def evaluate(self, request: GateRequest) -> GateDecision:
        authenticated = self._still_authenticated(request)
        path_class = self.classify(request.path)
        decision = self._decide(path_class, request, authenticated)
        GATE_DECISIONS.labels(path_class=path_class or "other", action=decision.action).inc()
        return decision

    def _still_authenticated(self, request: GateRequest) -> bool:
        if not request.authenticated or not request.session_id:
            return False
        try:
            return self._registry.touch(request.session_id)
        except UnavailableError:
            logger.warning("session registry unavailable; treating request as unauthenticated")
            return False

    def _decide(self, path_class: str | None, request: GateRequest, authenticated: bool) -> GateDecision:
        if path_class == "root":
            if authenticated:
                return self._via_resolver(request)
            return GateDecision(REDIRECT, self._rules.login_path, False)

        if path_class == "public":
            if authenticated and is_auth_page(request.path, self._rules):
                return self._via_resolver(request)
            return GateDecision(ALLOW, None, authenticated)

        if path_class == "private" and not authenticated:
            location = f"{self._rules.login_path}?callbackUrl={quote(request.path, safe='')}"
            return GateDecision(REDIRECT, location, False)

        return GateDecision(ALLOW, None, authenticated)

    def _via_resolver(self, request: GateRequest) -> GateDecision:
        location = resolve(self._current_role(request), request.path, request.callback_url, self._rules)
        if location == request.path:
            # Unknown role on the login page; redirecting would loop.
            return GateDecision(ALLOW, None, True)
        return GateDecision(REDIRECT, location, True)

    def _current_role(self, request: GateRequest) -> Role | str | None:
        """Role from the account store; the token claim can predate a promotion or demotion."""
        if self._accounts is None or not request.account_id:
            return request.role
        try:
            account = self._accounts.get_account(request.account_id)
        except UnavailableError:
            logger.warning("account store unavailable; routing on the token role claim")
            return request.role
        return account.role if account is not None else None


def _normalise(prefix: str) -> str:
    return prefix.rstrip("/") or "/"


def _segment_prefix(path: str, prefix: str) -> bool:
    if prefix == "/":
        return False
    return path == prefix or path.startswith(prefix + "/")
