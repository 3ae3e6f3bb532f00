from __future__ import annotations

import pytest

from rolegate.domain.errors import UnavailableError
from rolegate.domain.gate import AuthorizationGate, GateRequest
from rolegate.domain.redirects import RedirectRules

RULES = RedirectRules(profile_url="/profile")
PUBLIC = ("/auth/users/login", "/auth/users/register", "/auth/users/error")
PRIVATE = ("/admin", "/admin-console", "/profile")


@pytest.fixture
def gate(registry, accounts) -> AuthorizationGate:
    return AuthorizationGate(registry, RULES, PUBLIC, PRIVATE, accounts=accounts)


@pytest.fixture
def user_session(registry, staff) -> str:
    return registry.create(staff["user"].account_id)


@pytest.fixture
def admin_session(registry, staff) -> str:
    return registry.create(staff["admin"].account_id)


def _anon(path: str, callback: str | None = None) -> GateRequest:
    return GateRequest(path=path, callback_url=callback)


def test_classification_is_segment_aware(gate):
    assert gate.classify("/") == "root"
    assert gate.classify("/admin") == "private"
    assert gate.classify("/admin/users") == "private"
    assert gate.classify("/administrator") is None
    assert gate.classify("/auth/users/login") == "public"
    assert gate.classify("/auth/users/loginx") is None
    assert gate.classify("/shop") is None


def test_public_first_when_lists_overlap(registry):
    gate = AuthorizationGate(registry, RULES, ("/admin/help",), ("/admin",))
    assert gate.classify("/admin/help/faq") == "public"
    assert gate.classify("/admin/users") == "private"


def test_anonymous_decisions(gate):
    assert gate.evaluate(_anon("/auth/users/login")).allowed

    root = gate.evaluate(_anon("/"))
    assert (root.action, root.location) == ("redirect", "/auth/users/login")

    private = gate.evaluate(_anon("/admin/users"))
    assert private.action == "redirect"
    assert private.location == "/auth/users/login?callbackUrl=%2Fadmin%2Fusers"

    assert gate.evaluate(_anon("/shop")).allowed


def test_authenticated_user_on_login_page_is_routed(gate, user_session):
    decision = gate.evaluate(
        GateRequest(path="/auth/users/login", authenticated=True, role="user", session_id=user_session)
    )
    assert (decision.action, decision.location) == ("redirect", "/profile")


def test_authenticated_admin_uses_admin_callback(gate, admin_session):
    decision = gate.evaluate(
        GateRequest(
            path="/auth/users/login",
            authenticated=True,
            role="admin",
            session_id=admin_session,
            callback_url="/admin/users",
        )
    )
    assert decision.location == "/admin/users"


def test_authenticated_other_public_page_is_allowed(gate, user_session):
    decision = gate.evaluate(
        GateRequest(path="/auth/users/error", authenticated=True, role="user", session_id=user_session)
    )
    assert decision.allowed and decision.authenticated


def test_authenticated_root_is_routed(gate, admin_session):
    decision = gate.evaluate(GateRequest(path="/", authenticated=True, role="admin", session_id=admin_session))
    assert decision.location == "/admin-console"


def test_authenticated_private_is_allowed_and_touches(gate, registry, user_session, clock):
    clock.advance(500)
    decision = gate.evaluate(GateRequest(path="/profile", authenticated=True, role="user", session_id=user_session))
    assert decision.allowed
    clock.advance(500)
    # 1000s since creation but only 500s idle thanks to the touch above
    assert registry.is_valid(user_session)


def test_stale_session_is_treated_as_anonymous(gate, registry, user_session):
    registry.invalidate(user_session)
    decision = gate.evaluate(GateRequest(path="/profile", authenticated=True, role="user", session_id=user_session))
    assert decision.action == "redirect"
    assert decision.location.startswith("/auth/users/login?callbackUrl=")
    assert decision.authenticated is False


def test_missing_session_id_is_treated_as_anonymous(gate):
    decision = gate.evaluate(GateRequest(path="/", authenticated=True, role="admin"))
    assert decision.location == "/auth/users/login"


def test_registry_outage_fails_closed(gate, registry, user_session, monkeypatch):
    def down(session_id):
        raise UnavailableError("down")

    monkeypatch.setattr(registry, "touch", down)
    decision = gate.evaluate(GateRequest(path="/profile", authenticated=True, role="user", session_id=user_session))
    assert decision.action == "redirect"


def test_unknown_role_on_login_page_does_not_loop(gate, user_session):
    decision = gate.evaluate(
        GateRequest(path="/auth/users/login", authenticated=True, role="guest", session_id=user_session)
    )
    assert decision.allowed


def test_routing_uses_current_role_not_token_claim(gate, lifecycle, staff, user_session):
    assert lifecycle.promote("root@example.com", staff["user"].account_id, "admin").success
    decision = gate.evaluate(
        GateRequest(
            path="/",
            authenticated=True,
            role="user",
            session_id=user_session,
            account_id=staff["user"].account_id,
        )
    )
    assert decision.location == "/admin-console"


def test_account_store_outage_routes_on_token_claim(gate, accounts, staff, user_session, monkeypatch):
    def down(account_id):
        raise UnavailableError("down")

    monkeypatch.setattr(accounts, "get_account", down)
    decision = gate.evaluate(
        GateRequest(
            path="/",
            authenticated=True,
            role="user",
            session_id=user_session,
            account_id=staff["user"].account_id,
        )
    )
    assert decision.location == "/profile"
