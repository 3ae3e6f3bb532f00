from __future__ import annotations

import pytest

from rolegate.domain.account import Role
from rolegate.domain.redirects import RedirectRules, resolve

RULES = RedirectRules(
    login_path="/auth/users/login",
    register_path="/auth/users/register",
    admin_console_path="/admin-console",
    admin_prefix="/admin/",
    profile_url="https://users.example.com/profile",
    allowed_origins=("https://users.example.com",),
)


@pytest.mark.parametrize(
    "role, callback, expected",
    [
        (Role.admin, None, "/admin-console"),
        (Role.super_admin, None, "/admin-console"),
        (Role.user, None, "https://users.example.com/profile"),
        ("guest", None, "/auth/users/login"),
        (None, None, "/auth/users/login"),
        (Role.admin, "/admin/users", "/admin/users"),
        (Role.super_admin, "/admin/logs?page=2", "/admin/logs?page=2"),
        (Role.admin, "/profile", "/admin-console"),
        (Role.user, "/orders/42", "/orders/42"),
        (Role.user, "/admin/users", "/admin/users"),
        ("user", "/orders/42", "/orders/42"),
        ("guest", "/orders/42", "/auth/users/login"),
    ],
)
def test_role_dispatch_and_callbacks(role, callback, expected):
    assert resolve(role, "/", callback, RULES) == expected


@pytest.mark.parametrize(
    "callback",
    [
        "/",
        "/auth/users/login",
        "/auth/users/login?callbackUrl=%2Fadmin",
        "/auth/users/register",
        "",
    ],
)
def test_auth_pages_and_root_are_ignored(callback):
    assert resolve(Role.user, "/", callback, RULES) == "https://users.example.com/profile"
    assert resolve(Role.admin, "/", callback, RULES) == "/admin-console"


@pytest.mark.parametrize(
    "callback",
    [
        "//evil.example.com/admin/x",
        "https://evil.example.com/admin/x",
        "javascript:alert(1)",
        "/\\evil.example.com",
        "/admin/\nx",
        "relative/path",
    ],
)
def test_unsafe_callbacks_fall_back_to_role_default(callback):
    assert resolve(Role.admin, "/", callback, RULES) == "/admin-console"
    assert resolve(Role.user, "/", callback, RULES) == "https://users.example.com/profile"


def test_allow_listed_origin_is_honoured():
    target = "https://users.example.com/orders"
    assert resolve(Role.user, "/", target, RULES) == target


def test_requested_path_alone_dispatches_on_role():
    assert resolve(Role.admin, "/admin/settings", None, RULES) == "/admin-console"
    assert resolve(Role.admin, "/auth/users/login", None, RULES) == "/admin-console"
    assert resolve(Role.user, "/reports", None, RULES) == "https://users.example.com/profile"
    assert resolve(Role.user, "/reports", "/dashboard", RULES) == "/dashboard"
    assert resolve("unknown_role", "/", None, RULES) == "/auth/users/login"


def test_resolve_is_deterministic():
    calls = {resolve(Role.user, "/", "/orders/1", RULES) for _ in range(50)}
    assert calls == {"/orders/1"}


def test_default_rules_send_users_to_local_profile():
    assert resolve(Role.user, "/") == "/profile"
