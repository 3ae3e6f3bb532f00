"""Role-based post-authentication redirect resolution."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

from .account import Role


@dataclass(frozen=True, slots=True)
class RedirectRules:
    """Destinations and trust boundaries used by :func:`resolve`."""

    login_path: str = "/auth/users/login"
    register_path: str = "/auth/users/register"
    admin_console_path: str = "/admin-console"
    admin_prefix: str = "/admin/"
    profile_url: str = "/profile"
    allowed_origins: tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, settings) -> "RedirectRules":
        return cls(
            login_path=settings.login_path,
            register_path=settings.register_path,
            admin_console_path=settings.admin_console_path,
            admin_prefix=settings.admin_path_prefix,
            profile_url=settings.profile_url,
            allowed_origins=tuple(o.rstrip("/") for o in settings.allowed_redirect_origins),
        )


def resolve(
    role: Role | str | None,
    requested_path: str,
    callback_url: str | None = None,
    rules: RedirectRules = RedirectRules(),
) -> str:
    """Return where a principal with ``role`` should land.

    Only ``callback_url`` is ever honoured; ``requested_path`` is the page the
    principal was on and never becomes the destination by itself. A callback
    is honoured only when it is not an auth page or the bare root, and only
    when it stays on this origin (or an allow-listed one). Admins are only sent
    to admin-prefixed callbacks; plain users are sent to any safe callback.
    Everything else dispatches on role.
    """
    parsed_role = Role.parse(role)
    candidate_path = _honourable_path(callback_url, rules)

    if candidate_path is not None:
        if parsed_role is not None and parsed_role.is_admin:
            if candidate_path.startswith(rules.admin_prefix):
                return callback_url
        elif parsed_role is Role.user:
            return callback_url

    if parsed_role is not None and parsed_role.is_admin:
        return rules.admin_console_path
    if parsed_role is Role.user:
        return rules.profile_url
    return rules.login_path


def _honourable_path(candidate: str | None, rules: RedirectRules) -> str | None:
    """Return the candidate's path if it may be redirected to at all."""
    if not candidate or candidate == "/":
        return None
    if "\\" in candidate or any(ord(ch) < 0x20 for ch in candidate):
        return None

    parts = urlsplit(candidate)
    if parts.scheme or parts.netloc:
        if parts.scheme not in ("http", "https"):
            return None
        origin = f"{parts.scheme}://{parts.netloc}"
        if origin not in rules.allowed_origins:
            return None
        path = parts.path or "/"
    elif candidate.startswith("/") and not candidate.startswith("//"):
        path = parts.path
    else:
        return None

    if path == "/" or is_auth_page(path, rules):
        return None
    return path


def is_auth_page(path: str, rules: RedirectRules) -> bool:
    return path.startswith(rules.login_path) or path.startswith(rules.register_path)
