"""Request-scoped helpers shared by the auth and admin routers."""

from __future__ import annotations

from fastapi import Depends, Request

from ..config import get_settings
from ..domain.errors import AuthenticationError, ForbiddenError
from ..domain.invitations import InvitationService
from ..domain.lifecycle import AccountLifecycleManager
from ..domain.redirects import RedirectRules
from ..domain.service import AccountService, Principal

_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_lifecycle(request: Request) -> AccountLifecycleManager:
    return request.app.state.lifecycle


def get_invitations(request: Request) -> InvitationService:
    return request.app.state.invitations


def get_redirect_rules(request: Request) -> RedirectRules:
    return request.app.state.redirect_rules


def token_from_request(request: Request) -> str | None:
    """Bearer token from the ``Authorization`` header, else the session cookie."""
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(get_settings().session_cookie_name) or None


def client_ip(request: Request) -> str | None:
    """Best-effort caller address: first proxy hop, then the socket peer."""
    for name in _IP_HEADERS:
        value = request.headers.get(name)
        if value:
            return value.split(",")[0].strip()
    return request.client.host if request.client else None


def optional_principal(
    request: Request, service: AccountService = Depends(get_service)
) -> Principal | None:
    token = token_from_request(request)
    if not token:
        return None
    return service.authenticate(token)


def get_principal(principal: Principal | None = Depends(optional_principal)) -> Principal:
    if principal is None:
        raise AuthenticationError("Authentication required")
    return principal


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.role.is_admin:
        raise ForbiddenError("Insufficient permissions")
    return principal
