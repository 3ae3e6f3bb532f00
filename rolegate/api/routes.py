"""HTTP route definitions for sign-in, sign-out and session inspection."""

from __future__ import annotations

import logging

import jwt
from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, EmailStr

from ..config import get_settings
from ..domain.contracts import FederatedIdentity
from ..domain.redirects import RedirectRules, resolve
from ..domain.service import AccountService, Principal, SignInResult
from ..schemas import AccountOut
from ..security.tokens import decode_access_token
from .dependencies import (
    client_ip,
    get_principal,
    get_redirect_rules,
    get_service,
    optional_principal,
    token_from_request,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


class SignInRequest(BaseModel):
    """Credential sign-in payload."""

    email: EmailStr
    password: str
    callback_url: str | None = None


class FederatedSignInRequest(BaseModel):
    """Identity asserted by a trusted OAuth callback handler."""

    email: EmailStr
    provider: str
    provider_account_id: str
    name: str | None = None
    callback_url: str | None = None


class SignInResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    redirect_to: str


class LogoutResponse(BaseModel):
    success: bool
    message: str


class SessionResponse(BaseModel):
    account: AccountOut
    session_id: str


class RedirectResponseBody(BaseModel):
    redirect_to: str


def _signed_in(
    response: Response, result: SignInResult, callback_url: str | None, rules: RedirectRules
) -> SignInResponse:
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        result.access_token,
        max_age=result.expires_in,
        httponly=True,
        samesite="lax",
    )
    return SignInResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        session_id=result.session_id,
        redirect_to=resolve(result.account.role, "/", callback_url, rules),
    )


@router.post("/signin", response_model=SignInResponse)
def sign_in(
    payload: SignInRequest,
    request: Request,
    response: Response,
    service: AccountService = Depends(get_service),
    rules: RedirectRules = Depends(get_redirect_rules),
) -> SignInResponse:
    result = service.sign_in_with_credentials(payload.email, payload.password, client_ip(request))
    return _signed_in(response, result, payload.callback_url, rules)


@router.post("/federated", response_model=SignInResponse)
def federated_sign_in(
    payload: FederatedSignInRequest,
    request: Request,
    response: Response,
    service: AccountService = Depends(get_service),
    rules: RedirectRules = Depends(get_redirect_rules),
) -> SignInResponse:
    identity = FederatedIdentity(
        email=payload.email,
        provider=payload.provider,
        provider_account_id=payload.provider_account_id,
        name=payload.name,
    )
    result = service.sign_in_with_provider(identity, client_ip(request))
    return _signed_in(response, result, payload.callback_url, rules)


@router.post("/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    response: Response,
    service: AccountService = Depends(get_service),
) -> LogoutResponse:
    """Revoke the caller's session. Safe to repeat."""
    response.delete_cookie(get_settings().session_cookie_name)
    token = token_from_request(request)
    if token:
        try:
            claims = decode_access_token(token)
        except jwt.PyJWTError:
            claims = None
        if claims is not None:
            service.logout(claims["sid"], client_ip(request))
    return LogoutResponse(success=True, message="Logged out")


@router.get("/session", response_model=SessionResponse)
def current_session(principal: Principal = Depends(get_principal)) -> SessionResponse:
    return SessionResponse(account=AccountOut.from_domain(principal.account), session_id=principal.session_id)


@router.get("/redirect", response_model=RedirectResponseBody)
def post_login_redirect(
    callback_url: str | None = Query(default=None, alias="callbackUrl"),
    principal: Principal | None = Depends(optional_principal),
    rules: RedirectRules = Depends(get_redirect_rules),
) -> RedirectResponseBody:
    """Where the caller should land after signing in."""
    role = principal.role if principal else None
    return RedirectResponseBody(redirect_to=resolve(role, "/", callback_url, rules))
