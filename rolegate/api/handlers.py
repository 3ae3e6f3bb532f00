"""Exception mapping and the page-level authorization gate middleware."""

from __future__ import annotations

import logging

import jwt
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from ..domain.errors import RoleGateError, UnavailableError
from ..domain.gate import AuthorizationGate, GateRequest
from ..security.tokens import decode_access_token
from .dependencies import token_from_request

logger = logging.getLogger(__name__)

UNGATED_PREFIXES = ("/v1", "/healthz", "/metrics", "/docs", "/redoc", "/openapi.json")


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def register_exception_handlers(app: FastAPI) -> None:
    """Render every domain failure as ``{"error": message}``."""

    @app.exception_handler(UnavailableError)
    async def _unavailable(request: Request, exc: UnavailableError) -> JSONResponse:
        logger.error("store unavailable handling %s %s: %s", request.method, request.url.path, exc.message)
        return error_response(500, "Internal server error")

    @app.exception_handler(RoleGateError)
    async def _domain_error(request: Request, exc: RoleGateError) -> JSONResponse:
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return error_response(400, message)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "Internal server error")


def is_gated(path: str) -> bool:
    return not any(path == prefix or path.startswith(prefix + "/") for prefix in UNGATED_PREFIXES)


def gate_request_from(request: Request) -> GateRequest:
    """Build the gate input from the request's token without touching the registry."""
    token = token_from_request(request)
    claims = None
    if token:
        try:
            claims = decode_access_token(token)
        except jwt.PyJWTError:
            claims = None
    return GateRequest(
        path=request.url.path,
        authenticated=claims is not None,
        role=claims.get("role") if claims else None,
        session_id=claims.get("sid") if claims else None,
        callback_url=request.query_params.get("callbackUrl"),
        account_id=claims.get("sub") if claims else None,
    )


def install_gate(app: FastAPI) -> None:
    """Run every page request through the authorization gate stored on ``app.state``."""

    @app.middleware("http")
    async def authorization_gate(request: Request, call_next):
        if not is_gated(request.url.path):
            return await call_next(request)
        gate: AuthorizationGate = request.app.state.gate
        decision = await run_in_threadpool(gate.evaluate, gate_request_from(request))
        if not decision.allowed:
            return RedirectResponse(decision.location, status_code=307)
        return await call_next(request)
