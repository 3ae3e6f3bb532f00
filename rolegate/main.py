"""FastAPI application wiring for the role gate service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.admin import router as admin_router
from .api.handlers import install_gate, register_exception_handlers
from .api.routes import router as auth_router
from .config import Settings, get_settings
from .domain.audit import AuditLog
from .domain.gate import AuthorizationGate
from .domain.invitations import InvitationService
from .domain.lifecycle import AccountLifecycleManager
from .domain.redirects import RedirectRules
from .domain.service import AccountService
from .repository import AccountRepository, AuditLogRepository, InvitationRepository, SessionRepository
from .security.credentials import PasswordStoreVerifier
from .security.rate_limiter import LoginThrottle
from .security.redis_sessions import RedisSessionRegistry
from .security.sessions import InMemorySessionRegistry, PostgresSessionRegistry, SessionPolicy, SessionRegistry

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def _build_session_registry(
    settings: Settings, accounts: AccountRepository, sessions: SessionRepository
) -> SessionRegistry:
    """Instantiate the configured session backend, falling back to Postgres when Redis is unreachable."""
    policy = SessionPolicy(
        max_age_seconds=settings.session_max_age_seconds,
        inactivity_seconds=settings.session_inactivity_seconds,
        sweep_probability=settings.session_sweep_probability,
    )
    if settings.session_backend == "redis" and settings.redis_url:
        try:
            client = redis.from_url(settings.redis_url, socket_timeout=settings.store_timeout_seconds)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("session registry configured for redis backend")
            return RedisSessionRegistry(client, accounts.get_account_status, policy)
        except redis.RedisError as exc:
            logger.warning("redis session registry unavailable, falling back to postgres: %s", exc)
    elif settings.session_backend == "memory":
        logger.warning("session registry using in-memory backend; sessions are not shared across instances")
        return InMemorySessionRegistry(accounts.get_account_status, policy)

    logger.info("session registry using postgres backend")
    return PostgresSessionRegistry(sessions, policy)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, registry, services) for the app lifecycle."""
    timeout = settings.store_timeout_seconds
    pool = ConnectionPool(
        settings.database_url,
        open=False,
        timeout=timeout,
        kwargs={"options": f"-c statement_timeout={int(timeout * 1000)}"},
    )
    pool.open()

    accounts = AccountRepository(pool, timeout)
    registry = _build_session_registry(settings, accounts, SessionRepository(pool, timeout))
    audit = AuditLog(AuditLogRepository(pool, timeout))
    invitations = InvitationService(
        accounts,
        InvitationRepository(pool, timeout),
        audit,
        default_ttl_hours=settings.invitation_ttl_hours,
    )
    rules = RedirectRules.from_settings(settings)

    app.state.pool = pool
    app.state.redirect_rules = rules
    app.state.invitations = invitations
    app.state.lifecycle = AccountLifecycleManager(accounts, registry, audit)
    app.state.account_service = AccountService(
        accounts,
        registry,
        audit,
        invitations,
        PasswordStoreVerifier(pool, timeout=timeout),
        LoginThrottle(settings.login_max_failures, settings.login_failure_window_seconds),
    )
    app.state.gate = AuthorizationGate(
        registry, rules, settings.public_paths, settings.private_paths, accounts=accounts
    )
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
register_exception_handlers(app)
install_gate(app)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(auth_router)
app.include_router(admin_router)
