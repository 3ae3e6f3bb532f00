"""Pluggable credential verification backed by an external credential store."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool

from ..repository import store_guard


class CredentialStatus(str, Enum):
    ok = "ok"
    not_found = "not_found"
    bad_secret = "bad_secret"
    wrong_provider = "wrong_provider"


@dataclass(slots=True)
class CredentialCheck:
    status: CredentialStatus
    email: str | None = None
    name: str | None = None
    provider: str | None = None


class CredentialVerifier(Protocol):
    def verify(self, email: str, secret: str) -> CredentialCheck: ...


def sha256_digest(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class PasswordStoreVerifier:
    """Checks secrets against digests held in the external ``credentials`` table.

    The digest function is injected; the hashing scheme belongs to whoever
    provisions the credential store.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        digest: Callable[[str], str] = sha256_digest,
        *,
        timeout: float | None = None,
    ) -> None:
        self._pool = pool
        self._digest = digest
        self._timeout = timeout

    def verify(self, email: str, secret: str) -> CredentialCheck:
        with store_guard():
            with self._pool.connection(timeout=self._timeout) as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        """
                        SELECT email, display_name, password_hash, provider
                        FROM credentials
                        WHERE lower(email) = lower(%s)
                        """,
                        (email,),
                    )
                    row = cur.fetchone()
        if row is None:
            return CredentialCheck(CredentialStatus.not_found)
        stored_email, name, password_hash, provider = row
        if provider and provider != "credentials":
            return CredentialCheck(CredentialStatus.wrong_provider, email=stored_email, provider=provider)
        if not password_hash or not hmac.compare_digest(self._digest(secret), password_hash):
            return CredentialCheck(CredentialStatus.bad_secret, email=stored_email)
        return CredentialCheck(CredentialStatus.ok, email=stored_email, name=name, provider="credentials")
