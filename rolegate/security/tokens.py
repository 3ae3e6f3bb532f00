"""Utilities for issuing and validating session-bound JWTs."""

from __future__ import annotations

import secrets
import time
from typing import Any

import jwt

from ..config import get_settings


def issue_access_token(*, subject: str, role: str, session_id: str) -> tuple[str, int]:
    """Create a signed JWT bound to a registry session.

    Parameters
    ----------
    subject:
        Account identifier to embed in the token `sub` claim.
    role:
        Role at issuance time. Informational only; the gate reloads the account.
    session_id:
        Registry session the token is bound to (`sid` claim). Revoking the
        session revokes the token regardless of `exp`.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = settings.session_max_age_seconds
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": subject,
        "role": role,
        "sid": session_id,
        "iat": now,
        "exp": now + expires_in,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "sid", "exp"]},
    )


def generate_session_id() -> str:
    """Return 256 bits of CSPRNG output as hex."""
    return secrets.token_hex(32)


def generate_invitation_token() -> str:
    return secrets.token_hex(32)
