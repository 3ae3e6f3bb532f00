"""Error taxonomy shared by the lifecycle, session and sign-in workflows."""

from __future__ import annotations


class RoleGateError(Exception):
    """Base class for failures that carry an HTTP-style status category."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(RoleGateError):
    """No valid principal or session; surfaced as a sign-in prompt."""

    status_code = 401


class ForbiddenError(RoleGateError):
    status_code = 403


class NotFoundError(RoleGateError):
    status_code = 404


class ConflictError(RoleGateError):
    """Transition is illegal from the current state or lost a concurrent write."""

    status_code = 400


class ValidationError(RoleGateError):
    status_code = 400


class RateLimitedError(RoleGateError):
    status_code = 429


class UnavailableError(RoleGateError):
    """Backing store unreachable or timed out. Fatal; never converted to a result."""

    status_code = 500
