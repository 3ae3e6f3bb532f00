from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import RoleGateError


@dataclass(slots=True)
class ActionResult:
    """Typed outcome of an administrative mutation."""

    success: bool
    status_code: int = 200
    error: str | None = None
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None) -> "ActionResult":
        return cls(success=True, value=value)

    @classmethod
    def failure(cls, exc: RoleGateError) -> "ActionResult":
        return cls(success=False, status_code=exc.status_code, error=exc.message)
