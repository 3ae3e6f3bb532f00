from __future__ import annotations

from typing import Protocol

from .account import Account, Role
from .errors import ForbiddenError


class ActorLookup(Protocol):
    def get_account_by_email(self, email: str) -> Account | None: ...


def require_actor(accounts: ActorLookup, actor_email: str, minimum: Role) -> Account:
    """Load the acting account and check it is active and ranks at least ``minimum``.

    The message stays generic so it does not reveal which tier would have sufficed.
    """
    actor = accounts.get_account_by_email(actor_email) if actor_email else None
    if actor is None or not actor.is_active or actor.role.rank < minimum.rank:
        raise ForbiddenError("Insufficient permissions")
    return actor
