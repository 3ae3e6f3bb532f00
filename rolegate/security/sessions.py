"""Server-side session registry used to revoke sessions ahead of token expiry."""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import TYPE_CHECKING, Callable, DefaultDict, Protocol

from ..domain.account import AccountStatus
from ..domain.errors import UnavailableError
from .tokens import generate_session_id

if TYPE_CHECKING:
    from ..repository import SessionRepository

logger = logging.getLogger(__name__)

MAX_ID_ATTEMPTS = 5

AccountStatusLookup = Callable[[str], AccountStatus | None]


@dataclass(frozen=True, slots=True)
class SessionRecord:
    session_id: str
    account_id: str
    created_at: datetime
    last_accessed_at: datetime

    def expires_at(self, policy: "SessionPolicy") -> datetime:
        """Earlier of the absolute and the inactivity deadline."""
        return min(
            datetime.fromtimestamp(self.created_at.timestamp() + policy.max_age_seconds, timezone.utc),
            datetime.fromtimestamp(
                self.last_accessed_at.timestamp() + policy.inactivity_seconds, timezone.utc
            ),
        )


@dataclass(frozen=True, slots=True)
class SessionPolicy:
    max_age_seconds: int = 24 * 60 * 60
    inactivity_seconds: int = 4 * 60 * 60
    sweep_probability: float = 0.01

    def is_fresh(self, created_at: float, last_accessed_at: float, now: float) -> bool:
        return (
            now - created_at < self.max_age_seconds
            and now - last_accessed_at < self.inactivity_seconds
        )


class SessionRegistry(Protocol):
    """Operations every session backend provides."""

    def create(self, account_id: str) -> str: ...

    def touch(self, session_id: str) -> bool: ...

    def is_valid(self, session_id: str) -> bool: ...

    def get(self, session_id: str) -> SessionRecord | None: ...

    def invalidate(self, session_id: str) -> None: ...

    def invalidate_all_for_account(self, account_id: str) -> int: ...

    def sweep_expired(self) -> int: ...

    def maybe_sweep(self) -> None: ...


class BaseSessionRegistry(ABC):
    """Sweep scheduling shared by the concrete backends."""

    def __init__(self, policy: SessionPolicy, rng: Callable[[], float] = random.random) -> None:
        self._policy = policy
        self._rng = rng

    @property
    def policy(self) -> SessionPolicy:
        return self._policy

    def sweep_expired(self) -> int:
        """Purge records past either deadline and return how many were removed."""
        removed = self._purge_expired()
        if removed:
            logger.info("session sweep removed %d expired sessions", removed)
        return removed

    def maybe_sweep(self) -> None:
        """Run a sweep on a small random fraction of calls; never raises."""
        if self._rng() >= self._policy.sweep_probability:
            return
        try:
            self.sweep_expired()
        except UnavailableError as exc:
            logger.warning("session sweep skipped, store unavailable: %s", exc)

    @abstractmethod
    def create(self, account_id: str) -> str: ...

    @abstractmethod
    def touch(self, session_id: str) -> bool: ...

    @abstractmethod
    def is_valid(self, session_id: str) -> bool: ...

    @abstractmethod
    def get(self, session_id: str) -> SessionRecord | None: ...

    @abstractmethod
    def invalidate(self, session_id: str) -> None: ...

    @abstractmethod
    def invalidate_all_for_account(self, account_id: str) -> int: ...

    @abstractmethod
    def _purge_expired(self) -> int:
        """Delete expired records and return how many were removed."""


@dataclass(slots=True)
class _Entry:
    account_id: str
    created_at: float
    last_accessed_at: float


class InMemorySessionRegistry(BaseSessionRegistry):
    """Thread-safe in-process registry; suitable for single-instance deployments only."""

    def __init__(
        self,
        account_status: AccountStatusLookup,
        policy: SessionPolicy | None = None,
        *,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
        id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        super().__init__(policy or SessionPolicy(), rng)
        self._account_status = account_status
        self._clock = clock
        self._id_factory = id_factory
        self._sessions: dict[str, _Entry] = {}
        self._by_account: DefaultDict[str, set[str]] = defaultdict(set)
        self._lock = Lock()

    def create(self, account_id: str) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            session_id = self._id_factory()
            now = self._clock()
            with self._lock:
                if session_id in self._sessions:
                    logger.error("session id collision, drawing a fresh id")
                    continue
                self._sessions[session_id] = _Entry(account_id, now, now)
                self._by_account[account_id].add(session_id)
            return session_id
        raise UnavailableError("could not allocate a unique session id")

    def touch(self, session_id: str) -> bool:
        account_id = self._owner(session_id)
        if account_id is None or not self._account_is_active(account_id):
            return False
        now = self._clock()
        with self._lock:
            # Re-read under the lock: an invalidation may have landed since.
            entry = self._sessions.get(session_id)
            if entry is None or not self._policy.is_fresh(entry.created_at, entry.last_accessed_at, now):
                return False
            entry.last_accessed_at = now
            return True

    def is_valid(self, session_id: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None or not self._policy.is_fresh(entry.created_at, entry.last_accessed_at, now):
                return False
            account_id = entry.account_id
        return self._account_is_active(account_id)

    def get(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return None
            return SessionRecord(
                session_id=session_id,
                account_id=entry.account_id,
                created_at=datetime.fromtimestamp(entry.created_at, timezone.utc),
                last_accessed_at=datetime.fromtimestamp(entry.last_accessed_at, timezone.utc),
            )

    def invalidate(self, session_id: str) -> None:
        with self._lock:
            entry = self._sessions.pop(session_id, None)
            if entry is not None:
                self._by_account[entry.account_id].discard(session_id)

    def invalidate_all_for_account(self, account_id: str) -> int:
        with self._lock:
            owned = self._by_account.pop(account_id, set())
            for session_id in owned:
                self._sessions.pop(session_id, None)
            return len(owned)

    def _purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                session_id
                for session_id, entry in self._sessions.items()
                if not self._policy.is_fresh(entry.created_at, entry.last_accessed_at, now)
            ]
            for session_id in expired:
                entry = self._sessions.pop(session_id)
                self._by_account[entry.account_id].discard(session_id)
            return len(expired)

    def _owner(self, session_id: str) -> str | None:
        with self._lock:
            entry = self._sessions.get(session_id)
            return entry.account_id if entry else None

    def _account_is_active(self, account_id: str) -> bool:
        return self._account_status(account_id) is AccountStatus.active


class PostgresSessionRegistry(BaseSessionRegistry):
    """Durable registry; every check is a single conditional statement."""

    def __init__(
        self,
        repository: "SessionRepository",
        policy: SessionPolicy | None = None,
        *,
        rng: Callable[[], float] = random.random,
        id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        super().__init__(policy or SessionPolicy(), rng)
        self._repository = repository
        self._id_factory = id_factory

    def create(self, account_id: str) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            session_id = self._id_factory()
            if self._repository.insert_session(session_id, account_id):
                return session_id
            logger.error("session id collision, drawing a fresh id")
        raise UnavailableError("could not allocate a unique session id")

    def touch(self, session_id: str) -> bool:
        return self._repository.touch_session(
            session_id,
            max_age_seconds=self._policy.max_age_seconds,
            inactivity_seconds=self._policy.inactivity_seconds,
        )

    def is_valid(self, session_id: str) -> bool:
        return self._repository.session_is_valid(
            session_id,
            max_age_seconds=self._policy.max_age_seconds,
            inactivity_seconds=self._policy.inactivity_seconds,
        )

    def get(self, session_id: str) -> SessionRecord | None:
        return self._repository.get_session(session_id)

    def invalidate(self, session_id: str) -> None:
        self._repository.delete_session(session_id)

    def invalidate_all_for_account(self, account_id: str) -> int:
        return self._repository.delete_sessions_for_account(account_id)

    def _purge_expired(self) -> int:
        return self._repository.delete_expired_sessions(
            max_age_seconds=self._policy.max_age_seconds,
            inactivity_seconds=self._policy.inactivity_seconds,
        )
