"""Redis-backed session registry for multi-instance deployments."""

from __future__ import annotations

import logging
import random
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, Final, TypeVar

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..domain.account import AccountStatus
from ..domain.errors import UnavailableError
from .sessions import (
    MAX_ID_ATTEMPTS,
    AccountStatusLookup,
    BaseSessionRegistry,
    SessionPolicy,
    SessionRecord,
)
from .tokens import generate_session_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _store_errors(method: Callable[..., T]) -> Callable[..., T]:
    """Surface Redis connectivity failures as `UnavailableError`."""

    @wraps(method)
    def wrapper(*args, **kwargs) -> T:
        try:
            return method(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise UnavailableError(f"redis session store unavailable: {exc}") from exc

    return wrapper


class RedisSessionRegistry(BaseSessionRegistry):
    """Session hashes keyed by id plus a per-account index set.

    Session keys carry a TTL equal to the nearer of the two deadlines, so
    Redis expires idle sessions on its own; the sweep only prunes index sets.
    """

    _CREATE_SCRIPT: Final[str] = """
    local session_key = KEYS[1]
    local account_key = KEYS[2]
    if redis.call('EXISTS', session_key) == 1 then
        return 0
    end
    redis.call('HSET', session_key, 'account_id', ARGV[1], 'created_at', ARGV[2], 'last_accessed_at', ARGV[2])
    redis.call('PEXPIRE', session_key, ARGV[3])
    redis.call('SADD', account_key, ARGV[4])
    return 1
    """

    _TOUCH_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local now_ms = tonumber(ARGV[1])
    local max_age_ms = tonumber(ARGV[2])
    local idle_ms = tonumber(ARGV[3])

    local created = redis.call('HGET', key, 'created_at')
    local last = redis.call('HGET', key, 'last_accessed_at')
    if not created or not last then
        return 0
    end
    created = tonumber(created)
    last = tonumber(last)
    if now_ms - created >= max_age_ms or now_ms - last >= idle_ms then
        redis.call('DEL', key)
        return 0
    end
    redis.call('HSET', key, 'last_accessed_at', now_ms)
    redis.call('PEXPIRE', key, math.min(idle_ms, max_age_ms - (now_ms - created)))
    return 1
    """

    _INVALIDATE_ALL_SCRIPT: Final[str] = """
    local ids = redis.call('SMEMBERS', KEYS[1])
    for _, id in ipairs(ids) do
        redis.call('DEL', ARGV[1] .. id)
    end
    redis.call('DEL', KEYS[1])
    return #ids
    """

    def __init__(
        self,
        client: Redis,
        account_status: AccountStatusLookup,
        policy: SessionPolicy | None = None,
        *,
        key_prefix: str = "rolegate",
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
        id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        """Initialise the Redis client, key layout, and Lua script cache."""
        super().__init__(policy or SessionPolicy(), rng)
        self._client = client
        self._account_status = account_status
        self._key_prefix = key_prefix
        self._clock = clock
        self._id_factory = id_factory
        self._create_script = client.register_script(self._CREATE_SCRIPT)
        self._touch_script = client.register_script(self._TOUCH_SCRIPT)
        self._invalidate_all_script = client.register_script(self._INVALIDATE_ALL_SCRIPT)

    @property
    def _max_age_ms(self) -> int:
        return self._policy.max_age_seconds * 1000

    @property
    def _idle_ms(self) -> int:
        return self._policy.inactivity_seconds * 1000

    def _session_key(self, session_id: str) -> str:
        return f"{self._key_prefix}:session:{session_id}"

    def _account_key(self, account_id: str) -> str:
        return f"{self._key_prefix}:account:{account_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @_store_errors
    def create(self, account_id: str) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            session_id = self._id_factory()
            keys = [self._session_key(session_id), self._account_key(account_id)]
            args = [account_id, self._now_ms(), min(self._idle_ms, self._max_age_ms), session_id]
            try:
                created = int(self._create_script(keys=keys, args=args)) == 1
            except ResponseError as exc:
                if not _scripting_unavailable(exc):
                    raise
                created = self._create_fallback(keys, args)
            if created:
                return session_id
            logger.error("session id collision, drawing a fresh id")
        raise UnavailableError("could not allocate a unique session id")

    @_store_errors
    def touch(self, session_id: str) -> bool:
        key = self._session_key(session_id)
        account_id = _text(self._client.hget(key, "account_id"))
        if account_id is None or self._account_status(account_id) is not AccountStatus.active:
            return False
        args = [self._now_ms(), self._max_age_ms, self._idle_ms]
        try:
            return int(self._touch_script(keys=[key], args=args)) == 1
        except ResponseError as exc:
            if not _scripting_unavailable(exc):
                raise
            return self._touch_fallback(key, *args)

    @_store_errors
    def is_valid(self, session_id: str) -> bool:
        record = self._client.hgetall(self._session_key(session_id))
        if not record:
            return False
        fields = {_text(k): v for k, v in record.items()}
        if "created_at" not in fields or "last_accessed_at" not in fields:
            return False
        now_ms = self._now_ms()
        if now_ms - int(fields["created_at"]) >= self._max_age_ms:
            return False
        if now_ms - int(fields["last_accessed_at"]) >= self._idle_ms:
            return False
        return self._account_status(_text(fields["account_id"])) is AccountStatus.active

    @_store_errors
    def get(self, session_id: str) -> SessionRecord | None:
        record = self._client.hgetall(self._session_key(session_id))
        if not record:
            return None
        fields = {_text(k): v for k, v in record.items()}
        return SessionRecord(
            session_id=session_id,
            account_id=_text(fields["account_id"]),
            created_at=datetime.fromtimestamp(int(fields["created_at"]) / 1000, timezone.utc),
            last_accessed_at=datetime.fromtimestamp(int(fields["last_accessed_at"]) / 1000, timezone.utc),
        )

    @_store_errors
    def invalidate(self, session_id: str) -> None:
        key = self._session_key(session_id)
        account_id = _text(self._client.hget(key, "account_id"))
        self._client.delete(key)
        if account_id is not None:
            self._client.srem(self._account_key(account_id), session_id)

    @_store_errors
    def invalidate_all_for_account(self, account_id: str) -> int:
        account_key = self._account_key(account_id)
        session_prefix = f"{self._key_prefix}:session:"
        try:
            return int(self._invalidate_all_script(keys=[account_key], args=[session_prefix]))
        except ResponseError as exc:
            if not _scripting_unavailable(exc):
                raise
            return self._invalidate_all_fallback(account_key, session_prefix)

    @_store_errors
    def _purge_expired(self) -> int:
        """Drop index entries whose session hash Redis has already expired."""
        removed = 0
        for account_key in self._client.scan_iter(match=f"{self._key_prefix}:account:*"):
            for member in self._client.smembers(account_key):
                session_id = _text(member)
                if not self._client.exists(self._session_key(session_id)):
                    removed += int(self._client.srem(account_key, member))
        return removed

    def _create_fallback(self, keys: list[str], args: list) -> bool:
        """Fallback used when Lua is unavailable; HSETNX claims the id first."""
        session_key, account_key = keys
        account_id, now_ms, ttl_ms, session_id = args
        if not self._client.hsetnx(session_key, "account_id", account_id):
            return False
        pipe = self._client.pipeline(transaction=True)
        pipe.hset(session_key, mapping={"created_at": now_ms, "last_accessed_at": now_ms})
        pipe.pexpire(session_key, ttl_ms)
        pipe.sadd(account_key, session_id)
        pipe.execute()
        return True

    def _touch_fallback(self, key: str, now_ms: int, max_age_ms: int, idle_ms: int) -> bool:
        """Optimistic WATCH/MULTI version of the touch script."""
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    fields = {_text(k): v for k, v in pipe.hgetall(key).items()}
                    if "created_at" not in fields or "last_accessed_at" not in fields:
                        pipe.unwatch()
                        return False
                    created = int(fields["created_at"])
                    last = int(fields["last_accessed_at"])
                    pipe.multi()
                    if now_ms - created >= max_age_ms or now_ms - last >= idle_ms:
                        pipe.delete(key)
                        pipe.execute()
                        return False
                    pipe.hset(key, "last_accessed_at", now_ms)
                    pipe.pexpire(key, min(idle_ms, max_age_ms - (now_ms - created)))
                    pipe.execute()
                    return True
                except WatchError:
                    continue

    def _invalidate_all_fallback(self, account_key: str, session_prefix: str) -> int:
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(account_key)
                    members = [_text(m) for m in pipe.smembers(account_key)]
                    pipe.multi()
                    for session_id in members:
                        pipe.delete(f"{session_prefix}{session_id}")
                    pipe.delete(account_key)
                    pipe.execute()
                    return len(members)
                except WatchError:
                    continue


def _scripting_unavailable(exc: ResponseError) -> bool:
    message = str(exc).lower()
    return "unknown command" in message and ("evalsha" in message or "eval" in message)


def _text(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value
