"""Database repositories for accounts, sessions, invitations and the audit log."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Tuple

import psycopg
from psycopg import sql
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool, PoolTimeout

from .domain.account import Account, AccountStatus, Role
from .domain.audit import AuditAction, AuditLogEntry
from .domain.contracts import AccountListFilters, AuditLogFilters, CreateAccountInput
from .domain.errors import UnavailableError
from .domain.invitations import Invitation
from .security.sessions import SessionRecord

logger = logging.getLogger(__name__)

ACCOUNT_COLUMNS: tuple[str, ...] = (
    "account_id",
    "email",
    "name",
    "role",
    "status",
    "created_at",
    "updated_at",
    "provider",
    "provider_id",
    "suspended_by",
    "suspended_at",
    "suspension_reason",
    "suspension_end_date",
    "blocked_by",
    "blocked_at",
    "block_reason",
    "deleted_by",
    "deleted_at",
    "deletion_reason",
    "promoted_by",
    "promoted_at",
    "demoted_by",
    "demoted_at",
    "reactivated_by",
    "reactivated_at",
)
_MUTABLE_ACCOUNT_COLUMNS = frozenset(ACCOUNT_COLUMNS) - {"account_id", "email", "created_at", "updated_at"}

INVITATION_COLUMNS: tuple[str, ...] = (
    "invitation_id",
    "email",
    "role",
    "invited_by",
    "token",
    "created_at",
    "expires_at",
    "is_used",
    "used_at",
    "is_active",
    "revoked_by",
    "revoked_at",
)

_AUDIT_COLUMNS = "audit_id, action, actor_email, target_email, role, ip_address, details, created_at"

_LOCK_ACTIVE_SUPER_ADMINS = (
    "SELECT account_id FROM accounts WHERE role = 'super_admin' AND status = 'active'"
    " ORDER BY account_id FOR UPDATE"
)


@contextmanager
def store_guard() -> Iterator[None]:
    """Translate connectivity and timeout faults into ``UnavailableError``."""
    try:
        yield
    except (PoolTimeout, psycopg.OperationalError) as exc:
        logger.error("backing store unavailable: %s", exc)
        raise UnavailableError("backing store unavailable") from exc


def _columns(names: tuple[str, ...]) -> sql.Composed:
    return sql.SQL(", ").join(sql.Identifier(name) for name in names)


class _PoolRepository:
    def __init__(self, pool: ConnectionPool, timeout: float | None = None) -> None:
        """Store the connection pool and the acquisition timeout used for every query."""
        self._pool = pool
        self._timeout = timeout

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        with store_guard():
            with self._pool.connection(timeout=self._timeout) as conn:
                yield conn


class AccountRepository(_PoolRepository):
    """Postgres-backed system of record for accounts, with conditional updates."""

    def create_account(self, payload: CreateAccountInput) -> Tuple[Account, bool]:
        """Insert an account, or return the existing one for the email; flag is ``True`` when created."""
        now = datetime.now(timezone.utc)
        query = sql.SQL(
            """
            INSERT INTO accounts (account_id, email, name, role, status, provider, provider_id, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (email) DO NOTHING
            RETURNING {columns}
            """
        ).format(columns=_columns(ACCOUNT_COLUMNS))
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    query,
                    (
                        str(uuid.uuid4()),
                        payload.email.lower(),
                        payload.name,
                        payload.role.value,
                        AccountStatus.active.value,
                        payload.provider,
                        payload.provider_id,
                        now,
                        now,
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        if row is not None:
            return self._map_record(row), True
        existing = self.get_account_by_email(payload.email)
        if existing is None:
            raise UnavailableError("account insert conflicted but no row was found")
        return existing, False

    def get_account(self, account_id: str) -> Account | None:
        return self._fetch_one(sql.SQL("account_id = %s"), (account_id,))

    def get_account_by_email(self, email: str) -> Account | None:
        return self._fetch_one(sql.SQL("email = %s"), (email.lower(),))

    def get_account_status(self, account_id: str) -> AccountStatus | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT status FROM accounts WHERE account_id = %s", (account_id,))
                row = cur.fetchone()
        return AccountStatus(row[0]) if row else None

    def bind_provider(self, account_id: str, provider: str, provider_id: str | None) -> Account | None:
        """Attach a federated provider to an account that has none bound yet."""
        query = sql.SQL(
            """
            UPDATE accounts
            SET provider = %s, provider_id = %s, updated_at = %s
            WHERE account_id = %s AND provider IS NULL
            RETURNING {columns}
            """
        ).format(columns=_columns(ACCOUNT_COLUMNS))
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, (provider, provider_id, datetime.now(timezone.utc), account_id))
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row) if row else None

    def count_active_super_admins(self) -> int:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT count(*) FROM accounts WHERE role = %s AND status = %s",
                    (Role.super_admin.value, AccountStatus.active.value),
                )
                return int(cur.fetchone()[0])

    def update_account_if(
        self,
        account_id: str,
        *,
        expected_status: AccountStatus,
        expected_role: Role,
        changes: dict[str, Any],
        keep_one_super_admin: bool = False,
    ) -> Account | None:
        """Compare-and-swap update keyed on the expected status and role.

        Returns the updated account, or ``None`` when the row no longer matches
        (the caller lost a race). With ``keep_one_super_admin`` the write is also
        refused when it would leave no other active super admin. The active super
        admin rows are locked first, in the same transaction, so concurrent
        guarded writes serialise and each re-counts after the other commits.
        """
        unknown = set(changes) - _MUTABLE_ACCOUNT_COLUMNS
        if unknown:
            raise ValueError(f"unknown account columns: {sorted(unknown)}")

        assignments = [sql.SQL("{} = %s").format(sql.Identifier(name)) for name in changes]
        assignments.append(sql.SQL("updated_at = %s"))
        params: list[Any] = [_db_value(value) for value in changes.values()]
        params.append(datetime.now(timezone.utc))

        guard = sql.SQL("")
        if keep_one_super_admin:
            guard = sql.SQL(
                " AND (SELECT count(*) FROM accounts WHERE role = 'super_admin' AND status = 'active') > 1"
            )
        query = sql.SQL(
            """
            UPDATE accounts
            SET {assignments}
            WHERE account_id = %s AND status = %s AND role = %s{guard}
            RETURNING {columns}
            """
        ).format(
            assignments=sql.SQL(", ").join(assignments),
            guard=guard,
            columns=_columns(ACCOUNT_COLUMNS),
        )
        params.extend([account_id, expected_status.value, expected_role.value])

        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                if keep_one_super_admin:
                    cur.execute(_LOCK_ACTIVE_SUPER_ADMINS)
                cur.execute(query, params)
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row) if row else None

    def list_accounts(self, filters: AccountListFilters) -> tuple[list[Account], int]:
        """Return one page of accounts (newest first) and the total match count."""
        clauses: list[sql.Composable] = []
        params: list[Any] = []
        if filters.search:
            clauses.append(sql.SQL("(email ILIKE %s OR name ILIKE %s)"))
            pattern = f"%{filters.search}%"
            params.extend([pattern, pattern])
        if filters.role is not None:
            clauses.append(sql.SQL("role = %s"))
            params.append(filters.role.value)
        if filters.status is not None:
            clauses.append(sql.SQL("status = %s"))
            params.append(filters.status.value)
        where = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses) if clauses else sql.SQL("")

        limit = max(1, min(filters.limit, 100))
        offset = (max(filters.page, 1) - 1) * limit
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(sql.SQL("SELECT count(*) FROM accounts{where}").format(where=where), params)
                total = int(cur.fetchone()[0])
                cur.execute(
                    sql.SQL(
                        "SELECT {columns} FROM accounts{where} ORDER BY created_at DESC LIMIT %s OFFSET %s"
                    ).format(columns=_columns(ACCOUNT_COLUMNS), where=where),
                    [*params, limit, offset],
                )
                rows = cur.fetchall()
        return [self._map_record(row) for row in rows], total

    def list_admins(self) -> list[Account]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    sql.SQL(
                        "SELECT {columns} FROM accounts WHERE role IN (%s, %s) ORDER BY created_at DESC"
                    ).format(columns=_columns(ACCOUNT_COLUMNS)),
                    (Role.admin.value, Role.super_admin.value),
                )
                rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def _fetch_one(self, where: sql.Composable, params: tuple) -> Account | None:
        query = sql.SQL("SELECT {columns} FROM accounts WHERE {where}").format(
            columns=_columns(ACCOUNT_COLUMNS), where=where
        )
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        return self._map_record(row) if row else None

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        values = dict(zip(ACCOUNT_COLUMNS, row))
        values["role"] = Role(values["role"])
        values["status"] = AccountStatus(values["status"])
        return Account(**values)


class SessionRepository(_PoolRepository):
    """Durable session rows; validity is evaluated inside each statement."""

    def insert_session(self, session_id: str, account_id: str) -> bool:
        """Insert a session row; ``False`` means the id already exists."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    INSERT INTO sessions (session_id, account_id, created_at, last_accessed_at)
                    VALUES (%s, %s, NOW(), NOW())
                    ON CONFLICT (session_id) DO NOTHING
                    RETURNING session_id
                    """,
                    (session_id, account_id),
                )
                row = cur.fetchone()
                conn.commit()
        return row is not None

    def touch_session(self, session_id: str, *, max_age_seconds: int, inactivity_seconds: int) -> bool:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE sessions s
                    SET last_accessed_at = NOW()
                    WHERE s.session_id = %s
                      AND s.created_at > NOW() - %s * interval '1 second'
                      AND s.last_accessed_at > NOW() - %s * interval '1 second'
                      AND EXISTS (
                          SELECT 1 FROM accounts a
                          WHERE a.account_id = s.account_id AND a.status = 'active'
                      )
                    RETURNING s.session_id
                    """,
                    (session_id, max_age_seconds, inactivity_seconds),
                )
                row = cur.fetchone()
                conn.commit()
        return row is not None

    def session_is_valid(self, session_id: str, *, max_age_seconds: int, inactivity_seconds: int) -> bool:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT 1
                    FROM sessions s
                    JOIN accounts a ON a.account_id = s.account_id
                    WHERE s.session_id = %s
                      AND s.created_at > NOW() - %s * interval '1 second'
                      AND s.last_accessed_at > NOW() - %s * interval '1 second'
                      AND a.status = 'active'
                    """,
                    (session_id, max_age_seconds, inactivity_seconds),
                )
                return cur.fetchone() is not None

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT session_id, account_id, created_at, last_accessed_at
                    FROM sessions
                    WHERE session_id = %s
                    """,
                    (session_id,),
                )
                row = cur.fetchone()
        return SessionRecord(*row) if row else None

    def delete_session(self, session_id: str) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM sessions WHERE session_id = %s", (session_id,))
                conn.commit()

    def delete_sessions_for_account(self, account_id: str) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM sessions WHERE account_id = %s", (account_id,))
                removed = cur.rowcount
                conn.commit()
        return removed

    def delete_expired_sessions(self, *, max_age_seconds: int, inactivity_seconds: int) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM sessions
                    WHERE created_at <= NOW() - %s * interval '1 second'
                       OR last_accessed_at <= NOW() - %s * interval '1 second'
                    """,
                    (max_age_seconds, inactivity_seconds),
                )
                removed = cur.rowcount
                conn.commit()
        return removed


class AuditLogRepository(_PoolRepository):
    """Insert-only access to ``admin_audit_log``."""

    def write_audit_event(
        self,
        *,
        action: AuditAction,
        actor_email: str | None,
        target_email: str | None,
        role: Role | None,
        ip_address: str | None,
        details: str,
    ) -> AuditLogEntry:
        """Record an audit trail entry capturing a privileged action."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO admin_audit_log (action, actor_email, target_email, role, ip_address, details, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_AUDIT_COLUMNS}
                    """,
                    (
                        action.value,
                        actor_email,
                        target_email,
                        role.value if role else None,
                        ip_address,
                        details,
                        datetime.now(timezone.utc),
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row)

    def list_audit_events(
        self,
        *,
        filters: AuditLogFilters,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogEntry], Optional[Tuple[datetime, int]]]:
        """Return audit log entries with optional filters and cursor pagination."""
        clauses = ["TRUE"]
        params: list[Any] = []

        if filters.action:
            clauses.append("action = %s")
            params.append(filters.action)
        if filters.created_after:
            clauses.append("created_at >= %s")
            params.append(filters.created_after)
        if filters.created_before:
            clauses.append("created_at <= %s")
            params.append(filters.created_before)
        if filters.search:
            clauses.append("(actor_email ILIKE %s OR target_email ILIKE %s OR details ILIKE %s)")
            pattern = f"%{filters.search}%"
            params.extend([pattern, pattern, pattern])
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT {_AUDIT_COLUMNS}
            FROM admin_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                records = [self._map_record(row) for row in cur.fetchall()]

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor

    def _map_record(self, row: tuple) -> AuditLogEntry:
        return AuditLogEntry(
            audit_id=row[0],
            action=AuditAction(row[1]),
            actor_email=row[2],
            target_email=row[3],
            role=Role(row[4]) if row[4] else None,
            ip_address=row[5],
            details=row[6] or "",
            created_at=row[7],
        )


class InvitationRepository(_PoolRepository):
    """Persistence for role-grant invitations."""

    def create_invitation(
        self,
        *,
        email: str,
        role: Role,
        invited_by: str,
        token: str,
        expires_at: datetime,
    ) -> Invitation:
        query = sql.SQL(
            """
            INSERT INTO admin_invitations (invitation_id, email, role, invited_by, token, created_at, expires_at, is_used, is_active)
            VALUES (%s, %s, %s, %s, %s, %s, %s, FALSE, TRUE)
            RETURNING {columns}
            """
        ).format(columns=_columns(INVITATION_COLUMNS))
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    query,
                    (
                        str(uuid.uuid4()),
                        email.lower(),
                        role.value,
                        invited_by,
                        token,
                        datetime.now(timezone.utc),
                        expires_at,
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row)

    def get_invitation(self, invitation_id: str) -> Invitation | None:
        rows = self._select(sql.SQL("invitation_id = %s"), (invitation_id,))
        return rows[0] if rows else None

    def find_pending(self, email: str) -> Invitation | None:
        rows = self._select(
            sql.SQL("email = %s AND NOT is_used AND is_active AND expires_at > NOW()"),
            (email.lower(),),
        )
        return rows[0] if rows else None

    def list_pending(self) -> list[Invitation]:
        return self._select(sql.SQL("NOT is_used AND is_active AND expires_at > NOW()"), ())

    def revoke_invitation(self, invitation_id: str, revoked_by: str) -> Invitation | None:
        """Deactivate an unused, active invitation; ``None`` if it no longer qualifies."""
        query = sql.SQL(
            """
            UPDATE admin_invitations
            SET is_active = FALSE, revoked_by = %s, revoked_at = %s
            WHERE invitation_id = %s AND NOT is_used AND is_active
            RETURNING {columns}
            """
        ).format(columns=_columns(INVITATION_COLUMNS))
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, (revoked_by, datetime.now(timezone.utc), invitation_id))
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row) if row else None

    def consume_pending(self, email: str) -> Invitation | None:
        """Atomically mark the newest pending invitation for ``email`` as used."""
        query = sql.SQL(
            """
            UPDATE admin_invitations
            SET is_used = TRUE, used_at = NOW()
            WHERE invitation_id = (
                SELECT invitation_id FROM admin_invitations
                WHERE email = %s AND NOT is_used AND is_active AND expires_at > NOW()
                ORDER BY created_at DESC
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {columns}
            """
        ).format(columns=_columns(INVITATION_COLUMNS))
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, (email.lower(),))
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row) if row else None

    def _select(self, where: sql.Composable, params: tuple) -> list[Invitation]:
        query = sql.SQL(
            "SELECT {columns} FROM admin_invitations WHERE {where} ORDER BY created_at DESC"
        ).format(columns=_columns(INVITATION_COLUMNS), where=where)
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def _map_record(self, row: tuple) -> Invitation:
        values = dict(zip(INVITATION_COLUMNS, row))
        values["role"] = Role(values["role"])
        return Invitation(**values)


def _db_value(value: Any) -> Any:
    if isinstance(value, (Role, AccountStatus)):
        return value.value
    return value
