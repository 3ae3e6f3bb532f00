from __future__ import annotations

import pytest

from rolegate.domain.audit import AuditAction, decode_cursor, encode_cursor
from rolegate.domain.contracts import AuditLogFilters
from rolegate.domain.errors import ValidationError


def _seed(audit, count: int) -> None:
    for idx in range(count):
        audit.record(
            AuditAction.USER_BLOCKED,
            actor_email="admin@example.com",
            target_email=f"user{idx}@example.com",
            details=f"User blocked. Reason: case {idx}",
        )


def test_pages_newest_first(audit):
    _seed(audit, 5)
    first, cursor = audit.query(AuditLogFilters(), limit=3)
    assert [e.target_email for e in first] == ["user4@example.com", "user3@example.com", "user2@example.com"]
    assert cursor

    rest, next_cursor = audit.query(AuditLogFilters(), limit=3, cursor=cursor)
    assert [e.target_email for e in rest] == ["user1@example.com", "user0@example.com"]
    assert next_cursor is None


def test_filters_by_action_and_search(audit):
    _seed(audit, 2)
    audit.record(
        AuditAction.USER_PROMOTED,
        actor_email="root@example.com",
        target_email="user9@example.com",
        details="User promoted from user to admin",
    )
    promoted, _ = audit.query(AuditLogFilters(action="USER_PROMOTED"))
    assert [e.target_email for e in promoted] == ["user9@example.com"]

    searched, _ = audit.query(AuditLogFilters(search="case 1"))
    assert [e.target_email for e in searched] == ["user1@example.com"]


def test_unknown_action_is_rejected(audit):
    with pytest.raises(ValidationError):
        audit.query(AuditLogFilters(action="USER_EXPLODED"))


def test_bad_cursor_is_rejected(audit):
    with pytest.raises(ValidationError):
        audit.query(AuditLogFilters(), cursor="not-valid")


def test_cursor_codec_is_opaque_but_stable(audit):
    entry = audit.record(AuditAction.SESSION_CREATED, actor_email=None, target_email=None, details="x")
    token = encode_cursor((entry.created_at, entry.audit_id))
    assert decode_cursor(token) == (entry.created_at, entry.audit_id)
    assert encode_cursor(None) is None
