from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from directory_service.repository import AuditLogRepository


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows
        self.executed: list[tuple[str, list]] = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        self.executed.append((query, list(params or [])))

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, cursor: FakeCursor):
        self._cursor = cursor

    def cursor(self, **_kwargs):
        return self._cursor


class FakePool:
    def __init__(self, rows):
        self.cursor = FakeCursor(rows)

    @contextmanager
    def connection(self):
        yield FakeConnection(self.cursor)


def _rows(count: int):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return [
        (count - idx, "acct-1", "acme", "custom.event", "actor", {}, base - timedelta(minutes=idx))
        for idx in range(count)
    ]


def test_exact_final_page_has_no_cursor():
    pool = FakePool(_rows(3))

    records, next_cursor = AuditLogRepository(pool).list_audit_events(tenant_id="acme", limit=3)

    assert len(records) == 3
    assert next_cursor is None
    _, params = pool.cursor.executed[-1]
    assert params == ["acme", 4]


def test_extra_row_is_trimmed_and_yields_cursor():
    pool = FakePool(_rows(4))

    records, next_cursor = AuditLogRepository(pool).list_audit_events(tenant_id="acme", limit=3)

    assert [r.audit_id for r in records] == [4, 3, 2]
    assert next_cursor == (records[-1].created_at, 2)
