"""Tests for batchbuffer.backends.postgres against a fake asyncpg pool."""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from batchbuffer.backends.postgres import PostgresRecordStore

# pylint: disable=missing-function-docstring

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeConnection:
    """Records SQL and returns canned rows."""

    def __init__(self, rows=None):
        self.executed: list[str] = []
        self.inserted: list[tuple] = []
        self.fetch_args: tuple = ()
        self._rows = rows or []

    async def execute(self, sql, *args):
        self.executed.append(" ".join(sql.split()))

    async def executemany(self, sql, rows):
        self.executed.append(" ".join(sql.split()))
        self.inserted.extend(rows)

    async def fetch(self, sql, *args):
        self.executed.append(" ".join(sql.split()))
        self.fetch_args = args
        return self._rows

    @asynccontextmanager
    async def transaction(self):
        yield


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    async def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_table_uses_custom_table_name():
    conn = FakeConnection()
    store = PostgresRecordStore("postgresql://unused", table="health_logs", pool=FakePool(conn))
    await store.create_table_if_not_exists()
    assert any("CREATE TABLE IF NOT EXISTS health_logs" in sql for sql in conn.executed)
    assert any("idx_health_logs_key_recorded" in sql for sql in conn.executed)


@pytest.mark.asyncio
async def test_append_many_inserts_key_timestamp_and_json():
    conn = FakeConnection()
    store = PostgresRecordStore("postgresql://unused", pool=FakePool(conn))
    record = {"message": "hi", "timestamp": "2024-03-01T10:00:00+00:00"}

    await store.append_many("logs", [record])
    await store.append_many("logs", [])

    assert len(conn.inserted) == 1
    key, recorded_at, payload = conn.inserted[0]
    assert key == "logs"
    assert recorded_at == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert json.loads(payload) == record


@pytest.mark.asyncio
async def test_fetch_decodes_json_rows():
    rows = [
        {"record": json.dumps({"message": "a"})},
        {"record": {"message": "b"}},
    ]
    conn = FakeConnection(rows)
    store = PostgresRecordStore("postgresql://unused", pool=FakePool(conn))
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    end = datetime(2024, 1, 2, tzinfo=timezone.utc)

    out = await store.fetch("logs", start, end)

    assert out == [{"message": "a"}, {"message": "b"}]
    assert conn.fetch_args == ("logs", start, end)


@pytest.mark.asyncio
async def test_close_leaves_injected_pool_open():
    pool = FakePool(FakeConnection())
    store = PostgresRecordStore("postgresql://unused", pool=pool)
    await store.close()
    assert pool.closed is False
