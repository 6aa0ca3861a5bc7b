"""Tests for batchbuffer.persistence (RecordPersistence) with in-memory backends."""

from datetime import datetime, timedelta, timezone

import pytest

from batchbuffer.backends.memory import MemoryRecordStore
from batchbuffer.buffer import BatchBuffer
from batchbuffer.circuit_breaker import CircuitBreaker, CircuitOpenError
from batchbuffer.persistence import RecordPersistence
from batchbuffer.types import (
    LogCategory,
    LogEntry,
    LogLevel,
    MetricCategory,
    MetricEntry,
)

# pylint: disable=missing-function-docstring,protected-access

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FlakyBackend(MemoryRecordStore):
    """MemoryRecordStore whose append_many fails the first `fail_times` calls."""

    def __init__(self, fail_times: int = 0):
        super().__init__()
        self.fail_times = fail_times
        self.append_calls: list[int] = []

    async def append_many(self, key: str, records: list) -> None:
        self.append_calls.append(len(records))
        if len(self.append_calls) <= self.fail_times:
            raise ConnectionError("database unavailable")
        await super().append_many(key, records)


def _log(message: str, ts: datetime | None = None) -> LogEntry:
    entry = LogEntry(level=LogLevel.INFO, category=LogCategory.SYSTEM, message=message)
    if ts is not None:
        entry.timestamp = ts
    return entry


def _buffer(**kwargs) -> BatchBuffer:
    options = {"flush_interval": 60.0, "min_flush_interval": 0.0, "retry_base_delay": 0.01}
    options.update(kwargs)
    return BatchBuffer(**options)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_flush_writes_entries_in_chunks():
    """A flushed batch of 120 entries is written as chunks of 50, 50, 20."""
    buffer = _buffer(max_buffer_size=1000)
    backend = FlakyBackend()
    logs = RecordPersistence(buffer, backend, "logs", LogEntry, chunk_size=50)
    logs.attach()
    for i in range(120):
        assert logs.persist(_log(f"m{i}")) is True

    await buffer.flush("logs")

    assert backend.append_calls == [50, 50, 20]
    assert backend.count("logs") == 120
    buffer.destroy()


@pytest.mark.asyncio
async def test_size_triggered_flush_interleaves_with_explicit_flush():
    """Reaching max_buffer_size snapshots 100 entries into a background write;
    the next explicit flush only sees the 20 added after it."""
    buffer = _buffer(max_buffer_size=100)
    backend = FlakyBackend()
    logs = RecordPersistence(buffer, backend, "logs", LogEntry, chunk_size=50)
    logs.attach()
    for i in range(120):
        assert logs.persist(_log(f"m{i}")) is True

    # The 100th add swapped the buffer out synchronously.
    assert buffer.get_size("logs") == 20

    await buffer.flush("logs")
    await buffer.close()

    # Background and explicit writes may reach the backend in either order.
    assert sorted(backend.append_calls) == [20, 50, 50]
    stored = [r["message"] for r in backend._store["logs"]]
    assert sorted(stored) == sorted(f"m{i}" for i in range(120))
    first_hundred = [m for m in stored if int(m[1:]) < 100]
    assert first_hundred == [f"m{i}" for i in range(100)]


@pytest.mark.asyncio
async def test_backend_failure_is_retried_by_buffer():
    buffer = _buffer(max_retry_attempts=3)
    backend = FlakyBackend(fail_times=1)
    logs = RecordPersistence(buffer, backend, "logs", LogEntry)
    logs.attach()
    logs.persist(_log("a"))
    logs.persist(_log("b"))

    await buffer.flush("logs")

    assert backend.count("logs") == 2
    assert buffer.get_size("logs") == 0
    assert logs.circuit_breaker.error_count("logs.write") == 0
    buffer.destroy()


@pytest.mark.asyncio
async def test_open_write_circuit_keeps_entries_buffered():
    breaker = CircuitBreaker(max_errors=1, reset_timeout=60.0)
    buffer = _buffer(max_retry_attempts=2)
    backend = FlakyBackend(fail_times=100)
    logs = RecordPersistence(buffer, backend, "logs", LogEntry, circuit_breaker=breaker)
    logs.attach()
    logs.persist(_log("a"))

    await buffer.flush("logs")

    # First attempt reaches the backend and opens the circuit; the retry is refused.
    assert backend.append_calls == [1]
    assert breaker.is_open("logs.write") is True
    assert buffer.get_size("logs") == 1
    with pytest.raises(CircuitOpenError):
        await logs.write_batch([_log("b")])
    buffer.destroy()


@pytest.mark.asyncio
async def test_persist_refuses_when_queue_full():
    breaker = CircuitBreaker(max_errors=2, reset_timeout=60.0)
    buffer = _buffer()
    logs = RecordPersistence(
        buffer,
        MemoryRecordStore(),
        "logs",
        LogEntry,
        circuit_breaker=breaker,
        max_queue_size=2,
    )
    logs.attach()
    assert logs.persist(_log("a")) is True
    assert logs.persist(_log("b")) is True
    assert logs.persist(_log("c")) is False
    assert logs.persist(_log("d")) is False
    # Two refusals opened the admission circuit
    assert breaker.is_open("logs.admit") is True

    await buffer.flush("logs")
    assert buffer.get_size("logs") == 0
    assert logs.persist(_log("e")) is False
    buffer.destroy()


@pytest.mark.asyncio
async def test_admissions_do_not_reset_refusal_count():
    breaker = CircuitBreaker(max_errors=2, reset_timeout=60.0)
    buffer = _buffer()
    logs = RecordPersistence(
        buffer,
        MemoryRecordStore(),
        "logs",
        LogEntry,
        circuit_breaker=breaker,
        max_queue_size=1,
    )
    logs.attach()
    assert logs.persist(_log("a")) is True
    assert logs.persist(_log("b")) is False
    assert breaker.error_count("logs.admit") == 1

    await buffer.flush("logs")
    assert logs.persist(_log("c")) is True
    assert breaker.error_count("logs.admit") == 1

    # The second refusal, separated by an admission, still opens the circuit
    assert logs.persist(_log("d")) is False
    assert breaker.is_open("logs.admit") is True
    await buffer.flush("logs")
    assert logs.persist(_log("e")) is False
    buffer.destroy()


@pytest.mark.asyncio
async def test_query_returns_entries_in_window():
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    buffer = _buffer()
    metrics = RecordPersistence(buffer, MemoryRecordStore(), "metrics", MetricEntry)
    metrics.attach()
    for hour in (3, 1, 2, 10):
        entry = MetricEntry(
            category=MetricCategory.RESOURCE,
            component="cpu",
            action="sample",
            value=float(hour),
        )
        entry.timestamp = base + timedelta(hours=hour)
        metrics.persist(entry)
    await buffer.flush("metrics")

    found = await metrics.query(base, base + timedelta(hours=5))

    assert [m.value for m in found] == [1.0, 2.0, 3.0]
    assert all(isinstance(m, MetricEntry) for m in found)
    buffer.destroy()


@pytest.mark.asyncio
async def test_query_rejects_inverted_window():
    buffer = _buffer()
    logs = RecordPersistence(buffer, MemoryRecordStore(), "logs", LogEntry)
    now = datetime.now(timezone.utc)
    with pytest.raises(ValueError):
        await logs.query(now, now - timedelta(seconds=1))


@pytest.mark.asyncio
async def test_query_failure_opens_read_circuit():
    class BrokenReads(MemoryRecordStore):
        async def fetch(self, key, start, end):
            raise ConnectionError("read failed")

    breaker = CircuitBreaker(max_errors=1, reset_timeout=60.0)
    buffer = _buffer()
    logs = RecordPersistence(
        buffer, BrokenReads(), "logs", LogEntry, circuit_breaker=breaker
    )
    now = datetime.now(timezone.utc)
    with pytest.raises(ConnectionError):
        await logs.query(now - timedelta(hours=1), now)
    with pytest.raises(CircuitOpenError):
        await logs.query(now - timedelta(hours=1), now)


@pytest.mark.asyncio
async def test_query_accepts_naive_bounds_as_utc():
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    buffer = _buffer()
    logs = RecordPersistence(buffer, MemoryRecordStore(), "logs", LogEntry)
    logs.attach()
    logs.persist(_log("inside", base + timedelta(hours=1)))
    logs.persist(_log("outside", base + timedelta(hours=6)))
    await buffer.flush("logs")

    naive_start = datetime(2024, 1, 1)
    found = await logs.query(naive_start, naive_start + timedelta(hours=5))

    assert [e.message for e in found] == ["inside"]
    buffer.destroy()
