"""
RecordPersistence: route log or metric entries through a BatchBuffer key into a
RecordBackend.

persist() admits an entry into the buffer; the buffer later calls write_batch()
(the key's sink) with a batch, which is written to the backend in chunks.
A sink error leaves retrying and putting records back to the buffer.
"""

import logging
from datetime import datetime
from typing import Generic, List, Optional, Protocol, Type, TypeVar

from batchbuffer.buffer import BatchBuffer
from batchbuffer.circuit_breaker import CircuitBreaker, CircuitOpenError
from batchbuffer.record_backend import RecordBackend
from batchbuffer.types import parse_timestamp

logger = logging.getLogger(__name__)


class Entry(Protocol):
    """What RecordPersistence needs from an entry type (LogEntry, MetricEntry)."""

    def model_dump(self) -> dict: ...


E = TypeVar("E", bound=Entry)


# pylint: disable=too-many-instance-attributes,too-many-arguments
class RecordPersistence(Generic[E]):
    """
    Persist entries of one type under one buffer key.

    Circuits (named after the key):
    - "<key>.admit": opened after max_errors full-buffer refusals; persist() refuses while
      open. Admissions do not reset the count, only the reset timeout does.
    - "<key>.write": opened by backend write errors; write_batch() raises while open.
    - "<key>.read": opened by backend read errors; query() raises while open.
    """

    def __init__(
        self,
        buffer: BatchBuffer,
        backend: RecordBackend,
        key: str,
        entry_type: Type[E],
        *,
        circuit_breaker: Optional[CircuitBreaker] = None,
        chunk_size: int = 50,
        max_queue_size: int = 10000,
    ) -> None:
        self.key = key
        self.entry_type = entry_type
        self.chunk_size = max(1, chunk_size)
        self.max_queue_size = max(1, max_queue_size)
        self._buffer = buffer
        self._backend = backend
        self._breaker = circuit_breaker or CircuitBreaker()
        self._admit_circuit = f"{key}.admit"
        self._write_circuit = f"{key}.write"
        self._read_circuit = f"{key}.read"

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        """CircuitBreaker shared by this persistence (for tests or monitoring)."""
        return self._breaker

    def attach(self) -> None:
        """Register write_batch() as the buffer sink for this key."""
        self._buffer.register(self.key, self.write_batch)

    def persist(self, entry: E) -> bool:
        """Queue entry for writing. Returns False if it was refused."""
        if self._breaker.is_open(self._admit_circuit):
            logger.warning("persistence %s: circuit open, dropping entry", self.key)
            return False
        size = self._buffer.get_size(self.key)
        if size >= self.max_queue_size:
            self._breaker.record_error(self._admit_circuit)
            logger.warning(
                "persistence %s: queue full (%d entries), dropping entry",
                self.key,
                size,
            )
            return False
        self._buffer.add(self.key, entry)
        return True

    async def write_batch(self, entries: List[E]) -> None:
        """Buffer sink: write entries to the backend in chunks of chunk_size."""
        if self._breaker.is_open(self._write_circuit):
            raise CircuitOpenError(self._write_circuit)
        records = [e.model_dump() for e in entries]
        chunks = [
            records[i : i + self.chunk_size]
            for i in range(0, len(records), self.chunk_size)
        ]
        for index, chunk in enumerate(chunks):
            try:
                await self._backend.append_many(self.key, chunk)
            except Exception:
                self._breaker.record_error(self._write_circuit)
                logger.warning(
                    "persistence %s: chunk %d/%d failed",
                    self.key,
                    index + 1,
                    len(chunks),
                )
                raise
        self._breaker.record_success(self._write_circuit)
        logger.debug(
            "persistence %s: wrote %d entries in %d chunks",
            self.key,
            len(records),
            len(chunks),
        )

    async def query(self, start: datetime, end: datetime) -> List[E]:
        """Return stored entries with start <= timestamp <= end, oldest first."""
        start, end = parse_timestamp(start), parse_timestamp(end)
        if start > end:
            raise ValueError("start must not be after end")
        if self._breaker.is_open(self._read_circuit):
            raise CircuitOpenError(self._read_circuit)
        try:
            rows = await self._backend.fetch(self.key, start, end)
        except Exception:
            self._breaker.record_error(self._read_circuit)
            raise
        self._breaker.record_success(self._read_circuit)
        return [self.entry_type.model_validate(r) for r in rows]
