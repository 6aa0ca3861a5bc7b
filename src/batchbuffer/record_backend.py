"""
Record backend: where flushed batches end up.

RecordPersistence hands every flushed chunk to append_many(); query() reads
back through fetch(). Records are the JSON-safe dicts produced by
LogEntry.model_dump() / MetricEntry.model_dump(); each carries an ISO-8601
"timestamp" used for range queries.
"""

from datetime import datetime
from typing import List, Protocol


class RecordBackend(Protocol):
    """Protocol for record storage (e.g. PostgreSQL)."""

    async def append_many(self, key: str, records: List[dict]) -> None:
        """Append records for this key. Must raise if nothing was stored."""

    async def fetch(self, key: str, start: datetime, end: datetime) -> List[dict]:
        """
        Return records for this key with start <= timestamp <= end, oldest first.
        """
