"""
In-memory record backend. Records live as long as the process.
"""

import logging
from datetime import datetime
from typing import Dict, List

from batchbuffer.types import parse_timestamp

logger = logging.getLogger(__name__)


class MemoryRecordStore:
    """Dict-backed RecordBackend, in append order per key."""

    def __init__(self) -> None:
        self._store: Dict[str, List[dict]] = {}

    async def append_many(self, key: str, records: List[dict]) -> None:
        """Append records for this key."""
        self._store.setdefault(key, []).extend(records)
        logger.debug("memory store: appended %d records for %s", len(records), key)

    async def fetch(self, key: str, start: datetime, end: datetime) -> List[dict]:
        """Records for this key with start <= timestamp <= end, oldest first."""
        matched = [
            (ts, i, r)
            for i, r in enumerate(self._store.get(key, []))
            if start <= (ts := parse_timestamp(r["timestamp"])) <= end
        ]
        matched.sort(key=lambda row: (row[0], row[1]))
        return [r for _, _, r in matched]

    def count(self, key: str) -> int:
        """Number of records stored for key."""
        return len(self._store.get(key, []))
