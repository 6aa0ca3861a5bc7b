"""
Ingestion client: submit log and metric entries to an IngestServer and query
stored ones.

Usage:
    client = IngestClient("ws://localhost:8765")
    await client.connect()
    await client.send_log(LogEntry(level=LogLevel.INFO, category=LogCategory.SYSTEM, message="up"))
    records = await client.query("logs", start, end)
    await client.close()
"""

import asyncio
import itertools
import logging
import ssl
from datetime import datetime
from typing import Any, List, Optional

import websockets

from batchbuffer.types import Frame, FrameType, LogEntry, MetricEntry

logger = logging.getLogger(__name__)

# Generic WebSocket type.
WS = Any


class IngestClient:
    """
    Client for the ingestion server over one WebSocket.

    Requests are sent one at a time; each call waits for its reply.
    """

    def __init__(
        self,
        url: str,
        *,
        retry_interval: float = 5.0,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.url = url
        self.retry_interval = retry_interval
        self._ssl_context = ssl_context
        self._ws: Optional[WS] = None
        self._closed = False
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)

    async def connect(self) -> "IngestClient":
        """Connect to the ingestion server; retries until success or close()."""
        self._closed = False
        while not self._closed:
            try:
                # Only pass ssl for wss:// or when caller provides ssl_context
                use_ssl = (
                    self._ssl_context
                    if self._ssl_context is not None
                    else (True if self.url.startswith("wss") else None)
                )
                kwargs = {"ping_interval": 20, "ping_timeout": 20}
                if use_ssl is not None:
                    kwargs["ssl"] = use_ssl
                self._ws = await websockets.connect(self.url, **kwargs)
                logger.info("IngestClient connected to %s", self.url)
                return self
            except (OSError, ConnectionError) as e:
                logger.warning(
                    "IngestClient connect failed (will retry in %.1fs): %s",
                    self.retry_interval,
                    e,
                )
                await asyncio.sleep(self.retry_interval)
        return self

    async def _request(self, frame: Frame) -> Frame:
        """Send frame and wait for the reply with the same id."""
        if not self.is_connected():
            raise RuntimeError("IngestClient not connected")
        async with self._lock:
            frame.id = str(next(self._ids))
            try:
                await self._ws.send(frame.serialize())
                reply = Frame.deserialize(await self._ws.recv())
            except Exception:  # pylint: disable=broad-exception-caught
                self._closed = True
                self._ws = None
                raise
        if reply.type == FrameType.ERROR:
            raise RuntimeError(f"ingest server error: {reply.error}")
        if reply.id != frame.id:
            raise RuntimeError(
                f"ingest protocol: reply id {reply.id!r} for request {frame.id!r}"
            )
        return reply

    async def send_log(self, entry: LogEntry) -> bool:
        """Submit a log entry. Returns whether the server accepted it."""
        reply = await self._request(Frame(type=FrameType.LOG, record=entry.model_dump()))
        return bool((reply.record or {}).get("accepted"))

    async def send_metric(self, entry: MetricEntry) -> bool:
        """Submit a metric entry. Returns whether the server accepted it."""
        reply = await self._request(
            Frame(type=FrameType.METRIC, record=entry.model_dump())
        )
        return bool((reply.record or {}).get("accepted"))

    async def query(self, key: str, start: datetime, end: datetime) -> List[dict]:
        """Return stored records for key ("logs" or "metrics") in [start, end]."""
        reply = await self._request(
            Frame(
                type=FrameType.QUERY,
                key=key,
                start=start.isoformat(),
                end=end.isoformat(),
            )
        )
        return reply.records or []

    async def aggregate(
        self,
        category: str,
        component: str,
        action: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[dict]:
        """Return the server's window aggregates for one metric, oldest first."""
        reply = await self._request(
            Frame(
                type=FrameType.AGGREGATE,
                record={"category": category, "component": component, "action": action},
                start=start.isoformat() if start else None,
                end=end.isoformat() if end else None,
            )
        )
        return reply.records or []

    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        return not self._closed and self._ws is not None

    async def close(self) -> None:
        """Close the WebSocket."""
        self._closed = True
        if self._ws:
            try:
                await self._ws.close()
            except Exception:  # pylint: disable=broad-exception-caught
                pass
            self._ws = None

    async def __aenter__(self) -> "IngestClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
