"""
Ingestion server: WebSocket endpoint that feeds log and metric entries into
the buffer.

Clients send one JSON Frame per text message:
  { "type": "log", "id": "...", "record": {...LogEntry...} }
  { "type": "metric", "id": "...", "record": {...MetricEntry...} }
  { "type": "query", "id": "...", "key": "logs", "start": ISO, "end": ISO }
  { "type": "aggregate", "id": "...", "record": {"category", "component", "action"},
    "start": ISO?, "end": ISO? }
Each frame gets exactly one reply carrying the same id:
  { "type": "ack", "record": {"accepted": true|false} }
  { "type": "result", "records": [...] }
  { "type": "error", "error": "..." }
"""

import json
import logging
import ssl
from typing import Dict, Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from batchbuffer.aggregator import MetricsAggregator
from batchbuffer.circuit_breaker import CircuitOpenError
from batchbuffer.persistence import RecordPersistence
from batchbuffer.types import Frame, FrameType, LogEntry, MetricEntry, parse_timestamp

logger = logging.getLogger(__name__)

LOGS_KEY = "logs"
METRICS_KEY = "metrics"


class IngestServer:
    """
    WebSocket ingestion server.

    - LOG frames go to `logs.persist()`, METRIC frames to `metrics.persist()`.
    - QUERY frames read back through the persistence named by `key`.
    - Accepted METRIC entries also feed `aggregator`; AGGREGATE frames read it.
    - Invalid frames are answered with an ERROR frame; the connection stays open.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        *,
        logs: RecordPersistence[LogEntry],
        metrics: RecordPersistence[MetricEntry],
        aggregator: Optional[MetricsAggregator] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.host = host
        self.port = port
        self._ssl_context = ssl_context
        self._persistence: Dict[str, RecordPersistence] = {
            LOGS_KEY: logs,
            METRICS_KEY: metrics,
        }
        self._aggregator = aggregator
        self._server = None

    async def _handle(self, ws: ServerConnection) -> None:
        try:
            async for message in ws:
                if not isinstance(message, str):
                    await ws.send(
                        Frame(type=FrameType.ERROR, error="binary frames not supported")
                        .serialize()
                    )
                    continue
                try:
                    frame = Frame.deserialize(message)
                except (json.JSONDecodeError, ValueError, KeyError) as e:
                    logger.warning("ingest server: invalid frame %s", e)
                    await ws.send(
                        Frame(type=FrameType.ERROR, error=f"invalid frame: {e}").serialize()
                    )
                    continue
                reply = await self._dispatch(frame)
                reply.id = frame.id
                await ws.send(reply.serialize())
        except ConnectionClosed:
            pass
        finally:
            logger.debug("ingest server: ws disconnected")

    async def _dispatch(self, frame: Frame) -> Frame:
        """Handle one request frame and build its reply."""
        try:
            if frame.type == FrameType.LOG:
                entry = LogEntry.model_validate(frame.record or {})
                accepted = self._persistence[LOGS_KEY].persist(entry)
                return Frame(type=FrameType.ACK, record={"accepted": accepted})
            if frame.type == FrameType.METRIC:
                entry = MetricEntry.model_validate(frame.record or {})
                accepted = self._persistence[METRICS_KEY].persist(entry)
                if accepted and self._aggregator is not None:
                    self._aggregator.aggregate(entry)
                return Frame(type=FrameType.ACK, record={"accepted": accepted})
            if frame.type == FrameType.AGGREGATE:
                return self._aggregate(frame)
            if frame.type == FrameType.QUERY:
                persistence = self._persistence.get(frame.key or "")
                if persistence is None:
                    return Frame(
                        type=FrameType.ERROR, error=f"unknown key: {frame.key!r}"
                    )
                if not frame.start or not frame.end:
                    return Frame(type=FrameType.ERROR, error="query needs start and end")
                entries = await persistence.query(
                    parse_timestamp(frame.start), parse_timestamp(frame.end)
                )
                return Frame(
                    type=FrameType.RESULT, records=[e.model_dump() for e in entries]
                )
        except (ValueError, KeyError) as e:
            logger.warning("ingest server: rejected %s frame: %s", frame.type.value, e)
            return Frame(type=FrameType.ERROR, error=f"invalid {frame.type.value}: {e}")
        except CircuitOpenError as e:
            return Frame(type=FrameType.ERROR, error=str(e))
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("ingest server: %s frame failed: %r", frame.type.value, e)
            return Frame(type=FrameType.ERROR, error="internal error")
        return Frame(
            type=FrameType.ERROR, error=f"unexpected frame type: {frame.type.value}"
        )

    def _aggregate(self, frame: Frame) -> Frame:
        """Reply to an AGGREGATE frame with the matching window aggregates."""
        if self._aggregator is None:
            return Frame(type=FrameType.ERROR, error="aggregation not enabled")
        metric = frame.record or {}
        windows = self._aggregator.get_window(
            str(metric["category"]),
            str(metric["component"]),
            str(metric["action"]),
            parse_timestamp(frame.start) if frame.start else None,
            parse_timestamp(frame.end) if frame.end else None,
        )
        return Frame(type=FrameType.RESULT, records=[w.model_dump() for w in windows])

    async def start(self) -> "IngestServer":
        """Start the WebSocket server. Use stop() to shut down. Pass ssl_context for WSS."""
        kwargs = {"ping_interval": 20, "ping_timeout": 20}
        if self._ssl_context is not None:
            kwargs["ssl"] = self._ssl_context
        self._server = await serve(
            self._handle,
            self.host,
            self.port,
            **kwargs,
        )
        # Resolve actual port if port=0
        if self.port == 0 and self._server.sockets:
            self.port = self._server.sockets[0].getsockname()[1]
        logger.info("ingest server listening on %s:%s", self.host, self.port)
        return self

    async def run_forever(self) -> None:
        """Run the server until it is closed. Call after start()."""
        if self._server is None:
            raise RuntimeError("Server not started; call start() first")
        await self._server.serve_forever()

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("ingest server stopped")
