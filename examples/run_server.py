"""
Minimal ingestion server script.

Usage:
    python examples/run_server.py [--host HOST] [--port PORT] [--dsn DSN]

Options:
    --host HOST               Bind address (default: 127.0.0.1)
    --port PORT               Port to listen on (default: 8765)
    --dsn DSN                 PostgreSQL DSN; records are kept in memory if omitted
    --flush-interval SECONDS  Periodic flush interval (default: 5.0)
    --max-buffer-size N       Records per key that trigger an early flush (default: 100)
    --log-level LEVEL         Logging level (default: INFO)
"""

import argparse
import asyncio
import logging

from batchbuffer.aggregator import MetricsAggregator
from batchbuffer.backends.memory import MemoryRecordStore
from batchbuffer.backends.postgres import PostgresRecordStore
from batchbuffer.buffer import BatchBuffer
from batchbuffer.circuit_breaker import CircuitBreaker
from batchbuffer.persistence import RecordPersistence
from batchbuffer.server import LOGS_KEY, METRICS_KEY, IngestServer
from batchbuffer.types import LogEntry, MetricEntry

logger = logging.getLogger(__name__)


async def main() -> None:
    parser = argparse.ArgumentParser(description="batchbuffer ingestion server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--dsn", default=None, help="PostgreSQL connection string")
    parser.add_argument("--flush-interval", type=float, default=5.0)
    parser.add_argument("--max-buffer-size", type=int, default=100)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.dsn:
        backend = PostgresRecordStore(args.dsn)
        await backend.create_table_if_not_exists()
    else:
        backend = MemoryRecordStore()

    buffer = BatchBuffer(
        max_buffer_size=args.max_buffer_size,
        flush_interval=args.flush_interval,
    )
    breaker = CircuitBreaker()
    logs = RecordPersistence(buffer, backend, LOGS_KEY, LogEntry, circuit_breaker=breaker)
    metrics = RecordPersistence(
        buffer, backend, METRICS_KEY, MetricEntry, circuit_breaker=breaker
    )
    logs.attach()
    metrics.attach()

    server = IngestServer(
        host=args.host,
        port=args.port,
        logs=logs,
        metrics=metrics,
        aggregator=MetricsAggregator(),
    )
    await server.start()
    logger.info(
        "batchbuffer server listening on %s:%d (backend=%s)",
        args.host,
        server.port,
        type(backend).__name__,
    )

    try:
        await asyncio.Future()  # run forever
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await server.stop()
        await buffer.close()
        if args.dsn:
            await backend.close()
        logger.info("server stopped")


if __name__ == "__main__":
    asyncio.run(main())
