"""
batchbuffer - per-key record buffering with batched, retried flushes
"""

__version__ = "0.1.0"

from batchbuffer.aggregator import AggregatedMetric, MetricsAggregator
from batchbuffer.buffer import BatchBuffer, Sink
from batchbuffer.circuit_breaker import CircuitBreaker, CircuitOpenError
from batchbuffer.persistence import RecordPersistence
from batchbuffer.types import (
    LogCategory,
    LogEntry,
    LogLevel,
    MetricCategory,
    MetricEntry,
    MetricType,
    MetricUnit,
)

__all__ = [
    "AggregatedMetric",
    "BatchBuffer",
    "CircuitBreaker",
    "CircuitOpenError",
    "LogCategory",
    "LogEntry",
    "LogLevel",
    "MetricCategory",
    "MetricEntry",
    "MetricType",
    "MetricUnit",
    "MetricsAggregator",
    "RecordPersistence",
    "Sink",
    "__version__",
]
