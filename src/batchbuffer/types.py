"""
Types for batchbuffer: log and metric records and the ingestion wire frame.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Dict, List, Optional
import json
import uuid


class LogLevel(StrEnum):
    """Severity of a log entry."""

    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"


class LogCategory(StrEnum):
    """Area of the application a log entry comes from."""

    SYSTEM = "system"
    SECURITY = "security"
    BUSINESS = "business"
    INTEGRATION = "integration"
    PERFORMANCE = "performance"
    APPLICATION = "application"


class MetricType(StrEnum):
    """How a metric value accumulates."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class MetricUnit(StrEnum):
    """Unit of a metric value."""

    MILLISECONDS = "ms"
    COUNT = "count"
    SECONDS = "seconds"
    BYTES = "bytes"
    PERCENTAGE = "percentage"


class MetricCategory(StrEnum):
    """Area of the application a metric comes from."""

    SYSTEM = "system"
    BUSINESS = "business"
    PERFORMANCE = "performance"
    RESOURCE = "resource"
    SECURITY = "security"
    MESSAGING = "messaging"
    API = "api"


class FrameType(StrEnum):
    """
    Ingestion frame type:
    - LOG / METRIC: client submits one record.
    - QUERY: client asks for stored records of a key in a time window.
    - AGGREGATE: client asks for windowed metric aggregates; `record` names
      category, component and action, `start`/`end` optionally bound the windows.
    - ACK / RESULT: server replies to LOG, METRIC / QUERY, AGGREGATE.
    - ERROR: server rejects a frame.
    """

    LOG = "log"
    METRIC = "metric"
    QUERY = "query"
    AGGREGATE = "aggregate"
    ACK = "ack"
    RESULT = "result"
    ERROR = "error"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_reference() -> str:
    """Return a new metric reference."""
    return uuid.uuid4().hex


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or pass a datetime through) as an aware datetime.

    Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        ts = datetime.fromisoformat(value)
    else:
        raise ValueError(f"invalid timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class LogEntry:
    """One application log record."""

    level: LogLevel
    category: LogCategory
    message: str
    user_id: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None
    source: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def model_dump(self) -> dict:
        """Dump the entry as a JSON-safe dict."""
        return {
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
            "session_id": self.session_id,
            "correlation_id": self.correlation_id,
            "source": self.source,
            "tags": list(self.tags),
        }

    @classmethod
    def model_validate(cls, data: dict) -> "LogEntry":
        """Build an entry from a dict; raises ValueError/KeyError on bad input."""
        if not isinstance(data, dict):
            raise ValueError("log entry must be an object")
        message = data["message"]
        if not isinstance(message, str):
            raise ValueError("log message must be a string")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("log metadata must be an object")
        tags = data.get("tags") or []
        if not isinstance(tags, list):
            raise ValueError("log tags must be a list")
        return LogEntry(
            level=LogLevel(data["level"]),
            category=LogCategory(data.get("category", LogCategory.APPLICATION)),
            message=message,
            user_id=str(data.get("user_id", "") or ""),
            timestamp=(
                parse_timestamp(data["timestamp"])
                if data.get("timestamp")
                else utcnow()
            ),
            metadata=metadata,
            session_id=data.get("session_id") or None,
            correlation_id=data.get("correlation_id") or None,
            source=data.get("source") or None,
            tags=[str(t) for t in tags],
        )


@dataclass
class MetricEntry:
    """One measured value."""

    category: MetricCategory
    component: str
    action: str
    value: float
    unit: MetricUnit = MetricUnit.COUNT
    type: MetricType = MetricType.GAUGE
    reference: str = field(default_factory=new_reference)
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def model_dump(self) -> dict:
        """Dump the entry as a JSON-safe dict."""
        return {
            "category": self.category.value,
            "component": self.component,
            "action": self.action,
            "value": self.value,
            "unit": self.unit.value,
            "type": self.type.value,
            "reference": self.reference,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def model_validate(cls, data: dict) -> "MetricEntry":
        """Build an entry from a dict; raises ValueError/KeyError on bad input."""
        if not isinstance(data, dict):
            raise ValueError("metric entry must be an object")
        value = data["value"]
        # bool is an int subclass but never a valid measurement
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("metric value must be a number")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metric metadata must be an object")
        return MetricEntry(
            category=MetricCategory(data["category"]),
            component=str(data["component"]),
            action=str(data["action"]),
            value=float(value),
            unit=MetricUnit(data.get("unit", MetricUnit.COUNT)),
            type=MetricType(data.get("type", MetricType.GAUGE)),
            reference=data.get("reference") or new_reference(),
            timestamp=(
                parse_timestamp(data["timestamp"])
                if data.get("timestamp")
                else utcnow()
            ),
            metadata=metadata,
        )


@dataclass
class Frame:
    """
    Frame for the ingestion protocol. One JSON text message per frame.

    type=LOG/METRIC carry `record`; type=QUERY carries `key`, `start`, `end`;
    replies echo the request `id`.
    """

    type: FrameType
    id: Optional[str] = None
    key: Optional[str] = None
    record: Optional[dict] = None
    records: Optional[List[dict]] = None
    start: Optional[str] = None
    end: Optional[str] = None
    error: Optional[str] = None

    def model_dump(self) -> dict:
        """Dump the frame for sending over the wire; unset fields are omitted."""
        result: Dict[str, Any] = {"type": self.type.value}
        for name in ("id", "key", "record", "records", "start", "end", "error"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result

    def serialize(self) -> str:
        """Serialize the frame to a JSON string for sending over the wire."""
        return json.dumps(self.model_dump(), ensure_ascii=False)

    @classmethod
    def model_validate(cls, data: dict) -> "Frame":
        """Validate the frame from a dictionary received from the wire."""
        if not isinstance(data, dict):
            raise ValueError("frame must be a JSON object")
        record = data.get("record")
        if record is not None and not isinstance(record, dict):
            raise ValueError("frame record must be an object")
        records = data.get("records")
        if records is not None and not isinstance(records, list):
            raise ValueError("frame records must be a list")
        return Frame(
            type=FrameType(data["type"]),
            id=data.get("id") or None,
            key=data.get("key") or None,
            record=record,
            records=records,
            start=data.get("start") or None,
            end=data.get("end") or None,
            error=data.get("error") or None,
        )

    @classmethod
    def deserialize(cls, data: str) -> "Frame":
        """Deserialize the frame from a JSON string received from the wire."""
        return cls.model_validate(json.loads(data))
