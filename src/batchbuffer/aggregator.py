"""
MetricsAggregator: running min/max/avg/sum/count per metric and time window.

Metrics are grouped by (category, component, action) and the fixed-size window
their timestamp falls in. Two generations are kept: `current` and `previous`.
A rotation moves current to previous and starts an empty current; it happens
once per window_size of wall-clock time and whenever current reaches
max_metrics_per_window aggregates.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from batchbuffer.types import MetricEntry, MetricType, MetricUnit, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# (category, component, action, window start as epoch seconds)
AggregationKey = Tuple[str, str, str, int]


@dataclass
class AggregatedMetric:
    """Aggregate of every value seen for one metric in one window."""

    category: str
    component: str
    action: str
    unit: MetricUnit
    type: MetricType
    window_start: datetime
    window_end: datetime
    min: float = float("inf")
    max: float = float("-inf")
    avg: float = 0.0
    sum: float = 0.0
    count: int = 0
    last_updated: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def update(self, entry: MetricEntry) -> None:
        """Fold one value in; entry metadata is merged over earlier metadata."""
        self.min = min(self.min, entry.value)
        self.max = max(self.max, entry.value)
        self.sum += entry.value
        self.count += 1
        self.avg += (entry.value - self.avg) / self.count
        self.last_updated = utcnow()
        if entry.metadata:
            self.metadata = {**self.metadata, **entry.metadata}

    def model_dump(self) -> dict:
        """Dump the aggregate as a JSON-safe dict."""
        return {
            "category": self.category,
            "component": self.component,
            "action": self.action,
            "unit": self.unit.value,
            "type": self.type.value,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "min": self.min,
            "max": self.max,
            "avg": self.avg,
            "sum": self.sum,
            "count": self.count,
            "last_updated": self.last_updated.isoformat(),
            "metadata": self.metadata,
        }


# pylint: disable=too-many-instance-attributes
class MetricsAggregator:
    """
    Windowed metric aggregation.

    aggregate(entry) folds a metric into its window; get_window() reads the
    aggregates of one metric from both generations; cleanup() drops windows
    older than max_windows windows.
    """

    def __init__(
        self,
        *,
        window_size: float = 60.0,
        max_metrics_per_window: int = 10000,
        max_windows: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_size = window_size
        self.max_metrics_per_window = max(1, max_metrics_per_window)
        self.max_windows = max(1, max_windows)
        self._clock = clock
        self.current: Dict[AggregationKey, AggregatedMetric] = {}
        self.previous: Dict[AggregationKey, AggregatedMetric] = {}
        self._rotated_at = self._window_floor(clock())

    def _window_floor(self, epoch: float) -> int:
        return int(epoch // self.window_size * self.window_size)

    def _maybe_rotate(self) -> None:
        """Rotate once the wall clock has moved into a later window."""
        floor = self._window_floor(self._clock())
        if floor > self._rotated_at:
            self._rotated_at = floor
            self.rotate()

    def rotate(self) -> None:
        """Move current to previous and start an empty current."""
        logger.debug(
            "MetricsAggregator: rotating (%d aggregates to previous)", len(self.current)
        )
        self.previous = self.current
        self.current = {}

    def aggregate(self, entry: MetricEntry) -> AggregatedMetric:
        """Fold entry into the aggregate for its metric and window and return it."""
        self._maybe_rotate()
        start_epoch = self._window_floor(entry.timestamp.timestamp())
        key = (entry.category.value, entry.component, entry.action, start_epoch)
        agg = self.current.get(key)
        if agg is None:
            if len(self.current) >= self.max_metrics_per_window:
                logger.warning(
                    "MetricsAggregator: window full (%d aggregates), rotating early",
                    len(self.current),
                )
                self.rotate()
            window_start = datetime.fromtimestamp(start_epoch, timezone.utc)
            agg = AggregatedMetric(
                category=entry.category.value,
                component=entry.component,
                action=entry.action,
                unit=entry.unit,
                type=entry.type,
                window_start=window_start,
                window_end=window_start + timedelta(seconds=self.window_size),
            )
            self.current[key] = agg
        agg.update(entry)
        return agg

    def get_window(
        self,
        category: str,
        component: str,
        action: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AggregatedMetric]:
        """
        Aggregates of one metric from current and previous, oldest window first.
        With start/end, only windows lying entirely inside [start, end].
        """
        self._maybe_rotate()
        start = parse_timestamp(start) if start is not None else None
        end = parse_timestamp(end) if end is not None else None
        results = []
        for generation in (self.previous, self.current):
            for (cat, comp, act, _), agg in generation.items():
                if (cat, comp, act) != (category, component, action):
                    continue
                if start is not None and agg.window_start < start:
                    continue
                if end is not None and agg.window_end > end:
                    continue
                results.append(agg)
        results.sort(key=lambda a: a.window_start)
        return results

    def all_metrics(self) -> Dict[AggregationKey, AggregatedMetric]:
        """Both generations merged; current wins on equal keys."""
        self._maybe_rotate()
        return {**self.previous, **self.current}

    def cleanup(self) -> int:
        """Drop aggregates whose window ended more than max_windows windows ago."""
        cutoff = datetime.fromtimestamp(
            self._clock() - self.max_windows * self.window_size, timezone.utc
        )
        removed = 0
        for generation in (self.previous, self.current):
            for key in [k for k, a in generation.items() if a.window_end < cutoff]:
                del generation[key]
                removed += 1
        if removed:
            logger.info("MetricsAggregator: cleaned up %d aggregates", removed)
        return removed
