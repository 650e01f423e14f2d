"""
Rolling per-topic time series for charting.

Each topic that ever produced a numeric payload owns one fixed-capacity FIFO
of samples. Readers take snapshots; only the aggregator appends.
"""
import logging
import time
from collections import deque
from typing import Iterator, Optional

from mqttwatch.core.models import SeriesSample, ChartRange

logger = logging.getLogger(__name__)

# Ranges narrower than this are drawn as a unit range
RANGE_EPSILON = 0.001


class RollingSeries:
    def __init__(self, topic: str, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"Series capacity must be positive, got {capacity}")
        self.topic = topic
        self.capacity = capacity
        self._samples: deque[SeriesSample] = deque()

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[SeriesSample]:
        return iter(self._samples)

    def append(self, value: float, timestamp: Optional[float] = None) -> SeriesSample:
        sample = SeriesSample(
            timestamp=time.time() if timestamp is None else timestamp,
            value=float(value),
        )
        self._samples.append(sample)
        while len(self._samples) > self.capacity:
            self._samples.popleft()
        return sample

    def clear(self) -> None:
        self._samples.clear()

    def snapshot(self) -> list[SeriesSample]:
        return list(self._samples)

    def latest(self) -> Optional[SeriesSample]:
        return self._samples[-1] if self._samples else None

    def chart_range(self) -> Optional[ChartRange]:
        """Plotting bounds over the current samples, or None when empty."""
        if not self._samples:
            return None
        values = [s.value for s in self._samples]
        times = [s.timestamp for s in self._samples]
        min_val, max_val = min(values), max(values)
        min_time, max_time = min(times), max(times)
        value_range = max_val - min_val
        if abs(value_range) < RANGE_EPSILON:
            value_range = 1.0
        time_range = max_time - min_time
        if abs(time_range) < RANGE_EPSILON:
            time_range = 1.0
        return ChartRange(
            min_value=min_val,
            max_value=max_val,
            value_range=value_range,
            min_time=min_time,
            max_time=max_time,
            time_range=time_range,
            current=self._samples[-1].value,
        )

    def to_dict(self) -> dict:
        chart = self.chart_range()
        return {
            "topic": self.topic,
            "capacity": self.capacity,
            "samples": [{"timestamp": s.timestamp, "value": s.value} for s in self._samples],
            "range": chart.to_dict() if chart else None,
        }


class SeriesStore:
    """Topic -> RollingSeries, created lazily on first numeric sample."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"Series capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._series: dict[str, RollingSeries] = {}

    def __contains__(self, topic: str) -> bool:
        return topic in self._series

    def __len__(self) -> int:
        return len(self._series)

    def get(self, topic: str) -> Optional[RollingSeries]:
        return self._series.get(topic)

    def topics(self) -> list[str]:
        return list(self._series)

    def append(self, topic: str, value: float, timestamp: Optional[float] = None) -> tuple[SeriesSample, bool]:
        """Append a sample, creating the series if needed. Returns (sample, created)."""
        series = self._series.get(topic)
        created = series is None
        if created:
            series = RollingSeries(topic, self.capacity)
            self._series[topic] = series
            logger.debug(f"Series created for topic '{topic}' (capacity={self.capacity})")
        return series.append(value, timestamp), created

    def clear(self, topic: Optional[str] = None) -> bool:
        """Drop samples of one series, or of every series when topic is None."""
        if topic is None:
            for series in self._series.values():
                series.clear()
            return True
        series = self._series.get(topic)
        if series is None:
            return False
        series.clear()
        return True
