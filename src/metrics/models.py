"""
Data models for the metrics adapter.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class QueryMode(Enum):
    """Monitoring backend query modes"""

    INSTANT = "instant"
    RANGE = "range"


@dataclass(frozen=True)
class MetricQuery:
    """A query against the monitoring backend

    `time` is used in instant mode, `start`/`end`/`step_seconds` in range mode.
    """

    metric_name: str
    expression: str
    mode: QueryMode = QueryMode.RANGE
    time: datetime | None = None
    start: datetime | None = None
    end: datetime | None = None
    step_seconds: int | None = None

    def __post_init__(self):
        if self.mode is QueryMode.RANGE:
            if self.start is None or self.end is None or not self.step_seconds:
                raise ValueError("Range queries need start, end and step_seconds")
            if self.start > self.end:
                raise ValueError(f"Range start {self.start} is after end {self.end}")

    @classmethod
    def instant(cls, metric_name: str, expression: str, time: datetime | None = None):
        return cls(metric_name, expression, QueryMode.INSTANT, time=time)

    @classmethod
    def range(
        cls,
        metric_name: str,
        expression: str,
        start: datetime,
        end: datetime,
        step_seconds: int,
    ):
        return cls(
            metric_name,
            expression,
            QueryMode.RANGE,
            start=start,
            end=end,
            step_seconds=step_seconds,
        )


@dataclass(frozen=True)
class MetricSeries:
    """A time-sorted series of samples for one metric

    Samples are `(timestamp, value)` pairs with timezone-aware UTC timestamps.
    Duplicate timestamps are rejected; gaps are allowed.
    """

    name: str
    samples: tuple[tuple[datetime, float], ...]
    unit: str = ""
    labels: dict[str, str] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        previous = None
        for timestamp, _ in self.samples:
            if timestamp.tzinfo is None:
                raise ValueError(f"Series {self.name} has a naive timestamp: {timestamp}")
            if previous is not None:
                if timestamp == previous:
                    raise ValueError(f"Series {self.name} has duplicate timestamp {timestamp}")
                if timestamp < previous:
                    raise ValueError(f"Series {self.name} is not sorted by time")
            previous = timestamp

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def is_empty(self) -> bool:
        return not self.samples

    @property
    def timestamps(self) -> list[datetime]:
        return [t for t, _ in self.samples]

    @property
    def values(self) -> list[float]:
        return [v for _, v in self.samples]

    @classmethod
    def from_pairs(
        cls,
        name: str,
        pairs,
        unit: str = "",
        labels: dict[str, str] | None = None,
    ) -> "MetricSeries":
        """Create a series from unsorted `(epoch_seconds | datetime, value)` pairs"""
        samples = []
        for ts, value in pairs:
            if not isinstance(ts, datetime):
                ts = datetime.fromtimestamp(float(ts), tz=timezone.utc)
            samples.append((ts, float(value)))
        samples.sort(key=lambda s: s[0])
        return cls(name=name, samples=tuple(samples), unit=unit, labels=dict(labels or {}))
