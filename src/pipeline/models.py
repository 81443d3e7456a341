"""
Analysis request and response models.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from src.core.errors import InvalidRequest
from src.features.models import MetricSummary
from src.metrics.scope import Scope
from src.postprocess.models import AnomalyResult, EnsembleAnomalyResult, ForecastResult


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidRequest(f"Invalid timestamp: {value!r}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def floor_to_step(value: datetime, step_seconds: int) -> datetime:
    epoch = int(value.timestamp())
    return datetime.fromtimestamp(epoch - epoch % step_seconds, tz=timezone.utc)


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start >= self.end:
            raise InvalidRequest(
                f"Time range start {self.start.isoformat()} is not before end "
                f"{self.end.isoformat()}"
            )


@dataclass
class AnalysisRequest:
    """A scoped analysis request from the orchestration layer

    `models` names the sub-models of an ensemble; when empty the single
    `model` is used.
    """

    scope: Scope
    model: str = "anomaly-detector"
    models: list[str] = field(default_factory=list)
    metric_focus: str | None = None
    time_range: TimeRange | None = None
    target_timestamp: datetime | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def model_names(self) -> list[str]:
        names = list(dict.fromkeys(self.models)) if self.models else [self.model]
        if not names or not all(names):
            raise InvalidRequest("Analysis request names no model")
        return names

    def anchor(self, step_seconds: int, now: datetime) -> datetime:
        """Newest timestep of the feature window

        The requested target (or the end of the time range) floored to the
        step, never later than the last completed step before `now`.
        """
        requested = self.target_timestamp
        if requested is None and self.time_range is not None:
            requested = self.time_range.end
        latest = floor_to_step(now, step_seconds)
        if requested is None:
            return latest
        return min(floor_to_step(requested, step_seconds), latest)

    def forecast_target(self, anchor: datetime, step_seconds: int) -> datetime:
        """Timestamp a forecast is for: the requested target, else the next step"""
        if self.target_timestamp is not None:
            return self.target_timestamp
        return anchor + timedelta(seconds=step_seconds)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisRequest":
        time_range = None
        if data.get("time_range"):
            raw = data["time_range"]
            time_range = TimeRange(
                start=parse_timestamp(raw.get("start")),
                end=parse_timestamp(raw.get("end")),
            )
        return cls(
            scope=Scope.from_dict(data.get("scope") or {}),
            model=data.get("model") or "anomaly-detector",
            models=list(data.get("models") or []),
            metric_focus=data.get("metric_focus"),
            time_range=time_range,
            target_timestamp=parse_timestamp(data.get("target_timestamp")),
        )


@dataclass
class AnalysisResponse:
    """Structured result of one analysis request"""

    request_id: str
    scope: str
    models: list[str]
    family: str
    catalogue_version: str
    feature_count: int
    window_end: datetime
    anomaly: AnomalyResult | None = None
    ensemble: EnsembleAnomalyResult | None = None
    forecast: ForecastResult | None = None
    summaries: dict[str, MetricSummary] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "scope": self.scope,
            "models": self.models,
            "family": self.family,
            "catalogue_version": self.catalogue_version,
            "feature_count": self.feature_count,
            "window_end": self.window_end.isoformat(),
            "anomaly": self.anomaly.to_dict() if self.anomaly else None,
            "ensemble": self.ensemble.to_dict() if self.ensemble else None,
            "forecast": self.forecast.to_dict() if self.forecast else None,
            "metrics": {name: s.to_dict() for name, s in self.summaries.items()},
        }
