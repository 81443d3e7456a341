from datetime import datetime

from pydantic import BaseModel, Field

from src.metrics.scope import Scope, ScopeLevel

from .models import AnalysisRequest, TimeRange, parse_timestamp


class ScopeBody(BaseModel):
    level: ScopeLevel = ScopeLevel.CLUSTER
    namespace: str | None = None
    deployment: str | None = None
    pod: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class TimeRangeBody(BaseModel):
    start: datetime
    end: datetime


class AnalyzeBody(BaseModel):
    scope: ScopeBody = Field(default_factory=ScopeBody)
    model: str = "anomaly-detector"
    models: list[str] = Field(default_factory=list)
    metric_focus: str | None = None
    time_range: TimeRangeBody | None = None
    target_timestamp: datetime | None = None

    def to_request(self) -> AnalysisRequest:
        time_range = None
        if self.time_range is not None:
            time_range = TimeRange(
                start=parse_timestamp(self.time_range.start),
                end=parse_timestamp(self.time_range.end),
            )
        return AnalysisRequest(
            scope=Scope(
                level=self.scope.level,
                namespace=self.scope.namespace,
                deployment=self.scope.deployment,
                pod=self.scope.pod,
                labels=dict(self.scope.labels),
            ),
            model=self.model,
            models=list(self.models),
            metric_focus=self.metric_focus,
            time_range=time_range,
            target_timestamp=parse_timestamp(self.target_timestamp),
        )
