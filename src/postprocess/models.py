"""
Caller-facing result models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from src.core.errors import PipelineError
from src.features.models import MetricSummary


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecommendedAction(Enum):
    RESTART_POD = "restart_pod"
    SCALE_UP = "scale_up"
    INVESTIGATE_MEMORY_LEAK = "investigate_memory_leak"
    INVESTIGATE_CRASHLOOP = "investigate_crashloop"
    INVESTIGATE_NETWORK = "investigate_network"
    MONITOR = "monitor"
    NONE = "none"


@dataclass
class ResultContext:
    """Domain context the raw model output is interpreted in"""

    scope: str
    summaries: dict[str, MetricSummary] = field(default_factory=dict)
    metric_focus: str | None = None
    target_timestamp: datetime | None = None


@dataclass
class AnomalyResult:
    """Structured anomaly classification"""

    model_name: str
    anomaly_score: float
    severity: Severity
    confidence: float
    explanation: str
    recommended_action: RecommendedAction
    contributing_metrics: list[str] = field(default_factory=list)
    raw_score: float | None = None

    @property
    def is_anomaly(self) -> bool:
        return self.severity is not Severity.LOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model_name,
            "anomaly_score": round(self.anomaly_score, 4),
            "is_anomaly": self.is_anomaly,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 4),
            "explanation": self.explanation,
            "recommended_action": self.recommended_action.value,
            "contributing_metrics": list(self.contributing_metrics),
            "raw_score": self.raw_score,
        }


@dataclass
class ForecastResult:
    """Point estimates, passed through unchanged"""

    model_name: str
    predictions: list[Any]
    target_timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model_name,
            "predictions": self.predictions,
            "target_timestamp": (
                self.target_timestamp.isoformat() if self.target_timestamp else None
            ),
        }


@dataclass
class ComponentOutcome:
    """One sub-model of an ensemble: a result or the failure that replaced it"""

    model_name: str
    result: AnomalyResult | None = None
    error: PipelineError | None = None

    def __post_init__(self):
        if (self.result is None) == (self.error is None):
            raise ValueError("A component outcome has exactly one of result or error")

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"model": self.model_name, "status": "ok", "result": self.result.to_dict()}
        return {"model": self.model_name, "status": "failed", "error": self.error.to_dict()}


@dataclass
class EnsembleAnomalyResult:
    """Per-component outcomes plus a combined result when enough succeeded"""

    components: list[ComponentOutcome]
    min_successful: int
    combined: AnomalyResult | None = None

    @property
    def successful(self) -> int:
        return sum(1 for c in self.components if c.ok)

    @property
    def failed(self) -> int:
        return len(self.components) - self.successful

    @property
    def is_partial(self) -> bool:
        return self.failed > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "combined": self.combined.to_dict() if self.combined else None,
            "successful": self.successful,
            "failed": self.failed,
            "partial": self.is_partial,
            "min_successful": self.min_successful,
            "components": [c.to_dict() for c in self.components],
        }
