"""
Result post-processing: raw model output to caller-facing results.
"""

from .models import (
    AnomalyResult,
    ComponentOutcome,
    EnsembleAnomalyResult,
    ForecastResult,
    RecommendedAction,
    ResultContext,
    Severity,
)
from .processor import ResultPostProcessor, calculate_severity, normalize_score

__all__ = [
    "AnomalyResult",
    "ComponentOutcome",
    "EnsembleAnomalyResult",
    "ForecastResult",
    "RecommendedAction",
    "ResultContext",
    "ResultPostProcessor",
    "Severity",
    "calculate_severity",
    "normalize_score",
]
