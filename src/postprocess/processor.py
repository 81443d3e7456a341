"""
Result post-processor.

Turns raw model output into the caller-facing result:

- anomaly families: raw decision score -> 0..1 anomaly score -> severity,
  confidence, explanation and a rule-based recommended action
- forecast families: point estimates passed through unchanged

Score mapping: decision scores follow the isolation-forest convention
(negative = outlier) and are mapped with a logistic curve

    anomaly_score = 1 / (1 + exp(SCORE_SCALE * decision))

so a decision of 0 (the model's boundary) maps to 0.5. Bare integers -1
(outlier) and 1 (inlier) are labels mapping to 1.0 and 0.0; any other
integer is a decision score. Non-finite scores are rejected.
"""

import math
from typing import Any

import structlog

from src.core.errors import PipelineError, ServingError
from src.features.catalogue import OutputKind
from src.serving.models import InferenceResult

from .models import (
    AnomalyResult,
    ComponentOutcome,
    EnsembleAnomalyResult,
    ForecastResult,
    RecommendedAction,
    ResultContext,
    Severity,
)

logger = structlog.get_logger(__name__)

SCORE_SCALE = 10.0

# Outlier / inlier labels
LABEL_SCORES = {-1: 1.0, 1: 0.0}

# Severity thresholds on the 0..1 anomaly score
SEVERITY_THRESHOLDS = (
    (0.8, Severity.CRITICAL),
    (0.6, Severity.HIGH),
    (0.4, Severity.MEDIUM),
)

# |z-score| of the latest value at which a metric counts as breached
BREACH_ZSCORE = 2.0
# Restarts within the lookback window that indicate a crash loop
CRASHLOOP_RESTARTS = 3
# Metrics named in the explanation
TOP_CONTRIBUTORS = 2

CPU_METRICS = ("cpu_usage",)
MEMORY_METRICS = ("memory_usage",)
NETWORK_METRICS = ("network_receive", "network_transmit")
RESTART_METRICS = ("container_restarts",)


def calculate_severity(score: float) -> Severity:
    """Calculate severity level from anomaly score"""
    for threshold, severity in SEVERITY_THRESHOLDS:
        if score >= threshold:
            return severity
    return Severity.LOW


def normalize_score(decision: float) -> float:
    """Map a raw decision score to 0..1, higher = more anomalous"""
    exponent = max(-50.0, min(50.0, SCORE_SCALE * decision))
    return 1.0 / (1.0 + math.exp(exponent))


def confidence_of(score: float) -> float:
    """Distance from the decision boundary, 0..1"""
    return min(1.0, abs(score - 0.5) * 2.0)


def _finite(score: float) -> float:
    if not math.isfinite(score):
        raise ValueError(f"Score {score!r} is not finite")
    return score


def _raw_anomaly_score(prediction: Any) -> tuple[float, float | None]:
    """(normalized score, raw decision score) from one prediction entry

    Raises:
        ValueError: The entry is not a usable score
    """
    if isinstance(prediction, bool):
        raise ValueError(f"Boolean prediction {prediction!r} is not a score")
    if isinstance(prediction, int):
        if prediction in LABEL_SCORES:
            return LABEL_SCORES[prediction], float(prediction)
        return normalize_score(float(prediction)), float(prediction)
    if isinstance(prediction, float):
        _finite(prediction)
        return normalize_score(prediction), prediction
    if isinstance(prediction, list):
        if len(prediction) != 1:
            raise ValueError(f"Expected a single score, got {len(prediction)} values")
        return _raw_anomaly_score(prediction[0])
    if isinstance(prediction, dict):
        if prediction.get("error"):
            raise ValueError(f"Prediction carries an error: {prediction['error']}")
        if "anomaly_score" in prediction:
            score = _finite(float(prediction["anomaly_score"]))
            return max(0.0, min(1.0, score)), None
        for key in ("decision_score", "score"):
            if key in prediction:
                return _raw_anomaly_score(float(prediction[key]))
        if "label" in prediction:
            label = int(prediction["label"])
            if label not in LABEL_SCORES:
                raise ValueError(f"Unknown label {label!r}")
            return LABEL_SCORES[label], float(label)
        raise ValueError(f"No score field in prediction {sorted(prediction)}")
    raise ValueError(f"Unsupported prediction type {type(prediction).__name__}")


class ResultPostProcessor:
    """Builds AnomalyResult / ForecastResult from raw model output"""

    def __init__(self, breach_zscore: float = BREACH_ZSCORE):
        self.breach_zscore = breach_zscore

    def process(
        self, result: InferenceResult, output_kind: OutputKind, context: ResultContext
    ) -> AnomalyResult | ForecastResult:
        """Interpret a raw inference result

        Raises:
            ServingError: The raw output is itself an error or unusable
        """
        if output_kind is OutputKind.ANOMALY:
            return self.anomaly(result, context)
        if output_kind is OutputKind.FORECAST:
            return self.forecast(result, context)
        raise ValueError(f"Unhandled output kind {output_kind}")

    def forecast(self, result: InferenceResult, context: ResultContext) -> ForecastResult:
        return ForecastResult(
            model_name=result.model_name,
            predictions=result.predictions,
            target_timestamp=context.target_timestamp,
        )

    def anomaly(self, result: InferenceResult, context: ResultContext) -> AnomalyResult:
        if len(result.predictions) != 1:
            raise ServingError(
                f"Expected one prediction, got {len(result.predictions)}",
                model=result.model_name,
            )
        try:
            score, raw = _raw_anomaly_score(result.predictions[0])
        except (TypeError, ValueError) as e:
            raise ServingError(
                f"Unusable output from model '{result.model_name}': {e}",
                model=result.model_name,
                serving_name=result.serving_name,
            ) from e
        return self.from_score(result.model_name, score, context, raw_score=raw)

    def from_score(
        self,
        model_name: str,
        score: float,
        context: ResultContext,
        raw_score: float | None = None,
    ) -> AnomalyResult:
        severity = calculate_severity(score)
        breached = self.breached_metrics(context)
        contributors = self.top_contributors(context, breached)
        action = self.recommend_action(severity, breached, context)

        anomaly = AnomalyResult(
            model_name=model_name,
            anomaly_score=score,
            severity=severity,
            confidence=confidence_of(score),
            explanation=self.explain(score, severity, contributors, context),
            recommended_action=action,
            contributing_metrics=contributors,
            raw_score=raw_score,
        )
        logger.debug(
            "Anomaly result built",
            model=model_name,
            score=round(score, 3),
            severity=severity.value,
            action=action.value,
            contributors=contributors,
        )
        return anomaly

    def breached_metrics(self, context: ResultContext) -> list[str]:
        """Metrics outside their expected range, most significant first"""
        breached = []
        for name, summary in context.summaries.items():
            if name in RESTART_METRICS:
                if summary.delta > 0:
                    breached.append(name)
            elif abs(summary.zscore) >= self.breach_zscore:
                breached.append(name)
        return sorted(breached, key=lambda n: -self._significance(context, n))

    def top_contributors(self, context: ResultContext, breached: list[str]) -> list[str]:
        candidates = breached or sorted(
            context.summaries, key=lambda n: -self._significance(context, n)
        )
        ordered = list(candidates)
        if context.metric_focus and context.metric_focus in context.summaries:
            ordered = [context.metric_focus] + [n for n in ordered if n != context.metric_focus]
        return ordered[:TOP_CONTRIBUTORS]

    def recommend_action(
        self, severity: Severity, breached: list[str], context: ResultContext
    ) -> RecommendedAction:
        """Rule-based action on which metrics breached"""
        if severity is Severity.LOW:
            return RecommendedAction.NONE

        summaries = context.summaries
        restarts = sum(summaries[n].delta for n in breached if n in RESTART_METRICS)
        if restarts >= CRASHLOOP_RESTARTS:
            return RecommendedAction.INVESTIGATE_CRASHLOOP

        memory = [n for n in breached if n in MEMORY_METRICS and summaries[n].zscore > 0]
        if memory and all(summaries[n].slope > 0 for n in memory):
            return RecommendedAction.INVESTIGATE_MEMORY_LEAK

        if any(n in CPU_METRICS and summaries[n].zscore > 0 for n in breached):
            return RecommendedAction.SCALE_UP

        if any(n in NETWORK_METRICS for n in breached):
            return RecommendedAction.INVESTIGATE_NETWORK

        if memory or (restarts > 0 and severity in (Severity.HIGH, Severity.CRITICAL)):
            return RecommendedAction.RESTART_POD

        return RecommendedAction.MONITOR

    def explain(
        self,
        score: float,
        severity: Severity,
        contributors: list[str],
        context: ResultContext,
    ) -> str:
        head = f"Anomaly score {score:.2f} ({severity.value}) for {context.scope}."
        if not contributors:
            return head
        parts = []
        for name in contributors:
            summary = context.summaries[name]
            if name in RESTART_METRICS:
                parts.append(f"{name} increased by {summary.delta:g} in the window")
            else:
                direction = "above" if summary.zscore >= 0 else "below"
                unit = f" {summary.unit}" if summary.unit else ""
                parts.append(
                    f"{name} at {summary.latest:.4g}{unit} "
                    f"({abs(summary.zscore):.1f} std {direction} its mean of {summary.mean:.4g})"
                )
        return f"{head} Most significant: {'; '.join(parts)}."

    def combine(
        self,
        outcomes: list[ComponentOutcome],
        context: ResultContext,
        min_successful: int = 1,
    ) -> EnsembleAnomalyResult:
        """Combine sub-model outcomes; failed components are reported, never averaged"""
        successes = [o.result for o in outcomes if o.ok]
        combined = None
        if successes and len(successes) >= min_successful:
            score = sum(r.anomaly_score for r in successes) / len(successes)
            combined = self.from_score("ensemble", score, context)

        ensemble = EnsembleAnomalyResult(
            components=outcomes, min_successful=min_successful, combined=combined
        )
        if ensemble.is_partial:
            logger.warning(
                "Ensemble has failed components",
                failed=[o.model_name for o in outcomes if not o.ok],
                successful=ensemble.successful,
                combined=combined is not None,
            )
        return ensemble

    @staticmethod
    def outcome(model_name: str, result: AnomalyResult | PipelineError) -> ComponentOutcome:
        if isinstance(result, PipelineError):
            return ComponentOutcome(model_name=model_name, error=result)
        return ComponentOutcome(model_name=model_name, result=result)

    @staticmethod
    def _significance(context: ResultContext, name: str) -> float:
        summary = context.summaries[name]
        if name in RESTART_METRICS:
            # any restart outranks a 2-sigma deviation
            return BREACH_ZSCORE + summary.delta if summary.delta > 0 else 0.0
        return abs(summary.zscore)
