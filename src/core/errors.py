"""
Typed failures raised by the inference pipeline.

Every failure carries a category, an HTTP-style status code, a remediation
hint for the caller and a structured context (metric, model, endpoint...)
so that a configuration problem can be told apart from a transient one.
"""

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline failures"""

    category = "pipeline_error"
    status_code = 500
    remediation = "Check the inference pipeline logs for details"
    transient = False

    def __init__(self, message: str, remediation: str | None = None, **context: Any):
        super().__init__(message)
        self.message = message
        if remediation is not None:
            self.remediation = remediation
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Convert to a caller-facing error payload"""
        return {
            "error": self.category,
            "message": self.message,
            "remediation": self.remediation,
            "context": {k: v for k, v in self.context.items() if v is not None},
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


# Metrics backend


class MetricsError(PipelineError):
    """Failure while reading from the monitoring backend"""

    category = "metrics_error"
    status_code = 502


class NoData(MetricsError):
    """The query succeeded but returned no samples in range.

    This is a valid signal, never a transport failure. Callers that need
    every series (feature building) turn it into a hard failure themselves.
    """

    category = "no_data"
    status_code = 422
    remediation = "No samples in range for this scope; check the scope and the time range"


class BackendUnreachable(MetricsError):
    category = "backend_unreachable"
    status_code = 503
    remediation = "Monitoring backend is unreachable; check PROMETHEUS_URL and network access"
    transient = True


class MalformedResponse(MetricsError):
    category = "malformed_response"
    remediation = "Monitoring backend returned an unexpected payload; check the backend version"


class QueryRejected(MetricsError):
    category = "query_rejected"
    remediation = "Monitoring backend rejected the query expression; check the metric catalogue"


# Model registry / serving


class ModelNotRegistered(PipelineError):
    category = "model_not_registered"
    status_code = 404
    remediation = "Model not registered; check the MODELS and MODEL_<NAME>_* configuration"


class ModelUnhealthy(PipelineError):
    category = "model_unhealthy"
    status_code = 503
    remediation = "Model endpoint is not ready; check the serving runtime and the serving-side model name"
    transient = True


class DimensionalityMismatch(PipelineError):
    """Serving backend rejected the feature count.

    Always a configuration/code defect: the inference feature catalogue has
    drifted from the one the model was trained with.
    """

    category = "dimensionality_mismatch"
    status_code = 500
    remediation = (
        "Feature count does not match the trained model; compare the feature catalogue "
        "version with the one published by the training pipeline"
    )


class ServingError(PipelineError):
    category = "serving_error"
    status_code = 502
    remediation = "Serving backend failed to produce a prediction; retry or check the serving logs"
    transient = True


class Timeout(PipelineError):
    category = "timeout"
    status_code = 504
    remediation = "The call did not complete in time; retry or raise the configured timeout"
    transient = True


# Feature building / request validation


class FeatureConstructionError(PipelineError):
    """Insufficient history or catalogue/version mismatch"""

    category = "feature_construction_error"
    status_code = 422
    remediation = "Feature vector could not be built; check metric history for the requested scope"


class InvalidRequest(PipelineError):
    category = "invalid_request"
    status_code = 400
    remediation = "Analysis request is malformed; check the request fields"


class InvalidScope(InvalidRequest):
    category = "invalid_scope"
    remediation = "Scope is malformed; provide valid Kubernetes names for namespace/deployment/pod"
