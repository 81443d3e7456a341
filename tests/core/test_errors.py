"""
Tests for typed pipeline errors.
"""

from src.core.errors import (
    BackendUnreachable,
    DimensionalityMismatch,
    FeatureConstructionError,
    InvalidRequest,
    InvalidScope,
    MetricsError,
    ModelNotRegistered,
    ModelUnhealthy,
    NoData,
    PipelineError,
    ServingError,
    Timeout,
)


class TestPipelineError:
    """Tests for the error hierarchy."""

    def test_to_dict_drops_empty_context(self):
        error = ModelNotRegistered("Model 'x' is not registered", model="x", endpoint=None)

        payload = error.to_dict()

        assert payload["error"] == "model_not_registered"
        assert payload["message"] == "Model 'x' is not registered"
        assert "MODELS" in payload["remediation"]
        assert payload["context"] == {"model": "x"}

    def test_remediation_override(self):
        error = ModelUnhealthy("not ready", remediation="Check the serving name")

        assert error.remediation == "Check the serving name"
        assert ModelUnhealthy("other").remediation != "Check the serving name"

    def test_status_codes(self):
        assert ModelNotRegistered("x").status_code == 404
        assert ModelUnhealthy("x").status_code == 503
        assert DimensionalityMismatch("x").status_code == 500
        assert ServingError("x").status_code == 502
        assert Timeout("x").status_code == 504
        assert FeatureConstructionError("x").status_code == 422
        assert InvalidScope("x").status_code == 400

    def test_hierarchy(self):
        assert issubclass(NoData, MetricsError)
        assert issubclass(BackendUnreachable, MetricsError)
        assert issubclass(InvalidScope, InvalidRequest)
        assert issubclass(MetricsError, PipelineError)

    def test_transient_flags(self):
        assert BackendUnreachable("x").transient
        assert Timeout("x").transient
        assert not DimensionalityMismatch("x").transient
        assert not NoData("x").transient
