"""
Tests for the analysis pipeline.
"""

import asyncio
from dataclasses import replace

import httpx
import pytest

from src.core.errors import (
    BackendUnreachable,
    DimensionalityMismatch,
    FeatureConstructionError,
    InvalidRequest,
    ModelNotRegistered,
    ModelUnhealthy,
    ServingError,
    Timeout,
)
from src.pipeline.models import AnalysisRequest
from src.pipeline.service import AnalysisPipeline
from src.postprocess.models import Severity

PROMETHEUS_URL = "http://prometheus.test"

ENSEMBLE_SETTINGS = {
    "MODELS": "anomaly-detector,anomaly-detector-canary,predictive-analytics",
    "MODEL_ANOMALY_DETECTOR_CANARY_ENDPOINT": "http://canary.test",
    "MODEL_ANOMALY_DETECTOR_CANARY_FAMILY": "anomaly-detector",
}


def make_pipeline(settings, metrics_handler, serving_handler):
    metrics_client = httpx.AsyncClient(
        base_url=PROMETHEUS_URL, transport=httpx.MockTransport(metrics_handler)
    )
    serving_client = httpx.AsyncClient(transport=httpx.MockTransport(serving_handler))
    return AnalysisPipeline.from_settings(
        settings, metrics_client=metrics_client, serving_client=serving_client
    )


def make_request(pod_scope, target_timestamp, **kwargs):
    return AnalysisRequest(scope=pod_scope, target_timestamp=target_timestamp, **kwargs)


class TestAnalysisPipeline:
    """Tests for AnalysisPipeline."""

    @pytest.mark.asyncio
    async def test_anomaly_analysis(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        metric_calls, serving_calls = [], []
        pipeline = make_pipeline(
            settings,
            prometheus_handler(calls=metric_calls),
            serving_handler(score=-0.3, expected_features=864, calls=serving_calls),
        )

        async with pipeline:
            response = await pipeline.analyze(make_request(pod_scope, target_timestamp))

        assert sorted(metric_calls) == sorted(
            ["cpu_usage", "memory_usage", "network_receive", "network_transmit", "container_restarts"]
        )
        assert serving_calls == [
            ("GET", "/v1/models/anomaly-detector-iforest"),
            ("POST", "/v1/models/anomaly-detector-iforest:predict"),
        ]
        assert response.family == "anomaly-detector"
        assert response.catalogue_version == "v1"
        assert response.feature_count == 864
        assert response.window_end == target_timestamp
        assert response.forecast is None
        assert response.anomaly.severity is Severity.CRITICAL
        assert response.anomaly.raw_score == -0.3
        assert set(response.summaries) == set(metric_calls)

        payload = response.to_dict()
        assert payload["anomaly"]["severity"] == "critical"
        assert payload["metrics"]["cpu_usage"]["latest"] == pytest.approx(0.62)

    @pytest.mark.asyncio
    async def test_forecast_analysis(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        serving_calls = []
        pipeline = make_pipeline(
            settings,
            prometheus_handler(),
            serving_handler(score=0.75, expected_features=336, calls=serving_calls),
        )

        async with pipeline:
            response = await pipeline.analyze(
                make_request(pod_scope, target_timestamp, model="predictive-analytics")
            )

        assert serving_calls[-1] == ("POST", "/v1/models/predictive-analytics:predict")
        assert response.feature_count == 336
        assert response.anomaly is None
        assert response.forecast.predictions == [0.75]
        assert response.forecast.target_timestamp == target_timestamp

    @pytest.mark.asyncio
    async def test_no_data_fails_request(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        serving_calls = []
        pipeline = make_pipeline(
            settings,
            prometheus_handler(empty=("network_transmit",)),
            serving_handler(calls=serving_calls),
        )

        async with pipeline:
            with pytest.raises(FeatureConstructionError) as exc_info:
                await pipeline.analyze(make_request(pod_scope, target_timestamp))

        assert exc_info.value.context["metric"] == "network_transmit"
        assert "container_network_transmit_bytes_total" in exc_info.value.context["query"]
        assert serving_calls == []

    @pytest.mark.asyncio
    async def test_request_timeout_cancels_fetches(
        self, settings, serving_handler, pod_scope, target_timestamp
    ):
        started, cancelled = [], []

        async def hanging(request):
            started.append(request.url.params["query"])
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(request.url.params["query"])
                raise
            return httpx.Response(500)

        serving_calls = []
        pipeline = make_pipeline(
            replace(settings, request_timeout_seconds=0.2),
            hanging,
            serving_handler(calls=serving_calls),
        )

        async with pipeline:
            with pytest.raises(Timeout) as exc_info:
                await pipeline.analyze(make_request(pod_scope, target_timestamp))

        assert len(started) == 5
        assert sorted(cancelled) == sorted(started)
        assert exc_info.value.status_code == 504
        assert serving_calls == []

    @pytest.mark.asyncio
    async def test_first_failure_cancels_other_fetches(
        self, settings, serving_handler, pod_scope, target_timestamp
    ):
        started, cancelled = [], []

        async def handler(request):
            if "container_cpu_usage_seconds_total" in request.url.params["query"]:
                return httpx.Response(503, text="unavailable")
            started.append(request.url.params["query"])
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(request.url.params["query"])
                raise
            return httpx.Response(500)

        pipeline = make_pipeline(settings, handler, serving_handler())

        async with pipeline:
            with pytest.raises(BackendUnreachable):
                await pipeline.analyze(make_request(pod_scope, target_timestamp))

        assert sorted(cancelled) == sorted(started)

    @pytest.mark.asyncio
    async def test_unregistered_model(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        metric_calls = []
        pipeline = make_pipeline(settings, prometheus_handler(calls=metric_calls), serving_handler())

        async with pipeline:
            with pytest.raises(ModelNotRegistered):
                await pipeline.analyze(
                    make_request(pod_scope, target_timestamp, model="capacity-planner")
                )

        assert metric_calls == []

    @pytest.mark.asyncio
    async def test_unhealthy_model_is_not_called(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        serving_calls = []
        pipeline = make_pipeline(
            settings, prometheus_handler(), serving_handler(ready=False, calls=serving_calls)
        )

        async with pipeline:
            with pytest.raises(ModelUnhealthy):
                await pipeline.analyze(make_request(pod_scope, target_timestamp))

        assert [method for method, _ in serving_calls] == ["GET"]

    @pytest.mark.asyncio
    async def test_dimensionality_mismatch(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        pipeline = make_pipeline(
            settings, prometheus_handler(), serving_handler(expected_features=860)
        )

        async with pipeline:
            with pytest.raises(DimensionalityMismatch) as exc_info:
                await pipeline.analyze(make_request(pod_scope, target_timestamp))

        assert exc_info.value.context["sent"] == 864
        assert exc_info.value.context["expected"] == 860

    @pytest.mark.asyncio
    async def test_ensemble_with_failed_component(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        healthy = serving_handler(score=-1)

        def handler(request):
            if request.url.host == "canary.test" and request.method == "POST":
                return httpx.Response(500, json={"error": "model crashed"})
            return healthy(request)

        pipeline = make_pipeline(
            replace(settings, model_settings={**settings.model_settings, **ENSEMBLE_SETTINGS}),
            prometheus_handler(),
            handler,
        )

        async with pipeline:
            response = await pipeline.analyze(
                make_request(
                    pod_scope,
                    target_timestamp,
                    models=["anomaly-detector", "anomaly-detector-canary"],
                )
            )

        ensemble = response.ensemble
        assert ensemble.is_partial
        assert ensemble.successful == 1
        assert isinstance(ensemble.components[1].error, ServingError)
        assert response.anomaly is ensemble.combined
        assert response.anomaly.anomaly_score == 1.0

    @pytest.mark.asyncio
    async def test_ensemble_component_with_nan_score_is_failed(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        healthy = serving_handler(score=-1)

        def handler(request):
            if request.url.host == "canary.test" and request.method == "POST":
                return httpx.Response(200, content=b'{"predictions": [NaN]}')
            return healthy(request)

        pipeline = make_pipeline(
            replace(settings, model_settings={**settings.model_settings, **ENSEMBLE_SETTINGS}),
            prometheus_handler(),
            handler,
        )

        async with pipeline:
            response = await pipeline.analyze(
                make_request(
                    pod_scope,
                    target_timestamp,
                    models=["anomaly-detector", "anomaly-detector-canary"],
                )
            )

        ensemble = response.ensemble
        assert ensemble.successful == 1
        assert ensemble.failed == 1
        assert isinstance(ensemble.components[1].error, ServingError)
        assert response.anomaly.anomaly_score == 1.0

    @pytest.mark.asyncio
    async def test_ensemble_all_failed(
        self, settings, prometheus_handler, pod_scope, target_timestamp
    ):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"ready": True})
            return httpx.Response(500, json={"error": "model crashed"})

        pipeline = make_pipeline(
            replace(settings, model_settings={**settings.model_settings, **ENSEMBLE_SETTINGS}),
            prometheus_handler(),
            handler,
        )

        async with pipeline:
            with pytest.raises(ServingError):
                await pipeline.analyze(
                    make_request(
                        pod_scope,
                        target_timestamp,
                        models=["anomaly-detector", "anomaly-detector-canary"],
                    )
                )

    @pytest.mark.asyncio
    async def test_ensemble_across_families_rejected(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        pipeline = make_pipeline(settings, prometheus_handler(), serving_handler())

        async with pipeline:
            with pytest.raises(InvalidRequest, match="different families"):
                await pipeline.analyze(
                    make_request(
                        pod_scope,
                        target_timestamp,
                        models=["anomaly-detector", "predictive-analytics"],
                    )
                )

    @pytest.mark.asyncio
    async def test_unknown_metric_focus(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        pipeline = make_pipeline(settings, prometheus_handler(), serving_handler())

        async with pipeline:
            with pytest.raises(InvalidRequest, match="metric focus"):
                await pipeline.analyze(
                    make_request(pod_scope, target_timestamp, metric_focus="disk_io")
                )

    @pytest.mark.asyncio
    async def test_request_uses_one_registry_snapshot(
        self, settings, prometheus_handler, serving_handler, pod_scope, target_timestamp
    ):
        serving_calls = []
        metrics = prometheus_handler()
        pipeline = make_pipeline(settings, metrics, serving_handler(calls=serving_calls))

        def reloading(request):
            # swap the registry while the request is in flight
            pipeline.reload_models(
                {
                    "MODELS": "anomaly-detector",
                    "MODEL_ANOMALY_DETECTOR_ENDPOINT": "http://other.test",
                    "MODEL_ANOMALY_DETECTOR_SERVING_NAME": "renamed",
                }
            )
            return metrics(request)

        pipeline.adapter.client = httpx.AsyncClient(
            base_url=PROMETHEUS_URL, transport=httpx.MockTransport(reloading)
        )

        async with pipeline:
            await pipeline.analyze(make_request(pod_scope, target_timestamp))

        assert serving_calls == [
            ("GET", "/v1/models/anomaly-detector-iforest"),
            ("POST", "/v1/models/anomaly-detector-iforest:predict"),
        ]
        assert pipeline.registry.get("anomaly-detector").serving_name == "renamed"

    def test_catalogue_configuration_drift_fails_at_startup(self, settings):
        drifted = replace(
            settings,
            expected_feature_counts={"anomaly-detector": 860, "predictive-analytics": 336},
        )

        with pytest.raises(FeatureConstructionError, match="configuration expects 860"):
            AnalysisPipeline.from_settings(drifted)
