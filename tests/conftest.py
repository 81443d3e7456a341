"""
Pytest configuration and shared fixtures.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from src.core.settings import Settings
from src.features.builder import FeatureBuilder
from src.features.catalogues import ANOMALY_DETECTOR_V1, PREDICTIVE_ANALYTICS_V1
from src.metrics.models import MetricSeries
from src.metrics.scope import Scope, ScopeLevel
from src.serving.registry import ModelRegistry

PROMETHEUS_URL = "http://prometheus.test"
SERVING_URL = "http://models.test"

# Wednesday, inside business hours
TARGET = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

# Raw metric name in each base metric expression
METRIC_SOURCES = {
    "container_cpu_usage_seconds_total": "cpu_usage",
    "container_memory_working_set_bytes": "memory_usage",
    "container_network_receive_bytes_total": "network_receive",
    "container_network_transmit_bytes_total": "network_transmit",
    "kube_pod_container_status_restarts_total": "container_restarts",
}


def metric_value(metric: str, epoch: float) -> float:
    """Deterministic synthetic sample for a metric at a timestamp"""
    hour = int(epoch // 3600)
    if metric == "cpu_usage":
        return 0.5 + 0.01 * (hour % 24)
    if metric == "memory_usage":
        return 2.0e8 + 1.0e6 * (hour % 12)
    if metric == "network_receive":
        return 1000.0 + 5.0 * (hour % 7)
    if metric == "network_transmit":
        return 800.0 + 3.0 * (hour % 5)
    return 0.0


def metric_for(expression: str) -> str:
    for source, metric in METRIC_SOURCES.items():
        if source in expression:
            return metric
    raise AssertionError(f"Unknown expression {expression}")


# Time fixtures
@pytest.fixture
def target_timestamp():
    """Target timestamp of the newest timestep."""
    return TARGET


# Scope fixtures
@pytest.fixture
def pod_scope():
    """Pod scope used across tests."""
    return Scope(level=ScopeLevel.POD, namespace="shop", pod="checkout-7d9f8b6c4d-x2k9p")


# Feature fixtures
@pytest.fixture
def anomaly_builder():
    """Feature builder for the anomaly detector family."""
    return FeatureBuilder(ANOMALY_DETECTOR_V1, expected_feature_count=864)


@pytest.fixture
def forecast_builder():
    """Feature builder for the predictive analytics family."""
    return FeatureBuilder(PREDICTIVE_ANALYTICS_V1, expected_feature_count=336)


@pytest.fixture
def make_series():
    """Factory for a complete hourly series ending at a timestamp."""

    def _make(metric, steps, end=TARGET, step_seconds=3600, value=None):
        pairs = []
        for i in range(steps):
            ts = end - timedelta(seconds=step_seconds * (steps - 1 - i))
            v = value(i) if value is not None else metric_value(metric, ts.timestamp())
            pairs.append((ts.timestamp(), v))
        return MetricSeries.from_pairs(metric, pairs)

    return _make


@pytest.fixture
def anomaly_series(anomaly_builder, make_series):
    """Complete history for every base metric of the anomaly detector."""
    steps = anomaly_builder.required_history_steps
    return {
        metric: make_series(metric, steps)
        for metric in ANOMALY_DETECTOR_V1.metric_names
    }


# Monitoring backend fixtures
@pytest.fixture
def prometheus_handler():
    """Factory for a fake Prometheus query API.

    Metrics listed in `empty` return an empty matrix.
    """

    def _make(empty=(), calls=None):
        def handler(request: httpx.Request) -> httpx.Response:
            params = request.url.params
            metric = metric_for(params["query"])
            if calls is not None:
                calls.append(metric)

            if request.url.path == "/api/v1/query":
                ts = float(params.get("time", TARGET.timestamp()))
                result = [{"metric": {}, "value": [ts, str(metric_value(metric, ts))]}]
                body = {"status": "success", "data": {"resultType": "vector", "result": result}}
                return httpx.Response(200, json=body)

            result = []
            if metric not in empty:
                start, end, step = float(params["start"]), float(params["end"]), float(params["step"])
                values = []
                ts = start
                while ts <= end:
                    values.append([ts, str(metric_value(metric, ts))])
                    ts += step
                result = [{"metric": {"namespace": "shop"}, "values": values}]
            body = {"status": "success", "data": {"resultType": "matrix", "result": result}}
            return httpx.Response(200, json=body)

        return handler

    return _make


# Serving backend fixtures
@pytest.fixture
def model_settings():
    """Registry settings for both model families."""
    return {
        "MODELS": "anomaly-detector,predictive-analytics",
        "MODEL_ANOMALY_DETECTOR_ENDPOINT": SERVING_URL,
        "MODEL_ANOMALY_DETECTOR_SERVING_NAME": "anomaly-detector-iforest",
        "MODEL_PREDICTIVE_ANALYTICS_ENDPOINT": SERVING_URL,
    }


@pytest.fixture
def registry(model_settings):
    """Model registry built from the model settings."""
    return ModelRegistry.from_settings(model_settings)


@pytest.fixture
def settings(model_settings):
    """Settings pointing at the fake backends."""
    return Settings(
        prometheus_url=PROMETHEUS_URL,
        request_timeout_seconds=5.0,
        model_settings=dict(model_settings),
    )


@pytest.fixture
def serving_handler():
    """Factory for a fake v1 serving backend.

    Rejects rows whose width differs from `expected_features` the way a
    scikit-learn model server does.
    """

    def _make(score=0.1, expected_features=None, ready=True, calls=None):
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if calls is not None:
                calls.append((request.method, path))

            if request.method == "GET":
                name = path.rsplit("/", 1)[-1]
                return httpx.Response(200, json={"name": name, "ready": ready})

            body = json.loads(request.content)
            rows = body["instances"]
            width = len(rows[0])
            if expected_features is not None and width != expected_features:
                return httpx.Response(
                    400,
                    json={
                        "error": f"X has {width} features, but IsolationForest is "
                        f"expecting {expected_features} features as input."
                    },
                )
            return httpx.Response(200, json={"predictions": [score for _ in rows]})

        return handler

    return _make
