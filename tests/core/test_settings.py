"""
Tests for global settings.
"""

import pytest

from src.core.settings import Settings, family_key


class TestFamilyKey:
    """Tests for settings key fragments."""

    def test_upper_cases_and_replaces_dashes(self):
        assert family_key("anomaly-detector") == "ANOMALY_DETECTOR"

    def test_strips_whitespace(self):
        assert family_key(" predictive-analytics ") == "PREDICTIVE_ANALYTICS"


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        settings = Settings()

        assert settings.prometheus_url == "http://localhost:9090"
        assert settings.lookback_steps == 24
        assert settings.step_seconds == 3600
        assert settings.expected_feature_count("anomaly-detector") == 864
        assert settings.expected_feature_count("predictive-analytics") == 336
        assert settings.expected_feature_count("unknown") is None

    def test_from_env(self):
        env = {
            "PROMETHEUS_URL": "https://prom.example:9090",
            "PROMETHEUS_TOKEN": "secret",
            "PROMETHEUS_VERIFY_SSL": "false",
            "METRICS_TIMEOUT_SECONDS": "3.5",
            "INFERENCE_TIMEOUT_SECONDS": "2",
            "REQUEST_TIMEOUT_SECONDS": "12",
            "LOOKBACK_STEPS": "12",
            "STEP_SECONDS": "300",
            "EXPECTED_FEATURES_ANOMALY_DETECTOR": "432",
            "ENSEMBLE_MIN_SUCCESSFUL": "2",
            "MODELS": "anomaly-detector",
            "MODEL_ANOMALY_DETECTOR_ENDPOINT": "http://kserve:8080",
            "UNRELATED": "ignored",
        }

        settings = Settings.from_env(env)

        assert settings.prometheus_url == "https://prom.example:9090"
        assert settings.prometheus_token == "secret"
        assert settings.prometheus_verify_ssl is False
        assert settings.metrics_timeout_seconds == 3.5
        assert settings.inference_timeout_seconds == 2.0
        assert settings.request_timeout_seconds == 12.0
        assert settings.lookback_steps == 12
        assert settings.step_seconds == 300
        assert settings.expected_feature_count("anomaly-detector") == 432
        assert settings.expected_feature_count("predictive-analytics") == 336
        assert settings.ensemble_min_successful == 2
        assert settings.model_settings == {
            "MODELS": "anomaly-detector",
            "MODEL_ANOMALY_DETECTOR_ENDPOINT": "http://kserve:8080",
        }

    def test_from_env_empty_token_is_none(self):
        settings = Settings.from_env({"PROMETHEUS_TOKEN": ""})

        assert settings.prometheus_token is None
        assert settings.prometheus_verify_ssl is True

    def test_new_family_from_env(self):
        settings = Settings.from_env({"EXPECTED_FEATURES_CAPACITY_PLANNER": "100"})

        assert settings.expected_feature_count("capacity-planner") == 100

    @pytest.mark.parametrize(
        "field,value",
        [("lookback_steps", 0), ("step_seconds", 0), ("ensemble_min_successful", 0)],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValueError):
            Settings(**{field: value})
