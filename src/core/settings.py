"""
Global settings for the inference pipeline.

Settings are read from a mapping of named values (the process environment by
default, with `.env` support through python-dotenv).
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def family_key(name: str) -> str:
    """Turn a logical/family name into its settings key fragment"""
    return name.strip().upper().replace("-", "_")


@dataclass
class Settings:
    """Global settings shared by every request"""

    # Monitoring backend
    prometheus_url: str = "http://localhost:9090"
    prometheus_token: str | None = None
    prometheus_verify_ssl: bool = True
    metrics_timeout_seconds: float = 10.0

    # Serving backend
    inference_timeout_seconds: float = 5.0

    # Whole request
    request_timeout_seconds: float = 30.0

    # Feature layout
    lookback_steps: int = 24
    step_seconds: int = 3600

    expected_feature_counts: dict[str, int] = field(
        default_factory=lambda: {
            "anomaly-detector": 864,
            "predictive-analytics": 336,
        }
    )

    # Minimum number of sub-models that must succeed for an ensemble score
    ensemble_min_successful: int = 1

    # Raw MODELS / MODEL_<NAME>_* entries, consumed by the model registry
    model_settings: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.lookback_steps < 1:
            raise ValueError(f"lookback_steps must be >= 1, got {self.lookback_steps}")
        if self.step_seconds < 1:
            raise ValueError(f"step_seconds must be >= 1, got {self.step_seconds}")
        if self.ensemble_min_successful < 1:
            raise ValueError("ensemble_min_successful must be >= 1")

    def expected_feature_count(self, family: str) -> int | None:
        """Configured feature count for a model family, if any"""
        return self.expected_feature_counts.get(family)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from a mapping of named values

        Args:
            env: Mapping to read from. Defaults to os.environ.

        Returns:
            Settings instance
        """
        env = os.environ if env is None else env
        defaults = cls()

        expected = dict(defaults.expected_feature_counts)
        for key, value in env.items():
            if key.startswith("EXPECTED_FEATURES_"):
                family = key[len("EXPECTED_FEATURES_") :].lower().replace("_", "-")
                expected[family] = int(value)

        model_settings = {
            key: value
            for key, value in env.items()
            if key == "MODELS" or key.startswith("MODEL_")
        }

        return cls(
            prometheus_url=env.get("PROMETHEUS_URL", defaults.prometheus_url),
            prometheus_token=env.get("PROMETHEUS_TOKEN") or None,
            prometheus_verify_ssl=_as_bool(env.get("PROMETHEUS_VERIFY_SSL", "true")),
            metrics_timeout_seconds=float(
                env.get("METRICS_TIMEOUT_SECONDS", defaults.metrics_timeout_seconds)
            ),
            inference_timeout_seconds=float(
                env.get("INFERENCE_TIMEOUT_SECONDS", defaults.inference_timeout_seconds)
            ),
            request_timeout_seconds=float(
                env.get("REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds)
            ),
            lookback_steps=int(env.get("LOOKBACK_STEPS", defaults.lookback_steps)),
            step_seconds=int(env.get("STEP_SECONDS", defaults.step_seconds)),
            expected_feature_counts=expected,
            ensemble_min_successful=int(
                env.get("ENSEMBLE_MIN_SUCCESSFUL", defaults.ensemble_min_successful)
            ),
            model_settings=model_settings,
        )
