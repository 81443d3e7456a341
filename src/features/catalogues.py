"""
Published feature catalogues, one per model family.

Bump the version whenever the layout changes and publish the new export to
the training pipeline before serving a model trained on it.
"""

from .catalogue import (
    BaseMetric,
    DerivedFeature,
    DerivedKind,
    FeatureCatalogue,
    OutputKind,
)

CPU_USAGE = BaseMetric(
    name="cpu_usage",
    template="sum(rate(container_cpu_usage_seconds_total{$selector}[5m]))",
    unit="cores",
    matchers=('container!=""',),
)

MEMORY_USAGE = BaseMetric(
    name="memory_usage",
    template="sum(container_memory_working_set_bytes{$selector})",
    unit="bytes",
    matchers=('container!=""',),
)

NETWORK_RECEIVE = BaseMetric(
    name="network_receive",
    template="sum(rate(container_network_receive_bytes_total{$selector}[5m]))",
    unit="bytes_per_second",
)

NETWORK_TRANSMIT = BaseMetric(
    name="network_transmit",
    template="sum(rate(container_network_transmit_bytes_total{$selector}[5m]))",
    unit="bytes_per_second",
)

CONTAINER_RESTARTS = BaseMetric(
    name="container_restarts",
    template="sum(kube_pod_container_status_restarts_total{$selector})",
    unit="count",
)


# 24 x (5 + 6 + 5 x 5) = 864 features
ANOMALY_DETECTOR_V1 = FeatureCatalogue(
    family="anomaly-detector",
    version="v1",
    base_metrics=(CPU_USAGE, MEMORY_USAGE, NETWORK_RECEIVE, NETWORK_TRANSMIT, CONTAINER_RESTARTS),
    derived_features=(
        DerivedFeature(DerivedKind.ROLLING_MEAN, 3),
        DerivedFeature(DerivedKind.ROLLING_STD, 3),
        DerivedFeature(DerivedKind.LAG, 1),
        DerivedFeature(DerivedKind.DIFF, 1),
        DerivedFeature(DerivedKind.PCT_CHANGE, 1),
    ),
    lookback_steps=24,
    step_seconds=3600,
    output_kind=OutputKind.ANOMALY,
    description="Isolation-forest style outlier model over pod resource usage",
)

# 24 x (2 + 6 + 3 x 2) = 336 features
PREDICTIVE_ANALYTICS_V1 = FeatureCatalogue(
    family="predictive-analytics",
    version="v1",
    base_metrics=(CPU_USAGE, MEMORY_USAGE),
    derived_features=(
        DerivedFeature(DerivedKind.ROLLING_MEAN, 6),
        DerivedFeature(DerivedKind.ROLLING_MAX, 6),
        DerivedFeature(DerivedKind.DIFF, 1),
    ),
    lookback_steps=24,
    step_seconds=3600,
    output_kind=OutputKind.FORECAST,
    description="Regression model forecasting cpu and memory usage",
)

# Active catalogue per model family
CATALOGUES: dict[str, FeatureCatalogue] = {
    ANOMALY_DETECTOR_V1.family: ANOMALY_DETECTOR_V1,
    PREDICTIVE_ANALYTICS_V1.family: PREDICTIVE_ANALYTICS_V1,
}


def get_catalogue(family: str) -> FeatureCatalogue:
    """Return the active catalogue for a model family

    Raises:
        ValueError: If no catalogue is published for the family
    """
    if family not in CATALOGUES:
        available = ", ".join(CATALOGUES.keys())
        raise ValueError(f"No feature catalogue for family '{family}'. Available: {available}")
    return CATALOGUES[family]


def list_families() -> list[str]:
    return list(CATALOGUES.keys())
