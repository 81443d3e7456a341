"""
Feature engineering: versioned catalogues and the vector builder.
"""

from .builder import FeatureBuilder
from .catalogue import (
    CALENDAR_FEATURE_COUNT,
    CALENDAR_FEATURES,
    BaseMetric,
    DerivedFeature,
    DerivedKind,
    FeatureCatalogue,
    OutputKind,
)
from .catalogues import CATALOGUES, get_catalogue, list_families
from .models import FeatureVector, MetricSummary

__all__ = [
    "BaseMetric",
    "CALENDAR_FEATURES",
    "CALENDAR_FEATURE_COUNT",
    "CATALOGUES",
    "DerivedFeature",
    "DerivedKind",
    "FeatureBuilder",
    "FeatureCatalogue",
    "FeatureVector",
    "MetricSummary",
    "OutputKind",
    "get_catalogue",
    "list_families",
]
