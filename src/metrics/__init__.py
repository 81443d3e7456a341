"""
Metrics adapter: reads raw time series from the monitoring backend.
"""

from .adapter import PrometheusAdapter, parse_response
from .models import MetricQuery, MetricSeries, QueryMode
from .scope import Scope, ScopeLevel

__all__ = [
    "MetricQuery",
    "MetricSeries",
    "PrometheusAdapter",
    "QueryMode",
    "Scope",
    "ScopeLevel",
    "parse_response",
]
