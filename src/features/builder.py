"""
Feature engineering builder.

Turns the base metric series of one request scope into the fixed-length
vector described by a FeatureCatalogue. Degraded input is never repaired:
a missing sample anywhere in the required history fails the whole build.
"""

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import structlog

from src.core.errors import FeatureConstructionError
from src.metrics.models import MetricQuery, MetricSeries
from src.metrics.scope import Scope

from .catalogue import BUSINESS_HOURS, DerivedFeature, DerivedKind, FeatureCatalogue
from .models import FeatureVector, MetricSummary

logger = structlog.get_logger(__name__)

# Bound for z-scores of flat series, keeps summaries JSON-serializable
Z_CAP = 10.0

# Sample-to-grid alignment tolerance, as a fraction of the step
ALIGNMENT_TOLERANCE = 0.49


def _is_weekday(ts: pd.Timestamp) -> bool:
    return ts.weekday() < 5


CALENDAR_GENERATORS = {
    "hour_of_day": lambda ts: float(ts.hour),
    "day_of_week": lambda ts: float(ts.weekday()),
    "day_of_month": lambda ts: float(ts.day),
    "month": lambda ts: float(ts.month),
    "is_weekend": lambda ts: float(not _is_weekday(ts)),
    "is_business_hours": lambda ts: float(
        _is_weekday(ts) and BUSINESS_HOURS[0] <= ts.hour < BUSINESS_HOURS[1]
    ),
}


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FeatureBuilder:
    """Builds feature vectors for one model family"""

    def __init__(
        self,
        catalogue: FeatureCatalogue,
        expected_feature_count: int | None = None,
        lookback_steps: int | None = None,
        step_seconds: int | None = None,
    ):
        self.catalogue = catalogue
        self.lookback_steps = lookback_steps or catalogue.lookback_steps
        self.step_seconds = step_seconds or catalogue.step_seconds

        missing = set(catalogue.calendar_features) - set(CALENDAR_GENERATORS)
        if missing:
            raise FeatureConstructionError(
                f"No generator for calendar features {sorted(missing)}",
                family=catalogue.family,
                version=catalogue.version,
            )

        computed = catalogue.feature_count(self.lookback_steps)
        if expected_feature_count is not None and expected_feature_count != computed:
            raise FeatureConstructionError(
                f"Catalogue {catalogue.identity} with lookback {self.lookback_steps} gives "
                f"{computed} features, configuration expects {expected_feature_count}",
                remediation="Catalogue version and EXPECTED_FEATURES_* disagree; "
                "align them with the training pipeline",
                family=catalogue.family,
                version=catalogue.version,
                expected=expected_feature_count,
                actual=computed,
            )
        self.expected_feature_count = computed
        self.feature_names = tuple(catalogue.feature_names(self.lookback_steps))

        logger.debug(
            "Feature builder initialized",
            catalogue=catalogue.identity,
            lookback_steps=self.lookback_steps,
            columns_per_timestep=catalogue.columns_per_timestep,
            feature_count=self.expected_feature_count,
        )

    @property
    def required_history_steps(self) -> int:
        return self.catalogue.required_history_steps(self.lookback_steps)

    def time_grid(self, target_timestamp: datetime) -> list[datetime]:
        """Timestamps every base metric needs a sample at, oldest first"""
        target = as_utc(target_timestamp)
        step = timedelta(seconds=self.step_seconds)
        count = self.required_history_steps
        return [target - step * (count - 1 - i) for i in range(count)]

    def queries(self, scope: Scope, target_timestamp: datetime) -> list[MetricQuery]:
        """Range queries covering the required history of every base metric"""
        grid = self.time_grid(target_timestamp)
        return [
            MetricQuery.range(
                metric.name,
                metric.expression(scope),
                start=grid[0],
                end=grid[-1],
                step_seconds=self.step_seconds,
            )
            for metric in self.catalogue.base_metrics
        ]

    def build(
        self,
        series_by_metric: Mapping[str, MetricSeries | Sequence[MetricSeries]],
        target_timestamp: datetime,
    ) -> FeatureVector:
        """Build the feature vector for a target timestamp

        Args:
            series_by_metric: One series per base metric, keyed by metric name
            target_timestamp: Timestamp of the newest timestep

        Returns:
            FeatureVector whose layout matches the catalogue

        Raises:
            FeatureConstructionError: Missing metric, missing history or
                layout mismatch
        """
        frame = self._aligned_frame(series_by_metric, target_timestamp)
        lookback = self.lookback_steps
        metrics = self.catalogue.metric_names

        window_index = frame.index[-lookback:]
        base = frame[metrics].iloc[-lookback:].to_numpy(dtype=np.float64)

        calendar = np.array(
            [
                [CALENDAR_GENERATORS[name](ts) for name in self.catalogue.calendar_features]
                for ts in window_index
            ],
            dtype=np.float64,
        ).reshape(lookback, self.catalogue.calendar_feature_count)

        derived_columns = []
        for metric in metrics:
            for feature in self.catalogue.derived_features:
                column = self._derive(frame[metric], feature).iloc[-lookback:]
                derived_columns.append(column.to_numpy(dtype=np.float64))
        if derived_columns:
            derived = np.column_stack(derived_columns)
        else:
            derived = np.empty((lookback, 0), dtype=np.float64)

        # Time-major: row = timestep, C-order ravel keeps timesteps contiguous
        matrix = np.hstack([base, calendar, derived])
        if not np.isfinite(matrix).all():
            row, col = np.argwhere(~np.isfinite(matrix))[0]
            name = self.feature_names[row * matrix.shape[1] + col]
            raise FeatureConstructionError(
                f"Feature {name} is not finite",
                family=self.catalogue.family,
                feature=name,
            )

        vector = FeatureVector(
            values=tuple(float(v) for v in matrix.ravel(order="C")),
            expected_count=self.expected_feature_count,
            names=self.feature_names,
            family=self.catalogue.family,
            version=self.catalogue.version,
            target_timestamp=as_utc(target_timestamp),
        )

        logger.debug(
            "Feature vector built",
            catalogue=self.catalogue.identity,
            features=len(vector),
            target=vector.target_timestamp.isoformat(),
        )
        return vector

    def summarize(
        self,
        series_by_metric: Mapping[str, MetricSeries | Sequence[MetricSeries]],
        target_timestamp: datetime,
    ) -> dict[str, MetricSummary]:
        """Per-metric statistics over the lookback window"""
        frame = self._aligned_frame(series_by_metric, target_timestamp)
        summaries = {}
        for metric in self.catalogue.base_metrics:
            values = frame[metric.name].iloc[-self.lookback_steps :].to_numpy(dtype=np.float64)
            latest = float(values[-1])
            history = values[:-1] if len(values) > 1 else values
            mean = float(history.mean())
            std = float(history.std())

            if std > 0:
                zscore = (latest - mean) / std
            else:
                zscore = 0.0 if latest == mean else float(np.sign(latest - mean)) * Z_CAP
            zscore = float(np.clip(zscore, -Z_CAP, Z_CAP))

            slope = float(np.polyfit(np.arange(len(values)), values, 1)[0]) if len(values) > 1 else 0.0

            summaries[metric.name] = MetricSummary(
                name=metric.name,
                unit=metric.unit,
                latest=latest,
                mean=mean,
                std=std,
                zscore=zscore,
                slope=slope,
                delta=latest - float(values[0]),
            )
        return summaries

    def _single_series(
        self, metric: str, value: MetricSeries | Sequence[MetricSeries]
    ) -> MetricSeries:
        if isinstance(value, MetricSeries):
            return value
        items = list(value)
        if len(items) != 1:
            raise FeatureConstructionError(
                f"Expected exactly one series for metric {metric}, got {len(items)}",
                remediation="The metric query must aggregate to a single series per scope",
                family=self.catalogue.family,
                metric=metric,
                series=len(items),
            )
        return items[0]

    def _aligned_frame(
        self,
        series_by_metric: Mapping[str, MetricSeries | Sequence[MetricSeries]],
        target_timestamp: datetime,
    ) -> pd.DataFrame:
        """Base metric values on the required time grid, one column per metric"""
        expected = self.catalogue.metric_names
        provided = set(series_by_metric)

        missing = [m for m in expected if m not in provided]
        if missing:
            raise FeatureConstructionError(
                f"Missing base metrics: {missing}",
                family=self.catalogue.family,
                missing=missing,
            )
        unknown = sorted(provided - set(expected))
        if unknown:
            raise FeatureConstructionError(
                f"Unknown metrics for catalogue {self.catalogue.identity}: {unknown}",
                family=self.catalogue.family,
                unknown=unknown,
            )

        grid = pd.DatetimeIndex(self.time_grid(target_timestamp)).tz_convert("UTC")
        tolerance = pd.Timedelta(seconds=self.step_seconds * ALIGNMENT_TOLERANCE)

        columns = {}
        for metric in expected:
            series = self._single_series(metric, series_by_metric[metric])
            if series.is_empty:
                raise FeatureConstructionError(
                    f"Metric {metric} has no samples",
                    family=self.catalogue.family,
                    metric=metric,
                )
            raw = pd.Series(
                series.values,
                index=pd.DatetimeIndex(series.timestamps).tz_convert("UTC"),
                dtype="float64",
            )
            columns[metric] = raw.reindex(grid, method="nearest", tolerance=tolerance)

        frame = pd.DataFrame(columns, index=grid)

        bad = ~np.isfinite(frame.to_numpy(dtype=np.float64))
        if bad.any():
            for position, metric in enumerate(expected):
                gaps = bad[:, position]
                if gaps.any():
                    first = grid[int(np.argmax(gaps))]
                    raise FeatureConstructionError(
                        f"Insufficient history for metric {metric}: "
                        f"{int(gaps.sum())} of {len(grid)} required timesteps missing",
                        family=self.catalogue.family,
                        metric=metric,
                        missing_steps=int(gaps.sum()),
                        required_steps=len(grid),
                        first_missing=first.isoformat(),
                    )
        return frame

    def _derive(self, column: pd.Series, feature: DerivedFeature) -> pd.Series:
        k = feature.param
        kind = feature.kind
        if kind is DerivedKind.ROLLING_MEAN:
            return column.rolling(k, min_periods=k).mean()
        if kind is DerivedKind.ROLLING_STD:
            return column.rolling(k, min_periods=k).std(ddof=self.catalogue.rolling_std_ddof)
        if kind is DerivedKind.ROLLING_MIN:
            return column.rolling(k, min_periods=k).min()
        if kind is DerivedKind.ROLLING_MAX:
            return column.rolling(k, min_periods=k).max()
        if kind is DerivedKind.LAG:
            return column.shift(k)
        if kind is DerivedKind.DIFF:
            return column.diff(k)
        if kind is DerivedKind.PCT_CHANGE:
            previous = column.shift(k)
            change = (column - previous) / previous
            return change.where(previous != 0, self.catalogue.pct_change_zero_division)
        raise ValueError(f"Unhandled derived feature kind: {kind}")
