"""
Versioned feature catalogue.

A catalogue is the single source of truth for a model family's feature
layout: which base metrics are read, which derived features are computed for
each of them, which calendar features are added, and how many timesteps are
folded into one vector. The training pipeline consumes the exported
catalogue (see `to_dict`) so both sides pin the same ordered feature names.

Layout (time-major): timesteps oldest -> newest, and inside one timestep

    [base metric values...] + [calendar features...] + [derived features, grouped by metric]

so that

    columns_per_timestep = base_metric_count
                         + calendar_feature_count
                         + derived_features_per_metric * base_metric_count
    feature_count        = lookback_steps * columns_per_timestep
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.metrics.scope import Scope

# Pinned calendar features, in vector order. Adding or removing one shifts
# every later position in the vector.
CALENDAR_FEATURES: tuple[str, ...] = (
    "hour_of_day",
    "day_of_week",
    "day_of_month",
    "month",
    "is_weekend",
    "is_business_hours",
)
CALENDAR_FEATURE_COUNT = len(CALENDAR_FEATURES)

# [start, end) hours, UTC, Monday to Friday
BUSINESS_HOURS = (9, 18)


class DerivedKind(Enum):
    """Derived feature generators"""

    ROLLING_MEAN = "rolling_mean"
    ROLLING_STD = "rolling_std"
    ROLLING_MIN = "rolling_min"
    ROLLING_MAX = "rolling_max"
    LAG = "lag"
    DIFF = "diff"
    PCT_CHANGE = "pct_change"

    @property
    def is_rolling(self) -> bool:
        return self.value.startswith("rolling_")


class OutputKind(Enum):
    """What the model family's raw output means"""

    ANOMALY = "anomaly"
    FORECAST = "forecast"


@dataclass(frozen=True)
class DerivedFeature:
    """One derived feature generator

    `param` is the window size for rolling statistics and the offset in
    timesteps for lag, diff and pct_change.
    """

    kind: DerivedKind
    param: int

    def __post_init__(self):
        if self.param < 1:
            raise ValueError(f"{self.kind.value} needs a parameter >= 1, got {self.param}")

    @property
    def name(self) -> str:
        return f"{self.kind.value}_{self.param}"

    @property
    def history(self) -> int:
        """Timesteps needed before the current one"""
        if self.kind.is_rolling:
            return self.param - 1
        return self.param


@dataclass(frozen=True)
class BaseMetric:
    """A base metric and the PromQL template that reads it

    `$selector` in the template is replaced with the scope's label matchers
    plus `matchers`.
    """

    name: str
    template: str
    unit: str = ""
    matchers: tuple[str, ...] = ()

    def expression(self, scope: Scope) -> str:
        return self.template.replace("$selector", scope.selector(*self.matchers))


@dataclass(frozen=True)
class FeatureCatalogue:
    """Versioned feature layout for one model family"""

    family: str
    version: str
    base_metrics: tuple[BaseMetric, ...]
    derived_features: tuple[DerivedFeature, ...]
    calendar_features: tuple[str, ...] = CALENDAR_FEATURES
    lookback_steps: int = 24
    step_seconds: int = 3600
    output_kind: OutputKind = OutputKind.ANOMALY

    # pct_change where the previous value is 0, same convention as training
    pct_change_zero_division: float = 0.0
    rolling_std_ddof: int = 1

    description: str = field(default="", compare=False)

    def __post_init__(self):
        if not self.base_metrics:
            raise ValueError(f"Catalogue {self.identity} has no base metrics")
        if self.lookback_steps < 1:
            raise ValueError(f"Catalogue {self.identity} needs lookback_steps >= 1")

        names = [m.name for m in self.base_metrics]
        if len(set(names)) != len(names):
            raise ValueError(f"Catalogue {self.identity} has duplicate base metrics: {names}")

        derived = [d.name for d in self.derived_features]
        if len(set(derived)) != len(derived):
            raise ValueError(f"Catalogue {self.identity} has duplicate derived features")
        for d in self.derived_features:
            if d.kind is DerivedKind.ROLLING_STD and d.param <= self.rolling_std_ddof:
                raise ValueError(
                    f"Catalogue {self.identity}: {d.name} window must exceed ddof "
                    f"{self.rolling_std_ddof}"
                )

        if tuple(self.calendar_features) != CALENDAR_FEATURES:
            raise ValueError(
                f"Catalogue {self.identity} calendar features {self.calendar_features} "
                f"differ from the pinned set {CALENDAR_FEATURES}"
            )

    @property
    def identity(self) -> str:
        return f"{self.family}/{self.version}"

    @property
    def metric_names(self) -> list[str]:
        return [m.name for m in self.base_metrics]

    @property
    def base_metric_count(self) -> int:
        return len(self.base_metrics)

    @property
    def calendar_feature_count(self) -> int:
        return len(self.calendar_features)

    @property
    def derived_features_per_metric(self) -> int:
        return len(self.derived_features)

    @property
    def columns_per_timestep(self) -> int:
        return (
            self.base_metric_count
            + self.calendar_feature_count
            + self.derived_features_per_metric * self.base_metric_count
        )

    @property
    def max_history(self) -> int:
        """Extra timesteps before the lookback window that derived features need"""
        return max((d.history for d in self.derived_features), default=0)

    def feature_count(self, lookback_steps: int | None = None) -> int:
        return (lookback_steps or self.lookback_steps) * self.columns_per_timestep

    def required_history_steps(self, lookback_steps: int | None = None) -> int:
        return (lookback_steps or self.lookback_steps) + self.max_history

    def column_names(self) -> list[str]:
        """Names of the columns of one timestep, in vector order"""
        columns = list(self.metric_names)
        columns.extend(self.calendar_features)
        for metric in self.metric_names:
            columns.extend(f"{metric}.{d.name}" for d in self.derived_features)
        return columns

    def feature_names(self, lookback_steps: int | None = None) -> list[str]:
        """Ordered names of every position in the feature vector

        Timestep t00 is the oldest; the last timestep is the target timestamp.
        """
        lookback = lookback_steps or self.lookback_steps
        columns = self.column_names()
        return [f"t{step:02d}.{column}" for step in range(lookback) for column in columns]

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON artifact shared with the training pipeline"""
        return {
            "family": self.family,
            "version": self.version,
            "output_kind": self.output_kind.value,
            "lookback_steps": self.lookback_steps,
            "step_seconds": self.step_seconds,
            "base_metrics": [
                {
                    "name": m.name,
                    "template": m.template,
                    "unit": m.unit,
                    "matchers": list(m.matchers),
                }
                for m in self.base_metrics
            ],
            "calendar_features": list(self.calendar_features),
            "derived_features": [
                {"kind": d.kind.value, "param": d.param} for d in self.derived_features
            ],
            "pct_change_zero_division": self.pct_change_zero_division,
            "rolling_std_ddof": self.rolling_std_ddof,
            "columns_per_timestep": self.columns_per_timestep,
            "feature_count": self.feature_count(),
            "feature_names": self.feature_names(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeatureCatalogue":
        """Create from an exported artifact

        Raises:
            ValueError: If the artifact's declared count or names disagree
                with the layout it describes
        """
        catalogue = cls(
            family=data["family"],
            version=data["version"],
            output_kind=OutputKind(data.get("output_kind", "anomaly")),
            lookback_steps=int(data["lookback_steps"]),
            step_seconds=int(data.get("step_seconds", 3600)),
            base_metrics=tuple(
                BaseMetric(
                    name=m["name"],
                    template=m["template"],
                    unit=m.get("unit", ""),
                    matchers=tuple(m.get("matchers", ())),
                )
                for m in data["base_metrics"]
            ),
            calendar_features=tuple(data.get("calendar_features", CALENDAR_FEATURES)),
            derived_features=tuple(
                DerivedFeature(DerivedKind(d["kind"]), int(d["param"]))
                for d in data["derived_features"]
            ),
            pct_change_zero_division=float(data.get("pct_change_zero_division", 0.0)),
            rolling_std_ddof=int(data.get("rolling_std_ddof", 1)),
        )

        declared = data.get("feature_count")
        if declared is not None and int(declared) != catalogue.feature_count():
            raise ValueError(
                f"Catalogue {catalogue.identity} declares {declared} features "
                f"but its layout gives {catalogue.feature_count()}"
            )
        names = data.get("feature_names")
        if names is not None and list(names) != catalogue.feature_names():
            raise ValueError(f"Catalogue {catalogue.identity} feature names do not match layout")

        return catalogue
