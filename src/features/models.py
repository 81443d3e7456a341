"""
Data models produced by the feature builder.
"""

from dataclasses import asdict, dataclass
from datetime import datetime

import numpy as np

from src.core.errors import FeatureConstructionError


@dataclass(frozen=True)
class FeatureVector:
    """Fixed-length, ordered model input

    The length must equal `expected_count`; a vector of any other length
    cannot be constructed.
    """

    values: tuple[float, ...]
    expected_count: int
    names: tuple[str, ...] = ()
    family: str = ""
    version: str = ""
    target_timestamp: datetime | None = None

    def __post_init__(self):
        if len(self.values) != self.expected_count:
            raise FeatureConstructionError(
                f"Feature vector has {len(self.values)} values, expected {self.expected_count}",
                family=self.family,
                version=self.version,
                actual=len(self.values),
                expected=self.expected_count,
            )
        if self.names and len(self.names) != len(self.values):
            raise FeatureConstructionError(
                f"Feature vector has {len(self.values)} values but {len(self.names)} names",
                family=self.family,
                version=self.version,
            )

    def __len__(self) -> int:
        return len(self.values)

    def as_row(self) -> list[float]:
        return list(self.values)

    def as_named(self) -> dict[str, float]:
        if not self.names:
            raise FeatureConstructionError(
                "Feature vector has no names for a named payload", family=self.family
            )
        return dict(zip(self.names, self.values))

    def to_bytes(self) -> bytes:
        """Canonical float64 encoding of the values"""
        return np.asarray(self.values, dtype=np.float64).tobytes()


@dataclass(frozen=True)
class MetricSummary:
    """Per-metric statistics over the lookback window, used to explain results"""

    name: str
    unit: str
    latest: float
    mean: float
    std: float
    zscore: float
    slope: float
    delta: float

    def to_dict(self) -> dict:
        return asdict(self)
