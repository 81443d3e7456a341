"""
Data models for the model registry and the inference proxy.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ServingProtocol(Enum):
    """Serving backend request/response protocol"""

    V1 = "v1"  # {"instances": [...]} -> {"predictions": [...]}
    V2 = "v2"  # Open Inference Protocol tensors


class PayloadFormat(Enum):
    """How one instance is encoded"""

    ARRAY = "array"  # list of floats, positions follow the feature catalogue
    NAMED = "named"  # mapping of feature name to value


@dataclass(frozen=True)
class ModelInfo:
    """A registered model and how to reach it

    `serving_name` is the identifier the serving backend expects in its URL
    path. It is resolved once, when the registry is built.
    """

    logical_name: str
    endpoint: str
    serving_name: str
    namespace: str = ""
    family: str = ""
    protocol: ServingProtocol = ServingProtocol.V1
    payload: PayloadFormat = PayloadFormat.ARRAY

    @classmethod
    def resolve(
        cls,
        logical_name: str,
        endpoint: str,
        serving_name: str | None = None,
        namespace: str = "",
        family: str | None = None,
        protocol: ServingProtocol = ServingProtocol.V1,
        payload: PayloadFormat = PayloadFormat.ARRAY,
    ) -> "ModelInfo":
        """Apply the resolution rule: explicit override, else the logical name"""
        override = (serving_name or "").strip()
        return cls(
            logical_name=logical_name,
            endpoint=endpoint.rstrip("/"),
            serving_name=override or logical_name,
            namespace=namespace,
            family=family or logical_name,
            protocol=protocol,
            payload=payload,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["protocol"] = self.protocol.value
        data["payload"] = self.payload.value
        return data


@dataclass
class InferenceResult:
    """Raw output of one prediction call"""

    model_name: str
    serving_name: str
    family: str
    predictions: list[Any]
    breakdown: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class ModelHealth:
    """Readiness of one model on its serving backend"""

    model_name: str
    serving_name: str
    endpoint: str
    ready: bool
    status_code: int | None = None
    reason: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
