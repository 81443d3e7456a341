"""
Model registry: logical model name -> ModelInfo.

Built once at process start from a mapping of named settings:

    MODELS=anomaly-detector,predictive-analytics
    MODEL_ANOMALY_DETECTOR_ENDPOINT=http://anomaly-detector-predictor.ml.svc
    MODEL_PREDICTIVE_ANALYTICS_ENDPOINT=http://predictive-predictor.ml.svc
    MODEL_PREDICTIVE_ANALYTICS_SERVING_NAME=v2-prod

Optional per model: _SERVING_NAME, _NAMESPACE, _FAMILY, _PROTOCOL (v1|v2),
_PAYLOAD (array|named).
"""

from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType

import structlog

from src.core.errors import ModelNotRegistered
from src.core.settings import family_key

from .models import ModelInfo, PayloadFormat, ServingProtocol

logger = structlog.get_logger(__name__)


def _model_setting(settings: Mapping[str, str], name: str, suffix: str) -> str | None:
    value = settings.get(f"MODEL_{family_key(name)}_{suffix}")
    if value is None:
        return None
    value = value.strip()
    return value or None


class ModelRegistry:
    """Immutable table of registered models"""

    def __init__(self, models: Iterable[ModelInfo]):
        table = {}
        for info in models:
            if info.logical_name in table:
                raise ValueError(f"Model '{info.logical_name}' registered twice")
            table[info.logical_name] = info
        self._models = MappingProxyType(table)

    @classmethod
    def from_settings(cls, settings: Mapping[str, str]) -> "ModelRegistry":
        """Build the registry from named settings

        Raises:
            ValueError: If a model has no endpoint or an unknown protocol/payload
        """
        names = [n.strip() for n in settings.get("MODELS", "").split(",") if n.strip()]

        models = []
        for name in names:
            endpoint = _model_setting(settings, name, "ENDPOINT")
            if endpoint is None:
                raise ValueError(
                    f"Model '{name}' has no endpoint (MODEL_{family_key(name)}_ENDPOINT)"
                )
            try:
                protocol = ServingProtocol(_model_setting(settings, name, "PROTOCOL") or "v1")
                payload = PayloadFormat(_model_setting(settings, name, "PAYLOAD") or "array")
            except ValueError as e:
                raise ValueError(f"Model '{name}': {e}") from e

            models.append(
                ModelInfo.resolve(
                    logical_name=name,
                    endpoint=endpoint,
                    serving_name=_model_setting(settings, name, "SERVING_NAME"),
                    namespace=_model_setting(settings, name, "NAMESPACE") or "",
                    family=_model_setting(settings, name, "FAMILY"),
                    protocol=protocol,
                    payload=payload,
                )
            )

        registry = cls(models)
        logger.info(
            "Model registry built",
            models={m.logical_name: m.serving_name for m in models},
        )
        return registry

    def get(self, name: str) -> ModelInfo:
        """Look up a model by logical name

        Raises:
            ModelNotRegistered: If no model has that name
        """
        try:
            return self._models[name]
        except KeyError:
            raise ModelNotRegistered(
                f"Model '{name}' is not registered",
                model=name,
                registered=sorted(self._models),
            ) from None

    def names(self) -> list[str]:
        return sorted(self._models)

    def models(self) -> list[ModelInfo]:
        return [self._models[n] for n in self.names()]

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def __len__(self) -> int:
        return len(self._models)

    def __iter__(self) -> Iterator[ModelInfo]:
        return iter(self.models())


class RegistryHandle:
    """Process-wide holder of the current registry snapshot

    `reload` swaps the whole table; callers that already took a snapshot
    keep using it.
    """

    def __init__(self, registry: ModelRegistry):
        self._registry = registry

    @classmethod
    def from_settings(cls, settings: Mapping[str, str]) -> "RegistryHandle":
        return cls(ModelRegistry.from_settings(settings))

    def snapshot(self) -> ModelRegistry:
        return self._registry

    def get(self, name: str) -> ModelInfo:
        return self._registry.get(name)

    def reload(self, settings: Mapping[str, str]) -> ModelRegistry:
        """Build a new registry and swap it in; on error the old one stays"""
        registry = ModelRegistry.from_settings(settings)
        previous = self._registry
        self._registry = registry
        logger.info(
            "Model registry reloaded",
            previous=previous.names(),
            current=registry.names(),
        )
        return registry
