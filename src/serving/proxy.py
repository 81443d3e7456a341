"""
Inference proxy.

Resolves a logical model through the registry and talks to its serving
backend, translating every transport and protocol failure into the typed
pipeline errors. No retries on predict; one bounded retry on health checks.
"""

import asyncio
from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from src.core.errors import (
    DimensionalityMismatch,
    FeatureConstructionError,
    ModelUnhealthy,
    ServingError,
    Timeout,
)
from src.core.settings import Settings
from src.features.models import FeatureVector

from . import protocol
from .models import InferenceResult, ModelHealth, ModelInfo, PayloadFormat
from .registry import ModelRegistry, RegistryHandle

logger = structlog.get_logger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:1000]
    if isinstance(body, dict):
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
    return str(body)[:1000]


class InferenceProxy:
    """Protocol-normalizing client for model-serving endpoints"""

    def __init__(
        self,
        registry: ModelRegistry | RegistryHandle,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
        health_retries: int = 1,
    ):
        self.registry = registry
        self.timeout = timeout
        self.health_retries = max(0, min(health_retries, 1))
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

        logger.info("Inference proxy initialized", timeout=timeout)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: ModelRegistry | RegistryHandle,
        client: httpx.AsyncClient | None = None,
    ) -> "InferenceProxy":
        return cls(registry, timeout=settings.inference_timeout_seconds, client=client)

    def resolve(self, model_name: str) -> ModelInfo:
        """Resolve a logical name against the current registry snapshot

        Raises:
            ModelNotRegistered: If the name is unknown
        """
        return self.registry.get(model_name)

    async def predict(self, model_name: str, vector: FeatureVector) -> InferenceResult:
        return await self.predict_with(self.resolve(model_name), vector)

    async def predict_with(self, info: ModelInfo, vector: FeatureVector) -> InferenceResult:
        """Send one feature vector to an already-resolved model"""
        if vector.family and info.family and vector.family != info.family:
            raise FeatureConstructionError(
                f"Vector built for family '{vector.family}' sent to model "
                f"'{info.logical_name}' of family '{info.family}'",
                model=info.logical_name,
                family=vector.family,
            )
        if info.payload is PayloadFormat.NAMED:
            instances = [vector.as_named()]
        else:
            instances = [vector.as_row()]
        return await self._predict(info, instances, feature_count=len(vector))

    async def predict_instances(
        self, model_name: str, instances: Sequence[Sequence[float] | dict[str, float]]
    ) -> InferenceResult:
        """Send raw rows or named instances without feature engineering"""
        info = self.resolve(model_name)
        rows = list(instances)
        width = len(rows[0]) if rows else None
        return await self._predict(info, rows, feature_count=width)

    async def health(self, model_name: str) -> ModelHealth:
        return await self.health_of(self.resolve(model_name))

    async def health_of(self, info: ModelInfo) -> ModelHealth:
        """Query serving-side readiness without running inference

        Raises:
            ModelUnhealthy: The endpoint is unreachable
            Timeout: The health call exceeded the proxy timeout
        """
        url = protocol.health_url(info)

        attempt = 0
        while True:
            try:
                response = await self._send(info, "GET", url)
                break
            except (ModelUnhealthy, Timeout) as e:
                if attempt >= self.health_retries:
                    raise
                attempt += 1
                logger.debug(
                    "Retrying health check",
                    model=info.logical_name,
                    serving_name=info.serving_name,
                    error=e.message,
                )

        if response.status_code == 200:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            ready, metadata = protocol.parse_health_response(info, payload)
            reason = "" if ready else "not_ready"
        elif response.status_code == 404:
            ready, metadata, reason = False, {}, "not_found"
        else:
            ready, metadata, reason = False, {}, _error_message(response) or "unavailable"

        health = ModelHealth(
            model_name=info.logical_name,
            serving_name=info.serving_name,
            endpoint=info.endpoint,
            ready=ready,
            status_code=response.status_code,
            reason=reason,
            metadata=metadata,
        )
        logger.debug(
            "Health checked",
            model=info.logical_name,
            serving_name=info.serving_name,
            ready=ready,
            status=response.status_code,
        )
        return health

    async def ensure_ready(self, info: ModelInfo) -> ModelHealth:
        """Health check that raises ModelUnhealthy unless the model is ready"""
        health = await self.health_of(info)
        if not health.ready:
            raise ModelUnhealthy(
                f"Model '{info.logical_name}' is not ready on its serving backend "
                f"({health.reason})",
                model=info.logical_name,
                serving_name=info.serving_name,
                endpoint=info.endpoint,
                status=health.status_code,
            )
        return health

    async def _predict(
        self, info: ModelInfo, instances: list, feature_count: int | None
    ) -> InferenceResult:
        url = protocol.predict_url(info)
        payload = protocol.build_predict_payload(info, instances)

        logger.debug(
            "Sending prediction",
            model=info.logical_name,
            serving_name=info.serving_name,
            url=url,
            instances=len(instances),
            features=feature_count,
        )
        response = await self._send(info, "POST", url, json=payload)

        if not response.is_success:
            self._raise_for_predict(info, response, feature_count)

        try:
            body = response.json()
        except ValueError as e:
            raise ServingError(
                "Prediction response is not JSON",
                model=info.logical_name,
                serving_name=info.serving_name,
                endpoint=info.endpoint,
            ) from e

        predictions, breakdown = protocol.parse_predict_response(info, body)
        return InferenceResult(
            model_name=info.logical_name,
            serving_name=info.serving_name,
            family=info.family,
            predictions=predictions,
            breakdown=breakdown,
            raw=body,
        )

    async def _send(self, info: ModelInfo, method: str, url: str, **kwargs: Any) -> httpx.Response:
        # wait_for bounds the whole round trip, connection setup included
        try:
            return await asyncio.wait_for(
                self.client.request(method, url, **kwargs), timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning(
                "Serving call timed out",
                model=info.logical_name,
                serving_name=info.serving_name,
                timeout=self.timeout,
            )
            raise Timeout(
                f"Call to model '{info.logical_name}' timed out after {self.timeout}s",
                model=info.logical_name,
                serving_name=info.serving_name,
                endpoint=info.endpoint,
            ) from e
        except httpx.TransportError as e:
            logger.warning(
                "Serving endpoint unreachable",
                model=info.logical_name,
                endpoint=info.endpoint,
                error=str(e),
            )
            raise ModelUnhealthy(
                f"Endpoint of model '{info.logical_name}' is unreachable: {e}",
                model=info.logical_name,
                serving_name=info.serving_name,
                endpoint=info.endpoint,
            ) from e

    def _raise_for_predict(
        self, info: ModelInfo, response: httpx.Response, feature_count: int | None
    ) -> None:
        status = response.status_code
        message = _error_message(response)
        context = {
            "model": info.logical_name,
            "serving_name": info.serving_name,
            "endpoint": info.endpoint,
            "status": status,
        }

        is_mismatch, expected = protocol.dimensionality_error(message)
        if is_mismatch:
            logger.critical(
                "Feature dimensionality mismatch",
                defect="feature_catalogue_drift",
                sent=feature_count,
                model_expects=expected,
                error=message,
                **context,
            )
            raise DimensionalityMismatch(
                f"Model '{info.logical_name}' rejected {feature_count} features"
                + (f", it expects {expected}" if expected is not None else ""),
                sent=feature_count,
                expected=expected,
                **context,
            )

        if status == 404:
            raise ModelUnhealthy(
                f"Serving backend has no model named '{info.serving_name}'",
                remediation="Check MODEL_<NAME>_SERVING_NAME against the deployed model name",
                **context,
            )
        if status == 503:
            raise ModelUnhealthy(f"Model '{info.logical_name}' is not ready", **context)

        logger.warning("Serving backend error", error=message, **context)
        raise ServingError(f"Serving backend returned {status}: {message}", **context)

    async def aclose(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
