"""
Analysis pipeline.

Runs one analysis request end to end:

    scope -> metric fetch (concurrent) -> feature vector -> health check
          -> inference -> post-processing

Each request works on one registry snapshot and resolves every model once,
so the health check and the prediction always target the same serving-side
model. The whole request is bounded by the request timeout; when it fires
every in-flight call is cancelled.
"""

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime, timezone

import httpx
import structlog

from src.core.errors import (
    FeatureConstructionError,
    InvalidRequest,
    NoData,
    PipelineError,
    Timeout,
)
from src.core.settings import Settings
from src.features.builder import FeatureBuilder
from src.features.catalogue import FeatureCatalogue, OutputKind
from src.features.catalogues import CATALOGUES
from src.features.models import FeatureVector
from src.metrics.adapter import PrometheusAdapter
from src.metrics.models import MetricSeries
from src.metrics.scope import Scope
from src.postprocess.models import ComponentOutcome, ResultContext
from src.postprocess.processor import ResultPostProcessor
from src.serving.models import ModelInfo
from src.serving.proxy import InferenceProxy
from src.serving.registry import RegistryHandle

from .models import AnalysisRequest, AnalysisResponse

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisPipeline:
    """Feature-parity inference pipeline for scoped analysis requests"""

    def __init__(
        self,
        settings: Settings,
        registry: RegistryHandle,
        adapter: PrometheusAdapter,
        proxy: InferenceProxy,
        postprocessor: ResultPostProcessor | None = None,
        catalogues: Mapping[str, FeatureCatalogue] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.registry = registry
        self.adapter = adapter
        self.proxy = proxy
        self.postprocessor = postprocessor or ResultPostProcessor()
        self.catalogues = dict(CATALOGUES if catalogues is None else catalogues)
        self.clock = clock
        self._builders: dict[str, FeatureBuilder] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        metrics_client: httpx.AsyncClient | None = None,
        serving_client: httpx.AsyncClient | None = None,
    ) -> "AnalysisPipeline":
        """Wire adapter, registry and proxy from settings

        Builders for every known family are created eagerly so that a
        catalogue/configuration disagreement fails at startup.
        """
        registry = RegistryHandle.from_settings(settings.model_settings)
        pipeline = cls(
            settings=settings,
            registry=registry,
            adapter=PrometheusAdapter.from_settings(settings, client=metrics_client),
            proxy=InferenceProxy.from_settings(settings, registry, client=serving_client),
        )
        for family in pipeline.catalogues:
            pipeline.builder_for(family)
        return pipeline

    def builder_for(self, family: str) -> FeatureBuilder:
        """Feature builder for a model family

        Raises:
            FeatureConstructionError: No catalogue for the family, or the
                catalogue disagrees with the configured feature count
        """
        builder = self._builders.get(family)
        if builder is None:
            catalogue = self.catalogues.get(family)
            if catalogue is None:
                raise FeatureConstructionError(
                    f"No feature catalogue for model family '{family}'",
                    remediation="Set MODEL_<NAME>_FAMILY to one of the known families",
                    family=family,
                    known=sorted(self.catalogues),
                )
            builder = FeatureBuilder(
                catalogue,
                expected_feature_count=self.settings.expected_feature_count(family),
                lookback_steps=self.settings.lookback_steps,
                step_seconds=self.settings.step_seconds,
            )
            self._builders[family] = builder
        return builder

    async def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        """Run one analysis request under the request timeout

        Raises:
            PipelineError: Any typed failure, Timeout when the request
                timeout fires
        """
        timeout = self.settings.request_timeout_seconds
        scope = request.scope.describe()
        with structlog.contextvars.bound_contextvars(request_id=request.request_id):
            logger.info("Analysis started", scope=scope, models=request.model_names())
            try:
                response = await asyncio.wait_for(self._analyze(request), timeout=timeout)
            except asyncio.TimeoutError as e:
                logger.warning("Analysis timed out", scope=scope, timeout=timeout)
                raise Timeout(
                    f"Analysis of {scope} did not complete within {timeout}s",
                    scope=scope,
                    timeout=timeout,
                ) from e
            except PipelineError as e:
                logger.warning(
                    "Analysis failed", scope=scope, error=e.category, message=e.message
                )
                raise
            logger.info("Analysis finished", scope=scope, family=response.family)
            return response

    async def _analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        request.scope.validate()
        names = request.model_names()

        registry = self.registry.snapshot()
        infos = [registry.get(name) for name in names]

        families = sorted({info.family for info in infos})
        if len(families) != 1:
            raise InvalidRequest(
                f"Ensemble members belong to different families: {families}",
                models=names,
            )
        builder = self.builder_for(families[0])
        catalogue = builder.catalogue

        if request.metric_focus and request.metric_focus not in catalogue.metric_names:
            raise InvalidRequest(
                f"Unknown metric focus '{request.metric_focus}'",
                metric_focus=request.metric_focus,
                known=catalogue.metric_names,
            )
        if len(infos) > 1 and catalogue.output_kind is not OutputKind.ANOMALY:
            raise InvalidRequest(
                f"Ensembles are only supported for anomaly families, not {catalogue.family}",
                models=names,
            )

        step = self.settings.step_seconds
        anchor = request.anchor(step, self.clock())

        series = await self.fetch_series(builder, request.scope, anchor)
        vector = builder.build(series, anchor)
        summaries = builder.summarize(series, anchor)

        context = ResultContext(
            scope=request.scope.describe(),
            summaries=summaries,
            metric_focus=request.metric_focus,
            target_timestamp=(
                request.forecast_target(anchor, step)
                if catalogue.output_kind is OutputKind.FORECAST
                else anchor
            ),
        )
        response = AnalysisResponse(
            request_id=request.request_id,
            scope=context.scope,
            models=names,
            family=catalogue.family,
            catalogue_version=catalogue.version,
            feature_count=len(vector),
            window_end=anchor,
            summaries=summaries,
        )

        if len(infos) > 1:
            outcomes = await asyncio.gather(
                *(self._component(info, vector, context) for info in infos)
            )
            ensemble = self.postprocessor.combine(
                list(outcomes), context, self.settings.ensemble_min_successful
            )
            if ensemble.successful == 0:
                raise outcomes[0].error
            response.ensemble = ensemble
            response.anomaly = ensemble.combined
            return response

        info = infos[0]
        await self.proxy.ensure_ready(info)
        raw = await self.proxy.predict_with(info, vector)
        result = self.postprocessor.process(raw, catalogue.output_kind, context)
        if catalogue.output_kind is OutputKind.FORECAST:
            response.forecast = result
        else:
            response.anomaly = result
        return response

    async def _component(
        self, info: ModelInfo, vector: FeatureVector, context: ResultContext
    ) -> ComponentOutcome:
        try:
            await self.proxy.ensure_ready(info)
            raw = await self.proxy.predict_with(info, vector)
            result = self.postprocessor.anomaly(raw, context)
        except PipelineError as e:
            logger.warning(
                "Ensemble component failed",
                model=info.logical_name,
                error=e.category,
                message=e.message,
            )
            return self.postprocessor.outcome(info.logical_name, e)
        return self.postprocessor.outcome(info.logical_name, result)

    async def fetch_series(
        self, builder: FeatureBuilder, scope: Scope, anchor: datetime
    ) -> dict[str, list[MetricSeries]]:
        """Fetch every base metric concurrently

        The first failure cancels the outstanding fetches. NoData for any
        metric fails the request.

        Raises:
            FeatureConstructionError: A base metric has no data
            MetricsError: Backend failure
            Timeout: A metrics call exceeded the adapter timeout
        """
        queries = builder.queries(scope, anchor)
        tasks = {
            query.metric_name: asyncio.ensure_future(self.adapter.query(query))
            for query in queries
        }
        try:
            await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [task for task in tasks.values() if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # first failure in catalogue order
        for metric, task in tasks.items():
            if task.cancelled():
                continue
            error = task.exception()
            if error is None:
                continue
            if isinstance(error, NoData):
                raise FeatureConstructionError(
                    f"Base metric {metric} has no data for {scope.describe()}",
                    remediation=error.remediation,
                    family=builder.catalogue.family,
                    metric=metric,
                    query=error.context.get("query"),
                    suspect_encoding=error.context.get("suspect_encoding"),
                ) from error
            raise error

        return {metric: task.result() for metric, task in tasks.items()}

    def reload_models(self, settings: Mapping[str, str]) -> list[str]:
        """Swap in a registry built from new model settings"""
        registry = self.registry.reload(settings)
        return registry.names()

    async def aclose(self):
        await self.adapter.aclose()
        await self.proxy.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
