"""
Prometheus HTTP API adapter.

Fetches raw time series and normalizes both response shapes the backend
produces (single-point `vector` results and multi-point `matrix` results,
plus `scalar`) into MetricSeries.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from src.core.errors import (
    BackendUnreachable,
    MalformedResponse,
    NoData,
    QueryRejected,
    Timeout,
)
from src.core.settings import Settings

from .models import MetricQuery, MetricSeries, QueryMode

logger = structlog.get_logger(__name__)

INSTANT_PATH = "/api/v1/query"
RANGE_PATH = "/api/v1/query_range"

# Percent-escapes of characters used in selectors: { } " = ! ~ < > space
_PRE_ENCODED = re.compile(r"%(7B|7D|22|3D|21|7E|3C|3E|20)", re.IGNORECASE)


def looks_pre_encoded(expression: str) -> bool:
    """True if a PromQL expression already carries percent-escapes.

    Such an expression gets encoded a second time by the HTTP client and the
    backend then matches nothing, which looks exactly like an empty window.
    """
    return bool(_PRE_ENCODED.search(expression))


def _epoch(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return f"{value.timestamp():.3f}"


def _sample(pair: Any, query: MetricQuery) -> tuple[float, float]:
    try:
        ts, raw = pair
        return float(ts), float(raw)
    except (TypeError, ValueError) as e:
        raise MalformedResponse(
            f"Invalid sample {pair!r} for metric {query.metric_name}",
            metric=query.metric_name,
        ) from e


def _series(query: MetricQuery, labels: dict, pairs: list) -> MetricSeries:
    try:
        return MetricSeries.from_pairs(
            query.metric_name, [_sample(p, query) for p in pairs], labels=labels
        )
    except ValueError as e:
        raise MalformedResponse(str(e), metric=query.metric_name) from e


def _parse_vector(query: MetricQuery, result: Any) -> list[MetricSeries]:
    if not isinstance(result, list):
        raise MalformedResponse("Vector result is not a list", metric=query.metric_name)
    series = []
    for entry in result:
        if not isinstance(entry, dict) or "value" not in entry:
            raise MalformedResponse(
                "Vector entry without 'value'", metric=query.metric_name, entry=str(entry)[:200]
            )
        series.append(_series(query, entry.get("metric") or {}, [entry["value"]]))
    return series


def _parse_matrix(query: MetricQuery, result: Any) -> list[MetricSeries]:
    if not isinstance(result, list):
        raise MalformedResponse("Matrix result is not a list", metric=query.metric_name)
    series = []
    for entry in result:
        if not isinstance(entry, dict) or "values" not in entry:
            raise MalformedResponse(
                "Matrix entry without 'values'", metric=query.metric_name, entry=str(entry)[:200]
            )
        series.append(_series(query, entry.get("metric") or {}, entry["values"]))
    return series


def _parse_scalar(query: MetricQuery, result: Any) -> list[MetricSeries]:
    return [_series(query, {}, [result])]


def _parse_string(query: MetricQuery, result: Any) -> list[MetricSeries]:
    raise MalformedResponse(
        "String result cannot be turned into a metric series", metric=query.metric_name
    )


RESULT_PARSERS = {
    "vector": _parse_vector,
    "matrix": _parse_matrix,
    "scalar": _parse_scalar,
    "string": _parse_string,
}


def parse_response(query: MetricQuery, payload: Any) -> list[MetricSeries]:
    """Decode a Prometheus API payload into series, keyed on `resultType`

    Raises:
        QueryRejected: The backend reported an error status
        MalformedResponse: The payload shape is not understood
    """
    if not isinstance(payload, dict):
        raise MalformedResponse("Response is not a JSON object", metric=query.metric_name)

    if payload.get("status") == "error":
        raise QueryRejected(
            payload.get("error", "query failed"),
            metric=query.metric_name,
            error_type=payload.get("errorType"),
            query=query.expression,
        )
    if payload.get("status") != "success":
        raise MalformedResponse(
            f"Unexpected status {payload.get('status')!r}", metric=query.metric_name
        )

    data = payload.get("data")
    if not isinstance(data, dict):
        raise MalformedResponse("Response has no 'data' object", metric=query.metric_name)

    result_type = data.get("resultType")
    parser = RESULT_PARSERS.get(result_type)
    if parser is None:
        raise MalformedResponse(
            f"Unknown resultType {result_type!r}",
            metric=query.metric_name,
            result_type=result_type,
        )
    return parser(query, data.get("result"))


class PrometheusAdapter:
    """Async client for the Prometheus query API"""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        verify_ssl: bool = True,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            verify=verify_ssl,
            timeout=httpx.Timeout(timeout),
        )

        logger.info("Prometheus adapter initialized", base_url=self.base_url, timeout=timeout)

    @classmethod
    def from_settings(
        cls, settings: Settings, client: httpx.AsyncClient | None = None
    ) -> "PrometheusAdapter":
        return cls(
            base_url=settings.prometheus_url,
            token=settings.prometheus_token,
            verify_ssl=settings.prometheus_verify_ssl,
            timeout=settings.metrics_timeout_seconds,
            client=client,
        )

    async def query(self, query: MetricQuery) -> list[MetricSeries]:
        """Run a query and normalize the result

        Args:
            query: Query specification (expression, mode, time range)

        Returns:
            One or more MetricSeries

        Raises:
            NoData: The query matched no samples
            BackendUnreachable: Transport failure or backend unavailable
            MalformedResponse: Unexpected payload
            QueryRejected: The backend refused the expression
            Timeout: The round trip exceeded the adapter timeout
        """
        if query.mode is QueryMode.INSTANT:
            path = INSTANT_PATH
            params = {"query": query.expression}
            if query.time is not None:
                params["time"] = _epoch(query.time)
        else:
            path = RANGE_PATH
            params = {
                "query": query.expression,
                "start": _epoch(query.start),
                "end": _epoch(query.end),
                "step": str(query.step_seconds),
            }

        suspect_encoding = looks_pre_encoded(query.expression)
        if suspect_encoding:
            logger.warning(
                "Query expression looks percent-encoded and will be encoded twice",
                metric=query.metric_name,
                query=query.expression,
            )

        request = self.client.build_request("GET", path, params=params)
        url = str(request.url)

        try:
            response = await asyncio.wait_for(self.client.send(request), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise Timeout(
                f"Metrics query timed out after {self.timeout}s",
                metric=query.metric_name,
                endpoint=self.base_url,
            ) from e
        except httpx.TransportError as e:
            raise BackendUnreachable(
                f"Monitoring backend unreachable: {e}",
                metric=query.metric_name,
                endpoint=self.base_url,
            ) from e

        series = self._handle_response(query, response, url)

        if not series or all(s.is_empty for s in series):
            logger.info(
                "Query returned no data",
                metric=query.metric_name,
                query=query.expression,
                url=url,
                suspect_encoding=suspect_encoding,
            )
            raise NoData(
                f"No samples for metric {query.metric_name}",
                metric=query.metric_name,
                query=query.expression,
                url=url,
                suspect_encoding=suspect_encoding,
            )

        logger.debug(
            "Query succeeded",
            metric=query.metric_name,
            mode=query.mode.value,
            series=len(series),
            samples=sum(len(s) for s in series),
        )
        return series

    def _handle_response(
        self, query: MetricQuery, response: httpx.Response, url: str
    ) -> list[MetricSeries]:
        if response.status_code in (401, 403):
            raise BackendUnreachable(
                f"Monitoring backend refused access ({response.status_code})",
                remediation="Check PROMETHEUS_TOKEN and its permissions",
                metric=query.metric_name,
                endpoint=self.base_url,
                status=response.status_code,
            )
        if response.status_code >= 500:
            raise BackendUnreachable(
                f"Monitoring backend error {response.status_code}",
                metric=query.metric_name,
                endpoint=self.base_url,
                status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedResponse(
                f"Response is not JSON (status {response.status_code})",
                metric=query.metric_name,
                url=url,
            ) from e

        # 400/422 carry a status=error payload and surface as QueryRejected
        return parse_response(query, payload)

    async def query_instant(
        self, metric_name: str, expression: str, time: datetime | None = None
    ) -> list[MetricSeries]:
        return await self.query(MetricQuery.instant(metric_name, expression, time))

    async def query_range(
        self,
        metric_name: str,
        expression: str,
        start: datetime,
        end: datetime,
        step_seconds: int,
    ) -> list[MetricSeries]:
        return await self.query(
            MetricQuery.range(metric_name, expression, start, end, step_seconds)
        )

    async def aclose(self):
        """Close the underlying HTTP client"""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
