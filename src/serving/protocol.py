"""
Request/response shapes of the model-serving protocols.

    v1 predict  POST {endpoint}/v1/models/{name}:predict   {"instances": [...]}
    v1 health   GET  {endpoint}/v1/models/{name}           {"name": ..., "ready": true}
    v2 infer    POST {endpoint}/v2/models/{name}/infer     {"inputs": [tensor, ...]}
    v2 health   GET  {endpoint}/v2/models/{name}/ready

`name` is always the serving-side identifier from ModelInfo.
"""

import re
from typing import Any
from urllib.parse import quote

from src.core.errors import ServingError

from .models import ModelInfo, PayloadFormat, ServingProtocol

V2_INPUT_NAME = "input-0"

_EXPECTED_COUNT = [
    re.compile(r"expected\s*\[[^\]]*?(\d+)\]", re.IGNORECASE),
    re.compile(r"expecting\s+(\d+)\s+features", re.IGNORECASE),
    re.compile(r"expected[:=]?\s*(\d+)", re.IGNORECASE),
    re.compile(r"expected\s+\w+\s+of\s+(\d+)", re.IGNORECASE),
]
_DIMENSION_HINTS = re.compile(
    r"(\d+\s+features|shape mismatch|feature_names mismatch|dimension mismatch|"
    r"dimensions? do(?:es)? not match|input shape|unexpected shape for input|"
    r"number of features)",
    re.IGNORECASE,
)


def _model_path(info: ModelInfo) -> str:
    return quote(info.serving_name, safe="")


def predict_url(info: ModelInfo) -> str:
    name = _model_path(info)
    if info.protocol is ServingProtocol.V1:
        return f"{info.endpoint}/v1/models/{name}:predict"
    if info.protocol is ServingProtocol.V2:
        return f"{info.endpoint}/v2/models/{name}/infer"
    raise ValueError(f"Unhandled protocol {info.protocol}")


def health_url(info: ModelInfo) -> str:
    name = _model_path(info)
    if info.protocol is ServingProtocol.V1:
        return f"{info.endpoint}/v1/models/{name}"
    if info.protocol is ServingProtocol.V2:
        return f"{info.endpoint}/v2/models/{name}/ready"
    raise ValueError(f"Unhandled protocol {info.protocol}")


def _v2_inputs(info: ModelInfo, instances: list) -> list[dict[str, Any]]:
    if info.payload is PayloadFormat.ARRAY:
        width = len(instances[0]) if instances else 0
        return [
            {
                "name": V2_INPUT_NAME,
                "shape": [len(instances), width],
                "datatype": "FP64",
                "data": [float(v) for row in instances for v in row],
            }
        ]
    names = list(instances[0].keys()) if instances else []
    return [
        {
            "name": name,
            "shape": [len(instances)],
            "datatype": "FP64",
            "data": [float(row[name]) for row in instances],
        }
        for name in names
    ]


def build_predict_payload(info: ModelInfo, instances: list) -> dict[str, Any]:
    """Request body for a prediction

    Args:
        info: Resolved model
        instances: Rows of floats (array payload) or feature-name mappings
            (named payload)
    """
    if info.payload is PayloadFormat.ARRAY:
        if not all(isinstance(row, (list, tuple)) for row in instances):
            raise ValueError("Array payload needs list rows")
    elif not all(isinstance(row, dict) for row in instances):
        raise ValueError("Named payload needs mapping rows")

    if info.protocol is ServingProtocol.V1:
        rows = [list(row) if isinstance(row, tuple) else row for row in instances]
        return {"instances": rows}
    if info.protocol is ServingProtocol.V2:
        return {"inputs": _v2_inputs(info, instances)}
    raise ValueError(f"Unhandled protocol {info.protocol}")


def _reshape(data: list, shape: list) -> list:
    if len(shape) == 2 and shape[1] and len(data) == shape[0] * shape[1]:
        width = shape[1]
        return [data[i : i + width] for i in range(0, len(data), width)]
    return list(data)


def parse_predict_response(info: ModelInfo, payload: Any) -> tuple[list, dict | None]:
    """Extract predictions (one entry per instance) and an optional breakdown

    Raises:
        ServingError: The body does not have the protocol's shape
    """
    if not isinstance(payload, dict):
        raise ServingError(
            "Prediction response is not a JSON object",
            model=info.logical_name,
            serving_name=info.serving_name,
        )

    if info.protocol is ServingProtocol.V1:
        predictions = payload.get("predictions")
        if not isinstance(predictions, list):
            raise ServingError(
                "Prediction response has no 'predictions' list",
                model=info.logical_name,
                serving_name=info.serving_name,
            )
        breakdown = payload.get("explanations") or payload.get("breakdown")
        return predictions, breakdown

    if info.protocol is ServingProtocol.V2:
        outputs = payload.get("outputs")
        if not isinstance(outputs, list) or not outputs:
            raise ServingError(
                "Inference response has no 'outputs'",
                model=info.logical_name,
                serving_name=info.serving_name,
            )
        try:
            first = outputs[0]
            predictions = _reshape(first["data"], first.get("shape") or [])
            breakdown = {o["name"]: o["data"] for o in outputs[1:]} or None
        except (KeyError, TypeError) as e:
            raise ServingError(
                f"Malformed inference output: {e}",
                model=info.logical_name,
                serving_name=info.serving_name,
            ) from e
        return predictions, breakdown

    raise ValueError(f"Unhandled protocol {info.protocol}")


def parse_health_response(info: ModelInfo, payload: Any) -> tuple[bool, dict]:
    """Readiness flag and metadata from a 200 health response"""
    if info.protocol is ServingProtocol.V1:
        if not isinstance(payload, dict):
            return False, {}
        return bool(payload.get("ready", False)), payload
    if info.protocol is ServingProtocol.V2:
        # 200 means ready; the body is optional
        if isinstance(payload, dict):
            return bool(payload.get("ready", True)), payload
        return True, {}
    raise ValueError(f"Unhandled protocol {info.protocol}")


def dimensionality_error(message: str) -> tuple[bool, int | None]:
    """Whether an error message reports a feature-count mismatch

    Returns:
        (is_mismatch, feature count the model expects if stated)
    """
    if not message or not _DIMENSION_HINTS.search(message):
        return False, None
    for pattern in _EXPECTED_COUNT:
        match = pattern.search(message)
        if match:
            return True, int(match.group(1))
    return True, None
