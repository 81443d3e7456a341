"""
Model registry and inference proxy for remote model-serving endpoints.
"""

from .models import InferenceResult, ModelHealth, ModelInfo, PayloadFormat, ServingProtocol
from .proxy import InferenceProxy
from .registry import ModelRegistry, RegistryHandle

__all__ = [
    "InferenceProxy",
    "InferenceResult",
    "ModelHealth",
    "ModelInfo",
    "ModelRegistry",
    "PayloadFormat",
    "RegistryHandle",
    "ServingProtocol",
]
