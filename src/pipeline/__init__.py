"""
Analysis pipeline: scope in, structured anomaly or forecast result out.
"""

from .models import AnalysisRequest, AnalysisResponse, TimeRange
from .service import AnalysisPipeline

__all__ = [
    "AnalysisPipeline",
    "AnalysisRequest",
    "AnalysisResponse",
    "TimeRange",
]
