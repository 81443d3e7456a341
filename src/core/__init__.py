"""
Core utilities shared across the pipeline.
"""

from .logger import setup_logging
from .settings import Settings

__all__ = ["Settings", "setup_logging"]
