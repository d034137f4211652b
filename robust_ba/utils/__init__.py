"""
Helpers for building and evaluating bundle adjustment problems
"""

from .synthetic import SyntheticScene, make_synthetic_scene
from .quality_metrics import QualityMetrics

__all__ = ["SyntheticScene", "make_synthetic_scene", "QualityMetrics"]
