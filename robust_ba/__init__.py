"""
Robust Bundle Adjustment Package
Sparse Levenberg-Marquardt refinement of camera poses and 3D points
"""

__version__ = "0.1.0"

from .core import (
    BundleAdjuster,
    BundleConfig,
    SE3,
    PinholeCamera,
    ATANCamera,
    BundleError,
)

__all__ = [
    "BundleAdjuster",
    "BundleConfig",
    "SE3",
    "PinholeCamera",
    "ATANCamera",
    "BundleError",
]
