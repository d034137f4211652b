"""
Robust bundle adjustment core

Jointly refines camera poses and 3D points against 2D measurements with a
robust M-estimator, Schur-complement elimination of the points and
Levenberg-Marquardt damping. Measurements and points that remain
inconsistent after the solve are reported as outliers.

Key Features:
- Problem graph with one-time sparsity preprocessing
- Runtime-selectable Tukey / Huber / Cauchy weighting
- Dense Cholesky solve of the reduced camera system
- Cooperative cancellation at outer-iteration boundaries

Usage:
    from robust_ba.core import BundleAdjuster, BundleConfig, PinholeCamera, SE3

    ba = BundleAdjuster(PinholeCamera(500, 500, 320, 240), BundleConfig())
    cam = ba.add_camera(SE3.identity(), fixed=True)
    ...
    accepted = ba.compute()
"""

from .config import BundleConfig, RobustConfig, TrustRegionConfig, OutlierConfig
from .exceptions import (
    BundleError,
    InvalidReferenceError,
    DuplicateMeasurementError,
    GraphLockedError,
    SolveInProgressError,
    PreconditionError,
)
from .geometry import SE3
from .projection import ProjectionModel, PinholeCamera, ATANCamera
from .problem_graph import ProblemGraph, CameraNode, PointNode, Measurement, EliminationScript
from .residuals import ResidualEvaluator, ResidualBatch
from .robust_weighting import (
    RobustWeighting,
    TukeyWeighting,
    HuberWeighting,
    CauchyWeighting,
    make_weighting,
)
from .normal_equations import Accumulators, SchurSolver, StepUpdate, accumulate
from .trust_region import DampingController, StepRecord
from .outliers import OutlierClassifier
from .bundle import BundleAdjuster

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "BundleConfig",
    "RobustConfig",
    "TrustRegionConfig",
    "OutlierConfig",

    # Errors
    "BundleError",
    "InvalidReferenceError",
    "DuplicateMeasurementError",
    "GraphLockedError",
    "SolveInProgressError",
    "PreconditionError",

    # Geometry and projection
    "SE3",
    "ProjectionModel",
    "PinholeCamera",
    "ATANCamera",

    # Problem graph
    "ProblemGraph",
    "CameraNode",
    "PointNode",
    "Measurement",
    "EliminationScript",

    # Solver components
    "ResidualEvaluator",
    "ResidualBatch",
    "RobustWeighting",
    "TukeyWeighting",
    "HuberWeighting",
    "CauchyWeighting",
    "make_weighting",
    "Accumulators",
    "SchurSolver",
    "StepUpdate",
    "accumulate",
    "DampingController",
    "StepRecord",
    "OutlierClassifier",

    # Main adjuster
    "BundleAdjuster",
]
