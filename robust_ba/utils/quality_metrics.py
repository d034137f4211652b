"""
Quality metrics for bundle adjustment results
"""

import numpy as np
from typing import Dict, List, Any, Optional
from scipy.spatial.transform import Rotation
import logging

from ..core.bundle import BundleAdjuster
from ..core.geometry import SE3
from ..core.residuals import ResidualEvaluator

logger = logging.getLogger(__name__)


class QualityMetrics:
    """Quality metrics for bundle adjustment evaluation"""

    def __init__(self):
        self.metrics = {}

    def evaluate(
        self,
        adjuster: BundleAdjuster,
        true_poses: Optional[List[SE3]] = None,
        true_points: Optional[np.ndarray] = None,
    ) -> Dict[str, Any]:
        """Evaluate a solved adjuster, optionally against ground truth"""

        metrics = {}

        metrics.update(self._evaluate_reprojection(adjuster))

        if true_poses is not None:
            metrics.update(self._evaluate_camera_poses(adjuster, true_poses))

        if true_points is not None:
            metrics.update(self._evaluate_points(adjuster, true_points))

        metrics['outlier_measurements'] = len(adjuster.get_outlier_measurements())
        metrics['outlier_points'] = len(adjuster.get_outliers())

        self.metrics = metrics
        return metrics

    def _evaluate_reprojection(self, adjuster: BundleAdjuster) -> Dict[str, float]:
        """Reprojection error statistics over inlier measurements (pixels)"""

        metrics = {
            'reprojection_error': 0.0,
            'median_reprojection_error': 0.0,
            'rmse': 0.0,
            'inlier_count': 0,
        }

        graph = adjuster.graph
        if graph.num_measurements() == 0:
            return metrics

        batch = ResidualEvaluator(graph, adjuster.model).evaluate()
        layout = graph.preprocess()

        # Undo the noise weighting to report pixels
        pixel_errors = np.sqrt(batch.error_squared) / layout.sqrt_inv_noise
        inlier = np.array(
            [not m.is_bad and not graph.points[m.point].is_outlier for m in graph.measurements],
            dtype=bool,
        ) & batch.valid

        if np.any(inlier):
            errors = pixel_errors[inlier]
            metrics['reprojection_error'] = float(np.mean(errors))
            metrics['median_reprojection_error'] = float(np.median(errors))
            metrics['rmse'] = float(np.sqrt(np.mean(errors ** 2)))
            metrics['inlier_count'] = int(np.count_nonzero(inlier))

        return metrics

    def _evaluate_camera_poses(self, adjuster: BundleAdjuster,
                               true_poses: List[SE3]) -> Dict[str, float]:
        """Rotation (degrees) and camera-center errors against ground truth"""

        rotation_errors = []
        center_errors = []
        for index, truth in enumerate(true_poses):
            pose = adjuster.get_camera(index)
            relative = Rotation.from_matrix(pose.rotation @ truth.rotation.T)
            rotation_errors.append(np.degrees(relative.magnitude()))
            center_errors.append(np.linalg.norm(pose.center() - truth.center()))

        return {
            'max_rotation_error_deg': float(np.max(rotation_errors)) if rotation_errors else 0.0,
            'max_center_error': float(np.max(center_errors)) if center_errors else 0.0,
            'mean_center_error': float(np.mean(center_errors)) if center_errors else 0.0,
        }

    def _evaluate_points(self, adjuster: BundleAdjuster,
                         true_points: np.ndarray) -> Dict[str, float]:
        """Point position errors against ground truth, outlier points excluded"""

        outliers = adjuster.get_outliers()
        errors = [
            np.linalg.norm(adjuster.get_point(i) - true_points[i])
            for i in range(len(true_points))
            if i not in outliers
        ]
        if not errors:
            return {'max_point_error': 0.0, 'mean_point_error': 0.0}

        return {
            'max_point_error': float(np.max(errors)),
            'mean_point_error': float(np.mean(errors)),
        }

    def print_summary(self, metrics: Optional[Dict[str, Any]] = None):
        """Log a summary of the metrics"""
        metrics = metrics or self.metrics
        logger.info("Bundle adjustment quality:")
        for key, value in metrics.items():
            if isinstance(value, float):
                logger.info(f"  {key}: {value:.6g}")
            else:
                logger.info(f"  {key}: {value}")
