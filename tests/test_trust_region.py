"""
Unit tests for damping control and outlier classification
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from robust_ba.core.config import OutlierConfig, TrustRegionConfig
from robust_ba.core.geometry import SE3
from robust_ba.core.outliers import OutlierClassifier
from robust_ba.core.problem_graph import ProblemGraph
from robust_ba.core.residuals import ResidualBatch
from robust_ba.core.trust_region import DampingController, StepRecord


class TestDampingController:
    """Test Levenberg-Marquardt damping updates"""

    def test_initial_values(self):
        """Test defaults start near Gauss-Newton"""
        controller = DampingController(TrustRegionConfig())
        assert controller.damping == pytest.approx(1e-4)
        assert controller.factor == pytest.approx(2.0)

    def test_rejections_grow_geometrically(self):
        """Test each rejection multiplies damping by a doubling factor"""
        controller = DampingController(TrustRegionConfig())
        controller.reject()
        assert controller.damping == pytest.approx(2e-4)
        assert controller.factor == pytest.approx(4.0)
        controller.reject()
        assert controller.damping == pytest.approx(8e-4)
        assert controller.factor == pytest.approx(8.0)

    def test_accept_shrinks_and_resets_factor(self):
        """Test acceptance scales damping by 0.3 and resets the factor"""
        controller = DampingController(TrustRegionConfig())
        controller.reject()
        controller.reject()
        controller.accept()
        assert controller.damping == pytest.approx(2.4e-4)
        assert controller.factor == pytest.approx(2.0)

    def test_reset(self):
        """Test reset restores the configured start values"""
        config = TrustRegionConfig(initial_damping=1e-2, damping_factor=3.0)
        controller = DampingController(config)
        controller.reject()
        controller.reset()
        assert controller.damping == pytest.approx(1e-2)
        assert controller.factor == pytest.approx(3.0)

    def test_step_record_dict(self):
        """Test StepRecord exports all fields"""
        record = StepRecord(0, 1, 1e-4, 10.0, 9.0, True, 1e-3, 2.0)
        data = record.to_dict()
        assert data["attempt"] == 1
        assert data["accepted"] is True
        assert set(data) == {
            "iteration", "attempt", "damping", "current_error", "trial_error",
            "accepted", "relative_update", "sigma_squared",
        }


def _graph_with_points(num_points=3, num_cameras=4):
    graph = ProblemGraph()
    for i in range(num_cameras):
        graph.add_camera(SE3.identity(), fixed=(i == 0))
    for _ in range(num_points):
        graph.add_point([0.0, 0.0, 5.0])
    for cam in range(num_cameras):
        for point in range(num_points):
            graph.add_measurement(cam, point, [0.0, 0.0])
    graph.preprocess()
    return graph


def _batch(error_squared, valid=None):
    error_squared = np.asarray(error_squared, dtype=np.float64)
    n = error_squared.size
    return ResidualBatch(
        camera_frame=np.zeros((n, 3)),
        residuals=np.zeros((n, 2)),
        error_squared=error_squared,
        valid=np.ones(n, dtype=bool) if valid is None else np.asarray(valid),
    )


class TestOutlierClassifier:
    """Test post-solve outlier classification"""

    def test_bad_measurements(self):
        """Test measurements beyond the cut-off or behind the camera are flagged"""
        graph = _graph_with_points(num_points=2, num_cameras=2)
        classifier = OutlierClassifier(OutlierConfig(outlier_sigma_multiple=2.0))
        # Order: (0,0), (0,1), (1,0), (1,1); cut-off is 4 * sigma^2 = 4
        batch = _batch([1.0, 5.0, 3.9, 0.0], valid=[True, True, True, False])

        newly = classifier.classify(graph, batch, np.ones(4, dtype=bool), 1.0)

        assert [m.is_bad for m in graph.measurements] == [False, True, False, True]
        # Point 1 lost both measurements
        assert newly == {1}
        assert graph.points[1].is_outlier
        assert graph.points[1].n_outliers == 2
        assert not graph.points[0].is_outlier

    def test_ratio_and_count_policy(self):
        """Test a point needs both the bad count and the bad ratio"""
        graph = _graph_with_points(num_points=2, num_cameras=4)
        config = OutlierConfig(outlier_sigma_multiple=1.0, point_outlier_ratio=0.5,
                               point_outlier_min_count=2)
        classifier = OutlierClassifier(config)
        errors = np.zeros(8)
        # Point 0: two of four bad; point 1: one of four bad
        errors[[0, 2, 3]] = 10.0   # (0,0), (1,0), (1,1)

        newly = classifier.classify(graph, _batch(errors), np.ones(8, dtype=bool), 1.0)
        assert newly == {0}
        assert graph.points[1].n_outliers == 1
        assert not graph.points[1].is_outlier

    def test_non_candidates_are_ignored(self):
        """Test measurements outside the candidate mask keep their flags"""
        graph = _graph_with_points(num_points=1, num_cameras=2)
        classifier = OutlierClassifier(OutlierConfig())
        candidate = np.array([True, False])
        classifier.classify(graph, _batch([0.0, 1e6]), candidate, 1.0)
        assert not graph.measurements[1].is_bad
        assert graph.points[0].n_outliers == 0

    def test_threshold(self):
        """Test the squared cut-off scales with sigma^2"""
        classifier = OutlierClassifier(OutlierConfig(outlier_sigma_multiple=3.0))
        assert classifier.threshold(2.0) == pytest.approx(18.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
