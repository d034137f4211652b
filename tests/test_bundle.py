"""
End-to-end tests for the bundle adjuster
"""

import threading
from dataclasses import dataclass

import pytest
import numpy as np
from pathlib import Path
from scipy.spatial.transform import Rotation
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from robust_ba.core import (
    ATANCamera,
    BundleAdjuster,
    BundleConfig,
    GraphLockedError,
    InvalidReferenceError,
    PinholeCamera,
    PreconditionError,
    SE3,
    SolveInProgressError,
)
from robust_ba.core.robust_weighting import TukeyWeighting, median_sigma_squared
from robust_ba.utils import QualityMetrics, make_synthetic_scene


def _state(ba):
    """Snapshot of all poses and positions"""
    graph = ba.graph
    rotations = np.array([c.pose.rotation for c in graph.cameras])
    translations = np.array([c.pose.translation for c in graph.cameras])
    points = np.array([p.position for p in graph.points])
    return rotations, translations, points


def _assert_matches_truth(ba, scene, atol=1e-6, skip_points=()):
    for i, truth in enumerate(scene.true_poses):
        pose = ba.get_camera(i)
        np.testing.assert_allclose(pose.rotation, truth.rotation, atol=atol)
        np.testing.assert_allclose(pose.translation, truth.translation, atol=atol)
    for i in range(scene.num_points):
        if i not in skip_points:
            np.testing.assert_allclose(ba.get_point(i), scene.true_points[i], atol=atol)


def _perturbed(scene, config=None, **noise):
    poses, points = scene.perturbed_state(**noise)
    return scene.build(config, poses=poses, points=points)


@dataclass(frozen=True)
class ConstantCost:
    """Weighting whose cost never improves, so every step is rejected"""

    tuning_constant: float = 1.0
    name: str = "constant"

    def weight(self, error_squared, sigma_squared):
        return np.ones_like(np.asarray(error_squared, dtype=np.float64))

    def cost(self, error_squared, sigma_squared):
        return np.ones_like(np.asarray(error_squared, dtype=np.float64))

    def scale_estimate(self, error_squared):
        return median_sigma_squared(error_squared)


class RejectFirstTrials:
    """Tukey weighting that charges extra for the first `count` trial states"""

    def __init__(self, count):
        self.base = TukeyWeighting()
        self.tuning_constant = self.base.tuning_constant
        self.name = "tukey"
        self.count = count
        self.calls = 0

    def weight(self, error_squared, sigma_squared):
        return self.base.weight(error_squared, sigma_squared)

    def cost(self, error_squared, sigma_squared):
        # Call 1 scores the starting state, calls 2..count+1 score trials
        self.calls += 1
        cost = self.base.cost(error_squared, sigma_squared)
        if 2 <= self.calls <= self.count + 1:
            return cost + 1.0
        return cost

    def scale_estimate(self, error_squared):
        return self.base.scale_estimate(error_squared)


class TestRecovery:
    """Test convergence to the ground truth"""

    def test_noiseless_recovery(self):
        """Test a perturbed noiseless problem recovers the truth"""
        scene = make_synthetic_scene(num_cameras=5, num_points=30, seed=0)
        ba = _perturbed(scene, BundleConfig(max_iterations=50))

        accepted = ba.compute()

        assert accepted > 0
        assert ba.converged()
        assert not ba.hit_max_iterations()
        _assert_matches_truth(ba, scene)
        assert ba.get_outlier_measurements() == []
        assert ba.get_outliers() == set()

    @pytest.mark.parametrize("m_estimator", ["huber", "cauchy"])
    def test_other_weightings(self, m_estimator):
        """Test every weighting policy reaches the zero-residual solution"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20, seed=2)
        config = BundleConfig.from_dict({
            "max_iterations": 50,
            "robust": {"m_estimator": m_estimator},
        })
        ba = _perturbed(scene, config)

        assert ba.compute() > 0
        assert ba.converged()
        _assert_matches_truth(ba, scene)

    def test_atan_model(self):
        """Test recovery through a distorting lens"""
        model = ATANCamera(500.0, 500.0, 320.0, 240.0, omega=0.6)
        scene = make_synthetic_scene(num_cameras=4, num_points=25, model=model, seed=5)
        ba = _perturbed(scene, BundleConfig(max_iterations=50))

        assert ba.compute() > 0
        assert ba.converged()
        _assert_matches_truth(ba, scene)

    def test_start_at_truth(self):
        """Test a problem that is already solved stays put"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20, seed=1)
        ba = scene.build()
        before = _state(ba)

        assert ba.compute() >= 0
        assert ba.converged()
        for old, new in zip(before, _state(ba)):
            np.testing.assert_allclose(new, old, atol=1e-9)

    def test_noisy_observations(self):
        """Test noisy data converges to a small reprojection error"""
        scene = make_synthetic_scene(num_cameras=5, num_points=40, pixel_noise=0.5, seed=6)
        poses, points = scene.perturbed_state(seed=7)
        ba = scene.build(BundleConfig(max_iterations=50), poses=poses, points=points,
                         noise_variance=0.25)

        assert ba.compute() > 0
        metrics = QualityMetrics().evaluate(ba, scene.true_poses, scene.true_points)
        assert metrics["rmse"] < 1.0
        assert metrics["max_point_error"] < 0.05


class TestOutlierRejection:
    """Test robustness to gross measurement errors"""

    def test_gross_error_is_flagged(self):
        """Test a 100 px error is reported and does not bias the solution"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20, seed=0)
        scene.corrupt(3, 5, [100.0, -60.0])
        ba = _perturbed(scene, BundleConfig(max_iterations=50))

        assert ba.compute() > 0
        assert ba.converged()
        assert (3, 5) in ba.get_outlier_measurements()
        assert ba.get_outliers() == set()
        _assert_matches_truth(ba, scene)

    def test_point_with_all_measurements_bad(self):
        """Test a point inconsistent in every view becomes an outlier"""
        scene = make_synthetic_scene(num_cameras=3, num_points=15, num_fixed=2, seed=4)
        for camera in range(3):
            scene.corrupt(camera, 7, [150.0 * (camera + 1), -80.0 * camera])
        ba = scene.build(BundleConfig(max_iterations=30))

        assert ba.compute() >= 0
        assert 7 in ba.get_outliers()
        assert {(c, 7) for c in range(3)} <= set(ba.get_outlier_measurements())

    def test_outliers_excluded_on_next_compute(self):
        """Test flagged measurements stay flagged and out of later solves"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20, seed=0)
        scene.corrupt(2, 3, [80.0, 80.0])
        ba = _perturbed(scene, BundleConfig(max_iterations=50))
        ba.compute()
        flagged = ba.get_outlier_measurements()

        assert ba.compute() >= 0
        assert ba.get_outlier_measurements() == flagged


class TestSolverContract:
    """Test compute() return values and state guarantees"""

    def test_all_cameras_fixed(self):
        """Test nothing is solved when every camera is fixed"""
        scene = make_synthetic_scene(num_cameras=3, num_points=10, num_fixed=3)
        ba = _perturbed(scene)
        before = _state(ba)

        assert ba.compute() == 0
        assert ba.converged()
        assert ba.history == []
        for old, new in zip(before, _state(ba)):
            np.testing.assert_array_equal(new, old)

    def test_cancellation(self):
        """Test a pre-set token stops before any step"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20)
        ba = _perturbed(scene)
        before = _state(ba)
        cancel = threading.Event()
        cancel.set()

        assert ba.compute(cancel=cancel) == 0
        assert not ba.converged()
        assert ba.history == []
        for old, new in zip(before, _state(ba)):
            np.testing.assert_array_equal(new, old)

    def test_determinism(self):
        """Test identical problems give bit-identical results"""
        scene = make_synthetic_scene(num_cameras=5, num_points=25, pixel_noise=0.3, seed=9)
        scene.corrupt(4, 2, [40.0, 0.0])
        first = _perturbed(scene, BundleConfig(max_iterations=10))
        second = _perturbed(scene, BundleConfig(max_iterations=10))

        assert first.compute() == second.compute()
        for a, b in zip(_state(first), _state(second)):
            np.testing.assert_array_equal(a, b)
        assert first.get_outlier_measurements() == second.get_outlier_measurements()

    def test_verbosity_does_not_change_results(self):
        """Test diagnostics level has no effect on the solution"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20, seed=8)
        quiet = _perturbed(scene, BundleConfig(verbose=0))
        chatty = _perturbed(scene, BundleConfig(verbose=2))

        assert quiet.compute() == chatty.compute()
        for a, b in zip(_state(quiet), _state(chatty)):
            np.testing.assert_array_equal(a, b)

    def test_monotonic_acceptance(self):
        """Test every accepted step lowers the robust error"""
        scene = make_synthetic_scene(num_cameras=5, num_points=30, seed=3)
        ba = _perturbed(scene, BundleConfig(max_iterations=50))
        ba.compute()

        assert ba.history
        for record in ba.history:
            if record.accepted:
                assert record.trial_error < record.current_error

    def test_rejected_steps_leave_state_unchanged(self):
        """Test a solve that never accepts fails and leaves poses and points alone"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20)
        config = BundleConfig.from_dict({
            "convergence_threshold": 0.0,
            "trust_region": {"max_retries": 3, "max_failed_iterations": 2},
        })
        ba = _perturbed(scene, config)
        ba.weighting = ConstantCost()
        before = _state(ba)

        assert ba.compute() == -1
        assert not ba.converged()
        assert len(ba.history) == 6
        assert not any(record.accepted for record in ba.history)
        for old, new in zip(before, _state(ba)):
            np.testing.assert_array_equal(new, old)

    def test_converges_on_small_rejected_step(self):
        """Test a rejected step below the threshold ends the solve as converged"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20)
        ba = _perturbed(scene, BundleConfig(convergence_threshold=1.0))
        ba.weighting = ConstantCost()
        before = _state(ba)

        assert ba.compute() == 0
        assert ba.converged()
        assert len(ba.history) == 1
        assert not ba.history[0].accepted
        for old, new in zip(before, _state(ba)):
            np.testing.assert_array_equal(new, old)

    def test_damping_adaptation(self):
        """Test damping rises on every rejection and falls on acceptance"""
        scene = make_synthetic_scene(num_cameras=5, num_points=30, seed=11)
        ba = _perturbed(scene, BundleConfig(max_iterations=50), seed=12)
        ba.weighting = RejectFirstTrials(count=3)

        assert ba.compute() > 0
        assert ba.converged()

        history = ba.history
        assert not history[0].accepted
        assert history[0].trial_error > history[0].current_error
        first_accepted = next(i for i, record in enumerate(history) if record.accepted)
        assert first_accepted == 3
        assert history[first_accepted].iteration == 0
        for prev, curr in zip(history[:first_accepted], history[1:first_accepted + 1]):
            assert curr.damping > prev.damping
        assert history[first_accepted + 1].damping < history[first_accepted].damping

        for prev, curr in zip(history, history[1:]):
            if prev.accepted:
                assert curr.damping < prev.damping
            else:
                assert curr.damping > prev.damping

    def test_failure_sentinel(self):
        """Test a camera facing away from every point ends in -1"""
        scene = make_synthetic_scene(num_cameras=3, num_points=10, num_fixed=2)
        poses = [pose.copy() for pose in scene.true_poses]
        flip = SE3(Rotation.from_rotvec([0.0, np.pi, 0.0]).as_matrix(), np.zeros(3))
        poses[2] = flip * poses[2]
        config = BundleConfig.from_dict({"trust_region": {"max_retries": 3,
                                                          "max_failed_iterations": 2}})
        ba = scene.build(config, poses=poses)
        before = _state(ba)

        assert ba.compute() == -1
        assert not ba.converged()
        assert len(ba.history) == 6
        for old, new in zip(before, _state(ba)):
            np.testing.assert_array_equal(new, old)
        assert {(2, p) for p in range(10)} <= set(ba.get_outlier_measurements())

    def test_max_iterations(self):
        """Test the iteration cap is reported"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20)
        ba = _perturbed(scene, BundleConfig(max_iterations=1))

        assert ba.compute() == 1
        assert ba.hit_max_iterations()
        assert not ba.converged()


class TestPreconditions:
    """Test errors raised around compute()"""

    def test_unobserved_free_camera(self):
        """Test a free camera without measurements is refused"""
        ba = BundleAdjuster(PinholeCamera(500.0, 500.0, 320.0, 240.0))
        ba.add_camera(SE3.identity(), fixed=True)
        ba.add_camera(SE3.identity())
        p = ba.add_point([0.0, 0.0, 5.0])
        ba.add_measurement(0, p, [320.0, 240.0])

        with pytest.raises(PreconditionError):
            ba.compute()

    def test_unobserved_point(self):
        """Test a point without measurements is refused"""
        scene = make_synthetic_scene(num_cameras=3, num_points=5)
        ba = scene.build()
        ba.add_point([0.0, 0.0, 0.0])

        with pytest.raises(PreconditionError):
            ba.compute()

    def test_refused_graph_stays_editable(self):
        """Test a refused compute() leaves the graph open to fix the problem"""
        scene = make_synthetic_scene(num_cameras=3, num_points=5)
        ba = scene.build()
        position = np.array([0.2, -0.1, 0.3])
        p = ba.add_point(position)

        with pytest.raises(PreconditionError):
            ba.compute()
        assert not ba.graph.locked

        for cam, pose in enumerate(scene.true_poses):
            ba.add_measurement(cam, p, scene.model.project_point(pose, position))
        assert ba.compute() >= 0
        assert ba.converged()
        assert ba.graph.locked

    def test_no_fixed_camera(self):
        """Test the gauge must be fixed by at least one camera"""
        scene = make_synthetic_scene(num_cameras=3, num_points=5, num_fixed=0)
        with pytest.raises(PreconditionError):
            scene.build().compute()

    def test_graph_locked_after_compute(self):
        """Test topology is frozen once compute() has run"""
        scene = make_synthetic_scene(num_cameras=3, num_points=5)
        ba = scene.build()
        ba.compute()

        with pytest.raises(GraphLockedError):
            ba.add_point([0.0, 0.0, 5.0])
        with pytest.raises(GraphLockedError):
            ba.add_camera(SE3.identity())

    def test_reentrant_compute(self):
        """Test compute() cannot be entered from inside a running solve"""
        scene = make_synthetic_scene(num_cameras=3, num_points=5)
        ba = _perturbed(scene)
        errors = []

        class ReentrantToken:
            def is_set(self):
                try:
                    ba.compute()
                except SolveInProgressError as e:
                    errors.append(e)
                return True

        assert ba.compute(cancel=ReentrantToken()) == 0
        assert len(errors) == 1

    def test_invalid_read_back(self):
        """Test reading unknown entities raises"""
        scene = make_synthetic_scene(num_cameras=3, num_points=5)
        ba = scene.build()
        with pytest.raises(InvalidReferenceError):
            ba.get_camera(3)
        with pytest.raises(InvalidReferenceError):
            ba.get_point(-1)


class TestQualityMetrics:
    """Test quality metrics on solved problems"""

    def test_metrics_after_noiseless_solve(self):
        """Test metrics report a vanishing error after recovery"""
        scene = make_synthetic_scene(num_cameras=4, num_points=20, seed=0)
        ba = _perturbed(scene, BundleConfig(max_iterations=50))
        metrics = QualityMetrics()

        before = metrics.evaluate(ba, scene.true_poses, scene.true_points)
        ba.compute()
        after = metrics.evaluate(ba, scene.true_poses, scene.true_points)

        assert before["reprojection_error"] > 0.1
        assert after["reprojection_error"] < 1e-4
        assert after["max_center_error"] < 1e-6
        assert after["max_point_error"] < 1e-6
        assert after["inlier_count"] == 80
        assert after["outlier_measurements"] == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
