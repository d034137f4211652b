"""
Robust bundle adjustment

Refines camera poses and 3D point positions so that projected points match
their 2D measurements, using a robust M-estimator, Schur-complement
elimination of the points and Levenberg-Marquardt damping.

Usage:
    ba = BundleAdjuster(PinholeCamera(500, 500, 320, 240))
    c0 = ba.add_camera(SE3.identity(), fixed=True)
    ...
    accepted = ba.compute()
"""

import logging
from typing import List, Optional, Set, Tuple

import numpy as np

from .config import BundleConfig
from .exceptions import InvalidReferenceError, PreconditionError, SolveInProgressError
from .geometry import SE3
from .normal_equations import SchurSolver, StepUpdate, accumulate
from .outliers import OutlierClassifier
from .problem_graph import ProblemGraph
from .projection import ProjectionModel
from .residuals import ResidualBatch, ResidualEvaluator
from .robust_weighting import make_weighting
from .trust_region import DampingController, StepRecord

logger = logging.getLogger(__name__)


class BundleAdjuster:
    """
    Robust bundle adjuster over a camera/point problem graph

    Build the problem with add_camera / add_point / add_measurement, then
    call compute(). The topology is frozen by the first compute().
    """

    def __init__(self, model: ProjectionModel, config: Optional[BundleConfig] = None):
        """
        Initialize bundle adjuster

        Args:
            model: Camera projection model shared by all cameras
            config: Configuration (uses defaults if None)
        """
        self.config = config or BundleConfig()
        self.model = model
        self.graph = ProblemGraph()
        self.weighting = make_weighting(self.config.robust.m_estimator)
        self.classifier = OutlierClassifier(self.config.outliers)
        self.controller = DampingController(self.config.trust_region)
        self.logger = logging.getLogger(__name__)

        # Configure logging
        logging.basicConfig(level=getattr(logging, self.config.log_level))

        self.history: List[StepRecord] = []
        self.sigma_squared = 0.0
        self._converged = False
        self._hit_max_iterations = False
        self._solving = False

    # ------------------------------------------------------------------
    # Problem construction
    # ------------------------------------------------------------------

    def add_camera(self, pose: SE3, fixed: bool = False) -> int:
        """Add a camera with a camera-from-world pose, returns its index"""
        return self.graph.add_camera(pose, fixed)

    def add_point(self, position: np.ndarray) -> int:
        """Add a 3D point, returns its index"""
        return self.graph.add_point(position)

    def add_measurement(
        self,
        camera: int,
        point: int,
        observed: np.ndarray,
        noise_variance: float = 1.0,
    ) -> Tuple[int, int]:
        """Add a 2D observation of `point` in `camera`, returns its (camera, point) key"""
        return self.graph.add_measurement(camera, point, observed, noise_variance)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def converged(self) -> bool:
        return self._converged

    def hit_max_iterations(self) -> bool:
        return self._hit_max_iterations

    def get_point(self, index: int) -> np.ndarray:
        if not (0 <= index < self.graph.num_points()):
            raise InvalidReferenceError(f"Point index {index} out of range")
        return self.graph.points[index].position.copy()

    def get_camera(self, index: int) -> SE3:
        if not (0 <= index < self.graph.num_cameras()):
            raise InvalidReferenceError(f"Camera index {index} out of range")
        return self.graph.cameras[index].pose.copy()

    def get_outlier_measurements(self) -> List[Tuple[int, int]]:
        """(camera, point) pairs of measurements flagged bad, in measurement order"""
        return [m.key for m in self.graph.measurements if m.is_bad]

    def get_outliers(self) -> Set[int]:
        """Indices of points classified as outliers"""
        return {p.index for p in self.graph.points if p.is_outlier}

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def compute(self, cancel=None) -> int:
        """
        Run the robust Levenberg-Marquardt loop

        Args:
            cancel: Optional cancellation token (e.g. threading.Event), polled
                once at the start of every outer iteration

        Returns:
            Number of accepted steps, or -1 if max_failed_iterations
            consecutive outer iterations could not find an acceptable step
        """
        if self._solving:
            raise SolveInProgressError("compute() is already running on this adjuster")
        self._solving = True
        try:
            return self._compute(cancel)
        finally:
            self._solving = False

    def _compute(self, cancel) -> int:
        graph = self.graph
        self._check_preconditions()
        layout = graph.preprocess()

        self._converged = False
        self._hit_max_iterations = False
        self.history = []
        self.controller.reset()

        evaluator = ResidualEvaluator(graph, self.model)
        solver = SchurSolver(layout)
        cfg = self.config
        max_retries = cfg.trust_region.max_retries

        if layout.num_rows == 0:
            self.logger.info("No free cameras: nothing to optimise")
            self._converged = True
            self._classify(evaluator)
            return 0

        self.logger.info(
            f"Starting bundle adjustment: {len(graph.free_cameras())} free cameras, "
            f"{graph.num_points()} points, {graph.num_measurements()} measurements"
        )

        accepted = 0
        failed_iterations = 0
        for iteration in range(cfg.max_iterations):
            if cancel is not None and cancel.is_set():
                self.logger.info(f"Cancelled before iteration {iteration}")
                break

            candidate = self._candidate_mask()
            batch = evaluator.evaluate(use_trial=False, with_jacobians=True)
            sigma_squared = self._estimate_sigma_squared(batch, candidate)
            current_error = self._total_error(batch, candidate, sigma_squared)

            weights = self.weighting.weight(batch.error_squared, sigma_squared)
            acc = accumulate(
                layout, batch, weights, candidate & batch.valid,
                graph.num_cameras(), graph.num_points(),
            )

            step_accepted = False
            for attempt in range(max_retries):
                damping = self.controller.damping
                update = solver.solve(acc, damping)

                if update is None:
                    self._record(iteration, attempt, damping, current_error,
                                 float("inf"), False, float("nan"), sigma_squared)
                    self.controller.reject()
                    continue

                relative_update = self._relative_update(update)
                self._set_trial(update)
                trial_batch = evaluator.evaluate(use_trial=True, with_jacobians=False)
                trial_error = self._total_error(trial_batch, candidate, sigma_squared)

                if trial_error < current_error:
                    self._commit_trial()
                    self.controller.accept()
                    accepted += 1
                    step_accepted = True
                else:
                    self._discard_trial()
                    self.controller.reject()

                self._record(iteration, attempt, damping, current_error,
                             trial_error, step_accepted, relative_update, sigma_squared)

                if relative_update < cfg.convergence_threshold:
                    self._converged = True
                if step_accepted or self._converged:
                    break

            if cfg.verbose == 1:
                self.logger.info(
                    f"Iteration {iteration}: error {current_error:.6g}, "
                    f"sigma^2 {sigma_squared:.4g}, damping {self.controller.damping:.3g}, "
                    f"{'accepted' if step_accepted else 'no step accepted'}"
                )

            if self._converged:
                self.logger.info(f"Converged after {iteration + 1} iteration(s)")
                break

            if step_accepted:
                failed_iterations = 0
                continue

            failed_iterations += 1
            self.logger.warning(
                f"Iteration {iteration}: no acceptable step in {max_retries} attempts "
                f"({failed_iterations}/{cfg.trust_region.max_failed_iterations})"
            )
            if failed_iterations >= cfg.trust_region.max_failed_iterations:
                self.logger.error("Bundle adjustment failed: retries exhausted")
                self._classify(evaluator)
                return -1
        else:
            self._hit_max_iterations = True
            self.logger.info(f"Reached max_iterations ({cfg.max_iterations})")

        self._classify(evaluator)
        self.logger.info(f"Bundle adjustment finished: {accepted} accepted step(s)")
        return accepted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_preconditions(self) -> None:
        """
        Every free camera and live point needs at least one usable measurement

        Runs before preprocess() so a refused graph stays open for edits.
        """
        graph = self.graph
        if graph.num_cameras() > 0 and not any(cam.fixed for cam in graph.cameras):
            raise PreconditionError(
                "At least one camera must be fixed to remove the gauge freedom"
            )

        candidate = self._candidate_mask()
        meas_camera = np.array([m.camera for m in graph.measurements], dtype=np.int64)
        meas_point = np.array([m.point for m in graph.measurements], dtype=np.int64)
        camera_counts = np.bincount(meas_camera[candidate], minlength=graph.num_cameras())
        point_counts = np.bincount(meas_point[candidate], minlength=graph.num_points())

        for cam in graph.cameras:
            if not cam.fixed and camera_counts[cam.index] == 0:
                raise PreconditionError(f"Free camera {cam.index} has no usable measurements")
        for point in graph.points:
            if not point.is_outlier and point_counts[point.index] == 0:
                raise PreconditionError(f"Point {point.index} has no usable measurements")

    def _candidate_mask(self) -> np.ndarray:
        """Measurements not flagged bad whose point is not an outlier"""
        graph = self.graph
        return np.array(
            [not m.is_bad and not graph.points[m.point].is_outlier for m in graph.measurements],
            dtype=bool,
        )

    def _estimate_sigma_squared(self, batch: ResidualBatch, candidate: np.ndarray) -> float:
        errors = batch.error_squared[candidate & batch.valid]
        min_sigma = self.config.robust.min_sigma
        return max(self.weighting.scale_estimate(errors), min_sigma * min_sigma)

    def _total_error(self, batch: ResidualBatch, candidate: np.ndarray,
                     sigma_squared: float) -> float:
        """Robust cost of all candidates; points behind a camera pay a fixed cost"""
        in_front = candidate & batch.valid
        behind = candidate & ~batch.valid
        cost = self.weighting.cost(batch.error_squared[in_front], sigma_squared)
        return float(np.sum(cost)) + self.config.behind_camera_cost * int(np.count_nonzero(behind))

    def _relative_update(self, update: StepUpdate) -> float:
        """|delta| / |state| over free camera translations and point positions"""
        state = 0.0
        for cam in self.graph.cameras:
            if not cam.fixed:
                state += float(cam.pose.translation @ cam.pose.translation)
        for point in self.graph.points:
            if not point.is_outlier:
                state += float(point.position @ point.position)
        return float(np.sqrt(update.squared_norm() / max(state, 1e-24)))

    def _set_trial(self, update: StepUpdate) -> None:
        for cam in self.graph.cameras:
            if cam.fixed:
                cam.trial_pose = None
            else:
                cam.trial_pose = SE3.exp(update.camera_twists[cam.index]) * cam.pose
        for point in self.graph.points:
            if point.is_outlier:
                point.trial_position = None
            else:
                point.trial_position = point.position + update.point_deltas[point.index]

    def _commit_trial(self) -> None:
        for cam in self.graph.cameras:
            if cam.trial_pose is not None:
                cam.pose = cam.trial_pose
                cam.trial_pose = None
        for point in self.graph.points:
            if point.trial_position is not None:
                point.position = point.trial_position
                point.trial_position = None

    def _discard_trial(self) -> None:
        for cam in self.graph.cameras:
            cam.trial_pose = None
        for point in self.graph.points:
            point.trial_position = None

    def _classify(self, evaluator: ResidualEvaluator) -> None:
        candidate = self._candidate_mask()
        batch = evaluator.evaluate(use_trial=False, with_jacobians=False)
        self.sigma_squared = self._estimate_sigma_squared(batch, candidate)
        self.classifier.classify(self.graph, batch, candidate, self.sigma_squared)

    def _record(self, iteration: int, attempt: int, damping: float, current_error: float,
                trial_error: float, accepted: bool, relative_update: float,
                sigma_squared: float) -> None:
        record = StepRecord(
            iteration=iteration,
            attempt=attempt,
            damping=damping,
            current_error=current_error,
            trial_error=trial_error,
            accepted=accepted,
            relative_update=relative_update,
            sigma_squared=sigma_squared,
        )
        self.history.append(record)

        message = (
            f"iter {iteration} attempt {attempt}: lambda {damping:.3g}, "
            f"error {current_error:.6g} -> {trial_error:.6g}, "
            f"{'accept' if accepted else 'reject'}, |d|/|x| {relative_update:.3g}"
        )
        if self.config.verbose == 2:
            self.logger.info(message)
        else:
            self.logger.debug(message)
