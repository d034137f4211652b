"""
Projection and residual evaluation

Evaluates every measurement of a preprocessed problem graph in one
vectorised pass, at either the current or the trial state.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .geometry import skew_batch
from .problem_graph import ProblemGraph
from .projection import ProjectionModel


@dataclass
class ResidualBatch:
    """
    Per-measurement quantities of one evaluation pass

    Rows follow the graph's measurement order. Measurements whose point lies
    behind the camera (`valid == False`) carry zero residuals and Jacobians.
    """

    camera_frame: np.ndarray      # (M, 3) point in camera coordinates
    residuals: np.ndarray         # (M, 2) w * (observed - projected)
    error_squared: np.ndarray     # (M,) |residual|^2
    valid: np.ndarray             # (M,) bool, z > 0
    camera_jacobians: Optional[np.ndarray] = None   # (M, 2, 6)
    point_jacobians: Optional[np.ndarray] = None    # (M, 2, 3)

    @property
    def num_measurements(self) -> int:
        return int(self.error_squared.shape[0])

    @property
    def has_jacobians(self) -> bool:
        return self.camera_jacobians is not None


class ResidualEvaluator:
    """
    Computes residuals and Jacobians of all measurements

    Camera Jacobians are taken with respect to a left-multiplied twist
    (v, omega), point Jacobians with respect to the world position. Both are
    derivatives of the projection, scaled by the measurement noise weight, so
    the Gauss-Newton step solves J^T J delta = J^T residual.
    """

    def __init__(self, graph: ProblemGraph, model: ProjectionModel):
        self.graph = graph
        self.model = model

    def _gather_state(self, use_trial: bool) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        rotations = np.empty((len(self.graph.cameras), 3, 3), dtype=np.float64)
        translations = np.empty((len(self.graph.cameras), 3), dtype=np.float64)
        for cam in self.graph.cameras:
            pose = cam.trial_pose if (use_trial and cam.trial_pose is not None) else cam.pose
            rotations[cam.index] = pose.rotation
            translations[cam.index] = pose.translation

        positions = np.empty((len(self.graph.points), 3), dtype=np.float64)
        for point in self.graph.points:
            if use_trial and point.trial_position is not None:
                positions[point.index] = point.trial_position
            else:
                positions[point.index] = point.position
        return rotations, translations, positions

    def evaluate(self, use_trial: bool = False, with_jacobians: bool = False) -> ResidualBatch:
        """
        Evaluate all measurements

        Args:
            use_trial: Use trial poses/positions where they are set
            with_jacobians: Also compute camera (2x6) and point (2x3) Jacobians

        Returns:
            ResidualBatch in measurement order
        """
        layout = self.graph.preprocess()
        num_meas = layout.meas_camera.shape[0]
        if num_meas == 0:
            empty = ResidualBatch(
                camera_frame=np.zeros((0, 3)),
                residuals=np.zeros((0, 2)),
                error_squared=np.zeros(0),
                valid=np.zeros(0, dtype=bool),
            )
            if with_jacobians:
                empty.camera_jacobians = np.zeros((0, 2, 6))
                empty.point_jacobians = np.zeros((0, 2, 3))
            return empty

        rotations, translations, positions = self._gather_state(use_trial)
        R = rotations[layout.meas_camera]
        X = positions[layout.meas_point]
        x_cam = np.einsum("mij,mj->mi", R, X) + translations[layout.meas_camera]

        z = x_cam[:, 2]
        valid = z > 0.0
        safe_z = np.where(valid, z, 1.0)
        plane = x_cam[:, :2] / safe_z[:, None]

        weight = layout.sqrt_inv_noise
        projected = self.model.project(plane)
        residuals = weight[:, None] * (layout.observed - projected)
        residuals[~valid] = 0.0
        error_squared = np.einsum("mi,mi->m", residuals, residuals)

        batch = ResidualBatch(
            camera_frame=x_cam,
            residuals=residuals,
            error_squared=error_squared,
            valid=valid,
        )
        if not with_jacobians:
            return batch

        # d(plane) / d(x_cam)
        inv_z = 1.0 / safe_z
        dplane = np.zeros((num_meas, 2, 3), dtype=np.float64)
        dplane[:, 0, 0] = inv_z
        dplane[:, 1, 1] = inv_z
        dplane[:, 0, 2] = -plane[:, 0] * inv_z
        dplane[:, 1, 2] = -plane[:, 1] * inv_z

        K = weight[:, None, None] * np.einsum(
            "mij,mjk->mik", self.model.projection_derivs(plane), dplane
        )

        # d(x_cam) / d(v, omega) = [I | -[x_cam]x]
        dcam = np.concatenate(
            [np.broadcast_to(np.eye(3), (num_meas, 3, 3)), -skew_batch(x_cam)], axis=2
        )
        camera_jacobians = np.einsum("mij,mjk->mik", K, dcam)
        point_jacobians = np.einsum("mij,mjk->mik", K, R)
        camera_jacobians[~valid] = 0.0
        point_jacobians[~valid] = 0.0

        batch.camera_jacobians = camera_jacobians
        batch.point_jacobians = point_jacobians
        return batch
