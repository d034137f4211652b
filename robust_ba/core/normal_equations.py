"""
Normal-equation accumulation and Schur-complement solve

The normal equations of the camera/point problem have the block form

    [ U   W ] [da]   [eps_a]
    [ W^T V ] [db] = [eps_b]

with one 6x6 block U_j per free camera, one 3x3 block V_i per point and
one 6x3 block W_ij per measurement. Eliminating the points gives the
reduced camera system

    (U* - W V*^-1 W^T) da = eps_a - W V*^-1 eps_b

which is solved with a dense Cholesky factorisation, followed by
back-substitution for the point updates. Accumulation does not depend on
the damping, so `accumulate` runs once per outer iteration while
`SchurSolver.solve` is repeated for every damping value tried.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from .problem_graph import GraphLayout
from .residuals import ResidualBatch

logger = logging.getLogger(__name__)


@dataclass
class Accumulators:
    """Pass-scoped sums of one accumulation pass, zeroed on creation"""

    camera_blocks: np.ndarray     # (C, 6, 6) U
    camera_rhs: np.ndarray        # (C, 6) eps_a
    point_blocks: np.ndarray      # (P, 3, 3) V
    point_rhs: np.ndarray         # (P, 3) eps_b
    cross: np.ndarray             # (M, 6, 3) W = A^T B per measurement
    active: np.ndarray            # (M,) bool, contributed to the sums
    point_active: np.ndarray      # (P,) bool, has at least one active measurement

    @classmethod
    def zeros(cls, num_cameras: int, num_points: int, num_measurements: int) -> "Accumulators":
        return cls(
            camera_blocks=np.zeros((num_cameras, 6, 6), dtype=np.float64),
            camera_rhs=np.zeros((num_cameras, 6), dtype=np.float64),
            point_blocks=np.zeros((num_points, 3, 3), dtype=np.float64),
            point_rhs=np.zeros((num_points, 3), dtype=np.float64),
            cross=np.zeros((num_measurements, 6, 3), dtype=np.float64),
            active=np.zeros(num_measurements, dtype=bool),
            point_active=np.zeros(num_points, dtype=bool),
        )


@dataclass
class StepUpdate:
    """Solution of one damped Schur solve"""

    camera_twists: np.ndarray     # (C, 6), zero rows for fixed cameras
    point_deltas: np.ndarray      # (P, 3), zero rows for held points
    held_points: np.ndarray       # indices of points without an update this pass

    def squared_norm(self) -> float:
        return float(np.sum(self.camera_twists ** 2) + np.sum(self.point_deltas ** 2))


def accumulate(
    layout: GraphLayout,
    batch: ResidualBatch,
    weights: np.ndarray,
    active: np.ndarray,
    num_cameras: int,
    num_points: int,
) -> Accumulators:
    """
    Sum the weighted Jacobian products of all active measurements

    Args:
        layout: Preprocessed graph layout
        batch: Residuals with Jacobians at the current state
        weights: (M,) robust weights
        active: (M,) measurements that take part in this pass
        num_cameras: Number of cameras, fixed ones included
        num_points: Number of points

    Returns:
        Freshly zeroed and filled Accumulators
    """
    if not batch.has_jacobians:
        raise ValueError("Accumulation needs a ResidualBatch evaluated with Jacobians")

    num_meas = batch.num_measurements
    acc = Accumulators.zeros(num_cameras, num_points, num_meas)
    active = np.asarray(active, dtype=bool) & (np.asarray(weights) > 0.0)
    acc.active = active
    if num_meas == 0 or not np.any(active):
        return acc

    sqrt_w = np.where(active, np.sqrt(np.where(active, weights, 0.0)), 0.0)
    A = sqrt_w[:, None, None] * batch.camera_jacobians
    B = sqrt_w[:, None, None] * batch.point_jacobians
    eps = sqrt_w[:, None] * batch.residuals

    np.add.at(acc.camera_blocks, layout.meas_camera, np.einsum("mki,mkj->mij", A, A))
    np.add.at(acc.camera_rhs, layout.meas_camera, np.einsum("mki,mk->mi", A, eps))
    np.add.at(acc.point_blocks, layout.meas_point, np.einsum("mki,mkj->mij", B, B))
    np.add.at(acc.point_rhs, layout.meas_point, np.einsum("mki,mk->mi", B, eps))
    acc.cross = np.einsum("mki,mkj->mij", A, B)
    acc.point_active[layout.meas_point[active]] = True
    return acc


class SchurSolver:
    """
    Damped solve of the accumulated normal equations

    Point blocks that are non-finite or too badly conditioned to invert are
    held fixed for the pass. A reduced system that Cholesky cannot factor
    makes `solve` return None, which the caller treats as a rejected step.
    """

    # Smallest accepted eigenvalue ratio of a damped point block
    POINT_RCOND = 1e-12

    def __init__(self, layout: GraphLayout):
        self.layout = layout

    @staticmethod
    def _damp(blocks: np.ndarray, damping: float) -> np.ndarray:
        """Marquardt damping: scale every diagonal entry by (1 + damping)"""
        damped = blocks.copy()
        idx = np.arange(blocks.shape[-1])
        damped[:, idx, idx] *= 1.0 + damping
        return damped

    def _invert_points(self, damped: np.ndarray, point_active: np.ndarray):
        """Invert the damped point blocks, returning (inverses, usable mask)"""
        num_points = damped.shape[0]
        inverses = np.zeros_like(damped)
        usable = point_active & np.all(np.isfinite(damped.reshape(num_points, -1)), axis=1)
        if not np.any(usable):
            return inverses, usable

        eigvals = np.linalg.eigvalsh(damped[usable])
        largest = eigvals[:, -1]
        smallest = eigvals[:, 0]
        well_conditioned = (largest > 0.0) & (smallest > self.POINT_RCOND * largest)

        candidates = np.flatnonzero(usable)
        usable[candidates[~well_conditioned]] = False
        if np.any(usable):
            inverses[usable] = np.linalg.inv(damped[usable])
        return inverses, usable

    def solve(self, acc: Accumulators, damping: float) -> Optional[StepUpdate]:
        """
        Solve the damped system for camera twists and point deltas

        Args:
            acc: Accumulators of the current outer iteration
            damping: Marquardt damping factor lambda

        Returns:
            StepUpdate, or None if the reduced camera system is singular
        """
        layout = self.layout
        num_cameras = acc.camera_blocks.shape[0]
        num_points = acc.point_blocks.shape[0]

        point_inv, usable = self._invert_points(
            self._damp(acc.point_blocks, damping), acc.point_active
        )
        held = np.flatnonzero(acc.point_active & ~usable)
        if held.size:
            logger.debug(f"Holding {held.size} degenerate point(s) fixed for this pass")

        # Y = W V*^-1, zero for held points and inactive measurements
        Y = np.einsum("mij,mjk->mik", acc.cross, point_inv[layout.meas_point])
        Y[~acc.active] = 0.0

        camera_twists = np.zeros((num_cameras, 6), dtype=np.float64)
        num_rows = layout.num_rows
        if num_rows > 0:
            reduced_blocks = self._damp(acc.camera_blocks, damping)
            np.add.at(
                reduced_blocks, layout.meas_camera,
                -np.einsum("mij,mkj->mik", Y, acc.cross),
            )
            reduced_rhs = acc.camera_rhs.copy()
            np.add.at(
                reduced_rhs, layout.meas_camera,
                -np.einsum("mij,mj->mi", Y, acc.point_rhs[layout.meas_point]),
            )

            S = np.zeros((num_rows, num_rows), dtype=np.float64)
            rhs = np.zeros(num_rows, dtype=np.float64)
            free = np.flatnonzero(layout.camera_rows >= 0)
            for cam in free:
                row = layout.camera_rows[cam]
                S[row:row + 6, row:row + 6] = reduced_blocks[cam]
                rhs[row:row + 6] = reduced_rhs[cam]

            off_diagonal = layout.script.accumulate(acc.cross, Y)
            for (j, k), block in zip(layout.script.pairs, off_diagonal):
                rj = layout.camera_rows[j]
                rk = layout.camera_rows[k]
                S[rj:rj + 6, rk:rk + 6] -= block
                S[rk:rk + 6, rj:rj + 6] -= block.T

            if not (np.all(np.isfinite(S)) and np.all(np.isfinite(rhs))):
                logger.debug("Reduced camera system is not finite")
                return None
            try:
                factor = cho_factor(S, lower=False, check_finite=False)
            except LinAlgError as e:
                logger.debug(f"Cholesky factorisation failed: {e}")
                return None
            delta_a = cho_solve(factor, rhs, check_finite=False)
            if not np.all(np.isfinite(delta_a)):
                return None

            for cam in free:
                row = layout.camera_rows[cam]
                camera_twists[cam] = delta_a[row:row + 6]

        # db_i = V*_i^-1 (eps_b_i - sum_j W_ij^T da_j)
        point_rhs = acc.point_rhs.copy()
        np.add.at(
            point_rhs, layout.meas_point,
            -np.einsum("mji,mj->mi", acc.cross, camera_twists[layout.meas_camera]),
        )
        point_deltas = np.einsum("pij,pj->pi", point_inv, point_rhs)
        point_deltas[~usable] = 0.0

        return StepUpdate(
            camera_twists=camera_twists,
            point_deltas=point_deltas,
            held_points=held,
        )

    def num_unknowns(self) -> int:
        return self.layout.num_rows
