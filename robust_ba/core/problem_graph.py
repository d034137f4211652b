"""
Problem graph construction and sparsity preprocessing

Holds the three entity collections of a bundle adjustment problem:
- Camera nodes: one rigid pose each, optionally fixed
- Point nodes: one 3D position each
- Measurements: 2D observations of a point in a camera

Before solving, `preprocess` derives the structures the Schur solver walks
every iteration. They depend only on topology, so they are built once.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import numpy as np

from .exceptions import DuplicateMeasurementError, GraphLockedError, InvalidReferenceError
from .geometry import SE3

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class CameraNode:
    """Camera node in the problem graph"""

    index: int
    pose: SE3
    fixed: bool = False

    # Candidate pose of the step being tried (None outside a trial)
    trial_pose: Optional[SE3] = None

    # First row of this camera in the reduced system, -1 if fixed
    start_row: int = -1

    # Measurement indices involving this camera, ordered by point
    measurements: List[int] = field(default_factory=list)


@dataclass(eq=False)
class PointNode:
    """Point node in the problem graph"""

    index: int
    position: np.ndarray
    trial_position: Optional[np.ndarray] = None

    n_measurements: int = 0
    n_outliers: int = 0
    is_outlier: bool = False

    # Which cameras observe this point
    cameras: Set[int] = field(default_factory=set)

    # Non-fixed camera pairs (j, k), j > k, co-observing this point
    elimination_script: List[Tuple[int, int]] = field(default_factory=list)

    def degree(self) -> int:
        """Number of observing cameras"""
        return len(self.cameras)


@dataclass(eq=False)
class Measurement:
    """Observation of a point in a camera"""

    camera: int
    point: int
    observed: np.ndarray
    sqrt_inv_noise: float
    is_bad: bool = False

    @property
    def key(self) -> Tuple[int, int]:
        return (self.camera, self.point)


@dataclass
class EliminationScript:
    """
    Sparse block structure of the reduced camera system

    Every entry couples two measurements (of cameras j > k) of the same
    point and contributes -Y_ij W_ik^T to the off-diagonal block (j, k).
    Entries are grouped into `pairs`, the distinct (j, k) blocks, sorted.
    """

    pairs: List[Tuple[int, int]]
    entry_pair: np.ndarray       # (E,) slot in `pairs`
    entry_meas_j: np.ndarray     # (E,) measurement index of camera j
    entry_meas_k: np.ndarray     # (E,) measurement index of camera k
    entry_point: np.ndarray      # (E,) point index

    @property
    def num_blocks(self) -> int:
        return len(self.pairs)

    @property
    def num_entries(self) -> int:
        return int(self.entry_pair.size)

    def accumulate(self, cross: np.ndarray, cross_times_inv: np.ndarray) -> np.ndarray:
        """
        Sum the point-mediated coupling of every camera pair

        Args:
            cross: (M, 6, 3) per-measurement W = A^T B
            cross_times_inv: (M, 6, 3) per-measurement Y = W V*^-1

        Returns:
            (num_blocks, 6, 6) blocks sum(Y_ij W_ik^T) for each pair
        """
        blocks = np.zeros((self.num_blocks, 6, 6), dtype=np.float64)
        if self.num_entries == 0:
            return blocks
        terms = np.einsum(
            "eab,ecb->eac",
            cross_times_inv[self.entry_meas_j],
            cross[self.entry_meas_k],
        )
        np.add.at(blocks, self.entry_pair, terms)
        return blocks


@dataclass
class GraphLayout:
    """Flattened per-measurement index arrays, in (camera, point) order"""

    meas_camera: np.ndarray       # (M,)
    meas_point: np.ndarray        # (M,)
    observed: np.ndarray          # (M, 2)
    sqrt_inv_noise: np.ndarray    # (M,)
    camera_rows: np.ndarray       # (C,) start row, -1 for fixed
    num_rows: int
    script: EliminationScript


class ProblemGraph:
    """
    Bundle adjustment problem graph

    Entities are added during the build phase; `lock` freezes the topology
    before the first solve.
    """

    def __init__(self):
        self.cameras: List[CameraNode] = []
        self.points: List[PointNode] = []
        self.measurements: List[Measurement] = []
        self._measurement_index: Dict[Tuple[int, int], int] = {}
        self._locked = False
        self._layout: Optional[GraphLayout] = None

    def _check_unlocked(self) -> None:
        if self._locked:
            raise GraphLockedError("Problem graph topology is frozen once solving has started")

    def add_camera(self, pose: SE3, fixed: bool = False) -> int:
        """Add camera node to graph, returns its index"""
        self._check_unlocked()
        if not isinstance(pose, SE3):
            raise TypeError(f"pose must be an SE3, got {type(pose).__name__}")
        node = CameraNode(index=len(self.cameras), pose=pose.copy(), fixed=bool(fixed))
        self.cameras.append(node)
        return node.index

    def add_point(self, position: np.ndarray) -> int:
        """Add point node to graph, returns its index"""
        self._check_unlocked()
        position = np.array(position, dtype=np.float64)
        if position.shape != (3,) or not np.all(np.isfinite(position)):
            raise ValueError(f"Point position must be a finite 3-vector, got {position!r}")
        node = PointNode(index=len(self.points), position=position)
        self.points.append(node)
        return node.index

    def add_measurement(
        self,
        camera: int,
        point: int,
        observed: np.ndarray,
        noise_variance: float = 1.0,
    ) -> Tuple[int, int]:
        """
        Add a measurement of `point` in `camera`

        Args:
            camera: Camera index returned by add_camera
            point: Point index returned by add_point
            observed: Observed 2D image location
            noise_variance: Measurement noise variance (sigma^2, pixels^2)

        Returns:
            The (camera, point) key of the measurement
        """
        self._check_unlocked()
        if not (0 <= camera < len(self.cameras)):
            raise InvalidReferenceError(
                f"Camera index {camera} out of range (have {len(self.cameras)} cameras)"
            )
        if not (0 <= point < len(self.points)):
            raise InvalidReferenceError(
                f"Point index {point} out of range (have {len(self.points)} points)"
            )
        if (camera, point) in self._measurement_index:
            raise DuplicateMeasurementError(
                f"Point {point} is already measured in camera {camera}"
            )
        observed = np.array(observed, dtype=np.float64)
        if observed.shape != (2,) or not np.all(np.isfinite(observed)):
            raise ValueError(f"Observation must be a finite 2-vector, got {observed!r}")
        if not np.isfinite(noise_variance) or noise_variance <= 0.0:
            raise ValueError(f"noise_variance must be positive, got {noise_variance}")

        meas = Measurement(
            camera=camera,
            point=point,
            observed=observed,
            sqrt_inv_noise=float(np.sqrt(1.0 / noise_variance)),
        )
        self._measurement_index[meas.key] = len(self.measurements)
        self.measurements.append(meas)

        point_node = self.points[point]
        point_node.n_measurements += 1
        point_node.cameras.add(camera)
        return meas.key

    def get_measurement(self, camera: int, point: int) -> Optional[Measurement]:
        idx = self._measurement_index.get((camera, point))
        if idx is None:
            return None
        return self.measurements[idx]

    def lock(self) -> None:
        """Freeze topology; later add_* calls raise GraphLockedError"""
        self._locked = True

    @property
    def locked(self) -> bool:
        return self._locked

    def free_cameras(self) -> List[CameraNode]:
        return [cam for cam in self.cameras if not cam.fixed]

    def num_cameras(self) -> int:
        return len(self.cameras)

    def num_points(self) -> int:
        return len(self.points)

    def num_measurements(self) -> int:
        return len(self.measurements)

    def preprocess(self) -> GraphLayout:
        """
        Build the measurement order, per-camera lookups and elimination script

        Locks the graph. The result is cached: topology cannot change after.
        """
        if self._layout is not None:
            return self._layout
        self.lock()

        # Measurements grouped by camera, then by point
        self.measurements.sort(key=lambda m: (m.camera, m.point))
        self._measurement_index = {m.key: i for i, m in enumerate(self.measurements)}

        # Reduced-system rows; fixed cameras are left out of the numbering
        camera_rows = np.full(len(self.cameras), -1, dtype=np.int64)
        next_row = 0
        for cam in self.cameras:
            cam.measurements = []
            if cam.fixed:
                cam.start_row = -1
            else:
                cam.start_row = next_row
                camera_rows[cam.index] = next_row
                next_row += 6

        for idx, meas in enumerate(self.measurements):
            self.cameras[meas.camera].measurements.append(idx)

        script = self._build_elimination_script()

        num_meas = len(self.measurements)
        self._layout = GraphLayout(
            meas_camera=np.array([m.camera for m in self.measurements], dtype=np.int64),
            meas_point=np.array([m.point for m in self.measurements], dtype=np.int64),
            observed=(np.array([m.observed for m in self.measurements], dtype=np.float64)
                      if num_meas else np.zeros((0, 2))),
            sqrt_inv_noise=np.array([m.sqrt_inv_noise for m in self.measurements],
                                    dtype=np.float64),
            camera_rows=camera_rows,
            num_rows=next_row,
            script=script,
        )

        logger.info(
            f"Preprocessed graph: {len(self.cameras)} cameras "
            f"({len(self.free_cameras())} free), {len(self.points)} points, "
            f"{num_meas} measurements, {script.num_blocks} off-diagonal blocks"
        )
        return self._layout

    def _build_elimination_script(self) -> EliminationScript:
        """Record every co-observing pair of free cameras, per point"""
        entries: List[Tuple[int, int, int, int, int]] = []  # (j, k, point, meas_j, meas_k)

        for point in self.points:
            point.elimination_script = []
            free = sorted(c for c in point.cameras if not self.cameras[c].fixed)
            for a, j in enumerate(free):
                meas_j = self._measurement_index[(j, point.index)]
                for k in free[:a]:
                    meas_k = self._measurement_index[(k, point.index)]
                    point.elimination_script.append((j, k))
                    entries.append((j, k, point.index, meas_j, meas_k))

        pairs = sorted({(j, k) for j, k, _, _, _ in entries})
        pair_slot = {pair: slot for slot, pair in enumerate(pairs)}

        return EliminationScript(
            pairs=pairs,
            entry_pair=np.array([pair_slot[(j, k)] for j, k, _, _, _ in entries], dtype=np.int64),
            entry_meas_j=np.array([e[3] for e in entries], dtype=np.int64),
            entry_meas_k=np.array([e[4] for e in entries], dtype=np.int64),
            entry_point=np.array([e[2] for e in entries], dtype=np.int64),
        )

    def __repr__(self) -> str:
        return (f"ProblemGraph(cameras={self.num_cameras()}, points={self.num_points()}, "
                f"measurements={self.num_measurements()})")
