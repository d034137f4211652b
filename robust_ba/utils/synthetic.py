"""
Synthetic bundle adjustment scenes for examples and tests
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from ..core.bundle import BundleAdjuster
from ..core.config import BundleConfig
from ..core.geometry import SE3
from ..core.projection import PinholeCamera, ProjectionModel


@dataclass
class SyntheticScene:
    """Ground-truth cameras, points and their projected observations"""

    model: ProjectionModel
    true_poses: List[SE3]
    true_points: np.ndarray                  # (N, 3)
    fixed: List[bool]
    observations: List[Tuple[int, int, np.ndarray]] = field(default_factory=list)

    @property
    def num_cameras(self) -> int:
        return len(self.true_poses)

    @property
    def num_points(self) -> int:
        return int(self.true_points.shape[0])

    def perturbed_state(
        self,
        rotation_noise: float = 0.01,
        translation_noise: float = 0.01,
        point_noise: float = 0.02,
        seed: int = 1,
    ) -> Tuple[List[SE3], np.ndarray]:
        """
        Initial guess: free cameras and all points moved away from the truth

        Fixed cameras keep their true pose.
        """
        rng = np.random.default_rng(seed)
        poses = []
        for pose, fixed in zip(self.true_poses, self.fixed):
            if fixed:
                poses.append(pose.copy())
                continue
            twist = np.concatenate([
                rng.normal(scale=translation_noise, size=3),
                rng.normal(scale=rotation_noise, size=3),
            ])
            poses.append(SE3.exp(twist) * pose)
        points = self.true_points + rng.normal(scale=point_noise, size=self.true_points.shape)
        return poses, points

    def corrupt(self, camera: int, point: int, offset: np.ndarray) -> None:
        """Add `offset` pixels to one observation"""
        for i, (cam, pt, uv) in enumerate(self.observations):
            if cam == camera and pt == point:
                self.observations[i] = (cam, pt, uv + np.asarray(offset, dtype=np.float64))
                return
        raise KeyError(f"No observation of point {point} in camera {camera}")

    def build(
        self,
        config: Optional[BundleConfig] = None,
        poses: Optional[List[SE3]] = None,
        points: Optional[np.ndarray] = None,
        noise_variance: float = 1.0,
    ) -> BundleAdjuster:
        """Create a BundleAdjuster holding this scene (truth unless overridden)"""
        poses = self.true_poses if poses is None else poses
        points = self.true_points if points is None else points

        ba = BundleAdjuster(self.model, config)
        for pose, fixed in zip(poses, self.fixed):
            ba.add_camera(pose, fixed=fixed)
        for position in points:
            ba.add_point(position)
        for cam, pt, uv in self.observations:
            ba.add_measurement(cam, pt, uv, noise_variance)
        return ba


def make_synthetic_scene(
    num_cameras: int = 5,
    num_points: int = 40,
    num_fixed: int = 2,
    model: Optional[ProjectionModel] = None,
    pixel_noise: float = 0.0,
    seed: int = 0,
) -> SyntheticScene:
    """
    Cameras on a line at z = -5 looking towards +z at points in [-1, 1]^3

    Args:
        num_cameras: Number of cameras
        num_points: Number of points
        num_fixed: The first `num_fixed` cameras are fixed (two fix scale)
        model: Projection model (640x480 pinhole, f = 500 if None)
        pixel_noise: Standard deviation of Gaussian noise added to observations
        seed: Random seed

    Returns:
        SyntheticScene where every camera observes every point
    """
    if num_fixed > num_cameras:
        raise ValueError(f"num_fixed ({num_fixed}) exceeds num_cameras ({num_cameras})")

    rng = np.random.default_rng(seed)
    model = model or PinholeCamera(500.0, 500.0, 320.0, 240.0)

    poses = []
    for x in np.linspace(-1.5, 1.5, num_cameras):
        center = np.array([x, rng.uniform(-0.3, 0.3), -5.0])
        rotation = Rotation.from_rotvec(rng.normal(scale=0.05, size=3)).as_matrix()
        poses.append(SE3(rotation, -rotation @ center))

    points = rng.uniform(-1.0, 1.0, size=(num_points, 3))

    observations = []
    for cam, pose in enumerate(poses):
        for pt, position in enumerate(points):
            uv = model.project_point(pose, position)
            if pixel_noise > 0.0:
                uv = uv + rng.normal(scale=pixel_noise, size=2)
            observations.append((cam, pt, uv))

    return SyntheticScene(
        model=model,
        true_poses=poses,
        true_points=points,
        fixed=[i < num_fixed for i in range(num_cameras)],
        observations=observations,
    )
