"""
Rigid-body geometry helpers

Poses are camera-from-world transforms: x_cam = R @ X + t.
Twists are 6-vectors (v, omega), translation first, and perturb a pose on
the left: pose' = SE3.exp(twist) * pose.
"""

from dataclasses import dataclass, field

import numpy as np
from scipy.spatial.transform import Rotation


def skew(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix [v]x such that skew(v) @ u == cross(v, u)"""
    x, y, z = float(v[0]), float(v[1]), float(v[2])
    return np.array([[0.0, -z, y],
                     [z, 0.0, -x],
                     [-y, x, 0.0]], dtype=np.float64)


def skew_batch(v: np.ndarray) -> np.ndarray:
    """Stacked cross-product matrices for an (N, 3) array, shape (N, 3, 3)"""
    v = np.asarray(v, dtype=np.float64)
    out = np.zeros(v.shape[:-1] + (3, 3), dtype=np.float64)
    out[..., 0, 1] = -v[..., 2]
    out[..., 0, 2] = v[..., 1]
    out[..., 1, 0] = v[..., 2]
    out[..., 1, 2] = -v[..., 0]
    out[..., 2, 0] = -v[..., 1]
    out[..., 2, 1] = v[..., 0]
    return out


def quat_to_rotation_matrix(qvec: np.ndarray) -> np.ndarray:
    """Convert quaternion (w, x, y, z) to 3x3 rotation matrix"""
    qw, qx, qy, qz = np.asarray(qvec, dtype=np.float64) / np.linalg.norm(qvec)
    R = np.array([
        [1 - 2*qy**2 - 2*qz**2,     2*qx*qy - 2*qz*qw,     2*qx*qz + 2*qy*qw],
        [    2*qx*qy + 2*qz*qw, 1 - 2*qx**2 - 2*qz**2,     2*qy*qz - 2*qx*qw],
        [    2*qx*qz - 2*qy*qw,     2*qy*qz + 2*qx*qw, 1 - 2*qx**2 - 2*qy**2]
    ])
    return R


def rotation_matrix_to_quat(R: np.ndarray) -> np.ndarray:
    """Convert 3x3 rotation matrix to quaternion (w, x, y, z), w >= 0"""
    qx, qy, qz, qw = Rotation.from_matrix(R).as_quat()
    qvec = np.array([qw, qx, qy, qz])
    if qvec[0] < 0:
        qvec = -qvec
    return qvec


@dataclass(eq=False)
class SE3:
    """Rigid transform mapping world coordinates into a camera frame"""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.rotation = np.array(self.rotation, dtype=np.float64).reshape(3, 3)
        self.translation = np.array(self.translation, dtype=np.float64).reshape(3)

    @classmethod
    def identity(cls) -> "SE3":
        return cls()

    @classmethod
    def from_qvec(cls, qvec: np.ndarray, tvec: np.ndarray) -> "SE3":
        """Build from a COLMAP-style (qvec, tvec) pair"""
        return cls(quat_to_rotation_matrix(qvec), tvec)

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> "SE3":
        """Build from a 4x4 (or 3x4) homogeneous matrix"""
        matrix = np.asarray(matrix, dtype=np.float64)
        return cls(matrix[:3, :3], matrix[:3, 3])

    @classmethod
    def exp(cls, twist: np.ndarray) -> "SE3":
        """
        Exponential map se(3) -> SE(3)

        Args:
            twist: (6,) [v(3), omega(3)]
        """
        twist = np.asarray(twist, dtype=np.float64).reshape(6)
        v = twist[:3]
        w = twist[3:]
        theta = np.linalg.norm(w)

        R = Rotation.from_rotvec(w).as_matrix()
        W = skew(w)
        if theta < 1e-8:
            V = np.eye(3) + 0.5 * W + (W @ W) / 6.0
        else:
            V = (np.eye(3)
                 + (1.0 - np.cos(theta)) / theta**2 * W
                 + (theta - np.sin(theta)) / theta**3 * (W @ W))
        return cls(R, V @ v)

    def __mul__(self, other: "SE3") -> "SE3":
        return SE3(self.rotation @ other.rotation,
                   self.rotation @ other.translation + self.translation)

    def inverse(self) -> "SE3":
        Rt = self.rotation.T
        return SE3(Rt, -Rt @ self.translation)

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Apply to a (3,) point or an (N, 3) array of points"""
        points = np.asarray(points, dtype=np.float64)
        return points @ self.rotation.T + self.translation

    def center(self) -> np.ndarray:
        """Camera center in world coordinates"""
        return -self.rotation.T @ self.translation

    def to_qvec(self) -> np.ndarray:
        return rotation_matrix_to_quat(self.rotation)

    def matrix(self) -> np.ndarray:
        """4x4 homogeneous matrix"""
        T = np.eye(4)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def copy(self) -> "SE3":
        return SE3(self.rotation.copy(), self.translation.copy())

    def __repr__(self) -> str:
        return f"SE3(qvec={np.round(self.to_qvec(), 6)}, tvec={np.round(self.translation, 6)})"
