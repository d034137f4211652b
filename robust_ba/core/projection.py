"""
Camera projection models

A projection model maps normalised image-plane coordinates (x/z, y/z) to
pixel coordinates and provides the 2x2 derivative of that mapping. The
bundle adjuster does the perspective division itself and chains the
derivative, so a model only has to describe its lens.

Models operate on (N, 2) arrays and return (N, 2) pixels / (N, 2, 2)
Jacobians.
"""

from abc import ABC, abstractmethod

import numpy as np

from .geometry import SE3


class ProjectionModel(ABC):
    """
    Abstract base class for projection models

    All models must implement:
    - project: image plane -> pixels
    - projection_derivs: d(pixels) / d(image plane)
    """

    @abstractmethod
    def project(self, plane: np.ndarray) -> np.ndarray:
        """
        Project normalised image-plane coordinates to pixels

        Args:
            plane: (N, 2) coordinates (x/z, y/z)

        Returns:
            (N, 2) pixel coordinates
        """
        pass

    @abstractmethod
    def projection_derivs(self, plane: np.ndarray) -> np.ndarray:
        """
        Jacobian of `project` with respect to the image-plane coordinate

        Args:
            plane: (N, 2) coordinates (x/z, y/z)

        Returns:
            (N, 2, 2) Jacobians
        """
        pass

    def project_point(self, pose: SE3, point: np.ndarray) -> np.ndarray:
        """Project a single world point through a camera-from-world pose"""
        x_cam = pose.transform(point)
        plane = x_cam[:2] / x_cam[2]
        return self.project(plane[None, :])[0]


class PinholeCamera(ProjectionModel):
    """Distortion-free pinhole model: u = f * p + c"""

    def __init__(self, fx: float, fy: float, cx: float, cy: float):
        self.focal = np.array([fx, fy], dtype=np.float64)
        self.center = np.array([cx, cy], dtype=np.float64)

    def project(self, plane: np.ndarray) -> np.ndarray:
        plane = np.asarray(plane, dtype=np.float64)
        return plane * self.focal + self.center

    def projection_derivs(self, plane: np.ndarray) -> np.ndarray:
        n = np.asarray(plane).shape[0]
        derivs = np.zeros((n, 2, 2), dtype=np.float64)
        derivs[:, 0, 0] = self.focal[0]
        derivs[:, 1, 1] = self.focal[1]
        return derivs

    def __repr__(self) -> str:
        return (f"PinholeCamera(fx={self.focal[0]}, fy={self.focal[1]}, "
                f"cx={self.center[0]}, cy={self.center[1]})")


class ATANCamera(ProjectionModel):
    """
    Arctangent field-of-view distortion model (COLMAP "FOV")

    A point at radius r on the image plane is moved to radius
        r_d = atan(2 r tan(omega / 2)) / omega
    before the pinhole intrinsics are applied. omega == 0 is a pinhole.
    """

    # Below this radius the distortion factor uses its series expansion
    SMALL_RADIUS = 1e-6

    def __init__(self, fx: float, fy: float, cx: float, cy: float, omega: float):
        if omega < 0.0:
            raise ValueError(f"omega must be non-negative, got {omega}")
        self.focal = np.array([fx, fy], dtype=np.float64)
        self.center = np.array([cx, cy], dtype=np.float64)
        self.omega = float(omega)

    def _distortion(self, r: np.ndarray):
        """Return (g, g'(r)/r) where r_d = g(r) * r"""
        if self.omega < 1e-8:
            return np.ones_like(r), np.zeros_like(r)

        w = self.omega
        d = 2.0 * np.tan(w / 2.0)
        small = r < self.SMALL_RADIUS
        safe_r = np.where(small, 1.0, r)

        g = np.where(small, d / w, np.arctan(safe_r * d) / (w * safe_r))
        rd_prime = d / (w * (1.0 + (safe_r * d) ** 2))
        dg_over_r = np.where(small, -2.0 * d**3 / (3.0 * w), (rd_prime - g) / safe_r**2)
        return g, dg_over_r

    def project(self, plane: np.ndarray) -> np.ndarray:
        plane = np.asarray(plane, dtype=np.float64)
        r = np.linalg.norm(plane, axis=1)
        g, _ = self._distortion(r)
        return (g[:, None] * plane) * self.focal + self.center

    def projection_derivs(self, plane: np.ndarray) -> np.ndarray:
        plane = np.asarray(plane, dtype=np.float64)
        r = np.linalg.norm(plane, axis=1)
        g, dg_over_r = self._distortion(r)

        # d(g(r) p)/dp = g I + (g'(r) / r) p p^T
        derivs = dg_over_r[:, None, None] * plane[:, :, None] * plane[:, None, :]
        derivs[:, 0, 0] += g
        derivs[:, 1, 1] += g
        return self.focal[None, :, None] * derivs

    def __repr__(self) -> str:
        return (f"ATANCamera(fx={self.focal[0]}, fy={self.focal[1]}, "
                f"cx={self.center[0]}, cy={self.center[1]}, omega={self.omega})")
