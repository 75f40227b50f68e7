"""
Rigid body pose used for cameras and tracked tools.

A pose maps points from the world (or reference) frame into the local
frame: x_local = R @ x_world + t. For cameras this is the extrinsic [R|t].
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation

from .errors import InvalidInputError


@dataclass(frozen=True, eq=False)
class Pose:
    rotation: np.ndarray     # (3, 3) proper rotation matrix
    translation: np.ndarray  # (3,)

    def __post_init__(self):
        R = np.asarray(self.rotation, dtype=np.float64)
        t = np.asarray(self.translation, dtype=np.float64).reshape(-1)
        if R.shape != (3, 3) or t.shape != (3,):
            raise InvalidInputError(
                f"Pose expects a (3, 3) rotation and a 3-vector translation, got {R.shape} and {t.shape}"
            )
        object.__setattr__(self, "rotation", R)
        object.__setattr__(self, "translation", t)

    @classmethod
    def identity(cls) -> "Pose":
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_quaternion(cls, quat_xyzw, translation) -> "Pose":
        """Build a pose from a scalar-last quaternion (normalized on the way in)."""
        return cls(Rotation.from_quat(quat_xyzw).as_matrix(), translation)

    @classmethod
    def from_matrix(cls, Rt) -> "Pose":
        """Build a pose from a 3x4 [R|t] or 4x4 homogeneous matrix."""
        Rt = np.asarray(Rt, dtype=np.float64)
        if Rt.shape not in ((3, 4), (4, 4)):
            raise InvalidInputError(f"Expected a 3x4 or 4x4 matrix, got {Rt.shape}")
        return cls(Rt[:3, :3], Rt[:3, 3])

    def as_quaternion(self) -> np.ndarray:
        """Scalar-last quaternion [x, y, z, w]."""
        return Rotation.from_matrix(self.rotation).as_quat()

    def inverse(self) -> "Pose":
        R_inv = self.rotation.T
        return Pose(R_inv, -R_inv @ self.translation)

    def __mul__(self, other: "Pose") -> "Pose":
        # (self * other).apply(x) == self.apply(other.apply(x))
        return Pose(self.rotation @ other.rotation, self.rotation @ other.translation + self.translation)

    def apply(self, points) -> np.ndarray:
        """Transform a 3-vector or an (N, 3) array of points."""
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim == 1:
            return self.rotation @ pts + self.translation
        return pts @ self.rotation.T + self.translation

    def matrix(self) -> np.ndarray:
        """3x4 [R|t]."""
        return np.hstack([self.rotation, self.translation.reshape(3, 1)])

    def projection(self, K) -> np.ndarray:
        """3x4 projection matrix K [R|t]."""
        return np.asarray(K, dtype=np.float64) @ self.matrix()

    def center(self) -> np.ndarray:
        """Position of the local frame origin in world coordinates."""
        return -self.rotation.T @ self.translation

    def __repr__(self):
        return f"Pose(quaternion={np.round(self.as_quaternion(), 6)}, translation={np.round(self.translation, 6)})"
