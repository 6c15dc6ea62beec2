"""Rigid and similarity transforms and two-view geometry helpers."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def _as_pose(pose) -> np.ndarray:
    matrix = np.asarray(pose, dtype=float)
    if matrix.shape not in ((3, 4), (4, 4)):
        raise ValueError(f"pose must be 3x4 or 4x4, got shape {matrix.shape}")
    return matrix


@dataclass(eq=False)
class Sim3:
    """Similarity transform p -> scale * rotation @ p + translation."""

    rotation: np.ndarray
    translation: np.ndarray
    scale: float = 1.0

    def __post_init__(self) -> None:
        self.rotation = np.array(self.rotation, dtype=float).reshape(3, 3)
        self.translation = np.array(self.translation, dtype=float).reshape(3)
        self.scale = float(self.scale)
        if self.scale == 0.0:
            raise ValueError("scale of a similarity transform cannot be zero")

    @classmethod
    def from_pose(cls, pose) -> "Sim3":
        """Build a unit-scale transform from a rigid 3x4 or 4x4 pose."""
        matrix = _as_pose(pose)
        return cls(matrix[:3, :3], matrix[:3, 3], 1.0)

    def inverse(self) -> "Sim3":
        inv_rotation = self.rotation.T
        inv_scale = 1.0 / self.scale
        return Sim3(inv_rotation, -inv_scale * (inv_rotation @ self.translation), inv_scale)

    def map(self, point) -> np.ndarray:
        p = np.asarray(point, dtype=float).reshape(3)
        return self.scale * (self.rotation @ p) + self.translation

    def to_matrix(self) -> np.ndarray:
        """Homogeneous 4x4 matrix [sR t; 0 1]."""
        matrix = np.eye(4)
        matrix[:3, :3] = self.scale * self.rotation
        matrix[:3, 3] = self.translation
        return matrix

    def to_se3(self) -> np.ndarray:
        """Rigid 4x4 pose [R t/s; 0 1] with the scale taken out of the translation."""
        matrix = np.eye(4)
        matrix[:3, :3] = self.rotation
        matrix[:3, 3] = self.translation / self.scale
        return matrix

    def __matmul__(self, other: "Sim3") -> "Sim3":
        if not isinstance(other, Sim3):
            return NotImplemented
        return Sim3(
            self.rotation @ other.rotation,
            self.scale * (self.rotation @ other.translation) + self.translation,
            self.scale * other.scale,
        )


def skew_symmetric(v) -> np.ndarray:
    """Matrix [v]x such that [v]x @ w equals the cross product v x w."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def pose_inverse(pose) -> np.ndarray:
    """Inverse of a rigid pose, returned as 4x4."""
    matrix = _as_pose(pose)
    rotation_t = matrix[:3, :3].T
    inverse = np.eye(4)
    inverse[:3, :3] = rotation_t
    inverse[:3, 3] = -rotation_t @ matrix[:3, 3]
    return inverse


def compute_f12(pose1, k1, pose2, k2) -> np.ndarray:
    """Fundamental matrix F12 with x1^T F12 x2 = 0 for camera-from-world poses."""
    t1 = _as_pose(pose1)
    t2 = _as_pose(pose2)
    r1w, t1w = t1[:3, :3], t1[:3, 3]
    r2w, t2w = t2[:3, :3], t2[:3, 3]
    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w
    k1 = np.asarray(k1, dtype=float)
    k2 = np.asarray(k2, dtype=float)
    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)


def triangulate(xn1, xn2, pose1, pose2) -> np.ndarray | None:
    """Linear triangulation of normalised image points; None at infinity."""
    a1 = np.asarray(xn1, dtype=float).reshape(-1)
    a2 = np.asarray(xn2, dtype=float).reshape(-1)
    p1 = _as_pose(pose1)[:3]
    p2 = _as_pose(pose2)[:3]
    system = np.vstack(
        [
            a1[0] * p1[2] - p1[0],
            a1[1] * p1[2] - p1[1],
            a2[0] * p2[2] - p2[0],
            a2[1] * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(system)
    homogeneous = vt[3]
    if homogeneous[3] == 0:
        return None
    return homogeneous[:3] / homogeneous[3]