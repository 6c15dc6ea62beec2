"""Image frames: keypoints, calibration, pose and feature grid."""

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field
from typing import Any

import numpy as np

FRAME_GRID_ROWS = 48
FRAME_GRID_COLS = 64

_frame_ids = itertools.count()


@dataclass
class KeyPoint:
    """A detected image feature."""

    x: float
    y: float
    size: float = 0.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0

    @property
    def pt(self) -> tuple[float, float]:
        return (self.x, self.y)


def _empty_grid() -> list[list[list[int]]]:
    return [[[] for _ in range(FRAME_GRID_ROWS)] for _ in range(FRAME_GRID_COLS)]


@dataclass(eq=False)
class Frame:
    """A processed image with its features and camera pose."""

    id: int = field(default_factory=lambda: next(_frame_ids))
    timestamp: float = 0.0
    keys: list[KeyPoint] = field(default_factory=list)
    keys_un: list[KeyPoint] = field(default_factory=list)
    keys_right: list[KeyPoint] = field(default_factory=list)
    u_right: list[float] = field(default_factory=list)
    depth: list[float] = field(default_factory=list)
    descriptors: np.ndarray = field(
        default_factory=lambda: np.zeros((0, 32), dtype=np.uint8)
    )
    descriptors_right: np.ndarray = field(
        default_factory=lambda: np.zeros((0, 32), dtype=np.uint8)
    )
    map_points: list[Any] = field(default_factory=list)
    outliers: list[bool] = field(default_factory=list)
    k: np.ndarray = field(default_factory=lambda: np.eye(3))
    dist_coef: np.ndarray = field(default_factory=lambda: np.zeros(4))
    bf: float = 0.0
    b: float = 0.0
    th_depth: float = 0.0
    scale_levels: int = 1
    scale_factor: float = 1.0
    scale_factors: list[float] = field(default_factory=lambda: [1.0])
    level_sigma2: list[float] = field(default_factory=lambda: [1.0])
    min_x: float = 0.0
    max_x: float = 0.0
    min_y: float = 0.0
    max_y: float = 0.0
    grid_element_width_inv: float = 0.0
    grid_element_height_inv: float = 0.0
    grid: list[list[list[int]]] = field(default_factory=_empty_grid)
    bow_vec: dict[int, float] = field(default_factory=dict)
    feat_vec: dict[int, list[int]] = field(default_factory=dict)
    vocabulary: Any = None
    reference_keyframe: Any = None
    pose: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.k = np.asarray(self.k, dtype=float)
        if not self.keys_un:
            self.keys_un = list(self.keys)
        count = len(self.keys)
        if not self.map_points:
            self.map_points = [None] * count
        if not self.outliers:
            self.outliers = [False] * count
        self._rcw: np.ndarray | None = None
        self._tcw: np.ndarray | None = None
        self._rwc: np.ndarray | None = None
        self._ow: np.ndarray | None = None
        if self.pose is not None:
            self.set_pose(self.pose)

    @property
    def n(self) -> int:
        return len(self.keys)

    @property
    def fx(self) -> float:
        return float(self.k[0, 0])

    @property
    def fy(self) -> float:
        return float(self.k[1, 1])

    @property
    def cx(self) -> float:
        return float(self.k[0, 2])

    @property
    def cy(self) -> float:
        return float(self.k[1, 2])

    @property
    def invfx(self) -> float:
        return 1.0 / self.fx

    @property
    def invfy(self) -> float:
        return 1.0 / self.fy

    @property
    def log_scale_factor(self) -> float:
        return math.log(self.scale_factor)

    @property
    def inv_scale_factors(self) -> list[float]:
        return [1.0 / s for s in self.scale_factors]

    @property
    def inv_level_sigma2(self) -> list[float]:
        return [1.0 / s for s in self.level_sigma2]

    def set_pose(self, pose) -> None:
        """Set the camera-from-world pose and refresh rotation and centre."""
        matrix = np.array(pose, dtype=float)
        if matrix.shape not in ((3, 4), (4, 4)):
            raise ValueError(f"pose must be 3x4 or 4x4, got shape {matrix.shape}")
        if matrix.shape == (3, 4):
            matrix = np.vstack([matrix, [0.0, 0.0, 0.0, 1.0]])
        self.pose = matrix
        self._rcw = matrix[:3, :3].copy()
        self._tcw = matrix[:3, 3].copy()
        self._rwc = self._rcw.T.copy()
        self._ow = -self._rwc @ self._tcw

    def camera_center(self) -> np.ndarray:
        if self._ow is None:
            raise ValueError("frame has no pose")
        return self._ow.copy()

    def rotation_inverse(self) -> np.ndarray:
        if self._rwc is None:
            raise ValueError("frame has no pose")
        return self._rwc.copy()