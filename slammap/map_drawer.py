"""Geometry for drawing the map: points, keyframe frustums, graph edges and camera."""

from __future__ import annotations

import threading
from typing import Mapping

import numpy as np

_SETTING_KEYS = {
    "keyframe_size": "Viewer.KeyFrameSize",
    "keyframe_line_width": "Viewer.KeyFrameLineWidth",
    "graph_line_width": "Viewer.GraphLineWidth",
    "point_size": "Viewer.PointSize",
    "camera_size": "Viewer.CameraSize",
    "camera_line_width": "Viewer.CameraLineWidth",
}

_COVISIBILITY_DRAW_WEIGHT = 100


def _as_matrix(pose) -> np.ndarray:
    """A 4x4 matrix from a 4x4, a 3x4, or a flat column-major 16-vector."""
    matrix = np.array(pose, dtype=float)
    if matrix.shape == (16,):
        return matrix.reshape((4, 4), order="F")
    if matrix.shape == (3, 4):
        return np.vstack([matrix, [0.0, 0.0, 0.0, 1.0]])
    if matrix.shape != (4, 4):
        raise ValueError(f"pose must be 4x4, 3x4 or 16 values, got shape {matrix.shape}")
    return matrix


def frustum_lines(size, pose=None) -> np.ndarray:
    """The eight segments of a camera frustum, shape (8, 2, 3).

    With a camera-to-world ``pose`` the segments are given in world coordinates.
    """
    w = float(size)
    h = 0.75 * w
    z = 0.6 * w
    origin = (0.0, 0.0, 0.0)
    segments = np.array([
        [origin, (w, h, z)],
        [origin, (w, -h, z)],
        [origin, (-w, -h, z)],
        [origin, (-w, h, z)],
        [(w, h, z), (w, -h, z)],
        [(-w, h, z), (-w, -h, z)],
        [(-w, h, z), (w, h, z)],
        [(-w, -h, z), (w, -h, z)],
    ], dtype=float)
    if pose is None:
        return segments
    matrix = _as_matrix(pose)
    return segments @ matrix[:3, :3].T + matrix[:3, 3]


class MapDrawer:
    """Turns the map into drawable geometry.

    ``settings`` maps the viewer keys (``Viewer.KeyFrameSize``,
    ``Viewer.PointSize`` and so on) to numbers; missing keys read as zero.
    """

    def __init__(self, map_, settings: Mapping[str, float] | None = None) -> None:
        self.map = map_
        settings = settings or {}
        self.keyframe_size = float(settings.get(_SETTING_KEYS["keyframe_size"], 0.0))
        self.keyframe_line_width = float(settings.get(_SETTING_KEYS["keyframe_line_width"], 0.0))
        self.graph_line_width = float(settings.get(_SETTING_KEYS["graph_line_width"], 0.0))
        self.point_size = float(settings.get(_SETTING_KEYS["point_size"], 0.0))
        self.camera_size = float(settings.get(_SETTING_KEYS["camera_size"], 0.0))
        self.camera_line_width = float(settings.get(_SETTING_KEYS["camera_line_width"], 0.0))
        self._camera_pose: np.ndarray | None = None
        self._camera_lock = threading.Lock()

    def map_point_positions(self) -> tuple[np.ndarray, np.ndarray]:
        """Positions of good map points: (ordinary points, reference points)."""
        points = self.map.all_map_points()
        reference = list(dict.fromkeys(self.map.reference_map_points()))
        reference_ids = {id(p) for p in reference}
        ordinary = [
            p.world_pos() for p in points
            if not p.is_bad() and id(p) not in reference_ids
        ]
        highlighted = [p.world_pos() for p in reference if not p.is_bad()]
        return (
            np.array(ordinary, dtype=float).reshape(-1, 3),
            np.array(highlighted, dtype=float).reshape(-1, 3),
        )

    def keyframe_frustums(self) -> list[np.ndarray]:
        """A frustum in world coordinates for every keyframe in the map."""
        return [
            frustum_lines(self.keyframe_size, keyframe.pose_inverse())
            for keyframe in self.map.all_keyframes()
        ]

    def graph_edges(self) -> np.ndarray:
        """Strong covisibility, spanning-tree and loop edges, shape (M, 2, 3)."""
        edges = []
        for keyframe in self.map.all_keyframes():
            center = keyframe.camera_center()
            for other in keyframe.covisibles_by_weight(_COVISIBILITY_DRAW_WEIGHT):
                if other.id < keyframe.id:
                    continue
                edges.append((center, other.camera_center()))
            parent = keyframe.parent()
            if parent is not None:
                edges.append((center, parent.camera_center()))
            for other in keyframe.loop_edges():
                if other.id < keyframe.id:
                    continue
                edges.append((center, other.camera_center()))
        return np.array(edges, dtype=float).reshape(-1, 2, 3)

    def current_camera_frustum(self, twc) -> np.ndarray:
        """Frustum of the current camera given its camera-to-world matrix."""
        return frustum_lines(self.camera_size, twc)

    def set_current_camera_pose(self, pose) -> None:
        with self._camera_lock:
            self._camera_pose = _as_matrix(pose)

    def current_opengl_camera_matrix(self) -> np.ndarray:
        """Camera-to-world matrix as 16 column-major values; identity without a pose."""
        with self._camera_lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        if pose is None:
            return np.eye(4).reshape(16)
        rwc = pose[:3, :3].T
        twc = -rwc @ pose[:3, 3]
        matrix = np.eye(4)
        matrix[:3, :3] = rwc
        matrix[:3, 3] = twc
        return matrix.flatten(order="F")