"""The map: a thread-safe container of keyframes and map points."""

from __future__ import annotations

import threading
from typing import Any


class Map:
    """Holds keyframes and map points and tracks big map changes."""

    def __init__(self) -> None:
        self._map_points: dict[Any, None] = {}
        self._keyframes: dict[Any, None] = {}
        self._reference_map_points: list[Any] = []
        self._max_kf_id = 0
        self._big_change_idx = 0
        self._lock = threading.Lock()
        self.keyframe_origins: list[Any] = []
        self.map_update_lock = threading.Lock()
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_kf_id:
                self._max_kf_id = keyframe.id

    def add_map_point(self, point) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points) -> None:
        with self._lock:
            self._reference_map_points = list(points)

    def inform_new_big_change(self) -> None:
        with self._lock:
            self._big_change_idx += 1

    def last_big_change_idx(self) -> int:
        with self._lock:
            return self._big_change_idx

    def all_keyframes(self) -> list[Any]:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._map_points)

    def reference_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._reference_map_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_kf_id

    def clear(self) -> None:
        """Drop every keyframe and map point and reset the id counter."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_kf_id = 0
            self._reference_map_points = []
            self.keyframe_origins.clear()