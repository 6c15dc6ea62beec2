"""Map points: 3D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any

import numpy as np

_point_ids = itertools.count()


def descriptor_distance(a, b) -> int:
    """Hamming distance between two binary descriptors stored as uint8 arrays."""
    first = np.asarray(a, dtype=np.uint8).reshape(-1)
    second = np.asarray(b, dtype=np.uint8).reshape(-1)
    if first.shape != second.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(first, second)).sum())


class MapPoint:
    """A triangulated 3D point with its observations in keyframes."""

    _global_lock = threading.Lock()

    def __init__(self, position, reference_keyframe, map_) -> None:
        self._setup(position, map_, reference_keyframe)
        self.first_kf_id = reference_keyframe.id
        self.first_frame = reference_keyframe.frame_id
        self.id = self._next_id()

    @classmethod
    def from_frame(cls, position, map_, frame, index) -> "MapPoint":
        """Create a point seen by a frame (not yet a keyframe) at feature `index`."""
        point = cls.__new__(cls)
        point._setup(position, map_, None)
        point.first_kf_id = -1
        point.first_frame = frame.id

        center = frame.camera_center()
        offset = point._world_pos - center
        point._normal = offset / np.linalg.norm(offset)

        dist = float(np.linalg.norm(offset))
        level = frame.keys_un[index].octave
        point._max_distance = dist * frame.scale_factors[level]
        point._min_distance = (
            point._max_distance / frame.scale_factors[frame.scale_levels - 1]
        )
        point._descriptor = np.array(frame.descriptors[index], copy=True)
        point.id = point._next_id()
        return point

    def _setup(self, position, map_, reference_keyframe) -> None:
        self._world_pos = np.array(position, dtype=float).reshape(3)
        self._normal = np.zeros(3)
        self._map = map_
        self._ref_kf = reference_keyframe
        self._observations: dict[Any, int] = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._descriptor: np.ndarray | None = None
        self._features_lock = threading.Lock()
        self._pos_lock = threading.Lock()

        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None

    def _next_id(self) -> int:
        with self._map.point_creation_lock:
            return next(_point_ids)

    def set_world_pos(self, position) -> None:
        with MapPoint._global_lock, self._pos_lock:
            self._world_pos = np.array(position, dtype=float).reshape(3)

    def world_pos(self) -> np.ndarray:
        with self._pos_lock:
            return self._world_pos.copy()

    def normal(self) -> np.ndarray:
        with self._pos_lock:
            return self._normal.copy()

    def reference_keyframe(self):
        with self._features_lock:
            return self._ref_kf

    def add_observation(self, keyframe, index) -> None:
        with self._features_lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe) -> None:
        """Forget one observation; the point turns bad at two or fewer."""
        bad = False
        with self._features_lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._ref_kf is keyframe:
                    self._ref_kf = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def get_observations(self) -> dict[Any, int]:
        with self._features_lock:
            return dict(self._observations)

    def num_observations(self) -> int:
        with self._features_lock:
            return self._n_obs

    def set_bad_flag(self) -> None:
        with self._features_lock, self._pos_lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replaced(self) -> "MapPoint | None":
        with self._features_lock, self._pos_lock:
            return self._replaced

    def replace(self, other: "MapPoint") -> None:
        """Hand every observation over to `other` and retire this point."""
        if other.id == self.id:
            return
        with self._features_lock, self._pos_lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._features_lock, self._pos_lock:
            return self._bad

    def increase_visible(self, n=1) -> None:
        with self._features_lock:
            self._visible += n

    def increase_found(self, n=1) -> None:
        with self._features_lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._features_lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the rest."""
        with self._features_lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            keyframe.descriptors[index]
            for keyframe, index in observations.items()
            if not keyframe.is_bad()
        ]
        if not descriptors:
            return

        distances = [[descriptor_distance(a, b) for b in descriptors] for a in descriptors]
        median_index = (len(descriptors) - 1) // 2
        medians = [sorted(row)[median_index] for row in distances]
        best = min(range(len(descriptors)), key=medians.__getitem__)

        with self._features_lock:
            self._descriptor = np.array(descriptors[best], copy=True)

    def descriptor(self) -> np.ndarray | None:
        with self._features_lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_keyframe(self, keyframe) -> int:
        with self._features_lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._features_lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._features_lock, self._pos_lock:
            if self._bad:
                return
            observations = dict(self._observations)
            reference = self._ref_kf
            position = self._world_pos.copy()
        if not observations:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            direction = position - keyframe.camera_center()
            normal += direction / np.linalg.norm(direction)

        dist = float(np.linalg.norm(position - reference.camera_center()))
        level = reference.keys_un[observations.get(reference, 0)].octave
        level_scale = reference.scale_factors[level]
        coarsest = reference.scale_factors[reference.scale_levels - 1]

        with self._pos_lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / coarsest
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._pos_lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._pos_lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist, frame) -> int:
        """Pyramid level at which the point is expected in `frame` (frame or keyframe)."""
        with self._pos_lock:
            ratio = self._max_distance / current_dist
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        if scale < 0:
            return 0
        if scale >= frame.scale_levels:
            return frame.scale_levels - 1
        return scale