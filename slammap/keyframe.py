"""Keyframes: frames kept in the map, with covisibility graph and spanning tree."""

from __future__ import annotations

import itertools
import math
import threading
from collections import Counter
from typing import Any

import numpy as np

from slammap.frame import FRAME_GRID_COLS, FRAME_GRID_ROWS
from slammap.geometry import pose_inverse

_keyframe_ids = itertools.count()

_CONNECTION_THRESHOLD = 15


def _ordered_by_weight(pairs) -> tuple[list[Any], list[int]]:
    """Split (weight, keyframe) pairs into keyframes and weights, heaviest first."""
    ordered = sorted(pairs, key=lambda pair: (pair[0], pair[1].id), reverse=True)
    return [kf for _, kf in ordered], [weight for weight, _ in ordered]


class KeyFrame:
    """A frame promoted into the map.

    The vocabulary, when used, must provide ``transform(descriptors, levels_up)``
    returning a ``(bow_vec, feat_vec)`` pair.
    """

    def __init__(self, frame, map_, keyframe_db=None) -> None:
        if frame.pose is None:
            raise ValueError("a keyframe needs a frame with a pose")
        self.id = next(_keyframe_ids)
        self.frame_id = frame.id
        self.timestamp = frame.timestamp

        self.grid_cols = FRAME_GRID_COLS
        self.grid_rows = FRAME_GRID_ROWS
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv

        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.ba_global_for_kf = 0

        self.k = np.array(frame.k, dtype=float)
        self.bf = frame.bf
        self.b = frame.b
        self.th_depth = frame.th_depth

        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.u_right = list(frame.u_right)
        self.depth = list(frame.depth)
        self.descriptors = np.array(frame.descriptors, copy=True)

        self.bow_vec = dict(frame.bow_vec)
        self.feat_vec = {node: list(ids) for node, ids in frame.feat_vec.items()}

        self.tcp: np.ndarray | None = None

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)

        self.min_x = int(frame.min_x)
        self.min_y = int(frame.min_y)
        self.max_x = int(frame.max_x)
        self.max_y = int(frame.max_y)

        self.keyframe_db = keyframe_db
        self.vocabulary = frame.vocabulary
        self._map = map_

        self._map_points: list[Any] = list(frame.map_points)
        self._grid = [[list(cell) for cell in column] for column in frame.grid]

        self._connected_weights: dict[Any, int] = {}
        self._ordered_connected: list[Any] = []
        self._ordered_weights: list[int] = []

        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: dict[Any, None] = {}
        self._loop_edges: dict[Any, None] = {}

        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self._half_baseline = frame.b / 2

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self.set_pose(frame.pose)

    # Calibration ---------------------------------------------------------

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
    def inv_level_sigma2(self) -> list[float]:
        return [1.0 / s for s in self.level_sigma2]

    # Pose ----------------------------------------------------------------

    def set_pose(self, pose) -> None:
        """Set the camera-from-world pose and derive its inverse and centres."""
        matrix = np.array(pose, dtype=float)
        if matrix.shape not in ((3, 4), (4, 4)):
            raise ValueError(f"pose must be 3x4 or 4x4, got shape {matrix.shape}")
        if matrix.shape == (3, 4):
            matrix = np.vstack([matrix, [0.0, 0.0, 0.0, 1.0]])
        with self._pose_lock:
            self._tcw = matrix
            self._twc = pose_inverse(matrix)
            self._ow = self._twc[:3, 3].copy()
            center = np.array([self._half_baseline, 0.0, 0.0, 1.0])
            self._cw = (self._twc @ center)[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """World position of the midpoint of the stereo baseline."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Bag of words ---------------------------------------------------------

    def compute_bow(self) -> None:
        """Fill the bag-of-words vectors from the descriptors if missing."""
        if self.bow_vec and self.feat_vec:
            return
        if self.vocabulary is None:
            raise ValueError("keyframe has no vocabulary")
        bow_vec, feat_vec = self.vocabulary.transform(list(self.descriptors), 4)
        self.bow_vec = dict(bow_vec)
        self.feat_vec = {node: list(ids) for node, ids in feat_vec.items()}

    # Covisibility graph ---------------------------------------------------

    def add_connection(self, keyframe, weight) -> None:
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    def erase_connection(self, keyframe) -> None:
        with self._connections_lock:
            if keyframe not in self._connected_weights:
                return
            del self._connected_weights[keyframe]
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        with self._connections_lock:
            pairs = [(w, kf) for kf, w in self._connected_weights.items()]
            self._ordered_connected, self._ordered_weights = _ordered_by_weight(pairs)

    def update_connections(self) -> None:
        """Rebuild covisibility links from the map points shared with other keyframes."""
        with self._features_lock:
            points = list(self._map_points)

        counter: Counter = Counter()
        for point in points:
            if point is None or point.is_bad():
                continue
            for other in point.get_observations():
                if other.id == self.id:
                    continue
                counter[other] += 1

        if not counter:
            return

        max_count = 0
        best = None
        pairs = []
        for other, count in counter.items():
            if count > max_count:
                max_count = count
                best = other
            if count >= _CONNECTION_THRESHOLD:
                pairs.append((count, other))
                other.add_connection(self, count)

        if not pairs:
            pairs.append((max_count, best))
            best.add_connection(self, max_count)

        ordered, weights = _ordered_by_weight(pairs)

        with self._connections_lock:
            self._connected_weights = dict(counter)
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    def connected_keyframes(self) -> set[Any]:
        with self._connections_lock:
            return set(self._connected_weights)

    def covisible_keyframes(self) -> list[Any]:
        """Connected keyframes, heaviest link first."""
        with self._connections_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n) -> list[Any]:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, w) -> list[Any]:
        """Connected keyframes before the first link lighter than `w`.

        Returns nothing when no link is lighter than `w`.
        """
        with self._connections_lock:
            if not self._ordered_connected:
                return []
            cut = next(
                (i for i, weight in enumerate(self._ordered_weights) if weight < w),
                None,
            )
            if cut is None:
                return []
            return list(self._ordered_connected[:cut])

    def weight(self, keyframe) -> int:
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    # Spanning tree --------------------------------------------------------

    def add_child(self, keyframe) -> None:
        with self._connections_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe) -> None:
        with self._connections_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe) -> None:
        with self._connections_lock:
            self._parent = keyframe
            keyframe.add_child(self)

    def children(self) -> set[Any]:
        with self._connections_lock:
            return set(self._children)

    def parent(self):
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    # Loop edges -----------------------------------------------------------

    def add_loop_edge(self, keyframe) -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set[Any]:
        with self._connections_lock:
            return set(self._loop_edges)

    # Map point observations -----------------------------------------------

    def add_map_point(self, point, index) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index_or_point) -> None:
        """Clear the match at an index, or wherever the given map point is matched."""
        if isinstance(index_or_point, (int, np.integer)):
            with self._features_lock:
                self._map_points[int(index_or_point)] = None
            return
        index = index_or_point.index_in_keyframe(self)
        if index >= 0:
            with self._features_lock:
                self._map_points[index] = None

    def replace_map_point_match(self, index, point) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def map_points(self) -> set[Any]:
        """Matched map points that are not bad."""
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def map_point_matches(self) -> list[Any]:
        with self._features_lock:
            return list(self._map_points)

    def tracked_map_points(self, min_obs) -> int:
        """Count good map points, optionally only those with at least `min_obs` observations."""
        with self._features_lock:
            points = list(self._map_points[: self.n])
        check_obs = min_obs > 0
        return sum(
            1
            for point in points
            if point is not None
            and not point.is_bad()
            and (not check_obs or point.num_observations() >= min_obs)
        )

    def map_point(self, index):
        with self._features_lock:
            return self._map_points[index]

    # Keypoints ------------------------------------------------------------

    def features_in_area(self, x, y, r) -> list[int]:
        """Indices of undistorted keypoints strictly within `r` of (x, y) on each axis."""
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return []
        max_cell_x = min(
            self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv)
        )
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return []
        max_cell_y = min(
            self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv)
        )
        if max_cell_y < 0:
            return []

        indices = []
        for ix in range(min_cell_x, max_cell_x + 1):
            for iy in range(min_cell_y, max_cell_y + 1):
                for index in self._grid[ix][iy]:
                    key = self.keys_un[index]
                    if abs(key.x - x) < r and abs(key.y - y) < r:
                        indices.append(index)
        return indices

    def unproject_stereo(self, i) -> np.ndarray | None:
        """World position of keypoint `i` from its depth, or None without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        key = self.keys[i]
        x = (key.x - self.cx) * z * self.invfx
        y = (key.y - self.cy) * z * self.invfy
        point = np.array([x, y, z])
        with self._pose_lock:
            return self._twc[:3, :3] @ point + self._twc[:3, 3]

    def is_in_image(self, x, y) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    # Erasure --------------------------------------------------------------

    def set_not_erase(self) -> None:
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove this keyframe from the graph, the tree, the map and the database."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for other in connected:
            other.erase_connection(self)

        with self._features_lock:
            points = list(self._map_points)
        for point in points:
            if point is not None:
                point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights.clear()
            self._ordered_connected = []
            self._ordered_weights = []

            candidates = [self._parent] if self._parent is not None else []
            while self._children:
                best_weight = -1
                chosen_child = None
                chosen_parent = None
                for child in self._children:
                    if child.is_bad():
                        continue
                    for neighbour in child.covisible_keyframes():
                        for candidate in candidates:
                            if neighbour.id != candidate.id:
                                continue
                            w = child.weight(neighbour)
                            if w > best_weight:
                                chosen_child = child
                                chosen_parent = neighbour
                                best_weight = w
                if chosen_child is None:
                    break
                chosen_child.change_parent(chosen_parent)
                candidates.append(chosen_child)
                del self._children[chosen_child]

            if self._parent is not None:
                for child in list(self._children):
                    child.change_parent(self._parent)
                self._parent.erase_child(self)
                with self._pose_lock:
                    self.tcp = self._tcw @ self._parent.pose_inverse()
            self._bad = True

        self._map.erase_keyframe(self)
        if self.keyframe_db is not None:
            self.keyframe_db.erase(self)

    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def compute_scene_median_depth(self, q) -> float:
        """Depth of the matched map points at quantile 1/q (q=2 gives the median)."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(row @ point.world_pos() + zcw)
            for point in points[: self.n]
            if point is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points to compute a depth from")
        return depths[(len(depths) - 1) // q]