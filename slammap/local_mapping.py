"""Local mapping: inserts keyframes, triangulates new points and prunes the map."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Iterable

import numpy as np

from slammap.geometry import compute_f12, triangulate
from slammap.map_point import MapPoint

logger = logging.getLogger(__name__)


@dataclass
class LocalMappingHooks:
    """Feature matching and optimisation steps supplied from outside.

    ``search_for_triangulation(keyframe1, keyframe2, f12)`` yields index pairs of
    unmatched features that satisfy the epipolar constraint.
    ``fuse(keyframe, points)`` projects map points into a keyframe and merges
    duplicates.
    ``local_bundle_adjustment(keyframe, should_abort, map_)`` refines the local
    map; ``should_abort()`` turns true when it ought to stop early.
    A hook left as None skips its step.
    """

    search_for_triangulation: Callable[[Any, Any, np.ndarray], Iterable[tuple[int, int]]] | None = None
    fuse: Callable[[Any, list[Any]], None] | None = None
    local_bundle_adjustment: Callable[[Any, Callable[[], bool], Any], None] | None = None


def _homogeneous_pose(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    return np.hstack([rotation, translation.reshape(3, 1)])


def _reprojection_ok(keyframe, rotation, translation, position, key, u_right, bf) -> bool:
    """Whether a 3D point reprojects onto the keypoint within the chi-square bound."""
    camera = rotation @ position + translation
    inv_z = 1.0 / camera[2]
    u = keyframe.fx * camera[0] * inv_z + keyframe.cx
    v = keyframe.fy * camera[1] * inv_z + keyframe.cy
    error = (u - key.x) ** 2 + (v - key.y) ** 2
    sigma2 = keyframe.level_sigma2[key.octave]
    if u_right < 0:
        return error <= 5.991 * sigma2
    u_r = u - bf * inv_z
    return error + (u_r - u_right) ** 2 <= 7.8 * sigma2


class LocalMapping:
    """Processes keyframes queued by tracking and maintains the local map."""

    def __init__(self, map_, monocular, hooks: LocalMappingHooks | None = None,
                 poll_interval: float = 0.003) -> None:
        self._map = map_
        self._monocular = bool(monocular)
        self._hooks = hooks or LocalMappingHooks()
        self._poll_interval = poll_interval

        self._loop_closer = None
        self._tracker = None

        self.current_keyframe = None
        self.recent_map_points: list[Any] = []
        self._new_keyframes: deque[Any] = deque()

        self._reset_requested = False
        self._finish_requested = False
        self._finished = True
        self._abort_ba = False
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False
        self._accept_keyframes = True

        self._new_kfs_lock = threading.Lock()
        self._reset_lock = threading.Lock()
        self._finish_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._accept_lock = threading.Lock()

    def set_loop_closer(self, loop_closer) -> None:
        self._loop_closer = loop_closer

    def set_tracker(self, tracker) -> None:
        self._tracker = tracker

    @property
    def abort_requested(self) -> bool:
        """Whether a running local bundle adjustment has been asked to stop."""
        return self._abort_ba

    # Main loop -----------------------------------------------------------

    def step(self) -> bool:
        """Run one pass of the mapping loop; False once finishing is requested."""
        self.set_accept_keyframes(False)

        if self.check_new_keyframes():
            self.process_new_keyframe()
            self.map_point_culling()
            self.create_new_map_points()

            if not self.check_new_keyframes():
                self.search_in_neighbors()

            self._abort_ba = False

            if not self.check_new_keyframes() and not self.stop_requested():
                adjust = self._hooks.local_bundle_adjustment
                if adjust is not None and self._map.keyframes_in_map() > 2:
                    adjust(self.current_keyframe, lambda: self._abort_ba, self._map)
                self.keyframe_culling()

            if self._loop_closer is not None:
                self._loop_closer.insert_keyframe(self.current_keyframe)
        elif self.stop():
            while self.is_stopped() and not self.check_finish():
                time.sleep(self._poll_interval)
            if self.check_finish():
                return False

        self.reset_if_requested()
        self.set_accept_keyframes(True)
        return not self.check_finish()

    def run(self) -> None:
        """Loop until finishing is requested, then mark the thread finished."""
        with self._finish_lock:
            self._finished = False
        while self.step():
            time.sleep(self._poll_interval)
        self.set_finish()

    # Keyframe queue --------------------------------------------------------

    def insert_keyframe(self, keyframe) -> None:
        with self._new_kfs_lock:
            self._new_keyframes.append(keyframe)
            self._abort_ba = True

    def check_new_keyframes(self) -> bool:
        with self._new_kfs_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self) -> None:
        """Take the next queued keyframe, attach its points and add it to the map."""
        with self._new_kfs_lock:
            if not self._new_keyframes:
                raise LookupError("no keyframe waiting to be processed")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        keyframe.compute_bow()

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self.recent_map_points.append(point)

        keyframe.update_connections()
        self._map.add_keyframe(keyframe)

    # Map maintenance -------------------------------------------------------

    def map_point_culling(self) -> None:
        """Drop recently created points that are rarely found or seldom observed."""
        current_id = self.current_keyframe.id
        threshold = 2 if self._monocular else 3
        kept = []
        for point in self.recent_map_points:
            age = current_id - point.first_kf_id
            if point.is_bad():
                continue
            if point.found_ratio() < 0.25:
                point.set_bad_flag()
            elif age >= 2 and point.num_observations() <= threshold:
                point.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self.recent_map_points = kept

    def create_new_map_points(self) -> None:
        """Triangulate matches between the current keyframe and its neighbours."""
        current = self.current_keyframe
        neighbours = current.best_covisibility_keyframes(20 if self._monocular else 10)

        rcw1 = current.rotation()
        rwc1 = rcw1.T
        tcw1 = current.translation()
        pose1 = _homogeneous_pose(rcw1, tcw1)
        ow1 = current.camera_center()
        ratio_factor = 1.5 * current.scale_factor
        search = self._hooks.search_for_triangulation

        for i, other in enumerate(neighbours):
            if i > 0 and self.check_new_keyframes():
                return

            ow2 = other.camera_center()
            baseline = float(np.linalg.norm(ow2 - ow1))
            if not self._monocular:
                if baseline < other.b:
                    continue
            else:
                median_depth = other.compute_scene_median_depth(2)
                if baseline / median_depth < 0.01:
                    continue

            if search is None:
                continue
            f12 = compute_f12(current.pose(), current.k, other.pose(), other.k)
            matches = list(search(current, other, f12))

            rcw2 = other.rotation()
            rwc2 = rcw2.T
            tcw2 = other.translation()
            pose2 = _homogeneous_pose(rcw2, tcw2)

            for idx1, idx2 in matches:
                kp1 = current.keys_un[idx1]
                kp1_ur = current.u_right[idx1]
                stereo1 = kp1_ur >= 0
                kp2 = other.keys_un[idx2]
                kp2_ur = other.u_right[idx2]
                stereo2 = kp2_ur >= 0

                xn1 = np.array([(kp1.x - current.cx) * current.invfx,
                                (kp1.y - current.cy) * current.invfy, 1.0])
                xn2 = np.array([(kp2.x - other.cx) * other.invfx,
                                (kp2.y - other.cy) * other.invfy, 1.0])
                ray1 = rwc1 @ xn1
                ray2 = rwc2 @ xn2
                cos_rays = float(ray1 @ ray2 / (np.linalg.norm(ray1) * np.linalg.norm(ray2)))

                cos_stereo1 = cos_stereo2 = cos_rays + 1
                if stereo1:
                    cos_stereo1 = math.cos(2 * math.atan2(current.b / 2, current.depth[idx1]))
                elif stereo2:
                    cos_stereo2 = math.cos(2 * math.atan2(other.b / 2, other.depth[idx2]))
                cos_stereo = min(cos_stereo1, cos_stereo2)

                if cos_rays < cos_stereo and cos_rays > 0 and (
                    stereo1 or stereo2 or cos_rays < 0.9998
                ):
                    x3d = triangulate(xn1, xn2, pose1, pose2)
                elif stereo1 and cos_stereo1 < cos_stereo2:
                    x3d = current.unproject_stereo(idx1)
                elif stereo2 and cos_stereo2 < cos_stereo1:
                    x3d = other.unproject_stereo(idx2)
                else:
                    continue  # no stereo and very low parallax
                if x3d is None:
                    continue

                if rcw1[2] @ x3d + tcw1[2] <= 0:
                    continue
                if rcw2[2] @ x3d + tcw2[2] <= 0:
                    continue

                if not _reprojection_ok(current, rcw1, tcw1, x3d, kp1, kp1_ur, current.bf):
                    continue
                if not _reprojection_ok(other, rcw2, tcw2, x3d, kp2, kp2_ur, current.bf):
                    continue

                dist1 = float(np.linalg.norm(x3d - ow1))
                dist2 = float(np.linalg.norm(x3d - ow2))
                if dist1 == 0 or dist2 == 0:
                    continue
                ratio_dist = dist2 / dist1
                ratio_octave = (current.scale_factors[kp1.octave]
                                / other.scale_factors[kp2.octave])
                if ratio_dist * ratio_factor < ratio_octave or ratio_dist > ratio_octave * ratio_factor:
                    continue

                point = MapPoint(x3d, current, self._map)
                point.add_observation(current, idx1)
                point.add_observation(other, idx2)
                current.add_map_point(point, idx1)
                other.add_map_point(point, idx2)
                point.compute_distinctive_descriptors()
                point.update_normal_and_depth()
                self._map.add_map_point(point)
                self.recent_map_points.append(point)

    def search_in_neighbors(self) -> None:
        """Fuse duplicated points between the current keyframe and its neighbours."""
        current = self.current_keyframe
        neighbours = current.best_covisibility_keyframes(20 if self._monocular else 10)

        targets = []
        for keyframe in neighbours:
            if keyframe.is_bad() or keyframe.fuse_target_for_kf == current.id:
                continue
            targets.append(keyframe)
            keyframe.fuse_target_for_kf = current.id
            for second in keyframe.best_covisibility_keyframes(5):
                if (second.is_bad() or second.fuse_target_for_kf == current.id
                        or second.id == current.id):
                    continue
                targets.append(second)

        fuse = self._hooks.fuse
        matches = current.map_point_matches()
        if fuse is not None:
            for keyframe in targets:
                fuse(keyframe, matches)

        candidates = []
        for keyframe in targets:
            for point in keyframe.map_point_matches():
                if point is None:
                    continue
                if point.is_bad() or point.fuse_candidate_for_kf == current.id:
                    continue
                point.fuse_candidate_for_kf = current.id
                candidates.append(point)

        if fuse is not None:
            fuse(current, candidates)

        for point in current.map_point_matches():
            if point is not None and not point.is_bad():
                point.compute_distinctive_descriptors()
                point.update_normal_and_depth()

        current.update_connections()

    def keyframe_culling(self) -> None:
        """Mark local keyframes bad when 90% of their points are seen elsewhere."""
        threshold = 3
        for keyframe in self.current_keyframe.covisible_keyframes():
            if keyframe.id == 0:
                continue
            redundant = 0
            counted = 0
            for index, point in enumerate(keyframe.map_point_matches()):
                if point is None or point.is_bad():
                    continue
                if not self._monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue
                counted += 1
                if point.num_observations() <= threshold:
                    continue
                scale_level = keyframe.keys_un[index].octave
                seen = 0
                for other, other_index in point.get_observations().items():
                    if other is keyframe:
                        continue
                    if other.keys_un[other_index].octave <= scale_level + 1:
                        seen += 1
                        if seen >= threshold:
                            break
                if seen >= threshold:
                    redundant += 1
            if redundant > 0.9 * counted:
                keyframe.set_bad_flag()

    # Stop / release --------------------------------------------------------

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._new_kfs_lock:
            self._abort_ba = True

    def stop(self) -> bool:
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                logger.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Resume after a stop, dropping keyframes queued meanwhile."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_kfs_lock:
                self._new_keyframes.clear()
        logger.info("Local Mapping RELEASE")

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag) -> None:
        with self._accept_lock:
            self._accept_keyframes = bool(flag)

    def set_not_stop(self, flag) -> bool:
        """Forbid or allow stopping; fails when forbidding while already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self._abort_ba = True

    # Reset / finish --------------------------------------------------------

    def request_reset(self) -> None:
        """Ask the mapping loop to reset and wait until it has."""
        with self._reset_lock:
            self._reset_requested = True
        while True:
            with self._reset_lock:
                if not self._reset_requested:
                    return
            time.sleep(self._poll_interval)

    def reset_if_requested(self) -> None:
        with self._reset_lock:
            if self._reset_requested:
                with self._new_kfs_lock:
                    self._new_keyframes.clear()
                self.recent_map_points = []
                self._reset_requested = False

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
            with self._stop_lock:
                self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished