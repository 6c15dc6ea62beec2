"""Loop closing: detects revisited places, corrects the map and refines it globally."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable

import numpy as np

from slammap.geometry import Sim3
from slammap.loop_detection import LoopClosingHooks, LoopDetector

logger = logging.getLogger(__name__)

_FUSE_THRESHOLD = 4
_GBA_ITERATIONS = 10


class LoopClosing:
    """Consumes keyframes from local mapping and closes loops in the map.

    Besides the detection hooks, three optional callables take part:
    ``fuse(keyframe, scw, points, threshold)`` projects ``points`` into
    ``keyframe`` with the 4x4 similarity ``scw`` and returns, for every point,
    the map point it duplicates or None;
    ``optimize_essential_graph(map_, loop_kf, current_kf, non_corrected,
    corrected, loop_connections, fix_scale)`` optimises the pose graph;
    ``global_bundle_adjustment(map_, iterations, should_stop, loop_kf_id,
    robust)`` refines all keyframes and points, storing its results in
    ``tcw_gba``/``pos_gba`` and marking them with ``ba_global_for_kf``.
    """

    def __init__(self, map_, keyframe_db, vocabulary, fix_scale: bool = True,
                 hooks: LoopClosingHooks | None = None, *,
                 fuse: Callable[..., list[Any]] | None = None,
                 optimize_essential_graph: Callable[..., None] | None = None,
                 global_bundle_adjustment: Callable[..., None] | None = None,
                 map_update_lock=None,
                 poll_interval: float = 0.005) -> None:
        self._map = map_
        self.detector = LoopDetector(keyframe_db, vocabulary, hooks, fix_scale)
        self.fix_scale = bool(fix_scale)
        self._fuse = fuse
        self._optimize_essential_graph = optimize_essential_graph
        self._global_bundle_adjustment = global_bundle_adjustment
        self._map_update_lock = map_update_lock if map_update_lock is not None else threading.RLock()
        self._poll_interval = poll_interval

        self._tracker = None
        self._local_mapper = None

        self._queue: deque[Any] = deque()
        self.current_connected_keyframes: list[Any] = []

        self._reset_requested = False
        self._finish_requested = False
        self._finished = True

        self._running_gba = False
        self._finished_gba = True
        self._stop_gba = False
        self._full_ba_idx = 0
        self._gba_thread: threading.Thread | None = None

        self._queue_lock = threading.Lock()
        self._reset_lock = threading.Lock()
        self._finish_lock = threading.Lock()
        self._gba_lock = threading.Lock()

    def set_tracker(self, tracker) -> None:
        self._tracker = tracker

    def set_local_mapper(self, local_mapper) -> None:
        self._local_mapper = local_mapper

    # Main loop -----------------------------------------------------------

    def step(self) -> bool:
        """Run one pass of the loop-closing loop; False once finishing is requested."""
        keyframe = None
        with self._queue_lock:
            if self._queue:
                keyframe = self._queue.popleft()
        if keyframe is not None:
            if self.detector.detect_loop(keyframe) and self.detector.compute_sim3(keyframe):
                self.correct_loop()
        self.reset_if_requested()
        return not self.check_finish()

    def run(self) -> None:
        """Loop until finishing is requested, then mark the thread finished."""
        with self._finish_lock:
            self._finished = False
        while self.step():
            time.sleep(self._poll_interval)
        self.set_finish()

    def insert_keyframe(self, keyframe) -> None:
        """Queue a keyframe for loop detection; the first keyframe is never queued."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    # Loop correction -----------------------------------------------------

    def _wait_local_mapper_stopped(self, or_finished: bool = False) -> None:
        mapper = self._local_mapper
        if mapper is None:
            return
        while not mapper.is_stopped():
            if or_finished and mapper.is_finished():
                return
            time.sleep(0.001)

    def correct_loop(self) -> None:
        """Propagate the loop similarity, fuse duplicated points and optimise the graph."""
        detector = self.detector
        current = detector.current_keyframe
        matched = detector.matched_keyframe
        scw = detector.scw
        if current is None or matched is None or scw is None:
            raise ValueError("no loop has been computed")
        logger.info("Loop detected!")

        if self._local_mapper is not None:
            self._local_mapper.request_stop()

        if self.is_running_gba():
            with self._gba_lock:
                self._stop_gba = True
                self._full_ba_idx += 1
                self._gba_thread = None

        self._wait_local_mapper_stopped()

        current.update_connections()
        connected = current.covisible_keyframes()
        connected.append(current)
        self.current_connected_keyframes = connected

        corrected: dict[Any, Sim3] = {current: scw}
        non_corrected: dict[Any, Sim3] = {}
        twc = current.pose_inverse()

        with self._map_update_lock:
            for keyframe in connected:
                tiw = keyframe.pose()
                if keyframe is not current:
                    tic = tiw @ twc
                    corrected[keyframe] = Sim3.from_pose(tic) @ scw
                non_corrected[keyframe] = Sim3.from_pose(tiw)

            for keyframe, corrected_siw in corrected.items():
                corrected_swi = corrected_siw.inverse()
                siw = non_corrected[keyframe]
                for point in keyframe.map_point_matches():
                    if point is None or point.is_bad():
                        continue
                    if point.corrected_by_kf == current.id:
                        continue
                    position = corrected_swi.map(siw.map(point.world_pos()))
                    point.set_world_pos(np.asarray(position, dtype=float).reshape(3))
                    point.corrected_by_kf = current.id
                    point.corrected_reference = keyframe.id
                    point.update_normal_and_depth()

                keyframe.set_pose(corrected_siw.to_se3())
                keyframe.update_connections()

            for index, loop_point in enumerate(detector.current_matched_points):
                if loop_point is None:
                    continue
                current_point = current.map_point(index)
                if current_point is not None:
                    current_point.replace(loop_point)
                else:
                    current.add_map_point(loop_point, index)
                    loop_point.add_observation(current, index)
                    loop_point.compute_distinctive_descriptors()

        self.search_and_fuse(corrected)

        loop_connections: dict[Any, set[Any]] = {}
        connected_set = set(connected)
        for keyframe in connected:
            previous = set(keyframe.covisible_keyframes())
            keyframe.update_connections()
            loop_connections[keyframe] = (
                set(keyframe.connected_keyframes()) - previous - connected_set
            )

        if self._optimize_essential_graph is not None:
            self._optimize_essential_graph(
                self._map, matched, current, non_corrected, corrected,
                loop_connections, self.fix_scale,
            )

        self._map.inform_new_big_change()

        matched.add_loop_edge(current)
        current.add_loop_edge(matched)

        if self._global_bundle_adjustment is not None:
            with self._gba_lock:
                self._running_gba = True
                self._finished_gba = False
                self._stop_gba = False
            thread = threading.Thread(
                target=self.run_global_bundle_adjustment, args=(current.id,), daemon=True
            )
            self._gba_thread = thread
            thread.start()

        if self._local_mapper is not None:
            self._local_mapper.release()

        detector.last_loop_kf_id = current.id

    def search_and_fuse(self, corrected_poses) -> None:
        """Project the loop map points into each corrected keyframe and merge duplicates."""
        if self._fuse is None:
            return
        loop_points = self.detector.loop_map_points
        for keyframe, scw in corrected_poses.items():
            replacements = self._fuse(keyframe, scw.to_matrix(), loop_points, _FUSE_THRESHOLD)
            with self._map_update_lock:
                for loop_point, replacement in zip(loop_points, replacements):
                    if replacement is not None:
                        replacement.replace(loop_point)

    # Global bundle adjustment ---------------------------------------------

    def run_global_bundle_adjustment(self, loop_keyframe_id) -> None:
        """Optimise the whole map and carry the correction to keyframes added meanwhile."""
        if self._global_bundle_adjustment is None:
            raise ValueError("no global bundle adjustment hook configured")
        logger.info("Starting Global Bundle Adjustment")

        idx = self._full_ba_idx
        self._global_bundle_adjustment(
            self._map, _GBA_ITERATIONS, lambda: self._stop_gba, loop_keyframe_id, False
        )

        with self._gba_lock:
            if idx != self._full_ba_idx:
                return

            if not self._stop_gba:
                logger.info("Global Bundle Adjustment finished")
                logger.info("Updating map ...")
                if self._local_mapper is not None:
                    self._local_mapper.request_stop()
                self._wait_local_mapper_stopped(or_finished=True)

                with self._map_update_lock:
                    self._propagate_keyframe_correction(loop_keyframe_id)
                    self._correct_map_points(loop_keyframe_id)

                self._map.inform_new_big_change()
                if self._local_mapper is not None:
                    self._local_mapper.release()
                logger.info("Map updated!")

            self._finished_gba = True
            self._running_gba = False

    def _propagate_keyframe_correction(self, loop_keyframe_id) -> None:
        roots = sorted(
            (kf for kf in self._map.all_keyframes() if kf.parent() is None),
            key=lambda kf: kf.id,
        )
        pending = deque(roots)
        while pending:
            keyframe = pending.popleft()
            twc = keyframe.pose_inverse()
            for child in sorted(keyframe.children(), key=lambda kf: kf.id):
                if child.ba_global_for_kf != loop_keyframe_id:
                    child.tcw_gba = child.pose() @ twc @ keyframe.tcw_gba
                    child.ba_global_for_kf = loop_keyframe_id
                pending.append(child)
            keyframe.tcw_bef_gba = keyframe.pose()
            keyframe.set_pose(keyframe.tcw_gba)

    def _correct_map_points(self, loop_keyframe_id) -> None:
        for point in self._map.all_map_points():
            if point.is_bad():
                continue
            if point.ba_global_for_kf == loop_keyframe_id:
                point.set_world_pos(point.pos_gba)
                continue
            reference = point.reference_keyframe()
            if reference is None or reference.ba_global_for_kf != loop_keyframe_id:
                continue
            before = np.asarray(reference.tcw_bef_gba, dtype=float)
            camera = before[:3, :3] @ point.world_pos() + before[:3, 3]
            twc = reference.pose_inverse()
            point.set_world_pos(twc[:3, :3] @ camera + twc[:3, 3])

    def is_running_gba(self) -> bool:
        with self._gba_lock:
            return self._running_gba

    def is_finished_gba(self) -> bool:
        with self._gba_lock:
            return self._finished_gba

    # Reset / finish --------------------------------------------------------

    def request_reset(self) -> None:
        """Ask the loop to reset and wait until it has."""
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
                with self._queue_lock:
                    self._queue.clear()
                self.detector.reset()
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

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished