import threading

import numpy as np
import pytest

from slammap.geometry import Sim3
from slammap.loop_closing import LoopClosing


def make_pose(angle, translation):
    c, s = np.cos(angle), np.sin(angle)
    pose = np.eye(4)
    pose[:3, :3] = [[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]]
    pose[:3, 3] = translation
    return pose


class FakeKeyFrame:
    def __init__(self, id_, pose=None, points=()):
        self.id = id_
        self._pose = np.eye(4) if pose is None else np.array(pose, dtype=float)
        self._points = list(points)
        self.loop_edges_added = []
        self.erase_calls = 0
        self._parent = None
        self._children = []
        self.tcw_gba = None
        self.tcw_bef_gba = None
        self.ba_global_for_kf = 0
        self.bow_vec = {}

    def pose(self):
        return self._pose.copy()

    def pose_inverse(self):
        return np.linalg.inv(self._pose)

    def set_pose(self, pose):
        matrix = np.array(pose, dtype=float)
        if matrix.shape == (3, 4):
            matrix = np.vstack([matrix, [0.0, 0.0, 0.0, 1.0]])
        self._pose = matrix

    def covisible_keyframes(self):
        return []

    def connected_keyframes(self):
        return set()

    def update_connections(self):
        pass

    def map_point_matches(self):
        return list(self._points)

    def map_point(self, index):
        return self._points[index]

    def add_map_point(self, point, index):
        self._points[index] = point

    def add_loop_edge(self, keyframe):
        self.loop_edges_added.append(keyframe)

    def set_not_erase(self):
        pass

    def set_erase(self):
        self.erase_calls += 1

    def children(self):
        return set(self._children)

    def parent(self):
        return self._parent

    def is_bad(self):
        return False


class FakePoint:
    def __init__(self, position, reference=None):
        self._pos = np.array(position, dtype=float)
        self.reference = reference
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba = None
        self.replaced_by = None
        self.observations = {}
        self.descriptor_updates = 0

    def world_pos(self):
        return self._pos.copy()

    def set_world_pos(self, position):
        self._pos = np.array(position, dtype=float).reshape(3)

    def is_bad(self):
        return False

    def update_normal_and_depth(self):
        pass

    def replace(self, other):
        self.replaced_by = other

    def add_observation(self, keyframe, index):
        self.observations[keyframe] = index

    def compute_distinctive_descriptors(self):
        self.descriptor_updates += 1

    def reference_keyframe(self):
        return self.reference


class FakeMap:
    def __init__(self, keyframes=(), points=()):
        self.keyframes = list(keyframes)
        self.points = list(points)
        self.big_changes = 0

    def all_keyframes(self):
        return list(self.keyframes)

    def all_map_points(self):
        return list(self.points)

    def inform_new_big_change(self):
        self.big_changes += 1


class FakeLocalMapper:
    def __init__(self):
        self.stop_requests = 0
        self.releases = 0

    def request_stop(self):
        self.stop_requests += 1

    def is_stopped(self):
        return True

    def is_finished(self):
        return False

    def release(self):
        self.releases += 1


class FakeDatabase:
    def __init__(self):
        self.added = []

    def add(self, keyframe):
        self.added.append(keyframe)

    def detect_loop_candidates(self, keyframe, min_score):
        return []


def make_loop_closing(map_=None, **kwargs):
    lc = LoopClosing(map_ or FakeMap(), FakeDatabase(), vocabulary=None, **kwargs)
    mapper = FakeLocalMapper()
    lc.set_local_mapper(mapper)
    return lc, mapper


def test_first_keyframe_is_not_queued():
    lc, _ = make_loop_closing()
    lc.insert_keyframe(FakeKeyFrame(0))
    assert not lc.check_new_keyframes()
    lc.insert_keyframe(FakeKeyFrame(5))
    assert lc.check_new_keyframes()


def test_step_hands_early_keyframe_to_database():
    database = FakeDatabase()
    lc = LoopClosing(FakeMap(), database, vocabulary=None)
    keyframe = FakeKeyFrame(3)
    lc.insert_keyframe(keyframe)
    assert lc.step() is True
    assert database.added == [keyframe]
    assert keyframe.erase_calls == 1
    assert not lc.check_new_keyframes()


def test_run_stops_when_finish_requested():
    lc, _ = make_loop_closing()
    lc.request_finish()
    assert lc.step() is False
    lc.run()
    assert lc.check_finish()
    assert lc.is_finished()


def test_request_reset_clears_queue_and_last_loop():
    lc, _ = make_loop_closing()
    lc.insert_keyframe(FakeKeyFrame(4))
    lc.detector.last_loop_kf_id = 7
    done = threading.Event()

    def serve():
        while not done.is_set():
            lc.reset_if_requested()

    worker = threading.Thread(target=serve, daemon=True)
    worker.start()
    try:
        lc.request_reset()
    finally:
        done.set()
        worker.join(timeout=5)
    assert not lc.check_new_keyframes()
    assert lc.detector.last_loop_kf_id == 0


def test_correct_loop_moves_keyframe_and_fuses_points():
    old_pose = make_pose(0.1, [1.0, 0.0, 0.0])
    target = make_pose(-0.3, [0.2, -0.5, 1.5])
    point_a = FakePoint([0.5, 1.0, 4.0])
    current = FakeKeyFrame(12, old_pose, [point_a, None])
    matched = FakeKeyFrame(2)
    loop_point = FakePoint([0.0, 0.0, 1.0])
    other_loop_point = FakePoint([1.0, 0.0, 1.0])

    essential_calls = []
    fuse_calls = []
    map_ = FakeMap()
    lc, mapper = make_loop_closing(
        map_,
        fuse=lambda kf, scw, points, th: fuse_calls.append((kf, th)) or [None] * len(points),
        optimize_essential_graph=lambda *args: essential_calls.append(args),
    )
    detector = lc.detector
    detector.current_keyframe = current
    detector.matched_keyframe = matched
    detector.scw = Sim3.from_pose(target)
    detector.current_matched_points = [other_loop_point, loop_point]
    detector.loop_map_points = []

    old_camera = old_pose[:3, :3] @ point_a.world_pos() + old_pose[:3, 3]
    lc.correct_loop()

    assert np.allclose(current.pose(), target)
    new_camera = target[:3, :3] @ point_a.world_pos() + target[:3, 3]
    assert np.allclose(new_camera, old_camera)
    assert point_a.corrected_by_kf == 12
    assert point_a.corrected_reference == 12
    assert point_a.replaced_by is other_loop_point
    assert current.map_point(1) is loop_point
    assert loop_point.observations == {current: 1}
    assert matched.loop_edges_added == [current]
    assert current.loop_edges_added == [matched]
    assert map_.big_changes == 1
    assert mapper.stop_requests == 1 and mapper.releases == 1
    assert detector.last_loop_kf_id == 12
    assert len(essential_calls) == 1
    assert essential_calls[0][1] is matched and essential_calls[0][2] is current
    assert fuse_calls == [(current, 4)]
    assert not lc.is_running_gba()


def test_correct_loop_without_loop_raises():
    lc, _ = make_loop_closing()
    with pytest.raises(ValueError):
        lc.correct_loop()


def test_search_and_fuse_replaces_duplicates():
    duplicate = FakePoint([0.0, 0.0, 2.0])
    loop_points = [FakePoint([0.0, 0.0, 1.0]), FakePoint([1.0, 1.0, 1.0])]
    seen_matrices = []

    def fuse(keyframe, scw, points, threshold):
        seen_matrices.append(scw)
        return [duplicate, None]

    lc, _ = make_loop_closing(fuse=fuse)
    lc.detector.loop_map_points = loop_points
    pose = make_pose(0.4, [1.0, 2.0, 3.0])
    lc.search_and_fuse({FakeKeyFrame(9): Sim3.from_pose(pose)})
    assert duplicate.replaced_by is loop_points[0]
    assert np.allclose(seen_matrices[0], pose)


def test_global_bundle_adjustment_propagates_correction():
    root_old = make_pose(0.0, [0.0, 0.0, 0.0])
    child_old = make_pose(0.2, [0.5, 0.0, 0.0])
    root = FakeKeyFrame(0, root_old)
    child = FakeKeyFrame(1, child_old)
    root._children = [child]
    child._parent = root
    point_opt = FakePoint([1.0, 2.0, 3.0])
    point_ref = FakePoint([0.0, 1.0, 4.0], reference=child)
    root_gba = make_pose(0.3, [0.0, 1.0, 0.0])
    calls = []

    def gba(map_, iterations, should_stop, loop_id, robust):
        calls.append((iterations, loop_id, robust, should_stop()))
        root.tcw_gba = root_gba
        root.ba_global_for_kf = loop_id
        point_opt.ba_global_for_kf = loop_id
        point_opt.pos_gba = np.array([7.0, 8.0, 9.0])

    map_ = FakeMap([root, child], [point_opt, point_ref])
    lc, mapper = make_loop_closing(map_, global_bundle_adjustment=gba)
    old_ref = point_ref.world_pos()
    lc.run_global_bundle_adjustment(5)

    assert calls == [(10, 5, False, False)]
    assert np.allclose(root.pose(), root_gba)
    assert np.allclose(root.tcw_bef_gba, root_old)
    assert np.allclose(child.pose() @ root.pose_inverse(), child_old @ np.linalg.inv(root_old))
    assert child.ba_global_for_kf == 5
    assert np.allclose(point_opt.world_pos(), [7.0, 8.0, 9.0])
    before = child.tcw_bef_gba[:3, :3] @ old_ref + child.tcw_bef_gba[:3, 3]
    after = child.pose()[:3, :3] @ point_ref.world_pos() + child.pose()[:3, 3]
    assert np.allclose(before, after)
    assert lc.is_finished_gba() and not lc.is_running_gba()
    assert map_.big_changes == 1
    assert mapper.releases == 1


def test_global_bundle_adjustment_needs_hook():
    lc, _ = make_loop_closing()
    with pytest.raises(ValueError):
        lc.run_global_bundle_adjustment(3)