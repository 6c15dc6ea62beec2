import itertools
import math

import numpy as np
import pytest

from slammap.frame import Frame, KeyPoint
from slammap.map import Map
from slammap.map_point import MapPoint, descriptor_distance

_ids = itertools.count(1)


class FakeKeyFrame:
    def __init__(self, center=(0.0, 0.0, 0.0), n=4, stereo=(), descriptors=None):
        self.id = next(_ids)
        self.frame_id = self.id
        self.u_right = [10.0 if i in stereo else -1.0 for i in range(n)]
        self.keys_un = [KeyPoint(0.0, 0.0, octave=0) for _ in range(n)]
        self.scale_factors = [1.0, 1.2, 1.44]
        self.scale_levels = 3
        self.log_scale_factor = math.log(1.2)
        self.descriptors = (
            descriptors if descriptors is not None else np.zeros((n, 32), dtype=np.uint8)
        )
        self.matches = [None] * n
        self.bad = False
        self._center = np.array(center, dtype=float)

    def camera_center(self):
        return self._center.copy()

    def is_bad(self):
        return self.bad

    def erase_map_point_match(self, index):
        self.matches[index] = None

    def replace_map_point_match(self, index, point):
        self.matches[index] = point


def _point(kf, world=None, position=(0.0, 0.0, 2.0)):
    world = world if world is not None else Map()
    point = MapPoint(position, kf, world)
    world.add_map_point(point)
    return point, world


def test_descriptor_distance_counts_bits():
    zeros = np.zeros(32, dtype=np.uint8)
    ones = np.full(32, 0xFF, dtype=np.uint8)
    assert descriptor_distance(zeros, zeros) == 0
    assert descriptor_distance(zeros, ones) == 256
    assert descriptor_distance(ones, zeros) == descriptor_distance(zeros, ones)


def test_descriptor_distance_rejects_mismatched_lengths():
    with pytest.raises(ValueError):
        descriptor_distance(np.zeros(32, dtype=np.uint8), np.zeros(16, dtype=np.uint8))


def test_ids_increase_and_reference_is_set():
    kf = FakeKeyFrame()
    first, world = _point(kf)
    second, _ = _point(kf, world)
    assert second.id > first.id
    assert first.reference_keyframe() is kf
    assert first.first_kf_id == kf.id


def test_add_observation_counts_stereo_twice_and_ignores_duplicates():
    kf = FakeKeyFrame(stereo={1})
    point, _ = _point(kf)
    point.add_observation(kf, 0)
    assert point.num_observations() == 1
    point.add_observation(kf, 0)
    assert point.num_observations() == 1
    other = FakeKeyFrame(stereo={1})
    point.add_observation(other, 1)
    assert point.num_observations() == 3
    assert point.index_in_keyframe(other) == 1
    assert point.is_in_keyframe(kf)


def test_index_in_unknown_keyframe_is_minus_one():
    point, _ = _point(FakeKeyFrame())
    assert point.index_in_keyframe(FakeKeyFrame()) == -1
    assert not point.is_in_keyframe(FakeKeyFrame())


def test_erase_observation_turns_point_bad():
    kf1 = FakeKeyFrame(stereo={0})
    kf2 = FakeKeyFrame(stereo={2})
    point, world = _point(kf1)
    point.add_observation(kf1, 0)
    point.add_observation(kf2, 2)
    kf2.matches[2] = point
    point.erase_observation(kf1)
    assert point.is_bad()
    assert kf2.matches[2] is None
    assert point not in world.all_map_points()
    assert point.get_observations() == {}


def test_erasing_reference_moves_reference_to_next_observer():
    kfs = [FakeKeyFrame(stereo={0}) for _ in range(3)]
    point, _ = _point(kfs[0])
    for kf in kfs:
        point.add_observation(kf, 0)
    point.erase_observation(kfs[0])
    assert not point.is_bad()
    assert point.reference_keyframe() is kfs[1]
    assert point.num_observations() == 4


def test_set_bad_flag_clears_keyframe_matches():
    kf = FakeKeyFrame()
    point, world = _point(kf)
    point.add_observation(kf, 3)
    kf.matches[3] = point
    point.set_bad_flag()
    assert kf.matches[3] is None
    assert point.is_bad()
    assert world.map_points_in_map() == 0


def test_replace_transfers_observations_and_counters():
    kf1 = FakeKeyFrame()
    kf2 = FakeKeyFrame()
    old, world = _point(kf1)
    new, _ = _point(kf2, world)
    old.add_observation(kf1, 0)
    old.add_observation(kf2, 1)
    new.add_observation(kf2, 2)
    kf1.matches[0] = old
    kf2.matches[1] = old
    old.increase_visible(3)

    old.replace(new)

    assert old.is_bad()
    assert old.replaced() is new
    assert kf1.matches[0] is new
    assert kf2.matches[1] is None
    assert new.index_in_keyframe(kf1) == 0
    assert new.index_in_keyframe(kf2) == 2
    assert new.found_ratio() == pytest.approx(2 / 6)
    assert world.all_map_points() == [new]


def test_replace_with_itself_does_nothing():
    kf = FakeKeyFrame()
    point, _ = _point(kf)
    point.add_observation(kf, 0)
    point.replace(point)
    assert not point.is_bad()
    assert point.replaced() is None


def test_found_ratio_tracks_visible_and_found():
    point, _ = _point(FakeKeyFrame())
    assert point.found_ratio() == 1.0
    point.increase_visible(3)
    point.increase_found(1)
    assert point.found_ratio() == pytest.approx(0.5)


def test_distinctive_descriptor_has_least_median_distance():
    descriptors = np.zeros((3, 32), dtype=np.uint8)
    descriptors[1, 0] = 1
    descriptors[2, :] = 0xFF
    kfs = [FakeKeyFrame(n=3, descriptors=descriptors) for _ in range(3)]
    point, _ = _point(kfs[0])
    for i, kf in enumerate(kfs):
        point.add_observation(kf, i)
    point.compute_distinctive_descriptors()
    assert np.array_equal(point.descriptor(), descriptors[0])


def test_distinctive_descriptor_skips_bad_keyframes():
    descriptors = np.zeros((2, 32), dtype=np.uint8)
    descriptors[1, :] = 0xFF
    good = FakeKeyFrame(n=2, descriptors=descriptors)
    bad = FakeKeyFrame(n=2, descriptors=descriptors)
    bad.bad = True
    point, _ = _point(good)
    point.add_observation(bad, 0)
    point.add_observation(good, 1)
    point.compute_distinctive_descriptors()
    assert np.array_equal(point.descriptor(), descriptors[1])


def test_update_normal_and_depth_and_predict_scale():
    kf = FakeKeyFrame()
    point, _ = _point(kf, position=(0.0, 0.0, 2.0))
    point.add_observation(kf, 0)
    point.update_normal_and_depth()
    assert np.allclose(point.normal(), [0.0, 0.0, 1.0])
    assert point.max_distance_invariance() == pytest.approx(1.2 * 2.0)
    assert point.min_distance_invariance() < point.max_distance_invariance()
    assert point.predict_scale(2.0, kf) == 0
    assert point.predict_scale(0.5, kf) == kf.scale_levels - 1
    assert point.predict_scale(100.0, kf) == 0


def test_set_world_pos_round_trip():
    point, _ = _point(FakeKeyFrame())
    point.set_world_pos([1.0, -2.0, 3.5])
    assert np.array_equal(point.world_pos(), [1.0, -2.0, 3.5])


def test_from_frame_uses_frame_geometry():
    descriptors = np.arange(64, dtype=np.uint8).reshape(2, 32)
    frame = Frame(
        keys=[KeyPoint(1.0, 1.0, octave=0), KeyPoint(5.0, 5.0, octave=1)],
        descriptors=descriptors,
        scale_levels=3,
        scale_factor=2.0,
        scale_factors=[1.0, 2.0, 4.0],
        pose=np.eye(4),
    )
    point = MapPoint.from_frame([0.0, 0.0, 4.0], Map(), frame, 1)
    assert point.first_kf_id == -1
    assert point.first_frame == frame.id
    assert point.reference_keyframe() is None
    assert np.allclose(point.normal(), [0.0, 0.0, 1.0])
    assert np.array_equal(point.descriptor(), descriptors[1])
    assert point.predict_scale(4.0, frame) == 1
    assert point.predict_scale(8.0, frame) == 0