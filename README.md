# slammap

The map side of a feature-based visual SLAM system. It is written in plain
Python on top of numpy.

## What is in it

- `slammap.geometry` covers rigid poses and similarity transforms:
  - `Sim3`, with `from_pose`, `inverse`, `map`, `to_matrix`, `to_se3` and
    composition through `a @ b`.
  - `skew_symmetric` and `pose_inverse`.
  - `compute_f12`, the fundamental matrix between two views.
  - `triangulate`, linear two-view triangulation of normalised image points.
    It returns `None` for a point at infinity.
- `slammap.frame` holds the per-image data that keyframes are built from:
  - `KeyPoint`.
  - `Frame`, with its keypoints, stereo coordinates, depths, descriptors,
    calibration, scale pyramid, feature grid, bag-of-words vectors and pose.
    The pose is set with `set_pose`.
- `slammap.map_point` has `MapPoint`, a 3D landmark. It keeps track of:
  - its observations in keyframes;
  - its mean viewing direction and its scale-invariance distances;
  - a representative descriptor, the one with the least median Hamming
    distance to the others. `descriptor_distance` computes that Hamming
    distance between uint8 descriptors.

  A point can also be created from a frame with `MapPoint.from_frame`. It can
  be retired with `set_bad_flag`, or merged into another point with `replace`.
- `slammap.keyframe` has `KeyFrame`, a frame kept in the map. It holds:
  - its pose, its camera centre and its stereo centre;
  - a covisibility graph, whose links are weighted by shared map points;
  - a spanning tree of parents and children, and loop edges;
  - map point associations;
  - a grid-based lookup for `features_in_area`, and `unproject_stereo`;
  - the median scene depth.

  `set_bad_flag` re-parents the keyframe's children and removes it from the
  map and from its database.
- `slammap.map` has `Map`, a thread-safe collection of keyframes and map
  points. It also keeps the highest keyframe id and a counter of big changes.
- `slammap.keyframe_database` has `KeyFrameDatabase`, an inverted index from
  vocabulary words to keyframes. It answers `detect_loop_candidates` and
  `detect_relocalization_candidates`.
- `slammap.local_mapping` has `LocalMapping`, which processes the keyframes
  queued with `insert_keyframe`. For each one it:
  - attaches the keyframe's points and updates its connections;
  - culls recently created map points;
  - triangulates new points with its covisible neighbours;
  - fuses duplicated points;
  - marks as bad the neighbours whose points are 90% seen elsewhere.
- `slammap.loop_detection` has `LoopDetector`:
  - `detect_loop` accepts a loop candidate once it has been consistent over
    several keyframes, using `ConsistentGroup`.
  - `compute_sim3` estimates the similarity to one of the accepted
    candidates.
- `slammap.loop_closing` has `LoopClosing`, which runs detection on the
  keyframes it is given. On a loop it:
  - propagates the similarity to the current keyframe's neighbourhood;
  - corrects their map points and poses;
  - fuses the duplicated points;
  - hands the pose graph to an optimiser.

  If a global bundle adjustment callable is configured, it then runs that in
  a background thread and spreads the result over the map.
- `slammap.map_drawer` has `MapDrawer`, which returns the geometry a viewer
  would render:
  - `map_point_positions`;
  - `keyframe_frustums`, built with `frustum_lines`;
  - `graph_edges`, covering covisibility edges of weight 100 or more,
    spanning-tree edges and loop edges;
  - `current_camera_frustum`;
  - `current_opengl_camera_matrix`, 16 column-major values.

  Its sizes come from a mapping of `Viewer.*` keys such as
  `Viewer.KeyFrameSize`.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Using it

```python
import numpy as np
from slammap.frame import Frame, KeyPoint
from slammap.geometry import Sim3, pose_inverse
from slammap.keyframe import KeyFrame
from slammap.map import Map
from slammap.map_point import MapPoint

pose = np.eye(4)
pose[:3, 3] = [0.5, 0.0, 1.0]

twc = pose_inverse(pose)            # camera-to-world
s = Sim3.from_pose(pose)            # scale 1 similarity
print(s.map(np.zeros(3)))           # where the world origin lands in the camera

world = Map()
frame = Frame(keys=[KeyPoint(320.0, 240.0)], u_right=[-1.0], depth=[-1.0], pose=pose)
keyframe = KeyFrame(frame, world)
world.add_keyframe(keyframe)

point = MapPoint([0.0, 0.0, 2.0], keyframe, world)
point.add_observation(keyframe, 0)
keyframe.add_map_point(point, 0)
world.add_map_point(point)
print(world.keyframes_in_map(), world.map_points_in_map(), point.num_observations())
```

`KeyFrame.update_connections` rebuilds the covisibility graph from shared map
points. On a keyframe's first connection it also picks the keyframe's parent
in the spanning tree.

`LocalMapping` and `LoopClosing` can be driven in two ways:

- one pass at a time with `step()`, which returns `False` once
  `request_finish()` has been called;
- with `run()` in a thread of your own.

Their stop, release, reset and finish requests are thread-safe.

## What you supply

The package does not extract features, match descriptors, build a vocabulary,
or run non-linear optimisation. These steps come in from outside:

- A vocabulary object. `KeyFrameDatabase` and `LoopDetector` call
  `score(bow_a, bow_b)` on it. `KeyFrame.compute_bow` calls
  `transform(descriptors, 4)`, which returns `(bow_vec, feat_vec)`.
- `LocalMappingHooks`, with three optional callables:
  - `search_for_triangulation`, for epipolar matching;
  - `fuse`, to merge duplicated points;
  - `local_bundle_adjustment`.

  A hook left as `None` skips its step.
- `LoopClosingHooks`:
  - `search_by_bow`, `make_sim3_solver` and `optimize_sim3` are required by
    `compute_sim3`;
  - `search_by_sim3` and `search_by_projection` are optional.
- The keyword callables of `LoopClosing`, all optional: `fuse`,
  `optimize_essential_graph` and `global_bundle_adjustment`.

## What it does not do

It has no camera tracking, no feature extractor, no viewer window and no
command-line program. `MapDrawer` only computes the geometry to draw; it does
not draw it. Nothing is saved to disk.