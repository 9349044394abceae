# covismap

Data structures and geometry for the mapping side of a feature-based visual
SLAM system, built on NumPy.

## Modules

- `covismap.geometry` has the two-view geometry primitives.
  - `KeyPoint` is a frozen record of `x`, `y` and `octave`.
  - `compute_h21` computes a homography by the direct linear transform.
  - `compute_f21` computes a rank-2 fundamental matrix by the eight-point method.
  - `normalize` centres keypoints and scales them to unit mean absolute
    deviation. It returns the points and the 3x3 transform.
  - `triangulate` does linear triangulation from two projection matrices.
  - `decompose_e` splits an essential matrix into two rotations and a unit
    translation.
  - `check_rt` triangulates the inlier matches under one motion hypothesis and
    counts those that pass the depth and reprojection checks. It returns a
    `CheckResult` with `n_good`, `points3d`, `good` and `parallax` in degrees.
- `covismap.initializer` has `Initializer`, which estimates the first relative
  pose of a monocular camera from two views.
  - It runs homography and fundamental-matrix RANSAC in two threads. The two
    runs use the same seeded 8-point samples.
  - It picks a model by score ratio and recovers the motion with
    `reconstruct_h` or `reconstruct_f`.
  - `initialize` returns an `InitializationResult` (`R21`, `t21`, `points3d`,
    `triangulated`), or `None` when no reliable reconstruction is found.
  - It raises `ValueError` when there are fewer than 8 matches.
- `covismap.map` has `Map`, the thread-safe container of keyframes and map
  points. Both keep their insertion order. It also holds `keyframe_origins`,
  `map_update_lock` and `point_creation_lock`.
- `covismap.mappoint` has `MapPoint`, a 3D landmark.
  - It holds its observations, its representative descriptor (chosen by least
    median Hamming distance), its mean viewing normal and its scale-invariance
    distances.
  - It supports `replace`, `set_bad_flag` and `predict_scale`.
  - The module also has `descriptor_distance`, the Hamming distance between
    byte descriptors.
- `covismap.keyframe` has `KeyFrame` and the `FrameData` record it is built
  from.
  - `KeyFrame` holds the pose, the map-point associations, the covisibility
    graph (`update_connections`, `best_covisibility_keyframes`,
    `covisibles_by_weight`), the spanning tree, loop edges and erasure
    (`set_bad_flag`).
  - It also has image queries: `features_in_area`, `is_in_image`,
    `unproject_stereo` and `compute_scene_median_depth`.
  - `FrameData` fills in neutral defaults for anything you do not give it: no
    stereo, zero descriptors, a geometric scale pyramid and an image grid.
- `covismap.keyframe_database` has `KeyFrameDatabase`, an inverted index from
  visual words to keyframes.
  - It is built from a vocabulary size and a `score(bow_a, bow_b)` callable.
    Bag-of-words vectors are mappings from word id to weight.
  - It provides `detect_loop_candidates` and
    `detect_relocalization_candidates`.
- `covismap.triangulation` has the geometry between two keyframes:
  - `skew_symmetric`, which builds the cross-product matrix of a vector.
  - `compute_f12`, the fundamental matrix between two keyframes.
  - `triangulate_linear`, which triangulates from normalized coordinates and
    two poses.
  - `triangulate_matches`, which turns matched keypoint pairs into new map
    points. It checks parallax, depth, reprojection error and scale
    consistency.
- `covismap.local_mapping` has `LocalMapping`, the local mapping stage.
  - It queues keyframes (`insert_keyframe`) and integrates them
    (`process_new_keyframe`).
  - It culls recent points (`map_point_culling`) and triangulates new ones
    against covisible keyframes (`create_new_map_points`).
  - It erases redundant keyframes (`keyframe_culling`).
  - It has the stop/release, reset and finish handshakes used between threads.
- `covismap.map_drawer` has `MapDrawer`, which turns a map into geometry that
  any renderer can draw:
  - ordinary and reference point positions,
  - keyframe and camera frustum segments (`camera_frustum_segments`),
  - covisibility, spanning-tree and loop edges,
  - a 4x4 camera-to-world matrix for the current pose.

## Installation

```
pip install .
```

## Examples

Two-view initialization:

```python
import numpy as np
from covismap.geometry import KeyPoint
from covismap.initializer import Initializer

K = np.array([[500.0, 0.0, 320.0],
              [0.0, 500.0, 240.0],
              [0.0, 0.0, 1.0]])

reference_keys = [KeyPoint(x, y) for x, y in reference_pixels]
current_keys = [KeyPoint(x, y) for x, y in current_pixels]
matches12 = list(range(len(reference_keys)))  # a negative entry marks an unmatched feature

initializer = Initializer(reference_keys, K, 1.0, 200)
result = initializer.initialize(current_keys, matches12)
if result is not None:
    print(result.R21, result.t21)
```

A map with one keyframe and one point:

```python
import numpy as np
from covismap.geometry import KeyPoint
from covismap.keyframe import FrameData, KeyFrame
from covismap.map import Map
from covismap.mappoint import MapPoint

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
world = Map()
frame = FrameData(keys=[KeyPoint(100.0, 120.0)], K=K, Tcw=np.eye(4))
keyframe = KeyFrame(frame, world, None)
world.add_keyframe(keyframe)

point = MapPoint([0.0, 0.0, 5.0], keyframe, world)
point.add_observation(keyframe, 0)
keyframe.add_map_point(point, 0)
world.add_map_point(point)

print(world.keyframes_in_map(), world.map_points_in_map(), point.num_observations())
```

## What it does not do

This package is a library. It has no command, no viewer window and no
storage format for maps. It does not include the following:

- feature extraction;
- descriptor matching;
- a visual vocabulary;
- camera tracking;
- loop closing;
- bundle adjustment.

Each of these is left to the caller, as follows:

- `LocalMapping` has no thread loop of its own. The caller runs its steps and
  handshakes.
- `LocalMapping.create_new_map_points` takes the epipolar matches from you,
  either as a mapping or as a callable.
- `KeyFrameDatabase` takes the bag-of-words score function from you.
- `MapDrawer` returns arrays and leaves the drawing to your renderer.

## Running the tests

```
pip install .[test]
pytest
```