import numpy as np
import pytest

from covismap.geometry import KeyPoint
from covismap.keyframe import FrameData, KeyFrame
from covismap.map import Map
from covismap.mappoint import MapPoint
from covismap.triangulation import (
    compute_f12,
    skew_symmetric,
    triangulate_linear,
    triangulate_matches,
)

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])

POINTS = np.array(
    [
        [-1.0, -0.5, 5.0],
        [-0.5, 0.4, 6.0],
        [0.0, 0.0, 5.5],
        [0.5, -0.3, 4.5],
        [1.0, 0.5, 7.0],
        [0.2, 0.9, 5.0],
    ]
)


def _pose(centre):
    T = np.eye(4)
    T[:3, 3] = -np.asarray(centre, dtype=float)
    return T


def _project(T, points):
    keys = []
    for p in points:
        pc = T[:3, :3] @ p + T[:3, 3]
        u = K[0, 0] * pc[0] / pc[2] + K[0, 2]
        v = K[1, 1] * pc[1] / pc[2] + K[1, 2]
        keys.append(KeyPoint(float(u), float(v), 0))
    return keys


def _keyframe(centre, points=POINTS, bf=0.0, the_map=None):
    T = _pose(centre)
    frame = FrameData(keys=_project(T, points), K=K, Tcw=T, bf=bf)
    return KeyFrame(frame, the_map, None)


def test_skew_symmetric_is_cross_product():
    v = np.array([1.0, -2.0, 3.0])
    w = np.array([0.5, 4.0, -1.5])
    S = skew_symmetric(v)
    assert np.allclose(S @ w, np.cross(v, w))
    assert np.allclose(S, -S.T)


def test_compute_f12_satisfies_epipolar_constraint():
    the_map = Map()
    kf1 = _keyframe([0.0, 0.0, 0.0], the_map=the_map)
    kf2 = _keyframe([1.0, 0.2, 0.1], the_map=the_map)
    F12 = compute_f12(kf1, kf2)
    for k1, k2 in zip(kf1.keys_un, kf2.keys_un):
        x1 = np.array([k1.x, k1.y, 1.0])
        x2 = np.array([k2.x, k2.y, 1.0])
        assert abs(x1 @ F12 @ x2) < 1e-6


def test_triangulate_linear_recovers_point():
    T1 = _pose([0.0, 0.0, 0.0])
    T2 = _pose([1.0, 0.0, 0.0])
    point = np.array([0.3, -0.2, 4.0])
    pc1 = T1[:3, :3] @ point + T1[:3, 3]
    pc2 = T2[:3, :3] @ point + T2[:3, 3]
    xn1 = pc1 / pc1[2]
    xn2 = pc2 / pc2[2]
    result = triangulate_linear(xn1, xn2, T1[:3], T2)
    assert np.allclose(result, point, atol=1e-8)


def test_triangulate_matches_creates_points():
    the_map = Map()
    kf1 = _keyframe([0.0, 0.0, 0.0], the_map=the_map)
    kf2 = _keyframe([1.0, 0.0, 0.0], the_map=the_map)
    matches = [(i, i) for i in range(len(POINTS))]

    points = triangulate_matches(kf1, kf2, matches, the_map, False)

    assert len(points) == len(POINTS)
    assert the_map.map_points_in_map() == len(POINTS)
    for i, point in enumerate(points):
        assert np.allclose(point.world_pos(), POINTS[i], atol=1e-6)
        assert point.num_observations() == 2
        assert kf1.map_point(i) is point
        assert kf2.map_point(i) is point
        assert point.index_in_keyframe(kf2) == i


def test_wrong_matches_are_rejected():
    the_map = Map()
    kf1 = _keyframe([0.0, 0.0, 0.0], the_map=the_map)
    kf2 = _keyframe([1.0, 0.0, 0.0], the_map=the_map)
    points = triangulate_matches(kf1, kf2, [(0, 5), (5, 0)], the_map, False)
    assert points == []
    assert the_map.map_points_in_map() == 0


def test_short_stereo_baseline_creates_nothing():
    the_map = Map()
    kf1 = _keyframe([0.0, 0.0, 0.0], bf=1000.0, the_map=the_map)
    kf2 = _keyframe([1.0, 0.0, 0.0], bf=1000.0, the_map=the_map)
    points = triangulate_matches(kf1, kf2, [(0, 0), (1, 1)], the_map, False)
    assert points == []
    assert kf1.map_point(0) is None


def test_parallel_rays_are_skipped():
    the_map = Map()
    kf1 = _keyframe([0.0, 0.0, 0.0], the_map=the_map)
    kf2 = _keyframe([0.0, 0.0, 0.0], the_map=the_map)
    points = triangulate_matches(kf1, kf2, [(i, i) for i in range(3)], the_map, False)
    assert points == []


def _seed_points(keyframe, the_map, positions):
    for i, pos in enumerate(positions):
        keyframe.add_map_point(MapPoint(pos, keyframe, the_map), i)


def test_monocular_uses_scene_depth():
    the_map = Map()
    kf1 = _keyframe([0.0, 0.0, 0.0], the_map=the_map)
    kf2 = _keyframe([1.0, 0.0, 0.0], the_map=the_map)
    _seed_points(kf2, the_map, POINTS[:3])
    points = triangulate_matches(kf1, kf2, [(3, 3), (4, 4)], the_map, True)
    assert [kf1.map_point(3), kf1.map_point(4)] == points
    assert len(points) == 2


def test_monocular_far_scene_rejects_short_baseline():
    the_map = Map()
    kf1 = _keyframe([0.0, 0.0, 0.0], the_map=the_map)
    kf2 = _keyframe([1.0, 0.0, 0.0], the_map=the_map)
    far = POINTS[:3] * np.array([1.0, 1.0, 400.0])
    _seed_points(kf2, the_map, far)
    points = triangulate_matches(kf1, kf2, [(3, 3), (4, 4)], the_map, True)
    assert points == []


def test_monocular_without_scene_points_raises():
    the_map = Map()
    kf1 = _keyframe([0.0, 0.0, 0.0], the_map=the_map)
    kf2 = _keyframe([1.0, 0.0, 0.0], the_map=the_map)
    with pytest.raises(ValueError):
        triangulate_matches(kf1, kf2, [(0, 0)], the_map, True)