import threading
import time
from dataclasses import dataclass

import numpy as np
import pytest

from covismap.keyframe import FrameData, KeyFrame
from covismap.local_mapping import LocalMapping
from covismap.map import Map
from covismap.mappoint import MapPoint

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


@dataclass
class Kp:
    x: float
    y: float
    octave: int = 0


def make_kf(map_, n=4, Tcw=None, keys=None, map_points=None):
    if keys is None:
        keys = [Kp(100.0 + 10 * i, 100.0 + 10 * i) for i in range(n)]
    frame = FrameData(
        keys=keys,
        K=K,
        Tcw=np.eye(4) if Tcw is None else Tcw,
        map_points=map_points,
    )
    return KeyFrame(frame, map_, None)


def project(Tcw, X):
    xc = Tcw[:3, :3] @ np.asarray(X, dtype=float) + Tcw[:3, 3]
    return Kp(K[0, 0] * xc[0] / xc[2] + K[0, 2], K[1, 1] * xc[1] / xc[2] + K[1, 2])


def make_point(map_, ref, observers, index, position=(0.0, 0.0, 5.0)):
    point = MapPoint(position, ref, map_)
    for kf in observers:
        point.add_observation(kf, index)
        kf.add_map_point(point, index)
    map_.add_map_point(point)
    return point


def test_queue_and_abort_flag():
    map_ = Map()
    lm = LocalMapping(map_, True)
    assert lm.keyframes_in_queue() == 0
    assert lm.check_new_keyframes() is False
    kf = make_kf(map_)
    lm.insert_keyframe(kf)
    assert lm.keyframes_in_queue() == 1
    assert lm.check_new_keyframes() is True
    assert lm.abort_ba is True


def test_process_empty_queue_raises():
    lm = LocalMapping(Map(), True)
    with pytest.raises(IndexError):
        lm.process_new_keyframe()


def test_culling_without_current_keyframe_raises():
    lm = LocalMapping(Map(), True)
    with pytest.raises(RuntimeError):
        lm.map_point_culling()
    with pytest.raises(RuntimeError):
        lm.keyframe_culling()


def test_process_new_keyframe_links_points_and_graph():
    map_ = Map()
    kf0 = make_kf(map_)
    points = [make_point(map_, kf0, [kf0], i, (0.1 * i, 0.0, 5.0)) for i in range(3)]
    kf1 = make_kf(map_, map_points=points + [None])

    lm = LocalMapping(map_, True)
    lm.insert_keyframe(kf1)
    processed = lm.process_new_keyframe()

    assert processed is kf1
    assert lm.current_keyframe is kf1
    assert lm.keyframes_in_queue() == 0
    assert all(p.is_in_keyframe(kf1) for p in points)
    assert [p.index_in_keyframe(kf1) for p in points] == [0, 1, 2]
    assert kf1.weight(kf0) == 3
    assert kf1.parent() is kf0
    assert map_.all_keyframes() == [kf1]


def test_map_point_culling_low_found_ratio():
    map_ = Map()
    kf0 = make_kf(map_)
    kf1 = make_kf(map_)
    point = make_point(map_, kf0, [kf0, kf1], 0)
    point.increase_visible(4)

    lm = LocalMapping(map_, True)
    lm.insert_keyframe(kf1)
    lm.process_new_keyframe()

    assert lm.map_point_culling() == 1
    assert point.is_bad()
    assert point not in map_.all_map_points()


@pytest.mark.parametrize("monocular, q_bad", [(True, False), (False, True)])
def test_map_point_culling_few_observations(monocular, q_bad):
    map_ = Map()
    k0 = make_kf(map_)
    k1 = make_kf(map_)
    k2 = make_kf(map_)
    p = make_point(map_, k0, [k0, k2], 0)
    q = make_point(map_, k0, [k0, k1, k2], 1)

    lm = LocalMapping(map_, monocular)
    lm.insert_keyframe(k2)
    lm.process_new_keyframe()
    culled = lm.map_point_culling()

    assert p.is_bad()
    assert q.is_bad() is q_bad
    assert culled == (2 if q_bad else 1)
    # Culling twice does not touch the survivors again.
    assert lm.map_point_culling() == 0


def _redundant_setup(monocular):
    map_ = Map()
    kfs = [make_kf(map_, n=16) for _ in range(5)]
    for j in range(16):
        make_point(map_, kfs[0], kfs, j, (0.05 * j, 0.0, 5.0))
    for kf in kfs:
        kf.update_connections()
        map_.add_keyframe(kf)
    lm = LocalMapping(map_, monocular)
    lm.insert_keyframe(kfs[0])
    lm.process_new_keyframe()
    return map_, kfs, lm


def test_keyframe_culling_removes_redundant_keyframes():
    map_, kfs, lm = _redundant_setup(True)
    erased = lm.keyframe_culling()

    assert len(erased) == 2
    assert all(kf.is_bad() for kf in erased)
    assert not kfs[0].is_bad()
    assert sum(kf.is_bad() for kf in kfs) == 2
    remaining = map_.all_keyframes()
    assert all(kf not in remaining for kf in erased)


def test_keyframe_culling_ignores_points_without_depth_in_stereo():
    _, kfs, lm = _redundant_setup(False)
    assert lm.keyframe_culling() == []
    assert not any(kf.is_bad() for kf in kfs)


def _two_view_setup():
    map_ = Map()
    Tcw2 = np.eye(4)
    Tcw2[:3, 3] = [-0.5, 0.0, 0.0]
    Tcw1 = np.eye(4)
    shared = [(-0.8, -0.3, 4.5), (0.2, 0.4, 5.5), (0.9, -0.1, 5.0)]
    new = [(-0.5, 0.2, 5.0), (0.0, 0.0, 4.0), (0.6, 0.3, 6.0), (-0.2, -0.4, 5.2)]
    world = shared + new

    kf2 = make_kf(map_, Tcw=Tcw2, keys=[project(Tcw2, X) for X in world])
    shared_points = [make_point(map_, kf2, [kf2], i, X) for i, X in enumerate(shared)]
    kf1 = make_kf(
        map_,
        Tcw=Tcw1,
        keys=[project(Tcw1, X) for X in world],
        map_points=shared_points + [None] * len(new),
    )
    lm = LocalMapping(map_, True)
    lm.insert_keyframe(kf1)
    lm.process_new_keyframe()
    matches = [(i, i) for i in range(len(shared), len(world))]
    return map_, kf1, kf2, lm, new, matches


def test_create_new_map_points_from_mapping():
    map_, kf1, kf2, lm, new, matches = _two_view_setup()
    before = map_.map_points_in_map()

    created = lm.create_new_map_points({kf2: matches})

    assert len(created) == len(new)
    assert map_.map_points_in_map() == before + len(new)
    for point, X, (i1, i2) in zip(created, new, matches):
        assert np.allclose(point.world_pos(), X, atol=1e-6)
        assert point.index_in_keyframe(kf1) == i1
        assert point.index_in_keyframe(kf2) == i2
        assert kf1.map_point(i1) is point


def test_create_new_map_points_with_callable_gets_epipolar_matrix():
    _, kf1, kf2, lm, new, matches = _two_view_setup()
    seen = []

    def source(current, neighbour, F12):
        seen.append((current, neighbour))
        for i1, i2 in matches:
            x1 = np.array([kf1.keys_un[i1].x, kf1.keys_un[i1].y, 1.0])
            x2 = np.array([kf2.keys_un[i2].x, kf2.keys_un[i2].y, 1.0])
            assert abs(x1 @ F12 @ x2) < 1e-8
        return matches

    created = lm.create_new_map_points(source)
    assert seen == [(kf1, kf2)]
    assert len(created) == len(new)


def test_create_new_map_points_skips_neighbours_without_matches():
    map_, _, _, lm, _, _ = _two_view_setup()
    before = map_.map_points_in_map()
    assert lm.create_new_map_points({}) == []
    assert map_.map_points_in_map() == before


def test_stop_and_release_handshake():
    lm = LocalMapping(Map(), True)
    assert lm.stop() is False
    lm.request_stop()
    assert lm.stop_requested() is True
    assert lm.abort_ba is True
    assert lm.stop() is True
    assert lm.is_stopped() is True
    assert lm.set_not_stop(True) is False
    # Before running the mapper counts as finished, so release changes nothing.
    lm.release()
    assert lm.is_stopped() is True
    assert lm.stop_requested() is True


def test_not_stop_blocks_stopping():
    lm = LocalMapping(Map(), False)
    assert lm.set_not_stop(True) is True
    lm.request_stop()
    assert lm.stop() is False
    assert lm.is_stopped() is False
    assert lm.set_not_stop(False) is True
    assert lm.stop() is True


def test_accept_keyframes_flag():
    lm = LocalMapping(Map(), True)
    assert lm.accept_keyframes() is True
    lm.set_accept_keyframes(False)
    assert lm.accept_keyframes() is False


def test_interrupt_ba_and_collaborators():
    lm = LocalMapping(Map(), True)
    assert lm.abort_ba is False
    lm.interrupt_ba()
    assert lm.abort_ba is True
    closer, tracker = object(), object()
    lm.set_loop_closer(closer)
    lm.set_tracker(tracker)
    assert lm.loop_closer is closer
    assert lm.tracker is tracker


def test_finish_handshake():
    lm = LocalMapping(Map(), True)
    assert lm.check_finish() is False
    lm.request_finish()
    assert lm.check_finish() is True
    lm.set_finish()
    assert lm.is_finished() is True
    assert lm.is_stopped() is True


def test_reset_without_request_does_nothing():
    map_ = Map()
    lm = LocalMapping(map_, True)
    lm.insert_keyframe(make_kf(map_))
    assert lm.reset_if_requested() is False
    assert lm.keyframes_in_queue() == 1


def test_request_reset_waits_for_mapping_side():
    map_ = Map()
    lm = LocalMapping(map_, True)
    lm.insert_keyframe(make_kf(map_))
    lm.insert_keyframe(make_kf(map_))

    requester = threading.Thread(target=lm.request_reset)
    requester.start()
    deadline = time.monotonic() + 5.0
    performed = False
    while requester.is_alive() and time.monotonic() < deadline:
        performed = lm.reset_if_requested() or performed
        time.sleep(0.001)
    requester.join(timeout=1.0)

    assert not requester.is_alive()
    assert performed is True
    assert lm.keyframes_in_queue() == 0