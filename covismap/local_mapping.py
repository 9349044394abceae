"""Local mapping: integrates new keyframes into the map and keeps it lean.

The mapper takes keyframes queued by tracking, links them to the map and the
covisibility graph, triangulates new points against covisible keyframes and
culls points and keyframes that turn out to be unreliable or redundant.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Mapping, Union

from covismap.triangulation import compute_f12, triangulate_matches

logger = logging.getLogger(__name__)

# Recently created points seen in less than this fraction of the frames
# where they were predicted to be visible are discarded.
_MIN_FOUND_RATIO = 0.25
# Neighbours searched for triangulation.
_NEIGHBOURS_STEREO = 10
_NEIGHBOURS_MONOCULAR = 20
# A keyframe is redundant when this fraction of its points is seen by
# at least _REDUNDANT_OBSERVATIONS other keyframes at the same or finer scale.
_REDUNDANT_FRACTION = 0.9
_REDUNDANT_OBSERVATIONS = 3

MatchSource = Union[
    Mapping[object, object],
    Callable[[object, object, object], object],
]


class LocalMapping:
    """Builds and maintains the local map around the most recent keyframe.

    Tracking queues keyframes with :meth:`insert_keyframe`; the mapping side
    processes them one by one. The stop, reset and finish handshakes let other
    threads pause or shut the mapper down safely.
    """

    def __init__(self, map, monocular: bool):
        self.map = map
        self.monocular = bool(monocular)
        self.loop_closer = None
        self.tracker = None
        self.current_keyframe = None
        # Raised to ask a running local bundle adjustment to give up early.
        self.abort_ba = False

        self._new_keyframes: deque = deque()
        self._recent_points: list = []
        self._new_kfs_lock = threading.Lock()

        self._reset_cond = threading.Condition()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False

        self._accept_lock = threading.Lock()
        self._accept_keyframes = True

    def set_loop_closer(self, loop_closer) -> None:
        self.loop_closer = loop_closer

    def set_tracker(self, tracker) -> None:
        self.tracker = tracker

    # Keyframe queue

    def insert_keyframe(self, keyframe) -> None:
        """Queue a keyframe and interrupt any running local bundle adjustment."""
        with self._new_kfs_lock:
            self._new_keyframes.append(keyframe)
            self.abort_ba = True

    def keyframes_in_queue(self) -> int:
        with self._new_kfs_lock:
            return len(self._new_keyframes)

    def check_new_keyframes(self) -> bool:
        with self._new_kfs_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self):
        """Take the next queued keyframe, attach its points and insert it in the map.

        Returns the keyframe, which becomes the current one.
        """
        with self._new_kfs_lock:
            if not self._new_keyframes:
                raise IndexError("no keyframe waiting to be processed")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self._recent_points.append(point)

        keyframe.update_connections()
        self.map.add_keyframe(keyframe)
        return keyframe

    def _require_current(self):
        if self.current_keyframe is None:
            raise RuntimeError("no keyframe has been processed yet")
        return self.current_keyframe

    # Map points

    def map_point_culling(self) -> int:
        """Check recently added points and discard the unreliable ones.

        Returns the number of points marked bad.
        """
        current_id = self._require_current().id
        th_obs = 2 if self.monocular else 3

        culled = 0
        kept = []
        for point in self._recent_points:
            age = current_id - point.first_kf_id
            if point.is_bad():
                continue
            if point.found_ratio() < _MIN_FOUND_RATIO:
                point.set_bad_flag()
                culled += 1
            elif age >= 2 and point.num_observations() <= th_obs:
                point.set_bad_flag()
                culled += 1
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self._recent_points = kept
        return culled

    def create_new_map_points(self, matches_by_neighbor: MatchSource) -> list:
        """Triangulate new points between the current keyframe and its best covisibles.

        ``matches_by_neighbor`` gives the epipolar matches for a neighbour: either
        a mapping from neighbour keyframe to (index in current, index in
        neighbour) pairs, or a callable ``(current, neighbour, F12)`` returning
        such pairs. Work stops early when a new keyframe is queued. Returns the
        created points.
        """
        current = self._require_current()
        nn = _NEIGHBOURS_MONOCULAR if self.monocular else _NEIGHBOURS_STEREO

        created = []
        for i, neighbour in enumerate(current.best_covisibility_keyframes(nn)):
            if i > 0 and self.check_new_keyframes():
                break
            if callable(matches_by_neighbor):
                matches = matches_by_neighbor(current, neighbour, compute_f12(current, neighbour))
            else:
                matches = matches_by_neighbor.get(neighbour, ())
            matches = list(matches or ())
            if not matches:
                continue
            points = triangulate_matches(current, neighbour, matches, self.map, self.monocular)
            self._recent_points.extend(points)
            created.extend(points)
        return created

    # Keyframes

    def keyframe_culling(self) -> list:
        """Erase covisible keyframes whose points are nearly all seen elsewhere.

        Only close stereo points are considered outside the monocular case.
        Returns the keyframes that were erased.
        """
        current = self._require_current()
        erased = []
        for keyframe in current.vector_covisible_keyframes():
            if keyframe.id == 0:
                continue
            n_points = 0
            n_redundant = 0
            for index, point in enumerate(keyframe.map_point_matches()):
                if point is None or point.is_bad():
                    continue
                if not self.monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue
                n_points += 1
                if point.num_observations() <= _REDUNDANT_OBSERVATIONS:
                    continue
                scale_level = keyframe.keys_un[index].octave
                n_obs = 0
                for other, other_index in point.observations().items():
                    if other is keyframe:
                        continue
                    if other.keys_un[other_index].octave <= scale_level + 1:
                        n_obs += 1
                        if n_obs >= _REDUNDANT_OBSERVATIONS:
                            break
                if n_obs >= _REDUNDANT_OBSERVATIONS:
                    n_redundant += 1

            if n_redundant > _REDUNDANT_FRACTION * n_points:
                keyframe.set_bad_flag()
                if keyframe.is_bad():
                    erased.append(keyframe)
        return erased

    # Stop handshake

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._new_kfs_lock:
            self.abort_ba = True

    def stop(self) -> bool:
        """Stop if a stop was requested and stopping is allowed."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                logger.info("Local Mapping STOP")
                return True
            return False

    def release(self) -> None:
        """Resume after a stop, dropping queued keyframes; no effect once finished."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_kfs_lock:
                self._new_keyframes.clear()
        logger.info("Local Mapping RELEASE")

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept_keyframes = bool(flag)

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails if already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self.abort_ba = True

    # Reset handshake

    def request_reset(self) -> None:
        """Ask for a reset and block until the mapping side has performed it."""
        with self._reset_cond:
            self._reset_requested = True
            self._reset_cond.wait_for(lambda: not self._reset_requested)

    def reset_if_requested(self) -> bool:
        """Clear queued keyframes and recent points if a reset was requested."""
        with self._reset_cond:
            if not self._reset_requested:
                return False
            with self._new_kfs_lock:
                self._new_keyframes.clear()
            self._recent_points = []
            self._reset_requested = False
            self._reset_cond.notify_all()
            return True

    # Finish handshake

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