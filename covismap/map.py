"""Container of all keyframes and map points."""

from __future__ import annotations

import threading


class Map:
    """Holds keyframes and map points; every operation is thread safe.

    Keyframes and points keep their insertion order.
    """

    def __init__(self):
        self._map_points: dict = {}
        self._keyframes: dict = {}
        self._reference_map_points: list = []
        self._max_keyframe_id = 0
        self._lock = threading.Lock()
        self.keyframe_origins: list = []
        # Held by callers while the whole map is being updated.
        self.map_update_lock = threading.Lock()
        # Keeps point identifiers unique when points are created from several threads.
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, point) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points) -> None:
        with self._lock:
            self._reference_map_points = list(points)

    def all_keyframes(self) -> list:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list:
        with self._lock:
            return list(self._map_points)

    def reference_map_points(self) -> list:
        with self._lock:
            return list(self._reference_map_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        """Drop every keyframe, point, reference point and origin."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_map_points = []
            self.keyframe_origins.clear()