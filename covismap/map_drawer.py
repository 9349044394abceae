"""Geometry for visualising the map: points, keyframe frustums and graph edges."""

from __future__ import annotations

import threading

import numpy as np

# Keyframe graph edges are drawn for covisibility links at least this strong.
GRAPH_MIN_WEIGHT = 100


def camera_frustum_segments(size: float) -> np.ndarray:
    """Line segments (8 x 2 x 3) of a camera frustum drawn in camera coordinates."""
    w = size
    h = w * 0.75
    z = w * 0.6
    origin = (0.0, 0.0, 0.0)
    a = (w, h, z)
    b = (w, -h, z)
    c = (-w, -h, z)
    d = (-w, h, z)
    segments = [
        (origin, a),
        (origin, b),
        (origin, c),
        (origin, d),
        (a, b),
        (d, c),
        (d, a),
        (c, b),
    ]
    return np.array(segments, dtype=float)


def _transform(segments: np.ndarray, T: np.ndarray) -> np.ndarray:
    return segments @ T[:3, :3].T + T[:3, 3]


def _segments(pairs) -> np.ndarray:
    if not pairs:
        return np.zeros((0, 2, 3))
    return np.array(pairs, dtype=float)


def _positions(points) -> np.ndarray:
    if not points:
        return np.zeros((0, 3))
    return np.array([np.asarray(p.world_pos(), dtype=float).reshape(3) for p in points])


class MapDrawer:
    """Produces drawable geometry from a map and the current camera pose."""

    def __init__(self, map, keyframe_size: float, camera_size: float):
        self.map = map
        self.keyframe_size = keyframe_size
        self.camera_size = camera_size
        self._camera_pose: np.ndarray | None = None
        self._lock = threading.Lock()

    def map_point_positions(self) -> tuple[np.ndarray, np.ndarray]:
        """Positions of ordinary map points and of reference map points, bad ones skipped."""
        points = self.map.all_map_points()
        if not points:
            return np.zeros((0, 3)), np.zeros((0, 3))

        references = list(dict.fromkeys(self.map.reference_map_points()))
        reference_set = set(references)
        ordinary = [p for p in points if not p.is_bad() and p not in reference_set]
        reference = [p for p in references if not p.is_bad()]
        return _positions(ordinary), _positions(reference)

    def keyframe_frustums(self) -> list[np.ndarray]:
        """One frustum per keyframe, placed in world coordinates."""
        template = camera_frustum_segments(self.keyframe_size)
        return [
            _transform(template, np.asarray(kf.pose_inverse(), dtype=float))
            for kf in self.map.all_keyframes()
        ]

    def graph_edges(self) -> np.ndarray:
        """Covisibility, spanning-tree and loop edges between keyframe centres."""
        edges = []
        for kf in self.map.all_keyframes():
            centre = np.asarray(kf.camera_center(), dtype=float).reshape(3)

            for other in kf.covisibles_by_weight(GRAPH_MIN_WEIGHT):
                if other.id < kf.id:
                    continue
                edges.append((centre, np.asarray(other.camera_center(), dtype=float).reshape(3)))

            parent = kf.parent()
            if parent is not None:
                edges.append((centre, np.asarray(parent.camera_center(), dtype=float).reshape(3)))

            for loop in kf.loop_edges():
                if loop.id < kf.id:
                    continue
                edges.append((centre, np.asarray(loop.camera_center(), dtype=float).reshape(3)))
        return _segments(edges)

    def current_camera_frustum(self) -> np.ndarray:
        """Frustum of the current camera in world coordinates."""
        return _transform(camera_frustum_segments(self.camera_size), self.opengl_camera_matrix())

    def set_current_camera_pose(self, Tcw) -> None:
        with self._lock:
            self._camera_pose = np.array(Tcw, dtype=float)

    def opengl_camera_matrix(self) -> np.ndarray:
        """Camera-to-world transform (4x4) of the current pose, identity if unset.

        Flattened in column-major order it is the matrix handed to OpenGL.
        """
        with self._lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        M = np.eye(4)
        if pose is None:
            return M
        Rwc = pose[:3, :3].T
        twc = -Rwc @ pose[:3, 3]
        M[:3, :3] = Rwc
        M[:3, 3] = twc
        return M