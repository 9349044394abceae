"""Keyframes: posed frames that anchor map points and the covisibility graph."""

from __future__ import annotations

import itertools
import math
import threading
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from covismap.geometry import KeyPoint

# Keyframes sharing at least this many points are linked in the covisibility graph.
_COVISIBILITY_THRESHOLD = 15

_ids = itertools.count()


@dataclass
class FrameData:
    """Everything a keyframe takes over from the frame it is created from.

    Fields left as None are filled in with neutral defaults: no stereo
    measurements, zero descriptors, no map points, a geometric scale pyramid
    and keypoints assigned to the image grid.
    """

    keys: Sequence[KeyPoint]
    K: np.ndarray
    Tcw: np.ndarray
    id: int = 0
    timestamp: float = 0.0
    keys_un: Sequence[KeyPoint] | None = None
    uright: Sequence[float] | None = None
    depth: Sequence[float] | None = None
    descriptors: np.ndarray | None = None
    bow_vec: dict = field(default_factory=dict)
    feat_vec: dict = field(default_factory=dict)
    bf: float = 0.0
    th_depth: float = 0.0
    scale_levels: int = 8
    scale_factor: float = 1.2
    scale_factors: Sequence[float] | None = None
    level_sigma2: Sequence[float] | None = None
    min_x: float = 0.0
    min_y: float = 0.0
    max_x: float = 640.0
    max_y: float = 480.0
    grid_cols: int = 64
    grid_rows: int = 48
    grid: list | None = None
    map_points: list | None = None

    def __post_init__(self) -> None:
        self.keys = list(self.keys)
        n = len(self.keys)
        self.K = np.array(self.K, dtype=float)
        self.Tcw = np.array(self.Tcw, dtype=float)
        self.keys_un = list(self.keys) if self.keys_un is None else list(self.keys_un)
        self.uright = [-1.0] * n if self.uright is None else list(self.uright)
        self.depth = [-1.0] * n if self.depth is None else list(self.depth)
        if self.descriptors is None:
            self.descriptors = np.zeros((n, 32), dtype=np.uint8)
        if self.scale_factors is None:
            self.scale_factors = [self.scale_factor**i for i in range(self.scale_levels)]
        if self.level_sigma2 is None:
            self.level_sigma2 = [s * s for s in self.scale_factors]
        if self.map_points is None:
            self.map_points = [None] * n
        if self.grid is None:
            self.grid = self._assign_grid()

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def fy(self) -> float:
        return float(self.K[1, 1])

    @property
    def cx(self) -> float:
        return float(self.K[0, 2])

    @property
    def cy(self) -> float:
        return float(self.K[1, 2])

    @property
    def grid_element_width_inv(self) -> float:
        return self.grid_cols / (self.max_x - self.min_x)

    @property
    def grid_element_height_inv(self) -> float:
        return self.grid_rows / (self.max_y - self.min_y)

    def _assign_grid(self) -> list:
        grid = [[[] for _ in range(self.grid_rows)] for _ in range(self.grid_cols)]
        for index, kp in enumerate(self.keys_un):
            col = round((kp.x - self.min_x) * self.grid_element_width_inv)
            row = round((kp.y - self.min_y) * self.grid_element_height_inv)
            if 0 <= col < self.grid_cols and 0 <= row < self.grid_rows:
                grid[col][row].append(index)
        return grid


class KeyFrame:
    """A frame kept in the map, with its pose, map points and graph links."""

    def __init__(self, frame: FrameData, map, database):
        self.id = next(_ids)
        self.frame_id = frame.id
        self.timestamp = frame.timestamp

        self.grid_cols = frame.grid_cols
        self.grid_rows = frame.grid_rows
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv
        self._grid = [[list(cell) for cell in column] for column in frame.grid]

        # Bookkeeping used by tracking, local mapping and place recognition.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.Tcw_gba: np.ndarray | None = None
        self.Tcw_bef_gba: np.ndarray | None = None
        self.Tcp: np.ndarray | None = None

        self.K = frame.K.copy()
        self.fx = frame.fx
        self.fy = frame.fy
        self.cx = frame.cx
        self.cy = frame.cy
        self.invfx = 1.0 / self.fx
        self.invfy = 1.0 / self.fy
        self.bf = frame.bf
        self.b = frame.bf / frame.fx
        self.th_depth = frame.th_depth

        self.n = len(frame.keys)
        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.uright = list(frame.uright)
        self.depth = list(frame.depth)
        self.descriptors = np.array(frame.descriptors, copy=True)
        self.bow_vec = dict(frame.bow_vec)
        self.feat_vec = dict(frame.feat_vec)

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = math.log(frame.scale_factor)
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

        self.min_x = frame.min_x
        self.min_y = frame.min_y
        self.max_x = frame.max_x
        self.max_y = frame.max_y

        self._map_points = list(frame.map_points)
        self.database = database
        self.map = map

        self._connected_weights: dict = {}
        self._ordered_connected: list = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: dict = {}
        self._loop_edges: dict = {}
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False
        self.half_baseline = self.b / 2

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self.set_pose(frame.Tcw)

    # Pose

    def set_pose(self, Tcw) -> None:
        with self._pose_lock:
            self._Tcw = np.array(Tcw, dtype=float).reshape(4, 4)
            Rcw = self._Tcw[:3, :3]
            tcw = self._Tcw[:3, 3]
            Rwc = Rcw.T
            self._Ow = -Rwc @ tcw
            self._Twc = np.eye(4)
            self._Twc[:3, :3] = Rwc
            self._Twc[:3, 3] = self._Ow
            centre = np.array([self.half_baseline, 0.0, 0.0, 1.0])
            self._Cw = (self._Twc @ centre)[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._Tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._Twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._Ow.copy()

    def stereo_center(self) -> np.ndarray:
        """World position of the midpoint of the stereo baseline."""
        with self._pose_lock:
            return self._Cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._Tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._Tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe: KeyFrame, weight: int) -> None:
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        """Re-sort the connected keyframes by decreasing weight."""
        with self._connections_lock:
            pairs = sorted(self._connected_weights.items(), key=lambda item: -item[1])
            self._ordered_connected = [kf for kf, _ in pairs]
            self._ordered_weights = [w for _, w in pairs]

    def connected_keyframes(self) -> set:
        with self._connections_lock:
            return set(self._connected_weights)

    def vector_covisible_keyframes(self) -> list:
        with self._connections_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n: int) -> list:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, w: int) -> list:
        """Connected keyframes with weight at least ``w``.

        When every connection reaches ``w`` the result is empty, as only a
        list with some weaker connection is cut.
        """
        with self._connections_lock:
            if not self._ordered_connected:
                return []
            cut = next(
                (i for i, weight in enumerate(self._ordered_weights) if w > weight), None
            )
            if cut is None:
                return []
            return list(self._ordered_connected[:cut])

    def weight(self, keyframe: KeyFrame) -> int:
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    # Map point associations

    def add_map_point(self, point, index: int) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index: int) -> None:
        with self._features_lock:
            self._map_points[index] = None

    def erase_map_point(self, point) -> None:
        index = point.index_in_keyframe(self)
        if index >= 0:
            with self._features_lock:
                self._map_points[index] = None

    def replace_map_point_match(self, index: int, point) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def map_points(self) -> set:
        """The good map points seen by this keyframe."""
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def tracked_map_points(self, min_obs: int) -> int:
        """Number of good map points, counting only those with ``min_obs`` observations if positive."""
        with self._features_lock:
            points = [p for p in self._map_points[: self.n] if p is not None and not p.is_bad()]
        if min_obs > 0:
            return sum(1 for p in points if p.num_observations() >= min_obs)
        return len(points)

    def map_point_matches(self) -> list:
        with self._features_lock:
            return list(self._map_points)

    def map_point(self, index: int):
        with self._features_lock:
            return self._map_points[index]

    def update_connections(self) -> None:
        """Rebuild covisibility links from the keyframes that share map points."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        n_max = 0
        kf_max = None
        pairs = []
        for keyframe, count in counter.items():
            if count > n_max:
                n_max = count
                kf_max = keyframe
            if count >= _COVISIBILITY_THRESHOLD:
                pairs.append((count, keyframe))
                keyframe.add_connection(self, count)

        if not pairs:
            pairs.append((n_max, kf_max))
            kf_max.add_connection(self, n_max)

        pairs.sort(key=lambda pair: -pair[0])

        with self._connections_lock:
            self._connected_weights = counter
            self._ordered_connected = [kf for _, kf in pairs]
            self._ordered_weights = [w for w, _ in pairs]

            if self._first_connection and self.id != 0:
                self._parent = self._ordered_connected[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree and loop edges

    def add_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._parent = keyframe
            keyframe.add_child(self)

    def children(self) -> set:
        with self._connections_lock:
            return set(self._children)

    def parent(self):
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe: KeyFrame) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    def add_loop_edge(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set:
        with self._connections_lock:
            return set(self._loop_edges)

    # Erasure

    def set_not_erase(self) -> None:
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Allow erasure again (unless loop edges pin it) and erase if it was requested."""
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, the spanning tree, the map and the database.

        The first keyframe is never removed; a keyframe protected by
        ``set_not_erase`` is only marked to be removed later.
        """
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            if self._parent is None:
                raise RuntimeError("keyframe has no parent in the spanning tree")
            connected = list(self._connected_weights)

        for keyframe in connected:
            keyframe.erase_connection(self)

        with self._features_lock:
            points = list(self._map_points)
        for point in points:
            if point is not None:
                point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights = {}
            self._ordered_connected = []
            self._ordered_weights = []

            candidates = {self._parent}
            while self._children:
                best = None
                max_weight = -1
                for child in self._children:
                    if child.is_bad():
                        continue
                    for connected_kf in child.vector_covisible_keyframes():
                        if connected_kf in candidates:
                            w = child.weight(connected_kf)
                            if w > max_weight:
                                best = (child, connected_kf)
                                max_weight = w
                if best is None:
                    break
                child, new_parent = best
                child.change_parent(new_parent)
                candidates.add(child)
                del self._children[child]

            for child in list(self._children):
                child.change_parent(self._parent)

            self._parent.erase_child(self)
            self.Tcp = self.pose() @ self._parent.pose_inverse()
            self._bad = True

        if self.map is not None:
            self.map.erase_keyframe(self)
        if self.database is not None:
            self.database.erase(self)

    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def erase_connection(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            if keyframe not in self._connected_weights:
                return
            del self._connected_weights[keyframe]
        self.update_best_covisibles()

    # Image queries

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of keypoints within the square of half-side ``r`` around (x, y)."""
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return []
        max_cell_x = min(self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return []
        max_cell_y = min(self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cell_y < 0:
            return []

        indices = []
        for ix in range(min_cell_x, max_cell_x + 1):
            for iy in range(min_cell_y, max_cell_y + 1):
                for index in self._grid[ix][iy]:
                    kp = self.keys_un[index]
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        indices.append(index)
        return indices

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, i: int) -> np.ndarray | None:
        """World position of keypoint ``i`` from its depth, or None without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        kp = self.keys[i]
        x = (kp.x - self.cx) * z * self.invfx
        y = (kp.y - self.cy) * z * self.invfy
        point_c = np.array([x, y, z])
        with self._pose_lock:
            return self._Twc[:3, :3] @ point_c + self._Twc[:3, 3]

    def compute_scene_median_depth(self, q: int) -> float:
        """Depth at the 1/q quantile of the map points seen by this keyframe."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            Tcw = self._Tcw.copy()

        row = Tcw[2, :3]
        zcw = Tcw[2, 3]
        depths = sorted(
            float(row @ np.asarray(p.world_pos(), dtype=float).reshape(3) + zcw)
            for p in points[: self.n]
            if p is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]