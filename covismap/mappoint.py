"""Map points: 3D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading

import numpy as np

_ids = itertools.count()


def descriptor_distance(a, b) -> int:
    """Hamming distance between two binary descriptors stored as bytes."""
    a = np.asarray(a, dtype=np.uint8).ravel()
    b = np.asarray(b, dtype=np.uint8).ravel()
    if a.shape != b.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(a, b)).sum())


class MapPoint:
    """A landmark with its observations, descriptor and viewing statistics.

    Keyframes are expected to expose ``id``, ``uright``, ``descriptors``,
    ``keys_un``, ``scale_factors``, ``scale_levels``, ``is_bad()``,
    ``camera_center()``, ``erase_map_point_match(index)`` and
    ``replace_map_point_match(index, point)``.
    """

    _global_lock = threading.Lock()

    def __init__(self, position, reference_keyframe, map):
        self._world_pos = np.array(position, dtype=float).reshape(3)
        self._normal = np.zeros(3)
        self._descriptor: np.ndarray | None = None
        self._ref_kf = reference_keyframe
        self._observations: dict = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._features_lock = threading.RLock()
        self._pos_lock = threading.RLock()
        self.map = map

        self.first_kf_id = reference_keyframe.id
        self.first_frame = getattr(reference_keyframe, "frame_id", reference_keyframe.id)
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None

        with map.point_creation_lock:
            self.id = next(_ids)

    def set_world_pos(self, position) -> None:
        with MapPoint._global_lock, self._pos_lock:
            self._world_pos = np.array(position, dtype=float).reshape(3)

    def world_pos(self) -> np.ndarray:
        with self._pos_lock:
            return self._world_pos.copy()

    def normal(self) -> np.ndarray:
        with self._pos_lock:
            return self._normal.copy()

    def reference_keyframe(self):
        with self._features_lock:
            return self._ref_kf

    def add_observation(self, keyframe, index: int) -> None:
        """Record that ``keyframe`` sees this point at keypoint ``index``."""
        with self._features_lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.uright[index] >= 0 else 1

    def erase_observation(self, keyframe) -> None:
        """Forget an observation; the point turns bad when two or fewer remain."""
        bad = False
        with self._features_lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.uright[index] >= 0 else 1
                if self._ref_kf is keyframe:
                    self._ref_kf = next(iter(self._observations), None)
                if self._n_obs <= 2:
                    bad = True
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict:
        with self._features_lock:
            return dict(self._observations)

    def num_observations(self) -> int:
        with self._features_lock:
            return self._n_obs

    def set_bad_flag(self) -> None:
        """Mark the point bad, detach it from its keyframes and from the map."""
        with self._features_lock, self._pos_lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self.map.erase_map_point(self)

    def replaced(self):
        with self._features_lock, self._pos_lock:
            return self._replaced

    def replace(self, other: MapPoint) -> None:
        """Hand all observations over to ``other`` and retire this point."""
        if other.id == self.id:
            return
        with self._features_lock, self._pos_lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self.map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._features_lock, self._pos_lock:
            return self._bad

    def increase_visible(self, n: int = 1) -> None:
        with self._features_lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._features_lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._features_lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the others."""
        with self._features_lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.asarray(kf.descriptors[index], dtype=np.uint8)
            for kf, index in observations.items()
            if not kf.is_bad()
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = [[descriptor_distance(a, b) for b in descriptors] for a in descriptors]
        medians = [sorted(row)[int(0.5 * (n - 1))] for row in distances]
        best = min(range(n), key=medians.__getitem__)

        with self._features_lock:
            self._descriptor = descriptors[best].copy()

    def descriptor(self) -> np.ndarray | None:
        with self._features_lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_keyframe(self, keyframe) -> int:
        """Keypoint index of this point in ``keyframe``, or -1 if not observed there."""
        with self._features_lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._features_lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._features_lock, self._pos_lock:
            if self._bad:
                return
            observations = dict(self._observations)
            ref = self._ref_kf
            pos = self._world_pos.copy()
        if not observations or ref is None:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            direction = pos - np.asarray(keyframe.camera_center(), dtype=float).reshape(3)
            normal += direction / np.linalg.norm(direction)

        dist = float(np.linalg.norm(pos - np.asarray(ref.camera_center(), dtype=float).reshape(3)))
        level = ref.keys_un[observations.get(ref, 0)].octave
        level_scale_factor = ref.scale_factors[level]
        n_levels = ref.scale_levels

        with self._pos_lock:
            self._max_distance = dist * level_scale_factor
            self._min_distance = self._max_distance / ref.scale_factors[n_levels - 1]
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._pos_lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._pos_lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, log_scale_factor: float, scale_levels: int | None = None) -> int:
        """Pyramid level at which the point is expected to appear at ``current_dist``.

        With ``scale_levels`` given the level is clamped to ``[0, scale_levels - 1]``.
        """
        with self._pos_lock:
            ratio = self._max_distance / current_dist
        scale = math.ceil(math.log(ratio) / log_scale_factor)
        if scale_levels is None:
            return scale
        return min(max(scale, 0), scale_levels - 1)