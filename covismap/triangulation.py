"""Triangulation of new map points between two keyframes."""

from __future__ import annotations

import math
from typing import Iterable

import numpy as np

from covismap.mappoint import MapPoint

# Chi-square thresholds at 95% for two and three degrees of freedom.
_CHI2_MONO = 5.991
_CHI2_STEREO = 7.8
# Rays closer to parallel than this cannot be triangulated reliably.
_COS_PARALLAX_MAX = 0.9998
# Monocular pairs need a baseline of at least this fraction of the scene depth.
_MIN_BASELINE_DEPTH_RATIO = 0.01


def skew_symmetric(v) -> np.ndarray:
    """Matrix [v]x such that [v]x @ w equals the cross product v x w."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def compute_f12(keyframe1, keyframe2) -> np.ndarray:
    """Fundamental matrix F12 with x1^T F12 x2 = 0 for pixels of the two keyframes."""
    R1w = keyframe1.rotation()
    t1w = keyframe1.translation()
    R2w = keyframe2.rotation()
    t2w = keyframe2.translation()

    R12 = R1w @ R2w.T
    t12 = -R1w @ R2w.T @ t2w + t1w

    K1 = np.asarray(keyframe1.K, dtype=float)
    K2 = np.asarray(keyframe2.K, dtype=float)
    return np.linalg.inv(K1.T) @ skew_symmetric(t12) @ R12 @ np.linalg.inv(K2)


def triangulate_linear(xn1, xn2, Tcw1, Tcw2) -> np.ndarray | None:
    """Linear triangulation from normalized image coordinates and two camera poses.

    The poses are 3x4 (or 4x4) world-to-camera transforms. Returns the world
    point, or None when the solution lies at infinity.
    """
    xn1 = np.asarray(xn1, dtype=float).ravel()
    xn2 = np.asarray(xn2, dtype=float).ravel()
    T1 = np.asarray(Tcw1, dtype=float)[:3]
    T2 = np.asarray(Tcw2, dtype=float)[:3]
    A = np.vstack(
        [
            xn1[0] * T1[2] - T1[0],
            xn1[1] * T1[2] - T1[1],
            xn2[0] * T2[2] - T2[0],
            xn2[1] * T2[2] - T2[1],
        ]
    )
    _, _, vt = np.linalg.svd(A, full_matrices=True)
    x = vt[3]
    if x[3] == 0:
        return None
    return x[:3] / x[3]


def _pose_3x4(keyframe) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    Rcw = keyframe.rotation()
    tcw = keyframe.translation()
    return Rcw, tcw, np.hstack([Rcw, tcw.reshape(3, 1)])


def _reprojection_ok(keyframe, Rcw, tcw, x3d, z, kp, uright, stereo, bf) -> bool:
    sigma_square = keyframe.level_sigma2[kp.octave]
    x = float(Rcw[0] @ x3d + tcw[0])
    y = float(Rcw[1] @ x3d + tcw[1])
    inv_z = 1.0 / z
    u = keyframe.fx * x * inv_z + keyframe.cx
    v = keyframe.fy * y * inv_z + keyframe.cy
    err_x = u - kp.x
    err_y = v - kp.y
    if not stereo:
        return err_x * err_x + err_y * err_y <= _CHI2_MONO * sigma_square
    err_r = u - bf * inv_z - uright
    return err_x * err_x + err_y * err_y + err_r * err_r <= _CHI2_STEREO * sigma_square


def triangulate_matches(
    keyframe1,
    keyframe2,
    matches: Iterable[tuple[int, int]],
    map,
    monocular: bool,
) -> list[MapPoint]:
    """Create map points from keypoint matches between two keyframes.

    ``matches`` holds (index in keyframe1, index in keyframe2) pairs that
    satisfy the epipolar constraint. Each match that triangulates in front of
    both cameras, reprojects well and has consistent scale becomes a new map
    point observed by both keyframes and added to ``map``. Nothing is created
    when the baseline is too short. Returns the new points.
    """
    Rcw1, tcw1, Tcw1 = _pose_3x4(keyframe1)
    Rcw2, tcw2, Tcw2 = _pose_3x4(keyframe2)
    Rwc1 = Rcw1.T
    Rwc2 = Rcw2.T
    Ow1 = keyframe1.camera_center()
    Ow2 = keyframe2.camera_center()

    baseline = float(np.linalg.norm(Ow2 - Ow1))
    if not monocular:
        if baseline < keyframe2.b:
            return []
    else:
        median_depth = keyframe2.compute_scene_median_depth(2)
        if baseline / median_depth < _MIN_BASELINE_DEPTH_RATIO:
            return []

    ratio_factor = 1.5 * keyframe1.scale_factor
    new_points: list[MapPoint] = []

    for idx1, idx2 in matches:
        kp1 = keyframe1.keys_un[idx1]
        ur1 = keyframe1.uright[idx1]
        stereo1 = ur1 >= 0
        kp2 = keyframe2.keys_un[idx2]
        ur2 = keyframe2.uright[idx2]
        stereo2 = ur2 >= 0

        xn1 = np.array(
            [(kp1.x - keyframe1.cx) * keyframe1.invfx, (kp1.y - keyframe1.cy) * keyframe1.invfy, 1.0]
        )
        xn2 = np.array(
            [(kp2.x - keyframe2.cx) * keyframe2.invfx, (kp2.y - keyframe2.cy) * keyframe2.invfy, 1.0]
        )
        ray1 = Rwc1 @ xn1
        ray2 = Rwc2 @ xn2
        cos_rays = float(ray1 @ ray2 / (np.linalg.norm(ray1) * np.linalg.norm(ray2)))

        cos_stereo1 = cos_stereo2 = cos_rays + 1
        if stereo1:
            cos_stereo1 = math.cos(2 * math.atan2(keyframe1.b / 2, keyframe1.depth[idx1]))
        elif stereo2:
            cos_stereo2 = math.cos(2 * math.atan2(keyframe2.b / 2, keyframe2.depth[idx2]))
        cos_stereo = min(cos_stereo1, cos_stereo2)

        if cos_rays < cos_stereo and cos_rays > 0 and (stereo1 or stereo2 or cos_rays < _COS_PARALLAX_MAX):
            x3d = triangulate_linear(xn1, xn2, Tcw1, Tcw2)
        elif stereo1 and cos_stereo1 < cos_stereo2:
            x3d = keyframe1.unproject_stereo(idx1)
        elif stereo2 and cos_stereo2 < cos_stereo1:
            x3d = keyframe2.unproject_stereo(idx2)
        else:
            continue
        if x3d is None or not np.all(np.isfinite(x3d)):
            continue

        z1 = float(Rcw1[2] @ x3d + tcw1[2])
        if z1 <= 0:
            continue
        z2 = float(Rcw2[2] @ x3d + tcw2[2])
        if z2 <= 0:
            continue

        if not _reprojection_ok(keyframe1, Rcw1, tcw1, x3d, z1, kp1, ur1, stereo1, keyframe1.bf):
            continue
        if not _reprojection_ok(keyframe2, Rcw2, tcw2, x3d, z2, kp2, ur2, stereo2, keyframe1.bf):
            continue

        dist1 = float(np.linalg.norm(x3d - Ow1))
        dist2 = float(np.linalg.norm(x3d - Ow2))
        if dist1 == 0 or dist2 == 0:
            continue
        ratio_dist = dist2 / dist1
        ratio_octave = keyframe1.scale_factors[kp1.octave] / keyframe2.scale_factors[kp2.octave]
        if ratio_dist * ratio_factor < ratio_octave or ratio_dist > ratio_octave * ratio_factor:
            continue

        point = MapPoint(x3d, keyframe1, map)
        point.add_observation(keyframe1, idx1)
        point.add_observation(keyframe2, idx2)
        keyframe1.add_map_point(point, idx1)
        keyframe2.add_map_point(point, idx2)
        point.compute_distinctive_descriptors()
        point.update_normal_and_depth()
        map.add_map_point(point)
        new_points.append(point)

    return new_points