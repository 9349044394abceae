"""Two-view geometry: homography, fundamental matrix, triangulation and pose checks."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

# Rays whose cosine is above this are treated as (nearly) parallel.
COS_PARALLAX_LIMIT = 0.99998


@dataclass(frozen=True)
class KeyPoint:
    """An undistorted image keypoint."""

    x: float
    y: float
    octave: int = 0


@dataclass
class CheckResult:
    """Outcome of testing one motion hypothesis against the matches."""

    n_good: int
    points3d: np.ndarray
    good: list[bool]
    parallax: float


def _as_points(points) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.size == 0:
        raise ValueError("at least one point pair is required")
    return arr.reshape(-1, 2)


def _paired(points1, points2) -> tuple[np.ndarray, np.ndarray]:
    p1 = _as_points(points1)
    p2 = _as_points(points2)
    if len(p1) != len(p2):
        raise ValueError("point lists must have the same length")
    return p1, p2


def compute_h21(points1, points2) -> np.ndarray:
    """Homography H21 with x2 ~ H21 x1, by the direct linear transform."""
    p1, p2 = _paired(points1, points2)
    u1, v1 = p1.T
    u2, v2 = p2.T
    zeros = np.zeros_like(u1)
    ones = np.ones_like(u1)

    A = np.empty((2 * len(p1), 9))
    A[0::2] = np.column_stack([zeros, zeros, zeros, -u1, -v1, -ones, v2 * u1, v2 * v1, v2])
    A[1::2] = np.column_stack([u1, v1, ones, zeros, zeros, zeros, -u2 * u1, -u2 * v1, -u2])

    _, _, vt = np.linalg.svd(A, full_matrices=True)
    return vt[8].reshape(3, 3)


def compute_f21(points1, points2) -> np.ndarray:
    """Rank-2 fundamental matrix F21 with x2^T F21 x1 = 0, by the eight-point method."""
    p1, p2 = _paired(points1, points2)
    u1, v1 = p1.T
    u2, v2 = p2.T

    A = np.column_stack(
        [u2 * u1, u2 * v1, u2, v2 * u1, v2 * v1, v2, u1, v1, np.ones_like(u1)]
    )
    _, _, vt = np.linalg.svd(A, full_matrices=True)
    f_pre = vt[8].reshape(3, 3)

    u, w, vt = np.linalg.svd(f_pre, full_matrices=True)
    w[2] = 0.0
    return u @ np.diag(w) @ vt


def normalize(keys: Iterable[KeyPoint]) -> tuple[np.ndarray, np.ndarray]:
    """Centre keypoints and scale them to unit mean absolute deviation.

    Returns the normalized points (N x 2) and the 3x3 transform T mapping
    homogeneous image points to normalized ones.
    """
    pts = np.array([(k.x, k.y) for k in keys], dtype=float).reshape(-1, 2)
    if len(pts) == 0:
        raise ValueError("cannot normalize an empty set of keypoints")

    mean = pts.mean(axis=0)
    centred = pts - mean
    mean_dev = np.abs(centred).mean(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        scale = 1.0 / mean_dev
        normalized = centred * scale

    T = np.eye(3)
    T[0, 0] = scale[0]
    T[1, 1] = scale[1]
    T[0, 2] = -mean[0] * scale[0]
    T[1, 2] = -mean[1] * scale[1]
    return normalized, T


def triangulate(kp1: KeyPoint, kp2: KeyPoint, P1, P2) -> np.ndarray:
    """Linear triangulation of one correspondence from two 3x4 projection matrices."""
    P1 = np.asarray(P1, dtype=float)
    P2 = np.asarray(P2, dtype=float)
    A = np.vstack(
        [
            kp1.x * P1[2] - P1[0],
            kp1.y * P1[2] - P1[1],
            kp2.x * P2[2] - P2[0],
            kp2.y * P2[2] - P2[1],
        ]
    )
    _, _, vt = np.linalg.svd(A, full_matrices=True)
    x = vt[3]
    with np.errstate(divide="ignore", invalid="ignore"):
        return x[:3] / x[3]


def decompose_e(E) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Split an essential matrix into two rotations and a unit translation."""
    u, _, vt = np.linalg.svd(np.asarray(E, dtype=float))
    t = u[:, 2].copy()
    t /= np.linalg.norm(t)

    W = np.zeros((3, 3))
    W[0, 1] = -1.0
    W[1, 0] = 1.0
    W[2, 2] = 1.0

    R1 = u @ W @ vt
    if np.linalg.det(R1) < 0:
        R1 = -R1
    R2 = u @ W.T @ vt
    if np.linalg.det(R2) < 0:
        R2 = -R2
    return R1, R2, t


def check_rt(
    R,
    t,
    keys1: Sequence[KeyPoint],
    keys2: Sequence[KeyPoint],
    matches12: Sequence[tuple[int, int]],
    inliers: Sequence[bool],
    K,
    th2: float,
) -> CheckResult:
    """Triangulate inlier matches under [R|t] and count those that pass cheirality
    and reprojection checks."""
    R = np.asarray(R, dtype=float)
    t = np.asarray(t, dtype=float).reshape(3)
    K = np.asarray(K, dtype=float)
    fx, fy, cx, cy = K[0, 0], K[1, 1], K[0, 2], K[1, 2]

    good = [False] * len(keys1)
    points3d = np.zeros((len(keys1), 3))
    cos_parallaxes: list[float] = []

    P1 = np.zeros((3, 4))
    P1[:, :3] = K
    O1 = np.zeros(3)

    P2 = np.empty((3, 4))
    P2[:, :3] = R
    P2[:, 3] = t
    P2 = K @ P2
    O2 = -R.T @ t

    n_good = 0
    for (i1, i2), is_inlier in zip(matches12, inliers):
        if not is_inlier:
            continue
        kp1 = keys1[i1]
        kp2 = keys2[i2]

        p3d_c1 = triangulate(kp1, kp2, P1, P2)
        if not np.all(np.isfinite(p3d_c1)):
            good[i1] = False
            continue

        normal1 = p3d_c1 - O1
        normal2 = p3d_c1 - O2
        cos_parallax = float(
            normal1 @ normal2 / (np.linalg.norm(normal1) * np.linalg.norm(normal2))
        )

        if p3d_c1[2] <= 0 and cos_parallax < COS_PARALLAX_LIMIT:
            continue

        p3d_c2 = R @ p3d_c1 + t
        if p3d_c2[2] <= 0 and cos_parallax < COS_PARALLAX_LIMIT:
            continue

        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z1 = 1.0 / p3d_c1[2]
            im1x = fx * p3d_c1[0] * inv_z1 + cx
            im1y = fy * p3d_c1[1] * inv_z1 + cy
            if (im1x - kp1.x) ** 2 + (im1y - kp1.y) ** 2 > th2:
                continue

            inv_z2 = 1.0 / p3d_c2[2]
            im2x = fx * p3d_c2[0] * inv_z2 + cx
            im2y = fy * p3d_c2[1] * inv_z2 + cy
            if (im2x - kp2.x) ** 2 + (im2y - kp2.y) ** 2 > th2:
                continue

        cos_parallaxes.append(cos_parallax)
        points3d[i1] = p3d_c1
        n_good += 1
        if cos_parallax < COS_PARALLAX_LIMIT:
            good[i1] = True

    if n_good > 0:
        cos_parallaxes.sort()
        idx = min(50, len(cos_parallaxes) - 1)
        cos_value = min(1.0, max(-1.0, cos_parallaxes[idx]))
        parallax = math.degrees(math.acos(cos_value))
    else:
        parallax = 0.0

    return CheckResult(n_good=n_good, points3d=points3d, good=good, parallax=parallax)