"""Monocular map initialization from two views.

A homography and a fundamental matrix are estimated in parallel with RANSAC.
The model that explains the matches better is used to recover the relative
motion and to triangulate an initial set of points.
"""

from __future__ import annotations

import math
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from covismap.geometry import (
    KeyPoint,
    check_rt,
    compute_f21,
    compute_h21,
    decompose_e,
    normalize,
)

# Chi-square thresholds at 95% for one and two degrees of freedom.
_CHI2_1DOF = 3.841
_CHI2_2DOF = 5.991

_SAMPLE_SIZE = 8
_MIN_PARALLAX = 1.0
_MIN_TRIANGULATED = 50


@dataclass
class InitializationResult:
    """Relative motion of the second camera and the triangulated points.

    ``points3d`` has one row per reference keypoint; ``triangulated`` marks the
    rows that hold a point seen with enough parallax.
    """

    R21: np.ndarray
    t21: np.ndarray
    points3d: np.ndarray
    triangulated: list[bool]


def _coords(keys: Sequence[KeyPoint]) -> np.ndarray:
    return np.array([(k.x, k.y) for k in keys], dtype=float).reshape(-1, 2)


def _inverse_or_zero(M: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.inv(M)
    except np.linalg.LinAlgError:
        return np.zeros_like(M)


class Initializer:
    """Estimates the initial two-view reconstruction against a reference frame."""

    def __init__(self, reference_keys: Sequence[KeyPoint], K, sigma: float = 1.0, iterations: int = 200):
        if iterations < 1:
            raise ValueError("at least one RANSAC iteration is required")
        self.K = np.array(K, dtype=float)
        self.keys1 = list(reference_keys)
        self.keys2: list[KeyPoint] = []
        self.sigma = float(sigma)
        self.sigma2 = self.sigma * self.sigma
        self.max_iterations = int(iterations)
        self.matches12: list[tuple[int, int]] = []
        self.matched1: list[bool] = [False] * len(self.keys1)
        self._sets: list[list[int]] = []
        self._pts1 = _coords(self.keys1)
        self._pts2 = np.zeros((0, 2))
        self._idx1 = np.zeros(0, dtype=int)
        self._idx2 = np.zeros(0, dtype=int)

    def initialize(self, current_keys: Sequence[KeyPoint], matches12: Sequence[int]) -> InitializationResult | None:
        """Try to initialize from the current keypoints.

        ``matches12[i]`` is the index of the current keypoint matched with
        reference keypoint ``i``, or a negative number when unmatched.
        Returns None when no reliable reconstruction is found.
        """
        self.keys2 = list(current_keys)
        self._pts2 = _coords(self.keys2)

        self.matched1 = [False] * len(self.keys1)
        self.matches12 = []
        for i, j in enumerate(matches12):
            if j >= 0:
                self.matches12.append((i, int(j)))
                self.matched1[i] = True
            else:
                self.matched1[i] = False

        n = len(self.matches12)
        if n < _SAMPLE_SIZE:
            raise ValueError(f"at least {_SAMPLE_SIZE} matches are required, got {n}")

        self._idx1 = np.array([m[0] for m in self.matches12], dtype=int)
        self._idx2 = np.array([m[1] for m in self.matches12], dtype=int)

        rng = random.Random(0)
        self._sets = [rng.sample(range(n), _SAMPLE_SIZE) for _ in range(self.max_iterations)]

        with ThreadPoolExecutor(max_workers=2) as pool:
            future_h = pool.submit(self.find_homography)
            future_f = pool.submit(self.find_fundamental)
            inliers_h, score_h, H = future_h.result()
            inliers_f, score_f, F = future_f.result()

        total = score_h + score_f
        ratio_h = score_h / total if total > 0 else math.nan

        if ratio_h > 0.40:
            if H is None:
                return None
            return self.reconstruct_h(inliers_h, H, self.K, _MIN_PARALLAX, _MIN_TRIANGULATED)
        if F is None:
            return None
        return self.reconstruct_f(inliers_f, F, self.K, _MIN_PARALLAX, _MIN_TRIANGULATED)

    def _normalized_matches(self):
        pn1, T1 = normalize(self.keys1)
        pn2, T2 = normalize(self.keys2)
        return pn1[self._idx1], pn2[self._idx2], T1, T2

    def find_homography(self) -> tuple[list[bool], float, np.ndarray | None]:
        """RANSAC over the prepared samples; returns (inliers, score, H21)."""
        p1, p2, T1, T2 = self._normalized_matches()
        T2inv = np.linalg.inv(T2)

        score = 0.0
        best_inliers = [False] * len(self.matches12)
        best_H = None
        for sample in self._sets:
            Hn = compute_h21(p1[sample], p2[sample])
            H21 = T2inv @ Hn @ T1
            H12 = _inverse_or_zero(H21)
            current_score, inliers = self.check_homography(H21, H12, self.sigma)
            if current_score > score:
                best_H = H21.copy()
                best_inliers = inliers
                score = current_score
        return best_inliers, score, best_H

    def find_fundamental(self) -> tuple[list[bool], float, np.ndarray | None]:
        """RANSAC over the prepared samples; returns (inliers, score, F21)."""
        p1, p2, T1, T2 = self._normalized_matches()
        T2t = T2.T

        score = 0.0
        best_inliers = [False] * len(self.matches12)
        best_F = None
        for sample in self._sets:
            Fn = compute_f21(p1[sample], p2[sample])
            F21 = T2t @ Fn @ T1
            current_score, inliers = self.check_fundamental(F21, self.sigma)
            if current_score > score:
                best_F = F21.copy()
                best_inliers = inliers
                score = current_score
        return best_inliers, score, best_F

    def _matched_coords(self) -> tuple[np.ndarray, np.ndarray]:
        return self._pts1[self._idx1], self._pts2[self._idx2]

    def check_homography(self, H21, H12, sigma: float) -> tuple[float, list[bool]]:
        """Symmetric transfer error score of a homography and its inlier flags."""
        H21 = np.asarray(H21, dtype=float)
        H12 = np.asarray(H12, dtype=float)
        p1, p2 = self._matched_coords()
        u1, v1 = p1.T
        u2, v2 = p2.T
        th = _CHI2_2DOF
        inv_sigma_square = 1.0 / (sigma * sigma)

        with np.errstate(divide="ignore", invalid="ignore"):
            w = 1.0 / (H12[2, 0] * u2 + H12[2, 1] * v2 + H12[2, 2])
            u2in1 = (H12[0, 0] * u2 + H12[0, 1] * v2 + H12[0, 2]) * w
            v2in1 = (H12[1, 0] * u2 + H12[1, 1] * v2 + H12[1, 2]) * w
            chi1 = ((u1 - u2in1) ** 2 + (v1 - v2in1) ** 2) * inv_sigma_square

            w = 1.0 / (H21[2, 0] * u1 + H21[2, 1] * v1 + H21[2, 2])
            u1in2 = (H21[0, 0] * u1 + H21[0, 1] * v1 + H21[0, 2]) * w
            v1in2 = (H21[1, 0] * u1 + H21[1, 1] * v1 + H21[1, 2]) * w
            chi2 = ((u2 - u1in2) ** 2 + (v2 - v1in2) ** 2) * inv_sigma_square

            in1 = ~(chi1 > th)
            in2 = ~(chi2 > th)
            score = float(np.sum(th - chi1[in1]) + np.sum(th - chi2[in2]))
        return score, (in1 & in2).tolist()

    def check_fundamental(self, F21, sigma: float) -> tuple[float, list[bool]]:
        """Epipolar distance score of a fundamental matrix and its inlier flags."""
        F = np.asarray(F21, dtype=float)
        p1, p2 = self._matched_coords()
        u1, v1 = p1.T
        u2, v2 = p2.T
        th = _CHI2_1DOF
        th_score = _CHI2_2DOF
        inv_sigma_square = 1.0 / (sigma * sigma)

        with np.errstate(divide="ignore", invalid="ignore"):
            a2 = F[0, 0] * u1 + F[0, 1] * v1 + F[0, 2]
            b2 = F[1, 0] * u1 + F[1, 1] * v1 + F[1, 2]
            c2 = F[2, 0] * u1 + F[2, 1] * v1 + F[2, 2]
            num2 = a2 * u2 + b2 * v2 + c2
            chi1 = num2 * num2 / (a2 * a2 + b2 * b2) * inv_sigma_square

            a1 = F[0, 0] * u2 + F[1, 0] * v2 + F[2, 0]
            b1 = F[0, 1] * u2 + F[1, 1] * v2 + F[2, 1]
            c1 = F[0, 2] * u2 + F[1, 2] * v2 + F[2, 2]
            num1 = a1 * u1 + b1 * v1 + c1
            chi2 = num1 * num1 / (a1 * a1 + b1 * b1) * inv_sigma_square

            in1 = ~(chi1 > th)
            in2 = ~(chi2 > th)
            score = float(np.sum(th_score - chi1[in1]) + np.sum(th_score - chi2[in2]))
        return score, (in1 & in2).tolist()

    def reconstruct_f(self, inliers, F21, K, min_parallax: float, min_triangulated: int) -> InitializationResult | None:
        """Recover motion from a fundamental matrix, or None if ambiguous."""
        n = sum(1 for flag in inliers if flag)
        K = np.asarray(K, dtype=float)
        E21 = K.T @ np.asarray(F21, dtype=float) @ K
        R1, R2, t = decompose_e(E21)
        t1 = t
        t2 = -t

        hypotheses = [(R1, t1), (R2, t1), (R1, t2), (R2, t2)]
        th2 = 4.0 * self.sigma2
        checks = [
            check_rt(R, tt, self.keys1, self.keys2, self.matches12, inliers, K, th2)
            for R, tt in hypotheses
        ]

        max_good = max(c.n_good for c in checks)
        min_good = max(int(0.9 * n), min_triangulated)
        n_similar = sum(1 for c in checks if c.n_good > 0.7 * max_good)

        if max_good < min_good or n_similar > 1:
            return None

        for (R, tt), check in zip(hypotheses, checks):
            if check.n_good == max_good:
                if check.parallax > min_parallax:
                    return InitializationResult(
                        R21=R.copy(),
                        t21=tt.copy(),
                        points3d=check.points3d,
                        triangulated=check.good,
                    )
                return None
        return None

    def reconstruct_h(self, inliers, H21, K, min_parallax: float, min_triangulated: int) -> InitializationResult | None:
        """Recover motion from a homography (Faugeras decomposition), or None."""
        n = sum(1 for flag in inliers if flag)
        K = np.asarray(K, dtype=float)
        A = np.linalg.inv(K) @ np.asarray(H21, dtype=float) @ K

        U, w, Vt = np.linalg.svd(A, full_matrices=True)
        V = Vt.T
        s = np.linalg.det(U) * np.linalg.det(Vt)
        d1, d2, d3 = (float(x) for x in w)

        if d2 == 0 or d3 == 0 or d1 / d2 < 1.00001 or d2 / d3 < 1.00001:
            return None

        aux1 = math.sqrt((d1 * d1 - d2 * d2) / (d1 * d1 - d3 * d3))
        aux3 = math.sqrt((d2 * d2 - d3 * d3) / (d1 * d1 - d3 * d3))
        x1 = (aux1, aux1, -aux1, -aux1)
        x3 = (aux3, -aux3, aux3, -aux3)

        rotations: list[np.ndarray] = []
        translations: list[np.ndarray] = []

        # Case d' = d2
        aux_stheta = math.sqrt((d1 * d1 - d2 * d2) * (d2 * d2 - d3 * d3)) / ((d1 + d3) * d2)
        ctheta = (d2 * d2 + d1 * d3) / ((d1 + d3) * d2)
        stheta = (aux_stheta, -aux_stheta, -aux_stheta, aux_stheta)
        for a, c, st in zip(x1, x3, stheta):
            Rp = np.eye(3)
            Rp[0, 0] = ctheta
            Rp[0, 2] = -st
            Rp[2, 0] = st
            Rp[2, 2] = ctheta
            rotations.append(s * U @ Rp @ Vt)
            tp = np.array([a, 0.0, -c]) * (d1 - d3)
            tt = U @ tp
            translations.append(tt / np.linalg.norm(tt))

        # Case d' = -d2
        aux_sphi = math.sqrt((d1 * d1 - d2 * d2) * (d2 * d2 - d3 * d3)) / ((d1 - d3) * d2)
        cphi = (d1 * d3 - d2 * d2) / ((d1 - d3) * d2)
        sphi = (aux_sphi, -aux_sphi, -aux_sphi, aux_sphi)
        for a, c, sp in zip(x1, x3, sphi):
            Rp = np.eye(3)
            Rp[0, 0] = cphi
            Rp[0, 2] = sp
            Rp[1, 1] = -1.0
            Rp[2, 0] = sp
            Rp[2, 2] = -cphi
            rotations.append(s * U @ Rp @ Vt)
            tp = np.array([a, 0.0, c]) * (d1 + d3)
            tt = U @ tp
            translations.append(tt / np.linalg.norm(tt))

        del V  # plane normals are not needed for the selection below

        best_good = 0
        second_best_good = 0
        best_index = -1
        best_parallax = -1.0
        best_check = None
        th2 = 4.0 * self.sigma2
        for i, (R, tt) in enumerate(zip(rotations, translations)):
            check = check_rt(R, tt, self.keys1, self.keys2, self.matches12, inliers, K, th2)
            if check.n_good > best_good:
                second_best_good = best_good
                best_good = check.n_good
                best_index = i
                best_parallax = check.parallax
                best_check = check
            elif check.n_good > second_best_good:
                second_best_good = check.n_good

        if (
            best_check is not None
            and second_best_good < 0.75 * best_good
            and best_parallax >= min_parallax
            and best_good > min_triangulated
            and best_good > 0.9 * n
        ):
            return InitializationResult(
                R21=rotations[best_index].copy(),
                t21=translations[best_index].copy(),
                points3d=best_check.points3d,
                triangulated=best_check.good,
            )
        return None