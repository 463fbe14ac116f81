"""Small geometry helpers for multi-view vision: projection, triangulation, rotations."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

__all__ = [
    "InlierResult",
    "project2d",
    "unproject2d",
    "skew",
    "median",
    "triangulate_feature_nonlin",
    "depth_from_triangulation_exact",
    "reproj_error",
    "compute_inliers",
    "compute_inliers_one_view",
    "dcm2rpy",
    "rpy2dcm",
    "angax2quat",
    "angax2dcm",
    "sampsonus_error",
]


def _vec(v, size: int) -> np.ndarray:
    arr = np.asarray(v, dtype=float).reshape(-1)
    if arr.shape != (size,):
        raise ValueError(f"expected a vector of length {size}, got shape {arr.shape}")
    return arr


def project2d(v) -> np.ndarray:
    """Project a 3D point onto the z=1 plane."""
    p = _vec(v, 3)
    return p[:2] / p[2]


def unproject2d(v) -> np.ndarray:
    """Lift a 2D point on the z=1 plane to homogeneous 3D coordinates."""
    p = _vec(v, 2)
    return np.array([p[0], p[1], 1.0])


def skew(v) -> np.ndarray:
    """Return the skew-symmetric cross-product matrix of ``v``."""
    x, y, z = _vec(v, 3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def median(values: Sequence[float]) -> float:
    """Return the element at the middle position of the sorted values."""
    ordered = sorted(values)
    if not ordered:
        raise ValueError("median of an empty sequence")
    return ordered[len(ordered) // 2]


@dataclass
class InlierResult:
    """Outcome of triangulating matched features and classifying them."""

    total_error: float
    points: list[np.ndarray] = field(default_factory=list)
    inliers: list[int] = field(default_factory=list)
    outliers: list[int] = field(default_factory=list)


def triangulate_feature_nonlin(R, t, feature1, feature2) -> np.ndarray:
    """Triangulate a point seen along ``feature1`` (frame 1) and ``feature2`` (frame 2).

    ``R`` and ``t`` map frame-2 coordinates into frame 1.
    """
    R = np.asarray(R, dtype=float)
    t = _vec(t, 3)
    f1 = _vec(feature1, 3)
    f2 = R @ _vec(feature2, 3)
    b = np.array([t @ f1, t @ f2])
    cross = f1 @ f2
    A = np.array([[f1 @ f1, -cross], [cross, -(f2 @ f2)]])
    lam = np.linalg.inv(A) @ b
    xm = lam[0] * f1
    xn = t + lam[1] * f2
    return (xm + xn) / 2.0


def depth_from_triangulation_exact(R_r_c, t_r_c, f_r, f_c) -> tuple[float, float]:
    """Return ``(depth_in_r, depth_in_c)`` for a point seen along ``f_r`` and ``f_c``.

    The bearing vectors need not be unit length. Raises ``ValueError`` when the
    configuration is degenerate.
    """
    t = _vec(t_r_c, 3)
    f_r = _vec(f_r, 3)
    f_c_in_r = np.asarray(R_r_c, dtype=float) @ _vec(f_c, 3)
    a = (f_c_in_r @ f_r) / (t @ f_r)
    b = f_c_in_r @ t
    denom = a * b - f_c_in_r @ f_c_in_r
    if abs(denom) < 1e-6:
        raise ValueError("degenerate configuration for triangulation")
    depth_in_c = (b - a * (t @ t)) / denom
    depth_in_r = float(np.linalg.norm(t + f_c_in_r * depth_in_c))
    return depth_in_r, float(depth_in_c)


def reproj_error(f1, f2, error_multiplier2: float) -> float:
    """Scaled distance between the image-plane projections of two 3D vectors."""
    return error_multiplier2 * float(np.linalg.norm(project2d(f1) - project2d(f2)))


def compute_inliers(features1, features2, R, t, reproj_thresh, error_multiplier2) -> InlierResult:
    """Triangulate all matches and split them into inliers and outliers.

    ``R`` and ``t`` map frame-2 coordinates into frame 1; points are in frame 1.
    """
    R = np.asarray(R, dtype=float)
    t = _vec(t, 3)
    result = InlierResult(total_error=0.0)
    for j, (f1, f2) in enumerate(zip(features1, features2)):
        xyz = triangulate_feature_nonlin(R, t, f1, f2)
        result.points.append(xyz)
        e1 = reproj_error(f1, xyz, error_multiplier2)
        e2 = reproj_error(f2, R.T @ (xyz - t), error_multiplier2)
        if e1 > reproj_thresh or e2 > reproj_thresh:
            result.outliers.append(j)
        else:
            result.inliers.append(j)
            result.total_error += e1 + e2
    return result


def compute_inliers_one_view(
    feature_sphere_vec, xyz_vec, R, t, reproj_thresh, error_multiplier2
) -> tuple[list[int], list[int]]:
    """Classify known 3D points by their reprojection error in a single view."""
    R = np.asarray(R, dtype=float)
    t = _vec(t, 3)
    inliers: list[int] = []
    outliers: list[int] = []
    for j, (feature, xyz) in enumerate(zip(feature_sphere_vec, xyz_vec)):
        e = reproj_error(feature, R.T @ (_vec(xyz, 3) - t), error_multiplier2)
        (inliers if e < reproj_thresh else outliers).append(j)
    return inliers, outliers


def dcm2rpy(R) -> np.ndarray:
    """Convert a rotation matrix to roll, pitch, yaw."""
    R = np.asarray(R, dtype=float)
    pitch = math.atan2(-R[2, 0], math.sqrt(R[0, 0] ** 2 + R[1, 0] ** 2))
    if abs(pitch - math.pi / 2) < 1e-5 or abs(pitch + math.pi / 2) < 1e-5:
        yaw = 0.0
        roll = -math.atan2(R[0, 1], R[1, 1])
    else:
        c = math.cos(pitch)
        yaw = math.atan2(R[1, 0] / c, R[0, 0] / c)
        roll = math.atan2(R[2, 1] / c, R[2, 2] / c)
    return np.array([roll, pitch, yaw])


def rpy2dcm(rpy) -> np.ndarray:
    """Convert roll, pitch, yaw to a rotation matrix (Rz @ Ry @ Rx)."""
    roll, pitch, yaw = _vec(rpy, 3)
    cr, sr = math.cos(roll), math.sin(roll)
    cp, sp = math.cos(pitch), math.sin(pitch)
    cy, sy = math.cos(yaw), math.sin(yaw)
    r1 = np.array([[1.0, 0.0, 0.0], [0.0, cr, -sr], [0.0, sr, cr]])
    r2 = np.array([[cp, 0.0, sp], [0.0, 1.0, 0.0], [-sp, 0.0, cp]])
    r3 = np.array([[cy, -sy, 0.0], [sy, cy, 0.0], [0.0, 0.0, 1.0]])
    return r3 @ r2 @ r1


def angax2quat(n, angle: float) -> np.ndarray:
    """Quaternion ``(w, x, y, z)`` for a rotation of ``angle`` about unit axis ``n``."""
    n = _vec(n, 3)
    s = math.sin(angle / 2)
    return np.array([math.cos(angle / 2), n[0] * s, n[1] * s, n[2] * s])


def angax2dcm(n, angle: float) -> np.ndarray:
    """Rotation matrix for a rotation of ``angle`` about unit axis ``n``."""
    k = skew(n)
    return np.eye(3) + k * math.sin(angle) + k @ k * (1 - math.cos(angle))


def sampsonus_error(v2_dash, essential, v2) -> float:
    """First-order geometric error of a correspondence under an essential matrix."""
    E = np.asarray(essential, dtype=float)
    v3_dash = unproject2d(v2_dash)
    v3 = unproject2d(v2)
    error = v3_dash @ E @ v3
    fv3 = (E @ v3)[:2]
    ftv3_dash = (E.T @ v3_dash)[:2]
    return float(error * error / (fv3 @ fv3 + ftv3_dash @ ftv3_dash))