"""Adaptive voxel octree that fits planes to LiDAR points with their uncertainty."""

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field

import numpy as np

from voxvision.mathutils import rpy2dcm, skew

__all__ = [
    "PointWithVar",
    "VoxelPlane",
    "Pose6D",
    "VoxelOctoTree",
    "calc_body_cov",
    "pose6d_to_matrix",
]

_plane_ids = itertools.count()


def _zeros3() -> np.ndarray:
    return np.zeros(3)


def _zeros33() -> np.ndarray:
    return np.zeros((3, 3))


@dataclass
class PointWithVar:
    """A point in body and world frames with its world and body covariances."""

    point_b: np.ndarray = field(default_factory=_zeros3)
    point_w: np.ndarray = field(default_factory=_zeros3)
    var: np.ndarray = field(default_factory=_zeros33)
    body_var: np.ndarray = field(default_factory=_zeros33)
    normal: np.ndarray = field(default_factory=_zeros3)


@dataclass
class VoxelPlane:
    """Plane fitted to the points of a voxel, with its 6x6 (normal, centre) covariance."""

    center: np.ndarray = field(default_factory=_zeros3)
    normal: np.ndarray = field(default_factory=_zeros3)
    y_normal: np.ndarray = field(default_factory=_zeros3)
    x_normal: np.ndarray = field(default_factory=_zeros3)
    covariance: np.ndarray = field(default_factory=_zeros33)
    plane_var: np.ndarray = field(default_factory=lambda: np.zeros((6, 6)))
    radius: float = 0.0
    min_eigen_value: float = 1.0
    mid_eigen_value: float = 1.0
    max_eigen_value: float = 1.0
    d: float = 0.0
    points_size: int = 0
    is_plane: bool = False
    is_init: bool = False
    id: int = 0
    is_update: bool = False


@dataclass
class Pose6D:
    """Position and roll/pitch/yaw orientation."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0


def calc_body_cov(pb, range_inc: float, degree_inc: float) -> np.ndarray:
    """Covariance of a LiDAR point from its range and bearing-angle uncertainties."""
    p = np.array(pb, dtype=float).reshape(3)
    if p[2] == 0:
        p[2] = 0.0001
    rng = float(np.linalg.norm(p))
    range_var = range_inc * range_inc
    s2 = math.sin(math.radians(degree_inc)) ** 2
    direction_var = np.diag([s2, s2])
    direction = p / rng
    direction_hat = skew(direction)
    base1 = np.array([1.0, 1.0, -(direction[0] + direction[1]) / direction[2]])
    base1 /= np.linalg.norm(base1)
    base2 = np.cross(base1, direction)
    base2 /= np.linalg.norm(base2)
    N = np.column_stack([base1, base2])
    A = rng * direction_hat @ N
    return range_var * np.outer(direction, direction) + A @ direction_var @ A.T


def pose6d_to_matrix(pose: Pose6D) -> tuple[np.ndarray, np.ndarray]:
    """Rotation ``Rz(yaw) @ Ry(pitch) @ Rx(roll)`` and translation of a pose."""
    R = rpy2dcm([pose.roll, pose.pitch, pose.yaw])
    return R, np.array([pose.x, pose.y, pose.z], dtype=float)


class VoxelOctoTree:
    """Node of an octree that splits a voxel until its points form a plane."""

    def __init__(
        self,
        max_layer: int,
        layer: int,
        points_size_threshold: int,
        max_points_num: int,
        planer_threshold: float,
        update_size_threshold: int = 5,
    ):
        self.max_layer = max_layer
        self.layer = layer
        self.points_size_threshold = points_size_threshold
        self.max_points_num = max_points_num
        self.planer_threshold = planer_threshold
        self.update_size_threshold = update_size_threshold
        self.temp_points: list[PointWithVar] = []
        self.new_points = 0
        self.octo_state = 0
        self.init_octo = False
        self.update_enable = True
        self.leaves: list[VoxelOctoTree | None] = [None] * 8
        self.voxel_center = np.zeros(3)
        self.quater_length = 0.0
        self.layer_init_num: list[int] = []
        self.plane = VoxelPlane()

    def init_plane(self, points: list[PointWithVar], plane: VoxelPlane) -> None:
        """Fit ``plane`` to ``points`` and propagate the point covariances into it."""
        n = len(points)
        plane.plane_var = np.zeros((6, 6))
        plane.normal = np.zeros(3)
        plane.points_size = n
        plane.radius = 0.0
        pts = np.array([p.point_w for p in points], dtype=float)
        plane.center = pts.sum(axis=0) / n
        plane.covariance = pts.T @ pts / n - np.outer(plane.center, plane.center)
        evals, evecs = np.linalg.eigh(plane.covariance)
        i_min, i_mid, i_max = 0, 1, 2
        if evals[i_min] >= self.planer_threshold:
            plane.is_update = True
            plane.is_plane = False
            return

        J_Q = np.eye(3) / n
        v_min = evecs[:, i_min]
        with np.errstate(divide="ignore", invalid="ignore"):
            for pv in points:
                F = np.zeros((3, 3))
                offset = np.asarray(pv.point_w, dtype=float) - plane.center
                for m in range(3):
                    if m == i_min:
                        continue
                    v_m = evecs[:, m]
                    F[m] = offset / (n * (evals[i_min] - evals[m])) @ (
                        np.outer(v_m, v_min) + np.outer(v_min, v_m)
                    )
                J = np.vstack([evecs @ F, J_Q])
                plane.plane_var += J @ pv.var @ J.T

        plane.normal = v_min.copy()
        plane.y_normal = evecs[:, i_mid].copy()
        plane.x_normal = evecs[:, i_max].copy()
        plane.min_eigen_value = float(evals[i_min])
        plane.mid_eigen_value = float(evals[i_mid])
        plane.max_eigen_value = float(evals[i_max])
        plane.radius = math.sqrt(max(float(evals[i_max]), 0.0))
        plane.d = -float(plane.normal @ plane.center)
        plane.is_plane = True
        plane.is_update = True
        if not plane.is_init:
            plane.id = next(_plane_ids)
            plane.is_init = True

    def _leaf_index(self, point) -> tuple[int, tuple[int, int, int]]:
        p = np.asarray(point, dtype=float)
        xyz = tuple(int(p[k] > self.voxel_center[k]) for k in range(3))
        return 4 * xyz[0] + 2 * xyz[1] + xyz[2], xyz

    def _child(self, point) -> "VoxelOctoTree":
        leafnum, xyz = self._leaf_index(point)
        leaf = self.leaves[leafnum]
        if leaf is None:
            leaf = VoxelOctoTree(
                self.max_layer,
                self.layer + 1,
                self.layer_init_num[self.layer + 1],
                self.max_points_num,
                self.planer_threshold,
                self.update_size_threshold,
            )
            leaf.layer_init_num = self.layer_init_num
            leaf.voxel_center = self.voxel_center + (2 * np.array(xyz) - 1) * self.quater_length
            leaf.quater_length = self.quater_length / 2
            self.leaves[leafnum] = leaf
        return leaf

    def init_octo_tree(self) -> None:
        """Fit a plane once enough points have arrived, splitting the node if none fits."""
        if len(self.temp_points) <= self.points_size_threshold:
            return
        self.init_plane(self.temp_points, self.plane)
        if self.plane.is_plane:
            self.octo_state = 0
            if len(self.temp_points) > self.max_points_num:
                self.update_enable = False
                self.temp_points = []
        else:
            self.octo_state = 1
            self.cut_octo_tree()
        self.init_octo = True
        self.new_points = 0

    def cut_octo_tree(self) -> None:
        """Distribute the node's points over its eight children and initialize them."""
        if self.layer >= self.max_layer:
            self.octo_state = 0
            return
        for pv in self.temp_points:
            leaf = self._child(pv.point_w)
            leaf.temp_points.append(pv)
            leaf.new_points += 1
        for leaf in self.leaves:
            if leaf is not None:
                leaf.init_octo_tree()

    def _grow_plane(self, pv: PointWithVar, limit_inclusive: bool) -> None:
        if not self.update_enable:
            return
        self.new_points += 1
        self.temp_points.append(pv)
        if self.new_points > self.update_size_threshold:
            self.init_plane(self.temp_points, self.plane)
            self.new_points = 0
        size = len(self.temp_points)
        full = size >= self.max_points_num if limit_inclusive else size > self.max_points_num
        if full:
            self.update_enable = False
            self.temp_points = []
            self.new_points = 0

    def update(self, pv: PointWithVar) -> None:
        """Add a point, refitting or descending into children as needed."""
        if not self.init_octo:
            self.new_points += 1
            self.temp_points.append(pv)
            if len(self.temp_points) > self.points_size_threshold:
                self.init_octo_tree()
        elif self.plane.is_plane:
            self._grow_plane(pv, limit_inclusive=True)
        elif self.layer < self.max_layer:
            self._child(pv.point_w).update(pv)
        else:
            self._grow_plane(pv, limit_inclusive=False)

    def find_correspond(self, pw) -> "VoxelOctoTree":
        """Deepest existing node that holds the point ``pw``."""
        if not self.init_octo or self.plane.is_plane or self.layer >= self.max_layer:
            return self
        leaf = self.leaves[self._leaf_index(pw)[0]]
        return leaf.find_correspond(pw) if leaf is not None else self

    def insert(self, pv: PointWithVar) -> "VoxelOctoTree":
        """Store the point in the node that owns it, without refitting; return that node."""
        if not self.init_octo or self.plane.is_plane or self.layer >= self.max_layer:
            self.new_points += 1
            self.temp_points.append(pv)
            return self
        return self._child(pv.point_w).insert(pv)

    def correct_pose(self, R, t) -> None:
        """Apply the rigid correction ``x -> R x + t`` to this node and its subtree."""
        R = np.asarray(R, dtype=float)
        t = np.asarray(t, dtype=float).reshape(3)
        self.voxel_center = R @ self.voxel_center + t
        plane = self.plane
        if plane.is_plane:
            plane.center = R @ plane.center + t
            plane.normal = R @ plane.normal
            plane.x_normal = R @ plane.x_normal
            plane.y_normal = R @ plane.y_normal
            plane.d = -float(plane.normal @ plane.center)
        if self.octo_state == 1:
            for leaf in self.leaves:
                if leaf is not None:
                    leaf.correct_pose(R, t)