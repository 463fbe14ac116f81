"""Hash map of voxel octrees: building, updating and matching points against fitted planes."""

from __future__ import annotations

import copy
import logging
import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import numpy as np

from voxvision.mathutils import skew
from voxvision.voxel_octree import (
    PointWithVar,
    Pose6D,
    VoxelOctoTree,
    VoxelPlane,
    calc_body_cov,
    pose6d_to_matrix,
)

__all__ = [
    "VoxelMapConfig",
    "PointToPlane",
    "VoxelMapManager",
    "map_jet",
    "calc_vect_quaternion",
]

logger = logging.getLogger(__name__)

VoxelKey = tuple[int, int, int]

_MISSING = object()


def _default_layer_init_num() -> list[int]:
    return [5, 5, 5, 5, 5]


@dataclass
class VoxelMapConfig:
    """Parameters of the voxel map and of the point-to-plane matching."""

    is_pub_plane_map: bool = False
    max_layer: int = 1
    max_voxel_size: float = 0.5
    planner_threshold: float = 0.01
    sigma_num: float = 3.0
    beam_err: float = 0.02
    dept_err: float = 0.05
    layer_init_num: list[int] = field(default_factory=_default_layer_init_num)
    max_points_num: int = 50
    max_iterations: int = 5
    map_sliding_en: bool = False
    half_map_size: int = 100
    sliding_thresh: float = 8.0

    _KEYS = {
        "is_pub_plane_map": ("publish/pub_plane_en", bool),
        "max_layer": ("lio/max_layer", int),
        "max_voxel_size": ("lio/voxel_size", float),
        "planner_threshold": ("lio/min_eigen_value", float),
        "sigma_num": ("lio/sigma_num", float),
        "beam_err": ("lio/beam_err", float),
        "dept_err": ("lio/dept_err", float),
        "layer_init_num": ("lio/layer_init_num", lambda v: [int(x) for x in v]),
        "max_points_num": ("lio/max_points_num", int),
        "max_iterations": ("lio/max_iterations", int),
        "map_sliding_en": ("local_map/map_sliding_en", bool),
        "half_map_size": ("local_map/half_map_size", int),
        "sliding_thresh": ("local_map/sliding_thresh", float),
    }

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> "VoxelMapConfig":
        """Read parameters keyed ``"lio/voxel_size"`` or nested as ``{"lio": {...}}``."""
        values = {}
        for attr, (path, convert) in cls._KEYS.items():
            found = _lookup(params, path)
            if found is not _MISSING:
                values[attr] = convert(found)
        return cls(**values)


def _lookup(params: Mapping[str, Any], path: str) -> Any:
    if path in params:
        return params[path]
    node: Any = params
    for part in path.split("/"):
        if isinstance(node, Mapping) and part in node:
            node = node[part]
        else:
            return _MISSING
    return node


@dataclass
class PointToPlane:
    """A point matched to a plane, with what the filter update needs."""

    point_b: np.ndarray = field(default_factory=lambda: np.zeros(3))
    point_w: np.ndarray = field(default_factory=lambda: np.zeros(3))
    normal: np.ndarray = field(default_factory=lambda: np.zeros(3))
    center: np.ndarray = field(default_factory=lambda: np.zeros(3))
    plane_var: np.ndarray = field(default_factory=lambda: np.zeros((6, 6)))
    body_cov: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    d: float = 0.0
    layer: int = 0
    dis_to_plane: float = 0.0


def map_jet(v: float, vmin: float, vmax: float) -> tuple[int, int, int]:
    """Jet colour map: ``(r, g, b)`` bytes for ``v`` clamped to ``[vmin, vmax]``."""
    v = min(max(v, vmin), vmax)
    if v < 0.1242:
        db = 0.504 + ((1.0 - 0.504) / 0.1242) * v
        dg = dr = 0.0
    elif v < 0.3747:
        db = 1.0
        dr = 0.0
        dg = (v - 0.1242) * (1.0 / (0.3747 - 0.1242))
    elif v < 0.6253:
        db = (0.6253 - v) * (1.0 / (0.6253 - 0.3747))
        dg = 1.0
        dr = (v - 0.3747) * (1.0 / (0.6253 - 0.3747))
    elif v < 0.8758:
        db = 0.0
        dr = 1.0
        dg = (0.8758 - v) * (1.0 / (0.8758 - 0.6253))
    else:
        db = 0.0
        dg = 0.0
        dr = 1.0 - (v - 0.8758) * ((1.0 - 0.504) / (1.0 - 0.8758))
    return int(255 * dr), int(255 * dg), int(255 * db)


def calc_vect_quaternion(x_vec, y_vec, z_vec) -> np.ndarray:
    """Quaternion ``(w, x, y, z)`` of the rotation whose columns are the three axes."""
    m = np.column_stack(
        [np.asarray(v, dtype=float).reshape(3) for v in (x_vec, y_vec, z_vec)]
    )
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0:
        s = math.sqrt(trace + 1.0)
        w = 0.5 * s
        s = 0.5 / s
        return np.array(
            [w, (m[2, 1] - m[1, 2]) * s, (m[0, 2] - m[2, 0]) * s, (m[1, 0] - m[0, 1]) * s]
        )
    i = 0
    if m[1, 1] > m[0, 0]:
        i = 1
    if m[2, 2] > m[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    s = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
    xyz = np.zeros(3)
    xyz[i] = 0.5 * s
    s = 0.5 / s
    w = (m[k, j] - m[j, k]) * s
    xyz[j] = (m[j, i] + m[i, j]) * s
    xyz[k] = (m[k, i] + m[i, k]) * s
    return np.array([w, xyz[0], xyz[1], xyz[2]])


class VoxelMapManager:
    """Owns the voxel map and matches scan points to the planes it holds."""

    def __init__(self, config: VoxelMapConfig | None = None, ext_R=None, ext_T=None):
        self.config = config if config is not None else VoxelMapConfig()
        self.ext_R = np.eye(3) if ext_R is None else np.asarray(ext_R, dtype=float)
        self.ext_T = np.zeros(3) if ext_T is None else np.asarray(ext_T, dtype=float).reshape(3)
        self.voxel_map: dict[VoxelKey, VoxelOctoTree] = {}
        self.original_keyframe_poses: list[Pose6D] = []
        self.voxel_keyframe_map: dict[int, list[VoxelKey]] = {}
        self.position_last = np.zeros(3)
        self.last_slide_position = np.zeros(3)
        self._lock = threading.Lock()

    def _voxel_coords(self, point) -> np.ndarray:
        loc = np.asarray(point, dtype=float).reshape(3) / self.config.max_voxel_size
        return np.where(loc < 0, loc - 1.0, loc)

    def voxel_location(self, point) -> VoxelKey:
        """Key of the root voxel that holds ``point``."""
        x, y, z = (int(c) for c in self._voxel_coords(point))
        return x, y, z

    def _new_root(self, key: VoxelKey) -> VoxelOctoTree:
        cfg = self.config
        layer_init_num = list(cfg.layer_init_num)
        octo = VoxelOctoTree(
            cfg.max_layer, 0, layer_init_num[0], cfg.max_points_num, cfg.planner_threshold
        )
        octo.layer_init_num = layer_init_num
        octo.quater_length = cfg.max_voxel_size / 4
        octo.voxel_center = (0.5 + np.array(key, dtype=float)) * cfg.max_voxel_size
        self.voxel_map[key] = octo
        return octo

    def transform_lidar(self, rot, t, points) -> np.ndarray:
        """Map LiDAR points to the world frame; columns beyond xyz are kept as they are."""
        pts = np.asarray(points, dtype=float)
        if pts.ndim != 2 or pts.shape[1] < 3:
            raise ValueError(f"expected an (N, 3+) array of points, got shape {pts.shape}")
        rot = np.asarray(rot, dtype=float)
        t = np.asarray(t, dtype=float).reshape(3)
        out = pts.copy()
        out[:, :3] = (pts[:, :3] @ self.ext_R.T + self.ext_T) @ rot.T + t
        return out

    def build_voxel_map(self, world_points, body_points, rot_end, state_cov) -> None:
        """Build the map from one scan given in both world and body frames."""
        cfg = self.config
        rot_end = np.asarray(rot_end, dtype=float)
        state_cov = np.asarray(state_cov, dtype=float)
        rot_ext = rot_end @ self.ext_R
        for pw, pb in zip(world_points, body_points):
            body = np.array(pb, dtype=float).reshape(3)
            if body[2] == 0:
                body[2] = 0.0001
            body_var = calc_body_cov(body, cfg.dept_err, cfg.beam_err)
            cross = skew(body)
            var = (
                rot_ext @ body_var @ rot_ext.T
                + cross @ state_cov[:3, :3] @ cross.T
                + state_cov[3:6, 3:6]
            )
            pv = PointWithVar(
                point_b=body,
                point_w=np.array(pw, dtype=float).reshape(3),
                var=var,
                body_var=body_var,
            )
            key = self.voxel_location(pv.point_w)
            octo = self.voxel_map.get(key) or self._new_root(key)
            octo.temp_points.append(pv)
            octo.new_points += 1
        for octo in self.voxel_map.values():
            octo.init_octo_tree()

    def update_voxel_map(self, points: Iterable[PointWithVar]) -> None:
        """Add points to the map, creating voxels as needed."""
        for pv in points:
            key = self.voxel_location(pv.point_w)
            octo = self.voxel_map.get(key) or self._new_root(key)
            octo.update(pv)

    def build_residual_list(self, pv_list: Sequence[PointWithVar]) -> list[PointToPlane]:
        """Match each point to a plane in its voxel or a neighbour; keep input order."""
        result = []
        for pv in pv_list:
            key = self.voxel_location(pv.point_w)
            octo = self.voxel_map.get(key)
            if octo is None:
                continue
            match = self.build_single_residual(pv, octo, 0)
            if match is None:
                loc = self._voxel_coords(pv.point_w)
                near = list(key)
                for k in range(3):
                    if loc[k] > octo.voxel_center[k] + octo.quater_length:
                        near[k] += 1
                    elif loc[k] < octo.voxel_center[k] - octo.quater_length:
                        near[k] -= 1
                near_octo = self.voxel_map.get(tuple(near))
                if near_octo is not None:
                    match = self.build_single_residual(pv, near_octo, 0)
            if match is not None:
                result.append(match)
        return result

    def build_single_residual(self, pv: PointWithVar, octo: VoxelOctoTree, current_layer: int):
        """Most probable plane match for ``pv`` in the subtree of ``octo``, or ``None``."""
        success, _, match = self._search(pv, octo, current_layer, False, 0.0, None)
        return match if success else None

    def _search(self, pv, octo, layer, success, prob, match):
        plane = octo.plane
        if not plane.is_plane:
            if layer < self.config.max_layer:
                for leaf in octo.leaves:
                    if leaf is not None:
                        success, prob, match = self._search(pv, leaf, layer + 1, success, prob, match)
            return success, prob, match

        p_w = np.asarray(pv.point_w, dtype=float)
        signed = float(plane.normal @ p_w + plane.d)
        dis_to_plane = abs(signed)
        diff = plane.center - p_w
        dis_to_center = float(diff @ diff)
        range_dis = math.sqrt(max(dis_to_center - dis_to_plane * dis_to_plane, 0.0))
        if range_dis > 3 * plane.radius:
            return success, prob, match

        J_nq = np.concatenate([p_w - plane.center, -plane.normal])
        sigma_l = float(J_nq @ plane.plane_var @ J_nq)
        sigma_l += float(plane.normal @ pv.var @ plane.normal)
        if sigma_l <= 0 or not dis_to_plane < self.config.sigma_num * math.sqrt(sigma_l):
            return success, prob, match

        this_prob = 1.0 / math.sqrt(sigma_l) * math.exp(-0.5 * dis_to_plane * dis_to_plane / sigma_l)
        if this_prob > prob:
            prob = this_prob
            pv.normal = plane.normal.copy()
            match = PointToPlane(
                point_b=np.array(pv.point_b, dtype=float),
                point_w=p_w.copy(),
                normal=plane.normal.copy(),
                center=plane.center.copy(),
                plane_var=plane.plane_var.copy(),
                body_cov=np.array(pv.body_var, dtype=float),
                d=plane.d,
                layer=layer,
                dis_to_plane=signed,
            )
        return True, prob, match

    def rgb_from_voxel(self, point) -> np.ndarray:
        """One of red, green or blue, alternating with the voxel index sum."""
        p = np.asarray(point, dtype=float).reshape(3)
        ind = sum(int(math.floor(c / self.config.max_voxel_size)) for c in p)
        k = (ind + 100000) % 3
        return np.array([255.0 * (k == 0), 255.0 * (k == 1), 255.0 * (k == 2)])

    def get_voxels_in_range(self, x: float, y: float, z: float, radius: float) -> list[VoxelPlane]:
        """Planes of root voxels whose centre lies within ``radius`` of ``(x, y, z)``."""
        if not self.voxel_map:
            return []
        size = self.config.max_voxel_size
        if size <= 0:
            raise ValueError(f"invalid voxel size: {size}")
        cx, cy, cz = (int(math.floor(c / size)) for c in (x, y, z))
        reach = int(math.ceil(radius / size)) + 1
        query = np.array([x, y, z], dtype=float)
        result = []
        offsets = range(-reach, reach + 1)
        for dx in offsets:
            for dy in offsets:
                for dz in offsets:
                    octo = self.voxel_map.get((cx + dx, cy + dy, cz + dz))
                    if octo is None or not octo.plane.is_plane:
                        continue
                    if float(np.linalg.norm(octo.plane.center - query)) <= radius:
                        result.append(octo.plane)
        return result

    def update_with_optimized_poses(self, optimized_poses: Sequence[tuple[Any, Any]]) -> int:
        """Move the voxels of each keyframe from its original to its optimized pose.

        Returns the number of voxels corrected.
        """
        with self._lock:
            if not optimized_poses:
                logger.warning("optimized poses is empty")
                return 0
            if len(optimized_poses) != len(self.original_keyframe_poses):
                raise ValueError(
                    f"optimized poses size ({len(optimized_poses)}) does not match "
                    f"original keyframes ({len(self.original_keyframe_poses)})"
                )
            corrected = 0
            for kf_idx, (original, (R_opt, t_opt)) in enumerate(
                zip(self.original_keyframe_poses, optimized_poses)
            ):
                R_org, t_org = pose6d_to_matrix(original)
                R_corr = np.asarray(R_opt, dtype=float) @ R_org.T
                t_corr = np.asarray(t_opt, dtype=float).reshape(3) - R_corr @ t_org
                keys = self.voxel_keyframe_map.get(kf_idx)
                if not keys:
                    logger.debug("no voxels associated with keyframe %d", kf_idx)
                    continue
                for key in keys:
                    octo = self.voxel_map.get(tuple(key))
                    if octo is None:
                        logger.debug("voxel at %s not found", key)
                        continue
                    octo.correct_pose(R_corr, t_corr)
                    corrected += 1
            logger.info("voxel map updated with %d optimized poses", len(optimized_poses))
            return corrected

    def get_update_planes(self, octo: VoxelOctoTree, max_layer: int) -> list[VoxelPlane]:
        """Copies of the updated planes in the subtree, down to ``max_layer``."""
        planes: list[VoxelPlane] = []
        self._collect_planes(octo, max_layer, planes)
        return planes

    def _collect_planes(self, octo: VoxelOctoTree, max_layer: int, planes: list[VoxelPlane]) -> None:
        if octo.layer > max_layer:
            return
        if octo.plane.is_update:
            planes.append(copy.deepcopy(octo.plane))
        if octo.layer < octo.max_layer and not octo.plane.is_plane:
            for leaf in octo.leaves:
                if leaf is not None:
                    self._collect_planes(leaf, max_layer, planes)

    def map_sliding(self, position) -> bool:
        """Drop voxels far from ``position`` once it moved far enough; return whether it did."""
        self.position_last = np.asarray(position, dtype=float).reshape(3)
        moved = float(np.linalg.norm(self.position_last - self.last_slide_position))
        if moved < self.config.sliding_thresh:
            logger.debug("last sliding length %f", moved)
            return False
        self.last_slide_position = self.position_last.copy()
        loc = [int(c) for c in self._voxel_coords(self.position_last)]
        half = self.config.half_map_size
        self.clear_mem_out_of_map(
            loc[0] + half, loc[0] - half, loc[1] + half, loc[1] - half, loc[2] + half, loc[2] - half
        )
        return True

    def clear_mem_out_of_map(self, x_max, x_min, y_max, y_min, z_max, z_min) -> int:
        """Remove root voxels outside the box; return how many were removed."""
        outside = [
            key
            for key in self.voxel_map
            if not (x_min <= key[0] <= x_max and y_min <= key[1] <= y_max and z_min <= key[2] <= z_max)
        ]
        for key in outside:
            del self.voxel_map[key]
        logger.debug("deleted %d root voxels", len(outside))
        return len(outside)