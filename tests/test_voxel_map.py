import numpy as np
import pytest

from voxvision.mathutils import angax2dcm, angax2quat
from voxvision.voxel_map import (
    PointToPlane,
    VoxelMapConfig,
    VoxelMapManager,
    calc_vect_quaternion,
    map_jet,
)
from voxvision.voxel_octree import Pose6D, PointWithVar


def _plane_points(z=0.1):
    grid = np.linspace(0.05, 0.45, 6)
    return np.array([[x, y, z] for x in grid for y in grid])


def _planar_manager():
    manager = VoxelMapManager()
    pts = _plane_points()
    manager.build_voxel_map(pts, pts, np.eye(3), np.zeros((6, 6)))
    return manager


def test_map_jet_clamps_and_endpoint():
    assert map_jet(-1.0, 0.0, 1.0) == map_jet(0.0, 0.0, 1.0)
    assert map_jet(2.0, 0.0, 1.0) == map_jet(1.0, 0.0, 1.0)
    assert map_jet(0.0, 0.0, 1.0) == (0, 0, 128)
    assert map_jet(0.5, 0.0, 1.0)[1] == 255


def test_calc_vect_quaternion_matches_axis_angle():
    axis = np.array([1.0, 2.0, -0.5])
    axis /= np.linalg.norm(axis)
    R = angax2dcm(axis, 0.7)
    q = calc_vect_quaternion(R[:, 0], R[:, 1], R[:, 2])
    assert np.allclose(q, angax2quat(axis, 0.7))


def test_calc_vect_quaternion_half_turn_is_unit():
    R = angax2dcm(np.array([0.0, 0.0, 1.0]), np.pi)
    q = calc_vect_quaternion(R[:, 0], R[:, 1], R[:, 2])
    assert np.isclose(np.linalg.norm(q), 1.0)
    assert np.isclose(abs(q[3]), 1.0)


def test_config_defaults_and_overrides():
    default = VoxelMapConfig.from_mapping({})
    assert default == VoxelMapConfig()
    assert default.layer_init_num == [5, 5, 5, 5, 5]
    cfg = VoxelMapConfig.from_mapping(
        {"lio/voxel_size": 1.0, "local_map": {"half_map_size": 7}, "lio": {"max_layer": 3}}
    )
    assert cfg.max_voxel_size == 1.0
    assert cfg.half_map_size == 7
    assert cfg.max_layer == 3
    assert cfg.sigma_num == 3.0


def test_voxel_location_follows_source_rounding():
    manager = VoxelMapManager()
    assert manager.voxel_location([0.25, -0.25, 1.2]) == (0, -1, 2)
    assert manager.voxel_location([0.49, 0.01, 0.0]) == (0, 0, 0)


def test_transform_lidar_keeps_intensity():
    manager = VoxelMapManager()
    pts = np.array([[1.0, 2.0, 3.0, 9.0], [0.0, -1.0, 0.5, 4.0]])
    out = manager.transform_lidar(np.eye(3), [1.0, 0.0, 0.0], pts)
    assert np.allclose(out[:, :3], pts[:, :3] + [1.0, 0.0, 0.0])
    assert np.allclose(out[:, 3], pts[:, 3])
    with pytest.raises(ValueError):
        manager.transform_lidar(np.eye(3), np.zeros(3), np.zeros((2, 2)))


def test_build_voxel_map_fits_plane():
    manager = _planar_manager()
    assert list(manager.voxel_map) == [(0, 0, 0)]
    plane = manager.voxel_map[(0, 0, 0)].plane
    assert plane.is_plane
    assert np.isclose(abs(plane.normal[2]), 1.0)
    assert np.allclose(plane.center, [0.25, 0.25, 0.1])


def test_residual_found_near_plane_and_rejected_far_away():
    manager = _planar_manager()
    near = PointWithVar(point_b=np.array([0.25, 0.25, 0.101]), point_w=np.array([0.25, 0.25, 0.101]),
                        var=np.eye(3) * 1e-6)
    far = PointWithVar(point_b=np.array([0.25, 0.25, 0.4]), point_w=np.array([0.25, 0.25, 0.4]),
                       var=np.eye(3) * 1e-6)
    result = manager.build_residual_list([far, near])
    assert len(result) == 1
    match = result[0]
    assert isinstance(match, PointToPlane)
    assert np.allclose(match.point_w, near.point_w)
    assert match.dis_to_plane == pytest.approx(float(match.normal @ near.point_w + match.d))
    assert abs(match.dis_to_plane) == pytest.approx(0.001, abs=1e-9)
    assert np.allclose(near.normal, match.normal)


def test_build_single_residual_none_for_uninitialized_voxel():
    manager = VoxelMapManager()
    pv = PointWithVar(point_w=np.array([0.1, 0.1, 0.1]), var=np.eye(3) * 1e-6)
    manager.update_voxel_map([pv])
    octo = manager.voxel_map[(0, 0, 0)]
    assert manager.build_single_residual(pv, octo, 0) is None


def test_update_voxel_map_initializes_after_threshold():
    manager = VoxelMapManager()
    pts = [PointWithVar(point_w=p, var=np.eye(3) * 1e-6) for p in _plane_points()[:6]]
    manager.update_voxel_map(pts[:5])
    octo = manager.voxel_map[(0, 0, 0)]
    assert not octo.init_octo
    manager.update_voxel_map(pts[5:])
    assert octo.init_octo
    assert octo.plane.is_plane


def test_rgb_from_voxel_is_one_hot_and_alternates():
    manager = VoxelMapManager()
    a = manager.rgb_from_voxel([0.1, 0.1, 0.1])
    b = manager.rgb_from_voxel([0.6, 0.1, 0.1])
    assert a.sum() == 255.0
    assert b.sum() == 255.0
    assert not np.array_equal(a, b)


def test_get_voxels_in_range():
    manager = _planar_manager()
    found = manager.get_voxels_in_range(0.25, 0.25, 0.1, 0.5)
    assert len(found) == 1
    assert found[0] is manager.voxel_map[(0, 0, 0)].plane
    assert manager.get_voxels_in_range(10.0, 10.0, 10.0, 0.5) == []
    manager.config.max_voxel_size = 0.0
    with pytest.raises(ValueError):
        manager.get_voxels_in_range(0.0, 0.0, 0.0, 1.0)


def test_get_update_planes_returns_copies():
    manager = _planar_manager()
    octo = manager.voxel_map[(0, 0, 0)]
    planes = manager.get_update_planes(octo, manager.config.max_layer)
    assert len(planes) == 1
    planes[0].center[:] = 99.0
    assert np.allclose(octo.plane.center, [0.25, 0.25, 0.1])


def _scatter_manager():
    manager = VoxelMapManager()
    points = [PointWithVar(point_w=np.array([0.5 * i + 0.25, 0.25, 0.25])) for i in range(5)]
    manager.update_voxel_map(points)
    return manager


def test_clear_mem_out_of_map():
    manager = _scatter_manager()
    before = len(manager.voxel_map)
    removed = manager.clear_mem_out_of_map(2, 1, 0, 0, 0, 0)
    assert removed == before - len(manager.voxel_map)
    assert manager.voxel_map
    assert all(1 <= k[0] <= 2 and k[1] == 0 and k[2] == 0 for k in manager.voxel_map)


def test_map_sliding():
    manager = VoxelMapManager(VoxelMapConfig(half_map_size=1))
    manager.update_voxel_map([
        PointWithVar(point_w=np.array([0.25, 0.25, 0.25])),
        PointWithVar(point_w=np.array([50.25, 0.25, 0.25])),
    ])
    assert manager.map_sliding([1.0, 0.0, 0.0]) is False
    assert len(manager.voxel_map) == 2
    assert manager.map_sliding([50.2, 0.0, 0.0]) is True
    assert list(manager.voxel_map) == [manager.voxel_location([50.25, 0.25, 0.25])]


def test_update_with_optimized_poses_moves_planes():
    manager = _planar_manager()
    manager.original_keyframe_poses = [Pose6D()]
    manager.voxel_keyframe_map = {0: [(0, 0, 0)]}
    plane = manager.voxel_map[(0, 0, 0)].plane
    center = plane.center.copy()
    normal = plane.normal.copy()
    shift = np.array([1.0, 0.0, 0.0])
    assert manager.update_with_optimized_poses([(np.eye(3), shift)]) == 1
    assert np.allclose(plane.center, center + shift)
    assert np.allclose(plane.normal, normal)
    assert plane.d == pytest.approx(-float(plane.normal @ plane.center))


def test_update_with_optimized_poses_size_mismatch():
    manager = _planar_manager()
    manager.original_keyframe_poses = [Pose6D(), Pose6D()]
    with pytest.raises(ValueError):
        manager.update_with_optimized_poses([(np.eye(3), np.zeros(3))])
    assert manager.update_with_optimized_poses([]) == 0