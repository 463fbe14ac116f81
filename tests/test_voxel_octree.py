import math

import numpy as np
import pytest

from voxvision.voxel_octree import (
    PointWithVar,
    Pose6D,
    VoxelOctoTree,
    VoxelPlane,
    calc_body_cov,
    pose6d_to_matrix,
)


def _pv(x, y, z):
    return PointWithVar(point_w=np.array([x, y, z], dtype=float), var=np.eye(3) * 1e-4)


def _planar_points():
    coords = [0.1, 0.5, 0.9]
    return [_pv(x, y, 0.5) for x in coords for y in coords]


def _corner_points():
    vals = [0.1, 0.9]
    return [_pv(x, y, z) for x in vals for y in vals for z in vals]


def _tree(max_layer=2, threshold=5, max_points=50):
    tree = VoxelOctoTree(max_layer, 0, threshold, max_points, 0.01)
    tree.layer_init_num = [threshold] * (max_layer + 2)
    tree.voxel_center = np.array([0.5, 0.5, 0.5])
    tree.quater_length = 0.25
    return tree


def test_body_cov_symmetric_and_range_variance():
    p = np.array([3.0, 1.0, 2.0])
    cov = calc_body_cov(p, 0.05, 0.02)
    assert np.allclose(cov, cov.T)
    d = p / np.linalg.norm(p)
    assert d @ cov @ d == pytest.approx(0.05**2)
    assert np.all(np.linalg.eigvalsh(cov) > -1e-12)


def test_body_cov_zero_z_is_finite_and_input_untouched():
    p = np.array([1.0, 2.0, 0.0])
    cov = calc_body_cov(p, 0.05, 0.02)
    assert np.all(np.isfinite(cov))
    assert p[2] == 0.0


def test_pose6d_identity_and_yaw():
    R, t = pose6d_to_matrix(Pose6D())
    assert np.allclose(R, np.eye(3))
    assert np.allclose(t, 0.0)
    R, t = pose6d_to_matrix(Pose6D(x=1.0, y=2.0, z=3.0, yaw=math.pi / 2))
    assert np.allclose(R @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0])
    assert np.allclose(t, [1.0, 2.0, 3.0])


def test_init_plane_on_planar_points():
    tree = _tree()
    plane = VoxelPlane()
    points = _planar_points()
    tree.init_plane(points, plane)
    assert plane.is_plane
    assert plane.is_update
    assert abs(plane.normal[2]) == pytest.approx(1.0)
    assert np.allclose(plane.center, [0.5, 0.5, 0.5])
    assert plane.d == pytest.approx(-float(plane.normal @ plane.center))
    assert plane.points_size == len(points)
    assert np.allclose(plane.plane_var, plane.plane_var.T)


def test_init_plane_rejects_volume():
    tree = _tree()
    plane = VoxelPlane()
    tree.init_plane(_corner_points(), plane)
    assert not plane.is_plane
    assert plane.is_update


def test_plane_ids_increase_and_stay_on_refit():
    tree = _tree()
    a, b = VoxelPlane(), VoxelPlane()
    tree.init_plane(_planar_points(), a)
    tree.init_plane(_planar_points(), b)
    assert b.id == a.id + 1
    first = a.id
    tree.init_plane(_planar_points(), a)
    assert a.id == first


def test_update_initializes_plane_after_threshold():
    tree = _tree()
    points = _planar_points()
    for pv in points[:5]:
        tree.update(pv)
    assert not tree.init_octo
    tree.update(points[5])
    assert tree.init_octo
    assert tree.plane.is_plane
    assert tree.octo_state == 0
    assert tree.new_points == 0


def test_update_disables_when_full():
    tree = _tree(max_points=10)
    points = _planar_points()
    for pv in points[:6]:
        tree.update(pv)
    for pv in points[6:9]:
        tree.update(pv)
    assert tree.update_enable
    tree.update(points[0])
    assert not tree.update_enable
    assert tree.temp_points == []


def test_non_planar_splits_into_children():
    tree = _tree()
    tree.temp_points = _corner_points()
    tree.init_octo_tree()
    assert tree.init_octo
    assert tree.octo_state == 1
    assert all(leaf is not None for leaf in tree.leaves)
    leaf = tree.leaves[7]
    assert np.allclose(leaf.voxel_center, [0.75, 0.75, 0.75])
    assert leaf.quater_length == pytest.approx(0.125)
    assert leaf.layer == 1
    assert len(leaf.temp_points) == 1


def test_find_correspond_and_insert():
    tree = _tree()
    assert tree.find_correspond([0.8, 0.8, 0.8]) is tree
    tree.temp_points = _corner_points()
    tree.init_octo_tree()
    assert tree.find_correspond([0.8, 0.8, 0.8]) is tree.leaves[7]
    assert tree.find_correspond([0.2, 0.2, 0.2]) is tree.leaves[0]
    node = tree.insert(_pv(0.2, 0.8, 0.2))
    assert node is tree.leaves[2]
    assert len(node.temp_points) == 2


def test_cut_at_max_layer_stops():
    tree = _tree(max_layer=0)
    tree.temp_points = _corner_points()
    tree.cut_octo_tree()
    assert tree.octo_state == 0
    assert all(leaf is None for leaf in tree.leaves)


def test_correct_pose_moves_plane_and_children():
    tree = _tree()
    for pv in _planar_points():
        tree.update(pv)
    R, t = pose6d_to_matrix(Pose6D(x=1.0, yaw=math.pi / 2))
    old_center = tree.plane.center.copy()
    old_normal = tree.plane.normal.copy()
    tree.correct_pose(R, t)
    assert np.allclose(tree.plane.center, R @ old_center + t)
    assert np.allclose(tree.plane.normal, R @ old_normal)
    assert tree.plane.d == pytest.approx(-float(tree.plane.normal @ tree.plane.center))

    split = _tree()
    split.temp_points = _corner_points()
    split.init_octo_tree()
    child_center = split.leaves[0].voxel_center.copy()
    split.correct_pose(np.eye(3), [0.0, 0.0, 2.0])
    assert np.allclose(split.leaves[0].voxel_center, child_center + [0.0, 0.0, 2.0])


def test_missing_layer_config_raises():
    tree = _tree()
    tree.layer_init_num = [5]
    tree.temp_points = _corner_points()
    with pytest.raises(IndexError):
        tree.init_octo_tree()