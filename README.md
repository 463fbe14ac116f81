# voxvision

Geometry helpers for visual odometry, robust least-squares weights, a small
CSV performance tracer, and a voxel map that fits planes to LiDAR points and
turns scan points into point-to-plane residuals.

Everything works on plain `numpy` arrays.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

### `voxvision.mathutils`

- `project2d`, `unproject2d`, `skew`, `median`.
- `triangulate_feature_nonlin(R, t, feature1, feature2)`: midpoint triangulation
  of two bearing vectors, with `R`, `t` mapping frame 2 into frame 1.
- `depth_from_triangulation_exact(...)`: returns `(depth_in_r, depth_in_c)`;
  raises `ValueError` for a degenerate configuration.
- `reproj_error`, `compute_inliers` (returns an `InlierResult` with
  `total_error`, `points`, `inliers`, `outliers`) and `compute_inliers_one_view`
  (returns `(inliers, outliers)`).
- Rotations: `dcm2rpy`, `rpy2dcm`, `angax2quat` (quaternion as `w, x, y, z`),
  `angax2dcm`.
- `sampsonus_error(v2_dash, essential, v2)`.

### `voxvision.robust_cost`

Scale estimators with a `compute(errors)` method:
`TDistributionScaleEstimator`, `MADScaleEstimator` (expects absolute errors)
and `NormalDistributionScaleEstimator`.

Weight functions with `value(x)` and `configure(param)`:
`TukeyWeightFunction`, `TDistributionWeightFunction`, `HuberWeightFunction`.

### `voxvision.performance_monitor`

`Timer` measures the time between `start()` and `stop()`. `PerformanceMonitor`
holds named timers and log values. Register them with `add_timer` and
`add_log` before `open(trace_name, trace_dir)`, which creates
`<trace_dir>/<trace_name>.csv` and writes the header: timers in name order,
then logs in name order. Each `write_to_file()` appends one row and resets
timers and logs (logs go back to `-1`). Unknown names raise `KeyError`. The
monitor is a context manager that closes the file on exit.

```python
from voxvision.performance_monitor import PerformanceMonitor

with PerformanceMonitor() as monitor:
    monitor.add_timer("solve")
    monitor.add_log("iterations")
    monitor.open("trace", "/tmp")
    monitor.start_timer("solve")
    monitor.stop_timer("solve")
    monitor.log("iterations", 12)
    monitor.write_to_file()
```

### `voxvision.user_input`

`UserInputThread(stream=None)` reads one character at a time on a background
thread from `stream` (standard input by default). If the stream is a terminal
it is switched to unbuffered, no-echo mode until `close()`. `get_input()`
returns the last character read and clears it, or `None`. `stop()` asks the
thread to end; the thread also ends at end of input.

### `voxvision.voxel_octree`

- `PointWithVar`: a point in body and world frames with its covariances.
- `VoxelPlane`: a fitted plane with centre, normal, eigenvalues and a 6x6
  covariance of normal and centre.
- `Pose6D` and `pose6d_to_matrix(pose)`.
- `calc_body_cov(pb, range_inc, degree_inc)`: covariance of a LiDAR point.
- `VoxelOctoTree`: a node that fits a plane once it has more than its threshold
  of points and splits into eight children when the points are not planar.
  Methods: `init_plane`, `init_octo_tree`, `cut_octo_tree`, `update`,
  `insert`, `find_correspond`, `correct_pose`.

### `voxvision.voxel_map`

- `VoxelMapConfig`: map parameters. `VoxelMapConfig.from_mapping` reads keys
  such as `"lio/voxel_size"` either flat or nested (`{"lio": {"voxel_size": ...}}`).
- `VoxelMapManager`: the hashed map of root octrees.
  - `build_voxel_map(world_points, body_points, rot_end, state_cov)` and
    `update_voxel_map(points)` add points.
  - `build_residual_list(pv_list)` returns a `PointToPlane` for every point
    that matches a plane in its voxel or a neighbouring one, in input order.
  - `transform_lidar`, `voxel_location`, `rgb_from_voxel`,
    `get_voxels_in_range`, `get_update_planes`.
  - `map_sliding(position)` and `clear_mem_out_of_map(...)` drop root voxels
    far from the current position.
  - `update_with_optimized_poses(optimized_poses)` applies pose corrections to
    the voxels listed in `voxel_keyframe_map` for each entry of
    `original_keyframe_poses`.
- `map_jet(v, vmin, vmax)` and `calc_vect_quaternion(x_vec, y_vec, z_vec)`.

## Example

```python
import numpy as np
from voxvision.mathutils import triangulate_feature_nonlin
from voxvision.voxel_map import VoxelMapConfig, VoxelMapManager
from voxvision.voxel_octree import PointWithVar

point = triangulate_feature_nonlin(
    np.eye(3), np.array([0.5, 0.0, 0.0]),
    np.array([0.0, 0.0, 1.0]), np.array([-0.25, 0.0, 1.0]),
)

config = VoxelMapConfig.from_mapping({"lio": {"voxel_size": 0.5, "max_layer": 2}})
manager = VoxelMapManager(config)

rng = np.random.default_rng(0)
points = [
    PointWithVar(point_w=np.array([x, y, 0.0]), var=np.eye(3) * 1e-4)
    for x, y in rng.uniform(0.05, 0.45, size=(20, 2))
]
manager.update_voxel_map(points)
matches = manager.build_residual_list(points)
```

## What it does not do

The package has no camera models, no image processing and no homography
estimation. `VoxelMapManager` builds and queries the map and produces
point-to-plane residuals, but it does not run the state filter that consumes
them, and it does not publish or draw the planes; `get_update_planes`,
`map_jet` and `calc_vect_quaternion` only give the data a viewer would need.
There is no command-line program.