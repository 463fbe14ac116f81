"""Vision geometry helpers, robust costs, a performance tracer and a plane-fitting voxel map."""

__version__ = "0.1.0"

__all__ = [
    "mathutils",
    "performance_monitor",
    "robust_cost",
    "user_input",
    "voxel_map",
    "voxel_octree",
]