[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "voxvision"
version = "0.1.0"
description = "Multi-view geometry helpers, robust cost functions and a plane-fitting voxel octree map for LiDAR points"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = [
    "odometry",
    "triangulation",
    "robust-estimation",
    "voxel-map",
    "octree",
    "lidar",
    "plane-fitting",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering",
    "Topic :: Scientific/Engineering :: Mathematics",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["voxvision"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
