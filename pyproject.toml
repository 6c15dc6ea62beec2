[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slammap"
version = "0.1.0"
description = "Keyframe map, covisibility graph, local mapping and loop closing for feature-based visual SLAM"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["slam", "visual-odometry", "keyframe", "covisibility", "loop-closing", "computer-vision"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Recognition",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["slammap"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
