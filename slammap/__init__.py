"""Keyframe map, covisibility graph, local mapping and loop closing for feature-based visual SLAM."""

__version__ = "0.1.0"