"""Keyframe and map-point structures, two-view initialization and local mapping for visual SLAM."""

__version__ = "0.1.0"

__all__ = [
    "geometry",
    "map_drawer",
    "initializer",
    "map",
    "mappoint",
    "keyframe_database",
    "keyframe",
    "triangulation",
    "local_mapping",
]