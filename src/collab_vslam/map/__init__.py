"""Map arena: keyframes, map points, covisibility and spanning tree."""

from .covisibility import CovisibilityGraph
from .features import (
    DESCRIPTOR_BYTES,
    KEYPOINT_COLUMNS,
    KP_ANGLE,
    KP_CLASS_ID,
    KP_OCTAVE,
    KP_RESPONSE,
    KP_SIZE,
    KP_X,
    KP_Y,
    FeatureSet,
)
from .keyframe import Keyframe
from .map import Map, MapUpdateLock, hamming_distance
from .map_point import MapPoint

__all__ = [
    "CovisibilityGraph",
    "FeatureSet",
    "Keyframe",
    "Map",
    "MapPoint",
    "MapUpdateLock",
    "hamming_distance",
    "DESCRIPTOR_BYTES",
    "KEYPOINT_COLUMNS",
    "KP_X",
    "KP_Y",
    "KP_SIZE",
    "KP_ANGLE",
    "KP_RESPONSE",
    "KP_OCTAVE",
    "KP_CLASS_ID",
]
