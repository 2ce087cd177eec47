"""Geometry primitives: rigid poses, similarity transforms, camera model."""

from .camera import GRID_COLS, GRID_ROWS, CameraModel
from .pose import SE3
from .sim3 import Sim3

__all__ = [
    "SE3",
    "Sim3",
    "CameraModel",
    "GRID_COLS",
    "GRID_ROWS",
]
