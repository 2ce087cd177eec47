"""Keypoint storage and grid-bucketed area queries.

Keypoints are kept as one float array with a column per OpenCV keypoint
attribute, so they serialize as a flat list and slice cheaply.
"""

from __future__ import annotations

import math
from collections import defaultdict

import numpy as np

from ..geometry import GRID_COLS, GRID_ROWS, CameraModel

# Columns of the (N, 7) keypoint array
KP_X = 0
KP_Y = 1
KP_SIZE = 2
KP_ANGLE = 3
KP_RESPONSE = 4
KP_OCTAVE = 5
KP_CLASS_ID = 6
KEYPOINT_COLUMNS = 7

DESCRIPTOR_BYTES = 32


class FeatureSet:
    """Mixin for objects holding ``keypoints`` (N, 7) and a ``camera``.

    Provides the ORB-SLAM style 64x48 feature grid, built lazily on the
    first area query.
    """

    keypoints: np.ndarray
    camera: CameraModel

    @property
    def num_features(self) -> int:
        return len(self.keypoints)

    @property
    def pixels(self) -> np.ndarray:
        """(N, 2) keypoint pixel coordinates."""
        return self.keypoints[:, KP_X : KP_Y + 1]

    @property
    def octaves(self) -> np.ndarray:
        return self.keypoints[:, KP_OCTAVE].astype(np.int64)

    @property
    def angles(self) -> np.ndarray:
        return self.keypoints[:, KP_ANGLE]

    def _feature_grid(self) -> dict[tuple[int, int], list[int]]:
        grid = getattr(self, "_grid_cache", None)
        if grid is not None:
            return grid

        grid = defaultdict(list)
        cam = self.camera
        for i, (x, y) in enumerate(self.pixels):
            gx = round((x - cam.min_x) * cam.grid_cell_width_inv)
            gy = round((y - cam.min_y) * cam.grid_cell_height_inv)
            # Undistorted keypoints may fall outside the image
            if gx < 0 or gx >= GRID_COLS or gy < 0 or gy >= GRID_ROWS:
                continue
            grid[(gx, gy)].append(i)

        grid = dict(grid)
        object.__setattr__(self, "_grid_cache", grid)
        return grid

    def features_in_area(
        self,
        x: float,
        y: float,
        radius: float,
        min_level: int = -1,
        max_level: int = -1,
    ) -> list[int]:
        """Indices of features inside a square window around (x, y).

        Args:
            x, y: Window center in pixels
            radius: Half side of the window
            min_level: Lowest accepted octave (-1 for no bound)
            max_level: Highest accepted octave (-1 for no bound)

        Returns:
            Feature indices
        """
        cam = self.camera
        min_cell_x = max(0, math.floor((x - cam.min_x - radius) * cam.grid_cell_width_inv))
        if min_cell_x >= GRID_COLS:
            return []
        max_cell_x = min(
            GRID_COLS - 1, math.ceil((x - cam.min_x + radius) * cam.grid_cell_width_inv)
        )
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - cam.min_y - radius) * cam.grid_cell_height_inv))
        if min_cell_y >= GRID_ROWS:
            return []
        max_cell_y = min(
            GRID_ROWS - 1, math.ceil((y - cam.min_y + radius) * cam.grid_cell_height_inv)
        )
        if max_cell_y < 0:
            return []

        check_levels = min_level > 0 or max_level >= 0
        grid = self._feature_grid()
        keypoints = self.keypoints

        indices = []
        for cx in range(min_cell_x, max_cell_x + 1):
            for cy in range(min_cell_y, max_cell_y + 1):
                for i in grid.get((cx, cy), ()):
                    if check_levels:
                        octave = keypoints[i, KP_OCTAVE]
                        if octave < min_level:
                            continue
                        if max_level >= 0 and octave > max_level:
                            continue
                    if (
                        abs(keypoints[i, KP_X] - x) < radius
                        and abs(keypoints[i, KP_Y] - y) < radius
                    ):
                        indices.append(i)
        return indices
