"""Pinhole camera model with an ORB-style scale pyramid."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# Feature grid used for area queries (same layout for every keyframe)
GRID_COLS = 64
GRID_ROWS = 48


@dataclass
class CameraModel:
    """Intrinsics, image bounds and pyramid parameters of one camera.

    Keyframes exchanged between robots carry all of this so the receiver
    can project points and bucket features without the sender's calibration
    files.

    Attributes:
        fx, fy: Focal lengths in pixels
        cx, cy: Principal point in pixels
        min_x, min_y, max_x, max_y: Undistorted image bounds
        scale_factors: Scale of each pyramid level (level 0 = 1.0)
        level_sigma2: Squared scale per level (measurement variance)
        inv_level_sigma2: Inverse of level_sigma2
    """

    fx: float
    fy: float
    cx: float
    cy: float
    min_x: float
    min_y: float
    max_x: float
    max_y: float
    scale_factors: np.ndarray
    level_sigma2: np.ndarray
    inv_level_sigma2: np.ndarray

    def __post_init__(self) -> None:
        self.scale_factors = np.asarray(self.scale_factors, dtype=np.float64).flatten()
        self.level_sigma2 = np.asarray(self.level_sigma2, dtype=np.float64).flatten()
        self.inv_level_sigma2 = np.asarray(
            self.inv_level_sigma2, dtype=np.float64
        ).flatten()

        n_levels = len(self.scale_factors)
        if n_levels == 0:
            raise ValueError("Camera needs at least one pyramid level")
        if len(self.level_sigma2) != n_levels or len(self.inv_level_sigma2) != n_levels:
            raise ValueError(
                f"Pyramid arrays disagree: {n_levels} scale factors, "
                f"{len(self.level_sigma2)} sigma2, {len(self.inv_level_sigma2)} inv sigma2"
            )
        if self.max_x <= self.min_x or self.max_y <= self.min_y:
            raise ValueError("Image bounds are empty")

    @classmethod
    def from_intrinsics(
        cls,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        width: int,
        height: int,
        n_levels: int = 8,
        scale_factor: float = 1.2,
    ) -> CameraModel:
        """Build a camera with a geometric scale pyramid.

        Args:
            fx, fy, cx, cy: Pinhole intrinsics
            width, height: Image size in pixels
            n_levels: Number of pyramid levels
            scale_factor: Scale ratio between consecutive levels

        Returns:
            CameraModel
        """
        scale_factors = scale_factor ** np.arange(n_levels, dtype=np.float64)
        level_sigma2 = scale_factors**2
        return cls(
            fx=fx,
            fy=fy,
            cx=cx,
            cy=cy,
            min_x=0.0,
            min_y=0.0,
            max_x=float(width),
            max_y=float(height),
            scale_factors=scale_factors,
            level_sigma2=level_sigma2,
            inv_level_sigma2=1.0 / level_sigma2,
        )

    @property
    def K(self) -> np.ndarray:
        """3x3 intrinsics matrix."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    @property
    def n_levels(self) -> int:
        return len(self.scale_factors)

    @property
    def log_scale_factor(self) -> float:
        if self.n_levels < 2:
            return 0.0
        return float(np.log(self.scale_factors[1]))

    @property
    def grid_cell_width_inv(self) -> float:
        return GRID_COLS / (self.max_x - self.min_x)

    @property
    def grid_cell_height_inv(self) -> float:
        return GRID_ROWS / (self.max_y - self.min_y)

    def project(self, point_camera: np.ndarray) -> np.ndarray:
        """Project a camera-frame point to pixel coordinates (no depth check)."""
        inv_z = 1.0 / point_camera[2]
        return np.array(
            [
                self.fx * point_camera[0] * inv_z + self.cx,
                self.fy * point_camera[1] * inv_z + self.cy,
            ]
        )

    def in_image(self, u: float, v: float) -> bool:
        return self.min_x <= u <= self.max_x and self.min_y <= v <= self.max_y
