"""3D landmark stored in the map arena."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

from ..geometry import CameraModel


@dataclass(eq=False)
class MapPoint:
    """A 3D map point observed by one or more keyframes.

    Attributes:
        id: Arena id
        position: 3D position in the local world frame
        descriptor: Representative ORB descriptor (32,) uint8
        reference_keyframe: Keyframe the point was created from
        observations: keyframe id -> feature index
        normal: Mean viewing direction (unit vector)
        min_distance: Closest distance the point is expected to be seen at
        max_distance: Farthest distance the point is expected to be seen at
        is_bad: Set once the point is fused into another or culled
        replaced_by: Surviving point id after a fusion
        source: (robot id, remote point id) for points imported from a peer
    """

    id: int
    position: np.ndarray
    descriptor: np.ndarray
    reference_keyframe: int
    observations: dict[int, int] = field(default_factory=dict)
    normal: np.ndarray = field(default_factory=lambda: np.zeros(3))
    min_distance: float = 0.0
    max_distance: float = 0.0
    is_bad: bool = False
    replaced_by: int | None = None
    source: tuple[int, int] | None = None

    def __post_init__(self) -> None:
        self.position = np.asarray(self.position, dtype=np.float64).flatten()
        self.descriptor = np.asarray(self.descriptor, dtype=np.uint8).flatten()
        if self.position.shape != (3,):
            raise ValueError(f"Position must be (3,), got {self.position.shape}")

    @property
    def num_observations(self) -> int:
        return len(self.observations)

    @property
    def min_invariance_distance(self) -> float:
        return 0.8 * self.min_distance

    @property
    def max_invariance_distance(self) -> float:
        return 1.2 * self.max_distance

    def predict_scale(self, distance: float, camera: CameraModel) -> int:
        """Pyramid level the point should be detected at from ``distance``."""
        if distance <= 0.0 or self.max_distance <= 0.0 or camera.n_levels < 2:
            return 0
        ratio = self.max_distance / distance
        level = math.ceil(math.log(ratio) / camera.log_scale_factor)
        return min(max(level, 0), camera.n_levels - 1)
