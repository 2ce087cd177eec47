"""Keyframe record stored in the map arena."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..geometry import SE3, CameraModel
from .features import FeatureSet


@dataclass(eq=False)
class Keyframe(FeatureSet):
    """A keyframe and its feature observations.

    Map point associations are stored by id: ``point_ids[i]`` is the map
    point observed by feature ``i`` (-1 when the feature has none). The
    spanning tree and loop edges also hold keyframe ids, never objects.

    Keyframes received from another robot are imported into the arena with
    ``robot_id`` set to the sender; ``remote_pose_cw`` keeps the pose the
    sender published, before any alignment.
    """

    id: int
    robot_id: int
    frame_index: int
    pose_cw: SE3  # T_camera_world
    camera: CameraModel
    keypoints: np.ndarray  # (N, 7), see features.KP_*
    descriptors: np.ndarray  # (N, 32) uint8
    appearance: dict[int, float] = field(default_factory=dict)  # word -> weight
    feature_vector: dict[int, list[int]] = field(default_factory=dict)  # node -> features
    point_ids: np.ndarray | None = None
    parent: int | None = None
    children: set[int] = field(default_factory=set)
    loop_edges: set[int] = field(default_factory=set)
    is_bad: bool = False
    remote_pose_cw: SE3 | None = None

    def __post_init__(self) -> None:
        self.keypoints = np.asarray(self.keypoints, dtype=np.float64)
        self.descriptors = np.asarray(self.descriptors, dtype=np.uint8)
        if self.keypoints.ndim != 2 or self.keypoints.shape[1] != 7:
            raise ValueError(f"Keypoints must be (N, 7), got {self.keypoints.shape}")
        if self.descriptors.shape != (len(self.keypoints), 32):
            raise ValueError(
                f"Descriptors must be ({len(self.keypoints)}, 32), "
                f"got {self.descriptors.shape}"
            )
        if self.point_ids is None:
            self.point_ids = np.full(len(self.keypoints), -1, dtype=np.int64)
        else:
            self.point_ids = np.asarray(self.point_ids, dtype=np.int64)

    @property
    def identity(self) -> tuple[int, int]:
        """(robot id, frame index) as used on the bus."""
        return (self.robot_id, self.frame_index)

    @property
    def camera_center(self) -> np.ndarray:
        return self.pose_cw.camera_center

    def point_at(self, feature: int) -> int:
        return int(self.point_ids[feature])

    def observed_point_ids(self) -> list[int]:
        """Ids in feature order, without empty slots (may contain bad points)."""
        return [int(pid) for pid in self.point_ids if pid >= 0]

    def __repr__(self) -> str:
        return (
            f"Keyframe(id={self.id}, robot={self.robot_id}, "
            f"frame={self.frame_index}, features={self.num_features})"
        )
