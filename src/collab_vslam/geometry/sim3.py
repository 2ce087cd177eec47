"""Sim(3) similarity transforms.

A similarity transform maps a point as ``x -> s * R @ x + t``. Loop
correction between two robots is expressed in Sim(3) so that monocular
maps with different scale can be aligned; with ``fix_scale`` the scale
stays 1 and Sim(3) reduces to SE(3).
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .pose import SE3


@dataclass
class Sim3:
    """Similarity transformation (rotation, translation, uniform scale).

    Attributes:
        rotation: 3x3 rotation matrix
        translation: 3D translation vector
        scale: Positive uniform scale
    """

    rotation: np.ndarray
    translation: np.ndarray
    scale: float = 1.0

    def __post_init__(self) -> None:
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()
        self.scale = float(self.scale)

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )
        if not self.scale > 0.0:
            raise ValueError(f"Scale must be positive, got {self.scale}")

    @classmethod
    def identity(cls) -> Sim3:
        return cls(rotation=np.eye(3), translation=np.zeros(3), scale=1.0)

    @classmethod
    def from_se3(cls, pose: SE3) -> Sim3:
        """Lift a rigid transform to Sim(3) with unit scale."""
        return cls(rotation=pose.rotation, translation=pose.translation, scale=1.0)

    def to_se3(self) -> SE3:
        """Drop the scale: [R | t/s].

        This is how a corrected Sim(3) keyframe pose is written back as
        a rigid camera pose.
        """
        return SE3(rotation=self.rotation, translation=self.translation / self.scale)

    def to_matrix(self) -> np.ndarray:
        """4x4 matrix [[sR, t], [0, 1]]."""
        S = np.eye(4, dtype=np.float64)
        S[:3, :3] = self.scale * self.rotation
        S[:3, 3] = self.translation
        return S

    @classmethod
    def from_matrix(cls, S: np.ndarray) -> Sim3:
        """Recover (R, t, s) from a 4x4 or 3x4 [sR | t] matrix."""
        S = np.asarray(S, dtype=np.float64)
        if S.shape not in ((4, 4), (3, 4)):
            raise ValueError(f"Transform must be 4x4 or 3x4, got {S.shape}")
        sR = S[:3, :3]
        scale = float(np.cbrt(np.linalg.det(sR)))
        return cls(rotation=sR / scale, translation=S[:3, 3], scale=scale)

    def inverse(self) -> Sim3:
        """Inverse similarity: (R^T, -(1/s) R^T t, 1/s)."""
        R_inv = self.rotation.T
        s_inv = 1.0 / self.scale
        return Sim3(
            rotation=R_inv,
            translation=-s_inv * (R_inv @ self.translation),
            scale=s_inv,
        )

    def compose(self, other: Sim3) -> Sim3:
        """self @ other (other is applied first)."""
        return Sim3(
            rotation=self.rotation @ other.rotation,
            translation=self.scale * (self.rotation @ other.translation)
            + self.translation,
            scale=self.scale * other.scale,
        )

    def map(self, points: np.ndarray) -> np.ndarray:
        """Transform a single point (3,) or an Nx3 array."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            return self.scale * (self.rotation @ points) + self.translation
        return self.scale * (points @ self.rotation.T) + self.translation

    def __matmul__(self, other: Sim3) -> Sim3:
        return self.compose(other)

    def __repr__(self) -> str:
        t = self.translation
        return f"Sim3(t=[{t[0]:.3f}, {t[1]:.3f}, {t[2]:.3f}], s={self.scale:.4f})"
