"""Configuration for the inter-robot loop closing coordinator."""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path

import yaml


@dataclass
class LoopClosingConfig:
    """Thresholds, timing and bus topics of one robot's loop closer.

    The matching and RANSAC thresholds follow the values ORB-SLAM uses
    for loop closing; changing them trades recall for robustness.
    """

    # Identity
    robot_id: int = 0
    robot_name: str = "a"

    # Candidate detection
    consistency_threshold: int = 3  # Consistent rounds before recovery

    # Transform recovery
    min_appearance_matches: int = 20  # BoW matches needed to seed RANSAC
    ransac_batch: int = 5  # RANSAC iterations per candidate per pass
    ransac_probability: float = 0.99
    ransac_min_inliers: int = 20
    ransac_max_iterations: int = 300
    hypothesis_radius: float = 7.5  # Guided matching radius (pixels)
    refine_iterations: int = 10
    min_refined_inliers: int = 20
    projection_radius: float = 10.0  # Fusion-pool projection radius
    min_total_matches: int = 40

    # Exchange
    max_buffered_keyframes: int = 500  # Per sender, kept for batch re-matching

    # Correction
    fuse_radius: float = 4.0
    fix_scale: bool = True  # Stereo/RGB-D maps share metric scale
    global_iterations: int = 10

    # Timing (seconds)
    loop_period_s: float = 0.005
    pause_poll_s: float = 0.001
    reset_poll_s: float = 0.005

    # Bus topics
    keyframe_topic: str = "keyframe"
    measurement_topic: str = "measurement"

    def __post_init__(self) -> None:
        if self.robot_id < 0:
            raise ValueError(f"robot_id must be non-negative, got {self.robot_id}")
        if not self.robot_name:
            raise ValueError("robot_name must not be empty")
        if self.consistency_threshold < 0:
            raise ValueError("consistency_threshold must be non-negative")
        if self.max_buffered_keyframes < 1:
            raise ValueError("max_buffered_keyframes must be at least 1")
        if self.ransac_batch < 1:
            raise ValueError("ransac_batch must be at least 1")
        if not 0.0 < self.ransac_probability < 1.0:
            raise ValueError("ransac_probability must be in (0, 1)")
        for name in ("loop_period_s", "pause_poll_s", "reset_poll_s"):
            if getattr(self, name) <= 0.0:
                raise ValueError(f"{name} must be positive")

    @property
    def keyframe_publish_topic(self) -> str:
        """Robot-scoped topic this robot publishes keyframes on."""
        return f"/{self.robot_name}/{self.keyframe_topic}"

    @property
    def keyframe_subscribe_pattern(self) -> str:
        """Pattern matching every robot's keyframe topic."""
        return f"/*/{self.keyframe_topic}"

    @property
    def measurement_publish_topic(self) -> str:
        return f"/{self.measurement_topic}"

    @classmethod
    def from_yaml(cls, path: str | Path) -> LoopClosingConfig:
        """Load a configuration from a YAML mapping.

        Missing keys keep their defaults.

        Args:
            path: Path to the YAML file

        Returns:
            LoopClosingConfig

        Raises:
            ValueError: If the file is not a mapping or has unknown keys
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping, got {type(data).__name__}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"{path}: unknown configuration keys {unknown}")

        return cls(**data)
