"""Interfaces the loop closer needs from the rest of the SLAM system.

The coordinator only talks to these protocols; ``collab_vslam.backend``
provides reference implementations and tests substitute fakes.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np

from ..exchange.messages import KeyframeDescriptor
from ..geometry import SE3, Sim3
from ..map import Map


class MappingPipeline(Protocol):
    """Pause/resume contract with the local mapping thread."""

    def request_pause(self) -> None: ...

    def is_paused(self) -> bool: ...

    def resume(self) -> None: ...

    def is_idle(self) -> bool: ...


class PlaceIndex(Protocol):
    """Appearance-based keyframe retrieval."""

    def query_above_score(
        self,
        appearance: dict[int, float],
        min_score: float,
        exclude: set[int] | None = None,
    ) -> list[int]: ...

    def score(self, a: dict[int, float], b: dict[int, float]) -> float: ...


class Matcher(Protocol):
    """Feature correspondence search between a received keyframe and the map.

    Matches are ``dict[query feature index, local map point id]``.
    """

    def match_by_appearance(self, query: KeyframeDescriptor, kf_id: int) -> dict[int, int]: ...

    def match_by_hypothesis(
        self,
        query: KeyframeDescriptor,
        kf_id: int,
        matches: dict[int, int],
        sim3: Sim3,
        radius: float,
    ) -> int: ...

    def match_by_projection(
        self,
        query: KeyframeDescriptor,
        scw: Sim3,
        point_ids: list[int],
        matches: dict[int, int],
        radius: float,
    ) -> int: ...

    def fuse(
        self,
        kf_id: int,
        scw: Sim3,
        point_ids: list[int],
        radius: float,
    ) -> FuseCandidates: ...


@dataclass
class SolverStep:
    """Outcome of a batch of RANSAC iterations.

    Attributes:
        transform: Hypothesis (matched camera -> query camera) or None
        exhausted: The iteration budget is spent
        inliers: Query feature indices supporting ``transform``
    """

    transform: Sim3 | None
    exhausted: bool
    inliers: set[int] = field(default_factory=set)


class TransformSolver(Protocol):
    def configure(self, probability: float, min_inliers: int, max_iterations: int) -> None: ...

    def iterate(self, n: int) -> SolverStep: ...

    @property
    def rotation(self) -> np.ndarray: ...

    @property
    def translation(self) -> np.ndarray: ...

    @property
    def scale(self) -> float: ...


class SolverFactory(Protocol):
    def __call__(
        self,
        query: KeyframeDescriptor,
        kf_id: int,
        matches: dict[int, int],
        fix_scale: bool,
    ) -> TransformSolver: ...


@dataclass
class FuseCandidates:
    """Result of projecting a point pool into one keyframe.

    Attributes:
        replacements: pool point id -> point already in the keyframe slot
        additions: pool point id -> free feature index to observe it from
    """

    replacements: dict[int, int] = field(default_factory=dict)
    additions: dict[int, int] = field(default_factory=dict)


@dataclass
class GlobalAdjustmentResult:
    """Optimized state returned by a full-map optimization."""

    poses: dict[int, SE3] = field(default_factory=dict)
    points: dict[int, np.ndarray] = field(default_factory=dict)


class LoopOptimizer(Protocol):
    def refine_transform(
        self,
        query: KeyframeDescriptor,
        kf_id: int,
        matches: dict[int, int],
        sim3: Sim3,
        iterations: int,
        fix_scale: bool,
    ) -> tuple[int, Sim3, dict[int, int]]: ...

    def optimize_region(
        self,
        map: Map,
        matched_kf_id: int,
        query_kf_id: int,
        uncorrected: dict[int, Sim3],
        corrected: dict[int, Sim3],
        loop_connections: dict[int, set[int]],
        fix_scale: bool,
    ) -> dict[int, Sim3]: ...

    def optimize_global(
        self,
        map: Map,
        iterations: int,
        stop_event: threading.Event,
        epoch: int,
    ) -> GlobalAdjustmentResult | None: ...
