"""Inter-robot loop closing: detection, recovery, correction, adjustment."""

from .collaborators import (
    FuseCandidates,
    GlobalAdjustmentResult,
    LoopOptimizer,
    MappingPipeline,
    Matcher,
    PlaceIndex,
    SolverFactory,
    SolverStep,
    TransformSolver,
)
from .consistency import ConsistencyGroup, ConsistencyTracker
from .coordinator import InterRobotLoopClosing
from .correction import LoopCorrector, correct_map_points
from .detector import LoopCandidateDetector
from .global_adjustment import AdjustmentOutcome, GlobalAdjustmentTask, apply_adjustment
from .mapping_gate import MappingGate, MappingState
from .transform_recovery import AcceptedLoop, TransformRecoveryEngine

__all__ = [
    "AcceptedLoop",
    "AdjustmentOutcome",
    "ConsistencyGroup",
    "ConsistencyTracker",
    "FuseCandidates",
    "GlobalAdjustmentResult",
    "GlobalAdjustmentTask",
    "InterRobotLoopClosing",
    "LoopCandidateDetector",
    "LoopCorrector",
    "LoopOptimizer",
    "MappingGate",
    "MappingPipeline",
    "MappingState",
    "Matcher",
    "PlaceIndex",
    "SolverFactory",
    "SolverStep",
    "TransformRecoveryEngine",
    "TransformSolver",
    "apply_adjustment",
    "correct_map_points",
]
