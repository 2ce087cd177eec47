"""Collaborative VSLAM - inter-robot loop closing between ORB-SLAM style maps."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import LoopClosingConfig
from .errors import InvariantViolation, LoopClosingError, MessageDecodeError
from .geometry import SE3, CameraModel, Sim3
from .map import Keyframe, Map, MapPoint
from .exchange import (
    InMemoryBus,
    KeyframeDescriptor,
    KeyframeExchange,
    MeasurementMessage,
    MessageBus,
)
from .loop_closing import (
    AcceptedLoop,
    GlobalAdjustmentTask,
    InterRobotLoopClosing,
    LoopCandidateDetector,
    LoopCorrector,
    MappingGate,
    TransformRecoveryEngine,
)
from .backend import (
    DescriptorMatcher,
    KeyframeDatabase,
    ScipyLoopOptimizer,
    Sim3Solver,
    VisualVocabulary,
)

__all__ = [
    "__version__",
    # Configuration / errors
    "LoopClosingConfig",
    "LoopClosingError",
    "MessageDecodeError",
    "InvariantViolation",
    # Geometry
    "SE3",
    "Sim3",
    "CameraModel",
    # Map
    "Map",
    "Keyframe",
    "MapPoint",
    # Exchange
    "MessageBus",
    "InMemoryBus",
    "KeyframeDescriptor",
    "MeasurementMessage",
    "KeyframeExchange",
    # Loop closing
    "InterRobotLoopClosing",
    "LoopCandidateDetector",
    "TransformRecoveryEngine",
    "AcceptedLoop",
    "LoopCorrector",
    "GlobalAdjustmentTask",
    "MappingGate",
    # Backend
    "VisualVocabulary",
    "KeyframeDatabase",
    "DescriptorMatcher",
    "Sim3Solver",
    "ScipyLoopOptimizer",
]
