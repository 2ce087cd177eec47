"""Reference matcher, solver, optimizer and place index.

The loop closing package only depends on the protocols in
``collab_vslam.loop_closing.collaborators``; these are the
implementations the coordinator uses when none are injected.
"""

from .keyframe_database import KeyframeDatabase
from .matcher import DescriptorMatcher
from .optimizer import ScipyLoopOptimizer
from .sim3_solver import Sim3Solver, align_points
from .vocabulary import VisualVocabulary

__all__ = [
    # Place recognition
    "VisualVocabulary",
    "KeyframeDatabase",
    # Matching
    "DescriptorMatcher",
    # Transform estimation
    "Sim3Solver",
    "align_points",
    # Optimization
    "ScipyLoopOptimizer",
]
