"""Loop candidate detection for keyframes received from peers."""

from __future__ import annotations

import threading

from ..map import Map
from ..utils.logging_utils import Log
from .collaborators import PlaceIndex
from .consistency import ConsistencyGroup, ConsistencyTracker


class LoopCandidateDetector:
    """Appearance query followed by covisibility consistency voting."""

    def __init__(self, map: Map, place_index: PlaceIndex, threshold: int = 3) -> None:
        """Initialize the detector.

        Args:
            map: Local map (covisibility lookups)
            place_index: Database of local keyframes
            threshold: Consistent rounds needed (counter value)
        """
        self.map = map
        self.place_index = place_index
        self._tracker = ConsistencyTracker(threshold)
        self._lock = threading.Lock()

    @property
    def groups(self) -> list[ConsistencyGroup]:
        with self._lock:
            return self._tracker.groups

    def clear(self) -> None:
        with self._lock:
            self._tracker.clear()

    def detect_loop(
        self,
        appearance: dict[int, float],
        identity: tuple[int, int],
        min_score: float,
        exclude: set[int] | None = None,
    ) -> list[int]:
        """Run one detection round for a received keyframe.

        Args:
            appearance: Bag-of-words vector of the received keyframe
            identity: (robot id, frame index) of the received keyframe
            min_score: Minimum similarity imposed by the sender
            exclude: Local keyframe ids that may not be candidates

        Returns:
            Candidates that are consistent enough to attempt recovery
            (empty when there is no loop)
        """
        candidates = self.place_index.query_above_score(appearance, min_score, exclude)
        if not candidates:
            # State is left untouched when nothing is retrieved
            return []

        candidate_groups = []
        for candidate in candidates:
            group = self.map.covisibility.connected(candidate)
            group.add(candidate)
            candidate_groups.append((candidate, group))

        with self._lock:
            consistent = self._tracker.update(candidate_groups)

        Log(
            f"Robot {identity[0]} frame {identity[1]}: {len(candidates)} candidates,",
            f"{len(consistent)} consistent",
            tag="LoopClosing",
            debug=True,
        )
        return consistent
