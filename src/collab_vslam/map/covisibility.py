"""Covisibility graph for tracking shared observations between keyframes.

The covisibility graph is a weighted undirected graph where:
- Nodes are keyframes
- Edges connect keyframes that share observations of the same map points
- Edge weights represent the number of shared map points

Every pair sharing at least one point is "connected"; only pairs sharing
``min_shared_points`` or more are "covisible" (the ordered neighbour list
used for correction and descriptor publishing). A keyframe with no strong
edge keeps its single best neighbour as covisible.
"""

from __future__ import annotations

from collections import defaultdict


class CovisibilityGraph:
    """Adjacency map ``kf_id -> {other_kf_id: weight}``."""

    def __init__(self, min_shared_points: int = 15) -> None:
        """Initialize covisibility graph.

        Args:
            min_shared_points: Minimum shared points for a covisible edge
        """
        self._min_shared = min_shared_points
        self._adjacency: dict[int, dict[int, int]] = defaultdict(dict)

    @property
    def min_shared_points(self) -> int:
        return self._min_shared

    def set_connections(self, kf_id: int, counts: dict[int, int]) -> None:
        """Replace the edges of a keyframe with freshly counted weights.

        Edges are kept symmetric: neighbours that no longer share points
        lose their edge to ``kf_id``.

        Args:
            kf_id: Keyframe whose edges are recomputed
            counts: other keyframe id -> number of shared map points
        """
        old = self._adjacency.get(kf_id, {})
        for other in old:
            if other not in counts:
                self._adjacency[other].pop(kf_id, None)

        self._adjacency[kf_id] = {k: w for k, w in counts.items() if w > 0}
        for other, weight in self._adjacency[kf_id].items():
            self._adjacency[other][kf_id] = weight

    def connected(self, kf_id: int) -> set[int]:
        """All keyframes sharing at least one map point."""
        return set(self._adjacency.get(kf_id, {}))

    def covisible(self, kf_id: int) -> list[int]:
        """Covisible keyframes sorted by weight (highest first)."""
        neighbours = self._adjacency.get(kf_id, {})
        if not neighbours:
            return []

        ordered = sorted(neighbours.items(), key=lambda kv: (-kv[1], kv[0]))
        strong = [k for k, w in ordered if w >= self._min_shared]
        if strong:
            return strong
        return [ordered[0][0]]

    def best_covisible(self, kf_id: int, n: int) -> list[int]:
        return self.covisible(kf_id)[:n]

    def weight(self, kf1_id: int, kf2_id: int) -> int:
        return self._adjacency.get(kf1_id, {}).get(kf2_id, 0)

    def remove_keyframe(self, kf_id: int) -> None:
        for other in self._adjacency.pop(kf_id, {}):
            self._adjacency[other].pop(kf_id, None)

    @property
    def num_keyframes(self) -> int:
        return len(self._adjacency)

    @property
    def num_edges(self) -> int:
        return sum(len(n) for n in self._adjacency.values()) // 2
