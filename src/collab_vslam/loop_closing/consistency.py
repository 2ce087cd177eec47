"""Covisibility consistency voting over successive detection rounds.

A loop candidate is only trusted once candidates from consecutive rounds
keep landing in overlapping neighbourhoods of the map. Each round's
candidate groups (a candidate plus its connected keyframes) are compared
with the groups kept from the previous round:

- a group intersecting a previous group inherits its counter + 1
  (each previous group is carried at most once);
- a group intersecting nothing starts at 0;
- previous groups not intersected this round are dropped.

After N consecutive intersecting rounds a group's counter is N - 1.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ConsistencyGroup:
    keyframe_ids: frozenset[int]
    counter: int


class ConsistencyTracker:
    """Pure state machine over keyframe-id sets."""

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = threshold
        self._groups: list[ConsistencyGroup] = []

    @property
    def groups(self) -> list[ConsistencyGroup]:
        return list(self._groups)

    def clear(self) -> None:
        self._groups = []

    def update(self, candidate_groups: list[tuple[int, set[int]]]) -> list[int]:
        """Run one detection round.

        Args:
            candidate_groups: (candidate id, candidate group) pairs, where the
                group already contains the candidate

        Returns:
            Candidate ids that reached the threshold this round, in input order
        """
        current: list[ConsistencyGroup] = []
        consumed = [False] * len(self._groups)
        enough_consistent: list[int] = []

        for candidate_id, group in candidate_groups:
            group = frozenset(group)
            is_enough = False
            consistent_for_some = False

            for i, previous in enumerate(self._groups):
                if group.isdisjoint(previous.keyframe_ids):
                    continue

                consistent_for_some = True
                counter = previous.counter + 1
                if not consumed[i]:
                    current.append(ConsistencyGroup(group, counter))
                    consumed[i] = True
                if counter >= self.threshold and not is_enough:
                    enough_consistent.append(candidate_id)
                    is_enough = True

            if not consistent_for_some:
                current.append(ConsistencyGroup(group, 0))

        self._groups = current
        return enough_consistent
