"""Keyframe database for loop candidate retrieval.

An inverted index from visual word to the local keyframes containing it.
Queries come from other robots' keyframes, so only the appearance vector
and the sender's minimum score are available; the covisibility used to
accumulate scores is that of the local map.
"""

from __future__ import annotations

import threading

from ..map import Map
from .vocabulary import VisualVocabulary


class KeyframeDatabase:
    """Inverted word index over the local keyframes of a map."""

    def __init__(self, vocabulary: VisualVocabulary, map: Map) -> None:
        """Initialize keyframe database.

        Args:
            vocabulary: Vocabulary the appearance vectors were built with
            map: Map whose keyframes are indexed
        """
        self._vocabulary = vocabulary
        self._map = map
        self._lock = threading.Lock()
        self._inverted: dict[int, set[int]] = {}
        self._entries: set[int] = set()

    def add(self, kf_id: int) -> None:
        keyframe = self._map.keyframes[kf_id]
        with self._lock:
            self._entries.add(kf_id)
            for word in keyframe.appearance:
                self._inverted.setdefault(word, set()).add(kf_id)

    def erase(self, kf_id: int) -> None:
        keyframe = self._map.keyframes.get(kf_id)
        with self._lock:
            self._entries.discard(kf_id)
            words = keyframe.appearance if keyframe is not None else list(self._inverted)
            for word in words:
                self._inverted.get(word, set()).discard(kf_id)

    def clear(self) -> None:
        with self._lock:
            self._inverted.clear()
            self._entries.clear()

    def score(self, a: dict[int, float], b: dict[int, float]) -> float:
        return self._vocabulary.score(a, b)

    def query_above_score(
        self,
        appearance: dict[int, float],
        min_score: float,
        exclude: set[int] | None = None,
    ) -> list[int]:
        """Retrieve loop candidates for a received keyframe.

        1. Keyframes sharing words with the query; keep those sharing
           more than 80% of the best word count.
        2. Keep those scoring at least ``min_score``.
        3. Accumulate each survivor's score over its ten best covisible
           keyframes and keep the best keyframe of every group whose
           accumulated score exceeds 75% of the best group.

        Args:
            appearance: Sparse BoW vector of the query
            min_score: Minimum similarity (set by the sender)
            exclude: Keyframe ids that may not be returned

        Returns:
            Candidate keyframe ids (no duplicates)
        """
        exclude = exclude or set()

        common_words: dict[int, int] = {}
        with self._lock:
            for word in appearance:
                for kf_id in self._inverted.get(word, ()):
                    if kf_id in exclude:
                        continue
                    common_words[kf_id] = common_words.get(kf_id, 0) + 1

        if not common_words:
            return []

        min_common_words = 0.8 * max(common_words.values())

        scores: dict[int, float] = {}
        for kf_id, n_words in common_words.items():
            if n_words > min_common_words:
                scores[kf_id] = self.score(appearance, self._map.keyframes[kf_id].appearance)

        matched = [(s, kf_id) for kf_id, s in scores.items() if s >= min_score]
        if not matched:
            return []

        best_acc_score = min_score
        accumulated: list[tuple[float, int]] = []
        for score, kf_id in matched:
            acc_score = score
            best_score = score
            best_kf = kf_id
            for neighbour in self._map.covisibility.best_covisible(kf_id, 10):
                if neighbour not in scores:
                    continue
                acc_score += scores[neighbour]
                if scores[neighbour] > best_score:
                    best_kf = neighbour
                    best_score = scores[neighbour]
            accumulated.append((acc_score, best_kf))
            if acc_score > best_acc_score:
                best_acc_score = acc_score

        min_score_to_retain = 0.75 * best_acc_score
        candidates: list[int] = []
        for acc_score, kf_id in accumulated:
            if acc_score > min_score_to_retain and kf_id not in candidates:
                candidates.append(kf_id)
        return candidates

    @property
    def size(self) -> int:
        """Return number of keyframes in database."""
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size
