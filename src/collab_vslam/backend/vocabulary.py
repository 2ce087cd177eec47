"""Visual vocabulary for Bag of Visual Words place recognition.

A visual vocabulary enables fast image similarity comparison by:
1. Clustering descriptors into "visual words" (k-means centers)
2. Representing images as sparse TF-IDF vectors over those words
3. Comparing images via cosine similarity

Keyframe appearance vectors are stored sparsely (``word -> weight``) so
they can be sent to other robots as two short lists. The feature vector
groups feature indices by word; appearance matching only compares
features that fell into the same word.

The vocabulary is trained offline (``scripts/train_vocabulary.py``).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np


@dataclass
class VisualVocabulary:
    """Bag of Visual Words vocabulary for ORB descriptors.

    Attributes:
        words: Cluster centers (visual words), shape (n_words, 32)
        n_words: Number of visual words in vocabulary
        idf: Inverse document frequency weights, shape (n_words,)
    """

    words: np.ndarray  # (n_words, 32) float32 cluster centers
    n_words: int
    idf: np.ndarray  # (n_words,) IDF weights

    def assign(self, descriptors: np.ndarray) -> np.ndarray:
        """Nearest visual word of every descriptor.

        Args:
            descriptors: ORB descriptors, shape (N, 32) uint8

        Returns:
            Word indices, shape (N,)
        """
        if descriptors is None or len(descriptors) == 0:
            return np.zeros(0, dtype=np.int64)

        # k-means ran in Euclidean space, so descriptors are compared as floats
        descriptors_float = np.asarray(descriptors).astype(np.float32)
        diff = descriptors_float[:, np.newaxis, :] - self.words[np.newaxis, :, :]
        distances = np.sum(diff**2, axis=2)  # (N, n_words)
        return np.argmin(distances, axis=1)

    def transform(
        self, descriptors: np.ndarray
    ) -> tuple[dict[int, float], dict[int, list[int]]]:
        """Convert image descriptors to appearance and feature vectors.

        Args:
            descriptors: ORB descriptors, shape (N, 32) uint8

        Returns:
            (appearance, feature_vector): L2-normalized TF-IDF weights per
            word, and the feature indices assigned to each word
        """
        word_indices = self.assign(descriptors)
        if len(word_indices) == 0:
            return {}, {}

        histogram = np.bincount(word_indices, minlength=self.n_words).astype(np.float64)
        tfidf = histogram * self.idf

        norm = np.linalg.norm(tfidf)
        if norm > 0:
            tfidf = tfidf / norm

        appearance = {int(w): float(tfidf[w]) for w in np.flatnonzero(tfidf > 0)}

        feature_vector: dict[int, list[int]] = {}
        for feature, word in enumerate(word_indices):
            feature_vector.setdefault(int(word), []).append(feature)

        return appearance, feature_vector

    def describe(self, descriptors: np.ndarray) -> np.ndarray:
        """Dense BoW vector, shape (n_words,)."""
        appearance, _ = self.transform(descriptors)
        bow = np.zeros(self.n_words, dtype=np.float64)
        for word, weight in appearance.items():
            bow[word] = weight
        return bow

    @staticmethod
    def score(a: dict[int, float], b: dict[int, float]) -> float:
        """Cosine similarity of two sparse, normalized appearance vectors.

        Returns:
            Similarity in [0, 1]
        """
        if len(a) > len(b):
            a, b = b, a
        return float(sum(weight * b[word] for word, weight in a.items() if word in b))

    def save(self, path: str | Path) -> None:
        """Save vocabulary to .npz file.

        Args:
            path: Output file path
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(
            path,
            words=self.words,
            n_words=self.n_words,
            idf=self.idf,
        )

    @classmethod
    def load(cls, path: str | Path) -> VisualVocabulary:
        """Load vocabulary from .npz file.

        Args:
            path: Input file path

        Returns:
            Loaded vocabulary
        """
        data = np.load(path)
        return cls(
            words=data["words"],
            n_words=int(data["n_words"]),
            idf=data["idf"],
        )

    @classmethod
    def from_words(cls, words: np.ndarray) -> VisualVocabulary:
        """Create vocabulary from cluster centers with uniform IDF.

        Args:
            words: Cluster centers, shape (n_words, 32)

        Returns:
            Vocabulary with uniform IDF weights (to be updated later)
        """
        n_words = len(words)
        return cls(
            words=np.asarray(words, dtype=np.float32),
            n_words=n_words,
            idf=np.ones(n_words, dtype=np.float32),
        )

    def update_idf(self, document_frequencies: np.ndarray, n_documents: int) -> None:
        """Update IDF weights based on document frequencies.

        IDF(word) = log(N / df(word))

        Args:
            document_frequencies: Count of documents containing each word, shape (n_words,)
            n_documents: Total number of documents
        """
        df_smoothed = np.maximum(document_frequencies, 1)
        self.idf = np.log(n_documents / df_smoothed).astype(np.float32)
