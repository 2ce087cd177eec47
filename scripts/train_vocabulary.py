#!/usr/bin/env python3
"""Train the visual vocabulary shared by every robot of a team.

All robots must describe keyframes with the same vocabulary, otherwise
appearance vectors received from a peer cannot be compared. This script:
1. Extracts ORB descriptors from a folder of images (searched recursively)
2. Clusters them with mini-batch k-means into visual words
3. Weights each word by its inverse document frequency over the images
4. Saves the vocabulary, to be distributed to every robot

Usage:
    python scripts/train_vocabulary.py --images data/images
    python scripts/train_vocabulary.py --images data/images --n-words 2000 --max-images 5000

The trained vocabulary is saved to data/vocabulary.npz by default.
"""

import argparse
import sys
import time
from pathlib import Path

import cv2
import numpy as np
from sklearn.cluster import MiniBatchKMeans

from collab_vslam.backend import VisualVocabulary

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".pgm")


def collect_descriptors(
    image_dir: Path,
    n_features: int = 1000,
    max_images: int | None = None,
    skip_every: int = 1,
) -> list[np.ndarray]:
    """Extract ORB descriptors image by image.

    Args:
        image_dir: Directory searched recursively for images
        n_features: Number of ORB features per image
        max_images: Maximum images to process (None for all)
        skip_every: Process every Nth image

    Returns:
        One (N_i, 32) descriptor array per image
    """
    orb = cv2.ORB_create(nfeatures=n_features, scaleFactor=1.2, nlevels=8)
    image_paths = sorted(p for p in image_dir.rglob("*") if p.suffix.lower() in IMAGE_SUFFIXES)
    print(f"Found {len(image_paths)} images in {image_dir}")

    per_image: list[np.ndarray] = []
    for i, img_path in enumerate(image_paths):
        if max_images and len(per_image) >= max_images:
            print(f"Reached max_images limit ({max_images})")
            break
        if i % skip_every != 0:
            continue

        img = cv2.imread(str(img_path), cv2.IMREAD_GRAYSCALE)
        if img is None:
            continue

        _, descriptors = orb.detectAndCompute(img, None)
        if descriptors is not None and len(descriptors) > 0:
            per_image.append(descriptors)

    if not per_image:
        raise ValueError(f"No descriptors found in {image_dir}")

    print(f"Collected {sum(len(d) for d in per_image)} descriptors from {len(per_image)} images")
    return per_image


def train_words(
    descriptors: np.ndarray,
    n_words: int,
    batch_size: int = 10000,
    max_iter: int = 100,
) -> np.ndarray:
    """Cluster descriptors into visual words.

    Args:
        descriptors: Stacked descriptors, shape (N, 32)
        n_words: Number of visual words (clusters)
        batch_size: Mini-batch size for k-means
        max_iter: Maximum iterations

    Returns:
        Cluster centers (visual words), shape (n_words, 32)
    """
    print(f"\nClustering {len(descriptors)} descriptors into {n_words} words...")
    start_time = time.time()

    kmeans = MiniBatchKMeans(
        n_clusters=n_words,
        random_state=42,
        batch_size=batch_size,
        n_init="auto",
        max_iter=max_iter,
    )
    kmeans.fit(descriptors.astype(np.float32))

    print(f"Clustering complete in {time.time() - start_time:.1f}s")
    print(f"  Inertia: {kmeans.inertia_:.2e}")
    print(f"  Iterations: {kmeans.n_iter_}")
    return kmeans.cluster_centers_.astype(np.float32)


def document_frequencies(vocabulary: VisualVocabulary, per_image: list[np.ndarray]) -> np.ndarray:
    """Number of images in which each word occurs."""
    frequencies = np.zeros(vocabulary.n_words, dtype=np.int64)
    for descriptors in per_image:
        frequencies[np.unique(vocabulary.assign(descriptors))] += 1
    return frequencies


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Train the visual vocabulary for inter-robot loop closing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--images", type=Path, required=True, help="Directory of training images")
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("data/vocabulary.npz"),
        help="Output vocabulary file (default: data/vocabulary.npz)",
    )
    parser.add_argument("--n-words", type=int, default=1000, help="Visual words (default: 1000)")
    parser.add_argument(
        "--n-features", type=int, default=1000, help="ORB features per image (default: 1000)"
    )
    parser.add_argument("--max-images", type=int, default=None, help="Max images (default: all)")
    parser.add_argument(
        "--skip-every", type=int, default=1, help="Process every Nth image (default: 1)"
    )
    args = parser.parse_args()

    if not args.images.is_dir():
        print(f"Error: image directory not found: {args.images}")
        sys.exit(1)

    per_image = collect_descriptors(
        args.images,
        n_features=args.n_features,
        max_images=args.max_images,
        skip_every=args.skip_every,
    )

    vocabulary = VisualVocabulary.from_words(train_words(np.vstack(per_image), args.n_words))
    vocabulary.update_idf(document_frequencies(vocabulary, per_image), len(per_image))
    vocabulary.save(args.output)

    print(f"\nVocabulary saved to: {args.output}")
    print(f"  Words: {vocabulary.n_words}")
    print(f"  Images: {len(per_image)}")


if __name__ == "__main__":
    main()
