"""ORB descriptor matching between a received keyframe and the local map.

Matches are ``dict[query feature index, local map point id]``. Query
features only take part if the sender attached a map point to them.

Three searches are provided, following ORB-SLAM's loop closing:
- by appearance: features sharing a vocabulary word, ratio test and a
  rotation consistency histogram;
- by hypothesis: project points both ways through a similarity guess and
  keep mutually consistent matches;
- by projection: project local points into the query with its corrected
  pose.
``fuse`` reuses the projection search to find duplicate points in a
local keyframe.
"""

from __future__ import annotations

import math

import numpy as np

from ..exchange.messages import KeyframeDescriptor
from ..geometry import CameraModel, Sim3
from ..loop_closing.collaborators import FuseCandidates
from ..map import KP_ANGLE, Map, MapPoint, hamming_distance

TH_HIGH = 100
TH_LOW = 50
HISTO_LENGTH = 30


def predict_scale(max_distance: float, distance: float, camera: CameraModel) -> int:
    """Pyramid level a point with ``max_distance`` is seen at from ``distance``."""
    if distance <= 0.0 or max_distance <= 0.0 or camera.n_levels < 2:
        return 0
    level = math.ceil(math.log(max_distance / distance) / camera.log_scale_factor)
    return min(max(level, 0), camera.n_levels - 1)


def decompose_sim3(scw: Sim3) -> tuple[np.ndarray, np.ndarray]:
    """Rigid part of a camera pose expressed as Sim(3): (Rcw, tcw / s)."""
    return scw.rotation, scw.translation / scw.scale


def three_maxima(histogram: list[list[int]]) -> tuple[int, int, int]:
    """Indices of the three fullest bins (-1 when a bin is below 10% of the first)."""
    sizes = [len(b) for b in histogram]
    order = sorted(range(len(sizes)), key=lambda i: -sizes[i])
    ind1, ind2, ind3 = order[0], order[1], order[2]
    max1 = sizes[ind1]
    if sizes[ind2] < 0.1 * max1:
        return ind1, -1, -1
    if sizes[ind3] < 0.1 * max1:
        return ind1, ind2, -1
    return ind1, ind2, ind3


class DescriptorMatcher:
    """Reference implementation of the ``Matcher`` protocol."""

    def __init__(self, map: Map, nn_ratio: float = 0.75, check_orientation: bool = True) -> None:
        """Initialize the matcher.

        Args:
            map: Local map arena
            nn_ratio: Lowe's ratio between best and second best distance
            check_orientation: Apply the rotation histogram filter
        """
        self.map = map
        self.nn_ratio = nn_ratio
        self.check_orientation = check_orientation

    # ------------------------------------------------------------------
    # Appearance
    # ------------------------------------------------------------------

    def match_by_appearance(self, query: KeyframeDescriptor, kf_id: int) -> dict[int, int]:
        keyframe = self.map.keyframes[kf_id]
        matched_train: set[int] = set()
        matches: dict[int, int] = {}
        rotation_bins: list[list[int]] = [[] for _ in range(HISTO_LENGTH)]

        for node, query_features in query.feature_vector.items():
            train_features = keyframe.feature_vector.get(node)
            if not train_features:
                continue

            for f1 in query_features:
                if query.point_ids[f1] < 0:
                    continue
                d1 = query.descriptors[f1]

                best_dist1 = 256
                best_dist2 = 256
                best_f2 = -1
                for f2 in train_features:
                    if f2 in matched_train:
                        continue
                    if self.map.good_point(int(keyframe.point_ids[f2])) is None:
                        continue
                    dist = hamming_distance(d1, keyframe.descriptors[f2])
                    if dist < best_dist1:
                        best_dist2 = best_dist1
                        best_dist1 = dist
                        best_f2 = f2
                    elif dist < best_dist2:
                        best_dist2 = dist

                if best_dist1 < TH_LOW and best_dist1 < self.nn_ratio * best_dist2:
                    matches[f1] = int(keyframe.point_ids[best_f2])
                    matched_train.add(best_f2)
                    if self.check_orientation:
                        rot = query.keypoints[f1, KP_ANGLE] - keyframe.keypoints[best_f2, KP_ANGLE]
                        if rot < 0.0:
                            rot += 360.0
                        bin = round(rot * (1.0 / HISTO_LENGTH)) % HISTO_LENGTH
                        rotation_bins[bin].append(f1)

        if self.check_orientation and matches:
            keep = set(three_maxima(rotation_bins))
            for bin, features in enumerate(rotation_bins):
                if bin in keep:
                    continue
                for f1 in features:
                    matches.pop(f1, None)

        return matches

    # ------------------------------------------------------------------
    # Similarity hypothesis
    # ------------------------------------------------------------------

    def match_by_hypothesis(
        self,
        query: KeyframeDescriptor,
        kf_id: int,
        matches: dict[int, int],
        sim3: Sim3,
        radius: float,
    ) -> int:
        """Add matches that agree in both projection directions.

        Args:
            query: Received keyframe (camera 1)
            kf_id: Candidate keyframe (camera 2)
            matches: Existing matches, extended in place
            sim3: Hypothesis S12 mapping camera 2 points into camera 1
            radius: Search window at level 0, in pixels

        Returns:
            Number of matches added
        """
        keyframe = self.map.keyframes[kf_id]
        s21 = sim3.inverse()

        already_matched_query = set(matches)
        already_matched_train = set()
        for point_id in matches.values():
            feature = self.map.points[point_id].observations.get(kf_id)
            if feature is not None:
                already_matched_train.add(feature)

        # Query points into the candidate
        query_to_train: dict[int, int] = {}
        for f1 in np.flatnonzero(query.point_ids >= 0):
            f1 = int(f1)
            if f1 in already_matched_query:
                continue
            p_c1 = query.pose_cw.transform_points(query.world_points[f1])
            p_c2 = s21.map(p_c1)
            best = self._search_window(
                keyframe,
                p_c2,
                query.point_descriptors[f1],
                0.8 * query.min_distances[f1],
                1.2 * query.max_distances[f1],
                query.max_distances[f1],
                radius,
            )
            if best is not None:
                query_to_train[f1] = best

        # Candidate points into the query
        train_to_query: dict[int, int] = {}
        for f2 in range(keyframe.num_features):
            point = self.map.good_point(int(keyframe.point_ids[f2]))
            if point is None or f2 in already_matched_train:
                continue
            p_c2 = keyframe.pose_cw.transform_points(point.position)
            p_c1 = sim3.map(p_c2)
            best = self._search_window(
                query,
                p_c1,
                point.descriptor,
                point.min_invariance_distance,
                point.max_invariance_distance,
                point.max_distance,
                radius,
            )
            if best is not None:
                train_to_query[f2] = best

        added = 0
        for f1, f2 in query_to_train.items():
            if train_to_query.get(f2) == f1:
                matches[f1] = int(keyframe.point_ids[f2])
                added += 1
        return added

    def _search_window(
        self,
        target,
        p_cam: np.ndarray,
        descriptor: np.ndarray,
        min_distance: float,
        max_distance: float,
        raw_max_distance: float,
        radius: float,
    ) -> int | None:
        """Best feature of ``target`` for a point given in its camera frame."""
        if p_cam[2] <= 0.0:
            return None
        u, v = target.camera.project(p_cam)
        if not target.camera.in_image(u, v):
            return None

        dist3d = float(np.linalg.norm(p_cam))
        if dist3d < min_distance or dist3d > max_distance:
            return None

        level = predict_scale(raw_max_distance, dist3d, target.camera)
        window = radius * target.camera.scale_factors[level]
        candidates = target.features_in_area(u, v, window)

        best_dist = math.inf
        best_idx = None
        octaves = target.octaves
        for idx in candidates:
            if octaves[idx] < level - 1 or octaves[idx] > level:
                continue
            dist = hamming_distance(descriptor, target.descriptors[idx])
            if dist < best_dist:
                best_dist = dist
                best_idx = idx

        if best_dist <= TH_HIGH:
            return best_idx
        return None

    # ------------------------------------------------------------------
    # Projection with a corrected pose
    # ------------------------------------------------------------------

    def _project_point(
        self,
        target,
        point: MapPoint,
        rcw: np.ndarray,
        tcw: np.ndarray,
        center: np.ndarray,
        radius: float,
    ) -> tuple[list[int], int] | None:
        """Candidate features and predicted level for one map point."""
        p_cam = rcw @ point.position + tcw
        if p_cam[2] <= 0.0:
            return None
        u, v = target.camera.project(p_cam)
        if not target.camera.in_image(u, v):
            return None

        po = point.position - center
        dist = float(np.linalg.norm(po))
        if dist < point.min_invariance_distance or dist > point.max_invariance_distance:
            return None
        if float(po @ point.normal) < 0.5 * dist:
            return None

        level = point.predict_scale(dist, target.camera)
        window = radius * target.camera.scale_factors[level]
        return target.features_in_area(u, v, window), level

    def match_by_projection(
        self,
        query: KeyframeDescriptor,
        scw: Sim3,
        point_ids: list[int],
        matches: dict[int, int],
        radius: float,
    ) -> int:
        """Project local points into the query with its corrected pose.

        Args:
            query: Received keyframe
            scw: Corrected query pose (local world -> query camera)
            point_ids: Local points to project
            matches: Existing matches, extended in place
            radius: Search window at level 0, in pixels

        Returns:
            Number of matches added
        """
        rcw, tcw = decompose_sim3(scw)
        center = -rcw.T @ tcw
        already_found = set(matches.values())
        octaves = query.octaves

        added = 0
        for point_id in point_ids:
            point = self.map.good_point(point_id)
            if point is None or point_id in already_found:
                continue
            projected = self._project_point(query, point, rcw, tcw, center, radius)
            if projected is None:
                continue
            candidates, level = projected

            best_dist = 256
            best_idx = -1
            for idx in candidates:
                if idx in matches:
                    continue
                if octaves[idx] < level - 1 or octaves[idx] > level:
                    continue
                dist = hamming_distance(point.descriptor, query.descriptors[idx])
                if dist < best_dist:
                    best_dist = dist
                    best_idx = idx

            if best_dist <= TH_LOW:
                matches[best_idx] = point_id
                added += 1
        return added

    def fuse(
        self,
        kf_id: int,
        scw: Sim3,
        point_ids: list[int],
        radius: float,
    ) -> FuseCandidates:
        """Find where pool points land in a keyframe.

        A slot already holding a good point yields a replacement (the pool
        point should absorb it); an empty slot yields an addition.

        Args:
            kf_id: Keyframe to project into
            scw: Its corrected pose
            point_ids: Fusion pool
            radius: Search window at level 0, in pixels

        Returns:
            FuseCandidates
        """
        keyframe = self.map.keyframes[kf_id]
        rcw, tcw = decompose_sim3(scw)
        center = -rcw.T @ tcw
        already_found = set(keyframe.observed_point_ids())
        octaves = keyframe.octaves

        result = FuseCandidates()
        claimed: set[int] = set()
        for point_id in point_ids:
            point = self.map.good_point(point_id)
            if point is None or point_id in already_found:
                continue
            projected = self._project_point(keyframe, point, rcw, tcw, center, radius)
            if projected is None:
                continue
            candidates, level = projected

            best_dist = math.inf
            best_idx = -1
            for idx in candidates:
                if octaves[idx] < level - 1 or octaves[idx] > level:
                    continue
                dist = hamming_distance(point.descriptor, keyframe.descriptors[idx])
                if dist < best_dist:
                    best_dist = dist
                    best_idx = idx

            if best_dist > TH_LOW:
                continue

            existing = int(keyframe.point_ids[best_idx])
            if existing >= 0:
                if self.map.good_point(existing) is not None:
                    result.replacements[point_id] = existing
            elif best_idx not in claimed:
                result.additions[point_id] = best_idx
                claimed.add(best_idx)
        return result
