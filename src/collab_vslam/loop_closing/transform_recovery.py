"""Similarity transform recovery between a received keyframe and the map.

For every consistent candidate we seed a RANSAC solver with appearance
matches, then run the solvers round-robin in small batches so a good
candidate that happens to be late in the order is still reached quickly.
The first hypothesis that survives guided matching and refinement wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..config import LoopClosingConfig
from ..exchange.messages import KeyframeDescriptor
from ..geometry import Sim3
from ..map import Map
from ..utils.logging_utils import Log
from .collaborators import LoopOptimizer, Matcher, SolverFactory, TransformSolver


@dataclass
class AcceptedLoop:
    """A verified loop, consumed once by the correction.

    Attributes:
        query_keyframe_id: Arena id of the imported querying keyframe
        query_identity: (robot id, frame index) of the querying keyframe
        matched_keyframe_id: Local keyframe the query was matched to
        scm: Matched camera -> query camera similarity
        scw: Corrected pose of the query camera (local world -> query)
        matched_points: query feature index -> local map point id
        loop_point_ids: Points of the matched keyframe and its covisible
            keyframes (the fusion pool)
        inliers: Inliers of the refined transform
    """

    query_keyframe_id: int
    query_identity: tuple[int, int]
    matched_keyframe_id: int
    scm: Sim3
    scw: Sim3
    matched_points: dict[int, int] = field(default_factory=dict)
    loop_point_ids: list[int] = field(default_factory=list)
    inliers: int = 0


class TransformRecoveryEngine:
    """Alternating RANSAC over candidates, then guided matching."""

    def __init__(
        self,
        config: LoopClosingConfig,
        map: Map,
        matcher: Matcher,
        optimizer: LoopOptimizer,
        solver_factory: SolverFactory,
    ) -> None:
        self.config = config
        self.map = map
        self.matcher = matcher
        self.optimizer = optimizer
        self.solver_factory = solver_factory

    def compute_transform(
        self,
        query: KeyframeDescriptor,
        query_kf_id: int,
        candidates: list[int],
    ) -> AcceptedLoop | None:
        """Try to verify one of the candidates geometrically.

        Args:
            query: Received keyframe
            query_kf_id: Arena id the query was imported under
            candidates: Consistent local candidate keyframes

        Returns:
            The accepted loop, or None if no candidate verifies
        """
        cfg = self.config

        seeds: list[tuple[int, dict[int, int]]] = []
        for kf_id in candidates:
            keyframe = self.map.keyframes.get(kf_id)
            if keyframe is None or keyframe.is_bad:
                continue
            matches = self.matcher.match_by_appearance(query, kf_id)
            if len(matches) < cfg.min_appearance_matches:
                Log(
                    f"Candidate {kf_id}: {len(matches)} appearance matches, discarded",
                    tag="LoopClosing",
                    debug=True,
                )
                continue
            seeds.append((kf_id, matches))

        # Most matches first; sort is stable so ties keep detection order
        seeds.sort(key=lambda seed: -len(seed[1]))

        solvers: dict[int, TransformSolver] = {}
        for kf_id, matches in seeds:
            solver = self.solver_factory(query, kf_id, matches, cfg.fix_scale)
            solver.configure(
                cfg.ransac_probability, cfg.ransac_min_inliers, cfg.ransac_max_iterations
            )
            solvers[kf_id] = solver

        appearance_matches = dict(seeds)
        active = [kf_id for kf_id, _ in seeds]

        while active:
            for kf_id in list(active):
                step = solvers[kf_id].iterate(cfg.ransac_batch)
                if step.exhausted:
                    active.remove(kf_id)

                if step.transform is None:
                    continue

                matches = {
                    feature: point_id
                    for feature, point_id in appearance_matches[kf_id].items()
                    if feature in step.inliers
                }
                self.matcher.match_by_hypothesis(
                    query, kf_id, matches, step.transform, cfg.hypothesis_radius
                )
                n_inliers, scm, matches = self.optimizer.refine_transform(
                    query, kf_id, matches, step.transform, cfg.refine_iterations, cfg.fix_scale
                )
                if n_inliers >= cfg.min_refined_inliers:
                    return self._extend_matches(query, query_kf_id, kf_id, scm, matches, n_inliers)

        Log(f"No transform for robot {query.robot_id} frame {query.frame_index}",
            tag="LoopClosing", debug=True)
        return None

    def _extend_matches(
        self,
        query: KeyframeDescriptor,
        query_kf_id: int,
        kf_id: int,
        scm: Sim3,
        matches: dict[int, int],
        n_inliers: int,
    ) -> AcceptedLoop | None:
        matched = self.map.keyframes[kf_id]
        scw = scm @ Sim3.from_se3(matched.pose_cw)

        loop_point_ids: list[int] = []
        seen: set[int] = set()
        for other in [kf_id] + self.map.covisibility.covisible(kf_id):
            for point_id in self.map.keyframe_points(other):
                if point_id not in seen:
                    seen.add(point_id)
                    loop_point_ids.append(point_id)

        matches = dict(matches)
        self.matcher.match_by_projection(
            query, scw, loop_point_ids, matches, self.config.projection_radius
        )

        if len(matches) < self.config.min_total_matches:
            Log(
                f"Candidate {kf_id}: {len(matches)} total matches, rejected",
                tag="LoopClosing",
                debug=True,
            )
            return None

        Log(
            f"Loop accepted: robot {query.robot_id} frame {query.frame_index} ->",
            f"keyframe {kf_id} ({n_inliers} inliers, {len(matches)} matches)",
            tag="LoopClosing",
        )
        return AcceptedLoop(
            query_keyframe_id=query_kf_id,
            query_identity=query.identity,
            matched_keyframe_id=kf_id,
            scm=scm,
            scw=scw,
            matched_points=matches,
            loop_point_ids=loop_point_ids,
            inliers=n_inliers,
        )
