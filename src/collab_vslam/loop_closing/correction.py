"""Loop correction: rewrite the querying region of the map and fuse it.

All pose and point writes happen under the map-update lock; the fusion
search and the region optimization read the map outside of it.
"""

from __future__ import annotations

import time

from ..config import LoopClosingConfig
from ..errors import InvariantViolation
from ..geometry import Sim3
from ..map import Map
from ..utils.logging_utils import Log
from .collaborators import FuseCandidates, LoopOptimizer, MappingPipeline, Matcher
from .global_adjustment import GlobalAdjustmentTask
from .transform_recovery import AcceptedLoop


def correct_map_points(
    map: Map,
    kf_ids: list[int],
    corrected: dict[int, Sim3],
    uncorrected: dict[int, Sim3],
    visited: set[int],
) -> dict[int, int]:
    """Move the points observed by ``kf_ids`` along with their keyframes.

    A point is moved once, through the first keyframe in ``kf_ids`` that
    observes it: ``X' = corrected^-1(uncorrected(X))``. Points already in
    ``visited`` are left alone, so repeated calls sharing the same set are
    no-ops.

    Args:
        map: Map arena
        kf_ids: Keyframes being corrected
        corrected: keyframe id -> corrected Siw
        uncorrected: keyframe id -> Siw before correction
        visited: Point ids already corrected in this transaction (updated)

    Returns:
        point id -> keyframe it was corrected through
    """
    owners: dict[int, int] = {}
    for kf_id in kf_ids:
        corrected_swi = corrected[kf_id].inverse()
        siw = uncorrected[kf_id]
        for point_id in map.keyframe_points(kf_id):
            if point_id in visited:
                continue
            point = map.points[point_id]
            point.position = corrected_swi.map(siw.map(point.position))
            visited.add(point_id)
            owners[point_id] = kf_id
    return owners


class LoopCorrector:
    """Applies an accepted loop to the map."""

    def __init__(
        self,
        config: LoopClosingConfig,
        map: Map,
        matcher: Matcher,
        optimizer: LoopOptimizer,
        mapping: MappingPipeline,
        adjustment: GlobalAdjustmentTask,
    ) -> None:
        self.config = config
        self.map = map
        self.matcher = matcher
        self.optimizer = optimizer
        self.mapping = mapping
        self.adjustment = adjustment

    def correct_loop(self, loop: AcceptedLoop | None) -> None:
        """Run the correction transaction for an accepted loop.

        Raises:
            InvariantViolation: If there is no accepted loop or its query
                keyframe is not in the map
        """
        if loop is None:
            raise InvariantViolation("loop correction started without an accepted loop")
        if loop.query_keyframe_id not in self.map.keyframes:
            raise InvariantViolation(
                f"query keyframe {loop.query_keyframe_id} of the accepted loop is not in the map"
            )

        Log(
            f"Correcting loop keyframe {loop.query_keyframe_id} <->",
            f"{loop.matched_keyframe_id}",
            tag="Correction",
        )

        self.mapping.request_pause()
        try:
            # A running adjustment would overwrite this correction
            self.adjustment.invalidate()
            while not self.mapping.is_paused():
                time.sleep(self.config.pause_poll_s)
            self._correct(loop)
        finally:
            self.mapping.resume()

        Log(f"Loop corrected ({len(loop.matched_points)} matched points)", tag="Correction")

    def _correct(self, loop: AcceptedLoop) -> None:
        map = self.map
        query_id = loop.query_keyframe_id
        query = map.keyframes[query_id]

        map.update_connections(query_id)
        connected = map.covisibility.covisible(query_id) + [query_id]
        previous_neighbours = {kf_id: map.covisibility.connected(kf_id) for kf_id in connected}

        with map.update_lock:
            twc = query.pose_cw.inverse()
            corrected: dict[int, Sim3] = {query_id: loop.scw}
            uncorrected: dict[int, Sim3] = {query_id: Sim3.from_se3(query.pose_cw)}
            for kf_id in connected:
                if kf_id == query_id:
                    continue
                pose_iw = map.keyframes[kf_id].pose_cw
                sic = Sim3.from_se3(pose_iw @ twc)
                corrected[kf_id] = sic @ loop.scw
                uncorrected[kf_id] = Sim3.from_se3(pose_iw)

            owners = correct_map_points(map, connected, corrected, uncorrected, set())

            for kf_id in connected:
                map.set_pose(kf_id, corrected[kf_id].to_se3())
            for point_id in owners:
                map.update_normal_and_depth(point_id)
            for kf_id in connected:
                map.update_connections(kf_id)

            self._fuse_matched_points(loop)

        fusions = {
            kf_id: self.matcher.fuse(
                kf_id, corrected[kf_id], loop.loop_point_ids, self.config.fuse_radius
            )
            for kf_id in connected
        }
        with map.update_lock:
            for kf_id, candidates in fusions.items():
                self._apply_fusion(kf_id, candidates)

        loop_connections: dict[int, set[int]] = {}
        connected_set = set(connected)
        for kf_id in connected:
            map.update_connections(kf_id)
            new = map.covisibility.connected(kf_id) - previous_neighbours[kf_id] - connected_set
            loop_connections[kf_id] = new

        optimized = self.optimizer.optimize_region(
            map,
            loop.matched_keyframe_id,
            query_id,
            uncorrected,
            corrected,
            loop_connections,
            self.config.fix_scale,
        )
        with map.update_lock:
            self._apply_region(optimized, corrected, owners)

        map.add_loop_edge(query_id, loop.matched_keyframe_id)

        # Future keyframes from this robot arrive in its own world frame
        final_scw = optimized.get(query_id, loop.scw)
        if query.remote_pose_cw is not None:
            map.set_alignment(
                query.robot_id, final_scw.inverse() @ Sim3.from_se3(query.remote_pose_cw)
            )

        self.adjustment.start(query_id)

    def _fuse_matched_points(self, loop: AcceptedLoop) -> None:
        map = self.map
        query_id = loop.query_keyframe_id
        query = map.keyframes[query_id]
        for feature, loop_point_id in loop.matched_points.items():
            loop_point_id = map.resolve_point(loop_point_id)
            if loop_point_id is None:
                continue
            current_id = int(query.point_ids[feature])
            if map.good_point(current_id) is not None:
                map.replace_point(current_id, loop_point_id)
                continue
            if current_id >= 0:
                map.erase_observation(current_id, query_id)
            if map.add_observation(loop_point_id, query_id, feature):
                map.compute_distinctive_descriptor(loop_point_id)

    def _apply_fusion(self, kf_id: int, candidates: FuseCandidates) -> None:
        map = self.map
        for pool_id, existing_id in candidates.replacements.items():
            pool_id = map.resolve_point(pool_id)
            existing_id = map.resolve_point(existing_id)
            if pool_id is None or existing_id is None or pool_id == existing_id:
                continue
            map.replace_point(existing_id, pool_id)
        for pool_id, feature in candidates.additions.items():
            pool_id = map.resolve_point(pool_id)
            if pool_id is not None:
                map.add_observation(pool_id, kf_id, feature)

    def _apply_region(
        self,
        optimized: dict[int, Sim3],
        corrected: dict[int, Sim3],
        owners: dict[int, int],
    ) -> None:
        """Write optimized poses and move points with their reference keyframe."""
        map = self.map
        initial: dict[int, Sim3] = {}
        for kf_id, siw in optimized.items():
            keyframe = map.keyframes[kf_id]
            if kf_id in corrected:
                initial[kf_id] = corrected[kf_id]
            else:
                initial[kf_id] = Sim3.from_se3(keyframe.pose_cw)
            map.set_pose(kf_id, siw.to_se3())

        for point_id, point in list(map.points.items()):
            if point.is_bad:
                continue
            ref_id = owners.get(point_id, point.reference_keyframe)
            if ref_id not in optimized:
                continue
            point.position = optimized[ref_id].inverse().map(initial[ref_id].map(point.position))
            map.update_normal_and_depth(point_id)
