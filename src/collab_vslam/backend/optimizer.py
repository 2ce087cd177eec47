"""Loop closing optimization with scipy.optimize.least_squares.

Three problems are solved here:

1. Sim(3) refinement between a received keyframe and a candidate:
   reprojection errors in both images, Huber loss, one outlier
   rejection round.
2. Essential graph: Sim(3) poses of every keyframe constrained by the
   spanning tree, loop edges, strong covisibility and the new loop
   connections. The matched keyframe is held fixed.
3. Global bundle adjustment: poses and points, reprojection errors
   weighted by pyramid level, run in short chunks so it can be stopped.

Poses are parameterized as a Rodrigues vector and a translation (plus a
log-scale for Sim(3)). Jacobians are finite differences with an explicit
sparsity pattern, which is what lets "trf" scale to a whole map.
"""

from __future__ import annotations

import math
import threading

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..errors import InvariantViolation
from ..exchange.messages import KeyframeDescriptor
from ..geometry import SE3, CameraModel, Sim3
from ..loop_closing.collaborators import GlobalAdjustmentResult
from ..map import KP_OCTAVE, KP_X, KP_Y, Map
from ..utils.logging_utils import Log

# Chi-square thresholds
CHI2_SIM3 = 10.0
CHI2_MONO = 5.991

MIN_COVISIBILITY_WEIGHT = 100
MIN_REFINED_CORRESPONDENCES = 10


def _rvec_to_rotation(rvec: np.ndarray) -> np.ndarray:
    """Convert Rodrigues vector to rotation matrix."""
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64))
    return R


def _rotation_to_rvec(R: np.ndarray) -> np.ndarray:
    """Convert rotation matrix to Rodrigues vector."""
    rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
    return rvec.flatten()


def sim3_to_params(sim3: Sim3, fix_scale: bool) -> np.ndarray:
    """[rvec, t] or [rvec, t, log s]."""
    params = [_rotation_to_rvec(sim3.rotation), sim3.translation]
    if not fix_scale:
        params.append([math.log(sim3.scale)])
    return np.concatenate(params)


def params_to_sim3(params: np.ndarray, fix_scale: bool) -> Sim3:
    scale = 1.0 if fix_scale else math.exp(params[6])
    return Sim3(rotation=_rvec_to_rotation(params[:3]), translation=params[3:6], scale=scale)


def sim3_log(sim3: Sim3) -> np.ndarray:
    """7D error vector [rotation, translation, log scale]."""
    return np.concatenate(
        [_rotation_to_rvec(sim3.rotation), sim3.translation, [math.log(sim3.scale)]]
    )


def _project(points_cam: np.ndarray, camera: CameraModel) -> np.ndarray:
    z = points_cam[:, 2]
    z = np.where(np.abs(z) < 1e-9, 1e-9, z)
    return np.column_stack(
        [
            camera.fx * points_cam[:, 0] / z + camera.cx,
            camera.fy * points_cam[:, 1] / z + camera.cy,
        ]
    )


class ScipyLoopOptimizer:
    """Reference implementation of the ``LoopOptimizer`` protocol.

    Example:
        >>> optimizer = ScipyLoopOptimizer(map)
        >>> n, s12, inliers = optimizer.refine_transform(query, kf_id, matches, s12, 10, True)
    """

    def __init__(
        self,
        map: Map,
        region_iterations: int = 20,
        ftol: float = 1e-8,
        xtol: float = 1e-8,
    ) -> None:
        """Initialize the optimizer.

        Args:
            map: Local map, used to look up the candidate's points
            region_iterations: Iteration budget of the essential graph
            ftol: Tolerance for termination by change of cost
            xtol: Tolerance for termination by change of parameters
        """
        self.map = map
        self.region_iterations = region_iterations
        self._ftol = ftol
        self._xtol = xtol

    # ------------------------------------------------------------------
    # Sim(3) refinement
    # ------------------------------------------------------------------

    def refine_transform(
        self,
        query: KeyframeDescriptor,
        kf_id: int,
        matches: dict[int, int],
        sim3: Sim3,
        iterations: int,
        fix_scale: bool,
    ) -> tuple[int, Sim3, dict[int, int]]:
        """Refine S12 on the given matches and drop outliers.

        Args:
            query: Received keyframe (camera 1)
            kf_id: Candidate keyframe (camera 2)
            matches: query feature index -> local map point id
            sim3: Initial S12 (camera 2 -> camera 1)
            iterations: Evaluation budget of the final round
            fix_scale: Keep the scale at 1

        Returns:
            (number of inliers, refined S12, inlier matches). The count is
            0 when fewer than 10 correspondences survive the first round.
        """
        keyframe = self.map.keyframes[kf_id]

        features = []
        x1w, x2w = [], []
        obs1, obs2 = [], []
        w1, w2 = [], []
        for f1, point_id in matches.items():
            point = self.map.good_point(point_id)
            if point is None or query.point_ids[f1] < 0:
                continue
            f2 = point.observations.get(kf_id)
            if f2 is None:
                continue
            features.append(f1)
            x1w.append(query.world_points[f1])
            x2w.append(point.position)
            obs1.append(query.keypoints[f1, KP_X : KP_Y + 1])
            obs2.append(keyframe.keypoints[f2, KP_X : KP_Y + 1])
            w1.append(query.camera.inv_level_sigma2[int(query.keypoints[f1, KP_OCTAVE])])
            w2.append(keyframe.camera.inv_level_sigma2[int(keyframe.keypoints[f2, KP_OCTAVE])])

        if len(features) < MIN_REFINED_CORRESPONDENCES:
            return 0, sim3, {}

        x1c = query.pose_cw.transform_points(np.array(x1w))
        x2c = keyframe.pose_cw.transform_points(np.array(x2w))
        obs1 = np.array(obs1)
        obs2 = np.array(obs2)
        sqrt_w1 = np.sqrt(np.array(w1))[:, None]
        sqrt_w2 = np.sqrt(np.array(w2))[:, None]

        def edge_errors(params: np.ndarray, keep: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
            s12 = params_to_sim3(params, fix_scale)
            e12 = (_project(s12.map(x2c[keep]), query.camera) - obs1[keep]) * sqrt_w1[keep]
            e21 = (
                _project(s12.inverse().map(x1c[keep]), keyframe.camera) - obs2[keep]
            ) * sqrt_w2[keep]
            return e12, e21

        def solve(x0: np.ndarray, keep: np.ndarray, n_evaluations: int) -> np.ndarray:
            result = least_squares(
                lambda p: np.concatenate([e.ravel() for e in edge_errors(p, keep)]),
                x0,
                method="trf",
                loss="huber",
                f_scale=math.sqrt(CHI2_SIM3),
                ftol=self._ftol,
                xtol=self._xtol,
                max_nfev=max(1, n_evaluations) * len(x0),
            )
            return result.x

        keep = np.ones(len(features), dtype=bool)
        try:
            x = solve(sim3_to_params(sim3, fix_scale), keep, max(1, iterations // 2))

            e12, e21 = edge_errors(x, keep)
            bad = (np.sum(e12**2, axis=1) > CHI2_SIM3) | (np.sum(e21**2, axis=1) > CHI2_SIM3)
            n_bad = int(bad.sum())
            keep = ~bad
            if len(features) - n_bad < MIN_REFINED_CORRESPONDENCES:
                return 0, sim3, {}

            more = iterations if n_bad > 0 else max(1, iterations // 2)
            x = solve(x, keep, more)
        except ValueError as exc:
            Log(f"Sim3 refinement failed: {exc}", tag="LoopClosing", debug=True)
            return 0, sim3, {}

        e12, e21 = edge_errors(x, keep)
        good = (np.sum(e12**2, axis=1) <= CHI2_SIM3) & (np.sum(e21**2, axis=1) <= CHI2_SIM3)
        kept = [f for f, k in zip(features, keep) if k]
        inliers = {f: matches[f] for f, g in zip(kept, good) if g}
        return len(inliers), params_to_sim3(x, fix_scale), inliers

    # ------------------------------------------------------------------
    # Essential graph
    # ------------------------------------------------------------------

    def optimize_region(
        self,
        map: Map,
        matched_kf_id: int,
        query_kf_id: int,
        uncorrected: dict[int, Sim3],
        corrected: dict[int, Sim3],
        loop_connections: dict[int, set[int]],
        fix_scale: bool,
    ) -> dict[int, Sim3]:
        """Distribute a loop correction over the essential graph.

        Vertices start from the corrected pose when there is one, else the
        current pose. Loop connections are measured with corrected poses;
        spanning tree, loop and covisibility edges with uncorrected poses
        where available, so the region around the loop keeps its shape.

        Args:
            map: Map arena
            matched_kf_id: Local keyframe of the loop (held fixed)
            query_kf_id: Keyframe received from the peer
            uncorrected: Poses of the corrected region before correction
            corrected: Poses of the corrected region after correction
            loop_connections: keyframe -> neighbours gained through fusion
            fix_scale: Optimize SE(3) only

        Returns:
            Optimized Siw of every keyframe in the graph
        """
        with map.update_lock:
            kf_ids = sorted(k for k, kf in map.keyframes.items() if not kf.is_bad)
            initial: dict[int, Sim3] = {}
            for kf_id in kf_ids:
                if kf_id in corrected:
                    initial[kf_id] = corrected[kf_id]
                else:
                    initial[kf_id] = Sim3.from_se3(map.keyframes[kf_id].pose_cw)
            edges = self._essential_edges(
                map, kf_ids, matched_kf_id, query_kf_id, initial, uncorrected, loop_connections
            )

        if not edges:
            return initial

        index = {kf_id: i for i, kf_id in enumerate(kf_ids)}
        free = [kf_id for kf_id in kf_ids if kf_id != matched_kf_id]
        n_vertex = 6 if fix_scale else 7
        offsets = {kf_id: i * n_vertex for i, kf_id in enumerate(free)}
        if not free:
            return initial

        def unpack(x: np.ndarray) -> dict[int, Sim3]:
            poses = dict(initial)
            for kf_id, offset in offsets.items():
                poses[kf_id] = params_to_sim3(x[offset : offset + n_vertex], fix_scale)
            return poses

        def residuals(x: np.ndarray) -> np.ndarray:
            poses = unpack(x)
            errors = np.empty(7 * len(edges))
            for e, (i, j, sji) in enumerate(edges):
                error = sji @ poses[i] @ poses[j].inverse()
                errors[7 * e : 7 * e + 7] = sim3_log(error)
            return errors

        sparsity = lil_matrix((7 * len(edges), n_vertex * len(free)), dtype=np.int8)
        for e, (i, j, _) in enumerate(edges):
            for kf_id in (i, j):
                if kf_id in offsets:
                    offset = offsets[kf_id]
                    sparsity[7 * e : 7 * e + 7, offset : offset + n_vertex] = 1

        x0 = np.concatenate([sim3_to_params(initial[kf_id], fix_scale) for kf_id in free])
        try:
            result = least_squares(
                residuals,
                x0,
                method="trf",
                jac_sparsity=sparsity.tocsr(),
                ftol=self._ftol,
                xtol=self._xtol,
                max_nfev=self.region_iterations * len(x0),
            )
        except ValueError as exc:
            Log(f"Essential graph optimization failed: {exc}", tag="Correction")
            return initial

        Log(
            f"Essential graph: {len(index)} keyframes, {len(edges)} edges,",
            f"cost {0.5 * np.sum(residuals(x0) ** 2):.3e} -> {result.cost:.3e}",
            tag="Correction",
            debug=True,
        )
        return unpack(result.x)

    def _essential_edges(
        self,
        map: Map,
        kf_ids: list[int],
        matched_kf_id: int,
        query_kf_id: int,
        initial: dict[int, Sim3],
        uncorrected: dict[int, Sim3],
        loop_connections: dict[int, set[int]],
    ) -> list[tuple[int, int, Sim3]]:
        """Edges (i, j, Sji) of the essential graph."""
        vertices = set(kf_ids)
        covisibility = map.covisibility
        edges: list[tuple[int, int, Sim3]] = []
        inserted: set[tuple[int, int]] = set()

        def add(i: int, j: int, siw: Sim3, sjw: Sim3) -> None:
            edges.append((i, j, sjw @ siw.inverse()))
            inserted.add((min(i, j), max(i, j)))

        # New loop connections, measured with corrected poses
        for i, neighbours in sorted(loop_connections.items()):
            if i not in vertices:
                continue
            for j in sorted(neighbours):
                if j not in vertices:
                    continue
                is_loop_pair = i == query_kf_id and j == matched_kf_id
                if not is_loop_pair and covisibility.weight(i, j) < MIN_COVISIBILITY_WEIGHT:
                    continue
                add(i, j, initial[i], initial[j])

        def before(kf_id: int) -> Sim3:
            return uncorrected.get(kf_id, initial[kf_id])

        for i in kf_ids:
            keyframe = map.keyframes[i]

            # Spanning tree
            parent = keyframe.parent
            if parent is not None and parent in vertices:
                add(i, parent, before(i), before(parent))

            # Previous loop edges
            for j in sorted(keyframe.loop_edges):
                if j < i and j in vertices:
                    add(i, j, before(i), before(j))

            # Strong covisibility
            for j in covisibility.covisible(i):
                if covisibility.weight(i, j) < MIN_COVISIBILITY_WEIGHT:
                    break
                if j == parent or j in keyframe.children or j in keyframe.loop_edges:
                    continue
                if j >= i or j not in vertices:
                    continue
                if (j, i) in inserted:
                    continue
                add(i, j, before(i), before(j))

        return edges

    # ------------------------------------------------------------------
    # Global bundle adjustment
    # ------------------------------------------------------------------

    def optimize_global(
        self,
        map: Map,
        iterations: int,
        stop_event: threading.Event,
        epoch: int,
    ) -> GlobalAdjustmentResult | None:
        """Bundle adjust every keyframe and point of the map.

        The map is copied under ``map.update_lock``; the optimization runs
        without holding it. ``stop_event`` is checked between chunks of a
        few evaluations.

        Args:
            map: Map arena
            iterations: Number of chunks
            stop_event: Set to abandon the run
            epoch: Adjustment epoch, for logging

        Returns:
            Optimized poses and points, or None if stopped or failed
        """
        try:
            return self._optimize_global(map, iterations, stop_event, epoch)
        except InvariantViolation:
            raise
        except Exception as exc:
            Log(f"Global adjustment (epoch {epoch}) failed: {exc}", tag="GlobalBA")
            return None

    def _optimize_global(
        self,
        map: Map,
        iterations: int,
        stop_event: threading.Event,
        epoch: int,
    ) -> GlobalAdjustmentResult | None:
        with map.update_lock:
            kf_ids = sorted(k for k, kf in map.keyframes.items() if not kf.is_bad)
            poses = {kf_id: map.keyframes[kf_id].pose_cw for kf_id in kf_ids}
            kf_index = {kf_id: i for i, kf_id in enumerate(kf_ids)}

            point_ids: list[int] = []
            positions = []
            obs_kf, obs_point, pixels, weights, intrinsics = [], [], [], [], []
            for point_id, point in sorted(map.points.items()):
                if point.is_bad:
                    continue
                observations = [
                    (kf_id, feature)
                    for kf_id, feature in point.observations.items()
                    if kf_id in kf_index
                ]
                if not observations:
                    continue
                p = len(point_ids)
                point_ids.append(point_id)
                positions.append(point.position.copy())
                for kf_id, feature in observations:
                    keyframe = map.keyframes[kf_id]
                    cam = keyframe.camera
                    octave = int(keyframe.keypoints[feature, KP_OCTAVE])
                    obs_kf.append(kf_index[kf_id])
                    obs_point.append(p)
                    pixels.append(keyframe.keypoints[feature, KP_X : KP_Y + 1])
                    weights.append(math.sqrt(cam.inv_level_sigma2[octave]))
                    intrinsics.append((cam.fx, cam.fy, cam.cx, cam.cy))

            origin = next((k for k in map.origins if k in kf_index), kf_ids[0] if kf_ids else None)

        if origin is None or not point_ids:
            return GlobalAdjustmentResult(
                poses=dict(poses),
                points={pid: pos for pid, pos in zip(point_ids, positions)},
            )

        obs_kf = np.array(obs_kf, dtype=np.int64)
        obs_point = np.array(obs_point, dtype=np.int64)
        pixels = np.array(pixels)
        weights = np.array(weights)[:, None]
        intrinsics = np.array(intrinsics)

        free = [kf_id for kf_id in kf_ids if kf_id != origin]
        n_free = len(free)
        n_points = len(point_ids)
        pose_slot = np.full(len(kf_ids), -1, dtype=np.int64)
        for slot, kf_id in enumerate(free):
            pose_slot[kf_index[kf_id]] = slot
        fixed_idx = kf_index[origin]

        def unpack(x: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
            rotations = np.empty((len(kf_ids), 3, 3))
            translations = np.empty((len(kf_ids), 3))
            rotations[fixed_idx] = poses[origin].rotation
            translations[fixed_idx] = poses[origin].translation
            pose_params = x[: 6 * n_free].reshape(n_free, 6)
            for slot, kf_id in enumerate(free):
                idx = kf_index[kf_id]
                rotations[idx] = _rvec_to_rotation(pose_params[slot, :3])
                translations[idx] = pose_params[slot, 3:]
            points = x[6 * n_free :].reshape(n_points, 3)
            return rotations, translations, points

        def residuals(x: np.ndarray) -> np.ndarray:
            rotations, translations, points = unpack(x)
            p_cam = (
                np.einsum("nij,nj->ni", rotations[obs_kf], points[obs_point])
                + translations[obs_kf]
            )
            z = p_cam[:, 2]
            z = np.where(np.abs(z) < 1e-9, 1e-9, z)
            u = intrinsics[:, 0] * p_cam[:, 0] / z + intrinsics[:, 2]
            v = intrinsics[:, 1] * p_cam[:, 1] / z + intrinsics[:, 3]
            return ((np.column_stack([u, v]) - pixels) * weights).ravel()

        n_obs = len(obs_kf)
        sparsity = lil_matrix((2 * n_obs, 6 * n_free + 3 * n_points), dtype=np.int8)
        for o in range(n_obs):
            slot = pose_slot[obs_kf[o]]
            if slot >= 0:
                sparsity[2 * o : 2 * o + 2, 6 * slot : 6 * slot + 6] = 1
            col = 6 * n_free + 3 * obs_point[o]
            sparsity[2 * o : 2 * o + 2, col : col + 3] = 1
        sparsity = sparsity.tocsr()

        x = np.concatenate(
            [np.concatenate(poses[kf_id].to_rvec_tvec()) for kf_id in free]
            + [np.array(positions).ravel()]
        )
        initial_cost = 0.5 * np.sum(residuals(x) ** 2)
        cost = initial_cost

        for _ in range(iterations):
            if stop_event.is_set():
                return None
            result = least_squares(
                residuals,
                x,
                method="trf",
                jac_sparsity=sparsity,
                loss="huber",
                f_scale=math.sqrt(CHI2_MONO),
                ftol=self._ftol,
                xtol=self._xtol,
                max_nfev=3,
            )
            x = result.x
            cost = 0.5 * np.sum(residuals(x) ** 2)
            if result.status != 0:
                break

        if stop_event.is_set():
            return None

        if cost > max(10.0 * initial_cost, CHI2_MONO):
            Log(f"Global adjustment (epoch {epoch}) diverged", tag="GlobalBA")
            return None

        Log(
            f"Global adjustment (epoch {epoch}): {len(kf_ids)} keyframes, {n_points} points,",
            f"cost {initial_cost:.3e} -> {cost:.3e}",
            tag="GlobalBA",
            debug=True,
        )

        rotations, translations, points = unpack(x)
        return GlobalAdjustmentResult(
            poses={
                kf_id: SE3(rotation=rotations[kf_index[kf_id]], translation=translations[kf_index[kf_id]])
                for kf_id in kf_ids
            },
            points={pid: points[p].copy() for p, pid in enumerate(point_ids)},
        )
