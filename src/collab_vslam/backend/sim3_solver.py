"""RANSAC estimation of the similarity between two keyframes' cameras.

Correspondences are 3D points seen by both keyframes: the querying
keyframe's points (in the sender's world frame) and the candidate's local
map points. Each hypothesis is the closed-form alignment of three
correspondences (Horn/Umeyama); inliers are correspondences whose
reprojection error is small in *both* images.

The estimated transform S12 maps camera 2 (candidate) coordinates into
camera 1 (query) coordinates: ``P1 = s * R12 @ P2 + t12``.
"""

from __future__ import annotations

import math
from collections.abc import Callable

import numpy as np

from ..exchange.messages import KeyframeDescriptor
from ..geometry import CameraModel, Sim3
from ..loop_closing.collaborators import SolverStep
from ..map import KP_OCTAVE, Map

# Chi-square 2 DOF, 99%
CHI2_2DOF = 9.210


def align_points(p1: np.ndarray, p2: np.ndarray, fix_scale: bool = True) -> Sim3:
    """Closed-form similarity with ``p1 ~ s * R @ p2 + t``.

    Args:
        p1: (N, 3) target points
        p2: (N, 3) source points
        fix_scale: Keep s = 1

    Returns:
        Sim3 mapping p2 onto p1
    """
    o1 = p1.mean(axis=0)
    o2 = p2.mean(axis=0)
    pr1 = p1 - o1
    pr2 = p2 - o2

    H = pr2.T @ pr1
    U, _, Vt = np.linalg.svd(H)
    D = np.eye(3)
    if np.linalg.det(Vt.T @ U.T) < 0:
        D[2, 2] = -1.0
    R = Vt.T @ D @ U.T

    scale = 1.0
    if not fix_scale:
        den = float(np.sum(pr2**2))
        if den > 0.0:
            scale = float(np.sum(pr1 * (pr2 @ R.T))) / den
        if scale <= 0.0:
            scale = 1.0

    t = o1 - scale * (R @ o2)
    return Sim3(rotation=R, translation=t, scale=scale)


def _project(points_cam: np.ndarray, camera: CameraModel) -> np.ndarray:
    z = points_cam[:, 2]
    return np.column_stack(
        [
            camera.fx * points_cam[:, 0] / z + camera.cx,
            camera.fy * points_cam[:, 1] / z + camera.cy,
        ]
    )


class Sim3Solver:
    """Reference implementation of the ``TransformSolver`` protocol."""

    def __init__(
        self,
        query: KeyframeDescriptor,
        kf_id: int,
        map: Map,
        matches: dict[int, int],
        fix_scale: bool = True,
        seed: int | None = 0,
    ) -> None:
        """Collect correspondences.

        Args:
            query: Received keyframe (camera 1)
            kf_id: Candidate keyframe (camera 2)
            map: Local map
            matches: query feature index -> local map point id
            fix_scale: Estimate a rigid transform
            seed: Seed of the sample generator
        """
        keyframe = map.keyframes[kf_id]
        self.fix_scale = fix_scale
        self._rng = np.random.default_rng(seed)
        self._camera1 = query.camera
        self._camera2 = keyframe.camera

        indices1 = []
        x1w = []
        x2w = []
        max_error1 = []
        max_error2 = []
        for f1, point_id in sorted(matches.items()):
            point = map.good_point(point_id)
            if point is None or query.point_ids[f1] < 0:
                continue
            f2 = point.observations.get(kf_id)
            if f2 is None:
                continue

            octave1 = int(query.keypoints[f1, KP_OCTAVE])
            octave2 = int(keyframe.keypoints[f2, KP_OCTAVE])
            max_error1.append(CHI2_2DOF * query.camera.level_sigma2[octave1])
            max_error2.append(CHI2_2DOF * keyframe.camera.level_sigma2[octave2])
            indices1.append(f1)
            x1w.append(query.world_points[f1])
            x2w.append(point.position)

        self._indices1 = np.array(indices1, dtype=np.int64)
        self._max_error1 = np.array(max_error1)
        self._max_error2 = np.array(max_error2)

        n = len(indices1)
        if n > 0:
            self._x1c = query.pose_cw.transform_points(np.array(x1w))
            self._x2c = keyframe.pose_cw.transform_points(np.array(x2w))
            self._p1im1 = _project(self._x1c, self._camera1)
            self._p2im2 = _project(self._x2c, self._camera2)
        else:
            self._x1c = np.zeros((0, 3))
            self._x2c = np.zeros((0, 3))

        self._best: Sim3 | None = None
        self._best_inliers = 0
        self._iterations = 0
        self.configure()

    @classmethod
    def factory(cls, map: Map) -> Callable[..., Sim3Solver]:
        """Solver factory bound to a map, as used by the recovery engine."""

        def create(
            query: KeyframeDescriptor, kf_id: int, matches: dict[int, int], fix_scale: bool
        ) -> Sim3Solver:
            return cls(query, kf_id, map, matches, fix_scale)

        return create

    @property
    def num_correspondences(self) -> int:
        return len(self._indices1)

    def configure(
        self, probability: float = 0.99, min_inliers: int = 6, max_iterations: int = 300
    ) -> None:
        """Set RANSAC parameters and reset the iteration count.

        The iteration budget is the number of samples needed to draw an
        all-inlier triple with ``probability``, assuming the inlier ratio
        is ``min_inliers / N``, capped at ``max_iterations``.
        """
        self.probability = probability
        self.min_inliers = min_inliers

        n = self.num_correspondences
        if n == 0:
            n_iterations = 1
        else:
            epsilon = min(1.0, min_inliers / n)
            if epsilon**3 >= 1.0:
                n_iterations = 1
            else:
                n_iterations = math.ceil(math.log(1.0 - probability) / math.log(1.0 - epsilon**3))
        self.max_iterations = max(1, min(n_iterations, max_iterations))
        self._iterations = 0

    def iterate(self, n: int) -> SolverStep:
        """Run up to ``n`` more RANSAC iterations.

        Returns:
            SolverStep with the first hypothesis reaching ``min_inliers``,
            or no transform (``exhausted`` once the budget is spent)
        """
        if self.num_correspondences < max(3, self.min_inliers):
            return SolverStep(transform=None, exhausted=True)

        current = 0
        while self._iterations < self.max_iterations and current < n:
            current += 1
            self._iterations += 1

            sample = self._rng.choice(self.num_correspondences, size=3, replace=False)
            s12 = align_points(self._x1c[sample], self._x2c[sample], self.fix_scale)
            inliers = self._check_inliers(s12)
            n_inliers = int(inliers.sum())

            if n_inliers >= self._best_inliers:
                self._best = s12
                self._best_inliers = n_inliers
                if n_inliers >= self.min_inliers:
                    return SolverStep(
                        transform=s12,
                        exhausted=False,
                        inliers={int(f) for f in self._indices1[inliers]},
                    )

        return SolverStep(transform=None, exhausted=self._iterations >= self.max_iterations)

    def _check_inliers(self, s12: Sim3) -> np.ndarray:
        s21 = s12.inverse()
        with np.errstate(divide="ignore", invalid="ignore"):
            p2im1 = _project(s12.map(self._x2c), self._camera1)
            p1im2 = _project(s21.map(self._x1c), self._camera2)
        err1 = np.sum((self._p1im1 - p2im1) ** 2, axis=1)
        err2 = np.sum((self._p2im2 - p1im2) ** 2, axis=1)
        return (err1 < self._max_error1) & (err2 < self._max_error2)

    @property
    def rotation(self) -> np.ndarray:
        return self._best.rotation if self._best is not None else np.eye(3)

    @property
    def translation(self) -> np.ndarray:
        return self._best.translation if self._best is not None else np.zeros(3)

    @property
    def scale(self) -> float:
        return self._best.scale if self._best is not None else 1.0
