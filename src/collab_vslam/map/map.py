"""Map arena: keyframes and map points addressed by integer ids.

Keyframes and map points refer to each other only through ids:
``keyframe.point_ids[feature] = point_id`` and
``point.observations[keyframe_id] = feature``. Covisibility, the spanning
tree and loop edges are stored the same way.

Keyframes received from other robots are imported here as well, so a
loop correction can rewrite the querying keyframe and its covisible peers
from the sending robot. Remote point ids are translated to local ones
through a ``(robot_id, remote_point_id)`` table.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import numpy as np

from ..errors import InvariantViolation
from ..geometry import SE3, CameraModel, Sim3
from .covisibility import CovisibilityGraph
from .features import KP_OCTAVE
from .keyframe import Keyframe
from .map_point import MapPoint

if TYPE_CHECKING:
    from ..exchange.messages import KeyframeDescriptor


def hamming_distance(a: np.ndarray, b: np.ndarray) -> int:
    """Bit distance between two (32,) uint8 descriptors."""
    return int(np.unpackbits(np.bitwise_xor(a, b)).sum())


class MapUpdateLock:
    """Exclusive, non re-entrant lock guarding pose and point mutation.

    Re-acquiring from the owning thread would deadlock a plain Lock; here
    it raises ``InvariantViolation`` instead.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owner: int | None = None

    def acquire(self) -> None:
        if self._owner == threading.get_ident():
            raise InvariantViolation("map-update lock re-acquired by its owner")
        self._lock.acquire()
        self._owner = threading.get_ident()

    def release(self) -> None:
        if self._owner != threading.get_ident():
            raise InvariantViolation("map-update lock released by a non-owner")
        self._owner = None
        self._lock.release()

    def held_by_current_thread(self) -> bool:
        return self._owner == threading.get_ident()

    def locked(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> MapUpdateLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class Map:
    """Arena of keyframes and map points for one robot.

    Structural calls (create, observe, replace, connect) are atomic with
    respect to each other. Pose and position writes during loop correction
    and global adjustment happen under ``update_lock``.
    """

    def __init__(self, robot_id: int = 0, min_shared_points: int = 15) -> None:
        """Initialize an empty map.

        Args:
            robot_id: Robot owning this map
            min_shared_points: Covisibility threshold
        """
        self.robot_id = robot_id
        self.keyframes: dict[int, Keyframe] = {}
        self.points: dict[int, MapPoint] = {}
        self.covisibility = CovisibilityGraph(min_shared_points)
        self.origins: list[int] = []
        self.update_lock = MapUpdateLock()

        self._structure_lock = threading.RLock()
        self._next_keyframe_id = 0
        self._next_point_id = 0
        self._by_identity: dict[tuple[int, int], int] = {}
        self._remote_points: dict[tuple[int, int], int] = {}
        self._alignments: dict[int, Sim3] = {}

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_keyframe(
        self,
        robot_id: int,
        frame_index: int,
        pose_cw: SE3,
        camera: CameraModel,
        keypoints: np.ndarray,
        descriptors: np.ndarray,
        appearance: dict[int, float] | None = None,
        feature_vector: dict[int, list[int]] | None = None,
        remote_pose_cw: SE3 | None = None,
    ) -> Keyframe:
        """Add a keyframe with no point associations yet.

        Raises:
            InvariantViolation: If the (robot, frame) identity already exists
        """
        with self._structure_lock:
            identity = (robot_id, frame_index)
            if identity in self._by_identity:
                raise InvariantViolation(f"keyframe {identity} already in map")

            keyframe = Keyframe(
                id=self._next_keyframe_id,
                robot_id=robot_id,
                frame_index=frame_index,
                pose_cw=pose_cw,
                camera=camera,
                keypoints=keypoints,
                descriptors=descriptors,
                appearance=dict(appearance or {}),
                feature_vector={k: list(v) for k, v in (feature_vector or {}).items()},
                remote_pose_cw=remote_pose_cw,
            )
            self._next_keyframe_id += 1
            self.keyframes[keyframe.id] = keyframe
            self._by_identity[identity] = keyframe.id
            return keyframe

    def create_point(
        self,
        position: np.ndarray,
        descriptor: np.ndarray,
        reference_keyframe: int,
        source: tuple[int, int] | None = None,
    ) -> MapPoint:
        with self._structure_lock:
            point = MapPoint(
                id=self._next_point_id,
                position=position,
                descriptor=descriptor,
                reference_keyframe=reference_keyframe,
                source=source,
            )
            self._next_point_id += 1
            self.points[point.id] = point
            return point

    def keyframe(self, kf_id: int) -> Keyframe:
        """Look up a keyframe that must exist.

        Raises:
            InvariantViolation: If the id is unknown
        """
        keyframe = self.keyframes.get(kf_id)
        if keyframe is None:
            raise InvariantViolation(f"unknown keyframe {kf_id}")
        return keyframe

    def keyframe_by_identity(self, robot_id: int, frame_index: int) -> Keyframe | None:
        kf_id = self._by_identity.get((robot_id, frame_index))
        return None if kf_id is None else self.keyframes[kf_id]

    def resolve_point(self, point_id: int) -> int | None:
        """Follow fusion links to the surviving point (None if culled)."""
        seen = set()
        while point_id not in seen:
            seen.add(point_id)
            point = self.points.get(point_id)
            if point is None:
                return None
            if not point.is_bad:
                return point_id
            if point.replaced_by is None:
                return None
            point_id = point.replaced_by
        return None

    def good_point(self, point_id: int) -> MapPoint | None:
        if point_id < 0:
            return None
        point = self.points.get(point_id)
        if point is None or point.is_bad:
            return None
        return point

    def keyframe_points(self, kf_id: int) -> list[int]:
        """Non-bad map points observed by a keyframe."""
        keyframe = self.keyframes[kf_id]
        return [pid for pid in keyframe.observed_point_ids() if self.good_point(pid)]

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def add_observation(self, point_id: int, kf_id: int, feature: int) -> bool:
        """Associate feature ``feature`` of a keyframe with a point.

        Returns:
            False if the keyframe already observes the point or the
            feature slot is taken
        """
        with self._structure_lock:
            point = self.points[point_id]
            keyframe = self.keyframes[kf_id]
            if kf_id in point.observations or keyframe.point_ids[feature] >= 0:
                return False
            point.observations[kf_id] = feature
            keyframe.point_ids[feature] = point_id
            return True

    def erase_observation(self, point_id: int, kf_id: int) -> None:
        with self._structure_lock:
            point = self.points[point_id]
            feature = point.observations.pop(kf_id, None)
            if feature is not None:
                self.keyframes[kf_id].point_ids[feature] = -1
            if point.reference_keyframe == kf_id and point.observations:
                point.reference_keyframe = next(iter(point.observations))
            if not point.observations:
                point.is_bad = True

    def replace_point(self, old_id: int, new_id: int) -> None:
        """Fuse ``old_id`` into ``new_id``.

        Every observation of the old point moves to the survivor unless
        the keyframe already observes it, in which case the slot is
        cleared. The old point is marked bad and linked to the survivor.
        """
        if old_id == new_id:
            return
        with self._structure_lock:
            old = self.points[old_id]
            new = self.points[new_id]
            if old.is_bad or new.is_bad:
                return

            for kf_id, feature in list(old.observations.items()):
                keyframe = self.keyframes[kf_id]
                if kf_id not in new.observations:
                    keyframe.point_ids[feature] = new_id
                    new.observations[kf_id] = feature
                else:
                    keyframe.point_ids[feature] = -1

            old.observations.clear()
            old.is_bad = True
            old.replaced_by = new_id

            self.compute_distinctive_descriptor(new_id)

    def compute_distinctive_descriptor(self, point_id: int) -> None:
        """Pick the observed descriptor with least median distance to the rest."""
        point = self.points[point_id]
        descriptors = [
            self.keyframes[kf_id].descriptors[feature]
            for kf_id, feature in point.observations.items()
            if not self.keyframes[kf_id].is_bad
        ]
        if not descriptors:
            return
        if len(descriptors) == 1:
            point.descriptor = descriptors[0].copy()
            return

        stacked = np.stack(descriptors)
        bits = np.unpackbits(stacked, axis=1).astype(np.int32)
        distances = (bits[:, None, :] != bits[None, :, :]).sum(axis=2)
        best = int(np.argmin(np.median(distances, axis=1)))
        point.descriptor = stacked[best].copy()

    def update_normal_and_depth(self, point_id: int) -> None:
        """Refresh viewing direction and scale-invariance distance bounds."""
        point = self.points[point_id]
        if point.is_bad or not point.observations:
            return

        self._update_normal(point)

        ref_id = point.reference_keyframe
        if ref_id not in point.observations:
            ref_id = next(iter(point.observations))
            point.reference_keyframe = ref_id
        ref = self.keyframes[ref_id]
        feature = point.observations[ref_id]

        distance = float(np.linalg.norm(point.position - ref.camera_center))
        level = int(ref.keypoints[feature, KP_OCTAVE])
        level = min(max(level, 0), ref.camera.n_levels - 1)
        point.max_distance = distance * float(ref.camera.scale_factors[level])
        point.min_distance = point.max_distance / float(ref.camera.scale_factors[-1])

    def _update_normal(self, point: MapPoint) -> None:
        normal = np.zeros(3)
        n = 0
        for kf_id in point.observations:
            direction = point.position - self.keyframes[kf_id].camera_center
            norm = np.linalg.norm(direction)
            if norm > 0:
                normal += direction / norm
                n += 1
        if n > 0:
            point.normal = normal / n

    # ------------------------------------------------------------------
    # Graph structure
    # ------------------------------------------------------------------

    def update_connections(self, kf_id: int) -> None:
        """Recount shared points and refresh covisibility edges.

        The first time a keyframe gets a neighbour, its best covisible
        keyframe becomes its spanning-tree parent. A keyframe with no
        neighbours and no parent is recorded as a tree root.
        """
        with self._structure_lock:
            keyframe = self.keyframes[kf_id]
            counts: dict[int, int] = {}
            for pid in keyframe.observed_point_ids():
                point = self.good_point(pid)
                if point is None:
                    continue
                for other in point.observations:
                    if other == kf_id or self.keyframes[other].is_bad:
                        continue
                    counts[other] = counts.get(other, 0) + 1

            self.covisibility.set_connections(kf_id, counts)

            if keyframe.parent is not None or kf_id in self.origins:
                return
            if not counts:
                self.origins.append(kf_id)
                return

            parent_id = self.covisibility.covisible(kf_id)[0]
            keyframe.parent = parent_id
            self.keyframes[parent_id].children.add(kf_id)

    def add_loop_edge(self, kf1_id: int, kf2_id: int) -> None:
        """Record a permanent loop edge (idempotent)."""
        with self._structure_lock:
            self.keyframes[kf1_id].loop_edges.add(kf2_id)
            self.keyframes[kf2_id].loop_edges.add(kf1_id)

    def set_pose(self, kf_id: int, pose_cw: SE3) -> None:
        self.keyframes[kf_id].pose_cw = SE3(
            rotation=pose_cw.rotation.copy(), translation=pose_cw.translation.copy()
        )

    # ------------------------------------------------------------------
    # Remote keyframes
    # ------------------------------------------------------------------

    def alignment(self, robot_id: int) -> Sim3 | None:
        """Transform from a peer's world frame into this map's frame."""
        return self._alignments.get(robot_id)

    def set_alignment(self, robot_id: int, alignment: Sim3) -> None:
        self._alignments[robot_id] = alignment

    def import_descriptor(self, descriptor: KeyframeDescriptor) -> Keyframe:
        """Insert a received keyframe (idempotent per identity).

        Map points are matched to previously imported ones through their
        remote ids. Once a loop with the sender has been corrected, new
        keyframes and points are brought into the local frame with the
        recorded alignment.

        Args:
            descriptor: Decoded keyframe descriptor from a peer

        Returns:
            The imported (or previously imported) keyframe
        """
        with self._structure_lock:
            existing = self.keyframe_by_identity(descriptor.robot_id, descriptor.frame_index)
            if existing is not None:
                return existing

            alignment = self._alignments.get(descriptor.robot_id)
            pose_cw = descriptor.pose_cw
            scale = 1.0
            if alignment is not None:
                pose_cw = (Sim3.from_se3(pose_cw) @ alignment.inverse()).to_se3()
                scale = alignment.scale

            keyframe = self.create_keyframe(
                robot_id=descriptor.robot_id,
                frame_index=descriptor.frame_index,
                pose_cw=pose_cw,
                camera=descriptor.camera,
                keypoints=descriptor.keypoints.copy(),
                descriptors=descriptor.descriptors.copy(),
                appearance=descriptor.appearance,
                feature_vector=descriptor.feature_vector,
                remote_pose_cw=descriptor.pose_cw,
            )

            created = []
            for feature in np.flatnonzero(descriptor.point_ids >= 0):
                feature = int(feature)
                key = (descriptor.robot_id, int(descriptor.point_ids[feature]))
                point_id = None
                if key in self._remote_points:
                    point_id = self.resolve_point(self._remote_points[key])

                if point_id is None:
                    position = descriptor.world_points[feature]
                    if alignment is not None:
                        position = alignment.map(position)
                    point = self.create_point(
                        position=position,
                        descriptor=descriptor.point_descriptors[feature],
                        reference_keyframe=keyframe.id,
                        source=key,
                    )
                    point.min_distance = float(descriptor.min_distances[feature]) * scale
                    point.max_distance = float(descriptor.max_distances[feature]) * scale
                    self._remote_points[key] = point.id
                    point_id = point.id
                    created.append(point)

                self.add_observation(point_id, keyframe.id, feature)

            for point in created:
                self._update_normal(point)

            self.update_connections(keyframe.id)
            return keyframe

    # ------------------------------------------------------------------

    @property
    def num_keyframes(self) -> int:
        return len(self.keyframes)

    @property
    def num_points(self) -> int:
        return sum(1 for p in self.points.values() if not p.is_bad)

    def __repr__(self) -> str:
        return f"Map(robot={self.robot_id}, keyframes={self.num_keyframes}, points={self.num_points})"
