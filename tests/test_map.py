"""Tests for the map arena."""

import threading

import numpy as np
import pytest

from conftest import B_OFFSET, build_map, make_camera, remote_descriptors
from collab_vslam.errors import InvariantViolation
from collab_vslam.geometry import SE3, Sim3
from collab_vslam.map import KEYPOINT_COLUMNS, Map, MapUpdateLock, hamming_distance


def empty_keyframe(map: Map, robot_id: int, frame: int, n: int = 4):
    keypoints = np.zeros((n, KEYPOINT_COLUMNS))
    keypoints[:, 0] = np.arange(n) * 10.0 + 5.0
    keypoints[:, 1] = 5.0
    descriptors = np.zeros((n, 32), dtype=np.uint8)
    return map.create_keyframe(robot_id, frame, SE3.identity(), make_camera(), keypoints, descriptors)


class TestMapUpdateLock:
    """Test suite for the map-update lock."""

    def test_reacquire_from_owner_raises(self):
        """Test that re-entering from the owning thread is reported."""
        lock = MapUpdateLock()
        with lock:
            with pytest.raises(InvariantViolation, match="re-acquired"):
                lock.acquire()
        assert not lock.locked()

    def test_release_from_other_thread_raises(self):
        """Test that only the owner may release."""
        lock = MapUpdateLock()
        lock.acquire()
        errors = []

        def release():
            try:
                lock.release()
            except InvariantViolation as e:
                errors.append(e)

        thread = threading.Thread(target=release)
        thread.start()
        thread.join()

        assert len(errors) == 1
        assert lock.held_by_current_thread()
        lock.release()


class TestMapStructure:
    """Test suite for keyframe and point bookkeeping."""

    def test_duplicate_identity_rejected(self):
        """Test that a (robot, frame) pair is unique."""
        map = Map()
        empty_keyframe(map, 0, 0)

        with pytest.raises(InvariantViolation, match="already in map"):
            empty_keyframe(map, 0, 0)

    def test_unknown_keyframe_raises(self):
        """Test lookups of keyframes that must exist."""
        with pytest.raises(InvariantViolation, match="unknown keyframe"):
            Map().keyframe(3)

    def test_first_keyframe_is_root(self, world):
        """Test that the first keyframe becomes a spanning-tree root."""
        map = build_map(world, robot_id=0)

        assert map.origins == [0]
        assert map.keyframes[0].parent is None
        assert map.keyframes[1].parent == 0
        assert 1 in map.keyframes[0].children

    def test_covisibility_weights(self, world):
        """Test shared-point counts between keyframes."""
        map = build_map(world, robot_id=0)

        assert map.covisibility.weight(0, 1) == 200
        assert map.covisibility.weight(0, 4) == 80
        assert map.covisibility.covisible(2)[:2] in ([1, 3], [3, 1])

    def test_add_observation_rejects_taken_slot(self, world):
        """Test that a feature slot holds at most one point."""
        map = build_map(world, robot_id=0)
        other = map.create_point(np.zeros(3), np.zeros(32, dtype=np.uint8), 0)

        assert not map.add_observation(other.id, 0, 0)

    def test_replace_point_moves_observations(self, world):
        """Test fusing one point into another."""
        map = build_map(world, robot_id=0)
        old_id = map.keyframes[0].point_at(0)
        old_observers = dict(map.points[old_id].observations)
        new = map.create_point(np.ones(3), np.zeros(32, dtype=np.uint8), 0)

        map.replace_point(old_id, new.id)

        assert map.points[old_id].is_bad
        assert map.resolve_point(old_id) == new.id
        for kf_id, feature in old_observers.items():
            assert map.keyframes[kf_id].point_at(feature) == new.id
        assert new.observations == old_observers

    def test_erase_last_observation_marks_bad(self):
        """Test that a point without observers is culled."""
        map = Map()
        kf = empty_keyframe(map, 0, 0)
        point = map.create_point(np.zeros(3), np.zeros(32, dtype=np.uint8), kf.id)
        map.add_observation(point.id, kf.id, 1)

        map.erase_observation(point.id, kf.id)

        assert point.is_bad
        assert kf.point_at(1) == -1
        assert map.resolve_point(point.id) is None

    def test_distinctive_descriptor_is_a_medoid(self):
        """Test the representative descriptor choice."""
        map = Map()
        keyframes = [empty_keyframe(map, 0, i) for i in range(4)]
        for kf, value in zip(keyframes, [0b00000000, 0b00000001, 0b00000011, 0b11111111]):
            kf.descriptors[0, 0] = value
        point = map.create_point(np.zeros(3), np.zeros(32, dtype=np.uint8), 0)
        for kf in keyframes:
            map.add_observation(point.id, kf.id, 0)

        map.compute_distinctive_descriptor(point.id)

        assert point.descriptor[0] == 0b00000001

    def test_hamming_distance(self):
        """Test bit distance between descriptors."""
        a = np.zeros(32, dtype=np.uint8)
        b = a.copy()
        b[0] = 0b1011

        assert hamming_distance(a, b) == 3

    def test_distance_bounds(self, world):
        """Test scale-invariance distances of a point."""
        map = build_map(world, robot_id=0)
        point = map.points[0]
        distance = np.linalg.norm(point.position - map.keyframes[0].camera_center)

        assert point.max_distance == pytest.approx(distance)
        assert point.min_distance == pytest.approx(distance / 1.2**7)
        assert np.linalg.norm(point.normal) == pytest.approx(1.0, abs=1e-3)


class TestImportDescriptor:
    """Test suite for importing peers' keyframes."""

    def test_import_is_idempotent(self, world):
        """Test that a keyframe is imported once per identity."""
        descriptor = remote_descriptors(world)[1]
        map = build_map(world, robot_id=0)

        first = map.import_descriptor(descriptor)
        second = map.import_descriptor(descriptor)

        assert first is second
        assert first.robot_id == 1
        assert first.remote_pose_cw is descriptor.pose_cw

    def test_remote_points_are_shared(self, world):
        """Test that two imported keyframes share the same local points."""
        descriptors = remote_descriptors(world)
        map = build_map(world, robot_id=0)

        kf0 = map.import_descriptor(descriptors[0])
        kf1 = map.import_descriptor(descriptors[1])

        assert map.covisibility.weight(kf0.id, kf1.id) == 200
        assert kf1.parent == kf0.id

    def test_alignment_applied_after_loop(self, world):
        """Test that keyframes received after a loop land in the local frame."""
        descriptor = remote_descriptors(world)[2]
        map = build_map(world, robot_id=0)
        alignment = Sim3(rotation=np.eye(3), translation=-B_OFFSET)
        map.set_alignment(1, alignment)

        keyframe = map.import_descriptor(descriptor)

        np.testing.assert_allclose(
            keyframe.pose_cw.to_matrix(), map.keyframes[2].pose_cw.to_matrix(), atol=1e-12
        )
        feature = 0
        point = map.points[keyframe.point_at(feature)]
        landmark = world.visible[2][feature]
        np.testing.assert_allclose(point.position, world.points[landmark], atol=1e-12)
