"""Tests for the inter-robot loop closing coordinator."""

import numpy as np
import pytest

from conftest import B_OFFSET, N_KEYFRAMES, build_map
from collab_vslam.backend import KeyframeDatabase
from collab_vslam.config import LoopClosingConfig
from collab_vslam.errors import InvariantViolation
from collab_vslam.exchange import InMemoryBus, decode_measurement, encode_keyframe
from collab_vslam.loop_closing import AdjustmentOutcome, InterRobotLoopClosing, MappingGate
from collab_vslam.map import KEYPOINT_COLUMNS, KP_OCTAVE

TIMEOUT = 30.0


def make_closer(world, vocabulary, robot_id: int, bus, offset=None) -> InterRobotLoopClosing:
    map = build_map(world, robot_id=robot_id, offset=offset)
    config = LoopClosingConfig(robot_id=robot_id, robot_name="ab"[robot_id])
    database = KeyframeDatabase(vocabulary, map)
    return InterRobotLoopClosing(config, map, vocabulary, database, bus, MappingGate())


@pytest.fixture
def bus() -> InMemoryBus:
    return InMemoryBus()


class TestLocalKeyframes:
    """Test suite for registering and publishing local keyframes."""

    def test_insert_computes_appearance(self, world, vocabulary, bus):
        """Test that inserted keyframes get a BoW vector and enter the database."""
        closer = make_closer(world, vocabulary, 0, bus)

        closer.insert_keyframe(2)

        keyframe = closer.map.keyframes[2]
        assert keyframe.appearance
        assert keyframe.feature_vector
        assert len(closer.database) == 1

    def test_root_keyframe_is_not_published(self, world, vocabulary, bus):
        """Test that the first keyframe of a map is indexed only."""
        closer = make_closer(world, vocabulary, 1, bus)

        closer.insert_keyframe(0)
        assert not closer.check_new_keyframes()
        assert len(closer.database) == 1

        closer.insert_keyframe(1)
        assert closer.check_new_keyframes()

    def test_process_publishes_in_order(self, world, vocabulary, bus):
        """Test that queued keyframes are published oldest first."""
        received = []
        bus.subscribe("/b/keyframe", lambda payload: received.append(payload["frame_index"]))
        closer = make_closer(world, vocabulary, 1, bus)
        for kf_id in range(N_KEYFRAMES):
            closer.insert_keyframe(kf_id)

        while closer.process_next_keyframe():
            pass

        assert received == [1, 2, 3, 4]
        assert closer.exchange.num_published == 4
        assert not closer.process_next_keyframe()

    def test_unknown_keyframe_rejected(self, world, vocabulary, bus):
        """Test that only keyframes of the map can be inserted."""
        closer = make_closer(world, vocabulary, 0, bus)

        with pytest.raises(InvariantViolation):
            closer.insert_keyframe(99)


class TestLifecycle:
    """Test suite for the publisher loop, reset and finish."""

    def test_reset_handshake(self, world, vocabulary, bus):
        """Test that request_reset returns once the loop has reset."""
        closer = make_closer(world, vocabulary, 0, bus)
        closer.last_loop_keyframe_id = 3
        closer.start()

        closer.request_reset()

        assert closer.last_loop_keyframe_id is None
        assert not closer.check_new_keyframes()
        closer.stop(TIMEOUT)
        assert closer.is_finished()

    def test_loop_publishes_queued_keyframes(self, world, vocabulary, bus):
        """Test that the background loop drains the queue."""
        received = []
        bus.subscribe("/b/keyframe", received.append)
        closer = make_closer(world, vocabulary, 1, bus)
        for kf_id in range(N_KEYFRAMES):
            closer.insert_keyframe(kf_id)

        closer.start()
        closer.stop(TIMEOUT)

        # Finishing may win the race against the queue; whatever was sent is in order
        frames = [payload["frame_index"] for payload in received]
        assert frames == sorted(frames)
        assert closer.is_finished()
        assert not closer.is_running_global_adjustment


class TestTwoRobots:
    """End-to-end loop closing between two robots seeing the same place."""

    def test_loop_closed_and_maps_aligned(self, world, vocabulary, bus):
        """Test detection, recovery, correction and adjustment on one bus."""
        closer_a = make_closer(world, vocabulary, 0, bus)
        closer_b = make_closer(world, vocabulary, 1, bus, offset=B_OFFSET)
        measurements = []
        bus.subscribe("/measurement", measurements.append)

        for kf_id in range(N_KEYFRAMES):
            closer_a.insert_keyframe(kf_id)
        for kf_id in range(N_KEYFRAMES):
            closer_b.insert_keyframe(kf_id)

        # Three consistent rounds are needed before the fourth is verified
        for frame in (1, 2, 3):
            closer_b.process_next_keyframe()
            assert measurements == []
            assert closer_a.num_loops == 0
        closer_b.process_next_keyframe()

        assert closer_a.num_loops == 1
        assert closer_b.num_loops == 0
        assert len(measurements) == 1
        message = decode_measurement(measurements[0])
        assert (message.robot_a, message.frame_a) == (1, 4)
        assert message.robot_b == 0

        assert closer_a.adjustment.join(TIMEOUT)
        assert closer_a.adjustment.last_outcome is AdjustmentOutcome.APPLIED

        map_a = closer_a.map
        for frame in range(1, N_KEYFRAMES):
            remote = map_a.keyframe_by_identity(1, frame)
            local = map_a.keyframe_by_identity(0, frame)
            np.testing.assert_allclose(
                remote.pose_cw.to_matrix(), local.pose_cw.to_matrix(), atol=1e-6
            )

        alignment = map_a.alignment(1)
        np.testing.assert_allclose(alignment.translation, -B_OFFSET, atol=1e-6)
        np.testing.assert_allclose(alignment.rotation, np.eye(3), atol=1e-6)
        assert closer_a.last_loop_keyframe_id == map_a.keyframe_by_identity(1, 4).id

    def test_bad_octave_keyframe_is_dropped(self, world, vocabulary, bus):
        """Test that a keyframe indexing past the sender's pyramid is not imported."""
        closer_a = make_closer(world, vocabulary, 0, bus)
        closer_b = make_closer(world, vocabulary, 1, bus, offset=B_OFFSET)
        for kf_id in range(N_KEYFRAMES):
            closer_a.insert_keyframe(kf_id)
            closer_b.insert_keyframe(kf_id)
        for _ in range(3):
            closer_b.process_next_keyframe()

        bad = dict(encode_keyframe(closer_b.exchange.build_descriptor(4)))
        keypoints = np.asarray(bad["keypoints"]).reshape(-1, KEYPOINT_COLUMNS)
        keypoints[:, KP_OCTAVE] = 99
        bad["keypoints"] = keypoints.flatten().tolist()
        bus.publish("/b/keyframe", bad)

        assert closer_a.exchange.num_dropped == 1
        assert closer_a.map.keyframe_by_identity(1, 4) is None
        assert closer_a.num_loops == 0

    def test_higher_robot_never_matches(self, world, vocabulary, bus):
        """Test that keyframes flowing the other way are ignored."""
        closer_a = make_closer(world, vocabulary, 0, bus)
        closer_b = make_closer(world, vocabulary, 1, bus, offset=B_OFFSET)
        for kf_id in range(N_KEYFRAMES):
            closer_a.insert_keyframe(kf_id)
            closer_b.insert_keyframe(kf_id)

        while closer_a.process_next_keyframe():
            pass

        assert closer_b.exchange.num_received == 0
        assert closer_b.map.num_keyframes == N_KEYFRAMES
