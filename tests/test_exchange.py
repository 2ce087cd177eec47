"""Tests for the message codecs, the bus and the keyframe exchange."""

import numpy as np
import pytest

from conftest import B_OFFSET, ConstantPlaceIndex, build_map
from collab_vslam.config import LoopClosingConfig
from collab_vslam.errors import MessageDecodeError
from collab_vslam.exchange import (
    InMemoryBus,
    KeyframeExchange,
    MeasurementMessage,
    decode_keyframe,
    decode_measurement,
    encode_keyframe,
    encode_measurement,
)
from collab_vslam.geometry import Sim3
from collab_vslam.map import KEYPOINT_COLUMNS, KP_OCTAVE


def make_exchange(world, robot_id: int, bus, offset=None, **overrides):
    name = "ab"[robot_id]
    map = build_map(world, robot_id=robot_id, offset=offset)
    config = LoopClosingConfig(robot_id=robot_id, robot_name=name, **overrides)
    exchange = KeyframeExchange(config, map, ConstantPlaceIndex(), bus)
    exchange.subscribe()
    return exchange


def with_octave(payload: dict, octave: float) -> dict:
    """Set every keypoint of an encoded keyframe to the same pyramid level."""
    keypoints = np.asarray(payload["keypoints"]).reshape(-1, KEYPOINT_COLUMNS)
    keypoints[:, KP_OCTAVE] = octave
    payload["keypoints"] = keypoints.flatten().tolist()
    return payload


class TestKeyframeCodec:
    """Test suite for the keyframe message codec."""

    def test_round_trip(self, world):
        """Test that a descriptor survives encoding."""
        bus = InMemoryBus()
        exchange = make_exchange(world, 1, bus, offset=B_OFFSET)
        descriptor = exchange.build_descriptor(2)

        decoded = decode_keyframe(encode_keyframe(descriptor))

        assert decoded.identity == (1, 2)
        assert decoded.min_score == pytest.approx(0.4)
        np.testing.assert_array_equal(decoded.keypoints, descriptor.keypoints)
        np.testing.assert_array_equal(decoded.descriptors, descriptor.descriptors)
        np.testing.assert_array_equal(decoded.point_ids, descriptor.point_ids)
        np.testing.assert_allclose(decoded.world_points, descriptor.world_points)
        np.testing.assert_allclose(decoded.pose_cw.to_matrix(), descriptor.pose_cw.to_matrix())
        assert decoded.camera.n_levels == descriptor.camera.n_levels

    def test_feature_grid_rebuilt_on_receiver(self, world):
        """Test area queries on a decoded descriptor."""
        bus = InMemoryBus()
        exchange = make_exchange(world, 1, bus)
        descriptor = decode_keyframe(encode_keyframe(exchange.build_descriptor(0)))
        x, y = descriptor.pixels[5]

        assert 5 in descriptor.features_in_area(x, y, 2.0)

    def test_descriptor_is_read_only(self, world):
        """Test that a built descriptor cannot be modified."""
        exchange = make_exchange(world, 1, InMemoryBus())
        descriptor = exchange.build_descriptor(0)

        with pytest.raises(ValueError):
            descriptor.point_ids[0] = 7

    def test_truncated_descriptors_rejected(self, world):
        """Test that a short descriptor blob is reported."""
        exchange = make_exchange(world, 1, InMemoryBus())
        payload = encode_keyframe(exchange.build_descriptor(0))
        payload["descriptors"] = payload["descriptors"][:-1]

        with pytest.raises(MessageDecodeError, match="descriptors"):
            decode_keyframe(payload)

    def test_missing_field_rejected(self, world):
        """Test that a missing field is reported."""
        exchange = make_exchange(world, 1, InMemoryBus())
        payload = encode_keyframe(exchange.build_descriptor(0))
        del payload["pose"]

        with pytest.raises(MessageDecodeError, match="missing field"):
            decode_keyframe(payload)

    def test_non_mapping_rejected(self):
        """Test that arbitrary payloads are reported."""
        with pytest.raises(MessageDecodeError, match="mapping"):
            decode_keyframe(b"garbage")

    def test_feature_index_out_of_range(self, world):
        """Test that node features must index existing keypoints."""
        exchange = make_exchange(world, 1, InMemoryBus())
        payload = encode_keyframe(exchange.build_descriptor(0))
        payload["node_ids"] = [0]
        payload["node_features"] = [[10_000]]

        with pytest.raises(MessageDecodeError, match="outside"):
            decode_keyframe(payload)

    @pytest.mark.parametrize("octave", [-1, 8, 99, 0.5])
    def test_octave_outside_pyramid_rejected(self, world, octave):
        """Test that keypoint octaves must index the sender's scale levels."""
        exchange = make_exchange(world, 1, InMemoryBus())
        descriptor = exchange.build_descriptor(0)
        assert descriptor.camera.n_levels == 8
        payload = with_octave(encode_keyframe(descriptor), octave)

        with pytest.raises(MessageDecodeError, match="octave"):
            decode_keyframe(payload)

    def test_top_pyramid_level_accepted(self, world):
        """Test that the last scale level is a valid octave."""
        exchange = make_exchange(world, 1, InMemoryBus())
        payload = with_octave(encode_keyframe(exchange.build_descriptor(0)), 7)

        decoded = decode_keyframe(payload)

        assert set(decoded.keypoints[:, KP_OCTAVE]) == {7.0}

    def test_inconsistent_intrinsics_rejected(self, world):
        """Test that K must agree with fx, fy, cx, cy."""
        exchange = make_exchange(world, 1, InMemoryBus())
        payload = encode_keyframe(exchange.build_descriptor(0))
        payload["K"][0] += 1.0

        with pytest.raises(MessageDecodeError, match="K does not match"):
            decode_keyframe(payload)


class TestMeasurementCodec:
    """Test suite for the measurement message."""

    def test_round_trip(self):
        """Test that the relative transform survives encoding."""
        transform = Sim3(rotation=np.eye(3), translation=np.array([1.0, 2.0, 3.0]), scale=1.0)
        message = MeasurementMessage.from_sim3((1, 4), (0, 2), transform)

        decoded = decode_measurement(encode_measurement(message))

        assert decoded == message
        np.testing.assert_allclose(decoded.to_sim3().translation, [1.0, 2.0, 3.0])

    def test_invalid_scale_rejected(self):
        """Test that a non-positive scale is reported."""
        message = MeasurementMessage.from_sim3((1, 4), (0, 2), Sim3.identity())
        payload = encode_measurement(message)
        payload["scale"] = 0.0

        with pytest.raises(MessageDecodeError, match="scale"):
            decode_measurement(payload)


class TestInMemoryBus:
    """Test suite for the in-process bus."""

    def test_wildcard_subscription(self):
        """Test robot-scoped topics matched by a pattern."""
        bus = InMemoryBus()
        received = []
        bus.subscribe("/*/keyframe", received.append)

        bus.publish("/a/keyframe", 1)
        bus.publish("/b/keyframe", 2)
        bus.publish("/measurement", 3)

        assert received == [1, 2]
        assert bus.num_published == 3

    def test_asynchronous_delivery_in_order(self):
        """Test that queued messages arrive in publish order."""
        bus = InMemoryBus(asynchronous=True)
        received = []
        bus.subscribe("/t", received.append)

        for i in range(20):
            bus.publish("/t", i)
        bus.flush()
        bus.close()

        assert received == list(range(20))

    def test_failing_subscriber_does_not_stop_delivery(self):
        """Test that one subscriber's error is contained."""
        bus = InMemoryBus(asynchronous=True)
        received = []

        def broken(payload):
            if payload == 1:
                raise RuntimeError("boom")

        bus.subscribe("/t", broken)
        bus.subscribe("/t", received.append)
        bus.publish("/t", 1)
        bus.publish("/t", 2)
        bus.flush()
        bus.close()

        assert received == [2]


class TestKeyframeExchange:
    """Test suite for publish/receive and robot precedence."""

    def test_lower_id_matches_higher_id(self, world):
        """Test that robot 0 processes keyframes from robot 1."""
        bus = InMemoryBus()
        a = make_exchange(world, 0, bus)
        b = make_exchange(world, 1, bus, offset=B_OFFSET)
        seen = []
        a.set_handlers(lambda d: seen.append(d.identity) or False, lambda: None)
        b.set_handlers(lambda d: pytest.fail("robot 1 must not match robot 0"), lambda: None)

        b.publish(1)

        assert seen == [(1, 1)]
        assert a.num_received == 1
        assert b.num_received == 0
        assert [d.frame_index for d in a.buffered(1)] == [1]

    def test_higher_id_ignores_lower_id(self, world):
        """Test that robot 1 silently ignores keyframes from robot 0."""
        bus = InMemoryBus()
        a = make_exchange(world, 0, bus)
        b = make_exchange(world, 1, bus, offset=B_OFFSET)
        calls = []
        a.set_handlers(lambda d: calls.append("a") or False, lambda: None)
        b.set_handlers(lambda d: calls.append("b") or False, lambda: None)

        a.publish(1)

        assert calls == []
        assert b.num_received == 0
        assert b.num_dropped == 0

    def test_malformed_message_dropped(self, world):
        """Test that a malformed message is counted and not matched."""
        bus = InMemoryBus()
        a = make_exchange(world, 0, bus)
        a.set_handlers(lambda d: pytest.fail("must not match"), lambda: None)

        bus.publish("/b/keyframe", {"robot_id": 1})

        assert a.num_dropped == 1
        assert a.num_received == 0

    def test_bad_octave_dropped_on_receive(self, world):
        """Test that a keyframe with octaves beyond the pyramid never reaches matching."""
        bus = InMemoryBus()
        a = make_exchange(world, 0, bus)
        b = make_exchange(world, 1, bus, offset=B_OFFSET)
        a.set_handlers(lambda d: pytest.fail("must not match"), lambda: None)
        payload = with_octave(encode_keyframe(b.build_descriptor(4)), 99)

        assert a.on_receive(payload) is False
        assert a.num_dropped == 1
        assert a.num_received == 0
        assert a.buffered(1) == []

    def test_buffer_keeps_latest_keyframes(self, world):
        """Test that each sender's re-matching buffer is bounded."""
        bus = InMemoryBus()
        a = make_exchange(world, 0, bus, max_buffered_keyframes=2)
        b = make_exchange(world, 1, bus, offset=B_OFFSET)
        a.set_handlers(lambda d: False, lambda: None)

        for kf_id in (1, 2, 3):
            b.publish(kf_id)

        assert a.num_received == 3
        assert [d.frame_index for d in a.buffered(1)] == [2, 3]

    def test_descriptor_snapshot(self, world):
        """Test the point slots of a built descriptor."""
        exchange = make_exchange(world, 1, InMemoryBus(), offset=B_OFFSET)
        keyframe = exchange.map.keyframes[1]
        descriptor = exchange.build_descriptor(1)

        assert descriptor.num_points == keyframe.num_features
        point = exchange.map.points[keyframe.point_at(3)]
        np.testing.assert_allclose(descriptor.world_points[3], point.position)
        assert descriptor.max_distances[3] == pytest.approx(point.max_distance)

    def test_min_score_without_neighbours(self, world):
        """Test that an isolated keyframe imposes no loosening of the score."""
        exchange = make_exchange(world, 1, InMemoryBus())
        exchange.map.covisibility.remove_keyframe(2)

        assert exchange.min_score(2) == 1.0

    def test_publish_measurement(self, world):
        """Test the measurement emitted for an accepted loop."""

        class Loop:
            matched_keyframe_id = 3
            query_identity = (1, 7)
            scm = Sim3.identity()

        bus = InMemoryBus()
        received = []
        bus.subscribe("/measurement", received.append)
        a = make_exchange(world, 0, bus)

        message = a.publish_measurement(Loop())

        assert (message.robot_a, message.frame_a) == (1, 7)
        assert (message.robot_b, message.frame_b) == (0, 3)
        assert decode_measurement(received[0]) == message

    def test_match_previous_keyframes(self, world):
        """Test batch re-matching: groups reset per sender, stop at first loop."""
        bus = InMemoryBus()
        a = make_exchange(world, 0, bus)
        b = make_exchange(world, 1, bus, offset=B_OFFSET)
        a.set_handlers(lambda d: False, lambda: None)
        for kf_id in (1, 2, 3):
            b.publish(kf_id)

        calls = []

        def match(descriptor):
            calls.append(descriptor.frame_index)
            return descriptor.frame_index == 2

        resets = []
        a.set_handlers(match, lambda: resets.append(True))

        assert a.match_previous_keyframes() == 1
        assert calls == [1, 2]
        assert resets == [True]
        assert a.buffered(1) == []
