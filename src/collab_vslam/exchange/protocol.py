"""Keyframe exchange between robots.

Each robot publishes its keyframes on a robot-scoped topic and listens
to every peer. A received keyframe is only processed when the sender's
robot id is greater than ours, so exactly one robot of any pair drives
matching and correction for that pair.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING

import numpy as np

from ..config import LoopClosingConfig
from ..errors import MessageDecodeError
from ..map import DESCRIPTOR_BYTES, Map
from ..utils.logging_utils import Log
from .bus import MessageBus
from .messages import (
    KeyframeDescriptor,
    MeasurementMessage,
    decode_keyframe,
    encode_keyframe,
    encode_measurement,
)

if TYPE_CHECKING:
    from ..loop_closing.collaborators import PlaceIndex
    from ..loop_closing.transform_recovery import AcceptedLoop


class KeyframeExchange:
    """Builds, publishes and receives keyframe descriptors.

    The exchange knows nothing about loop detection; the coordinator
    plugs in a ``match`` handler (called for every accepted keyframe) and
    a ``reset_groups`` handler (called before batch re-matching a sender).
    """

    def __init__(
        self,
        config: LoopClosingConfig,
        map: Map,
        place_index: PlaceIndex,
        bus: MessageBus,
    ) -> None:
        """Initialize the exchange.

        Args:
            config: Loop closing configuration (robot id, topics)
            map: Local map arena
            place_index: Used for the appearance score of neighbours
            bus: Transport
        """
        self.config = config
        self.map = map
        self.place_index = place_index
        self.bus = bus

        self._match: Callable[[KeyframeDescriptor], bool] | None = None
        self._reset_groups: Callable[[], None] | None = None

        self._buffer_lock = threading.Lock()
        self._buffers: dict[int, deque[KeyframeDescriptor]] = {}

        self.num_published = 0
        self.num_received = 0
        self.num_dropped = 0

    def set_handlers(
        self,
        match: Callable[[KeyframeDescriptor], bool],
        reset_groups: Callable[[], None],
    ) -> None:
        self._match = match
        self._reset_groups = reset_groups

    def subscribe(self) -> None:
        """Start listening to every robot's keyframe topic."""
        self.bus.subscribe(self.config.keyframe_subscribe_pattern, self.on_receive)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def min_score(self, kf_id: int) -> float:
        """Lowest appearance score against the keyframe's covisible neighbours.

        A peer's loop candidates must score at least this much: it is what
        a known true match (a neighbour) already reaches.
        """
        keyframe = self.map.keyframes[kf_id]
        min_score = 1.0
        for other_id in self.map.covisibility.covisible(kf_id):
            other = self.map.keyframes[other_id]
            if other.is_bad:
                continue
            score = self.place_index.score(keyframe.appearance, other.appearance)
            if score < min_score:
                min_score = score
        return min_score

    def build_descriptor(self, kf_id: int) -> KeyframeDescriptor:
        """Snapshot a local keyframe into an immutable descriptor."""
        with self.map.update_lock:
            keyframe = self.map.keyframes[kf_id]
            n = keyframe.num_features

            point_ids = np.full(n, -1, dtype=np.int64)
            world_points = np.zeros((n, 3))
            point_descriptors = np.zeros((n, DESCRIPTOR_BYTES), dtype=np.uint8)
            min_distances = np.zeros(n)
            max_distances = np.zeros(n)
            for feature in range(n):
                point = self.map.good_point(int(keyframe.point_ids[feature]))
                if point is None:
                    continue
                point_ids[feature] = point.id
                world_points[feature] = point.position
                point_descriptors[feature] = point.descriptor
                min_distances[feature] = point.min_distance
                max_distances[feature] = point.max_distance

            return KeyframeDescriptor(
                robot_id=keyframe.robot_id,
                frame_index=keyframe.frame_index,
                min_score=self.min_score(kf_id),
                appearance=dict(keyframe.appearance),
                feature_vector={k: tuple(v) for k, v in keyframe.feature_vector.items()},
                keypoints=keyframe.keypoints,
                descriptors=keyframe.descriptors,
                point_ids=point_ids,
                world_points=world_points,
                point_descriptors=point_descriptors,
                min_distances=min_distances,
                max_distances=max_distances,
                camera=keyframe.camera,
                pose_cw=keyframe.pose_cw,
            )

    def publish(self, kf_id: int) -> KeyframeDescriptor:
        """Build, encode and emit a keyframe on our robot-scoped topic."""
        descriptor = self.build_descriptor(kf_id)
        self.bus.publish(self.config.keyframe_publish_topic, encode_keyframe(descriptor))
        self.num_published += 1
        Log(
            f"Published keyframe {descriptor.frame_index}",
            f"({descriptor.num_points} points, min score {descriptor.min_score:.3f})",
            tag="Exchange",
            debug=True,
        )
        return descriptor

    def publish_measurement(self, loop: AcceptedLoop) -> MeasurementMessage:
        """Emit the relative transform of an accepted loop on the global topic."""
        matched = self.map.keyframes[loop.matched_keyframe_id]
        message = MeasurementMessage.from_sim3(loop.query_identity, matched.identity, loop.scm)
        self.bus.publish(self.config.measurement_publish_topic, encode_measurement(message))
        Log(
            f"Measurement robot {message.robot_a} frame {message.frame_a} ->",
            f"robot {message.robot_b} frame {message.frame_b}",
            tag="Exchange",
        )
        return message

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def accepts(self, sender_robot_id: int) -> bool:
        """Precedence rule: only robots with a greater id are matched here."""
        return sender_robot_id > self.config.robot_id

    def on_receive(self, payload) -> bool:
        """Handle one keyframe message from the bus.

        Returns:
            True if the keyframe closed a loop
        """
        try:
            descriptor = decode_keyframe(payload)
        except MessageDecodeError as e:
            self.num_dropped += 1
            Log(f"Dropped malformed keyframe message: {e}", tag="Exchange")
            return False

        if not self.accepts(descriptor.robot_id):
            return False

        self.num_received += 1
        with self._buffer_lock:
            buffer = self._buffers.get(descriptor.robot_id)
            if buffer is None:
                buffer = deque(maxlen=self.config.max_buffered_keyframes)
                self._buffers[descriptor.robot_id] = buffer
            buffer.append(descriptor)

        Log(
            f"Received keyframe {descriptor.frame_index} from robot {descriptor.robot_id}",
            tag="Exchange",
        )
        if self._match is None:
            return False
        return self._match(descriptor)

    def buffered(self, robot_id: int) -> list[KeyframeDescriptor]:
        with self._buffer_lock:
            return list(self._buffers.get(robot_id, []))

    def match_previous_keyframes(self) -> int:
        """Re-run matching over every buffered keyframe, sender by sender.

        Consistency groups are cleared before each sender; matching for a
        sender stops at its first loop. Buffers are emptied afterwards;
        between calls each sender keeps only its latest
        ``max_buffered_keyframes`` keyframes.

        Returns:
            Number of senders a loop was found with
        """
        with self._buffer_lock:
            buffers = self._buffers
            self._buffers = {}

        if self._match is None:
            return 0

        matched = 0
        for robot_id in sorted(buffers):
            Log(
                f"Re-matching {len(buffers[robot_id])} keyframes from robot {robot_id}",
                tag="Exchange",
            )
            if self._reset_groups is not None:
                self._reset_groups()
            for descriptor in buffers[robot_id]:
                if self._match(descriptor):
                    matched += 1
                    break
        return matched
