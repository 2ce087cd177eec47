"""Tests for the loop correction transaction."""

import threading
import time

import numpy as np
import pytest

from conftest import B_OFFSET, build_map, remote_descriptors
from collab_vslam.config import LoopClosingConfig
from collab_vslam.errors import InvariantViolation
from collab_vslam.geometry import Sim3
from collab_vslam.loop_closing import (
    AcceptedLoop,
    FuseCandidates,
    LoopCorrector,
    MappingGate,
    MappingState,
    correct_map_points,
)

SHIFT = np.array([0.0, 0.5, 0.0])
TIMEOUT = 30.0


def shifted(siw: Sim3) -> Sim3:
    """The same camera after moving the whole world by SHIFT."""
    return siw @ Sim3(rotation=np.eye(3), translation=-SHIFT)


class FakeMatcher:
    def __init__(self):
        self.fused = []

    def fuse(self, kf_id, scw, point_ids, radius):
        self.fused.append(kf_id)
        return FuseCandidates()


class FakeOptimizer:
    def __init__(self):
        self.region_calls = []

    def optimize_region(self, map, matched_kf_id, query_kf_id, uncorrected, corrected,
                        loop_connections, fix_scale):
        self.region_calls.append((matched_kf_id, query_kf_id, dict(loop_connections)))
        return dict(corrected)


class FakeAdjustment:
    def __init__(self):
        self.calls = []

    def invalidate(self):
        self.calls.append("invalidate")

    def start(self, kf_id):
        self.calls.append(("start", kf_id))


def make_corrector(map, gate=None):
    matcher = FakeMatcher()
    optimizer = FakeOptimizer()
    adjustment = FakeAdjustment()
    mapping = MappingGate() if gate is None else gate
    corrector = LoopCorrector(
        LoopClosingConfig(), map, matcher, optimizer, mapping, adjustment
    )
    return corrector, matcher, optimizer, adjustment


class TestCorrectMapPoints:
    """Test suite for moving points with their keyframes."""

    def test_points_follow_the_correction(self, world):
        """Test that a point moves with the first keyframe observing it."""
        map = build_map(world, robot_id=0)
        uncorrected = {kf_id: Sim3.from_se3(map.keyframes[kf_id].pose_cw) for kf_id in (0, 1)}
        corrected = {kf_id: shifted(siw) for kf_id, siw in uncorrected.items()}
        before = {pid: p.position.copy() for pid, p in map.points.items()}

        owners = correct_map_points(map, [0, 1], corrected, uncorrected, set())

        # Keyframe 0 sees landmarks [0, 240), keyframe 1 adds [240, 280)
        assert len(owners) == 280
        assert owners[map.keyframes[1].point_at(0)] == 0
        for point_id in owners:
            np.testing.assert_allclose(map.points[point_id].position, before[point_id] + SHIFT)

    def test_shared_visited_set_is_idempotent(self, world):
        """Test that a second pass over the same keyframes moves nothing."""
        map = build_map(world, robot_id=0)
        uncorrected = {0: Sim3.from_se3(map.keyframes[0].pose_cw)}
        corrected = {0: shifted(uncorrected[0])}
        visited = set()

        correct_map_points(map, [0], corrected, uncorrected, visited)
        after_first = {pid: p.position.copy() for pid, p in map.points.items()}
        owners = correct_map_points(map, [0], corrected, uncorrected, visited)

        assert owners == {}
        for point_id, position in after_first.items():
            np.testing.assert_array_equal(map.points[point_id].position, position)


class TestLoopCorrector:
    """Test suite for the correction transaction."""

    def test_missing_loop_raises(self, world):
        """Test that correction needs an accepted loop."""
        corrector, *_ = make_corrector(build_map(world, robot_id=0))

        with pytest.raises(InvariantViolation, match="without an accepted loop"):
            corrector.correct_loop(None)

    def test_unknown_query_keyframe_raises(self, world):
        """Test that the query keyframe must be in the map."""
        corrector, *_ = make_corrector(build_map(world, robot_id=0))
        loop = AcceptedLoop(
            query_keyframe_id=77,
            query_identity=(1, 3),
            matched_keyframe_id=0,
            scm=Sim3.identity(),
            scw=Sim3.identity(),
        )

        with pytest.raises(InvariantViolation, match="not in the map"):
            corrector.correct_loop(loop)

    def test_region_moves_with_the_query(self, world):
        """Test that the covisible region of the query follows its corrected pose."""
        map = build_map(world, robot_id=0)
        corrector, matcher, optimizer, adjustment = make_corrector(map)
        centers = {kf_id: kf.camera_center.copy() for kf_id, kf in map.keyframes.items()}
        positions = {pid: p.position.copy() for pid, p in map.points.items()}
        loop = AcceptedLoop(
            query_keyframe_id=4,
            query_identity=(0, 4),
            matched_keyframe_id=0,
            scm=Sim3.identity(),
            scw=shifted(Sim3.from_se3(map.keyframes[4].pose_cw)),
        )

        corrector.correct_loop(loop)

        # Every keyframe is covisible with keyframe 4
        for kf_id, keyframe in map.keyframes.items():
            np.testing.assert_allclose(keyframe.camera_center, centers[kf_id] + SHIFT, atol=1e-9)
        for point_id, point in map.points.items():
            np.testing.assert_allclose(point.position, positions[point_id] + SHIFT, atol=1e-9)

        assert sorted(matcher.fused) == [0, 1, 2, 3, 4]
        assert optimizer.region_calls[0][:2] == (0, 4)
        assert 0 in map.keyframes[4].loop_edges
        assert 4 in map.keyframes[0].loop_edges
        assert adjustment.calls == ["invalidate", ("start", 4)]
        assert corrector.mapping.is_idle()

    def test_waits_for_mapper_to_pause(self, world):
        """Test that nothing is written while the mapper is inside a unit of work."""
        map = build_map(world, robot_id=0)
        gate = MappingGate()
        corrector, _, _, adjustment = make_corrector(map, gate)
        centers = {kf_id: kf.camera_center.copy() for kf_id, kf in map.keyframes.items()}
        loop = AcceptedLoop(
            query_keyframe_id=4,
            query_identity=(0, 4),
            matched_keyframe_id=0,
            scm=Sim3.identity(),
            scw=shifted(Sim3.from_se3(map.keyframes[4].pose_cw)),
        )

        gate.begin_work()
        thread = threading.Thread(target=corrector.correct_loop, args=(loop,))
        thread.start()
        deadline = time.monotonic() + TIMEOUT
        while gate.state != MappingState.PAUSE_REQUESTED and time.monotonic() < deadline:
            time.sleep(0.001)
        time.sleep(0.05)

        assert gate.state == MappingState.PAUSE_REQUESTED
        assert thread.is_alive()
        for kf_id, keyframe in map.keyframes.items():
            np.testing.assert_array_equal(keyframe.camera_center, centers[kf_id])
        assert adjustment.calls == ["invalidate"]

        gate.end_work()
        thread.join(TIMEOUT)

        assert not thread.is_alive()
        np.testing.assert_allclose(map.keyframes[4].camera_center, centers[4] + SHIFT, atol=1e-9)
        assert adjustment.calls == ["invalidate", ("start", 4)]
        assert gate.is_idle()

    def test_matched_points_fused_into_query(self, world):
        """Test that the query's matched features take over the loop points."""
        map = build_map(world, robot_id=0)
        corrector, *_ = make_corrector(map)
        query = map.keyframes[4]
        old_id = query.point_at(0)
        target = map.create_point(np.zeros(3), np.zeros(32, dtype=np.uint8), 0)
        loop = AcceptedLoop(
            query_keyframe_id=4,
            query_identity=(0, 4),
            matched_keyframe_id=0,
            scm=Sim3.identity(),
            scw=Sim3.from_se3(query.pose_cw),
            matched_points={0: target.id},
        )

        corrector.correct_loop(loop)

        assert map.points[old_id].is_bad
        assert map.resolve_point(old_id) == target.id
        assert query.point_at(0) == target.id

    def test_alignment_recorded_for_remote_query(self, world):
        """Test that a corrected remote keyframe fixes its robot's alignment."""
        map = build_map(world, robot_id=0)
        corrector, *_ = make_corrector(map)
        descriptors = remote_descriptors(world)
        for descriptor in descriptors[1:4]:
            query = map.import_descriptor(descriptor)
        loop = AcceptedLoop(
            query_keyframe_id=query.id,
            query_identity=query.identity,
            matched_keyframe_id=3,
            scm=Sim3.identity(),
            scw=Sim3.from_se3(map.keyframes[3].pose_cw),
        )

        corrector.correct_loop(loop)

        alignment = map.alignment(1)
        np.testing.assert_allclose(alignment.translation, -B_OFFSET, atol=1e-9)
        np.testing.assert_allclose(alignment.rotation, np.eye(3), atol=1e-9)
