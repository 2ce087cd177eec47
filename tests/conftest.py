"""Shared fixtures: a synthetic world seen by two robots.

Landmarks are random points in front of a camera moving along x. Each
landmark has a random ORB-like descriptor, so features of the same
landmark match exactly and different landmarks are ~128 bits apart.
Robot B sees the same images as robot A but its world frame is shifted
by ``B_OFFSET``.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pytest

from collab_vslam.backend import VisualVocabulary
from collab_vslam.config import LoopClosingConfig
from collab_vslam.exchange import KeyframeDescriptor, KeyframeExchange
from collab_vslam.geometry import SE3, CameraModel
from collab_vslam.map import KEYPOINT_COLUMNS, KP_ANGLE, KP_CLASS_ID, KP_OCTAVE, KP_RESPONSE, KP_SIZE, Map
from collab_vslam.utils import set_verbose

N_KEYFRAMES = 5
WINDOW = 240  # landmarks seen per keyframe
STRIDE = 40  # new landmarks per keyframe
B_OFFSET = np.array([1.0, 0.0, 0.0])


def make_camera() -> CameraModel:
    return CameraModel.from_intrinsics(400.0, 400.0, 320.0, 240.0, 640, 480)


@dataclass
class SyntheticWorld:
    """Landmarks and camera poses in robot A's world frame."""

    points: np.ndarray  # (L, 3)
    descriptors: np.ndarray  # (L, 32) uint8
    poses: list[SE3]  # T_camera_world per keyframe
    visible: list[np.ndarray]  # landmark indices per keyframe
    camera: CameraModel

    def keypoints(self, frame: int) -> np.ndarray:
        """Exact projections of the visible landmarks."""
        visible = self.visible[frame]
        p_cam = self.poses[frame].transform_points(self.points[visible])
        pixels = np.array([self.camera.project(p) for p in p_cam])
        keypoints = np.zeros((len(visible), KEYPOINT_COLUMNS))
        keypoints[:, :2] = pixels
        keypoints[:, KP_SIZE] = 31.0
        keypoints[:, KP_ANGLE] = 0.0
        keypoints[:, KP_RESPONSE] = 1.0
        keypoints[:, KP_OCTAVE] = 0
        keypoints[:, KP_CLASS_ID] = -1
        return keypoints


def make_world(n_keyframes: int = N_KEYFRAMES, seed: int = 7) -> SyntheticWorld:
    rng = np.random.default_rng(seed)
    n_landmarks = STRIDE * (n_keyframes - 1) + WINDOW
    points = np.column_stack(
        [
            rng.uniform(-3.0, 3.0, n_landmarks),
            rng.uniform(-2.0, 2.0, n_landmarks),
            rng.uniform(5.0, 9.0, n_landmarks),
        ]
    )
    descriptors = rng.integers(0, 256, size=(n_landmarks, 32), dtype=np.uint8)
    poses = [
        SE3(rotation=np.eye(3), translation=np.array([-0.1 * i, 0.0, 0.0]))
        for i in range(n_keyframes)
    ]
    visible = [np.arange(STRIDE * i, STRIDE * i + WINDOW) for i in range(n_keyframes)]
    return SyntheticWorld(points, descriptors, poses, visible, make_camera())


def make_vocabulary(world: SyntheticWorld, n_words: int = 64, seed: int = 3) -> VisualVocabulary:
    rng = np.random.default_rng(seed)
    chosen = rng.choice(len(world.descriptors), size=n_words, replace=False)
    return VisualVocabulary.from_words(world.descriptors[chosen].astype(np.float32))


def build_map(
    world: SyntheticWorld,
    robot_id: int,
    offset: np.ndarray | None = None,
    map: Map | None = None,
) -> Map:
    """Build a robot's map keyframe by keyframe, as its mapper would.

    Args:
        world: Synthetic world
        robot_id: Owner of the keyframes
        offset: Origin shift of this robot's world frame (X_robot = X + offset)
        map: Map to add to (new map owned by ``robot_id`` if None)

    Returns:
        The map, with normals and distance bounds computed
    """
    offset = np.zeros(3) if offset is None else np.asarray(offset, dtype=np.float64)
    if map is None:
        map = Map(robot_id=robot_id)

    point_of: dict[int, int] = {}
    for frame, (pose, visible) in enumerate(zip(world.poses, world.visible)):
        pose_cw = SE3(
            rotation=pose.rotation, translation=pose.translation - pose.rotation @ offset
        )
        keyframe = map.create_keyframe(
            robot_id=robot_id,
            frame_index=frame,
            pose_cw=pose_cw,
            camera=world.camera,
            keypoints=world.keypoints(frame),
            descriptors=world.descriptors[visible],
        )
        for feature, landmark in enumerate(visible):
            landmark = int(landmark)
            if landmark not in point_of:
                point = map.create_point(
                    world.points[landmark] + offset, world.descriptors[landmark], keyframe.id
                )
                point_of[landmark] = point.id
            map.add_observation(point_of[landmark], keyframe.id, feature)
        map.update_connections(keyframe.id)

    for point_id in list(map.points):
        map.update_normal_and_depth(point_id)
    return map


class ConstantPlaceIndex:
    def __init__(self, value: float = 0.4):
        self.value = value

    def score(self, a, b):
        return self.value


class NullBus:
    def publish(self, topic, payload):
        pass

    def subscribe(self, topic, callback):
        pass


def remote_descriptors(
    world: SyntheticWorld,
    robot_id: int = 1,
    offset: np.ndarray = B_OFFSET,
    vocabulary: VisualVocabulary | None = None,
) -> list[KeyframeDescriptor]:
    """Descriptors of every keyframe of a peer's map, as it would publish them."""
    remote = build_map(world, robot_id=robot_id, offset=offset)
    if vocabulary is not None:
        for keyframe in remote.keyframes.values():
            keyframe.appearance, keyframe.feature_vector = vocabulary.transform(keyframe.descriptors)
    config = LoopClosingConfig(robot_id=robot_id, robot_name=f"robot{robot_id}")
    exchange = KeyframeExchange(config, remote, ConstantPlaceIndex(), NullBus())
    return [exchange.build_descriptor(kf_id) for kf_id in sorted(remote.keyframes)]


@pytest.fixture(autouse=True)
def quiet_logs():
    """Keep debug-level messages out of the test output."""
    set_verbose(False)
    yield
    set_verbose(True)


@pytest.fixture
def world() -> SyntheticWorld:
    return make_world()


@pytest.fixture
def vocabulary(world: SyntheticWorld) -> VisualVocabulary:
    return make_vocabulary(world)


@pytest.fixture
def camera() -> CameraModel:
    return make_camera()
