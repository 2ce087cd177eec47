#!/usr/bin/env python3
"""Demo of inter-robot loop closing between two simulated robots.

Two robots drive past the same landmarks. Robot B starts with its world
frame shifted by one metre, so the two maps disagree until a loop is
closed. Each robot runs:
- A mapper thread that inserts keyframes (under the pause/resume gate)
- A loop closer that publishes keyframes on the shared bus and, for
  robot A, matches the keyframes it receives from robot B

When the loop is accepted, robot A imports B's keyframes into its own map,
corrects them, and runs a global adjustment in the background.

Usage:
    python examples/two_robot_demo.py
"""

import threading
import time

import numpy as np

from collab_vslam import (
    SE3,
    CameraModel,
    InMemoryBus,
    InterRobotLoopClosing,
    KeyframeDatabase,
    LoopClosingConfig,
    Map,
    MappingGate,
    VisualVocabulary,
)
from collab_vslam.map import KEYPOINT_COLUMNS, KP_CLASS_ID, KP_RESPONSE, KP_SIZE


def make_landmarks(n_landmarks: int, rng: np.random.Generator) -> tuple[np.ndarray, np.ndarray]:
    points = np.column_stack(
        [
            rng.uniform(-3.0, 3.0, n_landmarks),
            rng.uniform(-2.0, 2.0, n_landmarks),
            rng.uniform(5.0, 9.0, n_landmarks),
        ]
    )
    descriptors = rng.integers(0, 256, size=(n_landmarks, 32), dtype=np.uint8)
    return points, descriptors


def run_mapper(
    closer: InterRobotLoopClosing,
    gate: MappingGate,
    landmarks: np.ndarray,
    descriptors: np.ndarray,
    camera: CameraModel,
    offset: np.ndarray,
    n_keyframes: int,
    window: int,
    stride: int,
) -> None:
    """Insert one keyframe per step, as a local mapping thread would."""
    map = closer.map
    point_of: dict[int, int] = {}

    for frame in range(n_keyframes):
        visible = np.arange(stride * frame, stride * frame + window)
        pose = SE3(rotation=np.eye(3), translation=np.array([-0.1 * frame, 0.0, 0.0]))
        pixels = np.array([camera.project(p) for p in pose.transform_points(landmarks[visible])])
        keypoints = np.zeros((len(visible), KEYPOINT_COLUMNS))
        keypoints[:, :2] = pixels
        keypoints[:, KP_SIZE] = 31.0
        keypoints[:, KP_RESPONSE] = 1.0
        keypoints[:, KP_CLASS_ID] = -1

        with gate.step():
            with map.update_lock:
                keyframe = map.create_keyframe(
                    robot_id=map.robot_id,
                    frame_index=frame,
                    pose_cw=SE3(rotation=pose.rotation, translation=pose.translation - offset),
                    camera=camera,
                    keypoints=keypoints,
                    descriptors=descriptors[visible],
                )
                new_points = []
                for feature, landmark in enumerate(int(i) for i in visible):
                    if landmark not in point_of:
                        point = map.create_point(
                            landmarks[landmark] + offset, descriptors[landmark], keyframe.id
                        )
                        point_of[landmark] = point.id
                        new_points.append(point.id)
                    map.add_observation(point_of[landmark], keyframe.id, feature)
                map.update_connections(keyframe.id)
                for point_id in new_points:
                    map.update_normal_and_depth(point_id)

        closer.insert_keyframe(keyframe.id)
        time.sleep(0.05)

    gate.finish()


def main() -> None:
    """Run the two-robot demo."""
    # Configuration
    n_keyframes = 8
    window = 240  # landmarks seen per keyframe
    stride = 40  # new landmarks per keyframe
    b_offset = np.array([1.0, 0.0, 0.0])
    timeout_s = 60.0

    rng = np.random.default_rng(7)
    landmarks, descriptors = make_landmarks(stride * (n_keyframes - 1) + window, rng)
    camera = CameraModel.from_intrinsics(400.0, 400.0, 320.0, 240.0, 640, 480)
    words = descriptors[rng.choice(len(descriptors), size=64, replace=False)]
    vocabulary = VisualVocabulary.from_words(words.astype(np.float32))

    bus = InMemoryBus(asynchronous=True)
    robots = []
    for robot_id, name, offset in [(0, "a", np.zeros(3)), (1, "b", b_offset)]:
        map = Map(robot_id=robot_id)
        gate = MappingGate()
        config = LoopClosingConfig(robot_id=robot_id, robot_name=name)
        closer = InterRobotLoopClosing(
            config, map, vocabulary, KeyframeDatabase(vocabulary, map), bus, gate
        )
        robots.append((closer, gate, offset))

    print("=" * 60)
    print("INTER-ROBOT LOOP CLOSING")
    print("=" * 60)
    print(f"  Keyframes per robot: {n_keyframes}")
    print(f"  Robot b offset:      {b_offset}")
    print()

    mappers = []
    for closer, gate, offset in robots:
        closer.start()
        thread = threading.Thread(
            target=run_mapper,
            args=(closer, gate, landmarks, descriptors, camera, offset, n_keyframes, window, stride),
            name=f"Mapper-{closer.config.robot_name}",
        )
        thread.start()
        mappers.append(thread)

    for thread in mappers:
        thread.join()

    closer_a = robots[0][0]
    deadline = time.monotonic() + timeout_s
    while closer_a.num_loops == 0 and time.monotonic() < deadline:
        time.sleep(0.1)
    bus.flush()
    closer_a.adjustment.join(timeout_s)

    for closer, _, _ in robots:
        closer.stop(timeout_s)
    bus.close()

    map_a = closer_a.map
    print()
    print("=" * 60)
    print(f"Loops closed by robot a: {closer_a.num_loops}")
    print(f"Global adjustment:       {closer_a.adjustment.last_outcome}")
    print(f"Map a:                   {map_a}")
    alignment = map_a.alignment(1)
    if alignment is not None:
        print(f"Robot b -> a alignment:  t = {np.round(alignment.translation, 4)}")
        errors = [
            np.linalg.norm(
                map_a.keyframe_by_identity(1, f).camera_center
                - map_a.keyframe_by_identity(0, f).camera_center
            )
            for f in range(n_keyframes)
            if map_a.keyframe_by_identity(1, f) is not None
        ]
        print(f"Max keyframe disagreement after correction: {max(errors):.2e} m")
    print("=" * 60)


if __name__ == "__main__":
    main()
