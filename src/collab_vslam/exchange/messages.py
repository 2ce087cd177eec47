"""Message types exchanged between robots and their codecs.

Messages travel as plain dictionaries of numbers, lists and bytes (the
logical schema); the transport decides how to put them on the wire.
Decoding validates every length and raises ``MessageDecodeError`` on
anything malformed or truncated.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

import numpy as np

from ..errors import MessageDecodeError
from ..geometry import SE3, CameraModel, Sim3
from ..map.features import DESCRIPTOR_BYTES, KEYPOINT_COLUMNS, KP_OCTAVE, FeatureSet


@dataclass(frozen=True, eq=False)
class KeyframeDescriptor(FeatureSet):
    """Everything a peer needs to match against one of our keyframes.

    Immutable once built; arrays are made read-only. Per-feature point
    slots hold the sender's map point id (-1 for none) with the point's
    world position, descriptor and distance bounds.

    Attributes:
        robot_id: Sender robot id
        frame_index: Sender-local keyframe index
        min_score: Lowest appearance score between this keyframe and its
            covisible neighbours on the sender (1.0 if it has none)
        appearance: Sparse BoW vector, word id -> weight
        feature_vector: node id -> feature indices
        keypoints: (N, 7) keypoint array
        descriptors: (N, 32) uint8 feature descriptors
        point_ids: (N,) remote map point ids
        world_points: (N, 3) point positions in the sender's world frame
        point_descriptors: (N, 32) uint8 representative point descriptors
        min_distances: (N,) point min observation distance
        max_distances: (N,) point max observation distance
        camera: Calibration, image bounds and pyramid
        pose_cw: Sender's current estimate of T_camera_world
    """

    robot_id: int
    frame_index: int
    min_score: float
    appearance: dict[int, float]
    feature_vector: dict[int, tuple[int, ...]]
    keypoints: np.ndarray
    descriptors: np.ndarray
    point_ids: np.ndarray
    world_points: np.ndarray
    point_descriptors: np.ndarray
    min_distances: np.ndarray
    max_distances: np.ndarray
    camera: CameraModel
    pose_cw: SE3

    def __post_init__(self) -> None:
        n = len(self.keypoints)
        arrays = {
            "keypoints": (np.float64, (n, KEYPOINT_COLUMNS)),
            "descriptors": (np.uint8, (n, DESCRIPTOR_BYTES)),
            "point_ids": (np.int64, (n,)),
            "world_points": (np.float64, (n, 3)),
            "point_descriptors": (np.uint8, (n, DESCRIPTOR_BYTES)),
            "min_distances": (np.float64, (n,)),
            "max_distances": (np.float64, (n,)),
        }
        for name, (dtype, shape) in arrays.items():
            value = np.array(getattr(self, name), dtype=dtype)
            if value.shape != shape:
                raise ValueError(f"{name} must be {shape}, got {value.shape}")
            value.setflags(write=False)
            object.__setattr__(self, name, value)

    @property
    def identity(self) -> tuple[int, int]:
        return (self.robot_id, self.frame_index)

    @property
    def num_points(self) -> int:
        return int(np.count_nonzero(self.point_ids >= 0))


@dataclass(frozen=True)
class MeasurementMessage:
    """Relative transform between two robots' keyframes.

    ``robot_a/frame_a`` is the received (querying) keyframe and
    ``robot_b/frame_b`` the matched local keyframe; the transform maps the
    matched camera frame into the querying camera frame.
    """

    robot_a: int
    frame_a: int
    robot_b: int
    frame_b: int
    rotation: tuple[float, ...]  # 9 floats, row-major
    translation: tuple[float, ...]  # 3 floats
    scale: float = 1.0

    @classmethod
    def from_sim3(
        cls, query: tuple[int, int], matched: tuple[int, int], transform: Sim3
    ) -> MeasurementMessage:
        return cls(
            robot_a=query[0],
            frame_a=query[1],
            robot_b=matched[0],
            frame_b=matched[1],
            rotation=tuple(float(v) for v in transform.rotation.flatten()),
            translation=tuple(float(v) for v in transform.translation),
            scale=float(transform.scale),
        )

    def to_sim3(self) -> Sim3:
        return Sim3(
            rotation=np.array(self.rotation).reshape(3, 3),
            translation=np.array(self.translation),
            scale=self.scale,
        )


# ----------------------------------------------------------------------
# Keyframe codec
# ----------------------------------------------------------------------


def encode_keyframe(descriptor: KeyframeDescriptor) -> dict:
    """Serialize a keyframe descriptor to the logical message schema."""
    cam = descriptor.camera
    node_ids = list(descriptor.feature_vector.keys())
    return {
        "robot_id": int(descriptor.robot_id),
        "frame_index": int(descriptor.frame_index),
        "min_score": float(descriptor.min_score),
        "word_ids": [int(w) for w in descriptor.appearance.keys()],
        "word_weights": [float(v) for v in descriptor.appearance.values()],
        "node_ids": [int(n) for n in node_ids],
        "node_features": [[int(i) for i in descriptor.feature_vector[n]] for n in node_ids],
        "keypoints": descriptor.keypoints.flatten().tolist(),
        "descriptors": descriptor.descriptors.tobytes(),
        "point_ids": descriptor.point_ids.tolist(),
        "world_points": descriptor.world_points.flatten().tolist(),
        "point_descriptors": descriptor.point_descriptors.tobytes(),
        "min_distances": descriptor.min_distances.tolist(),
        "max_distances": descriptor.max_distances.tolist(),
        "scale_factors": cam.scale_factors.tolist(),
        "level_sigma2": cam.level_sigma2.tolist(),
        "inv_level_sigma2": cam.inv_level_sigma2.tolist(),
        "K": cam.K.flatten().tolist(),
        "fx": float(cam.fx),
        "fy": float(cam.fy),
        "cx": float(cam.cx),
        "cy": float(cam.cy),
        "min_x": float(cam.min_x),
        "min_y": float(cam.min_y),
        "max_x": float(cam.max_x),
        "max_y": float(cam.max_y),
        "grid_width_inv": float(cam.grid_cell_width_inv),
        "grid_height_inv": float(cam.grid_cell_height_inv),
        "pose": descriptor.pose_cw.to_matrix()[:3, :].flatten().tolist(),
    }


def decode_keyframe(payload: Mapping) -> KeyframeDescriptor:
    """Rebuild a keyframe descriptor from a received message.

    The feature grid is rebuilt from the keypoints and image bounds on
    first use, so it is not part of the message.

    Raises:
        MessageDecodeError: If a field is missing, has the wrong length
            or holds non-finite values, if a keypoint octave is outside
            the sender's pyramid, or if K disagrees with the intrinsics
    """
    if not isinstance(payload, Mapping):
        raise MessageDecodeError(
            f"keyframe message must be a mapping, got {type(payload).__name__}"
        )
    try:
        return _decode_keyframe(payload)
    except MessageDecodeError:
        raise
    except KeyError as e:
        raise MessageDecodeError(f"keyframe message missing field {e}") from e
    except (TypeError, ValueError) as e:
        raise MessageDecodeError(f"malformed keyframe message: {e}") from e


def _decode_keyframe(payload: Mapping) -> KeyframeDescriptor:
    keypoints = _floats(payload, "keypoints")
    if keypoints.size % KEYPOINT_COLUMNS != 0:
        raise MessageDecodeError(
            f"keypoints length {keypoints.size} is not a multiple of {KEYPOINT_COLUMNS}"
        )
    n = keypoints.size // KEYPOINT_COLUMNS

    word_ids = _ints(payload, "word_ids")
    word_weights = _floats(payload, "word_weights", len(word_ids))
    appearance = {int(w): float(v) for w, v in zip(word_ids, word_weights)}

    node_ids = _ints(payload, "node_ids")
    node_features = payload["node_features"]
    if len(node_features) != len(node_ids):
        raise MessageDecodeError(
            f"node_features has {len(node_features)} entries for {len(node_ids)} nodes"
        )
    feature_vector = {}
    for node, indices in zip(node_ids, node_features):
        indices = tuple(int(i) for i in indices)
        if any(i < 0 or i >= n for i in indices):
            raise MessageDecodeError(f"node {node} references a feature outside 0..{n - 1}")
        feature_vector[int(node)] = indices

    scale_factors = _floats(payload, "scale_factors")
    n_levels = len(scale_factors)
    camera = CameraModel(
        fx=float(payload["fx"]),
        fy=float(payload["fy"]),
        cx=float(payload["cx"]),
        cy=float(payload["cy"]),
        min_x=float(payload["min_x"]),
        min_y=float(payload["min_y"]),
        max_x=float(payload["max_x"]),
        max_y=float(payload["max_y"]),
        scale_factors=scale_factors,
        level_sigma2=_floats(payload, "level_sigma2", n_levels),
        inv_level_sigma2=_floats(payload, "inv_level_sigma2", n_levels),
    )
    K = _floats(payload, "K", 9).reshape(3, 3)
    if not np.allclose(K, camera.K):
        raise MessageDecodeError("K does not match fx, fy, cx, cy")

    # Octaves index the sender's pyramid tables
    octaves = keypoints.reshape(n, KEYPOINT_COLUMNS)[:, KP_OCTAVE]
    if np.any(octaves != np.round(octaves)) or np.any((octaves < 0) | (octaves >= n_levels)):
        raise MessageDecodeError(f"keypoint octave outside 0..{n_levels - 1}")

    pose = _floats(payload, "pose", 12).reshape(3, 4)

    return KeyframeDescriptor(
        robot_id=int(payload["robot_id"]),
        frame_index=int(payload["frame_index"]),
        min_score=float(payload["min_score"]),
        appearance=appearance,
        feature_vector=feature_vector,
        keypoints=keypoints.reshape(n, KEYPOINT_COLUMNS),
        descriptors=_bytes(payload, "descriptors", n * DESCRIPTOR_BYTES).reshape(
            n, DESCRIPTOR_BYTES
        ),
        point_ids=_ints(payload, "point_ids", n),
        world_points=_floats(payload, "world_points", 3 * n).reshape(n, 3),
        point_descriptors=_bytes(payload, "point_descriptors", n * DESCRIPTOR_BYTES).reshape(
            n, DESCRIPTOR_BYTES
        ),
        min_distances=_floats(payload, "min_distances", n),
        max_distances=_floats(payload, "max_distances", n),
        camera=camera,
        pose_cw=SE3.from_matrix(pose),
    )


# ----------------------------------------------------------------------
# Measurement codec
# ----------------------------------------------------------------------


def encode_measurement(message: MeasurementMessage) -> dict:
    return {
        "robot_a": int(message.robot_a),
        "frame_a": int(message.frame_a),
        "robot_b": int(message.robot_b),
        "frame_b": int(message.frame_b),
        "rotation": [float(v) for v in message.rotation],
        "translation": [float(v) for v in message.translation],
        "scale": float(message.scale),
    }


def decode_measurement(payload: Mapping) -> MeasurementMessage:
    """Rebuild a measurement message.

    Raises:
        MessageDecodeError: On missing fields or wrong lengths
    """
    if not isinstance(payload, Mapping):
        raise MessageDecodeError(
            f"measurement message must be a mapping, got {type(payload).__name__}"
        )
    try:
        scale = float(payload["scale"])
        if not np.isfinite(scale) or scale <= 0.0:
            raise MessageDecodeError(f"invalid measurement scale {scale}")
        return MeasurementMessage(
            robot_a=int(payload["robot_a"]),
            frame_a=int(payload["frame_a"]),
            robot_b=int(payload["robot_b"]),
            frame_b=int(payload["frame_b"]),
            rotation=tuple(_floats(payload, "rotation", 9).tolist()),
            translation=tuple(_floats(payload, "translation", 3).tolist()),
            scale=scale,
        )
    except MessageDecodeError:
        raise
    except KeyError as e:
        raise MessageDecodeError(f"measurement message missing field {e}") from e
    except (TypeError, ValueError) as e:
        raise MessageDecodeError(f"malformed measurement message: {e}") from e


# ----------------------------------------------------------------------


def _floats(payload: Mapping, key: str, expected: int | None = None) -> np.ndarray:
    values = np.asarray(payload[key], dtype=np.float64).flatten()
    if expected is not None and values.size != expected:
        raise MessageDecodeError(f"{key}: expected {expected} values, got {values.size}")
    if not np.all(np.isfinite(values)):
        raise MessageDecodeError(f"{key}: non-finite values")
    return values


def _ints(payload: Mapping, key: str, expected: int | None = None) -> np.ndarray:
    values = np.asarray(payload[key], dtype=np.int64).flatten()
    if expected is not None and values.size != expected:
        raise MessageDecodeError(f"{key}: expected {expected} values, got {values.size}")
    return values


def _bytes(payload: Mapping, key: str, expected: int) -> np.ndarray:
    raw = payload[key]
    if isinstance(raw, (bytes, bytearray, memoryview)):
        values = np.frombuffer(bytes(raw), dtype=np.uint8)
    else:
        values = np.asarray(raw, dtype=np.uint8).flatten()
    if values.size != expected:
        raise MessageDecodeError(f"{key}: expected {expected} bytes, got {values.size}")
    return values.copy()
