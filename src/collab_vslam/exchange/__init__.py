"""Keyframe and measurement exchange between robots."""

from .bus import InMemoryBus, MessageBus
from .messages import (
    KeyframeDescriptor,
    MeasurementMessage,
    decode_keyframe,
    decode_measurement,
    encode_keyframe,
    encode_measurement,
)
from .protocol import KeyframeExchange

__all__ = [
    "InMemoryBus",
    "MessageBus",
    "KeyframeDescriptor",
    "MeasurementMessage",
    "KeyframeExchange",
    "encode_keyframe",
    "decode_keyframe",
    "encode_measurement",
    "decode_measurement",
]
