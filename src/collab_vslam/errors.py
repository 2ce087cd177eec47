"""Exceptions raised by the inter-robot loop closing pipeline.

Transient misses (too few matches, RANSAC exhaustion, stale adjustments)
are not exceptions: they come back as ``None``/``False`` and the keyframe
is retried on the next detection round.
"""

from __future__ import annotations


class LoopClosingError(Exception):
    """Base class for loop closing errors."""


class MessageDecodeError(LoopClosingError, ValueError):
    """A received bus message is malformed or truncated.

    Raised by the message codecs; the exchange protocol logs and drops
    the message.
    """


class InvariantViolation(LoopClosingError, RuntimeError):
    """A programming error that would corrupt the map if ignored.

    Examples are re-acquiring the map-update lock from the thread that
    holds it, or running a correction without an accepted loop. Never
    caught inside the package.
    """
