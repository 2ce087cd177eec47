"""Publish/subscribe transport between robots.

``MessageBus`` is the interface the exchange protocol needs. ``InMemoryBus``
is a thread-safe reference implementation for tests and single-process
demos; subscriptions may use shell-style wildcards (``/*/keyframe``) so a
robot can listen to every peer's robot-scoped topic.
"""

from __future__ import annotations

import fnmatch
import queue
import threading
from collections.abc import Callable
from typing import Any, Protocol

from ..errors import InvariantViolation
from ..utils.logging_utils import Log

Callback = Callable[[Any], None]


class MessageBus(Protocol):
    """Minimal publish/subscribe interface."""

    def publish(self, topic: str, payload: Any) -> None: ...

    def subscribe(self, topic: str, callback: Callback) -> None: ...


class InMemoryBus:
    """Thread-safe in-process bus.

    In synchronous mode ``publish`` calls every matching subscriber on the
    publishing thread. In asynchronous mode messages are queued and
    delivered in order by a single daemon thread, as a network transport
    would.
    """

    def __init__(self, asynchronous: bool = False) -> None:
        """Initialize the bus.

        Args:
            asynchronous: Deliver on a background thread instead of inline
        """
        self._lock = threading.Lock()
        self._subscribers: list[tuple[str, Callback]] = []
        self._asynchronous = asynchronous
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._published = 0

        if asynchronous:
            self._thread = threading.Thread(
                target=self._deliver_loop, name="InMemoryBus", daemon=True
            )
            self._thread.start()

    def subscribe(self, topic: str, callback: Callback) -> None:
        with self._lock:
            self._subscribers.append((topic, callback))

    def publish(self, topic: str, payload: Any) -> None:
        with self._lock:
            self._published += 1
        if self._asynchronous:
            self._queue.put((topic, payload))
        else:
            self._deliver(topic, payload)

    def _matching(self, topic: str) -> list[Callback]:
        with self._lock:
            return [
                callback
                for pattern, callback in self._subscribers
                if pattern == topic or fnmatch.fnmatchcase(topic, pattern)
            ]

    def _deliver(self, topic: str, payload: Any) -> None:
        for callback in self._matching(topic):
            callback(payload)

    def _deliver_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                self._queue.task_done()
                break
            topic, payload = item
            try:
                self._deliver(topic, payload)
            except InvariantViolation:
                raise
            except Exception as e:
                # A failing subscriber must not stop delivery to the others
                Log(f"Subscriber on {topic} raised {type(e).__name__}: {e}", tag="Exchange")
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued message has been delivered."""
        if self._asynchronous:
            self._queue.join()

    def close(self) -> None:
        if self._thread is not None:
            self._queue.put(None)
            self._thread.join()
            self._thread = None

    @property
    def num_published(self) -> int:
        return self._published
