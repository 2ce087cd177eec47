"""Pause/resume handshake between the loop closer and a mapping thread.

The mapper wraps each unit of work in ``with gate.step():`` (or calls
``checkpoint()`` between units). Loop correction and global adjustment
call ``request_pause()`` and poll ``is_paused()``; pauses nest, so the
mapper only resumes once every requester has called ``resume()``.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Iterator


class MappingState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSE_REQUESTED = "pause_requested"
    PAUSED = "paused"
    FINISHED = "finished"


class MappingGate:
    """Reference implementation of the ``MappingPipeline`` protocol."""

    def __init__(self, poll_s: float = 0.001) -> None:
        self._lock = threading.Lock()
        self._state = MappingState.IDLE
        self._pause_requests = 0
        self._poll_s = poll_s

    @property
    def state(self) -> MappingState:
        with self._lock:
            return self._state

    def request_pause(self) -> None:
        with self._lock:
            self._pause_requests += 1
            if self._state == MappingState.IDLE:
                self._state = MappingState.PAUSED
            elif self._state == MappingState.RUNNING:
                self._state = MappingState.PAUSE_REQUESTED

    def is_paused(self) -> bool:
        with self._lock:
            return self._state in (MappingState.PAUSED, MappingState.FINISHED)

    def resume(self) -> None:
        with self._lock:
            if self._pause_requests > 0:
                self._pause_requests -= 1
            if self._pause_requests == 0 and self._state in (
                MappingState.PAUSED,
                MappingState.PAUSE_REQUESTED,
            ):
                self._state = MappingState.IDLE

    def is_idle(self) -> bool:
        with self._lock:
            return self._state == MappingState.IDLE

    def begin_work(self) -> None:
        """Block while paused, then mark the mapper as running."""
        while True:
            with self._lock:
                if self._state == MappingState.IDLE:
                    self._state = MappingState.RUNNING
                    return
                if self._state == MappingState.FINISHED:
                    return
            time.sleep(self._poll_s)

    def end_work(self) -> None:
        with self._lock:
            if self._state == MappingState.PAUSE_REQUESTED:
                self._state = MappingState.PAUSED
            elif self._state == MappingState.RUNNING:
                self._state = MappingState.IDLE

    @contextmanager
    def step(self) -> Iterator[None]:
        self.begin_work()
        try:
            yield
        finally:
            self.end_work()

    def checkpoint(self) -> None:
        """Honour a pending pause from inside a long unit of work."""
        with self._lock:
            if self._state != MappingState.PAUSE_REQUESTED:
                return
            self._state = MappingState.PAUSED
        self.begin_work()

    def finish(self) -> None:
        with self._lock:
            self._state = MappingState.FINISHED
