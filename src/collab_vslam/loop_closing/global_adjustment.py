"""Cancellable full-map optimization after a loop correction.

The optimization runs on a daemon thread over a snapshot of the map.
Every correction (and every new launch) bumps an epoch counter; a run
whose captured epoch is no longer current throws its result away, so a
stale adjustment can never overwrite a newer correction even if it
misses the stop signal.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from enum import Enum

from ..geometry import SE3
from ..map import Map
from ..utils.logging_utils import Log
from .collaborators import GlobalAdjustmentResult, LoopOptimizer, MappingPipeline


class AdjustmentOutcome(Enum):
    APPLIED = "applied"
    DISCARDED = "discarded"
    CANCELLED = "cancelled"


def apply_adjustment(map: Map, result: GlobalAdjustmentResult) -> tuple[int, int]:
    """Write an optimization result back into the map.

    Keyframes are visited breadth-first down the spanning tree from the
    roots. A child missing from the result (inserted while the optimizer
    ran) keeps its pose relative to its parent. Points missing from the
    result follow their reference keyframe, and are left alone if that
    keyframe was never visited.

    Must be called with ``map.update_lock`` held.

    Args:
        map: Map arena
        result: Optimized poses and point positions

    Returns:
        (keyframes updated, points updated)
    """
    targets: dict[int, SE3] = dict(result.poses)
    before: dict[int, SE3] = {}

    queue = deque(kf_id for kf_id in map.origins if kf_id in targets)
    while queue:
        kf_id = queue.popleft()
        if kf_id in before:
            continue
        keyframe = map.keyframes[kf_id]
        twc = keyframe.pose_cw.inverse()
        for child_id in sorted(keyframe.children):
            if child_id in before:
                continue
            if child_id not in targets:
                child = map.keyframes[child_id]
                targets[child_id] = (child.pose_cw @ twc) @ targets[kf_id]
            queue.append(child_id)

        before[kf_id] = keyframe.pose_cw
        map.set_pose(kf_id, targets[kf_id])

    n_points = 0
    for point_id, point in list(map.points.items()):
        if point.is_bad:
            continue
        if point_id in result.points:
            point.position = result.points[point_id].copy()
        else:
            ref_id = point.reference_keyframe
            if ref_id not in before:
                continue
            point_camera = before[ref_id].transform_points(point.position)
            point.position = map.keyframes[ref_id].pose_cw.inverse().transform_points(point_camera)
        n_points += 1

    return len(before), n_points


class GlobalAdjustmentTask:
    """Handle on the background adjustment, kept by the coordinator."""

    def __init__(
        self,
        map: Map,
        optimizer: LoopOptimizer,
        mapping: MappingPipeline,
        iterations: int = 10,
        poll_s: float = 0.001,
    ) -> None:
        self.map = map
        self.optimizer = optimizer
        self.mapping = mapping
        self.iterations = iterations
        self.poll_s = poll_s

        self._lock = threading.Lock()
        self._epoch = 0
        self._latest_run = 0
        self._stop_event = threading.Event()
        self._running = False
        self._finished = True
        self._threads: list[threading.Thread] = []
        self.outcomes: dict[int, AdjustmentOutcome] = {}

    @property
    def epoch(self) -> int:
        with self._lock:
            return self._epoch

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def is_finished(self) -> bool:
        with self._lock:
            return self._finished

    @property
    def last_outcome(self) -> AdjustmentOutcome | None:
        with self._lock:
            if not self.outcomes:
                return None
            return self.outcomes[max(self.outcomes)]

    def invalidate(self) -> None:
        """Make any in-flight result stale and ask it to stop."""
        with self._lock:
            self._epoch += 1
            if self._running:
                self._stop_event.set()
                Log("Aborting running global adjustment", tag="GlobalBA")

    def stop(self) -> None:
        with self._lock:
            self._stop_event.set()

    def start(self, loop_kf_id: int) -> int:
        """Launch a new run, superseding any previous one.

        Returns:
            The epoch captured by the new run
        """
        with self._lock:
            self._stop_event.set()
            self._epoch += 1
            epoch = self._epoch
            self._latest_run = epoch
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._running = True
            self._finished = False

            thread = threading.Thread(
                target=self._run,
                args=(loop_kf_id, epoch, stop_event),
                name=f"GlobalAdjustment-{epoch}",
                daemon=True,
            )
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)

        Log(f"Starting global adjustment (loop keyframe {loop_kf_id}, epoch {epoch})", tag="GlobalBA")
        thread.start()
        return epoch

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every launched run.

        Returns:
            True if no run is still alive
        """
        with self._lock:
            threads = list(self._threads)
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(t.is_alive() for t in threads)

    def _is_stale(self, epoch: int, stop_event: threading.Event) -> bool:
        with self._lock:
            return epoch != self._epoch or stop_event.is_set()

    def _run(self, loop_kf_id: int, epoch: int, stop_event: threading.Event) -> None:
        outcome = AdjustmentOutcome.CANCELLED
        try:
            result = self.optimizer.optimize_global(self.map, self.iterations, stop_event, epoch)
            if result is None:
                Log(f"Global adjustment (epoch {epoch}) stopped", tag="GlobalBA")
            else:
                outcome = self._apply(result, epoch, stop_event)
        finally:
            with self._lock:
                self.outcomes[epoch] = outcome
                if epoch == self._latest_run:
                    self._running = False
                    self._finished = True

    def _apply(
        self, result: GlobalAdjustmentResult, epoch: int, stop_event: threading.Event
    ) -> AdjustmentOutcome:
        if self._is_stale(epoch, stop_event):
            Log(f"Discarding stale global adjustment (epoch {epoch})", tag="GlobalBA")
            return AdjustmentOutcome.DISCARDED

        self.mapping.request_pause()
        try:
            while not self.mapping.is_paused():
                time.sleep(self.poll_s)

            with self.map.update_lock:
                # A correction may have started while we waited
                if self._is_stale(epoch, stop_event):
                    Log(f"Discarding stale global adjustment (epoch {epoch})", tag="GlobalBA")
                    return AdjustmentOutcome.DISCARDED
                n_keyframes, n_points = apply_adjustment(self.map, result)
        finally:
            self.mapping.resume()

        Log(
            f"Global adjustment applied: {n_keyframes} keyframes, {n_points} points",
            tag="GlobalBA",
        )
        return AdjustmentOutcome.APPLIED
