"""Inter-robot loop closing coordinator.

One coordinator runs per robot. It publishes the robot's keyframes from a
background loop, and for every keyframe received from a robot with a
greater id it runs detection, transform recovery and, on success, the
loop correction followed by a background global adjustment.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import TYPE_CHECKING

from ..config import LoopClosingConfig
from ..exchange import KeyframeDescriptor, KeyframeExchange, MessageBus
from ..map import Map
from ..utils.logging_utils import Log
from .collaborators import LoopOptimizer, MappingPipeline, Matcher, SolverFactory
from .correction import LoopCorrector
from .detector import LoopCandidateDetector
from .global_adjustment import GlobalAdjustmentTask
from .transform_recovery import TransformRecoveryEngine

if TYPE_CHECKING:
    from ..backend import KeyframeDatabase, VisualVocabulary


class InterRobotLoopClosing:
    """Wires detection, recovery, correction and adjustment for one robot.

    Example:
        >>> closer = InterRobotLoopClosing(config, map, vocabulary, database, bus, gate)
        >>> closer.start()
        >>> closer.insert_keyframe(kf.id)  # from the mapping thread
    """

    def __init__(
        self,
        config: LoopClosingConfig,
        map: Map,
        vocabulary: VisualVocabulary,
        database: KeyframeDatabase,
        bus: MessageBus,
        mapping: MappingPipeline,
        matcher: Matcher | None = None,
        optimizer: LoopOptimizer | None = None,
        solver_factory: SolverFactory | None = None,
    ) -> None:
        """Initialize the coordinator and subscribe to peers' keyframes.

        Args:
            config: Loop closing configuration
            map: Local map arena
            vocabulary: Bag-of-words vocabulary (``transform``, ``score``)
            database: Keyframe database of local keyframes (``PlaceIndex``)
            bus: Transport shared with the other robots
            mapping: Local mapping pause/resume contract
            matcher: Feature matcher (default: ``DescriptorMatcher``)
            optimizer: Optimizer (default: ``ScipyLoopOptimizer``)
            solver_factory: RANSAC solver factory (default: ``Sim3Solver``)
        """
        if matcher is None or optimizer is None or solver_factory is None:
            from ..backend import DescriptorMatcher, ScipyLoopOptimizer, Sim3Solver

            if matcher is None:
                matcher = DescriptorMatcher(map)
            if optimizer is None:
                optimizer = ScipyLoopOptimizer(map)
            if solver_factory is None:
                solver_factory = Sim3Solver.factory(map)

        self.config = config
        self.map = map
        self.vocabulary = vocabulary
        self.database = database
        self.bus = bus
        self.mapping = mapping
        self.matcher = matcher
        self.optimizer = optimizer

        self.exchange = KeyframeExchange(config, map, database, bus)
        self.detector = LoopCandidateDetector(map, database, config.consistency_threshold)
        self.recovery = TransformRecoveryEngine(config, map, matcher, optimizer, solver_factory)
        self.adjustment = GlobalAdjustmentTask(
            map, optimizer, mapping, config.global_iterations, config.pause_poll_s
        )
        self.corrector = LoopCorrector(config, map, matcher, optimizer, mapping, self.adjustment)

        self._queue_lock = threading.Lock()
        self._queue: deque[int] = deque()

        # Only one accepted loop exists at a time
        self._closing_lock = threading.Lock()

        self._reset_lock = threading.Lock()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self._thread: threading.Thread | None = None
        self.last_loop_keyframe_id: int | None = None
        self.num_loops = 0

        self.exchange.set_handlers(self.match, self.detector.clear)
        self.exchange.subscribe()

    # ------------------------------------------------------------------
    # Local keyframes
    # ------------------------------------------------------------------

    def insert_keyframe(self, kf_id: int) -> None:
        """Register a new local keyframe and queue it for publishing.

        Tree roots (the first keyframe of a map) are indexed but not
        published: they have no covisible neighbours to bound the score.
        """
        keyframe = self.map.keyframe(kf_id)
        if not keyframe.appearance:
            appearance, feature_vector = self.vocabulary.transform(keyframe.descriptors)
            keyframe.appearance = appearance
            keyframe.feature_vector = feature_vector
        self.database.add(kf_id)

        if keyframe.parent is None and kf_id in self.map.origins:
            return
        with self._queue_lock:
            self._queue.append(kf_id)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return len(self._queue) > 0

    def process_next_keyframe(self) -> bool:
        """Publish the oldest queued keyframe.

        Returns:
            False if the queue was empty
        """
        with self._queue_lock:
            if not self._queue:
                return False
            kf_id = self._queue.popleft()

        keyframe = self.map.keyframes.get(kf_id)
        if keyframe is not None and not keyframe.is_bad:
            self.exchange.publish(kf_id)
        return True

    # ------------------------------------------------------------------
    # Received keyframes
    # ------------------------------------------------------------------

    def match(self, descriptor: KeyframeDescriptor) -> bool:
        """Detect, verify and correct a loop with a received keyframe.

        Returns:
            True if a loop was accepted and corrected
        """
        with self._closing_lock:
            with self.map.update_lock:
                query = self.map.import_descriptor(descriptor)

            candidates = self.detector.detect_loop(
                descriptor.appearance,
                descriptor.identity,
                descriptor.min_score,
                exclude={query.id},
            )
            if not candidates:
                return False

            loop = self.recovery.compute_transform(descriptor, query.id, candidates)
            if loop is None:
                return False

            self.exchange.publish_measurement(loop)
            self.corrector.correct_loop(loop)

            self.last_loop_keyframe_id = query.id
            self.num_loops += 1
            return True

    def match_previous_keyframes(self) -> int:
        return self.exchange.match_previous_keyframes()

    # ------------------------------------------------------------------
    # Publisher loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Publisher loop: drain the queue, honour reset and finish."""
        with self._finish_lock:
            self._finished = False

        while True:
            if self.check_new_keyframes():
                self.process_next_keyframe()

            self._reset_if_requested()

            if self._check_finish():
                break

            time.sleep(self.config.loop_period_s)

        with self._finish_lock:
            self._finished = True

    def start(self) -> None:
        with self._finish_lock:
            self._finish_requested = False
            self._finished = False
        self._thread = threading.Thread(
            target=self.run, name=f"LoopClosing-{self.config.robot_name}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Finish the publisher loop and wait for background work."""
        self.request_finish()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.adjustment.stop()
        self.adjustment.join(timeout)

    # ------------------------------------------------------------------
    # Reset and finish
    # ------------------------------------------------------------------

    def request_reset(self) -> None:
        """Ask the publisher loop to reset and wait until it has."""
        with self._reset_lock:
            self._reset_requested = True

        while True:
            with self._reset_lock:
                if not self._reset_requested:
                    break
            time.sleep(self.config.reset_poll_s)

    def _reset_if_requested(self) -> None:
        with self._reset_lock:
            if not self._reset_requested:
                return
            with self._queue_lock:
                self._queue.clear()
            self.detector.clear()
            self.last_loop_keyframe_id = None
            self._reset_requested = False
        Log("Loop closing reset", tag="LoopClosing")

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def _check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished

    @property
    def is_running_global_adjustment(self) -> bool:
        return self.adjustment.is_running
