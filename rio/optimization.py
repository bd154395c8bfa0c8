#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Asynchronous sliding-window optimization.

The coordinator owns the smoother and hands it one factor graph increment
per cycle on a background thread, so IMU prediction never waits for it:

    Idle --solve()--> Solving --worker done--> ResultReady --get_result()--> Idle
                         \\--solver exception--> Idle (cycle dropped)

- at most one solve in flight, at most one uncollected result
- solve() copies the caller's propagation deque and takes the pending
  increment (copy-and-clear); factors added meanwhile accumulate in a
  fresh increment
- get_result() merges the solved chains into the caller's deque and
  re-predicts the propagations that were created while the solver ran
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional

from .data_loaders import MIN_DETECTION_RANGE
from .factor_graph_builder import FactorGraphBuilder
from .graph import FactorGraphIncrement
from .keys import B, V, X
from .noise import NoiseModel
from .propagation import Propagation
from .smoother import FixedLagSmoother, Smoother
from .state import State
from .timing import Timing, TimingRecorder

logger = logging.getLogger(__name__)


class OptimizationCoordinator:
    """Background solver with a non-blocking solve / poll interface."""

    def __init__(self, smoother: Optional[Smoother] = None,
                 min_detection_range: float = MIN_DETECTION_RANGE):
        self._smoother = smoother if smoother is not None else FixedLagSmoother()
        self._builder = FactorGraphBuilder(min_detection_range)

        self._lock = threading.Lock()
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None

        # Result bundle, guarded by _lock.
        self._propagations: Deque[Propagation] = deque()
        self._timing = TimingRecorder()
        self._new_result = False

        self.stats = {
            "solves": 0,
            "results": 0,
            "failures": 0,
        }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def builder(self) -> FactorGraphBuilder:
        return self._builder

    @property
    def smoother(self) -> Smoother:
        return self._smoother

    def is_running(self) -> bool:
        return self._running.is_set()

    def has_result(self) -> bool:
        with self._lock:
            return self._new_result

    def set_smoother(self, smoother: Smoother) -> bool:
        """Replace the smoother. Only allowed while no cycle is pending."""
        if self._running.is_set():
            logger.warning("[OPT] Optimization running, cannot replace smoother.")
            return False
        self._reap_failed_worker()
        if self._thread is not None:
            logger.warning("[OPT] Uncollected result pending, cannot replace smoother.")
            return False
        self._smoother = smoother
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the in-flight cycle finishes. Returns False on timeout."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return not self._running.is_set()

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    def add_prior_factor(self, propagation: Propagation, noise_pose: NoiseModel,
                         noise_velocity: NoiseModel, noise_bias: NoiseModel):
        self._builder.add_prior_factor(propagation, noise_pose, noise_velocity, noise_bias)

    def add_radar_factor(self, propagation_to: Propagation, propagation_from: Propagation,
                         noise_doppler: NoiseModel, noise_track: NoiseModel,
                         doppler_residuals: Optional[List[float]] = None):
        self._builder.add_radar_factor(propagation_to, propagation_from,
                                       noise_doppler, noise_track, doppler_residuals)

    def add_baro_factor(self, propagation: Propagation, noise: NoiseModel,
                        residual: Optional[List[float]] = None) -> bool:
        return self._builder.add_baro_factor(propagation, noise, residual)

    # ------------------------------------------------------------------
    # Solve / collect
    # ------------------------------------------------------------------

    def solve(self, propagations: Deque[Propagation]) -> bool:
        """
        Start one optimization cycle on a copy of `propagations`.

        Returns False without side effects while a cycle is running or its
        result has not been collected.
        """
        if self._running.is_set():
            logger.debug("[OPT] Optimization thread still running.")
            return False
        self._reap_failed_worker()
        if self._thread is not None:
            logger.debug("[OPT] Optimization thread not joined, get result first.")
            return False

        propagations_copy = deque(p.copy() for p in propagations)
        increment = self._builder.take_increment()

        self._running.set()
        self._thread = threading.Thread(
            target=self._solve_threaded,
            args=(increment, propagations_copy),
            name="rio-optimization",
            daemon=True,
        )
        self.stats["solves"] += 1
        self._thread.start()
        return True

    def get_result(self, propagations: Deque[Propagation]) -> Optional[Dict[str, Timing]]:
        """
        Merge the latest solved window into `propagations` (in place).

        Returns:
            Phase timings, or None if no new result is available.
        """
        if self._running.is_set():
            logger.debug("[OPT] Optimization thread still running.")
            return None
        if self._thread is None:
            logger.debug("[OPT] No optimization cycle to collect.")
            return None
        self._thread.join()
        self._thread = None

        with self._lock:
            if not self._new_result:
                logger.debug("[OPT] No new result.")
                return None
            self._new_result = False
            solved = self._propagations
            self._propagations = deque()
            stamp = self._timing["optimize"].stamp if "optimize" in self._timing else None

            if not solved:
                logger.warning("[OPT] Solved window is empty, nothing to merge.")
                return self._timing.snapshot()

            # Drop propagations marginalized by the smoother.
            t0 = time.time()
            first_idx = solved[0].first_state_idx
            if any(p.first_state_idx == first_idx for p in propagations):
                while propagations and propagations[0].first_state_idx != first_idx:
                    propagations.popleft()
                self._builder.prune(first_idx)
            else:
                logger.warning("[OPT] Solved window starting at node %d not found in live chain.",
                               first_idx)
            self._timing.update("dequeCleanup", time.time() - t0, stamp)

            # Replace propagations that were part of the solve.
            t0 = time.time()
            updated = set()
            for i, propagation in enumerate(propagations):
                if propagation.last_state_idx is None:
                    continue
                for result in solved:
                    if (result.first_state_idx == propagation.first_state_idx
                            and result.last_state_idx == propagation.last_state_idx):
                        propagations[i] = result
                        updated.add(i)
                        break
            self._timing.update("copyCachedPropagations", time.time() - t0, stamp)

            # Re-predict everything newer than the solved window.
            t0 = time.time()
            for i in range(len(propagations)):
                if i in updated:
                    continue
                if i == 0:
                    logger.error("[OPT] First propagation not updated, skipping.")
                    continue
                if not propagations[i].repropagate(propagations[i - 1].latest_state):
                    logger.error("[OPT] Failed to repropagate %s.", propagations[i])
            self._timing.update("repropagateNewPropagations", time.time() - t0, stamp)

            self.stats["results"] += 1
            return self._timing.snapshot()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _reap_failed_worker(self):
        """Join a finished worker that published no result."""
        thread = self._thread
        if thread is None or self._running.is_set() or thread.is_alive():
            return
        with self._lock:
            pending = self._new_result
        if not pending:
            thread.join()
            self._thread = None

    def _solve_threaded(self, increment: FactorGraphIncrement,
                        propagations: Deque[Propagation]):
        try:
            t0 = time.time()
            self._smoother.update(increment.graph, increment.values, increment.timestamps)
            t_optimize = time.time() - t0

            t0 = time.time()
            stamps = self._smoother.timestamps()
            if stamps:
                horizon = min(stamps.values())
                while propagations and propagations[0].first_state.t < horizon:
                    propagations.popleft()

            for propagation in propagations:
                idx = propagation.first_state_idx
                first = propagation.first_state
                initial_state = State.from_pose(
                    first.frame_id,
                    self._smoother.calculate_estimate(X(idx)),
                    self._smoother.calculate_estimate(V(idx)),
                    first.imu,
                    first.integrator,
                    first.baro_height_bias,
                ).with_reset_integration(self._smoother.calculate_estimate(B(idx)))
                if not propagation.repropagate(initial_state):
                    raise RuntimeError(f"Failed to repropagate {propagation}")
            t_cache = time.time() - t0
        except Exception:
            # Any failure drops this cycle; the live chain is untouched.
            logger.exception("[OPT] Optimization cycle aborted.")
            with self._lock:
                self.stats["failures"] += 1
            self._running.clear()
            return

        stamp = propagations[-1].latest_state.t if propagations else None
        with self._lock:
            self._propagations = propagations
            self._timing.update("optimize", t_optimize, stamp)
            self._timing.update("cachePropagations", t_cache, stamp)
            self._new_result = True
        logger.debug("[OPT] Cycle done: %d propagations, optimize %.1f ms",
                     len(propagations), t_optimize * 1000.0)
        self._running.clear()
