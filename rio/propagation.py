#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
IMU Propagation Module

A Propagation is the chain of predicted States between two graph nodes.
IMU samples extend the open (last) propagation; a radar or barometer event
splits it at the event time, closing one propagation and opening the next.
After an optimization cycle, chains are re-predicted from the solved anchor
with the same buffered IMU samples.

Node indices are drawn from a NodeIndexCounter owned by the orchestrating
layer and handed to `split` explicitly.

Author: RIO project
"""

from __future__ import annotations

import bisect
import logging
from typing import List, Optional, Sequence, Tuple, Union

from .data_loaders import IMURecord, LandmarkTrack, RadarDetection
from .math_utils import Pose3
from .state import State

logger = logging.getLogger(__name__)


class NodeIndexCounter:
    """Monotonically increasing source of graph node indices."""

    def __init__(self, start: int = 0):
        self._value = int(start)

    @property
    def value(self) -> int:
        """Index the next split (or initialization) will receive."""
        return self._value

    def next(self) -> int:
        idx = self._value
        self._value += 1
        return idx

    def __repr__(self) -> str:
        return f"NodeIndexCounter(value={self._value})"


class Propagation:
    """
    Ordered chain of States (strictly increasing time) from node
    `first_state_idx` to node `last_state_idx`.

    `last_state_idx` is None while the propagation is open, i.e. until a
    split closes it.
    """

    def __init__(self, initial_states: Union[State, Sequence[State]],
                 first_state_idx: int, last_state_idx: Optional[int] = None):
        if isinstance(initial_states, State):
            initial_states = [initial_states]
        self.states: List[State] = list(initial_states)
        self.first_state_idx = int(first_state_idx)
        self.last_state_idx = None if last_state_idx is None else int(last_state_idx)

        # Per-split annotations, consumed once by the factor graph builder.
        self.radar_detections: Optional[List[RadarDetection]] = None
        self.radar_tracks: Optional[List[LandmarkTrack]] = None
        self.baro_height: Optional[float] = None
        self.B_T_BR: Optional[Pose3] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def first_state(self) -> Optional[State]:
        return self.states[0] if self.states else None

    @property
    def latest_state(self) -> Optional[State]:
        return self.states[-1] if self.states else None

    @property
    def is_closed(self) -> bool:
        return self.last_state_idx is not None

    def timestamps(self) -> List[float]:
        return [s.t for s in self.states]

    def __len__(self) -> int:
        return len(self.states)

    def __repr__(self) -> str:
        span = f"[{self.states[0].t:.6f}, {self.states[-1].t:.6f}]" if self.states else "[]"
        return (f"Propagation(first={self.first_state_idx}, last={self.last_state_idx}, "
                f"n={len(self.states)}, t={span})")

    def copy(self) -> "Propagation":
        """
        Independent copy. States are immutable and therefore shared; the
        chain and annotation containers are copied.
        """
        other = Propagation(list(self.states), self.first_state_idx, self.last_state_idx)
        other.radar_detections = None if self.radar_detections is None else list(self.radar_detections)
        other.radar_tracks = None if self.radar_tracks is None else list(self.radar_tracks)
        other.baro_height = self.baro_height
        other.B_T_BR = self.B_T_BR
        return other

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def add_measurement(self, imu: IMURecord) -> bool:
        """Integrate one IMU sample and append the predicted State."""
        if not self.states:
            logger.error("[PROP] No initial state, skipping IMU integration.")
            return False
        if self.states[0] is None or not self.states[0].is_complete:
            logger.error("[PROP] Initial state not complete, skipping IMU integration.")
            return False
        if self.states[-1].imu is None:
            logger.error("[PROP] Previous IMU measurement not complete, skipping IMU integration.")
            return False
        if imu is None:
            logger.error("[PROP] Empty IMU measurement, skipping IMU integration.")
            return False

        dt = imu.t - self.states[-1].imu.t
        if dt < 0:
            logger.warning("[PROP] Negative dt=%.9f, skipping IMU integration.", dt)
            return False
        if dt == 0:
            logger.warning("[PROP] Zero dt at t=%.9f, skipping IMU integration.", imu.t)
            return False

        integrator = self.states[-1].integrator.copy()
        integrator.integrate_measurement(imu.ang, imu.lin, dt)
        anchor = self.states[0]
        pose, velocity = integrator.predict(anchor.pose, anchor.velocity, integrator.bias_hat)
        self.states.append(State.from_pose(
            self.states[-1].frame_id, pose, velocity, imu, integrator,
            self.states[-1].baro_height_bias))
        return True

    def split(self, t: float, split_idx: NodeIndexCounter,
              radar_detections: Optional[List[RadarDetection]] = None,
              radar_tracks: Optional[List[LandmarkTrack]] = None,
              baro_height: Optional[float] = None,
              B_T_BR: Optional[Pose3] = None) -> Optional[Tuple["Propagation", "Propagation"]]:
        """
        Split the chain at time t.

        Returns:
            (propagation_to_t, propagation_from_t) or None on failure. The
            boundary node takes index `split_idx.value`, which is then
            incremented. Annotations are attached to `propagation_to_t`.
            `self` is left untouched.
        """
        if not self.states:
            logger.warning("[PROP] No initial state, skipping split.")
            return None
        if self.states[0] is None or not self.states[0].is_complete:
            logger.warning("[PROP] Initial state not complete, skipping split.")
            return None
        if t < self.states[0].t:
            logger.debug("[PROP] t=%.6f is before first IMU measurement, skipping split.", t)
            return None
        if t > self.states[-1].t:
            logger.debug("[PROP] t=%.6f is after last IMU measurement, skipping split.", t)
            return None

        # First State with timestamp >= t.
        i1 = bisect.bisect_left(self.timestamps(), t)
        if i1 == 0:
            logger.warning("[PROP] Failed to find IMU measurement before t=%.6f, skipping split.", t)
            return None
        if i1 == len(self.states):
            logger.warning("[PROP] Failed to find IMU measurement after t=%.6f, skipping split.", t)
            return None
        state_1 = self.states[i1]

        boundary_idx = split_idx.value

        # Zero-order hold: the right bracket's reading applies over (t_0, t].
        # bisect_left guarantees t_0 < t, so the boundary is always a new State.
        propagation_to_t = Propagation(self.states[:i1], self.first_state_idx, boundary_idx)
        if not propagation_to_t.add_measurement(state_1.imu.at_time(t)):
            return None

        # The boundary State anchors a fresh preintegration window. When t
        # coincides with state_1, the boundary already is that sample and only
        # the samples after it are replayed.
        remaining = self.states[i1:] if t < state_1.t else self.states[i1 + 1:]
        if t >= state_1.t:
            logger.debug("[PROP] Split exactly at measurement time t=%.9f", t)
        initial_state = propagation_to_t.latest_state.with_reset_integration()
        propagation_from_t = Propagation(initial_state, boundary_idx, self.last_state_idx)
        for state in remaining:
            if not propagation_from_t.add_measurement(state.imu):
                return None

        propagation_to_t.radar_detections = radar_detections
        propagation_to_t.radar_tracks = radar_tracks
        propagation_to_t.baro_height = baro_height
        propagation_to_t.B_T_BR = B_T_BR

        split_idx.next()
        return propagation_to_t, propagation_from_t

    def repropagate(self, initial_state: State) -> bool:
        """
        Re-predict the whole chain from a new initial State, replaying the
        buffered IMU samples. The chain is replaced only if every sample
        integrates; otherwise it is left unchanged.
        """
        if not self.states:
            logger.warning("[PROP] No initial state, skipping repropagation.")
            return False

        first_state = initial_state.with_reset_integration()
        scratch = Propagation(first_state, self.first_state_idx, self.last_state_idx)
        for state in self.states[1:]:
            if not scratch.add_measurement(state.imu):
                logger.warning("[PROP] Failed to add IMU message during repropagation.")
                return False

        self.states = scratch.states
        return True
