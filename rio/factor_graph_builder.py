#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Factor Graph Builder
====================

Turns closed propagations and their per-split annotations into factors and
initial values, accumulated in a pending FactorGraphIncrement until the
optimization coordinator takes it over (copy-and-clear).

Node layout per split:

    propagation_to_t:   [first_idx] ---- IMU ----> [last_idx]  <- Doppler, BR, baro
    propagation_from_t: [last_idx]  ---- IMU ----> (open)

Initial values of a split node are seeded exactly once per node index; an
inertial factor is emitted at most once per (first, last) pair. Annotations
attached by `Propagation.split` are consumed by `add_radar_factor` and
`add_baro_factor`.

Author: RIO project
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set, Tuple

import numpy as np

from .data_loaders import MIN_DETECTION_RANGE
from .factors import (BaroFactor, BearingRangeFactor, CombinedImuFactor,
                      DopplerFactor, PriorFactor)
from .graph import FactorGraphIncrement
from .keys import B, H, L, V, X
from .noise import NoiseModel
from .propagation import Propagation

logger = logging.getLogger(__name__)


class FactorGraphBuilder:
    """Accumulates factors, initial values and timestamps for the smoother."""

    def __init__(self, min_detection_range: float = MIN_DETECTION_RANGE):
        self.min_detection_range = float(min_detection_range)
        self._increment = FactorGraphIncrement()
        self._seeded_nodes: Set[int] = set()
        self._seeded_height_biases: Set[int] = set()
        self._height_bias_init: Dict[int, float] = {}
        self._seeded_landmarks: Set[int] = set()
        self._inertial_links: Set[Tuple[int, int]] = set()

    # ------------------------------------------------------------------
    # Increment handoff
    # ------------------------------------------------------------------

    @property
    def pending(self) -> FactorGraphIncrement:
        """Pending increment. Read only; use take_increment() to hand it off."""
        return self._increment

    def take_increment(self) -> FactorGraphIncrement:
        """Copy of the pending increment; the pending one starts over empty."""
        increment = self._increment.copy()
        self._increment.clear()
        return increment

    def prune(self, first_idx: int) -> int:
        """
        Forget bookkeeping for nodes older than `first_idx`, the first node
        still held by the live chain. Those nodes can no longer be split or
        linked, so neither their seeding nor their inertial links can recur.

        Landmark ids and height-bias indices are kept: the smoother may still
        hold them as constants, and seeding them twice would be rejected.

        Returns:
            number of entries removed
        """
        stale_nodes = {idx for idx in self._seeded_nodes if idx < first_idx}
        stale_links = {link for link in self._inertial_links if link[0] < first_idx}
        self._seeded_nodes -= stale_nodes
        self._inertial_links -= stale_links
        n_removed = len(stale_nodes) + len(stale_links)
        if n_removed:
            logger.debug("[GRAPH] Pruned %d nodes and %d IMU links older than node %d",
                         len(stale_nodes), len(stale_links), first_idx)
        return n_removed

    @property
    def num_tracked_nodes(self) -> int:
        """Node indices currently remembered as seeded."""
        return len(self._seeded_nodes)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def _seed_node(self, idx: int, propagation: Propagation, state_at_end: bool):
        if idx in self._seeded_nodes:
            return
        state = propagation.latest_state if state_at_end else propagation.first_state
        self._increment.insert(X(idx), state.pose, state.t)
        self._increment.insert(V(idx), state.velocity, state.t)
        self._increment.insert(B(idx), state.bias, state.t)
        self._seeded_nodes.add(idx)
        logger.debug("[GRAPH] Seeded node %d at t=%.6f", idx, state.t)

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    def add_prior_factor(self, propagation: Propagation, noise_pose: NoiseModel,
                         noise_velocity: NoiseModel, noise_bias: NoiseModel):
        """Anchor the first node of `propagation` with pose/velocity/bias priors."""
        idx = propagation.first_state_idx
        state = propagation.first_state
        if state is None or not state.is_complete:
            logger.warning("[GRAPH] Prior requested on incomplete propagation, skipping.")
            return
        self._seed_node(idx, propagation, state_at_end=False)
        self._increment.add(PriorFactor(X(idx), state.pose, noise_pose))
        self._increment.add(PriorFactor(V(idx), state.velocity, noise_velocity))
        self._increment.add(PriorFactor(B(idx), state.bias, noise_bias))

    def add_inertial_factor(self, propagation: Propagation) -> bool:
        """Preintegrated IMU factor between the first and last node."""
        if propagation.last_state_idx is None:
            logger.debug("[GRAPH] Propagation has no last state index, skipping IMU factor.")
            return False
        i, j = propagation.first_state_idx, propagation.last_state_idx
        if (i, j) in self._inertial_links:
            logger.debug("[GRAPH] IMU factor %d -> %d already added.", i, j)
            return False
        self._increment.add(CombinedImuFactor(
            X(i), V(i), X(j), V(j), B(i), B(j),
            propagation.latest_state.integrator.copy()))
        self._inertial_links.add((i, j))
        return True

    def add_doppler_factors(self, propagation: Propagation, noise: NoiseModel,
                            residuals: Optional[List[float]] = None) -> int:
        """
        One Doppler factor per detection attached to the split node.

        If `residuals` is given, the predicted-minus-measured Doppler at the
        propagated state is appended for every factor added.

        Returns:
            number of factors added
        """
        if propagation.last_state_idx is None:
            logger.debug("[RADAR] Propagation has no last state index, skipping Doppler factors.")
            return 0
        if not propagation.radar_detections:
            logger.debug("[RADAR] Propagation has no radar detections, skipping Doppler factors.")
            return 0
        if propagation.B_T_BR is None:
            logger.debug("[RADAR] Propagation has no B_T_BR, skipping Doppler factors.")
            return 0

        idx = propagation.last_state_idx
        state = propagation.latest_state
        B_omega_IB = state.imu.ang
        n_added = 0
        for det in propagation.radar_detections:
            if det.range < self.min_detection_range:
                logger.warning("[RADAR] Ignoring detection with distance %.3f m < %.3f m",
                               det.range, self.min_detection_range)
                continue
            factor = DopplerFactor(X(idx), V(idx), B(idx), det.position, det.velocity,
                                   B_omega_IB, propagation.B_T_BR, noise)
            self._increment.add(factor)
            n_added += 1
            if residuals is not None:
                residuals.append(factor.predict(state.pose, state.velocity, state.bias)
                                 - factor.doppler)
        return n_added

    def add_bearing_range_factors(self, propagation: Propagation, noise: NoiseModel) -> int:
        """Bearing-range factors from the split node to every tracked landmark."""
        if propagation.last_state_idx is None:
            logger.debug("[RADAR] Propagation has no last state index, skipping bearing range factors.")
            return 0
        if not propagation.radar_tracks:
            logger.debug("[RADAR] Propagation has no radar tracks, skipping bearing range factors.")
            return 0
        if propagation.B_T_BR is None:
            logger.debug("[RADAR] Propagation has no B_T_BR, skipping bearing range factors.")
            return 0

        idx = propagation.last_state_idx
        state = propagation.latest_state
        T_IR = state.pose.compose(propagation.B_T_BR)
        n_added = 0
        for track in propagation.radar_tracks:
            if np.linalg.norm(track.R_p_RT) < self.min_detection_range:
                logger.warning("[RADAR] Ignoring track %d closer than %.3f m",
                               track.id, self.min_detection_range)
                continue
            key = L(track.id)
            self._increment.add(BearingRangeFactor(X(idx), key, propagation.B_T_BR,
                                                   track.R_p_RT, noise))
            # Landmark stays inside the smoother window while it is observed.
            self._increment.timestamps[key] = state.t
            if not track.added and track.id not in self._seeded_landmarks:
                I_p_IL = T_IR.transform_from(track.R_p_RT)
                self._increment.values[key] = I_p_IL
                track.set_added()
                self._seeded_landmarks.add(track.id)
                logger.debug("[RADAR] Added landmark %d at %s", track.id,
                             np.array2string(I_p_IL, precision=3))
            n_added += 1
        return n_added

    def add_baro_factor(self, propagation: Propagation, noise: NoiseModel,
                        residual: Optional[List[float]] = None) -> bool:
        """
        Barometer event at the split node of `propagation`.

        The node is always linked (inertial factor and initial values). The
        scalar height factor is added only when the split carries a baro
        sample and the state carries a height bias index.
        """
        self.add_inertial_factor(propagation)
        if propagation.last_state_idx is not None:
            self._seed_node(propagation.last_state_idx, propagation, state_at_end=True)

        height = propagation.baro_height
        propagation.baro_height = None
        if propagation.last_state_idx is None:
            return False
        state = propagation.latest_state
        if height is None or state.baro_height_bias is None:
            logger.debug("[BARO] No barometer sample or height bias, skipping baro factor.")
            return False

        idx = propagation.last_state_idx
        bias_idx = state.baro_height_bias
        key = H(bias_idx)
        self._increment.add(BaroFactor(X(idx), key, height, noise))
        self._increment.timestamps[key] = state.t
        if bias_idx not in self._seeded_height_biases:
            self._height_bias_init[bias_idx] = float(height - state.position[2])
            self._increment.values[key] = np.array([self._height_bias_init[bias_idx]])
            self._seeded_height_biases.add(bias_idx)
            logger.debug("[BARO] Seeded height bias %d = %.3f m", bias_idx,
                         self._height_bias_init[bias_idx])
        if residual is not None:
            residual.append(state.position[2] + self._height_bias_init[bias_idx] - height)
        return True

    def add_radar_factor(self, propagation_to: Propagation, propagation_from: Propagation,
                         noise_doppler: NoiseModel, noise_track: NoiseModel,
                         doppler_residuals: Optional[List[float]] = None):
        """
        Radar event at the split between `propagation_to` and
        `propagation_from`: inertial factors, Doppler and bearing-range
        factors at the split node, and the split node's initial values.
        """
        self.add_inertial_factor(propagation_to)
        if propagation_from.last_state_idx is not None:
            logger.warning("[GRAPH] Propagation after radar split is already closed (%s).",
                           propagation_from)
        self.add_inertial_factor(propagation_from)

        n_doppler = self.add_doppler_factors(propagation_to, noise_doppler, doppler_residuals)
        n_tracks = self.add_bearing_range_factors(propagation_to, noise_track)
        propagation_to.radar_detections = None
        propagation_to.radar_tracks = None

        if propagation_to.last_state_idx is None:
            logger.error("[GRAPH] Propagation to radar has no last state index.")
            return
        self._seed_node(propagation_to.last_state_idx, propagation_to, state_at_end=True)
        logger.debug("[GRAPH] Radar node %d: %d Doppler, %d bearing-range factors",
                     propagation_to.last_state_idx, n_doppler, n_tracks)
