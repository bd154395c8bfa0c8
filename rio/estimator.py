#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Radar-Inertial Estimator
========================

Orchestrates the propagation chain and the optimization coordinator:

    IMU sample   -> extend the open propagation
    radar / baro -> queued (time-ordered heap) until the IMU chain covers the
                    event time, then split the open propagation there and
                    add factors for the new node
    every event  -> try to start a solve; every call polls for a result

The estimator owns the node index counter and the live propagation deque.
Initialization is static: the first INIT_SAMPLES IMU samples align roll and
pitch with gravity and (optionally) estimate the gyroscope bias.

Author: RIO project
"""

from __future__ import annotations

import heapq
import logging
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Deque, Dict, List, Optional

import numpy as np

from .config import build_noise_models, default_config, make_preintegration_params
from .data_loaders import BaroRecord, IMURecord, RadarScan
from .imu_preintegration import IMUPreintegration, ImuBias
from .math_utils import rotation_from_gravity
from .optimization import OptimizationCoordinator
from .propagation import NodeIndexCounter, Propagation
from .smoother import FixedLagSmoother, Smoother
from .state import State, trajectory_row
from .timing import Timing

logger = logging.getLogger(__name__)


class EventType(IntEnum):
    """Discrete sensor events. Lower value is handled first at equal time."""
    RADAR = 1
    BARO = 2


@dataclass
class SensorEvent:
    """A timestamped radar or barometer event waiting for IMU coverage."""
    timestamp: float
    event_type: EventType
    data: Any
    index: int

    def __lt__(self, other):
        """Priority queue ordering: time, then event type, then arrival."""
        if self.timestamp != other.timestamp:
            return self.timestamp < other.timestamp
        if self.event_type != other.event_type:
            return self.event_type < other.event_type
        return self.index < other.index


class RadarInertialEstimator:
    """Sliding-window radar-inertial odometry."""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 smoother: Optional[Smoother] = None):
        self.config = config if config is not None else default_config()
        self.params = make_preintegration_params(self.config)
        self.noise = build_noise_models(self.config)
        self.B_T_BR = self.config['B_T_BR']

        if smoother is None:
            smoother = FixedLagSmoother(lag=self.config['SMOOTHER_LAG'],
                                        max_iterations=self.config['SMOOTHER_MAX_ITERATIONS'])
        self.counter = NodeIndexCounter()
        self.coordinator = OptimizationCoordinator(smoother, self.config['MIN_DETECTION_RANGE'])
        self.propagations: Deque[Propagation] = deque()

        self._init_buffer: List[IMURecord] = []
        self._events: List[SensorEvent] = []
        self._event_count = 0
        self._timing: Dict[str, Timing] = {}
        self._history: Dict[int, Dict[str, float]] = {}

        self.stats = {
            "imu": 0,
            "imu_rejected": 0,
            "radar": 0,
            "baro": 0,
            "events_dropped": 0,
            "splits_failed": 0,
            "solves": 0,
            "results": 0,
        }

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return bool(self.propagations)

    @property
    def latest_state(self) -> Optional[State]:
        return self.propagations[-1].latest_state if self.propagations else None

    @property
    def timing(self) -> Dict[str, Timing]:
        return self._timing

    def trajectory(self) -> List[Dict[str, float]]:
        """One row per graph node, latest estimate of each."""
        self._record_nodes()
        return [self._history[idx] for idx in sorted(self._history)]

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def add_imu(self, imu: IMURecord) -> bool:
        if not self.initialized:
            self._init_buffer.append(imu)
            if len(self._init_buffer) >= max(1, int(self.config['INIT_SAMPLES'])):
                self._initialize()
            return True

        if not self.propagations[-1].add_measurement(imu):
            self.stats["imu_rejected"] += 1
            return False
        self.stats["imu"] += 1
        self._process_events()
        self._poll_result()
        return True

    def add_radar_scan(self, scan: RadarScan):
        self._push_event(scan.t, EventType.RADAR, scan)

    def add_baro(self, record: BaroRecord):
        if not self.config['USE_BARO']:
            logger.debug("[BARO] Barometer disabled, ignoring sample at t=%.6f", record.t)
            return
        self._push_event(record.t, EventType.BARO, record)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the in-flight cycle, merge it, then solve and merge whatever
        is still pending. Returns False if a wait timed out.
        """
        if not self.coordinator.wait(timeout):
            return False
        self._poll_result()
        if not self.coordinator.builder.pending.is_empty and self.propagations:
            self._try_solve()
            if not self.coordinator.wait(timeout):
                return False
            self._poll_result()
        self._record_nodes()
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _initialize(self):
        samples = self._init_buffer
        acc_mean = np.mean([s.lin for s in samples], axis=0)
        gyro_mean = np.mean([s.ang for s in samples], axis=0)

        R_IB = rotation_from_gravity(acc_mean)
        if self.config['ESTIMATE_GYRO_BIAS']:
            b_g = gyro_mean
        else:
            b_g = self.config['INITIAL_GYRO_BIAS']
        bias = ImuBias(self.config['INITIAL_ACCEL_BIAS'], b_g)

        height_bias_idx = 0 if self.config['USE_BARO'] else None
        initial_state = State(self.config['FRAME_ID'], np.zeros(3), R_IB, np.zeros(3),
                              samples[-1], IMUPreintegration(self.params, bias),
                              height_bias_idx)
        propagation = Propagation(initial_state, self.counter.next())
        self.propagations.append(propagation)
        self.coordinator.add_prior_factor(propagation, self.noise['prior_pose'],
                                          self.noise['prior_velocity'], self.noise['prior_bias'])
        self._init_buffer = []

        logger.info("[INIT] Static initialization from %d samples at t=%.6f", len(samples),
                    initial_state.t)
        logger.info("[INIT] acc mean: %s, %s", np.array2string(acc_mean, precision=4), bias)
        self._record_nodes()

    def _push_event(self, t: float, event_type: EventType, data: Any):
        heapq.heappush(self._events, SensorEvent(float(t), event_type, data, self._event_count))
        self._event_count += 1
        if self.initialized:
            self._process_events()

    def _process_events(self):
        while self._events:
            event = self._events[0]
            open_propagation = self.propagations[-1]
            if event.timestamp > open_propagation.latest_state.t:
                break
            heapq.heappop(self._events)
            if event.timestamp <= open_propagation.first_state.t:
                logger.warning("[EVENT] Dropping %s event at t=%.6f older than open propagation "
                               "(t0=%.6f)", event.event_type.name, event.timestamp,
                               open_propagation.first_state.t)
                self.stats["events_dropped"] += 1
                continue
            self._handle_event(event)

    def _handle_event(self, event: SensorEvent):
        open_propagation = self.propagations[-1]
        if event.event_type == EventType.RADAR:
            scan = event.data
            result = open_propagation.split(event.timestamp, self.counter,
                                            radar_detections=list(scan.detections),
                                            radar_tracks=list(scan.tracks),
                                            B_T_BR=self.B_T_BR)
        else:
            result = open_propagation.split(event.timestamp, self.counter,
                                            baro_height=event.data.height)
        if result is None:
            logger.warning("[EVENT] Failed to split at t=%.6f", event.timestamp)
            self.stats["splits_failed"] += 1
            return

        propagation_to, propagation_from = result
        self.propagations[-1] = propagation_to
        self.propagations.append(propagation_from)

        if event.event_type == EventType.RADAR:
            self.coordinator.add_radar_factor(propagation_to, propagation_from,
                                              self.noise['doppler'], self.noise['track'])
            self.stats["radar"] += 1
        else:
            self.coordinator.add_baro_factor(propagation_to, self.noise['baro'])
            self.stats["baro"] += 1
        self._try_solve()

    def _try_solve(self):
        self._poll_result()
        if self.coordinator.solve(self.propagations):
            self.stats["solves"] += 1

    def _poll_result(self):
        timing = self.coordinator.get_result(self.propagations)
        if timing is None:
            return
        self._timing = timing
        self.stats["results"] += 1
        self._record_nodes()

    def _record_nodes(self):
        for propagation in self.propagations:
            state = propagation.first_state
            self._history[propagation.first_state_idx] = trajectory_row(
                propagation.first_state_idx, state.t, state.pose, state.velocity, state.bias)
