#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Radar Mounting Calibration
==========================

Offline batch estimate of the radar mounting B_T_BR. The recording must
start and end at rest at the same place; an odometry trajectory (for example
the trajectory.csv written by run_rio.py) provides the initial guess.

Graph:
------
    one node X(i), V(i), B(i) per radar scan, seeded from odometry
    CombinedImu factor between consecutive nodes
    one Doppler factor per detection, all sharing the mounting C(0)
    loop closure X(0) -> X(N) = identity
    zero-velocity priors on V(0) and V(N)
    priors on X(0) (position and yaw are otherwise free) and B(0)

Every node is solved jointly by a FixedLagSmoother with an unbounded lag.

Author: RIO project
"""

import bisect
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from .data_loaders import IMURecord, OdometryRecord, RadarScan
from .factors import BetweenFactor, CombinedImuFactor, MountingDopplerFactor, PriorFactor
from .imu_preintegration import IMUPreintegration, ImuBias, PreintegrationParams
from .keys import B, C, V, X
from .math_utils import Pose3
from .noise import NoiseModel
from .smoother import FixedLagSmoother
from .state import trajectory_row

logger = logging.getLogger(__name__)

# Roll and pitch are observable through gravity; yaw and position are not.
GAUGE_PRIOR_SIGMAS = np.array([1.0, 1.0, 1.0e-3, 1.0e-3, 1.0e-3, 1.0e-3])
BIAS_PRIOR_SIGMAS = np.array([0.1, 0.1, 0.1, 0.01, 0.01, 0.01])


@dataclass
class CalibrationResult:
    """Solved mounting and the per-node states of the batch problem."""
    B_T_BR: Pose3
    stamps: List[float]
    poses: List[Pose3]
    velocities: List[np.ndarray]
    biases: List[ImuBias]
    initial_error: float
    final_error: float
    iterations: int

    def trajectory(self) -> List[Dict[str, float]]:
        return [trajectory_row(i, t, pose, v, bias) for i, (t, pose, v, bias) in
                enumerate(zip(self.stamps, self.poses, self.velocities, self.biases))]


def has_motion(scan: RadarScan) -> bool:
    return any(det.velocity != 0.0 for det in scan.detections)


def trim_static_scans(scans: Sequence[RadarScan]) -> List[RadarScan]:
    """
    Drop scans without detections, then the static scans at both ends of the
    recording. One static scan is kept before the first and after the last
    moving scan, so the rest phases are still anchored.
    """
    kept = [s for s in scans if s.detections]
    if len(kept) < len(scans):
        logger.info("[CALIB] Removed %d radar scans with no detections", len(scans) - len(kept))

    moving = [i for i, s in enumerate(kept) if has_motion(s)]
    if not moving:
        logger.warning("[CALIB] No radar scan with non-zero Doppler velocity.")
        return []
    first = max(moving[0] - 1, 0)
    last = min(moving[-1] + 1, len(kept) - 1)
    logger.info("[CALIB] Removing %d radar scans with zero velocity at start, %d at end",
                first, len(kept) - 1 - last)
    if first == moving[0]:
        logger.warning("[CALIB] First radar scan has non-zero velocity.")
    if last == moving[-1]:
        logger.warning("[CALIB] Last radar scan has non-zero velocity.")
    return kept[first:last + 1]


def preintegrate_between(imu: Sequence[IMURecord], imu_times: Sequence[float],
                         t_i: float, t_j: float,
                         params: Optional[PreintegrationParams] = None,
                         bias: Optional[ImuBias] = None) -> IMUPreintegration:
    """
    Preintegrate the samples covering (t_i, t_j]. Each reading holds over the
    interval ending at its stamp; the first sample at or after t_j covers the
    remainder up to t_j.
    """
    preint = IMUPreintegration(params, bias)
    k = bisect.bisect_right(imu_times, t_i)
    t_prev = t_i
    while k < len(imu) and t_prev < t_j:
        t_end = min(imu[k].t, t_j)
        if t_end > t_prev:
            preint.integrate_measurement(imu[k].ang, imu[k].lin, t_end - t_prev)
            t_prev = t_end
        k += 1
    if t_prev < t_j:
        raise ValueError(f"IMU samples end before t={t_j:.6f}")
    return preint


def calibrate_radar_mounting(imu: Sequence[IMURecord], scans: Sequence[RadarScan],
                             odometry: Sequence[OdometryRecord], B_T_BR_init: Pose3,
                             params: Optional[PreintegrationParams] = None,
                             noise_doppler: Optional[NoiseModel] = None,
                             loop_closure_sigmas: Sequence[float] = (0.01, 0.01, 0.01, 0.05, 0.05, 0.05),
                             zero_velocity_sigma: float = 1.0e-3,
                             max_iterations: int = 200) -> CalibrationResult:
    """
    Estimate B_T_BR from one recording.

    Args:
        imu: IMU samples, sorted by time
        scans: Radar scans, sorted by time
        odometry: Initial guess for pose and velocity, sorted by time
        B_T_BR_init: Initial mounting
        params: Preintegration noise parameters
        noise_doppler: Doppler noise (0.05 m/s isotropic by default)
        loop_closure_sigmas: Sigmas of the start/end pose equality [rot x3, pos x3]
        zero_velocity_sigma: Sigma of the rest constraints at start and end [m/s]
        max_iterations: Residual evaluation budget of the solver

    Raises:
        ValueError: if an input stream is empty or fewer than two scans
            overlap the IMU and odometry streams
        SolverError: if the batch problem cannot be solved
    """
    if not odometry:
        raise ValueError("No odometry measurements")
    if not imu:
        raise ValueError("No IMU measurements")
    if not scans:
        raise ValueError("No radar measurements")
    if noise_doppler is None:
        noise_doppler = NoiseModel.isotropic(1, 0.05)
    logger.info("[CALIB] Loaded %d odometry, %d IMU and %d radar measurements",
                len(odometry), len(imu), len(scans))
    logger.info("[CALIB] Initial calibration: B_t_BR %s, q_BR [x, y, z, w] %s",
                np.array2string(B_T_BR_init.t, precision=4),
                np.array2string(B_T_BR_init.quat_xyzw(), precision=4))

    scans = trim_static_scans(scans)
    if not scans:
        raise ValueError("No radar scans with motion")

    t_start = max(odometry[0].t, imu[0].t, scans[0].t)
    logger.info("[CALIB] Using t_start = %.9f", t_start)
    odometry = [o for o in odometry if o.t >= t_start]
    imu = [r for r in imu if r.t >= t_start]
    scans = [s for s in scans if s.t >= t_start]
    odom_times = [o.t for o in odometry]
    imu_times = [r.t for r in imu]

    graph = []
    values = {}
    timestamps = {}
    stamps: List[float] = []
    n_doppler = 0
    for scan in scans:
        # Nearest-following odometry and IMU sample; close enough for a seed
        # and for the body rate.
        k_odom = bisect.bisect_left(odom_times, scan.t)
        k_imu = bisect.bisect_left(imu_times, scan.t)
        if k_odom == len(odometry) or k_imu == len(imu):
            continue
        idx = len(stamps)
        values[X(idx)] = odometry[k_odom].pose
        values[V(idx)] = np.array(odometry[k_odom].velocity, dtype=float)
        values[B(idx)] = ImuBias.zero()
        for key in (X(idx), V(idx), B(idx)):
            timestamps[key] = scan.t
        for det in scan.detections:
            graph.append(MountingDopplerFactor(X(idx), V(idx), B(idx), C(0), det.position,
                                               det.velocity, imu[k_imu].ang, noise_doppler))
            n_doppler += 1
        stamps.append(scan.t)

    if len(stamps) < 2:
        raise ValueError(f"Need at least two radar scans inside the IMU and odometry "
                         f"streams, got {len(stamps)}")
    last = len(stamps) - 1
    values[C(0)] = B_T_BR_init
    timestamps[C(0)] = stamps[0]
    logger.info("[CALIB] Added %d radar nodes with %d Doppler factors", last + 1, n_doppler)

    logger.info("[CALIB] Adding %d IMU factors", last)
    for i in range(last):
        preint = preintegrate_between(imu, imu_times, stamps[i], stamps[i + 1], params)
        graph.append(CombinedImuFactor(X(i), V(i), X(i + 1), V(i + 1), B(i), B(i + 1), preint))

    graph.append(BetweenFactor(X(0), X(last), Pose3.identity(),
                               NoiseModel.from_sigmas(loop_closure_sigmas)))
    zero_velocity = NoiseModel.isotropic(3, zero_velocity_sigma)
    graph.append(PriorFactor(V(0), np.zeros(3), zero_velocity))
    graph.append(PriorFactor(V(last), np.zeros(3), zero_velocity))
    graph.append(PriorFactor(X(0), values[X(0)], NoiseModel.from_sigmas(GAUGE_PRIOR_SIGMAS)))
    graph.append(PriorFactor(B(0), ImuBias.zero(), NoiseModel.from_sigmas(BIAS_PRIOR_SIGMAS)))

    initial_error = sum(f.error(values) for f in graph)
    logger.info("[CALIB] Solving... error before optimization: %.6e", initial_error)
    smoother = FixedLagSmoother(lag=np.inf, max_iterations=max_iterations)
    smoother.update(graph, values, timestamps)
    estimate = smoother.calculate_estimate()
    final_error = sum(f.error(estimate) for f in graph)
    logger.info("[CALIB] Error after optimization: %.6e (%d evaluations)",
                final_error, smoother.last_iterations)

    result = CalibrationResult(
        B_T_BR=estimate[C(0)],
        stamps=stamps,
        poses=[estimate[X(i)] for i in range(last + 1)],
        velocities=[estimate[V(i)] for i in range(last + 1)],
        biases=[estimate[B(i)] for i in range(last + 1)],
        initial_error=initial_error,
        final_error=final_error,
        iterations=smoother.last_iterations,
    )
    logger.info("[CALIB] Calibration result: B_t_BR %s, q_BR [x, y, z, w] %s",
                np.array2string(result.B_T_BR.t, precision=4),
                np.array2string(result.B_T_BR.quat_xyzw(), precision=4))
    logger.info("[CALIB] IMU bias at first node: %s", result.biases[0])
    return result
