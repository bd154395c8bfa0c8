#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RIO Standalone Entry Point (run_rio.py)

Replays recorded IMU / radar / barometer CSV files through the
radar-inertial estimator in time order and writes the estimated node
trajectory and the optimization phase timings.

Configuration Model:
--------------------
    YAML config is the single source of truth for algorithm settings.
    CLI provides only paths and the log level.

Usage:
    python run_rio.py --config configs/config_rio_default.yaml \\
        --imu path/to/imu.csv --radar path/to/radar.csv --output out/

    # With barometer (requires baro.enabled in YAML):
    python run_rio.py --config config.yaml --imu imu.csv --radar radar.csv \\
        --baro baro.csv --output out/

Outputs:
    out/trajectory.csv  one row per graph node (t, position, quaternion xyzw,
                        velocity, accel/gyro bias)
    out/timing.csv      per-phase optimization timings [s]

Author: RIO project
"""

import argparse
import dataclasses
import logging
import os
import sys

import pandas as pd

from rio import __version__
from rio.config import load_config
from rio.data_loaders import load_baro_csv, load_imu_csv, load_radar_csv
from rio.estimator import RadarInertialEstimator
from rio.logging_setup import setup_logging

logger = logging.getLogger("run_rio")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description=f"Radar-Inertial Odometry replay (rio {__version__})",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--imu", type=str, required=True,
                        help="Path to IMU CSV file")
    parser.add_argument("--radar", type=str, required=True,
                        help="Path to radar detections CSV file")
    parser.add_argument("--output", type=str, required=True,
                        help="Output directory")
    parser.add_argument("--config", type=str,
                        default="configs/config_rio_default.yaml",
                        help="Path to YAML config file")
    parser.add_argument("--baro", type=str, default=None,
                        help="Path to barometer CSV file")
    parser.add_argument("--log-level", type=str, default=None,
                        help="DEBUG, INFO, WARNING or ERROR (default: $RIO_LOG_LEVEL or INFO)")
    parser.add_argument("--timeout", type=float, default=60.0,
                        help="Seconds to wait for the last optimization cycle")
    return parser.parse_args(argv)


def build_events(imu, scans, baro):
    """Merge all records into one time-ordered stream. Ties: radar, baro, IMU."""
    events = [(s.t, 0, i, "radar", s) for i, s in enumerate(scans)]
    events += [(b.t, 1, i, "baro", b) for i, b in enumerate(baro)]
    events += [(r.t, 2, i, "imu", r) for i, r in enumerate(imu)]
    events.sort(key=lambda e: (e[0], e[1], e[2]))
    return [(kind, rec) for _, _, _, kind, rec in events]


def run(args) -> int:
    config = load_config(args.config)
    imu = load_imu_csv(args.imu)
    scans = load_radar_csv(args.radar, config['MIN_DETECTION_RANGE'])
    baro = load_baro_csv(args.baro, config['BARO_REFERENCE_PRESSURE']) if config['USE_BARO'] else []
    if not imu:
        logger.error("No IMU measurements in %s", args.imu)
        return 1
    if not scans:
        logger.warning("No radar scans in %s, running IMU-only prediction", args.radar)

    estimator = RadarInertialEstimator(config)
    for kind, rec in build_events(imu, scans, baro):
        if kind == "imu":
            estimator.add_imu(rec)
        elif kind == "radar":
            estimator.add_radar_scan(rec)
        else:
            estimator.add_baro(rec)

    if not estimator.flush(args.timeout):
        logger.warning("Last optimization cycle did not finish within %.1f s", args.timeout)

    os.makedirs(args.output, exist_ok=True)
    trajectory_path = os.path.join(args.output, "trajectory.csv")
    pd.DataFrame(estimator.trajectory()).to_csv(trajectory_path, index=False)

    timing_rows = [dict(phase=label, **dataclasses.asdict(t))
                   for label, t in estimator.timing.items()]
    timing_path = os.path.join(args.output, "timing.csv")
    pd.DataFrame(timing_rows).to_csv(timing_path, index=False)

    logger.info("Stats: %s", estimator.stats)
    logger.info("Trajectory: %s", trajectory_path)
    logger.info("Timing: %s", timing_path)
    return 0


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        return run(args)
    except (FileNotFoundError, KeyError, ValueError) as e:
        logger.error("Error running RIO pipeline: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
