#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RIO Radar Mounting Calibration (run_calibration.py)

Batch estimate of the radar mounting B_T_BR from a recording that starts
and ends at rest at the same place. The initial mounting and all noise
settings come from the YAML config; an odometry trajectory seeds the states.

Typical workflow:
    # 1. Odometry with the nominal mounting
    python run_rio.py --config config.yaml --imu imu.csv --radar radar.csv --output out/

    # 2. Calibrate, seeded with that trajectory
    python run_calibration.py --config config.yaml --imu imu.csv --radar radar.csv \\
        --odometry out/trajectory.csv --output calib/

Outputs:
    calib/calibration.yaml          radar.B_t_BR and radar.q_BR, ready to paste
                                    into the config
    calib/calibrated_trajectory.csv one row per radar scan (t, position,
                                    quaternion xyzw, velocity, accel/gyro bias)

Author: RIO project
"""

import argparse
import logging
import os
import sys

import pandas as pd
import yaml

from rio import __version__
from rio.calibration import calibrate_radar_mounting
from rio.config import build_noise_models, load_config, make_preintegration_params
from rio.data_loaders import load_imu_csv, load_odometry_csv, load_radar_csv
from rio.logging_setup import setup_logging
from rio.smoother import SolverError

logger = logging.getLogger("run_calibration")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description=f"Radar-IMU mounting calibration (rio {__version__})",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--imu", type=str, required=True,
                        help="Path to IMU CSV file")
    parser.add_argument("--radar", type=str, required=True,
                        help="Path to radar detections CSV file")
    parser.add_argument("--odometry", type=str, required=True,
                        help="Path to odometry CSV (e.g. trajectory.csv of run_rio.py)")
    parser.add_argument("--output", type=str, required=True,
                        help="Output directory")
    parser.add_argument("--config", type=str,
                        default="configs/config_rio_default.yaml",
                        help="Path to YAML config file")
    parser.add_argument("--log-level", type=str, default=None,
                        help="DEBUG, INFO, WARNING or ERROR (default: $RIO_LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


def run(args) -> int:
    config = load_config(args.config)
    imu = load_imu_csv(args.imu)
    scans = load_radar_csv(args.radar, config['MIN_DETECTION_RANGE'])
    odometry = load_odometry_csv(args.odometry)

    result = calibrate_radar_mounting(
        imu, scans, odometry, config['B_T_BR'],
        params=make_preintegration_params(config),
        noise_doppler=build_noise_models(config)['doppler'],
        loop_closure_sigmas=config['CALIB_LOOP_CLOSURE_SIGMAS'],
        zero_velocity_sigma=config['CALIB_ZERO_VELOCITY_SIGMA'],
        max_iterations=config['CALIB_MAX_ITERATIONS'],
    )

    os.makedirs(args.output, exist_ok=True)
    calibration_path = os.path.join(args.output, "calibration.yaml")
    with open(calibration_path, 'w') as f:
        yaml.safe_dump({'radar': {
            'B_t_BR': [float(x) for x in result.B_T_BR.t],
            'q_BR': [float(x) for x in result.B_T_BR.quat_xyzw()],
        }}, f, default_flow_style=None)
    trajectory_path = os.path.join(args.output, "calibrated_trajectory.csv")
    pd.DataFrame(result.trajectory()).to_csv(trajectory_path, index=False)

    logger.info("Calibration: %s", calibration_path)
    logger.info("Trajectory: %s", trajectory_path)
    return 0


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        return run(args)
    except (FileNotFoundError, KeyError, ValueError, SolverError) as e:
        logger.error("Error running calibration: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
