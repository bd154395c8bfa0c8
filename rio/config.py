#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RIO Configuration Module
========================

Handles YAML configuration loading and defines defaults for the
radar-inertial estimator.

Configuration Structure:
------------------------
The YAML config file contains:
- imu: noise densities, random walks, gravity, static initialization
- radar: mounting (B_t_BR, q_BR), detection gating, Doppler/track noise
- baro: enable flag, height noise, reference pressure
- prior: initial pose/velocity/bias uncertainty
- smoother: fixed-lag window and iteration limits
- calibration: batch mounting calibration (loop closure, zero velocity)

Frame Conventions:
------------------
- Inertial Frame (I): Z up, gravity [0, 0, -g]
- Body Frame (B): IMU frame
- Radar Frame (R): sensor frame, B_T_BR maps radar points into the body
- Quaternion q_BR: [x, y, z, w] (scipy / ROS ordering)

Sensor Noise Parameters:
------------------------
- acc_n: Accelerometer noise density [m/s²/√Hz]
- gyr_n: Gyroscope noise density [rad/s/√Hz]
- acc_w: Accelerometer random walk [m/s³/√Hz]
- gyr_w: Gyroscope random walk [rad/s²/√Hz]

Author: RIO project
"""

import copy
import os
from typing import Any, Dict

import numpy as np
import yaml

from .imu_preintegration import G_NORM, PreintegrationParams
from .math_utils import Pose3
from .noise import NoiseModel


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load YAML configuration file and convert to the flat upper-case format.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Dictionary with configuration parameters including:
        - IMU_PARAMS: IMU noise parameters
        - GRAVITY: gravity vector in the inertial frame
        - B_T_BR: radar mounting as Pose3
        - NOISE_*: measurement and prior sigmas
        - SMOOTHER_LAG, SMOOTHER_MAX_ITERATIONS
        - MIN_DETECTION_RANGE, USE_BARO, INIT_SAMPLES, FRAME_ID

    Raises:
        FileNotFoundError: If config file doesn't exist
        KeyError: If a required section (imu, radar) is missing
        yaml.YAMLError: If config file is malformed

    Example:
        >>> config = load_config("configs/config_rio_default.yaml")
        >>> print(config['SMOOTHER_LAG'])
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    result = default_config()
    result['FRAME_ID'] = config.get('frame_id', result['FRAME_ID'])

    # ========================================
    # IMU
    # ========================================
    imu = config['imu']
    result['IMU_PARAMS'] = {
        'acc_n': float(imu['acc_n']),
        'gyr_n': float(imu['gyr_n']),
        'acc_w': float(imu['acc_w']),
        'gyr_w': float(imu['gyr_w']),
        'integration_sigma': float(imu.get('integration_sigma', 1.0e-4)),
        'max_dt': float(imu.get('max_dt', 0.1)),
        'g_norm': float(imu.get('g_norm', G_NORM)),
    }
    result['GRAVITY'] = np.array([0.0, 0.0, -result['IMU_PARAMS']['g_norm']])
    result['INIT_SAMPLES'] = int(imu.get('init_samples', result['INIT_SAMPLES']))
    result['ESTIMATE_GYRO_BIAS'] = bool(imu.get('estimate_gyro_bias', True))
    result['INITIAL_GYRO_BIAS'] = np.array(imu.get('initial_gyro_bias', [0.0, 0.0, 0.0]), dtype=float)
    result['INITIAL_ACCEL_BIAS'] = np.array(imu.get('initial_accel_bias', [0.0, 0.0, 0.0]), dtype=float)

    # ========================================
    # Radar
    # ========================================
    radar = config['radar']
    B_t_BR = np.array(radar.get('B_t_BR', [0.0, 0.0, 0.0]), dtype=float)
    q_BR = np.array(radar.get('q_BR', [0.0, 0.0, 0.0, 1.0]), dtype=float)
    result['B_T_BR'] = Pose3.from_quat_xyzw(q_BR, B_t_BR)
    result['MIN_DETECTION_RANGE'] = float(radar.get('min_detection_range', result['MIN_DETECTION_RANGE']))
    noise = radar.get('noise', {})
    result['NOISE_DOPPLER'] = float(noise.get('doppler', result['NOISE_DOPPLER']))
    result['NOISE_TRACK'] = np.array(noise.get('track', result['NOISE_TRACK']), dtype=float)
    robust = noise.get('robust')
    if robust:
        result['DOPPLER_ROBUST_KIND'] = robust.get('kind', 'huber')
        result['DOPPLER_ROBUST_K'] = float(robust.get('k', 1.345))

    # ========================================
    # Barometer (optional)
    # ========================================
    baro = config.get('baro', {})
    result['USE_BARO'] = bool(baro.get('enabled', False))
    result['NOISE_BARO'] = float(baro.get('noise', result['NOISE_BARO']))
    result['BARO_REFERENCE_PRESSURE'] = baro.get('reference_pressure')

    # ========================================
    # Prior
    # ========================================
    prior = config.get('prior', {})
    result['NOISE_PRIOR_POSE'] = np.array(prior.get('pose', result['NOISE_PRIOR_POSE']), dtype=float)
    result['NOISE_PRIOR_VELOCITY'] = np.array(prior.get('velocity', result['NOISE_PRIOR_VELOCITY']), dtype=float)
    result['NOISE_PRIOR_BIAS'] = np.array(prior.get('bias', result['NOISE_PRIOR_BIAS']), dtype=float)

    # ========================================
    # Smoother
    # ========================================
    smoother = config.get('smoother', {})
    result['SMOOTHER_LAG'] = float(smoother.get('lag', result['SMOOTHER_LAG']))
    result['SMOOTHER_MAX_ITERATIONS'] = int(smoother.get('max_iterations', result['SMOOTHER_MAX_ITERATIONS']))

    # ========================================
    # Mounting calibration (run_calibration.py)
    # ========================================
    calibration = config.get('calibration', {})
    result['CALIB_LOOP_CLOSURE_SIGMAS'] = np.array(
        calibration.get('loop_closure', result['CALIB_LOOP_CLOSURE_SIGMAS']), dtype=float)
    result['CALIB_ZERO_VELOCITY_SIGMA'] = float(
        calibration.get('zero_velocity', result['CALIB_ZERO_VELOCITY_SIGMA']))
    result['CALIB_MAX_ITERATIONS'] = int(calibration.get('max_iterations', result['CALIB_MAX_ITERATIONS']))

    return result


def default_config() -> Dict[str, Any]:
    """Copy of the module defaults in load_config() format."""
    return copy.deepcopy({
        'FRAME_ID': FRAME_ID,
        'IMU_PARAMS': IMU_PARAMS,
        'GRAVITY': GRAVITY,
        'INIT_SAMPLES': INIT_SAMPLES,
        'ESTIMATE_GYRO_BIAS': ESTIMATE_GYRO_BIAS,
        'INITIAL_GYRO_BIAS': INITIAL_GYRO_BIAS,
        'INITIAL_ACCEL_BIAS': INITIAL_ACCEL_BIAS,
        'B_T_BR': B_T_BR,
        'MIN_DETECTION_RANGE': MIN_DETECTION_RANGE,
        'NOISE_DOPPLER': NOISE_DOPPLER,
        'NOISE_TRACK': NOISE_TRACK,
        'DOPPLER_ROBUST_KIND': DOPPLER_ROBUST_KIND,
        'DOPPLER_ROBUST_K': DOPPLER_ROBUST_K,
        'USE_BARO': USE_BARO,
        'NOISE_BARO': NOISE_BARO,
        'BARO_REFERENCE_PRESSURE': None,
        'NOISE_PRIOR_POSE': NOISE_PRIOR_POSE,
        'NOISE_PRIOR_VELOCITY': NOISE_PRIOR_VELOCITY,
        'NOISE_PRIOR_BIAS': NOISE_PRIOR_BIAS,
        'SMOOTHER_LAG': SMOOTHER_LAG,
        'SMOOTHER_MAX_ITERATIONS': SMOOTHER_MAX_ITERATIONS,
        'CALIB_LOOP_CLOSURE_SIGMAS': CALIB_LOOP_CLOSURE_SIGMAS,
        'CALIB_ZERO_VELOCITY_SIGMA': CALIB_ZERO_VELOCITY_SIGMA,
        'CALIB_MAX_ITERATIONS': CALIB_MAX_ITERATIONS,
    })


def make_preintegration_params(config: Dict[str, Any]) -> PreintegrationParams:
    imu = config['IMU_PARAMS']
    return PreintegrationParams(
        sigma_g=imu['gyr_n'],
        sigma_a=imu['acc_n'],
        sigma_bg=imu['gyr_w'],
        sigma_ba=imu['acc_w'],
        sigma_int=imu['integration_sigma'],
        gravity=np.asarray(config['GRAVITY'], dtype=float).copy(),
        max_dt=imu['max_dt'],
    )


def build_noise_models(config: Dict[str, Any]) -> Dict[str, NoiseModel]:
    """
    Noise models keyed by role: prior_pose, prior_velocity, prior_bias,
    doppler, track, baro.
    """
    doppler = NoiseModel.isotropic(1, config['NOISE_DOPPLER'])
    if config.get('DOPPLER_ROBUST_KIND'):
        doppler = doppler.robust(config['DOPPLER_ROBUST_KIND'], config['DOPPLER_ROBUST_K'])

    def _sigmas(value, dim):
        value = np.atleast_1d(np.asarray(value, dtype=float))
        return np.full(dim, value[0]) if value.size == 1 else value.reshape(dim)

    return {
        'prior_pose': NoiseModel.from_sigmas(_sigmas(config['NOISE_PRIOR_POSE'], 6)),
        'prior_velocity': NoiseModel.from_sigmas(_sigmas(config['NOISE_PRIOR_VELOCITY'], 3)),
        'prior_bias': NoiseModel.from_sigmas(_sigmas(config['NOISE_PRIOR_BIAS'], 6)),
        'doppler': doppler,
        'track': NoiseModel.from_sigmas(_sigmas(config['NOISE_TRACK'], 3)),
        'baro': NoiseModel.isotropic(1, config['NOISE_BARO']),
    }


# =============================================================================
# Default Configuration Variables (overridden by load_config)
# =============================================================================

FRAME_ID = "odom"

# IMU parameters
IMU_PARAMS = {
    'acc_n': 1.0e-2,
    'gyr_n': 1.0e-3,
    'acc_w': 1.0e-4,
    'gyr_w': 1.0e-5,
    'integration_sigma': 1.0e-4,
    'max_dt': 0.1,
    'g_norm': G_NORM,
}
GRAVITY = np.array([0.0, 0.0, -G_NORM])
INIT_SAMPLES = 200  # static samples for gravity alignment
ESTIMATE_GYRO_BIAS = True
INITIAL_GYRO_BIAS = np.zeros(3, dtype=float)
INITIAL_ACCEL_BIAS = np.zeros(3, dtype=float)

# Radar
B_T_BR = Pose3.identity()
MIN_DETECTION_RANGE = 0.1  # m
NOISE_DOPPLER = 0.05  # m/s
NOISE_TRACK = np.array([0.02, 0.02, 0.1])  # bearing tangent [rad] x2, range [m]
DOPPLER_ROBUST_KIND = None
DOPPLER_ROBUST_K = 1.345

# Barometer
USE_BARO = False
NOISE_BARO = 0.5  # m

# Prior (rotation [rad] x3, position [m] x3 / velocity [m/s] / accel x3, gyro x3)
NOISE_PRIOR_POSE = np.array([0.05, 0.05, 1.0e-3, 1.0e-3, 1.0e-3, 1.0e-3])
NOISE_PRIOR_VELOCITY = np.array([0.1])
NOISE_PRIOR_BIAS = np.array([0.1, 0.1, 0.1, 0.01, 0.01, 0.01])

# Smoother
SMOOTHER_LAG = 3.0  # s
SMOOTHER_MAX_ITERATIONS = 20

# Mounting calibration
CALIB_LOOP_CLOSURE_SIGMAS = np.array([0.01, 0.01, 0.01, 0.05, 0.05, 0.05])  # rot rad x3, pos m x3
CALIB_ZERO_VELOCITY_SIGMA = 1.0e-3  # m/s
CALIB_MAX_ITERATIONS = 200
