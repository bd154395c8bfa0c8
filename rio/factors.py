#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Factor Definitions
==================

Residual models of the sliding-window factor graph.

Variables:
----------
- X(i): Pose3 T_IB
- V(i): velocity I_v_IB (3,)
- B(i): ImuBias (accel, gyro)
- L(j): landmark position I_p_IL (3,)
- H(k): barometer height bias (1,)
- C(0): radar mounting B_T_BR (batch calibration only)

Every factor returns an unwhitened error vector; the noise model whitens it.
Manifold variables are perturbed through `retract_value`, so solvers only
ever see flat tangent vectors.

Measurement Models:
-------------------
Doppler (one detection with position R_p_RT and Doppler velocity z):
    B_v_IR = R_IBᵀ I_v_IB + (ω_meas - b_g) × B_t_BR
    R_v_IR = R_BRᵀ B_v_IR
    h      = -(R_p_RT / |R_p_RT|) · R_v_IR
A static target seen from a sensor moving towards it yields negative Doppler.

Bearing-range (landmark L, sensor pose T_IR = T_IB ∘ T_BR):
    p = T_IRᵀ (I_p_IL)
    h = (p / |p|, |p|)
The bearing error is expressed in the tangent plane of the measured bearing.

Barometer:
    h = p_z + b_h

Author: RIO project
"""

from typing import Any, Mapping, Optional, Sequence

import numpy as np

from .imu_preintegration import IMUPreintegration, ImuBias
from .keys import Key, key_str
from .math_utils import Pose3, so3_log
from .noise import NoiseModel


# =============================================================================
# Manifold helpers
# =============================================================================

def value_dim(value: Any) -> int:
    if isinstance(value, (Pose3, ImuBias)):
        return 6
    return int(np.size(value))


def retract_value(value: Any, delta: np.ndarray) -> Any:
    if isinstance(value, (Pose3, ImuBias)):
        return value.retract(delta)
    return np.asarray(value, dtype=float) + np.asarray(delta, dtype=float).reshape(np.shape(value))


def local_value(value: Any, other: Any) -> np.ndarray:
    if isinstance(value, (Pose3, ImuBias)):
        return value.local(other)
    return (np.asarray(other, dtype=float) - np.asarray(value, dtype=float)).reshape(-1)


def copy_value(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.copy()
    return value


def _tangent_basis(unit: np.ndarray) -> np.ndarray:
    """2x3 orthonormal basis of the plane perpendicular to `unit`."""
    helper = np.eye(3)[int(np.argmin(np.abs(unit)))]
    b1 = np.cross(unit, helper)
    b1 /= np.linalg.norm(b1)
    b2 = np.cross(unit, b1)
    return np.vstack([b1, b2])


# =============================================================================
# Factors
# =============================================================================

class Factor:
    """Base factor: keys + noise model + unwhitened error."""

    def __init__(self, keys: Sequence[Key], noise_model: NoiseModel):
        self.keys = tuple(keys)
        self.noise_model = noise_model

    @property
    def dim(self) -> int:
        return self.noise_model.dim

    def unwhitened_error(self, values: Mapping[Key, Any]) -> np.ndarray:
        raise NotImplementedError

    def whitened_error(self, values: Mapping[Key, Any]) -> np.ndarray:
        return self.noise_model.whiten(self.unwhitened_error(values))

    def error(self, values: Mapping[Key, Any]) -> float:
        r = self.whitened_error(values)
        return 0.5 * float(r @ r)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(key_str(k) for k in self.keys)})"


class PriorFactor(Factor):
    """Prior on a single variable: local(prior, value)."""

    def __init__(self, key: Key, prior: Any, noise_model: NoiseModel):
        super().__init__([key], noise_model)
        self.prior = copy_value(prior)

    def unwhitened_error(self, values):
        return local_value(self.prior, values[self.keys[0]])


class CombinedImuFactor(Factor):
    """
    Preintegrated IMU factor between nodes i and j including bias random
    walk. Error ordering: [r_R, r_v, r_p, r_b] (15,).
    """

    def __init__(self, pose_i: Key, vel_i: Key, pose_j: Key, vel_j: Key,
                 bias_i: Key, bias_j: Key, preintegration: IMUPreintegration):
        self.preintegration = preintegration
        params = preintegration.params
        cov = np.zeros((15, 15), dtype=float)
        cov[0:9, 0:9] = preintegration.get_covariance()
        cov[9:15, 9:15] = params.bias_random_walk_covariance(preintegration.dt_sum)
        cov += np.eye(15) * 1e-12
        super().__init__([pose_i, vel_i, pose_j, vel_j, bias_i, bias_j],
                         NoiseModel.from_covariance(cov))

    def unwhitened_error(self, values):
        pose_i, v_i, pose_j, v_j, bias_i, bias_j = (values[k] for k in self.keys)
        preint = self.preintegration
        delta_R, delta_v, delta_p = preint.get_deltas_corrected(bias_i)
        g = preint.params.gravity
        dt = preint.dt_sum
        R_i_T = pose_i.R.T

        r_R = so3_log(delta_R.T @ R_i_T @ pose_j.R)
        r_v = R_i_T @ (v_j - v_i - g * dt) - delta_v
        r_p = R_i_T @ (pose_j.t - pose_i.t - v_i * dt - 0.5 * g * dt ** 2) - delta_p
        r_b = bias_j.vector() - bias_i.vector()
        return np.concatenate([r_R, r_v, r_p, r_b])


class DopplerFactor(Factor):
    """Radial velocity of one static radar detection."""

    def __init__(self, pose: Key, vel: Key, bias: Key, R_p_RT: np.ndarray,
                 doppler: float, B_omega_IB: np.ndarray, B_T_BR: Pose3,
                 noise_model: NoiseModel):
        super().__init__([pose, vel, bias], noise_model)
        p = np.asarray(R_p_RT, dtype=float).reshape(3,)
        self.R_p_RT = p.copy()
        self.unit = p / np.linalg.norm(p)
        self.doppler = float(doppler)
        self.B_omega_IB = np.asarray(B_omega_IB, dtype=float).reshape(3,).copy()
        self.B_T_BR = B_T_BR

    def predict(self, T_IB: Pose3, I_v_IB: np.ndarray, bias: ImuBias,
                B_T_BR: Optional[Pose3] = None) -> float:
        if B_T_BR is None:
            B_T_BR = self.B_T_BR
        omega = bias.correct_gyroscope(self.B_omega_IB)
        B_v_IR = T_IB.R.T @ np.asarray(I_v_IB, dtype=float) + np.cross(omega, B_T_BR.t)
        R_v_IR = B_T_BR.R.T @ B_v_IR
        return -float(self.unit @ R_v_IR)

    def unwhitened_error(self, values):
        T_IB, I_v_IB, bias = (values[k] for k in self.keys[:3])
        return np.array([self.predict(T_IB, I_v_IB, bias) - self.doppler])


class MountingDopplerFactor(DopplerFactor):
    """Doppler factor with the radar mounting B_T_BR as a fourth variable."""

    def __init__(self, pose: Key, vel: Key, bias: Key, mounting: Key, R_p_RT: np.ndarray,
                 doppler: float, B_omega_IB: np.ndarray, noise_model: NoiseModel):
        super().__init__(pose, vel, bias, R_p_RT, doppler, B_omega_IB, None, noise_model)
        self.keys = self.keys + (mounting,)

    def unwhitened_error(self, values):
        T_IB, I_v_IB, bias, B_T_BR = (values[k] for k in self.keys)
        return np.array([self.predict(T_IB, I_v_IB, bias, B_T_BR) - self.doppler])


class BetweenFactor(Factor):
    """Relative pose T_a⁻¹ T_b = measured."""

    def __init__(self, pose_a: Key, pose_b: Key, measured: Pose3, noise_model: NoiseModel):
        super().__init__([pose_a, pose_b], noise_model)
        self.measured = measured

    def unwhitened_error(self, values):
        T_a, T_b = values[self.keys[0]], values[self.keys[1]]
        return self.measured.local(T_a.inverse().compose(T_b))


class BearingRangeFactor(Factor):
    """Bearing and range from the radar to a landmark."""

    def __init__(self, pose: Key, landmark: Key, B_T_BR: Pose3,
                 R_p_RT: np.ndarray, noise_model: NoiseModel):
        super().__init__([pose, landmark], noise_model)
        p = np.asarray(R_p_RT, dtype=float).reshape(3,)
        self.range = float(np.linalg.norm(p))
        self.bearing = p / self.range
        self.B_T_BR = B_T_BR
        self._basis = _tangent_basis(self.bearing)

    def unwhitened_error(self, values):
        T_IB = values[self.keys[0]]
        I_p_IL = values[self.keys[1]]
        T_IR = T_IB.compose(self.B_T_BR)
        p = T_IR.transform_to(I_p_IL)
        r = float(np.linalg.norm(p))
        bearing = p / max(r, 1e-9)
        return np.concatenate([self._basis @ bearing, [r - self.range]])


class BaroFactor(Factor):
    """Barometric height: p_z + b_h = height."""

    def __init__(self, pose: Key, height_bias: Key, height: float, noise_model: NoiseModel):
        super().__init__([pose, height_bias], noise_model)
        self.height = float(height)

    def unwhitened_error(self, values):
        T_IB = values[self.keys[0]]
        b_h = np.asarray(values[self.keys[1]], dtype=float).reshape(-1)
        return np.array([T_IB.t[2] + b_h[0] - self.height])
