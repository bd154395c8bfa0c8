#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
IMU Preintegration Module
=========================

Implements IMU preintegration on manifold following Forster et al., TRO 2017:
"On-Manifold Preintegration for Real-Time Visual-Inertial Odometry"

Theory Overview:
----------------
Instead of integrating from t_i to t_j with specific biases, we preintegrate
relative measurements in the body frame of the anchor state i:

   - ΔR_ij: Relative rotation from i to j
   - Δv_ij: Velocity increment in frame i
   - Δp_ij: Position increment in frame i

and store Jacobians w.r.t. biases so that a changed bias estimate can be
applied by first-order correction:

     ΔR_corr = ΔR * Exp(J_R_bg * δbg)
     Δv_corr = Δv + J_v_bg * δbg + J_v_ba * δba
     Δp_corr = Δp + J_p_bg * δbg + J_p_ba * δba

State Prediction:
-----------------
Gravity is NOT compensated during preintegration. It is applied in the world
frame when predicting the state at j from the anchor state at i:

    R_j = R_i * ΔR_ij
    v_j = v_i + g*Δt + R_i * Δv_ij
    p_j = p_i + v_i*Δt + 0.5*g*Δt² + R_i * Δp_ij

Covariance Propagation:
-----------------------
    Σ_{k+1} = A_k * Σ_k * A_k' + B_k * Q_d * B_k'

with error-state ordering [δθ, δv, δp].

References:
-----------
[1] Forster et al., "On-Manifold Preintegration for Real-Time Visual-Inertial
    Odometry", IEEE TRO 2017

Author: RIO project
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from .math_utils import Pose3, skew_symmetric, so3_exp, so3_right_jacobian

logger = logging.getLogger(__name__)

G_NORM = 9.80665


@dataclass(frozen=True, eq=False)
class ImuBias:
    """Constant accelerometer + gyroscope bias. Tangent ordering: [accel, gyro]."""
    accelerometer: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyroscope: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        object.__setattr__(self, "accelerometer",
                           np.asarray(self.accelerometer, dtype=float).reshape(3,).copy())
        object.__setattr__(self, "gyroscope",
                           np.asarray(self.gyroscope, dtype=float).reshape(3,).copy())

    @classmethod
    def zero(cls) -> "ImuBias":
        return cls()

    @classmethod
    def from_vector(cls, v: np.ndarray) -> "ImuBias":
        v = np.asarray(v, dtype=float).reshape(6,)
        return cls(v[:3], v[3:])

    def vector(self) -> np.ndarray:
        return np.concatenate([self.accelerometer, self.gyroscope])

    def retract(self, delta: np.ndarray) -> "ImuBias":
        return ImuBias.from_vector(self.vector() + np.asarray(delta, dtype=float).reshape(6,))

    def local(self, other: "ImuBias") -> np.ndarray:
        return other.vector() - self.vector()

    def correct_gyroscope(self, w_meas: np.ndarray) -> np.ndarray:
        return np.asarray(w_meas, dtype=float) - self.gyroscope

    def __repr__(self) -> str:
        return f"ImuBias(acc={np.array2string(self.accelerometer, precision=4)}, " \
               f"gyro={np.array2string(self.gyroscope, precision=4)})"


@dataclass
class PreintegrationParams:
    """
    IMU noise parameters.

    Args:
        sigma_g: Gyroscope noise density [rad/s/√Hz]
        sigma_a: Accelerometer noise density [m/s²/√Hz]
        sigma_bg: Gyro bias random walk [rad/s²/√Hz]
        sigma_ba: Accel bias random walk [m/s³/√Hz]
        sigma_int: Position integration noise [m/s/√Hz]
        gravity: Gravity vector in the inertial frame [m/s²]
        max_dt: Longer steps are split into equal sub-steps
    """
    sigma_g: float = 1.0e-3
    sigma_a: float = 1.0e-2
    sigma_bg: float = 1.0e-5
    sigma_ba: float = 1.0e-4
    sigma_int: float = 1.0e-4
    gravity: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, -G_NORM]))
    max_dt: float = 0.1

    def bias_random_walk_covariance(self, dt: float) -> np.ndarray:
        """6x6 bias random walk covariance over dt, ordering [accel, gyro]."""
        return np.diag([self.sigma_ba ** 2] * 3 + [self.sigma_bg ** 2] * 3) * dt


class IMUPreintegration:
    """
    IMU Preintegration on Manifold (Forster et al., TRO 2017).

    Preintegrates IMU measurements since an anchor state:
      - ΔR: Preintegrated rotation (SO(3) rotation matrix)
      - Δv: Preintegrated velocity (3D vector)
      - Δp: Preintegrated position (3D vector)

    Also maintains Jacobians w.r.t. biases for first-order bias correction:
      - J_R_bg (3×3): ∂ΔR/∂bg
      - J_v_bg, J_v_ba (3×3): ∂Δv/∂bg, ∂Δv/∂ba
      - J_p_bg, J_p_ba (3×3): ∂Δp/∂bg, ∂Δp/∂ba

    Usage Example:
        preint = IMUPreintegration(params, ImuBias.zero())
        for imu in samples_since_anchor:
            preint.integrate_measurement(imu.ang, imu.lin, dt)
        pose_j, v_j = preint.predict(pose_i, v_i)
    """

    def __init__(self, params: Optional[PreintegrationParams] = None,
                 bias: Optional[ImuBias] = None):
        self.params = params if params is not None else PreintegrationParams()
        self.reset_integration_and_set_bias(bias if bias is not None else ImuBias.zero())

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset_integration(self):
        """Reset preintegration to identity/zero, keeping the bias estimate."""
        self.delta_R = np.eye(3, dtype=float)
        self.delta_v = np.zeros(3, dtype=float)
        self.delta_p = np.zeros(3, dtype=float)

        self.J_R_bg = np.zeros((3, 3), dtype=float)
        self.J_v_bg = np.zeros((3, 3), dtype=float)
        self.J_v_ba = np.zeros((3, 3), dtype=float)
        self.J_p_bg = np.zeros((3, 3), dtype=float)
        self.J_p_ba = np.zeros((3, 3), dtype=float)

        self.cov = np.zeros((9, 9), dtype=float)
        self.dt_sum = 0.0

    def reset_integration_and_set_bias(self, bias: ImuBias):
        """Reset preintegration with a new linearization point."""
        self.bias_lin = bias
        self.reset_integration()

    @property
    def bias_hat(self) -> ImuBias:
        return self.bias_lin

    def copy(self) -> "IMUPreintegration":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    def integrate_measurement(self, w_meas: np.ndarray, a_meas: np.ndarray, dt: float) -> bool:
        """
        Integrate one IMU measurement (gyro + accel) over time step dt.

        Accelerometer readings are specific force (they include the reaction
        to gravity); gravity is added back in `predict`.

        Returns:
            False if dt is not positive and nothing was integrated.
        """
        if dt <= 0.0:
            logger.warning("[PREINT] Invalid dt=%.9fs (<=0), skipping integration", dt)
            return False

        if dt > self.params.max_dt:
            # Timestamp gap: split into smaller chunks to keep the first-order
            # covariance propagation accurate.
            num_splits = int(np.ceil(dt / self.params.max_dt))
            dt_split = dt / num_splits
            logger.debug("[PREINT] Large dt=%.6fs split into %d x %.6fs", dt, num_splits, dt_split)
            for _ in range(num_splits):
                self._integrate_step(w_meas, a_meas, dt_split)
            return True

        self._integrate_step(w_meas, a_meas, dt)
        return True

    def _integrate_step(self, w_meas: np.ndarray, a_meas: np.ndarray, dt: float):
        # Bias-corrected measurements (using linearization point)
        w_hat = np.asarray(w_meas, dtype=float) - self.bias_lin.gyroscope
        a_hat = np.asarray(a_meas, dtype=float) - self.bias_lin.accelerometer

        # --- Step 1: Rotation delta: ΔR_{k+1} = ΔR_k * Exp(ω_hat * dt)
        theta_vec = w_hat * dt
        delta_R_k1 = self.delta_R @ so3_exp(theta_vec)
        j_r = so3_right_jacobian(theta_vec)

        # --- Step 2: Velocity delta: Δv_{k+1} = Δv_k + ΔR_k * a_hat * dt
        delta_v_k1 = self.delta_v + self.delta_R @ a_hat * dt

        # --- Step 3: Position delta: Δp_{k+1} = Δp_k + Δv_k * dt + 0.5 * ΔR_k * a_hat * dt²
        delta_p_k1 = self.delta_p + self.delta_v * dt + \
            0.5 * self.delta_R @ a_hat * (dt ** 2)

        # --- Step 4: Jacobians w.r.t. biases (Forster Eq. 24-28)
        a_skew = skew_symmetric(a_hat)
        j_r_bg_k1 = delta_R_k1.T @ self.delta_R @ self.J_R_bg - j_r * dt
        j_v_bg_k1 = self.J_v_bg - self.delta_R @ a_skew @ self.J_R_bg * dt
        j_v_ba_k1 = self.J_v_ba - self.delta_R * dt
        j_p_bg_k1 = self.J_p_bg + self.J_v_bg * dt - \
            0.5 * self.delta_R @ a_skew @ self.J_R_bg * (dt ** 2)
        j_p_ba_k1 = self.J_p_ba + self.J_v_ba * dt - 0.5 * self.delta_R * (dt ** 2)

        # --- Step 5: Covariance, error state [δθ, δv, δp]
        A = np.eye(9, dtype=float)
        A[0:3, 0:3] = so3_exp(theta_vec).T
        A[3:6, 0:3] = -self.delta_R @ a_skew * dt
        A[6:9, 0:3] = -0.5 * self.delta_R @ a_skew * (dt ** 2)
        A[6:9, 3:6] = np.eye(3) * dt

        B = np.zeros((9, 9), dtype=float)
        B[0:3, 0:3] = j_r * dt
        B[3:6, 3:6] = self.delta_R * dt
        B[6:9, 3:6] = 0.5 * self.delta_R * (dt ** 2)
        B[6:9, 6:9] = np.eye(3) * dt

        p = self.params
        # Continuous-time densities discretized over dt
        Q = np.diag([p.sigma_g ** 2 / dt] * 3 + [p.sigma_a ** 2 / dt] * 3 +
                    [p.sigma_int ** 2 / dt] * 3)

        cov_new = A @ self.cov @ A.T + B @ Q @ B.T
        if not np.all(np.isfinite(cov_new)):
            logger.warning("[PREINT] Covariance propagation produced inf/nan, keeping previous")
            cov_new = self.cov
        self.cov = (cov_new + cov_new.T) / 2.0

        # --- Step 6: Commit updates
        self.delta_R = delta_R_k1
        self.delta_v = delta_v_k1
        self.delta_p = delta_p_k1

        self.J_R_bg = j_r_bg_k1
        self.J_v_bg = j_v_bg_k1
        self.J_v_ba = j_v_ba_k1
        self.J_p_bg = j_p_bg_k1
        self.J_p_ba = j_p_ba_k1

        self.dt_sum += dt

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_deltas(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Preintegrated (ΔR, Δv, Δp) at the linearization bias."""
        return self.delta_R, self.delta_v, self.delta_p

    def get_deltas_corrected(self, bias: ImuBias) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Bias-corrected preintegrated deltas using first-order correction.

        Args:
            bias: Current bias estimate

        Returns:
            delta_R_corr, delta_v_corr, delta_p_corr
        """
        dbg = bias.gyroscope - self.bias_lin.gyroscope
        dba = bias.accelerometer - self.bias_lin.accelerometer

        delta_R_corr = self.delta_R @ so3_exp(self.J_R_bg @ dbg)
        delta_v_corr = self.delta_v + self.J_v_bg @ dbg + self.J_v_ba @ dba
        delta_p_corr = self.delta_p + self.J_p_bg @ dbg + self.J_p_ba @ dba

        return delta_R_corr, delta_v_corr, delta_p_corr

    def get_covariance(self) -> np.ndarray:
        """Preintegration covariance (9x9), ordering [δθ, δv, δp]."""
        return self.cov.copy()

    def predict(self, pose_i: Pose3, v_i: np.ndarray,
                bias: Optional[ImuBias] = None) -> Tuple[Pose3, np.ndarray]:
        """
        Predict pose and velocity at the end of the preintegration window.

        Args:
            pose_i: Anchor pose T_IB at the start of the window
            v_i: Anchor velocity in the inertial frame
            bias: Bias for first-order correction (defaults to bias_hat)
        """
        if bias is None:
            bias = self.bias_lin
        delta_R, delta_v, delta_p = self.get_deltas_corrected(bias)
        g = self.params.gravity
        dt = self.dt_sum
        v_i = np.asarray(v_i, dtype=float)

        R_j = pose_i.R @ delta_R
        v_j = v_i + g * dt + pose_i.R @ delta_v
        p_j = pose_i.t + v_i * dt + 0.5 * g * dt ** 2 + pose_i.R @ delta_p
        return Pose3(R_j, p_j), v_j
