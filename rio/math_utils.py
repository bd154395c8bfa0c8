#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RIO Math Utilities Module
=========================

Rotation, quaternion and rigid-transform helpers for radar-inertial odometry.

Quaternion Convention:
----------------------
All quaternions use Hamilton convention with [w, x, y, z] ordering unless a
function name says otherwise (``*_xyzw`` follows scipy / ROS ordering).

Frame Conventions:
------------------
- I: inertial (odometry) frame, Z up, gravity = [0, 0, -g]
- B: body (IMU) frame
- R: radar sensor frame

Key Operations:
---------------
- so3_exp / so3_log: exponential and logarithm maps of SO(3)
- so3_right_jacobian: right Jacobian used by preintegration noise propagation
- Pose3: rotation + translation with compose / retract / local
- rotation_from_gravity: roll/pitch alignment from a static accelerometer mean

Author: RIO project
"""

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation as R_scipy


# =============================================================================
# SO(3)
# =============================================================================

def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """Create 3x3 skew-symmetric matrix such that skew(a) @ b == cross(a, b)."""
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0]
    ], dtype=float)


def so3_exp(phi: np.ndarray) -> np.ndarray:
    """
    Exponential map from rotation vector to rotation matrix.

    Rodrigues formula: Exp(θ) = I + sin(θ)/θ [θ]× + (1-cos(θ))/θ² [θ]×²
    """
    phi = np.asarray(phi, dtype=float).reshape(3,)
    theta = np.linalg.norm(phi)
    if theta < 1e-8:
        return np.eye(3) + skew_symmetric(phi)
    axis = phi / theta
    skew_axis = skew_symmetric(axis)
    return np.eye(3) + np.sin(theta) * skew_axis + \
        (1 - np.cos(theta)) * (skew_axis @ skew_axis)


def so3_log(R: np.ndarray) -> np.ndarray:
    """Logarithm map from rotation matrix to rotation vector."""
    return R_scipy.from_matrix(R).as_rotvec()


def so3_right_jacobian(phi: np.ndarray) -> np.ndarray:
    """Right Jacobian of SO(3), Jr(θ)."""
    phi = np.asarray(phi, dtype=float).reshape(3,)
    theta = np.linalg.norm(phi)
    if theta < 1e-8:
        return np.eye(3) - 0.5 * skew_symmetric(phi)
    axis = phi / theta
    skew_axis = skew_symmetric(axis)
    return np.eye(3) - (1 - np.cos(theta)) / theta * skew_axis + \
        (theta - np.sin(theta)) / theta * (skew_axis @ skew_axis)


# =============================================================================
# Quaternion Operations (all use [w, x, y, z] Hamilton convention)
# =============================================================================

def quat_normalize(q: np.ndarray) -> np.ndarray:
    """Normalize quaternion to unit length (identity for degenerate input)."""
    norm = np.linalg.norm(q)
    if norm < 1e-10:
        return np.array([1.0, 0.0, 0.0, 0.0])
    return q / norm


def quat_to_rot(q: np.ndarray) -> np.ndarray:
    """Convert quaternion [w,x,y,z] to 3x3 rotation matrix."""
    w, x, y, z = quat_normalize(np.asarray(q, dtype=float))
    return np.array([
        [1-2*(y*y+z*z), 2*(x*y-w*z),   2*(x*z+w*y)],
        [2*(x*y+w*z),   1-2*(x*x+z*z), 2*(y*z-w*x)],
        [2*(x*z-w*y),   2*(y*z+w*x),   1-2*(x*x+y*y)]
    ])


def rot_to_quat(R: np.ndarray) -> np.ndarray:
    """Convert 3x3 rotation matrix to quaternion [w,x,y,z] with w >= 0."""
    x, y, z, w = R_scipy.from_matrix(R).as_quat()
    q = np.array([w, x, y, z])
    if q[0] < 0:
        q = -q
    return quat_normalize(q)


def rotation_from_gravity(acc_mean: np.ndarray) -> np.ndarray:
    """
    Roll/pitch alignment from a static accelerometer mean.

    A static accelerometer measures the reaction to gravity, i.e. +g along
    the world up axis expressed in the body frame. Returns R_IB such that
    R_IB @ acc_mean points along +Z. Yaw is unobservable and set to zero.
    """
    a = np.asarray(acc_mean, dtype=float).reshape(3,)
    norm = np.linalg.norm(a)
    if norm < 1e-6:
        return np.eye(3)
    a = a / norm
    roll = np.arctan2(a[1], a[2])
    pitch = np.arctan2(-a[0], np.sqrt(a[1] ** 2 + a[2] ** 2))
    return R_scipy.from_euler('ZYX', [0.0, pitch, roll]).as_matrix()


# =============================================================================
# Rigid Transforms
# =============================================================================

@dataclass(frozen=True, eq=False)
class Pose3:
    """
    Rigid transform T_AB = (R_AB, A_t_AB).

    Perturbations are applied on the right (body frame), rotation first:
        T.retract([dθ, dt]) = (R Exp(dθ), t + R dt)
    """
    R: np.ndarray
    t: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "R", np.asarray(self.R, dtype=float).reshape(3, 3))
        object.__setattr__(self, "t", np.asarray(self.t, dtype=float).reshape(3,))

    @classmethod
    def identity(cls) -> "Pose3":
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> "Pose3":
        T = np.asarray(T, dtype=float)
        return cls(T[:3, :3], T[:3, 3])

    @classmethod
    def from_quat_xyzw(cls, q_xyzw, t) -> "Pose3":
        return cls(R_scipy.from_quat(np.asarray(q_xyzw, dtype=float)).as_matrix(), t)

    def matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.R
        T[:3, 3] = self.t
        return T

    def quat_xyzw(self) -> np.ndarray:
        return R_scipy.from_matrix(self.R).as_quat()

    def compose(self, other: "Pose3") -> "Pose3":
        return Pose3(self.R @ other.R, self.R @ other.t + self.t)

    def inverse(self) -> "Pose3":
        return Pose3(self.R.T, -self.R.T @ self.t)

    def transform_from(self, p: np.ndarray) -> np.ndarray:
        """Map a point from the local frame B into frame A."""
        return self.R @ np.asarray(p, dtype=float) + self.t

    def transform_to(self, p: np.ndarray) -> np.ndarray:
        """Map a point from frame A into the local frame B."""
        return self.R.T @ (np.asarray(p, dtype=float) - self.t)

    def retract(self, delta: np.ndarray) -> "Pose3":
        delta = np.asarray(delta, dtype=float).reshape(6,)
        return Pose3(self.R @ so3_exp(delta[:3]), self.t + self.R @ delta[3:])

    def local(self, other: "Pose3") -> np.ndarray:
        """Tangent vector d such that self.retract(d) == other."""
        return np.concatenate([
            so3_log(self.R.T @ other.R),
            self.R.T @ (other.t - self.t),
        ])

    def __repr__(self) -> str:
        return f"Pose3(t={np.array2string(self.t, precision=3)}, " \
               f"rpy={np.array2string(R_scipy.from_matrix(self.R).as_euler('xyz'), precision=3)})"
