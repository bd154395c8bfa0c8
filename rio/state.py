"""Navigation state snapshot carried along a propagation chain."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from .data_loaders import IMURecord
from .imu_preintegration import IMUPreintegration, ImuBias
from .math_utils import Pose3


@dataclass(frozen=True, eq=False)
class State:
    """
    Immutable snapshot of navigation state.

    `integrator` holds the preintegration since the anchor (first) State of
    the owning propagation. A State owns its integrator; never mutate it,
    copy it instead.
    """

    frame_id: str
    position: np.ndarray  # I_p_IB
    orientation: np.ndarray  # R_IB
    velocity: np.ndarray  # I_v_IB
    imu: Optional[IMURecord]
    integrator: IMUPreintegration
    baro_height_bias: Optional[int] = None  # index of the height bias variable

    def __post_init__(self):
        object.__setattr__(self, "position", np.asarray(self.position, dtype=float).reshape(3,))
        object.__setattr__(self, "orientation", np.asarray(self.orientation, dtype=float).reshape(3, 3))
        object.__setattr__(self, "velocity", np.asarray(self.velocity, dtype=float).reshape(3,))

    @classmethod
    def from_pose(cls, frame_id: str, pose: Pose3, velocity: np.ndarray,
                  imu: Optional[IMURecord], integrator: IMUPreintegration,
                  baro_height_bias: Optional[int] = None) -> "State":
        return cls(frame_id, pose.t, pose.R, velocity, imu, integrator, baro_height_bias)

    @property
    def t(self) -> float:
        return self.imu.t

    @property
    def pose(self) -> Pose3:
        return Pose3(self.orientation, self.position)

    @property
    def bias(self) -> ImuBias:
        return self.integrator.bias_hat

    @property
    def is_complete(self) -> bool:
        return self.imu is not None and self.integrator is not None

    def with_reset_integration(self, bias: Optional[ImuBias] = None) -> "State":
        """Copy of this State anchoring a fresh preintegration window."""
        integrator = self.integrator.copy()
        if bias is None:
            integrator.reset_integration()
        else:
            integrator.reset_integration_and_set_bias(bias)
        return State(self.frame_id, self.position, self.orientation, self.velocity,
                      self.imu, integrator, self.baro_height_bias)


def trajectory_row(idx: int, t: float, pose: Pose3, velocity: np.ndarray,
                   bias: ImuBias) -> Dict[str, float]:
    """Flat CSV row of one graph node; the columns load_odometry_csv reads back."""
    q = pose.quat_xyzw()
    return {
        "idx": idx,
        "t": t,
        "px": pose.t[0], "py": pose.t[1], "pz": pose.t[2],
        "qx": q[0], "qy": q[1], "qz": q[2], "qw": q[3],
        "vx": velocity[0], "vy": velocity[1], "vz": velocity[2],
        "bax": bias.accelerometer[0], "bay": bias.accelerometer[1],
        "baz": bias.accelerometer[2],
        "bgx": bias.gyroscope[0], "bgy": bias.gyroscope[1], "bgz": bias.gyroscope[2],
    }
