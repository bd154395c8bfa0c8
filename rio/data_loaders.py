#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RIO Data Loaders Module

Measurement records and CSV loading utilities for IMU, radar, barometer
and odometry recordings.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from .math_utils import Pose3

logger = logging.getLogger(__name__)

# Detections closer than this are geometrically degenerate for Doppler.
MIN_DETECTION_RANGE = 0.1

# International Standard Atmosphere constants
ISA_SEA_LEVEL_PRESSURE = 101325.0  # Pa
ISA_TEMPERATURE = 288.15  # K
ISA_LAPSE_RATE = 0.0065  # K/m
ISA_EXPONENT = 0.190263  # R * L / (g * M)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class IMURecord:
    """Single IMU measurement."""
    t: float  # timestamp (seconds)
    ang: np.ndarray  # angular velocity [wx,wy,wz] rad/s
    lin: np.ndarray  # specific force [ax,ay,az] m/s²
    frame_id: str = "imu"

    def at_time(self, t: float) -> "IMURecord":
        """Zero-order-hold copy of this reading stamped at t."""
        return dataclasses.replace(self, t=float(t), ang=self.ang.copy(), lin=self.lin.copy())


@dataclass
class RadarDetection:
    """Single radar detection in the radar frame."""
    position: np.ndarray  # R_p_RT [x,y,z] m
    velocity: float  # Doppler (radial) velocity m/s, positive receding

    @property
    def range(self) -> float:
        return float(np.linalg.norm(self.position))


@dataclass
class LandmarkTrack:
    """Landmark tracked by the radar front end."""
    id: int
    R_p_RT: np.ndarray  # latest landmark position in the radar frame
    added: bool = False  # initial value already in the graph

    def set_added(self):
        self.added = True


@dataclass
class RadarScan:
    """One radar scan: detections and tracked landmarks at a common time."""
    t: float
    detections: List[RadarDetection] = field(default_factory=list)
    tracks: List[LandmarkTrack] = field(default_factory=list)


@dataclass
class BaroRecord:
    """Barometric height sample."""
    t: float
    height: float  # m


@dataclass
class OdometryRecord:
    """Navigation state from a previous run, used as a batch initial guess."""
    t: float
    pose: Pose3  # T_IB
    velocity: np.ndarray  # I_v_IB m/s


# =============================================================================
# Helpers
# =============================================================================

def filter_detections(detections: List[RadarDetection],
                      min_range: float = MIN_DETECTION_RANGE) -> List[RadarDetection]:
    """Drop detections too close to the sensor to define a bearing."""
    kept = []
    for det in detections:
        if det.range < min_range:
            logger.warning("[RADAR] Ignoring detection with distance %.3f m < %.3f m",
                           det.range, min_range)
            continue
        kept.append(det)
    return kept


def pressure_to_height(pressure: float,
                       reference_pressure: float = ISA_SEA_LEVEL_PRESSURE) -> float:
    """Barometric height above the reference pressure level (ISA troposphere)."""
    return ISA_TEMPERATURE / ISA_LAPSE_RATE * \
        (1.0 - (float(pressure) / float(reference_pressure)) ** ISA_EXPONENT)


def _find_time_column(df: pd.DataFrame, label: str) -> str:
    for col in ("t", "time", "stamp", "timestamp"):
        if col in df.columns:
            return col
    raise ValueError(f"{label} CSV missing timestamp column (t, time, stamp or timestamp)")


def _require_columns(df: pd.DataFrame, cols: List[str], label: str):
    for c in cols:
        if c not in df.columns:
            raise ValueError(f"{label} CSV missing column: {c}")


# =============================================================================
# Loaders
# =============================================================================

def load_imu_csv(path: str) -> List[IMURecord]:
    """
    Load IMU samples.

    Required columns: t, ang_x, ang_y, ang_z, lin_x, lin_y, lin_z
    """
    df = pd.read_csv(path)
    t_col = _find_time_column(df, "IMU")
    _require_columns(df, ["ang_x", "ang_y", "ang_z", "lin_x", "lin_y", "lin_z"], "IMU")

    df = df.sort_values(t_col).reset_index(drop=True)
    ang = df[["ang_x", "ang_y", "ang_z"]].to_numpy(dtype=float)
    lin = df[["lin_x", "lin_y", "lin_z"]].to_numpy(dtype=float)
    recs = [IMURecord(t=float(t), ang=ang[i], lin=lin[i])
            for i, t in enumerate(df[t_col].to_numpy(dtype=float))]

    logger.info("[IMU] Loaded %d samples from %s", len(recs), os.path.basename(path))
    return recs


def load_radar_csv(path: Optional[str],
                   min_range: float = MIN_DETECTION_RANGE) -> List[RadarScan]:
    """
    Load radar detections grouped into scans by timestamp.

    Required columns: t, x, y, z, velocity
    Optional column: track_id (rows with a non-negative id also become a
    tracked landmark of that scan)
    """
    if not path or not os.path.exists(path):
        return []

    df = pd.read_csv(path)
    t_col = _find_time_column(df, "Radar")
    _require_columns(df, ["x", "y", "z", "velocity"], "Radar")
    has_tracks = "track_id" in df.columns

    scans = []
    for t, group in df.sort_values(t_col).groupby(t_col, sort=True):
        scan = RadarScan(t=float(t))
        for _, r in group.iterrows():
            p = np.array([r["x"], r["y"], r["z"]], dtype=float)
            scan.detections.append(RadarDetection(position=p, velocity=float(r["velocity"])))
            if has_tracks and not pd.isna(r["track_id"]) and int(r["track_id"]) >= 0:
                scan.tracks.append(LandmarkTrack(id=int(r["track_id"]), R_p_RT=p.copy()))
        scan.detections = filter_detections(scan.detections, min_range)
        scans.append(scan)

    logger.info("[Radar] Loaded %d scans (%d detections)", len(scans),
                sum(len(s.detections) for s in scans))
    return scans


def load_baro_csv(path: Optional[str],
                  reference_pressure: Optional[float] = None) -> List[BaroRecord]:
    """
    Load barometer samples.

    Uses a `height` column if present, otherwise converts a `pressure` column
    [Pa] to height relative to `reference_pressure` (first sample by default).
    """
    if not path or not os.path.exists(path):
        return []

    df = pd.read_csv(path)
    t_col = _find_time_column(df, "Baro")
    df = df.sort_values(t_col).reset_index(drop=True)

    if "height" in df.columns:
        heights = df["height"].to_numpy(dtype=float)
    elif "pressure" in df.columns:
        pressures = df["pressure"].to_numpy(dtype=float)
        p0 = float(pressures[0]) if reference_pressure is None else float(reference_pressure)
        heights = np.array([pressure_to_height(p, p0) for p in pressures])
    else:
        raise ValueError("Baro CSV missing column: height or pressure")

    recs = [BaroRecord(t=float(t), height=float(h))
            for t, h in zip(df[t_col].to_numpy(dtype=float), heights)]
    logger.info("[Baro] Loaded %d samples", len(recs))
    return recs


def load_odometry_csv(path: str) -> List[OdometryRecord]:
    """
    Load an odometry trajectory, e.g. the trajectory.csv written by run_rio.py.

    Required columns: t, px, py, pz, qx, qy, qz, qw, vx, vy, vz
    (velocity in the inertial frame)
    """
    df = pd.read_csv(path)
    t_col = _find_time_column(df, "Odometry")
    _require_columns(df, ["px", "py", "pz", "qx", "qy", "qz", "qw", "vx", "vy", "vz"], "Odometry")

    df = df.sort_values(t_col).reset_index(drop=True)
    p = df[["px", "py", "pz"]].to_numpy(dtype=float)
    q = df[["qx", "qy", "qz", "qw"]].to_numpy(dtype=float)
    v = df[["vx", "vy", "vz"]].to_numpy(dtype=float)
    recs = [OdometryRecord(t=float(t), pose=Pose3.from_quat_xyzw(q[i], p[i]), velocity=v[i])
            for i, t in enumerate(df[t_col].to_numpy(dtype=float))]

    logger.info("[Odom] Loaded %d poses from %s", len(recs), os.path.basename(path))
    return recs
