"""
RIO (Radar-Inertial Odometry) Package

Sliding-window radar-inertial estimator: IMU preintegration chain, factor
graph construction from radar Doppler / landmark / barometer measurements,
and an asynchronous fixed-lag optimization that never blocks prediction.

Version: 0.3.0

Changes in v0.3.0:
- NEW: Barometer height factor with a height bias variable
  * Bias seeded from the first sample (height - p_z)
  * Height bias timestamp refreshed on every reference, stays in window
- NEW: Bearing-range factors for tracked radar landmarks
  * Landmarks seeded once, timestamps refreshed on every observation
- IMPROVED: Optimization coordinator recovers after a solver exception
  * Finished worker is reaped by the next solve(), no stuck Solving state

Changes in v0.2.0:
- NEW: FixedLagSmoother on scipy.optimize.least_squares with Jacobian sparsity
- NEW: Per-phase timing (optimize, cachePropagations, dequeCleanup,
  copyCachedPropagations, repropagateNewPropagations)
- FIX: split() at a sample time replays the remaining samples from the
  boundary so every propagation integrates from its own anchor

Changes in v0.1.0:
- Propagation chain with split / repropagate
- Static initialization (gravity alignment, gyro bias)
"""

__version__ = "0.3.0"
