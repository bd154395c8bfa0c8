import numpy as np

from rio.imu_preintegration import G_NORM, IMUPreintegration, ImuBias, PreintegrationParams
from rio.math_utils import Pose3, so3_exp


def _integrate(preint, w, a, dt, n):
    for _ in range(n):
        preint.integrate_measurement(np.asarray(w, dtype=float), np.asarray(a, dtype=float), dt)
    return preint


def test_static_level_imu_predicts_no_motion():
    preint = _integrate(IMUPreintegration(), [0.0, 0.0, 0.0], [0.0, 0.0, G_NORM], 0.01, 100)

    pose_j, v_j = preint.predict(Pose3.identity(), np.zeros(3))

    assert abs(preint.dt_sum - 1.0) < 1e-12
    assert np.allclose(v_j, 0.0, atol=1e-9)
    assert np.allclose(pose_j.t, 0.0, atol=1e-9)
    assert np.allclose(pose_j.R, np.eye(3), atol=1e-12)


def test_non_positive_dt_is_rejected_without_change():
    preint = _integrate(IMUPreintegration(), [0.1, 0.0, 0.0], [0.0, 0.0, G_NORM], 0.01, 3)
    delta_v = preint.delta_v.copy()

    assert preint.integrate_measurement(np.zeros(3), np.zeros(3), 0.0) is False
    assert preint.integrate_measurement(np.zeros(3), np.zeros(3), -0.01) is False
    assert abs(preint.dt_sum - 0.03) < 1e-12
    assert np.array_equal(preint.delta_v, delta_v)


def test_large_dt_is_split_into_equal_substeps():
    params = PreintegrationParams(max_dt=0.1)
    w = np.array([0.2, -0.1, 0.3])
    a = np.array([0.5, 0.1, G_NORM])

    one_call = IMUPreintegration(params)
    assert one_call.integrate_measurement(w, a, 0.35) is True
    manual = _integrate(IMUPreintegration(params), w, a, 0.35 / 4, 4)

    assert abs(one_call.dt_sum - 0.35) < 1e-12
    assert np.allclose(one_call.delta_R, manual.delta_R)
    assert np.allclose(one_call.delta_p, manual.delta_p)
    assert np.allclose(one_call.get_covariance(), manual.get_covariance())


def test_constant_rate_rotation_matches_exponential_map():
    preint = _integrate(IMUPreintegration(), [0.0, 0.0, 0.5], [0.0, 0.0, G_NORM], 0.01, 100)

    assert np.allclose(preint.delta_R, so3_exp(np.array([0.0, 0.0, 0.5])), atol=1e-9)


def test_bias_correction_is_first_order_accurate():
    w = np.array([0.1, -0.05, 0.2])
    a = np.array([0.1, 0.2, 9.8])
    preint = _integrate(IMUPreintegration(), w, a, 0.01, 50)

    bias = ImuBias(accelerometer=[1e-3, -1e-3, 5e-4], gyroscope=[1e-4, 2e-4, -1e-4])
    reintegrated = _integrate(IMUPreintegration(bias=bias), w, a, 0.01, 50)
    delta_R, delta_v, delta_p = preint.get_deltas_corrected(bias)

    assert np.allclose(delta_R, reintegrated.delta_R, atol=1e-7)
    assert np.allclose(delta_v, reintegrated.delta_v, atol=1e-6)
    assert np.allclose(delta_p, reintegrated.delta_p, atol=1e-6)


def test_covariance_is_symmetric_positive_definite():
    preint = _integrate(IMUPreintegration(), [0.3, 0.1, -0.2], [1.0, 0.0, G_NORM], 0.005, 40)
    cov = preint.get_covariance()

    assert cov.shape == (9, 9)
    assert np.allclose(cov, cov.T)
    assert np.all(np.linalg.eigvalsh(cov) > 0.0)


def test_reset_keeps_bias_and_copy_is_independent():
    bias = ImuBias(accelerometer=[0.01, 0.0, 0.0], gyroscope=[0.0, 0.0, 0.002])
    preint = _integrate(IMUPreintegration(bias=bias), [0.0, 0.0, 0.1], [0.0, 0.0, G_NORM], 0.01, 10)

    clone = preint.copy()
    clone.integrate_measurement(np.zeros(3), np.zeros(3), 0.01)
    assert abs(preint.dt_sum - 0.1) < 1e-12

    preint.reset_integration()
    assert preint.dt_sum == 0.0
    assert np.array_equal(preint.delta_R, np.eye(3))
    assert np.array_equal(preint.bias_hat.vector(), bias.vector())
