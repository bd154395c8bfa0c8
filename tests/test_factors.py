import numpy as np
import pytest

from rio.factors import (BaroFactor, BearingRangeFactor, BetweenFactor, CombinedImuFactor,
                         DopplerFactor, MountingDopplerFactor, PriorFactor, local_value,
                         retract_value, value_dim)
from rio.imu_preintegration import G_NORM, IMUPreintegration, ImuBias
from rio.keys import B, C, H, L, V, X
from rio.math_utils import Pose3, so3_exp
from rio.noise import NoiseModel


def _doppler(R_p_RT, doppler, omega, B_T_BR):
    return DopplerFactor(X(0), V(0), B(0), np.array(R_p_RT, dtype=float), doppler,
                         np.array(omega, dtype=float), B_T_BR, NoiseModel.isotropic(1, 0.1))


def test_value_dispatch():
    pose = Pose3(so3_exp(np.array([0.1, 0.2, -0.3])), np.array([1.0, 2.0, 3.0]))
    delta = np.array([0.01, -0.02, 0.03, 0.1, 0.2, -0.1])

    assert value_dim(pose) == 6
    assert value_dim(ImuBias.zero()) == 6
    assert value_dim(np.zeros(3)) == 3
    assert np.allclose(local_value(pose, retract_value(pose, delta)), delta)
    assert np.allclose(retract_value(np.array([1.0]), np.array([0.5])), [1.5])


def test_prior_factor_zero_at_prior():
    pose = Pose3(so3_exp(np.array([0.0, 0.0, 0.4])), np.array([1.0, 0.0, 0.0]))
    factor = PriorFactor(X(0), pose, NoiseModel.isotropic(6, 0.1))

    assert np.allclose(factor.unwhitened_error({X(0): pose}), 0.0)
    moved = pose.retract(np.array([0.0, 0.0, 0.0, 0.5, 0.0, 0.0]))
    assert np.allclose(factor.unwhitened_error({X(0): moved}), [0, 0, 0, 0.5, 0, 0])
    assert factor.error({X(0): moved}) == pytest.approx(0.5 * 25.0)


def test_combined_imu_factor_zero_at_prediction():
    preint = IMUPreintegration()
    for _ in range(50):
        preint.integrate_measurement(np.array([0.05, -0.02, 0.3]),
                                     np.array([0.4, -0.1, G_NORM + 0.2]), 0.01)
    pose_i = Pose3(so3_exp(np.array([0.02, 0.01, 0.5])), np.array([1.0, 2.0, 0.5]))
    v_i = np.array([1.0, 0.5, 0.0])
    pose_j, v_j = preint.predict(pose_i, v_i)
    bias = preint.bias_hat
    factor = CombinedImuFactor(X(0), V(0), X(1), V(1), B(0), B(1), preint)
    values = {X(0): pose_i, V(0): v_i, X(1): pose_j, V(1): v_j, B(0): bias, B(1): bias}

    assert factor.dim == 15
    assert np.allclose(factor.unwhitened_error(values), 0.0, atol=1e-9)

    values[V(1)] = v_j + np.array([0.0, 0.0, 0.1])
    assert np.linalg.norm(factor.unwhitened_error(values)[3:6]) > 0.05


def test_doppler_factor_translational_motion():
    factor = _doppler([10.0, 0.0, 0.0], -1.0, [0.0, 0.0, 0.0], Pose3.identity())

    # Moving towards a static target: negative Doppler.
    prediction = factor.predict(Pose3.identity(), np.array([1.0, 0.0, 0.0]), ImuBias.zero())
    assert prediction == pytest.approx(-1.0)
    values = {X(0): Pose3.identity(), V(0): np.array([1.0, 0.0, 0.0]), B(0): ImuBias.zero()}
    assert np.allclose(factor.unwhitened_error(values), [0.0])


def test_doppler_factor_lever_arm_and_gyro_bias():
    B_T_BR = Pose3(np.eye(3), np.array([0.0, 1.0, 0.0]))
    factor = _doppler([10.0, 0.0, 0.0], 0.0, [0.0, 0.0, 1.0], B_T_BR)

    # omega x lever arm = [-1, 0, 0]
    assert factor.predict(Pose3.identity(), np.zeros(3), ImuBias.zero()) == pytest.approx(1.0)
    bias = ImuBias(gyroscope=[0.0, 0.0, 1.0])
    assert factor.predict(Pose3.identity(), np.zeros(3), bias) == pytest.approx(0.0)


def test_doppler_factor_rotated_body():
    # Body yawed 90 deg: inertial +y is body +x.
    T_IB = Pose3(so3_exp(np.array([0.0, 0.0, np.pi / 2])), np.zeros(3))
    factor = _doppler([4.0, 0.0, 0.0], -2.0, [0.0, 0.0, 0.0], Pose3.identity())

    assert factor.predict(T_IB, np.array([0.0, 2.0, 0.0]), ImuBias.zero()) == pytest.approx(-2.0)


def test_bearing_range_factor():
    B_T_BR = Pose3(np.eye(3), np.array([1.0, 0.0, 0.0]))
    factor = BearingRangeFactor(X(0), L(3), B_T_BR, np.array([4.0, 0.0, 0.0]),
                                NoiseModel.from_sigmas([0.01, 0.01, 0.1]))

    values = {X(0): Pose3.identity(), L(3): np.array([5.0, 0.0, 0.0])}
    assert factor.dim == 3
    assert np.allclose(factor.unwhitened_error(values), 0.0)

    values[L(3)] = np.array([6.0, 0.0, 0.0])
    assert np.allclose(factor.unwhitened_error(values), [0.0, 0.0, 1.0])

    values[L(3)] = np.array([5.0, 1.0, 0.0])
    error = factor.unwhitened_error(values)
    assert np.linalg.norm(error[:2]) == pytest.approx(1.0 / np.sqrt(17.0))
    assert error[2] == pytest.approx(np.sqrt(17.0) - 4.0)


def test_baro_factor():
    factor = BaroFactor(X(2), H(0), 10.5, NoiseModel.isotropic(1, 0.5))
    pose = Pose3(np.eye(3), np.array([0.0, 0.0, 10.0]))

    assert np.allclose(factor.unwhitened_error({X(2): pose, H(0): np.array([0.5])}), [0.0])
    assert np.allclose(factor.unwhitened_error({X(2): pose, H(0): np.array([0.0])}), [-0.5])
    assert np.allclose(factor.whitened_error({X(2): pose, H(0): np.array([0.0])}), [-1.0])


def test_noise_models():
    assert np.allclose(NoiseModel.from_sigmas([2.0]).whiten(np.array([4.0])), [2.0])
    assert np.allclose(NoiseModel.from_covariance(np.diag([4.0, 9.0])).sigmas, [2.0, 3.0])

    huber = NoiseModel.isotropic(1, 1.0).robust("huber", 1.0)
    r = huber.whiten(np.array([3.0]))
    assert float(r @ r) == pytest.approx(2.0 * 3.0 - 1.0)
    assert np.allclose(huber.whiten(np.array([0.5])), [0.5])

    with pytest.raises(ValueError):
        NoiseModel.from_sigmas([0.1, 0.0])
    with pytest.raises(ValueError):
        NoiseModel.isotropic(1, 1.0).robust("tukey", 1.0)


def test_mounting_doppler_factor_reads_mounting_variable():
    factor = MountingDopplerFactor(X(0), V(0), B(0), C(0), np.array([10.0, 0.0, 0.0]), 1.0,
                                   np.array([0.0, 0.0, 1.0]), NoiseModel.isotropic(1, 0.05))
    values = {X(0): Pose3.identity(), V(0): np.zeros(3), B(0): ImuBias.zero(),
              C(0): Pose3(np.eye(3), np.array([0.0, 1.0, 0.0]))}

    assert factor.keys == (X(0), V(0), B(0), C(0))
    assert np.allclose(factor.unwhitened_error(values), [0.0])
    # Mounting yawed 90 deg: the lever-arm velocity is along radar +y, across the line of sight.
    values[C(0)] = Pose3(so3_exp(np.array([0.0, 0.0, np.pi / 2])), np.array([0.0, 1.0, 0.0]))
    assert np.allclose(factor.unwhitened_error(values), [-1.0])


def test_between_factor():
    factor = BetweenFactor(X(0), X(1), Pose3.identity(), NoiseModel.isotropic(6, 0.1))
    T = Pose3(so3_exp(np.array([0.1, 0.2, -0.3])), np.array([1.0, -2.0, 0.5]))

    assert np.allclose(factor.unwhitened_error({X(0): T, X(1): T}), 0.0)
    moved = T.compose(Pose3(np.eye(3), np.array([0.0, 0.0, 0.4])))
    assert np.allclose(factor.unwhitened_error({X(0): T, X(1): moved}), [0, 0, 0, 0, 0, 0.4])
