import logging

import numpy as np

from rio.data_loaders import IMURecord, RadarDetection
from rio.imu_preintegration import G_NORM, IMUPreintegration
from rio.math_utils import Pose3
from rio.propagation import NodeIndexCounter, Propagation
from rio.state import State


def _imu(t, i=0):
    return IMURecord(t=float(t),
                     ang=np.array([0.0, 0.0, 0.01 * i]),
                     lin=np.array([0.1 * i, 0.0, G_NORM]))


def _make_state(t=0.0, velocity=(0.0, 0.0, 0.0)):
    return State("odom", np.zeros(3), np.eye(3), np.array(velocity, dtype=float),
                 _imu(t), IMUPreintegration())


def _make_chain(times, first_idx=0):
    propagation = Propagation(_make_state(times[0]), first_idx)
    for i, t in enumerate(times[1:], start=1):
        assert propagation.add_measurement(_imu(t, i))
    return propagation


def test_add_measurement_appends_state():
    propagation = _make_chain([0.0, 0.01, 0.02])

    assert len(propagation) == 3
    assert propagation.timestamps() == [0.0, 0.01, 0.02]
    assert abs(propagation.latest_state.integrator.dt_sum - 0.02) < 1e-12
    assert propagation.latest_state is not propagation.first_state


def test_add_measurement_rejects_non_positive_dt():
    propagation = _make_chain([0.0, 0.01, 0.02])

    assert propagation.add_measurement(_imu(0.02, 5)) is False
    assert propagation.add_measurement(_imu(0.015, 5)) is False
    assert len(propagation) == 3


def test_add_measurement_rejects_empty_or_incomplete_chain():
    assert Propagation([], 0).add_measurement(_imu(0.1)) is False

    incomplete = State("odom", np.zeros(3), np.eye(3), np.zeros(3), None, IMUPreintegration())
    propagation = Propagation(incomplete, 0)
    assert propagation.add_measurement(_imu(0.1)) is False
    assert len(propagation) == 1


def test_split_inside_interval_inserts_zero_order_hold_sample():
    propagation = _make_chain([0.0, 1.0, 2.0])
    counter = NodeIndexCounter(1)

    result = propagation.split(1.5, counter)

    assert result is not None
    to_t, from_t = result
    assert to_t.timestamps() == [0.0, 1.0, 1.5]
    assert from_t.timestamps() == [1.5, 2.0]
    # Boundary sample holds the reading of the t=2 sample.
    assert np.array_equal(to_t.latest_state.imu.lin, propagation.states[2].imu.lin)
    assert np.array_equal(to_t.latest_state.imu.ang, propagation.states[2].imu.ang)
    assert to_t.first_state_idx == 0
    assert to_t.last_state_idx == 1
    assert from_t.first_state_idx == 1
    assert from_t.last_state_idx is None
    assert counter.value == 2
    assert len(propagation) == 3


def test_split_reconstructs_timestamps():
    times = [0.0, 0.5, 1.0, 1.5, 2.0]
    for t in [0.25, 0.5, 0.75, 1.0, 1.9, 2.0]:
        propagation = _make_chain(times)
        to_t, from_t = propagation.split(t, NodeIndexCounter(1))

        merged = to_t.timestamps() + from_t.timestamps()[1:]
        assert merged == sorted(set(times) | {t})
        assert to_t.latest_state.t == t
        assert from_t.first_state.t == t


def test_split_at_sample_time_integrates_a_new_boundary_state(caplog):
    propagation = _make_chain([0.0, 1.0, 2.0])

    with caplog.at_level(logging.WARNING, logger="rio.propagation"):
        to_t, from_t = propagation.split(1.0, NodeIndexCounter(1))

    assert caplog.records == []
    assert to_t.timestamps() == [0.0, 1.0]
    assert from_t.timestamps() == [1.0, 2.0]
    # Boundary re-integrated from the t=0 state, not shared with the source chain.
    boundary = to_t.latest_state
    assert boundary is not propagation.states[1]
    assert abs(boundary.integrator.dt_sum - 1.0) < 1e-12
    assert np.array_equal(boundary.imu.lin, propagation.states[1].imu.lin)
    assert np.array_equal(boundary.position, propagation.states[1].position)
    assert from_t.first_state.integrator.dt_sum == 0.0


def test_split_outside_interval_fails_without_side_effects():
    propagation = _make_chain([0.0, 1.0, 2.0])
    counter = NodeIndexCounter(3)

    assert propagation.split(-0.5, counter) is None
    assert propagation.split(2.5, counter) is None
    assert propagation.split(0.0, counter) is None
    assert len(propagation) == 3
    assert counter.value == 3


def test_split_attaches_annotations_to_closed_half():
    propagation = _make_chain([0.0, 1.0, 2.0])
    detections = [RadarDetection(np.array([5.0, 0.0, 0.0]), -0.3)]

    to_t, from_t = propagation.split(1.2, NodeIndexCounter(1), radar_detections=detections,
                                     baro_height=3.0, B_T_BR=Pose3.identity())

    assert to_t.radar_detections == detections
    assert to_t.baro_height == 3.0
    assert to_t.B_T_BR is not None
    assert from_t.radar_detections is None
    assert from_t.baro_height is None


def test_split_from_half_restarts_integration_at_boundary():
    propagation = _make_chain([0.0, 1.0, 2.0])
    to_t, from_t = propagation.split(1.5, NodeIndexCounter(1))

    assert from_t.first_state.integrator.dt_sum == 0.0
    assert abs(from_t.latest_state.integrator.dt_sum - 0.5) < 1e-12

    expected = Propagation(to_t.latest_state.with_reset_integration(), 1)
    expected.add_measurement(propagation.states[2].imu)
    assert np.array_equal(from_t.latest_state.position, expected.latest_state.position)
    assert np.array_equal(from_t.latest_state.velocity, expected.latest_state.velocity)


def test_repropagate_matches_sequential_prediction():
    times = [0.0, 0.01, 0.02, 0.05, 0.1]
    propagation = _make_chain(times)
    initial = _make_state(0.0, velocity=(1.0, -0.5, 0.2))

    assert propagation.repropagate(initial) is True

    expected = Propagation(initial.with_reset_integration(), 0)
    for i, t in enumerate(times[1:], start=1):
        expected.add_measurement(_imu(t, i))
    assert len(propagation) == len(expected)
    for a, b in zip(propagation.states, expected.states):
        assert a.t == b.t
        assert np.array_equal(a.position, b.position)
        assert np.array_equal(a.orientation, b.orientation)
        assert np.array_equal(a.velocity, b.velocity)


def test_repropagate_failure_leaves_chain_unchanged():
    propagation = _make_chain([0.0, 0.01, 0.02])
    states = list(propagation.states)

    # Anchor newer than the buffered samples: replay hits dt < 0.
    assert propagation.repropagate(_make_state(5.0)) is False
    assert propagation.states == states
    assert Propagation([], 0).repropagate(_make_state()) is False


def test_copy_is_independent():
    propagation = _make_chain([0.0, 0.01])
    clone = propagation.copy()

    clone.add_measurement(_imu(0.02, 2))

    assert len(propagation) == 2
    assert len(clone) == 3


def test_independent_counters():
    a = NodeIndexCounter()
    b = NodeIndexCounter(10)

    assert a.next() == 0
    assert a.next() == 1
    assert b.next() == 10
    assert a.value == 2
    assert b.value == 11
