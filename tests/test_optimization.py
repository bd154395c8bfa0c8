import logging
import sys
import threading
from collections import deque
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from rio.data_loaders import IMURecord
from rio.imu_preintegration import G_NORM, IMUPreintegration
from rio.keys import X
from rio.math_utils import Pose3
from rio.noise import NoiseModel
from rio.optimization import OptimizationCoordinator
from rio.propagation import NodeIndexCounter, Propagation
from rio.smoother import FixedLagSmoother, SolverError
from rio.state import State
from rio.timing import TimingRecorder

DOPPLER_NOISE = NoiseModel.isotropic(1, 0.05)
TRACK_NOISE = NoiseModel.isotropic(3, 0.1)
TIMING_LABELS = {"optimize", "cachePropagations", "dequeCleanup",
                 "copyCachedPropagations", "repropagateNewPropagations"}


class _BlockingSmoother(FixedLagSmoother):
    """Holds update() until released."""

    def __init__(self):
        super().__init__(lag=10.0)
        self.release = threading.Event()
        self.entered = threading.Event()

    def update(self, graph=None, values=None, timestamps=None):
        self.entered.set()
        self.release.wait(5.0)
        super().update(graph, values, timestamps)


class _FailingSmoother(FixedLagSmoother):

    def update(self, graph=None, values=None, timestamps=None):
        raise SolverError("indeterminate system")


def _imu(t):
    return IMURecord(float(t), np.zeros(3), np.array([0.0, 0.0, G_NORM]))


def _setup(coordinator, t_end=1.0):
    """Anchored chain split once at 0.55 s with a pending radar increment."""
    state = State("odom", np.zeros(3), np.eye(3), np.zeros(3), _imu(0.0), IMUPreintegration())
    chain = Propagation(state, 0)
    for t in np.arange(0.1, t_end + 1e-9, 0.1):
        chain.add_measurement(_imu(t))
    coordinator.add_prior_factor(chain, NoiseModel.isotropic(6, 0.01),
                                 NoiseModel.isotropic(3, 0.01), NoiseModel.isotropic(6, 0.01))
    counter = NodeIndexCounter(1)
    to_t, from_t = chain.split(0.55, counter, B_T_BR=Pose3.identity())
    coordinator.add_radar_factor(to_t, from_t, DOPPLER_NOISE, TRACK_NOISE)
    return deque([to_t, from_t]), counter


def _split_tail(coordinator, live, counter, t):
    to_t, from_t = live[-1].split(t, counter, B_T_BR=Pose3.identity())
    live.pop()
    live.extend([to_t, from_t])
    coordinator.add_radar_factor(to_t, from_t, DOPPLER_NOISE, TRACK_NOISE)


def test_get_result_without_solve_returns_none():
    coordinator = OptimizationCoordinator()

    assert coordinator.get_result(deque()) is None
    assert coordinator.is_running() is False
    assert coordinator.has_result() is False


def test_successful_cycle_merges_solved_window():
    coordinator = OptimizationCoordinator(FixedLagSmoother(lag=10.0))
    live, _ = _setup(coordinator)
    stale_to = live[0]

    assert coordinator.solve(live) is True
    assert coordinator.builder.pending.is_empty
    assert coordinator.wait(5.0)
    assert coordinator.has_result()

    timing = coordinator.get_result(live)

    assert timing is not None
    assert set(timing) == TIMING_LABELS
    assert all(entry.count == 1 for entry in timing.values())
    assert timing["optimize"].stamp == pytest.approx(1.0)
    assert len(live) == 2
    assert live[0] is not stale_to
    assert (live[0].first_state_idx, live[0].last_state_idx) == (0, 1)
    assert np.allclose(live[0].latest_state.position, 0.0, atol=1e-6)
    assert live[1].first_state.t == pytest.approx(0.55)
    # Delivered once.
    assert coordinator.get_result(live) is None
    assert coordinator.stats["results"] == 1


def test_second_solve_rejected_while_running():
    smoother = _BlockingSmoother()
    coordinator = OptimizationCoordinator(smoother)
    live, counter = _setup(coordinator)

    assert coordinator.solve(live) is True
    assert smoother.entered.wait(5.0)
    assert coordinator.is_running()

    _split_tail(coordinator, live, counter, 0.85)
    pending = len(coordinator.builder.pending.graph)
    assert pending > 0
    assert coordinator.solve(live) is False
    assert len(coordinator.builder.pending.graph) == pending
    assert coordinator.get_result(live) is None
    assert coordinator.set_smoother(FixedLagSmoother()) is False

    smoother.release.set()
    assert coordinator.wait(5.0)
    assert coordinator.has_result()
    # Result pending: no new cycle until it is collected.
    assert coordinator.solve(live) is False

    timing = coordinator.get_result(live)
    assert timing is not None
    assert [p.first_state_idx for p in live] == [0, 1, 2]
    assert live[1].first_state.t == pytest.approx(0.55)
    assert live[2].first_state.t == pytest.approx(0.85)

    assert coordinator.solve(live) is True
    assert coordinator.builder.pending.is_empty
    assert coordinator.wait(5.0)
    assert coordinator.get_result(live) is not None
    assert coordinator.stats["solves"] == 2
    assert coordinator.stats["failures"] == 0


def test_failed_cycle_is_dropped():
    coordinator = OptimizationCoordinator(_FailingSmoother())
    live, _ = _setup(coordinator)
    before = list(live)

    assert coordinator.solve(live) is True
    assert coordinator.wait(5.0)

    assert coordinator.get_result(live) is None
    assert coordinator.stats["failures"] == 1
    assert list(live) == before
    assert coordinator.has_result() is False
    assert coordinator.set_smoother(FixedLagSmoother(lag=10.0)) is True


def test_failed_cycle_does_not_block_next_solve():
    coordinator = OptimizationCoordinator(_FailingSmoother())
    live, counter = _setup(coordinator)

    assert coordinator.solve(live) is True
    assert coordinator.wait(5.0)
    _split_tail(coordinator, live, counter, 0.85)

    assert coordinator.solve(live) is True
    assert coordinator.wait(5.0)
    assert coordinator.stats["failures"] == 2


def test_set_smoother_while_idle():
    coordinator = OptimizationCoordinator()
    smoother = FixedLagSmoother(lag=1.0)

    assert coordinator.set_smoother(smoother) is True
    assert coordinator.smoother is smoother


def test_live_chain_is_not_aliased_by_solver():
    smoother = _BlockingSmoother()
    coordinator = OptimizationCoordinator(smoother)
    live, _ = _setup(coordinator, t_end=1.0)

    assert coordinator.solve(live) is True
    assert smoother.entered.wait(5.0)
    # IMU keeps arriving on the live open propagation while the solver runs.
    assert live[-1].add_measurement(_imu(1.1))
    assert live[-1].add_measurement(_imu(1.2))
    smoother.release.set()
    assert coordinator.wait(5.0)

    timing = coordinator.get_result(live)

    assert timing is not None
    assert timing["optimize"].stamp == pytest.approx(1.0)
    assert live[-1].latest_state.t == pytest.approx(1.2)
    assert live[-1].timestamps()[-3:] == pytest.approx([1.0, 1.1, 1.2])


def test_timing_recorder_statistics():
    recorder = TimingRecorder()
    recorder.update("optimize", 0.2, stamp=1.0)
    recorder.update("optimize", 0.4, stamp=2.0)

    entry = recorder["optimize"]
    assert entry.count == 2
    assert entry.stamp == 2.0
    assert entry.iteration == 0.4
    assert entry.min == 0.2
    assert entry.max == 0.4
    assert entry.mean == pytest.approx(0.3)

    snapshot = recorder.snapshot()
    recorder.update("optimize", 1.0)
    assert snapshot["optimize"].count == 2

    with pytest.raises(RuntimeError):
        with recorder.measure("dequeCleanup"):
            raise RuntimeError("boom")
    assert "dequeCleanup" not in recorder
    with recorder.measure("dequeCleanup", stamp=3.0):
        pass
    assert recorder["dequeCleanup"].count == 1


def test_short_lag_trims_marginalized_front(caplog):
    coordinator = OptimizationCoordinator(FixedLagSmoother(lag=0.2))
    live, counter = _setup(coordinator)
    open_from = live[1]

    # Node 0 (t=0) falls behind the 0.2 s lag behind node 1 (t=0.55).
    with caplog.at_level(logging.ERROR, logger="rio.optimization"):
        assert coordinator.solve(live) is True
        assert coordinator.wait(5.0)
        assert coordinator.get_result(live) is not None

    assert [p.first_state_idx for p in live] == [1]
    # The open front has no solved counterpart and is kept as is.
    assert live[0] is open_from
    assert "First propagation not updated" in caplog.text
    assert coordinator.builder.num_tracked_nodes == 1

    for t, expected_front in ((0.7, 1), (0.85, 2)):
        _split_tail(coordinator, live, counter, t)
        assert coordinator.solve(live) is True
        assert coordinator.wait(5.0)
        assert coordinator.get_result(live) is not None
        assert live[0].first_state_idx == expected_front

    assert [(p.first_state_idx, p.last_state_idx) for p in live] == [(2, 3), (3, None)]
    assert live[-1].first_state.t == pytest.approx(0.85)
    assert set(coordinator.smoother.timestamps()) >= {X(2), X(3)}
    assert X(1) not in coordinator.smoother.timestamps()
    assert coordinator.builder.num_tracked_nodes == 2
    assert coordinator.stats["failures"] == 0


def test_unmatched_solved_window_leaves_live_chain(caplog):
    coordinator = OptimizationCoordinator(FixedLagSmoother(lag=10.0))
    live, _ = _setup(coordinator)
    assert coordinator.solve(live) is True
    assert coordinator.wait(5.0)

    # The live chain moved on to a window the solver never saw.
    foreign = live[1].copy()
    foreign.first_state_idx = 7
    live.clear()
    live.append(foreign)
    with caplog.at_level(logging.WARNING, logger="rio.optimization"):
        assert coordinator.get_result(live) is not None

    assert list(live) == [foreign]
    assert "not found in live chain" in caplog.text
    assert "First propagation not updated" in caplog.text
    assert coordinator.builder.num_tracked_nodes == 2
