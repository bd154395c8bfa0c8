import numpy as np
import pytest

from rio.data_loaders import (IMURecord, load_baro_csv, load_imu_csv, load_odometry_csv, load_radar_csv,
                              pressure_to_height)


def test_load_imu_csv_sorts_by_time(tmp_path):
    path = tmp_path / "imu.csv"
    path.write_text(
        "t,ang_x,ang_y,ang_z,lin_x,lin_y,lin_z\n"
        "0.02,0.0,0.0,0.2,0.0,0.0,9.8\n"
        "0.01,0.0,0.0,0.1,0.0,0.0,9.8\n"
    )

    recs = load_imu_csv(str(path))

    assert [r.t for r in recs] == [0.01, 0.02]
    assert np.allclose(recs[0].ang, [0.0, 0.0, 0.1])
    assert np.allclose(recs[1].lin, [0.0, 0.0, 9.8])


def test_load_imu_csv_missing_column(tmp_path):
    path = tmp_path / "imu.csv"
    path.write_text("time,ang_x,ang_y,ang_z,lin_x,lin_y\n0.0,0,0,0,0,0\n")

    with pytest.raises(ValueError, match="lin_z"):
        load_imu_csv(str(path))


def test_load_radar_csv_groups_scans(tmp_path):
    path = tmp_path / "radar.csv"
    path.write_text(
        "t,x,y,z,velocity,track_id\n"
        "0.1,5.0,0.0,0.0,-1.0,3\n"
        "0.1,0.05,0.0,0.0,0.0,-1\n"
        "0.2,4.9,0.0,0.0,-1.0,3\n"
        "0.2,8.0,1.0,0.0,-0.9,-1\n"
    )

    scans = load_radar_csv(str(path))

    assert [s.t for s in scans] == [0.1, 0.2]
    # Detection at 5 cm is gated out.
    assert len(scans[0].detections) == 1
    assert len(scans[1].detections) == 2
    assert [trk.id for trk in scans[0].tracks] == [3]
    assert [trk.id for trk in scans[1].tracks] == [3]
    assert np.allclose(scans[1].tracks[0].R_p_RT, [4.9, 0.0, 0.0])
    assert scans[1].tracks[0].added is False


def test_missing_optional_files_yield_nothing(tmp_path):
    assert load_radar_csv(None) == []
    assert load_radar_csv(str(tmp_path / "missing.csv")) == []
    assert load_baro_csv(str(tmp_path / "missing.csv")) == []


def test_load_baro_csv_from_pressure(tmp_path):
    path = tmp_path / "baro.csv"
    path.write_text("t,pressure\n0.0,101325.0\n0.5,101200.0\n")

    recs = load_baro_csv(str(path))

    assert recs[0].height == pytest.approx(0.0)
    # Roughly 8.3 m per hPa near sea level.
    assert recs[1].height == pytest.approx(10.4, abs=0.2)
    assert pressure_to_height(101200.0) == pytest.approx(recs[1].height)


def test_load_baro_csv_requires_height_or_pressure(tmp_path):
    path = tmp_path / "baro.csv"
    path.write_text("t,temperature\n0.0,20.0\n")

    with pytest.raises(ValueError):
        load_baro_csv(str(path))


def test_at_time_is_a_copy():
    imu = IMURecord(1.0, np.array([0.1, 0.2, 0.3]), np.array([0.0, 0.0, 9.8]))

    held = imu.at_time(1.5)
    held.ang[0] = 5.0

    assert held.t == 1.5
    assert imu.ang[0] == 0.1


def test_load_odometry_csv_reads_trajectory_rows(tmp_path):
    path = tmp_path / "trajectory.csv"
    path.write_text(
        "idx,t,px,py,pz,qx,qy,qz,qw,vx,vy,vz\n"
        "1,0.5,1.0,2.0,3.0,0.0,0.0,0.7071067811865476,0.7071067811865476,0.5,0.0,0.0\n"
        "0,0.0,0.0,0.0,0.0,0.0,0.0,0.0,1.0,0.0,0.0,0.0\n"
    )

    recs = load_odometry_csv(str(path))

    assert [r.t for r in recs] == [0.0, 0.5]
    assert np.allclose(recs[1].pose.t, [1.0, 2.0, 3.0])
    assert np.allclose(recs[1].pose.R @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0])
    assert np.allclose(recs[1].velocity, [0.5, 0.0, 0.0])

    bad = tmp_path / "bad.csv"
    bad.write_text("t,px,py,pz\n0.0,0,0,0\n")
    with pytest.raises(ValueError, match="qx"):
        load_odometry_csv(str(bad))
