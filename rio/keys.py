"""Variable keys: (symbol, index) tuples, one symbol per variable kind."""

from typing import Tuple

Key = Tuple[str, int]


def X(idx: int) -> Key:
    """Pose T_IB at node idx."""
    return ("x", int(idx))


def V(idx: int) -> Key:
    """Velocity I_v_IB at node idx."""
    return ("v", int(idx))


def B(idx: int) -> Key:
    """IMU bias at node idx."""
    return ("b", int(idx))


def L(idx: int) -> Key:
    """Landmark position I_p_IL of track idx."""
    return ("l", int(idx))


def H(idx: int) -> Key:
    """Barometric height bias idx."""
    return ("h", int(idx))


def C(idx: int) -> Key:
    """Radar mounting B_T_BR, estimated by the batch calibration."""
    return ("c", int(idx))


def key_str(key: Key) -> str:
    return f"{key[0]}{key[1]}"
