"""Per-phase wall-clock statistics of the optimization cycle."""

from __future__ import annotations

import copy
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

import numpy as np


@dataclass
class Timing:
    """Statistics of one phase; durations in seconds."""

    stamp: float = 0.0  # data time of the latest measurement
    iteration: float = 0.0  # duration of the latest run
    total: float = 0.0  # cumulative duration
    min: float = np.inf
    max: float = 0.0
    mean: float = 0.0
    count: int = 0


class TimingRecorder:
    """Accumulates Timing entries keyed by phase label."""

    def __init__(self):
        self._timing: Dict[str, Timing] = {}

    def update(self, label: str, elapsed: float, stamp: Optional[float] = None):
        entry = self._timing.setdefault(label, Timing())
        elapsed = float(elapsed)
        if stamp is not None:
            entry.stamp = float(stamp)
        entry.iteration = elapsed
        entry.total += elapsed
        entry.count += 1
        entry.min = min(entry.min, elapsed)
        entry.max = max(entry.max, elapsed)
        entry.mean = entry.total / entry.count

    @contextmanager
    def measure(self, label: str, stamp: Optional[float] = None) -> Iterator[None]:
        """Time the enclosed block; nothing is recorded if it raises."""
        t0 = time.time()
        yield
        self.update(label, time.time() - t0, stamp)

    def snapshot(self) -> Dict[str, Timing]:
        return copy.deepcopy(self._timing)

    def __contains__(self, label: str) -> bool:
        return label in self._timing

    def __getitem__(self, label: str) -> Timing:
        return self._timing[label]
