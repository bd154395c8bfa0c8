"""Pending factor graph increment handed from the builder to the smoother."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .factors import Factor, copy_value
from .keys import Key


@dataclass
class FactorGraphIncrement:
    """New factors, their new variables' initial values and key timestamps."""

    graph: List[Factor] = field(default_factory=list)
    values: Dict[Key, Any] = field(default_factory=dict)
    timestamps: Dict[Key, float] = field(default_factory=dict)

    def add(self, factor: Factor):
        self.graph.append(factor)

    def insert(self, key: Key, value: Any, stamp: float):
        if key in self.values:
            raise KeyError(f"Value for {key} already inserted")
        self.values[key] = copy_value(value)
        self.timestamps[key] = float(stamp)

    def copy(self) -> "FactorGraphIncrement":
        # Factors are immutable after construction and are shared.
        return FactorGraphIncrement(
            graph=list(self.graph),
            values={k: copy_value(v) for k, v in self.values.items()},
            timestamps=dict(self.timestamps),
        )

    def clear(self):
        self.graph = []
        self.values = {}
        self.timestamps = {}

    @property
    def is_empty(self) -> bool:
        return not self.graph and not self.values

    def __len__(self) -> int:
        return len(self.graph)
