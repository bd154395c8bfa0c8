#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fixed-Lag Smoother
==================

Windowed nonlinear least-squares smoother used by the optimization
coordinator. The coordinator only relies on the `Smoother` interface:

    update(graph, values, timestamps)   add factors / new variables, optimize
    calculate_estimate(key=None)        current estimate (one key or all)
    timestamps()                        key -> timestamp of retained variables

FixedLagSmoother
----------------
All retained variables are optimized jointly with
`scipy.optimize.least_squares` (trust region reflective). Variables are
parameterized by tangent-space deltas around the current estimate
(`retract_value`), and the Jacobian is approximated by finite differences
restricted to the sparsity pattern implied by factor keys.

After each update, variables whose timestamp is older than
`latest_timestamp - lag` leave the window. They are conditioned on their
current estimate: the value is kept as a constant for factors still
touching retained variables, factors touching only constants are dropped.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .factors import Factor, copy_value, retract_value, value_dim
from .keys import Key, key_str

logger = logging.getLogger(__name__)


class SolverError(RuntimeError):
    """Raised by a smoother when an update cannot be applied or diverges."""


class Smoother(abc.ABC):
    """Incremental windowed nonlinear smoother."""

    @abc.abstractmethod
    def update(self, graph: Optional[Iterable[Factor]] = None,
               values: Optional[Mapping[Key, Any]] = None,
               timestamps: Optional[Mapping[Key, float]] = None):
        """Add new factors and variables, then re-estimate the window."""

    @abc.abstractmethod
    def calculate_estimate(self, key: Optional[Key] = None) -> Any:
        """Estimate of `key`, or a dict of all retained estimates."""

    @abc.abstractmethod
    def timestamps(self) -> Dict[Key, float]:
        """Timestamps of the variables currently retained."""


class FixedLagSmoother(Smoother):
    """
    Fixed-lag smoother on scipy.optimize.least_squares.

    Args:
        lag: Window length [s]
        max_iterations: Maximum residual evaluations per update
        ftol, xtol, gtol: least_squares termination tolerances
    """

    def __init__(self, lag: float = 3.0, max_iterations: int = 20,
                 ftol: float = 1e-8, xtol: float = 1e-8, gtol: float = 1e-8):
        if lag <= 0:
            raise ValueError(f"Smoother lag must be positive, got {lag}")
        self.lag = float(lag)
        self.max_iterations = max(1, int(max_iterations))
        self.ftol = ftol
        self.xtol = xtol
        self.gtol = gtol

        self._factors: List[Factor] = []
        self._values: Dict[Key, Any] = {}
        self._fixed: Dict[Key, Any] = {}
        self._timestamps: Dict[Key, float] = {}

        self.last_cost = 0.0
        self.last_iterations = 0
        self.num_updates = 0

    # ------------------------------------------------------------------
    # Smoother interface
    # ------------------------------------------------------------------

    def update(self, graph=None, values=None, timestamps=None):
        graph = list(graph) if graph is not None else []
        values = dict(values) if values is not None else {}
        timestamps = dict(timestamps) if timestamps is not None else {}

        for key in values:
            if key in self._values or key in self._fixed:
                raise SolverError(f"Variable {key_str(key)} already exists")
            if key not in timestamps:
                raise SolverError(f"Variable {key_str(key)} has no timestamp")

        # Candidate window; committed only if the solve succeeds.
        candidate_values = dict(self._values)
        for key, value in values.items():
            candidate_values[key] = copy_value(value)
        candidate_timestamps = dict(self._timestamps)
        for key, stamp in timestamps.items():
            if key in candidate_values:
                candidate_timestamps[key] = max(float(stamp), candidate_timestamps.get(key, -np.inf))

        candidate_factors = list(self._factors)
        for factor in graph:
            unknown = [k for k in factor.keys if k not in candidate_values and k not in self._fixed]
            if unknown:
                logger.warning("[OPT] Skipping %r: unknown keys %s", factor,
                               ", ".join(key_str(k) for k in unknown))
                continue
            if all(k in self._fixed for k in factor.keys):
                continue
            candidate_factors.append(factor)

        optimized, cost, iterations = self._optimize(candidate_values, candidate_factors)

        self._values = optimized
        self._timestamps = candidate_timestamps
        self._factors = candidate_factors
        self.last_cost = cost
        self.last_iterations = iterations
        self._marginalize()
        self.num_updates += 1

    def calculate_estimate(self, key=None):
        if key is None:
            return {k: copy_value(v) for k, v in self._values.items()}
        if key not in self._values:
            raise KeyError(f"Variable {key_str(key)} is not in the smoother window")
        return copy_value(self._values[key])

    def timestamps(self):
        return dict(self._timestamps)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @property
    def num_factors(self) -> int:
        return len(self._factors)

    def _optimize(self, values: Dict[Key, Any],
                  factors: List[Factor]) -> Tuple[Dict[Key, Any], float, int]:
        """Optimize `values` against `factors`. Returns (values, cost, evaluations)."""
        keys = list(values)
        offsets = {}
        n = 0
        for key in keys:
            offsets[key] = n
            n += value_dim(values[key])
        m = sum(f.dim for f in factors)
        if n == 0 or m == 0:
            return values, 0.0, 0

        sparsity = lil_matrix((m, n), dtype=int)
        row = 0
        for factor in factors:
            for key in factor.keys:
                if key in offsets:
                    col = offsets[key]
                    sparsity[row:row + factor.dim, col:col + value_dim(values[key])] = 1
            row += factor.dim

        def retracted(x: np.ndarray) -> Dict[Key, Any]:
            current = dict(self._fixed)
            for key in keys:
                d = value_dim(values[key])
                current[key] = retract_value(values[key], x[offsets[key]:offsets[key] + d])
            return current

        def residuals(x: np.ndarray) -> np.ndarray:
            current = retracted(x)
            return np.concatenate([f.whitened_error(current) for f in factors])

        r0 = residuals(np.zeros(n))
        if not np.all(np.isfinite(r0)):
            raise SolverError("Non-finite residual at the initial estimate")

        result = least_squares(
            residuals,
            np.zeros(n),
            jac_sparsity=sparsity,
            method="trf",
            max_nfev=self.max_iterations,
            ftol=self.ftol,
            xtol=self.xtol,
            gtol=self.gtol,
        )
        if not np.all(np.isfinite(result.x)) or not np.isfinite(result.cost):
            raise SolverError(f"Optimization diverged: {result.message}")

        optimized = {k: v for k, v in retracted(result.x).items() if k in offsets}
        logger.debug("[OPT] %d vars, %d residuals: cost %.6e -> %.6e in %d evals (%s)",
                     len(keys), m, 0.5 * float(r0 @ r0), float(result.cost),
                     int(result.nfev), result.message)
        return optimized, float(result.cost), int(result.nfev)

    def _marginalize(self):
        if not self._timestamps:
            return
        horizon = max(self._timestamps.values()) - self.lag
        old = [k for k, stamp in self._timestamps.items() if stamp < horizon]
        if not old:
            return
        for key in old:
            self._fixed[key] = self._values.pop(key)
            del self._timestamps[key]

        self._factors = [f for f in self._factors
                         if any(k in self._values for k in f.keys)]
        referenced = {k for f in self._factors for k in f.keys}
        self._fixed = {k: v for k, v in self._fixed.items() if k in referenced}
        logger.debug("[OPT] Marginalized %d variables older than %.3f s (%d kept fixed)",
                     len(old), horizon, len(self._fixed))
