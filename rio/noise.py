"""Gaussian noise models with optional robust kernels."""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

ROBUST_KERNELS = ("huber", "cauchy")


class NoiseModel:
    """
    Gaussian noise model stored as a square-root information matrix.

    `whiten(e)` returns the residual whose squared norm is the Mahalanobis
    distance. With a robust kernel the whitened residual is rescaled so that
    its squared norm equals rho(|e|²).
    """

    def __init__(self, sqrt_information: np.ndarray,
                 robust_kind: Optional[str] = None, robust_k: float = 1.0):
        self.sqrt_information = np.atleast_2d(np.asarray(sqrt_information, dtype=float))
        if robust_kind is not None and robust_kind not in ROBUST_KERNELS:
            raise ValueError(f"Unknown robust kernel '{robust_kind}', expected one of {ROBUST_KERNELS}")
        self.robust_kind = robust_kind
        self.robust_k = float(robust_k)

    @classmethod
    def from_sigmas(cls, sigmas: Sequence[float]) -> "NoiseModel":
        sigmas = np.asarray(sigmas, dtype=float).reshape(-1)
        if np.any(sigmas <= 0):
            raise ValueError(f"Noise sigmas must be positive, got {sigmas}")
        return cls(np.diag(1.0 / sigmas))

    @classmethod
    def isotropic(cls, dim: int, sigma: float) -> "NoiseModel":
        return cls.from_sigmas([sigma] * dim)

    @classmethod
    def from_covariance(cls, cov: np.ndarray) -> "NoiseModel":
        cov = np.atleast_2d(np.asarray(cov, dtype=float))
        # Σ⁻¹ = Lᵀ L with L = chol(Σ)⁻¹
        L = np.linalg.cholesky(cov)
        return cls(np.linalg.inv(L))

    def robust(self, kind: str, k: float) -> "NoiseModel":
        """Copy of this model with a robust kernel."""
        return NoiseModel(self.sqrt_information, kind, k)

    @property
    def dim(self) -> int:
        return self.sqrt_information.shape[0]

    @property
    def sigmas(self) -> np.ndarray:
        cov = np.linalg.inv(self.sqrt_information.T @ self.sqrt_information)
        return np.sqrt(np.diag(cov))

    def whiten(self, error: np.ndarray) -> np.ndarray:
        r = self.sqrt_information @ np.asarray(error, dtype=float).reshape(-1)
        if self.robust_kind is None:
            return r
        s = float(r @ r)
        if s < 1e-18:
            return r
        k2 = self.robust_k ** 2
        if self.robust_kind == "huber":
            rho = s if s <= k2 else 2.0 * self.robust_k * np.sqrt(s) - k2
        else:
            rho = k2 * np.log1p(s / k2)
        return r * np.sqrt(rho / s)

    def __repr__(self) -> str:
        robust = f", {self.robust_kind}({self.robust_k})" if self.robust_kind else ""
        return f"NoiseModel(sigmas={np.array2string(self.sigmas, precision=4)}{robust})"
