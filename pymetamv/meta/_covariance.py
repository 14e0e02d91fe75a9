"""
Covariance structures for correlated random effects.

Each structure maps a free parameter vector θ to a k × k covariance
matrix Σ(θ) that is symmetric positive semidefinite for every θ, and
back. The parameterizations keep the optimizer unconstrained:

    UN   — θ holds the row-wise lower triangle of a Cholesky factor L,
           Σ = LLᵀ, k(k+1)/2 parameters.
    DIAG — θᵢ is a standard deviation, Σ = diag(θ²), k parameters.
    CS   — θ = (a, b), σ² = a², ρ = ρ_lo + (1 - ρ_lo)(tanh b + 1)/2 with
           ρ_lo = -1/(k-1), so ρ stays inside the PSD range for any k.

The Jacobian ∂Σ/∂θⱼ is exposed for the analytic likelihood gradient.

At θ = 0 every Jacobian vanishes (the squaring transforms), so a
variance component sitting on the zero boundary has a zero gradient
rather than a kink.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np
from numpy.typing import NDArray

from pymetamv.core.exceptions import SpecificationError, ValidationError


class CovarianceStructure(ABC):
    """Abstract base class for random-effect covariance structures."""

    tag: str = ''

    def __init__(self, k: int):
        """
        Initialize structure.

        Parameters
        ----------
        k : int
            Dimension of the covariance matrix (number of inner levels)
        """
        if k < 1:
            raise SpecificationError(f"Covariance dimension must be >= 1, got {k}")
        self.k = k

    @property
    @abstractmethod
    def n_params(self) -> int:
        """Number of free parameters."""

    @abstractmethod
    def sigma(self, theta: NDArray) -> NDArray:
        """Map θ to the k × k covariance matrix."""

    @abstractmethod
    def encode(self, sigma: NDArray) -> NDArray:
        """Map a covariance matrix to θ (inverse of sigma())."""

    @abstractmethod
    def jacobian(self, theta: NDArray) -> NDArray:
        """∂Σ/∂θⱼ stacked into an array of shape (n_params, k, k)."""

    @abstractmethod
    def param_names(self) -> list[str]:
        """Labels for the entries of θ."""

    def bounds(self) -> list[tuple[float | None, float | None]]:
        """Box constraints for bounded optimizers (scale parameters >= 0)."""
        return [(None, None)] * self.n_params

    def _check_theta(self, theta: NDArray) -> NDArray:
        theta = np.asarray(theta, dtype=np.float64).ravel()
        if theta.shape[0] != self.n_params:
            raise ValidationError(
                f"{self.tag}: expected {self.n_params} parameters for k={self.k}, "
                f"got {theta.shape[0]}"
            )
        return theta

    def _check_sigma(self, sigma: NDArray) -> NDArray:
        sigma = np.asarray(sigma, dtype=np.float64)
        if sigma.shape != (self.k, self.k):
            raise ValidationError(
                f"{self.tag}: expected a {self.k}x{self.k} covariance matrix, "
                f"got shape {sigma.shape}"
            )
        return 0.5 * (sigma + sigma.T)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(k={self.k})"


class Unstructured(CovarianceStructure):
    """
    Unstructured covariance through a Cholesky factor.

    Parameters: row-wise lower triangle of L (L[0,0], L[1,0], L[1,1], ...),
    Σ = LLᵀ. PSD by construction for any real θ.
    """

    tag = 'UN'

    @property
    def n_params(self) -> int:
        return self.k * (self.k + 1) // 2

    def _factor(self, theta: NDArray) -> NDArray:
        L = np.zeros((self.k, self.k), dtype=np.float64)
        L[np.tril_indices(self.k)] = theta
        return L

    def sigma(self, theta: NDArray) -> NDArray:
        L = self._factor(self._check_theta(theta))
        return L @ L.T

    def encode(self, sigma: NDArray) -> NDArray:
        sigma = self._check_sigma(sigma)
        try:
            L = np.linalg.cholesky(sigma)
        except np.linalg.LinAlgError:
            # Semidefinite input: clip negative eigenvalues, add a ridge
            eigvals, eigvecs = np.linalg.eigh(sigma)
            eigvals = np.maximum(eigvals, 0.0)
            ridge = 1e-12 * max(1.0, float(np.max(eigvals)))
            clipped = (eigvecs * eigvals) @ eigvecs.T + ridge * np.eye(self.k)
            L = np.linalg.cholesky(0.5 * (clipped + clipped.T))
        return L[np.tril_indices(self.k)].copy()

    def jacobian(self, theta: NDArray) -> NDArray:
        L = self._factor(self._check_theta(theta))
        rows, cols = np.tril_indices(self.k)
        jac = np.zeros((self.n_params, self.k, self.k), dtype=np.float64)
        # d(LLᵀ)/dL[r,c] = E_rc Lᵀ + L E_cr
        for j, (r, c) in enumerate(zip(rows, cols)):
            jac[j, r, :] += L[:, c]
            jac[j, :, r] += L[:, c]
        return jac

    def param_names(self) -> list[str]:
        rows, cols = np.tril_indices(self.k)
        return [f"L[{r},{c}]" for r, c in zip(rows, cols)]

    def bounds(self) -> list[tuple[float | None, float | None]]:
        rows, cols = np.tril_indices(self.k)
        return [(0.0, None) if r == c else (None, None) for r, c in zip(rows, cols)]


class Diagonal(CovarianceStructure):
    """
    Independent random effects with level-specific variances.

    Parameters: standard deviations θ, Σ = diag(θ²).
    """

    tag = 'DIAG'

    @property
    def n_params(self) -> int:
        return self.k

    def sigma(self, theta: NDArray) -> NDArray:
        theta = self._check_theta(theta)
        return np.diag(theta ** 2)

    def encode(self, sigma: NDArray) -> NDArray:
        sigma = self._check_sigma(sigma)
        return np.sqrt(np.maximum(np.diag(sigma), 0.0))

    def jacobian(self, theta: NDArray) -> NDArray:
        theta = self._check_theta(theta)
        jac = np.zeros((self.k, self.k, self.k), dtype=np.float64)
        for i in range(self.k):
            jac[i, i, i] = 2.0 * theta[i]
        return jac

    def param_names(self) -> list[str]:
        return [f"sd[{i}]" for i in range(self.k)]

    def bounds(self) -> list[tuple[float | None, float | None]]:
        return [(0.0, None)] * self.k


class CompoundSymmetry(CovarianceStructure):
    """
    Compound symmetry: common variance σ² and common correlation ρ.

    Parameters: (a, b) with σ² = a² and ρ = ρ_lo + (1 - ρ_lo)(tanh b + 1)/2,
    ρ_lo = -1/(k - 1). For k = 1 only a is present.
    """

    tag = 'CS'

    @property
    def n_params(self) -> int:
        return 1 if self.k == 1 else 2

    @property
    def rho_lower(self) -> float:
        return -1.0 / (self.k - 1) if self.k > 1 else -1.0

    def rho(self, b: float) -> float:
        lo = self.rho_lower
        return lo + (1.0 - lo) * (np.tanh(b) + 1.0) / 2.0

    def _pattern(self, rho: float) -> NDArray:
        J = np.ones((self.k, self.k), dtype=np.float64)
        I = np.eye(self.k)
        return I + rho * (J - I)

    def sigma(self, theta: NDArray) -> NDArray:
        theta = self._check_theta(theta)
        if self.k == 1:
            return np.array([[theta[0] ** 2]])
        return theta[0] ** 2 * self._pattern(self.rho(theta[1]))

    def encode(self, sigma: NDArray) -> NDArray:
        sigma = self._check_sigma(sigma)
        s2 = max(float(np.mean(np.diag(sigma))), 0.0)
        a = np.sqrt(s2)
        if self.k == 1:
            return np.array([a])

        off = sigma[~np.eye(self.k, dtype=bool)]
        rho = float(np.mean(off)) / s2 if s2 > 0 else 0.0
        lo = self.rho_lower
        eps = 1e-10
        rho = min(max(rho, lo + eps), 1.0 - eps)
        u = 2.0 * (rho - lo) / (1.0 - lo) - 1.0
        return np.array([a, np.arctanh(u)])

    def jacobian(self, theta: NDArray) -> NDArray:
        theta = self._check_theta(theta)
        if self.k == 1:
            return np.array([[[2.0 * theta[0]]]])
        a, b = theta
        rho = self.rho(b)
        drho = (1.0 - self.rho_lower) / 2.0 * (1.0 - np.tanh(b) ** 2)
        J_minus_I = np.ones((self.k, self.k)) - np.eye(self.k)
        return np.stack([
            2.0 * a * self._pattern(rho),
            a ** 2 * drho * J_minus_I,
        ])

    def param_names(self) -> list[str]:
        if self.k == 1:
            return ['sd']
        return ['sd', 'atanh_rho']

    def bounds(self) -> list[tuple[float | None, float | None]]:
        if self.k == 1:
            return [(0.0, None)]
        return [(0.0, None), (None, None)]


_STRUCTURES = {
    'UN': Unstructured,
    'DIAG': Diagonal,
    'CS': CompoundSymmetry,
}

_ALIASES = {
    'UNSTRUCTURED': 'UN',
    'DIAGONAL': 'DIAG',
    'COMPOUND-SYMMETRY': 'CS',
    'COMPOUND_SYMMETRY': 'CS',
}


def resolve_structure_tag(tag: str) -> str:
    """Normalize a structure tag ('UN', 'DIAG', 'CS' or a long name)."""
    key = str(tag).upper()
    key = _ALIASES.get(key, key)
    if key not in _STRUCTURES:
        raise SpecificationError(
            f"Unknown covariance structure {tag!r}. "
            f"Use one of {sorted(_STRUCTURES)}"
        )
    return key


def make_structure(tag: str, k: int) -> CovarianceStructure:
    """Instantiate the covariance structure for a tag and dimension k."""
    return _STRUCTURES[resolve_structure_tag(tag)](k)
