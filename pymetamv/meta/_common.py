"""
Common data types for multilevel meta-analysis.

Contains the frozen configuration and parameter payloads that go inside
Result[P] envelopes. Each payload is a pure data container — no
computation.

References:
    Viechtbauer, W. (2010). Conducting meta-analyses in R with the metafor
    package. Journal of Statistical Software, 36(3), 1-48.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from pymetamv.core.exceptions import ValidationError
from pymetamv.meta._terms import Term
from pymetamv.meta._random_effects import RandomTerm


class FitState(Enum):
    """Lifecycle of a model fit. Inference is only reachable from FITTED."""
    UNFITTED = 'unfitted'
    FITTING = 'fitting'
    FITTED = 'fitted'
    FAILED = 'failed'


@dataclass(frozen=True)
class ModelSpec:
    """Immutable model specification.

    Attributes:
        fixed: Ordered fixed-effect term list (moderators, interactions).
        random: Explicit list of random-effect groupings, each with its
            own covariance structure. Include an observation-level
            intercept explicitly, e.g. RandomTerm('obs_id').
        method: 'ML' or 'REML'.
        intercept: Whether the fixed effects include an intercept.
    """
    fixed: tuple[Term, ...] = ()
    random: tuple[RandomTerm, ...] = ()
    method: str = 'REML'
    intercept: bool = True

    def __post_init__(self):
        object.__setattr__(self, 'fixed', tuple(self.fixed))
        object.__setattr__(self, 'random', tuple(self.random))
        method = str(self.method).upper()
        if method not in ('ML', 'REML'):
            raise ValidationError(f"method must be 'ML' or 'REML', got {self.method!r}")
        object.__setattr__(self, 'method', method)

    @property
    def reml(self) -> bool:
        return self.method == 'REML'


@dataclass(frozen=True)
class FitControl:
    """Optimizer configuration.

    Attributes:
        optimizer: Backend name ('nelder-mead', 'bfgs', 'l-bfgs-b',
            'trust-exact') or an OptimizerBackend instance.
        max_iter: Iteration budget per optimizer run.
        ftol: Relative log-likelihood change tolerance.
        gtol: Max-abs gradient tolerance.
        gradient: 'analytic' or 'numeric' (finite differences).
        max_restarts: Retries from a perturbed start after a failed run.
        perturbation: Relative scale of the restart perturbation.
        seed: Seed for the restart perturbation.
        n_jobs: Threads for per-cluster likelihood evaluation.
        theta0: Optional starting θ (overrides the default start).
        verbose: Print progress lines.
    """
    optimizer: object = 'bfgs'
    max_iter: int = 500
    ftol: float = 1e-8
    gtol: float = 1e-5
    gradient: str = 'analytic'
    max_restarts: int = 1
    perturbation: float = 0.5
    seed: int | None = 0
    n_jobs: int = 1
    theta0: Sequence[float] | None = None
    verbose: bool = False

    def __post_init__(self):
        if self.gradient not in ('analytic', 'numeric'):
            raise ValidationError(
                f"gradient must be 'analytic' or 'numeric', got {self.gradient!r}"
            )
        if self.max_iter < 0:
            raise ValidationError(f"max_iter must be >= 0, got {self.max_iter}")
        if self.max_restarts < 0:
            raise ValidationError(f"max_restarts must be >= 0, got {self.max_restarts}")
        if not (self.ftol > 0 and self.gtol > 0):
            raise ValidationError(
                f"ftol and gtol must be positive, got ftol={self.ftol}, gtol={self.gtol}"
            )


@dataclass(frozen=True)
class VarCompSummary:
    """Variance components of one random-effect grouping.

    Attributes:
        name: Grouping name, e.g. 'treatment | trial'.
        structure: Covariance structure tag.
        levels: Inner levels (rows/columns of sigma).
        sigma: Estimated k × k covariance matrix.
        variances: Diagonal of sigma.
        corr: Correlation matrix, or None for k = 1.
        n_groups: Number of grouping levels.
    """
    name: str
    structure: str
    levels: tuple[str, ...]
    sigma: NDArray
    variances: NDArray
    corr: NDArray | None
    n_groups: int


@dataclass(frozen=True)
class MetaParams:
    """
    Parameter payload for a fitted multilevel meta-analysis model.
    """
    # Fixed effects
    coefficients: NDArray              # β̂ (p,)
    coefficient_names: tuple[str, ...]
    vcov: NDArray                      # (XᵀV̂⁻¹X)⁻¹ (p, p)
    se: NDArray                        # (p,)
    term_slices: dict[str, slice]

    # Random effects
    var_components: tuple[VarCompSummary, ...]
    theta: NDArray                     # converged θ
    theta_names: tuple[str, ...]

    # Model fit
    log_likelihood: float
    method: str
    n_obs: int
    n_params: int                      # p + len(θ)
    n_clusters: int

    # Heterogeneity
    QE: float
    QE_df: int
    QE_pvalue: float

    # Convergence
    converged: bool
    n_iter: int
    gradient_norm: float
    loglik_history: tuple[float, ...]

    # Predictions
    fitted_values: NDArray             # Xβ̂ (n,)
    residuals: NDArray                 # y - Xβ̂ (n,)

    # Data bookkeeping
    excluded: tuple[int, ...] = field(default_factory=tuple)
