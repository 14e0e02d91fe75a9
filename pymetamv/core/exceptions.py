"""
Exception hierarchy for pymetamv.

All exceptions inherit from PyMetaMVError to allow catching any
library-specific error. Domain-specific exceptions should inherit from
the appropriate base class here.

Design principles:
    - Exceptions carry diagnostic information as attributes
    - Error messages are actionable with actual vs expected values
    - Never catch and re-raise with less information
"""

from __future__ import annotations

import numpy as np


class PyMetaMVError(Exception):
    """Base exception for all pymetamv errors."""
    pass


class ValidationError(PyMetaMVError):
    """
    Input validation failed.

    Raised when user-provided inputs fail validation checks.
    """
    pass


class DimensionError(ValidationError):
    """
    Array dimensions are incorrect or inconsistent.

    Raised when array shapes don't match expected dimensions, e.g. a
    contrast matrix whose column count differs from the number of
    fixed-effect coefficients.

    Attributes:
        expected: Expected shape (or dimension), if known
        actual: Actual shape received, if known
    """

    def __init__(
        self,
        message: str,
        expected: tuple[int, ...] | int | None = None,
        actual: tuple[int, ...] | int | None = None,
    ):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class SpecificationError(ValidationError):
    """
    Model specification is malformed or the design is rank-deficient.

    Raised before any optimization work begins: a categorical moderator
    with fewer than two observed levels, an unknown column, or a fixed
    effects design matrix whose Gram matrix is singular (aliased terms).

    Attributes:
        term: Name of the offending term, if attributable
        rank: Numerical rank of X'X, if computed
        expected_rank: Number of design columns, if computed
    """

    def __init__(
        self,
        message: str,
        term: str | None = None,
        rank: int | None = None,
        expected_rank: int | None = None,
    ):
        super().__init__(message)
        self.term = term
        self.rank = rank
        self.expected_rank = expected_rank


class NumericalError(PyMetaMVError):
    """
    Numerical computation failed.

    Base class for errors arising from numerical issues during computation.
    """
    pass


class SingularCovarianceError(NumericalError):
    """
    Marginal covariance is not positive definite at the proposed θ.

    Recoverable: the optimizer driver treats this as an infeasible point,
    rejects the evaluation and moves on.

    Attributes:
        theta: The variance-component vector that produced the failure
        cluster: Index of the failing cluster (None for the pooled X'V⁻¹X)
        size: Dimension of the failing matrix
    """

    def __init__(
        self,
        message: str,
        theta: np.ndarray | None = None,
        cluster: int | None = None,
        size: int | None = None,
    ):
        super().__init__(message)
        self.theta = None if theta is None else np.array(theta, dtype=np.float64)
        self.cluster = cluster
        self.size = size


class ConvergenceError(PyMetaMVError):
    """
    Iterative algorithm failed to converge.

    Raised when the variance-component optimizer exhausts its restarts
    without meeting the convergence criteria.

    Attributes:
        iterations: Number of iterations completed (last attempt)
        theta: Last θ visited
        gradient_norm: Max-abs gradient of -ℓ at the last θ, if available
        final_change: Final relative change in the log-likelihood
        reason: Why convergence failed (e.g., 'max_iterations', 'infeasible')
        threshold: The convergence threshold that was not met
    """

    def __init__(
        self,
        message: str,
        iterations: int,
        theta: np.ndarray | None = None,
        gradient_norm: float | None = None,
        final_change: float | None = None,
        reason: str | None = None,
        threshold: float | None = None,
    ):
        super().__init__(message)
        self.iterations = iterations
        self.theta = None if theta is None else np.array(theta, dtype=np.float64)
        self.gradient_norm = gradient_norm
        self.final_change = final_change
        self.reason = reason
        self.threshold = threshold


class FitCancelledError(PyMetaMVError):
    """
    A fit was cancelled through its cancellation token.

    Attributes:
        evaluations: Number of likelihood evaluations completed
    """

    def __init__(self, message: str, evaluations: int = 0):
        super().__init__(message)
        self.evaluations = evaluations


class NotFittedError(PyMetaMVError):
    """Inference was requested from a model that is not in the fitted state."""
    pass
