"""
Tests for the pymetamv exception hierarchy.

Validates:
    - Inheritance chain (all exceptions catchable via PyMetaMVError)
    - Diagnostic attributes on DimensionError, SpecificationError,
      SingularCovarianceError, ConvergenceError, FitCancelledError
    - Default attribute values (None for optional attributes)
"""

import numpy as np
import pytest

from pymetamv.core.exceptions import (
    ConvergenceError,
    DimensionError,
    FitCancelledError,
    NotFittedError,
    NumericalError,
    PyMetaMVError,
    SingularCovarianceError,
    SpecificationError,
    ValidationError,
)


# ═══════════════════════════════════════════════════════════════════════
# Inheritance hierarchy
# ═══════════════════════════════════════════════════════════════════════


class TestInheritance:
    """Every exception is catchable via PyMetaMVError."""

    @pytest.mark.parametrize("exc", [
        ValidationError("bad input"),
        DimensionError("wrong shape"),
        SpecificationError("aliased"),
        NumericalError("failed"),
        SingularCovarianceError("not PD"),
        ConvergenceError("did not converge", iterations=10),
        FitCancelledError("cancelled"),
        NotFittedError("not fitted"),
    ])
    def test_catchable_as_base(self, exc):
        with pytest.raises(PyMetaMVError):
            raise exc

    def test_dimension_error_is_validation_error(self):
        assert issubclass(DimensionError, ValidationError)

    def test_specification_error_is_validation_error(self):
        assert issubclass(SpecificationError, ValidationError)

    def test_singular_covariance_is_numerical_error(self):
        assert issubclass(SingularCovarianceError, NumericalError)

    def test_convergence_error_is_not_numerical_error(self):
        """ConvergenceError inherits from PyMetaMVError, not NumericalError."""
        err = ConvergenceError("did not converge", iterations=100)
        assert not isinstance(err, NumericalError)

    def test_not_fitted_is_not_validation_error(self):
        assert not issubclass(NotFittedError, ValidationError)


# ═══════════════════════════════════════════════════════════════════════
# Diagnostic attributes
# ═══════════════════════════════════════════════════════════════════════


class TestDimensionError:

    def test_attributes(self):
        err = DimensionError("L has 3 columns", expected=(1, 2), actual=(1, 3))
        assert err.expected == (1, 2)
        assert err.actual == (1, 3)
        assert "3 columns" in str(err)

    def test_defaults(self):
        err = DimensionError("wrong")
        assert err.expected is None
        assert err.actual is None


class TestSpecificationError:

    def test_attributes(self):
        err = SpecificationError("aliased", term="dose", rank=2, expected_rank=3)
        assert err.term == "dose"
        assert err.rank == 2
        assert err.expected_rank == 3

    def test_defaults(self):
        err = SpecificationError("bad")
        assert err.term is None
        assert err.rank is None
        assert err.expected_rank is None


class TestSingularCovarianceError:

    def test_attributes(self):
        err = SingularCovarianceError(
            "not PD", theta=[1.0, np.nan], cluster=4, size=3,
        )
        assert isinstance(err.theta, np.ndarray)
        assert err.theta[0] == 1.0
        assert err.cluster == 4
        assert err.size == 3

    def test_theta_is_copied(self):
        theta = np.array([1.0, 2.0])
        err = SingularCovarianceError("not PD", theta=theta)
        theta[0] = 99.0
        assert err.theta[0] == 1.0

    def test_defaults(self):
        err = SingularCovarianceError("not PD")
        assert err.theta is None
        assert err.cluster is None
        assert err.size is None


class TestConvergenceError:

    def test_all_attributes(self):
        err = ConvergenceError(
            "failed",
            iterations=500,
            theta=[0.1, 0.2],
            gradient_norm=3e-3,
            final_change=1e-4,
            reason="max_iterations",
            threshold=1e-5,
        )
        assert err.iterations == 500
        np.testing.assert_array_equal(err.theta, [0.1, 0.2])
        assert err.gradient_norm == 3e-3
        assert err.final_change == 1e-4
        assert err.reason == "max_iterations"
        assert err.threshold == 1e-5

    def test_defaults(self):
        err = ConvergenceError("failed", iterations=3)
        assert err.theta is None
        assert err.gradient_norm is None
        assert err.final_change is None
        assert err.reason is None
        assert err.threshold is None

    def test_iterations_required(self):
        with pytest.raises(TypeError):
            ConvergenceError("failed")


class TestFitCancelledError:

    def test_evaluations(self):
        err = FitCancelledError("cancelled", evaluations=7)
        assert err.evaluations == 7

    def test_default(self):
        assert FitCancelledError("cancelled").evaluations == 0
