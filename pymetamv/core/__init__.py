"""
Core infrastructure for pymetamv.

This module provides shared abstractions and utilities used by the
meta-analysis engine.

Key components:
    result: Generic Result[P] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    compute: Timing utilities
"""

from pymetamv.core.result import Result
from pymetamv.core.exceptions import (
    PyMetaMVError,
    ValidationError,
    DimensionError,
    SpecificationError,
    NumericalError,
    SingularCovarianceError,
    ConvergenceError,
    FitCancelledError,
    NotFittedError,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "PyMetaMVError",
    "ValidationError",
    "DimensionError",
    "SpecificationError",
    "NumericalError",
    "SingularCovarianceError",
    "ConvergenceError",
    "FitCancelledError",
    "NotFittedError",
]
