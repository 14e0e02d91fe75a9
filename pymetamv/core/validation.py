"""
Input validation utilities for pymetamv.

These validators follow the "fail fast, fail loud" principle. They raise
immediately with clear error messages rather than silently correcting
or making assumptions about user intent.

Design principles:
    - No silent type coercion (except np.asarray on array-likes)
    - Clear, actionable error messages with actual values
    - Each function validates ONE thing
    - Parameter names included in all error messages
"""

import numpy as np
from numpy.typing import ArrayLike, NDArray
from typing import Any

from pymetamv.core.exceptions import (
    ValidationError, DimensionError, SpecificationError,
)


def check_array(
    array: ArrayLike,
    name: str,
) -> NDArray[np.floating[Any]]:
    """
    Validate and convert input to a floating numpy array.

    Rejects inputs that result in object dtype (indicating mixed types
    or non-numeric data).

    Args:
        array: Input to validate
        name: Parameter name for error messages

    Returns:
        numpy.ndarray with floating dtype

    Raises:
        ValidationError: If input cannot be converted to numeric array
    """
    try:
        result = np.asarray(array)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{name}: cannot convert to array: {e}") from e

    if result.dtype == object:
        try:
            result = result.astype(np.float64)
        except (ValueError, TypeError) as e:
            raise ValidationError(
                f"{name}: converted to object dtype, indicating mixed types "
                f"or non-numeric data"
            ) from e

    if not np.issubdtype(result.dtype, np.number) and result.dtype != np.bool_:
        raise ValidationError(
            f"{name}: non-numeric dtype {result.dtype}, expected numeric data"
        )

    if not np.issubdtype(result.dtype, np.floating):
        result = result.astype(np.float64)

    return result


def check_finite(array: NDArray[np.floating[Any]], name: str) -> None:
    """
    Verify array contains no NaN or Inf values.

    Raises:
        ValidationError: If array contains non-finite values
    """
    if not np.all(np.isfinite(array)):
        n_nan = int(np.sum(np.isnan(array)))
        n_inf = int(np.sum(np.isinf(array)))
        raise ValidationError(
            f"{name}: contains non-finite values ({n_nan} NaN, {n_inf} Inf)"
        )


def check_ndim(array: NDArray, ndim: int, name: str) -> None:
    """
    Verify array has exactly the specified number of dimensions.

    Raises:
        DimensionError: If array has wrong number of dimensions
    """
    if array.ndim != ndim:
        raise DimensionError(
            f"{name}: expected {ndim}D array, got {array.ndim}D with shape {array.shape}",
            expected=ndim,
            actual=array.ndim,
        )


def check_1d(array: NDArray, name: str) -> None:
    """Verify array is 1-dimensional."""
    check_ndim(array, 1, name)


def check_2d(array: NDArray, name: str) -> None:
    """Verify array is 2-dimensional."""
    check_ndim(array, 2, name)


def check_consistent_length(*arrays: NDArray, names: tuple[str, ...]) -> None:
    """
    Verify all arrays have the same length (first dimension).

    Raises:
        ValueError: If number of names doesn't match number of arrays
        DimensionError: If arrays have inconsistent lengths
    """
    if len(arrays) != len(names):
        raise ValueError(
            f"Number of arrays ({len(arrays)}) must match number of names ({len(names)})"
        )

    if len(arrays) < 2:
        return

    lengths = [arr.shape[0] for arr in arrays]
    if len(set(lengths)) > 1:
        details = ", ".join(f"{name}={length}" for name, length in zip(names, lengths))
        raise DimensionError(f"Inconsistent lengths: {details}")


def check_gram_rank(X: NDArray[np.floating[Any]], name: str) -> None:
    """
    Verify the Gram matrix X'X has full rank.

    A rank-deficient Gram matrix means some columns of X are aliased
    (perfect collinearity) or a moderator level has no data.

    Raises:
        SpecificationError: If X'X is rank-deficient
    """
    p = X.shape[1]
    if p == 0:
        raise SpecificationError(f"{name}: design matrix has no columns")
    gram = X.T @ X
    rank = int(np.linalg.matrix_rank(gram))
    if rank < p:
        raise SpecificationError(
            f"{name}: rank-deficient (rank of X'X = {rank}, expected {p}). "
            f"This indicates aliased moderators or insufficient data.",
            rank=rank,
            expected_rank=p,
        )


def check_full_row_rank(L: NDArray[np.floating[Any]], name: str) -> None:
    """
    Verify a contrast matrix has full row rank.

    Raises:
        ValidationError: If the rows of L are linearly dependent
    """
    rank = int(np.linalg.matrix_rank(L))
    if rank < L.shape[0]:
        raise ValidationError(
            f"{name}: rows are linearly dependent (rank={rank}, "
            f"rows={L.shape[0]})"
        )


def check_probability(value: float, name: str) -> None:
    """
    Verify value lies strictly between 0 and 1.

    Raises:
        ValidationError: If value is outside (0, 1)
    """
    if not (0.0 < value < 1.0):
        raise ValidationError(f"{name}: must be in (0, 1), got {value}")
