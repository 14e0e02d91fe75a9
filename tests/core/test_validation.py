"""
Tests for input validation utilities.

Validates every function in core/validation.py:
    - check_array: conversion, dtype coercion, non-numeric rejection
    - check_finite: NaN/Inf detection
    - check_ndim / check_1d / check_2d: dimensionality checks
    - check_consistent_length: multi-array length matching
    - check_gram_rank: aliased design columns
    - check_full_row_rank: dependent contrast rows
    - check_probability: confidence levels
"""

import numpy as np
import pytest

from pymetamv.core.exceptions import DimensionError, SpecificationError, ValidationError
from pymetamv.core.validation import (
    check_1d,
    check_2d,
    check_array,
    check_consistent_length,
    check_finite,
    check_full_row_rank,
    check_gram_rank,
    check_ndim,
    check_probability,
)


# ═══════════════════════════════════════════════════════════════════════
# check_array
# ═══════════════════════════════════════════════════════════════════════


class TestCheckArray:
    """check_array converts to ndarray and rejects non-numeric data."""

    def test_list_to_float_array(self):
        result = check_array([1, 2, 3], "yi")
        assert isinstance(result, np.ndarray)
        assert np.issubdtype(result.dtype, np.floating)
        np.testing.assert_array_equal(result, [1.0, 2.0, 3.0])

    def test_bool_promoted_to_float(self):
        result = check_array([True, False], "x")
        np.testing.assert_array_equal(result, [1.0, 0.0])

    def test_numeric_object_array_converted(self):
        arr = np.array([1.0, 2, 3.5], dtype=object)
        result = check_array(arr, "vi")
        assert result.dtype == np.float64

    def test_strings_rejected(self):
        with pytest.raises(ValidationError, match="non-numeric"):
            check_array(["a", "b"], "yi")

    def test_mixed_object_rejected(self):
        arr = np.array([1.0, "x", None], dtype=object)
        with pytest.raises(ValidationError, match="object dtype"):
            check_array(arr, "yi")


# ═══════════════════════════════════════════════════════════════════════
# check_finite / dimensions / lengths
# ═══════════════════════════════════════════════════════════════════════


class TestCheckFinite:

    def test_finite_passes(self):
        check_finite(np.array([1.0, 2.0]), "x")

    def test_nan_and_inf_counted(self):
        with pytest.raises(ValidationError, match="1 NaN, 1 Inf"):
            check_finite(np.array([1.0, np.nan, np.inf]), "x")


class TestCheckNdim:

    def test_1d_passes(self):
        check_1d(np.zeros(3), "x")

    def test_2d_passes(self):
        check_2d(np.zeros((3, 2)), "X")

    def test_wrong_ndim(self):
        with pytest.raises(DimensionError) as exc:
            check_ndim(np.zeros((2, 2)), 1, "x")
        assert exc.value.expected == 1
        assert exc.value.actual == 2


class TestCheckConsistentLength:

    def test_equal_lengths(self):
        check_consistent_length(np.zeros(3), np.ones(3), names=("yi", "vi"))

    def test_mismatch(self):
        with pytest.raises(DimensionError, match="yi=3, vi=4"):
            check_consistent_length(np.zeros(3), np.ones(4), names=("yi", "vi"))

    def test_names_count_mismatch(self):
        with pytest.raises(ValueError):
            check_consistent_length(np.zeros(3), np.ones(3), names=("yi",))


# ═══════════════════════════════════════════════════════════════════════
# Rank checks
# ═══════════════════════════════════════════════════════════════════════


class TestCheckGramRank:

    def test_full_rank(self, rng):
        check_gram_rank(rng.standard_normal((10, 3)), "X")

    def test_aliased_columns(self, rng):
        x = rng.standard_normal(10)
        X = np.column_stack([np.ones(10), x, 2.0 * x])
        with pytest.raises(SpecificationError) as exc:
            check_gram_rank(X, "X")
        assert exc.value.rank == 2
        assert exc.value.expected_rank == 3

    def test_no_columns(self):
        with pytest.raises(SpecificationError, match="no columns"):
            check_gram_rank(np.zeros((5, 0)), "X")


class TestCheckFullRowRank:

    def test_independent_rows(self):
        check_full_row_rank(np.array([[1.0, 0.0, 0.0], [0.0, 1.0, -1.0]]), "L")

    def test_dependent_rows(self):
        L = np.array([[1.0, -1.0, 0.0], [2.0, -2.0, 0.0]])
        with pytest.raises(ValidationError, match="linearly dependent"):
            check_full_row_rank(L, "L")


class TestCheckProbability:

    @pytest.mark.parametrize("value", [0.5, 0.95, 0.999])
    def test_valid(self, value):
        check_probability(value, "level")

    @pytest.mark.parametrize("value", [0.0, 1.0, 95.0, -0.1])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            check_probability(value, "level")
