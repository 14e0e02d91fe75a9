"""
Fixed-effect term list and design matrix construction.

Moderators are declared as an explicit ordered list of terms instead of
a formula string:

    terms = [Categorical('treatment', reference='check'),
             Continuous('year'),
             Interaction(Categorical('treatment', reference='check'),
                         Continuous('year'))]

Key concepts:
    - Reference (dummy) coding: k-1 indicator columns, the reference
      level is the designated one or else the first level encountered
    - Interaction: element-wise product of every pair (tuple) of
      main-effect columns of its components
    - ModelMatrix: the full design matrix with per-term column slices,
      used to address blocks of coefficients in omnibus tests
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Union

import numpy as np
from numpy.typing import NDArray

from pymetamv.core.exceptions import SpecificationError
from pymetamv.core.validation import check_array, check_finite, check_gram_rank
from pymetamv.meta.design import table_column


@dataclass(frozen=True)
class Continuous:
    """A numeric moderator entering the model as a single column."""
    name: str


@dataclass(frozen=True)
class Categorical:
    """A categorical moderator with reference (dummy) coding.

    Attributes:
        name: Column name.
        reference: Level whose indicator is omitted, matched by label or
            by value (1 selects 1.0 in a float column). Defaults to the
            first level encountered in the data.
    """
    name: str
    reference: Any = None


@dataclass(frozen=True, init=False)
class Interaction:
    """Composite term: cross-product of its components' columns."""
    terms: tuple

    def __init__(self, *terms: 'Term'):
        object.__setattr__(self, 'terms', tuple(terms))

    @property
    def name(self) -> str:
        return ':'.join(t.name for t in self.terms)


Term = Union[Continuous, Categorical, Interaction]


@dataclass(frozen=True)
class ModelMatrix:
    """
    Encoded fixed-effects design matrix with term metadata.

    Attributes:
        X: (n, p) float64 design matrix (including intercept if requested)
        column_names: p column labels, R-style ('treatmentA', 'treatmentA:year')
        term_slices: term name -> column slice in X
        term_names: ordered list of term names
        term_df: term name -> number of columns
        factor_levels: factor name -> observed levels, reference first
        has_intercept: whether column 0 is an intercept
    """
    X: NDArray
    column_names: tuple[str, ...]
    term_slices: dict[str, slice]
    term_names: list[str]
    term_df: dict[str, int]
    factor_levels: dict[str, tuple[str, ...]]
    has_intercept: bool

    @property
    def n(self) -> int:
        return self.X.shape[0]

    @property
    def p(self) -> int:
        return self.X.shape[1]


def term_columns(terms: Sequence[Term]) -> list[str]:
    """Names of all data columns referenced by a term list, in order."""
    names: list[str] = []
    for term in terms:
        if isinstance(term, Interaction):
            names.extend(term_columns(term.terms))
        else:
            names.append(term.name)
    return list(dict.fromkeys(names))


def _same_level(value: Any, reference: Any) -> bool:
    try:
        return bool(value == reference)
    except (TypeError, ValueError):
        return False


def encode_reference(
    factor: NDArray,
    reference: Any = None,
) -> tuple[NDArray, list[str], str]:
    """
    Reference (dummy) coding for a single factor.

    Drops the reference level and creates k-1 indicator columns in order
    of first appearance.

    Args:
        factor: 1D array of group labels (strings or integers)
        reference: Designated reference level, matched by its label or
            by value (reference=1 selects 1.0), or None for the first
            level encountered

    Returns:
        (X_coded, level_names, reference) where:
            X_coded: (n, k-1) float64 indicator matrix
            level_names: the k-1 non-reference level names (column labels)
            reference: the dropped reference level name

    Raises:
        SpecificationError: If fewer than two levels are observed or the
            designated reference level does not occur
    """
    factor_str = np.array([str(v) for v in factor])
    levels = list(dict.fromkeys(factor_str.tolist()))

    if len(levels) < 2:
        raise SpecificationError(
            f"Factor has {len(levels)} observed level(s) {levels}, need at least 2"
        )

    if reference is None:
        ref = levels[0]
    else:
        ref = str(reference)
        if ref not in levels:
            # Match on the raw values, e.g. reference=1 on a float column
            hits = [i for i, value in enumerate(factor) if _same_level(value, reference)]
            if hits:
                ref = str(factor_str[hits[0]])
        if ref not in levels:
            raise SpecificationError(
                f"Reference level '{ref}' not observed. Levels: {levels}"
            )

    contrasts = [lvl for lvl in levels if lvl != ref]
    X = np.zeros((factor_str.shape[0], len(contrasts)), dtype=np.float64)
    for j, level in enumerate(contrasts):
        X[:, j] = (factor_str == level).astype(np.float64)

    return X, contrasts, ref


def interaction_columns(X_a: NDArray, X_b: NDArray) -> NDArray:
    """
    Interaction columns as the element-wise product of all column pairs
    from X_a and X_b.

    Args:
        X_a: (n, p_a) columns for term A
        X_b: (n, p_b) columns for term B

    Returns:
        (n, p_a * p_b) interaction columns, A varying slowest
    """
    n = X_a.shape[0]
    p_a = X_a.shape[1]
    p_b = X_b.shape[1]
    X_int = np.empty((n, p_a * p_b), dtype=np.float64)

    col = 0
    for i in range(p_a):
        for j in range(p_b):
            X_int[:, col] = X_a[:, i] * X_b[:, j]
            col += 1

    return X_int


def _encode_term(
    table: Mapping[str, Any],
    term: Term,
    factor_levels: dict[str, tuple[str, ...]],
) -> tuple[NDArray, list[str]]:
    """Encode one term into (columns, column names)."""
    if isinstance(term, Continuous):
        x = check_array(table_column(table, term.name), term.name)
        check_finite(x, term.name)
        return x.reshape(-1, 1), [term.name]

    if isinstance(term, Categorical):
        try:
            X, level_names, ref = encode_reference(
                table_column(table, term.name), term.reference
            )
        except SpecificationError as e:
            raise SpecificationError(
                f"Categorical term '{term.name}': {e}", term=term.name
            ) from e
        factor_levels[term.name] = tuple([ref] + level_names)
        return X, [f"{term.name}{lvl}" for lvl in level_names]

    if isinstance(term, Interaction):
        if len(term.terms) < 2:
            raise SpecificationError(
                f"Interaction '{term.name}' needs at least 2 components, "
                f"got {len(term.terms)}",
                term=term.name,
            )
        X, names = _encode_term(table, term.terms[0], factor_levels)
        for component in term.terms[1:]:
            X_b, names_b = _encode_term(table, component, factor_levels)
            X = interaction_columns(X, X_b)
            names = [f"{a}:{b}" for a in names for b in names_b]
        return X, names

    raise SpecificationError(
        f"Unknown term type {type(term).__name__!r}; use Continuous, "
        f"Categorical or Interaction"
    )


def build_model_matrix(
    table: Mapping[str, Any],
    terms: Sequence[Term],
    *,
    intercept: bool = True,
    n_obs: int | None = None,
) -> ModelMatrix:
    """
    Build the fixed-effects design matrix from an explicit term list.

    Args:
        table: Mapping of column name → array-like (or a DataFrame)
        terms: Ordered term list
        intercept: Whether to prepend an intercept column; it then
            represents the reference level of every categorical term
        n_obs: Number of rows, required only for an intercept-only model

    Returns:
        ModelMatrix with the full design matrix and metadata

    Raises:
        SpecificationError: On unknown columns, factors with fewer than
            two levels, duplicated term names, or a rank-deficient X'X
    """
    n = n_obs
    columns = []
    column_names: list[str] = []
    term_slices: dict[str, slice] = {}
    term_names: list[str] = []
    term_df: dict[str, int] = {}
    factor_levels: dict[str, tuple[str, ...]] = {}
    col_offset = 0

    for term in terms:
        X_term, names = _encode_term(table, term, factor_levels)
        if term.name in term_slices:
            raise SpecificationError(
                f"Term '{term.name}' appears more than once", term=term.name
            )
        if n is None:
            n = X_term.shape[0]
        elif X_term.shape[0] != n:
            raise SpecificationError(
                f"Term '{term.name}' has {X_term.shape[0]} rows, expected {n}",
                term=term.name,
            )
        ncols = X_term.shape[1]
        columns.append(X_term)
        column_names.extend(names)
        term_slices[term.name] = slice(col_offset, col_offset + ncols)
        term_names.append(term.name)
        term_df[term.name] = ncols
        col_offset += ncols

    if intercept:
        if n is None:
            raise SpecificationError(
                "Intercept-only model needs n_obs to size the design matrix"
            )
        columns.insert(0, np.ones((n, 1), dtype=np.float64))
        column_names.insert(0, 'intrcpt')
        term_slices = {
            name: slice(s.start + 1, s.stop + 1) for name, s in term_slices.items()
        }
        term_slices = {'intrcpt': slice(0, 1), **term_slices}
        term_names.insert(0, 'intrcpt')
        term_df = {'intrcpt': 1, **term_df}

    if not columns:
        raise SpecificationError("Model has no fixed effects (no terms, no intercept)")

    X = np.hstack(columns)
    check_gram_rank(X, 'fixed effects design')

    return ModelMatrix(
        X=X,
        column_names=tuple(column_names),
        term_slices=term_slices,
        term_names=term_names,
        term_df=term_df,
        factor_levels=factor_levels,
        has_intercept=intercept,
    )
