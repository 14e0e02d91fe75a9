"""
Wald-type inference for the fixed effects of a fitted model.

All functions are pure: they take β̂, vcov(β̂) = (XᵀV̂⁻¹X)⁻¹ and the
residual degrees of freedom and return frozen result objects.

Two reference distributions are supported, chosen with `test`:
    'z' — standard normal / χ² (the default)
    't' — Student t with df = n - p / F with (m, n - p) df

References:
    Viechtbauer, W. (2010). Conducting meta-analyses in R with the metafor
    package. Journal of Statistical Software, 36(3), 1-48.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from pymetamv.core.exceptions import DimensionError, ValidationError
from pymetamv.core.validation import (
    check_array, check_finite, check_full_row_rank, check_probability,
)


@dataclass(frozen=True)
class WaldTable:
    """Per-coefficient Wald statistics and confidence intervals."""
    statistic: NDArray
    p_values: NDArray
    ci_lower: NDArray
    ci_upper: NDArray
    level: float
    test: str
    df: float | None


@dataclass(frozen=True)
class WaldTest:
    """Omnibus Wald test of a block of coefficients.

    Attributes:
        statistic: QM (χ² scale) or QM / m (F scale) under test='t'.
        df: Numerator degrees of freedom m (rank of the block).
        df_resid: Denominator df for the F test, None for χ².
        p_value: Upper-tail probability.
        coefficients: Names of the tested coefficients.
        test: 'z' or 't'.
    """
    statistic: float
    df: int
    df_resid: float | None
    p_value: float
    coefficients: tuple[str, ...]
    test: str


@dataclass(frozen=True)
class ContrastResult:
    """Evaluation of a contrast matrix L against zero.

    Attributes:
        L: The (m, p) contrast matrix.
        estimate: Lβ̂ (m,).
        vcov: LΣLᵀ (m, m).
        se: sqrt(diag(LΣLᵀ)) (m,).
        statistic: Per-row z (or t) values (m,).
        p_values: Per-row two-sided p-values (m,).
        ci_lower, ci_upper: Per-row confidence limits (m,).
        joint: Joint Wald test of all rows.
    """
    L: NDArray
    estimate: NDArray
    vcov: NDArray
    se: NDArray
    statistic: NDArray
    p_values: NDArray
    ci_lower: NDArray
    ci_upper: NDArray
    level: float
    test: str
    joint: WaldTest


def _check_test(test: str) -> str:
    test = str(test).lower()
    if test not in ('z', 't'):
        raise ValidationError(f"test must be 'z' or 't', got {test!r}")
    return test


def wald_table(
    beta: NDArray,
    se: NDArray,
    *,
    level: float = 0.95,
    test: str = 'z',
    df_resid: float | None = None,
) -> WaldTable:
    """Per-coefficient Wald statistics, p-values and confidence intervals.

    Args:
        beta: Estimates (p,).
        se: Standard errors (p,).
        level: Confidence level in (0, 1).
        test: 'z' (normal) or 't' (Student t with df_resid).
        df_resid: Residual df n - p, required for test='t'.

    Returns:
        WaldTable.
    """
    test = _check_test(test)
    check_probability(level, 'level')
    beta = np.asarray(beta, dtype=np.float64)
    se = np.asarray(se, dtype=np.float64)

    with np.errstate(divide='ignore', invalid='ignore'):
        stat = beta / se

    alpha = 1.0 - level
    if test == 't':
        if df_resid is None or df_resid <= 0:
            raise ValidationError(
                f"test='t' needs positive residual df, got {df_resid}"
            )
        p_values = 2.0 * stats.t.sf(np.abs(stat), df_resid)
        crit = stats.t.ppf(1.0 - alpha / 2.0, df_resid)
        df = float(df_resid)
    else:
        p_values = 2.0 * stats.norm.sf(np.abs(stat))
        crit = stats.norm.ppf(1.0 - alpha / 2.0)
        df = None

    return WaldTable(
        statistic=stat,
        p_values=p_values,
        ci_lower=beta - crit * se,
        ci_upper=beta + crit * se,
        level=level,
        test=test,
        df=df,
    )


def resolve_coefficients(
    which,
    coefficient_names: Sequence[str],
    term_slices: Mapping[str, slice],
) -> NDArray:
    """Turn a coefficient selection into column indices.

    `which` may be a term name (all columns of that term), a coefficient
    name, or a sequence of coefficient names or integer indices.

    Raises:
        ValidationError: On an unknown name, an out-of-range index, an
            empty selection, or duplicates.
    """
    names = list(coefficient_names)
    p = len(names)

    if isinstance(which, str):
        if which in term_slices:
            sl = term_slices[which]
            return np.arange(sl.start, sl.stop)
        which = [which]

    indices = []
    for item in which:
        if isinstance(item, str):
            if item not in names:
                raise ValidationError(
                    f"Unknown coefficient or term {item!r}. "
                    f"Coefficients: {names}; terms: {list(term_slices)}"
                )
            indices.append(names.index(item))
        else:
            idx = int(item)
            if not -p <= idx < p:
                raise ValidationError(
                    f"Coefficient index {idx} out of range for {p} coefficients"
                )
            indices.append(idx % p)

    if not indices:
        raise ValidationError("Coefficient selection is empty")
    if len(set(indices)) != len(indices):
        raise ValidationError(f"Duplicate coefficients in selection: {which}")
    return np.asarray(indices, dtype=np.int64)


def _joint_test(
    estimate: NDArray,
    cov: NDArray,
    names: tuple[str, ...],
    test: str,
    df_resid: float | None,
) -> WaldTest:
    rank = max(int(np.linalg.matrix_rank(cov)), 1)
    QM = float(estimate @ np.linalg.pinv(cov) @ estimate)

    if test == 't':
        statistic = QM / rank
        p_value = float(stats.f.sf(statistic, rank, df_resid))
        return WaldTest(statistic, rank, float(df_resid), p_value, names, test)

    p_value = float(stats.chi2.sf(QM, rank))
    return WaldTest(QM, rank, None, p_value, names, test)


def wald_test(
    beta: NDArray,
    vcov: NDArray,
    indices: NDArray,
    coefficient_names: Sequence[str],
    *,
    test: str = 'z',
    df_resid: float | None = None,
) -> WaldTest:
    """Omnibus Wald test that a block of coefficients is zero.

    QM = β̃ᵀ (vcov_block)⁻¹ β̃ with df = rank of the block; χ² p-value, or
    F = QM / m with (m, n - p) df under test='t'.

    Args:
        beta: Estimates (p,).
        vcov: Covariance of the estimates (p, p).
        indices: Column indices of the block.
        coefficient_names: Names of all p coefficients.
        test: 'z' or 't'.
        df_resid: Residual df, required for test='t'.

    Returns:
        WaldTest.
    """
    test = _check_test(test)
    if test == 't' and (df_resid is None or df_resid <= 0):
        raise ValidationError(f"test='t' needs positive residual df, got {df_resid}")
    indices = np.asarray(indices, dtype=np.int64)
    names = tuple(coefficient_names[i] for i in indices)
    return _joint_test(
        np.asarray(beta)[indices],
        np.asarray(vcov)[np.ix_(indices, indices)],
        names, test, df_resid,
    )


def contrast(
    L,
    beta: NDArray,
    vcov: NDArray,
    *,
    level: float = 0.95,
    test: str = 'z',
    df_resid: float | None = None,
) -> ContrastResult:
    """Evaluate the linear hypotheses Lβ = 0.

    Args:
        L: Contrast matrix (m, p) or a single row (p,).
        beta: Estimates (p,).
        vcov: Covariance of the estimates (p, p).
        level: Confidence level for the per-row intervals.
        test: 'z' or 't'.
        df_resid: Residual df, required for test='t'.

    Returns:
        ContrastResult with per-row and joint tests.

    Raises:
        DimensionError: If L does not have p columns.
        ValidationError: If L is not of full row rank or not finite.
    """
    test = _check_test(test)
    p = beta.shape[0]
    L = check_array(L, 'L')
    if L.ndim == 1:
        L = L[np.newaxis, :]
    if L.ndim != 2:
        raise DimensionError(
            f"L: expected 2D contrast matrix, got {L.ndim}D",
            expected=(None, p), actual=L.shape,
        )
    if L.shape[1] != p:
        raise DimensionError(
            f"L: contrast matrix has {L.shape[1]} columns, model has {p} "
            f"coefficients",
            expected=(L.shape[0], p), actual=L.shape,
        )
    check_finite(L, 'L')
    check_full_row_rank(L, 'L')

    estimate = L @ beta
    cov = L @ vcov @ L.T
    se = np.sqrt(np.maximum(np.diag(cov), 0.0))
    table = wald_table(estimate, se, level=level, test=test, df_resid=df_resid)
    names = tuple(f"L{i + 1}" for i in range(L.shape[0]))
    joint = _joint_test(estimate, cov, names, test, df_resid)

    return ContrastResult(
        L=L,
        estimate=estimate,
        vcov=cov,
        se=se,
        statistic=table.statistic,
        p_values=table.p_values,
        ci_lower=table.ci_lower,
        ci_upper=table.ci_upper,
        level=level,
        test=test,
        joint=joint,
    )


def heterogeneity_test(y: NDArray, X: NDArray, v: NDArray) -> tuple[float, int, float]:
    """Test for residual heterogeneity.

    QE = yᵀ(W - WX(XᵀWX)⁻¹XᵀW)y with W = diag(1/v), i.e. the weighted
    residual sum of squares of the fixed-effects (v-only) fit, compared
    to χ² with n - p df.

    Returns:
        (QE, df, p_value). With df = 0 the p-value is NaN.
    """
    n, p = X.shape
    w = 1.0 / v
    Xw = X * w[:, np.newaxis]
    beta = np.linalg.solve(X.T @ Xw, Xw.T @ y)
    resid = y - X @ beta
    QE = float(np.sum(w * resid ** 2))
    df = n - p
    p_value = float(stats.chi2.sf(QE, df)) if df > 0 else float('nan')
    return QE, df, p_value


def information_criteria(
    loglik: float,
    n: int,
    p: int,
    n_theta: int,
    reml: bool,
) -> dict[str, float]:
    """Deviance, AIC, BIC and AICc.

    The parameter count is p + len(θ). Under REML the effective sample
    size in BIC and AICc is n - p.
    """
    n_params = p + n_theta
    n_eff = n - p if reml else n
    deviance = -2.0 * loglik
    aic = deviance + 2.0 * n_params
    bic = deviance + np.log(n_eff) * n_params
    denom = max(n_eff, n_params + 2)
    aicc = deviance + 2.0 * n_params * denom / (denom - n_params - 1)
    return {
        'deviance': float(deviance),
        'aic': float(aic),
        'bic': float(bic),
        'aicc': float(aicc),
        'n_params': n_params,
    }
