"""
Solution wrapper for multilevel meta-analysis models.

MetaSolution wraps Result[MetaParams] and provides property accessors,
Wald inference (confidence intervals, omnibus moderator tests, custom
contrasts), likelihood ratio comparison and a metafor-style summary().
"""

from __future__ import annotations

import warnings

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from pymetamv.core.result import Result
from pymetamv.meta._common import MetaParams, VarCompSummary
from pymetamv.meta._inference import (
    ContrastResult, WaldTable, WaldTest,
    contrast, information_criteria, resolve_coefficients, wald_table, wald_test,
)


def _significance_stars(p: float) -> str:
    """Return significance stars like R."""
    if p < 0.001:
        return '***'
    elif p < 0.01:
        return '**'
    elif p < 0.05:
        return '*'
    elif p < 0.1:
        return '.'
    else:
        return ' '


def _format_pvalue(p: float) -> str:
    """Format p-value like R."""
    if np.isnan(p):
        return 'NA'
    if p < 2e-16:
        return '< 2e-16'
    elif p < 0.001:
        return f'{p:.2e}'
    else:
        return f'{p:.4f}'


class MetaSolution:
    """Solution wrapper for a fitted multilevel meta-analysis model.

    Every inference method takes `test='z'` (normal / χ², the default)
    or `test='t'` (t / F with n - p residual df).
    """

    def __init__(self, _result: Result[MetaParams]):
        self._result = _result

    @property
    def params(self) -> MetaParams:
        return self._result.params

    @property
    def info(self) -> dict:
        return self._result.info

    @property
    def timing(self) -> dict[str, float] | None:
        return self._result.timing

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    @property
    def backend_name(self) -> str:
        return self._result.backend_name

    # --- Fixed effects ---

    @property
    def coefficients(self) -> NDArray:
        """Fixed effect estimates β̂."""
        return self.params.coefficients

    @property
    def coef(self) -> dict[str, float]:
        """Fixed effects as name → value dict."""
        return dict(zip(self.params.coefficient_names, self.params.coefficients))

    @property
    def coefficient_names(self) -> tuple[str, ...]:
        return self.params.coefficient_names

    @property
    def vcov(self) -> NDArray:
        """Covariance matrix of β̂, (XᵀV̂⁻¹X)⁻¹."""
        return self.params.vcov

    @property
    def se(self) -> NDArray:
        return self.params.se

    @property
    def df_resid(self) -> int:
        """Residual degrees of freedom n - p."""
        return self.params.n_obs - len(self.params.coefficients)

    def coef_table(self, *, level: float = 0.95, test: str = 'z') -> WaldTable:
        """Wald statistics, p-values and confidence intervals of β̂."""
        return wald_table(
            self.coefficients, self.se,
            level=level, test=test, df_resid=self.df_resid,
        )

    def conf_int(self, level: float = 0.95, *, test: str = 'z') -> NDArray:
        """Confidence intervals of β̂ as a (p, 2) array [lower, upper]."""
        table = self.coef_table(level=level, test=test)
        return np.column_stack([table.ci_lower, table.ci_upper])

    @property
    def z_values(self) -> NDArray:
        """Wald z-statistics of β̂."""
        return self.coef_table().statistic

    @property
    def p_values(self) -> NDArray:
        """Two-sided normal p-values of β̂."""
        return self.coef_table().p_values

    # --- Hypothesis tests ---

    def wald_test(self, which=None, *, test: str = 'z') -> WaldTest:
        """Omnibus Wald test that a block of coefficients is zero.

        Args:
            which: A term name, a coefficient name, or a sequence of
                coefficient names / indices. Default: every coefficient
                except the intercept (the test of moderators).
            test: 'z' (χ²) or 't' (F with (m, n - p) df).

        Returns:
            WaldTest.
        """
        names = self.params.coefficient_names
        if which is None:
            which = [i for i, name in enumerate(names) if name != 'intrcpt']
        indices = resolve_coefficients(which, names, self.params.term_slices)
        return wald_test(
            self.coefficients, self.vcov, indices, names,
            test=test, df_resid=self.df_resid,
        )

    def contrast(self, L, *, level: float = 0.95, test: str = 'z') -> ContrastResult:
        """Test the linear hypotheses Lβ = 0.

        Args:
            L: Contrast matrix with one column per coefficient, or a
                single row.
            level: Confidence level of the per-row intervals.
            test: 'z' or 't'.

        Returns:
            ContrastResult with per-row estimates and the joint test.

        Raises:
            DimensionError: If L does not have one column per coefficient.
            ValidationError: If L is not of full row rank.
        """
        return contrast(
            L, self.coefficients, self.vcov,
            level=level, test=test, df_resid=self.df_resid,
        )

    # --- Variance components ---

    @property
    def var_components(self) -> tuple[VarCompSummary, ...]:
        return self.params.var_components

    @property
    def sigma(self) -> dict[str, NDArray]:
        """Estimated covariance matrix per random-effect grouping."""
        return {vc.name: vc.sigma for vc in self.params.var_components}

    @property
    def theta(self) -> NDArray:
        return self.params.theta

    # --- Heterogeneity and model fit ---

    @property
    def QE(self) -> float:
        """Test statistic for residual heterogeneity."""
        return self.params.QE

    @property
    def QE_pvalue(self) -> float:
        return self.params.QE_pvalue

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    def _criteria(self) -> dict[str, float]:
        p = len(self.params.coefficients)
        return information_criteria(
            self.params.log_likelihood, self.params.n_obs, p,
            len(self.params.theta), self.params.method == 'REML',
        )

    @property
    def deviance(self) -> float:
        return self._criteria()['deviance']

    @property
    def aic(self) -> float:
        return self._criteria()['aic']

    @property
    def bic(self) -> float:
        return self._criteria()['bic']

    @property
    def aicc(self) -> float:
        return self._criteria()['aicc']

    @property
    def fitted_values(self) -> NDArray:
        return self.params.fitted_values

    @property
    def residuals(self) -> NDArray:
        return self.params.residuals

    # --- Convergence ---

    @property
    def converged(self) -> bool:
        return self.params.converged

    @property
    def n_iter(self) -> int:
        return self.params.n_iter

    @property
    def gradient_norm(self) -> float:
        return self.params.gradient_norm

    @property
    def loglik_history(self) -> tuple[float, ...]:
        """ℓ at the start and at every accepted optimizer iterate."""
        return self.params.loglik_history

    @property
    def excluded(self) -> tuple[int, ...]:
        """Row positions dropped for invalid vi or yi."""
        return self.params.excluded

    # --- Model comparison ---

    def compare(self, other: 'MetaSolution') -> str:
        """Likelihood ratio test between two nested models.

        Both models should be fit with ML for a valid test of fixed
        effects.

        Args:
            other: The other model to compare against.

        Returns:
            Formatted LRT summary string.
        """
        if self.params.method == 'REML' or other.params.method == 'REML':
            warnings.warn(
                "Likelihood ratio test requires ML (not REML) fits for "
                "valid comparison of fixed effects. Refit with method='ML'.",
                UserWarning,
                stacklevel=2,
            )
        if self.params.n_obs != other.params.n_obs:
            warnings.warn(
                f"Models were fit to different numbers of observations "
                f"({self.params.n_obs} vs {other.params.n_obs})",
                UserWarning,
                stacklevel=2,
            )

        n_params_self = self.params.n_params
        n_params_other = other.params.n_params

        if n_params_self >= n_params_other:
            full, reduced = self, other
            n_full, n_reduced = n_params_self, n_params_other
        else:
            full, reduced = other, self
            n_full, n_reduced = n_params_other, n_params_self

        chi_sq = -2.0 * (reduced.log_likelihood - full.log_likelihood)
        chi_sq = max(chi_sq, 0.0)
        df = n_full - n_reduced
        if df == 0:
            warnings.warn(
                f"Models have the same number of parameters ({n_full}) and "
                f"are not nested; no likelihood ratio p-value is reported",
                UserWarning,
                stacklevel=2,
            )
            p_value = float('nan')
        else:
            p_value = float(stats.chi2.sf(chi_sq, df))

        lines = [
            "Likelihood Ratio Test",
            "=" * 50,
            f"  Reduced model logLik: {reduced.log_likelihood:.4f}  "
            f"(df = {n_reduced})",
            f"  Full model logLik:    {full.log_likelihood:.4f}  "
            f"(df = {n_full})",
            f"  LRT: {chi_sq:.4f}  on {df} df",
            f"  p-value: {_format_pvalue(p_value)}",
        ]
        return '\n'.join(lines)

    # --- Summary ---

    def summary(self, *, test: str = 'z') -> str:
        """metafor-style summary of a multilevel meta-analysis fit."""
        params = self.params
        crit = self._criteria()

        lines = []
        lines.append(
            f"Multivariate Meta-Analysis Model (k = {params.n_obs}; "
            f"method: {params.method})"
        )
        lines.append("")
        lines.append(f" {'logLik':>10s} {'Deviance':>10s} {'AIC':>10s} "
                     f"{'BIC':>10s} {'AICc':>10s}")
        lines.append(
            f" {params.log_likelihood:10.4f} {crit['deviance']:10.4f} "
            f"{crit['aic']:10.4f} {crit['bic']:10.4f} {crit['aicc']:10.4f}"
        )
        lines.append("")

        lines.append("Variance Components:")
        for vc in params.var_components:
            lines.append(f" {vc.name}  (structure: {vc.structure}, "
                         f"groups: {vc.n_groups})")
            lines.append(f"   {'level':<15s} {'estim':>10s} {'sqrt':>10s}")
            for lvl, var in zip(vc.levels, vc.variances):
                lines.append(
                    f"   {str(lvl):<15s} {var:10.4f} {np.sqrt(max(var, 0.0)):10.4f}"
                )
            if vc.corr is not None:
                lines.append("   correlation:")
                for i, lvl in enumerate(vc.levels):
                    row = ' '.join(f'{c:6.3f}' for c in vc.corr[i, :i + 1])
                    lines.append(f"   {str(lvl):<15s} {row}")
        if not params.var_components:
            lines.append(" (none)")
        lines.append("")

        lines.append(
            f"Test for Residual Heterogeneity:\n"
            f"QE(df = {params.QE_df}) = {params.QE:.4f}, "
            f"p-val {_format_pvalue(params.QE_pvalue)}"
        )
        lines.append("")

        if len(params.coefficients) > 1 or params.coefficient_names[0] != 'intrcpt':
            qm = self.wald_test(test=test)
            if test == 't':
                lines.append(
                    f"Test of Moderators (coefficients {list(qm.coefficients)}):\n"
                    f"F(df1 = {qm.df}, df2 = {qm.df_resid:g}) = "
                    f"{qm.statistic:.4f}, p-val {_format_pvalue(qm.p_value)}"
                )
            else:
                lines.append(
                    f"Test of Moderators (coefficients {list(qm.coefficients)}):\n"
                    f"QM(df = {qm.df}) = {qm.statistic:.4f}, "
                    f"p-val {_format_pvalue(qm.p_value)}"
                )
            lines.append("")

        table = self.coef_table(test=test)
        stat_label = 'tval' if test == 't' else 'zval'
        lines.append("Model Results:")
        lines.append(
            f" {'':>15s} {'estimate':>10s} {'se':>10s} {stat_label:>10s} "
            f"{'pval':>10s} {'ci.lb':>10s} {'ci.ub':>10s} {'':>4s}"
        )
        for i, name in enumerate(params.coefficient_names):
            p_str = _format_pvalue(table.p_values[i])
            stars = _significance_stars(table.p_values[i])
            lines.append(
                f" {name:>15s} {params.coefficients[i]:10.4f} "
                f"{params.se[i]:10.4f} {table.statistic[i]:10.4f} "
                f"{p_str:>10s} {table.ci_lower[i]:10.4f} "
                f"{table.ci_upper[i]:10.4f} {stars}"
            )
        lines.append("---")
        lines.append("Signif. codes:  0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1")

        if self._result.warnings:
            lines.append("")
            for w in self._result.warnings:
                lines.append(f"Note: {w}")

        return '\n'.join(lines)

    def __repr__(self) -> str:
        return (
            f"MetaSolution({self.params.method}, "
            f"n={self.params.n_obs}, "
            f"fixed={len(self.params.coefficients)}, "
            f"random={len(self.params.var_components)} groupings, "
            f"optimizer={self._result.backend_name})"
        )
