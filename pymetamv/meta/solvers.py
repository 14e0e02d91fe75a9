"""
Fitting entry points for multilevel meta-analysis.

Public API:
    rma_mv()    — fit a multivariate / multilevel random-effects model
    MetaModel   — the same fit with an explicit lifecycle
                  (UNFITTED → FITTING → FITTED | FAILED)
"""

from __future__ import annotations

from typing import Any, Mapping

import numpy as np
from numpy.typing import NDArray

from pymetamv.core.result import Result
from pymetamv.core.compute.timing import Timer
from pymetamv.core.exceptions import (
    FitCancelledError, NotFittedError, PyMetaMVError, ValidationError,
)

from pymetamv.meta._common import (
    FitControl, FitState, MetaParams, ModelSpec, VarCompSummary,
)
from pymetamv.meta._terms import build_model_matrix, term_columns
from pymetamv.meta._random_effects import (
    GroupingBlock, build_clusters, parse_random_terms,
    theta_bounds, theta_names, theta_start,
)
from pymetamv.meta._likelihood import LikelihoodEngine
from pymetamv.meta._optimizers import LikelihoodObjective, OptimizerDriver
from pymetamv.meta._inference import heterogeneity_test, information_criteria
from pymetamv.meta.design import MetaDesign
from pymetamv.meta.solution import MetaSolution


class MetaModel:
    """A multilevel meta-analysis model with an explicit fit lifecycle.

    The specification is validated and the design built when fit() is
    called, before any optimization work. Inference is only reachable
    once the model is FITTED; a failed fit leaves the model FAILED with
    the error available as `error`. A cancelled fit publishes nothing
    and returns the model to UNFITTED.

    Example:
        >>> model = MetaModel(table, spec, observation_id='obs')
        >>> solution = model.fit()
        >>> model.state
        <FitState.FITTED: 'fitted'>
    """

    def __init__(
        self,
        table: Mapping[str, Any],
        spec: ModelSpec,
        *,
        yi: str = 'yi',
        vi: str = 'vi',
        observation_id: str | None = None,
        control: FitControl | None = None,
    ):
        self.table = table
        self.spec = spec
        self.yi = yi
        self.vi = vi
        self.observation_id = observation_id
        self.control = control if control is not None else FitControl()
        self.state = FitState.UNFITTED
        self.error: PyMetaMVError | None = None
        self._solution: MetaSolution | None = None

    @property
    def solution(self) -> MetaSolution:
        """The fitted solution.

        Raises:
            NotFittedError: Unless the model is FITTED.
        """
        if self.state is not FitState.FITTED:
            raise NotFittedError(
                f"Model is {self.state.value}; call fit() before requesting "
                f"estimates or tests"
            )
        return self._solution

    def contrast(self, L, **kwargs):
        """Evaluate Lβ = 0 on the fitted model (see MetaSolution.contrast)."""
        return self.solution.contrast(L, **kwargs)

    def wald_test(self, which=None, **kwargs):
        """Omnibus Wald test on the fitted model (see MetaSolution.wald_test)."""
        return self.solution.wald_test(which, **kwargs)

    def fit(self, *, cancel=None) -> MetaSolution:
        """Fit the model.

        Args:
            cancel: Optional cancellation token with an is_set() method
                (e.g. threading.Event), polled after every likelihood
                evaluation.

        Returns:
            MetaSolution.

        Raises:
            SpecificationError, ValidationError: Before optimization starts.
            ConvergenceError: When every optimizer attempt fails.
            FitCancelledError: When the token is set during the fit.
        """
        if self.state is FitState.FITTING:
            raise PyMetaMVError("Model is already being fitted")
        self.state = FitState.FITTING
        self.error = None
        self._solution = None
        try:
            solution = _fit(
                self.table, self.spec,
                yi=self.yi, vi=self.vi, observation_id=self.observation_id,
                control=self.control, cancel=cancel,
            )
        except FitCancelledError:
            self.state = FitState.UNFITTED
            raise
        except PyMetaMVError as e:
            self.state = FitState.FAILED
            self.error = e
            raise
        self._solution = solution
        self.state = FitState.FITTED
        return solution

    def __repr__(self) -> str:
        return (
            f"MetaModel({self.spec.method}, fixed={len(self.spec.fixed)} terms, "
            f"random={len(self.spec.random)} groupings, state={self.state.value})"
        )


def rma_mv(
    table: Mapping[str, Any],
    spec: ModelSpec,
    *,
    yi: str = 'yi',
    vi: str = 'vi',
    observation_id: str | None = None,
    control: FitControl | None = None,
    cancel=None,
    **control_kwargs,
) -> MetaSolution:
    """Fit a multivariate / multilevel random-effects meta-analysis model.

    The marginal model is y = Xβ + Σ_t Z_t u_t + e with e ~ N(0, diag(vi))
    and, per random term, u_t ~ N(0, Σ_t) per grouping level. Variance
    components are estimated by ML or REML with the selected optimizer;
    β̂ and its covariance follow by GLS at the estimate.

    Args:
        table: Mapping of column name → array-like, or a pandas DataFrame.
        spec: Fixed terms, random terms and estimation method.
        yi: Name of the effect-size column.
        vi: Name of the sampling-variance column.
        observation_id: Optional unique observation identifier column,
            used to label excluded rows.
        control: Optimizer configuration. Keyword arguments matching
            FitControl fields (optimizer=..., max_iter=...) may be given
            instead.
        cancel: Optional cancellation token with an is_set() method.

    Returns:
        MetaSolution with fixed effects, variance components, fit
        statistics, and summary().

    Examples:
        # Treatment means with correlated trial effects
        >>> spec = ModelSpec(
        ...     fixed=[Categorical('treatment', reference='check')],
        ...     random=[RandomTerm('trial', inner='treatment', structure='CS'),
        ...             RandomTerm('obs')],
        ... )
        >>> result = rma_mv(data, spec, observation_id='obs')

        # Same model, derivative-free optimizer
        >>> result = rma_mv(data, spec, optimizer='nelder-mead')
    """
    if control is None:
        control = FitControl(**control_kwargs)
    elif control_kwargs:
        raise TypeError(
            f"Pass either control or keyword options, not both "
            f"(got {sorted(control_kwargs)})"
        )
    return _fit(
        table, spec, yi=yi, vi=vi, observation_id=observation_id,
        control=control, cancel=cancel,
    )


def _fit(
    table: Mapping[str, Any],
    spec: ModelSpec,
    *,
    yi: str,
    vi: str,
    observation_id: str | None,
    control: FitControl,
    cancel,
) -> MetaSolution:
    timer = Timer()
    timer.start()

    referenced = term_columns(spec.fixed)
    for term in spec.random:
        referenced.append(term.grouping)
        if term.inner is not None:
            referenced.append(term.inner)

    design = MetaDesign.validate(
        table, referenced, yi=yi, vi=vi, observation_id=observation_id,
    )

    with timer.section('setup'):
        mm = build_model_matrix(
            design.columns, spec.fixed, intercept=spec.intercept, n_obs=design.n,
        )
        blocks = parse_random_terms(design.columns, spec.random, design.n)
        clusters = build_clusters(blocks, design.n)
        engine = LikelihoodEngine(
            design.yi, mm.X, design.vi, blocks, clusters,
            reml=spec.reml, n_jobs=control.n_jobs,
        )

        if control.theta0 is not None:
            theta0 = np.asarray(control.theta0, dtype=np.float64).ravel()
            if theta0.shape[0] != engine.n_theta:
                raise ValidationError(
                    f"theta0 has {theta0.shape[0]} elements, model has "
                    f"{engine.n_theta} variance parameters {theta_names(blocks)}"
                )
        else:
            theta0 = theta_start(blocks, design.yi, mm.X, design.vi)

    with timer.section('optimization'):
        objective = LikelihoodObjective(
            engine,
            numeric_gradient=(control.gradient == 'numeric'),
            cancel=cancel,
        )
        if engine.n_theta == 0:
            theta_hat = theta0
            opt_info = {
                'optimizer': None, 'n_iter': 0, 'restarts': 0,
                'n_fev': 0, 'relative_change': 0.0,
                'n_rejected': 0, 'message': 'no variance components',
            }
            gnorm = 0.0
            history = (engine.loglik(theta_hat),)
            n_iter = 0
        else:
            driver = OptimizerDriver(control)
            outcome = driver.run(objective, theta0, theta_bounds(blocks))
            theta_hat = outcome.theta
            opt_info = {
                'optimizer': outcome.backend,
                'n_iter': outcome.n_iter,
                'n_fev': outcome.n_fev,
                'relative_change': outcome.relative_change,
                'restarts': outcome.restarts,
                'n_rejected': outcome.n_rejected,
                'message': outcome.message,
            }
            gnorm = outcome.gradient_norm
            history = outcome.history
            n_iter = outcome.n_iter

    with timer.section('inference'):
        final = engine.evaluate(theta_hat)
        beta = final.beta
        vcov = final.vcov
        se = np.sqrt(np.maximum(np.diag(vcov), 0.0))
        var_comps = _extract_var_components(theta_hat, blocks)
        QE, QE_df, QE_p = heterogeneity_test(design.yi, mm.X, design.vi)
        fit_stats = information_criteria(
            final.loglik, design.n, mm.p, engine.n_theta, spec.reml,
        )
        fitted = mm.X @ beta

    timer.stop()

    params = MetaParams(
        coefficients=beta,
        coefficient_names=mm.column_names,
        vcov=vcov,
        se=se,
        term_slices=dict(mm.term_slices),
        var_components=tuple(var_comps),
        theta=theta_hat,
        theta_names=tuple(theta_names(blocks)),
        log_likelihood=final.loglik,
        method=spec.method,
        n_obs=design.n,
        n_params=fit_stats['n_params'],
        n_clusters=len(clusters),
        QE=QE,
        QE_df=QE_df,
        QE_pvalue=QE_p,
        converged=True,
        n_iter=n_iter,
        gradient_norm=gnorm,
        loglik_history=tuple(history),
        fitted_values=fitted,
        residuals=design.yi - fitted,
        excluded=design.excluded,
    )

    warn_list = []
    if design.excluded:
        warn_list.append(
            f"Excluded {len(design.excluded)} observation(s) with invalid "
            f"sampling variance or effect size: rows {list(design.excluded)}"
        )
    if opt_info['restarts']:
        warn_list.append(
            f"Optimizer converged after {opt_info['restarts']} restart(s)"
        )
    if opt_info['n_rejected']:
        warn_list.append(
            f"{opt_info['n_rejected']} likelihood evaluation(s) rejected "
            f"at infeasible variance components"
        )
    for vc in var_comps:
        if np.any(vc.variances < 1e-8 * max(1.0, float(np.mean(design.vi)))):
            warn_list.append(
                f"Variance component of '{vc.name}' is estimated at the "
                f"zero boundary"
            )

    result = Result(
        params=params,
        info={
            'method': spec.method,
            'converged': True,
            'n_evals': objective.n_evals,
            **opt_info,
            **{k: v for k, v in fit_stats.items() if k != 'n_params'},
        },
        timing=timer.result(),
        backend_name=opt_info['optimizer'] or 'gls',
        warnings=tuple(warn_list),
    )

    return MetaSolution(_result=result)


# =====================================================================
# Helpers
# =====================================================================

def _extract_var_components(
    theta: NDArray,
    blocks: list[GroupingBlock],
) -> list[VarCompSummary]:
    """Covariance matrix, variances and correlations of every grouping."""
    var_comps = []
    for block in blocks:
        sigma = block.structure.sigma(theta[block.theta_slice])
        variances = np.diag(sigma).copy()
        if block.k > 1:
            sd = np.sqrt(np.maximum(variances, 0.0))
            with np.errstate(divide='ignore', invalid='ignore'):
                corr = sigma / np.outer(sd, sd)
            corr = np.where(np.outer(sd, sd) > 0, corr, 0.0)
            corr = np.clip(corr, -1.0, 1.0)
            np.fill_diagonal(corr, 1.0)
        else:
            corr = None
        var_comps.append(VarCompSummary(
            name=block.name,
            structure=block.structure.tag,
            levels=block.levels,
            sigma=sigma,
            variances=variances,
            corr=corr,
            n_groups=block.n_groups,
        ))
    return var_comps
