"""
End-to-end tests for rma_mv() and MetaModel.

Validates:
    - Recovery of known treatment means on a balanced design
    - β̂ equals the closed-form GLS estimate at the fitted Σ
    - Refitting from the estimate is a fixed point
    - Contrasts agree with the coefficient table
    - Fit lifecycle, cancellation, exclusions, summaries
"""

import threading

import numpy as np
import pytest

from pymetamv import rma_mv
from pymetamv.core.exceptions import (
    ConvergenceError, FitCancelledError, NotFittedError, SpecificationError,
)
from pymetamv.meta import (
    Categorical, Continuous, FitControl, FitState, MetaModel, MetaSolution,
    ModelSpec, OPTIMIZERS, RandomTerm,
)


def _table(data):
    return {key: data[key] for key in ('yi', 'vi', 'trial', 'treatment', 'obs')}


# ═══════════════════════════════════════════════════════════════════════
# Known-answer fits
# ═══════════════════════════════════════════════════════════════════════


class TestBalancedRecovery:

    def test_recovers_treatment_means(self, three_by_two, three_by_two_spec):
        sol = rma_mv(_table(three_by_two), three_by_two_spec, observation_id='obs')
        assert isinstance(sol, MetaSolution)
        assert sol.coefficient_names == ('intrcpt', 'treatmentactive')
        np.testing.assert_allclose(
            sol.coefficients,
            [three_by_two['beta_check'], three_by_two['beta_active']],
            rtol=0.05,
        )
        assert sol.coef['treatmentactive'] == pytest.approx(-0.5, rel=0.05)
        assert sol.converged
        assert sol.params.n_obs == 6
        assert sol.df_resid == 4

    def test_loglik_history_non_decreasing(self, three_by_two, three_by_two_spec):
        sol = rma_mv(_table(three_by_two), three_by_two_spec)
        history = np.asarray(sol.loglik_history)
        assert history.size >= 1
        assert np.all(np.diff(history) >= -1e-8)
        assert history[-1] == pytest.approx(sol.log_likelihood, abs=1e-8)

    def test_no_random_effects_is_weighted_least_squares(self, trials):
        spec = ModelSpec(fixed=[Categorical('treatment', reference='check')])
        sol = rma_mv(_table(trials), spec)
        X = np.column_stack([
            np.ones(trials['yi'].size),
            trials['treatment'] == 'A',
            trials['treatment'] == 'B',
        ]).astype(float)
        w = 1.0 / trials['vi']
        XtWX = X.T @ (X * w[:, None])
        beta = np.linalg.solve(XtWX, X.T @ (w * trials['yi']))
        np.testing.assert_allclose(sol.coefficients, beta, rtol=1e-10)
        np.testing.assert_allclose(sol.vcov, np.linalg.inv(XtWX), rtol=1e-10)
        assert sol.backend_name == 'gls'
        assert sol.theta.size == 0
        assert sol.n_iter == 0
        assert sol.info['n_fev'] == 0


class TestClosedFormGLS:

    def test_beta_matches_gls_at_fitted_sigma(self, two_level_unbalanced):
        data = two_level_unbalanced
        spec = ModelSpec(
            fixed=[Categorical('treatment', reference='check')],
            random=[RandomTerm('trial', inner='treatment', structure='CS')],
        )
        sol = rma_mv(_table(data), spec, optimizer='nelder-mead')

        vc = sol.var_components[0]
        levels = [str(lvl) for lvl in vc.levels]
        idx = np.array([levels.index(str(t)) for t in data['treatment']])
        same_trial = data['trial'][:, None] == data['trial'][None, :]
        V = np.where(same_trial, vc.sigma[np.ix_(idx, idx)], 0.0) + np.diag(data['vi'])

        X = np.column_stack([
            np.ones(data['yi'].size), data['treatment'] == 'trt',
        ]).astype(float)
        Vinv = np.linalg.inv(V)
        vcov = np.linalg.inv(X.T @ Vinv @ X)
        beta = vcov @ X.T @ Vinv @ data['yi']

        np.testing.assert_allclose(sol.coefficients, beta, rtol=1e-6)
        np.testing.assert_allclose(sol.vcov, vcov, rtol=1e-6)
        np.testing.assert_allclose(sol.fitted_values, X @ beta, rtol=1e-6)

    def test_refit_from_estimate_is_fixed_point(self, three_by_two, three_by_two_spec):
        first = rma_mv(_table(three_by_two), three_by_two_spec)
        second = rma_mv(
            _table(three_by_two), three_by_two_spec,
            control=FitControl(theta0=first.theta),
        )
        assert second.n_iter <= 1
        assert second.log_likelihood == pytest.approx(first.log_likelihood, abs=1e-8)
        np.testing.assert_allclose(second.coefficients, first.coefficients, atol=1e-8)

    @pytest.mark.parametrize("optimizer", sorted(OPTIMIZERS))
    def test_refit_is_fixed_point_for_every_optimizer(self, trials, cs_spec, optimizer):
        first = rma_mv(_table(trials), cs_spec)
        second = rma_mv(
            _table(trials), cs_spec,
            control=FitControl(optimizer=optimizer, theta0=first.theta),
        )
        assert second.n_iter <= 1
        assert second.info['optimizer'] == optimizer
        assert second.log_likelihood == pytest.approx(first.log_likelihood, abs=1e-8)
        np.testing.assert_allclose(second.theta, first.theta, atol=1e-8)


class TestCorrelatedTrials:

    def test_cs_fit(self, trials, cs_spec):
        sol = rma_mv(_table(trials), cs_spec, observation_id='obs')
        assert sol.coefficient_names == ('intrcpt', 'treatmentA', 'treatmentB')
        assert sol.theta.size == 2
        vc = sol.var_components[0]
        assert vc.structure == 'CS'
        assert vc.sigma.shape == (3, 3)
        assert vc.corr is not None
        np.testing.assert_allclose(np.diag(vc.corr), 1.0)
        assert np.all(np.linalg.eigvalsh(vc.sigma) >= -1e-10)
        np.testing.assert_allclose(sol.coefficients, [3.0, -0.4, -0.8], atol=0.35)

    @pytest.mark.parametrize("optimizer", ['nelder-mead', 'l-bfgs-b', 'trust-exact'])
    def test_optimizers_agree(self, trials, cs_spec, optimizer):
        reference = rma_mv(_table(trials), cs_spec)
        sol = rma_mv(_table(trials), cs_spec, optimizer=optimizer)
        assert sol.info['optimizer'] == optimizer
        assert sol.log_likelihood == pytest.approx(reference.log_likelihood, abs=1e-4)
        np.testing.assert_allclose(sol.coefficients, reference.coefficients, atol=1e-3)

    def test_numeric_gradient(self, trials, cs_spec):
        analytic = rma_mv(_table(trials), cs_spec)
        numeric = rma_mv(_table(trials), cs_spec, gradient='numeric', gtol=1e-4)
        assert numeric.log_likelihood == pytest.approx(analytic.log_likelihood, abs=1e-4)

    def test_continuous_moderator(self, trials):
        spec = ModelSpec(
            fixed=[Continuous('dose')],
            random=[RandomTerm('trial'), RandomTerm('obs')],
        )
        sol = rma_mv(_table(trials) | {'dose': trials['dose']}, spec)
        assert sol.coefficient_names == ('intrcpt', 'dose')
        assert set(sol.sigma) == {'1 | trial', '1 | obs'}
        assert sol.coefficients[1] < 0

    def test_info_and_timing(self, trials, cs_spec):
        sol = rma_mv(_table(trials), cs_spec)
        assert sol.info['method'] == 'REML'
        assert sol.info['converged'] is True
        assert sol.info['n_evals'] > 0
        assert sol.info['n_fev'] > 0
        assert np.isfinite(sol.info['relative_change'])
        assert sol.info['relative_change'] >= 0.0
        assert sol.info['aic'] == pytest.approx(sol.aic)
        assert {'setup', 'optimization', 'inference'} <= set(sol.timing)

    def test_information_criteria(self, trials, cs_spec):
        sol = rma_mv(_table(trials), cs_spec)
        n, p = sol.params.n_obs, 3
        assert sol.params.n_params == p + 2
        assert sol.deviance == pytest.approx(-2 * sol.log_likelihood)
        assert sol.aic == pytest.approx(sol.deviance + 2 * 5)
        assert sol.bic == pytest.approx(sol.deviance + 5 * np.log(n - p))

    def test_heterogeneity(self, trials, cs_spec):
        sol = rma_mv(_table(trials), cs_spec)
        assert sol.QE > sol.params.QE_df
        assert 0.0 <= sol.QE_pvalue < 0.05


# ═══════════════════════════════════════════════════════════════════════
# Inference on the fitted model
# ═══════════════════════════════════════════════════════════════════════


class TestFittedInference:

    @pytest.fixture
    def solution(self, trials, cs_spec):
        return rma_mv(_table(trials), cs_spec)

    @pytest.mark.parametrize("j", [0, 1, 2])
    def test_identity_contrast_matches_coef_table(self, solution, j):
        result = solution.contrast(np.eye(3)[j])
        assert result.statistic[0] == pytest.approx(solution.z_values[j], rel=1e-10)
        assert result.p_values[0] == pytest.approx(solution.p_values[j], rel=1e-8)

    def test_conf_int(self, solution):
        ci = solution.conf_int()
        assert ci.shape == (3, 2)
        assert np.all(ci[:, 0] < solution.coefficients)
        assert np.all(ci[:, 1] > solution.coefficients)

    def test_moderator_test_defaults_to_non_intercept(self, solution):
        by_default = solution.wald_test()
        by_term = solution.wald_test('treatment')
        assert by_default.coefficients == ('treatmentA', 'treatmentB')
        assert by_default.statistic == pytest.approx(by_term.statistic)
        assert by_default.df == 2

    def test_t_test_uses_residual_df(self, solution):
        result = solution.wald_test('treatment', test='t')
        assert result.df_resid == solution.df_resid

    def test_summary(self, solution):
        text = solution.summary()
        assert 'Multivariate Meta-Analysis Model' in text
        assert 'treatmentA' in text
        assert 'REML' in text

    def test_repr(self, solution):
        assert repr(solution).startswith('MetaSolution(REML')

    def test_compare_ml_fits(self, trials):
        random = [RandomTerm('trial', inner='treatment', structure='CS')]
        full = rma_mv(_table(trials), ModelSpec(
            fixed=[Categorical('treatment', reference='check')],
            random=random, method='ML',
        ))
        reduced = rma_mv(_table(trials), ModelSpec(random=random, method='ML'))
        text = full.compare(reduced)
        assert 'Likelihood Ratio Test' in text
        assert 'on 2 df' in text

    def test_compare_reml_warns(self, solution):
        with pytest.warns(UserWarning, match="ML"):
            solution.compare(solution)

    def test_compare_equal_parameter_counts_reports_no_pvalue(self, trials):
        spec = ModelSpec(
            fixed=[Categorical('treatment', reference='check')],
            random=[RandomTerm('trial', inner='treatment', structure='CS')],
            method='ML',
        )
        sol = rma_mv(_table(trials), spec)
        with pytest.warns(UserWarning, match="not nested"):
            text = sol.compare(sol)
        assert 'on 0 df' in text
        assert 'p-value: NA' in text


# ═══════════════════════════════════════════════════════════════════════
# Input handling
# ═══════════════════════════════════════════════════════════════════════


class TestInputs:

    def test_invalid_variance_excluded(self, trials, cs_spec):
        table = _table(trials)
        table['vi'] = table['vi'].copy()
        table['vi'][0] = 0.0
        with pytest.warns(UserWarning, match="Excluded 1"):
            sol = rma_mv(table, cs_spec, observation_id='obs')
        assert sol.excluded == (0,)
        assert sol.params.n_obs == trials['yi'].size - 1
        assert any('Excluded' in w for w in sol.warnings)

    def test_dataframe(self, three_by_two, three_by_two_spec):
        pd = pytest.importorskip("pandas")
        frame = pd.DataFrame(_table(three_by_two))
        from_frame = rma_mv(frame, three_by_two_spec)
        from_dict = rma_mv(_table(three_by_two), three_by_two_spec)
        np.testing.assert_allclose(from_frame.coefficients, from_dict.coefficients)

    def test_missing_column(self, three_by_two):
        spec = ModelSpec(fixed=[Categorical('variety')], random=[RandomTerm('trial')])
        with pytest.raises(SpecificationError):
            rma_mv(_table(three_by_two), spec)

    def test_control_and_keywords_conflict(self, three_by_two, three_by_two_spec):
        with pytest.raises(TypeError):
            rma_mv(_table(three_by_two), three_by_two_spec,
                   control=FitControl(), optimizer='bfgs')


# ═══════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════


class TestMetaModel:

    def test_states(self, three_by_two, three_by_two_spec):
        model = MetaModel(_table(three_by_two), three_by_two_spec)
        assert model.state is FitState.UNFITTED
        with pytest.raises(NotFittedError):
            model.solution
        with pytest.raises(NotFittedError):
            model.contrast([0.0, 1.0])

        sol = model.fit()
        assert model.state is FitState.FITTED
        assert model.solution is sol
        assert model.wald_test().df == 1
        assert 'fitted' in repr(model)

    def test_failed_fit(self, trials, cs_spec):
        model = MetaModel(
            _table(trials), cs_spec,
            control=FitControl(max_iter=1, max_restarts=0),
        )
        with pytest.raises(ConvergenceError):
            model.fit()
        assert model.state is FitState.FAILED
        assert isinstance(model.error, ConvergenceError)
        with pytest.raises(NotFittedError):
            model.solution

    def test_specification_error_fails(self, three_by_two):
        spec = ModelSpec(random=[RandomTerm('site')])
        model = MetaModel(_table(three_by_two), spec)
        with pytest.raises(SpecificationError):
            model.fit()
        assert model.state is FitState.FAILED

    def test_cancelled_fit_returns_to_unfitted(self, trials, cs_spec):
        cancel = threading.Event()
        cancel.set()
        model = MetaModel(_table(trials), cs_spec)
        with pytest.raises(FitCancelledError):
            model.fit(cancel=cancel)
        assert model.state is FitState.UNFITTED
        assert model.error is None

        model.fit()
        assert model.state is FitState.FITTED
