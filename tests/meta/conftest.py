"""
Shared fixtures for meta-analysis tests.

Provides arm-based field-trial datasets with known structure: each row
is one treatment arm of one trial, with an effect size yi, a known
sampling variance vi, and trial / treatment / observation labels.
"""

import numpy as np
import pytest

from pymetamv.meta import Categorical, ModelSpec, RandomTerm


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(2024)


@pytest.fixture
def three_by_two():
    """3 trials × 2 treatment levels with known effects and no noise.

    Check mean 2.0, active treatment effect -0.5, small trial shifts
    that sum to zero and small matched sampling variances. The design
    is balanced, so the GLS estimates equal the generating values.
    """
    beta_check = 2.0
    beta_active = -0.5
    shift = np.array([0.05, -0.03, -0.02])
    trial = np.repeat(['t1', 't2', 't3'], 2)
    treatment = np.tile(['check', 'active'], 3)
    yi = beta_check + np.repeat(shift, 2) + np.where(treatment == 'active', beta_active, 0.0)
    return {
        'yi': yi,
        'vi': np.full(6, 1e-3),
        'trial': trial,
        'treatment': treatment,
        'obs': np.arange(1, 7),
        'beta_check': beta_check,
        'beta_active': beta_active,
    }


@pytest.fixture
def three_by_two_spec():
    return ModelSpec(
        fixed=[Categorical('treatment', reference='check')],
        random=[RandomTerm('trial')],
        method='REML',
    )


def make_trials(rng, *, n_trials=12, treatments=('check', 'A', 'B'),
                effects=(3.0, -0.4, -0.8), sd_trial=0.3, rho=0.6,
                v_range=(0.005, 0.02), missing_rate=0.0):
    """Simulate arm-based trial data with correlated treatment effects.

    Trial-level effects of the k treatments are drawn from a
    compound-symmetric N(0, Σ) with variance sd_trial² and correlation rho.
    """
    k = len(treatments)
    Sigma = sd_trial ** 2 * ((1.0 - rho) * np.eye(k) + rho * np.ones((k, k)))
    u = rng.multivariate_normal(np.zeros(k), Sigma, size=n_trials)
    means = effects[0] + np.concatenate([[0.0], effects[1:]])

    rows = {'yi': [], 'vi': [], 'trial': [], 'treatment': [], 'obs': [], 'dose': []}
    obs = 0
    for t in range(n_trials):
        for j, trt in enumerate(treatments):
            if j > 0 and rng.uniform() < missing_rate:
                continue
            v = rng.uniform(*v_range)
            obs += 1
            rows['yi'].append(means[j] + u[t, j] + rng.normal(0.0, np.sqrt(v)))
            rows['vi'].append(v)
            rows['trial'].append(f'trial{t + 1:02d}')
            rows['treatment'].append(trt)
            rows['obs'].append(obs)
            rows['dose'].append(float(j) + rng.uniform(-0.1, 0.1))
    data = {key: np.asarray(val) for key, val in rows.items()}
    data['Sigma'] = Sigma
    return data


@pytest.fixture
def trials(rng):
    """12 trials × 3 treatments, compound-symmetric trial effects."""
    return make_trials(rng)


@pytest.fixture
def cs_spec():
    return ModelSpec(
        fixed=[Categorical('treatment', reference='check')],
        random=[RandomTerm('trial', inner='treatment', structure='CS')],
        method='REML',
    )


@pytest.fixture
def two_level_unbalanced():
    """Two treatment levels, 8 trials, two trials without the active arm.

    Deterministic values so the closed-form GLS check has a fixed target.
    """
    trial = np.array(['a', 'a', 'b', 'b', 'c', 'c', 'd', 'd', 'e', 'e',
                      'f', 'f', 'g', 'h'])
    treatment = np.array(['check', 'trt'] * 6 + ['check', 'check'])
    yi = np.array([1.10, 0.62, 0.95, 0.58, 1.30, 0.71, 1.02, 0.40, 0.88, 0.52,
                   1.21, 0.83, 1.15, 0.97])
    vi = np.array([0.010, 0.012, 0.015, 0.011, 0.009, 0.020, 0.013, 0.010,
                   0.016, 0.014, 0.012, 0.018, 0.011, 0.017])
    return {
        'yi': yi, 'vi': vi, 'trial': trial, 'treatment': treatment,
        'obs': np.arange(len(yi)),
    }
