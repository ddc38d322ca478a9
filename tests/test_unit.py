"""
Unit Tests for the Sampler Building Blocks

Tests individual pieces of the iteration kernel in isolation:
- Prior log densities against SciPy
- Gamma and log-scale proposals (moments, Hastings terms)
- Inclusion priors (beta-binomial, truncated within-group)
- Gibbs draws of beta and sigsq
- Chain recording, sealing and acceptance diagnostics

Run with: pytest tests/test_unit.py -v
"""

import warnings

import numpy as np
import jax
import jax.numpy as jnp
import jax.random as random
import pytest
from scipy import stats as scipy_stats
from scipy.integrate import trapezoid
from scipy.special import betaln, comb, gammaln

from kmbayes.error_handling import ConvergenceWarning
from kmbayes.kernel import factorize_v
from kmbayes.mcmc.config import build_initial_state, resolve_starting_values
from kmbayes.mcmc.diagnostics import acceptance_table, check_acceptance_rates
from kmbayes.mcmc.gibbs import draw_sigsq, gibbs_beta_sigsq_step
from kmbayes.mcmc.priors import (
    beta_binomial_log_prior,
    lambda_log_prior,
    log_within_group_prior,
    r_log_prior,
)
from kmbayes.mcmc.types import ChainRecorder, ModelData, PosteriorChain
from kmbayes.proposals import (
    gamma_logpdf_mean_sd,
    gamma_shape_rate,
    gamma_switch_on_proposal,
    gamma_walk_proposal,
    log_walk_proposal,
    sample_gamma_mean_sd,
)
from kmbayes.selection import build_selection_spec
from kmbayes.settings import build_control_params
from kmbayes.update_plan import StepType, UpdateStep


# ============================================================================
# PRIOR DENSITIES
# ============================================================================

class TestPriors:
    """Log densities match SciPy up to the documented constants."""

    def test_gamma_mean_sd(self):
        shape, rate = gamma_shape_rate(10.0, 5.0)
        assert shape == pytest.approx(4.0)
        assert rate == pytest.approx(0.4)
        for x in [0.5, 3.0, 17.0]:
            expected = scipy_stats.gamma.logpdf(x, a=4.0, scale=2.5)
            assert float(gamma_logpdf_mean_sd(x, 10.0, 5.0)) == pytest.approx(expected)

    def test_gamma_non_positive_is_minus_inf(self):
        assert float(gamma_logpdf_mean_sd(0.0, 1.0, 1.0)) == -np.inf
        assert float(gamma_logpdf_mean_sd(-2.0, 1.0, 1.0)) == -np.inf

    def test_lambda_prior(self):
        control = build_control_params({'mu_lambda': [10.0, 2.0], 'sigma_lambda': [10.0, 1.0]},
                                       n_lambda=2)
        expected = scipy_stats.gamma.logpdf(3.0, a=4.0, scale=0.5)
        assert float(lambda_log_prior(3.0, 1, control)) == pytest.approx(expected)

    def test_r_prior_gamma(self):
        control = build_control_params({'r_prior': 'gamma', 'mu_r': 5.0, 'sigma_r': 5.0})
        expected = scipy_stats.gamma.logpdf(2.0, a=1.0, scale=5.0)
        assert float(r_log_prior(2.0, control)) == pytest.approx(expected)

    def test_r_prior_uniform(self):
        control = build_control_params({'r_prior': 'unif', 'r_a': 1.0, 'r_b': 5.0})
        assert float(r_log_prior(2.0, control)) == pytest.approx(-np.log(4.0))
        assert float(r_log_prior(6.0, control)) == -np.inf

    def test_r_prior_inverse_uniform_normalized(self):
        control = build_control_params({'r_prior': 'invunif', 'r_a': 0.5, 'r_b': 4.0})
        grid = np.linspace(0.25, 2.0, 20001)
        density = np.exp(np.asarray(jax.vmap(lambda r: r_log_prior(r, control))(grid)))
        assert trapezoid(density, grid) == pytest.approx(1.0, rel=1e-4)
        assert float(r_log_prior(0.2, control)) == -np.inf
        assert float(r_log_prior(2.5, control)) == -np.inf

    def test_r_prior_inverse_uniform_unbounded(self):
        control = build_control_params(None)
        assert np.isfinite(float(r_log_prior(1e6, control)))
        assert float(r_log_prior(0.005, control)) == -np.inf


class TestInclusionPriors:
    """Beta-binomial and truncated within-group inclusion priors."""

    @pytest.mark.parametrize("a, b", [(1.0, 1.0), (2.0, 0.5)])
    def test_beta_binomial_normalizes(self, a, b):
        # sum over configurations: C(N, k) p(delta) with p(delta) = B(k + a, N - k + b) / B(a, b)
        N = 5
        log_p = np.array([float(beta_binomial_log_prior(k, N, a, b)) for k in range(N + 1)])
        const = -betaln(a, b) - gammaln(N + a + b)
        total = sum(comb(N, k) * np.exp(log_p[k] + const) for k in range(N + 1))
        assert total == pytest.approx(1.0)

    @pytest.mark.parametrize("n, a, b", [(2, 1.0, 1.0), (4, 1.0, 1.0), (3, 2.0, 3.0)])
    def test_within_group_normalizes(self, n, a, b):
        total = sum(comb(n, k) * np.exp(float(log_within_group_prior(k, n, a, b)))
                    for k in range(1, n + 1))
        assert total == pytest.approx(1.0)

    def test_within_group_pair_values(self):
        # a = b = 1, n = 2: B(2, 2) = 1/6 per single-member configuration, B(3, 1) = 1/3 for both,
        # renormalized by 1 - B(1, 3) = 2/3
        assert float(log_within_group_prior(1.0, 2, 1.0, 1.0)) == pytest.approx(np.log(1 / 4))
        assert float(log_within_group_prior(2.0, 2, 1.0, 1.0)) == pytest.approx(np.log(1 / 2))


# ============================================================================
# PROPOSALS
# ============================================================================

class TestProposals:
    """Proposal draws and the Hastings terms they return."""

    def test_sample_gamma_moments(self):
        draws = np.asarray(sample_gamma_mean_sd(random.PRNGKey(0), 3.0, 0.5, shape=(20000,)))
        assert draws.mean() == pytest.approx(3.0, rel=0.02)
        assert draws.std() == pytest.approx(0.5, rel=0.05)

    def test_gamma_walk_hastings(self):
        key = random.PRNGKey(1)
        proposal, log_hastings, new_key = gamma_walk_proposal(key, 2.0, 0.5)
        expected = (scipy_stats.gamma.logpdf(2.0, a=float(proposal) ** 2 / 0.25,
                                             scale=0.25 / float(proposal))
                    - scipy_stats.gamma.logpdf(float(proposal), a=16.0, scale=0.125))
        assert float(log_hastings) == pytest.approx(expected, rel=1e-8)
        assert not np.array_equal(np.asarray(new_key), np.asarray(key))

    def test_gamma_walk_centered(self):
        keys = random.split(random.PRNGKey(2), 5000)
        proposals = jax.vmap(lambda k: gamma_walk_proposal(k, 4.0, 0.2)[0])(keys)
        assert float(jnp.mean(proposals)) == pytest.approx(4.0, rel=0.01)

    def test_switch_on_density(self):
        proposal, log_q, _ = gamma_switch_on_proposal(random.PRNGKey(3), 1.0, 2.0)
        expected = scipy_stats.gamma.logpdf(float(proposal), a=0.25, scale=4.0)
        assert float(proposal) > 0
        assert float(log_q) == pytest.approx(expected)

    def test_log_walk(self):
        proposal, step, _ = log_walk_proposal(random.PRNGKey(4), 2.0, 0.1)
        assert float(step) == pytest.approx(np.log(float(proposal)) - np.log(2.0))
        assert float(proposal) > 0


# ============================================================================
# GIBBS STEP
# ============================================================================

@pytest.fixture
def gibbs_setup(small_data):
    y, Z, X, _ = small_data
    control = build_control_params(None)
    selection = build_selection_spec(4)
    values = resolve_starting_values(y, X, 1, control, selection)
    data = ModelData(y=y, X=X, Z=Z).to_device()
    return build_initial_state(values, data), data, control


class TestGibbs:
    """Closed-form draws of beta and sigsq."""

    def test_step_is_valid(self, gibbs_setup):
        state, data, control = gibbs_setup
        new_state, codes, ok = gibbs_beta_sigsq_step(random.PRNGKey(0), state, data, control,
                                                     UpdateStep(StepType.GIBBS_BETA_SIGSQ))
        assert bool(ok)
        assert codes.shape == (0,)
        assert float(new_state.sigsq) > 0
        assert new_state.beta.shape == state.beta.shape
        np.testing.assert_allclose(np.asarray(new_state.D), np.asarray(state.D), atol=1e-12)

    def test_beta_mean(self, gibbs_setup):
        state, data, control = gibbs_setup
        step = UpdateStep(StepType.GIBBS_BETA_SIGSQ)
        keys = random.split(random.PRNGKey(5), 4000)
        betas = jax.vmap(lambda k: gibbs_beta_sigsq_step(k, state, data, control, step)[0].beta)(keys)

        vcomps = factorize_v(state.D, state.lam)
        L = np.asarray(vcomps.L)
        V = L @ L.T
        X, y = np.asarray(data.X), np.asarray(data.y)
        VinvX = np.linalg.solve(V, X)
        beta_hat = np.linalg.solve(X.T @ VinvX, VinvX.T @ y)
        sd = np.sqrt(float(state.sigsq) * np.diag(np.linalg.inv(X.T @ VinvX)))
        means = np.asarray(betas).mean(axis=0)
        for j in range(means.size):
            assert means[j] == pytest.approx(beta_hat[j], abs=float(4 * sd[j] / np.sqrt(4000)))

    def test_sigsq_mean(self, gibbs_setup):
        state, data, control = gibbs_setup
        vcomps = factorize_v(state.D, state.lam)
        resid = data.y - data.X @ state.beta
        keys = random.split(random.PRNGKey(6), 4000)
        draws = np.asarray(jax.vmap(lambda k: draw_sigsq(k, vcomps, resid, 30, control))(keys))

        L = np.asarray(vcomps.L)
        e = np.asarray(resid)
        rate = control.b_sigsq + 0.5 * e @ np.linalg.solve(L @ L.T, e)
        shape = control.a_sigsq + 15.0
        expected = scipy_stats.invgamma.mean(shape, scale=rate)
        assert draws.mean() == pytest.approx(expected, rel=0.03)

    def test_without_covariates(self, small_data):
        y, Z, _, _ = small_data
        control = build_control_params(None)
        X = np.zeros((30, 0))
        values = resolve_starting_values(y, X, 1, control, build_selection_spec(4))
        data = ModelData(y=y, X=X, Z=Z).to_device()
        state = build_initial_state(values, data)
        new_state, _, ok = gibbs_beta_sigsq_step(random.PRNGKey(0), state, data, control,
                                                 UpdateStep(StepType.GIBBS_BETA_SIGSQ))
        assert bool(ok)
        assert new_state.beta.shape == (0,)


# ============================================================================
# CHAIN RECORDING AND DIAGNOSTICS
# ============================================================================

def _chunk(n, outcomes):
    return {
        'beta': np.zeros((n, 1)),
        'sigsq': np.ones(n),
        'lam': np.ones((n, 1)),
        'r': np.ones((n, 2)),
        'delta': np.ones((n, 2)),
        'outcomes': outcomes,
    }


class TestChainRecorder:
    """Append-only recording and sealing."""

    def test_partial_commit(self):
        recorder = ChainRecorder(1, 1, 2, ('lambda[0]',))
        recorder.append(_chunk(5, np.ones((5, 1))), n_commit=3)
        recorder.append(_chunk(4, np.zeros((4, 1))))
        chain = recorder.seal()
        assert len(chain) == 7
        assert chain.delta.dtype == bool
        assert chain.outcomes.dtype == np.int8

    def test_sealed_is_read_only(self):
        recorder = ChainRecorder(1, 1, 2, ('lambda[0]',))
        recorder.append(_chunk(2, np.ones((2, 1))))
        chain = recorder.seal()
        with pytest.raises(ValueError):
            chain.sigsq[0] = 5.0

    def test_shape_mismatch(self):
        recorder = ChainRecorder(1, 1, 3, ('lambda[0]',))
        with pytest.raises(ValueError, match="r"):
            recorder.append(_chunk(2, np.ones((2, 1))))

    def test_empty_seal(self):
        chain = ChainRecorder(0, 1, 2, ('lambda[0]',)).seal()
        assert len(chain) == 0
        assert chain.beta.shape == (0, 0)


def _chain_with_rates(accepted, attempted, labels):
    T = max(attempted)
    outcomes = np.full((T, len(labels)), -1, dtype=np.int8)
    for j, (a, t) in enumerate(zip(accepted, attempted)):
        outcomes[:t, j] = 0
        outcomes[:a, j] = 1
    return PosteriorChain(
        beta=np.zeros((T, 0)), sigsq=np.ones(T), lam=np.ones((T, 1)),
        r=np.ones((T, 1)), delta=np.ones((T, 1), dtype=bool),
        outcomes=outcomes, slot_labels=tuple(labels),
    )


class TestAcceptanceDiagnostics:
    """Acceptance counting and ConvergenceWarning."""

    def test_counts_ignore_not_attempted(self):
        chain = _chain_with_rates([10, 3], [40, 6], ['lambda[0]', 'r[0]:refine'])
        assert chain.acceptance_counts() == {'lambda[0]': (10, 40), 'r[0]:refine': (3, 6)}
        table = acceptance_table(chain)
        assert list(table.columns) == ['slot', 'accepted', 'attempted', 'rate']
        assert table['rate'].tolist() == pytest.approx([0.25, 0.5])

    def test_never_attempted_rate_is_nan(self):
        chain = _chain_with_rates([0, 0], [10, 0], ['lambda[0]', 'group[0]:switch'])
        assert np.isnan(chain.acceptance_rates()['group[0]:switch'])

    def test_warns_outside_band(self):
        chain = _chain_with_rates([1, 50], [100, 100], ['lambda[0]', 'r[0]'])
        with pytest.warns(ConvergenceWarning, match="lambda"):
            flagged = check_acceptance_rates(chain, verbose=True)
        assert flagged == {'lambda[0]': pytest.approx(0.01)}

    def test_quiet_mode_only_logs(self, caplog):
        chain = _chain_with_rates([99], [100], ['r[0]'])
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            flagged = check_acceptance_rates(chain, verbose=False)
        assert 'r[0]' in flagged
        assert "r[0]" in caplog.text

    def test_switch_and_rarely_attempted_slots_skipped(self):
        chain = _chain_with_rates([0, 0], [100, 5], ['r[0]:switch', 'r[0]:refine'])
        assert check_acceptance_rates(chain, verbose=False) == {}
