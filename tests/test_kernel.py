"""
Kernel Matrix Tests

Tests the Gaussian kernel and the marginal covariance V:
- Symmetry, unit diagonal and positive semi-definiteness of K
- Incremental distance updates against full recomputation
- Cholesky factorization, solves and the marginal likelihood

Run with: pytest tests/test_kernel.py -v
"""

import numpy as np
import jax
import jax.numpy as jnp
import pytest

from kmbayes.error_handling import NumericalFailure
from kmbayes.kernel import (
    build_v,
    factorize_v,
    gaussian_kernel,
    log_marginal_likelihood,
    require_factor,
    scaled_distance,
    solve_v,
    update_distance,
    whiten,
)


@pytest.fixture
def exposures():
    rng = np.random.default_rng(7)
    return jnp.asarray(rng.normal(size=(12, 3)))


class TestGaussianKernel:
    """K(r) properties for r >= 0."""

    @pytest.mark.parametrize("r", [[0.0, 0.0, 0.0], [0.5, 0.0, 2.0], [10.0, 3.0, 0.1]])
    def test_symmetric_unit_diagonal(self, exposures, r):
        K = np.asarray(gaussian_kernel(exposures, exposures, jnp.asarray(r)))
        np.testing.assert_allclose(K, K.T, atol=1e-14)
        np.testing.assert_allclose(np.diag(K), 1.0)

    def test_positive_semidefinite(self, exposures):
        K = np.asarray(gaussian_kernel(exposures, exposures, jnp.asarray([1.0, 0.3, 0.0])))
        assert np.linalg.eigvalsh(K).min() > -1e-10

    def test_all_r_zero_gives_ones(self, exposures):
        K = np.asarray(gaussian_kernel(exposures, exposures, jnp.zeros(3)))
        np.testing.assert_allclose(K, 1.0)

    def test_matches_direct_formula(self, exposures):
        r = np.array([0.7, 1.3, 0.2])
        Z = np.asarray(exposures)
        expected = np.exp(-np.sum(r * (Z[:, None, :] - Z[None, :, :]) ** 2, axis=-1))
        K = np.asarray(gaussian_kernel(exposures, exposures, jnp.asarray(r)))
        np.testing.assert_allclose(K, expected, rtol=1e-12)

    def test_cross_kernel_shape(self, exposures):
        Znew = exposures[:4] + 0.1
        K10 = gaussian_kernel(Znew, exposures, jnp.ones(3))
        assert K10.shape == (4, 12)
        assert np.all(np.asarray(K10) <= 1.0)


class TestScaledDistance:
    """Full recomputation of D, one exposure at a time."""

    def test_cross_distance_matches_broadcast(self):
        rng = np.random.default_rng(11)
        Z1, Z2 = rng.normal(size=(9, 20)), rng.normal(size=(5, 20))
        r = rng.uniform(0.0, 2.0, size=20)
        expected = np.sum(r * (Z1[:, None, :] - Z2[None, :, :]) ** 2, axis=-1)
        D = np.asarray(scaled_distance(jnp.asarray(Z1), jnp.asarray(Z2), jnp.asarray(r)))
        assert D.shape == (9, 5)
        np.testing.assert_allclose(D, expected, rtol=1e-12)

    def test_self_distance_exactly_symmetric(self, exposures):
        D = np.asarray(scaled_distance(exposures, exposures, jnp.asarray([0.4, 2.0, 1.1])))
        np.testing.assert_array_equal(D, D.T)
        np.testing.assert_array_equal(np.diag(D), 0.0)

    def test_under_jit(self, exposures):
        r = jnp.asarray([0.4, 2.0, 1.1])
        D_jit = jax.jit(scaled_distance)(exposures, exposures, r)
        np.testing.assert_allclose(np.asarray(D_jit),
                                   np.asarray(scaled_distance(exposures, exposures, r)))


class TestDistanceUpdate:
    """Single-component updates of D match a full recomputation."""

    def test_incremental_equals_full(self, exposures):
        r = jnp.asarray([0.5, 1.0, 2.0])
        D = scaled_distance(exposures, exposures, r)
        r_new = r.at[1].set(3.5)
        D_inc = update_distance(D, exposures, 1, r[1], r_new[1])
        D_full = scaled_distance(exposures, exposures, r_new)
        np.testing.assert_allclose(np.asarray(D_inc), np.asarray(D_full), atol=1e-12)

    def test_switch_off_clips_at_zero(self, exposures):
        r = jnp.asarray([0.0, 4.0, 0.0])
        D = scaled_distance(exposures, exposures, r)
        D_off = update_distance(D, exposures, 1, r[1], 0.0)
        assert np.all(np.asarray(D_off) >= 0.0)
        np.testing.assert_allclose(np.asarray(D_off), 0.0, atol=1e-12)

    def test_chained_updates_stay_close(self, exposures):
        r = jnp.asarray([1.0, 1.0, 1.0])
        D = scaled_distance(exposures, exposures, r)
        values = [0.3, 2.2, 0.0, 1.7, 5.0]
        current = r
        for m, value in zip([0, 1, 2, 0, 1], values):
            D = update_distance(D, exposures, m, current[m], value)
            current = current.at[m].set(value)
        np.testing.assert_allclose(np.asarray(D),
                                   np.asarray(scaled_distance(exposures, exposures, current)),
                                   atol=1e-10)


class TestFactorization:
    """Cholesky factor of V and the quantities derived from it."""

    def test_factor_reconstructs_v(self, exposures):
        D = scaled_distance(exposures, exposures, jnp.ones(3))
        lam = jnp.asarray([2.0])
        vcomps = factorize_v(D, lam)
        V = np.asarray(build_v(D, lam))
        L = np.asarray(vcomps.L)
        assert bool(vcomps.ok)
        np.testing.assert_allclose(L @ L.T, V, atol=1e-10)
        np.testing.assert_allclose(float(vcomps.logdet), np.linalg.slogdet(V)[1], rtol=1e-10)

    def test_random_intercept_term(self, exposures):
        D = scaled_distance(exposures, exposures, jnp.ones(3))
        codes = np.repeat(np.arange(4), 3)
        uu = jnp.asarray((codes[:, None] == codes[None, :]).astype(float))
        V = np.asarray(build_v(D, jnp.asarray([1.0, 0.5]), uu))
        V0 = np.asarray(build_v(D, jnp.asarray([1.0])))
        np.testing.assert_allclose(V - V0, 0.5 * np.asarray(uu), atol=1e-14)

    def test_solve_and_whiten(self, exposures):
        D = scaled_distance(exposures, exposures, jnp.ones(3))
        vcomps = factorize_v(D, jnp.asarray([3.0]))
        V = np.asarray(build_v(D, jnp.asarray([3.0])))
        b = np.linspace(-1, 1, 12)
        np.testing.assert_allclose(np.asarray(solve_v(vcomps, jnp.asarray(b))),
                                   np.linalg.solve(V, b), rtol=1e-8)
        w = np.asarray(whiten(vcomps, jnp.asarray(b)))
        np.testing.assert_allclose(w @ w, b @ np.linalg.solve(V, b), rtol=1e-8)

    def test_log_marginal_likelihood(self, exposures):
        D = scaled_distance(exposures, exposures, jnp.asarray([0.5, 0.5, 0.5]))
        lam = jnp.asarray([1.5])
        vcomps = factorize_v(D, lam)
        V = np.asarray(build_v(D, lam))
        e = np.cos(np.arange(12.0))
        sigsq = 0.7
        expected = -0.5 * np.linalg.slogdet(V)[1] - 0.5 * e @ np.linalg.solve(V, e) / sigsq
        assert float(log_marginal_likelihood(vcomps, jnp.asarray(e), sigsq)) == pytest.approx(expected)

    def test_non_positive_definite_flagged(self, exposures):
        D = scaled_distance(exposures, exposures, jnp.zeros(3))
        # lambda = -1 makes V = I - 11' indefinite
        vcomps = factorize_v(D, jnp.asarray([-1.0]))
        assert not bool(vcomps.ok)
        with pytest.raises(NumericalFailure):
            require_factor(vcomps)
