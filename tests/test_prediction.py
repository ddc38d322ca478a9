"""
Posterior Prediction Tests

Tests the estimators of h at new exposure profiles:
- approx / exact moments against a direct NumPy computation
- Sampling draws (lazy, restartable, keyed by chain iteration)
- Selector and dimension validation

Run with: pytest tests/test_prediction.py -v
"""

import numpy as np
import pytest

from kmbayes import (
    HnewPosterior,
    PredictionMethod,
    PosteriorSamples,
    compute_postmean_hnew,
    sample_pred,
)
from kmbayes.error_handling import InvalidConfig, InvalidDimension


def reference_moments(fit, Znew, i):
    """mu_h and V_h at chain iteration i, computed directly with NumPy."""
    chain, data = fit.chain, fit.data
    beta, sigsq, lam, r = chain.beta[i], chain.sigsq[i], chain.lam[i, 0], chain.r[i]

    def kern(A, B):
        return np.exp(-np.sum(r * (A[:, None, :] - B[None, :, :]) ** 2, axis=-1))

    V = np.eye(data.n) + lam * kern(data.Z, data.Z)
    K10 = kern(Znew, data.Z)
    mu = lam * K10 @ np.linalg.solve(V, data.y - data.X @ beta)
    Vh = lam * sigsq * (kern(Znew, Znew) - lam * K10 @ np.linalg.solve(V, K10.T))
    return mu, Vh


@pytest.fixture(scope="module")
def znew(small_data):
    _, Z, _, _ = small_data
    return np.vstack([np.median(Z, axis=0), np.quantile(Z, 0.25, axis=0), Z[0]])


class TestApproxAndExact:
    """Posterior mean and covariance of h(Znew)."""

    def test_shapes(self, fit_novs, znew):
        hnew = compute_postmean_hnew(fit_novs, znew)
        assert isinstance(hnew, HnewPosterior)
        assert hnew.method == PredictionMethod.APPROX
        assert hnew.postmean.shape == (3,)
        assert hnew.postvar.shape == (3, 3)
        np.testing.assert_allclose(hnew.postvar, hnew.postvar.T, atol=1e-12)
        assert np.all(hnew.postsd >= 0)

    def test_single_profile_vector(self, fit_novs, znew):
        hnew = compute_postmean_hnew(fit_novs, znew[0])
        assert hnew.postmean.shape == (1,)

    def test_approx_uses_averaged_parameters(self, fit_novs, znew):
        sel = np.array([10, 20])
        hnew = compute_postmean_hnew(fit_novs, znew, method="approx", sel=sel)
        chain = fit_novs.chain
        lam = chain.lam[sel, 0].mean()
        sigsq = chain.sigsq[sel].mean()
        r = chain.r[sel].mean(axis=0)
        beta = chain.beta[sel].mean(axis=0)
        data = fit_novs.data
        kern = lambda A, B: np.exp(-np.sum(r * (A[:, None, :] - B[None, :, :]) ** 2, axis=-1))
        V = np.eye(data.n) + lam * kern(data.Z, data.Z)
        K10 = kern(znew, data.Z)
        mu = lam * K10 @ np.linalg.solve(V, data.y - data.X @ beta)
        Vh = lam * sigsq * (kern(znew, znew) - lam * K10 @ np.linalg.solve(V, K10.T))
        np.testing.assert_allclose(hnew.postmean, mu, rtol=1e-7, atol=1e-10)
        np.testing.assert_allclose(hnew.postvar, Vh, rtol=1e-6, atol=1e-10)

    def test_exact_matches_reference(self, fit_novs, znew):
        sel = np.array([0, 50, 120, 199])
        hnew = compute_postmean_hnew(fit_novs, znew, method="exact", sel=sel)
        moments = [reference_moments(fit_novs, znew, i) for i in sel]
        mus = np.array([m for m, _ in moments])
        expected_mean = mus.mean(axis=0)
        expected_var = np.mean([v for _, v in moments], axis=0) + np.cov(mus, rowvar=False, ddof=1)
        np.testing.assert_allclose(hnew.postmean, expected_mean, rtol=1e-7, atol=1e-10)
        np.testing.assert_allclose(hnew.postvar, expected_var, rtol=1e-6, atol=1e-10)

    def test_exact_single_iteration_equals_approx(self, fit_novs, znew):
        exact = compute_postmean_hnew(fit_novs, znew, method="exact", sel=[42])
        approx = compute_postmean_hnew(fit_novs, znew, method="approx", sel=[42])
        np.testing.assert_allclose(exact.postmean, approx.postmean, rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(exact.postvar, approx.postvar, rtol=1e-8, atol=1e-12)

    def test_methods_agree_roughly(self, fit_novs, znew):
        approx = compute_postmean_hnew(fit_novs, znew, method="approx", sel=np.arange(100, 200))
        exact = compute_postmean_hnew(fit_novs, znew, method="exact", sel=np.arange(100, 200))
        assert np.all(np.abs(approx.postmean - exact.postmean) < 3 * exact.postsd + 0.1)

    def test_fit_is_not_modified(self, fit_novs, znew):
        r_before = fit_novs.chain.r.copy()
        compute_postmean_hnew(fit_novs, znew, method="exact")
        np.testing.assert_array_equal(fit_novs.chain.r, r_before)

    def test_method_parse(self):
        assert PredictionMethod.parse("EXACT") == PredictionMethod.EXACT
        with pytest.raises(InvalidConfig):
            PredictionMethod.parse("sampling")

    def test_wrong_columns(self, fit_novs):
        with pytest.raises(InvalidDimension):
            compute_postmean_hnew(fit_novs, np.zeros((2, 3)))

    def test_selector_out_of_range(self, fit_novs, znew):
        with pytest.raises(InvalidConfig):
            compute_postmean_hnew(fit_novs, znew, sel=[0, 500])

    def test_selector_with_variable_selection(self, fit_varsel, znew):
        hnew = compute_postmean_hnew(fit_varsel, znew, method="exact", sel=np.arange(50, 200, 5))
        assert np.all(np.isfinite(hnew.postmean))
        assert np.all(np.diag(hnew.postvar) > 0)


class TestSampling:
    """Posterior draws of h(Znew)."""

    def test_lazy_and_sized(self, fit_novs, znew):
        samples = sample_pred(fit_novs, znew, sel=np.arange(10))
        assert isinstance(samples, PosteriorSamples)
        assert len(samples) == 10
        draws = samples.to_array()
        assert draws.shape == (10, 3)
        np.testing.assert_array_equal(samples.iterations, np.arange(10))

    def test_restartable(self, fit_novs, znew):
        samples = sample_pred(fit_novs, znew, sel=np.arange(5))
        first = [d.copy() for d in samples]
        second = [d.copy() for d in samples]
        np.testing.assert_array_equal(np.stack(first), np.stack(second))

    def test_draw_depends_only_on_iteration(self, fit_novs, znew):
        both = sample_pred(fit_novs, znew, sel=[5, 10], rng_seed=3).to_array()
        alone = sample_pred(fit_novs, znew, sel=[10], rng_seed=3).to_array()
        np.testing.assert_allclose(both[1], alone[0], rtol=1e-12)

    def test_seed_changes_draws(self, fit_novs, znew):
        a = sample_pred(fit_novs, znew, sel=[5], rng_seed=0).to_array()
        b = sample_pred(fit_novs, znew, sel=[5], rng_seed=1).to_array()
        assert not np.allclose(a, b)

    def test_covariate_shift(self, fit_novs, znew):
        Xnew = np.array([[1.0], [-2.0], [0.5]])
        sel = np.arange(20)
        h_only = sample_pred(fit_novs, znew, sel=sel).to_array()
        with_x = sample_pred(fit_novs, znew, Xnew=Xnew, sel=sel).to_array()
        expected = fit_novs.chain.beta[sel] @ Xnew.T
        np.testing.assert_allclose(with_x - h_only, expected, rtol=1e-8, atol=1e-10)

    def test_mean_converges_to_exact(self, fit_novs, znew):
        sel = np.arange(200)
        draws = sample_pred(fit_novs, znew, sel=sel, rng_seed=7).to_array()
        exact = compute_postmean_hnew(fit_novs, znew, method="exact", sel=sel)
        tolerance = 5 * np.sqrt(np.diag(exact.postvar) / len(sel)) + 1e-3
        assert np.all(np.abs(draws.mean(axis=0) - exact.postmean) < tolerance)

    def test_xnew_row_mismatch(self, fit_novs, znew):
        with pytest.raises(InvalidDimension):
            sample_pred(fit_novs, znew, Xnew=np.ones((2, 1)))

    def test_xnew_column_mismatch(self, fit_novs, znew):
        with pytest.raises(InvalidDimension):
            sample_pred(fit_novs, znew, Xnew=np.ones((3, 2)))
