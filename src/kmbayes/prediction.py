"""
Posterior prediction of the exposure-response function h at new points.

Given theta = (beta, sigsq, lambda, r), the conditional posterior of
h(Znew) is Gaussian with

    mu_h(theta) = lambda_1 K10 V^-1 (y - X beta)
    V_h(theta)  = lambda_1 sigsq (K11 - lambda_1 K10 V^-1 K01)

where K10 = K(Znew, Z; r), K11 = K(Znew, Znew; r) and V is the marginal
covariance of the fit. Three estimators are built on top of it:

    approx   - mu_h / V_h at theta averaged over the selected iterations
    exact    - mean of mu_h, and mean of V_h plus the sample covariance of
               mu_h across iterations (law of total variance)
    sampling - one draw of h(Znew) (+ Xnew beta) per selected iteration,
               produced lazily by PosteriorSamples

Every function takes the fit explicitly and never modifies it.
"""

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Iterator, Optional

import jax
import jax.numpy as jnp
import jax.random as random
import numpy as np

from .error_handling import (
    InvalidConfig,
    InvalidDimension,
    NumericalFailure,
    validate_fit_inputs,
    validate_new_points,
    validate_selector,
)
from .kernel import factorize_v, gaussian_kernel, scaled_distance, solve_v, whiten
from .mcmc.types import ModelData

import logging
logger = logging.getLogger('kmbayes')


# Relative diagonal jitter added to V_h before drawing from N(mu_h, V_h)
PREDICTION_NUGGET = 1e-8


class PredictionMethod(IntEnum):
    APPROX = 0
    EXACT = 1

    def __str__(self):
        return self.name.lower()

    @classmethod
    def parse(cls, value) -> 'PredictionMethod':
        if isinstance(value, cls):
            return value
        key = str(value).strip().upper()
        if key not in cls.__members__:
            raise InvalidConfig(f"Unknown prediction method {value!r}; expected 'approx' or 'exact'")
        return cls[key]


@dataclass(frozen=True)
class HnewPosterior:
    """
    Posterior mean and covariance of h at new exposure profiles.

    Fields:
        postmean: (n_new,) posterior mean
        postvar: (n_new, n_new) full posterior covariance
        method: Estimator used
    """
    postmean: np.ndarray
    postvar: np.ndarray
    method: PredictionMethod

    @property
    def postsd(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.postvar), 0.0, None))


def _hnew_moments(beta, sigsq, lam, r, data, Znew):
    """mu_h and V_h at one theta; ok is False when V cannot be factorized."""
    D = scaled_distance(data.Z, data.Z, r)
    vcomps = factorize_v(D, lam, data.uu)
    K10 = gaussian_kernel(Znew, data.Z, r)
    K11 = gaussian_kernel(Znew, Znew, r)

    resid = data.y - data.X @ beta
    mu = lam[0] * K10 @ solve_v(vcomps, resid)
    W = whiten(vcomps, K10.T)
    Vh = lam[0] * sigsq * (K11 - lam[0] * W.T @ W)
    return mu, 0.5 * (Vh + Vh.T), vcomps.ok


_hnew_moments_jit = jax.jit(_hnew_moments)


@jax.jit
def _exact_moments(betas, sigsqs, lams, rs, data, Znew):
    """
    Streaming mean / covariance of mu_h and mean of V_h over iterations.

    Uses Welford updates inside lax.scan so memory stays O(n_new^2)
    whatever the number of iterations.
    """
    n_new = Znew.shape[0]

    def body(carry, theta):
        count, mean, m2, v_sum, ok = carry
        mu, Vh, ok_i = _hnew_moments(*theta, data, Znew)
        count = count + 1.0
        delta = mu - mean
        mean = mean + delta / count
        m2 = m2 + jnp.outer(delta, mu - mean)
        return (count, mean, m2, v_sum + Vh, ok & ok_i), None

    init = (
        jnp.zeros((), dtype=Znew.dtype),
        jnp.zeros((n_new,), dtype=Znew.dtype),
        jnp.zeros((n_new, n_new), dtype=Znew.dtype),
        jnp.zeros((n_new, n_new), dtype=Znew.dtype),
        jnp.bool_(True),
    )
    (count, mean, m2, v_sum, ok), _ = jax.lax.scan(body, init, (betas, sigsqs, lams, rs))
    return mean, v_sum / count, m2, ok


def _draw_h(beta, sigsq, lam, r, data, Znew, Xnew, key):
    mu, Vh, ok = _hnew_moments(beta, sigsq, lam, r, data, Znew)
    n_new = Znew.shape[0]
    jitter = PREDICTION_NUGGET * (jnp.mean(jnp.diag(Vh)) + 1.0)
    Lh = jnp.linalg.cholesky(Vh + jitter * jnp.eye(n_new, dtype=Vh.dtype))
    draw = mu + Lh @ random.normal(key, shape=(n_new,))
    if Xnew is not None:
        draw = draw + Xnew @ beta
    ok = ok & jnp.all(jnp.isfinite(draw))
    return draw, ok


_draw_h_jit = jax.jit(_draw_h)


def fit_with_data(fit, y=None, Z=None, X=None):
    """
    Return a copy of the fit whose stored data is replaced by (y, Z, X).

    Arguments left as None keep the fitted data. Used by the risk summaries,
    which accept alternative data in the same layout as the fit.
    """
    if y is None and Z is None and X is None:
        return fit
    current = fit.data
    y = current.y if y is None else y
    Z = current.Z if Z is None else Z
    X = current.X if X is None else X
    if X is not None and np.asarray(X).size == 0:
        X = None
    y, Z, X, _ = validate_fit_inputs(y, Z, X)
    if Z.shape[1] != current.Z.shape[1]:
        raise InvalidDimension(f"Z must have {current.Z.shape[1]} columns, got {Z.shape[1]}")
    if X.shape[1] != current.X.shape[1]:
        raise InvalidDimension(f"X must have {current.X.shape[1]} columns, got {X.shape[1]}")
    if current.uu is not None and y.shape[0] != current.y.shape[0]:
        raise InvalidDimension("Data for a fit with a random intercept must keep the same rows")
    return replace(fit, data=ModelData(y=y, X=X, Z=Z, uu=current.uu))


def _thetas(fit, idx):
    chain = fit.chain
    return (jnp.asarray(chain.beta[idx]), jnp.asarray(chain.sigsq[idx]),
            jnp.asarray(chain.lam[idx]), jnp.asarray(chain.r[idx]))


def compute_postmean_hnew(fit, Znew, method="approx", sel=None) -> HnewPosterior:
    """
    Posterior mean and covariance of h(Znew).

    Args:
        fit: FitResult
        Znew: (n_new, M) exposure profiles (a single profile may be 1-D)
        method: "approx" or "exact"
        sel: Iteration selector (None = all iterations)

    Returns:
        HnewPosterior with the full (n_new, n_new) covariance

    Raises:
        InvalidDimension: Znew column count differs from the fitted Z
        InvalidConfig: Unknown method or selector out of range
        NumericalFailure: V could not be factorized for a selected theta
    """
    method = PredictionMethod.parse(method)
    Znew = validate_new_points(Znew, fit.data.Z.shape[1])
    idx = validate_selector(sel, len(fit.chain))
    data = fit.data.to_device()
    Znew_dev = jnp.asarray(Znew)
    betas, sigsqs, lams, rs = _thetas(fit, idx)
    logger.debug(f"Predicting h at {Znew.shape[0]} point(s) with method={method} over {idx.size} iteration(s)")

    if method == PredictionMethod.APPROX:
        mu, Vh, ok = _hnew_moments_jit(betas.mean(axis=0), sigsqs.mean(), lams.mean(axis=0),
                                       rs.mean(axis=0), data, Znew_dev)
        if not bool(ok):
            raise NumericalFailure("V is not numerically positive definite at the averaged parameters")
        return HnewPosterior(np.asarray(mu), np.asarray(Vh), method)

    mean, v_mean, m2, ok = _exact_moments(betas, sigsqs, lams, rs, data, Znew_dev)
    if not bool(ok):
        raise NumericalFailure("V is not numerically positive definite for a selected iteration")
    n_sel = idx.size
    mu_cov = np.asarray(m2) / (n_sel - 1) if n_sel > 1 else np.zeros_like(np.asarray(m2))
    return HnewPosterior(np.asarray(mean), np.asarray(v_mean) + mu_cov, method)


class PosteriorSamples:
    """
    Lazy posterior draws of h(Znew) (+ Xnew beta), one per selected iteration.

    Iterating yields (n_new,) NumPy arrays in selector order. The draw for
    chain iteration i always uses the key fold_in(base_key, i), so iterating
    twice gives identical draws and a draw does not depend on which other
    iterations were selected.
    """

    def __init__(self, fit, Znew: np.ndarray, Xnew: Optional[np.ndarray],
                 idx: np.ndarray, rng_seed: int = 0):
        self._data = fit.data.to_device()
        self._Znew = jnp.asarray(Znew)
        self._Xnew = None if Xnew is None else jnp.asarray(Xnew)
        self._idx = np.asarray(idx)
        self._thetas = _thetas(fit, self._idx)
        self._base_key = random.PRNGKey(rng_seed)

    def __len__(self) -> int:
        return self._idx.size

    def __iter__(self) -> Iterator[np.ndarray]:
        betas, sigsqs, lams, rs = self._thetas
        for j, iteration in enumerate(self._idx):
            key = random.fold_in(self._base_key, int(iteration))
            draw, ok = _draw_h_jit(betas[j], sigsqs[j], lams[j], rs[j], self._data,
                                   self._Znew, self._Xnew, key)
            if not bool(ok):
                raise NumericalFailure(
                    f"Could not draw h at chain iteration {int(iteration)}: covariance not positive definite"
                )
            yield np.asarray(draw)

    def to_array(self) -> np.ndarray:
        """All draws stacked as (n_draws, n_new)."""
        return np.stack(list(self), axis=0)

    @property
    def iterations(self) -> np.ndarray:
        return self._idx.copy()


def sample_pred(fit, Znew, Xnew=None, sel=None, rng_seed: int = 0) -> PosteriorSamples:
    """
    Posterior predictive draws of h(Znew), plus Xnew beta when Xnew is given.

    Args:
        fit: FitResult
        Znew: (n_new, M) exposure profiles
        Xnew: Optional (n_new, p) covariates
        sel: Iteration selector (None = all iterations)
        rng_seed: Seed for the draws

    Returns:
        PosteriorSamples (lazy, finite, restartable)
    """
    Znew = validate_new_points(Znew, fit.data.Z.shape[1])
    if Xnew is not None:
        Xnew = validate_new_points(Xnew, fit.data.X.shape[1], name="Xnew")
        if Xnew.shape[0] != Znew.shape[0]:
            raise InvalidDimension(f"Xnew has {Xnew.shape[0]} rows but Znew has {Znew.shape[0]}")
    idx = validate_selector(sel, len(fit.chain))
    return PosteriorSamples(fit, Znew, Xnew, idx, rng_seed=rng_seed)
