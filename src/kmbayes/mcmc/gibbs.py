"""
Closed-form conditional updates for beta and sigma^2.

With h integrated out, y | beta, sigsq, lambda, r ~ N(X beta, sigsq V). Under
a flat prior on beta and InvGamma(a_sigsq, b_sigsq) on sigsq:

    beta | .  ~ N(beta_hat, sigsq (X'V^-1 X)^-1)
    beta_hat  = (X'V^-1 X)^-1 X'V^-1 y
    sigsq | . ~ InvGamma(a_sigsq + n/2, b_sigsq + e'V^-1 e / 2),  e = y - X beta

beta is drawn first and sigsq is drawn given the new beta. This step also
refreshes the distance matrix D from scratch once per iteration so that the
incremental updates applied by the r moves cannot drift.
"""

import jax.numpy as jnp
import jax.random as random
import jax.scipy.linalg

from ..kernel import factorize_v, scaled_distance, solve_v, whiten


def draw_beta(key, vcomps, X, y, sigsq):
    """
    Draw beta from its Gaussian full conditional.

    Returns:
        beta: (p,) draw
        ok: False when X'V^-1 X could not be factorized
    """
    Vinv_X = solve_v(vcomps, X)
    A = X.T @ Vinv_X
    La = jnp.linalg.cholesky(A)
    beta_hat = jax.scipy.linalg.cho_solve((La, True), Vinv_X.T @ y)
    z = random.normal(key, shape=beta_hat.shape)
    beta = beta_hat + jnp.sqrt(sigsq) * jax.scipy.linalg.solve_triangular(La.T, z, lower=False)
    ok = jnp.all(jnp.isfinite(La)) & jnp.all(jnp.isfinite(beta))
    return beta, ok


def draw_sigsq(key, vcomps, resid, n, control):
    """Draw sigsq from its inverse-gamma full conditional."""
    w = whiten(vcomps, resid)
    shape = control.a_sigsq + 0.5 * n
    rate = control.b_sigsq + 0.5 * jnp.sum(w * w)
    return rate / random.gamma(key, shape)


def gibbs_beta_sigsq_step(key, state, data, control, step):
    """
    Gibbs update of beta then sigsq.

    Returns:
        new_state: ParamState with beta, sigsq and a fully refreshed D / V factor
        codes: Empty outcome array (Gibbs draws are always accepted)
        ok: False when V or X'V^-1 X is not numerically positive definite
    """
    del step  # Gibbs has no per-step configuration
    beta_key, sigsq_key = random.split(key)

    D = scaled_distance(data.Z, data.Z, state.r)
    vcomps = factorize_v(D, state.lam, data.uu)

    if data.X.shape[1] > 0:
        beta, beta_ok = draw_beta(beta_key, vcomps, data.X, data.y, state.sigsq)
        resid = data.y - data.X @ beta
    else:
        beta, beta_ok = state.beta, True
        resid = data.y

    sigsq = draw_sigsq(sigsq_key, vcomps, resid, data.y.shape[0], control)
    ok = vcomps.ok & beta_ok & jnp.isfinite(sigsq) & (sigsq > 0)

    new_state = state.replace(beta=beta, sigsq=sigsq, D=D, L=vcomps.L, logdet=vcomps.logdet)
    return new_state, jnp.zeros((0,), dtype=jnp.int8), ok
