"""
Gaussian kernel matrices and the marginal covariance V.

The kernel between exposure profiles z_i, z_j is

    K_ij = exp(-sum_m r_m (z_im - z_jm)^2)

and is always built from the scaled squared-distance matrix D(r), so that a
single-component change r_m -> r_m* can be applied in O(n^2) without touching
the other M - 1 exposures:

    D* = D + (r_m* - r_m) (z_.m - z_.m')^2

All functions here are pure jax.numpy code, usable inside jit-compiled
iteration kernels and from eager prediction code alike.
"""

from collections import namedtuple

import jax
import jax.numpy as jnp
import jax.scipy.linalg

from .error_handling import NumericalFailure


# Cholesky factor and log-determinant of V = I + lambda_1 K + lambda_2 U U'
VComps = namedtuple('VComps', ['L', 'logdet', 'ok'])


def pairwise_sqdiff(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """(a_i - b_j)^2 for two vectors; exactly symmetric with zero diagonal when a is b."""
    diff = a[:, None] - b[None, :]
    return diff * diff


def scaled_distance(Z1: jnp.ndarray, Z2: jnp.ndarray, r: jnp.ndarray) -> jnp.ndarray:
    """
    Full recomputation of D_ij = sum_m r_m (z1_im - z2_jm)^2.

    Args:
        Z1: (n1, M) exposure profiles
        Z2: (n2, M) exposure profiles
        r: (M,) smoothness parameters, r_m >= 0

    Returns:
        (n1, n2) distance matrix

    Accumulated one exposure at a time, so memory stays O(n1 * n2).
    """
    r = jnp.asarray(r, dtype=Z1.dtype)

    def add_component(D, column):
        z1_m, z2_m, r_m = column
        return D + r_m * pairwise_sqdiff(z1_m, z2_m), None

    D0 = jnp.zeros((Z1.shape[0], Z2.shape[0]), dtype=Z1.dtype)
    D, _ = jax.lax.scan(add_component, D0, (Z1.T, Z2.T, r))
    return D


def update_distance(D: jnp.ndarray, Z: jnp.ndarray, m, r_old, r_new) -> jnp.ndarray:
    """
    Incremental recomputation of D after only r_m changes.

    The result is clipped at zero so that switching a component off cannot
    leave tiny negative distances behind.
    """
    z_m = jnp.take(Z, m, axis=1)
    D_new = D + (r_new - r_old) * pairwise_sqdiff(z_m, z_m)
    return jnp.maximum(D_new, 0.0)


def kernel_from_distance(D: jnp.ndarray) -> jnp.ndarray:
    return jnp.exp(-D)


def gaussian_kernel(Z1: jnp.ndarray, Z2: jnp.ndarray, r: jnp.ndarray) -> jnp.ndarray:
    """Gaussian kernel matrix K(Z1, Z2; r)."""
    return kernel_from_distance(scaled_distance(Z1, Z2, r))


def build_v(D: jnp.ndarray, lam: jnp.ndarray, uu=None) -> jnp.ndarray:
    """V = I + lambda_1 K + lambda_2 U U' (the last term only with a random intercept)."""
    n = D.shape[0]
    V = jnp.eye(n, dtype=D.dtype) + lam[0] * kernel_from_distance(D)
    if uu is not None:
        V = V + lam[1] * uu
    return V


def factorize_v(D: jnp.ndarray, lam: jnp.ndarray, uu=None) -> VComps:
    """
    Cholesky-factorize V.

    jnp.linalg.cholesky does not raise on failure; it returns NaNs. The `ok`
    flag reports whether the factor is finite, i.e. whether V was numerically
    positive definite. Callers inside compiled code branch on `ok`; eager
    callers use require_factor().
    """
    V = build_v(D, lam, uu)
    L = jnp.linalg.cholesky(V)
    diag = jnp.diagonal(L)
    ok = jnp.all(jnp.isfinite(L)) & jnp.all(diag > 0)
    logdet = 2.0 * jnp.sum(jnp.log(jnp.where(diag > 0, diag, 1.0)))
    return VComps(L=L, logdet=logdet, ok=ok)


def require_factor(vcomps: VComps, context: str = "V") -> VComps:
    """Raise NumericalFailure if an eagerly computed factorization failed."""
    if not bool(vcomps.ok):
        raise NumericalFailure(f"{context} is not numerically positive definite")
    return vcomps


def solve_v(vcomps: VComps, B: jnp.ndarray) -> jnp.ndarray:
    """V^{-1} B from the Cholesky factor."""
    return jax.scipy.linalg.cho_solve((vcomps.L, True), B)


def whiten(vcomps: VComps, b: jnp.ndarray) -> jnp.ndarray:
    """L^{-1} b, so that |L^{-1} b|^2 = b' V^{-1} b."""
    return jax.scipy.linalg.solve_triangular(vcomps.L, b, lower=True)


def log_marginal_likelihood(vcomps: VComps, resid: jnp.ndarray, sigsq) -> jnp.ndarray:
    """
    log p(y | beta, sigsq, lambda, r) up to a constant:

        -1/2 log|V| - (y - X beta)' V^{-1} (y - X beta) / (2 sigsq)
    """
    w = whiten(vcomps, resid)
    return -0.5 * vcomps.logdet - 0.5 * jnp.sum(w * w) / sigsq
