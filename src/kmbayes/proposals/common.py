"""
Common utilities for proposal distributions.

All positive-valued proposals in this package are gamma distributions
parameterized by (mean, sd), which maps to

    shape = mean^2 / sd^2,    rate = mean / sd^2

Functions:
    gamma_shape_rate: Convert (mean, sd) to (shape, rate)
    gamma_logpdf_mean_sd: Log density of a gamma given by (mean, sd)
    sample_gamma_mean_sd: Draw from a gamma given by (mean, sd)
    is_valid_positive: Finite and strictly positive check for proposed values
"""

import jax.numpy as jnp
import jax.random as random
import jax.scipy.stats


def gamma_shape_rate(mean, sd):
    """(mean, sd) -> (shape, rate)."""
    var = sd * sd
    return mean * mean / var, mean / var


def gamma_logpdf_mean_sd(x, mean, sd):
    """
    Log density of Gamma(mean, sd) at x.

    Returns -inf for x <= 0 (the support is the open positive half-line).
    """
    shape, rate = gamma_shape_rate(mean, sd)
    safe_x = jnp.where(x > 0, x, 1.0)
    lp = jax.scipy.stats.gamma.logpdf(safe_x, shape, scale=1.0 / rate)
    return jnp.where(x > 0, lp, -jnp.inf)


def sample_gamma_mean_sd(key, mean, sd, shape=()):
    a, rate = gamma_shape_rate(mean, sd)
    return random.gamma(key, a, shape=shape) / rate


def is_valid_positive(x):
    return jnp.isfinite(x) & (x > 0)
