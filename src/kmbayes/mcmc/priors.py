"""
Prior log densities used in the acceptance ratios.

Every function returns a log density up to an additive constant that is the
same in the numerator and denominator of the ratio it is used in, except
log_within_group_prior, which is a properly normalized probability because
it is compared against the group-off configuration.

The prior family for r is fixed per fit (ControlParams.r_prior), so the
branch in r_log_prior is resolved in Python at trace time.
"""

import jax.numpy as jnp
from jax.scipy.special import betaln, gammaln

from ..proposals.common import gamma_logpdf_mean_sd
from ..settings import RPrior


def lambda_log_prior(lam_k, k: int, control):
    """Gamma(mean mu_lambda[k], sd sigma_lambda[k]) prior on lambda_k."""
    return gamma_logpdf_mean_sd(lam_k, control.mu_lambda[k], control.sigma_lambda[k])


def r_log_prior(r, control):
    """
    Log prior density of a single r_m > 0 under the configured family.

    GAMMA:           Gamma(mean mu_r, sd sigma_r)
    UNIFORM:         1 / (r_b - r_a) on [r_a, r_b]
    INVERSE_UNIFORM: r^-2 / (r_b - r_a) on [1/r_b, 1/r_a]  (1/r ~ U(r_a, r_b))

    Values outside the support get -inf.
    """
    if control.r_prior == RPrior.GAMMA:
        return gamma_logpdf_mean_sd(r, control.mu_r, control.sigma_r)

    width = control.r_b - control.r_a
    if control.r_prior == RPrior.UNIFORM:
        inside = (r >= control.r_a) & (r <= control.r_b)
        return jnp.where(inside, -jnp.log(width), -jnp.inf)

    low, high = control.r_support()
    inside = (r >= low) & (r <= high) & (r > 0)
    safe_r = jnp.where(inside, r, 1.0)
    return jnp.where(inside, -2.0 * jnp.log(safe_r) - jnp.log(width), -jnp.inf)


def beta_binomial_log_prior(n_active, n_units, a, b):
    """
    Inclusion prior with the inclusion probability integrated out.

    For k of N units active under pi ~ Beta(a, b):

        log p(delta) = lgamma(k + a) + lgamma(N - k + b) + const(N, a, b)
    """
    return gammaln(n_active + a) + gammaln(n_units - n_active + b)


def log_within_group_prior(n_active, n_members: int, a, b):
    """
    Member configuration prior inside an active group.

    Beta-binomial over the n_members indicators, truncated to configurations
    with at least one active member:

        log W(k; n) = log B(k + a, n - k + b) - log B(a, b)
                      - log(1 - B(a, n + b) / B(a, b))
    """
    log_norm = betaln(a, b)
    log_empty = betaln(a, n_members + b) - log_norm
    return betaln(n_active + a, n_members - n_active + b) - log_norm - jnp.log1p(-jnp.exp(log_empty))
