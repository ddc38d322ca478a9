"""
Gamma Random Walk and Gamma Independence Proposals

Random walk on a positive parameter (lambda_k, or r_m without selection):

    x' ~ Gamma(mean = x, sd = jump)

The shape parameter depends on the current value (shape = x^2 / jump^2), so
the proposal is NOT symmetric and the Hastings ratio must be carried:

    log q(x | x') - log q(x' | x)

where q(a | b) is the Gamma(mean = b, sd = jump) density at a.

Independence proposal used when a variable is switched on:

    r* ~ Gamma(mean = r_muprop, sd = r_jump1)

This does not depend on the current state. Its density enters the
switch-move acceptance ratio directly (-log q(r*) when switching on,
+log q(r) when switching off), so the function returns the log density
rather than a ratio.

Proposed values that are not finite or not strictly positive are returned
as-is; the calling step rejects them without evaluating the likelihood.
"""

import jax.random as random

from .common import gamma_logpdf_mean_sd, sample_gamma_mean_sd


def gamma_walk_proposal(key, current, jump):
    """
    Gamma random walk centered on the current value.

    Args:
        key: JAX random key
        current: Current positive scalar value
        jump: Proposal standard deviation

    Returns:
        proposal: Proposed value
        log_hastings_ratio: log q(current | proposal) - log q(proposal | current)
        new_key: Updated random key
    """
    new_key, proposal_key = random.split(key)
    proposal = sample_gamma_mean_sd(proposal_key, current, jump)

    log_q_forward = gamma_logpdf_mean_sd(proposal, current, jump)
    log_q_reverse = gamma_logpdf_mean_sd(current, proposal, jump)
    log_hastings_ratio = log_q_reverse - log_q_forward

    return proposal, log_hastings_ratio, new_key


def gamma_switch_on_proposal(key, mu_prop, jump):
    """
    Independence gamma proposal for a variable entering the model.

    Returns:
        proposal: Proposed r value
        log_q: Log proposal density at the proposed value
        new_key: Updated random key
    """
    new_key, proposal_key = random.split(key)
    proposal = sample_gamma_mean_sd(proposal_key, mu_prop, jump)
    return proposal, gamma_logpdf_mean_sd(proposal, mu_prop, jump), new_key


def gamma_switch_on_logpdf(value, mu_prop, jump):
    """Density of the switch-on proposal at an existing value (reverse move)."""
    return gamma_logpdf_mean_sd(value, mu_prop, jump)
