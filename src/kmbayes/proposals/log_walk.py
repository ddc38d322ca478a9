"""
Log-Scale Random Walk Proposal

Used by the refine move for an included variable (delta_m = 1):

    log r' = log r + N(0, jump^2)

The walk is symmetric on log r. Expressed as a density on r itself,

    q(r' | r) = N(log r'; log r, jump^2) / r'

so the Hastings ratio for a target defined on r is

    log q(r | r') - log q(r' | r) = log r' - log r

which is exactly the Jacobian of the log transform.
"""

import jax.numpy as jnp
import jax.random as random


def log_walk_proposal(key, current, jump):
    """
    Log-normal random walk for a strictly positive value.

    Args:
        key: JAX random key
        current: Current value (> 0)
        jump: Standard deviation on the log scale

    Returns:
        proposal: Proposed value
        log_hastings_ratio: log(proposal) - log(current)
        new_key: Updated random key
    """
    new_key, proposal_key = random.split(key)
    step = jump * random.normal(proposal_key, shape=())
    log_proposal = jnp.log(current) + step
    proposal = jnp.exp(log_proposal)
    return proposal, step, new_key
