"""
Proposal Distributions for the Metropolis-Hastings Steps

This package implements the proposal distributions used by the lambda and r
updates. StepType (which step uses which proposal) is defined in
update_plan.py and the step functions live in mcmc/sampling.py.

Each proposal function takes (key, current, jump) and returns
(proposal, log_hastings_ratio, new_key), so the calling step never has to
know whether a proposal is symmetric. The switch-on proposal is an
independence proposal and returns its log density instead.

To add a new proposal:
1. Create a new file in proposals/ with the proposal function
2. Use it from a step function in mcmc/sampling.py
3. Export it from this __init__.py
"""

from .common import gamma_logpdf_mean_sd, gamma_shape_rate, sample_gamma_mean_sd
from .gamma_walk import (
    gamma_walk_proposal,
    gamma_switch_on_proposal,
    gamma_switch_on_logpdf,
)
from .log_walk import log_walk_proposal

__all__ = [
    'gamma_logpdf_mean_sd',
    'gamma_shape_rate',
    'sample_gamma_mean_sd',
    'gamma_walk_proposal',
    'gamma_switch_on_proposal',
    'gamma_switch_on_logpdf',
    'log_walk_proposal',
]
