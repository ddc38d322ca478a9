"""
Posterior summaries of a sealed chain.

- select_iterations: Iteration indices after burn-in and thinning, usable as
  the `sel` argument of every prediction / summary function
- extract_estimates: Posterior mean, sd and quantiles of beta, sigsq, lambda, r
"""

import numpy as np
import pandas as pd

from .error_handling import InvalidConfig, validate_selector


SUMMARY_QUANTILES = (0.025, 0.25, 0.5, 0.75, 0.975)


def select_iterations(fit, burn: int = 0, thin: int = 1) -> np.ndarray:
    """
    Indices of the iterations kept after discarding `burn` and keeping every
    `thin`-th iteration thereafter.

    Raises:
        InvalidConfig: Negative burn, non-positive thin, or nothing left
    """
    n = len(fit.chain)
    if isinstance(burn, bool) or not isinstance(burn, (int, np.integer)) or burn < 0:
        raise InvalidConfig(f"burn must be a non-negative integer, got {burn!r}")
    if isinstance(thin, bool) or not isinstance(thin, (int, np.integer)) or thin < 1:
        raise InvalidConfig(f"thin must be a positive integer, got {thin!r}")
    idx = np.arange(burn, n, thin)
    if idx.size == 0:
        raise InvalidConfig(f"burn={burn} leaves no iterations of the {n} in the chain")
    return idx


def _parameter_draws(fit):
    chain = fit.chain
    for j in range(chain.beta.shape[1]):
        yield f"beta{j + 1}", chain.beta[:, j]
    yield "sigsq.eps", chain.sigsq
    for k in range(chain.lam.shape[1]):
        yield ("lambda" if k == 0 else f"lambda{k + 1}"), chain.lam[:, k]
    for m, name in enumerate(fit.selection.variable_names):
        yield f"r.{name}", chain.r[:, m]


def extract_estimates(fit, sel=None) -> pd.DataFrame:
    """
    Posterior summaries of every model parameter.

    Returns:
        DataFrame indexed by parameter name with columns mean, sd and one
        column per quantile in SUMMARY_QUANTILES (q_2.5, q_25, ...)
    """
    idx = validate_selector(sel, len(fit.chain))
    rows = {}
    for name, draws in _parameter_draws(fit):
        draws = draws[idx]
        row = {'mean': draws.mean(), 'sd': draws.std(ddof=1) if draws.size > 1 else 0.0}
        for q, value in zip(SUMMARY_QUANTILES, np.quantile(draws, SUMMARY_QUANTILES)):
            row[f"q_{100 * q:g}"] = value
        rows[name] = row
    return pd.DataFrame.from_dict(rows, orient='index')
