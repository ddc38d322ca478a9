"""
MCMC Configuration and Initialization.

This module handles setting up a fit before the first iteration:
- gen_rng_key: Generate the base JAX random key from the seed
- build_random_intercept: U U' for the optional random intercept
- resolve_starting_values: Default and user-supplied initial theta / delta
- build_initial_state: ParamState with a valid V factor

Default starting values:
    beta  - least-squares fit of y on X
    sigsq - variance of the least-squares residuals (var(y) without X)
    lambda - 10 for every component
    r     - 1 clipped into the r-prior support for included columns
    delta - 1 for every column subject to selection
"""

from typing import Any, Dict, Optional

import jax
import jax.numpy as jnp
import numpy as np

from ..error_handling import InvalidConfig, NumericalFailure
from ..kernel import factorize_v, scaled_distance
from .types import ModelData, ParamState

import logging
logger = logging.getLogger('kmbayes')


DEFAULT_LAMBDA_START = 10.0

STARTING_VALUE_KEYS = ('beta', 'sigsq', 'lambda', 'r', 'delta')


def gen_rng_key(rng_seed: int) -> Any:
    """Generate the chain's base JAX random key from the seed."""
    return jax.random.PRNGKey(rng_seed)


def build_random_intercept(id) -> Optional[np.ndarray]:
    """U U' where U is the n x q indicator matrix of the id labels (None without id)."""
    if id is None:
        return None
    _, codes = np.unique(id, return_inverse=True)
    codes = codes.reshape(-1)
    return (codes[:, None] == codes[None, :]).astype(np.float64)


def _default_starting_values(y, X, n_lambda, control, selection) -> Dict[str, np.ndarray]:
    p = X.shape[1]
    M = selection.n_exposures
    if p > 0:
        beta, *_ = np.linalg.lstsq(X, y, rcond=None)
        resid = y - X @ beta
    else:
        beta = np.zeros(0)
        resid = y
    sigsq = float(np.var(resid, ddof=1))
    if not np.isfinite(sigsq) or sigsq <= 0:
        logger.warning("Residual variance is zero; starting sigsq at 1.0")
        sigsq = 1.0
    return {
        'beta': beta,
        'sigsq': np.float64(sigsq),
        'lambda': np.full(n_lambda, DEFAULT_LAMBDA_START),
        'r': np.full(M, control.default_r_start()),
        'delta': np.ones(M),
    }


def _broadcast(name, value, size, errors):
    arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if arr.size == 1 and size != 1:
        arr = np.repeat(arr, size)
    if arr.shape != (size,):
        errors.append(f"{name} must have {size} value(s), got shape {arr.shape}")
        return None
    if not np.all(np.isfinite(arr)):
        errors.append(f"{name} contains NaN or Inf values")
        return None
    return arr


def resolve_starting_values(y, X, n_lambda: int, control, selection,
                            starting_values: Optional[Dict[str, Any]] = None) -> Dict[str, np.ndarray]:
    """
    Merge user starting values over the defaults and validate them.

    Args:
        starting_values: Optional dict with any of 'beta', 'sigsq', 'lambda',
            'r', 'delta'. Scalars are broadcast for lambda / r / delta. When
            'r' is given with selection but 'delta' is not, delta = (r > 0).

    Returns:
        Dict with every key filled in (NumPy arrays)

    Raises:
        InvalidConfig: Listing every invalid starting value
    """
    values = _default_starting_values(y, X, n_lambda, control, selection)
    user = dict(starting_values or {})
    unknown = sorted(set(user) - set(STARTING_VALUE_KEYS))
    if unknown:
        raise InvalidConfig(f"Unknown starting value(s): {', '.join(unknown)}")

    errors = []
    M = selection.n_exposures
    sizes = {'beta': X.shape[1], 'lambda': n_lambda, 'r': M, 'delta': M}
    for key, size in sizes.items():
        if key in user:
            arr = _broadcast(key, user[key], size, errors)
            if arr is not None:
                values[key] = arr
    if 'sigsq' in user:
        sigsq = np.asarray(user['sigsq'], dtype=np.float64)
        if sigsq.ndim != 0 or not np.isfinite(sigsq) or sigsq <= 0:
            errors.append(f"sigsq must be a positive scalar, got {user['sigsq']!r}")
        else:
            values['sigsq'] = sigsq

    if np.any(values['lambda'] <= 0):
        errors.append(f"lambda must be positive, got {values['lambda'].tolist()}")
    if np.any(values['r'] < 0):
        errors.append(f"r must be non-negative, got {values['r'].tolist()}")

    if 'r' in user and 'delta' not in user:
        values['delta'] = (values['r'] > 0).astype(np.float64)

    delta = values['delta']
    if not np.all(np.isin(delta, (0.0, 1.0))):
        errors.append(f"delta must hold 0/1 values, got {delta.tolist()}")
    else:
        fixed = np.setdiff1d(np.arange(M), selection.selectable)
        if np.any(delta[fixed] == 0):
            errors.append(f"delta must be 1 for columns not subject to selection {fixed.tolist()}")
        # r follows delta: excluded columns have r = 0, included ones need r > 0
        values['r'] = np.where(delta > 0, values['r'], 0.0)
        if np.any((delta > 0) & (values['r'] <= 0)):
            errors.append("r must be positive for every included column")
        low, high = control.r_support()
        included_r = values['r'][delta > 0]
        if np.any((included_r < low) | (included_r > high)):
            errors.append(f"r must lie in the prior support [{low}, {high}] for included columns")

    if errors:
        raise InvalidConfig("Invalid starting values:\n  " + "\n  ".join(errors))
    return values


def build_initial_state(values: Dict[str, np.ndarray], data: ModelData) -> ParamState:
    """
    Build the initial ParamState, including D and the factor of V.

    Raises:
        NumericalFailure: If V cannot be factorized at the starting values
    """
    f64 = jnp.float64
    r = jnp.asarray(values['r'], dtype=f64)
    lam = jnp.asarray(values['lambda'], dtype=f64)
    D = scaled_distance(data.Z, data.Z, r)
    vcomps = factorize_v(D, lam, data.uu)
    if not bool(vcomps.ok):
        raise NumericalFailure("V is not numerically positive definite at the starting values")
    return ParamState(
        beta=jnp.asarray(values['beta'], dtype=f64),
        sigsq=jnp.asarray(values['sigsq'], dtype=f64),
        lam=lam,
        r=r,
        delta=jnp.asarray(values['delta'], dtype=f64),
        D=D,
        L=vcomps.L,
        logdet=jnp.asarray(vcomps.logdet, dtype=f64),
    )
