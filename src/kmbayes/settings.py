"""
Control parameter configuration.

This module defines the prior families, the model family, the default
proposal spreads and prior hyperparameters, and resolves a user-supplied
control dict into a frozen ControlParams value.

Control parameters arrive as a plain dict with lowercase keys (the same
names the fitted model reports back). Defaults are filled in with
setdefault, every problem is collected, and a single InvalidConfig lists
them all. The resolved ControlParams is hashable so the compiled iteration
kernel can close over it.

To add a new control parameter:
1. Add its default to CONTROL_DEFAULTS
2. Add the field to ControlParams
3. Validate it in build_control_params
"""

from dataclasses import dataclass, asdict
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .error_handling import InvalidConfig

import logging
logger = logging.getLogger('kmbayes')


class RPrior(IntEnum):
    """
    Prior family for the kernel smoothness parameters r_m.

    GAMMA           - r ~ Gamma(mean mu_r, sd sigma_r)
    UNIFORM         - r ~ Uniform(r_a, r_b)
    INVERSE_UNIFORM - 1/r ~ Uniform(r_a, r_b), i.e. density ∝ r^-2 on [1/r_b, 1/r_a]
    """
    GAMMA = 0
    UNIFORM = 1
    INVERSE_UNIFORM = 2

    def __str__(self):
        return self.name.replace('_', ' ').title()

    @classmethod
    def parse(cls, value) -> 'RPrior':
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key not in _RPRIOR_NAMES:
            raise InvalidConfig(
                f"Unsupported r prior family {value!r}; expected one of {sorted(_RPRIOR_NAMES)}"
            )
        return _RPRIOR_NAMES[key]


_RPRIOR_NAMES = {
    'gamma': RPrior.GAMMA,
    'unif': RPrior.UNIFORM,
    'uniform': RPrior.UNIFORM,
    'invunif': RPrior.INVERSE_UNIFORM,
    'inverse-uniform': RPrior.INVERSE_UNIFORM,
    'inverse_uniform': RPrior.INVERSE_UNIFORM,
}


class Family(IntEnum):
    """Outcome family. Only the closed-form Gaussian residual model is supported."""
    GAUSSIAN = 0

    def __str__(self):
        return self.name.lower()

    @classmethod
    def parse(cls, value) -> 'Family':
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key != 'gaussian':
            raise InvalidConfig(f"Unsupported family {value!r}; only 'gaussian' is available")
        return cls.GAUSSIAN


# Per-lambda-component keys take one value per component (broadcast from a scalar)
LAMBDA_KEYS = ('lambda_jump', 'mu_lambda', 'sigma_lambda')

CONTROL_DEFAULTS = {
    'lambda_jump': 10.0,
    'mu_lambda': 10.0,
    'sigma_lambda': 10.0,
    'a_p0': 1.0,
    'b_p0': 1.0,
    'a_p0_within': 1.0,
    'b_p0_within': 1.0,
    'r_prior': 'invunif',
    'a_sigsq': 1e-3,
    'b_sigsq': 1e-3,
    'mu_r': 5.0,
    'sigma_r': 5.0,
    'r_a': 0.0,
    'r_b': 100.0,
    'r_muprop': 1.0,
    'r_jump': 0.1,
    'r_jump1': 2.0,
    'r_jump2': 0.1,
}

# Keys that must be strictly positive
_POSITIVE_KEYS = (
    'a_p0', 'b_p0', 'a_p0_within', 'b_p0_within', 'a_sigsq', 'b_sigsq',
    'mu_r', 'sigma_r', 'r_muprop', 'r_jump', 'r_jump1', 'r_jump2',
)


@dataclass(frozen=True)
class ControlParams:
    """
    Resolved, immutable control parameters for one fit.

    Proposal spreads:
        lambda_jump: sd of the gamma random-walk proposal for each lambda_k
        r_jump: sd of the gamma random-walk proposal for r_m (no selection)
        r_muprop, r_jump1: mean / sd of the gamma proposal when switching r_m on
        r_jump2: sd of the log-scale random walk in the refine move

    Priors:
        mu_lambda, sigma_lambda: gamma prior mean / sd for each lambda_k
        a_sigsq, b_sigsq: inverse-gamma prior on the residual variance
        r_prior: RPrior family with (mu_r, sigma_r) or bounds (r_a, r_b)
        a_p0, b_p0: beta prior on the inclusion probability (integrated out)
        a_p0_within, b_p0_within: within-group inclusion prior (hierarchical)
    """
    lambda_jump: Tuple[float, ...]
    mu_lambda: Tuple[float, ...]
    sigma_lambda: Tuple[float, ...]
    a_p0: float
    b_p0: float
    a_p0_within: float
    b_p0_within: float
    r_prior: RPrior
    a_sigsq: float
    b_sigsq: float
    mu_r: float
    sigma_r: float
    r_a: float
    r_b: float
    r_muprop: float
    r_jump: float
    r_jump1: float
    r_jump2: float

    @property
    def n_lambda(self) -> int:
        return len(self.lambda_jump)

    def r_support(self) -> Tuple[float, float]:
        """Closed interval on which the r prior has positive density."""
        if self.r_prior == RPrior.UNIFORM:
            return self.r_a, self.r_b
        if self.r_prior == RPrior.INVERSE_UNIFORM:
            upper = np.inf if self.r_a == 0 else 1.0 / self.r_a
            return 1.0 / self.r_b, upper
        return 0.0, np.inf

    def default_r_start(self) -> float:
        """Starting value for an included r_m: 1 clipped into the prior support."""
        low, high = self.r_support()
        if low < 1.0 < high:
            return 1.0
        if np.isinf(high):
            return float(2.0 * low)
        return float(0.5 * (low + high))

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view (prior family by name, tuples as lists)."""
        out = asdict(self)
        out['r_prior'] = self.r_prior.name.lower()
        for key in LAMBDA_KEYS:
            out[key] = list(out[key])
        return out


def _lambda_tuple(key: str, value, n_lambda: int, errors: list) -> Tuple[float, ...]:
    arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if arr.size == 1:
        arr = np.repeat(arr, n_lambda)
    if arr.shape != (n_lambda,):
        errors.append(f"{key} must have {n_lambda} value(s), got {arr.size}")
        return tuple([1.0] * n_lambda)
    if np.any(~np.isfinite(arr)) or np.any(arr <= 0):
        errors.append(f"{key} must be positive and finite, got {arr.tolist()}")
    return tuple(float(v) for v in arr)


def build_control_params(control: Optional[Dict[str, Any]], n_lambda: int = 1) -> ControlParams:
    """
    Resolve a user control dict into a ControlParams.

    Args:
        control: Dict of overrides (may be None). Keys use lowercase with
                 underscores; lambda keys accept a scalar or one value per
                 lambda component. ControlParams.to_dict() output round-trips.
        n_lambda: Number of lambda components (2 with a random intercept)

    Returns:
        ControlParams

    Raises:
        InvalidConfig: Listing every invalid or unsupported value
    """
    control = dict(control or {})
    unknown = sorted(set(control) - set(CONTROL_DEFAULTS))
    if unknown:
        logger.warning(f"Ignoring unknown control parameter(s): {', '.join(unknown)}")
    for key, default in CONTROL_DEFAULTS.items():
        control.setdefault(key, default)

    errors = []

    try:
        r_prior = RPrior.parse(control['r_prior'])
    except InvalidConfig as e:
        errors.append(str(e))
        r_prior = RPrior.GAMMA

    lambda_values = {
        key: _lambda_tuple(key, control[key], n_lambda, errors) for key in LAMBDA_KEYS
    }

    scalars = {}
    for key in CONTROL_DEFAULTS:
        if key in LAMBDA_KEYS or key == 'r_prior':
            continue
        try:
            scalars[key] = float(control[key])
        except (TypeError, ValueError):
            errors.append(f"{key} must be a number, got {control[key]!r}")
            scalars[key] = float(CONTROL_DEFAULTS[key])

    for key in _POSITIVE_KEYS:
        if not (np.isfinite(scalars[key]) and scalars[key] > 0):
            errors.append(f"{key} must be positive and finite, got {scalars[key]}")

    r_a, r_b = scalars['r_a'], scalars['r_b']
    if r_prior in (RPrior.UNIFORM, RPrior.INVERSE_UNIFORM):
        if r_a < 0 or not np.isfinite(r_b) or r_b <= r_a:
            errors.append(f"r bounds must satisfy 0 <= r_a < r_b < inf, got r_a={r_a}, r_b={r_b}")

    if errors:
        raise InvalidConfig("Invalid control parameters:\n  " + "\n  ".join(errors))

    return ControlParams(r_prior=r_prior, **lambda_values, **scalars)
