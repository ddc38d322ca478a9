"""
kmbayes - Bayesian Kernel Machine Regression on JAX

Public API:
    Fitting:
        kmbayes - Fit a BKMR model by MCMC (optionally with variable selection)
        FitResult - Immutable fitted model passed to every downstream call
        PosteriorChain - Sealed per-iteration draws and acceptance outcomes

    Prediction:
        compute_postmean_hnew - Posterior mean / covariance of h at new points
        sample_pred - Lazy posterior draws of h at new points
        HnewPosterior - Result of compute_postmean_hnew
        PosteriorSamples - Result of sample_pred
        PredictionMethod - APPROX / EXACT

    Risk summaries:
        overall_risk_summaries - All exposures moved together
        single_var_risk_summaries - One exposure moved, others fixed
        single_var_int_summaries - Interaction of one exposure with the rest
        predictor_response_univar - Univariate exposure-response curves

    Posterior summaries:
        extract_pips - Posterior inclusion probabilities
        extract_estimates - Parameter means, sds and quantiles
        select_iterations - Burn-in / thinning selector

    Persistence:
        save_fit - Save a fit to a compressed .npz archive
        load_fit - Load a saved fit

    Errors:
        InvalidDimension, InvalidConfig, NumericalFailure, ConvergenceWarning

Example:
    import numpy as np
    from kmbayes import kmbayes, extract_pips, overall_risk_summaries, select_iterations

    fit = kmbayes(y, Z, X, iter=5000, varsel=True)
    sel = select_iterations(fit, burn=2500)
    print(extract_pips(fit, sel=sel))
    print(overall_risk_summaries(fit, sel=sel))
"""
# CRITICAL: Import jax_config FIRST to set environment variables before JAX loads
from . import jax_config  # noqa: F401

# Import mcmc subpackage to register the ModelData / ParamState pytrees
from . import mcmc as _mcmc  # noqa: F401

from .mcmc import kmbayes
from .mcmc.types import FitResult, PosteriorChain
from .error_handling import (
    InvalidDimension,
    InvalidConfig,
    NumericalFailure,
    ConvergenceWarning,
)
from .settings import RPrior, ControlParams, CONTROL_DEFAULTS
from .selection import SelectionMode, extract_pips
from .prediction import (
    compute_postmean_hnew,
    sample_pred,
    HnewPosterior,
    PosteriorSamples,
    PredictionMethod,
)
from .risk import (
    overall_risk_summaries,
    single_var_risk_summaries,
    single_var_int_summaries,
    predictor_response_univar,
)
from .summaries import extract_estimates, select_iterations
from .checkpoint_io import save_fit, load_fit

__all__ = [
    # Fitting
    'kmbayes',
    'FitResult',
    'PosteriorChain',
    # Prediction
    'compute_postmean_hnew',
    'sample_pred',
    'HnewPosterior',
    'PosteriorSamples',
    'PredictionMethod',
    # Risk summaries
    'overall_risk_summaries',
    'single_var_risk_summaries',
    'single_var_int_summaries',
    'predictor_response_univar',
    # Posterior summaries
    'extract_pips',
    'extract_estimates',
    'select_iterations',
    # Persistence
    'save_fit',
    'load_fit',
    # Configuration
    'RPrior',
    'ControlParams',
    'CONTROL_DEFAULTS',
    'SelectionMode',
    # Errors
    'InvalidDimension',
    'InvalidConfig',
    'NumericalFailure',
    'ConvergenceWarning',
]
