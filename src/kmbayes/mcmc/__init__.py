"""
MCMC Subpackage - Core BKMR sampling implementation.

This package contains the core MCMC sampling logic:
- backend: Fitting entry point (kmbayes)
- compile: Chunked kernel compilation
- config: Initialization (starting values, initial state, random intercept)
- diagnostics: Acceptance-rate summaries and convergence warnings
- gibbs: Closed-form beta / sigsq updates
- priors: Prior log densities used by the M-H steps
- sampling: Step functions, step registry, iteration kernel
- types: Core data structures (ModelData, ParamState, PosteriorChain, FitResult)
"""

# Import types first (registers the ModelData / ParamState pytrees)
from .types import (
    ModelData,
    ParamState,
    PosteriorChain,
    ChainRecorder,
    FitResult,
    NOT_ATTEMPTED,
    REJECTED,
    ACCEPTED,
)

# Import main entry point
from .backend import kmbayes

# Import commonly used functions
from .config import resolve_starting_values, build_initial_state
from .diagnostics import (
    acceptance_table,
    print_acceptance_summary,
    check_acceptance_rates,
)
from .sampling import STEP_REGISTRY, resolve_step_functions

__all__ = [
    # Main entry point
    'kmbayes',
    # Types
    'ModelData',
    'ParamState',
    'PosteriorChain',
    'ChainRecorder',
    'FitResult',
    'NOT_ATTEMPTED',
    'REJECTED',
    'ACCEPTED',
    # Config
    'resolve_starting_values',
    'build_initial_state',
    # Diagnostics
    'acceptance_table',
    'print_acceptance_summary',
    'check_acceptance_rates',
    # Sampling
    'STEP_REGISTRY',
    'resolve_step_functions',
]
