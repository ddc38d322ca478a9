"""
MCMC Backend - fitting entry point.

kmbayes() validates the inputs, resolves the update plan once, builds the
initial state, runs the compiled iteration kernel in chunks, and seals the
result into an immutable FitResult.

Lifecycle:
    INIT      - validate inputs and controls, build plan, initial theta / delta
    ITERATING - compiled chunks of iterations appended to a ChainRecorder
    DONE      - chain sealed, acceptance summary and diagnostics attached

If an iteration fails twice in a row to factorize V, the chain is sealed at
the last committed iteration and NumericalFailure is raised with the
truncated fit attached as `partial_fit`.
"""

import time
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

import jax
import jax.numpy as jnp
import numpy as np

from ..error_handling import (
    NumericalFailure,
    diagnose_sampler_issues,
    print_diagnostics,
    validate_fit_inputs,
    validate_iteration_count,
)
from ..selection import build_selection_spec
from ..settings import Family, build_control_params
from ..update_plan import build_update_plan, describe_plan, plan_slot_labels
from .compile import CHUNK_SIZE, chunk_inputs, compile_chain_kernel
from .config import (
    build_initial_state,
    build_random_intercept,
    gen_rng_key,
    resolve_starting_values,
)
from .diagnostics import check_acceptance_rates, print_acceptance_summary
from .sampling import resolve_step_functions
from .types import ChainRecorder, FitResult, ModelData

import logging
logger = logging.getLogger('kmbayes')


def _exposure_names(Z) -> Optional[Sequence[str]]:
    """Column names when Z is a DataFrame, otherwise None (defaults z1..zM)."""
    columns = getattr(Z, 'columns', None)
    return None if columns is None else [str(c) for c in columns]


def _seal(chain, **fields) -> FitResult:
    return FitResult(chain=chain, acceptance=chain.acceptance_rates(), **fields)


def kmbayes(
    y,
    Z,
    X=None,
    iter: int = 1000,
    varsel: bool = False,
    groups=None,
    ztest: Optional[Sequence[int]] = None,
    id=None,
    family: str = "gaussian",
    control_params: Optional[Dict[str, Any]] = None,
    starting_values: Optional[Dict[str, Any]] = None,
    verbose: bool = True,
    rng_seed: int = 42,
    chunk_size: int = CHUNK_SIZE,
) -> FitResult:
    """
    Fit a Bayesian kernel machine regression model by MCMC.

    Args:
        y: Outcome vector (n,)
        Z: Exposure matrix (n, M); column names are kept when Z is a DataFrame
        X: Covariate matrix (n, p), or None
        iter: Number of MCMC iterations
        varsel: Perform variable selection on the exposures
        groups: Group label per column of Z (or a list of column-index lists)
                for hierarchical variable selection
        ztest: Columns of Z subject to component-wise selection
        id: Optional labels for a subject-level random intercept
        family: Outcome family; only "gaussian" is supported
        control_params: Proposal spreads and prior hyperparameters
                        (see settings.CONTROL_DEFAULTS)
        starting_values: Optional initial values for beta, sigsq, lambda, r, delta
        verbose: Log progress at INFO level and raise ConvergenceWarning
        rng_seed: Seed for the chain's random key
        chunk_size: Iterations per compiled chunk

    Returns:
        FitResult with the sealed posterior chain

    Raises:
        InvalidDimension: Inputs with mismatched shapes
        InvalidConfig: Unusable iteration count, groups, controls or starting values
        NumericalFailure: V could not be factorized (see `partial_fit`)
    """
    progress = logger.info if verbose else logger.debug

    # --- 1. VALIDATE ---
    n_iter = validate_iteration_count(iter)
    chunk_size = validate_iteration_count(chunk_size, name="chunk_size")
    family = Family.parse(family)
    names = _exposure_names(Z)
    y, Z, X, id = validate_fit_inputs(y, Z, X, id)
    n, M = Z.shape

    uu = build_random_intercept(id)
    n_lambda = 1 if uu is None else 2
    control = build_control_params(control_params, n_lambda=n_lambda)
    selection = build_selection_spec(M, varsel=varsel, groups=groups, ztest=ztest,
                                     variable_names=names)

    # --- 2. RESOLVE UPDATE PLAN ---
    plan = build_update_plan(selection, n_lambda)
    step_fns = resolve_step_functions(plan)
    slot_labels = plan_slot_labels(plan)

    # --- 3. INITIAL STATE ---
    values = resolve_starting_values(y, X, n_lambda, control, selection, starting_values)
    host_data = ModelData(y=y, X=X, Z=Z, uu=uu)
    data = host_data.to_device()
    state = build_initial_state(values, data)

    progress(f"Fitting BKMR: n={n}, M={M}, p={X.shape[1]}, iter={n_iter}, "
             f"selection={selection.mode}, family={family}")
    progress(f"  r prior: {control.r_prior}; update plan: {describe_plan(plan)}")
    logger.debug(f"JAX backend: {jax.default_backend()}")

    fit_fields = dict(
        data=host_data, control=control, selection=selection, plan=plan, family=family,
        n_iter=n_iter, id=id, starting_values=values,
    )

    # --- 4. RUN ---
    run_chunk = compile_chain_kernel(plan, step_fns, control)
    recorder = ChainRecorder(X.shape[1], n_lambda, M, slot_labels)
    base_key = gen_rng_key(rng_seed)
    carry = (state, jnp.bool_(False), jnp.asarray(-1, dtype=jnp.int_))

    num_chunks = (n_iter + chunk_size - 1) // chunk_size
    start_run_time = time.perf_counter()
    for i in range(num_chunks):
        start = i * chunk_size
        stop = min(n_iter, start + chunk_size)
        keys, iterations = chunk_inputs(base_key, start, stop)
        carry, records = run_chunk(carry, keys, iterations, data)
        records = jax.device_get(records)

        committed = np.asarray(records['committed'])
        n_commit = int(np.argmin(committed)) if not committed.all() else committed.size
        recorder.append(records, n_commit)

        if bool(carry[1]):
            failed_iteration = int(carry[2])
            partial_fit = _seal(recorder.seal(), diagnostics={'failed_iteration': failed_iteration},
                                **fit_fields)
            logger.error(f"V not positive definite at iteration {failed_iteration} "
                         f"after one retry; chain sealed at {len(partial_fit.chain)} iterations")
            raise NumericalFailure(
                f"Kernel matrix factorization failed twice at iteration {failed_iteration}",
                partial_fit=partial_fit,
                iteration=failed_iteration,
            )

        if i % max(1, num_chunks // 10) == 0 or i == num_chunks - 1:
            elapsed = time.perf_counter() - start_run_time
            progress(f"  Iteration {stop}/{n_iter} ({elapsed:.1f}s elapsed)")

    wall_time = time.perf_counter() - start_run_time

    # --- 5. SEAL ---
    chain = recorder.seal()
    progress(f"--- MCMC Run Summary ---")
    progress(f"  Total Wall Time: {timedelta(seconds=int(wall_time))} ({wall_time:.2f}s)")
    if verbose:
        print_acceptance_summary(chain)
    flagged = check_acceptance_rates(chain, verbose=verbose)

    diagnostics = diagnose_sampler_issues(chain, {
        'wall_time': wall_time,
        'flagged_acceptance': flagged,
    })
    if verbose:
        print_diagnostics(diagnostics)
    return _seal(chain, diagnostics=diagnostics, **fit_fields)
