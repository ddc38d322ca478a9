"""
MCMC Kernel Compilation.

This module handles JAX compilation of the iteration kernel:
- _run_chain_chunk: Module-level chunk runner for cache-stable tracing
- compile_chain_kernel: JIT wrapper binding the plan, step functions and controls
- chunk_inputs: Per-iteration keys and iteration numbers for one chunk

The plan, step functions and ControlParams are static (hashable) arguments,
so a kernel is traced once per (plan, data shape, controls) combination and
reused by every chunk of the same length. Only the last chunk of a run can
have a different length, costing at most one extra trace.
"""

import jax
import jax.numpy as jnp
import jax.random as random

from .sampling import make_iteration_fn


# --- CONSTANTS ---
CHUNK_SIZE = 100


def _run_chain_chunk(carry, keys, iterations, data, plan, step_fns, control):
    """
    Run len(keys) iterations with jax.lax.scan.

    Args:
        carry: (ParamState, failed flag, failed iteration)
        keys: (chunk_len, 2) per-iteration PRNG keys
        iterations: (chunk_len,) global iteration numbers
        data: ModelData (traced)
        plan: Tuple of UpdateStep (static)
        step_fns: Tuple of step functions, one per plan entry (static)
        control: ControlParams (static)

    Returns:
        Final carry and per-iteration records (beta, sigsq, lam, r, delta,
        outcomes, committed)
    """
    iteration = make_iteration_fn(plan, step_fns, control, data)
    return jax.lax.scan(iteration, carry, (keys, iterations))


_run_chain_chunk_jit = jax.jit(
    _run_chain_chunk,
    static_argnames=('plan', 'step_fns', 'control'),
)


def compile_chain_kernel(plan, step_fns, control):
    """
    Bind the static parts of the kernel.

    Returns:
        run_chunk(carry, keys, iterations, data) -> (carry, records)
    """
    def run_chunk(carry, keys, iterations, data):
        return _run_chain_chunk_jit(carry, keys, iterations, data,
                                    plan=plan, step_fns=step_fns, control=control)
    return run_chunk


def chunk_inputs(base_key, start: int, stop: int):
    """
    Keys and iteration numbers for iterations [start, stop).

    The key of iteration i is fold_in(base_key, i), so a chain is identical
    whatever chunk size it is run with.
    """
    iterations = jnp.arange(start, stop)
    keys = jax.vmap(lambda i: random.fold_in(base_key, i))(iterations)
    return keys, iterations

