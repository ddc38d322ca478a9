"""
MCMC Data Structures and Type Definitions.

This module contains the core data structures used by the sampler:
- ModelData: Immutable fit inputs (y, X, Z, random-intercept design)
- ParamState: One sampler state (theta, delta, and the cached V factor)
- ChainRecorder: Append-only accumulator used while ITERATING
- PosteriorChain: Sealed, read-only chain of retained iterations
- FitResult: The immutable fitted-model value passed to every downstream call

ModelData and ParamState are registered as JAX pytrees so that they can be
traced straight through the jit-compiled iteration kernel.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np


# Outcome codes stored per acceptance slot per iteration
NOT_ATTEMPTED = -1
REJECTED = 0
ACCEPTED = 1


@dataclass(frozen=True)
class ModelData:
    """
    Fit inputs in the form the iteration kernel consumes.

    Fields:
        y: (n,) outcome
        X: (n, p) covariates, p may be 0
        Z: (n, M) exposures
        uu: (n, n) U U' for the random intercept, or None
    """
    y: Any
    X: Any
    Z: Any
    uu: Any = None

    @property
    def n(self) -> int:
        return self.y.shape[0]

    @property
    def n_exposures(self) -> int:
        return self.Z.shape[1]

    @property
    def n_covariates(self) -> int:
        return self.X.shape[1]

    def to_device(self) -> 'ModelData':
        """Copy to JAX arrays (float64)."""
        return ModelData(
            y=jnp.asarray(self.y), X=jnp.asarray(self.X), Z=jnp.asarray(self.Z),
            uu=None if self.uu is None else jnp.asarray(self.uu),
        )

    def to_host(self) -> 'ModelData':
        return ModelData(
            y=np.asarray(self.y), X=np.asarray(self.X), Z=np.asarray(self.Z),
            uu=None if self.uu is None else np.asarray(self.uu),
        )


def _model_data_flatten(md):
    return (md.y, md.X, md.Z, md.uu), None


def _model_data_unflatten(aux_data, children):
    y, X, Z, uu = children
    return ModelData(y=y, X=X, Z=Z, uu=uu)


jax.tree_util.register_pytree_node(ModelData, _model_data_flatten, _model_data_unflatten)


@dataclass(frozen=True)
class ParamState:
    """
    One sampler state.

    theta = (beta, sigsq, lam, r) and the selection indicators delta, plus a
    cache of everything derived from (r, lam): the scaled distance matrix D,
    and the Cholesky factor L / log-determinant of V. Every step that changes
    r or lam must refresh the cache in the same update.
    """
    beta: Any     # (p,)
    sigsq: Any    # ()
    lam: Any      # (n_lambda,)
    r: Any        # (M,)
    delta: Any    # (M,) float 0/1
    D: Any        # (n, n)
    L: Any        # (n, n)
    logdet: Any   # ()

    def replace(self, **changes) -> 'ParamState':
        return replace(self, **changes)


def _param_state_flatten(ps):
    return (ps.beta, ps.sigsq, ps.lam, ps.r, ps.delta, ps.D, ps.L, ps.logdet), None


def _param_state_unflatten(aux_data, children):
    return ParamState(*children)


jax.tree_util.register_pytree_node(ParamState, _param_state_flatten, _param_state_unflatten)


@dataclass(frozen=True)
class PosteriorChain:
    """
    Sealed posterior chain: one row per committed iteration.

    All arrays are read-only NumPy arrays.

    Fields:
        beta: (T, p)
        sigsq: (T,)
        lam: (T, n_lambda)
        r: (T, M)
        delta: (T, M) bool
        outcomes: (T, n_slots) int8 - NOT_ATTEMPTED / REJECTED / ACCEPTED
        slot_labels: Label of each outcome column
    """
    beta: np.ndarray
    sigsq: np.ndarray
    lam: np.ndarray
    r: np.ndarray
    delta: np.ndarray
    outcomes: np.ndarray
    slot_labels: Tuple[str, ...]

    def __post_init__(self):
        lengths = {a.shape[0] for a in (self.beta, self.sigsq, self.lam, self.r,
                                         self.delta, self.outcomes)}
        if len(lengths) != 1:
            raise ValueError(f"Chain arrays have inconsistent lengths: {sorted(lengths)}")
        for arr in (self.beta, self.sigsq, self.lam, self.r, self.delta, self.outcomes):
            arr.setflags(write=False)

    def __len__(self) -> int:
        return self.sigsq.shape[0]

    def acceptance_counts(self) -> Dict[str, Tuple[int, int]]:
        """(accepted, attempted) per slot."""
        attempted = np.sum(self.outcomes != NOT_ATTEMPTED, axis=0)
        accepted = np.sum(self.outcomes == ACCEPTED, axis=0)
        return {label: (int(a), int(t))
                for label, a, t in zip(self.slot_labels, accepted, attempted)}

    def acceptance_rates(self) -> Dict[str, float]:
        """Accepted / attempted per slot (NaN for slots never attempted)."""
        return {label: (a / t if t > 0 else float('nan'))
                for label, (a, t) in self.acceptance_counts().items()}


class ChainRecorder:
    """
    Append-only accumulator of committed iterations.

    Chunks produced by the compiled kernel are appended with the number of
    leading iterations that committed; nothing once appended is removed.
    seal() concatenates everything into a PosteriorChain.
    """

    _FIELDS = ('beta', 'sigsq', 'lam', 'r', 'delta', 'outcomes')

    def __init__(self, n_covariates: int, n_lambda: int, n_exposures: int,
                 slot_labels: Tuple[str, ...]):
        self.slot_labels = tuple(slot_labels)
        self._shapes = {
            'beta': (n_covariates,),
            'sigsq': (),
            'lam': (n_lambda,),
            'r': (n_exposures,),
            'delta': (n_exposures,),
            'outcomes': (len(self.slot_labels),),
        }
        self._chunks: Dict[str, List[np.ndarray]] = {k: [] for k in self._FIELDS}
        self._length = 0

    def __len__(self) -> int:
        return self._length

    def append(self, chunk: Dict[str, Any], n_commit: Optional[int] = None) -> None:
        """Append the first n_commit rows of a chunk (all rows when None)."""
        n_rows = np.asarray(chunk['sigsq']).shape[0]
        n_commit = n_rows if n_commit is None else int(n_commit)
        if n_commit < 0 or n_commit > n_rows:
            raise ValueError(f"Cannot commit {n_commit} rows from a chunk of {n_rows}")
        for key in self._FIELDS:
            block = np.asarray(chunk[key])[:n_commit]
            if block.shape[1:] != self._shapes[key]:
                raise ValueError(f"Chunk field {key} has shape {block.shape}, "
                                 f"expected (*, {self._shapes[key]})")
            self._chunks[key].append(block)
        self._length += n_commit

    def seal(self) -> PosteriorChain:
        arrays = {}
        for key in self._FIELDS:
            if self._chunks[key]:
                arrays[key] = np.concatenate(self._chunks[key], axis=0)
            else:
                arrays[key] = np.zeros((0,) + self._shapes[key])
        return PosteriorChain(
            beta=arrays['beta'].astype(np.float64),
            sigsq=arrays['sigsq'].astype(np.float64),
            lam=arrays['lam'].astype(np.float64),
            r=arrays['r'].astype(np.float64),
            delta=arrays['delta'].astype(bool),
            outcomes=arrays['outcomes'].astype(np.int8),
            slot_labels=self.slot_labels,
        )


@dataclass(frozen=True)
class FitResult:
    """
    A fitted BKMR model.

    Every prediction / summary function takes this value explicitly; nothing
    about a fit is kept in module state.

    Fields:
        chain: Sealed PosteriorChain
        data: Host copy of the fit inputs (ModelData of NumPy arrays)
        control: Resolved ControlParams
        selection: SelectionSpec (mode, selectable columns, groups)
        plan: Ordered tuple of UpdateStep used for every iteration
        family: Family tag
        n_iter: Requested iteration count
        id: Random-intercept labels, or None
        acceptance: Acceptance rate per slot
        starting_values: Initial theta / delta actually used
        diagnostics: Timing and post-run sanity checks
    """
    chain: PosteriorChain
    data: ModelData
    control: Any
    selection: Any
    plan: Tuple[Any, ...]
    family: Any
    n_iter: int
    id: Optional[np.ndarray] = None
    acceptance: Dict[str, float] = field(default_factory=dict)
    starting_values: Dict[str, Any] = field(default_factory=dict)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def varsel(self) -> bool:
        return self.selection.varsel

    @property
    def completed(self) -> bool:
        """True when every requested iteration was committed."""
        return len(self.chain) == self.n_iter
