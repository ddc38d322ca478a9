"""
Error Handling and Validation Utilities for the BKMR sampler

This module provides the exception taxonomy, input validation functions and
post-run diagnostic tools used by the sampler and the prediction layer.

Exceptions:
    InvalidDimension  - shape mismatches among y / Z / X / id / Znew
    InvalidConfig     - unusable iteration counts, groups, priors, selectors
    NumericalFailure  - V = I + lambda K not numerically positive definite
    ConvergenceWarning - acceptance rates outside the healthy band (non-fatal)
"""

from typing import Any, Dict, Optional, Sequence

import numpy as np

import logging
logger = logging.getLogger('kmbayes')


class InvalidDimension(ValueError):
    """Row or column counts of the inputs do not line up."""


class InvalidConfig(ValueError):
    """A configuration value cannot be used; raised before any state is built."""


class NumericalFailure(ArithmeticError):
    """
    A kernel-derived matrix could not be factorized.

    When raised by the sampler, ``partial_fit`` holds the fit sealed at the
    last fully committed iteration (possibly with an empty chain).
    """

    def __init__(self, message: str, partial_fit: Optional[Any] = None,
                 iteration: Optional[int] = None):
        super().__init__(message)
        self.partial_fit = partial_fit
        self.iteration = iteration


class ConvergenceWarning(UserWarning):
    """Acceptance rates suggest the chain is not mixing well."""


def _as_2d(name: str, value, n_rows: Optional[int] = None) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64)
    if arr.ndim == 1 and n_rows is not None and arr.shape[0] == n_rows:
        arr = arr[:, None]
    if arr.ndim != 2:
        raise InvalidDimension(f"{name} must be a 2-D matrix, got shape {arr.shape}")
    return arr


def validate_fit_inputs(y, Z, X=None, id=None):
    """
    Validate and coerce the data for a fit.

    Args:
        y: Outcome vector (n,)
        Z: Exposure matrix (n, M)
        X: Covariate matrix (n, p) or None for no covariates
        id: Optional random-intercept labels (n,)

    Returns:
        (y, Z, X, id) as float64 arrays (X has shape (n, 0) when None;
        id is returned unchanged as an array or None)

    Raises:
        InvalidDimension: If the row counts disagree or shapes are unusable
    """
    errors = []

    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 2 and y.shape[1] == 1:
        y = y[:, 0]
    if y.ndim != 1:
        raise InvalidDimension(f"y must be a vector, got shape {y.shape}")
    n = y.shape[0]
    if n < 2:
        raise InvalidDimension(f"Need at least 2 observations, got {n}")

    Z = _as_2d("Z", Z, n)
    if Z.shape[1] < 1:
        errors.append("Z must have at least one column")
    if Z.shape[0] != n:
        errors.append(f"Z has {Z.shape[0]} rows but y has {n}")

    if X is None:
        X = np.zeros((n, 0))
    else:
        X = _as_2d("X", X, n)
        if X.shape[0] != n:
            errors.append(f"X has {X.shape[0]} rows but y has {n}")

    if id is not None:
        id = np.asarray(id)
        if id.ndim != 1 or id.shape[0] != n:
            errors.append(f"id must be a vector of length {n}, got shape {id.shape}")

    if errors:
        raise InvalidDimension("Invalid model inputs:\n  " + "\n  ".join(errors))

    for name, arr in (("y", y), ("Z", Z), ("X", X)):
        if not np.all(np.isfinite(arr)):
            raise InvalidDimension(f"{name} contains NaN or Inf values")

    if X.shape[1] > 0 and np.linalg.matrix_rank(X) < X.shape[1]:
        raise InvalidDimension("X does not have full column rank")

    return y, Z, X, id


def validate_iteration_count(n_iter: Any, name: str = "iter") -> int:
    """Fail fast on a non-positive or non-integer iteration count."""
    if isinstance(n_iter, bool) or not isinstance(n_iter, (int, np.integer)):
        raise InvalidConfig(f"{name} must be a positive integer, got {n_iter!r}")
    if n_iter < 1:
        raise InvalidConfig(f"{name} must be >= 1, got {n_iter}")
    return int(n_iter)


def validate_new_points(Znew, n_cols: int, name: str = "Znew") -> np.ndarray:
    """Coerce Znew (or a single profile) to a matrix with the fitted column count."""
    Znew = np.asarray(Znew, dtype=np.float64)
    if Znew.ndim == 1:
        Znew = Znew[None, :]
    if Znew.ndim != 2 or Znew.shape[1] != n_cols:
        raise InvalidDimension(
            f"{name} must have {n_cols} columns to match the fitted data, got shape {Znew.shape}"
        )
    if not np.all(np.isfinite(Znew)):
        raise InvalidDimension(f"{name} contains NaN or Inf values")
    return Znew


def validate_selector(sel: Optional[Sequence[int]], chain_length: int) -> np.ndarray:
    """
    Resolve an iteration-subset selector against a sealed chain.

    Args:
        sel: None (all iterations), a boolean mask, or integer indices
        chain_length: Number of iterations in the sealed chain

    Returns:
        Sorted-as-given integer index array

    Raises:
        InvalidConfig: If the selector is empty or references iterations
            beyond the chain
    """
    if chain_length < 1:
        raise InvalidConfig("The fitted chain is empty; nothing to summarize")
    if sel is None:
        return np.arange(chain_length)

    sel = np.asarray(sel)
    if sel.dtype == bool:
        if sel.shape != (chain_length,):
            raise InvalidConfig(
                f"Boolean selector must have length {chain_length}, got {sel.shape}"
            )
        sel = np.flatnonzero(sel)
    elif not np.issubdtype(sel.dtype, np.integer):
        raise InvalidConfig(f"Iteration selector must hold integers, got dtype {sel.dtype}")

    sel = sel.reshape(-1)
    if sel.size == 0:
        raise InvalidConfig("Iteration selector is empty")
    if sel.min() < 0 or sel.max() >= chain_length:
        raise InvalidConfig(
            f"Iteration selector references [{sel.min()}, {sel.max()}] "
            f"but the chain has {chain_length} iterations"
        )
    return sel


def diagnose_sampler_issues(chain, diagnostics: Dict[str, Any]) -> Dict[str, Any]:
    """
    Analyzes a sealed chain to identify common issues.

    Args:
        chain: PosteriorChain
        diagnostics: Existing diagnostics dict to extend

    Returns:
        diagnostics: Dictionary with issues, warnings, and info
    """
    diagnostics = diagnostics | {
        'issues': [],
        'warnings': [],
        'info': []
    }

    if len(chain) == 0:
        diagnostics['issues'].append("Chain is empty - no iteration was committed")
        return diagnostics

    continuous = [chain.beta, chain.sigsq[:, None], chain.lam, chain.r]
    if not all(np.all(np.isfinite(block)) for block in continuous):
        diagnostics['issues'].append(
            "Chain contains NaN or Inf values - sampler became unstable"
        )

    # Stuck lambda / sigma^2 (variance near zero across the whole run)
    if len(chain) > 10:
        if np.var(chain.sigsq) < 1e-14:
            diagnostics['warnings'].append("sigsq appears stuck (near-zero variance)")
        stuck_lam = np.sum(np.var(chain.lam, axis=0) < 1e-14)
        if stuck_lam > 0:
            diagnostics['warnings'].append(f"{stuck_lam} lambda component(s) appear stuck")

    diagnostics['info'].append(f"Total iterations: {len(chain)}")
    diagnostics['info'].append(f"Number of exposures: {chain.r.shape[1]}")
    diagnostics['info'].append(f"Number of covariates: {chain.beta.shape[1]}")

    return diagnostics


def print_diagnostics(diagnostics: Dict[str, Any]) -> None:
    """Pretty-print diagnostics from diagnose_sampler_issues."""
    if diagnostics['issues']:
        logger.error("[ERROR] ISSUES:")
        for issue in diagnostics['issues']:
            logger.error(f"  - {issue}")

    if diagnostics['warnings']:
        logger.warning("[WARN] WARNINGS:")
        for warning in diagnostics['warnings']:
            logger.warning(f"  - {warning}")

    if diagnostics['info']:
        logger.info("[INFO] INFO:")
        for info in diagnostics['info']:
            logger.info(f"  - {info}")

    if not diagnostics['issues'] and not diagnostics['warnings']:
        logger.info("[OK] No issues detected")
