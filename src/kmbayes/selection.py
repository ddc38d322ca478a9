"""
Variable selection configuration and posterior inclusion probabilities.

SelectionSpec records, for one fit, which exposures are subject to selection
and how they are grouped:

    NONE          - every r_m is updated by a plain random walk
    COMPONENT     - each selectable r_m gets its own spike-and-slab switch;
                    `ztest` restricts selection to a subset of columns
    HIERARCHICAL  - exposures are partitioned into groups; group inclusion
                    is decided first, then members within active groups

Groups are stored as tuples of column indices ordered by their first member.
The inclusion prior counts "units": single columns in COMPONENT mode and
whole groups in HIERARCHICAL mode. A unit is active when any of its columns
has delta_m = 1.

PIP extraction is query-only over a sealed fit and returns pandas DataFrames.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .error_handling import InvalidConfig, validate_selector

import logging
logger = logging.getLogger('kmbayes')


class SelectionMode(IntEnum):
    NONE = 0
    COMPONENT = 1
    HIERARCHICAL = 2

    def __str__(self):
        return self.name.lower()


@dataclass(frozen=True)
class SelectionSpec:
    """
    Resolved variable-selection layout for a fit.

    Fields:
        mode: SelectionMode
        n_exposures: Number of columns of Z
        selectable: Columns subject to selection (empty when mode is NONE)
        groups: Partition of the columns (HIERARCHICAL only)
        variable_names: Display name per column
    """
    mode: SelectionMode
    n_exposures: int
    selectable: Tuple[int, ...] = ()
    groups: Tuple[Tuple[int, ...], ...] = ()
    variable_names: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.variable_names:
            object.__setattr__(self, 'variable_names',
                               tuple(f"z{m + 1}" for m in range(self.n_exposures)))

    @property
    def varsel(self) -> bool:
        return self.mode != SelectionMode.NONE

    @property
    def units(self) -> Tuple[Tuple[int, ...], ...]:
        """Columns making up each unit of the inclusion prior."""
        if self.mode == SelectionMode.HIERARCHICAL:
            return self.groups
        return tuple((m,) for m in self.selectable)

    def group_index(self) -> np.ndarray:
        """Group number (0-based) of each column; -1 outside HIERARCHICAL mode."""
        out = np.full(self.n_exposures, -1, dtype=int)
        for g, members in enumerate(self.groups):
            out[list(members)] = g
        return out


def unit_matrix(units: Sequence[Sequence[int]], n_exposures: int) -> np.ndarray:
    """(n_units, M) 0/1 membership matrix G; a unit is active when (G @ delta) > 0."""
    G = np.zeros((len(units), n_exposures))
    for u, members in enumerate(units):
        G[u, list(members)] = 1.0
    return G


def _normalize_groups(groups, n_exposures: int) -> Tuple[Tuple[int, ...], ...]:
    """
    Accept either one label per column or an explicit list of column lists.

    Labels are grouped by equality; either form is returned as a tuple of
    sorted index tuples ordered by first member.
    """
    groups = list(groups)
    if not groups:
        raise InvalidConfig("groups must not be empty")

    is_labels = all(np.ndim(g) == 0 for g in groups)
    if is_labels:
        if len(groups) != n_exposures:
            raise InvalidConfig(
                f"groups must give one label per exposure ({n_exposures}), got {len(groups)}"
            )
        members = {}
        for m, label in enumerate(groups):
            members.setdefault(label, []).append(m)
        partition = list(members.values())
    else:
        partition = []
        for g in groups:
            cols = np.atleast_1d(np.asarray(g))
            if cols.size == 0:
                raise InvalidConfig("groups must not contain an empty group")
            if not np.issubdtype(cols.dtype, np.integer):
                raise InvalidConfig(f"Group members must be column indices, got {g!r}")
            partition.append([int(c) for c in cols])

    flat = [m for g in partition for m in g]
    errors = []
    out_of_range = sorted({m for m in flat if m < 0 or m >= n_exposures})
    if out_of_range:
        errors.append(f"column indices out of range [0, {n_exposures}): {out_of_range}")
    duplicated = sorted({m for m in flat if flat.count(m) > 1})
    if duplicated:
        errors.append(f"columns assigned to more than one group: {duplicated}")
    missing = sorted(set(range(n_exposures)) - set(flat))
    if missing:
        errors.append(f"columns not assigned to any group: {missing}")
    if errors:
        raise InvalidConfig("groups must partition the exposures:\n  " + "\n  ".join(errors))

    return tuple(sorted((tuple(sorted(g)) for g in partition), key=lambda g: g[0]))


def build_selection_spec(n_exposures: int, varsel: bool = False, groups=None,
                         ztest: Optional[Sequence[int]] = None,
                         variable_names: Optional[Sequence[str]] = None) -> SelectionSpec:
    """
    Resolve the selection arguments of a fit.

    Args:
        n_exposures: Number of columns of Z
        varsel: Whether to perform variable selection
        groups: Group label per column, or a list of column-index lists
        ztest: Columns subject to selection (component-wise mode only)
        variable_names: Optional display names for the columns

    Raises:
        InvalidConfig: groups / ztest given without varsel, both given
            together, or not describing valid columns
    """
    names = tuple(str(v) for v in variable_names) if variable_names is not None else ()
    if names and len(names) != n_exposures:
        raise InvalidConfig(f"Expected {n_exposures} variable names, got {len(names)}")

    if not varsel:
        if groups is not None or ztest is not None:
            raise InvalidConfig("groups and ztest require varsel=True")
        return SelectionSpec(SelectionMode.NONE, n_exposures, variable_names=names)

    if groups is not None and ztest is not None:
        raise InvalidConfig("ztest cannot be combined with groups")

    if groups is not None:
        partition = _normalize_groups(groups, n_exposures)
        return SelectionSpec(SelectionMode.HIERARCHICAL, n_exposures,
                             selectable=tuple(range(n_exposures)),
                             groups=partition, variable_names=names)

    if ztest is None:
        selectable = tuple(range(n_exposures))
    else:
        cols = np.atleast_1d(np.asarray(ztest))
        if cols.size == 0:
            raise InvalidConfig("ztest must name at least one column")
        if not np.issubdtype(cols.dtype, np.integer):
            raise InvalidConfig(f"ztest must hold column indices, got dtype {cols.dtype}")
        if cols.min() < 0 or cols.max() >= n_exposures:
            raise InvalidConfig(f"ztest indices must lie in [0, {n_exposures})")
        if len(set(cols.tolist())) != cols.size:
            raise InvalidConfig("ztest contains duplicate columns")
        selectable = tuple(sorted(int(c) for c in cols))

    return SelectionSpec(SelectionMode.COMPONENT, n_exposures,
                         selectable=selectable, variable_names=names)


def extract_pips(fit, sel=None) -> pd.DataFrame:
    """
    Posterior inclusion probabilities.

    Args:
        fit: FitResult fitted with varsel=True
        sel: Optional iteration selector (None = all iterations)

    Returns:
        COMPONENT mode: DataFrame with columns variable, PIP
            (selectable columns only)
        HIERARCHICAL mode: DataFrame with columns variable, group, PIP,
            groupPIP, condPIP, where condPIP = P(delta_m = 1 | group active) and is NaN
            for a group that was never active

    Raises:
        InvalidConfig: The fit was run without variable selection
    """
    spec = fit.selection
    if not spec.varsel:
        raise InvalidConfig("This fit was run without variable selection; no PIPs to extract")

    idx = validate_selector(sel, len(fit.chain))
    delta = fit.chain.delta[idx].astype(np.float64)
    names = np.asarray(spec.variable_names)

    if spec.mode == SelectionMode.COMPONENT:
        cols = list(spec.selectable)
        return pd.DataFrame({
            'variable': names[cols],
            'PIP': delta[:, cols].mean(axis=0),
        })

    G = unit_matrix(spec.groups, spec.n_exposures)
    group_active = (delta @ G.T) > 0                     # (T, n_groups)
    group_pip = group_active.mean(axis=0)
    group_of = spec.group_index()

    active_for_col = group_active[:, group_of]           # (T, M)
    n_active = active_for_col.sum(axis=0)
    with np.errstate(invalid='ignore', divide='ignore'):
        cond_pip = np.where(n_active > 0,
                            (delta * active_for_col).sum(axis=0) / n_active,
                            np.nan)

    return pd.DataFrame({
        'variable': names,
        'group': group_of + 1,
        'PIP': delta.mean(axis=0),
        'groupPIP': group_pip[group_of],
        'condPIP': cond_pip,
    })
