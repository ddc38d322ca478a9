"""
Fit I/O utilities for saving and loading fitted models.

This module provides functions for:
- Saving a FitResult to a compressed .npz archive
- Loading it back into an identical, immutable FitResult

Arrays (chain, data, starting values) are stored as NumPy arrays; the
configuration (controls, selection layout, family) is stored as a JSON
string so the archive can be read without pickle. The update plan is not
stored: it is rebuilt from the selection layout, which always yields the
same plan.
"""

import json
from pathlib import Path
from typing import Any, Dict

import numpy as np

from .error_handling import InvalidConfig
from .mcmc.types import FitResult, ModelData, PosteriorChain
from .selection import SelectionMode, SelectionSpec
from .settings import Family, build_control_params
from .update_plan import build_update_plan, plan_slot_labels

import logging
logger = logging.getLogger('kmbayes')


FORMAT_VERSION = 1

_CHAIN_FIELDS = ('beta', 'sigsq', 'lam', 'r', 'delta', 'outcomes')
_START_FIELDS = ('beta', 'sigsq', 'lambda', 'r', 'delta')


def _to_jsonable(obj):
    if hasattr(obj, 'tolist'):
        return obj.tolist()
    if isinstance(obj, dict):
        return {k: _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(item) for item in obj]
    return obj


def save_fit(filepath: str, fit: FitResult) -> Path:
    """
    Save a fitted model to disk.

    Args:
        filepath: Path to save to (.npz is appended by NumPy if missing)
        fit: FitResult to save

    Returns:
        Path actually written
    """
    selection = fit.selection
    metadata = {
        'format_version': FORMAT_VERSION,
        'control': fit.control.to_dict(),
        'selection': {
            'mode': selection.mode.name,
            'n_exposures': selection.n_exposures,
            'selectable': list(selection.selectable),
            'groups': [list(g) for g in selection.groups],
            'variable_names': list(selection.variable_names),
        },
        'family': fit.family.name,
        'n_iter': fit.n_iter,
        'slot_labels': list(fit.chain.slot_labels),
        'diagnostics': _to_jsonable(fit.diagnostics),
    }

    arrays = {f"chain_{k}": np.asarray(getattr(fit.chain, k)) for k in _CHAIN_FIELDS}
    arrays.update({
        'data_y': fit.data.y,
        'data_X': fit.data.X,
        'data_Z': fit.data.Z,
    })
    if fit.data.uu is not None:
        arrays['data_uu'] = fit.data.uu
    if fit.id is not None:
        id_arr = np.asarray(fit.id)
        arrays['id'] = id_arr.astype(str) if id_arr.dtype == object else id_arr
    for key in _START_FIELDS:
        if key in fit.starting_values:
            arrays[f"start_{key}"] = np.asarray(fit.starting_values[key])

    filepath = Path(filepath)
    if filepath.suffix != '.npz':
        filepath = filepath.with_name(filepath.name + '.npz')
    np.savez_compressed(filepath, metadata=np.array(json.dumps(metadata)), **arrays)
    logger.info(f"Fit saved to {filepath}")
    return filepath


def load_fit(filepath: str) -> FitResult:
    """
    Load a fitted model saved by save_fit().

    Raises:
        FileNotFoundError: If the file does not exist
        InvalidConfig: If the archive was written by an incompatible version
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Saved fit not found: {filepath}")

    with np.load(filepath, allow_pickle=False) as data:
        metadata: Dict[str, Any] = json.loads(str(data['metadata']))
        if metadata.get('format_version') != FORMAT_VERSION:
            raise InvalidConfig(
                f"Unsupported fit format version {metadata.get('format_version')!r} "
                f"(expected {FORMAT_VERSION})"
            )
        chain_arrays = {k: data[f"chain_{k}"].copy() for k in _CHAIN_FIELDS}
        uu = data['data_uu'].copy() if 'data_uu' in data else None
        model_data = ModelData(y=data['data_y'].copy(), X=data['data_X'].copy(),
                               Z=data['data_Z'].copy(), uu=uu)
        id = data['id'].copy() if 'id' in data else None
        starting_values = {k: data[f"start_{k}"].copy()
                           for k in _START_FIELDS if f"start_{k}" in data}

    sel_meta = metadata['selection']
    selection = SelectionSpec(
        mode=SelectionMode[sel_meta['mode']],
        n_exposures=int(sel_meta['n_exposures']),
        selectable=tuple(sel_meta['selectable']),
        groups=tuple(tuple(g) for g in sel_meta['groups']),
        variable_names=tuple(sel_meta['variable_names']),
    )
    control_dict = metadata['control']
    n_lambda = len(control_dict['lambda_jump'])
    control = build_control_params(control_dict, n_lambda=n_lambda)
    plan = build_update_plan(selection, n_lambda)

    slot_labels = tuple(metadata['slot_labels'])
    if plan_slot_labels(plan) != slot_labels:
        raise InvalidConfig("Saved acceptance slots do not match the rebuilt update plan")

    chain = PosteriorChain(slot_labels=slot_labels, **chain_arrays)
    logger.info(f"Fit loaded from {filepath} ({len(chain)} iterations)")
    return FitResult(
        chain=chain,
        data=model_data,
        control=control,
        selection=selection,
        plan=plan,
        family=Family[metadata['family']],
        n_iter=int(metadata['n_iter']),
        id=id,
        acceptance=chain.acceptance_rates(),
        starting_values=starting_values,
        diagnostics=metadata.get('diagnostics', {}),
    )
