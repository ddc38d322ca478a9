"""
MCMC Diagnostics.

Run-time summaries of a sealed chain:
- acceptance_table: Accepted / attempted / rate per acceptance slot
- print_acceptance_summary: Log M-H acceptance rate statistics
- check_acceptance_rates: Emit ConvergenceWarning for slots outside the healthy band
"""

import warnings
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd

from ..error_handling import ConvergenceWarning

import logging
logger = logging.getLogger('kmbayes')


# Acceptance rates outside this band trigger a ConvergenceWarning
HEALTHY_ACCEPTANCE_BAND = (0.10, 0.90)

# Slots attempted fewer times than this are not judged
MIN_ATTEMPTS_FOR_WARNING = 20


def acceptance_table(chain) -> pd.DataFrame:
    """Per-slot acceptance counts of a PosteriorChain."""
    counts = chain.acceptance_counts()
    rows = []
    for label, (accepted, attempted) in counts.items():
        rate = accepted / attempted if attempted > 0 else np.nan
        rows.append({'slot': label, 'accepted': accepted, 'attempted': attempted, 'rate': rate})
    return pd.DataFrame(rows, columns=['slot', 'accepted', 'attempted', 'rate'])


def print_acceptance_summary(chain) -> None:
    """
    Log summary statistics for M-H acceptance rates.

    Args:
        chain: Sealed PosteriorChain
    """
    table = acceptance_table(chain)
    table = table[table['attempted'] > 0]
    if table.empty:
        return

    rates = table['rate'].to_numpy()
    logger.info(f"--- MH Acceptance Rates ({len(rates)} slots) ---")
    logger.info(f"  Mean: {np.mean(rates):.1%}  Median: {np.median(rates):.1%}  "
                f"Min: {np.min(rates):.1%}  Max: {np.max(rates):.1%}")
    for row in table.itertuples(index=False):
        logger.debug(f"  {row.slot}: {row.rate:.1%} ({row.accepted}/{row.attempted})")


def find_unhealthy_slots(chain, band: Tuple[float, float] = HEALTHY_ACCEPTANCE_BAND,
                         min_attempts: int = MIN_ATTEMPTS_FOR_WARNING) -> List[Tuple[str, float]]:
    """
    Slots with enough attempts whose acceptance rate lies outside `band`.

    Switch slots are not judged: their rate tracks how often a variable
    changes inclusion state, which is a property of the posterior.
    """
    low, high = band
    out = []
    for label, (accepted, attempted) in chain.acceptance_counts().items():
        if label.endswith(":switch") or attempted < min_attempts:
            continue
        rate = accepted / attempted
        if rate < low or rate > high:
            out.append((label, rate))
    return out


def check_acceptance_rates(chain, verbose: bool = True,
                           band: Tuple[float, float] = HEALTHY_ACCEPTANCE_BAND) -> Dict[str, float]:
    """
    Flag acceptance rates outside the healthy band.

    Always logged at WARNING; additionally raised through warnings.warn as a
    ConvergenceWarning when verbose. Never stops the run.

    Returns:
        Dict of flagged slot -> acceptance rate
    """
    flagged = find_unhealthy_slots(chain, band)
    if not flagged:
        return {}

    low, high = band
    listing = ', '.join(f"{label} ({rate:.1%})" for label, rate in flagged)
    message = (f"{len(flagged)} acceptance slot(s) outside [{low:.0%}, {high:.0%}]: {listing}. "
               f"Consider adjusting the proposal spreads in control_params.")
    logger.warning(f"  WARNING: {message}")
    if verbose:
        warnings.warn(message, ConvergenceWarning, stacklevel=3)
    return dict(flagged)
