"""
Station-level fold assignment for spatial cross-validation.

Stations, not individual observations, are split into groups so that no
sensor contributes to both the training and the validation set of a fold.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from ozone_spde.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def assign_folds(
    stations: Sequence,
    n_folds: int = 5,
    random_state: Optional[Union[int, np.random.Generator]] = None,
) -> Dict[object, int]:
    """Assign each station to one of ``n_folds`` groups.

    The stations (in the given order, duplicates dropped) are binned by
    position into ``n_folds`` equal-width intervals, as ``pandas.cut`` does
    with an integer number of bins, and the resulting labels are shuffled
    with a seeded generator. Group sizes therefore differ by at most one
    and only the membership is random.

    Parameters
    ----------
    stations : sequence
        Station identifiers in canonical order
    n_folds : int
        Number of folds
    random_state : int or numpy.random.Generator, optional
        Seed or generator used for the shuffle. A seed creates a fresh
        generator, so global random state is never touched.

    Returns
    -------
    dict
        Mapping station identifier -> fold label in 1..n_folds

    Examples
    --------
    >>> folds = assign_folds(range(1, 29), n_folds=5, random_state=23)
    >>> sorted(fold_sizes(folds).values())
    [5, 5, 6, 6, 6]
    """
    unique = list(pd.unique(pd.Series(list(stations), dtype=object)))
    n = len(unique)
    if n_folds < 2:
        raise ConfigurationError(f"n_folds must be at least 2, got {n_folds}")
    if n < n_folds:
        raise ConfigurationError(f"Cannot split {n} stations into {n_folds} folds")

    if isinstance(random_state, np.random.Generator):
        rng = random_state
    else:
        rng = np.random.default_rng(random_state)

    positions = np.arange(1, n + 1)
    labels = pd.cut(positions, bins=n_folds, labels=False) + 1
    labels = rng.permutation(labels)

    assignment = {station: int(label) for station, label in zip(unique, labels)}
    logger.debug(f"Fold sizes: {fold_sizes(assignment)}")
    return assignment


def fold_sizes(assignment: Dict[object, int]) -> Dict[int, int]:
    """Number of stations per fold label."""
    labels, counts = np.unique(list(assignment.values()), return_counts=True)
    return {int(k): int(c) for k, c in zip(labels, counts)}


def label_observations(station_ids: NDArray, assignment: Dict[object, int]) -> NDArray:
    """Fold label for every observation, taken from its station.

    Raises
    ------
    KeyError
        If an observation's station has no fold
    """
    station_ids = np.asarray(station_ids)
    missing = set(pd.unique(pd.Series(station_ids, dtype=object))) - set(assignment)
    if missing:
        raise KeyError(f"Stations without a fold assignment: {sorted(map(str, missing))}")
    return np.array([assignment[s] for s in station_ids], dtype=int)
