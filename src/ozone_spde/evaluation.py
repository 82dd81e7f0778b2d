"""
Prediction accuracy and calibration metrics for held-out stations.

All metrics use pairwise-complete data: a pair enters only when both the
prediction and the observation are present. Undefined values are returned
as NaN and are never replaced by zero.

References
----------
.. [1] Gneiting, T., & Raftery, A. E. (2007). Strictly proper scoring rules,
       prediction, and estimation. Journal of the American Statistical Association.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats

logger = logging.getLogger(__name__)

METRIC_NAMES = ("rmse", "mae", "bias", "r", "r2")


@dataclass
class FoldMetrics:
    """Accuracy metrics of one validation set.

    Attributes
    ----------
    rmse : float
        Root mean square error, sqrt(mean((pred - obs)^2))
    mae : float
        Mean absolute error, mean(|pred - obs|)
    bias : float
        Mean error, mean(pred - obs)
    r : float
        Pearson correlation of predictions and observations
    r2 : float
        Square of ``r``
    n_pairs : int
        Number of complete (prediction, observation) pairs
    """
    rmse: float
    mae: float
    bias: float
    r: float
    r2: float
    n_pairs: int = 0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class CalibrationMetrics:
    """Calibration of predictive intervals.

    Attributes
    ----------
    coverage_95 : float
        Share of observations inside the central 95% predictive interval
    mean_interval_width : float
        Average width of that interval
    crps : float
        Continuous Ranked Probability Score for Gaussian predictive distributions
    """
    coverage_95: float
    mean_interval_width: float
    crps: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def _complete_pairs(*arrays: Iterable[float]) -> Tuple[NDArray, ...]:
    arrays = tuple(np.asarray(a, dtype=float).ravel() for a in arrays)
    shape = arrays[0].shape
    for a in arrays[1:]:
        if a.shape != shape:
            raise ValueError(f"Input lengths differ: {[len(x) for x in arrays]}")
    mask = np.ones(shape, dtype=bool)
    for a in arrays:
        mask &= np.isfinite(a)
    return tuple(a[mask] for a in arrays)


def pearson_r(x: NDArray, y: NDArray) -> float:
    """Pearson correlation; NaN with fewer than two pairs or zero variance."""
    if len(x) < 2 or np.ptp(x) == 0 or np.ptp(y) == 0:
        return np.nan
    return float(np.corrcoef(x, y)[0, 1])


def compute_metrics(predicted: Iterable[float], observed: Iterable[float]) -> FoldMetrics:
    """Compute RMSE, MAE, bias, R and R^2 over complete pairs.

    Parameters
    ----------
    predicted : array-like
        Predicted means
    observed : array-like
        Held-out observations (NaN where missing)

    Returns
    -------
    FoldMetrics
        All fields NaN when no complete pair exists

    Examples
    --------
    >>> m = compute_metrics([2.0, 3.0, 4.0], [1.0, 3.0, 6.0])
    >>> round(m.rmse, 3), m.mae, round(m.bias, 3)
    (1.291, 1.0, -0.333)
    """
    pred, obs = _complete_pairs(predicted, observed)
    n = len(pred)
    if n == 0:
        logger.warning("No complete prediction/observation pairs; metrics undefined")
        return FoldMetrics(np.nan, np.nan, np.nan, np.nan, np.nan, n_pairs=0)

    error = pred - obs
    r = pearson_r(pred, obs)
    return FoldMetrics(
        rmse=float(np.sqrt(np.mean(error ** 2))),
        mae=float(np.mean(np.abs(error))),
        bias=float(np.mean(error)),
        r=r,
        r2=r ** 2 if np.isfinite(r) else np.nan,
        n_pairs=n,
    )


def compute_calibration(
    predicted: Iterable[float],
    predicted_sd: Iterable[float],
    observed: Iterable[float],
    level: float = 0.95,
) -> CalibrationMetrics:
    """Interval coverage, width and CRPS of Gaussian predictive distributions."""
    pred, sd, obs = _complete_pairs(predicted, predicted_sd, observed)
    keep = sd > 0
    pred, sd, obs = pred[keep], sd[keep], obs[keep]
    if len(pred) == 0:
        return CalibrationMetrics(np.nan, np.nan, np.nan)

    z = stats.norm.ppf((1 + level) / 2)
    lower, upper = pred - z * sd, pred + z * sd
    coverage = float(np.mean((obs >= lower) & (obs <= upper)))

    u = (obs - pred) / sd
    crps = np.mean(sd * (u * (2 * stats.norm.cdf(u) - 1) + 2 * stats.norm.pdf(u) - 1 / np.sqrt(np.pi)))
    return CalibrationMetrics(
        coverage_95=coverage,
        mean_interval_width=float(np.mean(upper - lower)),
        crps=float(crps),
    )


def aggregate_metrics(metrics: Sequence[FoldMetrics]) -> Dict[str, float]:
    """Arithmetic mean of each metric across folds.

    NaN in any fold propagates to the mean of that metric.

    Examples
    --------
    >>> folds = [FoldMetrics(v, 0, 0, 0, 0) for v in (1.0, 2.0, 3.0, 4.0, 5.0)]
    >>> aggregate_metrics(folds)["rmse"]
    3.0
    """
    if not metrics:
        return {name: np.nan for name in METRIC_NAMES}
    return {
        name: float(np.mean([getattr(m, name) for m in metrics]))
        for name in METRIC_NAMES
    }


def format_report(
    per_fold: pd.DataFrame,
    aggregate: Dict[str, float],
    decimals: int = 3,
    n_failed: int = 0,
) -> str:
    """Text table of per-fold and averaged metrics."""
    columns = [c for c in METRIC_NAMES if c in per_fold.columns]
    lines = [
        "=" * 60,
        "CROSS-VALIDATION SUMMARY",
        "=" * 60,
        per_fold[columns].round(decimals).to_string(),
        "-" * 60,
        "Mean:   " + "  ".join(f"{k}={aggregate[k]:.{decimals}f}" for k in METRIC_NAMES),
    ]
    if n_failed:
        lines.append(f"Failed folds excluded from the mean: {n_failed}")
    lines.append("=" * 60)
    return "\n".join(lines)


def metrics_frame(metrics: List[FoldMetrics], folds: Sequence[int]) -> pd.DataFrame:
    return pd.DataFrame([m.to_dict() for m in metrics], index=pd.Index(list(folds), name="fold"))
