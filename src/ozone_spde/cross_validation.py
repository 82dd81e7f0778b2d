"""
Station-level k-fold cross-validation of the spatio-temporal ozone model.

For each fold the stations of that fold are held out, the model is built
and fitted on the remaining stations with the held-out rows stacked as a
prediction block, and the predicted linear predictor at the held-out rows is
scored against their observed (transformed) responses.

Failed folds (insufficient spatial support, fit failure, timeout) are
recorded with their fold index. Under the default ``'skip'`` policy they are
excluded from the averaged metrics and counted; under ``'raise'`` the first
failure aborts the run.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from tqdm.auto import tqdm

from ozone_spde.config import ModelConfig
from ozone_spde.data import SpatioTemporalData, inverse_transform
from ozone_spde.engine import GaussianSPDEEngine, InferenceEngine, PosteriorSummary
from ozone_spde.evaluation import (
    CalibrationMetrics,
    FoldMetrics,
    aggregate_metrics,
    compute_calibration,
    compute_metrics,
    format_report,
    metrics_frame,
)
from ozone_spde.exceptions import (
    FitFailedError,
    FoldFailure,
    FoldTimeoutError,
    InsufficientSpatialSupportError,
)
from ozone_spde.folds import assign_folds, label_observations
from ozone_spde.stack import ModelSpecBuilder

logger = logging.getLogger(__name__)

# Errors that invalidate a single fold rather than the whole run
FOLD_ERRORS = (InsufficientSpatialSupportError, FitFailedError, FoldTimeoutError)


@dataclass
class FoldResult:
    """Outcome of one successful fold.

    Attributes
    ----------
    fold : int
        Fold index (1-based)
    metrics : FoldMetrics
        Accuracy on the held-out rows
    calibration : CalibrationMetrics
        Predictive interval calibration on the held-out rows
    predictions : pd.DataFrame
        Held-out rows with observed and predicted values, in validation order
    n_train, n_valid : int
        Rows in the training and validation sets
    n_mesh_vertices : int
        Vertices of the fold's mesh
    elapsed : float
        Wall-clock seconds spent on the fold
    """
    fold: int
    metrics: FoldMetrics
    calibration: CalibrationMetrics
    predictions: pd.DataFrame
    n_train: int
    n_valid: int
    n_mesh_vertices: int
    elapsed: float


@dataclass
class CVResult:
    """Per-fold and aggregated cross-validation results."""
    folds: List[FoldResult]
    failures: List[FoldFailure]
    assignment: Dict[object, int]
    decimals: int = 3

    @property
    def n_succeeded(self) -> int:
        return len(self.folds)

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    @property
    def per_fold(self) -> pd.DataFrame:
        """Metrics of the successful folds, indexed by fold."""
        frame = metrics_frame([f.metrics for f in self.folds], [f.fold for f in self.folds])
        if self.folds:
            calibration = pd.DataFrame(
                [f.calibration.to_dict() for f in self.folds], index=frame.index
            )
            frame = frame.join(calibration)
            frame["n_train"] = [f.n_train for f in self.folds]
            frame["n_valid"] = [f.n_valid for f in self.folds]
            frame["n_mesh_vertices"] = [f.n_mesh_vertices for f in self.folds]
            frame["elapsed"] = [f.elapsed for f in self.folds]
        return frame

    @property
    def aggregate(self) -> Dict[str, float]:
        """Mean of each metric over the successful folds."""
        return aggregate_metrics([f.metrics for f in self.folds])

    @property
    def predictions(self) -> pd.DataFrame:
        if not self.folds:
            return pd.DataFrame()
        return pd.concat([f.predictions for f in self.folds], ignore_index=True)

    def report(self) -> str:
        text = format_report(self.per_fold, self.aggregate, self.decimals, self.n_failed)
        if self.failures:
            details = [f"  fold {f.fold}: {f.error_type}: {f.message}" for f in self.failures]
            text = "\n".join([text, "Failures:", *details])
        return text


class CrossValidator:
    """Run station-level k-fold cross-validation.

    Parameters
    ----------
    config : ModelConfig, optional
        Workflow settings; ``config.cv`` controls folds, seed, workers,
        timeout and failure policy
    engine : InferenceEngine, optional
        Fitting backend. Defaults to :class:`GaussianSPDEEngine`.
    builder : ModelSpecBuilder, optional
        Model input builder. Defaults to one built from ``config``.

    Examples
    --------
    >>> cv = CrossValidator(ModelConfig())
    >>> result = cv.run(data)
    >>> print(result.report())
    """

    def __init__(
        self,
        config: Optional[ModelConfig] = None,
        engine: Optional[InferenceEngine] = None,
        builder: Optional[ModelSpecBuilder] = None,
    ):
        self.config = (config or ModelConfig()).validate()
        self.engine = engine or GaussianSPDEEngine()
        self.builder = builder or ModelSpecBuilder(self.config)

    def assign(self, data: SpatioTemporalData) -> Dict[object, int]:
        """Fold of each station, using a generator seeded from the config."""
        rng = np.random.default_rng(self.config.cv.seed)
        return assign_folds(data.stations, self.config.cv.n_folds, rng)

    def run_fold(
        self,
        data: SpatioTemporalData,
        labels: NDArray,
        fold: int,
    ) -> FoldResult:
        """Fit on all stations outside ``fold`` and score the held-out rows."""
        start = time.perf_counter()
        train = data.subset(labels != fold)
        valid = data.subset(labels == fold)

        bundle = self.builder.build(train, valid)
        summary = self.engine.fit(bundle)

        rows = bundle.stack.index(ModelSpecBuilder.PRED_TAG)
        predictor = summary.predictor_at(rows)
        predicted = predictor["mean"].to_numpy()
        predictive_sd = _predictive_sd(predictor["sd"].to_numpy(), summary)

        metrics = compute_metrics(predicted, valid.response)
        calibration = compute_calibration(predicted, predictive_sd, valid.response)

        transform = self.config.response_transform
        predictions = pd.DataFrame({
            "fold": fold,
            "station_id": valid.station_id,
            "time_index": valid.time_index,
            "observed": valid.response,
            "predicted": predicted,
            "predicted_sd": predictive_sd,
            "observed_response": inverse_transform(valid.response, transform),
            "predicted_response": inverse_transform(predicted, transform),
        })
        elapsed = time.perf_counter() - start
        logger.info(
            f"Fold {fold}: {train.n_obs} train / {valid.n_obs} validation rows, "
            f"RMSE={metrics.rmse:.3f} MAE={metrics.mae:.3f} R={metrics.r:.3f} ({elapsed:.1f}s)"
        )
        return FoldResult(
            fold=fold,
            metrics=metrics,
            calibration=calibration,
            predictions=predictions,
            n_train=train.n_obs,
            n_valid=valid.n_obs,
            n_mesh_vertices=bundle.mesh.n_vertices,
            elapsed=elapsed,
        )

    def run(self, data: SpatioTemporalData, show_progress: bool = False) -> CVResult:
        """Cross-validate over all folds.

        Parameters
        ----------
        data : SpatioTemporalData
            Prepared observations
        show_progress : bool
            Display a progress bar over folds

        Returns
        -------
        CVResult
        """
        cv_cfg = self.config.cv
        assignment = self.assign(data)
        labels = label_observations(data.station_id, assignment)
        folds = list(range(1, cv_cfg.n_folds + 1))
        logger.info(
            f"Cross-validating {len(assignment)} stations in {cv_cfg.n_folds} folds "
            f"(seed={cv_cfg.seed})"
        )

        if cv_cfg.n_jobs > 1 or cv_cfg.fold_timeout is not None:
            outcomes = self._run_concurrent(data, labels, folds)
        else:
            outcomes = {}
            for fold in tqdm(folds, desc="CV folds", disable=not show_progress):
                try:
                    outcomes[fold] = self.run_fold(data, labels, fold)
                except FOLD_ERRORS as e:
                    outcomes[fold] = e
                    if cv_cfg.failure_policy == "raise":
                        break

        results, failures = [], []
        for fold in folds:
            outcome = outcomes.get(fold)
            if outcome is None:
                continue
            if isinstance(outcome, FoldResult):
                results.append(outcome)
                continue
            if cv_cfg.failure_policy == "raise":
                if outcome.fold is None:
                    raise type(outcome)(str(outcome), fold=fold) from outcome
                raise outcome
            logger.error(f"Fold {fold} failed: {type(outcome).__name__}: {outcome}")
            failures.append(FoldFailure.from_exception(fold, outcome))

        result = CVResult(
            folds=results, failures=failures, assignment=assignment, decimals=cv_cfg.decimals
        )
        logger.info(f"Cross-validation finished: {result.n_succeeded} succeeded, {result.n_failed} failed")
        return result

    def _run_concurrent(
        self,
        data: SpatioTemporalData,
        labels: NDArray,
        folds: Sequence[int],
    ) -> Dict[int, Union[FoldResult, Exception]]:
        """Run folds on daemon worker threads, enforcing the per-fold timeout.

        At most ``n_jobs`` folds run at once. A timed-out fold is reported as
        failed and frees its slot immediately; its thread cannot be
        interrupted, so it is left to finish in the background, its result
        is discarded and it does not hold up interpreter exit.
        """
        cv_cfg = self.config.cv
        timeout = cv_cfg.fold_timeout
        poll = min(timeout / 10.0, 1.0) if timeout else None
        finished: "queue.Queue" = queue.Queue()

        def task(fold: int) -> None:
            try:
                outcome = self.run_fold(data, labels, fold)
            except Exception as e:
                outcome = e
            finished.put((fold, outcome))

        queued = list(folds)
        running: Dict[int, float] = {}
        outcomes: Dict[int, Union[FoldResult, Exception]] = {}
        while queued or running:
            while queued and len(running) < cv_cfg.n_jobs:
                fold = queued.pop(0)
                running[fold] = time.monotonic()
                threading.Thread(
                    target=task, args=(fold,), name=f"cv-fold-{fold}", daemon=True
                ).start()

            try:
                fold, outcome = finished.get(timeout=poll)
            except queue.Empty:
                pass
            else:
                if fold not in running:
                    logger.debug(f"Discarding late result of timed-out fold {fold}")
                    continue
                del running[fold]
                if not isinstance(outcome, (FoldResult, *FOLD_ERRORS)):
                    raise outcome
                outcomes[fold] = outcome

            if timeout is not None:
                now = time.monotonic()
                for fold, start in list(running.items()):
                    if now - start > timeout:
                        logger.warning(f"Fold {fold} exceeded {timeout:g}s; abandoning its worker")
                        outcomes[fold] = FoldTimeoutError(
                            f"Fold exceeded the {timeout:g}s time limit", fold=fold
                        )
                        del running[fold]

            if cv_cfg.failure_policy == "raise" and any(
                not isinstance(o, FoldResult) for o in outcomes.values()
            ):
                break
        return outcomes


def _predictive_sd(predictor_sd: NDArray, summary: PosteriorSummary) -> NDArray:
    """Add the observation noise variance to the linear predictor variance."""
    if "precision_obs" not in summary.hyperpar.index:
        return predictor_sd
    precision = float(summary.hyperpar.loc["precision_obs", "mean"])
    return np.sqrt(predictor_sd ** 2 + 1.0 / precision)
