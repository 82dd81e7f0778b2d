"""
Posterior prediction of the ozone surface on a spatial grid.

The full observation set forms the estimation block and one time slice of
the grid forms the prediction block. The result is the per-grid-point
posterior mean and standard deviation of the linear predictor, ready to be
handed to a mapping tool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import pandas as pd
from scipy import stats

from ozone_spde.config import ModelConfig
from ozone_spde.data import SpatioTemporalData, inverse_transform
from ozone_spde.engine import GaussianSPDEEngine, InferenceEngine, PosteriorSummary
from ozone_spde.exceptions import ConfigurationError, DataValidationError
from ozone_spde.stack import ModelSpecBuilder

logger = logging.getLogger(__name__)


@dataclass
class GridPrediction:
    """Grid surface at one time slice.

    Attributes
    ----------
    surface : pd.DataFrame
        Columns longitude, latitude, mean, sd, lower, upper (model scale)
        and mean_response (back-transformed mean), one row per grid point
    time_slice : int
        Time index of the slice
    summary : PosteriorSummary
        Full posterior summary of the fit
    """
    surface: pd.DataFrame
    time_slice: int
    summary: PosteriorSummary

    def to_csv(self, path) -> None:
        self.surface.to_csv(path, index=False)


class GridPredictor:
    """Fit on all observations and predict one grid time slice.

    Parameters
    ----------
    config : ModelConfig, optional
        Workflow settings
    engine : InferenceEngine, optional
        Fitting backend, :class:`GaussianSPDEEngine` by default
    builder : ModelSpecBuilder, optional
        Model input builder
    confidence_level : float
        Level of the credible interval columns

    Examples
    --------
    >>> predictor = GridPredictor(ModelConfig(prediction_time=14))
    >>> result = predictor.run(data, grid)
    >>> result.surface[["longitude", "latitude", "mean", "sd"]]
    """

    def __init__(
        self,
        config: Optional[ModelConfig] = None,
        engine: Optional[InferenceEngine] = None,
        builder: Optional[ModelSpecBuilder] = None,
        confidence_level: float = 0.95,
    ):
        self.config = (config or ModelConfig()).validate()
        self.engine = engine or GaussianSPDEEngine()
        self.builder = builder or ModelSpecBuilder(self.config)
        if not 0.0 < confidence_level < 1.0:
            raise ConfigurationError(f"confidence_level must lie in (0, 1), got {confidence_level}")
        self.confidence_level = confidence_level

    def run(
        self,
        data: SpatioTemporalData,
        grid: SpatioTemporalData,
        time_slice: Optional[int] = None,
    ) -> GridPrediction:
        """Predict the grid at ``time_slice``.

        Grid rows at other time indices are ignored. ``time_slice`` defaults
        to ``config.prediction_time``.
        """
        time_slice = time_slice if time_slice is not None else self.config.prediction_time
        if time_slice is None:
            raise DataValidationError("A prediction time slice is required")
        if time_slice > data.n_times:
            raise DataValidationError(
                f"Time slice {time_slice} is beyond the {data.n_times} modelled days"
            )

        grid = grid.subset(grid.time_index == time_slice)
        if grid.n_obs == 0:
            raise DataValidationError(f"Grid has no points at time index {time_slice}")

        logger.info(f"Predicting {grid.n_obs} grid points at time index {time_slice}")
        bundle = self.builder.build(data, grid)
        summary = self.engine.fit(bundle)

        predictor = summary.predictor_at(bundle.stack.index(ModelSpecBuilder.PRED_TAG))
        surface = pd.DataFrame({
            "station_id": grid.station_id,
            "longitude": grid.longitude,
            "latitude": grid.latitude,
            "mean": predictor["mean"].to_numpy(),
            "sd": predictor["sd"].to_numpy(),
        })
        surface["lower"], surface["upper"] = stats.norm.interval(
            self.confidence_level, loc=surface["mean"].to_numpy(), scale=surface["sd"].to_numpy()
        )
        surface["mean_response"] = inverse_transform(surface["mean"].to_numpy(),
                                                     self.config.response_transform)
        return GridPrediction(surface=surface, time_slice=time_slice, summary=summary)
