"""
Observation and prediction-grid tables for the ozone model.

Raw tables are read with pandas and converted into
:class:`SpatioTemporalData`, a columnar container whose fields are addressed
by name only (station, coordinates, time index, response, covariates).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from ozone_spde.config import DataSchema, ModelConfig
from ozone_spde.exceptions import DataValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    """A single station-day record."""
    station_id: object
    longitude: float
    latitude: float
    time_index: int
    response: float
    covariates: Dict[str, float]


@dataclass(frozen=True)
class GridPoint:
    """A single prediction-grid location at one time index."""
    station_id: object
    longitude: float
    latitude: float
    time_index: int
    covariates: Dict[str, float]


_TRANSFORMS: Dict[str, Tuple[Callable[[NDArray], NDArray], Callable[[NDArray], NDArray]]] = {
    "sqrt": (np.sqrt, np.square),
    "log": (np.log, np.exp),
    "identity": (lambda x: x, lambda x: x),
}


def transform_response(values: NDArray, transform: str = "sqrt") -> NDArray:
    """Apply the modelling transform to raw response values."""
    if transform not in _TRANSFORMS:
        raise DataValidationError(f"Unknown response transform: {transform}")
    values = np.asarray(values, dtype=float)
    if transform == "sqrt" and np.any(values[~np.isnan(values)] < 0):
        raise DataValidationError("sqrt transform requires non-negative responses")
    if transform == "log" and np.any(values[~np.isnan(values)] <= 0):
        raise DataValidationError("log transform requires positive responses")
    return _TRANSFORMS[transform][0](values)


def inverse_transform(values: NDArray, transform: str = "sqrt") -> NDArray:
    """Map modelled values back to the response scale."""
    if transform not in _TRANSFORMS:
        raise DataValidationError(f"Unknown response transform: {transform}")
    return _TRANSFORMS[transform][1](np.asarray(values, dtype=float))


@dataclass
class SpatioTemporalData:
    """Columnar station-time table with named fields.

    Attributes
    ----------
    station_id : NDArray
        Station identifier per row
    longitude, latitude : NDArray
        Station coordinates per row
    time_index : NDArray
        1-based dense time index per row
    response : NDArray
        Modelled (transformed) response; NaN where missing or unknown
    covariates : NDArray
        Covariate matrix of shape (n_obs, n_covariates)
    covariate_names : list of str
        Names of the covariate columns
    """
    station_id: NDArray
    longitude: NDArray
    latitude: NDArray
    time_index: NDArray
    response: NDArray
    covariates: NDArray
    covariate_names: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.station_id = np.asarray(self.station_id)
        n = len(self.station_id)
        self.longitude = np.asarray(self.longitude, dtype=float)
        self.latitude = np.asarray(self.latitude, dtype=float)
        self.time_index = np.asarray(self.time_index, dtype=int)
        self.response = np.asarray(self.response, dtype=float)
        for name in ("longitude", "latitude", "time_index", "response"):
            if len(getattr(self, name)) != n:
                raise DataValidationError(
                    f"Field '{name}' has {len(getattr(self, name))} rows, expected {n}"
                )
        covariates = np.asarray(self.covariates, dtype=float)
        n_cov = len(self.covariate_names)
        if covariates.size != n * n_cov:
            raise DataValidationError(
                f"Covariate array of shape {covariates.shape} does not match "
                f"{n} rows and {n_cov} covariate names"
            )
        self.covariates = covariates.reshape(n, n_cov)

    @property
    def n_obs(self) -> int:
        return len(self.station_id)

    @property
    def coordinates(self) -> NDArray:
        """Row coordinates as an (n_obs, 2) array of (longitude, latitude)."""
        return np.column_stack([self.longitude, self.latitude])

    @property
    def stations(self) -> NDArray:
        """Unique station identifiers in order of first appearance."""
        _, first = np.unique(self.station_id, return_index=True)
        return self.station_id[np.sort(first)]

    @property
    def n_times(self) -> int:
        return int(self.time_index.max()) if self.n_obs else 0

    def covariate(self, name: str) -> NDArray:
        """Return a covariate column by name."""
        try:
            return self.covariates[:, self.covariate_names.index(name)]
        except ValueError:
            raise KeyError(f"Unknown covariate: {name}") from None

    def subset(self, mask: NDArray) -> "SpatioTemporalData":
        """Return the rows selected by a boolean mask or index array."""
        mask = np.asarray(mask)
        return SpatioTemporalData(
            station_id=self.station_id[mask],
            longitude=self.longitude[mask],
            latitude=self.latitude[mask],
            time_index=self.time_index[mask],
            response=self.response[mask],
            covariates=self.covariates[mask],
            covariate_names=list(self.covariate_names),
        )

    def with_response(self, values: NDArray) -> "SpatioTemporalData":
        """Copy of the table with a replaced response column."""
        return replace(self, response=np.asarray(values, dtype=float).copy(),
                       covariate_names=list(self.covariate_names))

    def records(self) -> Iterator[Observation]:
        """Iterate over rows as :class:`Observation` records."""
        for i in range(self.n_obs):
            yield Observation(
                station_id=self.station_id[i],
                longitude=float(self.longitude[i]),
                latitude=float(self.latitude[i]),
                time_index=int(self.time_index[i]),
                response=float(self.response[i]),
                covariates=dict(zip(self.covariate_names, self.covariates[i].tolist())),
            )

    def grid_points(self) -> Iterator[GridPoint]:
        """Iterate over rows as :class:`GridPoint` records, without the response."""
        for i in range(self.n_obs):
            yield GridPoint(
                station_id=self.station_id[i],
                longitude=float(self.longitude[i]),
                latitude=float(self.latitude[i]),
                time_index=int(self.time_index[i]),
                covariates=dict(zip(self.covariate_names, self.covariates[i].tolist())),
            )

    def to_frame(self) -> pd.DataFrame:

        frame = pd.DataFrame({
            "station_id": self.station_id,
            "longitude": self.longitude,
            "latitude": self.latitude,
            "time_index": self.time_index,
            "response": self.response,
        })
        for j, name in enumerate(self.covariate_names):
            frame[name] = self.covariates[:, j]
        return frame

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        covariates: Sequence[str],
        schema: Optional[DataSchema] = None,
        time_column: str = "time_index",
        response_column: Optional[str] = None,
    ) -> "SpatioTemporalData":
        """Build from a frame that already carries a time-index column.

        ``response_column`` defaults to the schema response; when the frame
        has no such column (prediction grid) the response is all NaN.
        """
        schema = schema or DataSchema()
        response_column = response_column or schema.response
        required = [schema.station, schema.longitude, schema.latitude, time_column, *covariates]
        _require_columns(frame, required)
        if response_column in frame.columns:
            response = frame[response_column].to_numpy(dtype=float)
        else:
            response = np.full(len(frame), np.nan)
        return cls(
            station_id=frame[schema.station].to_numpy(),
            longitude=frame[schema.longitude].to_numpy(dtype=float),
            latitude=frame[schema.latitude].to_numpy(dtype=float),
            time_index=frame[time_column].to_numpy(dtype=int),
            response=response,
            covariates=frame[list(covariates)].to_numpy(dtype=float),
            covariate_names=list(covariates),
        )


def _require_columns(frame: pd.DataFrame, columns: Sequence[str]) -> None:
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise DataValidationError(f"Missing required columns: {missing}")


def load_table(path: Union[str, Path]) -> pd.DataFrame:
    """Read an observation or grid table from CSV."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")
    frame = pd.read_csv(path)
    logger.info(f"Loaded {len(frame)} rows from {path}")
    return frame


def add_time_index(
    frame: pd.DataFrame,
    schema: Optional[DataSchema] = None,
    column: str = "time_index",
) -> pd.DataFrame:
    """Add a dense 1..T time index built from the sorted distinct dates.

    The index is shared across stations: the same date maps to the same
    integer everywhere in the table.
    """
    schema = schema or DataSchema()
    _require_columns(frame, [schema.year, schema.month, schema.day])
    dates = pd.to_datetime(pd.DataFrame({
        "year": frame[schema.year],
        "month": frame[schema.month],
        "day": frame[schema.day],
    }))
    distinct = np.sort(dates.drop_duplicates().to_numpy())
    out = frame.copy()
    out[column] = np.searchsorted(distinct, dates.to_numpy()) + 1
    return out


def check_station_locations(frame: pd.DataFrame, schema: Optional[DataSchema] = None) -> None:
    """Ensure every station has one time-invariant location."""
    schema = schema or DataSchema()
    n_locations = (
        frame.groupby(schema.station)[[schema.longitude, schema.latitude]]
        .nunique()
        .max(axis=1)
    )
    moving = n_locations[n_locations > 1]
    if len(moving):
        raise DataValidationError(
            f"Stations with more than one location: {list(moving.index)}"
        )


def prepare_observations(frame: pd.DataFrame, config: ModelConfig) -> SpatioTemporalData:
    """Turn the raw observation table into model-ready data.

    Builds the time index, keeps the first ``config.n_times`` days if set,
    applies the response transform and orders rows by station (first
    appearance) then time.
    """
    schema = config.schema
    _require_columns(frame, [schema.station, schema.longitude, schema.latitude,
                             schema.response, *config.covariates])
    check_station_locations(frame, schema)
    frame = add_time_index(frame, schema)

    if config.n_times is not None:
        frame = frame[frame["time_index"] <= config.n_times]
        logger.info(f"Retained {config.n_times} time points ({len(frame)} rows)")

    station_order = {s: i for i, s in enumerate(pd.unique(frame[schema.station]))}
    frame = (
        frame.assign(_order=frame[schema.station].map(station_order))
        .sort_values(["_order", "time_index"], kind="mergesort")
        .drop(columns="_order")
        .reset_index(drop=True)
    )

    data = SpatioTemporalData.from_frame(frame, config.covariates, schema=schema)
    data = data.with_response(transform_response(data.response, config.response_transform))

    n_missing = int(np.isnan(data.response).sum())
    logger.info(
        f"Prepared {data.n_obs} observations at {len(data.stations)} stations "
        f"over {data.n_times} days ({n_missing} missing responses)"
    )
    return data


def prepare_grid(
    frame: pd.DataFrame,
    config: ModelConfig,
    time_slice: Optional[int] = None,
) -> SpatioTemporalData:
    """Turn the raw prediction-grid table into a single time slice.

    Parameters
    ----------
    frame : pd.DataFrame
        Grid table with the observation schema minus the response
    config : ModelConfig
        Workflow configuration
    time_slice : int, optional
        1-based time index to keep; defaults to ``config.prediction_time``
    """
    schema = config.schema
    time_slice = time_slice if time_slice is not None else config.prediction_time
    if time_slice is None:
        raise DataValidationError("A prediction time slice is required for the grid")

    frame = add_time_index(frame, schema)
    frame = frame[frame["time_index"] == time_slice].reset_index(drop=True)
    if frame.empty:
        raise DataValidationError(f"Grid has no rows at time index {time_slice}")

    grid = SpatioTemporalData.from_frame(
        frame, config.covariates, schema=schema, response_column="__no_response__"
    )
    logger.info(f"Prepared {grid.n_obs} grid points at time index {time_slice}")
    return grid
