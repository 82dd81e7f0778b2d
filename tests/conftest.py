"""
Test configuration and fixtures for OZONE-SPDE.
"""

import numpy as np
import pandas as pd
import pytest

from ozone_spde.config import MeshConfig, ModelConfig
from ozone_spde.data import prepare_observations
from ozone_spde.engine import HYPERPARAMETERS, InferenceEngine, PosteriorSummary
from ozone_spde.exceptions import FitFailedError
from ozone_spde.stack import ModelSpecBuilder


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def make_ozone_frame(n_stations=28, n_days=6, seed=42, missing_fraction=0.0):
    """Raw observation table in the default column schema.

    Stations are scattered over a 4 x 3 degree box. The response is a
    positive daily maximum 8-hour ozone value driven by temperature and a
    smooth spatial trend.
    """
    rng = np.random.default_rng(seed)
    lon = rng.uniform(-88.0, -84.0, n_stations)
    lat = rng.uniform(39.0, 42.0, n_stations)
    dates = pd.date_range("2011-05-01", periods=n_days, freq="D")

    rows = []
    for s in range(n_stations):
        for d, date in enumerate(dates):
            temp = 25.0 + 3.0 * np.sin(d / 3.0) + rng.normal(0, 1.0)
            wind = rng.uniform(1.0, 6.0)
            rh = rng.uniform(40.0, 80.0)
            mean = 40.0 + 0.8 * (temp - 25.0) + 2.0 * (lon[s] + 86.0) - 0.5 * wind
            rows.append({
                "s.index": s + 1,
                "Longitude": lon[s],
                "Latitude": lat[s],
                "Year": date.year,
                "Month": date.month,
                "Day": date.day,
                "y8hrmax": max(mean + rng.normal(0, 2.0), 1.0),
                "xmaxtemp": temp,
                "xwdsp": wind,
                "xrh": rh,
            })
    frame = pd.DataFrame(rows)
    if missing_fraction > 0:
        drop = rng.random(len(frame)) < missing_fraction
        frame.loc[drop, "y8hrmax"] = np.nan
    return frame


def make_grid_frame(n_points=12, days=((2011, 5, 1), (2011, 5, 2)), seed=7):
    """Raw grid table: the observation schema without the response."""
    rng = np.random.default_rng(seed)
    lon = rng.uniform(-87.5, -84.5, n_points)
    lat = rng.uniform(39.5, 41.5, n_points)
    rows = []
    for year, month, day in days:
        for i in range(n_points):
            rows.append({
                "s.index": 1000 + i,
                "Longitude": lon[i],
                "Latitude": lat[i],
                "Year": year,
                "Month": month,
                "Day": day,
                "xmaxtemp": 25.0 + rng.normal(0, 1.0),
                "xwdsp": rng.uniform(1.0, 6.0),
                "xrh": rng.uniform(40.0, 80.0),
            })
    return pd.DataFrame(rows)


@pytest.fixture
def ozone_frame():
    """28 stations over 6 days."""
    return make_ozone_frame()


@pytest.fixture
def grid_frame():
    return make_grid_frame()


@pytest.fixture
def coarse_config():
    """Configuration with a coarse mesh so that fits stay small."""
    return ModelConfig(mesh=MeshConfig(max_edge=(1.0, 2.0), cutoff=0.05, offset=(0.5, 1.0)))


@pytest.fixture
def ozone_data(ozone_frame, coarse_config):
    return prepare_observations(ozone_frame, coarse_config)


@pytest.fixture
def small_data(coarse_config):
    """10 stations over 3 days, for real model fits."""
    frame = make_ozone_frame(n_stations=10, n_days=3, seed=3)
    return prepare_observations(frame, coarse_config)


def _summary_from_predictor(bundle, mean, sd, precision_obs=4.0):
    n_rows = bundle.stack.n_rows
    columns = ["mean", "sd", "0.025quant", "0.5quant", "0.975quant", "mode"]
    fixed = pd.DataFrame(0.0, index=bundle.stack.fixed_names, columns=columns)
    hyperpar = pd.DataFrame(1.0, index=list(HYPERPARAMETERS), columns=columns)
    hyperpar.loc["precision_obs", "mean"] = precision_obs
    predictor = pd.DataFrame(
        {"mean": np.broadcast_to(mean, n_rows).astype(float),
         "sd": np.broadcast_to(sd, n_rows).astype(float)},
        index=pd.RangeIndex(n_rows, name="row"),
    )
    return PosteriorSummary(fixed=fixed, hyperpar=hyperpar, linear_predictor=predictor)


class LinearMockEngine(InferenceEngine):
    """Deterministic stand-in: least squares on the fixed effects only."""

    def __init__(self):
        self.n_calls = 0

    def fit(self, bundle):
        self.n_calls += 1
        stack = bundle.stack
        est = stack.index(ModelSpecBuilder.EST_TAG)
        y = stack.response[est]
        X = stack.X
        keep = np.isfinite(y)
        beta, *_ = np.linalg.lstsq(X[est][keep], y[keep], rcond=None)
        return _summary_from_predictor(bundle, X @ beta, 0.1)


class ConstantMockEngine(InferenceEngine):
    """Predicts the training mean everywhere."""

    def fit(self, bundle):
        est = bundle.stack.index(ModelSpecBuilder.EST_TAG)
        return _summary_from_predictor(bundle, np.nanmean(bundle.stack.response[est]), 0.1)


class FailingBuilder(ModelSpecBuilder):
    """Raise FitFailedError for the fold that holds out ``station``."""

    def __init__(self, config, station):
        super().__init__(config)
        self.station = station

    def build(self, train, predict=None):
        if predict is not None and self.station in set(predict.station_id.tolist()):
            raise FitFailedError("synthetic failure")
        return super().build(train, predict)


@pytest.fixture
def mock_engine():
    return LinearMockEngine()
