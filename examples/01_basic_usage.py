#!/usr/bin/env python
"""
Basic Usage Example for OZONE-SPDE.

This script demonstrates the core workflow:
1. Generate a synthetic station table in the ozone data layout
2. Cross-validate the SPDE/AR(1) model by station
3. Predict the ozone surface on a regular grid for one day

Run with:
    python examples/01_basic_usage.py
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from ozone_spde import CrossValidator, GridPredictor, ModelConfig, prepare_grid, prepare_observations
from ozone_spde.config import CVConfig, MeshConfig

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def generate_synthetic_data(
    n_stations: int = 28,
    n_days: int = 10,
    random_state: int = 42,
) -> pd.DataFrame:
    """Generate station-day ozone observations.

    The square-root response follows

        sqrt(y(s,t)) = b0 + b1 temp(s,t) + w(s,t) + e(s,t)

    where w is a spatial field evolving as an AR(1) process over days.
    """
    rng = np.random.default_rng(random_state)
    lon = rng.uniform(-79.5, -73.5, n_stations)
    lat = rng.uniform(40.5, 45.0, n_stations)
    dates = pd.date_range("2006-07-01", periods=n_days, freq="D")

    # Exponential covariance between stations
    dist = np.hypot(lon[:, None] - lon[None, :], lat[:, None] - lat[None, :])
    chol = np.linalg.cholesky(0.3 * np.exp(-dist / 1.5) + 1e-8 * np.eye(n_stations))

    field = chol @ rng.standard_normal(n_stations)
    rows = []
    for date in dates:
        field = 0.7 * field + np.sqrt(1 - 0.49) * (chol @ rng.standard_normal(n_stations))
        temp = 28.0 + rng.normal(0, 3.0, n_stations)
        wind = rng.uniform(1.0, 8.0, n_stations)
        rh = rng.uniform(40.0, 90.0, n_stations)
        root = 4.0 + 0.08 * (temp - 28.0) + field + rng.normal(0, 0.2, n_stations)
        for s in range(n_stations):
            rows.append({
                "s.index": s + 1,
                "Longitude": lon[s],
                "Latitude": lat[s],
                "Year": date.year,
                "Month": date.month,
                "Day": date.day,
                "y8hrmax": max(root[s], 0.5) ** 2,
                "xmaxtemp": temp[s],
                "xwdsp": wind[s],
                "xrh": rh[s],
            })
    return pd.DataFrame(rows)


def generate_grid(n_side: int = 12, n_days: int = 10) -> pd.DataFrame:
    """Regular prediction grid with covariates, over the same days as the stations.

    The grid carries every day so that its time index lines up with the
    observation table.
    """
    lon, lat = np.meshgrid(np.linspace(-79.0, -74.0, n_side), np.linspace(41.0, 44.5, n_side))
    frames = []
    for date in pd.date_range("2006-07-01", periods=n_days, freq="D"):
        frames.append(pd.DataFrame({
            "s.index": np.arange(1, lon.size + 1),
            "Longitude": lon.ravel(),
            "Latitude": lat.ravel(),
            "Year": date.year,
            "Month": date.month,
            "Day": date.day,
            "xmaxtemp": 28.0,
            "xwdsp": 4.0,
            "xrh": 65.0,
        }))
    return pd.concat(frames, ignore_index=True)


def main():
    output_dir = Path("outputs/basic_usage")
    output_dir.mkdir(parents=True, exist_ok=True)

    config = ModelConfig(
        mesh=MeshConfig(max_edge=(0.75, 1.5), cutoff=0.1, offset=(0.5, 1.0)),
        cv=CVConfig(n_folds=5, seed=23),
        n_times=5,
        prediction_time=5,
    )

    logger.info("Generating synthetic data...")
    data = prepare_observations(generate_synthetic_data(), config)

    logger.info("Running station-level cross-validation...")
    result = CrossValidator(config).run(data, show_progress=True)
    print(result.report())
    result.per_fold.to_csv(output_dir / "cv_metrics.csv")
    result.predictions.to_csv(output_dir / "cv_predictions.csv", index=False)

    logger.info("Predicting the grid surface...")
    grid = prepare_grid(generate_grid(), config)
    prediction = GridPredictor(config).run(data, grid)
    print(prediction.summary)
    prediction.to_csv(output_dir / "grid_surface.csv")

    logger.info(f"Outputs written to {output_dir}")


if __name__ == "__main__":
    main()
