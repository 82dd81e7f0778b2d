"""
Tests for table loading and preparation.
"""

import numpy as np
import pandas as pd
import pytest

from ozone_spde.config import ModelConfig
from ozone_spde.data import (
    GridPoint,
    Observation,
    SpatioTemporalData,
    add_time_index,
    inverse_transform,
    load_table,
    prepare_grid,
    prepare_observations,
    transform_response,
)
from ozone_spde.exceptions import DataValidationError

from conftest import make_ozone_frame


class TestTimeIndex:
    """Tests for add_time_index."""

    def test_dense_index_from_dates(self):
        frame = pd.DataFrame({
            "Year": [2011, 2011, 2011, 2011],
            "Month": [6, 5, 5, 6],
            "Day": [1, 31, 30, 1],
        })
        out = add_time_index(frame)
        np.testing.assert_array_equal(out["time_index"], [3, 2, 1, 3])

    def test_shared_across_stations(self, ozone_frame):
        out = add_time_index(ozone_frame)
        per_date = out.groupby(["Year", "Month", "Day"])["time_index"].nunique()
        assert (per_date == 1).all()
        assert out["time_index"].min() == 1
        assert out["time_index"].max() == 6

    def test_missing_date_column(self):
        with pytest.raises(DataValidationError):
            add_time_index(pd.DataFrame({"Year": [2011], "Month": [5]}))


class TestTransforms:
    """Tests for the response transforms."""

    def test_sqrt(self):
        np.testing.assert_allclose(transform_response([4.0, np.nan], "sqrt"), [2.0, np.nan])
        np.testing.assert_allclose(inverse_transform([2.0], "sqrt"), [4.0])

    def test_log(self):
        np.testing.assert_allclose(inverse_transform(transform_response([3.0], "log"), "log"), [3.0])

    def test_negative_sqrt(self):
        with pytest.raises(DataValidationError):
            transform_response([-1.0], "sqrt")

    def test_non_positive_log(self):
        with pytest.raises(DataValidationError):
            transform_response([0.0], "log")

    def test_unknown(self):
        with pytest.raises(DataValidationError):
            transform_response([1.0], "cube")


class TestPrepareObservations:
    """Tests for prepare_observations."""

    def test_prepared_fields(self, ozone_frame):
        data = prepare_observations(ozone_frame, ModelConfig())
        assert data.n_obs == len(ozone_frame)
        assert len(data.stations) == 28
        assert data.n_times == 6
        assert data.covariate_names == ["xmaxtemp", "xwdsp", "xrh"]
        np.testing.assert_allclose(np.sort(data.response), np.sort(np.sqrt(ozone_frame["y8hrmax"])))

    def test_rows_ordered_by_station_then_time(self, ozone_frame):
        shuffled = ozone_frame.sample(frac=1.0, random_state=0)
        data = prepare_observations(shuffled, ModelConfig())
        order = {s: i for i, s in enumerate(pd.unique(shuffled["s.index"]))}
        keys = [(order[s], t) for s, t in zip(data.station_id, data.time_index)]
        assert keys == sorted(keys)

    def test_n_times_subset(self, ozone_frame):
        data = prepare_observations(ozone_frame, ModelConfig(n_times=3))
        assert data.n_times == 3
        assert data.n_obs == 28 * 3

    def test_missing_column(self, ozone_frame):
        with pytest.raises(DataValidationError):
            prepare_observations(ozone_frame.drop(columns="xrh"), ModelConfig())

    def test_moving_station(self, ozone_frame):
        frame = ozone_frame.copy()
        frame.loc[0, "Longitude"] += 1.0
        with pytest.raises(DataValidationError):
            prepare_observations(frame, ModelConfig())

    def test_missing_responses_kept(self):
        frame = make_ozone_frame(missing_fraction=0.3)
        data = prepare_observations(frame, ModelConfig())
        assert data.n_obs == len(frame)
        assert np.isnan(data.response).sum() == frame["y8hrmax"].isna().sum()


class TestSpatioTemporalData:
    """Tests for SpatioTemporalData."""

    def test_named_access(self, ozone_data):
        np.testing.assert_array_equal(ozone_data.covariate("xwdsp"), ozone_data.covariates[:, 1])
        with pytest.raises(KeyError):
            ozone_data.covariate("pm25")

    def test_subset_and_records(self, ozone_data):
        subset = ozone_data.subset(ozone_data.time_index == 1)
        assert subset.n_obs == 28
        record = next(subset.records())
        assert isinstance(record, Observation)
        assert record.time_index == 1
        assert set(record.covariates) == {"xmaxtemp", "xwdsp", "xrh"}

    def test_with_response_copies(self, ozone_data):
        replaced = ozone_data.with_response(np.zeros(ozone_data.n_obs))
        assert np.all(replaced.response == 0)
        assert not np.all(ozone_data.response == 0)

    def test_length_mismatch(self):
        with pytest.raises(DataValidationError):
            SpatioTemporalData(
                station_id=[1, 2], longitude=[0.0], latitude=[0.0, 1.0],
                time_index=[1, 1], response=[1.0, 2.0], covariates=np.zeros((2, 0)),
            )

    def test_empty_subset(self, ozone_data):
        empty = ozone_data.subset(np.zeros(ozone_data.n_obs, dtype=bool))
        assert empty.n_obs == 0
        assert empty.n_times == 0
        assert empty.covariates.shape == (0, 3)

    def test_covariate_name_mismatch(self):
        with pytest.raises(DataValidationError):
            SpatioTemporalData(
                station_id=[1, 2], longitude=[0.0, 1.0], latitude=[0.0, 1.0],
                time_index=[1, 1], response=[1.0, 2.0], covariates=np.zeros((2, 2)),
                covariate_names=["xmaxtemp"],
            )

    def test_frame_roundtrip_columns(self, ozone_data):
        frame = ozone_data.to_frame()
        assert list(frame.columns[:5]) == ["station_id", "longitude", "latitude", "time_index", "response"]


class TestLoading:
    """Tests for load_table and prepare_grid."""

    def test_load_table(self, ozone_frame, tmp_path):
        path = tmp_path / "ozone.csv"
        ozone_frame.to_csv(path, index=False)
        assert len(load_table(path)) == len(ozone_frame)

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_table(tmp_path / "absent.csv")

    def test_prepare_grid(self, grid_frame):
        grid = prepare_grid(grid_frame, ModelConfig(), time_slice=2)
        assert grid.n_obs == 12
        assert np.all(grid.time_index == 2)
        assert np.all(np.isnan(grid.response))

    def test_grid_points(self, grid_frame):
        grid = prepare_grid(grid_frame, ModelConfig(), time_slice=2)
        points = list(grid.grid_points())
        assert len(points) == 12
        assert all(isinstance(p, GridPoint) for p in points)
        assert not hasattr(points[0], "response")
        assert points[0].time_index == 2
        assert points[0].longitude == pytest.approx(grid.longitude[0])
        assert set(points[0].covariates) == {"xmaxtemp", "xwdsp", "xrh"}

    def test_prepare_grid_requires_slice(self, grid_frame):
        with pytest.raises(DataValidationError):
            prepare_grid(grid_frame, ModelConfig())

    def test_prepare_grid_empty_slice(self, grid_frame):
        with pytest.raises(DataValidationError):
            prepare_grid(grid_frame, ModelConfig(), time_slice=5)
