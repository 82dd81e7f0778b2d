"""
Tests for the Gaussian SPDE inference engine.
"""

import numpy as np
import pytest
from scipy import sparse

from ozone_spde.engine import (
    HYPERPARAMETERS,
    GaussianSPDEEngine,
    PosteriorSummary,
    _factorise,
    _GaussianProblem,
)
from ozone_spde.exceptions import FitFailedError
from ozone_spde.stack import ModelSpecBuilder


@pytest.fixture
def small_bundle(small_data, coarse_config):
    stations = small_data.stations
    held_out = np.isin(small_data.station_id, stations[:2])
    builder = ModelSpecBuilder(coarse_config)
    return builder.build(small_data.subset(~held_out), small_data.subset(held_out))


class TestFactorise:
    """Tests for the sparse factorisation helper."""

    def test_log_determinant(self):
        rng = np.random.default_rng(0)
        B = rng.normal(size=(6, 6))
        Q = B @ B.T + 6 * np.eye(6)
        factor = _factorise(sparse.csc_matrix(Q))
        assert factor.log_det == pytest.approx(np.linalg.slogdet(Q)[1])
        x = factor.lu.solve(np.ones(6))
        np.testing.assert_allclose(Q @ x, np.ones(6), atol=1e-10)

    def test_not_positive_definite(self):
        with pytest.raises(np.linalg.LinAlgError):
            _factorise(sparse.csc_matrix(np.diag([1.0, -1.0, 2.0])))


class TestGaussianProblem:
    """Tests for the marginal likelihood machinery."""

    def test_likelihood_rows(self, small_bundle):
        problem = _GaussianProblem(small_bundle)
        n_est = len(small_bundle.stack.index(ModelSpecBuilder.EST_TAG))
        assert problem.n_lik == n_est
        assert problem.n_latent == small_bundle.field_index.size + 4

    def test_posterior_at_initial_theta(self, small_bundle):
        problem = _GaussianProblem(small_bundle)
        theta = problem.initial_theta()
        state = problem.posterior(theta)
        assert state.mean.shape == (problem.n_latent,)
        assert np.all(np.isfinite(state.mean))
        assert np.isfinite(state.log_marginal_likelihood)
        assert np.isfinite(problem.objective(theta))

    def test_objective_out_of_bounds(self, small_bundle):
        problem = _GaussianProblem(small_bundle)
        theta = problem.initial_theta()
        theta[1] = 50.0
        assert problem.objective(theta) == np.inf

    def test_higher_noise_precision_fits_closer(self, small_bundle):
        """The latent mean tracks the data more closely as tau grows."""
        problem = _GaussianProblem(small_bundle)
        theta = problem.initial_theta()
        low, high = theta.copy(), theta.copy()
        low[0], high[0] = -2.0, 6.0
        resid_low = problem.y - problem.M_lik @ problem.posterior(low).mean
        resid_high = problem.y - problem.M_lik @ problem.posterior(high).mean
        assert np.sum(resid_high ** 2) < np.sum(resid_low ** 2)


class TestGaussianSPDEEngine:
    """Tests for GaussianSPDEEngine.fit."""

    def test_no_observed_rows(self, small_data, coarse_config):
        empty = small_data.with_response(np.full(small_data.n_obs, np.nan))
        bundle = ModelSpecBuilder(coarse_config).build(empty)
        with pytest.raises(FitFailedError):
            GaussianSPDEEngine().fit(bundle)

    def test_unsupported_family(self, small_bundle):
        small_bundle.config.family = "poisson"
        with pytest.raises(FitFailedError):
            GaussianSPDEEngine().fit(small_bundle)

    def test_non_convergence_raises(self, small_bundle):
        engine = GaussianSPDEEngine(max_iter=2)
        with pytest.raises(FitFailedError, match="converge"):
            engine.fit(small_bundle)

    @pytest.mark.slow
    def test_fit_summary(self, small_bundle):
        engine = GaussianSPDEEngine(max_iter=300, require_convergence=False)
        summary = engine.fit(small_bundle)

        assert isinstance(summary, PosteriorSummary)
        assert list(summary.hyperpar.index) == list(HYPERPARAMETERS)
        assert list(summary.fixed.index) == ["intercept", "xmaxtemp", "xwdsp", "xrh"]
        for column in ("mean", "sd", "0.025quant", "0.5quant", "0.975quant", "mode"):
            assert column in summary.hyperpar.columns
            assert column in summary.fixed.columns

        assert summary.hyperpar.loc["range", "mean"] > 0
        assert summary.hyperpar.loc["sigma", "mean"] > 0
        assert -1 < summary.hyperpar.loc["rho", "mean"] < 1
        assert np.all(summary.hyperpar["0.025quant"] <= summary.hyperpar["0.975quant"])

        predictor = summary.linear_predictor
        assert len(predictor) == small_bundle.stack.n_rows
        pred_rows = small_bundle.stack.index(ModelSpecBuilder.PRED_TAG)
        at_pred = summary.predictor_at(pred_rows)
        assert np.all(np.isfinite(at_pred["mean"]))
        assert np.all(at_pred["sd"] > 0)
        assert np.isfinite(summary.log_marginal_likelihood)
        assert set(summary.marginals) >= set(HYPERPARAMETERS)

    @pytest.mark.slow
    def test_prediction_in_response_range(self, small_bundle):
        engine = GaussianSPDEEngine(max_iter=300, require_convergence=False)
        summary = engine.fit(small_bundle)
        y = small_bundle.stack.response
        est_mean = summary.predictor_at(small_bundle.stack.index("est"))["mean"].to_numpy()
        assert np.corrcoef(est_mean, y[np.isfinite(y)])[0, 1] > 0.5
