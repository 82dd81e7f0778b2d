"""
Tests for the SPDE field prior, AR(1) structure and PC priors.
"""

import numpy as np
import pytest
from scipy import integrate

from ozone_spde.config import PriorConfig
from ozone_spde.exceptions import ConfigurationError
from ozone_spde.mesh import build_mesh
from ozone_spde.spde import (
    FieldIndex,
    LogGammaPrior,
    PCCor1Prior,
    PCMaternPrior,
    SPDEModel,
    ar1_log_determinant,
    ar1_precision,
    rho_from_theta,
    theta_from_rho,
)


@pytest.fixture
def spde_model():
    rng = np.random.default_rng(5)
    points = rng.uniform(0.0, 2.0, size=(8, 2))
    mesh = build_mesh(points, max_edge=(0.6, 1.2), cutoff=0.05, offset=(0.3, 0.6))
    return SPDEModel(mesh, PriorConfig())


class TestAR1:
    """Tests for the AR(1) precision."""

    def test_inverse_is_correlation(self):
        rho = 0.6
        Q = ar1_precision(5, rho).toarray()
        cov = np.linalg.inv(Q)
        lags = np.abs(np.subtract.outer(np.arange(5), np.arange(5)))
        np.testing.assert_allclose(cov, rho ** lags, atol=1e-12)

    def test_log_determinant(self):
        for n, rho in [(1, 0.3), (4, -0.2), (7, 0.9)]:
            sign, logdet = np.linalg.slogdet(ar1_precision(n, rho).toarray())
            assert sign > 0
            assert ar1_log_determinant(n, rho) == pytest.approx(logdet)

    def test_single_group(self):
        assert ar1_precision(1, 0.5).toarray() == pytest.approx(np.eye(1))

    def test_invalid_rho(self):
        with pytest.raises(ValueError):
            ar1_precision(3, 1.0)

    def test_theta_roundtrip(self):
        for rho in (-0.9, 0.0, 0.5, 0.99):
            assert rho_from_theta(theta_from_rho(rho)) == pytest.approx(rho)


class TestPriors:
    """Tests for the PC and log-gamma priors."""

    def test_matern_range_tail(self):
        """P(range < range0) equals p_range."""
        prior = PCMaternPrior(range0=1.0, p_range=0.5, sigma0=1.0, p_sigma=0.05)
        f = lambda lr: np.exp(prior.log_density(lr, 0.0))
        below, _ = integrate.quad(f, -30.0, 0.0)
        total, _ = integrate.quad(f, -30.0, 30.0, limit=200)
        assert below / total == pytest.approx(0.5, abs=1e-4)

    def test_matern_sigma_tail(self):
        """P(sigma > sigma0) equals p_sigma."""
        prior = PCMaternPrior(range0=1.0, p_range=0.5, sigma0=1.0, p_sigma=0.05)
        f = lambda ls: np.exp(prior.log_density(0.0, ls))
        above, _ = integrate.quad(f, 0.0, 10.0)
        total, _ = integrate.quad(f, -30.0, 10.0, limit=200)
        assert above / total == pytest.approx(0.05, abs=1e-4)

    def test_cor1_tail_probability(self):
        prior = PCCor1Prior(u=0.0, alpha=0.9)
        f = lambda t: np.exp(prior.log_density(t))
        upper, _ = integrate.quad(f, 0.0, 40.0, limit=200)
        total, _ = integrate.quad(f, -40.0, 40.0, limit=200)
        assert total == pytest.approx(1.0, abs=1e-3)
        assert upper == pytest.approx(0.9, abs=1e-3)

    def test_cor1_invalid_probability(self):
        """alpha must exceed sqrt((1 - u) / 2)."""
        with pytest.raises(ConfigurationError):
            PCCor1Prior(u=0.0, alpha=0.5)

    def test_log_gamma_normalised(self):
        prior = LogGammaPrior(shape=1.0, rate=0.5)
        total, _ = integrate.quad(lambda t: np.exp(prior.log_density(t)), -30.0, 10.0, limit=200)
        assert total == pytest.approx(1.0, abs=1e-4)


class TestFieldIndex:
    """Tests for FieldIndex."""

    def test_layout(self):
        index = FieldIndex(n_vertices=3, n_groups=2)
        assert index.size == 6
        np.testing.assert_array_equal(index.field, [0, 1, 2, 0, 1, 2])
        np.testing.assert_array_equal(index.field_group, [1, 1, 1, 2, 2, 2])
        assert index.column(2, 2) == 5


class TestSPDEModel:
    """Tests for SPDEModel."""

    def test_kappa_tau(self):
        kappa, tau = SPDEModel.kappa_tau(range_=2.0, sigma=0.5)
        assert kappa == pytest.approx(np.sqrt(8.0) / 2.0)
        assert tau == pytest.approx(1.0 / (np.sqrt(4 * np.pi) * kappa * 0.5))

    def test_precision_symmetric_positive_definite(self, spde_model):
        Q = spde_model.precision(range_=1.0, sigma=1.0).toarray()
        np.testing.assert_allclose(Q, Q.T, atol=1e-10)
        assert np.all(np.linalg.eigvalsh(Q) > 0)

    def test_sigma_scales_precision(self, spde_model):
        Q1 = spde_model.precision(1.0, 1.0).toarray()
        Q2 = spde_model.precision(1.0, 2.0).toarray()
        np.testing.assert_allclose(Q2, Q1 / 4.0)

    def test_spatiotemporal_shape(self, spde_model):
        n = spde_model.n_vertices
        Q = spde_model.spatiotemporal_precision(1.0, 1.0, 0.7, n_groups=3)
        assert Q.shape == (3 * n, 3 * n)
        Q_s = spde_model.precision(1.0, 1.0).toarray()
        block = Q[:n, :n].toarray()
        # First diagonal block of kron(Q_ar1, Q_s) is Q_s / (1 - rho^2)
        np.testing.assert_allclose(block, Q_s / (1 - 0.49))

    def test_log_prior_finite(self, spde_model):
        assert np.isfinite(spde_model.log_prior(0.0, 0.0, 1.0))

    def test_invalid_rho_prior(self, spde_model):
        with pytest.raises(ConfigurationError):
            SPDEModel(spde_model.mesh, PriorConfig(rho_prior=(0.5, 0.4)))
