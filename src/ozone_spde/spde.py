"""
Latent field prior: SPDE Matérn field on the mesh with AR(1) time dependence.

The spatial field at each time group is a Matérn (nu = 1) Gaussian field
represented on the mesh vertices through the SPDE approach. Time groups are
coupled by a stationary AR(1) process, so the joint precision is the
Kronecker product of the AR(1) and spatial precisions.

Hyperparameters carry penalised-complexity (PC) priors, each stated as a
tail probability at a threshold.

References
----------
.. [1] Fuglstad, G.-A., Simpson, D., Lindgren, F., & Rue, H. (2019).
       Constructing priors that penalize the complexity of Gaussian random
       fields. JASA, 114(525), 445-452.
.. [2] Simpson, D., Rue, H., Riebler, A., Martins, T. G., & Sørbye, S. H.
       (2017). Penalising model component complexity. Statistical Science.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import sparse
from scipy.optimize import brentq
from scipy.special import gammaln

from ozone_spde.config import PriorConfig
from ozone_spde.exceptions import ConfigurationError
from ozone_spde.mesh import Mesh

logger = logging.getLogger(__name__)


@dataclass
class PCMaternPrior:
    """Joint PC prior on the range and marginal standard deviation.

    P(range < range0) = p_range and P(sigma > sigma0) = p_sigma, for a
    two-dimensional field with smoothness nu = 1.
    """
    range0: float
    p_range: float
    sigma0: float
    p_sigma: float

    @property
    def lambda_range(self) -> float:
        return -np.log(self.p_range) * self.range0

    @property
    def lambda_sigma(self) -> float:
        return -np.log(self.p_sigma) / self.sigma0

    def log_density(self, log_range: float, log_sigma: float) -> float:
        """Log prior density on the internal (log range, log sigma) scale."""
        lam_r, lam_s = self.lambda_range, self.lambda_sigma
        lp_range = np.log(lam_r) - log_range - lam_r * np.exp(-log_range)
        lp_sigma = np.log(lam_s) - lam_s * np.exp(log_sigma) + log_sigma
        return float(lp_range + lp_sigma)


@dataclass
class PCCor1Prior:
    """PC prior for a correlation with base model rho = 1.

    Satisfies P(rho > u) = alpha, which requires alpha > sqrt((1 - u) / 2).
    The internal scale is theta = log((1 + rho) / (1 - rho)).
    """
    u: float
    alpha: float
    rate: float = field(init=False)

    def __post_init__(self):
        lower = np.sqrt((1.0 - self.u) / 2.0)
        if not lower < self.alpha < 1.0:
            raise ConfigurationError(
                f"rho prior probability must lie in ({lower:.4f}, 1) for threshold {self.u}"
            )
        du = np.sqrt(1.0 - self.u)

        def excess(lam: float) -> float:
            return -np.expm1(-lam * du) / -np.expm1(-lam * np.sqrt(2.0)) - self.alpha

        self.rate = brentq(excess, 1e-10, 1e4)
        logger.debug(f"PC cor1 rate {self.rate:.4g} for P(rho > {self.u}) = {self.alpha}")

    def log_density(self, theta: float) -> float:
        rho = np.tanh(theta / 2.0)
        dist = np.sqrt(max(1.0 - rho, 1e-300))
        lam = self.rate
        log_pi_rho = (
            np.log(lam) - lam * dist - np.log(-np.expm1(-lam * np.sqrt(2.0))) - np.log(2.0 * dist)
        )
        log_jacobian = np.log(max((1.0 - rho ** 2) / 2.0, 1e-300))
        return float(log_pi_rho + log_jacobian)


@dataclass
class LogGammaPrior:
    """Gamma(shape, rate) prior on a precision, expressed on its log."""
    shape: float
    rate: float

    def log_density(self, log_precision: float) -> float:
        a, b = self.shape, self.rate
        return float(a * np.log(b) - gammaln(a) + a * log_precision - b * np.exp(log_precision))


def rho_from_theta(theta: float) -> float:
    return float(np.tanh(theta / 2.0))


def theta_from_rho(rho: float) -> float:
    return float(np.log((1.0 + rho) / (1.0 - rho)))


def ar1_precision(n: int, rho: float) -> sparse.csr_matrix:
    """Precision of a stationary AR(1) process with unit marginal variance."""
    if n == 1:
        return sparse.identity(1, format="csr")
    if not -1.0 < rho < 1.0:
        raise ValueError(f"AR(1) correlation must lie in (-1, 1), got {rho}")
    main = np.full(n, 1.0 + rho ** 2)
    main[0] = main[-1] = 1.0
    off = np.full(n - 1, -rho)
    return (sparse.diags([off, main, off], [-1, 0, 1]) / (1.0 - rho ** 2)).tocsr()


def ar1_log_determinant(n: int, rho: float) -> float:
    """log|Q| of :func:`ar1_precision`."""
    return -(n - 1) * float(np.log1p(-rho ** 2))


@dataclass
class FieldIndex:
    """Enumeration of the (vertex, time group) basis functions.

    Attributes
    ----------
    n_vertices : int
        Mesh vertices per time group
    n_groups : int
        Number of time groups
    """
    n_vertices: int
    n_groups: int

    @property
    def size(self) -> int:
        return self.n_vertices * self.n_groups

    @property
    def field(self) -> NDArray:
        """0-based vertex of each basis function."""
        return np.tile(np.arange(self.n_vertices), self.n_groups)

    @property
    def field_group(self) -> NDArray:
        """1-based time group of each basis function."""
        return np.repeat(np.arange(1, self.n_groups + 1), self.n_vertices)

    def column(self, vertex: int, group: int) -> int:
        return vertex + self.n_vertices * (group - 1)


class SPDEModel:
    """Matérn SPDE field (alpha = 2) on a mesh, replicated over AR(1) time groups.

    Parameters
    ----------
    mesh : Mesh
        Spatial mesh
    prior : PriorConfig
        Prior settings for range, sigma and rho

    Examples
    --------
    >>> spde = SPDEModel(mesh, PriorConfig())
    >>> Q = spde.precision(range_=1.5, sigma=0.8)
    """

    def __init__(self, mesh: Mesh, prior: PriorConfig):
        self.mesh = mesh
        self.prior = prior
        self.C, self.G = mesh.fem_matrices()
        self._C_inv = sparse.diags(1.0 / self.C.diagonal(), format="csr")
        self._GCG = (self.G @ self._C_inv @ self.G).tocsr()

        self.matern_prior = PCMaternPrior(
            range0=prior.range_prior[0], p_range=prior.range_prior[1],
            sigma0=prior.sigma_prior[0], p_sigma=prior.sigma_prior[1],
        )
        self.rho_prior = PCCor1Prior(u=prior.rho_prior[0], alpha=prior.rho_prior[1])

    @property
    def n_vertices(self) -> int:
        return self.mesh.n_vertices

    @staticmethod
    def kappa_tau(range_: float, sigma: float) -> Tuple[float, float]:
        kappa = np.sqrt(8.0) / range_
        tau = 1.0 / (np.sqrt(4.0 * np.pi) * kappa * sigma)
        return kappa, tau

    def precision(self, range_: float, sigma: float) -> sparse.csc_matrix:
        """Spatial precision tau^2 (kappa^4 C + 2 kappa^2 G + G C^-1 G)."""
        kappa, tau = self.kappa_tau(range_, sigma)
        Q = tau ** 2 * (kappa ** 4 * self.C + 2.0 * kappa ** 2 * self.G + self._GCG)
        return Q.tocsc()

    def spatiotemporal_precision(
        self, range_: float, sigma: float, rho: float, n_groups: int
    ) -> sparse.csc_matrix:
        """kron(Q_ar1, Q_spatial) over ``n_groups`` time groups."""
        Q_s = self.precision(range_, sigma)
        Q_t = ar1_precision(n_groups, rho)
        return sparse.kron(Q_t, Q_s, format="csc")

    def log_prior(self, log_range: float, log_sigma: float, theta_rho: float) -> float:
        return self.matern_prior.log_density(log_range, log_sigma) + self.rho_prior.log_density(theta_rho)
