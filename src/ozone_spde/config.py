"""
Configuration objects for OZONE-SPDE.

All tunable values of the workflow (mesh resolution, prior settings, fold
count, seed, response transform, time subset) live here as dataclasses so
that nothing downstream depends on literals.

Example
-------
>>> config = ModelConfig.from_json("config.json")
>>> config.cv.n_folds
5
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple, Union

from ozone_spde.exceptions import ConfigurationError


@dataclass
class DataSchema:
    """Column names of the observation and grid tables.

    Attributes
    ----------
    station : str
        Station identifier column
    longitude, latitude : str
        Coordinate columns
    year, month, day : str
        Date columns used to build the time index
    response : str
        Response column (absent from the grid table)
    """
    station: str = "s.index"
    longitude: str = "Longitude"
    latitude: str = "Latitude"
    year: str = "Year"
    month: str = "Month"
    day: str = "Day"
    response: str = "y8hrmax"


@dataclass
class MeshConfig:
    """Triangulation settings.

    Attributes
    ----------
    max_edge : tuple of float
        Largest triangle edge inside the inner boundary and in the outer band
    cutoff : float
        Minimum distance between vertices
    offset : tuple of float
        Extension of the inner boundary beyond the convex hull and width of
        the outer band
    """
    max_edge: Tuple[float, float] = (0.5, 1.0)
    cutoff: float = 0.1
    offset: Tuple[float, float] = (0.5, 1.0)

    def validate(self) -> None:
        if len(self.max_edge) != 2 or len(self.offset) != 2:
            raise ConfigurationError("max_edge and offset need two values each")
        if min(self.max_edge) <= 0:
            raise ConfigurationError(f"max_edge must be positive, got {self.max_edge}")
        if min(self.offset) <= 0:
            raise ConfigurationError(f"offset must be positive, got {self.offset}")
        if self.cutoff < 0:
            raise ConfigurationError(f"cutoff must be non-negative, got {self.cutoff}")
        if self.cutoff >= self.max_edge[0]:
            raise ConfigurationError("cutoff must be smaller than the inner max_edge")


@dataclass
class PriorConfig:
    """Penalised-complexity prior settings, each a (threshold, probability) pair.

    Attributes
    ----------
    range_prior : tuple
        P(range < r0) = p
    sigma_prior : tuple
        P(sigma > s0) = p
    rho_prior : tuple
        P(rho > u) = p for the AR(1) correlation across time groups
    precision_prior : tuple
        (shape, rate) of the log-gamma prior on the Gaussian noise precision
    fixed_effect_precision : float
        Prior precision of the intercept and covariate coefficients
    """
    range_prior: Tuple[float, float] = (1.0, 0.5)
    sigma_prior: Tuple[float, float] = (1.0, 0.05)
    rho_prior: Tuple[float, float] = (0.0, 0.9)
    precision_prior: Tuple[float, float] = (1.0, 5e-5)
    fixed_effect_precision: float = 0.001

    def validate(self) -> None:
        for name in ("range_prior", "sigma_prior", "rho_prior"):
            threshold, prob = getattr(self, name)
            if not 0.0 < prob < 1.0:
                raise ConfigurationError(f"{name} probability must lie in (0, 1), got {prob}")
            if name != "rho_prior" and threshold <= 0:
                raise ConfigurationError(f"{name} threshold must be positive, got {threshold}")
        u, _ = self.rho_prior
        if not -1.0 < u < 1.0:
            raise ConfigurationError(f"rho_prior threshold must lie in (-1, 1), got {u}")
        if min(self.precision_prior) <= 0:
            raise ConfigurationError("precision_prior shape and rate must be positive")
        if self.fixed_effect_precision <= 0:
            raise ConfigurationError("fixed_effect_precision must be positive")


@dataclass
class CVConfig:
    """Cross-validation settings.

    Attributes
    ----------
    n_folds : int
        Number of station groups
    seed : int
        Seed of the generator used to shuffle fold labels
    n_jobs : int
        Worker threads for the fold loop (1 runs sequentially)
    fold_timeout : float, optional
        Seconds allowed per fold
    failure_policy : {'skip', 'raise'}
        Exclude failed folds from the aggregate, or abort the run
    decimals : int
        Rounding used in printed reports
    """
    n_folds: int = 5
    seed: int = 23
    n_jobs: int = 1
    fold_timeout: Optional[float] = None
    failure_policy: Literal["skip", "raise"] = "skip"
    decimals: int = 3

    def validate(self) -> None:
        if self.n_folds < 2:
            raise ConfigurationError(f"n_folds must be at least 2, got {self.n_folds}")
        if self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be at least 1, got {self.n_jobs}")
        if self.fold_timeout is not None and self.fold_timeout <= 0:
            raise ConfigurationError("fold_timeout must be positive")
        if self.failure_policy not in ("skip", "raise"):
            raise ConfigurationError(f"Unknown failure_policy: {self.failure_policy}")


@dataclass
class ModelConfig:
    """Top-level configuration of the ozone model workflow.

    Attributes
    ----------
    mesh, prior, cv : MeshConfig, PriorConfig, CVConfig
        Component settings
    family : str
        Likelihood family; only 'gaussian' is supported
    response_transform : {'sqrt', 'log', 'identity'}
        Transform applied to the response before modelling
    n_times : int, optional
        Keep only the first ``n_times`` days
    prediction_time : int, optional
        Time index of the grid slice to predict
    covariates : tuple of str
        Covariate column names
    schema : DataSchema
        Column names of the input tables
    """
    mesh: MeshConfig = field(default_factory=MeshConfig)
    prior: PriorConfig = field(default_factory=PriorConfig)
    cv: CVConfig = field(default_factory=CVConfig)
    family: str = "gaussian"
    response_transform: Literal["sqrt", "log", "identity"] = "sqrt"
    n_times: Optional[int] = None
    prediction_time: Optional[int] = None
    covariates: Tuple[str, ...] = ("xmaxtemp", "xwdsp", "xrh")
    schema: DataSchema = field(default_factory=DataSchema)

    def validate(self) -> "ModelConfig":
        """Check all values, raising ConfigurationError on the first problem."""
        self.mesh.validate()
        self.prior.validate()
        self.cv.validate()
        if self.family != "gaussian":
            raise ConfigurationError(f"Unsupported likelihood family: {self.family}")
        if self.response_transform not in ("sqrt", "log", "identity"):
            raise ConfigurationError(f"Unknown response transform: {self.response_transform}")
        if self.n_times is not None and self.n_times < 1:
            raise ConfigurationError(f"n_times must be positive, got {self.n_times}")
        if self.prediction_time is not None and self.prediction_time < 1:
            raise ConfigurationError("prediction_time is a 1-based time index")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "ModelConfig":
        """Build a configuration from nested dictionaries.

        Unknown keys raise ConfigurationError rather than being ignored.
        """
        values = dict(values)
        sections = {
            "mesh": MeshConfig,
            "prior": PriorConfig,
            "cv": CVConfig,
            "schema": DataSchema,
        }
        kwargs: Dict[str, Any] = {}
        try:
            for key, section_cls in sections.items():
                if key in values:
                    section = dict(values.pop(key))
                    for tuple_key in ("max_edge", "offset", "range_prior", "sigma_prior",
                                      "rho_prior", "precision_prior"):
                        if tuple_key in section:
                            section[tuple_key] = tuple(section[tuple_key])
                    kwargs[key] = section_cls(**section)
            if "covariates" in values:
                values["covariates"] = tuple(values["covariates"])
            kwargs.update(values)
            config = cls(**kwargs)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
        return config.validate()

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "ModelConfig":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
