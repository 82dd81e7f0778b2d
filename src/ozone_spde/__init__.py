"""
OZONE-SPDE: Spatio-temporal Bayesian ozone modelling with SPDE Matérn fields.

A Python framework for daily maximum 8-hour ozone that couples a Gaussian
Matérn random field (via the SPDE/finite element representation) with AR(1)
dependence across days, validated by station-level k-fold cross-validation.

Example
-------
>>> from ozone_spde import ModelConfig, CrossValidator, load_table, prepare_observations
>>> config = ModelConfig(n_times=30)
>>> data = prepare_observations(load_table("ozone.csv"), config)
>>> result = CrossValidator(config).run(data)
>>> print(result.report())
"""

__version__ = "0.1.0"

# Configuration and data
from ozone_spde.config import CVConfig, DataSchema, MeshConfig, ModelConfig, PriorConfig
from ozone_spde.data import (
    SpatioTemporalData,
    load_table,
    prepare_grid,
    prepare_observations,
)

# Model construction
from ozone_spde.folds import assign_folds
from ozone_spde.mesh import Mesh, build_mesh, projection_matrix
from ozone_spde.spde import SPDEModel
from ozone_spde.stack import DataStack, ModelInputBundle, ModelSpecBuilder

# Inference
from ozone_spde.engine import GaussianSPDEEngine, InferenceEngine, PosteriorSummary

# Workflows
from ozone_spde.cross_validation import CrossValidator, CVResult
from ozone_spde.evaluation import FoldMetrics, aggregate_metrics, compute_metrics
from ozone_spde.prediction import GridPrediction, GridPredictor

from ozone_spde.exceptions import (
    ConfigurationError,
    DataValidationError,
    FitFailedError,
    FoldTimeoutError,
    InsufficientSpatialSupportError,
    OzoneSpdeError,
)

__all__ = [
    # Configuration
    "ModelConfig",
    "MeshConfig",
    "PriorConfig",
    "CVConfig",
    "DataSchema",
    # Data
    "SpatioTemporalData",
    "load_table",
    "prepare_observations",
    "prepare_grid",
    # Model construction
    "assign_folds",
    "Mesh",
    "build_mesh",
    "projection_matrix",
    "SPDEModel",
    "DataStack",
    "ModelInputBundle",
    "ModelSpecBuilder",
    # Inference
    "InferenceEngine",
    "GaussianSPDEEngine",
    "PosteriorSummary",
    # Workflows
    "CrossValidator",
    "CVResult",
    "FoldMetrics",
    "compute_metrics",
    "aggregate_metrics",
    "GridPredictor",
    "GridPrediction",
    # Errors
    "OzoneSpdeError",
    "ConfigurationError",
    "DataValidationError",
    "InsufficientSpatialSupportError",
    "FitFailedError",
    "FoldTimeoutError",
    # Metadata
    "__version__",
]
