"""
Assembly of model inputs: mesh, latent field prior, projection matrices and
the stacked estimation/prediction design submitted to the inference engine.

The estimation block carries the known responses; the prediction block
carries NaN responses, so the engine computes its linear predictor from the
same posterior without the held-out values influencing the fit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from ozone_spde.config import ModelConfig
from ozone_spde.data import SpatioTemporalData
from ozone_spde.mesh import Mesh, build_mesh, projection_matrix
from ozone_spde.spde import FieldIndex, SPDEModel

logger = logging.getLogger(__name__)


@dataclass
class StackBlock:
    """One tagged block of rows in the data stack.

    Attributes
    ----------
    tag : str
        Block name, e.g. 'est' or 'pred'
    response : NDArray
        Response per row, NaN where unknown
    A : csr_matrix
        Projection of the latent field onto the rows
    X : NDArray
        Fixed-effect design (intercept first, then covariates)
    """
    tag: str
    response: NDArray
    A: sparse.csr_matrix
    X: NDArray

    @property
    def n_rows(self) -> int:
        return len(self.response)


@dataclass
class DataStack:
    """Row-wise concatenation of tagged blocks.

    Examples
    --------
    >>> stack = DataStack([est_block, pred_block], fixed_names=["intercept", "x1"])
    >>> rows = stack.index("pred")
    """
    blocks: List[StackBlock]
    fixed_names: List[str] = field(default_factory=list)

    def __post_init__(self):
        tags = [b.tag for b in self.blocks]
        if len(set(tags)) != len(tags):
            raise ValueError(f"Duplicate stack tags: {tags}")
        self._offsets: Dict[str, int] = {}
        start = 0
        for block in self.blocks:
            self._offsets[block.tag] = start
            start += block.n_rows

    @property
    def n_rows(self) -> int:
        return sum(b.n_rows for b in self.blocks)

    @property
    def response(self) -> NDArray:
        return np.concatenate([b.response for b in self.blocks])

    @property
    def A(self) -> sparse.csr_matrix:
        return sparse.vstack([b.A for b in self.blocks], format="csr")

    @property
    def X(self) -> NDArray:
        return np.vstack([b.X for b in self.blocks])

    @property
    def tags(self) -> List[str]:
        return [b.tag for b in self.blocks]

    def index(self, tag: str) -> NDArray:
        """Stack row positions of a block, in the block's own row order."""
        if tag not in self._offsets:
            raise KeyError(f"Unknown stack tag: {tag}")
        block = next(b for b in self.blocks if b.tag == tag)
        start = self._offsets[tag]
        return np.arange(start, start + block.n_rows)


@dataclass
class ModelInputBundle:
    """Everything the inference engine needs for one fit.

    Attributes
    ----------
    mesh : Mesh
        Mesh built from the estimation coordinates
    spde : SPDEModel
        Latent field prior on the mesh
    field_index : FieldIndex
        (vertex, time group) enumeration of the field
    stack : DataStack
        Estimation and prediction rows
    config : ModelConfig
        Settings used to build the bundle
    compute_predictor : bool
        Whether posteriors of the linear predictor are wanted for all rows
    """
    mesh: Mesh
    spde: SPDEModel
    field_index: FieldIndex
    stack: DataStack
    config: ModelConfig
    compute_predictor: bool = True

    @property
    def family(self) -> str:
        return self.config.family

    @property
    def n_groups(self) -> int:
        return self.field_index.n_groups


def design_matrix(data: SpatioTemporalData) -> NDArray:
    """Intercept column followed by the covariates, by name order."""
    return np.column_stack([np.ones(data.n_obs), data.covariates])


class ModelSpecBuilder:
    """Build model inputs from a training set and a prediction set.

    Parameters
    ----------
    config : ModelConfig
        Mesh and prior settings

    Examples
    --------
    >>> builder = ModelSpecBuilder(ModelConfig())
    >>> bundle = builder.build(train, validation)
    >>> bundle.stack.index("pred")
    """

    EST_TAG = "est"
    PRED_TAG = "pred"

    def __init__(self, config: Optional[ModelConfig] = None):
        self.config = (config or ModelConfig()).validate()

    def build_mesh(self, train: SpatioTemporalData) -> Mesh:
        mesh_cfg = self.config.mesh
        return build_mesh(
            train.coordinates,
            max_edge=mesh_cfg.max_edge,
            cutoff=mesh_cfg.cutoff,
            offset=mesh_cfg.offset,
        )

    def build(
        self,
        train: SpatioTemporalData,
        predict: Optional[SpatioTemporalData] = None,
    ) -> ModelInputBundle:
        """Assemble the bundle.

        Parameters
        ----------
        train : SpatioTemporalData
            Estimation rows; the mesh uses only their coordinates
        predict : SpatioTemporalData, optional
            Rows to predict; their responses are replaced by NaN in the stack

        Returns
        -------
        ModelInputBundle
        """
        if predict is not None and predict.covariate_names != train.covariate_names:
            raise ValueError(
                f"Prediction covariates {predict.covariate_names} do not match "
                f"training covariates {train.covariate_names}"
            )

        mesh = self.build_mesh(train)
        spde = SPDEModel(mesh, self.config.prior)

        n_groups = train.n_times
        if predict is not None and predict.n_obs:
            n_groups = max(n_groups, predict.n_times)
        field_index = FieldIndex(n_vertices=mesh.n_vertices, n_groups=n_groups)

        blocks = [
            StackBlock(
                tag=self.EST_TAG,
                response=train.response.copy(),
                A=projection_matrix(mesh, train.coordinates, train.time_index, n_groups),
                X=design_matrix(train),
            )
        ]
        if predict is not None:
            blocks.append(
                StackBlock(
                    tag=self.PRED_TAG,
                    response=np.full(predict.n_obs, np.nan),
                    A=projection_matrix(mesh, predict.coordinates, predict.time_index, n_groups),
                    X=design_matrix(predict),
                )
            )

        stack = DataStack(blocks, fixed_names=["intercept", *train.covariate_names])
        logger.debug(
            f"Stack: {stack.n_rows} rows ({', '.join(f'{b.tag}={b.n_rows}' for b in blocks)}), "
            f"field size {field_index.size}"
        )
        return ModelInputBundle(
            mesh=mesh,
            spde=spde,
            field_index=field_index,
            stack=stack,
            config=self.config,
        )
