"""
Multilevel meta-analysis: multivariate random-effects models fitted to
arm-based effect sizes with known sampling variances.

Public API:
    rma_mv()         — fit a model (ML or REML)
    MetaModel        — the same fit with an explicit lifecycle
    fit_batch()      — fit independent models in parallel threads
    ModelSpec        — fixed terms, random terms and method
    Continuous, Categorical, Interaction — fixed-effect terms
    RandomTerm       — one random-effect grouping with its structure
    FitControl       — optimizer configuration
    MetaSolution     — result wrapper
"""

from pymetamv.meta._common import FitControl, FitState, ModelSpec, MetaParams, VarCompSummary
from pymetamv.meta._terms import Continuous, Categorical, Interaction, build_model_matrix
from pymetamv.meta._random_effects import RandomTerm
from pymetamv.meta._covariance import (
    CovarianceStructure, Unstructured, Diagonal, CompoundSymmetry, make_structure,
)
from pymetamv.meta._optimizers import OptimizerBackend, OPTIMIZERS
from pymetamv.meta._inference import ContrastResult, WaldTest
from pymetamv.meta.design import MetaDesign
from pymetamv.meta.solvers import rma_mv, MetaModel
from pymetamv.meta.solution import MetaSolution
from pymetamv.meta._batch import FitJob, BatchOutcome, fit_batch

__all__ = [
    "rma_mv",
    "MetaModel",
    "fit_batch",
    "FitJob",
    "BatchOutcome",
    "ModelSpec",
    "FitControl",
    "FitState",
    "Continuous",
    "Categorical",
    "Interaction",
    "RandomTerm",
    "CovarianceStructure",
    "Unstructured",
    "Diagonal",
    "CompoundSymmetry",
    "make_structure",
    "OptimizerBackend",
    "OPTIMIZERS",
    "build_model_matrix",
    "MetaDesign",
    "MetaParams",
    "VarCompSummary",
    "MetaSolution",
    "ContrastResult",
    "WaldTest",
]
