"""
pymetamv: multivariate and multilevel meta-analysis for Python.

Fits arm-based random-effects models with correlated random effects by
ML or REML, with Wald-type moderator tests and custom contrasts.

Submodules:
    meta: Model specification, fitting and inference
    core: Result envelope, exceptions, validation and timing
"""

__version__ = "0.1.0"

from pymetamv import core
from pymetamv import meta
from pymetamv.meta import (
    rma_mv,
    MetaModel,
    fit_batch,
    ModelSpec,
    FitControl,
    Continuous,
    Categorical,
    Interaction,
    RandomTerm,
)

__all__ = [
    "__version__",
    "core",
    "meta",
    "rma_mv",
    "MetaModel",
    "fit_batch",
    "ModelSpec",
    "FitControl",
    "Continuous",
    "Categorical",
    "Interaction",
    "RandomTerm",
]
