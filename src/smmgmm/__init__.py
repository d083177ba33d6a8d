"""
smmgmm: Generalized Method of Moments estimation of structural mean models.

The package provides a generic moment-based estimator, asymptotic and
bootstrap inference built on it, and moment restrictions for instrumental
variable structural mean models.
"""

from .econometrics import (
    GMM,
    GMMBootstrap,
    GMMResult,
    MomentRestriction,
    coverage_rate,
    delta_method,
    estimate,
    monte_carlo,
    wald_test,
)
from .errors import (
    GMMError,
    InvalidMomentOutputError,
    NonConvergenceError,
    SingularWeightingError,
    UnderidentifiedError,
)

__all__ = [
    "GMM",
    "GMMBootstrap",
    "GMMError",
    "GMMResult",
    "InvalidMomentOutputError",
    "MomentRestriction",
    "NonConvergenceError",
    "SingularWeightingError",
    "UnderidentifiedError",
    "coverage_rate",
    "delta_method",
    "estimate",
    "monte_carlo",
    "wald_test",
]
