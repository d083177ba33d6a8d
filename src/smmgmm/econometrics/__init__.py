"""Econometrics layer primitives."""

from .bootstrap import GMMBootstrap
from .gmm import GMM, GMMResult, estimate
from .inference import delta_method, wald_test
from .moment_restriction import MomentRestriction
from .simulation import coverage_rate, monte_carlo

__all__ = [
    "GMM",
    "GMMBootstrap",
    "GMMResult",
    "MomentRestriction",
    "coverage_rate",
    "delta_method",
    "estimate",
    "monte_carlo",
    "wald_test",
]
