"""Error taxonomy raised by the estimation layer."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class GMMError(Exception):
    """Base class for estimation failures."""


class UnderidentifiedError(GMMError, ValueError):
    """Fewer moment conditions than parameters, or a rank-deficient Jacobian."""


class SingularWeightingError(GMMError, ArithmeticError):
    """The moment covariance ``S`` cannot be inverted."""


class InvalidMomentOutputError(GMMError, ValueError):
    """The moment function returned non-finite or malformed output."""


class NonConvergenceError(GMMError, RuntimeError):
    """The optimizer stopped on a budget before meeting its tolerance."""

    def __init__(self, message: str, *, report: Mapping[str, Any] | None = None):
        super().__init__(message)
        self.report = dict(report or {})


__all__ = [
    "GMMError",
    "UnderidentifiedError",
    "SingularWeightingError",
    "InvalidMomentOutputError",
    "NonConvergenceError",
]
