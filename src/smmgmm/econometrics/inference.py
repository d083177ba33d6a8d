"""Asymptotic inference helpers for fitted GMM results.

The delta method and Wald test below are thin callers of a completed
:class:`~smmgmm.econometrics.gmm.GMMResult`: they reuse its point estimate and
covariance and differentiate user transformations numerically.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import stats

from ..utils.numeric import checked_inverse, finite_difference_jacobian

if TYPE_CHECKING:  # pragma: no cover - typing assistance
    from .gmm import GMMResult


def normal_critical_value(alpha: float = 0.05) -> float:
    """Two-sided standard normal critical value ``z_{α/2}``."""

    if not 0.0 < alpha < 1.0:
        raise ValueError("alpha must lie strictly between 0 and 1")
    return float(stats.norm.ppf(1.0 - 0.5 * alpha))


@dataclass(frozen=True)
class OveridentificationTest:
    """Hansen J test of the over-identifying restrictions."""

    statistic: float
    degrees_of_freedom: int
    p_value: float

    @classmethod
    def from_statistic(
        cls, statistic: float, degrees_of_freedom: int
    ) -> OveridentificationTest:
        return cls(
            statistic=float(statistic),
            degrees_of_freedom=int(degrees_of_freedom),
            p_value=float(stats.chi2.sf(statistic, degrees_of_freedom)),
        )

    def rejects(self, alpha: float = 0.05) -> bool:
        return self.p_value < alpha


@dataclass(frozen=True)
class WaldTestResult:
    """Wald statistic for ``H0: h(θ) = 0``."""

    statistic: float
    degrees_of_freedom: int
    p_value: float

    def rejects(self, alpha: float = 0.05) -> bool:
        return self.p_value < alpha


@dataclass(frozen=True)
class DeltaMethodResult:
    """
    Point estimate and covariance of a smooth transformation ``f(θ̂)``.

    Attributes
    ----------
    estimate:
        ``f(θ̂)`` labelled by output coordinate.
    covariance:
        ``G V G'`` where ``G`` is the Jacobian of ``f`` at ``θ̂`` and ``V`` the
        covariance of ``θ̂``.
    alpha:
        Default significance level for :meth:`conf_int`.
    """

    estimate: pd.Series
    covariance: pd.DataFrame
    alpha: float = 0.05

    @property
    def standard_errors(self) -> pd.Series:
        variances = np.clip(np.diag(self.covariance.to_numpy(dtype=float)), 0.0, None)
        return pd.Series(
            np.sqrt(variances), index=self.estimate.index, name="std_error"
        )

    def conf_int(self, alpha: float | None = None) -> pd.DataFrame:
        z = normal_critical_value(self.alpha if alpha is None else alpha)
        se = self.standard_errors.to_numpy()
        values = self.estimate.to_numpy(dtype=float)
        return pd.DataFrame(
            {"lower": values - z * se, "upper": values + z * se},
            index=self.estimate.index,
        )


def _transform_labels(labels: Sequence[str] | None, size: int) -> list[str]:
    if labels is None:
        return [f"f[{i}]" for i in range(size)]
    resolved = [str(label) for label in labels]
    if len(resolved) != size:
        raise ValueError(
            f"Expected {size} labels for the transformation; got {len(resolved)}"
        )
    return resolved


def delta_method(
    result: GMMResult,
    transform: Callable[[np.ndarray], Any],
    *,
    labels: Sequence[str] | None = None,
    alpha: float = 0.05,
) -> DeltaMethodResult:
    """
    Delta-method inference for ``transform(θ̂)``.

    Parameters
    ----------
    result:
        Completed estimation result.
    transform:
        Smooth map from the parameter vector to ``ℝ^q``, e.g.
        ``lambda theta: np.exp(theta[1])`` for the causal risk ratio of a
        multiplicative structural mean model.
    labels:
        Optional names for the ``q`` outputs.
    alpha:
        Default significance level carried by the returned object.
    """

    theta = np.asarray(result.theta, dtype=float)
    value = np.asarray(transform(theta), dtype=float).reshape(-1)
    gradient = finite_difference_jacobian(transform, theta)
    covariance = gradient @ np.asarray(result.covariance, dtype=float) @ gradient.T
    index = _transform_labels(labels, value.size)
    return DeltaMethodResult(
        estimate=pd.Series(value, index=index, name="estimate"),
        covariance=pd.DataFrame(covariance, index=index, columns=index),
        alpha=alpha,
    )


def wald_test(
    result: GMMResult,
    constraint: Callable[[np.ndarray], Any],
    *,
    q: int | None = None,
) -> WaldTestResult:
    """
    Wald test of ``H0: constraint(θ) = 0``.

    The statistic ``h' (H V H')^{-1} h`` is compared with a chi-squared
    distribution with ``q`` degrees of freedom (default: the number of
    restrictions returned by ``constraint``).
    """

    theta = np.asarray(result.theta, dtype=float)
    h = np.asarray(constraint(theta), dtype=float).reshape(-1)
    jac = finite_difference_jacobian(constraint, theta)
    middle = jac @ np.asarray(result.covariance, dtype=float) @ jac.T
    middle_inv = checked_inverse(
        middle, error=ValueError, label="covariance of the constraints"
    )
    statistic = float(h @ middle_inv @ h)
    dof = h.size if q is None else int(q)
    return WaldTestResult(
        statistic=statistic,
        degrees_of_freedom=dof,
        p_value=float(stats.chi2.sf(statistic, dof)),
    )


__all__ = [
    "DeltaMethodResult",
    "OveridentificationTest",
    "WaldTestResult",
    "delta_method",
    "normal_critical_value",
    "wald_test",
]
