"""High-level GMM estimator built on top of :class:`MomentRestriction`."""

from __future__ import annotations

import logging
import pickle
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, cast

import cloudpickle
import numpy as np
import pandas as pd
from pymanopt import Problem
from pymanopt.function import numpy as pymanopt_numpy_function
from pymanopt.manifolds import Euclidean
from pymanopt.optimizers import TrustRegions
from pymanopt.optimizers.optimizer import Optimizer
from scipy import stats

from ..errors import (
    NonConvergenceError,
    SingularWeightingError,
    UnderidentifiedError,
)
from ..utils.numeric import checked_inverse, finite_difference_jacobian
from .inference import (
    OveridentificationTest,
    WaldTestResult,
    normal_critical_value,
    wald_test,
)
from .moment_restriction import MomentRestriction

_LOGGER = logging.getLogger(__name__)

METHODS = ("onestep", "twostep", "iterative", "cue")
WEIGHTING_SCHEMES = ("iid",)

DEFAULT_OPTIMIZER_OPTIONS: Mapping[str, Any] = {
    "max_iterations": 1000,
    "min_gradient_norm": 1e-8,
    "verbosity": 0,
}

# pymanopt stopping messages that signal an exhausted budget.
_BUDGET_MARKERS = ("max time", "max iterations", "max cost evals")


class WeightingStrategy(Protocol):
    """Protocol for objects returning a weighting matrix W(θ)."""

    def matrix(self, theta: Any) -> Any:
        """Return the m×m weighting matrix evaluated at ``theta``."""

    def info(self) -> Mapping[str, Any]:  # pragma: no cover - default impl used
        """Metadata describing the weighting strategy."""


class FixedWeighting:
    """Always return the same weighting matrix regardless of θ."""

    varies_with_theta = False

    def __init__(self, matrix: Any, *, label: str | None = None) -> None:
        array = np.asarray(matrix, dtype=float)
        if array.ndim != 2 or array.shape[0] != array.shape[1]:
            raise ValueError(f"Weighting matrix must be square; got {array.shape}")
        self._matrix = array
        self._label = label or "fixed"

    def matrix(self, theta: Any) -> np.ndarray:  # noqa: D401 - simple delegation
        return self._matrix

    def info(self) -> Mapping[str, Any]:
        return {"type": self._label}


class CallableWeighting:
    """Wrap a callable ``theta -> W`` as a :class:`WeightingStrategy`."""

    varies_with_theta = True

    def __init__(self, fn: Callable[[Any], Any], *, label: str | None = None) -> None:
        self._fn = fn
        self._label = label or "callable"

    def matrix(self, theta: Any) -> np.ndarray:  # noqa: D401 - simple delegation
        return np.asarray(self._fn(theta), dtype=float)

    def info(self) -> Mapping[str, Any]:
        return {"type": self._label}


class IdentityWeighting(FixedWeighting):
    """Identity matrix weighting used for the first step."""

    def __init__(self, dimension: int) -> None:
        super().__init__(np.eye(dimension, dtype=float), label="identity")


class CUEWeighting:
    """Continuously updated weighting ``S(θ)⁻¹``."""

    varies_with_theta = True

    def __init__(self, restriction: MomentRestriction, *, centered: bool = False):
        self._restriction = restriction
        self._centered = centered

    def matrix(self, theta: Any) -> np.ndarray:
        omega = self._restriction.omega_hat(theta, centered=self._centered)
        return checked_inverse(
            omega, error=SingularWeightingError, label="moment covariance S(θ)"
        )

    def info(self) -> Mapping[str, Any]:
        return {"type": "cue", "centered": self._centered}


@dataclass
class GMMResult:
    """Container returned by :meth:`GMM.estimate`.

    ``criterion_value`` is ``n · ḡ(θ̂)' W ḡ(θ̂)``; it is reported as the Hansen
    J statistic only when the model is over-identified and W is the efficient
    weighting S⁻¹, so never for ``method="onestep"``.
    """

    theta: np.ndarray
    covariance: np.ndarray
    criterion_value: float
    degrees_of_freedom: int
    num_observations: int
    weighting_matrix: np.ndarray
    weighting_info: Mapping[str, Any]
    optimizer_report: Mapping[str, Any]
    restriction: MomentRestriction
    g_bar: np.ndarray
    jacobian: np.ndarray
    method: str
    converged: bool
    parameter_labels: tuple[str, ...]
    options: Mapping[str, Any] = field(default_factory=dict)

    @property
    def params(self) -> pd.Series:
        return pd.Series(
            np.asarray(self.theta, dtype=float),
            index=list(self.parameter_labels),
            name="estimate",
        )

    @property
    def cov(self) -> pd.DataFrame:
        labels = list(self.parameter_labels)
        return pd.DataFrame(self.covariance, index=labels, columns=labels)

    @property
    def standard_errors(self) -> pd.Series:
        variances = np.clip(np.diag(np.asarray(self.covariance, dtype=float)), 0.0, None)
        return pd.Series(
            np.sqrt(variances), index=list(self.parameter_labels), name="std_error"
        )

    @property
    def j_statistic(self) -> float | None:
        if self.degrees_of_freedom <= 0 or self.method == "onestep":
            return None
        return self.criterion_value

    @property
    def j_test(self) -> OveridentificationTest | None:
        """Hansen J test; ``None`` for exactly identified or one-step fits."""

        statistic = self.j_statistic
        if statistic is None:
            return None
        return OveridentificationTest.from_statistic(
            statistic, self.degrees_of_freedom
        )

    def conf_int(self, alpha: float = 0.05) -> pd.DataFrame:
        """Normal-approximation intervals ``θ̂ ± z_{α/2} se``."""

        z = normal_critical_value(alpha)
        theta = np.asarray(self.theta, dtype=float)
        se = self.standard_errors.to_numpy()
        return pd.DataFrame(
            {"lower": theta - z * se, "upper": theta + z * se},
            index=list(self.parameter_labels),
        )

    def summary(self, alpha: float = 0.05) -> pd.DataFrame:
        """Coefficient table with standard errors, z statistics and intervals."""

        table = pd.concat([self.params, self.standard_errors], axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            table["z"] = table["estimate"] / table["std_error"]
        table["p_value"] = 2.0 * stats.norm.sf(np.abs(table["z"].to_numpy()))
        return table.join(self.conf_int(alpha))

    def wald_test(
        self, constraint: Callable[[np.ndarray], Any], *, q: int | None = None
    ) -> WaldTestResult:
        """Wald test of ``H0: constraint(θ) = 0``."""

        return wald_test(self, constraint, q=q)

    def as_dict(self) -> Mapping[str, Any]:
        """Return the result as a dictionary for quick inspection."""

        return {
            "theta": self.params.to_dict(),
            "standard_errors": self.standard_errors.to_dict(),
            "criterion_value": self.criterion_value,
            "j_statistic": self.j_statistic,
            "degrees_of_freedom": self.degrees_of_freedom,
            "num_observations": self.num_observations,
            "method": self.method,
            "converged": self.converged,
            "weighting": dict(self.weighting_info),
            "optimizer_report": dict(self.optimizer_report),
        }

    def to_pickle(self, path: str | Path) -> None:
        """Serialize the result; moment closures are handled by cloudpickle."""

        with Path(path).open("wb") as handle:
            cloudpickle.dump(self, handle, protocol=pickle.HIGHEST_PROTOCOL)

    @classmethod
    def from_pickle(cls, path: str | Path) -> GMMResult:
        with Path(path).open("rb") as handle:
            obj = pickle.load(handle)
        if not isinstance(obj, cls):
            raise TypeError("Deserialized object is not a GMMResult")
        return obj


class GMM:
    """
    Generalized method of moments estimator for a :class:`MomentRestriction`.

    Parameters
    ----------
    restriction:
        Moment restriction bound to its data.
    weighting:
        Scheme used to build the efficient weighting matrix from the moment
        covariance. Only ``"iid"`` is available: ``W = S⁻¹`` with
        ``S = (1/n) Σ g_i g_i'``.
    method:
        ``"twostep"`` (default) efficient two-step GMM, ``"onestep"`` (stop
        after the first step), ``"iterative"`` (update W until θ settles) or
        ``"cue"`` (continuously updated W(θ)).
    initial_weighting:
        First-step weighting ``W0``: a matrix, a callable ``theta -> W`` or a
        :class:`WeightingStrategy`. Defaults to the identity.
    centered:
        Centre the moments before forming ``S``.
    optimizer:
        pymanopt optimizer class or pre-configured instance. Defaults to
        :class:`pymanopt.optimizers.TrustRegions`.
    initial_point:
        Default starting value for :meth:`estimate`.
    """

    def __init__(
        self,
        restriction: MomentRestriction,
        *,
        weighting: str = "iid",
        method: str = "twostep",
        initial_weighting: WeightingStrategy | Callable[[Any], Any] | Any | None = None,
        centered: bool = False,
        optimizer: type[Optimizer] | Optimizer | None = None,
        initial_point: Any | None = None,
    ) -> None:
        scheme = str(weighting).lower()
        if scheme not in WEIGHTING_SCHEMES:
            raise ValueError(
                f"Unsupported weighting scheme {weighting!r}; "
                f"choose from {list(WEIGHTING_SCHEMES)}"
            )
        method_normalized = str(method).lower()
        if method_normalized not in METHODS:
            raise ValueError(
                f"Unknown method {method!r}; choose from {list(METHODS)}"
            )
        self._restriction = restriction
        self._weighting_scheme = scheme
        self._method = method_normalized
        self._initial_weighting = initial_weighting
        self._centered = centered
        self._optimizer = optimizer
        self._initial_point = initial_point

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    @property
    def moment_restriction(self) -> MomentRestriction:
        return self._restriction

    @property
    def method(self) -> str:
        return self._method

    @property
    def options(self) -> Mapping[str, Any]:
        """Constructor options, reused when the estimator is re-run on resamples."""

        return {
            "weighting": self._weighting_scheme,
            "method": self._method,
            "initial_weighting": self._initial_weighting,
            "centered": self._centered,
        }

    def g_bar(self, theta: Any) -> np.ndarray:
        return self._restriction.g_bar(theta)

    def gN(self, theta: Any) -> np.ndarray:
        return self._restriction.gN(theta)

    def omega_hat(self, theta: Any) -> np.ndarray:
        return self._restriction.omega_hat(theta, centered=self._centered)

    def criterion(self, theta: Any, weighting: Any | None = None) -> float:
        """Return ``n · ḡ(θ)' W ḡ(θ)`` under ``weighting`` (default ``W0``)."""

        point = np.asarray(theta, dtype=float).reshape(-1)
        if weighting is None:
            num_moments, _ = self._restriction.check_identification(point)
            strategy = self._first_step_weighting(num_moments, point)
        else:
            strategy = self._coerce_weighting(weighting)
        return self._restriction.num_observations * self._quadratic_form(
            point, strategy
        )

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------
    def estimate(
        self,
        *,
        initial_point: Any | None = None,
        verbose: bool = False,
        optimizer_kwargs: Mapping[str, Any] | None = None,
        raise_on_nonconvergence: bool = True,
        max_weighting_iterations: int = 100,
        weighting_tol: float = 1e-8,
    ) -> GMMResult:
        """
        Estimate θ and its asymptotic covariance.

        Parameters
        ----------
        initial_point:
            Starting value ``θ0`` (falls back to the constructor's value).
        verbose:
            Forwarded to the optimizer as ``verbosity`` (2 when true).
        optimizer_kwargs:
            Extra keyword arguments for the optimizer constructor; they
            override :data:`DEFAULT_OPTIMIZER_OPTIONS`.
        raise_on_nonconvergence:
            When ``False`` a non-converged fit is returned with
            ``converged=False`` instead of raising.
        max_weighting_iterations, weighting_tol:
            Budget and tolerance of the ``"iterative"`` method.

        Raises
        ------
        UnderidentifiedError
            Fewer moments than parameters (checked before optimizing), or a
            rank-deficient ``D' W D`` at the estimate.
        InvalidMomentOutputError
            The moment function produced non-finite or malformed output.
        SingularWeightingError
            The moment covariance could not be inverted.
        NonConvergenceError
            A stage exhausted its budget and ``raise_on_nonconvergence`` is set.
        """

        theta_start = (
            initial_point if initial_point is not None else self._initial_point
        )
        if theta_start is None:
            raise ValueError("Provide an initial_point to start the optimisation.")
        theta_start = np.asarray(theta_start, dtype=float).reshape(-1)

        restriction = self._restriction
        num_moments, num_parameters = restriction.check_identification(theta_start)
        options = self._optimizer_options(optimizer_kwargs, verbose)
        raise_flag = raise_on_nonconvergence

        weighting = self._first_step_weighting(num_moments, theta_start)
        stage = self._run_stage(theta_start, weighting, options, "step 1", raise_flag)
        stages = [stage]
        weighting_converged = True

        if self._method == "twostep":
            weighting = self._efficient_weighting(stage.theta)
            stage = self._run_stage(stage.theta, weighting, options, "step 2", raise_flag)
            stages.append(stage)
        elif self._method == "iterative":
            weighting_converged = False
            for iteration in range(1, max_weighting_iterations + 1):
                previous = stage.theta
                weighting = self._efficient_weighting(previous)
                stage = self._run_stage(
                    previous, weighting, options, f"iteration {iteration}", raise_flag
                )
                stages.append(stage)
                change = float(np.max(np.abs(stage.theta - previous)))
                if change <= weighting_tol * (1.0 + float(np.max(np.abs(stage.theta)))):
                    weighting_converged = True
                    break
            if not weighting_converged:
                message = (
                    "Iterated weighting did not settle within "
                    f"{max_weighting_iterations} updates"
                )
                if raise_flag:
                    raise NonConvergenceError(message, report=stage.optimizer_report)
                _LOGGER.warning(message)
        elif self._method == "cue":
            weighting = CUEWeighting(restriction, centered=self._centered)
            stage = self._run_stage(stage.theta, weighting, options, "cue", raise_flag)
            stages.append(stage)

        theta_hat = stage.theta
        W = np.asarray(weighting.matrix(theta_hat), dtype=float)
        g_bar_hat = restriction.g_bar(theta_hat)
        jac = restriction.jacobian(theta_hat)
        covariance = self._covariance(theta_hat, jac, W)
        n = restriction.num_observations

        weighting_info = dict(weighting.info())
        weighting_info.update(
            scheme=self._weighting_scheme, method=self._method, centered=self._centered
        )
        optimizer_report = dict(stage.optimizer_report)
        optimizer_report["stages"] = [dict(s.optimizer_report) for s in stages]

        labels = restriction.parameter_labels or tuple(
            f"theta[{i}]" for i in range(num_parameters)
        )

        return GMMResult(
            theta=theta_hat,
            covariance=covariance,
            criterion_value=float(n * (g_bar_hat @ W @ g_bar_hat)),
            degrees_of_freedom=num_moments - num_parameters,
            num_observations=n,
            weighting_matrix=W,
            weighting_info=weighting_info,
            optimizer_report=optimizer_report,
            restriction=restriction,
            g_bar=g_bar_hat,
            jacobian=jac,
            method=self._method,
            converged=weighting_converged and all(s.converged for s in stages),
            parameter_labels=tuple(labels),
            options=self.options,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _coerce_weighting(
        self, weighting: WeightingStrategy | Callable[[Any], Any] | Any
    ) -> WeightingStrategy:
        if hasattr(weighting, "matrix") and callable(weighting.matrix):
            return cast(WeightingStrategy, weighting)
        if callable(weighting):
            return CallableWeighting(weighting)
        return FixedWeighting(weighting)

    def _first_step_weighting(
        self, num_moments: int, theta: np.ndarray
    ) -> WeightingStrategy:
        if self._initial_weighting is None:
            return IdentityWeighting(num_moments)
        strategy = self._coerce_weighting(self._initial_weighting)
        shape = np.shape(strategy.matrix(theta))
        if shape != (num_moments, num_moments):
            raise ValueError(
                f"initial_weighting has shape {shape}; "
                f"expected ({num_moments}, {num_moments})"
            )
        return strategy

    def _efficient_weighting(self, theta: np.ndarray) -> FixedWeighting:
        omega = self._restriction.omega_hat(theta, centered=self._centered)
        inverse = checked_inverse(
            omega, error=SingularWeightingError, label="moment covariance S"
        )
        return FixedWeighting(inverse, label=self._weighting_scheme)

    def _covariance(
        self, theta: np.ndarray, jac: np.ndarray, W: np.ndarray
    ) -> np.ndarray:
        n = self._restriction.num_observations
        bread = jac.T @ W @ jac
        bread_inv = checked_inverse(
            bread,
            error=UnderidentifiedError,
            label="D'WD (Jacobian of the averaged moments)",
        )
        if self._method != "onestep":
            return bread_inv / n
        omega = self._restriction.omega_hat(theta, centered=self._centered)
        middle = jac.T @ W @ omega @ W @ jac
        covariance = bread_inv @ middle @ bread_inv / n
        return 0.5 * (covariance + covariance.T)

    def _optimizer_options(
        self, optimizer_kwargs: Mapping[str, Any] | None, verbose: bool
    ) -> dict[str, Any]:
        options = dict(DEFAULT_OPTIMIZER_OPTIONS)
        options["verbosity"] = 2 if verbose else 0
        options.update(optimizer_kwargs or {})
        return options

    def _resolve_optimizer(self, options: Mapping[str, Any]) -> Optimizer:
        base = self._optimizer
        if base is None:
            return TrustRegions(**options)
        if isinstance(base, Optimizer):
            base.verbosity = options.get("verbosity", base.verbosity)
            return base
        return base(**options)

    def _quadratic_form(self, theta: np.ndarray, weighting: WeightingStrategy) -> float:
        g_vec = self._restriction.g_bar(theta)
        W = np.asarray(weighting.matrix(theta), dtype=float)
        return float(g_vec @ W @ g_vec)

    def _cost_scale(self, theta: np.ndarray, weighting: WeightingStrategy) -> float:
        """
        Return ``tr(W S) / m`` at the stage seed.

        Dividing the stage objective by it makes the stopping tolerances
        invariant to rescaling the moments; it equals 1 when ``W = S⁻¹``.
        """

        W = np.asarray(weighting.matrix(theta), dtype=float)
        omega = self._restriction.omega_hat(theta)
        scale = float(np.trace(W @ omega)) / omega.shape[0]
        if not np.isfinite(scale) or scale <= 0.0:
            return 1.0
        return scale

    def _run_stage(
        self,
        initial_point: np.ndarray,
        weighting: WeightingStrategy,
        options: Mapping[str, Any],
        label: str,
        raise_on_nonconvergence: bool,
    ) -> _StageResult:
        restriction = self._restriction
        manifold = Euclidean(int(initial_point.size))
        varies = bool(getattr(weighting, "varies_with_theta", False))
        scale = self._cost_scale(initial_point, weighting)

        def objective(point: np.ndarray) -> float:
            return (
                self._quadratic_form(np.asarray(point, dtype=float), weighting)
                / scale
            )

        @pymanopt_numpy_function(manifold)
        def cost(point: np.ndarray) -> float:
            return objective(point)

        @pymanopt_numpy_function(manifold)
        def euclidean_gradient(point: np.ndarray) -> np.ndarray:
            if varies:
                return finite_difference_jacobian(objective, point).reshape(-1)
            g_vec = restriction.g_bar(point)
            jac = restriction.jacobian(point)
            W = np.asarray(weighting.matrix(point), dtype=float)
            return 2.0 * jac.T @ (W @ g_vec) / scale

        @pymanopt_numpy_function(manifold)
        def euclidean_hessian(point: np.ndarray, tangent_vector: np.ndarray) -> np.ndarray:
            # Gauss-Newton: drops second derivatives of the moments.
            jac = restriction.jacobian(point)
            W = np.asarray(weighting.matrix(point), dtype=float)
            tangent = np.asarray(tangent_vector, dtype=float)
            return 2.0 * jac.T @ (W @ (jac @ tangent)) / scale

        problem = Problem(
            manifold,
            cost,
            euclidean_gradient=euclidean_gradient,
            euclidean_hessian=euclidean_hessian,
        )
        optimizer = self._resolve_optimizer(options)
        result = optimizer.run(problem, initial_point=initial_point)
        theta_hat = np.asarray(result.point, dtype=float).reshape(-1)

        stopping_reason = getattr(result, "stopping_criterion", None)
        if stopping_reason is None:
            stopping_reason = getattr(result, "stopping_reason", None)
        converged = _optimizer_converged(result, stopping_reason)
        optimizer_report = {
            "stage": label,
            "iterations": getattr(result, "iterations", None),
            "converged": converged,
            "stopping_reason": stopping_reason,
            "cost": getattr(result, "cost", None),
            "cost_scale": scale,
            "gradient_norm": getattr(result, "gradient_norm", None),
        }
        _LOGGER.debug(
            "GMM %s finished after %s iterations: %s",
            label,
            optimizer_report["iterations"],
            stopping_reason,
        )

        if not converged:
            message = f"GMM {label} did not converge: {stopping_reason}"
            if raise_on_nonconvergence:
                raise NonConvergenceError(message, report=optimizer_report)
            _LOGGER.warning(message)

        return _StageResult(
            theta=theta_hat,
            weighting=weighting,
            optimizer_report=optimizer_report,
            converged=converged,
        )


def _optimizer_converged(result: Any, stopping_reason: Any) -> bool:
    flag = getattr(result, "converged", None)
    if flag is not None:
        return bool(flag)
    if stopping_reason is None:
        return True
    reason = str(stopping_reason).lower()
    return not any(marker in reason for marker in _BUDGET_MARKERS)


@dataclass
class _StageResult:
    theta: np.ndarray
    weighting: WeightingStrategy
    optimizer_report: Mapping[str, Any]
    converged: bool


def estimate(
    moment_fn: Callable[[Any, Any], Any],
    data: Any,
    theta0: Any,
    weighting: str = "iid",
    *,
    method: str = "twostep",
    jacobian: Callable[[Any, Any], Any] | None = None,
    backend: str = "numpy",
    parameter_labels: Any | None = None,
    moment_labels: Any | None = None,
    initial_weighting: Any | None = None,
    centered: bool = False,
    optimizer: type[Optimizer] | Optimizer | None = None,
    **estimate_kwargs: Any,
) -> GMMResult:
    """
    Estimate ``θ`` from the moment conditions ``E[g(θ, data)] = 0``.

    Parameters
    ----------
    moment_fn:
        ``g(theta, data) -> (n, m)`` per-observation moment matrix.
    data:
        Non-empty observation set passed to ``moment_fn``.
    theta0:
        Starting value of length ``k``.
    weighting:
        Weighting scheme; ``"iid"`` uses the inverse of the empirical second
        moment matrix of the moment rows.

    Remaining keyword arguments configure :class:`MomentRestriction`,
    :class:`GMM` and :meth:`GMM.estimate`.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> x = rng.normal(size=200)
    >>> data = np.column_stack([x, 1.0 + 2.0 * x + rng.normal(size=200)])
    >>> def g(theta, d):
    ...     resid = d[:, 1] - theta[0] - theta[1] * d[:, 0]
    ...     return np.column_stack([resid, resid * d[:, 0]])
    >>> result = estimate(g, data, [0.0, 0.0])
    >>> result.degrees_of_freedom
    0
    """

    restriction = MomentRestriction(
        moment_fn,
        data=data,
        jacobian=jacobian,
        backend=backend,
        parameter_labels=parameter_labels,
        moment_labels=moment_labels,
    )
    estimator = GMM(
        restriction,
        weighting=weighting,
        method=method,
        initial_weighting=initial_weighting,
        centered=centered,
        optimizer=optimizer,
    )
    return estimator.estimate(initial_point=theta0, **estimate_kwargs)


__all__ = [
    "CUEWeighting",
    "CallableWeighting",
    "DEFAULT_OPTIMIZER_OPTIONS",
    "FixedWeighting",
    "GMM",
    "GMMResult",
    "IdentityWeighting",
    "METHODS",
    "WeightingStrategy",
    "estimate",
]
