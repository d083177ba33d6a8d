from __future__ import annotations

import copy
from collections.abc import Callable, Sequence
from typing import Any

import numpy as np
import pandas as pd

from ..autodiff import jax_backend
from ..errors import InvalidMomentOutputError, UnderidentifiedError
from ..utils.numeric import finite_difference_jacobian

MomentMap = Callable[[Any, Any], Any]
JacobianMap = Callable[[Any, Any], Any]


def _observation_count(data: Any) -> int:
    if isinstance(data, pd.DataFrame | pd.Series):
        return int(data.shape[0])
    shape = getattr(data, "shape", None)
    if shape is not None:
        if len(shape) == 0:
            raise ValueError("data must be indexed by observation; got a scalar")
        return int(shape[0])
    try:
        return len(data)
    except TypeError as exc:
        raise ValueError(
            "Cannot infer the number of observations from data of type "
            f"{type(data).__name__!r}"
        ) from exc


def _flatten_labels(labels: Any) -> tuple[str, ...]:
    if isinstance(labels, str):
        return (labels,)
    if isinstance(labels, pd.Index):
        return tuple(str(label) for label in labels)
    if isinstance(labels, Sequence):
        return tuple(str(label) for label in labels)
    return (str(labels),)


class MomentRestriction:
    """
    Moment restriction ``E[g_i(θ)] = 0`` bound to a dataset.

    Parameters
    ----------
    g:
        Vectorized moment function ``g(theta, data)`` returning an ``(n, m)``
        array-like with one row per observation and one column per moment
        condition. A one-dimensional return is read as a single moment.
    gi_jax:
        Observation-level JAX-compatible moment function ``g_i(theta, row)``.
        It is vectorized across the rows of ``data`` with :func:`jax.vmap`.
        Requires ``backend='jax'``.
    data:
        Non-empty observation set forwarded unchanged as the second argument
        of ``g`` (a :class:`pandas.DataFrame`, an array, or anything the
        moment function understands). With ``gi_jax`` the data are converted
        to a float JAX array first.
    jacobian:
        Optional analytic Jacobian ``jacobian(theta, data)`` returning the
        ``(m, k)`` derivative of the averaged moments. When omitted the
        Jacobian comes from JAX (``backend='jax'``) or central finite
        differences.
    backend:
        ``"numpy"`` (default) or ``"jax"``. Selecting ``"jax"`` switches JAX
        to double precision (``jax_enable_x64``) for the whole process.
    parameter_labels, moment_labels:
        Optional names for the parameter coordinates and moment columns. When
        ``g`` returns a :class:`pandas.DataFrame` its columns are used as
        moment labels.
    weights:
        Optional non-negative observation weights; see :meth:`with_weights`.
    """

    def __init__(
        self,
        g: MomentMap | None = None,
        *,
        gi_jax: Callable[[Any, Any], Any] | None = None,
        data: Any,
        jacobian: JacobianMap | None = None,
        backend: str = "numpy",
        parameter_labels: Any | None = None,
        moment_labels: Any | None = None,
        weights: Any | None = None,
    ):
        if data is None:
            raise ValueError("MomentRestriction requires a dataset")
        num_observations = _observation_count(data)
        if num_observations == 0:
            raise ValueError("data must contain at least one observation")

        backend_normalized = backend.lower()
        if backend_normalized not in {"numpy", "jax"}:
            raise ValueError("backend must be 'numpy' or 'jax'")
        if g is not None and gi_jax is not None:
            raise ValueError("Provide either 'g' or 'gi_jax', not both")
        if g is None and gi_jax is None:
            raise ValueError("Supply either 'g' (vectorized) or 'gi_jax'")
        if gi_jax is not None and backend_normalized != "jax":
            raise ValueError("gi_jax requires backend='jax'")

        self._data = data
        self._backend_kind = backend_normalized
        self._num_observations = num_observations
        self._jacobian_map = jacobian

        if backend_normalized == "jax":
            jax_backend.enable_x64()

        if gi_jax is not None:
            self._backend_data = jax_backend.as_jax_array(data)
            self._moment_map: MomentMap = jax_backend.vectorize_observation_moments(
                gi_jax
            )
        else:
            self._backend_data = data
            self._moment_map = g  # type: ignore[assignment]

        self._parameter_labels = (
            None if parameter_labels is None else _flatten_labels(parameter_labels)
        )
        self._moment_labels = (
            None if moment_labels is None else _flatten_labels(moment_labels)
        )
        self._weights = (
            None if weights is None else self._validate_weights(weights)
        )
        self._num_moments: int | None = None
        self._parameter_dimension: int | None = (
            None if self._parameter_labels is None else len(self._parameter_labels)
        )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------
    @property
    def data(self) -> Any:
        """Dataset used by the moment restriction."""

        return self._data

    @property
    def backend(self) -> str:
        return self._backend_kind

    @property
    def num_observations(self) -> int:
        return self._num_observations

    @property
    def num_moments(self) -> int | None:
        """Number of stacked moments ``m`` once the map has been evaluated."""

        return self._num_moments

    @property
    def parameter_dimension(self) -> int | None:
        return self._parameter_dimension

    @property
    def parameter_labels(self) -> tuple[str, ...] | None:
        return self._parameter_labels

    @property
    def moment_labels(self) -> tuple[str, ...] | None:
        return self._moment_labels

    @property
    def weights(self) -> np.ndarray | None:
        """Observation weights, or ``None`` for the unweighted sample."""

        return None if self._weights is None else self._weights.copy()

    @property
    def has_analytic_jacobian(self) -> bool:
        return self._jacobian_map is not None

    # ------------------------------------------------------------------
    # Moment evaluations
    # ------------------------------------------------------------------
    def gi(self, theta: Any) -> np.ndarray:
        """Observation-level moments ``g_i(θ)`` as a validated ``(n, m)`` array."""

        argument = self._prepare_argument(theta)
        moments = self._moment_map(argument, self._backend_data)
        array = self._validate_moments(moments)
        self._update_metadata(argument, array, moments)
        return array

    def g_bar(self, theta: Any) -> np.ndarray:
        """Sample average ``\\bar g_N(θ)`` (shape ``(m,)``)."""

        return self._mean(self.gi(theta))

    def gN(self, theta: Any) -> np.ndarray:
        """Alias for :meth:`g_bar` preserving classical notation."""

        return self.g_bar(theta)

    def omega_hat(self, theta: Any, *, centered: bool = False) -> np.ndarray:
        """
        Moment covariance ``S(θ) = (1/n) Σ g_i g_i'`` (shape ``(m, m)``).

        Parameters
        ----------
        theta:
            Evaluation point.
        centered:
            When ``True`` subtract ``\\bar g_N(θ)`` before forming the outer
            products. The default uses the uncentered second moments, which is
            the ``iid`` efficient-weighting estimate.
        """

        moments = self.gi(theta)
        if centered:
            moments = moments - self._mean(moments)[np.newaxis, :]
        if self._weights is None:
            weighted = moments
        else:
            weighted = moments * self._weights[:, np.newaxis]
        omega = weighted.T @ moments / self._num_observations
        return 0.5 * (omega + omega.T)

    def Omega_hat(self, theta: Any, *, centered: bool = False) -> np.ndarray:
        """Alias retaining the Ω̂ notation."""

        return self.omega_hat(theta, centered=centered)

    def jacobian(self, theta: Any) -> np.ndarray:
        """
        Jacobian ``D = ∂\\bar g_N(θ)/∂θ'`` as an ``(m, k)`` matrix.

        The analytic ``jacobian`` callable is used when supplied; otherwise JAX
        forward-mode differentiation (``backend='jax'``) or central finite
        differences of :meth:`g_bar`.
        """

        point = np.asarray(theta, dtype=float).reshape(-1)
        if self._jacobian_map is not None:
            matrix = self._jacobian_map(self._prepare_argument(point), self._data)
            return self._validate_jacobian(matrix, point.size)

        if self._is_jax_backend:
            weights = (
                None
                if self._weights is None
                else jax_backend.as_jax_array(self._weights)
            )
            moment_map = self._moment_map
            data = self._backend_data
            n = self._num_observations

            def average(parameter: Any) -> Any:
                rows = moment_map(parameter, data)
                if rows.ndim == 1:
                    rows = rows.reshape((-1, 1))
                if weights is not None:
                    rows = rows * weights[:, None]
                return rows.sum(axis=0) / n

            matrix = jax_backend.dense_jacobian(average, point)
            return self._validate_jacobian(matrix, point.size)

        matrix = finite_difference_jacobian(self.g_bar, point)
        return self._validate_jacobian(matrix, point.size)

    def check_identification(self, theta: Any) -> tuple[int, int]:
        """
        Return ``(m, k)`` at ``theta`` after checking the order condition.

        Raises
        ------
        UnderidentifiedError
            If there are fewer moment conditions than parameters.
        """

        point = np.asarray(theta, dtype=float).reshape(-1)
        num_moments = self.gi(point).shape[1]
        num_parameters = point.size
        if num_parameters == 0:
            raise ValueError("theta must contain at least one parameter")
        if num_moments < num_parameters:
            raise UnderidentifiedError(
                f"{num_moments} moment condition(s) cannot identify "
                f"{num_parameters} parameter(s)"
            )
        return num_moments, num_parameters

    def with_weights(self, weights: Any) -> MomentRestriction:
        """
        Return a shallow copy whose averages use observation ``weights``.

        The weighted mean is ``(1/n) Σ w_i g_i(θ)`` and the moment covariance
        ``(1/n) Σ w_i g_i g_i'``; integer resampling counts reproduce a
        nonparametric bootstrap sample without copying the data. An analytic
        Jacobian describes the unweighted average, so the copy differentiates
        numerically instead.
        """

        clone = copy.copy(self)
        clone._weights = self._validate_weights(weights)
        clone._jacobian_map = None
        return clone

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @property
    def _is_jax_backend(self) -> bool:
        return self._backend_kind == "jax"

    def _prepare_argument(self, theta: Any) -> Any:
        point = np.asarray(theta, dtype=float).reshape(-1)
        if self._is_jax_backend:
            return jax_backend.as_jax_array(point)
        return point

    def _mean(self, moments: np.ndarray) -> np.ndarray:
        if self._weights is None:
            return moments.mean(axis=0)
        return (moments * self._weights[:, np.newaxis]).sum(
            axis=0
        ) / self._num_observations

    def _validate_weights(self, weights: Any) -> np.ndarray:
        array = np.asarray(weights, dtype=float).reshape(-1)
        if array.size != self._num_observations:
            raise ValueError(
                f"Expected {self._num_observations} weights; got {array.size}"
            )
        if not np.all(np.isfinite(array)) or np.any(array < 0.0):
            raise ValueError("weights must be finite and non-negative")
        return array

    def _validate_moments(self, moments: Any) -> np.ndarray:
        try:
            if isinstance(moments, pd.DataFrame | pd.Series):
                array = moments.to_numpy(dtype=float)
            else:
                array = np.asarray(moments, dtype=float)
        except (TypeError, ValueError) as exc:
            raise InvalidMomentOutputError(
                f"Moment function returned non-numeric output: {exc}"
            ) from exc

        if array.ndim == 0:
            raise InvalidMomentOutputError(
                "Moment function returned a scalar; expected one row per observation"
            )
        if array.ndim == 1:
            array = array[:, np.newaxis]
        elif array.ndim > 2:
            raise InvalidMomentOutputError(
                f"Moment function returned an array of shape {array.shape}; "
                "expected (observations, moments)"
            )

        rows, columns = array.shape
        if rows != self._num_observations:
            raise InvalidMomentOutputError(
                f"Moment function returned {rows} rows for "
                f"{self._num_observations} observations"
            )
        if columns == 0:
            raise InvalidMomentOutputError("Moment function returned no moments")

        bad_rows = ~np.isfinite(array).all(axis=1)
        if bad_rows.any():
            first = int(np.flatnonzero(bad_rows)[0])
            raise InvalidMomentOutputError(
                "Moment function returned non-finite values for "
                f"{int(bad_rows.sum())} of {rows} observations (first at row {first})"
            )
        return array

    def _validate_jacobian(self, matrix: Any, num_parameters: int) -> np.ndarray:
        array = np.asarray(matrix, dtype=float)
        if array.ndim == 1:
            array = array.reshape(-1, num_parameters)
        if array.ndim != 2 or array.shape[1] != num_parameters:
            raise InvalidMomentOutputError(
                f"Jacobian has shape {array.shape}; expected (m, {num_parameters})"
            )
        if self._num_moments is not None and array.shape[0] != self._num_moments:
            raise InvalidMomentOutputError(
                f"Jacobian has {array.shape[0]} rows for {self._num_moments} moments"
            )
        if not np.all(np.isfinite(array)):
            raise InvalidMomentOutputError("Jacobian contains non-finite entries")
        return array

    def _update_metadata(self, argument: Any, array: np.ndarray, raw: Any) -> None:
        num_moments = int(array.shape[1])
        if self._num_moments is None:
            self._num_moments = num_moments
        elif self._num_moments != num_moments:
            raise InvalidMomentOutputError(
                f"Moment function returned {num_moments} moments; "
                f"previously {self._num_moments}"
            )

        if self._moment_labels is None and isinstance(raw, pd.DataFrame):
            self._moment_labels = _flatten_labels(raw.columns)
        if (
            self._moment_labels is not None
            and len(self._moment_labels) != num_moments
        ):
            raise ValueError(
                "moment_labels length does not match the number of moments "
                f"({len(self._moment_labels)} vs {num_moments})"
            )

        parameter_dimension = int(np.asarray(argument).size)
        if self._parameter_dimension is None:
            self._parameter_dimension = parameter_dimension
        elif self._parameter_labels is not None and (
            len(self._parameter_labels) != parameter_dimension
        ):
            raise ValueError(
                "parameter_labels length does not match parameter dimension "
                f"({len(self._parameter_labels)} vs {parameter_dimension})"
            )


__all__ = ["MomentRestriction"]
