"""
JAX-backed helpers for moment maps written with :mod:`jax.numpy`.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np


def _require_jax() -> tuple[Any, Any]:
    try:
        import jax
        import jax.numpy as jnp
    except ImportError as exc:  # pragma: no cover - depends on optional JAX
        raise RuntimeError(
            "JAX is required for backend='jax'. "
            "Install smmgmm with the 'jax' extra."
        ) from exc
    return jax, jnp


def enable_x64() -> None:
    """Switch JAX to double precision (a process-wide setting)."""

    jax, _ = _require_jax()
    jax.config.update("jax_enable_x64", True)


def jax_available() -> bool:
    """Return ``True`` when JAX can be imported."""

    try:
        _require_jax()
    except RuntimeError:
        return False
    return True


def as_jax_array(value: Any) -> Any:
    """Convert ``value`` (array, DataFrame, sequence) to a float JAX array.

    The array is double precision once :func:`enable_x64` has run.
    """

    _, jnp = _require_jax()
    if hasattr(value, "to_numpy"):
        value = value.to_numpy(dtype=float)
    return jnp.asarray(np.asarray(value, dtype=float))


def vectorize_observation_moments(
    gi: Callable[[Any, Any], Any],
) -> Callable[[Any, Any], Any]:
    """
    Lift an observation-level moment function to the whole sample.

    Parameters
    ----------
    gi:
        Callable ``gi(theta, observation) -> (m,)`` written with
        :mod:`jax.numpy`.

    Returns
    -------
    callable
        ``g(theta, data) -> (n, m)`` mapping ``gi`` over the rows of ``data``.
    """

    jax, jnp = _require_jax()

    def vectorized(theta: Any, data: Any) -> Any:
        rows = jax.vmap(lambda observation: gi(theta, observation))(data)
        rows = jnp.asarray(rows)
        if rows.ndim == 1:
            rows = rows[:, jnp.newaxis]
        return rows

    return vectorized


def dense_jacobian(function: Callable[[Any], Any], theta: Any) -> np.ndarray:
    """
    Forward-mode Jacobian of ``function`` at ``theta`` as a dense NumPy matrix.

    ``function`` maps a length-``k`` parameter vector to ``ℝ^m``; the result
    has shape ``(m, k)``.
    """

    jax, jnp = _require_jax()
    point = jnp.asarray(np.asarray(theta, dtype=float).reshape(-1))
    matrix = jax.jacfwd(function)(point)
    array = np.asarray(matrix, dtype=float)
    if array.ndim == 1:
        array = array.reshape(-1, point.shape[0])
    return array


__all__ = [
    "as_jax_array",
    "dense_jacobian",
    "enable_x64",
    "jax_available",
    "vectorize_observation_moments",
]
