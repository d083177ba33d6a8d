"""Numerical utilities shared across the econometrics code."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np

_FD_STEP = float(np.finfo(float).eps ** (1.0 / 3.0))


def finite_difference_jacobian(
    function: Callable[[np.ndarray], Any],
    theta: Any,
    *,
    relative_step: float | None = None,
) -> np.ndarray:
    """Central-difference Jacobian of a vector-valued ``function`` at ``theta``.

    The step for coordinate ``j`` is ``relative_step * max(|θ_j|, 1)``, which
    balances truncation against rounding error for smooth maps. Scalar outputs
    yield a ``(1, k)`` matrix.
    """

    point = np.asarray(theta, dtype=float).reshape(-1)
    scale = _FD_STEP if relative_step is None else float(relative_step)

    columns: list[np.ndarray] = []
    for j in range(point.size):
        h = scale * max(abs(point[j]), 1.0)
        forward = point.copy()
        backward = point.copy()
        forward[j] += h
        backward[j] -= h
        upper = np.asarray(function(forward), dtype=float).reshape(-1)
        lower = np.asarray(function(backward), dtype=float).reshape(-1)
        columns.append((upper - lower) / (2.0 * h))

    if not columns:
        return np.zeros((0, 0), dtype=float)
    return np.column_stack(columns)


def checked_inverse(
    matrix: Any,
    *,
    error: type[Exception],
    label: str = "matrix",
    rcond: float = 1e-12,
) -> np.ndarray:
    """Invert a symmetric PSD matrix or raise ``error`` when it is singular.

    The matrix is symmetrised first. It counts as singular when its smallest
    eigenvalue does not exceed ``rcond`` times the largest one.
    """

    array = np.asarray(matrix, dtype=float)
    if array.ndim != 2 or array.shape[0] != array.shape[1]:
        raise ValueError(f"{label} must be square; got shape {array.shape}")
    if array.size == 0:
        raise error(f"{label} is empty")
    if not np.all(np.isfinite(array)):
        raise error(f"{label} contains non-finite entries")

    sym = 0.5 * (array + array.T)
    eigvals = np.linalg.eigvalsh(sym)
    max_eig = float(np.max(eigvals))
    min_eig = float(np.min(eigvals))
    if max_eig <= 0.0 or min_eig <= rcond * max_eig:
        raise error(
            f"{label} is singular or not positive definite "
            f"(eigenvalues in [{min_eig:.3e}, {max_eig:.3e}])"
        )
    inverse = np.linalg.inv(sym)
    return 0.5 * (inverse + inverse.T)
