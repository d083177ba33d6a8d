"""Moment restrictions for structural mean models with instruments.

Each builder returns a :class:`~smmgmm.econometrics.MomentRestriction` bound
to a :class:`pandas.DataFrame`, with an analytic Jacobian and labelled
parameters and moments. Instrumented models stack the moments

``[r_i, r_i z_i1, ..., r_i z_iK]``

for a structural residual ``r_i(β0, ψ)`` that is mean-independent of the
instruments at the true ``ψ``.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import pandas as pd

from ..econometrics.moment_restriction import MomentRestriction

PARAMETER_LABELS = ("beta0", "psi")


def _names(columns: str | Sequence[str]) -> list[str]:
    if isinstance(columns, str):
        return [columns]
    names = list(columns)
    if not names:
        raise ValueError("At least one column name is required")
    return names


def _instrument_matrix(frame: pd.DataFrame, instruments: list[str]) -> np.ndarray:
    Z = frame[instruments].to_numpy(dtype=float)
    return np.column_stack([np.ones(Z.shape[0]), Z])


def ols_restriction(
    data: pd.DataFrame,
    outcome: str,
    regressors: str | Sequence[str],
    *,
    intercept: bool = True,
) -> MomentRestriction:
    """Least-squares moments ``g_i(b) = (y_i - x_i'b) x_i``."""

    columns = _names(regressors)
    labels = (["const"] if intercept else []) + columns

    def design(frame: pd.DataFrame) -> np.ndarray:
        X = frame[columns].to_numpy(dtype=float)
        if intercept:
            X = np.column_stack([np.ones(X.shape[0]), X])
        return X

    def g(theta: np.ndarray, frame: pd.DataFrame) -> np.ndarray:
        X = design(frame)
        resid = frame[outcome].to_numpy(dtype=float) - X @ theta
        return resid[:, np.newaxis] * X

    def jacobian(theta: np.ndarray, frame: pd.DataFrame) -> np.ndarray:
        X = design(frame)
        return -(X.T @ X) / X.shape[0]

    return MomentRestriction(
        g,
        data=data,
        jacobian=jacobian,
        parameter_labels=labels,
        moment_labels=labels,
    )


def linear_iv_restriction(
    data: pd.DataFrame,
    outcome: str,
    exposure: str,
    instruments: str | Sequence[str],
) -> MomentRestriction:
    """
    Additive structural mean model.

    ``E[Y - Y(0) | X, Z] = ψ X`` with residual ``r = y - β0 - ψ x``; with a
    linear first stage this is the linear instrumental-variables model.
    """

    names = _names(instruments)

    def g(theta: np.ndarray, frame: pd.DataFrame) -> np.ndarray:
        Zc = _instrument_matrix(frame, names)
        x = frame[exposure].to_numpy(dtype=float)
        resid = frame[outcome].to_numpy(dtype=float) - theta[0] - theta[1] * x
        return resid[:, np.newaxis] * Zc

    def jacobian(theta: np.ndarray, frame: pd.DataFrame) -> np.ndarray:
        Zc = _instrument_matrix(frame, names)
        x = frame[exposure].to_numpy(dtype=float)
        dresid = -np.column_stack([np.ones_like(x), x])
        return Zc.T @ dresid / Zc.shape[0]

    return MomentRestriction(
        g,
        data=data,
        jacobian=jacobian,
        parameter_labels=PARAMETER_LABELS,
        moment_labels=["const", *names],
    )


def multiplicative_smm_restriction(
    data: pd.DataFrame,
    outcome: str,
    exposure: str,
    instruments: str | Sequence[str],
) -> MomentRestriction:
    """
    Multiplicative structural mean model.

    ``E[Y | X, Z] / E[Y(0) | X, Z] = exp(ψ X)`` with residual
    ``r = y exp(-ψ x) - β0``; ``exp(ψ)`` is the causal risk (or rate) ratio
    and ``β0`` the mean untreated outcome.
    """

    names = _names(instruments)

    def g(theta: np.ndarray, frame: pd.DataFrame) -> np.ndarray:
        Zc = _instrument_matrix(frame, names)
        x = frame[exposure].to_numpy(dtype=float)
        y = frame[outcome].to_numpy(dtype=float)
        resid = y * np.exp(-theta[1] * x) - theta[0]
        return resid[:, np.newaxis] * Zc

    def jacobian(theta: np.ndarray, frame: pd.DataFrame) -> np.ndarray:
        Zc = _instrument_matrix(frame, names)
        x = frame[exposure].to_numpy(dtype=float)
        y = frame[outcome].to_numpy(dtype=float)
        dresid = np.column_stack([-np.ones_like(x), -x * y * np.exp(-theta[1] * x)])
        return Zc.T @ dresid / Zc.shape[0]

    return MomentRestriction(
        g,
        data=data,
        jacobian=jacobian,
        parameter_labels=PARAMETER_LABELS,
        moment_labels=["const", *names],
    )


def tsls(
    data: pd.DataFrame,
    outcome: str,
    exposure: str,
    instruments: str | Sequence[str],
) -> pd.Series:
    """Closed-form two-stage least squares estimate of ``(β0, ψ)``."""

    Zc = _instrument_matrix(data, _names(instruments))
    x = data[exposure].to_numpy(dtype=float)
    y = data[outcome].to_numpy(dtype=float)
    X = np.column_stack([np.ones_like(x), x])

    ZtX = Zc.T @ X
    ZtZ = Zc.T @ Zc
    projected = ZtX.T @ np.linalg.solve(ZtZ, ZtX)
    rhs = ZtX.T @ np.linalg.solve(ZtZ, Zc.T @ y)
    return pd.Series(
        np.linalg.solve(projected, rhs), index=list(PARAMETER_LABELS), name="tsls"
    )


__all__ = [
    "linear_iv_restriction",
    "multiplicative_smm_restriction",
    "ols_restriction",
    "tsls",
]
