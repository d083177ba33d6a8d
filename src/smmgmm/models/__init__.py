"""Structural mean model moment restrictions and simulated data."""

from .data import simulate_iv_data
from .smm import (
    linear_iv_restriction,
    multiplicative_smm_restriction,
    ols_restriction,
    tsls,
)

__all__ = [
    "linear_iv_restriction",
    "multiplicative_smm_restriction",
    "ols_restriction",
    "simulate_iv_data",
    "tsls",
]
