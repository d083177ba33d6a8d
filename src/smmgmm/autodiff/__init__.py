"""Automatic differentiation utilities."""

from .jax_backend import (
    as_jax_array,
    dense_jacobian,
    enable_x64,
    jax_available,
    vectorize_observation_moments,
)

__all__ = [
    "as_jax_array",
    "dense_jacobian",
    "enable_x64",
    "jax_available",
    "vectorize_observation_moments",
]
