"""Simulated instrumental-variable data for structural mean models."""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd

OUTCOMES = ("continuous", "count")


def simulate_iv_data(
    n: int,
    *,
    psi: float = 0.5,
    n_instruments: int = 3,
    instrument_strength: float = 0.5,
    confounding: float = 1.0,
    outcome: str = "continuous",
    rng: np.random.Generator | int | None = None,
) -> pd.DataFrame:
    """
    Draw ``n`` observations from a confounded exposure-outcome model.

    Instruments ``z1..zK`` are genotype-like Binomial(2, 0.3) counts. An
    unobserved confounder ``u`` enters both the exposure

    ``x = instrument_strength * Σ z_j + confounding * u + e_x``

    and the outcome. With ``outcome="continuous"`` the additive model
    ``y = 1 + psi * x + confounding * u + e_y`` holds, so ``psi`` is the
    additive structural mean model parameter. With ``outcome="count"`` the
    outcome is Poisson with mean ``exp(-1 + psi * x + 0.5 * confounding * u)``
    and ``psi`` is the log causal rate ratio of the multiplicative model.

    The true ``psi`` is stored in ``frame.attrs["psi"]``.
    """

    if n <= 0:
        raise ValueError("n must be positive")
    if n_instruments < 1:
        raise ValueError("n_instruments must be at least 1")
    if outcome not in OUTCOMES:
        raise ValueError(f"outcome must be one of {list(OUTCOMES)}")

    generator = np.random.default_rng(rng)
    z = generator.binomial(2, 0.3, size=(n, n_instruments)).astype(float)
    u = generator.normal(size=n)
    x = (
        z @ np.full(n_instruments, instrument_strength)
        + confounding * u
        + generator.normal(size=n)
    )

    y: Any
    if outcome == "continuous":
        y = 1.0 + psi * x + confounding * u + generator.normal(size=n)
    else:
        rate = np.exp(-1.0 + psi * x + 0.5 * confounding * u)
        y = generator.poisson(rate).astype(float)

    columns = {f"z{j + 1}": z[:, j] for j in range(n_instruments)}
    columns.update(x=x, y=y)
    frame = pd.DataFrame(columns)
    frame.attrs["psi"] = psi
    return frame


__all__ = ["simulate_iv_data"]
