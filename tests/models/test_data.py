from __future__ import annotations

import numpy as np
import pytest
from smmgmm.models import simulate_iv_data


def test_columns_and_instrument_support() -> None:
    data = simulate_iv_data(500, n_instruments=4, rng=0)

    assert list(data.columns) == ["z1", "z2", "z3", "z4", "x", "y"]
    assert len(data) == 500
    assert set(np.unique(data[["z1", "z2", "z3", "z4"]].to_numpy())) <= {
        0.0,
        1.0,
        2.0,
    }
    assert data.attrs["psi"] == 0.5


def test_same_seed_reproduces_draws() -> None:
    first = simulate_iv_data(50, rng=3)
    second = simulate_iv_data(50, rng=np.random.default_rng(3))
    np.testing.assert_array_equal(first.to_numpy(), second.to_numpy())


def test_instruments_predict_exposure() -> None:
    data = simulate_iv_data(5000, instrument_strength=0.8, rng=1)
    correlation = np.corrcoef(data["z1"], data["x"])[0, 1]
    assert correlation > 0.1


def test_count_outcome_is_non_negative_integer() -> None:
    data = simulate_iv_data(1000, outcome="count", rng=2)
    y = data["y"].to_numpy()
    assert (y >= 0).all()
    np.testing.assert_array_equal(y, np.round(y))


@pytest.mark.parametrize(
    "kwargs",
    [
        {"n": 0},
        {"n": 10, "n_instruments": 0},
        {"n": 10, "outcome": "binary"},
    ],
)
def test_invalid_arguments(kwargs) -> None:
    with pytest.raises(ValueError):
        simulate_iv_data(**kwargs)
