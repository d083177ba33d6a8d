from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from smmgmm import GMM
from smmgmm.models import (
    linear_iv_restriction,
    multiplicative_smm_restriction,
    ols_restriction,
    simulate_iv_data,
    tsls,
)
from smmgmm.utils.numeric import finite_difference_jacobian

INSTRUMENTS = ["z1", "z2", "z3"]


@pytest.fixture(scope="module")
def continuous_data() -> pd.DataFrame:
    return simulate_iv_data(1500, psi=0.5, rng=7)


@pytest.fixture(scope="module")
def count_data() -> pd.DataFrame:
    return simulate_iv_data(3000, psi=0.3, outcome="count", rng=8)


@pytest.mark.parametrize(
    "builder, data_name, theta",
    [
        (linear_iv_restriction, "continuous_data", [0.8, 0.4]),
        (multiplicative_smm_restriction, "count_data", [0.4, 0.2]),
    ],
)
def test_analytic_jacobians_match_finite_differences(
    builder, data_name, theta, request
) -> None:
    data = request.getfixturevalue(data_name)
    restriction = builder(data, "y", "x", INSTRUMENTS)

    numeric = finite_difference_jacobian(restriction.g_bar, theta)
    np.testing.assert_allclose(restriction.jacobian(theta), numeric, atol=1e-6)


def test_restriction_labels(continuous_data) -> None:
    restriction = linear_iv_restriction(continuous_data, "y", "x", "z1")
    restriction.g_bar([0.0, 0.0])
    assert restriction.parameter_labels == ("beta0", "psi")
    assert restriction.moment_labels == ("const", "z1")


def test_ols_restriction_matches_least_squares(continuous_data) -> None:
    restriction = ols_restriction(continuous_data, "y", ["x", "z1"])
    result = GMM(restriction).estimate(initial_point=np.zeros(3))

    X = np.column_stack(
        [np.ones(len(continuous_data)), continuous_data[["x", "z1"]].to_numpy()]
    )
    expected = np.linalg.lstsq(X, continuous_data["y"].to_numpy(), rcond=None)[0]
    np.testing.assert_allclose(result.theta, expected, rtol=1e-6)
    assert result.parameter_labels == ("const", "x", "z1")


def test_ols_without_intercept(continuous_data) -> None:
    restriction = ols_restriction(continuous_data, "y", "x", intercept=False)
    assert restriction.check_identification([0.0]) == (1, 1)


def test_ols_is_biased_under_confounding(continuous_data) -> None:
    ols = GMM(ols_restriction(continuous_data, "y", "x")).estimate(
        initial_point=[0.0, 0.0]
    )
    iv = GMM(linear_iv_restriction(continuous_data, "y", "x", INSTRUMENTS)).estimate(
        initial_point=[0.0, 0.0]
    )
    assert abs(ols.params["x"] - 0.5) > abs(iv.params["psi"] - 0.5)


def test_tsls_solves_projected_normal_equations(continuous_data) -> None:
    estimate = tsls(continuous_data, "y", "x", INSTRUMENTS)

    Z = np.column_stack(
        [np.ones(len(continuous_data)), continuous_data[INSTRUMENTS].to_numpy()]
    )
    X = np.column_stack([np.ones(len(continuous_data)), continuous_data["x"]])
    projection = Z @ np.linalg.pinv(Z)
    X_hat = projection @ X
    resid = continuous_data["y"].to_numpy() - X @ estimate.to_numpy()
    np.testing.assert_allclose(X_hat.T @ resid, np.zeros(2), atol=1e-7)
    assert list(estimate.index) == ["beta0", "psi"]


def test_multiplicative_model_recovers_log_risk_ratio(count_data) -> None:
    restriction = multiplicative_smm_restriction(count_data, "y", "x", INSTRUMENTS)
    result = GMM(restriction).estimate(initial_point=[0.5, 0.0])

    assert result.converged
    assert result.params["psi"] == pytest.approx(0.3, abs=0.2)
    assert result.params["beta0"] > 0.0


def test_empty_instrument_list_is_rejected(continuous_data) -> None:
    with pytest.raises(ValueError):
        linear_iv_restriction(continuous_data, "y", "x", [])
