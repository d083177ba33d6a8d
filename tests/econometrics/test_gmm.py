from __future__ import annotations

import types
from typing import Any

import numpy as np
import pandas as pd
import pytest
from pymanopt.optimizers.optimizer import Optimizer
from scipy import stats
from smmgmm import (
    GMM,
    GMMResult,
    InvalidMomentOutputError,
    MomentRestriction,
    NonConvergenceError,
    SingularWeightingError,
    UnderidentifiedError,
    estimate,
)
from smmgmm.models import linear_iv_restriction, simulate_iv_data, tsls


def _regression_data(n: int = 200, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    x = rng.normal(size=n)
    y = 1.0 + 2.0 * x + rng.normal(size=n)
    return np.column_stack([x, y])


def _ols_moments(theta, data):
    resid = data[:, 1] - theta[0] - theta[1] * data[:, 0]
    return np.column_stack([resid, resid * data[:, 0]])


def _ols_reference(data: np.ndarray) -> np.ndarray:
    X = np.column_stack([np.ones(data.shape[0]), data[:, 0]])
    return np.linalg.lstsq(X, data[:, 1], rcond=None)[0]


def _iv_restriction(n: int = 2000, seed: int = 1) -> tuple[Any, MomentRestriction]:
    data = simulate_iv_data(n, psi=0.5, rng=seed)
    return data, linear_iv_restriction(data, "y", "x", ["z1", "z2", "z3"])


def _recording_optimizer(converged: bool = True) -> type[Optimizer]:
    class RecordingOptimizer(Optimizer):
        last_kwargs: dict[str, Any] | None = None
        runs = 0

        def __init__(self, **kwargs: Any) -> None:
            type(self).last_kwargs = dict(kwargs)
            super().__init__(**kwargs)

        def run(self, problem: Any, *, initial_point: Any) -> Any:
            type(self).runs += 1
            return types.SimpleNamespace(
                point=initial_point,
                iterations=1000,
                converged=converged,
                stopping_criterion="Terminated - max iterations reached",
            )

    return RecordingOptimizer


# -----------------------------------------------------------------------
# Point estimates
# -----------------------------------------------------------------------

def test_exactly_identified_regression_recovers_least_squares() -> None:
    data = _regression_data()

    result = estimate(_ols_moments, data, [0.0, 0.0])

    np.testing.assert_allclose(result.theta, _ols_reference(data), rtol=1e-6)
    assert result.degrees_of_freedom == 0
    assert result.criterion_value == pytest.approx(0.0, abs=1e-10)
    assert result.j_statistic is None
    assert result.j_test is None
    assert result.converged
    assert result.parameter_labels == ("theta[0]", "theta[1]")
    assert [s["stage"] for s in result.optimizer_report["stages"]] == [
        "step 1",
        "step 2",
    ]


def test_rescaling_moments_leaves_efficient_estimate_unchanged() -> None:
    data = _regression_data(seed=3)

    def scaled(theta, d):
        return 10.0 * _ols_moments(theta, d)

    base = estimate(_ols_moments, data, [0.0, 0.0])
    rescaled = estimate(scaled, data, [0.0, 0.0])

    np.testing.assert_allclose(rescaled.theta, base.theta, rtol=1e-6)
    np.testing.assert_allclose(rescaled.covariance, base.covariance, rtol=1e-5)


@pytest.mark.parametrize("factor", [1e-5, 10.0])
def test_rescaling_overidentified_moments_leaves_estimate_unchanged(
    factor: float,
) -> None:
    data, base = _iv_restriction()
    scaled = MomentRestriction(
        lambda theta, d: factor * base.gi(theta),
        data=data,
        jacobian=lambda theta, d: factor * base.jacobian(theta),
    )

    reference = GMM(base).estimate(initial_point=[0.0, 0.0])
    result = GMM(scaled).estimate(initial_point=[0.0, 0.0])

    np.testing.assert_allclose(result.theta, reference.theta, rtol=1e-6)
    np.testing.assert_allclose(result.covariance, reference.covariance, rtol=1e-5)
    assert result.j_statistic == pytest.approx(reference.j_statistic, rel=1e-5)
    step_two = result.optimizer_report["stages"][1]
    assert step_two["cost_scale"] == pytest.approx(1.0)


def test_covariance_matches_inverse_of_efficient_information() -> None:
    data = _regression_data(seed=4)
    result = estimate(_ols_moments, data, [0.0, 0.0])

    D = result.jacobian
    W = result.weighting_matrix
    expected = np.linalg.inv(D.T @ W @ D) / data.shape[0]
    np.testing.assert_allclose(result.covariance, expected, rtol=1e-8)


def test_exposed_helpers_match_restriction_evaluations() -> None:
    restriction = MomentRestriction(_ols_moments, data=_regression_data())
    gmm = GMM(restriction, initial_point=[0.0, 0.0])

    theta = np.array([0.5, 1.5])
    np.testing.assert_allclose(gmm.g_bar(theta), restriction.g_bar(theta))
    np.testing.assert_allclose(gmm.gN(theta), restriction.gN(theta))
    np.testing.assert_allclose(gmm.omega_hat(theta), restriction.omega_hat(theta))
    g_vec = restriction.g_bar(theta)
    assert gmm.criterion(theta) == pytest.approx(200 * g_vec @ g_vec)
    assert gmm.criterion(theta, 2.0 * np.eye(2)) == pytest.approx(
        400 * g_vec @ g_vec
    )


# -----------------------------------------------------------------------
# Over-identified models
# -----------------------------------------------------------------------

def test_overidentified_model_reports_hansen_j() -> None:
    _, restriction = _iv_restriction()

    result = GMM(restriction).estimate(initial_point=[0.0, 0.0])

    assert result.degrees_of_freedom == 2
    assert result.parameter_labels == ("beta0", "psi")
    assert result.params["psi"] == pytest.approx(0.5, abs=0.2)
    g_vec = restriction.g_bar(result.theta)
    expected = 2000 * g_vec @ result.weighting_matrix @ g_vec
    assert result.j_statistic == pytest.approx(expected)
    j_test = result.j_test
    assert j_test is not None
    assert j_test.p_value == pytest.approx(stats.chi2.sf(expected, 2))


def test_invalid_instrument_is_rejected_by_j_test() -> None:
    data, _ = _iv_restriction()
    rng = np.random.default_rng(11)
    data = data.assign(w=data["y"] + rng.normal(size=len(data)))
    restriction = linear_iv_restriction(data, "y", "x", ["z1", "z2", "w"])

    result = GMM(restriction).estimate(initial_point=[0.0, 0.0])

    assert result.j_test is not None
    assert result.j_test.rejects(0.01)


def test_onestep_with_instrument_weighting_is_two_stage_least_squares() -> None:
    data, restriction = _iv_restriction()
    Z = np.column_stack([np.ones(len(data)), data[["z1", "z2", "z3"]].to_numpy()])
    W0 = np.linalg.inv(Z.T @ Z / len(data))

    result = GMM(restriction, method="onestep", initial_weighting=W0).estimate(
        initial_point=[0.0, 0.0]
    )

    expected = tsls(data, "y", "x", ["z1", "z2", "z3"])
    np.testing.assert_allclose(result.theta, expected.to_numpy(), rtol=1e-6)
    assert result.method == "onestep"
    assert len(result.optimizer_report["stages"]) == 1


def test_onestep_fit_reports_no_overidentification_test() -> None:
    _, restriction = _iv_restriction()

    result = GMM(restriction, method="onestep").estimate(initial_point=[0.0, 0.0])

    assert result.degrees_of_freedom == 2
    assert result.criterion_value > 0.0
    assert result.j_statistic is None
    assert result.j_test is None
    assert result.as_dict()["j_statistic"] is None


@pytest.mark.parametrize("method", ["iterative", "cue"])
def test_alternative_methods_agree_with_two_step(method: str) -> None:
    _, restriction = _iv_restriction()

    twostep = GMM(restriction).estimate(initial_point=[0.0, 0.0])
    other = GMM(restriction, method=method).estimate(initial_point=[0.0, 0.0])

    assert other.converged
    assert other.method == method
    np.testing.assert_allclose(
        other.theta, twostep.theta, atol=0.2 * float(twostep.standard_errors.max())
    )


def test_summary_and_confidence_intervals() -> None:
    _, restriction = _iv_restriction()
    result = GMM(restriction).estimate(initial_point=[0.0, 0.0])

    table = result.summary()
    assert list(table.columns) == [
        "estimate",
        "std_error",
        "z",
        "p_value",
        "lower",
        "upper",
    ]
    assert list(table.index) == ["beta0", "psi"]
    assert (table["lower"] < table["estimate"]).all()
    assert (table["estimate"] < table["upper"]).all()

    narrow = result.conf_int(alpha=0.5)
    wide = result.conf_int(alpha=0.01)
    assert (wide["upper"] - wide["lower"] > narrow["upper"] - narrow["lower"]).all()
    assert isinstance(result.cov, pd.DataFrame)
    assert result.as_dict()["degrees_of_freedom"] == 2


def test_result_pickle_roundtrip(tmp_path) -> None:
    _, restriction = _iv_restriction(n=300)
    result = GMM(restriction).estimate(initial_point=[0.0, 0.0])

    path = tmp_path / "result.pkl"
    result.to_pickle(path)
    loaded = GMMResult.from_pickle(path)

    pd.testing.assert_series_equal(loaded.params, result.params)
    np.testing.assert_allclose(
        loaded.restriction.g_bar(loaded.theta), result.g_bar
    )


# -----------------------------------------------------------------------
# Failure modes
# -----------------------------------------------------------------------

def test_underidentified_model_fails_before_optimizing() -> None:
    optimizer = _recording_optimizer()
    restriction = MomentRestriction(
        lambda theta, d: d - theta[0] - theta[1], data=np.arange(5.0)
    )

    with pytest.raises(UnderidentifiedError):
        GMM(restriction, optimizer=optimizer).estimate(initial_point=[0.0, 0.0])
    assert optimizer.runs == 0


def test_non_finite_moments_raise_invalid_output() -> None:
    def g(theta, d):
        out = _ols_moments(theta, d)
        out[7, 0] = np.nan
        return out

    with pytest.raises(InvalidMomentOutputError):
        estimate(g, _regression_data(), [0.0, 0.0])


def test_redundant_moment_makes_weighting_singular() -> None:
    def g(theta, d):
        moments = _ols_moments(theta, d)
        return np.column_stack([moments, moments[:, 0]])

    with pytest.raises(SingularWeightingError):
        estimate(g, _regression_data(), [0.0, 0.0])


def test_exhausted_optimizer_raises_non_convergence() -> None:
    optimizer = _recording_optimizer(converged=False)
    restriction = MomentRestriction(_ols_moments, data=_regression_data())
    gmm = GMM(restriction, optimizer=optimizer)

    with pytest.raises(NonConvergenceError) as excinfo:
        gmm.estimate(initial_point=[0.0, 0.0])
    assert excinfo.value.report["stage"] == "step 1"

    result = gmm.estimate(initial_point=[0.0, 0.0], raise_on_nonconvergence=False)
    assert result.converged is False


def test_budget_message_marks_non_convergence() -> None:
    class BudgetOptimizer(Optimizer):
        def run(self, problem: Any, *, initial_point: Any) -> Any:
            return types.SimpleNamespace(
                point=initial_point,
                iterations=5,
                stopping_criterion="Terminated - max time reached after 5 iterations.",
            )

    restriction = MomentRestriction(_ols_moments, data=_regression_data())
    with pytest.raises(NonConvergenceError):
        GMM(restriction, optimizer=BudgetOptimizer()).estimate(
            initial_point=[0.0, 0.0]
        )


def test_estimate_passes_verbose_flag_to_optimizer() -> None:
    optimizer = _recording_optimizer()
    restriction = MomentRestriction(_ols_moments, data=_regression_data())

    GMM(restriction, optimizer=optimizer).estimate(
        initial_point=[0.0, 0.0], verbose=True, optimizer_kwargs={"max_time": 5}
    )

    assert optimizer.last_kwargs is not None
    assert optimizer.last_kwargs["verbosity"] == 2
    assert optimizer.last_kwargs["max_time"] == 5
    assert optimizer.last_kwargs["max_iterations"] == 1000


def test_preconfigured_optimizer_verbosity_is_updated() -> None:
    optimizer = _recording_optimizer()()
    optimizer.verbosity = 3
    restriction = MomentRestriction(_ols_moments, data=_regression_data())

    GMM(restriction, optimizer=optimizer).estimate(initial_point=[0.0, 0.0])

    assert optimizer.verbosity == 0


def test_constructor_rejects_unknown_options() -> None:
    restriction = MomentRestriction(_ols_moments, data=_regression_data())
    with pytest.raises(ValueError, match="weighting"):
        GMM(restriction, weighting="hac")
    with pytest.raises(ValueError, match="method"):
        GMM(restriction, method="threestep")
    with pytest.raises(ValueError, match="initial_point"):
        GMM(restriction).estimate()
    with pytest.raises(ValueError, match="initial_weighting"):
        GMM(restriction, initial_weighting=np.eye(3)).estimate(
            initial_point=[0.0, 0.0]
        )


def test_callable_initial_weighting_shape_is_checked_before_optimizing() -> None:
    optimizer = _recording_optimizer()
    restriction = MomentRestriction(_ols_moments, data=_regression_data())
    gmm = GMM(restriction, initial_weighting=lambda theta: np.eye(3), optimizer=optimizer)

    with pytest.raises(ValueError, match="initial_weighting"):
        gmm.estimate(initial_point=[0.0, 0.0])
    assert optimizer.runs == 0
