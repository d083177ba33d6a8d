"""Weighted bootstrap of the GMM estimator.

Each replicate draws observation weights, rebinds them to the moment
restriction through :meth:`MomentRestriction.with_weights`, and re-runs the
original estimator from :math:`\\hat\\theta`. Multinomial counts reproduce the
classical pairs bootstrap of Efron (1979) without copying the data; the
exponential, Rademacher and Mammen schemes give the Bayesian and multiplier
variants.

Key classes
-----------
GMMBootstrap
    Head-node orchestrator: generates tasks, collects results, summarises the
    replicate distribution.
BootstrapTask
    Self-contained, serializable task suitable for dispatch to a worker.
BootstrapResult
    Lightweight payload returned by each worker.
"""

from __future__ import annotations

import pickle
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import cloudpickle
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .gmm import GMM, GMMResult
from .moment_restriction import MomentRestriction


# -----------------------------------------------------------------------
# Weight generators
# -----------------------------------------------------------------------

def multinomial_weights(n: int, rng: np.random.Generator) -> np.ndarray:
    r"""Resampling counts of a nonparametric (pairs) bootstrap sample.

    ``w ~ Multinomial(n, 1/n)``, so :math:`\sum_i w_i = n` and the weighted
    moments equal those of ``n`` rows drawn with replacement.
    """

    return rng.multinomial(n, np.full(n, 1.0 / n)).astype(float)


def exponential_weights(n: int, rng: np.random.Generator) -> np.ndarray:
    r"""Exponential(1) weights (Bayesian bootstrap); :math:`E[w] = Var[w] = 1`."""

    return rng.exponential(scale=1.0, size=n)


def rademacher_weights(n: int, rng: np.random.Generator) -> np.ndarray:
    r"""Shifted Rademacher weights :math:`w_i = 1 + \epsilon_i \in \{0, 2\}`."""

    epsilon = 2 * rng.integers(0, 2, size=n) - 1  # {-1, +1}
    return (1 + epsilon).astype(float)


def mammen_weights(n: int, rng: np.random.Generator) -> np.ndarray:
    r"""Mammen two-point weights with :math:`E[w] = 1`, :math:`Var[w] = 1`.

    Both support points are positive, so the weighted covariance of the
    moments stays positive semi-definite.
    """

    sqrt5 = np.sqrt(5.0)
    p = (sqrt5 + 1.0) / (2.0 * sqrt5)
    val_low = 1.0 - (sqrt5 - 1.0) / 2.0
    val_high = 1.0 + (sqrt5 + 1.0) / 2.0
    draws = rng.random(n)
    return np.where(draws < p, val_low, val_high)


_WEIGHT_GENERATORS: dict[str, Callable[[int, np.random.Generator], np.ndarray]] = {
    "multinomial": multinomial_weights,
    "exponential": exponential_weights,
    "rademacher": rademacher_weights,
    "mammen": mammen_weights,
}


# -----------------------------------------------------------------------
# BootstrapResult / BootstrapTask
# -----------------------------------------------------------------------

@dataclass(frozen=True)
class BootstrapResult:
    """Payload from a single bootstrap replicate.

    Attributes
    ----------
    task_id : int
        Integer identifying the replicate.
    seed : int
        RNG seed used to generate weights.
    theta_star : numpy.ndarray
        Re-estimated parameter vector.
    criterion_value : float
        GMM criterion at the bootstrap estimate.
    converged : bool
        Whether every optimizer stage reported convergence.
    """

    task_id: int
    seed: int
    theta_star: np.ndarray
    criterion_value: float
    converged: bool


@dataclass
class BootstrapTask:
    """Self-contained, serializable task for a single bootstrap replicate.

    Each serialized task carries one reference to the dataset through its
    restriction, which is acceptable for moderate samples.

    Attributes
    ----------
    restriction : MomentRestriction
        The unweighted moment restriction.
    estimator_options : dict
        Keyword arguments for :class:`GMM` (method, weighting, ...).
    initial_point : numpy.ndarray
        Starting point for the optimizer (typically :math:`\\hat\\theta`).
    seed : int
        RNG seed for weight generation.
    weight_scheme : str
        Name of the weight distribution.
    optimizer_class : type or None
        Optimizer class to use (default: pymanopt TrustRegions).
    optimizer_kwargs : dict
        Extra keyword arguments forwarded to the optimizer constructor.
    task_id : int
        Integer identifying this replicate.
    """

    restriction: MomentRestriction
    estimator_options: dict[str, Any]
    initial_point: np.ndarray
    seed: int
    weight_scheme: str
    optimizer_class: type | None
    optimizer_kwargs: dict[str, Any]
    task_id: int

    def run(self) -> BootstrapResult:
        """Execute the bootstrap replicate (worker entry point)."""

        generator = _WEIGHT_GENERATORS.get(self.weight_scheme)
        if generator is None:
            raise ValueError(
                f"Unknown weight scheme {self.weight_scheme!r}; "
                f"choose from {sorted(_WEIGHT_GENERATORS)}"
            )

        rng = np.random.default_rng(self.seed)
        weights = generator(self.restriction.num_observations, rng)
        weighted_restriction = self.restriction.with_weights(weights)

        gmm = GMM(
            weighted_restriction,
            optimizer=self.optimizer_class,
            initial_point=self.initial_point,
            **self.estimator_options,
        )
        result = gmm.estimate(
            optimizer_kwargs=self.optimizer_kwargs,
            raise_on_nonconvergence=False,
        )

        return BootstrapResult(
            task_id=self.task_id,
            seed=self.seed,
            theta_star=np.asarray(result.theta, dtype=float),
            criterion_value=result.criterion_value,
            converged=result.converged,
        )

    def to_bytes(self) -> bytes:
        """Serialize this task; closures in the moment map need cloudpickle."""

        return cloudpickle.dumps(self, protocol=pickle.HIGHEST_PROTOCOL)

    @staticmethod
    def from_bytes(data: bytes) -> BootstrapTask:
        """Deserialize a task produced by :meth:`to_bytes`."""

        obj = pickle.loads(data)
        if not isinstance(obj, BootstrapTask):
            raise TypeError("Deserialized object is not a BootstrapTask")
        return obj


def _run_task(task: BootstrapTask) -> BootstrapResult:
    return task.run()


# -----------------------------------------------------------------------
# GMMBootstrap
# -----------------------------------------------------------------------

class GMMBootstrap:
    r"""Orchestrate bootstrap replicates of a fitted GMM estimator.

    Parameters
    ----------
    gmm_result : GMMResult
        Completed estimation result providing :math:`\hat\theta`, the
        restriction and the estimator options.
    n_bootstrap : int
        Number of bootstrap replicates.
    weight_scheme : str, default ``"multinomial"``
        ``"multinomial"``, ``"exponential"``, ``"rademacher"`` or ``"mammen"``.
    seed : int, default 0
        Base seed; replicate seeds are spawned from
        :class:`numpy.random.SeedSequence`.
    optimizer_class : type or None
        Optimizer class forwarded to each task.
    optimizer_kwargs : dict or None
        Extra optimizer keyword arguments.
    """

    def __init__(
        self,
        gmm_result: GMMResult,
        n_bootstrap: int = 199,
        *,
        weight_scheme: str = "multinomial",
        seed: int = 0,
        optimizer_class: type | None = None,
        optimizer_kwargs: Mapping[str, Any] | None = None,
    ) -> None:
        if weight_scheme not in _WEIGHT_GENERATORS:
            raise ValueError(
                f"Unknown weight_scheme {weight_scheme!r}; "
                f"choose from {sorted(_WEIGHT_GENERATORS)}"
            )
        if n_bootstrap < 0:
            raise ValueError("n_bootstrap must be non-negative")
        if gmm_result.restriction.weights is not None:
            raise ValueError("Bootstrap the unweighted estimate, not a replicate")

        self._gmm_result = gmm_result
        self._n_bootstrap = int(n_bootstrap)
        self._weight_scheme = weight_scheme
        self._seed = seed
        self._optimizer_class = optimizer_class
        self._optimizer_kwargs = dict(optimizer_kwargs or {})
        self._results: list[BootstrapResult] = []

    # ------------------------------------------------------------------
    # Tasks and execution
    # ------------------------------------------------------------------

    def tasks(self) -> list[BootstrapTask]:
        """Generate one :class:`BootstrapTask` per replicate."""

        result = self._gmm_result
        children = np.random.SeedSequence(self._seed).spawn(self._n_bootstrap)
        return [
            BootstrapTask(
                restriction=result.restriction,
                estimator_options=dict(result.options),
                initial_point=np.asarray(result.theta, dtype=float).copy(),
                seed=int(child.generate_state(1)[0]),
                weight_scheme=self._weight_scheme,
                optimizer_class=self._optimizer_class,
                optimizer_kwargs=dict(self._optimizer_kwargs),
                task_id=b,
            )
            for b, child in enumerate(children)
        ]

    def collect(self, results: list[BootstrapResult]) -> None:
        """Ingest worker results."""

        self._results.extend(results)

    def run(self, *, n_jobs: int = 1) -> list[BootstrapResult]:
        """Execute all tasks, serially or across ``n_jobs`` joblib workers."""

        task_list = self.tasks()
        if n_jobs == 1:
            results = [task.run() for task in task_list]
        else:
            results = list(
                Parallel(n_jobs=n_jobs)(delayed(_run_task)(task) for task in task_list)
            )
        self.collect(results)
        return results

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    @property
    def results(self) -> list[BootstrapResult]:
        return list(self._results)

    @property
    def replicates(self) -> pd.DataFrame:
        """Converged replicate estimates, one row per replicate."""

        labels = list(self._gmm_result.parameter_labels)
        kept = [r for r in self._results if r.converged]
        if not kept:
            return pd.DataFrame(columns=labels, dtype=float)
        return pd.DataFrame(
            np.vstack([r.theta_star for r in kept]),
            index=pd.Index([r.task_id for r in kept], name="replicate"),
            columns=labels,
        )

    def standard_errors(self) -> pd.Series:
        draws = self._require_replicates()
        return draws.std(axis=0, ddof=1).rename("std_error")

    def conf_int(self, alpha: float = 0.05) -> pd.DataFrame:
        """Percentile intervals from the replicate distribution."""

        if not 0.0 < alpha < 1.0:
            raise ValueError("alpha must lie strictly between 0 and 1")
        draws = self._require_replicates()
        return pd.DataFrame(
            {
                "lower": draws.quantile(0.5 * alpha),
                "upper": draws.quantile(1.0 - 0.5 * alpha),
            }
        )

    def summary(self) -> dict[str, Any]:
        """Counts of collected and converged replicates plus bootstrap SEs."""

        n_collected = len(self._results)
        n_converged = sum(1 for r in self._results if r.converged)
        info: dict[str, Any] = {
            "n_collected": n_collected,
            "n_converged": n_converged,
            "weight_scheme": self._weight_scheme,
        }
        if n_converged > 1:
            info["standard_errors"] = self.standard_errors().to_dict()
        return info

    def _require_replicates(self) -> pd.DataFrame:
        draws = self.replicates
        if draws.shape[0] < 2:
            raise ValueError(
                "At least two converged bootstrap replicates are required; "
                "run the tasks first"
            )
        return draws


__all__ = [
    "BootstrapResult",
    "BootstrapTask",
    "GMMBootstrap",
    "exponential_weights",
    "mammen_weights",
    "multinomial_weights",
    "rademacher_weights",
]
