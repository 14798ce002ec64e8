"""Predictive statistics for submodels and the reference model.

Each statistic is computed in two stages:

1. **Pointwise** — one value per observation, integrating over the
   (weighted) draws.  Weights are either one vector ``(S,)`` shared by
   all rows, or a matrix ``(S, n)`` of per-row leave-one-out weights.
2. **Summary** — a :class:`StatisticSummary` holding the mean and the
   standard error ``sd(ddof=1) / √n`` of the pointwise contributions.

Statistics
----------
========  ===========================================  =================
Name      Pointwise value                              Summary
========  ===========================================  =================
``elpd``  ``log Σ_s w_s p(y_i | θ_s)``                 sum (se × √n)
``mlpd``  same as ``elpd``                             mean
``mse``   ``(y_i − E[y_i])²``                          mean
``rmse``  same as ``mse``                              √mean, delta SE
``acc``   ``1{decision(E[μ_i]) = y_i}``                mean
========  ===========================================  =================

``acc`` uses the family's decision rule: the majority vote for
binomial responses and the mode ``⌊μ⌋`` for Poisson counts.  It is not
defined for the Gaussian family and raises
:class:`~projection_selection.exceptions.ConfigurationError`.

Paired differences
~~~~~~~~~~~~~~~~~~
:meth:`Evaluator.compare` summarises submodel-minus-reference
differences per observation.  Because the two models are scored on the
same rows, the paired standard error is usually far smaller than the
two marginal errors combined.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy.special import logsumexp

from ._results import _DictAccessMixin
from .exceptions import ConfigurationError
from .families import ProjectionFamily

if TYPE_CHECKING:
    from .projection import ProjectedSubmodel
    from .reference import ReferenceModel


@dataclass(frozen=True)
class PredictiveStatistic:
    """Metadata for one named statistic."""

    name: str
    higher_is_better: bool
    needs_decision: bool = False


STATISTICS: dict[str, PredictiveStatistic] = {
    "elpd": PredictiveStatistic("elpd", higher_is_better=True),
    "mlpd": PredictiveStatistic("mlpd", higher_is_better=True),
    "mse": PredictiveStatistic("mse", higher_is_better=False),
    "rmse": PredictiveStatistic("rmse", higher_is_better=False),
    "acc": PredictiveStatistic("acc", higher_is_better=True, needs_decision=True),
}
"""Registry of supported statistics keyed by name."""

_LPD_STATS = frozenset({"elpd", "mlpd"})
_SQERR_STATS = frozenset({"mse", "rmse"})


@dataclass(frozen=True)
class StatisticSummary(_DictAccessMixin):
    """Mean and standard error of one statistic.

    Attributes:
        statistic: Statistic name.
        mean: Point estimate (a sum for ``elpd``).
        se: Standard error of *mean*.
        n_obs: Number of observations contributing.
        small_sample: ``True`` when *n_obs* is below the configured
            threshold, in which case *se* is a rough guide only.
    """

    statistic: str
    mean: float
    se: float
    n_obs: int
    small_sample: bool = False


def _se(values: np.ndarray) -> float:
    n = values.size
    if n < 2:
        return float("nan")
    return float(np.std(values, ddof=1) / np.sqrt(n))


def summarize_pointwise(
    statistic: str,
    values: np.ndarray,
    small_sample_threshold: int = 20,
) -> StatisticSummary:
    """Aggregate pointwise values into a :class:`StatisticSummary`.

    For ``rmse`` *values* are squared errors; the standard error uses
    the delta method ``se(mse) / (2 · rmse)``.
    """
    if statistic not in STATISTICS:
        raise ConfigurationError(
            f"Unknown statistic {statistic!r}. Choose from: {sorted(STATISTICS)}"
        )
    v = np.asarray(values, dtype=float).ravel()
    n = v.size
    if n == 0:
        raise ConfigurationError("Cannot summarise an empty set of observations.")
    small = n < small_sample_threshold
    if statistic == "elpd":
        mean, se = float(v.sum()), _se(v) * n
    elif statistic == "rmse":
        mse = float(v.mean())
        mean = float(np.sqrt(mse))
        se = _se(v) / (2.0 * mean) if mean > 0 else 0.0
    else:
        mean, se = float(v.mean()), _se(v)
    return StatisticSummary(statistic, mean, se, n, small)


def summarize_difference(
    statistic: str,
    values: np.ndarray,
    baseline: np.ndarray,
    small_sample_threshold: int = 20,
) -> StatisticSummary:
    """Summarise the paired difference *values* − *baseline*.

    For ``rmse`` the difference of the two root mean squared errors is
    returned with a paired delta-method standard error.
    """
    a = np.asarray(values, dtype=float).ravel()
    b = np.asarray(baseline, dtype=float).ravel()
    if a.shape != b.shape:
        raise ConfigurationError(
            f"Paired statistics need equal lengths, got {a.size} and {b.size}."
        )
    if statistic != "rmse":
        return summarize_pointwise(statistic, a - b, small_sample_threshold)
    n = a.size
    ra, rb = np.sqrt(a.mean()), np.sqrt(b.mean())
    da = a / (2.0 * ra) if ra > 0 else np.zeros(n)
    db = b / (2.0 * rb) if rb > 0 else np.zeros(n)
    return StatisticSummary(
        "rmse", float(ra - rb), _se(da - db), n, n < small_sample_threshold
    )


# ------------------------------------------------------------------ #
# Evaluator
# ------------------------------------------------------------------ #


class Evaluator:
    """Compute pointwise and summarised predictive statistics.

    Args:
        family: Response family of the models being scored.
        statistics: Names from :data:`STATISTICS`.
        small_sample_threshold: Row count below which summaries are
            flagged.

    Raises:
        ConfigurationError: For unknown statistics or a statistic the
            family cannot support (accuracy for Gaussian responses).
    """

    def __init__(
        self,
        family: ProjectionFamily,
        statistics: Iterable[str] = ("elpd",),
        small_sample_threshold: int = 20,
    ) -> None:
        self.family = family
        self.statistics = tuple(statistics)
        self.small_sample_threshold = int(small_sample_threshold)
        unknown = [s for s in self.statistics if s not in STATISTICS]
        if unknown:
            raise ConfigurationError(
                f"Unknown statistic(s) {unknown}. Choose from: {sorted(STATISTICS)}"
            )
        if family.name == "gaussian" and "acc" in self.statistics:
            raise ConfigurationError(
                "Statistic 'acc' is not supported for the gaussian family."
            )

    # ---- Pointwise ---------------------------------------------------

    def pointwise(
        self,
        y: np.ndarray,
        eta: np.ndarray,
        dispersion: np.ndarray,
        weights: np.ndarray | None = None,
        trials: np.ndarray | None = None,
    ) -> dict[str, np.ndarray]:
        """Pointwise values of every configured statistic.

        Args:
            y: Observed responses ``(n,)``.
            eta: Linear predictors ``(S, n)``.
            dispersion: Dispersion per draw ``(S,)``.
            weights: Draw weights ``(S,)`` or per-row weights
                ``(S, n)``; uniform when omitted.  Columns are
                normalised here.
            trials: Binomial trials ``(n,)``.

        Returns:
            Mapping of statistic name to an ``(n,)`` array.
        """
        y = np.asarray(y, dtype=float)
        S, n = eta.shape
        t = np.ones(n) if trials is None else np.asarray(trials, dtype=float)
        w = np.full(S, 1.0 / S) if weights is None else np.asarray(weights, dtype=float)
        if w.ndim == 1:
            w = w[:, None]
        w = w / w.sum(axis=0, keepdims=True)

        mu = self.family.linkinv(eta)
        out: dict[str, np.ndarray] = {}
        if _LPD_STATS & set(self.statistics):
            ll = self.family.log_density(y, mu, dispersion, t)
            with np.errstate(divide="ignore"):
                lpd = logsumexp(ll + np.log(w), axis=0)
            for name in _LPD_STATS & set(self.statistics):
                out[name] = np.asarray(lpd)
        mu_bar = np.sum(w * mu, axis=0)
        if _SQERR_STATS & set(self.statistics):
            sqerr = (y - t * mu_bar) ** 2
            for name in _SQERR_STATS & set(self.statistics):
                out[name] = np.asarray(sqerr)
        if "acc" in self.statistics:
            pred = self.family.decision(mu_bar, t)
            out["acc"] = (pred == y).astype(float)
        return {s: out[s] for s in self.statistics}

    def evaluate_submodel(
        self,
        submodel: ProjectedSubmodel,
        y: np.ndarray,
        X: np.ndarray | None = None,
        *,
        weights: np.ndarray | None = None,
        trials: np.ndarray | None = None,
    ) -> dict[str, np.ndarray]:
        """Pointwise statistics of a projected submodel.

        ``X=None`` scores the training rows.
        """
        if trials is None and X is None:
            trials = submodel.trials
        w = submodel.weights if weights is None else weights
        return self.pointwise(
            y, submodel.predict_linear(X), submodel.dispersion, w, trials
        )

    def evaluate_reference(
        self,
        reference: ReferenceModel,
        y: np.ndarray | None = None,
        X: np.ndarray | None = None,
        *,
        weights: np.ndarray | None = None,
        trials: np.ndarray | None = None,
    ) -> dict[str, np.ndarray]:
        """Pointwise statistics of the reference model.

        With ``X=None`` and ``y=None`` the training rows are scored.
        """
        if X is None:
            y = reference.y if y is None else y
            trials = reference.trials if trials is None else trials
        elif y is None:
            raise ConfigurationError("y is required when X is given.")
        return self.pointwise(
            y, reference.predict_linear(X), reference.dispersion, weights, trials
        )

    # ---- Summaries ---------------------------------------------------

    def summarize(self, pointwise: Mapping[str, np.ndarray]) -> dict[str, StatisticSummary]:
        return {
            name: summarize_pointwise(name, values, self.small_sample_threshold)
            for name, values in pointwise.items()
        }

    def compare(
        self,
        pointwise: Mapping[str, np.ndarray],
        baseline: Mapping[str, np.ndarray],
    ) -> dict[str, StatisticSummary]:
        """Paired summaries of *pointwise* minus *baseline*."""
        return {
            name: summarize_difference(
                name, values, baseline[name], self.small_sample_threshold
            )
            for name, values in pointwise.items()
        }


__all__ = [
    "STATISTICS",
    "Evaluator",
    "PredictiveStatistic",
    "StatisticSummary",
    "summarize_difference",
    "summarize_pointwise",
]
