"""Suggested submodel size from a statistic curve.

The rule scans sizes in increasing order and returns the first size
whose estimate is within ``n_se`` standard errors of the baseline:

    higher-is-better (elpd, mlpd, acc):   m_k − b + n_se · se_k ≥ 0
    lower-is-better  (mse, rmse):         m_k − b − n_se · se_k ≤ 0

With ``baseline="reference"`` the baseline ``b`` is the reference
model's statistic.  Passing paired differences (submodel minus
reference) as the curve with ``reference_value=0`` gives the usual
rule on paired standard errors.  With ``baseline="best"`` the baseline
is the best point on the curve itself.

When no size qualifies the full candidate count is returned.  The
function is independent of how the curve was produced, so the same
rule applies to training and cross-validated curves.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from .evaluation import STATISTICS
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def suggest_size(
    mean: Sequence[float] | np.ndarray,
    se: Sequence[float] | np.ndarray,
    *,
    statistic: str = "elpd",
    baseline: str = "reference",
    reference_value: float = 0.0,
    n_se: float = 1.0,
    sizes: Sequence[int] | None = None,
    n_candidates: int | None = None,
) -> int:
    """Smallest size statistically indistinguishable from the baseline.

    Args:
        mean: Statistic estimate per size.
        se: Standard error per size (``NaN`` is treated as zero).
        statistic: Name from :data:`~projection_selection.evaluation.STATISTICS`;
            decides the direction of the comparison.
        baseline: ``"reference"`` or ``"best"``.
        reference_value: Baseline value for ``baseline="reference"``.
            Zero when *mean* already holds differences to the
            reference.
        n_se: Standard-error multiple of the margin.
        sizes: Size of each curve point; ``0, 1, …`` by default.
        n_candidates: Returned when no size qualifies (defaults to the
            largest size on the curve).

    Returns:
        The suggested size.

    Raises:
        ConfigurationError: For unknown statistics or baselines,
            negative *n_se*, or mismatched lengths.
    """
    if statistic not in STATISTICS:
        raise ConfigurationError(
            f"Unknown statistic {statistic!r}. Choose from: {sorted(STATISTICS)}"
        )
    if baseline not in ("reference", "best"):
        raise ConfigurationError(
            f"baseline must be 'reference' or 'best', got {baseline!r}."
        )
    if n_se < 0:
        raise ConfigurationError("n_se must be non-negative.")
    m = np.asarray(mean, dtype=float)
    s = np.nan_to_num(np.asarray(se, dtype=float), nan=0.0)
    if m.shape != s.shape or m.ndim != 1 or m.size == 0:
        raise ConfigurationError("mean and se must be non-empty and of equal length.")
    size_arr = np.arange(m.size) if sizes is None else np.asarray(sizes, dtype=int)
    if size_arr.shape != m.shape:
        raise ConfigurationError("sizes must match the length of mean.")
    fallback = int(size_arr.max()) if n_candidates is None else int(n_candidates)

    higher = STATISTICS[statistic].higher_is_better
    if baseline == "best":
        finite = m[np.isfinite(m)]
        if finite.size == 0:
            return fallback
        b = float(finite.max() if higher else finite.min())
    else:
        b = float(reference_value)

    order = np.argsort(size_arr, kind="stable")
    for i in order:
        if not np.isfinite(m[i]):
            continue
        if higher:
            ok = m[i] - b + n_se * s[i] >= 0
        else:
            ok = m[i] - b - n_se * s[i] <= 0
        if ok:
            logger.debug("Suggested size %d (%s).", size_arr[i], statistic)
            return int(size_arr[i])
    return fallback


__all__ = ["suggest_size"]
