"""Configuration for the projection_selection package.

Every algorithmic option lives on a frozen :class:`SelectionConfig`
that is passed explicitly into the engine, search, projection and
cross-validation constructors.  The only process-wide setting is the
default worker count, which follows the resolution order below when a
config leaves ``n_jobs`` as ``None``.

Resolution order for the worker count (first match wins):
    1. Programmatic override via :func:`set_n_jobs`.
    2. The ``PROJECTION_SELECTION_N_JOBS`` environment variable.
    3. ``1`` (sequential).

Examples:
    Run worker pools on four threads from the shell::

        export PROJECTION_SELECTION_N_JOBS=4

    Or programmatically::

        import projection_selection
        projection_selection.set_n_jobs(4)

    Restore the default resolution::

        projection_selection.set_n_jobs(None)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace

from .exceptions import ConfigurationError

_ENV_VAR = "PROJECTION_SELECTION_N_JOBS"

# Sentinel indicating "no programmatic override has been set".
_n_jobs_override: int | None = None

_VALID_METHODS = frozenset({"forward", "l1"})
_VALID_REDUCTIONS = frozenset({"cluster", "subsample"})
_VALID_CRITERIA = frozenset({"kl", "elpd"})
_VALID_STATISTICS = frozenset({"elpd", "mlpd", "mse", "rmse", "acc"})


def get_n_jobs() -> int:
    """Return the default worker count.

    Resolution order:
        1. Value set by :func:`set_n_jobs`.
        2. ``PROJECTION_SELECTION_N_JOBS`` environment variable.
        3. ``1``.

    Returns:
        A non-zero integer (``-1`` means "all cores" for joblib).
    """
    # 1. Programmatic override
    if _n_jobs_override is not None:
        return _n_jobs_override

    # 2. Environment variable
    env = os.environ.get(_ENV_VAR, "").strip()
    if env:
        try:
            value = int(env)
        except ValueError:
            raise ConfigurationError(
                f"{_ENV_VAR} must be an integer, got {env!r}."
            ) from None
        if value == 0:
            raise ConfigurationError(f"{_ENV_VAR} must be non-zero.")
        return value

    # 3. Sequential default
    return 1


def set_n_jobs(n_jobs: int | None) -> None:
    """Override the default worker count.

    Args:
        n_jobs: Positive worker count, ``-1`` for all cores, or
            ``None`` to restore the default resolution order.

    Raises:
        ConfigurationError: If *n_jobs* is zero.
    """
    global _n_jobs_override
    if n_jobs is not None and int(n_jobs) == 0:
        raise ConfigurationError("n_jobs must be non-zero.")
    _n_jobs_override = None if n_jobs is None else int(n_jobs)


@dataclass(frozen=True)
class SelectionConfig:
    """Options for search, projection, evaluation and validation.

    The instance is immutable; use :meth:`with_options` to derive a
    modified copy.  :meth:`validate` is called by every consumer so
    that an invalid option fails before any work is done.
    """

    method: str = "forward"
    """Search strategy: ``"forward"`` or ``"l1"``."""

    nv_max: int | None = None
    """Largest submodel size searched (``None`` = all candidates)."""

    n_clusters_search: int = 20
    """Draws (or clusters) used for projections during search."""

    n_draws_eval: int = 400
    """Draws (or clusters) used for evaluation projections."""

    reduction_search: str = "cluster"
    """Draw reduction for search: ``"cluster"`` or ``"subsample"``."""

    reduction_eval: str = "subsample"
    """Draw reduction for evaluation: ``"cluster"`` or ``"subsample"``."""

    regularization: float = 0.0
    """L2 penalty weight on projected slope coefficients."""

    max_iter: int = 50
    """Iteration cap for the iterative (non-Gaussian) projection."""

    tol: float = 1e-7
    """Relative objective-change threshold for projection convergence."""

    search_criterion: str = "kl"
    """Forward-search score: ``"kl"`` (divergence) or ``"elpd"``."""

    statistics: tuple[str, ...] = ("elpd", "mlpd")
    """Predictive statistics to evaluate per submodel size."""

    primary_statistic: str = "elpd"
    """Statistic that drives the size suggestion."""

    n_se: float = 1.0
    """Standard-error multiple used by the stopping rule."""

    pareto_k_threshold: float = 0.7
    """Pareto shape above which an observation's LOO weights are flagged."""

    small_sample_threshold: int = 20
    """Row count below which statistic summaries are flagged."""

    k_folds: int = 5
    """Number of folds for K-fold validation."""

    n_jobs: int | None = None
    """Worker count; ``None`` defers to :func:`get_n_jobs`."""

    random_state: int | None = None
    """Seed for draw reduction and fold assignment."""

    l1_n_alphas: int = 100
    """Number of penalty strengths on the L1 path."""

    l1_eps: float = 1e-4
    """Ratio of smallest to largest penalty on the L1 path."""

    def with_options(self, **changes: object) -> SelectionConfig:
        """Return a copy with *changes* applied."""
        return replace(self, **changes)  # type: ignore[arg-type]

    def resolved_n_jobs(self) -> int:
        """Worker count after applying the process-wide default."""
        return get_n_jobs() if self.n_jobs is None else self.n_jobs

    def validate(self, n_candidates: int | None = None) -> None:
        """Raise :class:`ConfigurationError` for invalid options.

        Args:
            n_candidates: Number of candidate variables; when given,
                ``nv_max`` is checked against it.
        """
        if self.method not in _VALID_METHODS:
            raise ConfigurationError(
                f"Unknown search method {self.method!r}. "
                f"Choose from: {sorted(_VALID_METHODS)}"
            )
        for label, value in (
            ("reduction_search", self.reduction_search),
            ("reduction_eval", self.reduction_eval),
        ):
            if value not in _VALID_REDUCTIONS:
                raise ConfigurationError(
                    f"{label} must be one of {sorted(_VALID_REDUCTIONS)}, "
                    f"got {value!r}."
                )
        if self.search_criterion not in _VALID_CRITERIA:
            raise ConfigurationError(
                f"search_criterion must be one of {sorted(_VALID_CRITERIA)}, "
                f"got {self.search_criterion!r}."
            )
        if not self.statistics:
            raise ConfigurationError("At least one statistic is required.")
        unknown = [s for s in self.statistics if s not in _VALID_STATISTICS]
        if unknown:
            raise ConfigurationError(
                f"Unknown statistic(s) {unknown}. "
                f"Choose from: {sorted(_VALID_STATISTICS)}"
            )
        if self.primary_statistic not in self.statistics:
            raise ConfigurationError(
                f"primary_statistic {self.primary_statistic!r} must be one "
                f"of the requested statistics {list(self.statistics)}."
            )
        if self.n_clusters_search < 1 or self.n_draws_eval < 1:
            raise ConfigurationError("Draw budgets must be at least 1.")
        if self.regularization < 0:
            raise ConfigurationError("regularization must be non-negative.")
        if self.max_iter < 1:
            raise ConfigurationError("max_iter must be at least 1.")
        if not self.tol > 0:
            raise ConfigurationError("tol must be positive.")
        if self.n_se < 0:
            raise ConfigurationError("n_se must be non-negative.")
        if not self.pareto_k_threshold > 0:
            raise ConfigurationError("pareto_k_threshold must be positive.")
        if self.small_sample_threshold < 0:
            raise ConfigurationError("small_sample_threshold must be >= 0.")
        if self.k_folds < 2:
            raise ConfigurationError("k_folds must be at least 2.")
        if self.n_jobs is not None and self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be non-zero.")
        if self.l1_n_alphas < 2 or not 0 < self.l1_eps < 1:
            raise ConfigurationError(
                "l1_n_alphas must be >= 2 and l1_eps must lie in (0, 1)."
            )
        if self.nv_max is not None:
            if self.nv_max < 0:
                raise ConfigurationError("nv_max must be non-negative.")
            if n_candidates is not None and self.nv_max > n_candidates:
                raise ConfigurationError(
                    f"nv_max={self.nv_max} exceeds the number of candidate "
                    f"variables ({n_candidates})."
                )

    def resolved_nv_max(self, n_candidates: int) -> int:
        """``nv_max`` with ``None`` resolved to *n_candidates*."""
        self.validate(n_candidates)
        return n_candidates if self.nv_max is None else self.nv_max


__all__ = ["SelectionConfig", "get_n_jobs", "set_n_jobs"]
