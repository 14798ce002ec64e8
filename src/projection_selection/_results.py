"""Typed result objects for projection predictive selection.

Frozen dataclasses that provide:

* **Attribute access** — ``result.search_path``, ``result.suggested_size``.
* **Dict-like access** — ``result["suggested_size"]``,
  ``result.get("key")``, ``"key" in result`` for consumers that prefer
  bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python, ready for JSON.
  Writing it anywhere is up to the caller.

:class:`SelectionResult` is a snapshot of a completed (or cancelled)
selection run and is never mutated after construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np

if TYPE_CHECKING:
    import pandas as pd

    from ._context import SelectionContext
    from .evaluation import StatisticSummary
    from .families import ProjectionFamily
    from .projection import ProjectedSubmodel
    from .search import SearchPath

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested dicts, lists, np.ndarray, np.integer, np.floating
    and nested result objects exposing ``to_dict`` so that
    :meth:`to_dict` returns a fully JSON-serialisable structure.
    """
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, _DictAccessMixin):
        return obj.to_dict()
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]``     — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``   — membership test

    Subclasses may override ``_SERIALIZERS`` to register custom
    conversion functions for non-primitive fields (e.g.
    ``ProjectionFamily`` → ``str``).  Serializers compose with
    :func:`_numpy_to_python`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "family": lambda f: f.name,
    }

    # Fields to exclude from to_dict() serialisation.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"context"})

    def __getitem__(self, key: str) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        """Membership test: ``"key" in result``."""
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary.

        Applies per-field serializers from ``_SERIALIZERS``, then runs
        :func:`_numpy_to_python` on every value.
        """
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# SelectionResult
# ------------------------------------------------------------------ #


def _path_to_dict(path: SearchPath) -> dict[str, Any]:
    return {
        "order": list(path.order),
        "n_candidates": path.n_candidates,
        "method": path.method,
        "scores": list(path.scores),
        "cancelled": path.cancelled,
    }


@dataclass(frozen=True)
class SelectionResult(_DictAccessMixin):
    """Outcome of a projection predictive selection run.

    Per-size curves are lists indexed by submodel size: entry ``k``
    describes the submodel made of the first ``k`` variables of the
    search path.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "family": lambda f: f.name,
        "search_path": _path_to_dict,
        "fold_paths": lambda ps: [list(p.order) for p in ps],
    }

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"context", "submodels"})

    # ---- Search ----------------------------------------------------
    search_path: SearchPath
    """Variable order found on the full data."""

    solution_terms: list[str]
    """Names of the variables in path order."""

    feature_names: list[str]
    """All candidate names, by column index."""

    family: ProjectionFamily
    """Response family of the reference model."""

    method: str
    """Search strategy (``"forward"`` or ``"l1"``)."""

    validation: str
    """``"none"`` (training data), ``"kfold"`` or ``"loo"``."""

    # ---- Statistics ------------------------------------------------
    statistics: dict[str, list[StatisticSummary]]
    """Statistic name → one summary per size."""

    reference_statistics: dict[str, StatisticSummary]
    """Statistic name → reference model summary on the same rows."""

    deltas: dict[str, list[StatisticSummary]]
    """Statistic name → paired submodel-minus-reference summary per size."""

    # ---- Size suggestion -------------------------------------------
    suggested_size: int
    """Smallest size within ``n_se`` standard errors of the baseline."""

    primary_statistic: str
    """Statistic used for :attr:`suggested_size`."""

    n_se: float
    """Standard-error multiple of the stopping rule."""

    baseline: str
    """``"reference"`` or ``"best"``."""

    # ---- Draw budgets (risk indicators) ----------------------------
    n_draws_reference: int
    """Posterior draws supplied by the reference model."""

    n_draws_search: int
    """Draws (or clusters) actually used during search."""

    n_draws_eval: int
    """Draws (or clusters) actually used for evaluation projections."""

    # ---- Warnings as data ------------------------------------------
    convergence_failures: int = 0
    """Non-converged draw projections across the whole run."""

    pareto_k: np.ndarray | None = None
    """PSIS shape per observation (LOO validation only)."""

    unreliable_observations: list[int] = field(default_factory=list)
    """Rows whose Pareto ``k`` exceeds the threshold."""

    # ---- Cross-validation ------------------------------------------
    fold_paths: list[SearchPath] = field(default_factory=list)
    """Search path of every completed K-fold fold."""

    ranking_frequencies: np.ndarray | None = None
    """``(p, max_size)`` share of fold paths containing variable ``v``
    within their first ``k`` steps (K-fold only)."""

    cancelled: bool = False
    """``True`` when a cancellation signal cut the run short."""

    # ---- Not serialised --------------------------------------------
    submodels: tuple[ProjectedSubmodel, ...] = field(default=(), repr=False, compare=False)
    """Full-data projections for each size on the evaluation draws."""

    context: SelectionContext | None = field(default=None, repr=False, compare=False)
    """Pipeline computation context.  Excluded from ``to_dict()``."""

    @property
    def max_size(self) -> int:
        return self.search_path.max_size

    def projection(self, size: int | None = None) -> ProjectedSubmodel:
        """Projected submodel of *size* (the suggested size by default)."""
        size = self.suggested_size if size is None else int(size)
        if not 0 <= size < len(self.submodels):
            raise KeyError(
                f"No projection for size {size}; available sizes are "
                f"0..{len(self.submodels) - 1}."
            )
        return self.submodels[size]

    def curve(self, statistic: str | None = None, *, relative: bool = False) -> tuple[np.ndarray, np.ndarray]:
        """``(mean, se)`` arrays of a statistic across sizes."""
        name = self.primary_statistic if statistic is None else statistic
        source = self.deltas if relative else self.statistics
        if name not in source:
            raise KeyError(name)
        rows = source[name]
        return (
            np.array([r.mean for r in rows]),
            np.array([r.se for r in rows]),
        )

    def summary_frame(self) -> pd.DataFrame:
        """Per-size table of statistics and deltas as a DataFrame."""
        from .display import selection_summary_frame

        return selection_summary_frame(self)
