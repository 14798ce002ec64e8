"""Computation context — mutable accumulator for pipeline artifacts.

A :class:`SelectionContext` travels through the selection pipeline,
collecting intermediate artifacts at their natural computation points.
Downstream consumers (display, debugging, benchmarks) read from the
context instead of re-computing.

The context is **not** part of the public serialisation API: it carries
NumPy arrays and draw sets that should not be JSON'd.
:meth:`~_results.SelectionResult.to_dict` skips it automatically.

Lifecycle::

    ┌──────────────────────────────────────────────────┐
    │  varsel() / cv_varsel()                          │
    │  ├─ ctx = SelectionContext()                     │
    │  ├─ SelectionEngine(reference, config, ctx=ctx)  │
    │  │   ├─ ctx.search_draws / ctx.eval_draws        │
    │  │   ├─ ctx.search_path                          │
    │  │   ├─ ctx.training_pointwise                   │
    │  │   ├─ ctx.validation (CVOutcome)               │
    │  │   └─ ctx.warnings_captured                    │
    │  └─ result.context = ctx                         │
    └──────────────────────────────────────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np


@dataclass
class SelectionContext:
    """Mutable accumulator for computation artifacts.

    Every field defaults to ``None`` (or an empty container) so the
    context can be created empty and populated incrementally.  A
    ``None`` field means that pipeline stage has not run.
    """

    # ---- Inputs --------------------------------------------------
    family_name: str | None = None
    """Short family name (e.g. ``"poisson"``)."""

    link: str | None = None
    """Link name (e.g. ``"logit"``)."""

    n_obs: int | None = None
    """Training rows."""

    n_candidates: int | None = None
    """Candidate variables."""

    config: Any = None
    """The :class:`~projection_selection.SelectionConfig` used."""

    n_jobs: int | None = None
    """Resolved worker count."""

    # ---- Draw reduction ------------------------------------------
    search_draws: Any = None
    """Reduced draw set used for search."""

    eval_draws: Any = None
    """Reduced draw set used for evaluation projections."""

    # ---- Search --------------------------------------------------
    search_path: Any = None
    """Full-data :class:`~projection_selection.SearchPath`."""

    search_convergence_failures: int = 0
    """Non-converged draw projections of the chosen search steps."""

    cache_hits: int = 0
    """Projection cache hits on the full-data cache."""

    cache_misses: int = 0
    """Projection cache misses on the full-data cache."""

    # ---- Evaluation ----------------------------------------------
    training_pointwise: dict[str, np.ndarray] = field(default_factory=dict)
    """Statistic → ``(n_sizes, n)`` training-row values."""

    reference_training_pointwise: dict[str, np.ndarray] = field(default_factory=dict)
    """Statistic → ``(n,)`` reference values on the training rows."""

    validation: Any = None
    """:class:`~projection_selection.cross_validation.CVOutcome`, if any."""

    # ---- Warnings ------------------------------------------------
    warnings_captured: list[str] = field(default_factory=list)
    """Messages of every warning the run emitted, in order."""
