"""Formatted ASCII table and DataFrame views of selection results.

The printed table mirrors the statsmodels summary style: a header
panel with the run's metadata (family, search method, validation,
draw budgets) and a body with one row per submodel size showing the
variable added, the primary statistic and its paired difference to the
reference model.  The suggested size is marked with ``<-``.

Reliability notes (non-converged projections, high Pareto ``k``,
small samples, cancellation) are listed in a closing panel.
"""

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from ._results import SelectionResult


def _truncate(name: str, max_len: int) -> str:
    """Truncate *name* to *max_len*, appending ``'...'`` if needed."""
    if len(name) <= max_len:
        return name
    return name[: max_len - 3] + "..."


def _fmt(val: float, width: int = 11, digits: int = 3) -> str:
    """Fixed-width number; ``N/A`` for NaN."""
    if val is None or not np.isfinite(val):
        return f"{'N/A':>{width}}"
    return f"{val:>{width}.{digits}f}"


def _wrap(text: str, width: int = 80, indent: int = 2) -> str:
    """Word-wrap *text*, indenting continuation lines only."""
    return textwrap.fill(
        text,
        width=width,
        initial_indent="",
        subsequent_indent=" " * indent,
    )


def selection_summary_frame(result: SelectionResult) -> pd.DataFrame:
    """One row per submodel size.

    Columns: ``size``, ``variable`` (added at that size, ``None`` for
    the intercept-only model), then ``<stat>``, ``<stat>_se``,
    ``<stat>_diff`` and ``<stat>_diff_se`` for every evaluated
    statistic, and ``suggested``.
    """
    order = result.search_path.order
    n_sizes = len(result.search_path)
    rows = []
    for k in range(n_sizes):
        row: dict[str, object] = {
            "size": k,
            "variable": result.feature_names[order[k - 1]] if k > 0 else None,
        }
        for name, per_size in result.statistics.items():
            row[name] = per_size[k].mean
            row[f"{name}_se"] = per_size[k].se
            row[f"{name}_diff"] = result.deltas[name][k].mean
            row[f"{name}_diff_se"] = result.deltas[name][k].se
        row["suggested"] = k == result.suggested_size
        rows.append(row)
    return pd.DataFrame(rows).set_index("size")


def print_selection_table(
    result: SelectionResult,
    *,
    title: str = "Projection Predictive Variable Selection",
    statistic: str | None = None,
) -> None:
    """Print the selection path in a formatted ASCII table.

    Args:
        result: Result from :func:`~projection_selection.varsel` or
            :func:`~projection_selection.cv_varsel`.
        title: Title for the output table.
        statistic: Statistic to show; the primary one by default.
    """
    stat = result.primary_statistic if statistic is None else statistic
    if stat not in result.statistics:
        raise KeyError(f"Statistic {stat!r} was not evaluated.")

    print("=" * 80)
    for line in textwrap.wrap(title, width=78):
        print(f"{line:^80}")
    print("=" * 80)

    col1, col2 = 40, 38
    validation = {"none": "training data", "kfold": "K-fold", "loo": "PSIS-LOO"}[
        result.validation
    ]
    header = [
        ("Family:", f"{result.family.name} ({result.family.link})",
         "Candidates:", str(len(result.feature_names))),
        ("Search:", result.method, "Draws (reference):", str(result.n_draws_reference)),
        ("Validation:", validation, "Draws (search):", str(result.n_draws_search)),
        ("Statistic:", stat, "Draws (evaluation):", str(result.n_draws_eval)),
    ]
    for ll, lv, rl, rv in header:
        print(f"{ll:<16}{lv:<{col1 - 16}}{rl:>{col2 - 11}} {rv:>10}")
    ref = result.reference_statistics[stat]
    ref_str = f"{ref.mean:.3f} ({ref.se:.3f})"
    print(
        f"{'Reference:':<16}{ref_str:<{col1 - 16}}"
        f"{'Suggested size:':>{col2 - 11}} {result.suggested_size:>10}"
    )
    print("-" * 80)

    # ── Table geometry (W = 80 chars) ─────────────────────────── #
    #   Size (6) | Variable (24) | stat (12) | se (11) | diff (12) | se (11) | mark (4)
    print(
        f"{'Size':>4}  {'Variable':<24}{stat:>12}{'SE':>11}"
        f"{'Diff':>12}{'SE':>11}{'':>4}"
    )
    print("-" * 80)
    order = result.search_path.order
    for k, (s, d) in enumerate(zip(result.statistics[stat], result.deltas[stat])):
        name = result.feature_names[order[k - 1]] if k > 0 else "(intercept)"
        mark = "  <-" if k == result.suggested_size else ""
        print(
            f"{k:>4}  {_truncate(name, 23):<24}{_fmt(s.mean, 12)}{_fmt(s.se)}"
            f"{_fmt(d.mean, 12)}{_fmt(d.se)}{mark}"
        )

    # ── Notes ──────────────────────────────────────────────────── #
    notes: list[str] = []
    if result.cancelled:
        notes.append("The run was cancelled; results are partial.")
    if result.convergence_failures:
        notes.append(
            f"{result.convergence_failures} draw projections did not "
            f"converge; their last iterates were used."
        )
    if result.unreliable_observations:
        notes.append(
            f"{len(result.unreliable_observations)} observations have "
            f"Pareto k above the reliability threshold."
        )
    if ref.small_sample:
        notes.append(
            f"Only {ref.n_obs} observations were scored; standard errors "
            f"are rough."
        )
    if result.n_draws_search < result.n_draws_reference:
        notes.append(
            f"Search used {result.n_draws_search} of "
            f"{result.n_draws_reference} draws; increase n_clusters_search "
            f"if the ordering looks unstable."
        )

    if notes:
        print("-" * 80)
        print("Notes")
        print("-" * 80)
        for note in notes:
            print(_wrap(f"  [!] {note}", width=80, indent=6))
    print("=" * 80)


__all__ = ["print_selection_table", "selection_summary_frame"]
