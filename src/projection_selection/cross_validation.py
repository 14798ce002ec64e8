"""Cross-validation of the search and projection pipeline.

K-fold
~~~~~~
Rows are split into ``k_folds`` folds (``sklearn.model_selection.KFold``
with shuffling).  For every fold the reference model is restricted to
the training rows (or refit through an optional hook), the search is
re-run on those rows, each prefix of the fold's path is projected, and
the held-out rows are scored.  Held-out pointwise values from all
folds are pooled before summarising, so unequal fold sizes do not bias
the mean.  Each fold owns a fresh :class:`ProjectionCache`.

Leave-one-out
~~~~~~~~~~~~~
No refitting at all: the full-data reference draws are reweighted per
observation with Pareto-smoothed importance weights
(:func:`~projection_selection.psis.psis_loo`).  The submodels are
projected once on the full data; only the weighting used to score
each observation changes.  For clustered draw sets a cluster's weight
is the sum of its members' weights.  Observations whose Pareto shape
exceeds ``pareto_k_threshold`` are flagged but still used.

Folds run on a ``joblib`` thread pool when ``n_jobs`` allows; each
fold writes only the columns of its held-out rows.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np
from joblib import Parallel, delayed
from sklearn.model_selection import KFold

from ._config import SelectionConfig
from .draws import ReducedDrawSet, reduce_draws
from .evaluation import Evaluator
from .exceptions import ConfigurationError
from .projection import ProjectedSubmodel, ProjectionCache, Projector
from .psis import PSISResult, psis_loo
from .reference import ReferenceModel
from .search import SearchEngine, SearchPath

logger = logging.getLogger(__name__)

RefitFn = Callable[[np.ndarray], ReferenceModel]


# ------------------------------------------------------------------ #
# Fold partition
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class CVFold:
    """One fold: boolean masks over the full row set.

    Attributes:
        index: Fold number.
        train: Training-row mask ``(n,)``.
        test: Held-out-row mask ``(n,)``.
    """

    index: int
    train: np.ndarray
    test: np.ndarray

    @property
    def train_idx(self) -> np.ndarray:
        return np.flatnonzero(self.train)

    @property
    def test_idx(self) -> np.ndarray:
        return np.flatnonzero(self.test)


def kfold_partition(
    n_obs: int,
    k_folds: int = 5,
    random_state: int | None = None,
) -> list[CVFold]:
    """Shuffle rows into *k_folds* disjoint held-out sets.

    Every row is held out exactly once.

    Raises:
        ConfigurationError: If ``k_folds`` is below 2 or above *n_obs*.
    """
    if k_folds < 2:
        raise ConfigurationError("k_folds must be at least 2.")
    if k_folds > n_obs:
        raise ConfigurationError(
            f"k_folds={k_folds} exceeds the number of observations ({n_obs})."
        )
    kf = KFold(n_splits=k_folds, shuffle=True, random_state=random_state)
    folds = []
    for i, (_, test_idx) in enumerate(kf.split(np.zeros((n_obs, 1)))):
        test = np.zeros(n_obs, dtype=bool)
        test[test_idx] = True
        folds.append(CVFold(index=i, train=~test, test=test))
    return folds


def ranking_frequencies(paths: Sequence[SearchPath], n_candidates: int) -> np.ndarray:
    """Fraction of paths that include each variable within ``k`` steps.

    Returns:
        Array ``(n_candidates, max_size)`` whose entry ``[v, k - 1]``
        is the share of *paths* whose first ``k`` variables contain
        ``v``.
    """
    if not paths:
        return np.zeros((n_candidates, 0))
    max_size = max(p.max_size for p in paths)
    counts = np.zeros((n_candidates, max_size))
    for path in paths:
        for pos, v in enumerate(path.order):
            counts[v, pos:] += 1
    return counts / len(paths)


# ------------------------------------------------------------------ #
# Outcome
# ------------------------------------------------------------------ #


@dataclass
class CVOutcome:
    """Pointwise validation values for every submodel size.

    Attributes:
        mode: ``"kfold"`` or ``"loo"``.
        pointwise: Statistic name → ``(n_sizes, n)`` array; ``NaN``
            for rows not evaluated (folds skipped after cancellation).
        reference_pointwise: Statistic name → ``(n,)`` array.
        folds: Partition used (K-fold only).
        fold_paths: Search path of each completed fold.
        psis: PSIS output (LOO only).
        unreliable: Row indices with Pareto ``k`` above the threshold.
        convergence_failures: Non-converged draw projections.
        cancelled: ``True`` if a cancellation signal stopped the run.
    """

    mode: str
    pointwise: dict[str, np.ndarray]
    reference_pointwise: dict[str, np.ndarray]
    folds: list[CVFold] = field(default_factory=list)
    fold_paths: list[SearchPath] = field(default_factory=list)
    psis: PSISResult | None = None
    unreliable: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    convergence_failures: int = 0
    cancelled: bool = False

    @property
    def evaluated(self) -> np.ndarray:
        """Mask of rows that carry held-out values."""
        first = next(iter(self.reference_pointwise.values()))
        return np.isfinite(first)


@dataclass
class _FoldResult:
    fold: CVFold
    path: SearchPath
    pointwise: dict[str, np.ndarray]
    reference_pointwise: dict[str, np.ndarray]
    convergence_failures: int


# ------------------------------------------------------------------ #
# CrossValidator
# ------------------------------------------------------------------ #


class CrossValidator:
    """Cross-validate search and projection for one reference model.

    Args:
        reference: Full-data reference model.
        config: Options (``k_folds``, draw budgets, statistics,
            ``pareto_k_threshold``, ``n_jobs``, ``random_state``).
        refit: Optional ``refit(train_mask) -> ReferenceModel`` used to
            refit the reference on each training fold.  Without it the
            reference is held fixed and restricted to training rows.
        cancel_event: Checked before every fold and every search step.
    """

    def __init__(
        self,
        reference: ReferenceModel,
        config: SelectionConfig | None = None,
        *,
        refit: RefitFn | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.reference = reference
        self.config = config if config is not None else SelectionConfig()
        self.config.validate(reference.n_candidates)
        self.refit = refit
        self.cancel_event = cancel_event
        self.evaluator = Evaluator(
            reference.family,
            self.config.statistics,
            self.config.small_sample_threshold,
        )

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    # ---- K-fold ------------------------------------------------------

    def _train_reference(self, fold: CVFold) -> ReferenceModel:
        if self.refit is None:
            return self.reference.restrict(fold.train_idx)
        ref = self.refit(fold.train.copy())
        if not isinstance(ref, ReferenceModel):
            raise ConfigurationError(
                f"refit must return a ReferenceModel, got {type(ref).__name__}."
            )
        if ref.n_obs != fold.train.sum() or ref.n_candidates != self.reference.n_candidates:
            raise ConfigurationError(
                f"refit for fold {fold.index} returned a model with "
                f"{ref.n_obs} rows and {ref.n_candidates} candidates; expected "
                f"{int(fold.train.sum())} and {self.reference.n_candidates}."
            )
        return ref

    def _run_fold(self, fold: CVFold, config: SelectionConfig) -> _FoldResult | None:
        if self._cancelled():
            return None
        logger.debug("Fold %d: %d training rows.", fold.index, int(fold.train.sum()))
        train_ref = self._train_reference(fold)
        seed = None if config.random_state is None else config.random_state + fold.index
        draws = train_ref.draw_set()
        search_draws = reduce_draws(
            draws, config.n_clusters_search, config.reduction_search, seed
        )
        eval_draws = reduce_draws(draws, config.n_draws_eval, config.reduction_eval, seed)

        projector = Projector(train_ref, config, cache=ProjectionCache())
        engine = SearchEngine(
            train_ref, config, projector=projector, cancel_event=self.cancel_event
        )
        path = engine.search(search_draws, warn=False)
        if path.cancelled:
            return None
        failures = engine.convergence_failures

        X_test = self.reference.X[fold.test]
        y_test = self.reference.y[fold.test]
        t_test = self.reference.trials[fold.test]
        per_size: dict[str, list[np.ndarray]] = {s: [] for s in config.statistics}
        for subset in path.subsets:
            sub = projector.project(subset, eval_draws, warn=False)
            failures += sub.convergence_failures
            pw = self.evaluator.evaluate_submodel(sub, y_test, X_test, trials=t_test)
            for name, values in pw.items():
                per_size[name].append(values)
        ref_pw = self.evaluator.evaluate_reference(
            train_ref, y_test, X_test, trials=t_test
        )
        return _FoldResult(
            fold=fold,
            path=path,
            pointwise={k: np.vstack(v) for k, v in per_size.items()},
            reference_pointwise=ref_pw,
            convergence_failures=failures,
        )

    def kfold(self) -> CVOutcome:
        """Run K-fold validation and pool held-out values."""
        cfg = self.config
        n = self.reference.n_obs
        folds = kfold_partition(n, cfg.k_folds, cfg.random_state)
        jobs = cfg.resolved_n_jobs()

        if jobs == 1:
            results = [self._run_fold(f, cfg) for f in folds]
        else:
            # Folds in parallel; work inside each fold stays serial.
            inner = cfg.with_options(n_jobs=1)
            results = Parallel(n_jobs=jobs, prefer="threads")(
                delayed(self._run_fold)(f, inner) for f in folds
            )

        n_sizes = cfg.resolved_nv_max(self.reference.n_candidates) + 1
        pointwise = {s: np.full((n_sizes, n), np.nan) for s in cfg.statistics}
        ref_pointwise = {s: np.full(n, np.nan) for s in cfg.statistics}
        done = [r for r in results if r is not None]
        for r in done:
            for name in cfg.statistics:
                pointwise[name][:, r.fold.test] = r.pointwise[name]
                ref_pointwise[name][r.fold.test] = r.reference_pointwise[name]
        cancelled = len(done) < len(folds)
        if cancelled:
            logger.info("K-fold validation cancelled after %d of %d folds.", len(done), len(folds))
        return CVOutcome(
            mode="kfold",
            pointwise=pointwise,
            reference_pointwise=ref_pointwise,
            folds=folds,
            fold_paths=[r.path for r in done],
            convergence_failures=sum(r.convergence_failures for r in done),
            cancelled=cancelled,
        )

    # ---- Leave-one-out -----------------------------------------------

    def loo(
        self,
        submodels: Sequence[ProjectedSubmodel],
        eval_draws: ReducedDrawSet,
    ) -> CVOutcome:
        """PSIS-LOO scores for submodels projected on the full data.

        Args:
            submodels: One projected submodel per path prefix, all
                projected on *eval_draws*.
            eval_draws: The reduced draw set behind *submodels*; its
                labels carry the importance weights over to clusters.
        """
        ref = self.reference
        psis = psis_loo(ref.log_likelihood())
        unreliable = psis.unreliable(self.config.pareto_k_threshold)

        ref_pw = self.evaluator.evaluate_reference(ref, weights=psis.weights)
        # Importance weights over the represented draws, per row.
        sub_w = eval_draws.aggregate_source_weights(psis.weights)

        pointwise: dict[str, list[np.ndarray]] = {s: [] for s in self.config.statistics}
        for sub in submodels:
            pw = self.evaluator.evaluate_submodel(sub, ref.y, weights=sub_w)
            for name, values in pw.items():
                pointwise[name].append(values)
        logger.debug(
            "PSIS-LOO: %d of %d observations above k=%.2f.",
            unreliable.size, ref.n_obs, self.config.pareto_k_threshold,
        )
        return CVOutcome(
            mode="loo",
            pointwise={k: np.vstack(v) for k, v in pointwise.items()},
            reference_pointwise=ref_pw,
            psis=psis,
            unreliable=unreliable,
        )


__all__ = [
    "CVFold",
    "CVOutcome",
    "CrossValidator",
    "kfold_partition",
    "ranking_frequencies",
]
