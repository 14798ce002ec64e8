"""Selection engine — runs search, projection, validation and sizing.

The :class:`SelectionEngine` owns one full selection run:

1. **Validation of options** — the config is checked against the
   reference model, and the requested statistics against the family.
2. **Draw reduction** — separate search and evaluation draw sets.
3. **Search** — forward or L1 on the full data.
4. **Projection** — every prefix of the path on the evaluation draws.
5. **Evaluation** — training-row statistics, or K-fold / PSIS-LOO
   statistics via :class:`~projection_selection.cross_validation.CrossValidator`.
6. **Size suggestion** — paired deltas against the reference (or the
   best size) and the one-sided stopping rule.

Warnings raised inside worker code are counted, not emitted, and the
engine issues one warning per kind at the end of the run.  The same
messages are appended to ``SelectionContext.warnings_captured``.
"""

from __future__ import annotations

import logging
import threading
import warnings

import numpy as np

from ._config import SelectionConfig
from ._context import SelectionContext
from ._results import SelectionResult
from .cross_validation import CrossValidator, CVOutcome, RefitFn, ranking_frequencies
from .draws import reduce_draws
from .evaluation import Evaluator, StatisticSummary
from .exceptions import ConfigurationError, ConvergenceWarning, ImportanceWeightReliabilityWarning
from .projection import ProjectedSubmodel, ProjectionCache, Projector
from .reference import ReferenceModel
from .search import SearchEngine
from .size_selection import suggest_size

logger = logging.getLogger(__name__)

_VALIDATIONS = ("none", "kfold", "loo")


class SelectionEngine:
    """Run projection predictive variable selection for one reference.

    The engine is immutable after construction apart from its context
    accumulator.

    Args:
        reference: Full-data reference model.
        config: Options; defaults to :class:`SelectionConfig()`.
        ctx: Context accumulator; a fresh one when omitted.
        cancel_event: Cooperative cancellation signal checked between
            search steps and between folds.
    """

    def __init__(
        self,
        reference: ReferenceModel,
        config: SelectionConfig | None = None,
        *,
        ctx: SelectionContext | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.reference = reference
        self.config = config if config is not None else SelectionConfig()
        self.config.validate(reference.n_candidates)
        self.evaluator = Evaluator(
            reference.family,
            self.config.statistics,
            self.config.small_sample_threshold,
        )
        self.cancel_event = cancel_event

        self.ctx: SelectionContext = ctx if ctx is not None else SelectionContext()
        self.ctx.family_name = reference.family.name
        self.ctx.link = reference.family.link
        self.ctx.n_obs = reference.n_obs
        self.ctx.n_candidates = reference.n_candidates
        self.ctx.config = self.config
        self.ctx.n_jobs = self.config.resolved_n_jobs()

    def _warn(self, message: str, category: type[Warning]) -> None:
        self.ctx.warnings_captured.append(message)
        warnings.warn(message, category, stacklevel=4)

    def run(
        self,
        validation: str = "none",
        *,
        refit: RefitFn | None = None,
        baseline: str = "reference",
    ) -> SelectionResult:
        """Execute the pipeline.

        Args:
            validation: ``"none"`` (training rows), ``"kfold"`` or
                ``"loo"``.
            refit: Per-fold refit hook for K-fold validation.
            baseline: Baseline of the size rule, ``"reference"`` or
                ``"best"``.

        Returns:
            An immutable :class:`SelectionResult`.
        """
        if validation not in _VALIDATIONS:
            raise ConfigurationError(
                f"validation must be one of {list(_VALIDATIONS)}, got {validation!r}."
            )
        if baseline not in ("reference", "best"):
            raise ConfigurationError(
                f"baseline must be 'reference' or 'best', got {baseline!r}."
            )
        if refit is not None and validation != "kfold":
            raise ConfigurationError("refit is only used with validation='kfold'.")
        if validation == "kfold" and self.config.k_folds > self.reference.n_obs:
            raise ConfigurationError(
                f"k_folds={self.config.k_folds} exceeds the number of "
                f"observations ({self.reference.n_obs})."
            )
        if validation == "loo" and self.reference.n_draws < 2:
            raise ConfigurationError(
                "PSIS-LOO needs at least 2 reference draws, got "
                f"{self.reference.n_draws}."
            )

        cfg = self.config
        ref = self.reference
        ctx = self.ctx
        logger.info(
            "Selection: family=%s, n=%d, p=%d, S=%d, method=%s, validation=%s.",
            ref.family.name, ref.n_obs, ref.n_candidates, ref.n_draws,
            cfg.method, validation,
        )

        # ---- Draw reduction -------------------------------------------
        draws = ref.draw_set()
        search_draws = reduce_draws(
            draws, cfg.n_clusters_search, cfg.reduction_search, cfg.random_state
        )
        eval_draws = reduce_draws(
            draws, cfg.n_draws_eval, cfg.reduction_eval, cfg.random_state
        )
        ctx.search_draws = search_draws
        ctx.eval_draws = eval_draws

        # ---- Search ---------------------------------------------------
        cache = ProjectionCache()
        projector = Projector(ref, cfg, cache=cache)
        search = SearchEngine(ref, cfg, projector=projector, cancel_event=self.cancel_event)
        path = search.search(search_draws, warn=False)
        ctx.search_path = path
        ctx.search_convergence_failures = search.convergence_failures
        failures = search.convergence_failures

        # ---- Projection of every prefix --------------------------------
        submodels: list[ProjectedSubmodel] = []
        for subset in path.subsets:
            sub = projector.project(subset, eval_draws, warn=False)
            failures += sub.convergence_failures
            submodels.append(sub)
        ctx.cache_hits, ctx.cache_misses = cache.hits, cache.misses

        # ---- Training-row statistics ----------------------------------
        train_pw = [self.evaluator.evaluate_submodel(s, ref.y) for s in submodels]
        ctx.training_pointwise = {
            name: np.vstack([pw[name] for pw in train_pw]) for name in cfg.statistics
        }
        ctx.reference_training_pointwise = self.evaluator.evaluate_reference(ref)

        # ---- Validation -------------------------------------------------
        outcome: CVOutcome | None = None
        cancelled = path.cancelled
        if validation != "none" and not cancelled:
            cv = CrossValidator(ref, cfg, refit=refit, cancel_event=self.cancel_event)
            outcome = cv.kfold() if validation == "kfold" else cv.loo(submodels, eval_draws)
            ctx.validation = outcome
            failures += outcome.convergence_failures
            cancelled = outcome.cancelled

        if outcome is not None and outcome.evaluated.any():
            mask = outcome.evaluated
            pointwise = {k: v[:, mask] for k, v in outcome.pointwise.items()}
            ref_pointwise = {k: v[mask] for k, v in outcome.reference_pointwise.items()}
        else:
            pointwise = ctx.training_pointwise
            ref_pointwise = ctx.reference_training_pointwise

        n_sizes = len(submodels)
        statistics, deltas, ref_stats = self._summaries(pointwise, ref_pointwise, n_sizes)

        # ---- Size suggestion --------------------------------------------
        primary = cfg.primary_statistic
        if baseline == "reference":
            mean = [d.mean for d in deltas[primary]]
            se = [d.se for d in deltas[primary]]
        else:
            mean = [s.mean for s in statistics[primary]]
            se = [s.se for s in statistics[primary]]
        suggested = (
            suggest_size(
                mean,
                se,
                statistic=primary,
                baseline=baseline,
                n_se=cfg.n_se,
                n_candidates=path.max_size,
            )
            if mean
            else 0
        )

        # ---- Warnings as data -------------------------------------------
        if failures:
            self._warn(
                f"{failures} draw projections did not converge within "
                f"{cfg.max_iter} iterations; their last iterates were used.",
                ConvergenceWarning,
            )
        pareto_k = None
        unreliable: list[int] = []
        if outcome is not None and outcome.psis is not None:
            pareto_k = outcome.psis.pareto_k
            unreliable = [int(i) for i in outcome.unreliable]
            if unreliable:
                self._warn(
                    f"Pareto k exceeds {cfg.pareto_k_threshold} for "
                    f"{len(unreliable)} of {ref.n_obs} observations; their "
                    f"leave-one-out estimates may be unreliable.",
                    ImportanceWeightReliabilityWarning,
                )

        fold_paths = outcome.fold_paths if outcome is not None else []
        freqs = (
            ranking_frequencies(fold_paths, ref.n_candidates)
            if validation == "kfold" and fold_paths
            else None
        )

        logger.info("Selection finished: path=%s, suggested size=%d.", path.order, suggested)
        return SelectionResult(
            search_path=path,
            solution_terms=[ref.feature_names[j] for j in path.order],
            feature_names=list(ref.feature_names),
            family=ref.family,
            method=cfg.method,
            validation=validation,
            statistics=statistics,
            reference_statistics=ref_stats,
            deltas=deltas,
            suggested_size=suggested,
            primary_statistic=primary,
            n_se=cfg.n_se,
            baseline=baseline,
            n_draws_reference=ref.n_draws,
            n_draws_search=search_draws.n_draws,
            n_draws_eval=eval_draws.n_draws,
            convergence_failures=failures,
            pareto_k=pareto_k,
            unreliable_observations=unreliable,
            fold_paths=list(fold_paths),
            ranking_frequencies=freqs,
            cancelled=cancelled,
            submodels=tuple(submodels),
            context=ctx,
        )

    def _summaries(
        self,
        pointwise: dict[str, np.ndarray],
        ref_pointwise: dict[str, np.ndarray],
        n_sizes: int,
    ) -> tuple[
        dict[str, list[StatisticSummary]],
        dict[str, list[StatisticSummary]],
        dict[str, StatisticSummary],
    ]:
        ev = self.evaluator
        statistics: dict[str, list[StatisticSummary]] = {}
        deltas: dict[str, list[StatisticSummary]] = {}
        for name in self.config.statistics:
            per_size = [{name: pointwise[name][k]} for k in range(n_sizes)]
            statistics[name] = [ev.summarize(pw)[name] for pw in per_size]
            deltas[name] = [
                ev.compare(pw, {name: ref_pointwise[name]})[name] for pw in per_size
            ]
        return statistics, deltas, ev.summarize(ref_pointwise)
