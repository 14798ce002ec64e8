"""Public entry points for projection predictive variable selection.

Projection predictive selection separates *fitting* from *selecting*.
A rich reference model is fit once (elsewhere, with any sampler) and
then treated as the best available description of the data.  For a
candidate variable subset, the submodel is not fit to the data at all;
instead each reference posterior draw is **projected** onto the
subset's parameter space by minimising the Kullback-Leibler divergence
from the reference predictive distribution:

    θ⊥_s = argmin_θ  KL( p(ỹ | θ_s^ref) ‖ p(ỹ | θ, subset) )

The projected draws inherit the reference model's uncertainty, so
small submodels are judged by how well they reproduce the reference
model's predictions rather than by a noisy refit.

Three entry points are provided:

* :func:`varsel` — search on the full data and score each size on the
  training rows.  Fast; optimistic for large sizes.
* :func:`cv_varsel` — the same pipeline with honest out-of-sample
  scores: K-fold (search re-run in each fold) or PSIS-LOO (reference
  draws reweighted per left-out observation).
* :func:`project` — project an arbitrary user-chosen subset.

References:
    Piironen, J., Paasiniemi, M. & Vehtari, A. (2020). Projective
    inference in high-dimensional problems: prediction and feature
    selection. *Electronic Journal of Statistics*, 14(1), 2155–2197.

    Goutis, C. & Robert, C. P. (1998). Model choice in generalised
    linear models: a Bayesian approach via Kullback-Leibler
    projections. *Biometrika*, 85(1), 29–37.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from ._config import SelectionConfig
from ._context import SelectionContext
from ._results import SelectionResult
from ._typing import SubsetLike
from .draws import reduce_draws
from .engine import SelectionEngine
from .projection import ProjectedSubmodel, Projector
from .reference import ReferenceModel

if TYPE_CHECKING:
    from .cross_validation import RefitFn


def _config(config: SelectionConfig | None, options: dict) -> SelectionConfig:
    base = config if config is not None else SelectionConfig()
    return base.with_options(**options) if options else base


def varsel(
    reference: ReferenceModel,
    config: SelectionConfig | None = None,
    *,
    baseline: str = "reference",
    cancel_event: threading.Event | None = None,
    **options: object,
) -> SelectionResult:
    """Search and evaluate submodels on the training data.

    Args:
        reference: Fitted reference model.
        config: Options; keyword *options* override its fields, e.g.
            ``varsel(ref, method="l1", nv_max=10)``.
        baseline: ``"reference"`` or ``"best"`` for the size rule.
        cancel_event: Set it from another thread to stop the search
            between steps; a partial result is returned.

    Returns:
        :class:`SelectionResult` with ``validation == "none"``.

    Raises:
        ConfigurationError: For invalid options.
    """
    cfg = _config(config, options)
    engine = SelectionEngine(
        reference, cfg, ctx=SelectionContext(), cancel_event=cancel_event
    )
    return engine.run("none", baseline=baseline)


def cv_varsel(
    reference: ReferenceModel,
    config: SelectionConfig | None = None,
    *,
    cv_method: str = "loo",
    refit: RefitFn | None = None,
    baseline: str = "reference",
    cancel_event: threading.Event | None = None,
    **options: object,
) -> SelectionResult:
    """Cross-validated search and evaluation.

    Args:
        reference: Fitted reference model.
        config: Options; keyword *options* override its fields.
        cv_method: ``"loo"`` (PSIS, default) or ``"kfold"``.
        refit: K-fold only.  ``refit(train_mask)`` returns a
            reference model fit on the training rows; without it the
            reference is held fixed.
        baseline: ``"reference"`` or ``"best"`` for the size rule.
        cancel_event: Checked between search steps and folds.

    Returns:
        :class:`SelectionResult` with ``validation`` set to
        *cv_method*.

    Raises:
        ConfigurationError: For invalid options, an unknown
            *cv_method* or more folds than observations.
    """
    cfg = _config(config, options)
    engine = SelectionEngine(
        reference, cfg, ctx=SelectionContext(), cancel_event=cancel_event
    )
    return engine.run(cv_method, refit=refit, baseline=baseline)


def project(
    reference: ReferenceModel,
    subset: SubsetLike,
    config: SelectionConfig | None = None,
    *,
    n_draws: int | None = None,
    reduction: str | None = None,
    **options: object,
) -> ProjectedSubmodel:
    """Project *reference* onto an arbitrary variable *subset*.

    Args:
        reference: Fitted reference model.
        subset: Candidate column indices.
        config: Options (``regularization``, ``max_iter``, ``tol``,
            ``random_state``); keyword *options* override fields.
        n_draws: Draws or clusters to project; ``n_draws_eval`` from
            the config by default.
        reduction: ``"cluster"`` or ``"subsample"``;
            ``reduction_eval`` from the config by default.
    """
    cfg = _config(config, options)
    draws = reduce_draws(
        reference.draw_set(),
        cfg.n_draws_eval if n_draws is None else n_draws,
        cfg.reduction_eval if reduction is None else reduction,
        cfg.random_state,
    )
    return Projector(reference, cfg).project(subset, draws)
