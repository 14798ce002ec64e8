"""Search for a nested sequence of variable subsets.

Two strategies produce the same :class:`SearchPath`:

Forward search
~~~~~~~~~~~~~~
Starting from the intercept-only model, every remaining candidate is
tentatively added and the resulting submodel is projected.  The
candidate with the best score joins the path; ties go to the lowest
variable index.  Scores are either the draw-weighted divergence from
the reference (``search_criterion="kl"``, lower is better) or the
training-data elpd of the projected submodel
(``search_criterion="elpd"``, higher is better).  Candidates within a
step are scored on a ``joblib`` thread pool when more than one worker
is configured.

L1 search
~~~~~~~~~
A single Lasso path (``sklearn.linear_model.lasso_path``) is computed
on pseudo-data derived from the reference model's mean linear
predictor: the IRLS working response and weights of the family at the
draw-weighted mean fit.  Columns are standardised so that the penalty
treats every candidate alike.  Variables enter the path in the order
their coefficients first become non-zero as the penalty decreases;
ties and variables that never enter are ordered by index.

Both strategies honour ``nv_max`` and a cooperative cancellation
event, checked between steps.
"""

from __future__ import annotations

import logging
import threading
import warnings
from dataclasses import dataclass, field

import numpy as np
from joblib import Parallel, delayed
from sklearn.linear_model import lasso_path

from ._config import SelectionConfig
from ._typing import VariableSubset
from .draws import PosteriorDrawSet
from .evaluation import Evaluator
from .exceptions import ConfigurationError, ConvergenceWarning
from .projection import ProjectedSubmodel, Projector
from .reference import ReferenceModel

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# SearchPath
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class SearchPath:
    """Ordered variable path; prefix ``k`` is the size-``k`` subset.

    Attributes:
        order: Variable indices in the order they were added.
        n_candidates: Total number of candidate variables.
        method: ``"forward"`` or ``"l1"``.
        scores: Search score recorded at each step (divergence, elpd
            or the penalty at entry for L1).
        cancelled: ``True`` when the search stopped on a cancellation
            signal before reaching ``nv_max``.
    """

    order: VariableSubset
    n_candidates: int
    method: str = "forward"
    scores: tuple[float, ...] = field(default=())
    cancelled: bool = False

    def __post_init__(self) -> None:
        order = tuple(int(j) for j in self.order)
        if len(set(order)) != len(order):
            raise ConfigurationError(f"Search path {order} repeats a variable.")
        if any(not 0 <= j < self.n_candidates for j in order):
            raise ConfigurationError(
                f"Search path {order} has indices outside [0, {self.n_candidates})."
            )
        object.__setattr__(self, "order", order)

    def __len__(self) -> int:
        return len(self.order) + 1

    @property
    def max_size(self) -> int:
        return len(self.order)

    @property
    def is_complete(self) -> bool:
        return len(self.order) == self.n_candidates

    @property
    def subsets(self) -> list[VariableSubset]:
        """Nested subsets from size 0 to :attr:`max_size`."""
        return [self.order[:k] for k in range(len(self))]

    def subset(self, size: int) -> VariableSubset:
        if not 0 <= size <= self.max_size:
            raise ConfigurationError(
                f"Size {size} is outside the searched range [0, {self.max_size}]."
            )
        return self.order[:size]

    def rank_of(self, variable: int) -> int | None:
        """1-based position of *variable*, or ``None`` if not on the path."""
        try:
            return self.order.index(int(variable)) + 1
        except ValueError:
            return None


# ------------------------------------------------------------------ #
# SearchEngine
# ------------------------------------------------------------------ #


class SearchEngine:
    """Run forward or L1 search for one reference model.

    Args:
        reference: Reference model over the training rows.
        config: Options; ``method``, ``nv_max``, ``search_criterion``,
            ``n_jobs`` and the L1 grid settings are used here.
        projector: Projector to reuse (and its cache); created from
            *reference* and *config* when omitted.
        cancel_event: Checked before every step.
    """

    def __init__(
        self,
        reference: ReferenceModel,
        config: SelectionConfig | None = None,
        *,
        projector: Projector | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.reference = reference
        self.config = config if config is not None else SelectionConfig()
        self.nv_max = self.config.resolved_nv_max(reference.n_candidates)
        self.projector = projector if projector is not None else Projector(reference, self.config)
        self.cancel_event = cancel_event
        self.convergence_failures = 0

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def search(self, draws: PosteriorDrawSet, *, warn: bool = True) -> SearchPath:
        """Return the search path over *draws* (training rows).

        With ``warn=False`` convergence failures are only counted on
        :attr:`convergence_failures`, for callers that report them.
        """
        if self.config.method == "l1":
            return self._l1(draws)
        return self._forward(draws, warn)

    # ---- Forward -----------------------------------------------------

    def _score(self, submodel: ProjectedSubmodel) -> float:
        """Lower is better for both criteria."""
        if self.config.search_criterion == "kl":
            return submodel.weighted_kl()
        ev = Evaluator(self.reference.family, ("elpd",))
        pw = ev.evaluate_submodel(submodel, self.reference.y)
        return -float(pw["elpd"].sum())

    def _try(self, chosen: VariableSubset, j: int, draws: PosteriorDrawSet, n_jobs: int) -> ProjectedSubmodel:
        return self.projector.project(chosen + (j,), draws, n_jobs=n_jobs, warn=False)

    def _forward(self, draws: PosteriorDrawSet, warn: bool = True) -> SearchPath:
        p = self.reference.n_candidates
        jobs = self.config.resolved_n_jobs()
        chosen: VariableSubset = ()
        scores: list[float] = []
        self.convergence_failures = 0

        for step in range(self.nv_max):
            if self._cancelled():
                logger.info("Forward search cancelled after %d steps.", step)
                return SearchPath(chosen, p, "forward", tuple(scores), cancelled=True)
            remaining = [j for j in range(p) if j not in chosen]
            if jobs == 1 or len(remaining) == 1:
                subs = [self._try(chosen, j, draws, 1) for j in remaining]
            else:
                # Candidates run in parallel; each projection stays serial.
                subs = Parallel(n_jobs=jobs, prefer="threads")(
                    delayed(self._try)(chosen, j, draws, 1) for j in remaining
                )
            step_scores = np.array([self._score(s) for s in subs])
            # argmin returns the first minimum: the lowest index wins ties.
            best = int(np.argmin(step_scores))
            chosen = chosen + (remaining[best],)
            scores.append(float(step_scores[best]))
            self.convergence_failures += subs[best].convergence_failures
            logger.debug(
                "Step %d: added variable %d (score %.6g).",
                step + 1, remaining[best], step_scores[best],
            )

        if self.convergence_failures and warn:
            warnings.warn(
                f"{self.convergence_failures} draw projections along the "
                f"search path did not converge within {self.config.max_iter} "
                f"iterations.",
                ConvergenceWarning,
                stacklevel=3,
            )
        return SearchPath(chosen, p, "forward", tuple(scores))

    # ---- L1 ----------------------------------------------------------

    def _pseudo_data(self, draws: PosteriorDrawSet) -> tuple[np.ndarray, np.ndarray]:
        """Weighted, centred and scaled design and working response."""
        fam = self.reference.family
        X = self.reference.X
        eta = draws.mean_eta()
        mu_target = draws.weights @ draws.mu
        dmu = fam.mu_eta(eta)
        z = eta + (mu_target - fam.linkinv(eta)) / dmu
        w = self.reference.trials * dmu**2 / fam.variance(fam.linkinv(eta))
        w = w / w.mean()

        xm = np.average(X, axis=0, weights=w)
        zm = np.average(z, weights=w)
        sd = np.sqrt(np.average((X - xm) ** 2, axis=0, weights=w))
        sd[sd == 0] = 1.0
        sw = np.sqrt(w)
        Xw = (X - xm) / sd * sw[:, None]
        zw = (z - zm) * sw
        return Xw, zw

    def _l1(self, draws: PosteriorDrawSet) -> SearchPath:
        p = self.reference.n_candidates
        if self._cancelled():
            return SearchPath((), p, "l1", (), cancelled=True)
        Xw, zw = self._pseudo_data(draws)
        n = Xw.shape[0]

        alpha_max = float(np.max(np.abs(Xw.T @ zw)) / n) if p else 0.0
        entry = np.full(p, np.inf)
        entry_alpha = np.full(p, 0.0)
        if alpha_max > 0:
            alphas = np.geomspace(
                alpha_max, alpha_max * self.config.l1_eps, self.config.l1_n_alphas
            )
            with warnings.catch_warnings():
                # Tiny penalties on collinear pseudo-data may not reach
                # coordinate-descent tolerance; the entry order is
                # settled long before that.
                warnings.simplefilter("ignore")
                alphas, coefs, _ = lasso_path(Xw, zw, alphas=alphas)
            active = np.abs(coefs) > 0  # (p, n_alphas)
            for j in range(p):
                hit = np.flatnonzero(active[j])
                if hit.size:
                    entry[j] = hit[0]
                    entry_alpha[j] = alphas[hit[0]]

        # Sort by entry step, then by index; never-entered go last.
        order = sorted(range(p), key=lambda j: (entry[j], j))[: self.nv_max]
        logger.debug("L1 entry order: %s", order)
        return SearchPath(
            tuple(order), p, "l1", tuple(float(entry_alpha[j]) for j in order)
        )


__all__ = ["SearchEngine", "SearchPath"]
