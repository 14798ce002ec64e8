"""Projection of the reference posterior onto variable subsets.

For a variable subset and a (reduced) draw set, the :class:`Projector`
finds, for each draw independently, the submodel parameters whose
predictive distribution is closest in Kullback-Leibler divergence to
the reference draw's predictive distribution on the training rows.

* Gaussian: closed form.  Coefficients are least squares of the
  reference linear predictor on the submodel design, and the projected
  noise standard deviation is

      σ_sub² = σ_ref² + mean((η_ref − η_sub)²)

  so the projected noise can never drop below the reference noise.
* Binomial / Poisson: Fisher scoring on the draw-wise divergence with
  an iteration cap and a relative-change stopping rule.  Draws that
  hit the cap keep their last iterate; the count is reported through a
  single :class:`~projection_selection.exceptions.ConvergenceWarning`
  per call and on the returned :class:`ProjectedSubmodel`.

Draws are split into contiguous chunks and solved on a
``joblib.Parallel(prefer="threads")`` pool when more than one worker
is configured; each chunk writes a disjoint slice of the output.

Caching
~~~~~~~
:class:`ProjectionCache` is an explicit store keyed by the canonical
(sorted) subset and the draw-reduction signature.  A cache belongs to
one training set: cross-validation creates a fresh cache per fold, so
projections from different training rows can never be mixed.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from ._compat import DataFrameLike, as_design_matrix
from ._config import SelectionConfig
from ._solvers import SolverOutput, augment_design, batch_fisher_scoring, batch_wls
from ._typing import SubsetLike, VariableSubset
from .exceptions import ConfigurationError, ConvergenceWarning
from .families import ProjectionFamily

if TYPE_CHECKING:
    from .draws import PosteriorDrawSet
    from .reference import ReferenceModel

logger = logging.getLogger(__name__)


def canonical_subset(subset: SubsetLike, n_candidates: int) -> VariableSubset:
    """Validate *subset* and return it as a tuple of ints (order kept).

    Raises:
        ConfigurationError: On out-of-range or repeated indices.
    """
    idx = tuple(int(j) for j in np.asarray(subset, dtype=np.intp).ravel())
    if len(set(idx)) != len(idx):
        raise ConfigurationError(f"Variable subset {idx} repeats an index.")
    bad = [j for j in idx if not 0 <= j < n_candidates]
    if bad:
        raise ConfigurationError(
            f"Variable indices {bad} are outside [0, {n_candidates})."
        )
    return idx


# ------------------------------------------------------------------ #
# ProjectedSubmodel
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ProjectedSubmodel:
    """A variable subset with its projected posterior draws.

    Attributes:
        subset: Candidate indices in the order they were given.
        feature_names: Names of the selected variables.
        family: Response family of the reference model.
        coefficients: Intercept-first coefficients ``(S', 1 + k)``;
            slope columns follow the order of ``subset``.
        dispersion: Projected dispersion per draw ``(S',)``.
        weights: Draw weights ``(S',)`` carried over from the input
            draw set.
        eta_train: Projected linear predictors on the training rows
            ``(S', n)``.
        kl: Divergence from reference to submodel per draw ``(S',)``.
        n_iter: Solver iterations per draw ``(S',)``.
        converged: Convergence flag per draw ``(S',)``.
        reduction_signature: Signature of the draw set projected.
        n_candidates: Width of the full candidate covariate matrix.
        trials: Binomial trials on the training rows ``(n,)``.
    """

    subset: VariableSubset
    feature_names: tuple[str, ...]
    family: ProjectionFamily
    coefficients: np.ndarray
    dispersion: np.ndarray
    weights: np.ndarray
    eta_train: np.ndarray
    kl: np.ndarray
    n_iter: np.ndarray
    converged: np.ndarray
    reduction_signature: tuple
    n_candidates: int
    trials: np.ndarray

    @property
    def size(self) -> int:
        return len(self.subset)

    @property
    def n_draws(self) -> int:
        return int(self.coefficients.shape[0])

    @property
    def intercept(self) -> np.ndarray:
        return np.asarray(self.coefficients[:, 0])

    @property
    def slopes(self) -> np.ndarray:
        return np.asarray(self.coefficients[:, 1:])

    @property
    def convergence_failures(self) -> int:
        """Number of draws whose projection hit the iteration cap."""
        return int(np.sum(~self.converged))

    def weighted_kl(self) -> float:
        """Draw-weighted mean divergence from the reference."""
        return float(self.weights @ self.kl)

    def __repr__(self) -> str:
        return (
            f"ProjectedSubmodel(subset={self.subset}, family={self.family.name!r}, "
            f"n_draws={self.n_draws}, kl={self.weighted_kl():.4g})"
        )

    # ---- Prediction --------------------------------------------------

    def predict_linear(self, X: DataFrameLike | None = None) -> np.ndarray:
        """Projected linear predictors ``(S', n)``.

        Args:
            X: Full candidate covariate matrix ``(n, p)``; only the
                subset's columns are used.  ``None`` returns the
                training-row predictors.
        """
        if X is None:
            return np.array(self.eta_train)
        X_arr, _ = as_design_matrix(X, name="X")
        if X_arr.shape[1] != self.n_candidates:
            raise ConfigurationError(
                f"X has {X_arr.shape[1]} columns; the projection expects the "
                f"full candidate matrix with {self.n_candidates}."
            )
        X_aug = augment_design(X_arr[:, list(self.subset)])
        return np.asarray(self.coefficients @ X_aug.T)

    def predict_mean(self, X: DataFrameLike | None = None) -> np.ndarray:
        """Projected per-trial means ``(S', n)``."""
        return np.asarray(self.family.linkinv(self.predict_linear(X)))

    def sample_predictive(
        self,
        X: DataFrameLike | None = None,
        *,
        trials: np.ndarray | None = None,
        n_samples: int | None = None,
        random_state: int | np.random.Generator | None = None,
    ) -> np.ndarray:
        """Simulate responses from the projected predictive distribution.

        With ``n_samples=None`` one response vector is drawn per
        projected draw.  Otherwise draws are resampled according to
        their weights, which matters for clustered draw sets.

        Returns:
            Simulated responses ``(S' or n_samples, n)``.
        """
        rng = np.random.default_rng(random_state)
        mu = self.predict_mean(X)
        if trials is None:
            trials = self.trials if X is None else np.ones(mu.shape[1])
        trials = np.asarray(trials, dtype=float)
        disp = self.dispersion
        if n_samples is not None:
            idx = rng.choice(self.n_draws, size=int(n_samples), p=self.weights)
            mu, disp = mu[idx], disp[idx]
        return self.family.sample(mu, disp, trials, rng)


# ------------------------------------------------------------------ #
# ProjectionCache
# ------------------------------------------------------------------ #


class ProjectionCache:
    """Keyed store of projections for one training set.

    Keys are ``(sorted subset, reduction signature)``.  A cached
    submodel requested with a different variable order is returned
    with its slope columns permuted to match.
    """

    def __init__(self) -> None:
        self._store: dict[tuple, ProjectedSubmodel] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(subset: Iterable[int], signature: tuple) -> tuple:
        return (tuple(sorted(int(j) for j in subset)), signature)

    def get(self, subset: VariableSubset, signature: tuple) -> ProjectedSubmodel | None:
        sub = self._store.get(self.key(subset, signature))
        if sub is None:
            self.misses += 1
            return None
        self.hits += 1
        if sub.subset == tuple(subset):
            return sub
        pos = {j: i for i, j in enumerate(sub.subset)}
        order = [0] + [1 + pos[j] for j in subset]
        return replace(
            sub,
            subset=tuple(subset),
            feature_names=tuple(sub.feature_names[pos[j]] for j in subset),
            coefficients=sub.coefficients[:, order],
        )

    def put(self, submodel: ProjectedSubmodel) -> None:
        self._store[self.key(submodel.subset, submodel.reduction_signature)] = submodel

    def clear(self) -> None:
        self._store.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        return key in self._store


# ------------------------------------------------------------------ #
# Projector
# ------------------------------------------------------------------ #


class Projector:
    """Project a reference model onto variable subsets.

    Args:
        reference: The reference model supplying covariates, family
            and training trials.
        config: Options (``regularization``, ``max_iter``, ``tol``,
            ``n_jobs``).  Defaults to :class:`SelectionConfig()`.
        cache: Optional :class:`ProjectionCache` shared by calls.
    """

    def __init__(
        self,
        reference: ReferenceModel,
        config: SelectionConfig | None = None,
        cache: ProjectionCache | None = None,
    ) -> None:
        self.reference = reference
        self.config = config if config is not None else SelectionConfig()
        self.config.validate()
        self.cache = cache

    @property
    def family(self) -> ProjectionFamily:
        return self.reference.family

    def project(
        self,
        subset: SubsetLike,
        draws: PosteriorDrawSet,
        *,
        n_jobs: int | None = None,
        warn: bool = True,
    ) -> ProjectedSubmodel:
        """Project the draws in *draws* onto *subset*.

        Args:
            subset: Candidate column indices (may be empty).
            draws: Reference draws over the training rows; a
                :class:`~projection_selection.draws.ReducedDrawSet`
                contributes its signature to the cache key.
            n_jobs: Worker override for this call.
            warn: Emit a :class:`ConvergenceWarning` when any draw hit
                the iteration cap.

        Returns:
            :class:`ProjectedSubmodel` with one projected draw per
            input draw and the same weights.
        """
        ref = self.reference
        idx = canonical_subset(subset, ref.n_candidates)
        signature = getattr(draws, "signature", ("full", draws.n_draws))
        if draws.n_obs != ref.n_obs:
            raise ConfigurationError(
                f"Draw set covers {draws.n_obs} rows but the reference model "
                f"has {ref.n_obs}."
            )

        if self.cache is not None:
            hit = self.cache.get(idx, signature)
            if hit is not None:
                logger.debug("Projection cache hit for subset %s.", idx)
                return hit

        X_aug = augment_design(ref.X[:, list(idx)])
        out = self._solve_chunked(X_aug, draws, n_jobs)
        eta_sub = out.coefficients @ X_aug.T
        mu_sub = self.family.linkinv(eta_sub)

        if self.family.has_dispersion:
            resid = np.mean((draws.eta - eta_sub) ** 2, axis=1)
            dispersion = np.sqrt(draws.dispersion**2 + resid)
        else:
            dispersion = np.ones(draws.n_draws)
        kl = self.family.kl_divergence(
            draws.mu, draws.dispersion, mu_sub, dispersion, ref.trials
        )

        submodel = ProjectedSubmodel(
            subset=idx,
            feature_names=tuple(ref.feature_names[j] for j in idx),
            family=self.family,
            coefficients=out.coefficients,
            dispersion=dispersion,
            weights=np.array(draws.weights),
            eta_train=eta_sub,
            kl=np.maximum(np.asarray(kl), 0.0),
            n_iter=out.n_iter,
            converged=out.converged,
            reduction_signature=signature,
            n_candidates=ref.n_candidates,
            trials=np.array(ref.trials),
        )

        failures = submodel.convergence_failures
        if failures and warn:
            warnings.warn(
                f"Projection onto subset {idx} did not converge for "
                f"{failures} of {submodel.n_draws} draws within "
                f"{self.config.max_iter} iterations; the last iterate is used.",
                ConvergenceWarning,
                stacklevel=2,
            )
        if self.cache is not None:
            self.cache.put(submodel)
        return submodel

    # ---- Solvers -----------------------------------------------------

    def _solve(self, X_aug: np.ndarray, eta_ref: np.ndarray, mu_ref: np.ndarray) -> SolverOutput:
        cfg = self.config
        if self.family.closed_form:
            return batch_wls(X_aug, eta_ref, regularization=cfg.regularization)
        return batch_fisher_scoring(
            self.family,
            X_aug,
            mu_ref,
            self.reference.trials,
            regularization=cfg.regularization,
            max_iter=cfg.max_iter,
            tol=cfg.tol,
        )

    def _solve_chunked(
        self,
        X_aug: np.ndarray,
        draws: PosteriorDrawSet,
        n_jobs: int | None,
    ) -> SolverOutput:
        jobs = self.config.resolved_n_jobs() if n_jobs is None else n_jobs
        S = draws.n_draws
        n_chunks = min(S, effective_n_jobs(jobs))

        # Sequential path: one stacked solve over every draw.
        if n_chunks <= 1:
            return self._solve(X_aug, draws.eta, draws.mu)

        chunks = np.array_split(np.arange(S), n_chunks)
        parts = Parallel(n_jobs=jobs, prefer="threads")(
            delayed(self._solve)(X_aug, draws.eta[c], draws.mu[c]) for c in chunks
        )
        return SolverOutput(
            coefficients=np.vstack([p.coefficients for p in parts]),
            n_iter=np.concatenate([p.n_iter for p in parts]),
            converged=np.concatenate([p.converged for p in parts]),
        )


__all__ = ["ProjectedSubmodel", "ProjectionCache", "Projector", "canonical_subset"]
