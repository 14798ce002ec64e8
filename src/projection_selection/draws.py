"""Posterior draw sets and draw reduction.

A :class:`PosteriorDrawSet` is the engine's view of the reference
posterior: one row of training-row linear predictors per draw, the
matching per-trial means, a dispersion per draw and a weight per draw
(uniform for ungrouped draws).

Projection cost grows linearly with the number of draws, so search and
evaluation usually work on a :class:`ReducedDrawSet` produced by a
:class:`DrawReducer`:

* ``"cluster"`` — k-means (``sklearn.cluster.KMeans``) on the
  linear-predictor space.  Each cluster becomes one weighted draw
  whose linear predictor is the weighted mean of its members, so the
  weighted mean over clusters equals the weighted mean over draws
  exactly.  The cluster mean ``μ`` is the weighted mean of member
  means (the projection target for non-Gaussian families) and the
  Gaussian cluster dispersion follows the variance decomposition

      σ_c² = Σ_s w_s σ_s² / W_c + Σ_s w_s mean_i (η_s,i − η_c,i)² / W_c

* ``"subsample"`` — uniform sampling of draws without replacement.
  The weighted mean is preserved in expectation only.

A target size at or above the number of draws returns the identity
reduction: the same draws, the same weights.

Every reduced set carries ``labels`` mapping each original draw to the
reduced draw that represents it (``-1`` for draws dropped by
subsampling) and a hashable ``signature`` that keys the projection
cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from sklearn.cluster import KMeans

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_VALID_METHODS = ("cluster", "subsample")


def _normalise(weights: np.ndarray) -> np.ndarray:
    total = float(np.sum(weights))
    if not total > 0:
        raise ConfigurationError("Draw weights must have a positive sum.")
    return np.asarray(weights, dtype=float) / total


# ------------------------------------------------------------------ #
# Draw sets
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class PosteriorDrawSet:
    """Weighted posterior draws over the training rows.

    Attributes:
        eta: Linear predictors ``(S, n)``.
        mu: Per-trial means ``(S, n)``.
        dispersion: Dispersion per draw ``(S,)``; ones for families
            without a dispersion parameter.
        weights: Non-negative draw weights ``(S,)`` summing to one.
            Uniform when omitted.
        has_dispersion: Whether the dispersion is a free parameter
            (Gaussian) rather than fixed at one.
    """

    eta: np.ndarray
    mu: np.ndarray
    dispersion: np.ndarray
    weights: np.ndarray = field(default=None)  # type: ignore[assignment]
    has_dispersion: bool = True

    def __post_init__(self) -> None:
        eta = np.asarray(self.eta, dtype=float)
        if eta.ndim != 2 or eta.shape[0] < 1:
            raise ConfigurationError(
                f"eta must have shape (S, n) with S >= 1, got {eta.shape}."
            )
        S = eta.shape[0]
        if np.shape(self.mu) != eta.shape:
            raise ConfigurationError(
                f"mu must match eta's shape {eta.shape}, got {np.shape(self.mu)}."
            )
        if np.shape(self.dispersion) != (S,):
            raise ConfigurationError(
                f"dispersion must have shape ({S},), got {np.shape(self.dispersion)}."
            )
        weights = np.full(S, 1.0 / S) if self.weights is None else self.weights
        if np.shape(weights) != (S,) or np.any(np.asarray(weights) < 0):
            raise ConfigurationError(
                f"weights must be {S} non-negative values."
            )
        object.__setattr__(self, "eta", eta)
        object.__setattr__(self, "mu", np.asarray(self.mu, dtype=float))
        object.__setattr__(self, "dispersion", np.asarray(self.dispersion, dtype=float))
        object.__setattr__(self, "weights", _normalise(np.asarray(weights)))

    @property
    def n_draws(self) -> int:
        return int(self.eta.shape[0])

    @property
    def n_obs(self) -> int:
        return int(self.eta.shape[1])

    def mean_eta(self) -> np.ndarray:
        """Weighted mean linear predictor ``(n,)``."""
        return np.asarray(self.weights @ self.eta)


@dataclass(frozen=True)
class ReducedDrawSet(PosteriorDrawSet):
    """Draw set produced by a :class:`DrawReducer`.

    Attributes:
        labels: Reduced-draw index for each source draw ``(S_source,)``;
            ``-1`` for source draws that are not represented.
        method: ``"cluster"``, ``"subsample"`` or ``"identity"``.
        signature: Hashable description of the reduction, used as
            part of the projection cache key.
    """

    labels: np.ndarray = field(default=None)  # type: ignore[assignment]
    method: str = "identity"
    signature: tuple = ()

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.labels is None:
            object.__setattr__(self, "labels", np.arange(self.n_draws))
        if not self.signature:
            object.__setattr__(self, "signature", (self.method, self.n_draws))

    @property
    def n_source_draws(self) -> int:
        return int(self.labels.shape[0])

    def aggregate_source_weights(self, source_weights: np.ndarray) -> np.ndarray:
        """Sum per-source-draw weights into reduced-draw weights.

        Works on a trailing observation axis too: *source_weights* of
        shape ``(S_source, m)`` yields ``(S', m)``.  Used to carry
        leave-one-out importance weights over to clusters.  The result
        is renormalised over the represented draws.
        """
        w = np.asarray(source_weights, dtype=float)
        kept = self.labels >= 0
        out = np.zeros((self.n_draws,) + w.shape[1:])
        np.add.at(out, self.labels[kept], w[kept])
        total = out.sum(axis=0, keepdims=True)
        return np.asarray(out / np.where(total > 0, total, 1.0))


# ------------------------------------------------------------------ #
# DrawReducer
# ------------------------------------------------------------------ #


class DrawReducer:
    """Reduce a draw set to at most ``n_draws`` weighted representatives.

    Args:
        method: ``"cluster"`` or ``"subsample"``.
        n_draws: Target number of representatives ``S'``.
        random_state: Seed; ``None`` draws fresh entropy, which is
            then recorded in the reduction signature.
    """

    def __init__(
        self,
        method: str = "cluster",
        n_draws: int = 20,
        random_state: int | None = None,
    ) -> None:
        if method not in _VALID_METHODS:
            raise ConfigurationError(
                f"Unknown reduction {method!r}. Choose from: {list(_VALID_METHODS)}"
            )
        if int(n_draws) < 1:
            raise ConfigurationError("n_draws must be at least 1.")
        self.method = method
        self.n_draws = int(n_draws)
        self.random_state = random_state

    def reduce(self, draws: PosteriorDrawSet) -> ReducedDrawSet:
        """Return the reduced draw set for *draws*."""
        S = draws.n_draws
        if self.n_draws >= S:
            return ReducedDrawSet(
                eta=draws.eta,
                mu=draws.mu,
                dispersion=draws.dispersion,
                weights=draws.weights,
                has_dispersion=draws.has_dispersion,
                labels=np.arange(S),
                method="identity",
                signature=("identity", S),
            )
        rng = np.random.default_rng(self.random_state)
        seed = int(rng.integers(0, 2**31 - 1))
        if self.method == "cluster":
            reduced = self._cluster(draws, seed)
        else:
            reduced = self._subsample(draws, seed)
        logger.debug(
            "Reduced %d draws to %d by %s (seed=%d).",
            S, reduced.n_draws, self.method, seed,
        )
        return reduced

    def _subsample(self, draws: PosteriorDrawSet, seed: int) -> ReducedDrawSet:
        rng = np.random.default_rng(seed)
        idx = np.sort(rng.choice(draws.n_draws, size=self.n_draws, replace=False))
        labels = np.full(draws.n_draws, -1, dtype=np.intp)
        labels[idx] = np.arange(idx.size)
        return ReducedDrawSet(
            eta=draws.eta[idx],
            mu=draws.mu[idx],
            dispersion=draws.dispersion[idx],
            weights=np.full(idx.size, 1.0 / idx.size),
            has_dispersion=draws.has_dispersion,
            labels=labels,
            method="subsample",
            signature=("subsample", idx.size, seed),
        )

    def _cluster(self, draws: PosteriorDrawSet, seed: int) -> ReducedDrawSet:
        km = KMeans(n_clusters=self.n_draws, n_init=3, random_state=seed)
        labels = km.fit_predict(draws.eta, sample_weight=draws.weights)
        # Relabel to consecutive ids in case a cluster ended up empty.
        used, labels = np.unique(labels, return_inverse=True)
        C = used.size

        w = draws.weights
        W = np.bincount(labels, weights=w, minlength=C)
        onehot = np.zeros((C, draws.n_draws))
        onehot[labels, np.arange(draws.n_draws)] = w
        frac = onehot / W[:, None]

        eta_c = frac @ draws.eta
        mu_c = frac @ draws.mu
        # Within-cluster spread of the linear predictor adds to the
        # cluster's noise variance; only meaningful for Gaussian draws,
        # where eta is the mean.
        spread = np.mean((draws.eta - eta_c[labels]) ** 2, axis=1)
        disp2 = frac @ (draws.dispersion**2 + spread)
        dispersion = np.sqrt(disp2) if draws.has_dispersion else np.ones(C)

        return ReducedDrawSet(
            eta=eta_c,
            mu=mu_c,
            dispersion=dispersion,
            weights=W,
            has_dispersion=draws.has_dispersion,
            labels=np.asarray(labels, dtype=np.intp),
            method="cluster",
            signature=("cluster", C, seed),
        )


def reduce_draws(
    draws: PosteriorDrawSet,
    n_draws: int,
    method: str = "cluster",
    random_state: int | None = None,
) -> ReducedDrawSet:
    """Convenience wrapper around :meth:`DrawReducer.reduce`."""
    return DrawReducer(method, n_draws, random_state).reduce(draws)


__all__ = ["DrawReducer", "PosteriorDrawSet", "ReducedDrawSet", "reduce_draws"]
