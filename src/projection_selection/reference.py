"""Reference model wrapper — the contract every other component uses.

A :class:`ReferenceModel` bundles the output of an external Bayesian
fit: the response family, the covariates and response it was fit on,
and a :class:`Predictor` that maps covariates and a subset of
posterior draws to linear-predictor values.  Dispersion draws
(Gaussian noise standard deviations) travel alongside.

Two predictors are provided:

* :class:`LinearPredictor` — the standard GLM case, built from a
  coefficient draw matrix ``(S, p)`` and an intercept draw vector.
* :class:`CallablePredictor` — wraps any user function
  ``fn(X, draw_indices) -> (len(draw_indices), n)`` for reference
  models that are not plain GLMs (splines, hierarchical terms, …).

The model validates every dimension at construction and never
mutates afterwards: all stored arrays are flagged read-only, so the
same instance can be shared by reference across worker threads.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

import numpy as np

from ._compat import DataFrameLike, as_design_matrix, as_vector
from .draws import PosteriorDrawSet
from .exceptions import ReferenceModelError
from .families import ProjectionFamily, resolve_family


def _readonly(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=float, copy=True)
    out.flags.writeable = False
    return out


def _draw_index(draws: np.ndarray | None, n_draws: int) -> np.ndarray:
    if draws is None:
        return np.arange(n_draws)
    idx = np.asarray(draws, dtype=np.intp).ravel()
    if idx.size and (idx.min() < 0 or idx.max() >= n_draws):
        raise IndexError(f"Draw indices must lie in [0, {n_draws}).")
    return idx


# ------------------------------------------------------------------ #
# Predictor capability
# ------------------------------------------------------------------ #


@runtime_checkable
class Predictor(Protocol):
    """Maps covariates and draws to a linear-predictor matrix."""

    @property
    def n_draws(self) -> int: ...

    def predict(self, X: np.ndarray, draws: np.ndarray | None = None) -> np.ndarray:
        """Return linear predictors of shape ``(len(draws), n)``."""
        ...


class LinearPredictor:
    """Linear predictor ``η = α + X β`` for coefficient draws.

    Args:
        coefficients: Slope draws ``(S, p)``.
        intercept: Intercept draws ``(S,)``; zeros when omitted.
    """

    def __init__(
        self,
        coefficients: np.ndarray,
        intercept: np.ndarray | None = None,
    ) -> None:
        coefs = np.asarray(coefficients, dtype=float)
        if coefs.ndim == 1:
            coefs = coefs[None, :]
        if coefs.ndim != 2 or coefs.shape[0] < 1:
            raise ReferenceModelError(
                f"coefficients must have shape (S, p) with S >= 1, "
                f"got {coefs.shape}."
            )
        if intercept is None:
            icpt = np.zeros(coefs.shape[0])
        else:
            icpt = np.atleast_1d(np.asarray(intercept, dtype=float))
        if icpt.shape != (coefs.shape[0],):
            raise ReferenceModelError(
                f"intercept must have shape ({coefs.shape[0]},), "
                f"got {icpt.shape}."
            )
        if not (np.all(np.isfinite(coefs)) and np.all(np.isfinite(icpt))):
            raise ReferenceModelError("Coefficient draws must be finite.")
        self.coefficients = _readonly(coefs)
        self.intercept = _readonly(icpt)

    @property
    def n_draws(self) -> int:
        return int(self.coefficients.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.coefficients.shape[1])

    def predict(self, X: np.ndarray, draws: np.ndarray | None = None) -> np.ndarray:
        idx = _draw_index(draws, self.n_draws)
        if X.shape[1] != self.n_features:
            raise ReferenceModelError(
                f"X has {X.shape[1]} columns but the coefficient draws "
                f"have {self.n_features}."
            )
        return np.asarray(self.intercept[idx, None] + self.coefficients[idx] @ X.T)


class CallablePredictor:
    """Adapter for a user-supplied prediction function.

    Args:
        fn: ``fn(X, draw_indices) -> ndarray`` returning linear
            predictors of shape ``(len(draw_indices), X.shape[0])``.
        n_draws: Number of posterior draws the function can address.
    """

    def __init__(
        self,
        fn: Callable[[np.ndarray, np.ndarray], np.ndarray],
        n_draws: int,
    ) -> None:
        if int(n_draws) < 1:
            raise ReferenceModelError("n_draws must be at least 1.")
        self._fn = fn
        self._n_draws = int(n_draws)

    @property
    def n_draws(self) -> int:
        return self._n_draws

    def predict(self, X: np.ndarray, draws: np.ndarray | None = None) -> np.ndarray:
        idx = _draw_index(draws, self.n_draws)
        out = np.asarray(self._fn(X, idx), dtype=float)
        if out.shape != (idx.size, X.shape[0]):
            raise ReferenceModelError(
                f"Custom predictor returned shape {out.shape}, expected "
                f"{(idx.size, X.shape[0])}."
            )
        return out


# ------------------------------------------------------------------ #
# ReferenceModel
# ------------------------------------------------------------------ #


class ReferenceModel:
    """Fitted reference model: family, data, draws and predictor.

    Args:
        X: Candidate covariates ``(n, p)`` (array or DataFrame).
        y: Response ``(n,)``.  For the binomial family this is the
            number of successes out of ``trials``.
        family: Family name or instance (``"gaussian"``,
            ``"binomial"``, ``"bernoulli"``, ``"poisson"``).
        link: Link name; the family's canonical link when omitted.
        coefficients: Slope draws ``(S, p)``.  Required unless
            *predictor* is given.
        intercept: Intercept draws ``(S,)``.
        dispersion: Gaussian noise standard deviation draws ``(S,)``.
            Required for the Gaussian family, must be omitted or
            empty for fixed-dispersion families.
        trials: Binomial trials per row ``(n,)``; ones by default.
        predictor: Custom :class:`Predictor` or callable
            ``fn(X, draws)``; a callable also needs ``n_draws``.
        n_draws: Draw count for a bare callable *predictor*.
        feature_names: Overrides column names read from *X*.

    Raises:
        ReferenceModelError: On any dimension mismatch or invalid
            value.  No partially built model is ever returned.
        UnsupportedFamilyError: For unknown family/link pairs.
    """

    def __init__(
        self,
        X: DataFrameLike,
        y: object,
        *,
        family: str | ProjectionFamily = "gaussian",
        link: str | None = None,
        coefficients: np.ndarray | None = None,
        intercept: np.ndarray | None = None,
        dispersion: np.ndarray | None = None,
        trials: np.ndarray | None = None,
        predictor: Predictor | Callable[[np.ndarray, np.ndarray], np.ndarray] | None = None,
        n_draws: int | None = None,
        feature_names: list[str] | None = None,
    ) -> None:
        self.family: ProjectionFamily = resolve_family(family, link)

        X_arr, names = as_design_matrix(X, name="X")
        y_arr = as_vector(y, name="y")
        n, p = X_arr.shape
        if y_arr.shape[0] != n:
            raise ReferenceModelError(
                f"y has {y_arr.shape[0]} rows but X has {n}."
            )
        if n < 1:
            raise ReferenceModelError("At least one observation is required.")
        if not np.all(np.isfinite(X_arr)):
            raise ReferenceModelError("X must contain only finite values.")
        if feature_names is not None:
            if len(feature_names) != p:
                raise ReferenceModelError(
                    f"feature_names has {len(feature_names)} entries but X "
                    f"has {p} columns."
                )
            names = [str(f) for f in feature_names]

        # ---- Trials ---------------------------------------------------
        if trials is None:
            trials_arr = np.ones(n)
        else:
            if self.family.name != "binomial":
                raise ReferenceModelError(
                    "trials is only meaningful for the binomial family."
                )
            trials_arr = as_vector(trials, name="trials")
            if trials_arr.shape[0] != n:
                raise ReferenceModelError(
                    f"trials has {trials_arr.shape[0]} rows but X has {n}."
                )
            if np.any(trials_arr < 1) or np.any(trials_arr != np.round(trials_arr)):
                raise ReferenceModelError("trials must be positive integers.")
        self.family.validate_y(y_arr, trials_arr)

        # ---- Predictor ------------------------------------------------
        if predictor is None:
            if coefficients is None:
                raise ReferenceModelError(
                    "Either coefficients or a predictor is required."
                )
            pred: Predictor = LinearPredictor(coefficients, intercept)
            if pred.n_features != p:  # type: ignore[attr-defined]
                raise ReferenceModelError(
                    f"coefficients have {pred.n_features} columns but X has "  # type: ignore[attr-defined]
                    f"{p} candidate variables."
                )
        elif isinstance(predictor, Predictor):
            pred = predictor
        elif callable(predictor):
            if n_draws is None:
                raise ReferenceModelError(
                    "n_draws is required when predictor is a bare callable."
                )
            pred = CallablePredictor(predictor, n_draws)
        else:
            raise ReferenceModelError(
                f"predictor must be a Predictor or callable, got "
                f"{type(predictor).__name__}."
            )
        S = pred.n_draws
        if S < 1:
            raise ReferenceModelError("At least one posterior draw is required.")

        eta = np.asarray(pred.predict(X_arr, None), dtype=float)
        if eta.shape != (S, n):
            raise ReferenceModelError(
                f"Predictor returned shape {eta.shape}, expected {(S, n)}."
            )
        if not np.all(np.isfinite(eta)):
            raise ReferenceModelError("Reference linear predictors must be finite.")

        # ---- Dispersion -----------------------------------------------
        disp = None if dispersion is None else np.atleast_1d(
            np.asarray(dispersion, dtype=float)
        )
        if self.family.has_dispersion:
            if disp is None or disp.size == 0:
                raise ReferenceModelError(
                    f"The {self.family.name} family requires dispersion draws."
                )
            if disp.shape != (S,):
                raise ReferenceModelError(
                    f"dispersion must have shape ({S},), got {disp.shape}."
                )
            if not (np.all(np.isfinite(disp)) and np.all(disp > 0)):
                raise ReferenceModelError("dispersion draws must be positive.")
        else:
            if disp is not None and disp.size not in (0, S):
                raise ReferenceModelError(
                    f"dispersion must be empty or have {S} entries, "
                    f"got {disp.size}."
                )
            disp = np.ones(S)

        self.predictor = pred
        self.X = _readonly(X_arr)
        self.y = _readonly(y_arr)
        self.trials = _readonly(trials_arr)
        self.feature_names: list[str] = list(names)
        self.dispersion = _readonly(disp)
        self.eta = _readonly(eta)
        self.mu = _readonly(self.family.linkinv(eta))

    # ---- Shape accessors ---------------------------------------------

    @property
    def n_draws(self) -> int:
        return int(self.eta.shape[0])

    @property
    def n_obs(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_candidates(self) -> int:
        return int(self.X.shape[1])

    def __repr__(self) -> str:
        return (
            f"ReferenceModel(family={self.family.name!r}, "
            f"link={self.family.link!r}, n_obs={self.n_obs}, "
            f"n_candidates={self.n_candidates}, n_draws={self.n_draws})"
        )

    # ---- Prediction interface ----------------------------------------

    def predict_linear(
        self,
        X: DataFrameLike | None = None,
        draws: np.ndarray | None = None,
    ) -> np.ndarray:
        """Linear predictors ``(len(draws), n)`` for *X*.

        With ``X=None`` the cached training-row predictors are
        returned (a copy), avoiding a second predictor call.
        """
        idx = _draw_index(draws, self.n_draws)
        if X is None:
            return np.array(self.eta[idx])
        X_arr, _ = as_design_matrix(X, name="X")
        if X_arr.shape[1] != self.n_candidates:
            raise ReferenceModelError(
                f"X has {X_arr.shape[1]} columns, expected {self.n_candidates}."
            )
        return np.asarray(self.predictor.predict(X_arr, idx))

    def predict_mean(
        self,
        X: DataFrameLike | None = None,
        draws: np.ndarray | None = None,
    ) -> np.ndarray:
        """Per-trial predictive means ``(len(draws), n)``."""
        return np.asarray(self.family.linkinv(self.predict_linear(X, draws)))

    def log_predictive_density(
        self,
        y: np.ndarray,
        eta: np.ndarray,
        dispersion: np.ndarray,
        trials: np.ndarray | None = None,
    ) -> np.ndarray:
        """Elementwise ``log p(y | η, φ)`` under the reference family."""
        t = np.ones(np.shape(y)[-1]) if trials is None else np.asarray(trials)
        return np.asarray(
            self.family.log_density(
                np.asarray(y, dtype=float), self.family.linkinv(eta), dispersion, t
            )
        )

    def log_likelihood(self, rows: np.ndarray | None = None) -> np.ndarray:
        """Pointwise log-likelihood matrix ``(S, n_rows)`` on training rows."""
        sel = slice(None) if rows is None else np.asarray(rows)
        return self.log_predictive_density(
            self.y[sel], self.eta[:, sel], self.dispersion, self.trials[sel]
        )

    def draw_set(self, rows: np.ndarray | None = None) -> PosteriorDrawSet:
        """The full posterior draw set restricted to *rows*."""
        sel = slice(None) if rows is None else np.asarray(rows)
        return PosteriorDrawSet(
            eta=np.array(self.eta[:, sel]),
            mu=np.array(self.mu[:, sel]),
            dispersion=np.array(self.dispersion),
            has_dispersion=self.family.has_dispersion,
        )

    def restrict(self, rows: np.ndarray) -> ReferenceModel:
        """A reference model over a subset of rows, draws unchanged.

        Used by K-fold validation when the reference is treated as
        fixed: nothing is refit, only the training rows change.
        """
        rows = np.asarray(rows)
        return ReferenceModel(
            self.X[rows],
            self.y[rows],
            family=self.family,
            dispersion=None if not self.family.has_dispersion else self.dispersion,
            trials=self.trials[rows] if self.family.name == "binomial" else None,
            predictor=self.predictor,
            feature_names=self.feature_names,
        )


__all__ = ["CallablePredictor", "LinearPredictor", "Predictor", "ReferenceModel"]
