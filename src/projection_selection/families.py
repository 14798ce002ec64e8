"""Exponential-family protocol, concrete families and resolution logic.

The ``ProjectionFamily`` protocol defines everything the projection
engine needs to know about a response distribution: its link, its
mean-variance relationship, its per-observation log predictive
density, and the Kullback-Leibler divergence that the projection
minimises.  The projector, search engine and evaluator program
against the protocol and never branch on a concrete family.

Each concrete family is a frozen ``@dataclass`` that carries no
mutable state beyond its link name.  Link functions,
their inverses and derivatives are ``statsmodels`` link objects.

The registry is closed: only family/link pairs whose
projection is known to be well posed are accepted.  Gaussian has a
closed-form projection; binomial and Poisson are projected by Fisher
scoring on the draw-wise divergence (see ``_solvers.py``).

Extensibility
~~~~~~~~~~~~~
New families are added by implementing the protocol and registering
them with :func:`register_family`.  Nothing else in the package needs
to change.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np
from scipy import special, stats
from statsmodels.genmod.families import links as sm_links

from .exceptions import ConfigurationError, ReferenceModelError, UnsupportedFamilyError

# Probabilities and means are clamped away from the boundary before
# taking logarithms or dividing by the variance function.
_EPS = 1e-12

# ------------------------------------------------------------------ #
# Link table
# ------------------------------------------------------------------ #
#
# Each entry maps the public link name to the statsmodels link class.
# Only the links listed per family in ``_SUPPORTED_LINKS`` are legal.

_LINKS: dict[str, type] = {
    "identity": sm_links.Identity,
    "logit": sm_links.Logit,
    "probit": sm_links.Probit,
    "cloglog": sm_links.CLogLog,
    "log": sm_links.Log,
}


def _make_link(name: str) -> Any:
    return _LINKS[name]()


# ------------------------------------------------------------------ #
# ProjectionFamily protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class ProjectionFamily(Protocol):
    """Interface that every response family must implement.

    Attributes:
        name: Short identifier (``"gaussian"``, ``"binomial"``, …).
        link: Link-function name (``"identity"``, ``"logit"``, …).
        has_dispersion: ``True`` when each draw carries a dispersion
            parameter that the projection must also produce.
        closed_form: ``True`` when the projection is a single
            weighted least-squares solve.
    """

    @property
    def name(self) -> str: ...

    @property
    def link(self) -> str: ...

    @property
    def has_dispersion(self) -> bool: ...

    @property
    def closed_form(self) -> bool: ...

    def validate_y(self, y: np.ndarray, trials: np.ndarray) -> None:
        """Raise ``ReferenceModelError`` if *y* is outside the support."""
        ...

    def linkfun(self, mu: np.ndarray) -> np.ndarray:
        """Map the per-trial mean to the linear predictor."""
        ...

    def linkinv(self, eta: np.ndarray) -> np.ndarray:
        """Map the linear predictor to the per-trial mean."""
        ...

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        """Derivative ``dμ/dη`` evaluated at *eta*."""
        ...

    def variance(self, mu: np.ndarray) -> np.ndarray:
        """Per-trial variance function ``V(μ)``."""
        ...

    def log_density(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        dispersion: np.ndarray | float,
        trials: np.ndarray,
    ) -> np.ndarray:
        """Elementwise ``log p(y | μ, φ)``; broadcasts over draws."""
        ...

    def kl_divergence(
        self,
        mu_ref: np.ndarray,
        dispersion_ref: np.ndarray,
        mu_sub: np.ndarray,
        dispersion_sub: np.ndarray,
        trials: np.ndarray,
    ) -> np.ndarray:
        """Per-draw KL divergence from reference to submodel.

        Args:
            mu_ref: Reference per-trial means ``(S, n)``.
            dispersion_ref: Reference dispersions ``(S,)``.
            mu_sub: Submodel per-trial means ``(S, n)``.
            dispersion_sub: Submodel dispersions ``(S,)``.
            trials: Trials per row ``(n,)``.

        Returns:
            Divergence per draw, shape ``(S,)``, summed over rows.
        """
        ...

    def deviance(self, y: np.ndarray, mu: np.ndarray, trials: np.ndarray) -> np.ndarray:
        """Elementwise unit deviance."""
        ...

    def decision(self, mu: np.ndarray, trials: np.ndarray) -> np.ndarray:
        """Point prediction used by the accuracy statistic."""
        ...

    def sample(
        self,
        mu: np.ndarray,
        dispersion: np.ndarray,
        trials: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """Draw responses from the predictive distribution."""
        ...


# ------------------------------------------------------------------ #
# Shared GLM machinery
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class _LinkedFamily:
    """Link plumbing shared by the concrete families."""

    link: str

    def _link_obj(self) -> Any:
        return _make_link(self.link)

    def linkfun(self, mu: np.ndarray) -> np.ndarray:
        return np.asarray(self._link_obj()(self._clip_mu(mu)))

    def linkinv(self, eta: np.ndarray) -> np.ndarray:
        return np.asarray(self._link_obj().inverse(np.asarray(eta, dtype=float)))

    def mu_eta(self, eta: np.ndarray) -> np.ndarray:
        d = np.asarray(self._link_obj().inverse_deriv(np.asarray(eta, dtype=float)))
        return np.maximum(d, _EPS)

    def _clip_mu(self, mu: np.ndarray) -> np.ndarray:
        return np.asarray(mu, dtype=float)


# ------------------------------------------------------------------ #
# GaussianFamily
# ------------------------------------------------------------------ #
#
# For a Gaussian draw with mean μ_ref and standard deviation σ_ref the
# KL divergence to N(μ_sub, σ_sub²) summed over n rows is
#
#   KL = Σᵢ [ log(σ_sub/σ_ref) + (σ_ref² + (μ_ref,ᵢ − μ_sub,ᵢ)²)/(2σ_sub²) − ½ ]
#
# Minimising over the coefficients is least squares of μ_ref on the
# submodel design; minimising over σ_sub gives
#
#   σ_sub² = σ_ref² + mean((μ_ref − μ_sub)²)
#
# so the projected noise is never below the reference noise.


@dataclass(frozen=True)
class GaussianFamily(_LinkedFamily):
    """Gaussian response with identity link."""

    link: str = "identity"

    @property
    def name(self) -> str:
        return "gaussian"

    @property
    def has_dispersion(self) -> bool:
        return True

    @property
    def closed_form(self) -> bool:
        return True

    def validate_y(self, y: np.ndarray, trials: np.ndarray) -> None:  # noqa: ARG002
        """Check that *y* is finite."""
        if not np.all(np.isfinite(y)):
            raise ReferenceModelError("GaussianFamily requires finite Y values.")

    def variance(self, mu: np.ndarray) -> np.ndarray:
        return np.ones_like(np.asarray(mu, dtype=float))

    def log_density(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        dispersion: np.ndarray | float,
        trials: np.ndarray,  # noqa: ARG002
    ) -> np.ndarray:
        sigma = np.asarray(dispersion, dtype=float)
        if sigma.ndim == 1 and np.ndim(mu) == 2:
            sigma = sigma[:, None]
        return np.asarray(stats.norm.logpdf(y, loc=mu, scale=sigma))

    def kl_divergence(
        self,
        mu_ref: np.ndarray,
        dispersion_ref: np.ndarray,
        mu_sub: np.ndarray,
        dispersion_sub: np.ndarray,
        trials: np.ndarray,  # noqa: ARG002
    ) -> np.ndarray:
        s_ref = np.asarray(dispersion_ref, dtype=float)[:, None]
        s_sub = np.asarray(dispersion_sub, dtype=float)[:, None]
        terms = (
            np.log(s_sub / s_ref)
            + (s_ref**2 + (mu_ref - mu_sub) ** 2) / (2.0 * s_sub**2)
            - 0.5
        )
        return np.asarray(terms.sum(axis=1))

    def deviance(self, y: np.ndarray, mu: np.ndarray, trials: np.ndarray) -> np.ndarray:  # noqa: ARG002
        return np.asarray((y - mu) ** 2)

    def decision(self, mu: np.ndarray, trials: np.ndarray) -> np.ndarray:  # noqa: ARG002
        raise ConfigurationError(
            "Classification accuracy is not defined for the gaussian family."
        )

    def sample(
        self,
        mu: np.ndarray,
        dispersion: np.ndarray,
        trials: np.ndarray,  # noqa: ARG002
        rng: np.random.Generator,
    ) -> np.ndarray:
        sigma = np.asarray(dispersion, dtype=float)[:, None]
        return np.asarray(rng.normal(loc=mu, scale=sigma))


# ------------------------------------------------------------------ #
# BinomialFamily
# ------------------------------------------------------------------ #
#
# Responses are success counts out of ``trials`` (Bernoulli when every
# row has one trial).  μ is the success probability.  The draw-wise KL
# divergence between Binomial(t, p_ref) and Binomial(t, p_sub) is
#
#   KL = Σᵢ tᵢ [ p_ref log(p_ref/p_sub) + (1−p_ref) log((1−p_ref)/(1−p_sub)) ]
#
# which is convex in η for the canonical logit link and well behaved
# for probit/cloglog.  There is no dispersion parameter.


@dataclass(frozen=True)
class BinomialFamily(_LinkedFamily):
    """Binomial / Bernoulli response with logit, probit or cloglog link."""

    link: str = "logit"

    @property
    def name(self) -> str:
        return "binomial"

    @property
    def has_dispersion(self) -> bool:
        return False

    @property
    def closed_form(self) -> bool:
        return False

    def _clip_mu(self, mu: np.ndarray) -> np.ndarray:
        return np.clip(np.asarray(mu, dtype=float), _EPS, 1.0 - _EPS)

    def validate_y(self, y: np.ndarray, trials: np.ndarray) -> None:
        """Check that *y* holds integer counts in ``[0, trials]``."""
        if not np.all(np.isfinite(y)) or np.any(y != np.round(y)):
            raise ReferenceModelError(
                "BinomialFamily requires integer success counts."
            )
        if np.any(y < 0) or np.any(y > trials):
            raise ReferenceModelError(
                "BinomialFamily requires 0 <= y <= trials for every row."
            )

    def linkinv(self, eta: np.ndarray) -> np.ndarray:
        return self._clip_mu(super().linkinv(eta))

    def variance(self, mu: np.ndarray) -> np.ndarray:
        p = self._clip_mu(mu)
        return p * (1.0 - p)

    def log_density(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        dispersion: np.ndarray | float,  # noqa: ARG002
        trials: np.ndarray,
    ) -> np.ndarray:
        return np.asarray(stats.binom.logpmf(y, trials, self._clip_mu(mu)))

    def kl_divergence(
        self,
        mu_ref: np.ndarray,
        dispersion_ref: np.ndarray,  # noqa: ARG002
        mu_sub: np.ndarray,
        dispersion_sub: np.ndarray,  # noqa: ARG002
        trials: np.ndarray,
    ) -> np.ndarray:
        p_ref = self._clip_mu(mu_ref)
        p_sub = self._clip_mu(mu_sub)
        # rel_entr handles p log(p/q) with the 0·log 0 = 0 convention.
        terms = special.rel_entr(p_ref, p_sub) + special.rel_entr(1.0 - p_ref, 1.0 - p_sub)
        return np.asarray((terms * trials).sum(axis=-1))

    def deviance(self, y: np.ndarray, mu: np.ndarray, trials: np.ndarray) -> np.ndarray:
        p = self._clip_mu(mu)
        expected = trials * p
        return np.asarray(
            2.0
            * (
                special.xlogy(y, y / np.maximum(expected, _EPS))
                + special.xlogy(trials - y, (trials - y) / np.maximum(trials - expected, _EPS))
            )
        )

    def decision(self, mu: np.ndarray, trials: np.ndarray) -> np.ndarray:
        """Predicted success count: majority vote per trial."""
        return np.asarray(np.where(np.asarray(mu) > 0.5, trials, 0.0))

    def sample(
        self,
        mu: np.ndarray,
        dispersion: np.ndarray,  # noqa: ARG002
        trials: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        n_trials = np.broadcast_to(trials.astype(np.int64), np.shape(mu))
        return np.asarray(rng.binomial(n_trials, self._clip_mu(mu))).astype(float)


# ------------------------------------------------------------------ #
# PoissonFamily
# ------------------------------------------------------------------ #
#
# Count responses with log link.  The draw-wise KL divergence between
# Poisson(μ_ref) and Poisson(μ_sub) is
#
#   KL = Σᵢ [ μ_ref log(μ_ref/μ_sub) − μ_ref + μ_sub ]
#
# which is the Poisson deviance with the reference mean standing in
# for the observed count.


@dataclass(frozen=True)
class PoissonFamily(_LinkedFamily):
    """Poisson response with log link."""

    link: str = "log"

    @property
    def name(self) -> str:
        return "poisson"

    @property
    def has_dispersion(self) -> bool:
        return False

    @property
    def closed_form(self) -> bool:
        return False

    def _clip_mu(self, mu: np.ndarray) -> np.ndarray:
        return np.maximum(np.asarray(mu, dtype=float), _EPS)

    def validate_y(self, y: np.ndarray, trials: np.ndarray) -> None:  # noqa: ARG002
        """Check that *y* holds non-negative integer counts."""
        if not np.all(np.isfinite(y)) or np.any(y < 0) or np.any(y != np.round(y)):
            raise ReferenceModelError(
                "PoissonFamily requires non-negative integer counts."
            )

    def linkinv(self, eta: np.ndarray) -> np.ndarray:
        # exp overflows long before the projection could recover.
        return self._clip_mu(super().linkinv(np.minimum(eta, 700.0)))

    def variance(self, mu: np.ndarray) -> np.ndarray:
        return self._clip_mu(mu)

    def log_density(
        self,
        y: np.ndarray,
        mu: np.ndarray,
        dispersion: np.ndarray | float,  # noqa: ARG002
        trials: np.ndarray,  # noqa: ARG002
    ) -> np.ndarray:
        return np.asarray(stats.poisson.logpmf(y, self._clip_mu(mu)))

    def kl_divergence(
        self,
        mu_ref: np.ndarray,
        dispersion_ref: np.ndarray,  # noqa: ARG002
        mu_sub: np.ndarray,
        dispersion_sub: np.ndarray,  # noqa: ARG002
        trials: np.ndarray,  # noqa: ARG002
    ) -> np.ndarray:
        m_ref = self._clip_mu(mu_ref)
        m_sub = self._clip_mu(mu_sub)
        terms = special.rel_entr(m_ref, m_sub) - m_ref + m_sub
        return np.asarray(terms.sum(axis=-1))

    def deviance(self, y: np.ndarray, mu: np.ndarray, trials: np.ndarray) -> np.ndarray:  # noqa: ARG002
        m = self._clip_mu(mu)
        return np.asarray(2.0 * (special.xlogy(y, y / m) - (y - m)))

    def decision(self, mu: np.ndarray, trials: np.ndarray) -> np.ndarray:  # noqa: ARG002
        """Predicted count: the Poisson mode ``floor(μ)``."""
        return np.floor(np.asarray(mu, dtype=float))

    def sample(
        self,
        mu: np.ndarray,
        dispersion: np.ndarray,  # noqa: ARG002
        trials: np.ndarray,  # noqa: ARG002
        rng: np.random.Generator,
    ) -> np.ndarray:
        return np.asarray(rng.poisson(self._clip_mu(mu))).astype(float)


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #

_FAMILIES: dict[str, type] = {}
"""Registry mapping family name strings to concrete family classes."""

_SUPPORTED_LINKS: dict[str, frozenset[str]] = {}
"""Links accepted for each registered family."""

_ALIASES = {"bernoulli": "binomial", "normal": "gaussian", "linear": "gaussian"}


def register_family(name: str, cls: type, links: frozenset[str] | set[str]) -> None:
    """Register a concrete ``ProjectionFamily`` class under *name*.

    Args:
        name: Lookup key (e.g. ``"gaussian"``).
        cls: A class implementing the ``ProjectionFamily`` protocol
            whose constructor accepts a ``link`` keyword.
        links: Link names for which the projection is well posed.

    Raises:
        TypeError: If *cls* does not satisfy the protocol.
    """
    links = frozenset(links)
    unknown = links - set(_LINKS)
    if unknown:
        raise UnsupportedFamilyError(f"Unknown link(s) {sorted(unknown)}.")
    try:
        instance = cls(link=next(iter(sorted(links))))
    except Exception:  # noqa: BLE001
        msg = f"{cls!r} could not be instantiated for protocol check."
        raise TypeError(msg) from None
    if not isinstance(instance, ProjectionFamily):
        msg = f"{cls!r} does not implement the ProjectionFamily protocol."
        raise TypeError(msg)
    _FAMILIES[name] = cls
    _SUPPORTED_LINKS[name] = links


def resolve_family(
    family: str | ProjectionFamily,
    link: str | None = None,
) -> ProjectionFamily:
    """Resolve a family string or instance to a concrete family.

    Pre-configured instances are returned as-is.  Strings are looked
    up in the registry (``"bernoulli"`` is an alias of
    ``"binomial"``) and instantiated with *link*, or with the family's
    canonical link when *link* is ``None``.

    Raises:
        UnsupportedFamilyError: If the family is unknown or the link
            is not supported for it.
    """
    if isinstance(family, ProjectionFamily):
        if link is not None and link != family.link:
            raise UnsupportedFamilyError(
                f"Link {link!r} conflicts with the {family.name!r} "
                f"instance's link {family.link!r}."
            )
        return family
    key = _ALIASES.get(str(family).lower(), str(family).lower())
    if key not in _FAMILIES:
        available = ", ".join(sorted(_FAMILIES)) or "(none registered)"
        raise UnsupportedFamilyError(
            f"Unknown family {family!r}.  Available families: {available}."
        )
    cls = _FAMILIES[key]
    if link is None:
        return cls()  # type: ignore[no-any-return]
    if link not in _SUPPORTED_LINKS[key]:
        raise UnsupportedFamilyError(
            f"Link {link!r} is not supported for family {key!r}.  "
            f"Supported links: {sorted(_SUPPORTED_LINKS[key])}."
        )
    return cls(link=link)  # type: ignore[no-any-return]


register_family("gaussian", GaussianFamily, {"identity"})
register_family("binomial", BinomialFamily, {"logit", "probit", "cloglog"})
register_family("poisson", PoissonFamily, {"log"})


__all__ = [
    "BinomialFamily",
    "GaussianFamily",
    "PoissonFamily",
    "ProjectionFamily",
    "register_family",
    "resolve_family",
]
