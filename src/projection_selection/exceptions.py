"""Error and warning taxonomy for projection predictive selection.

Errors are raised immediately and never recovered locally:

* :class:`ConfigurationError` — invalid size bounds, fold counts,
  statistic names, or family/statistic combinations.
* :class:`UnsupportedFamilyError` — a family/link pair without a
  divergence projection.
* :class:`ReferenceModelError` — dimension mismatches or invalid
  values supplied to :class:`~projection_selection.ReferenceModel`.

Warnings are additive annotations on otherwise-valid results:

* :class:`ConvergenceWarning` — the iterative projection hit its
  iteration cap for at least one draw.  The last iterate is kept.
* :class:`ImportanceWeightReliabilityWarning` — the Pareto tail
  diagnostic exceeded its threshold for at least one observation in
  leave-one-out evaluation.  The weights are still used.
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid option or option combination."""


class UnsupportedFamilyError(ConfigurationError):
    """The family/link pair has no closed-form projection."""


class ReferenceModelError(ValueError):
    """Malformed reference model inputs."""


class ConvergenceWarning(UserWarning):
    """Iterative projection stopped at its iteration cap."""


class ImportanceWeightReliabilityWarning(UserWarning):
    """Pareto-smoothed importance weights flagged as unreliable."""


__all__ = [
    "ConfigurationError",
    "ConvergenceWarning",
    "ImportanceWeightReliabilityWarning",
    "ReferenceModelError",
    "UnsupportedFamilyError",
]
