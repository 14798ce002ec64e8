"""projection_selection — Projection predictive variable selection.

Orders candidate predictors by how well submodels reproduce a fitted
reference model's posterior predictive distribution, projects the
reference draws onto each submodel by Kullback-Leibler minimisation
(closed form for Gaussian, Fisher scoring for binomial and Poisson),
and estimates the predictive cost of each submodel size with K-fold
or Pareto-smoothed importance sampling leave-one-out validation.

Public API:
    .. autosummary::
        varsel
        cv_varsel
        project
        suggest_size
        print_selection_table
        selection_summary_frame
        ReferenceModel
        LinearPredictor
        CallablePredictor
        Predictor
        PosteriorDrawSet
        ReducedDrawSet
        DrawReducer
        reduce_draws
        Projector
        ProjectedSubmodel
        ProjectionCache
        SearchEngine
        SearchPath
        Evaluator
        StatisticSummary
        summarize_pointwise
        STATISTICS
        CrossValidator
        CVFold
        kfold_partition
        psis_loo
        psis_smooth
        gpd_fit
        SelectionEngine
        SelectionConfig
        SelectionContext
        SelectionResult
        ProjectionFamily
        GaussianFamily
        BinomialFamily
        PoissonFamily
        register_family
        resolve_family
        get_n_jobs
        set_n_jobs
"""

from ._config import SelectionConfig, get_n_jobs, set_n_jobs
from ._context import SelectionContext
from ._results import SelectionResult
from .core import cv_varsel, project, varsel
from .cross_validation import CrossValidator, CVFold, kfold_partition
from .display import print_selection_table, selection_summary_frame
from .draws import DrawReducer, PosteriorDrawSet, ReducedDrawSet, reduce_draws
from .engine import SelectionEngine
from .evaluation import STATISTICS, Evaluator, StatisticSummary, summarize_pointwise
from .exceptions import (
    ConfigurationError,
    ConvergenceWarning,
    ImportanceWeightReliabilityWarning,
    ReferenceModelError,
    UnsupportedFamilyError,
)
from .families import (
    BinomialFamily,
    GaussianFamily,
    PoissonFamily,
    ProjectionFamily,
    register_family,
    resolve_family,
)
from .projection import ProjectedSubmodel, ProjectionCache, Projector
from .psis import gpd_fit, psis_loo, psis_smooth
from .reference import CallablePredictor, LinearPredictor, Predictor, ReferenceModel
from .search import SearchEngine, SearchPath
from .size_selection import suggest_size

__version__ = "0.1.0"

__all__ = [
    "STATISTICS",
    "BinomialFamily",
    "CVFold",
    "CallablePredictor",
    "ConfigurationError",
    "ConvergenceWarning",
    "CrossValidator",
    "DrawReducer",
    "Evaluator",
    "GaussianFamily",
    "ImportanceWeightReliabilityWarning",
    "LinearPredictor",
    "PoissonFamily",
    "PosteriorDrawSet",
    "Predictor",
    "ProjectedSubmodel",
    "ProjectionCache",
    "ProjectionFamily",
    "Projector",
    "ReducedDrawSet",
    "ReferenceModel",
    "ReferenceModelError",
    "SearchEngine",
    "SearchPath",
    "SelectionConfig",
    "SelectionContext",
    "SelectionEngine",
    "SelectionResult",
    "StatisticSummary",
    "UnsupportedFamilyError",
    "cv_varsel",
    "get_n_jobs",
    "gpd_fit",
    "kfold_partition",
    "print_selection_table",
    "project",
    "psis_loo",
    "psis_smooth",
    "reduce_draws",
    "register_family",
    "resolve_family",
    "selection_summary_frame",
    "set_n_jobs",
    "suggest_size",
    "summarize_pointwise",
    "varsel",
]
