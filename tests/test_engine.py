"""Tests for the SelectionEngine pipeline and the public entry points."""

import threading
import warnings

import numpy as np
import pytest

from projection_selection import (
    ConfigurationError,
    ConvergenceWarning,
    ImportanceWeightReliabilityWarning,
    ReferenceModel,
    SelectionConfig,
    SelectionContext,
    SelectionEngine,
    SelectionResult,
    cv_varsel,
    varsel,
)

# ------------------------------------------------------------------ #
# Shared fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


def _gaussian_reference(rng, n=60, S=40):
    X = rng.standard_normal((n, 5))
    beta = np.array([2.0, 0.0, -1.5, 0.0, 0.0])
    y = X @ beta + 0.5 * rng.standard_normal(n)
    coefs = beta + 0.05 * rng.standard_normal((S, 5))
    intercept = 0.05 * rng.standard_normal(S)
    sigma = 0.5 * np.exp(0.05 * rng.standard_normal(S))
    return ReferenceModel(
        X, y, family="gaussian", coefficients=coefs, intercept=intercept,
        dispersion=sigma, feature_names=["a", "b", "c", "d", "e"],
    )


def _binomial_reference(rng, n=100, S=40):
    X = rng.standard_normal((n, 3))
    beta = np.array([1.5, 0.0, -1.0])
    y = rng.binomial(1, 1.0 / (1.0 + np.exp(-(X @ beta))))
    coefs = beta + 0.2 * rng.standard_normal((S, 3))
    intercept = 0.1 * rng.standard_normal(S)
    return ReferenceModel(X, y, family="binomial", coefficients=coefs, intercept=intercept)


# ------------------------------------------------------------------ #
# Pipeline
# ------------------------------------------------------------------ #


class TestSelectionEngine:
    def test_training_run(self, rng):
        ref = _gaussian_reference(rng)
        result = SelectionEngine(ref, SelectionConfig(random_state=0)).run()
        assert isinstance(result, SelectionResult)
        assert result.validation == "none"
        assert result.search_path.order[:2] == (0, 2)
        assert result.solution_terms[:2] == ["a", "c"]
        assert len(result.statistics["elpd"]) == 6
        assert len(result.deltas["mlpd"]) == 6
        assert len(result.submodels) == 6
        assert result.suggested_size == 2
        assert result.n_draws_reference == 40
        assert result.n_draws_search == 20
        assert result.n_draws_eval == 40

    def test_deltas_are_paired_differences(self, rng):
        ref = _gaussian_reference(rng)
        result = SelectionEngine(ref, SelectionConfig(random_state=0)).run()
        ctx = result.context
        for k, delta in enumerate(result.deltas["elpd"]):
            diff = ctx.training_pointwise["elpd"][k] - ctx.reference_training_pointwise["elpd"]
            assert delta.mean == pytest.approx(diff.sum())

    def test_context_populated(self, rng):
        ref = _gaussian_reference(rng)
        ctx = SelectionContext()
        SelectionEngine(ref, SelectionConfig(random_state=0), ctx=ctx).run()
        assert ctx.family_name == "gaussian"
        assert ctx.n_obs == 60
        assert ctx.n_candidates == 5
        assert ctx.search_path is not None
        assert ctx.search_draws.n_draws == 20
        assert ctx.training_pointwise["elpd"].shape == (6, 60)
        assert ctx.cache_misses > 0
        assert ctx.warnings_captured == []

    def test_best_baseline(self, rng):
        ref = _gaussian_reference(rng)
        result = SelectionEngine(ref, SelectionConfig(random_state=0)).run(baseline="best")
        assert result.baseline == "best"
        assert result.suggested_size == 2

    def test_rmse_primary(self, rng):
        ref = _gaussian_reference(rng)
        cfg = SelectionConfig(random_state=0, statistics=("rmse",), primary_statistic="rmse")
        result = SelectionEngine(ref, cfg).run()
        assert result.primary_statistic == "rmse"
        assert result.suggested_size == 2

    def test_unknown_validation(self, rng):
        ref = _gaussian_reference(rng)
        with pytest.raises(ConfigurationError, match="validation"):
            SelectionEngine(ref).run("bootstrap")

    def test_unknown_baseline(self, rng):
        ref = _gaussian_reference(rng)
        with pytest.raises(ConfigurationError, match="baseline"):
            SelectionEngine(ref).run(baseline="null")

    def test_refit_requires_kfold(self, rng):
        ref = _gaussian_reference(rng)
        with pytest.raises(ConfigurationError, match="refit"):
            SelectionEngine(ref).run("loo", refit=lambda m: ref)

    def test_too_many_folds(self, rng):
        ref = _gaussian_reference(rng, n=6)
        with pytest.raises(ConfigurationError, match="exceeds"):
            SelectionEngine(ref, SelectionConfig(k_folds=10)).run("kfold")

    def test_gaussian_accuracy_rejected(self, rng):
        ref = _gaussian_reference(rng)
        cfg = SelectionConfig(statistics=("elpd", "acc"))
        with pytest.raises(ConfigurationError, match="acc"):
            SelectionEngine(ref, cfg)

    def test_nv_max_above_candidates(self, rng):
        ref = _gaussian_reference(rng)
        with pytest.raises(ConfigurationError, match="exceeds"):
            SelectionEngine(ref, SelectionConfig(nv_max=6))

    def test_truncated_path_never_suggests_unsearched_size(self, rng):
        # Six strong predictors: no size up to nv_max=2 comes close to
        # the reference, so the rule falls back to the largest size searched.
        n, S = 80, 30
        X = rng.standard_normal((n, 6))
        beta = np.array([2.0, -2.0, 1.5, -1.5, 1.0, -1.0])
        y = X @ beta + 0.3 * rng.standard_normal(n)
        coefs = beta + 0.02 * rng.standard_normal((S, 6))
        ref = ReferenceModel(X, y, coefficients=coefs, dispersion=np.full(S, 0.3))
        result = varsel(ref, nv_max=2, random_state=0)
        assert result.max_size == 2
        assert result.suggested_size == 2
        assert result.projection().size == 2
        assert bool(result.summary_frame().loc[2, "suggested"])

    def test_loo_needs_two_draws(self, rng):
        X = rng.standard_normal((30, 2))
        y = X[:, 0] + rng.standard_normal(30)
        ref = ReferenceModel(
            X, y, coefficients=np.array([[1.0, 0.0]]), dispersion=np.array([1.0])
        )
        with pytest.raises(ConfigurationError, match="at least 2 reference draws"):
            cv_varsel(ref, cv_method="loo")
        assert varsel(ref, random_state=0).n_draws_reference == 1


# ------------------------------------------------------------------ #
# Warnings as data
# ------------------------------------------------------------------ #


class TestWarnings:
    def test_single_convergence_warning(self, rng):
        ref = _binomial_reference(rng)
        cfg = SelectionConfig(max_iter=1, tol=1e-14, random_state=0)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = SelectionEngine(ref, cfg).run()
        conv = [w for w in caught if issubclass(w.category, ConvergenceWarning)]
        assert len(conv) == 1
        assert result.convergence_failures > 0
        assert len(result.context.warnings_captured) == 1

    def test_reliability_warning(self, rng):
        ref = _gaussian_reference(rng)
        cfg = SelectionConfig(pareto_k_threshold=1e-9, random_state=0)
        with pytest.warns(ImportanceWeightReliabilityWarning, match="Pareto k"):
            result = SelectionEngine(ref, cfg).run("loo")
        assert len(result.unreliable_observations) > 0
        assert result.pareto_k.shape == (60,)


# ------------------------------------------------------------------ #
# Cancellation
# ------------------------------------------------------------------ #


class TestCancellation:
    def test_cancelled_search_returns_partial_result(self, rng):
        ref = _gaussian_reference(rng)
        event = threading.Event()
        event.set()
        result = SelectionEngine(ref, cancel_event=event).run()
        assert result.cancelled
        assert result.search_path.order == ()
        assert len(result.statistics["elpd"]) == 1
        assert len(result.submodels) == 1

    def test_cancelled_run_skips_validation(self, rng):
        ref = _gaussian_reference(rng)
        event = threading.Event()
        event.set()
        result = cv_varsel(ref, cv_method="kfold", k_folds=3, cancel_event=event)
        assert result.cancelled
        assert result.fold_paths == []
        assert result.ranking_frequencies is None


# ------------------------------------------------------------------ #
# Entry points
# ------------------------------------------------------------------ #


class TestEntryPoints:
    def test_varsel_options_override_config(self, rng):
        ref = _gaussian_reference(rng)
        result = varsel(ref, SelectionConfig(nv_max=4), nv_max=2, random_state=0)
        assert result.max_size == 2

    def test_cv_varsel_loo(self, rng):
        ref = _gaussian_reference(rng)
        result = cv_varsel(ref, random_state=0)
        assert result.validation == "loo"
        assert result.pareto_k is not None
        assert result.suggested_size == 2

    def test_cv_varsel_kfold(self, rng):
        ref = _gaussian_reference(rng)
        result = cv_varsel(ref, cv_method="kfold", k_folds=3, random_state=0)
        assert result.validation == "kfold"
        assert len(result.fold_paths) == 3
        assert result.ranking_frequencies.shape == (5, 5)
        np.testing.assert_allclose(result.ranking_frequencies[:, -1], 1.0)
        assert result.ranking_frequencies[0, 1] == 1.0

    def test_cv_varsel_unknown_method(self, rng):
        ref = _gaussian_reference(rng)
        with pytest.raises(ConfigurationError, match="validation"):
            cv_varsel(ref, cv_method="holdout")
