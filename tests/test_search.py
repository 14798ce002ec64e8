"""Tests for forward and L1 search (search.py)."""

import threading

import numpy as np
import pytest

from projection_selection import (
    ConfigurationError,
    ReferenceModel,
    SearchEngine,
    SearchPath,
    SelectionConfig,
    reduce_draws,
)

# ------------------------------------------------------------------ #
# Shared fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


def _reference(rng, beta, family="gaussian", n=80, S=30, X=None):
    p = len(beta)
    X = rng.standard_normal((n, p)) if X is None else X
    beta = np.asarray(beta, dtype=float)
    eta = X @ beta
    coefs = beta + 0.05 * rng.standard_normal((S, p))
    intercept = 0.05 * rng.standard_normal(S)
    if family == "gaussian":
        y = eta + 0.5 * rng.standard_normal(n)
        sigma = 0.5 * np.exp(0.05 * rng.standard_normal(S))
        return ReferenceModel(
            X, y, family="gaussian", coefficients=coefs, intercept=intercept,
            dispersion=sigma,
        )
    y = rng.binomial(1, 1.0 / (1.0 + np.exp(-eta)))
    return ReferenceModel(X, y, family="binomial", coefficients=coefs, intercept=intercept)


# ------------------------------------------------------------------ #
# SearchPath
# ------------------------------------------------------------------ #


class TestSearchPath:
    def test_prefixes(self):
        path = SearchPath((2, 0, 1), 4)
        assert len(path) == 4
        assert path.max_size == 3
        assert not path.is_complete
        assert path.subsets == [(), (2,), (2, 0), (2, 0, 1)]
        assert path.subset(2) == (2, 0)

    def test_rank_of(self):
        path = SearchPath((2, 0), 3)
        assert path.rank_of(2) == 1
        assert path.rank_of(0) == 2
        assert path.rank_of(1) is None

    def test_repeated_variable(self):
        with pytest.raises(ConfigurationError, match="repeats"):
            SearchPath((1, 1), 3)

    def test_out_of_range(self):
        with pytest.raises(ConfigurationError, match="outside"):
            SearchPath((3,), 3)

    def test_subset_out_of_range(self):
        with pytest.raises(ConfigurationError, match="outside the searched range"):
            SearchPath((0,), 3).subset(2)

    def test_numpy_indices_normalised(self):
        path = SearchPath(np.array([1, 0]), 2)
        assert path.order == (1, 0)
        assert all(type(j) is int for j in path.order)
        assert path.is_complete


# ------------------------------------------------------------------ #
# Forward search
# ------------------------------------------------------------------ #


class TestForwardSearch:
    def test_complete_nested_path(self, rng):
        ref = _reference(rng, [3.0, 0.0, 0.0, 2.0, 0.0])
        path = SearchEngine(ref).search(ref.draw_set())
        assert len(path) == 6
        assert sorted(path.order) == list(range(5))
        assert path.method == "forward"
        assert len(path.scores) == 5

    def test_strong_variables_first(self, rng):
        ref = _reference(rng, [3.0, 0.0, 0.0, 2.0, 0.0])
        path = SearchEngine(ref).search(ref.draw_set())
        assert path.order[:2] == (0, 3)

    def test_scores_decrease(self, rng):
        ref = _reference(rng, [3.0, 0.0, 0.0, 2.0, 0.0])
        path = SearchEngine(ref).search(ref.draw_set())
        assert all(b <= a + 1e-9 for a, b in zip(path.scores, path.scores[1:]))

    def test_nv_max_truncates(self, rng):
        ref = _reference(rng, [3.0, 0.0, 0.0, 2.0, 0.0])
        path = SearchEngine(ref, SelectionConfig(nv_max=2)).search(ref.draw_set())
        assert len(path) == 3
        assert path.order == (0, 3)

    def test_nv_max_zero(self, rng):
        ref = _reference(rng, [1.0, 0.0])
        path = SearchEngine(ref, SelectionConfig(nv_max=0)).search(ref.draw_set())
        assert path.order == ()
        assert path.subsets == [()]

    def test_nv_max_above_candidates(self, rng):
        ref = _reference(rng, [1.0, 0.0])
        with pytest.raises(ConfigurationError, match="exceeds"):
            SearchEngine(ref, SelectionConfig(nv_max=3))

    def test_ties_go_to_lowest_index(self, rng):
        x = rng.standard_normal((60, 1))
        X = np.column_stack([rng.standard_normal(60), x, x])
        ref = _reference(rng, [0.0, 1.0, 1.0], X=X)
        path = SearchEngine(ref).search(ref.draw_set())
        assert path.order[0] == 1

    def test_elpd_criterion(self, rng):
        ref = _reference(rng, [3.0, 0.0, 0.0, 2.0, 0.0])
        cfg = SelectionConfig(search_criterion="elpd", nv_max=2)
        path = SearchEngine(ref, cfg).search(ref.draw_set())
        assert set(path.order) == {0, 3}

    def test_parallel_matches_sequential(self, rng):
        ref = _reference(rng, [1.0, 0.5, 0.0, -2.0, 0.0, 0.2])
        draws = reduce_draws(ref.draw_set(), 10, "cluster", random_state=0)
        seq = SearchEngine(ref, SelectionConfig(n_jobs=1)).search(draws)
        par = SearchEngine(ref, SelectionConfig(n_jobs=2)).search(draws)
        assert seq.order == par.order

    def test_binomial(self, rng):
        ref = _reference(rng, [0.0, 2.0, 0.0, -1.5], family="binomial", n=150)
        path = SearchEngine(ref, SelectionConfig(nv_max=2)).search(ref.draw_set())
        assert set(path.order) == {1, 3}
        assert not path.cancelled

    def test_cancelled_before_start(self, rng):
        ref = _reference(rng, [3.0, 0.0, 2.0])
        event = threading.Event()
        event.set()
        path = SearchEngine(ref, cancel_event=event).search(ref.draw_set())
        assert path.cancelled
        assert path.order == ()


# ------------------------------------------------------------------ #
# L1 search
# ------------------------------------------------------------------ #


class TestL1Search:
    def test_complete_path_strong_first(self, rng):
        ref = _reference(rng, [3.0, 0.0, 0.0, 2.0, 0.0])
        path = SearchEngine(ref, SelectionConfig(method="l1")).search(ref.draw_set())
        assert path.method == "l1"
        assert path.is_complete
        assert sorted(path.order) == list(range(5))
        assert path.order[:2] == (0, 3)

    def test_nv_max(self, rng):
        ref = _reference(rng, [3.0, 0.0, 0.0, 2.0, 0.0])
        cfg = SelectionConfig(method="l1", nv_max=1)
        path = SearchEngine(ref, cfg).search(ref.draw_set())
        assert path.order == (0,)

    def test_entry_penalties_non_increasing(self, rng):
        ref = _reference(rng, [3.0, 1.0, 0.0, 2.0, 0.5])
        path = SearchEngine(ref, SelectionConfig(method="l1")).search(ref.draw_set())
        entered = [a for a in path.scores if a > 0]
        assert all(b <= a for a, b in zip(entered, entered[1:]))

    def test_binomial_pseudo_data(self, rng):
        ref = _reference(rng, [0.0, 2.0, 0.0, -1.5], family="binomial", n=150)
        path = SearchEngine(ref, SelectionConfig(method="l1")).search(ref.draw_set())
        assert set(path.order[:2]) == {1, 3}

    def test_identical_columns_ordered_by_index(self, rng):
        x = rng.standard_normal((60, 1))
        X = np.column_stack([x, x, rng.standard_normal(60)])
        ref = _reference(rng, [1.0, 1.0, 0.0], X=X)
        path = SearchEngine(ref, SelectionConfig(method="l1")).search(ref.draw_set())
        assert path.order.index(0) < path.order.index(1)

    def test_cancelled(self, rng):
        ref = _reference(rng, [1.0, 0.0])
        event = threading.Event()
        event.set()
        cfg = SelectionConfig(method="l1")
        path = SearchEngine(ref, cfg, cancel_event=event).search(ref.draw_set())
        assert path.cancelled
        assert path.order == ()
