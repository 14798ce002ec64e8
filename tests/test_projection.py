"""Tests for the Projector, ProjectedSubmodel and ProjectionCache."""

import numpy as np
import pytest

from projection_selection import (
    ConfigurationError,
    ConvergenceWarning,
    ProjectedSubmodel,
    ProjectionCache,
    Projector,
    ReferenceModel,
    SelectionConfig,
    project,
    reduce_draws,
)

# ------------------------------------------------------------------ #
# Shared fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


def _gaussian_reference(rng, n=50, S=40):
    X = rng.standard_normal((n, 4))
    beta = np.array([1.2, -0.8, 0.3, 0.0])
    y = X @ beta + 0.5 * rng.standard_normal(n)
    coefs = beta + 0.1 * rng.standard_normal((S, 4))
    intercept = 0.2 + 0.05 * rng.standard_normal(S)
    sigma = 0.5 * np.exp(0.05 * rng.standard_normal(S))
    return ReferenceModel(
        X, y, family="gaussian", coefficients=coefs, intercept=intercept, dispersion=sigma
    )


def _binomial_reference(rng, n=80, S=30):
    X = rng.standard_normal((n, 4))
    beta = np.array([1.0, -1.0, 0.5, 0.0])
    p = 1.0 / (1.0 + np.exp(-(X @ beta)))
    y = rng.binomial(1, p)
    coefs = beta + 0.15 * rng.standard_normal((S, 4))
    intercept = 0.1 * rng.standard_normal(S)
    return ReferenceModel(X, y, family="binomial", coefficients=coefs, intercept=intercept)


def _poisson_reference(rng, n=80, S=30):
    X = rng.standard_normal((n, 4))
    beta = np.array([0.5, -0.3, 0.2, 0.0])
    y = rng.poisson(np.exp(0.5 + X @ beta))
    coefs = beta + 0.05 * rng.standard_normal((S, 4))
    intercept = 0.5 + 0.05 * rng.standard_normal(S)
    return ReferenceModel(X, y, family="poisson", coefficients=coefs, intercept=intercept)


_BUILDERS = {
    "gaussian": _gaussian_reference,
    "binomial": _binomial_reference,
    "poisson": _poisson_reference,
}


# ------------------------------------------------------------------ #
# Gaussian closed form
# ------------------------------------------------------------------ #


class TestGaussianProjection:
    def test_full_subset_reproduces_reference(self, rng):
        ref = _gaussian_reference(rng)
        sub = Projector(ref).project(range(4), ref.draw_set())
        np.testing.assert_allclose(sub.eta_train, ref.eta, atol=1e-8)
        np.testing.assert_allclose(sub.dispersion, ref.dispersion, atol=1e-8)
        np.testing.assert_allclose(sub.kl, 0.0, atol=1e-8)
        assert sub.converged.all()

    def test_full_subset_recovers_coefficients(self, rng):
        ref = _gaussian_reference(rng)
        sub = Projector(ref).project([0, 1, 2, 3], ref.draw_set())
        np.testing.assert_allclose(sub.slopes, ref.predictor.coefficients, atol=1e-8)
        np.testing.assert_allclose(sub.intercept, ref.predictor.intercept, atol=1e-8)

    def test_dispersion_never_below_reference(self, rng):
        ref = _gaussian_reference(rng)
        sub = Projector(ref).project([2], ref.draw_set())
        assert np.all(sub.dispersion >= ref.dispersion)

    def test_projected_variance_formula(self, rng):
        ref = _gaussian_reference(rng)
        sub = Projector(ref).project([0, 3], ref.draw_set())
        resid = np.mean((ref.eta - sub.eta_train) ** 2, axis=1)
        np.testing.assert_allclose(sub.dispersion**2, ref.dispersion**2 + resid)

    def test_empty_subset(self, rng):
        ref = _gaussian_reference(rng)
        sub = Projector(ref).project((), ref.draw_set())
        assert sub.size == 0
        assert sub.coefficients.shape == (40, 1)
        np.testing.assert_allclose(sub.intercept, ref.eta.mean(axis=1))

    def test_slope_order_follows_subset(self, rng):
        ref = _gaussian_reference(rng)
        a = Projector(ref).project([0, 1], ref.draw_set())
        b = Projector(ref).project([1, 0], ref.draw_set())
        np.testing.assert_allclose(a.slopes[:, 0], b.slopes[:, 1])
        assert b.feature_names == ("x1", "x0")


# ------------------------------------------------------------------ #
# Divergence monotonicity across families
# ------------------------------------------------------------------ #


class TestMonotoneDivergence:
    @pytest.mark.parametrize("family", ["gaussian", "binomial", "poisson"])
    def test_nested_subsets(self, family, rng):
        ref = _BUILDERS[family](rng)
        projector = Projector(ref, SelectionConfig(tol=1e-10))
        draws = ref.draw_set()
        kls = [projector.project(s, draws).kl for s in [(), (1,), (1, 2), (0, 1, 2), (0, 1, 2, 3)]]
        for small, big in zip(kls, kls[1:]):
            assert np.all(big <= small + 1e-6 * (1.0 + np.abs(small)))

    @pytest.mark.parametrize("family", ["binomial", "poisson"])
    def test_iterative_full_subset_converges(self, family, rng):
        ref = _BUILDERS[family](rng)
        sub = Projector(ref).project(range(4), ref.draw_set())
        assert sub.converged.all()
        assert np.all(sub.n_iter < 50)
        np.testing.assert_allclose(sub.eta_train, ref.eta, atol=1e-5)


# ------------------------------------------------------------------ #
# Reduced draw sets and parallelism
# ------------------------------------------------------------------ #


class TestReducedDraws:
    def test_weights_carried_over(self, rng):
        ref = _gaussian_reference(rng)
        reduced = reduce_draws(ref.draw_set(), 5, "cluster", random_state=0)
        sub = Projector(ref).project([0], reduced)
        assert sub.n_draws == reduced.n_draws
        np.testing.assert_allclose(sub.weights, reduced.weights)
        assert sub.reduction_signature == reduced.signature

    @pytest.mark.parametrize("family", ["gaussian", "binomial"])
    def test_chunked_matches_sequential(self, family, rng):
        ref = _BUILDERS[family](rng)
        draws = ref.draw_set()
        seq = Projector(ref, SelectionConfig(n_jobs=1)).project([0, 2], draws)
        par = Projector(ref, SelectionConfig(n_jobs=3)).project([0, 2], draws)
        np.testing.assert_allclose(par.coefficients, seq.coefficients, atol=1e-8)
        np.testing.assert_array_equal(par.converged, seq.converged)

    def test_row_mismatch_rejected(self, rng):
        ref = _gaussian_reference(rng)
        other = _gaussian_reference(rng, n=20)
        with pytest.raises(ConfigurationError, match="rows"):
            Projector(ref).project([0], other.draw_set())


# ------------------------------------------------------------------ #
# Validation and warnings
# ------------------------------------------------------------------ #


class TestProjectorValidation:
    def test_repeated_index(self, rng):
        ref = _gaussian_reference(rng)
        with pytest.raises(ConfigurationError, match="repeats"):
            Projector(ref).project([1, 1], ref.draw_set())

    def test_out_of_range_index(self, rng):
        ref = _gaussian_reference(rng)
        with pytest.raises(ConfigurationError, match="outside"):
            Projector(ref).project([4], ref.draw_set())

    def test_convergence_warning(self, rng):
        ref = _binomial_reference(rng)
        cfg = SelectionConfig(max_iter=1, tol=1e-14)
        with pytest.warns(ConvergenceWarning, match="did not converge"):
            sub = Projector(ref, cfg).project([2], ref.draw_set())
        assert sub.convergence_failures > 0

    def test_warning_suppressed(self, rng, recwarn):
        ref = _binomial_reference(rng)
        cfg = SelectionConfig(max_iter=1, tol=1e-14)
        sub = Projector(ref, cfg).project([2], ref.draw_set(), warn=False)
        assert sub.convergence_failures > 0
        assert not [w for w in recwarn if issubclass(w.category, ConvergenceWarning)]


# ------------------------------------------------------------------ #
# ProjectedSubmodel
# ------------------------------------------------------------------ #


class TestProjectedSubmodel:
    def test_predict_on_training_rows(self, rng):
        ref = _gaussian_reference(rng)
        sub = Projector(ref).project([0, 1], ref.draw_set())
        np.testing.assert_allclose(sub.predict_linear(ref.X), sub.eta_train, atol=1e-10)
        assert isinstance(sub, ProjectedSubmodel)

    def test_predict_requires_full_candidate_matrix(self, rng):
        ref = _gaussian_reference(rng)
        sub = Projector(ref).project([0, 1], ref.draw_set())
        with pytest.raises(ConfigurationError, match="full candidate matrix"):
            sub.predict_linear(ref.X[:, :2])

    def test_predict_mean_binomial(self, rng):
        ref = _binomial_reference(rng)
        sub = Projector(ref).project([0], ref.draw_set())
        mu = sub.predict_mean()
        assert np.all((mu > 0) & (mu < 1))

    def test_sample_predictive(self, rng):
        ref = _poisson_reference(rng)
        sub = Projector(ref).project([0, 1], ref.draw_set())
        ys = sub.sample_predictive(random_state=0)
        assert ys.shape == (30, 80)
        assert np.all(ys >= 0)
        many = sub.sample_predictive(ref.X[:5], n_samples=200, random_state=1)
        assert many.shape == (200, 5)

    def test_weighted_kl_and_repr(self, rng):
        ref = _gaussian_reference(rng)
        sub = Projector(ref).project([3], ref.draw_set())
        assert sub.weighted_kl() == pytest.approx(float(np.mean(sub.kl)))
        assert "subset=(3,)" in repr(sub)


# ------------------------------------------------------------------ #
# ProjectionCache
# ------------------------------------------------------------------ #


class TestProjectionCache:
    def test_hit_on_second_call(self, rng):
        ref = _gaussian_reference(rng)
        cache = ProjectionCache()
        projector = Projector(ref, cache=cache)
        draws = reduce_draws(ref.draw_set(), 10, "cluster", random_state=0)
        first = projector.project([0, 2], draws)
        second = projector.project([0, 2], draws)
        assert second is first
        assert cache.hits == 1
        assert cache.misses == 1
        assert len(cache) == 1

    def test_reordered_subset_permutes_columns(self, rng):
        ref = _gaussian_reference(rng)
        cache = ProjectionCache()
        projector = Projector(ref, cache=cache)
        draws = ref.draw_set()
        first = projector.project([0, 2], draws)
        swapped = projector.project([2, 0], draws)
        assert cache.hits == 1
        assert swapped.subset == (2, 0)
        np.testing.assert_array_equal(swapped.coefficients[:, 0], first.coefficients[:, 0])
        np.testing.assert_array_equal(swapped.coefficients[:, 1], first.coefficients[:, 2])
        np.testing.assert_allclose(swapped.eta_train, first.eta_train)

    def test_signature_is_part_of_key(self, rng):
        ref = _gaussian_reference(rng)
        cache = ProjectionCache()
        projector = Projector(ref, cache=cache)
        a = reduce_draws(ref.draw_set(), 10, "subsample", random_state=0)
        b = reduce_draws(ref.draw_set(), 10, "subsample", random_state=1)
        projector.project([1], a)
        projector.project([1], b)
        assert cache.misses == 2
        assert len(cache) == 2
        assert ProjectionCache.key([1], a.signature) in cache

    def test_clear(self, rng):
        ref = _gaussian_reference(rng)
        cache = ProjectionCache()
        Projector(ref, cache=cache).project([1], ref.draw_set())
        cache.clear()
        assert len(cache) == 0
        assert cache.hits == cache.misses == 0


class TestProjectEntryPoint:
    def test_project_uses_eval_draw_count(self, rng):
        ref = _gaussian_reference(rng)
        sub = project(ref, [0, 1], n_draws=8, reduction="cluster", random_state=0)
        assert sub.n_draws <= 8
        assert sub.subset == (0, 1)

    def test_project_identity_by_default(self, rng):
        ref = _gaussian_reference(rng)
        sub = project(ref, [0])
        assert sub.n_draws == ref.n_draws
