"""Tests for the batch projection solvers (_solvers.py)."""

import numpy as np
import pytest

from projection_selection import BinomialFamily, PoissonFamily
from projection_selection._solvers import augment_design, batch_fisher_scoring, batch_wls


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


@pytest.fixture()
def design(rng):
    return augment_design(rng.standard_normal((60, 3)))


class TestBatchWLS:
    def test_recovers_exact_coefficients(self, rng, design):
        B = rng.standard_normal((5, 4))
        out = batch_wls(design, B @ design.T)
        np.testing.assert_allclose(out.coefficients, B, atol=1e-10)
        assert out.converged.all()
        np.testing.assert_array_equal(out.n_iter, 0)

    def test_matches_lstsq_per_target(self, rng, design):
        T = rng.standard_normal((3, 60))
        out = batch_wls(design, T)
        for s in range(3):
            expected, *_ = np.linalg.lstsq(design, T[s], rcond=None)
            np.testing.assert_allclose(out.coefficients[s], expected, atol=1e-10)

    def test_ridge_shrinks_slopes_only(self, rng, design):
        B = np.array([[5.0, 2.0, -2.0, 1.0]])
        plain = batch_wls(design, B @ design.T)
        ridge = batch_wls(design, B @ design.T, regularization=50.0)
        assert np.linalg.norm(ridge.coefficients[0, 1:]) < np.linalg.norm(
            plain.coefficients[0, 1:]
        )

    def test_intercept_only_design(self, rng):
        X_aug = augment_design(np.zeros((10, 0)))
        T = rng.standard_normal((2, 10))
        out = batch_wls(X_aug, T, regularization=1.0)
        np.testing.assert_allclose(out.coefficients[:, 0], T.mean(axis=1))

    def test_collinear_columns_solvable(self, rng):
        x = rng.standard_normal(20)
        X_aug = augment_design(np.column_stack([x, x]))
        out = batch_wls(X_aug, (1.0 + 2.0 * x)[None, :])
        np.testing.assert_allclose(out.coefficients @ X_aug.T, (1.0 + 2.0 * x)[None, :], atol=1e-8)
        # Minimum-norm solution splits the effect evenly.
        np.testing.assert_allclose(out.coefficients[0, 1:], [1.0, 1.0], atol=1e-8)


class TestFisherScoring:
    @pytest.mark.parametrize("fam", [BinomialFamily(), BinomialFamily(link="probit"), PoissonFamily()])
    def test_recovers_coefficients_in_span(self, fam, rng, design):
        B = 0.4 * rng.standard_normal((4, 4))
        mu_ref = fam.linkinv(B @ design.T)
        out = batch_fisher_scoring(fam, design, mu_ref, np.ones(60))
        np.testing.assert_allclose(out.coefficients, B, atol=1e-5)
        assert out.converged.all()
        assert np.all(out.n_iter < 50)

    def test_projection_onto_smaller_design_converges(self, rng, design):
        fam = BinomialFamily()
        B = 0.8 * rng.standard_normal((3, 4))
        mu_ref = fam.linkinv(B @ design.T)
        out = batch_fisher_scoring(fam, design[:, :2], mu_ref, np.ones(60))
        assert out.coefficients.shape == (3, 2)
        assert out.converged.all()

    def test_iteration_cap_reported(self, rng, design):
        fam = BinomialFamily()
        B = 1.5 * rng.standard_normal((3, 4))
        mu_ref = fam.linkinv(B @ design.T)
        out = batch_fisher_scoring(
            fam, design[:, :2], mu_ref, np.ones(60), max_iter=1, tol=1e-14
        )
        assert not out.converged.all()
        np.testing.assert_array_equal(out.n_iter, 1)

    def test_binomial_trials_used(self, rng, design):
        fam = BinomialFamily()
        B = 0.3 * rng.standard_normal((2, 4))
        mu_ref = fam.linkinv(B @ design.T)
        trials = rng.integers(1, 6, size=60).astype(float)
        out = batch_fisher_scoring(fam, design, mu_ref, trials)
        np.testing.assert_allclose(out.coefficients, B, atol=1e-5)

    def test_ridge_penalty_shrinks(self, rng, design):
        fam = PoissonFamily()
        B = np.array([[0.2, 0.6, -0.5, 0.4]])
        mu_ref = fam.linkinv(B @ design.T)
        plain = batch_fisher_scoring(fam, design, mu_ref, np.ones(60))
        ridge = batch_fisher_scoring(fam, design, mu_ref, np.ones(60), regularization=20.0)
        assert np.linalg.norm(ridge.coefficients[0, 1:]) < np.linalg.norm(
            plain.coefficients[0, 1:]
        )
