"""Tests for SelectionResult access, serialisation and display."""

import json

import numpy as np
import pandas as pd
import pytest

from projection_selection import (
    ProjectedSubmodel,
    ReferenceModel,
    SelectionResult,
    print_selection_table,
    selection_summary_frame,
    varsel,
)
from projection_selection._results import _numpy_to_python


@pytest.fixture(scope="module")
def result():
    rng = np.random.default_rng(42)
    n, S = 50, 30
    X = rng.standard_normal((n, 4))
    beta = np.array([1.5, 0.0, 0.0, -1.0])
    y = X @ beta + 0.5 * rng.standard_normal(n)
    coefs = beta + 0.05 * rng.standard_normal((S, 4))
    ref = ReferenceModel(
        X, y, coefficients=coefs, dispersion=np.full(S, 0.5),
        feature_names=["age", "dose", "weight", "a_rather_long_covariate_name"],
    )
    return varsel(ref, statistics=("elpd", "mlpd", "rmse"), random_state=0)


# ------------------------------------------------------------------ #
# Serialisation
# ------------------------------------------------------------------ #


class TestNumpyToPython:
    def test_nested(self):
        obj = {"a": np.array([1, 2]), "b": [np.float64(1.5), (np.int64(3),)], "c": np.bool_(True)}
        out = _numpy_to_python(obj)
        assert out == {"a": [1, 2], "b": [1.5, (3,)], "c": True}
        assert isinstance(out["b"][0], float)


class TestSelectionResult:
    def test_to_dict_is_json_serialisable(self, result):
        d = result.to_dict()
        json.dumps(d)
        assert "context" not in d
        assert "submodels" not in d
        assert d["family"] == "gaussian"
        assert d["search_path"]["order"] == list(result.search_path.order)
        assert d["statistics"]["elpd"][0]["statistic"] == "elpd"

    def test_dict_access(self, result):
        assert result["suggested_size"] == result.suggested_size
        assert result.get("missing", 7) == 7
        assert "deltas" in result
        assert 3 not in result
        with pytest.raises(KeyError):
            result["missing"]

    def test_frozen(self, result):
        with pytest.raises(AttributeError):
            result.suggested_size = 1

    def test_projection_by_size(self, result):
        sub = result.projection(2)
        assert isinstance(sub, ProjectedSubmodel)
        assert set(sub.subset) == set(result.search_path.order[:2])
        assert result.projection().size == result.suggested_size

    def test_projection_unknown_size(self, result):
        with pytest.raises(KeyError, match="No projection"):
            result.projection(9)

    def test_curve(self, result):
        mean, se = result.curve("elpd")
        assert mean.shape == se.shape == (5,)
        rel, _ = result.curve("elpd", relative=True)
        ref = result.reference_statistics["elpd"].mean
        np.testing.assert_allclose(rel, mean - ref, atol=1e-8)

    def test_curve_unknown_statistic(self, result):
        with pytest.raises(KeyError):
            result.curve("acc")

    def test_max_size(self, result):
        assert result.max_size == 4
        assert isinstance(result, SelectionResult)


# ------------------------------------------------------------------ #
# Display
# ------------------------------------------------------------------ #


class TestSummaryFrame:
    def test_columns_and_rows(self, result):
        df = result.summary_frame()
        assert isinstance(df, pd.DataFrame)
        assert len(df) == 5
        for col in ("elpd", "elpd_se", "elpd_diff", "elpd_diff_se", "rmse", "suggested"):
            assert col in df.columns
        assert df.index.name == "size"
        assert df["variable"].iloc[0] is None
        assert df["suggested"].sum() == 1
        assert bool(df.loc[result.suggested_size, "suggested"])

    def test_same_as_function(self, result):
        pd.testing.assert_frame_equal(result.summary_frame(), selection_summary_frame(result))


class TestPrintSelectionTable:
    def test_output(self, result, capsys):
        print_selection_table(result)
        out = capsys.readouterr().out
        assert "Projection Predictive Variable Selection" in out
        assert "Suggested size:" in out
        assert "(intercept)" in out
        assert "<-" in out
        assert "gaussian (identity)" in out
        assert "a_rather_long_covari..." in out

    def test_notes_panel(self, result, capsys):
        # 20 clusters from 30 draws during search.
        print_selection_table(result)
        out = capsys.readouterr().out
        assert "Notes" in out
        assert "increase n_clusters_search" in out

    def test_other_statistic(self, result, capsys):
        print_selection_table(result, statistic="rmse", title="Custom")
        out = capsys.readouterr().out
        assert "Custom" in out
        assert "rmse" in out

    def test_unknown_statistic(self, result):
        with pytest.raises(KeyError, match="not evaluated"):
            print_selection_table(result, statistic="mse")
