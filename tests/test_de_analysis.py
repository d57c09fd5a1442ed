"""Unit tests for mho_mirna.de_analysis — design, empirical Bayes, moderated t-test."""

from dataclasses import FrozenInstanceError, replace

import numpy as np
import pandas as pd
import pytest
from scipy.special import polygamma

from mho_mirna.dataset import ExpressionDataset
from mho_mirna.de_analysis import (
    DEConfig,
    DifferentialExpressionAnalyzer,
    analysed_dataset,
    build_contrast,
    build_design_matrix,
    fit_f_dist,
    needs_log_transform,
    squeeze_var,
    trigamma_inverse,
)
from mho_mirna.errors import DegenerateDesignError, InsufficientGroupsError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_dataset(values, groups, feature_ids=None):
    values = np.asarray(values, dtype=float)
    feature_ids = feature_ids or [f"f{i + 1}" for i in range(values.shape[0])]
    sample_ids = [f"GSM{i + 1}" for i in range(values.shape[1])]
    expression = pd.DataFrame(values, index=feature_ids, columns=sample_ids)
    samples = pd.DataFrame({"group": list(groups)}, index=sample_ids)
    features = pd.DataFrame(
        {"accession": [f"MIMAT{i:07d}" for i in range(len(feature_ids))],
         "mirna_id": [f"hsa-miR-{fid}" for fid in feature_ids],
         "target_genes": ""},
        index=feature_ids,
    )
    return ExpressionDataset(expression, samples, features, accession="GSE99999")


def _scenario_dataset():
    """4 features x 4 samples, two per group; f1 differs strongly, f2 barely."""
    values = [
        [1.0, 1.1, 5.0, 5.1],
        [2.0, 2.2, 2.05, 2.25],
        [3.0, 3.4, 3.1, 3.3],
        [0.5, 0.9, 0.8, 0.6],
    ]
    return _make_dataset(values, ["MHO", "MHO", "MUO", "MUO"])


def _shifted_dataset(seed=0):
    """20 features x 6 samples: f1-f5 up in MUO, f6-f10 down, the rest noise."""
    rng = np.random.default_rng(seed)
    values = rng.normal(8.0, 0.3, size=(20, 6))
    groups = ["MHO", "MUO"] * 3
    muo = [i for i, g in enumerate(groups) if g == "MUO"]
    values[:5, muo] += 3.0
    values[5:10, muo] -= 3.0
    return _make_dataset(values, groups)


# ---------------------------------------------------------------------------
# Design and contrast
# ---------------------------------------------------------------------------

class TestDesignMatrix:

    def test_one_indicator_per_row(self):
        labels = pd.Series(["MHO", "muo", " MUO ", "MHO"], index=["a", "b", "c", "d"])
        design = build_design_matrix(labels, ["MHO", "MUO"])
        assert list(design.columns) == ["MHO", "MUO"]
        assert list(design.index) == ["a", "b", "c", "d"]
        assert (design.sum(axis=1) == 1).all()
        assert set(np.unique(design.to_numpy())) == {0, 1}

    def test_unknown_label(self):
        with pytest.raises(InsufficientGroupsError):
            build_design_matrix(["MHO", "LEAN"], ["MHO", "MUO"])

    def test_contrast_is_test_minus_reference(self):
        design = build_design_matrix(["MHO", "MUO"], ["MHO", "MUO"])
        assert list(build_contrast(design, "MHO", "MUO")) == [-1.0, 1.0]
        assert list(build_contrast(design, "MUO", "MHO")) == [1.0, -1.0]


class TestLogRule:

    def test_unlogged_intensities(self):
        assert needs_log_transform(np.array([1.0, 20.0, 500.0, 4000.0, 12000.0]))

    def test_logged_values(self):
        assert not needs_log_transform(np.array([2.0, 5.5, 8.0, 11.0, 13.5]))

    def test_wide_range_with_positive_quartile(self):
        assert needs_log_transform(np.array([1.0, 2.0, 3.0, 4.0, 60.0]))

    def test_all_nan(self):
        assert not needs_log_transform(np.array([np.nan, np.nan]))


# ---------------------------------------------------------------------------
# Empirical Bayes
# ---------------------------------------------------------------------------

class TestEmpiricalBayes:

    @pytest.mark.parametrize("x", [0.05, 0.5, 2.0, 10.0])
    def test_trigamma_inverse(self, x):
        assert float(polygamma(1, trigamma_inverse(x))) == pytest.approx(x, rel=1e-6)

    def test_prior_variance_recovered(self):
        rng = np.random.default_rng(1)
        df1 = 4
        sigma2 = 0.5 * rng.chisquare(df1, size=4000) / df1
        _, s0_sq = fit_f_dist(sigma2, df1)
        assert s0_sq == pytest.approx(0.5, rel=0.1)

    def test_finite_prior_df_for_dispersed_variances(self):
        rng = np.random.default_rng(2)
        df1, d0 = 4, 4
        true_var = 0.5 * d0 / rng.chisquare(d0, size=5000)
        sigma2 = true_var * rng.chisquare(df1, size=5000) / df1
        fitted_d0, _ = fit_f_dist(sigma2, df1)
        assert np.isfinite(fitted_d0)
        assert 1.0 < fitted_d0 < 20.0

    def test_squeeze_var(self):
        sigma2 = np.array([0.1, 0.4])
        post, df_total = squeeze_var(sigma2, 2, 2.0, 0.2)
        np.testing.assert_allclose(post, [0.15, 0.3])
        assert df_total == 4.0

    def test_squeeze_var_infinite_prior(self):
        post, df_total = squeeze_var(np.array([0.1, 0.4]), 2, np.inf, 0.2)
        np.testing.assert_allclose(post, [0.2, 0.2])
        assert np.isinf(df_total)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class TestDifferentialExpressionAnalyzer:

    def test_scenario_large_difference_ranked_first(self):
        result = DifferentialExpressionAnalyzer().analyze(_scenario_dataset())
        table = result.all_features
        assert table.iloc[0]["feature_id"] == "f1"
        assert table.iloc[0]["pvalue"] < 0.05
        assert table.iloc[0]["log2_fold_change"] == pytest.approx(4.0)
        near_zero = table.set_index("feature_id").loc["f2"]
        assert near_zero["pvalue"] > 0.05
        assert result.significant_ids == ["f1"]

    def test_scenario_without_moderation(self):
        config = DEConfig(eb_moderation=False)
        result = DifferentialExpressionAnalyzer(config).analyze(_scenario_dataset())
        assert result.significant_ids == ["f1"]
        assert result.provenance.eb_moderation is False
        assert result.provenance.prior_var is None

    def test_sorted_and_thresholded(self):
        result = DifferentialExpressionAnalyzer(DEConfig(pvalue_threshold=0.01)).analyze(_shifted_dataset())
        table = result.table
        assert len(table) >= 10
        assert table["pvalue"].is_monotonic_increasing
        assert (table["pvalue"] <= 0.01).all()
        assert list(table["rank"]) == list(range(1, len(table) + 1))
        assert result.all_features["pvalue"].is_monotonic_increasing

    def test_up_down_split_complete_and_disjoint(self):
        result = DifferentialExpressionAnalyzer().analyze(_shifted_dataset())
        up = set(result.upregulated["feature_id"])
        down = set(result.downregulated["feature_id"])
        assert up.isdisjoint(down)
        assert up | down == set(result.table["feature_id"])
        assert {"f1", "f2", "f3", "f4", "f5"} <= up
        assert {"f6", "f7", "f8", "f9", "f10"} <= down
        assert result.upregulated["pvalue"].is_monotonic_increasing

    def test_reference_group_sets_sign(self):
        config = DEConfig(reference_group="MUO", test_group="MHO")
        result = DifferentialExpressionAnalyzer(config).analyze(_scenario_dataset())
        assert result.all_features.iloc[0]["log2_fold_change"] == pytest.approx(-4.0)
        assert result.provenance.contrast == "MHO - MUO"

    def test_adjusted_threshold(self):
        config = DEConfig(adjust_method="fdr_bh")
        result = DifferentialExpressionAnalyzer(config).analyze(_shifted_dataset())
        table = result.all_features
        assert (table["pvalue_adjusted"] >= table["pvalue"] - 1e-12).all()
        assert (result.table["pvalue_adjusted"] <= 0.05).all()

    def test_unadjusted_by_default(self):
        result = DifferentialExpressionAnalyzer().analyze(_shifted_dataset())
        np.testing.assert_allclose(
            result.all_features["pvalue_adjusted"], result.all_features["pvalue"]
        )

    def test_other_groups_dropped(self):
        values = np.tile([1.0, 1.1, 5.0, 5.1, 9.0], (4, 1))
        values[1:] += np.arange(3)[:, None] * 0.1
        ds = _make_dataset(values, ["MHO", "MHO", "MUO", "MUO", "LEAN"])
        result = DifferentialExpressionAnalyzer().analyze(ds)
        assert result.provenance.n_reference == 2
        assert result.provenance.n_test == 2

    def test_log_transform_auto(self):
        values = 2.0 ** np.array([
            [6.0, 6.1, 10.0, 10.1],
            [7.0, 7.2, 7.05, 7.25],
            [8.0, 8.4, 8.1, 8.3],
            [9.0, 9.4, 9.3, 9.1],
        ])
        result = DifferentialExpressionAnalyzer().analyze(_make_dataset(values, ["MHO", "MHO", "MUO", "MUO"]))
        assert result.provenance.log_transformed is True
        assert result.all_features.iloc[0]["log2_fold_change"] == pytest.approx(4.0)
        np.testing.assert_allclose(result.expression.loc["f1"], [6.0, 6.1, 10.0, 10.1])

    def test_analysed_dataset_uses_fitted_values(self):
        values = 2.0 ** np.array([
            [6.0, 6.1, 10.0, 10.1, 3.0],
            [7.0, 7.2, 7.05, 7.25, 3.0],
            [8.0, 8.4, 8.1, 8.3, 3.0],
        ])
        ds = _make_dataset(values, ["MHO", "MHO", "MUO", "MUO", "LEAN"])
        result = DifferentialExpressionAnalyzer().analyze(ds)
        analysed = analysed_dataset(ds, result)
        assert analysed.sample_ids == ["GSM1", "GSM2", "GSM3", "GSM4"]
        assert list(analysed.samples["group"]) == ["MHO", "MHO", "MUO", "MUO"]
        np.testing.assert_allclose(analysed.expression.loc["f2"], [7.0, 7.2, 7.05, 7.25])

    def test_analysed_dataset_without_matrix(self):
        ds = _scenario_dataset()
        result = replace(DifferentialExpressionAnalyzer().analyze(ds), expression=None)
        assert analysed_dataset(ds, result) is ds

    def test_result_is_frozen(self):
        result = DifferentialExpressionAnalyzer().analyze(_scenario_dataset())
        with pytest.raises(FrozenInstanceError):
            result.table = result.all_features

    def test_missing_values_excluded(self):
        values = [
            [1.0, 1.1, 5.0, 5.1],
            [2.0, np.nan, 2.05, 2.25],
            [3.0, 3.4, 3.1, 3.3],
            [0.5, 0.9, 0.8, 0.6],
        ]
        result = DifferentialExpressionAnalyzer().analyze(_make_dataset(values, ["MHO", "MHO", "MUO", "MUO"]))
        assert result.features_tested == 3
        assert result.provenance.n_excluded_features == 1

    def test_single_group(self):
        ds = _make_dataset(np.ones((3, 4)), ["MHO"] * 4)
        with pytest.raises(InsufficientGroupsError):
            DifferentialExpressionAnalyzer().analyze(ds)

    def test_configured_group_absent(self):
        ds = _make_dataset(np.ones((3, 4)), ["MHO", "MHO", "LEAN", "LEAN"])
        with pytest.raises(InsufficientGroupsError, match="MUO"):
            DifferentialExpressionAnalyzer().analyze(ds)

    def test_no_replicates_is_degenerate(self):
        ds = _make_dataset([[1.0, 2.0], [3.0, 4.0], [5.0, 7.0]], ["MHO", "MUO"])
        with pytest.raises(DegenerateDesignError):
            DifferentialExpressionAnalyzer().analyze(ds)

    def test_group_labels_case_insensitive(self):
        ds = _make_dataset(
            [[1.0, 1.1, 5.0, 5.1], [2.0, 2.2, 2.05, 2.25], [3.0, 3.4, 3.1, 3.3]],
            ["mho", "MHO", "Muo", "MUO"],
        )
        result = DifferentialExpressionAnalyzer().analyze(ds)
        assert result.provenance.n_reference == 2

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            DEConfig(pvalue_threshold=0)
        with pytest.raises(ValueError):
            DEConfig(reference_group="MHO", test_group="mho")
        with pytest.raises(ValueError):
            DEConfig(log_transform="sometimes")
