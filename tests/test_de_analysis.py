"""
Tests for the weighted linear model, empirical Bayes moderation, BH adjustment
and significance classification.
"""

import numpy as np
import pandas as pd
import pytest
from scipy import special
from statsmodels.stats.multitest import multipletests

from de_analysis import (
    Contrast,
    DEAnalysisEngine,
    LinearModelFitter,
    SignificanceTester,
    benjamini_hochberg,
    fit_f_dist,
    make_design_matrix,
    squeeze_var,
    trigamma_inverse,
)
from expression_filter import LowExpressionFilter
from pipeline_errors import ConfigurationError, NumericDegeneracyWarning, RunSummary, SchemaMismatchError
from voom_transform import VarianceModeler


@pytest.fixture
def voom_result(normalized_container):
    filtered = LowExpressionFilter().apply(normalized_container)
    return VarianceModeler().transform(filtered)


@pytest.fixture
def contrast():
    return Contrast.difference("COVID", "healthy")


# ============================================================================
# Design and contrasts
# ============================================================================


def test_design_matrix_has_no_intercept():
    groups = pd.Series(["b", "a", "b"], index=["s1", "s2", "s3"])
    design = make_design_matrix(groups)
    assert list(design.columns) == ["a", "b"]
    np.testing.assert_array_equal(design.to_numpy(), [[0, 1], [1, 0], [0, 1]])


def test_design_matrix_rejects_unknown_levels():
    groups = pd.Series(["a", "c"], index=["s1", "s2"])
    with pytest.raises(SchemaMismatchError):
        make_design_matrix(groups, levels=["a", "b"])


def test_contrast_parse_simple():
    c = Contrast.parse("COVID - healthy", ["COVID", "healthy"])
    assert c.name == "COVID-healthy"
    assert dict(c.weights) == {"COVID": 1.0, "healthy": -1.0}
    np.testing.assert_array_equal(c.vector(["COVID", "healthy"]), [1.0, -1.0])
    np.testing.assert_array_equal(c.vector(["healthy", "COVID"]), [-1.0, 1.0])


def test_contrast_parse_weighted_average():
    c = Contrast.parse("A - 0.5*B - 0.5*C", ["A", "B", "C"])
    assert dict(c.weights) == {"A": 1.0, "B": -0.5, "C": -0.5}


def test_contrast_parse_hyphenated_group_names():
    levels = ["COVID", "COVID-19", "healthy"]
    c = Contrast.parse("COVID-19 - healthy", levels)
    assert c.name == "COVID-19-healthy"
    assert dict(c.weights) == {"COVID-19": 1.0, "healthy": -1.0}
    c = Contrast.parse("0.5*COVID-19 + 0.5*COVID - healthy", levels)
    assert dict(c.weights) == {"COVID-19": 0.5, "COVID": 0.5, "healthy": -1.0}


def test_contrast_parse_names_the_unknown_group():
    with pytest.raises(ConfigurationError, match="unknown group '19'"):
        Contrast.parse("COVID-19 - healthy", ["COVID", "healthy"])


@pytest.mark.parametrize("expression", ["COVID - flu", "COVID -- healthy", ""])
def test_contrast_parse_errors(expression):
    with pytest.raises(ConfigurationError):
        Contrast.parse(expression, ["COVID", "healthy"])


def test_zero_contrast_rejected():
    c = Contrast.parse("COVID - COVID", ["COVID", "healthy"])
    with pytest.raises(ConfigurationError, match="no non-zero"):
        c.vector(["COVID", "healthy"])


def test_contrast_with_unknown_level_rejected_at_vector():
    with pytest.raises(ConfigurationError):
        Contrast.difference("A", "B").vector(["A", "C"])


# ============================================================================
# Empirical Bayes
# ============================================================================


@pytest.mark.parametrize("x", [1e-3, 0.1, 1.0, 10.0, 1e3])
def test_trigamma_inverse(x):
    y = trigamma_inverse(x)[0]
    assert special.polygamma(1, y) == pytest.approx(x, rel=1e-6)


def test_fit_f_dist_recovers_prior(rng):
    """Variances drawn from the hierarchical model give back its prior."""
    s2 = 0.5 * rng.f(10, 4, size=5000)
    s2_prior, df_prior = fit_f_dist(s2, 10)
    assert 3.5 < df_prior < 4.5
    assert s2_prior == pytest.approx(0.5, rel=0.1)


def test_fit_f_dist_without_extra_spread():
    s2_prior, df_prior = fit_f_dist(np.full(50, 0.3), 5)
    assert np.isinf(df_prior)
    assert s2_prior == pytest.approx(0.3)


def test_squeeze_var_moves_towards_prior(rng):
    s2 = 0.5 * rng.f(6, 8, size=2000)
    s2_post, s2_prior, df_prior = squeeze_var(s2, 6)
    assert np.isfinite(df_prior)
    lo = np.minimum(s2, s2_prior)
    hi = np.maximum(s2, s2_prior)
    assert ((s2_post >= lo - 1e-12) & (s2_post <= hi + 1e-12)).all()
    assert np.var(np.log(s2_post)) < np.var(np.log(s2))


# ============================================================================
# Linear model
# ============================================================================


def test_parallel_fit_matches_sequential(voom_result):
    sequential = LinearModelFitter(n_jobs=1).fit_model(
        voom_result.expression, voom_result.weights, voom_result.design
    )
    parallel = LinearModelFitter(n_jobs=3, shard_size=7).fit_model(
        voom_result.expression, voom_result.weights, voom_result.design
    )
    np.testing.assert_allclose(parallel.coefficients, sequential.coefficients, rtol=1e-10)
    np.testing.assert_allclose(parallel.sigma2, sequential.sigma2, rtol=1e-10)
    np.testing.assert_allclose(parallel.cov_unscaled, sequential.cov_unscaled, rtol=1e-10)
    assert parallel.coefficients.index.equals(sequential.coefficients.index)


def test_unweighted_fit_gives_group_means():
    expression = pd.DataFrame([[1.0, 3.0, 10.0, 12.0]], index=["g"], columns=["a1", "a2", "b1", "b2"])
    weights = pd.DataFrame(1.0, index=expression.index, columns=expression.columns)
    design = make_design_matrix(pd.Series(["a", "a", "b", "b"], index=expression.columns))
    model = LinearModelFitter().fit_model(expression, weights, design)
    np.testing.assert_allclose(model.coefficients.loc["g"], [2.0, 11.0])
    assert model.sigma2["g"] == pytest.approx(2.0)
    assert model.df_residual == 2


def test_moderated_statistics_are_consistent(voom_result, contrast):
    fit = LinearModelFitter().fit(voom_result, contrast)
    np.testing.assert_allclose(fit.t, fit.log_fc / fit.se)
    assert (fit.df_total >= fit.df_residual).all()
    assert fit.p_value.between(0, 1).all()


def test_treat_pvalues_are_never_smaller(voom_result, contrast):
    fitter = LinearModelFitter()
    model = fitter.fit_model(voom_result.expression, voom_result.weights, voom_result.design)
    plain = fitter.test_contrast(model, contrast)
    treat = fitter.test_contrast(model, contrast, lfc_threshold=1.0)
    assert (treat.p_value >= plain.p_value - 1e-12).all()
    assert treat.lfc_threshold == 1.0


def test_negative_treat_threshold_rejected(voom_result, contrast):
    fitter = LinearModelFitter()
    model = fitter.fit_model(voom_result.expression, voom_result.weights, voom_result.design)
    with pytest.raises(ConfigurationError):
        fitter.test_contrast(model, contrast, lfc_threshold=-0.5)


@pytest.fixture
def expression_with_constant_gene(rng):
    columns = ["A_1", "A_2", "A_3", "B_1", "B_2", "B_3"]
    expression = pd.DataFrame(
        rng.normal(5, 0.3, size=(30, 6)), index=[f"g{i}" for i in range(30)], columns=columns
    )
    expression.loc["flat"] = 4.0
    weights = pd.DataFrame(1.0, index=expression.index, columns=columns)
    design = make_design_matrix(pd.Series([c[0] for c in columns], index=columns))
    return expression, weights, design


def test_zero_variance_gene_is_reported_not_dropped(expression_with_constant_gene):
    expression, weights, design = expression_with_constant_gene
    fitter = LinearModelFitter()
    model = fitter.fit_model(expression, weights, design)
    summary = RunSummary()
    with pytest.warns(NumericDegeneracyWarning):
        fit = fitter.test_contrast(model, Contrast.difference("A", "B"), summary=summary)

    assert fit.degenerate_genes == ["flat"]
    assert summary.identifiers("linear_model", "zero_variance") == ["flat"]
    assert np.isnan(fit.p_value["flat"])
    assert fit.p_value.drop("flat").notna().all()

    result = SignificanceTester().test(fit)
    assert len(result.results_df) == 31
    assert np.isnan(result.results_df.set_index("gene").loc["flat", "padj"])
    assert len(result.warnings) == 1
    others = result.results_df[result.results_df["gene"] != "flat"]
    np.testing.assert_allclose(others["padj"], benjamini_hochberg(others["pvalue"]))


def test_misaligned_weights_rejected(expression_with_constant_gene):
    expression, weights, design = expression_with_constant_gene
    with pytest.raises(SchemaMismatchError):
        LinearModelFitter().fit_model(expression, weights.iloc[::-1], design)


def test_invalid_fitter_settings():
    with pytest.raises(ConfigurationError):
        LinearModelFitter(n_jobs=0)
    with pytest.raises(ConfigurationError):
        LinearModelFitter(shard_size=0)


# ============================================================================
# Benjamini-Hochberg and significance
# ============================================================================


def test_benjamini_hochberg_known_values():
    padj = benjamini_hochberg([0.01, 0.04, 0.03, 0.2])
    np.testing.assert_allclose(padj, [0.04, 0.16 / 3, 0.16 / 3, 0.2])


def test_benjamini_hochberg_preserves_nan_and_order(rng):
    p = rng.uniform(size=60)
    p[[3, 17]] = np.nan
    padj = benjamini_hochberg(p)
    assert np.isnan(padj[[3, 17]]).all()
    finite = np.isfinite(p)
    np.testing.assert_allclose(padj[finite], multipletests(p[finite], method="fdr_bh")[1])
    order = np.argsort(p[finite])
    assert np.all(np.diff(padj[finite][order]) >= -1e-15)
    assert np.all(padj[finite] >= p[finite])


def test_significance_thresholds_are_strict(results_table):
    classified = SignificanceTester(alpha=0.05, lfc_floor=1.0).classify(results_table)
    assert classified["significant"].tolist() == [False, True, False, True, False, True]
    assert classified["direction"].tolist() == ["ns", "up", "ns", "down", "ns", "down"]


def test_filter_results_matches_classification(results_table):
    filtered = DEAnalysisEngine.filter_results(results_table, 0.05, 1.0)
    assert filtered["gene"].tolist() == ["B", "D", "F"]


@pytest.mark.parametrize("kwargs", [{"alpha": 0.0}, {"alpha": 1.0}, {"lfc_floor": -1.0}])
def test_invalid_significance_settings(kwargs):
    with pytest.raises(ConfigurationError):
        SignificanceTester(**kwargs)


# ============================================================================
# End to end
# ============================================================================


def test_simulated_de_genes_are_recovered(voom_result, de_genes, normalized_container):
    """100 genes, 6 vs 6, 5 genes up 4x in COVID: exactly those 5 are significant."""
    engine = DEAnalysisEngine()
    results = engine.run_all_comparisons(
        voom_result, [Contrast.difference("COVID", "healthy")], genes=normalized_container.genes
    )
    de = results["COVID-healthy"]

    assert set(de.significant_df["gene"]) == set(de_genes)
    assert de.n_up == 5
    assert de.n_down == 0
    assert de.decide_tests() == {"down": 0, "ns": len(de.results_df) - 5, "up": 5}
    up = de.results_df.set_index("gene").loc[de_genes, "log2FoldChange"]
    assert (up > 1.5).all() and (up < 2.5).all()


def test_results_table_layout(voom_result, normalized_container, contrast):
    de = DEAnalysisEngine().run_all_comparisons(voom_result, [contrast], genes=normalized_container.genes)[
        contrast.name
    ]
    columns = de.results_df.columns.tolist()
    assert columns[0] == "gene"
    assert columns[-8:] == [
        "log2FoldChange", "AveExpr", "lfcSE", "stat", "pvalue", "padj", "significant", "direction",
    ]
    assert de.results_df["gene"].tolist() == list(voom_result.expression.index)
    assert de.significant_df["padj"].is_monotonic_increasing
    assert de.top_table(3)["pvalue"].is_monotonic_increasing


def test_fit_once_many_contrasts(voom_result):
    engine = DEAnalysisEngine()
    results = engine.run_all_comparisons(
        voom_result,
        [Contrast.difference("COVID", "healthy"), Contrast.difference("healthy", "COVID")],
    )
    forward = results["COVID-healthy"].results_df
    reverse = results["healthy-COVID"].results_df
    np.testing.assert_allclose(forward["log2FoldChange"], -reverse["log2FoldChange"])
    np.testing.assert_allclose(forward["pvalue"], reverse["pvalue"])
    assert results["healthy-COVID"].n_down == results["COVID-healthy"].n_up


def test_treat_keeps_large_effects(voom_result, de_genes, contrast):
    engine = DEAnalysisEngine(lfc_threshold=1.0)
    de = engine.run_all_comparisons(voom_result, [contrast])[contrast.name]
    assert set(de.significant_df["gene"]) == set(de_genes)
    assert de.lfc_threshold == 1.0
