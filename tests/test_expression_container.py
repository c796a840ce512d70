"""
Tests for the ExpressionContainer invariants.
"""

import dataclasses

import numpy as np
import pandas as pd
import pytest

from expression_container import ANNOTATION_COLUMNS, ExpressionContainer, Sample, empty_annotation
from pipeline_errors import SchemaMismatchError


@pytest.fixture
def tiny():
    """3 genes × 4 samples with one all-zero gene and a partial annotation."""
    samples = (
        Sample("c1", "A_1", "A", {"sex": "F"}),
        Sample("c2", "A_2", "A", {"sex": "M"}),
        Sample("c3", "B_1", "B", {"sex": "F"}),
        Sample("c4", "B_2", "B", {"sex": "M"}),
    )
    counts = pd.DataFrame(
        [[10, 20, 30, 40], [0, 0, 0, 0], [5, 0, 7, 1]],
        index=["g1", "g2", "g3"],
        columns=[s.name for s in samples],
    )
    genes = empty_annotation(counts.index)
    genes.loc["g1", "symbol"] = "ONE"
    genes.loc["g3", "symbol"] = "THREE"
    return counts, samples, genes


def test_from_counts_removes_zero_genes_from_counts_and_genes(tiny):
    counts, samples, genes = tiny
    container = ExpressionContainer.from_counts(counts, samples, genes=genes)
    assert container.gene_keys == ["g1", "g3"]
    assert list(container.genes.index) == ["g1", "g3"]
    assert container.genes.loc["g3", "symbol"] == "THREE"


def test_library_sizes_are_column_sums(tiny):
    counts, samples, _ = tiny
    container = ExpressionContainer.from_counts(counts, samples)
    np.testing.assert_array_equal(container.lib_size.to_numpy(), [15.0, 20.0, 37.0, 41.0])
    assert (container.norm_factors == 1.0).all()
    pd.testing.assert_series_equal(
        container.effective_lib_size, container.lib_size.rename("effective_lib_size")
    )


def test_keep_zero_genes_when_requested(tiny):
    counts, samples, _ = tiny
    container = ExpressionContainer.from_counts(counts, samples, remove_zero_genes=False)
    assert container.n_genes == 3


def test_column_sample_mismatch_rejected(tiny):
    counts, samples, _ = tiny
    with pytest.raises(SchemaMismatchError, match="columns do not match"):
        ExpressionContainer.from_counts(counts[counts.columns[::-1]], samples)


def test_gene_table_row_mismatch_rejected(tiny):
    counts, samples, genes = tiny
    with pytest.raises(SchemaMismatchError, match="differ in content or order"):
        ExpressionContainer.from_counts(counts, samples, genes=genes.iloc[::-1], remove_zero_genes=False)


def test_duplicate_sample_names_rejected(tiny):
    counts, samples, _ = tiny
    duplicated = samples[:3] + (Sample("c5", "A_1", "A"),)
    with pytest.raises(SchemaMismatchError, match="unique"):
        ExpressionContainer.from_counts(counts.set_axis([s.name for s in duplicated], axis=1), duplicated)


def test_sample_requires_group():
    with pytest.raises(SchemaMismatchError):
        Sample("c1", "x_1", "")


def test_container_is_immutable(container):
    with pytest.raises(dataclasses.FrozenInstanceError):
        container.norm_factors = None


def test_accessors_return_copies(container):
    before = container.counts.iloc[0, 0]
    lib_before = container.lib_size.copy()

    view = container.counts
    view.iloc[0, 0] = before + 1000
    genes = container.genes
    genes.iloc[0, 0] = "edited"
    lib = container.lib_size
    lib.iloc[0] = 0.0
    factors = container.norm_factors
    factors.iloc[0] = 5.0

    assert container.counts.iloc[0, 0] == before
    assert container.genes.iloc[0, 0] != "edited"
    pd.testing.assert_series_equal(container.lib_size, lib_before)
    np.testing.assert_array_equal(container.lib_size.to_numpy(), container.counts.sum(axis=0).to_numpy())
    assert (container.norm_factors == 1.0).all()


def test_sample_rejects_reserved_covariate_names():
    with pytest.raises(SchemaMismatchError, match="reserved"):
        Sample("c1", "A_1", "A", covariates={"sample": "GSM1"})


def test_subset_genes_returns_new_container(container):
    keep = np.zeros(container.n_genes, dtype=bool)
    keep[:10] = True
    subset = container.subset_genes(keep)
    assert subset.n_genes == 10
    assert container.n_genes == 100
    assert subset.gene_keys == container.gene_keys[:10]
    assert subset.genes.index.equals(subset.counts.index)
    pd.testing.assert_series_equal(subset.lib_size, container.lib_size)


def test_subset_genes_rejects_wrong_mask(container):
    with pytest.raises(SchemaMismatchError):
        container.subset_genes(np.ones(3, dtype=bool))


def test_cpm_uses_effective_library_size(normalized_container):
    """Each column sums to 1e6 / norm factor because counts are divided by lib × factor."""
    cpm = normalized_container.cpm()
    sums = cpm.sum(axis=0) * normalized_container.norm_factors
    np.testing.assert_allclose(sums.to_numpy(), 1e6)


def test_log_cpm_is_finite(container):
    log_cpm = container.cpm(log=True)
    assert np.isfinite(log_cpm.to_numpy()).all()
    assert log_cpm.shape == container.counts.shape


def test_sample_table_and_groups(container):
    table = container.sample_table()
    assert list(table.index) == container.sample_names
    assert {"code", "group", "age", "sex", "lib_size", "norm_factors"} <= set(table.columns)
    assert container.group_levels == ["COVID", "healthy"]
    assert container.groups.value_counts().to_dict() == {"COVID": 6, "healthy": 6}


def test_gene_record(tiny):
    counts, samples, genes = tiny
    container = ExpressionContainer.from_counts(counts, samples, genes=genes)
    gene = container.gene("g1")
    assert gene.key == "g1"
    assert gene.symbol == "ONE"
    assert gene.gene_id is None


def test_with_norm_factors_checks_length(container):
    with pytest.raises(SchemaMismatchError):
        container.with_norm_factors([1.0, 1.0])


def test_design_matrix(container):
    design = container.design_matrix()
    assert list(design.columns) == ["COVID", "healthy"]
    assert design.to_numpy().sum() == container.n_samples
    assert list(design.index) == container.sample_names


def test_annotation_columns_required(tiny):
    counts, samples, genes = tiny
    with pytest.raises(SchemaMismatchError, match="missing annotation columns"):
        ExpressionContainer.from_counts(
            counts, samples, genes=genes.drop(columns=ANNOTATION_COLUMNS[-1]), remove_zero_genes=False
        )
