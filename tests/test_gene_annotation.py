"""
Tests for joining gene annotation onto count-matrix genes.
"""

import pandas as pd
import pytest

from expression_container import ANNOTATION_COLUMNS
from gene_annotation import GeneAnnotationJoiner, normalize_annotation_columns, read_annotation_table
from pipeline_errors import SchemaMismatchError


def test_join_preserves_gene_order(simulated, annotation):
    counts, _, _ = simulated
    keys = list(counts.index[::-1])
    joined = GeneAnnotationJoiner().join(keys, annotation)
    assert list(joined.index) == keys
    assert list(joined.columns) == ANNOTATION_COLUMNS
    assert joined.index.name == "gene"


def test_first_duplicate_row_wins(simulated, annotation):
    """The demo annotation duplicates its first symbol with a 'secondary locus' row."""
    counts, _, _ = simulated
    joined = GeneAnnotationJoiner().join(counts.index, annotation)
    first = counts.index[0]
    assert joined.loc[first, "gene_id"] == "ENSG00000000001"
    assert joined.loc[first, "description"] != "secondary locus"


def test_unmatched_genes_have_missing_fields(simulated, annotation):
    counts, _, _ = simulated
    joined = GeneAnnotationJoiner().join(counts.index, annotation)
    # 5% of 100 genes are left unannotated at the end of the table
    unannotated = list(counts.index[-5:])
    assert joined.loc[unannotated, "gene_id"].isna().all()
    assert joined.loc[counts.index[:-5], "gene_id"].notna().all()


def test_biomart_columns_are_renamed():
    frame = pd.DataFrame(
        {"hgnc_symbol": ["A"], "ensembl_gene_id": ["ENSG1"], "chromosome_name": ["7"], "extra": [1]}
    )
    normalized = normalize_annotation_columns(frame)
    assert normalized.loc[0, "symbol"] == "A"
    assert normalized.loc[0, "gene_id"] == "ENSG1"
    assert normalized.loc[0, "chromosome"] == "7"
    assert set(ANNOTATION_COLUMNS) <= set(normalized.columns)
    assert "extra" in normalized.columns


def test_join_on_gene_id_key():
    annotation = pd.DataFrame({"gene_id": ["E2", "E1"], "symbol": ["B", "A"]})
    joined = GeneAnnotationJoiner(key_column="gene_id").join(["E1", "E3", "E2"], annotation)
    assert list(joined.index) == ["E1", "E3", "E2"]
    assert joined.loc["E1", "symbol"] == "A"
    assert pd.isna(joined.loc["E3", "symbol"])
    assert joined.loc["E2", "symbol"] == "B"


def test_empty_annotation_keeps_all_genes():
    joined = GeneAnnotationJoiner().join(["g1", "g2"], pd.DataFrame())
    assert list(joined.index) == ["g1", "g2"]
    assert joined.isna().all().all()


def test_unknown_key_column_rejected():
    with pytest.raises(SchemaMismatchError):
        GeneAnnotationJoiner(key_column="hgnc")


def test_read_annotation_table(tmp_path, annotation):
    path = tmp_path / "annotation.tsv"
    annotation.to_csv(path, sep="\t", index=False)
    table = read_annotation_table(path)
    assert str(table["start"].dtype) == "Int64"
    assert table.loc[0, "symbol"] == annotation.loc[0, "hgnc_symbol"]
    assert len(table) == len(annotation)
