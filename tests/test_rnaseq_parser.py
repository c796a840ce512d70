"""
Tests for count matrix and sample metadata loading.
"""

import numpy as np
import pandas as pd
import pytest

from expression_container import ExpressionContainer
from pipeline_errors import SchemaMismatchError
from rnaseq_parser import (
    CountMatrixLoader,
    align_samples,
    build_samples,
    read_count_table,
    read_sample_metadata,
)


# ============================================================================
# Count table
# ============================================================================


def test_read_count_table_skips_leading_lines(count_file, simulated):
    counts, _, _ = simulated
    df = read_count_table(count_file, skip_rows=2)
    assert df.shape == counts.shape
    assert df.index.name == "gene"
    assert df.dtypes.unique().tolist() == [np.dtype("int64")]
    pd.testing.assert_frame_equal(df, counts, check_names=False)


def test_read_count_table_wrong_skip_rows_is_schema_error(count_file):
    """Reading the comment lines as a header leaves non-numeric sample columns."""
    with pytest.raises(SchemaMismatchError):
        read_count_table(count_file, skip_rows=0)


def _write_counts(path, frame):
    frame.to_csv(path, sep="\t")
    return path


def test_negative_counts_rejected(tmp_path):
    frame = pd.DataFrame({"S1": [1, -2], "S2": [3, 4]}, index=pd.Index(["g1", "g2"], name="gene"))
    with pytest.raises(SchemaMismatchError, match="negative"):
        read_count_table(_write_counts(tmp_path / "c.tsv", frame))


def test_non_integer_counts_rejected(tmp_path):
    frame = pd.DataFrame({"S1": [1.5, 2.0], "S2": [3.0, 4.0]}, index=pd.Index(["g1", "g2"], name="gene"))
    with pytest.raises(SchemaMismatchError, match="non-integer"):
        read_count_table(_write_counts(tmp_path / "c.tsv", frame))


def test_duplicated_genes_rejected(tmp_path):
    frame = pd.DataFrame({"S1": [1, 2], "S2": [3, 4]}, index=pd.Index(["g1", "g1"], name="gene"))
    with pytest.raises(SchemaMismatchError) as excinfo:
        read_count_table(_write_counts(tmp_path / "c.tsv", frame))
    assert excinfo.value.details["duplicated_genes"] == ["g1"]


def test_missing_file_is_schema_error(tmp_path):
    with pytest.raises(SchemaMismatchError, match="not found"):
        read_count_table(tmp_path / "absent.tsv")


# ============================================================================
# Metadata
# ============================================================================


def test_read_sample_metadata_detects_columns(metadata_file):
    metadata = read_sample_metadata(metadata_file)
    assert metadata.index.name == "code"
    assert "group" in metadata.columns
    assert set(metadata["group"]) == {"COVID", "healthy"}
    assert {"age", "sex"} <= set(metadata.columns)


def test_read_sample_metadata_explicit_columns(tmp_path):
    path = tmp_path / "meta.tsv"
    pd.DataFrame({"lib": ["a", "b"], "state": ["x", "y"]}).to_csv(path, sep="\t", index=False)
    metadata = read_sample_metadata(path, sample_key="lib", group_column="state")
    assert list(metadata.index) == ["a", "b"]
    assert list(metadata["group"]) == ["x", "y"]


def test_missing_group_label_rejected(tmp_path):
    path = tmp_path / "meta.csv"
    pd.DataFrame({"sample": ["a", "b"], "group": ["x", None]}).to_csv(path, index=False)
    with pytest.raises(SchemaMismatchError, match="without a group label"):
        read_sample_metadata(path)


# ============================================================================
# Alignment and naming
# ============================================================================


def test_load_reorders_and_renames_columns(count_file, metadata_file, simulated):
    counts, _, _ = simulated
    loaded = CountMatrixLoader(skip_rows=2).load(count_file, metadata_file)

    assert [s.name for s in loaded.samples] == list(loaded.counts.columns)
    for sample in loaded.samples:
        np.testing.assert_array_equal(loaded.counts[sample.name].to_numpy(), counts[sample.code].to_numpy())
        assert sample.name.startswith(f"{sample.group}_")
    assert loaded.warnings == []


def test_display_names_follow_metadata_order():
    metadata = pd.DataFrame(
        {"group": ["B", "A", "B", "A"], "age": [30, 40, np.nan, 50]},
        index=pd.Index(["s1", "s2", "s3", "s4"], name="code"),
    )
    samples = build_samples(metadata)
    assert [s.name for s in samples] == ["B_1", "A_1", "B_2", "A_2"]
    assert samples[2].covariates["age"] is None
    assert isinstance(samples[0].covariates["age"], float)


def test_unmatched_sample_is_schema_error(simulated):
    counts, metadata, _ = simulated
    with pytest.raises(SchemaMismatchError) as excinfo:
        align_samples(counts.drop(columns="P003"), metadata)
    assert excinfo.value.details["missing_in_counts"] == ["P003"]
    assert excinfo.value.details["missing_in_metadata"] == []


def test_extra_count_column_is_schema_error(simulated):
    counts, metadata, _ = simulated
    with pytest.raises(SchemaMismatchError):
        CountMatrixLoader().from_frames(counts, metadata.drop(index="P012"))


def test_three_groups_produce_a_warning(simulated):
    counts, metadata, _ = simulated
    metadata = metadata.copy()
    metadata.loc[["P011", "P012"], "group"] = "recovered"
    loaded = CountMatrixLoader().from_frames(counts, metadata)
    assert len(loaded.warnings) == 1
    assert "found 3" in loaded.warnings[0]
    assert loaded.counts.shape == counts.shape


def test_covariates_named_like_sample_table_columns_are_renamed(simulated):
    counts, metadata, _ = simulated
    metadata = metadata.copy()
    metadata["sample"] = [f"GSM{i}" for i in range(len(metadata))]
    metadata["lib_size"] = 1
    loaded = CountMatrixLoader().from_frames(counts, metadata)

    covariates = loaded.samples[0].covariates
    assert "sample" not in covariates
    assert "lib_size" not in covariates
    assert covariates["metadata_sample"] == metadata["sample"].iloc[0]
    assert covariates["metadata_lib_size"] == 1

    container = ExpressionContainer.from_counts(loaded.counts, loaded.samples)
    table = container.sample_table()
    assert list(table.index) == container.sample_names
    assert table["metadata_sample"].tolist() == list(metadata["sample"])
    np.testing.assert_array_equal(table["lib_size"].to_numpy(), container.lib_size.to_numpy())
    assert table["norm_factors"].notna().all()
