"""
Pytest configuration and fixtures for the differential expression workflow tests.
"""

from pathlib import Path
import pytest
import pandas as pd
import numpy as np

from demo_data import load_demo_dataset, make_annotation, make_go_mapping, simulate_counts
from expression_container import ExpressionContainer
from normalization import TMMNormalizer
from rnaseq_parser import CountMatrixLoader


# ============================================================================
# Simulated Count Data Fixtures
# ============================================================================


@pytest.fixture
def simulated():
    """
    Two-group NB counts with known DE genes.
    Shape: 100 genes × 12 samples (6 COVID, 6 healthy), 5 genes up 4x in COVID.
    """
    counts, metadata, de_genes = simulate_counts()
    return counts, metadata, de_genes


@pytest.fixture
def loaded_counts(simulated):
    """Counts aligned to metadata and renamed to COVID_1.., healthy_1.."""
    counts, metadata, _ = simulated
    return CountMatrixLoader().from_frames(counts, metadata)


@pytest.fixture
def container(loaded_counts):
    """Unnormalized ExpressionContainer of the simulated data."""
    return ExpressionContainer.from_counts(loaded_counts.counts, loaded_counts.samples)


@pytest.fixture
def normalized_container(container):
    """ExpressionContainer carrying TMM factors."""
    return TMMNormalizer().normalize(container)


@pytest.fixture
def de_genes(simulated):
    return simulated[2]


# ============================================================================
# Annotation and GO Mapping Fixtures
# ============================================================================


@pytest.fixture
def annotation(simulated):
    """biomaRt-style annotation for the simulated genes (5% unannotated, one duplicate)."""
    counts, _, _ = simulated
    return make_annotation(counts.index)


@pytest.fixture
def go_mapping(simulated):
    """Gene → GO table with a response category holding every DE gene."""
    counts, _, de_genes = simulated
    return make_go_mapping(counts.index, de_genes)


# ============================================================================
# Input File Fixtures
# ============================================================================


@pytest.fixture
def small_demo():
    """Reduced demo dataset (300 genes, 15 DE genes) for end-to-end runs."""
    return load_demo_dataset(n_genes=300, n_de=15)


@pytest.fixture
def count_file(tmp_path, simulated):
    """Tab-delimited count table with two leading comment lines."""
    counts, _, _ = simulated
    path = tmp_path / "counts.tsv"
    with open(path, "w") as f:
        f.write("# featureCounts output\n# second header line\n")
        counts.to_csv(f, sep="\t")
    return path


@pytest.fixture
def metadata_file(tmp_path, simulated):
    """Comma-delimited metadata with rows shuffled relative to the count columns."""
    _, metadata, _ = simulated
    path = tmp_path / "samples.csv"
    shuffled = metadata.reset_index().sample(frac=1.0, random_state=3)
    shuffled.to_csv(path, index=False)
    return path


@pytest.fixture
def config_path():
    """Path to the shipped default configuration."""
    return Path(__file__).parent / "config" / "pipeline.yaml"


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.fixture
def results_table():
    """
    Minimal DE results table around the strict significance boundaries.
    """
    return pd.DataFrame(
        {
            "gene": ["A", "B", "C", "D", "E", "F"],
            "log2FoldChange": [2.0, 2.0, 1.0, -1.0001, 3.0, -2.5],
            "pvalue": [0.001, 0.0005, 0.0001, 0.0001, np.nan, 0.0002],
            "padj": [0.05, 0.049, 0.01, 0.01, np.nan, 0.02],
        }
    )
