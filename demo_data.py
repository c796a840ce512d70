"""
Demo dataset generator for the differential expression workflow.

Generates a two-group blood transcriptome study (COVID vs healthy donors) with
negative binomial counts, a known set of differentially expressed genes, a
biomaRt-style annotation table and a gene → GO category mapping in which one
category is built around the differentially expressed genes.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

GROUPS = ("COVID", "healthy")

# Category built around the up-regulated genes of the demo dataset
RESPONSE_CATEGORY = ("GO:0051607", "defense response to virus", "BP")


@dataclass
class DemoDataset:
    """Synthetic inputs plus the ground truth used to generate them."""

    counts: pd.DataFrame  # genes × sample codes
    metadata: pd.DataFrame  # one row per sample: code, group, age, sex
    annotation: pd.DataFrame  # biomaRt-style columns, keyed by hgnc_symbol
    go_mapping: pd.DataFrame  # gene, category_id, description, ontology
    de_genes: List[str]  # genes with a true fold change


def simulate_counts(
    n_genes: int = 100,
    n_per_group: int = 6,
    n_de: int = 5,
    fold_change: float = 4.0,
    dispersion: float = 0.01,
    mean_range: Tuple[float, float] = (50.0, 500.0),
    groups: Sequence[str] = GROUPS,
    seed: int = 42,
) -> Tuple[pd.DataFrame, pd.DataFrame, List[str]]:
    """
    Simulate negative binomial counts for two groups.

    The first `n_de` genes (after a seeded shuffle) have their mean multiplied
    by `fold_change` in the first group; every other gene has identical means
    in both groups.

    Args:
        n_genes: Number of genes
        n_per_group: Samples per group
        n_de: Number of differentially expressed genes
        fold_change: True mean ratio first group / second group for DE genes
        dispersion: NB dispersion (variance = mu + dispersion * mu²)
        mean_range: Range of baseline means (log-uniform)
        groups: Two group labels
        seed: Random seed

    Returns:
        (counts genes × codes, metadata indexed by code, DE gene names)
    """
    rng = np.random.default_rng(seed)
    genes = [f"GENE{i:04d}" for i in range(1, n_genes + 1)]
    de_idx = np.sort(rng.choice(n_genes, size=n_de, replace=False))
    de_genes = [genes[i] for i in de_idx]

    base = np.exp(rng.uniform(np.log(mean_range[0]), np.log(mean_range[1]), size=n_genes))
    codes, labels = [], []
    for g, group in enumerate(groups):
        for r in range(n_per_group):
            codes.append(f"P{g * n_per_group + r + 1:03d}")
            labels.append(group)

    means = np.tile(base[:, None], (1, len(codes)))
    first_group = np.array([label == groups[0] for label in labels])
    means[np.ix_(de_idx, np.flatnonzero(first_group))] *= fold_change

    size = 1.0 / dispersion
    counts = rng.negative_binomial(size, size / (size + means))

    counts_df = pd.DataFrame(counts.astype(np.int64), index=pd.Index(genes, name="gene"), columns=codes)
    metadata = pd.DataFrame(
        {
            "group": labels,
            "age": rng.integers(25, 80, size=len(codes)),
            "sex": rng.choice(["F", "M"], size=len(codes)),
        },
        index=pd.Index(codes, name="patient_code"),
    )
    return counts_df, metadata, de_genes


def make_annotation(genes: Sequence[str], seed: int = 7, missing_fraction: float = 0.05) -> pd.DataFrame:
    """
    biomaRt-style annotation keyed by hgnc_symbol.

    A small fraction of genes is left unannotated and the first gene gets a
    second (duplicate) row so deduplication is exercised.
    """
    rng = np.random.default_rng(seed)
    genes = list(genes)
    n_missing = int(len(genes) * missing_fraction)
    annotated = genes[: len(genes) - n_missing]
    rows = []
    for i, symbol in enumerate(annotated, start=1):
        start = int(rng.integers(1_000, 200_000_000))
        rows.append(
            {
                "chromosome_name": str(rng.integers(1, 23)),
                "start_position": start,
                "end_position": start + int(rng.integers(500, 100_000)),
                "strand": int(rng.choice([-1, 1])),
                "ensembl_gene_id": f"ENSG{i:011d}",
                "hgnc_symbol": symbol,
                "gene_biotype": "protein_coding" if rng.random() < 0.8 else "lncRNA",
                "description": f"{symbol} simulated gene",
                "ensembl_gene_id_version": f"ENSG{i:011d}.{int(rng.integers(1, 15))}",
                "entrezgene_id": str(100000 + i),
            }
        )
    annotation = pd.DataFrame(rows)
    if len(annotation):
        duplicate = annotation.iloc[[0]].copy()
        duplicate["ensembl_gene_id"] = "ENSG99999999999"
        duplicate["description"] = "secondary locus"
        annotation = pd.concat([annotation, duplicate], ignore_index=True)
    return annotation


def make_go_mapping(
    genes: Sequence[str],
    de_genes: Sequence[str],
    n_categories: int = 30,
    size_range: Tuple[int, int] = (12, 60),
    seed: int = 11,
) -> pd.DataFrame:
    """
    Gene → GO mapping with random background categories and one response
    category that contains every DE gene.

    A near-duplicate of the response category is added so that simplify()
    has something to collapse.
    """
    rng = np.random.default_rng(seed)
    genes = list(genes)
    de_set = set(de_genes)
    background = [g for g in genes if g not in de_set]
    ontologies = ["BP", "MF", "CC"]

    rows = []
    for c in range(n_categories):
        size = int(rng.integers(size_range[0], size_range[1] + 1))
        members = rng.choice(background, size=min(size, len(background)), replace=False)
        cid = f"GO:{9000000 + c:07d}"
        for gene in members:
            rows.append((gene, cid, f"simulated process {c + 1}", ontologies[c % 3]))

    cid, description, ontology = RESPONSE_CATEGORY
    response = list(de_genes)
    for gene in response:
        rows.append((gene, cid, description, ontology))
    # Near-duplicate category: same members plus one background gene
    if background:
        for gene in response + [background[0]]:
            rows.append((gene, "GO:0009615", "response to virus", "BP"))

    return pd.DataFrame(rows, columns=["gene", "category_id", "description", "ontology"])


def load_demo_dataset(
    n_genes: int = 2000,
    n_per_group: int = 6,
    n_de: int = 50,
    seed: int = 42,
) -> DemoDataset:
    """
    Generate the full demo dataset.

    Dataset characteristics:
    - 12 samples (6 COVID, 6 healthy), metadata with age and sex covariates
    - `n_de` genes up-regulated 4x in COVID, all members of GO:0051607
    - Count columns in a different order than the metadata rows
    - Annotation with a duplicated symbol and a few unannotated genes
    """
    counts, metadata, de_genes = simulate_counts(
        n_genes=n_genes,
        n_per_group=n_per_group,
        n_de=n_de,
        fold_change=4.0,
        dispersion=0.05,
        mean_range=(5.0, 2000.0),
        seed=seed,
    )
    counts = counts[counts.columns[::-1]]
    annotation = make_annotation(counts.index, seed=seed + 1)
    go_mapping = make_go_mapping(counts.index, de_genes, seed=seed + 2)
    logger.info(
        f"Generated demo dataset: {counts.shape[0]} genes × {counts.shape[1]} samples, "
        f"{len(de_genes)} DE genes"
    )
    return DemoDataset(
        counts=counts,
        metadata=metadata.reset_index(),
        annotation=annotation,
        go_mapping=go_mapping,
        de_genes=de_genes,
    )


def write_demo_inputs(directory, dataset: Optional[DemoDataset] = None) -> Dict[str, Path]:
    """
    Write the demo dataset as workflow input files.

    Files: counts.tsv, samples.csv, annotation.tsv, go_mapping.tsv

    Returns:
        Mapping of input name → path (keys match InputConfig fields)
    """
    dataset = dataset or load_demo_dataset()
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    paths = {
        "count_table": directory / "counts.tsv",
        "sample_metadata": directory / "samples.csv",
        "annotation": directory / "annotation.tsv",
        "go_mapping": directory / "go_mapping.tsv",
    }
    dataset.counts.to_csv(paths["count_table"], sep="\t")
    dataset.metadata.to_csv(paths["sample_metadata"], index=False)
    dataset.annotation.to_csv(paths["annotation"], sep="\t", index=False)
    dataset.go_mapping.to_csv(paths["go_mapping"], sep="\t", index=False)
    logger.info(f"Wrote demo inputs to {directory}")
    return paths


def get_demo_description() -> str:
    """
    Get markdown description of the demo dataset.

    Returns:
        Markdown string describing the design and the built-in DE pattern
    """
    return """# Differential Expression Demo Dataset

## Experimental Design
- **Samples**: 12 blood samples (6 COVID, 6 healthy donors), patient codes P001-P012
- **Covariates**: age, sex
- **Genes**: 2000 simulated genes (negative binomial counts)

## Built-in Pattern
- 50 genes up-regulated 4x in COVID (log2FC = 2)
- All 50 belong to GO:0051607 "defense response to virus"; GO:0009615 is a
  near-duplicate of it and is removed by the simplify step
- Every other gene has identical means in both groups

## Usage
```bash
dge-workflow demo --output results/demo
```
"""
