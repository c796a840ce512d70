"""
Pathway Enrichment Analysis Module

Over-representation analysis of GO categories with a one-sided hypergeometric
test against the universe of tested genes, Benjamini-Hochberg correction across
categories, and a "simplify" step that collapses categories with near-identical
gene membership.

Classes:
    EnrichmentAnalyzer: Main class for GO over-representation analysis
"""

from concurrent.futures import ThreadPoolExecutor
from os import PathLike
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple, Union
import logging
import numpy as np
import pandas as pd
from scipy.stats import hypergeom

from de_analysis import benjamini_hochberg, ensure_gene_column
from pipeline_errors import ConfigurationError, RunSummary, SchemaMismatchError

logger = logging.getLogger(__name__)

MAPPING_COLUMNS = ["gene", "category_id", "description", "ontology"]

MAPPING_ALIASES = {
    "gene": ["gene", "symbol", "SYMBOL", "hgnc_symbol", "gene_symbol"],
    "category_id": ["category_id", "go_id", "GOID", "GO", "go_accession", "term_id"],
    "description": ["description", "go_name", "TERM", "term", "name_1006"],
    "ontology": ["ontology", "ONTOLOGY", "namespace_1003", "go_domain"],
}

ONTOLOGY_NAMES = {
    "biological_process": "BP",
    "molecular_function": "MF",
    "cellular_component": "CC",
}

RESULT_COLUMNS = [
    "category_id",
    "description",
    "ontology",
    "gene_ratio",
    "bg_ratio",
    "count",
    "category_size",
    "expected",
    "fold_enrichment",
    "pvalue",
    "p_adjust",
    "gene_ids",
]


def normalize_mapping(mapping: pd.DataFrame) -> pd.DataFrame:
    """Canonical gene → category mapping table with one row per (gene, category)."""
    renames = {}
    for canonical, aliases in MAPPING_ALIASES.items():
        if canonical in mapping.columns:
            continue
        for alias in aliases:
            if alias in mapping.columns:
                renames[alias] = canonical
                break
    mapping = mapping.rename(columns=renames)
    for col in ("gene", "category_id"):
        if col not in mapping.columns:
            raise SchemaMismatchError(
                f"GO mapping table has no '{col}' column. Found columns: {list(mapping.columns)}",
                details={"columns": list(mapping.columns)},
            )
    mapping = mapping.copy()
    if "description" not in mapping.columns:
        mapping["description"] = ""
    if "ontology" not in mapping.columns:
        mapping["ontology"] = ""
    mapping["ontology"] = mapping["ontology"].fillna("").astype(str).map(lambda o: ONTOLOGY_NAMES.get(o, o))
    mapping["description"] = mapping["description"].fillna("").astype(str)
    mapping = mapping.dropna(subset=["gene", "category_id"])
    mapping["gene"] = mapping["gene"].astype(str)
    mapping["category_id"] = mapping["category_id"].astype(str)
    return mapping[MAPPING_COLUMNS].drop_duplicates(subset=["gene", "category_id"]).reset_index(drop=True)


def read_go_mapping(file_path: Union[str, PathLike]) -> pd.DataFrame:
    """
    Read a gene → GO category table (.csv = comma, otherwise tab-delimited).

    Returns:
        DataFrame with columns gene, category_id, description, ontology
    """
    path = str(file_path)
    sep = "," if path.lower().endswith(".csv") else "\t"
    try:
        mapping = pd.read_csv(path, sep=sep, dtype=str)
    except FileNotFoundError:
        raise SchemaMismatchError(f"GO mapping file not found: {path}", details={"file": path})
    except pd.errors.EmptyDataError:
        raise SchemaMismatchError(f"GO mapping file is empty: {path}", details={"file": path})
    mapping = normalize_mapping(mapping)
    logger.info(
        f"Read GO mapping {path}: {mapping['category_id'].nunique()} categories, "
        f"{mapping['gene'].nunique()} genes"
    )
    return mapping


def jaccard_similarity(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def overlap_similarity(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    smaller = min(len(a), len(b))
    return len(a & b) / smaller if smaller else 0.0


SIMILARITY_MEASURES = {
    "jaccard": jaccard_similarity,
    "overlap": overlap_similarity,
}


class EnrichmentAnalyzer:
    """
    GO over-representation analysis (clusterProfiler enrichGO equivalent).

    Supports:
    - Gene selection from DE results with the strict significance rule
    - Category size filtering (minGSSize / maxGSSize)
    - Ontology filtering (BP, MF, CC or ALL)
    - Redundancy simplification by gene-membership similarity
    """

    def __init__(
        self,
        min_size: int = 10,
        max_size: int = 500,
        ontology: str = "ALL",
        alpha: float = 0.05,
        n_jobs: int = 1,
    ):
        if min_size < 1 or max_size < min_size:
            raise ConfigurationError(
                f"Category size limits must satisfy 1 <= min_size <= max_size, got {min_size}/{max_size}"
            )
        if ontology not in ("ALL", "BP", "MF", "CC"):
            raise ConfigurationError(f"ontology must be one of ALL, BP, MF, CC, got '{ontology}'")
        if not 0 < alpha < 1:
            raise ConfigurationError(f"alpha must be in (0, 1), got {alpha}")
        if n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be >= 1, got {n_jobs}")
        self.min_size = min_size
        self.max_size = max_size
        self.ontology = ontology
        self.alpha = alpha
        self.n_jobs = n_jobs
        # Category members (universe-restricted) from the most recent run()
        self.members: Dict[str, FrozenSet[str]] = {}

    def select_genes_for_enrichment(
        self,
        de_results: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 1.0,
    ) -> Tuple[List[str], List[str], Optional[str]]:
        """
        Split DE results into the significant set and the tested universe.

        Args:
            de_results: DataFrame with columns: gene, log2FoldChange, padj
            padj_threshold: Adjusted p-value threshold (strict)
            lfc_threshold: Absolute log2 fold change threshold (strict)

        Returns:
            Tuple of (significant genes sorted by padj, universe, message)
            - message: None if successful, warning string if no gene is significant
        """
        de_results = ensure_gene_column(de_results)
        universe = de_results.loc[de_results["pvalue"].notna(), "gene"].astype(str).tolist()
        sig = de_results[
            (de_results["padj"] < padj_threshold)
            & (de_results["log2FoldChange"].abs() > lfc_threshold)
        ]
        sig = sig.sort_values("padj", kind="mergesort")
        if sig.empty:
            return [], universe, "No significant genes for enrichment analysis"
        return sig["gene"].astype(str).tolist(), universe, None

    def prepare_categories(
        self, mapping: pd.DataFrame, universe: Sequence[str]
    ) -> Tuple[Dict[str, FrozenSet[str]], pd.DataFrame]:
        """
        Restrict the mapping to the universe and apply ontology / size filters.

        Returns:
            (category_id → member genes, category metadata indexed by category_id)
        """
        mapping = normalize_mapping(mapping)
        universe_set = set(universe)
        mapping = mapping[mapping["gene"].isin(universe_set)]
        if self.ontology != "ALL":
            mapping = mapping[mapping["ontology"] == self.ontology]

        members = mapping.groupby("category_id", sort=True)["gene"].apply(lambda genes: frozenset(genes))
        sizes = members.map(len)
        in_range = (sizes >= self.min_size) & (sizes <= self.max_size)
        logger.info(
            f"{len(members)} categories in universe, {int(in_range.sum())} within size "
            f"[{self.min_size}, {self.max_size}]"
        )
        members = members[in_range]
        metadata = (
            mapping.drop_duplicates("category_id")
            .set_index("category_id")[["description", "ontology"]]
            .reindex(members.index)
        )
        return members.to_dict(), metadata

    def _test_categories(
        self,
        category_ids: List[str],
        members: Dict[str, FrozenSet[str]],
        significant: List[str],
        n_universe: int,
    ) -> List[dict]:
        sig_set = set(significant)
        n_sig = len(significant)
        rows = []
        for cid in category_ids:
            genes = members[cid]
            size = len(genes)
            hits = [g for g in significant if g in genes]
            k = len(hits)
            expected = n_sig * size / n_universe
            rows.append(
                {
                    "category_id": cid,
                    "gene_ratio": k / n_sig if n_sig else 0.0,
                    "bg_ratio": size / n_universe,
                    "count": k,
                    "category_size": size,
                    "expected": expected,
                    "fold_enrichment": k / expected if expected > 0 else np.nan,
                    "pvalue": float(hypergeom.sf(k - 1, n_universe, size, n_sig)),
                    "gene_ids": "/".join(hits),
                }
            )
        return rows

    def run(
        self,
        significant: Sequence[str],
        universe: Sequence[str],
        mapping: pd.DataFrame,
        summary: Optional[RunSummary] = None,
    ) -> pd.DataFrame:
        """
        Hypergeometric over-representation test for every eligible category.

        Args:
            significant: Significant gene identifiers
            universe: All tested gene identifiers
            mapping: gene → category table (gene, category_id, description, ontology)
            summary: RunSummary receiving zero-expected-count categories

        Returns:
            DataFrame with RESULT_COLUMNS, sorted by p_adjust ascending
        """
        universe = list(dict.fromkeys(str(g) for g in universe))
        universe_set = set(universe)
        significant = [g for g in dict.fromkeys(str(g) for g in significant) if g in universe_set]
        n_universe = len(universe)
        if n_universe == 0:
            logger.warning("Empty gene universe; no enrichment performed")
            self.members = {}
            return pd.DataFrame(columns=RESULT_COLUMNS)

        members, metadata = self.prepare_categories(mapping, universe)
        self.members = members
        category_ids = list(members)

        zero_expected = [cid for cid in category_ids if len(significant) * len(members[cid]) == 0]
        if summary is not None:
            summary.record(
                "enrichment",
                "zero_expected_count",
                zero_expected,
                "Categories with zero expected count excluded from testing",
            )
        elif zero_expected:
            logger.warning(f"{len(zero_expected)} categories have zero expected count and are skipped")
        excluded = set(zero_expected)
        category_ids = [cid for cid in category_ids if cid not in excluded]

        if self.n_jobs > 1 and len(category_ids) > 1:
            step = -(-len(category_ids) // self.n_jobs)
            chunks = [category_ids[i:i + step] for i in range(0, len(category_ids), step)]
            with ThreadPoolExecutor(max_workers=self.n_jobs) as pool:
                parts = pool.map(
                    lambda ids: self._test_categories(ids, members, significant, n_universe), chunks
                )
                rows = [row for part in parts for row in part]
        else:
            rows = self._test_categories(category_ids, members, significant, n_universe)

        if not rows:
            logger.info("No categories tested")
            return pd.DataFrame(columns=RESULT_COLUMNS)

        results = pd.DataFrame(rows)
        results["description"] = metadata.loc[results["category_id"], "description"].to_numpy()
        results["ontology"] = metadata.loc[results["category_id"], "ontology"].to_numpy()
        results["p_adjust"] = benjamini_hochberg(results["pvalue"])
        results = results.sort_values(
            ["p_adjust", "pvalue", "category_id"], kind="mergesort"
        ).reset_index(drop=True)

        n_sig_categories = int((results["p_adjust"] < self.alpha).sum())
        logger.info(
            f"Enrichment: {len(results)} categories tested with {len(significant)} significant "
            f"genes in a universe of {n_universe}; {n_sig_categories} with p_adjust < {self.alpha}"
        )
        return results[RESULT_COLUMNS]

    def simplify(
        self,
        results: pd.DataFrame,
        cutoff: float = 0.7,
        measure: str = "jaccard",
        members: Optional[Dict[str, FrozenSet[str]]] = None,
    ) -> pd.DataFrame:
        """
        Collapse redundant significant categories.

        Categories with p_adjust < alpha are visited in order of (p_adjust,
        pvalue, category_id). A category is kept only if its gene-membership
        similarity to every category kept so far is <= cutoff, so each cluster
        of near-duplicates is represented by its most significant member.

        Args:
            results: Output of run()
            cutoff: Similarity threshold in (0, 1]
            measure: "jaccard" or "overlap"
            members: category_id → universe members (default: from the last run())

        Returns:
            Kept categories, same columns, ordered by p_adjust ascending
        """
        if not 0 < cutoff <= 1:
            raise ConfigurationError(f"Similarity cutoff must be in (0, 1], got {cutoff}")
        if measure not in SIMILARITY_MEASURES:
            raise ConfigurationError(
                f"Unknown similarity measure '{measure}'. Choose from {sorted(SIMILARITY_MEASURES)}"
            )
        members = members if members is not None else self.members
        similarity = SIMILARITY_MEASURES[measure]

        candidates = results[results["p_adjust"] < self.alpha].sort_values(
            ["p_adjust", "pvalue", "category_id"], kind="mergesort"
        )
        kept: List[str] = []
        for cid in candidates["category_id"]:
            genes = members[cid]
            if all(similarity(genes, members[other]) <= cutoff for other in kept):
                kept.append(cid)

        simplified = candidates[candidates["category_id"].isin(kept)].reset_index(drop=True)
        logger.info(
            f"Simplify ({measure} <= {cutoff}): kept {len(simplified)} of {len(candidates)} "
            f"significant categories"
        )
        return simplified
