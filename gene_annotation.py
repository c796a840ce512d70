"""
Gene annotation joining.

Left-joins an external annotation table (e.g. a biomaRt export keyed by gene
symbol) onto the gene identifiers of the count matrix. The count matrix order
is preserved exactly, the first annotation row wins when a key matches several
rows, and unmatched genes keep missing annotation fields.
"""

from os import PathLike
from typing import Dict, List, Sequence, Union
import logging
import pandas as pd

from expression_container import ANNOTATION_COLUMNS, empty_annotation
from pipeline_errors import SchemaMismatchError

logger = logging.getLogger(__name__)

# Canonical annotation column → accepted aliases (biomaRt attribute names first)
COLUMN_ALIASES: Dict[str, List[str]] = {
    "chromosome": ["chromosome", "chromosome_name", "chr", "Chr"],
    "start": ["start", "start_position", "Start"],
    "end": ["end", "end_position", "End"],
    "strand": ["strand", "Strand"],
    "gene_id": ["gene_id", "ensembl_gene_id", "Geneid", "GeneID"],
    "symbol": ["symbol", "hgnc_symbol", "external_gene_name", "gene_symbol", "SYMBOL"],
    "biotype": ["biotype", "gene_biotype", "transcript_biotype"],
    "description": ["description", "Description"],
    "gene_id_version": ["gene_id_version", "ensembl_gene_id_version"],
    "entrez_id": ["entrez_id", "entrezgene_id", "entrezgene", "ENTREZID"],
}


def normalize_annotation_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename alias columns to canonical names and add missing canonical columns."""
    df = df.copy()
    renames = {}
    for canonical, aliases in COLUMN_ALIASES.items():
        if canonical in df.columns:
            continue
        for alias in aliases:
            if alias in df.columns:
                renames[alias] = canonical
                break
    df = df.rename(columns=renames)
    for col in ANNOTATION_COLUMNS:
        if col not in df.columns:
            df[col] = None
    return df


def read_annotation_table(file_path: Union[str, PathLike]) -> pd.DataFrame:
    """
    Read a gene annotation table (.csv = comma, otherwise tab-delimited).

    Returns:
        DataFrame with canonical ANNOTATION_COLUMNS (plus any extra columns)
    """
    path = str(file_path)
    sep = "," if path.lower().endswith(".csv") else "\t"
    try:
        df = pd.read_csv(path, sep=sep, dtype=str)
    except FileNotFoundError:
        raise SchemaMismatchError(f"Annotation file not found: {path}", details={"file": path})
    except pd.errors.EmptyDataError:
        raise SchemaMismatchError(f"Annotation file is empty: {path}", details={"file": path})
    df = normalize_annotation_columns(df)
    for col in ("start", "end"):
        df[col] = pd.to_numeric(df[col], errors="coerce").astype("Int64")
    logger.info(f"Read {len(df)} annotation rows from {path}")
    return df


class GeneAnnotationJoiner:
    """Joins annotation rows onto count-matrix gene keys, one row per key."""

    def __init__(self, key_column: str = "symbol"):
        """
        Args:
            key_column: Canonical annotation column matched against the
                count-matrix gene identifiers (default: "symbol")
        """
        if key_column not in ANNOTATION_COLUMNS:
            raise SchemaMismatchError(
                f"Annotation key column must be one of {ANNOTATION_COLUMNS}, got '{key_column}'",
            )
        self.key_column = key_column

    def deduplicate(self, annotation: pd.DataFrame) -> pd.DataFrame:
        """Keep the first annotation row per key (input order)."""
        keyed = annotation.dropna(subset=[self.key_column])
        dup_mask = keyed[self.key_column].duplicated(keep="first")
        n_dups = int(dup_mask.sum())
        if n_dups:
            logger.info(
                f"Dropped {n_dups} ambiguous annotation rows "
                f"({keyed.loc[dup_mask, self.key_column].nunique()} keys matched more than once)"
            )
        return keyed.loc[~dup_mask]

    def join(self, gene_keys: Sequence[str], annotation: pd.DataFrame) -> pd.DataFrame:
        """
        Left-join annotation onto gene keys.

        Args:
            gene_keys: Count-matrix gene identifiers in row order
            annotation: Annotation table (canonical or alias column names)

        Returns:
            DataFrame indexed by gene key in exactly the input order, with the
            canonical ANNOTATION_COLUMNS; unmatched genes have missing fields
        """
        keys = pd.Index([str(k) for k in gene_keys], name="gene")
        if annotation is None or annotation.empty:
            logger.warning("Annotation table is empty; genes keep missing annotation")
            return empty_annotation(keys)

        annotation = normalize_annotation_columns(annotation)
        annotation = annotation.copy()
        annotation[self.key_column] = annotation[self.key_column].astype(str).where(
            annotation[self.key_column].notna()
        )
        unique = self.deduplicate(annotation).set_index(self.key_column, drop=False)

        joined = unique.reindex(keys)[ANNOTATION_COLUMNS]
        joined.index.name = "gene"

        n_matched = int(keys.isin(unique.index).sum())
        logger.info(
            f"Annotated {n_matched}/{len(keys)} genes "
            f"({len(keys) - n_matched} without annotation kept with missing fields)"
        )
        if len(joined) != len(keys) or not joined.index.equals(keys):
            raise SchemaMismatchError("Annotation join changed the gene rows")
        return joined
