# pyright: reportMissingTypeArgument=false
from __future__ import annotations

"""
Count matrix and sample metadata loader.

Reads the gene × sample count table and the sample metadata table, checks that
their sample keys reconcile one-to-one, reorders the count columns to metadata
order and renames them to display names "<group>_<ordinal>".

Canonical output: genes × samples DataFrame (gene identifiers as index,
sample display names as columns) plus the matching tuple of Sample records.
"""

from dataclasses import dataclass
from os import PathLike
from typing import Dict, List, Optional, Tuple, Union
import logging
import pandas as pd
import numpy as np

from expression_container import RESERVED_SAMPLE_COLUMNS, Sample
from pipeline_errors import SchemaMismatchError

logger = logging.getLogger(__name__)

# Sample key detection for metadata tables
KNOWN_SAMPLE_HEADERS = [
    "sample",
    "sample_id",
    "SampleID",
    "Sample_ID",
    "patient_code",
    "code",
    "samplename",
    "Sample_Name",
]

KNOWN_GROUP_HEADERS = [
    "group",
    "Group",
    "condition",
    "Condition",
    "status",
    "disease_state",
]


@dataclass
class LoadedCounts:
    """Result from CountMatrixLoader.load()."""

    counts: pd.DataFrame  # genes × samples, columns renamed to display names
    samples: Tuple[Sample, ...]  # Sample records in column order
    code_to_name: Dict[str, str]  # patient code → display name
    warnings: List[str]


def _read_delimited(file_path: Union[str, PathLike[str]], skip_rows: int = 0, **kwargs) -> pd.DataFrame:
    """Read a delimited text table; comma for .csv files, tab otherwise."""
    path = str(file_path)
    sep = "," if path.lower().endswith(".csv") else "\t"
    try:
        df = pd.read_csv(path, sep=sep, skiprows=skip_rows, **kwargs)
    except pd.errors.EmptyDataError:
        raise SchemaMismatchError(
            f"File is empty or contains no readable data: {path}",
            details={"file": path},
        )
    except pd.errors.ParserError as e:
        raise SchemaMismatchError(
            f"Failed to parse delimited file {path}: {str(e)}. "
            f"Suggestion: Check the delimiter and the number of leading lines to skip.",
            details={"file": path},
        )
    except FileNotFoundError:
        raise SchemaMismatchError(
            f"File not found: {path}. "
            f"Suggestion: Check the file path is correct and the file exists.",
            details={"file": path},
        )
    if df.empty:
        raise SchemaMismatchError(f"File has a header but no data rows: {path}", details={"file": path})
    return df


def read_count_table(file_path: Union[str, PathLike[str]], skip_rows: int = 0) -> pd.DataFrame:
    """
    Read a gene × sample count table.

    Format: first column = gene identifier, header row = sample codes,
    `skip_rows` leading metadata lines before the header.

    Args:
        file_path: Path to the (tab-delimited) count table
        skip_rows: Number of leading lines to skip before the header row

    Returns:
        genes × samples DataFrame of int64 counts (index name "gene")

    Raises:
        SchemaMismatchError: duplicated genes/samples, non-numeric, negative or
            non-integer counts
    """
    df = _read_delimited(file_path, skip_rows=skip_rows)
    if len(df.columns) < 2:
        raise SchemaMismatchError(
            f"Count table must have a gene column plus at least one sample column, "
            f"found {len(df.columns)} column(s). "
            f"Suggestion: Check the delimiter (tab) and the skip_rows setting.",
            details={"columns": list(df.columns)},
        )

    gene_col = df.columns[0]
    df = df.set_index(gene_col)
    df.index = df.index.astype(str)
    df.index.name = "gene"
    df.columns = [str(c).strip() for c in df.columns]

    if df.index.duplicated().any():
        dups = df.index[df.index.duplicated()].unique().tolist()
        raise SchemaMismatchError(
            f"Count table has {len(dups)} duplicated gene identifier(s): {dups[:5]}",
            details={"duplicated_genes": dups},
        )
    if pd.Index(df.columns).duplicated().any():
        dups = pd.Index(df.columns)[pd.Index(df.columns).duplicated()].unique().tolist()
        raise SchemaMismatchError(
            f"Count table has duplicated sample columns: {dups}",
            details={"duplicated_samples": dups},
        )

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise SchemaMismatchError(
            f"Count table has non-numeric sample columns: {non_numeric[:5]}. "
            f"Suggestion: Annotation columns (length, chromosome, ...) must be removed "
            f"or skipped before the count columns.",
            details={"non_numeric": non_numeric},
        )

    values = df.to_numpy(dtype=np.float64)
    if np.isnan(values).any():
        raise SchemaMismatchError(
            f"Count table contains {int(np.isnan(values).sum())} missing values",
            details={"missing": int(np.isnan(values).sum())},
        )
    if (values < 0).any():
        raise SchemaMismatchError(
            f"Count matrices cannot contain negative values. Found {int((values < 0).sum())} negative values.",
            details={"negative_count": int((values < 0).sum())},
        )
    if not np.allclose(values, np.round(values)):
        raise SchemaMismatchError(
            "Count table contains non-integer values. "
            "Suggestion: Supply raw read counts, not normalized or log-transformed values.",
        )

    logger.info(f"Read count table {file_path}: {df.shape[0]} genes × {df.shape[1]} samples")
    return df.round().astype(np.int64)


def detect_column(df: pd.DataFrame, candidates: List[str], what: str) -> str:
    """Return the first column of df that matches one of the candidate headers."""
    for col in candidates:
        if col in df.columns:
            return col
    lowered = {str(c).lower(): c for c in df.columns}
    for col in candidates:
        if col.lower() in lowered:
            return lowered[col.lower()]
    raise SchemaMismatchError(
        f"Could not find a {what} column in metadata. "
        f"Found columns: {', '.join(map(str, df.columns[:10]))}. "
        f"Suggestion: Set the column name explicitly in the configuration.",
        details={"columns": list(df.columns), "candidates": candidates},
    )


def read_sample_metadata(
    file_path: Union[str, PathLike[str]],
    sample_key: Optional[str] = None,
    group_column: Optional[str] = None,
) -> pd.DataFrame:
    """
    Read the sample metadata table.

    Args:
        file_path: Path to metadata (.csv = comma, otherwise tab-delimited)
        sample_key: Column holding the sample codes (auto-detected if None)
        group_column: Column holding the group labels (auto-detected if None)

    Returns:
        DataFrame indexed by sample code (as str), with a "group" column and
        the remaining columns as covariates, rows in file order
    """
    df = _read_delimited(file_path)
    key = sample_key or detect_column(df, KNOWN_SAMPLE_HEADERS, "sample key")
    group = group_column or detect_column(df, KNOWN_GROUP_HEADERS, "group")
    for col in (key, group):
        if col not in df.columns:
            raise SchemaMismatchError(
                f"Metadata column '{col}' not found. Found columns: {', '.join(map(str, df.columns))}",
                details={"columns": list(df.columns)},
            )
    if df[group].isna().any():
        missing = df.loc[df[group].isna(), key].astype(str).tolist()
        raise SchemaMismatchError(
            f"Metadata has samples without a group label: {missing[:5]}",
            details={"samples": missing},
        )

    df = df.copy()
    df[key] = df[key].astype(str).str.strip()
    if df[key].duplicated().any():
        dups = df.loc[df[key].duplicated(), key].tolist()
        raise SchemaMismatchError(
            f"Metadata has duplicated sample codes: {dups[:5]}",
            details={"duplicated_samples": dups},
        )
    df = df.set_index(key)
    df.index.name = "code"
    df = df.rename(columns={group: "group"})
    df["group"] = df["group"].astype(str).str.strip()
    return df


def align_samples(counts: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Reorder count columns to metadata order after checking a bijective match.

    Raises:
        SchemaMismatchError: if a metadata code has no count column or a count
            column has no metadata row
    """
    count_codes = set(counts.columns)
    meta_codes = set(metadata.index)
    missing_in_counts = [c for c in metadata.index if c not in count_codes]
    missing_in_meta = [c for c in counts.columns if c not in meta_codes]
    if missing_in_counts or missing_in_meta:
        raise SchemaMismatchError(
            f"Sample keys do not reconcile: {len(missing_in_counts)} metadata sample(s) "
            f"without a count column {missing_in_counts[:5]}, {len(missing_in_meta)} count "
            f"column(s) without metadata {missing_in_meta[:5]}.",
            details={
                "missing_in_counts": missing_in_counts,
                "missing_in_metadata": missing_in_meta,
            },
        )
    return counts.loc[:, list(metadata.index)]


def _plain_value(value):
    """Convert numpy scalars to Python values and missing values to None."""
    if pd.isna(value):
        return None
    if isinstance(value, np.generic):
        return value.item()
    return value


def build_samples(metadata: pd.DataFrame) -> Tuple[Sample, ...]:
    """
    Create Sample records with display names "<group>_<ordinal>".

    The ordinal is 1-based within each group, following metadata row order.
    Covariate columns named like a sample table column (e.g. a GEO "sample"
    accession column) are kept as "metadata_<name>".
    """
    ordinals: Dict[str, int] = {}
    samples = []
    covariate_cols = [c for c in metadata.columns if c != "group"]
    renamed = {c: f"metadata_{c}" for c in covariate_cols if c in RESERVED_SAMPLE_COLUMNS}
    if renamed:
        logger.warning(f"Renamed metadata columns that clash with sample table columns: {renamed}")
    for code, row in metadata.iterrows():
        group = row["group"]
        ordinals[group] = ordinals.get(group, 0) + 1
        covariates = {renamed.get(col, col): _plain_value(row[col]) for col in covariate_cols}
        samples.append(
            Sample(code=str(code), name=f"{group}_{ordinals[group]}", group=group, covariates=covariates)
        )
    names = [s.name for s in samples]
    if len(set(names)) != len(names):
        raise SchemaMismatchError(
            "Derived sample display names are not unique",
            details={"names": names},
        )
    return tuple(samples)


class CountMatrixLoader:
    """Loads counts + metadata and returns aligned, renamed counts and samples."""

    def __init__(
        self,
        skip_rows: int = 0,
        sample_key: Optional[str] = None,
        group_column: Optional[str] = None,
    ):
        self.skip_rows = skip_rows
        self.sample_key = sample_key
        self.group_column = group_column

    def load(
        self,
        count_path: Union[str, PathLike[str]],
        metadata_path: Union[str, PathLike[str]],
    ) -> LoadedCounts:
        """Read both tables from disk and align them."""
        counts = read_count_table(count_path, skip_rows=self.skip_rows)
        metadata = read_sample_metadata(metadata_path, self.sample_key, self.group_column)
        return self.from_frames(counts, metadata)

    def from_frames(self, counts: pd.DataFrame, metadata: pd.DataFrame) -> LoadedCounts:
        """
        Align an already-read count table with an already-read metadata table.

        Args:
            counts: genes × samples counts, columns = sample codes
            metadata: indexed by sample code with a "group" column

        Returns:
            LoadedCounts with columns in metadata order renamed to display names
        """
        aligned = align_samples(counts, metadata)
        samples = build_samples(metadata)
        code_to_name = {s.code: s.name for s in samples}
        aligned = aligned.rename(columns=code_to_name)

        warnings = []
        n_groups = metadata["group"].nunique()
        if n_groups != 2:
            msg = f"Expected two experimental groups, found {n_groups}: {sorted(metadata['group'].unique())}"
            logger.warning(msg)
            warnings.append(msg)

        logger.info(
            f"Aligned {aligned.shape[1]} samples "
            f"({', '.join(f'{g}={n}' for g, n in metadata['group'].value_counts().sort_index().items())})"
        )
        return LoadedCounts(counts=aligned, samples=samples, code_to_name=code_to_name, warnings=warnings)
