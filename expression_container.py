"""
Expression container for count-based differential expression (DGEList equivalent).

Bundles the count matrix (genes × samples), the sample records and the gene
annotation table as one consistent unit, together with per-sample library
sizes and normalization factors.

Every row removal goes through ExpressionContainer.subset_genes(), which drops
the same rows from counts and genes at once and returns a NEW container.
No method mutates a container in place.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import numpy as np
import pandas as pd

from pipeline_errors import SchemaMismatchError

logger = logging.getLogger(__name__)

# Canonical gene annotation columns (order is the export order)
ANNOTATION_COLUMNS = [
    "gene_id",
    "symbol",
    "chromosome",
    "start",
    "end",
    "strand",
    "biotype",
    "description",
    "gene_id_version",
    "entrez_id",
]

# Columns of sample_table() that covariates may not reuse
RESERVED_SAMPLE_COLUMNS = ("sample", "code", "group", "lib_size", "norm_factors")


@dataclass(frozen=True)
class Sample:
    """One biological sample (one column of the count matrix)."""

    code: str  # Stable patient/sample code used in the input tables
    name: str  # Display name "<group>_<ordinal>"
    group: str  # Experimental group label
    covariates: Mapping[str, Any] = field(default_factory=dict)  # age, sex, ...

    def __post_init__(self):
        for attr in ("code", "name", "group"):
            value = getattr(self, attr)
            if value is None or str(value).strip() == "":
                raise SchemaMismatchError(
                    f"Sample field '{attr}' must be a non-empty string",
                    details={"sample": self.code, "field": attr},
                )
        clashes = sorted(k for k in self.covariates if k in RESERVED_SAMPLE_COLUMNS)
        if clashes:
            raise SchemaMismatchError(
                f"Covariate names {clashes} are reserved sample table columns",
                details={"sample": self.code, "reserved": list(RESERVED_SAMPLE_COLUMNS)},
            )


@dataclass(frozen=True)
class Gene:
    """One gene (one row of the count matrix) with optional annotation."""

    key: str
    gene_id: Optional[str] = None
    symbol: Optional[str] = None
    chromosome: Optional[str] = None
    start: Optional[int] = None
    end: Optional[int] = None
    strand: Optional[str] = None
    biotype: Optional[str] = None
    description: Optional[str] = None
    gene_id_version: Optional[str] = None
    entrez_id: Optional[str] = None


def empty_annotation(keys: Sequence[str]) -> pd.DataFrame:
    """Annotation table with all canonical columns set to missing."""
    index = pd.Index(list(keys), name="gene")
    return pd.DataFrame({col: pd.Series([None] * len(index), index=index, dtype=object)
                         for col in ANNOTATION_COLUMNS})


def _as_optional(value):
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


@dataclass(frozen=True, eq=False)
class ExpressionContainer:
    """
    Counts + samples + genes + library sizes + normalization factors.

    The pandas objects are held privately; the counts, genes, lib_size and
    norm_factors accessors return copies, so callers cannot edit a container
    through them. Build instances with from_counts().

    Attributes:
        samples: Sample records in column order
    """

    _counts: pd.DataFrame  # genes × samples integer counts
    samples: Tuple[Sample, ...]
    _genes: pd.DataFrame  # annotation indexed by gene key, count-matrix row order
    _lib_size: pd.Series  # column sums at construction
    _norm_factors: pd.Series  # TMM factors, 1.0 until normalized

    def __post_init__(self):
        sample_names = [s.name for s in self.samples]
        if len(set(sample_names)) != len(sample_names):
            raise SchemaMismatchError(
                "Sample display names must be unique",
                details={"samples": sample_names},
            )
        if list(self._counts.columns) != sample_names:
            raise SchemaMismatchError(
                "Count matrix columns do not match the sample records",
                details={"columns": list(self._counts.columns), "samples": sample_names},
            )
        if not self._counts.index.equals(self._genes.index):
            raise SchemaMismatchError(
                "Count matrix rows and gene table rows differ in content or order",
                details={"n_counts": len(self._counts), "n_genes": len(self._genes)},
            )
        for label, series in (("lib_size", self._lib_size), ("norm_factors", self._norm_factors)):
            if list(series.index) != sample_names:
                raise SchemaMismatchError(
                    f"{label} is not indexed by the sample names in column order",
                    details={label: list(series.index)},
                )
        missing_cols = [c for c in ANNOTATION_COLUMNS if c not in self._genes.columns]
        if missing_cols:
            raise SchemaMismatchError(
                f"Gene table is missing annotation columns {missing_cols}",
                details={"missing": missing_cols},
            )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_counts(
        cls,
        counts: pd.DataFrame,
        samples: Sequence[Sample],
        genes: Optional[pd.DataFrame] = None,
        remove_zero_genes: bool = True,
    ) -> "ExpressionContainer":
        """
        Build a container from aligned counts and sample records.

        Args:
            counts: genes × samples counts, columns already in sample order
            samples: Sample records (same order as counts.columns)
            genes: Annotation table indexed by gene key (None = empty annotation)
            remove_zero_genes: Drop genes with zero counts in every sample

        Returns:
            New ExpressionContainer with library sizes computed from column sums
        """
        samples = tuple(samples)
        counts = counts.copy()
        counts.index.name = "gene"
        if genes is None:
            genes = empty_annotation(counts.index)
        else:
            genes = genes.copy()
            genes.index.name = "gene"

        names = [s.name for s in samples]
        lib_size = pd.Series(counts.sum(axis=0).to_numpy(dtype=np.float64), index=names, name="lib_size")
        norm_factors = pd.Series(np.ones(len(names)), index=names, name="norm_factors")

        container = cls(
            _counts=counts,
            samples=samples,
            _genes=genes,
            _lib_size=lib_size,
            _norm_factors=norm_factors,
        )
        if remove_zero_genes:
            container = container.drop_zero_count_genes()
        return container

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def counts(self) -> pd.DataFrame:
        """genes × samples counts (index = gene keys, columns = sample names)."""
        return self._counts.copy()

    @property
    def genes(self) -> pd.DataFrame:
        """Annotation table indexed by gene key, rows in count-matrix order."""
        return self._genes.copy()

    @property
    def lib_size(self) -> pd.Series:
        return self._lib_size.copy()

    @property
    def norm_factors(self) -> pd.Series:
        return self._norm_factors.copy()

    @property
    def n_genes(self) -> int:
        return self._counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self._counts.shape[1]

    @property
    def sample_names(self) -> List[str]:
        return [s.name for s in self.samples]

    @property
    def gene_keys(self) -> List[str]:
        return list(self._counts.index)

    @property
    def groups(self) -> pd.Series:
        """Group label per sample, indexed by sample name."""
        return pd.Series([s.group for s in self.samples], index=self.sample_names, name="group")

    @property
    def group_levels(self) -> List[str]:
        """Group levels, sorted (R factor order)."""
        return sorted(set(s.group for s in self.samples))

    @property
    def effective_lib_size(self) -> pd.Series:
        """Library size × normalization factor, used by every CPM scaling."""
        return (self._lib_size * self._norm_factors).rename("effective_lib_size")

    def sample_table(self) -> pd.DataFrame:
        """Samples as a DataFrame (code, group, covariates, lib_size, norm_factors)."""
        rows = []
        for s in self.samples:
            row = {"code": s.code, "group": s.group}
            row.update(dict(s.covariates))
            rows.append(row)
        table = pd.DataFrame(rows, index=pd.Index(self.sample_names, name="sample"))
        table["lib_size"] = self._lib_size.to_numpy()
        table["norm_factors"] = self._norm_factors.to_numpy()
        return table

    def gene(self, key: str) -> Gene:
        """Annotation record for one gene key."""
        row = self._genes.loc[key]
        values = {col: _as_optional(row[col]) for col in ANNOTATION_COLUMNS}
        return Gene(key=str(key), **values)

    def cpm(self, log: bool = False, prior_count: float = 2.0) -> pd.DataFrame:
        """
        Counts per million on the effective library size (edgeR cpm()).

        With log=True the prior count is scaled by each sample's library size
        relative to the mean library size before log2 transformation.
        """
        counts = self._counts.to_numpy(dtype=np.float64)
        lib = self.effective_lib_size.to_numpy(dtype=np.float64)
        if log:
            prior = prior_count * lib / np.mean(lib)
            values = np.log2((counts + prior[None, :]) / (lib + 2.0 * prior)[None, :] * 1e6)
        else:
            values = counts / lib[None, :] * 1e6
        return pd.DataFrame(values, index=self._counts.index, columns=self._counts.columns)

    def design_matrix(self, levels: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """No-intercept 0/1 design (samples × group levels)."""
        from de_analysis import make_design_matrix

        return make_design_matrix(self.groups, levels=levels)

    # ------------------------------------------------------------------
    # Transformations (always return a new container)
    # ------------------------------------------------------------------

    def subset_genes(self, keep) -> "ExpressionContainer":
        """
        Keep a subset of genes, removing rows from counts AND genes together.

        Args:
            keep: boolean mask aligned with the gene rows (array or Series)

        Returns:
            New container; row order of kept genes is unchanged
        """
        if isinstance(keep, pd.Series):
            if not keep.index.equals(self._counts.index):
                raise SchemaMismatchError("Gene mask index does not match the count matrix rows")
            mask = keep.to_numpy(dtype=bool)
        else:
            mask = np.asarray(keep, dtype=bool)
        if mask.shape != (self.n_genes,):
            raise SchemaMismatchError(
                f"Gene mask has shape {mask.shape}, expected ({self.n_genes},)",
            )
        return replace(
            self,
            _counts=self._counts.loc[mask].copy(),
            _genes=self._genes.loc[mask].copy(),
        )

    def drop_zero_count_genes(self) -> "ExpressionContainer":
        """Remove genes whose count is zero in every sample."""
        keep = self._counts.sum(axis=1) > 0
        n_removed = int((~keep).sum())
        if n_removed:
            logger.info(f"Removed {n_removed} genes with zero counts in all samples")
        return self.subset_genes(keep)

    def with_norm_factors(self, factors) -> "ExpressionContainer":
        """Return a copy carrying new normalization factors."""
        values = np.asarray(factors, dtype=np.float64)
        if values.shape != (self.n_samples,):
            raise SchemaMismatchError(
                f"Expected {self.n_samples} normalization factors, got {values.shape}",
            )
        return replace(
            self,
            _norm_factors=pd.Series(values, index=self.sample_names, name="norm_factors"),
        )

    def summary(self) -> Dict[str, Any]:
        """Short description used in logs and the run summary."""
        return {
            "n_genes": self.n_genes,
            "n_samples": self.n_samples,
            "groups": self.groups.value_counts().sort_index().to_dict(),
            "lib_size_min": float(self._lib_size.min()) if self.n_samples else 0.0,
            "lib_size_max": float(self._lib_size.max()) if self.n_samples else 0.0,
        }
