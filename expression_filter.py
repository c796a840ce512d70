"""
Low-expression gene filtering.

A gene is kept when at least `min_samples` samples have a CPM (on the
effective library size) strictly above `cpm_cutoff`. Both parameters change
downstream statistical power; inspect the before/after log-CPM density plot
(qc_plots.create_density_comparison) when choosing them.
"""

from typing import Optional
import logging
import numpy as np
import pandas as pd

from expression_container import ExpressionContainer
from pipeline_errors import ConfigurationError

logger = logging.getLogger(__name__)


class LowExpressionFilter:
    """CPM threshold filter (edgeR `keep <- rowSums(cpm(y) > 1) >= k`)."""

    def __init__(self, cpm_cutoff: float = 1.0, min_samples: Optional[int] = None):
        """
        Args:
            cpm_cutoff: Counts-per-million threshold (strict)
            min_samples: Minimum number of samples above the threshold
                (None = size of the smallest group)
        """
        if cpm_cutoff < 0:
            raise ConfigurationError(f"cpm_cutoff must be >= 0, got {cpm_cutoff}")
        if min_samples is not None and min_samples < 1:
            raise ConfigurationError(f"min_samples must be >= 1, got {min_samples}")
        self.cpm_cutoff = cpm_cutoff
        self.min_samples = min_samples

    def resolve_min_samples(self, container: ExpressionContainer) -> int:
        if self.min_samples is not None:
            return self.min_samples
        return int(container.groups.value_counts().min())

    def keep_mask(self, container: ExpressionContainer) -> pd.Series:
        """Boolean Series (gene index) of genes passing the filter."""
        k = self.resolve_min_samples(container)
        cpm = container.cpm().to_numpy()
        n_above = (cpm > self.cpm_cutoff).sum(axis=1)
        return pd.Series(n_above >= k, index=container.counts.index, name="keep")

    def apply(self, container: ExpressionContainer) -> ExpressionContainer:
        """
        Remove low-expressed genes from counts and annotation together.

        Library sizes and normalization factors are carried over unchanged, so
        applying the filter a second time removes nothing.
        """
        keep = self.keep_mask(container)
        n_removed = int((~keep).sum())
        logger.info(
            f"Low-expression filter (CPM > {self.cpm_cutoff} in >= "
            f"{self.resolve_min_samples(container)} samples): kept {int(keep.sum())}, "
            f"removed {n_removed} of {container.n_genes} genes"
        )
        if not keep.any():
            logger.warning("All genes were removed by the low-expression filter")
        return container.subset_genes(keep)


def filter_summary(before: ExpressionContainer, after: ExpressionContainer) -> dict:
    """Gene counts before/after filtering, for the run summary."""
    return {
        "genes_before": before.n_genes,
        "genes_after": after.n_genes,
        "genes_removed": before.n_genes - after.n_genes,
        "fraction_kept": float(after.n_genes / before.n_genes) if before.n_genes else float(np.nan),
    }
