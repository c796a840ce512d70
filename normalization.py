"""
TMM normalization (trimmed mean of M-values).

Computes one multiplicative scaling factor per sample relative to a reference
sample, following edgeR calcNormFactors(method="TMM").
"""

from typing import Optional
import logging
import numpy as np
import pandas as pd
from scipy.stats import rankdata

from expression_container import ExpressionContainer
from pipeline_errors import ConfigurationError, DegenerateNormalizationError

logger = logging.getLogger(__name__)


def upper_quartile_fractions(counts: np.ndarray, lib_size: np.ndarray) -> np.ndarray:
    """75th percentile of count / library size, per sample."""
    return np.quantile(counts / lib_size[None, :], 0.75, axis=0)


def choose_reference(counts: np.ndarray, lib_size: np.ndarray) -> int:
    """Index of the sample whose upper quartile is closest to the mean upper quartile."""
    f75 = upper_quartile_fractions(counts, lib_size)
    if np.median(f75) < 1e-20:
        # Mostly-zero data: fall back to the sample with most expressed signal
        return int(np.argmax(np.sqrt(counts).sum(axis=0)))
    return int(np.argmin(np.abs(f75 - f75.mean())))


def tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: Optional[float] = None,
    lib_ref: Optional[float] = None,
    log_ratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    weighted: bool = True,
    a_cutoff: float = -1e10,
) -> float:
    """
    TMM scaling factor of one sample against the reference sample.

    Args:
        obs: Counts of the sample being scaled
        ref: Counts of the reference sample (same genes)
        lib_obs: Library size of obs (default: column sum)
        lib_ref: Library size of ref (default: column sum)
        log_ratio_trim: Fraction of M values trimmed from each tail
        sum_trim: Fraction of A values trimmed from each tail
        weighted: Use inverse asymptotic variance weights
        a_cutoff: Genes with A below this value are ignored

    Returns:
        Unscaled TMM factor (2 ** trimmed weighted mean of M)

    Raises:
        DegenerateNormalizationError: if no gene is expressed in both samples
    """
    obs = np.asarray(obs, dtype=np.float64)
    ref = np.asarray(ref, dtype=np.float64)
    n_o = float(obs.sum()) if lib_obs is None else float(lib_obs)
    n_r = float(ref.sum()) if lib_ref is None else float(lib_ref)

    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / n_o) / (ref / n_r))
        abs_e = (np.log2(obs / n_o) + np.log2(ref / n_r)) / 2
        v = (n_o - obs) / n_o / obs + (n_r - ref) / n_r / ref

    finite = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    if not finite.any():
        raise DegenerateNormalizationError(
            "Sample shares no expressed genes with the reference sample",
            details={"lib_obs": n_o, "lib_ref": n_r},
        )
    log_r, abs_e, v = log_r[finite], abs_e[finite], v[finite]

    # Identical up to scale
    if np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = len(log_r)
    lo_l = np.floor(n * log_ratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r, method="average")
    rank_e = rankdata(abs_e, method="average")
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        raise DegenerateNormalizationError(
            "No genes left after trimming M and A values",
            details={"n_shared": n},
        )

    if weighted:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def calc_norm_factors(
    counts: pd.DataFrame,
    lib_size: Optional[pd.Series] = None,
    ref_column: Optional[str] = None,
    log_ratio_trim: float = 0.3,
    sum_trim: float = 0.05,
) -> pd.Series:
    """
    TMM normalization factors for every sample.

    Args:
        counts: genes × samples counts
        lib_size: Library sizes (default: column sums)
        ref_column: Reference sample name (default: upper-quartile rule)
        log_ratio_trim: Fraction of M values trimmed from each tail
        sum_trim: Fraction of A values trimmed from each tail

    Returns:
        Series of factors indexed by sample, with geometric mean 1
    """
    values = counts.to_numpy(dtype=np.float64)
    if lib_size is None:
        libs = values.sum(axis=0)
    else:
        libs = lib_size.reindex(counts.columns).to_numpy(dtype=np.float64)
    if np.any(libs <= 0):
        empty = [c for c, lib in zip(counts.columns, libs) if lib <= 0]
        raise DegenerateNormalizationError(
            f"Samples with zero library size cannot be normalized: {empty}",
            details={"samples": empty},
        )

    # Genes with zero counts everywhere carry no information
    values = values[values.sum(axis=1) > 0]

    if ref_column is None:
        ref_idx = choose_reference(values, libs)
    elif ref_column in counts.columns:
        ref_idx = list(counts.columns).index(ref_column)
    else:
        raise ConfigurationError(
            f"TMM reference sample '{ref_column}' is not one of {list(counts.columns)}",
        )
    ref_name = counts.columns[ref_idx]
    logger.info(f"TMM reference sample: {ref_name}")

    factors = np.empty(values.shape[1])
    for j, sample in enumerate(counts.columns):
        try:
            factors[j] = tmm_factor(
                values[:, j],
                values[:, ref_idx],
                lib_obs=libs[j],
                lib_ref=libs[ref_idx],
                log_ratio_trim=log_ratio_trim,
                sum_trim=sum_trim,
            )
        except DegenerateNormalizationError as e:
            e.details.update({"sample": sample, "reference": ref_name})
            raise DegenerateNormalizationError(
                f"Cannot normalize sample '{sample}' against reference '{ref_name}': {e.message}",
                details=e.details,
            ) from e

    # Factors multiply to one
    factors = factors / np.exp(np.mean(np.log(factors)))
    return pd.Series(factors, index=counts.columns, name="norm_factors")


class TMMNormalizer:
    """Attaches TMM normalization factors to an ExpressionContainer."""

    def __init__(self, log_ratio_trim: float = 0.3, sum_trim: float = 0.05, ref_column: Optional[str] = None):
        self.log_ratio_trim = log_ratio_trim
        self.sum_trim = sum_trim
        self.ref_column = ref_column

    def normalize(self, container: ExpressionContainer) -> ExpressionContainer:
        """Return a new container carrying TMM factors (counts are unchanged)."""
        factors = calc_norm_factors(
            container.counts,
            lib_size=container.lib_size,
            ref_column=self.ref_column,
            log_ratio_trim=self.log_ratio_trim,
            sum_trim=self.sum_trim,
        )
        logger.info(
            "TMM factors: " + ", ".join(f"{name}={value:.3f}" for name, value in factors.items())
        )
        return container.with_norm_factors(factors.to_numpy())
