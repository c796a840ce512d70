"""
voom: mean-variance modelling of log-CPM values.

Turns filtered counts into log2-counts-per-million plus a same-shaped matrix of
observation-level precision weights, estimated from a lowess trend of
sqrt(residual SD) against mean log-count (limma voom).
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging
import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from expression_container import ExpressionContainer
from pipeline_errors import ConfigurationError, RunSummary

logger = logging.getLogger(__name__)

# Floor for trend values before inversion; keeps weights finite and positive
TREND_FLOOR = 1e-8

# Residual variances at or below this are treated as exactly zero
ZERO_VARIANCE_TOL = 1e-12


@dataclass
class VoomResult:
    """Result from VarianceModeler.transform()."""

    expression: pd.DataFrame  # genes × samples log2-CPM
    weights: pd.DataFrame  # genes × samples precision weights (> 0)
    design: pd.DataFrame  # samples × group levels
    lib_size: pd.Series  # effective library sizes used for log-CPM
    trend_x: np.ndarray  # sorted mean log-count grid of the lowess trend
    trend_y: np.ndarray  # trend of sqrt(residual SD) on trend_x
    mean_variance: pd.DataFrame  # per gene sx (mean log-count) and sy (sqrt SD)
    zero_variance_genes: List[str] = field(default_factory=list)
    span: float = 0.5


def ols_fit(y: np.ndarray, design: np.ndarray):
    """
    Unweighted least squares for every row of y on the same design.

    Returns:
        (coefficients genes × p, fitted genes × n, residual variance per gene, residual df)
    """
    coef, _, rank, _ = np.linalg.lstsq(design, y.T, rcond=None)
    fitted = (design @ coef).T
    df_residual = design.shape[0] - rank
    resid = y - fitted
    if df_residual > 0:
        s2 = np.sum(resid ** 2, axis=1) / df_residual
    else:
        s2 = np.full(y.shape[0], np.nan)
    return coef.T, fitted, s2, df_residual


def interpolate_trend(x: np.ndarray, trend_x: np.ndarray, trend_y: np.ndarray) -> np.ndarray:
    """Linear interpolation on the trend with constant extrapolation at both ends."""
    return np.interp(x, trend_x, trend_y, left=trend_y[0], right=trend_y[-1])


class VarianceModeler:
    """Computes voom log-CPM values and precision weights."""

    def __init__(self, span: float = 0.5, lowess_iterations: int = 3):
        if not 0 < span <= 1:
            raise ConfigurationError(f"voom span must be in (0, 1], got {span}")
        self.span = span
        self.lowess_iterations = lowess_iterations

    def fit_trend(self, sx: np.ndarray, sy: np.ndarray):
        """
        Lowess trend of sy on sx, returned on a strictly increasing x grid.

        Falls back to a flat trend when fewer than two genes are usable.
        """
        ok = np.isfinite(sx) & np.isfinite(sy)
        if ok.sum() < 2:
            level = float(np.nanmean(sy[ok])) if ok.any() else 1.0
            return np.array([0.0, 1.0]), np.full(2, max(level, TREND_FLOOR))

        smoothed = lowess(sy[ok], sx[ok], frac=self.span, it=self.lowess_iterations, return_sorted=True)
        x_sorted, y_sorted = smoothed[:, 0], smoothed[:, 1]
        trend_x, first = np.unique(x_sorted, return_index=True)
        trend_y = np.maximum(y_sorted[first], TREND_FLOOR)
        if trend_x.size < 2:
            trend_x = np.array([trend_x[0] - 1.0, trend_x[0] + 1.0])
            trend_y = np.repeat(trend_y[0], 2)
        return trend_x, trend_y

    def transform(
        self,
        container: ExpressionContainer,
        design: Optional[pd.DataFrame] = None,
        summary: Optional[RunSummary] = None,
    ) -> VoomResult:
        """
        Run voom on a (filtered, normalized) container.

        Args:
            container: ExpressionContainer with normalization factors
            design: samples × levels design (default: container.design_matrix())
            summary: RunSummary receiving zero-variance genes

        Returns:
            VoomResult with log-CPM and strictly positive weights
        """
        if design is None:
            design = container.design_matrix()
        design = design.loc[container.sample_names]

        counts = container.counts.to_numpy(dtype=np.float64)
        lib = container.effective_lib_size.to_numpy(dtype=np.float64)
        x = design.to_numpy(dtype=np.float64)
        genes = pd.Index(container.gene_keys, name="gene")

        y = np.log2((counts + 0.5) / (lib[None, :] + 1.0) * 1e6)
        _, fitted, s2, df_residual = ols_fit(y, x)
        if df_residual < 1:
            raise ConfigurationError(
                "voom needs residual degrees of freedom: every group must have replicates",
                details={"n_samples": x.shape[0], "n_coefficients": x.shape[1]},
            )

        sigma = np.sqrt(s2)
        amean = y.mean(axis=1)
        sx = amean + np.mean(np.log2(lib + 1.0)) - np.log2(1e6)
        sy = np.sqrt(sigma)

        all_zero = counts.sum(axis=1) == 0
        zero_var = s2 <= ZERO_VARIANCE_TOL
        zero_variance_genes = [str(g) for g in genes[zero_var & ~all_zero]]
        if summary is not None:
            summary.record(
                "voom",
                "zero_variance",
                zero_variance_genes,
                "Genes with zero residual variance excluded from the mean-variance trend",
            )

        usable = ~all_zero & ~zero_var
        trend_x, trend_y = self.fit_trend(sx[usable], sy[usable])

        fitted_count = 2.0 ** fitted * 1e-6 * (lib[None, :] + 1.0)
        fitted_logcount = np.log2(np.maximum(fitted_count, TREND_FLOOR))
        trend = np.maximum(interpolate_trend(fitted_logcount, trend_x, trend_y), TREND_FLOOR)
        weights = trend ** -4

        logger.info(
            f"voom: {len(genes)} genes, trend fitted on {int(usable.sum())} genes "
            f"(span={self.span}), weight range {weights.min():.3g}-{weights.max():.3g}"
        )

        columns = container.sample_names
        return VoomResult(
            expression=pd.DataFrame(y, index=genes, columns=columns),
            weights=pd.DataFrame(weights, index=genes, columns=columns),
            design=design,
            lib_size=container.effective_lib_size,
            trend_x=trend_x,
            trend_y=trend_y,
            mean_variance=pd.DataFrame({"sx": sx, "sy": sy}, index=genes),
            zero_variance_genes=zero_variance_genes,
            span=self.span,
        )
