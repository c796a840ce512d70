"""
Differential expression analysis: weighted linear models with empirical Bayes moderation.

Implements "fit once, contrast many": per-gene weighted least squares on voom
output is fitted once, then every contrast is moderated (limma eBayes, or TREAT
with a fold-change threshold) and tested with Benjamini-Hochberg control.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import re
import pandas as pd
import numpy as np
from scipy import special, stats
from statsmodels.stats.multitest import multipletests

from expression_container import ANNOTATION_COLUMNS
from pipeline_errors import ConfigurationError, PipelineError, RunSummary, SchemaMismatchError

logger = logging.getLogger(__name__)

# Residual variances at or below this are treated as exactly zero
ZERO_VARIANCE_TOL = 1e-12


def ensure_gene_column(df: pd.DataFrame) -> pd.DataFrame:
    """
    Ensure DataFrame has a 'gene' column, moving a gene-named index into it.

    Args:
        df: DataFrame that may have gene info in index or under an alias

    Returns:
        DataFrame with a lowercase "gene" column containing gene identifiers
    """
    if "gene" in df.columns:
        return df

    for alias in ["Gene", "GENE", "gene_symbol", "SYMBOL", "GeneName", "gene_name"]:
        if alias in df.columns:
            return df.rename(columns={alias: "gene"})

    if df.index.name and df.index.name.lower() in ["gene", "genesymbol", "gene_symbol", "symbol"]:
        df = df.reset_index()
        df.columns = ["gene"] + list(df.columns[1:])
    return df


# =============================================================================
# Design and contrasts
# =============================================================================


def make_design_matrix(groups: pd.Series, levels: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    No-intercept design matrix (model.matrix(~0 + group)).

    Args:
        groups: Group label per sample, indexed by sample name
        levels: Column order (default: sorted unique labels)

    Returns:
        samples × levels DataFrame of 0.0/1.0
    """
    levels = list(levels) if levels is not None else sorted(groups.unique())
    unknown = sorted(set(groups) - set(levels))
    if unknown:
        raise SchemaMismatchError(
            f"Samples belong to groups missing from the design levels: {unknown}",
            details={"levels": levels, "unknown": unknown},
        )
    design = pd.DataFrame(
        {level: (groups == level).astype(np.float64) for level in levels},
        index=groups.index,
    )
    design.index.name = "sample"
    return design


@dataclass(frozen=True)
class Contrast:
    """Named linear combination of design-matrix columns."""

    name: str
    weights: Mapping[str, float]  # design level → coefficient

    @classmethod
    def difference(cls, test: str, reference: str) -> "Contrast":
        """Contrast "test - reference"."""
        return cls(name=f"{test}-{reference}", weights={test: 1.0, reference: -1.0})

    @classmethod
    def parse(cls, expression: str, levels: Sequence[str]) -> "Contrast":
        """
        Parse an expression such as "COVID - healthy" or "A - 0.5*B - 0.5*C".

        Group names are matched longest-first against the known levels, so
        labels containing "-" or "+" (e.g. "COVID-19") can be used as is.

        Raises:
            ConfigurationError: unknown level or malformed term
        """
        weights: Dict[str, float] = {}
        text = expression.replace(" ", "")
        if not text:
            raise ConfigurationError("Contrast expression is empty")
        if text[0] not in "+-":
            text = "+" + text
        names = sorted((str(lv) for lv in levels), key=len, reverse=True)
        if not names:
            raise ConfigurationError("Contrast needs at least one group level")
        term = re.compile(
            r"([+-])(?:([0-9]*\.?[0-9]+)\*)?(" + "|".join(re.escape(n) for n in names) + r")(?=[+-]|$)"
        )
        pos = 0
        while pos < len(text):
            match = term.match(text, pos)
            if match is None:
                unknown = re.match(r"[+-](?:[0-9.]+\*)?([^+\-*]+)", text[pos:])
                if unknown is None:
                    raise ConfigurationError(f"Malformed contrast expression: '{expression}'")
                raise ConfigurationError(
                    f"Contrast '{expression}' refers to unknown group '{unknown.group(1)}'. "
                    f"Available groups: {list(levels)}",
                )
            sign, coef, level = match.groups()
            value = float(coef) if coef else 1.0
            weights[level] = weights.get(level, 0.0) + (value if sign == "+" else -value)
            pos = match.end()
        return cls(name=expression.replace(" ", ""), weights=weights)

    def vector(self, levels: Sequence[str]) -> np.ndarray:
        """Coefficient vector aligned to the design columns."""
        missing = [lv for lv in self.weights if lv not in levels]
        if missing:
            raise ConfigurationError(
                f"Contrast '{self.name}' refers to groups not in the design: {missing}",
            )
        vec = np.array([float(self.weights.get(lv, 0.0)) for lv in levels])
        if not np.any(vec):
            raise ConfigurationError(f"Contrast '{self.name}' has no non-zero coefficient")
        return vec


# =============================================================================
# Empirical Bayes
# =============================================================================


def trigamma_inverse(x) -> np.ndarray:
    """Solve trigamma(y) = x for y by Newton iteration (limma trigammaInverse)."""
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    y = 0.5 + 1.0 / x
    large = x > 1e7
    small = x < 1e-6
    y[large] = 1.0 / np.sqrt(x[large])
    y[small] = 1.0 / x[small]
    todo = ~(large | small) & np.isfinite(x)
    for _ in range(50):
        if not todo.any():
            break
        tri = special.polygamma(1, y[todo])
        dif = tri * (1.0 - tri / x[todo]) / special.polygamma(2, y[todo])
        y[todo] = y[todo] + dif
        converged = -dif / y[todo] < 1e-8
        idx = np.flatnonzero(todo)
        todo[idx[converged]] = False
    if todo.any():
        logger.warning("trigamma_inverse: iteration limit exceeded")
    return y


def fit_f_dist(s2: np.ndarray, df) -> Tuple[float, float]:
    """
    Moment estimation of the scaled F prior on gene variances (limma fitFDist).

    Args:
        s2: Residual variances (non-finite or non-positive values are ignored)
        df: Residual degrees of freedom (scalar or per gene)

    Returns:
        (s2_prior, df_prior); df_prior is np.inf (and s2_prior the pooled
        variance) when the variances show no more spread than expected from
        sampling alone
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape)
    ok = np.isfinite(s2) & (s2 > 0) & np.isfinite(df) & (df > 0)
    n = int(ok.sum())
    if n == 0:
        return float("nan"), 0.0
    if n == 1:
        return float(s2[ok][0]), 0.0

    x = s2[ok]
    d = df[ok]
    x = np.maximum(x, 1e-5 * np.median(x))
    z = np.log(x)
    e = z - special.digamma(d / 2) + np.log(d / 2)
    emean = float(np.mean(e))
    evar = float(np.sum((e - emean) ** 2) / (n - 1))
    evar -= float(np.mean(special.polygamma(1, d / 2)))

    if evar > 0:
        df_prior = float(2 * trigamma_inverse(evar)[0])
        s2_prior = float(np.exp(emean + special.digamma(df_prior / 2) - np.log(df_prior / 2)))
    else:
        # Pooled variance is the scale MLE when the prior df is infinite
        df_prior = float("inf")
        s2_prior = float(np.sum(x * d) / np.sum(d))
    return s2_prior, df_prior


def squeeze_var(s2: np.ndarray, df) -> Tuple[np.ndarray, float, float]:
    """
    Posterior gene variances shrunk towards the fitted prior (limma squeezeVar).

    Returns:
        (s2_post, s2_prior, df_prior)
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape)
    s2_prior, df_prior = fit_f_dist(s2, df)
    if np.isinf(df_prior):
        s2_post = np.full(s2.shape, s2_prior)
    elif df_prior == 0:
        s2_post = s2.copy()
    else:
        s2_post = (df * s2 + df_prior * s2_prior) / (df + df_prior)
    return s2_post, s2_prior, df_prior


# =============================================================================
# Linear model
# =============================================================================


@dataclass(frozen=True, eq=False)
class LinearModel:
    """Per-gene weighted least squares fit, shared by all contrasts."""

    coefficients: pd.DataFrame  # genes × levels
    cov_unscaled: np.ndarray  # genes × levels × levels, (X'WX)^-1
    sigma2: pd.Series  # residual variance per gene
    df_residual: float
    amean: pd.Series  # average log-CPM per gene
    design: pd.DataFrame


@dataclass(frozen=True, eq=False)
class FitResult:
    """Moderated statistics for one contrast."""

    contrast: Contrast
    coefficients: pd.DataFrame  # genes × levels
    log_fc: pd.Series  # contrast estimate
    stdev_unscaled: pd.Series
    sigma: pd.Series  # residual SD
    df_residual: float
    s2_prior: float
    df_prior: float
    s2_post: pd.Series
    df_total: pd.Series
    t: pd.Series  # moderated t (TREAT t when lfc_threshold > 0)
    p_value: pd.Series
    amean: pd.Series
    lfc_threshold: float = 0.0
    degenerate_genes: List[str] = field(default_factory=list)

    @property
    def se(self) -> pd.Series:
        """Moderated standard error of the contrast estimate."""
        return (self.stdev_unscaled * np.sqrt(self.s2_post)).rename("lfcSE")


def _wls_shard(y: np.ndarray, w: np.ndarray, x: np.ndarray, rank: int):
    """Weighted least squares for a block of genes on a shared design."""
    a = np.einsum("gn,np,nq->gpq", w, x, x)
    b = np.einsum("gn,np,gn->gp", w, x, y)
    a_inv = np.linalg.pinv(a)
    beta = np.einsum("gpq,gq->gp", a_inv, b)
    resid = y - beta @ x.T
    s2 = np.sum(w * resid ** 2, axis=1) / (x.shape[0] - rank)
    return beta, a_inv, s2


class LinearModelFitter:
    """Per-gene weighted least squares + empirical Bayes moderated tests."""

    def __init__(self, n_jobs: int = 1, shard_size: int = 2000):
        """
        Args:
            n_jobs: Worker threads for the per-gene fit (1 = sequential)
            shard_size: Genes per shard when fitting
        """
        if n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be >= 1, got {n_jobs}")
        if shard_size < 1:
            raise ConfigurationError(f"shard_size must be >= 1, got {shard_size}")
        self.n_jobs = n_jobs
        self.shard_size = shard_size

    def fit_model(
        self,
        expression: pd.DataFrame,
        weights: pd.DataFrame,
        design: pd.DataFrame,
    ) -> LinearModel:
        """
        Fit the weighted linear model ONCE. Reuse it for every contrast.

        Args:
            expression: genes × samples log-CPM
            weights: genes × samples precision weights
            design: samples × levels design matrix

        Returns:
            LinearModel with coefficients and unscaled covariances
        """
        if list(design.index) != list(expression.columns):
            design = design.loc[list(expression.columns)]
        if not weights.index.equals(expression.index) or list(weights.columns) != list(expression.columns):
            raise SchemaMismatchError("Weights and expression matrices are not aligned")

        y = expression.to_numpy(dtype=np.float64)
        w = weights.to_numpy(dtype=np.float64)
        x = design.to_numpy(dtype=np.float64)
        rank = int(np.linalg.matrix_rank(x))
        df_residual = x.shape[0] - rank
        if df_residual < 1:
            raise ConfigurationError(
                "Linear model has no residual degrees of freedom",
                details={"n_samples": x.shape[0], "rank": rank},
            )

        shards = [
            np.arange(start, min(start + self.shard_size, y.shape[0]))
            for start in range(0, y.shape[0], self.shard_size)
        ]
        if self.n_jobs > 1 and len(shards) > 1:
            with ThreadPoolExecutor(max_workers=self.n_jobs) as pool:
                parts = list(pool.map(lambda idx: _wls_shard(y[idx], w[idx], x, rank), shards))
        else:
            parts = [_wls_shard(y[idx], w[idx], x, rank) for idx in shards]

        if parts:
            beta = np.concatenate([p[0] for p in parts])
            cov = np.concatenate([p[1] for p in parts])
            s2 = np.concatenate([p[2] for p in parts])
        else:
            beta = np.empty((0, x.shape[1]))
            cov = np.empty((0, x.shape[1], x.shape[1]))
            s2 = np.empty(0)

        genes = expression.index
        logger.info(
            f"Fitted weighted linear model: {len(genes)} genes, {x.shape[1]} coefficients, "
            f"{df_residual} residual df ({len(shards)} shard(s), n_jobs={self.n_jobs})"
        )
        return LinearModel(
            coefficients=pd.DataFrame(beta, index=genes, columns=design.columns),
            cov_unscaled=cov,
            sigma2=pd.Series(s2, index=genes, name="sigma2"),
            df_residual=float(df_residual),
            amean=expression.mean(axis=1).rename("AveExpr"),
            design=design,
        )

    def test_contrast(
        self,
        model: LinearModel,
        contrast: Contrast,
        lfc_threshold: float = 0.0,
        summary: Optional[RunSummary] = None,
    ) -> FitResult:
        """
        Moderated t-test of one contrast (limma contrasts.fit + eBayes / treat).

        Args:
            model: Fitted LinearModel
            contrast: Contrast over the design levels
            lfc_threshold: TREAT log2 fold-change threshold (0 = ordinary eBayes)
            summary: RunSummary receiving zero-variance genes

        Returns:
            FitResult; zero-variance genes carry NaN statistics
        """
        if lfc_threshold < 0:
            raise ConfigurationError(f"lfc_threshold must be >= 0, got {lfc_threshold}")
        genes = model.coefficients.index
        c = contrast.vector(list(model.design.columns))

        log_fc = model.coefficients.to_numpy() @ c
        stdev_unscaled = np.sqrt(np.einsum("p,gpq,q->g", c, model.cov_unscaled, c))
        s2 = model.sigma2.to_numpy()

        degenerate = ~np.isfinite(s2) | (s2 <= ZERO_VARIANCE_TOL)
        degenerate_genes = [str(g) for g in genes[degenerate]]
        if summary is not None:
            summary.record(
                "linear_model",
                "zero_variance",
                degenerate_genes,
                "Genes with zero residual variance excluded from moderated statistics",
            )

        df = np.full(len(genes), model.df_residual)
        ok = ~degenerate
        s2_post = np.full(len(genes), np.nan)
        s2_post_ok, s2_prior, df_prior = squeeze_var(s2[ok], df[ok])
        s2_post[ok] = s2_post_ok

        df_total = np.full(len(genes), np.nan)
        df_total[ok] = np.minimum(df[ok] + df_prior, df[ok].sum())

        se = stdev_unscaled * np.sqrt(s2_post)
        with np.errstate(invalid="ignore", divide="ignore"):
            if lfc_threshold > 0:
                t_right = (np.abs(log_fc) - lfc_threshold) / se
                t_left = (np.abs(log_fc) + lfc_threshold) / se
                p_value = stats.t.sf(t_right, df_total) + stats.t.sf(t_left, df_total)
                t = np.sign(log_fc) * np.maximum(t_right, 0.0)
            else:
                t = log_fc / se
                p_value = 2.0 * stats.t.sf(np.abs(t), df_total)
        p_value = np.minimum(p_value, 1.0)
        t[degenerate] = np.nan
        p_value[degenerate] = np.nan

        logger.info(
            f"Contrast {contrast.name}: s2_prior={s2_prior:.4g}, df_prior={df_prior:.4g}, "
            f"lfc_threshold={lfc_threshold}"
        )
        sigma = np.sqrt(s2)
        return FitResult(
            contrast=contrast,
            coefficients=model.coefficients,
            log_fc=pd.Series(log_fc, index=genes, name="log2FoldChange"),
            stdev_unscaled=pd.Series(stdev_unscaled, index=genes, name="stdev_unscaled"),
            sigma=pd.Series(sigma, index=genes, name="sigma"),
            df_residual=model.df_residual,
            s2_prior=s2_prior,
            df_prior=df_prior,
            s2_post=pd.Series(s2_post, index=genes, name="s2_post"),
            df_total=pd.Series(df_total, index=genes, name="df_total"),
            t=pd.Series(t, index=genes, name="stat"),
            p_value=pd.Series(p_value, index=genes, name="pvalue"),
            amean=model.amean,
            lfc_threshold=lfc_threshold,
            degenerate_genes=degenerate_genes,
        )

    def fit(
        self,
        voom_result,
        contrast: Contrast,
        lfc_threshold: float = 0.0,
        summary: Optional[RunSummary] = None,
    ) -> FitResult:
        """Fit the model on a VoomResult and test a single contrast."""
        model = self.fit_model(voom_result.expression, voom_result.weights, voom_result.design)
        return self.test_contrast(model, contrast, lfc_threshold=lfc_threshold, summary=summary)


# =============================================================================
# Significance
# =============================================================================


def benjamini_hochberg(pvalues) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values; NaN inputs stay NaN and are not counted.
    """
    p = np.asarray(pvalues, dtype=np.float64)
    padj = np.full(p.shape, np.nan)
    finite = np.isfinite(p)
    if finite.any():
        padj[finite] = multipletests(p[finite], method="fdr_bh")[1]
    return padj


@dataclass
class DEResult:
    """Result from differential expression analysis."""

    results_df: pd.DataFrame  # gene, annotation, log2FoldChange, AveExpr, lfcSE, stat, pvalue, padj, significant, direction
    contrast: Contrast
    alpha: float
    lfc_floor: float
    lfc_threshold: float  # TREAT threshold used in the test
    n_significant: int  # Genes with padj < alpha and |logFC| > lfc_floor
    n_up: int
    n_down: int
    warnings: List[str]

    @property
    def significant_df(self) -> pd.DataFrame:
        """Significant genes only, same columns, sorted by padj."""
        sig = self.results_df[self.results_df["significant"]]
        return sig.sort_values(["padj", "pvalue"], kind="mergesort").reset_index(drop=True)

    def top_table(self, n: Optional[int] = None) -> pd.DataFrame:
        """Results sorted by p-value (limma topTable), NaN statistics last."""
        table = self.results_df.sort_values("pvalue", kind="mergesort", na_position="last")
        return table.head(n).reset_index(drop=True) if n else table.reset_index(drop=True)

    def decide_tests(self) -> Dict[str, int]:
        """Per-direction counts (limma decideTests summary)."""
        return {
            "down": self.n_down,
            "ns": int(len(self.results_df) - self.n_up - self.n_down),
            "up": self.n_up,
        }


class SignificanceTester:
    """BH adjustment and strict significance classification."""

    def __init__(self, alpha: float = 0.05, lfc_floor: float = 1.0):
        """
        Args:
            alpha: Adjusted p-value threshold, strict (0 < alpha < 1)
            lfc_floor: Absolute log2 fold-change threshold, strict (>= 0)
        """
        if not 0 < alpha < 1:
            raise ConfigurationError(f"alpha must be in (0, 1), got {alpha}")
        if lfc_floor < 0:
            raise ConfigurationError(f"Fold-change floor must be >= 0, got {lfc_floor}")
        self.alpha = alpha
        self.lfc_floor = lfc_floor

    def classify(self, results_df: pd.DataFrame) -> pd.DataFrame:
        """Add `significant` and `direction` columns from padj and log2FoldChange."""
        results_df = results_df.copy()
        sig = DEAnalysisEngine.significance_mask(results_df, self.alpha, self.lfc_floor)
        results_df["significant"] = sig
        results_df["direction"] = np.where(
            sig, np.where(results_df["log2FoldChange"] > 0, "up", "down"), "ns"
        )
        return results_df

    def test(self, fit: FitResult, genes: Optional[pd.DataFrame] = None) -> DEResult:
        """
        Build the per-gene results table for one contrast.

        Args:
            fit: FitResult from LinearModelFitter
            genes: Annotation table indexed by gene key (optional)

        Returns:
            DEResult with rows in the fitted gene order
        """
        index = fit.log_fc.index
        results_df = pd.DataFrame(
            {
                "gene": index.astype(str),
                "log2FoldChange": fit.log_fc.to_numpy(),
                "AveExpr": fit.amean.reindex(index).to_numpy(),
                "lfcSE": fit.se.to_numpy(),
                "stat": fit.t.to_numpy(),
                "pvalue": fit.p_value.to_numpy(),
            }
        )
        results_df["padj"] = benjamini_hochberg(results_df["pvalue"])
        if genes is not None:
            annotation = genes.reindex(index)[ANNOTATION_COLUMNS].reset_index(drop=True)
            results_df = pd.concat([results_df[["gene"]], annotation, results_df.drop(columns="gene")], axis=1)
        results_df = self.classify(results_df)

        warnings = []
        if fit.degenerate_genes:
            warnings.append(
                f"{len(fit.degenerate_genes)} zero-variance gene(s) excluded from testing"
            )
        n_up = int((results_df["direction"] == "up").sum())
        n_down = int((results_df["direction"] == "down").sum())
        logger.info(
            f"{fit.contrast.name}: {n_up + n_down} significant genes "
            f"(padj < {self.alpha}, |log2FC| > {self.lfc_floor}; up={n_up}, down={n_down})"
        )
        return DEResult(
            results_df=results_df,
            contrast=fit.contrast,
            alpha=self.alpha,
            lfc_floor=self.lfc_floor,
            lfc_threshold=fit.lfc_threshold,
            n_significant=n_up + n_down,
            n_up=n_up,
            n_down=n_down,
            warnings=warnings,
        )


# =============================================================================
# Orchestration
# =============================================================================


class DEAnalysisEngine:
    """Differential expression on voom output: fit once, test many contrasts."""

    def __init__(
        self,
        fitter: Optional[LinearModelFitter] = None,
        tester: Optional[SignificanceTester] = None,
        lfc_threshold: float = 0.0,
    ):
        self.fitter = fitter or LinearModelFitter()
        self.tester = tester or SignificanceTester()
        self.lfc_threshold = lfc_threshold

    def run_all_comparisons(
        self,
        voom_result,
        contrasts: List[Contrast],
        genes: Optional[pd.DataFrame] = None,
        summary: Optional[RunSummary] = None,
    ) -> Dict[str, DEResult]:
        """
        Main entry point: fit model once, compute all contrasts.

        Args:
            voom_result: VoomResult (expression, weights, design)
            contrasts: Contrasts to test
            genes: Annotation table indexed by gene key (optional)
            summary: RunSummary collecting recoverable conditions

        Returns:
            Dict mapping contrast name → DEResult

        Raises:
            PipelineError if the model fit or a contrast fails
        """
        try:
            model = self.fitter.fit_model(voom_result.expression, voom_result.weights, voom_result.design)
        except PipelineError:
            logger.error("DE analysis model fit failed", exc_info=True)
            raise

        results = {}
        for contrast in contrasts:
            try:
                fit = self.fitter.test_contrast(
                    model, contrast, lfc_threshold=self.lfc_threshold, summary=summary
                )
            except PipelineError:
                logger.error(f"DE analysis contrast {contrast.name} failed", exc_info=True)
                raise
            results[contrast.name] = self.tester.test(fit, genes=genes)
        return results

    @staticmethod
    def significance_mask(
        results_df: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 1.0,
    ) -> pd.Series:
        """Strict rule: padj < padj_threshold AND |log2FoldChange| > lfc_threshold."""
        padj = results_df["padj"]
        lfc = results_df["log2FoldChange"]
        return (padj.notna() & (padj < padj_threshold) & (lfc.abs() > lfc_threshold)).astype(bool)

    @staticmethod
    def filter_results(
        results_df: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 1.0,
    ) -> pd.DataFrame:
        """
        Filter DE results to significant genes.

        Args:
            results_df: DE results DataFrame
            padj_threshold: Adjusted p-value threshold (default: 0.05)
            lfc_threshold: Absolute log2 fold change threshold (default: 1.0)

        Returns:
            Filtered DataFrame with significant genes only
        """
        mask = DEAnalysisEngine.significance_mask(results_df, padj_threshold, lfc_threshold)
        return results_df[mask].copy()
