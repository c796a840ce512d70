"""QC and result visualizations for the differential expression workflow (Plotly)."""

from typing import Optional
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from plotly.subplots import make_subplots
from scipy.stats import gaussian_kde


def create_library_size_barplot(
    lib_size: pd.Series, effective_lib_size: Optional[pd.Series] = None
) -> go.Figure:
    """
    Bar plot of library size per sample, in sample order.

    Args:
        lib_size: Library size per sample
        effective_lib_size: Library size × TMM factor (overlaid as markers)

    Returns:
        Plotly Figure object
    """
    mean_size = lib_size.mean()

    fig = go.Figure()
    fig.add_trace(
        go.Bar(
            x=lib_size.index.tolist(),
            y=lib_size.values,
            marker_color="steelblue",
            name="Library Size",
        )
    )
    if effective_lib_size is not None:
        fig.add_trace(
            go.Scatter(
                x=effective_lib_size.index.tolist(),
                y=effective_lib_size.values,
                mode="markers",
                marker=dict(color="darkorange", size=10, symbol="diamond"),
                name="Effective (TMM)",
            )
        )
    fig.add_hline(
        y=mean_size,
        line_dash="dash",
        line_color="red",
        annotation_text=f"Mean: {mean_size:,.0f}",
        annotation_position="top right",
    )
    fig.update_layout(
        title="Library Size per Sample",
        xaxis_title="Sample",
        yaxis_title="Total Counts",
        showlegend=effective_lib_size is not None,
    )
    return fig


def _density_traces(log_cpm: pd.DataFrame, grid: np.ndarray, showlegend: bool):
    traces = []
    for sample in log_cpm.columns:
        values = log_cpm[sample].to_numpy()
        if np.ptp(values) == 0:
            continue
        density = gaussian_kde(values)(grid)
        traces.append(
            go.Scatter(
                x=grid,
                y=density,
                mode="lines",
                name=str(sample),
                legendgroup=str(sample),
                showlegend=showlegend,
            )
        )
    return traces


def create_density_comparison(
    log_cpm_before: pd.DataFrame,
    log_cpm_after: pd.DataFrame,
    cpm_cutoff: float = 1.0,
) -> go.Figure:
    """
    Per-sample log-CPM densities before and after low-expression filtering.

    Args:
        log_cpm_before: genes × samples log2-CPM of the unfiltered container
        log_cpm_after: genes × samples log2-CPM of the filtered container
        cpm_cutoff: CPM threshold, drawn as a vertical line at log2(cutoff)

    Returns:
        Plotly Figure object with two side-by-side panels
    """
    lo = float(min(log_cpm_before.min().min(), log_cpm_after.min().min()))
    hi = float(max(log_cpm_before.max().max(), log_cpm_after.max().max()))
    grid = np.linspace(lo, hi, 256)

    fig = make_subplots(rows=1, cols=2, subplot_titles=("Raw data", "Filtered data"), shared_yaxes=True)
    for trace in _density_traces(log_cpm_before, grid, showlegend=True):
        fig.add_trace(trace, row=1, col=1)
    for trace in _density_traces(log_cpm_after, grid, showlegend=False):
        fig.add_trace(trace, row=1, col=2)
    if cpm_cutoff > 0:
        for col in (1, 2):
            fig.add_vline(x=np.log2(cpm_cutoff), line_dash="dash", line_color="grey", row=1, col=col)
    fig.update_xaxes(title_text="log₂ CPM")
    fig.update_yaxes(title_text="Density", row=1, col=1)
    fig.update_layout(title="Log-CPM Density Before and After Filtering")
    return fig


def create_mds_plot(
    coords: pd.DataFrame,
    groups: pd.Series,
    explained: Optional[np.ndarray] = None,
    title: str = "Sample MDS",
) -> go.Figure:
    """
    Scatter of the first two MDS (or PCA) dimensions colored by group.

    Args:
        coords: samples × dimensions coordinates
        groups: Group label per sample
        explained: Fraction of variance per dimension (axis labels)
        title: Figure title

    Returns:
        Plotly Figure object
    """
    x_col, y_col = coords.columns[:2]
    df = coords[[x_col, y_col]].copy()
    df["group"] = groups.reindex(df.index).astype(str).to_numpy()
    df["sample"] = df.index

    fig = px.scatter(df, x=x_col, y=y_col, color="group", text="sample", title=title)
    fig.update_traces(textposition="top center")
    labels = [x_col, y_col]
    if explained is not None and len(explained) >= 2:
        labels = [f"{x_col} ({explained[0]:.0%})", f"{y_col} ({explained[1]:.0%})"]
    fig.update_layout(xaxis_title=labels[0], yaxis_title=labels[1])
    return fig


def create_voom_trend_plot(voom_result) -> go.Figure:
    """
    voom mean-variance plot: sqrt(residual SD) against mean log-count with the lowess trend.

    Args:
        voom_result: VoomResult

    Returns:
        Plotly Figure object
    """
    mv = voom_result.mean_variance
    fig = go.Figure()
    fig.add_trace(
        go.Scattergl(
            x=mv["sx"],
            y=mv["sy"],
            mode="markers",
            marker=dict(size=4, color="black", opacity=0.5),
            text=mv.index.astype(str),
            name="Genes",
        )
    )
    fig.add_trace(
        go.Scatter(
            x=voom_result.trend_x,
            y=voom_result.trend_y,
            mode="lines",
            line=dict(color="red", width=2),
            name="lowess trend",
        )
    )
    fig.update_layout(
        title="voom: Mean-variance Trend",
        xaxis_title="log₂(count size + 0.5)",
        yaxis_title="Sqrt(standard deviation)",
    )
    return fig


def create_volcano_plot(results_df: pd.DataFrame, alpha: float = 0.05, lfc_floor: float = 1.0) -> go.Figure:
    """
    Volcano plot of log2 fold change against -log10 adjusted p-value.

    Args:
        results_df: DE results with gene, log2FoldChange, padj, direction
        alpha: Adjusted p-value threshold (horizontal line)
        lfc_floor: Fold-change floor (vertical lines)

    Returns:
        Plotly Figure object
    """
    df = results_df.dropna(subset=["padj"]).copy()
    df["neg_log10_padj"] = -np.log10(df["padj"].clip(lower=1e-300))
    colors = {"up": "#e74c3c", "down": "#3498db", "ns": "lightgrey"}

    fig = go.Figure()
    for direction in ("ns", "down", "up"):
        part = df[df["direction"] == direction]
        fig.add_trace(
            go.Scattergl(
                x=part["log2FoldChange"],
                y=part["neg_log10_padj"],
                mode="markers",
                marker=dict(color=colors[direction], size=6),
                text=part["gene"],
                name=f"{direction} ({len(part)})",
                hovertemplate="%{text}<br>log₂FC: %{x:.2f}<br>-log₁₀ padj: %{y:.2f}<extra></extra>",
            )
        )
    fig.add_hline(y=-np.log10(alpha), line_dash="dash", line_color="grey")
    for x in (-lfc_floor, lfc_floor):
        fig.add_vline(x=x, line_dash="dash", line_color="grey")
    fig.update_layout(
        title="Volcano Plot",
        xaxis_title="log₂ Fold Change",
        yaxis_title="-log₁₀ adjusted p-value",
    )
    return fig


def create_enrichment_dotplot(enrichment_df: pd.DataFrame, top: int = 20) -> go.Figure:
    """
    Dot plot of the top enriched categories (clusterProfiler dotplot style).

    Args:
        enrichment_df: Enrichment results (description, gene_ratio, count, p_adjust)
        top: Number of categories shown

    Returns:
        Plotly Figure object
    """
    df = enrichment_df.head(top).iloc[::-1]
    fig = go.Figure(
        go.Scatter(
            x=df["gene_ratio"],
            y=df["description"].where(df["description"] != "", df["category_id"]),
            mode="markers",
            marker=dict(
                size=np.clip(df["count"].astype(float), 4, None) ** 0.5 * 4,
                color=df["p_adjust"],
                colorscale="Reds_r",
                showscale=True,
                colorbar=dict(title="p.adjust"),
            ),
            text=df["category_id"],
        )
    )
    fig.update_layout(title="GO Enrichment", xaxis_title="Gene Ratio", yaxis_title="")
    return fig
