"""
Quality control of the normalized expression container.

Provides MDS (limma plotMDS leading fold-change distances) and PCA sample
embeddings, outlier detection in the embedding and covariate effect
assessment. All plots use Plotly (no matplotlib).
"""

from dataclasses import dataclass
from typing import List, Dict, Tuple
import logging
import pandas as pd
import numpy as np
import plotly.graph_objects as go
from sklearn.decomposition import PCA

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    """Sample coordinates from MDS or PCA."""

    coordinates: pd.DataFrame  # samples × dimensions (Dim1.. / PC1..)
    explained_variance: np.ndarray  # fraction per dimension
    genes_used: int  # genes per pair (MDS) or top variable genes (PCA)
    method: str  # "mds" or "pca"


class AdvancedQC:
    """
    Advanced QC analyses for RNA-seq data.

    Features:
    - MDS on pairwise leading log-fold-change distances
    - PCA on the most variable genes
    - Outlier detection in embedding space (Euclidean distance from centroid)
    - Covariate effect assessment (variance decomposition per dimension)
    """

    def leading_fc_distances(self, log_cpm: pd.DataFrame, top: int = 500) -> pd.DataFrame:
        """
        Pairwise leading log-fold-change distances between samples.

        For each pair of samples, the distance is the root-mean-square of the
        `top` largest absolute log-CPM differences.

        Parameters
        ----------
        log_cpm : pd.DataFrame
            genes × samples log2-CPM
        top : int
            Number of leading genes per pair

        Returns
        -------
        pd.DataFrame
            Symmetric samples × samples distance matrix
        """
        values = log_cpm.to_numpy(dtype=np.float64)
        n_genes, n_samples = values.shape
        top = min(top, n_genes)
        dist = np.zeros((n_samples, n_samples))
        for i in range(n_samples):
            for j in range(i + 1, n_samples):
                sq = (values[:, i] - values[:, j]) ** 2
                leading = np.partition(sq, n_genes - top)[n_genes - top:]
                dist[i, j] = dist[j, i] = np.sqrt(leading.mean())
        return pd.DataFrame(dist, index=log_cpm.columns, columns=log_cpm.columns)

    def compute_mds(self, log_cpm: pd.DataFrame, top: int = 500, n_dims: int = 2) -> EmbeddingResult:
        """
        Classical multidimensional scaling of leading fold-change distances.

        Parameters
        ----------
        log_cpm : pd.DataFrame
            genes × samples log2-CPM
        top : int
            Number of leading genes per sample pair (default: 500)
        n_dims : int
            Number of dimensions to return

        Returns
        -------
        EmbeddingResult
            Coordinates in columns Dim1..DimK
        """
        dist = self.leading_fc_distances(log_cpm, top=top).to_numpy()
        n = dist.shape[0]
        centering = np.eye(n) - np.ones((n, n)) / n
        b = -0.5 * centering @ (dist ** 2) @ centering
        eigvals, eigvecs = np.linalg.eigh(b)
        order = np.argsort(eigvals)[::-1]
        eigvals, eigvecs = eigvals[order], eigvecs[:, order]

        n_dims = min(n_dims, n - 1)
        positive = np.clip(eigvals, 0, None)
        coords = eigvecs[:, :n_dims] * np.sqrt(positive[:n_dims])
        # Eigenvector signs are arbitrary; fix the largest loading positive
        for k in range(n_dims):
            if coords[np.argmax(np.abs(coords[:, k])), k] < 0:
                coords[:, k] = -coords[:, k]
        explained = positive[:n_dims] / positive.sum() if positive.sum() > 0 else np.zeros(n_dims)

        logger.info(f"MDS on {n} samples using top {min(top, len(log_cpm))} genes per pair")
        return EmbeddingResult(
            coordinates=pd.DataFrame(
                coords, index=log_cpm.columns, columns=[f"Dim{k + 1}" for k in range(n_dims)]
            ),
            explained_variance=explained,
            genes_used=min(top, len(log_cpm)),
            method="mds",
        )

    def compute_pca(self, log_cpm: pd.DataFrame, n_components: int = 5, n_top_genes: int = 500) -> EmbeddingResult:
        """
        PCA of samples on the most variable genes.

        Parameters
        ----------
        log_cpm : pd.DataFrame
            genes × samples log2-CPM
        n_components : int
            Number of components
        n_top_genes : int
            Number of highly variable genes to use

        Returns
        -------
        EmbeddingResult
            Coordinates in columns PC1..PCk
        """
        gene_vars = log_cpm.var(axis=1)
        top_genes = gene_vars.nlargest(min(n_top_genes, len(gene_vars))).index
        data = log_cpm.loc[top_genes].T

        n_components = min(n_components, min(data.shape) - 1)
        pca = PCA(n_components=n_components)
        embedding = pca.fit_transform(data)

        pc_names = [f"PC{i + 1}" for i in range(n_components)]
        logger.info(
            f"PCA on {len(top_genes)} variable genes: "
            + ", ".join(f"{pc}={v:.1%}" for pc, v in zip(pc_names, pca.explained_variance_ratio_))
        )
        return EmbeddingResult(
            coordinates=pd.DataFrame(embedding, index=data.index, columns=pc_names),
            explained_variance=pca.explained_variance_ratio_,
            genes_used=len(top_genes),
            method="pca",
        )

    def detect_outliers(
        self,
        coords: pd.DataFrame,
        threshold_sd: float = 3.0
    ) -> Tuple[List[str], pd.Series]:
        """
        Detect outlier samples in the first two embedding dimensions.

        Samples farther from the centroid than median + threshold_sd × SD
        of all distances are flagged.

        Parameters
        ----------
        coords : pd.DataFrame
            Embedding coordinates (first two columns are used), samples as index
        threshold_sd : float
            Number of standard deviations for outlier threshold (default: 3.0)

        Returns
        -------
        Tuple[List[str], pd.Series]
            (list of outlier sample names, Series of distances for all samples)
        """
        data = coords.iloc[:, :2]
        centroid = data.mean()
        distances = np.sqrt(((data - centroid) ** 2).sum(axis=1)).rename("distance")

        threshold = distances.median() + threshold_sd * distances.std()
        outliers = distances[distances > threshold].index.tolist()
        if outliers:
            logger.warning(f"Potential outlier samples: {outliers}")
        return outliers, distances

    def assess_covariate_effects(
        self,
        coords: pd.DataFrame,
        labels: pd.Series
    ) -> Dict[str, float]:
        """
        Fraction of each dimension's variance explained by a categorical covariate.

        Uses a one-way sum-of-squares decomposition. Samples with a missing
        label are ignored.

        Parameters
        ----------
        coords : pd.DataFrame
            Embedding coordinates, sample names as index
        labels : pd.Series
            Covariate value for each sample (e.g. group, sex, batch)

        Returns
        -------
        Dict[str, float]
            Mapping of dimension name to fraction of variance explained (0-1)
        """
        labels = labels.dropna()
        common = coords.index.intersection(labels.index)
        labels = labels.loc[common].astype(str)

        results = {}
        for dim in coords.columns:
            values = coords.loc[common, dim]
            grand_mean = values.mean()
            ss_between = sum(
                len(group_vals) * (group_vals.mean() - grand_mean) ** 2
                for _, group_vals in values.groupby(labels)
            )
            ss_total = ((values - grand_mean) ** 2).sum()
            results[dim] = float(ss_between / ss_total) if ss_total > 0 else 0.0
        return results

    def create_covariate_effect_plot(
        self,
        effects: Dict[str, float],
        covariate: str = "group"
    ) -> go.Figure:
        """
        Bar chart of variance explained by a covariate per dimension.

        Parameters
        ----------
        effects : Dict[str, float]
            Output of assess_covariate_effects()
        covariate : str
            Covariate name for the title

        Returns
        -------
        go.Figure
            Plotly bar chart
        """
        dims = list(effects.keys())
        values = [effects[d] * 100 for d in dims]
        colors = ['#e74c3c' if v > 30 else '#3498db' for v in values]

        fig = go.Figure(data=[
            go.Bar(
                x=dims,
                y=values,
                marker_color=colors,
                text=[f'{v:.1f}%' for v in values],
                textposition='auto',
                hovertemplate='%{x}: %{y:.1f}% variance explained<extra></extra>'
            )
        ])
        fig.update_layout(
            title=f'Variance Explained by {covariate} per Dimension',
            xaxis_title='Dimension',
            yaxis_title='Variance Explained (%)',
            yaxis=dict(range=[0, 100]),
            showlegend=False
        )
        return fig
