"""
Plotly figures for differential expression results.

Two independent, output-only renderings:

- ``volcano_plot``: -log10(p) against log2 fold change for every tested
  feature, with the top features labelled
- ``clustered_heatmap``: samples x features, column-standardized, rows and
  columns ordered by average-linkage hierarchical clustering on correlation
  distance

Usage:
    viz = ResultVisualizer()
    fig = viz.volcano_plot(de_result)
    viz.save_html(fig, "volcano.html")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import plotly.graph_objects as go
from scipy.cluster.hierarchy import leaves_list, linkage
from scipy.spatial.distance import pdist

from .dataset import ExpressionDataset
from .de_result import DEResult

logger = logging.getLogger(__name__)

COLORS = {
    "up": "#d62728",
    "down": "#1f77b4",
    "ns": "#b0b0b0",
}


def cluster_order(matrix: np.ndarray, method: str = "average", metric: str = "correlation") -> List[int]:
    """
    Leaf order of a hierarchical clustering of the rows of ``matrix``.

    Rows with zero variance have undefined correlation distance; the
    resulting NaNs are replaced with the maximum distance so they cluster
    last instead of failing.
    """
    n = matrix.shape[0]
    if n < 3:
        return list(range(n))
    distances = pdist(matrix, metric=metric)
    fill = 2.0 if metric == "correlation" else np.nanmax(distances)
    distances = np.where(np.isfinite(distances), distances, fill)
    tree = linkage(distances, method=method)
    return [int(i) for i in leaves_list(tree)]


def standardize_columns(frame: pd.DataFrame) -> pd.DataFrame:
    """Z-score each column; constant columns become zero."""
    std = frame.std(axis=0, ddof=1).replace(0, np.nan)
    scaled = (frame - frame.mean(axis=0)) / std
    return scaled.fillna(0.0)


class ResultVisualizer:
    """Creates volcano plots and clustered heatmaps."""

    def __init__(self, template: str = "plotly_white"):
        self.template = template

    def volcano_plot(
        self,
        de_result: DEResult,
        label_top: int = 10,
        pvalue_threshold: Optional[float] = None,
        title: str = "Differential expression",
        height: int = 600,
        width: int = 800,
    ) -> go.Figure:
        """
        Create a volcano plot of every tested feature.

        Args:
            de_result: DE result (``all_features`` is plotted, before thresholding)
            label_top: Number of lowest-p features to annotate
            pvalue_threshold: Horizontal guide line (defaults to the DE threshold)
            title: Chart title
            height: Figure height
            width: Figure width

        Returns:
            Plotly Figure object
        """
        table = de_result.all_features
        if table.empty:
            return self._empty_figure("No features to display")

        threshold = pvalue_threshold or de_result.provenance.pvalue_threshold
        significant = set(de_result.table["feature_id"])
        neg_log_p = -np.log10(np.clip(table["pvalue"].to_numpy(dtype=float), 1e-300, 1.0))

        category = np.where(
            ~table["feature_id"].isin(significant),
            "ns",
            np.where(table["log2_fold_change"] > 0, "up", "down"),
        )

        fig = go.Figure()
        names = {"up": "Up", "down": "Down", "ns": "Not significant"}
        for key in ("ns", "down", "up"):
            mask = category == key
            if not mask.any():
                continue
            fig.add_trace(go.Scatter(
                x=table.loc[mask, "log2_fold_change"],
                y=neg_log_p[mask],
                mode="markers",
                name=names[key],
                marker=dict(color=COLORS[key], size=7, opacity=0.8),
                text=table.loc[mask, "mirna_id"],
                hovertemplate="%{text}<br>log2FC: %{x:.2f}<br>-log10(p): %{y:.2f}<extra></extra>",
            ))

        for i in range(min(label_top, len(table))):
            fig.add_annotation(
                x=float(table["log2_fold_change"].iloc[i]),
                y=float(neg_log_p[i]),
                text=str(table["mirna_id"].iloc[i]),
                showarrow=True,
                arrowhead=0,
                ax=20,
                ay=-20,
                font=dict(size=10),
            )

        fig.add_hline(y=-np.log10(threshold), line_dash="dash", line_color="gray")
        fig.add_vline(x=0, line_color="lightgray")
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            xaxis_title=f"log2 fold change ({de_result.provenance.contrast})",
            yaxis_title="-log10(p-value)",
            template=self.template,
            height=height,
            width=width,
        )
        return fig

    def clustered_heatmap(
        self,
        dataset: ExpressionDataset,
        feature_ids: Sequence[str],
        sample_labels: Optional[pd.Series] = None,
        feature_labels: Optional[pd.Series] = None,
        title: str = "Differentially expressed miRNAs",
        height: int = 700,
        width: int = 900,
    ) -> go.Figure:
        """
        Create a clustered heatmap of the selected features.

        Args:
            dataset: Dataset holding the expression values
            feature_ids: Features to show (e.g. the significant set)
            sample_labels: Display labels per sample ID (group-coded titles)
            feature_labels: Display labels per feature ID (defaults to miRNA IDs)
            title: Chart title
            height: Figure height
            width: Figure width

        Returns:
            Plotly Figure object
        """
        feature_ids = [f for f in feature_ids if f in set(dataset.feature_ids)]
        if not feature_ids:
            return self._empty_figure("No features to display")

        # samples x features
        frame = dataset.expression.loc[feature_ids].T
        frame = standardize_columns(frame)

        row_order = cluster_order(frame.to_numpy())
        col_order = cluster_order(frame.to_numpy().T)
        frame = frame.iloc[row_order, col_order]

        if sample_labels is None:
            y_labels = list(frame.index)
        else:
            y_labels = [str(sample_labels.get(s, s)) for s in frame.index]
        if feature_labels is None:
            feature_labels = dataset.features["mirna_id"]
        x_labels = [str(feature_labels.get(f, f)) for f in frame.columns]

        fig = go.Figure(go.Heatmap(
            z=frame.to_numpy(),
            x=x_labels,
            y=y_labels,
            colorscale="RdBu",
            reversescale=True,
            zmid=0,
            colorbar=dict(title="z-score"),
            hovertemplate="Sample: %{y}<br>miRNA: %{x}<br>z: %{z:.2f}<extra></extra>",
        ))
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            template=self.template,
            height=height,
            width=width,
            xaxis=dict(tickangle=-45),
        )
        return fig

    def _empty_figure(self, message: str) -> go.Figure:
        """Create an empty figure with a message."""
        fig = go.Figure()
        fig.add_annotation(
            text=message,
            xref="paper", yref="paper",
            x=0.5, y=0.5,
            showarrow=False,
            font=dict(size=16, color="gray"),
        )
        fig.update_layout(
            template=self.template,
            xaxis=dict(visible=False),
            yaxis=dict(visible=False),
        )
        return fig

    def save_html(self, fig: go.Figure, filepath: Union[str, Path], include_plotlyjs: bool = True) -> Path:
        """
        Save figure to an HTML file.

        Args:
            fig: Plotly Figure object
            filepath: Output file path
            include_plotlyjs: Whether to include plotly.js in the file
        """
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.write_html(
            str(path),
            include_plotlyjs=include_plotlyjs,
            full_html=True,
        )
        logger.info("Saved: %s", path)
        return path
