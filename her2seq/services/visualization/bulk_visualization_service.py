"""
Bulk RNA-seq visualization service for the HER2 workflow.

Interactive Plotly figures for each stage of the analysis: library-level
diagnostics (density, RLE), exploration (PCA), the voom mean-variance trend
and differential expression results (volcano, MA, heatmap).
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import anndata
import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from plotly.subplots import make_subplots
from scipy.cluster.hierarchy import dendrogram, linkage
from scipy.stats import gaussian_kde

from her2seq.core.analysis_ir import AnalysisStep
from her2seq.core.exceptions import VisualizationError
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

IMAGE_SUFFIXES = {".png", ".svg", ".pdf", ".jpg", ".jpeg", ".webp"}


class BulkVisualizationError(VisualizationError):
    """Raised when a plot cannot be produced from the data at hand."""

    pass


class BulkVisualizationService:
    """
    Plotly figures for bulk RNA-seq quality control and differential expression.

    Every ``create_*`` method returns ``(figure, stats, ir)``; the IR lets the
    notebook export redraw the figure.
    """

    def __init__(self):
        logger.debug("Initializing BulkVisualizationService")

        self.significance_colors = {
            "up": "red",
            "down": "blue",
            "not_significant": "lightgray",
        }
        self.group_colors = px.colors.qualitative.Set2
        self.diverging_colors = px.colors.diverging.RdBu_r

        self.default_width = 900
        self.default_height = 700
        self.default_marker_size = 5
        self.default_opacity = 0.7

    # ------------------------------------------------------------------
    # Library diagnostics
    # ------------------------------------------------------------------

    def create_density_plot(
        self,
        adata: anndata.AnnData,
        layer: str = "logcpm",
        color_by: Optional[str] = None,
        n_points: int = 200,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Per-sample density of expression values.

        Args:
            adata: Normalised dataset
            layer: Layer to plot
            color_by: Optional obs column used to colour the curves
            n_points: Grid size of each density curve
            title: Plot title

        Returns:
            Tuple of (figure, stats, ir)

        Raises:
            BulkVisualizationError: If the layer is missing
        """
        try:
            values = self._layer_values(adata, layer)
            grid = np.linspace(np.nanmin(values), np.nanmax(values), n_points)
            colors = self._color_map(adata, color_by)

            fig = go.Figure()
            shown = set()
            for i, sample in enumerate(adata.obs_names):
                sample_values = values[i][np.isfinite(values[i])]
                if np.ptp(sample_values) == 0:
                    continue
                density = gaussian_kde(sample_values)(grid)
                group = str(adata.obs[color_by].iloc[i]) if color_by else None
                fig.add_trace(
                    go.Scatter(
                        x=grid,
                        y=density,
                        mode="lines",
                        name=group if group else str(sample),
                        legendgroup=group,
                        showlegend=group is None or group not in shown,
                        line=dict(width=1, color=colors.get(group) if group else None),
                        opacity=self.default_opacity,
                        hovertemplate=f"{sample}<br>value: %{{x:.2f}}<extra></extra>",
                    )
                )
                if group:
                    shown.add(group)

            fig.update_layout(
                title=title or f"Density of {layer} values per sample",
                xaxis_title=layer,
                yaxis_title="Density",
                width=self.default_width,
                height=int(self.default_height / 1.4),
                plot_bgcolor="white",
                showlegend=color_by is not None,
            )
            fig.update_xaxes(showgrid=True, gridcolor="lightgray")
            fig.update_yaxes(showgrid=True, gridcolor="lightgray")

            stats = {
                "plot_type": "density_plot",
                "layer": layer,
                "n_samples": int(adata.n_obs),
                "median_value": float(np.nanmedian(values)),
            }
            logger.info(f"Density plot created for {adata.n_obs} samples")
            ir = self._plot_ir(
                "create_density_plot",
                {"layer": layer, "color_by": color_by, "n_points": n_points, "title": title},
                f"Density of {layer} values per sample.",
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.exception(f"Error creating density plot: {e}")
            raise BulkVisualizationError(f"Failed to create density plot: {str(e)}") from e

    def create_rle_plot(
        self,
        adata: anndata.AnnData,
        layer: str = "logcpm",
        color_by: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Relative log expression box plots.

        Each value is expressed relative to the gene's median across samples;
        well-normalised libraries are centred on zero with similar spread.
        """
        try:
            values = self._layer_values(adata, layer)
            rle = values - np.nanmedian(values, axis=0, keepdims=True)
            sample_medians = np.nanmedian(rle, axis=1)
            colors = self._color_map(adata, color_by)

            order = np.arange(adata.n_obs)
            if color_by:
                order = np.argsort(adata.obs[color_by].astype(str).to_numpy(), kind="mergesort")

            fig = go.Figure()
            shown = set()
            for i in order:
                sample = str(adata.obs_names[i])
                group = str(adata.obs[color_by].iloc[i]) if color_by else None
                fig.add_trace(
                    go.Box(
                        y=rle[i],
                        name=sample,
                        legendgroup=group,
                        showlegend=group is not None and group not in shown,
                        marker_color=colors.get(group, "steelblue") if group else "steelblue",
                        boxpoints=False,
                        line=dict(width=1),
                    )
                )
                if group:
                    shown.add(group)

            fig.add_hline(y=0, line_dash="dash", line_color="darkgray")
            fig.update_layout(
                title=title or "Relative log expression",
                xaxis_title="Sample",
                yaxis_title="RLE",
                width=max(self.default_width, 8 * adata.n_obs),
                height=int(self.default_height / 1.4),
                plot_bgcolor="white",
                showlegend=False,
            )
            fig.update_xaxes(showticklabels=adata.n_obs <= 60)
            fig.update_yaxes(showgrid=True, gridcolor="lightgray", zeroline=True)

            stats = {
                "plot_type": "rle_plot",
                "layer": layer,
                "n_samples": int(adata.n_obs),
                "max_abs_sample_median": float(np.nanmax(np.abs(sample_medians))),
            }
            logger.info(f"RLE plot created for {adata.n_obs} samples")
            ir = self._plot_ir(
                "create_rle_plot",
                {"layer": layer, "color_by": color_by, "title": title},
                "Relative log expression per sample; normalised libraries centre on zero.",
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.exception(f"Error creating RLE plot: {e}")
            raise BulkVisualizationError(f"Failed to create RLE plot: {str(e)}") from e

    # ------------------------------------------------------------------
    # Exploration
    # ------------------------------------------------------------------

    def create_pca_plot(
        self,
        adata: anndata.AnnData,
        color_by: Optional[str] = "her2_status",
        components: Tuple[int, int] = (1, 2),
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Scatter of two principal components with explained variance on the axes.

        Raises:
            BulkVisualizationError: If PCA has not been run
        """
        try:
            if "X_pca" not in adata.obsm or "pca" not in adata.uns:
                raise BulkVisualizationError(
                    "No PCA results found; run PCAService.run_pca first"
                )
            coords = np.asarray(adata.obsm["X_pca"])
            pc_x, pc_y = components
            if max(pc_x, pc_y) > coords.shape[1] or min(pc_x, pc_y) < 1:
                raise BulkVisualizationError(
                    f"Requested PC{pc_x}/PC{pc_y} but only {coords.shape[1]} components exist"
                )
            variance = np.asarray(adata.uns["pca"]["variance_ratio"]) * 100

            frame = pd.DataFrame(
                {
                    "x": coords[:, pc_x - 1],
                    "y": coords[:, pc_y - 1],
                    "sample": adata.obs_names.astype(str),
                }
            )
            if color_by and color_by in adata.obs.columns:
                frame["group"] = adata.obs[color_by].astype(str).to_numpy()
            elif color_by:
                logger.warning(f"Column '{color_by}' not in obs; plotting without colour")
                color_by = None

            fig = px.scatter(
                frame,
                x="x",
                y="y",
                color="group" if color_by else None,
                hover_name="sample",
                color_discrete_sequence=self.group_colors,
            )
            fig.update_traces(marker=dict(size=self.default_marker_size + 3, opacity=0.85))
            fig.update_layout(
                title=title or "PCA of most variable genes",
                xaxis_title=f"PC{pc_x} ({variance[pc_x - 1]:.1f}%)",
                yaxis_title=f"PC{pc_y} ({variance[pc_y - 1]:.1f}%)",
                legend_title_text=color_by or "",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
            )
            fig.update_xaxes(showgrid=True, gridcolor="lightgray", zeroline=True)
            fig.update_yaxes(showgrid=True, gridcolor="lightgray", zeroline=True)

            stats = {
                "plot_type": "pca_plot",
                "components": [pc_x, pc_y],
                "explained_variance_pct": [
                    float(variance[pc_x - 1]),
                    float(variance[pc_y - 1]),
                ],
                "color_by": color_by,
                "n_samples": int(adata.n_obs),
            }
            ir = self._plot_ir(
                "create_pca_plot",
                {"color_by": color_by, "components": [pc_x, pc_y], "title": title},
                f"Samples on PC{pc_x} and PC{pc_y}.",
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.exception(f"Error creating PCA plot: {e}")
            raise BulkVisualizationError(f"Failed to create PCA plot: {str(e)}") from e

    def create_mean_variance_plot(
        self, adata: anndata.AnnData, title: Optional[str] = None
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        voom mean-variance trend: sqrt(residual sd) against average log count.

        Raises:
            BulkVisualizationError: If limma-voom has not been run
        """
        try:
            trend = adata.uns.get("voom")
            if not trend or "sx" not in trend:
                raise BulkVisualizationError(
                    "No voom trend found; run LimmaVoomService.run first"
                )
            sx = np.asarray(trend["sx"])
            sy = np.asarray(trend["sy"])

            fig = go.Figure()
            fig.add_trace(
                go.Scattergl(
                    x=sx,
                    y=sy,
                    mode="markers",
                    name="Genes",
                    marker=dict(color="black", size=3, opacity=0.3),
                )
            )
            fig.add_trace(
                go.Scatter(
                    x=np.asarray(trend["trend_x"]),
                    y=np.asarray(trend["trend_y"]),
                    mode="lines",
                    name="Lowess trend",
                    line=dict(color="red", width=2),
                )
            )
            fig.update_layout(
                title=title or "voom: Mean-variance trend",
                xaxis_title="log2( count size + 0.5 )",
                yaxis_title="Sqrt( standard deviation )",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
            )
            fig.update_xaxes(showgrid=True, gridcolor="lightgray")
            fig.update_yaxes(showgrid=True, gridcolor="lightgray")

            stats = {"plot_type": "mean_variance_plot", "n_genes": int(sx.size)}
            ir = self._plot_ir(
                "create_mean_variance_plot",
                {"title": title},
                "voom mean-variance trend used to weight each observation.",
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.exception(f"Error creating mean-variance plot: {e}")
            raise BulkVisualizationError(
                f"Failed to create mean-variance plot: {str(e)}"
            ) from e

    # ------------------------------------------------------------------
    # Differential expression
    # ------------------------------------------------------------------

    def create_volcano_plot(
        self,
        adata: anndata.AnnData,
        fdr_threshold: float = 0.05,
        lfc_threshold: float = 0.0,
        top_n_genes: int = 10,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Volcano plot of limma-voom results.

        Args:
            adata: Dataset with DE results in ``uns['de_results']``
            fdr_threshold: Adjusted p-value threshold
            lfc_threshold: Absolute log2 fold change threshold
            top_n_genes: Number of significant genes to label
            title: Plot title
        """
        try:
            table = self._de_table(adata)
            log2fc = table["logFC"].to_numpy(dtype=np.float64)
            padj = table["adj.P.Val"].fillna(1.0).to_numpy(dtype=np.float64)
            gene_names = self._gene_labels(table)
            neg_log_padj = -np.log10(padj + 1e-300)

            significant_up = (log2fc > 0) & (np.abs(log2fc) >= lfc_threshold) & (padj < fdr_threshold)
            significant_down = (log2fc < 0) & (np.abs(log2fc) >= lfc_threshold) & (padj < fdr_threshold)
            not_significant = ~(significant_up | significant_down)
            n_up = int(significant_up.sum())
            n_down = int(significant_down.sum())

            fig = go.Figure()
            hover = "Gene: %{text}<br>logFC: %{x:.2f}<br>-log10(FDR): %{y:.2f}<extra></extra>"
            for mask, name, key, size, opacity in (
                (not_significant, "Not significant", "not_significant", self.default_marker_size, 0.4),
                (significant_up, f"Up ({n_up})", "up", self.default_marker_size + 1, self.default_opacity),
                (significant_down, f"Down ({n_down})", "down", self.default_marker_size + 1, self.default_opacity),
            ):
                if not mask.any():
                    continue
                fig.add_trace(
                    go.Scattergl(
                        x=log2fc[mask],
                        y=neg_log_padj[mask],
                        mode="markers",
                        name=name,
                        marker=dict(
                            color=self.significance_colors[key], size=size, opacity=opacity
                        ),
                        text=gene_names[mask],
                        hovertemplate=hover,
                    )
                )

            significant = ~not_significant
            n_labeled = 0
            if top_n_genes > 0 and significant.any():
                score = np.where(significant, np.abs(log2fc) * neg_log_padj, -np.inf)
                for idx in np.argsort(score)[::-1][: min(top_n_genes, int(significant.sum()))]:
                    fig.add_annotation(
                        x=log2fc[idx],
                        y=neg_log_padj[idx],
                        text=gene_names[idx],
                        showarrow=True,
                        arrowhead=2,
                        arrowwidth=1,
                        ax=20 if log2fc[idx] > 0 else -20,
                        ay=-20,
                        font=dict(size=9, color="black"),
                        bgcolor="rgba(255,255,255,0.8)",
                    )
                    n_labeled += 1

            fig.add_hline(
                y=-np.log10(fdr_threshold),
                line_dash="dash",
                line_color="darkgray",
                annotation_text=f"FDR = {fdr_threshold}",
                annotation_position="right",
            )
            if lfc_threshold > 0:
                fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="darkgray")
                fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="darkgray")

            fig.update_layout(
                title=title or f"Volcano plot ({n_up} up, {n_down} down)",
                xaxis_title="log2 fold change",
                yaxis_title="-log10(FDR)",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
                hovermode="closest",
            )
            fig.update_xaxes(showgrid=True, gridcolor="lightgray", zeroline=True)
            fig.update_yaxes(showgrid=True, gridcolor="lightgray", zeroline=True)

            stats = {
                "plot_type": "volcano_plot",
                "n_genes_total": int(len(table)),
                "n_genes_up": n_up,
                "n_genes_down": n_down,
                "n_genes_not_significant": int(not_significant.sum()),
                "fdr_threshold": fdr_threshold,
                "lfc_threshold": lfc_threshold,
                "top_n_genes_labeled": n_labeled,
            }
            logger.info(f"Volcano plot created: {n_up} up, {n_down} down genes")
            ir = self._plot_ir(
                "create_volcano_plot",
                {
                    "fdr_threshold": fdr_threshold,
                    "lfc_threshold": lfc_threshold,
                    "top_n_genes": top_n_genes,
                    "title": title,
                },
                f"Volcano plot: {n_up} genes up and {n_down} down at FDR {fdr_threshold}.",
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.exception(f"Error creating volcano plot: {e}")
            raise BulkVisualizationError(f"Failed to create volcano plot: {str(e)}") from e

    def create_ma_plot(
        self,
        adata: anndata.AnnData,
        fdr_threshold: float = 0.05,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """MA plot: log fold change against average log-CPM."""
        try:
            table = self._de_table(adata)
            log2fc = table["logFC"].to_numpy(dtype=np.float64)
            ave_expr = table["AveExpr"].to_numpy(dtype=np.float64)
            padj = table["adj.P.Val"].fillna(1.0).to_numpy(dtype=np.float64)
            gene_names = self._gene_labels(table)

            significant = padj < fdr_threshold
            n_significant = int(significant.sum())

            fig = go.Figure()
            hover = "Gene: %{text}<br>AveExpr: %{x:.2f}<br>logFC: %{y:.2f}<extra></extra>"
            fig.add_trace(
                go.Scattergl(
                    x=ave_expr[~significant],
                    y=log2fc[~significant],
                    mode="markers",
                    name="Not significant",
                    marker=dict(
                        color=self.significance_colors["not_significant"],
                        size=self.default_marker_size,
                        opacity=0.4,
                    ),
                    text=gene_names[~significant],
                    hovertemplate=hover,
                )
            )
            if n_significant > 0:
                colors = np.where(
                    log2fc[significant] > 0,
                    self.significance_colors["up"],
                    self.significance_colors["down"],
                )
                fig.add_trace(
                    go.Scattergl(
                        x=ave_expr[significant],
                        y=log2fc[significant],
                        mode="markers",
                        name=f"Significant ({n_significant})",
                        marker=dict(
                            color=colors.tolist(),
                            size=self.default_marker_size + 1,
                            opacity=self.default_opacity,
                        ),
                        text=gene_names[significant],
                        hovertemplate=hover,
                    )
                )

            fig.add_hline(y=0, line_dash="dash", line_color="darkgray")
            fig.update_layout(
                title=title or f"MA plot ({n_significant} significant genes)",
                xaxis_title="Average log2 CPM",
                yaxis_title="log2 fold change",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
                hovermode="closest",
            )
            fig.update_xaxes(showgrid=True, gridcolor="lightgray")
            fig.update_yaxes(showgrid=True, gridcolor="lightgray", zeroline=True)

            stats = {
                "plot_type": "ma_plot",
                "n_genes_total": int(len(table)),
                "n_genes_significant": n_significant,
                "fdr_threshold": fdr_threshold,
                "median_ave_expr": float(np.median(ave_expr)),
            }
            logger.info(f"MA plot created: {n_significant} significant genes")
            ir = self._plot_ir(
                "create_ma_plot",
                {"fdr_threshold": fdr_threshold, "title": title},
                "MA plot of log fold change against average logCPM.",
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.exception(f"Error creating MA plot: {e}")
            raise BulkVisualizationError(f"Failed to create MA plot: {str(e)}") from e

    def create_top_genes_heatmap(
        self,
        adata: anndata.AnnData,
        n_genes: int = 30,
        group_by: Optional[str] = "her2_status",
        layer: str = "logcpm",
        cluster_genes: bool = True,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Z-scored heatmap of the top differentially expressed genes.

        Samples are ordered by ``group_by`` with a group strip on top; genes
        are ordered by hierarchical clustering (Ward).
        """
        try:
            table = self._de_table(adata)
            genes = [g for g in table.index[:n_genes] if g in adata.var_names]
            if not genes:
                raise BulkVisualizationError("None of the top genes are in the dataset")

            subset = adata[:, genes]
            X = self._layer_values(subset, layer)
            X_std = X.std(axis=0, keepdims=True)
            X_std[X_std == 0] = 1
            Z = (X - X.mean(axis=0, keepdims=True)) / X_std

            sample_names = subset.obs_names.astype(str).to_numpy()
            groups = None
            if group_by and group_by in subset.obs.columns:
                groups = subset.obs[group_by].astype(str).to_numpy()
                order = np.argsort(groups, kind="mergesort")
                Z, sample_names, groups = Z[order], sample_names[order], groups[order]

            gene_labels = np.asarray(genes, dtype=object)
            if cluster_genes and len(genes) > 2:
                gene_order = dendrogram(linkage(Z.T, method="ward"), no_plot=True)["leaves"]
                Z = Z[:, gene_order]
                gene_labels = gene_labels[gene_order]

            if groups is not None:
                fig = make_subplots(
                    rows=2, cols=1, row_heights=[0.04, 0.96], shared_xaxes=True,
                    vertical_spacing=0.01,
                )
                levels = list(pd.unique(groups))
                codes = np.array([levels.index(g) for g in groups])
                palette = self.group_colors
                scale = [
                    [i / max(len(levels) - 1, 1), palette[i % len(palette)]]
                    for i in range(len(levels))
                ] if len(levels) > 1 else [[0, palette[0]], [1, palette[0]]]
                fig.add_trace(
                    go.Heatmap(
                        z=[codes],
                        x=sample_names,
                        y=[group_by],
                        text=[groups],
                        colorscale=scale,
                        showscale=False,
                        hovertemplate="%{x}: %{text}<extra></extra>",
                    ),
                    row=1,
                    col=1,
                )
                row = 2
            else:
                fig = go.Figure()
                row = None

            heatmap = go.Heatmap(
                z=Z.T,
                x=sample_names,
                y=gene_labels,
                colorscale=self.diverging_colors,
                zmid=0,
                colorbar=dict(title="z-score"),
                hovertemplate="Sample: %{x}<br>Gene: %{y}<br>z: %{z:.2f}<extra></extra>",
            )
            if row:
                fig.add_trace(heatmap, row=row, col=1)
            else:
                fig.add_trace(heatmap)

            fig.update_layout(
                title=title or f"Top {len(genes)} differentially expressed genes",
                width=self.default_width,
                height=max(400, 18 * len(genes) + 150),
                plot_bgcolor="white",
            )
            fig.update_xaxes(showticklabels=len(sample_names) <= 60)

            stats = {
                "plot_type": "top_genes_heatmap",
                "n_genes": len(genes),
                "n_samples": int(subset.n_obs),
                "layer": layer,
                "group_by": group_by if groups is not None else None,
            }
            ir = self._plot_ir(
                "create_top_genes_heatmap",
                {
                    "n_genes": n_genes,
                    "group_by": group_by,
                    "layer": layer,
                    "cluster_genes": cluster_genes,
                    "title": title,
                },
                f"Z-scored {layer} of the top {len(genes)} genes.",
            )
            return fig, stats, ir

        except Exception as e:
            if isinstance(e, BulkVisualizationError):
                raise
            logger.exception(f"Error creating heatmap: {e}")
            raise BulkVisualizationError(f"Failed to create heatmap: {str(e)}") from e

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def save_figure(self, fig: go.Figure, path: Union[str, Path]) -> List[Path]:
        """
        Save a figure as HTML, plus a static image when the suffix asks for one.

        ``volcano.png`` writes ``volcano.html`` and ``volcano.png`` (static
        export needs kaleido).

        Returns:
            List of written paths
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        html_path = path.with_suffix(".html")
        fig.write_html(str(html_path), include_plotlyjs="cdn")
        written = [html_path]

        suffix = path.suffix.lower()
        if suffix in IMAGE_SUFFIXES:
            try:
                fig.write_image(str(path))
            except Exception as e:
                raise BulkVisualizationError(
                    f"Static export to {path.name} failed; is kaleido installed? ({e})",
                    {"path": str(path)},
                ) from e
            written.append(path)
        elif suffix not in ("", ".html"):
            logger.warning(f"Unknown figure suffix '{suffix}'; wrote HTML only")

        logger.debug(f"Saved figure to {', '.join(str(p) for p in written)}")
        return written

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _plot_ir(
        self, method: str, parameters: Dict[str, Any], description: str
    ) -> AnalysisStep:
        """IR that redraws the figure with the same arguments."""
        arguments = "".join(
            "    " + name + "={{ " + name + " | pprint }},\n" for name in parameters
        )
        return AnalysisStep(
            operation=f"plotly.{method}",
            tool_name=f"BulkVisualizationService.{method}",
            description=description,
            library="plotly",
            code_template=(
                f"fig, _, _ = BulkVisualizationService().{method}(\n"
                "    adata,\n" + arguments + ")\nfig.show()\n"
            ),
            imports=[
                "from her2seq.services.visualization.bulk_visualization_service "
                "import BulkVisualizationService"
            ],
            parameters=dict(parameters),
            parameter_schema={},
            input_entities=["adata"],
            output_entities=["fig"],
        )

    def _layer_values(self, adata: anndata.AnnData, layer: Optional[str]) -> np.ndarray:
        if layer is None:
            return np.asarray(adata.X, dtype=np.float64)
        if layer not in adata.layers:
            raise BulkVisualizationError(
                f"Layer '{layer}' not found; run normalisation first",
                {"available_layers": list(adata.layers.keys())},
            )
        return np.asarray(adata.layers[layer], dtype=np.float64)

    def _de_table(self, adata: anndata.AnnData) -> pd.DataFrame:
        table = adata.uns.get("de_results")
        if table is None:
            raise BulkVisualizationError(
                "No differential expression results; run LimmaVoomService.run first"
            )
        if isinstance(table, dict):
            table = pd.DataFrame(table)
            if "gene" in table.columns:
                table = table.set_index("gene")
        missing = [c for c in ("logFC", "AveExpr", "adj.P.Val") if c not in table.columns]
        if missing:
            raise BulkVisualizationError(
                f"DE results lack columns {missing}",
                {"columns": list(table.columns)},
            )
        return table

    def _gene_labels(self, table: pd.DataFrame) -> np.ndarray:
        for column in ("gene_name", "Hugo_Symbol"):
            if column in table.columns:
                return table[column].astype(str).to_numpy()
        return table.index.astype(str).to_numpy()

    def _color_map(self, adata: anndata.AnnData, color_by: Optional[str]) -> Dict[str, str]:
        if not color_by:
            return {}
        if color_by not in adata.obs.columns:
            raise BulkVisualizationError(
                f"Column '{color_by}' not found in sample annotation",
                {"available": list(adata.obs.columns)},
            )
        levels = sorted(adata.obs[color_by].astype(str).unique())
        return {
            level: self.group_colors[i % len(self.group_colors)]
            for i, level in enumerate(levels)
        }
