"""
Visualizations for the HC vs LS analysis.

Interactive Plotly figures for volcano, PCA, t-SNE and enrichment plots; the
clustered heatmap is a seaborn clustermap (static matplotlib figure).
"""

from typing import Dict, List, Optional
import pandas as pd
import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns
import plotly.graph_objects as go
import plotly.express as px
from plotly.subplots import make_subplots

from de_analysis import ensure_gene_column, PADJ_THRESHOLD
from exploration import PCAResult, TSNEResult
from schemas import InsufficientDataError

# Display-only cutoffs; exported gene lists use PADJ_THRESHOLD alone
VOLCANO_LFC_CUTOFF = 1.5
VOLCANO_PADJ_CUTOFF = 0.05

CONDITION_PALETTE = {"Healthy": "#66c2a5", "LS": "#fc8d62"}


def _condition_color_map(conditions: List[str]) -> Dict[str, str]:
    palette = px.colors.qualitative.Set2
    colors = {}
    for i, cond in enumerate(sorted(set(conditions))):
        colors[cond] = CONDITION_PALETTE.get(cond, palette[i % len(palette)])
    return colors


def _empty_figure(title: str, message: str) -> go.Figure:
    fig = go.Figure()
    fig.update_layout(
        title=title,
        annotations=[dict(
            text=message,
            xref="paper", yref="paper",
            x=0.5, y=0.5, showarrow=False, font=dict(size=16)
        )]
    )
    return fig


def create_volcano_plot(
    results_df: pd.DataFrame,
    lfc_threshold: float = VOLCANO_LFC_CUTOFF,
    padj_threshold: float = VOLCANO_PADJ_CUTOFF,
    top_n_labels: int = 10,
) -> go.Figure:
    """
    Create interactive volcano plot from DE results.

    Args:
        results_df: DataFrame with columns: gene, log2FoldChange, padj
        lfc_threshold: Log2 fold change cutoff line (default: ±1.5)
        padj_threshold: Adjusted p-value cutoff line (default: 0.05)
        top_n_labels: Number of most significant genes labelled

    Returns:
        Plotly Figure object
    """
    if results_df is None or results_df.empty:
        raise ValueError(
            "Cannot create volcano plot: results_df is empty or None. "
            "Ensure the differential expression analysis produced results."
        )

    results_df = ensure_gene_column(results_df)

    missing = [col for col in ["gene", "log2FoldChange", "padj"] if col not in results_df.columns]
    if missing:
        raise ValueError(
            f"Cannot create volcano plot: missing required columns {missing}. "
            f"Found columns: {', '.join(results_df.columns.tolist()[:6])}."
        )

    df = results_df.dropna(subset=["padj"]).copy()
    if df.empty:
        raise ValueError("Cannot create volcano plot: all padj values are NaN.")

    df["-log10_padj"] = -np.log10(df["padj"].clip(lower=1e-300))

    significant = df["padj"] < padj_threshold
    df["significance"] = "NS"
    df.loc[significant & (df["log2FoldChange"] > lfc_threshold), "significance"] = "Up"
    df.loc[significant & (df["log2FoldChange"] < -lfc_threshold), "significance"] = "Down"

    fig = px.scatter(
        df,
        x="log2FoldChange",
        y="-log10_padj",
        color="significance",
        hover_name="gene",
        hover_data={
            "log2FoldChange": ":.2f",
            "padj": ":.2e",
            "-log10_padj": False,
            "significance": False,
        },
        color_discrete_map={"Up": "red", "Down": "blue", "NS": "lightgray"},
        category_orders={"significance": ["Up", "Down", "NS"]},
        labels={"log2FoldChange": "log₂(Fold Change) LS vs Healthy", "-log10_padj": "-log₁₀(padj)"},
    )

    fig.add_hline(y=-np.log10(padj_threshold), line_dash="dash", line_color="gray")
    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top_genes = df[df["significance"] != "NS"].nsmallest(top_n_labels, "padj")
        if not top_genes.empty:
            fig.add_trace(
                go.Scatter(
                    x=top_genes["log2FoldChange"],
                    y=top_genes["-log10_padj"],
                    mode="text",
                    text=top_genes["gene"],
                    textposition="top center",
                    textfont=dict(size=9),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    n_up = int((df["significance"] == "Up").sum())
    n_down = int((df["significance"] == "Down").sum())
    fig.update_layout(title=f"Volcano Plot: LS vs Healthy ({n_up} up, {n_down} down)", showlegend=True)

    return fig


def create_clustered_heatmap(
    expression_df: pd.DataFrame,
    sample_conditions: Dict[str, str],
    de_results_df: pd.DataFrame,
    padj_threshold: float = PADJ_THRESHOLD,
    figsize: tuple = (10, 12),
) -> plt.Figure:
    """
    Clustered heatmap of the significant genes.

    Rows are z-scored per gene and clustered (average linkage); samples keep
    their condition grouping and carry a condition colour bar.

    Args:
        expression_df: genes × samples normalized log2 CPM
        sample_conditions: Dict[sample_name, condition]
        de_results_df: DE results with 'gene' and 'padj'
        padj_threshold: Significance threshold selecting genes

    Returns:
        matplotlib Figure

    Raises:
        InsufficientDataError: Fewer than two significant genes to cluster
    """
    if expression_df is None or expression_df.empty:
        raise ValueError("Cannot create heatmap: expression_df is empty or None.")

    missing_samples = [s for s in expression_df.columns if s not in sample_conditions]
    if missing_samples:
        raise ValueError(
            f"Cannot create heatmap: {len(missing_samples)} samples missing from sample_conditions: "
            f"{', '.join(map(str, missing_samples[:3]))}{'...' if len(missing_samples) > 3 else ''}"
        )

    de_results_df = ensure_gene_column(de_results_df)
    sig_genes = de_results_df.loc[de_results_df["padj"] < padj_threshold, "gene"]
    genes = [g for g in sig_genes if g in expression_df.index]

    sample_order = sorted(expression_df.columns, key=lambda s: (sample_conditions[s], s))
    data = expression_df.loc[genes, sample_order]
    data = data.sub(data.mean(axis=1), axis=0).div(data.std(axis=1), axis=0).dropna()

    if len(data) < 2:
        raise InsufficientDataError(
            f"Heatmap needs at least 2 significant genes, found {len(data)}.",
            details={"padj_threshold": padj_threshold},
        )

    conditions = [sample_conditions[s] for s in sample_order]
    color_map = _condition_color_map(conditions)
    col_colors = pd.Series([color_map[c] for c in conditions], index=sample_order, name="condition")

    g = sns.clustermap(
        data,
        row_cluster=True,
        col_cluster=False,
        method="average",
        metric="euclidean",
        col_colors=col_colors,
        cmap="RdBu_r",
        center=0,
        figsize=figsize,
        xticklabels=True,
        yticklabels=len(data) <= 60,
        cbar_kws={"label": "z-score"},
    )
    g.ax_heatmap.set_xlabel("Sample")
    g.ax_heatmap.set_ylabel(f"{len(data)} genes (padj < {padj_threshold})")
    for cond, color in color_map.items():
        g.ax_col_dendrogram.bar(0, 0, color=color, label=cond, linewidth=0)
    g.ax_col_dendrogram.legend(loc="center", ncol=len(color_map), frameon=False)
    g.figure.suptitle("Significant genes: LS vs Healthy", y=1.02)

    return g.figure


def _embedding_scatter(
    embedding: pd.DataFrame,
    x: str,
    y: str,
    sample_conditions: Dict[str, str],
    title: str,
    labels: Optional[Dict[str, str]] = None,
) -> go.Figure:
    df = embedding[[x, y]].copy()
    df["condition"] = [sample_conditions.get(s, "Unknown") for s in df.index]
    df["sample"] = df.index
    return px.scatter(
        df,
        x=x,
        y=y,
        color="condition",
        hover_name="sample",
        text="sample",
        color_discrete_map=_condition_color_map(df["condition"].tolist()),
        labels=labels or {},
    ).update_traces(textposition="top center").update_layout(title=title, showlegend=True)


def create_pca_plot(
    pca_result: PCAResult, sample_conditions: Dict[str, str], show_ellipses: bool = True,
) -> go.Figure:
    """
    PC1 vs PC2 scatter coloured by condition.

    Args:
        pca_result: Output of exploration.run_pca
        sample_conditions: Dict[sample_name, condition]
        show_ellipses: Draw 95% confidence ellipses for groups with ≥3 samples

    Returns:
        Plotly Figure object
    """
    if pca_result.embedding.shape[1] < 2:
        raise ValueError("Cannot create PCA plot: fewer than 2 principal components.")

    fig = _embedding_scatter(
        pca_result.embedding,
        "PC1",
        "PC2",
        sample_conditions,
        title="PCA of TMM-normalized log₂ CPM",
        labels={
            "PC1": f"PC1 ({pca_result.pc1_percent:.1f}%)",
            "PC2": f"PC2 ({pca_result.pc2_percent:.1f}%)",
        },
    )

    if show_ellipses:
        df = pca_result.embedding[["PC1", "PC2"]].copy()
        df["condition"] = [sample_conditions.get(s, "Unknown") for s in df.index]
        colors = _condition_color_map(df["condition"].tolist())
        for cond in sorted(df["condition"].unique()):
            group = df[df["condition"] == cond]
            if len(group) < 3:
                continue
            cov = np.cov(group["PC1"].values, group["PC2"].values)
            eigenvalues, eigenvectors = np.linalg.eigh(cov)
            # 95% confidence: chi2(df=2) = 5.991
            scale = np.sqrt(5.991)
            theta = np.linspace(0, 2 * np.pi, 100)
            circle = np.array([np.cos(theta), np.sin(theta)])
            transform = eigenvectors @ np.diag(np.sqrt(np.maximum(eigenvalues, 0)) * scale)
            points = (transform @ circle).T + np.array([group["PC1"].mean(), group["PC2"].mean()])
            fig.add_trace(
                go.Scatter(
                    x=points[:, 0],
                    y=points[:, 1],
                    mode="lines",
                    line=dict(color=colors[cond], dash="dash", width=1.5),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    return fig


def create_tsne_plot(tsne_result: TSNEResult, sample_conditions: Dict[str, str]) -> go.Figure:
    """t-SNE scatter coloured by condition."""
    return _embedding_scatter(
        tsne_result.embedding,
        "tSNE1",
        "tSNE2",
        sample_conditions,
        title=(
            f"t-SNE (perplexity {tsne_result.perplexity:g}, seed {tsne_result.random_state})"
        ),
    )


def create_go_barplot(go_table: pd.DataFrame, top_n: int = 10, title: str = "GO Biological Process") -> go.Figure:
    """
    Horizontal bar chart of the top GO terms.

    Bar length is the number of query genes in the term; colour is
    -log10 of the adjusted p-value.
    """
    if go_table is None or go_table.empty:
        return _empty_figure(title, "No enriched GO terms to display")

    df = go_table.nsmallest(top_n, "Adjusted P-value").copy()
    df["-log10_padj"] = -np.log10(df["Adjusted P-value"].astype(float).clip(lower=1e-300))
    df["term_display"] = df["Term"].astype(str).apply(lambda x: x[:60] + "..." if len(x) > 60 else x)
    df = df.sort_values("-log10_padj", ascending=True)

    fig = go.Figure(
        go.Bar(
            x=df["Count"],
            y=df["term_display"],
            orientation="h",
            marker=dict(
                color=df["-log10_padj"],
                colorscale="Viridis",
                showscale=True,
                colorbar=dict(title="-log₁₀(Adj. P)"),
            ),
            customdata=np.stack([df["Adjusted P-value"], df["q-value"]], axis=-1),
            hovertemplate=(
                "<b>%{y}</b><br>Genes: %{x}<br>"
                "padj: %{customdata[0]:.2e}<br>q: %{customdata[1]:.2e}<extra></extra>"
            ),
        )
    )
    fig.update_layout(
        title=title,
        xaxis_title="Gene count",
        yaxis_title="",
        height=max(400, len(df) * 30 + 100),
        margin=dict(l=300),
    )
    return fig


def create_gsea_barplot(gsea_table: pd.DataFrame, title: str = "GSEA: MSigDB Hallmark") -> go.Figure:
    """Ranked NES bar chart; positive NES (enriched in LS) in red, negative in blue."""
    if gsea_table is None or gsea_table.empty:
        return _empty_figure(title, "No significant pathways to display")

    df = gsea_table.sort_values("NES", ascending=True).copy()
    df["term_display"] = df["Term"].astype(str).str.replace("HALLMARK_", "", regex=False)

    fig = go.Figure(
        go.Bar(
            x=df["NES"],
            y=df["term_display"],
            orientation="h",
            marker_color=np.where(df["NES"] > 0, "firebrick", "steelblue"),
            customdata=df["Adjusted P-value"],
            hovertemplate="<b>%{y}</b><br>NES: %{x:.2f}<br>padj: %{customdata:.2e}<extra></extra>",
        )
    )
    fig.add_vline(x=0, line_color="black", line_width=1)
    fig.update_layout(
        title=title,
        xaxis_title="Normalized enrichment score (NES)",
        yaxis_title="",
        height=max(400, len(df) * 30 + 100),
        margin=dict(l=300),
    )
    return fig


def create_gsea_running_score_plot(
    ranking: pd.Series,
    running_score: np.ndarray,
    hits: List[int],
    term: str,
    nes: Optional[float] = None,
) -> go.Figure:
    """
    Classic GSEA enrichment plot for one pathway.

    Top panel: running enrichment score along the ranked list; middle: hit
    positions of pathway genes; bottom: the ranking metric (log2 fold change).
    """
    positions = np.arange(len(running_score))
    fig = make_subplots(
        rows=3, cols=1,
        shared_xaxes=True,
        row_heights=[0.6, 0.1, 0.3],
        vertical_spacing=0.02,
    )
    fig.add_trace(
        go.Scatter(x=positions, y=running_score, mode="lines", line=dict(color="green", width=2),
                   name="Running ES", hovertemplate="Rank %{x}<br>ES %{y:.3f}<extra></extra>"),
        row=1, col=1,
    )
    fig.add_hline(y=0, line_color="gray", line_width=1, row=1, col=1)
    peak = int(np.argmax(np.abs(running_score))) if len(running_score) else 0
    fig.add_vline(x=peak, line_dash="dash", line_color="red", row=1, col=1)

    fig.add_trace(
        go.Scatter(
            x=hits, y=np.zeros(len(hits)), mode="markers",
            marker=dict(symbol="line-ns-open", size=18, color="black"),
            name="Pathway genes", hoverinfo="skip",
        ),
        row=2, col=1,
    )

    metric = ranking.to_numpy()
    fig.add_trace(
        go.Scatter(x=np.arange(len(metric)), y=metric, mode="lines", fill="tozeroy",
                   line=dict(color="gray"), name="log₂FC", hoverinfo="skip"),
        row=3, col=1,
    )

    title = term.replace("HALLMARK_", "")
    if nes is not None:
        title += f" (NES {nes:.2f})"
    fig.update_yaxes(title_text="Enrichment score", row=1, col=1)
    fig.update_yaxes(showticklabels=False, row=2, col=1)
    fig.update_yaxes(title_text="log₂FC", row=3, col=1)
    fig.update_xaxes(title_text="Rank in ordered gene list", row=3, col=1)
    fig.update_layout(title=title, showlegend=False, height=600)
    return fig
