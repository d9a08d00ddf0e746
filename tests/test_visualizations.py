"""Tests for report figures."""
import pytest
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import matplotlib.pyplot as plt
from exploration import run_pca, run_tsne
from normalization import normalized_log_cpm
from schemas import InsufficientDataError
from visualizations import (
    VOLCANO_LFC_CUTOFF,
    create_clustered_heatmap,
    create_go_barplot,
    create_gsea_barplot,
    create_gsea_running_score_plot,
    create_pca_plot,
    create_tsne_plot,
    create_volcano_plot,
)


@pytest.fixture
def log_cpm(normalized_container):
    return normalized_log_cpm(normalized_container)


@pytest.fixture
def planted_de_table(log_cpm):
    genes = log_cpm.index.tolist()
    padj = np.full(len(genes), 0.5)
    padj[:20] = 0.001
    return pd.DataFrame(
        {
            "gene": genes,
            "log2FoldChange": np.r_[np.full(10, 2.5), np.full(10, -2.5), np.zeros(len(genes) - 20)],
            "padj": padj,
        }
    )


def test_volcano_cutoff_lines(sample_de_results_df):
    fig = create_volcano_plot(sample_de_results_df)
    assert isinstance(fig, go.Figure)
    shapes = fig.layout.shapes
    assert len(shapes) == 3
    vertical = sorted(s.x0 for s in shapes if s.x0 == s.x1)
    assert vertical == [-VOLCANO_LFC_CUTOFF, VOLCANO_LFC_CUTOFF]


def test_volcano_classification():
    df = pd.DataFrame(
        {
            "gene": ["up", "down", "small", "ns"],
            "log2FoldChange": [2.0, -2.0, 1.0, 3.0],
            "padj": [0.01, 0.01, 0.01, 0.5],
        }
    )
    fig = create_volcano_plot(df, top_n_labels=0)
    groups = {trace.name: len(trace.x) for trace in fig.data}
    assert groups == {"Up": 1, "Down": 1, "NS": 2}


def test_volcano_empty_raises():
    with pytest.raises(ValueError):
        create_volcano_plot(pd.DataFrame())


def test_volcano_missing_columns():
    with pytest.raises(ValueError, match="missing required columns"):
        create_volcano_plot(pd.DataFrame({"gene": ["a"], "padj": [0.1]}))


def test_heatmap_returns_matplotlib_figure(log_cpm, sample_conditions, planted_de_table):
    fig = create_clustered_heatmap(log_cpm, sample_conditions, planted_de_table)
    assert isinstance(fig, plt.Figure)
    plt.close(fig)


def test_heatmap_needs_two_genes(log_cpm, sample_conditions, planted_de_table):
    table = planted_de_table.assign(padj=0.5)
    table.loc[0, "padj"] = 0.001
    with pytest.raises(InsufficientDataError):
        create_clustered_heatmap(log_cpm, sample_conditions, table)


def test_heatmap_unknown_sample(log_cpm, planted_de_table):
    with pytest.raises(ValueError, match="missing from sample_conditions"):
        create_clustered_heatmap(log_cpm, {"HC01": "Healthy"}, planted_de_table)


def test_pca_plot(log_cpm, sample_conditions):
    fig = create_pca_plot(run_pca(log_cpm), sample_conditions)
    assert "PC1 (" in fig.layout.xaxis.title.text
    # two condition scatter traces plus an ellipse per group
    assert len(fig.data) == 4


def test_tsne_plot(log_cpm, sample_conditions):
    fig = create_tsne_plot(run_tsne(log_cpm), sample_conditions)
    assert "perplexity" in fig.layout.title.text
    assert sum(len(t.x) for t in fig.data) == 10


def test_go_barplot_empty():
    fig = create_go_barplot(pd.DataFrame())
    assert len(fig.data) == 0
    assert fig.layout.annotations[0].text.startswith("No enriched")


def test_go_barplot_top_terms():
    table = pd.DataFrame(
        {
            "Term": [f"term {i}" for i in range(15)],
            "Overlap": ["5/50"] * 15,
            "Count": [5] * 15,
            "P-value": np.linspace(1e-6, 1e-3, 15),
            "Adjusted P-value": np.linspace(1e-5, 1e-2, 15),
            "q-value": np.linspace(1e-5, 1e-2, 15),
            "Genes": ["A;B"] * 15,
        }
    )
    fig = create_go_barplot(table, top_n=10)
    assert len(fig.data[0].y) == 10


def test_gsea_barplot_colors():
    table = pd.DataFrame(
        {
            "Term": ["HALLMARK_A", "HALLMARK_B"],
            "ES": [0.5, -0.5],
            "NES": [2.0, -1.5],
            "P-value": [0.001, 0.002],
            "Adjusted P-value": [0.002, 0.002],
            "FDR q-value": [0.01, 0.01],
            "Genes": ["x", "y"],
        }
    )
    fig = create_gsea_barplot(table)
    assert list(fig.data[0].y) == ["B", "A"]
    assert list(fig.data[0].marker.color) == ["steelblue", "firebrick"]


def test_running_score_plot():
    ranking = pd.Series(np.linspace(3, -3, 50), index=[f"g{i}" for i in range(50)])
    scores = np.concatenate([np.linspace(0, 0.7, 25), np.linspace(0.7, 0, 25)])
    fig = create_gsea_running_score_plot(ranking, scores, [1, 4, 8], "HALLMARK_TEST", nes=1.8)
    assert len(fig.data) == 3
    assert "TEST" in fig.layout.title.text
