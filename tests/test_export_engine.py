"""Tests for workbook, figure and HTML report export."""
import pytest
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import matplotlib.pyplot as plt
from de_analysis import partition_results
from export_engine import ExportEngine, ReportSummary
from pathway_enrichment import PathwayEnrichment
from schemas import DE_TABLE_COLUMNS, GO_TABLE_COLUMNS, GSEA_TABLE_COLUMNS


@pytest.fixture
def engine():
    return ExportEngine()


@pytest.fixture
def partition(sample_de_results_df):
    return partition_results(sample_de_results_df)


@pytest.fixture
def enrichment_results(mock_gseapy, sample_de_results_df):
    enrichment = PathwayEnrichment()
    background = sample_de_results_df["gene"].tolist()
    genes, note = enrichment.select_go_genes(sample_de_results_df)
    go_result = enrichment.run_go_enrichment(genes, enrichment.load_go_library(), background, note)
    ranking = enrichment.build_ranking(sample_de_results_df)
    gsea_result = enrichment.run_gsea(ranking, enrichment.load_hallmark_gene_sets(), permutations=10)
    return go_result, gsea_result


def test_sanitize_file_name(engine):
    assert engine.sanitize_file_name("go bp / top") == "go_bp_top"
    assert engine.sanitize_file_name("///") == "figure"


def test_deg_workbook_sheets(engine, partition, sample_conditions, tmp_path):
    path = tmp_path / "deg.xlsx"
    engine.export_deg_workbook(path, partition, {"method": "voom"}, sample_conditions)

    sheets = pd.read_excel(path, sheet_name=None)
    assert list(sheets) == ["All", "Up", "Down", "Settings"]
    assert len(sheets["All"]) == 20
    assert len(sheets["Up"]) == 12
    assert len(sheets["Down"]) == 8
    assert list(sheets["All"].columns) == DE_TABLE_COLUMNS
    assert (sheets["Up"]["log2FoldChange"] > 0).all()
    assert (sheets["Down"]["log2FoldChange"] <= 0).all()
    assert set(sheets["Up"]["gene"]) | set(sheets["Down"]["gene"]) == set(sheets["All"]["gene"])


def test_deg_workbook_settings(engine, partition, sample_conditions, tmp_path):
    path = tmp_path / "deg.xlsx"
    engine.export_deg_workbook(path, partition, {"method": "voom"}, sample_conditions)

    settings = pd.read_excel(path, sheet_name="Settings", header=None)
    values = dict(zip(settings[0].astype(str), settings[1].astype(str)))
    assert values["padj_threshold"] == "0.05"
    assert values["n_up"] == "12"
    assert values["method"] == "voom"
    assert values["HC01"] == "Healthy"
    assert values["LS06"] == "LS"


def test_deg_workbook_empty_partition(engine, sample_de_results_df, tmp_path):
    partition = partition_results(sample_de_results_df.assign(padj=0.9))
    path = tmp_path / "empty.xlsx"
    engine.export_deg_workbook(path, partition)
    sheets = pd.read_excel(path, sheet_name=None)
    assert sheets["All"].empty
    assert list(sheets["Down"].columns) == DE_TABLE_COLUMNS


def test_enrichment_workbook(engine, enrichment_results, tmp_path):
    go_result, gsea_result = enrichment_results
    path = tmp_path / "enrichment.xlsx"
    engine.export_enrichment_workbook(path, go_result, gsea_result)

    sheets = pd.read_excel(path, sheet_name=None)
    assert list(sheets) == ["GO_BP", "GSEA_Hallmark", "GSEA_Significant"]
    assert len(sheets["GO_BP"]) == 2
    assert len(sheets["GSEA_Hallmark"]) == 3
    assert list(sheets["GSEA_Hallmark"]["NES"]) == sorted(sheets["GSEA_Hallmark"]["NES"], reverse=True)
    assert len(sheets["GSEA_Significant"]) == 2


def test_enrichment_workbook_without_results(engine, tmp_path):
    path = tmp_path / "enrichment.xlsx"
    engine.export_enrichment_workbook(path, None, None)
    sheets = pd.read_excel(path, sheet_name=None)
    assert list(sheets["GO_BP"].columns) == GO_TABLE_COLUMNS
    assert list(sheets["GSEA_Hallmark"].columns) == GSEA_TABLE_COLUMNS
    assert sheets["GSEA_Hallmark"].empty


def _figures():
    plotly_fig = go.Figure(go.Scatter(x=[1, 2], y=[3, 4]))
    mpl_fig, ax = plt.subplots()
    ax.plot([0, 1], [1, 0])
    return {"volcano": plotly_fig, "heat map": mpl_fig, "pca": go.Figure(go.Bar(x=["a"], y=[1]))}


def test_write_figures_suffix_by_type(engine, tmp_path):
    figures = _figures()
    written = engine.write_figures(figures, tmp_path / "figures")
    assert written["volcano"].name == "volcano.html"
    assert written["heat map"].name == "heat_map.png"
    assert all(p.exists() for p in written.values())
    plt.close(figures["heat map"])


def test_html_report(engine, tmp_path):
    figures = _figures()
    summary = ReportSummary(
        title="LS vs Healthy RNA-seq analysis",
        sections={"Differential expression": {"Genes tested": 200, "Significant": 20}},
        warnings=["Heatmap <skipped>"],
    )
    path = tmp_path / "report.html"
    engine.write_html_report(path, figures, summary)
    plt.close(figures["heat map"])

    text = path.read_text(encoding="utf-8")
    assert "<h1>LS vs Healthy RNA-seq analysis</h1>" in text
    assert "<th>Genes tested</th><td>200</td>" in text
    assert "Heatmap &lt;skipped&gt;" in text
    assert 'src="data:image/png;base64,' in text
    # plotly.js is loaded once for all interactive figures
    assert text.count("cdn.plot.ly") == 1
