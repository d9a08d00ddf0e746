"""End-to-end tests of the staged pipeline on the demo dataset."""
from dataclasses import FrozenInstanceError, replace
import logging
import pytest
import pandas as pd
import numpy as np
from conftest import HC_SAMPLES, LS_SAMPLES
from demo_data import DOWNREGULATED_GENES, UPREGULATED_GENES, demo_gene_names, write_demo_dataset
from expression_loader import write_expression_matrix
from pipeline import (
    STAGES,
    AnalysisContext,
    differential_stage,
    enrichment_stage,
    exploration_stage,
    load_stage,
    metadata_stage,
    normalization_stage,
    run_pipeline,
)
from pipeline_config import PipelineConfig
from run_analysis import main
from schemas import ConfigError, ExpressionValidationError, PipelineError


@pytest.fixture(scope="module")
def demo_config(tmp_path_factory):
    base = tmp_path_factory.mktemp("demo")
    input_path = base / "demo.csv.gz"
    write_demo_dataset(input_path)
    return PipelineConfig(
        input_path=str(input_path),
        output_dir=str(base / "results"),
        run_enrichment=False,
    )


@pytest.fixture(scope="module")
def demo_context(demo_config):
    return run_pipeline(demo_config)


def test_stage_order():
    assert [name for name, _ in STAGES] == [
        "load", "metadata", "normalization", "exploration",
        "differential", "report", "enrichment", "summary",
    ]


def test_demo_run_outputs_exist(demo_context):
    outputs = demo_context.outputs
    assert outputs["deg_workbook"].exists()
    assert outputs["report"].exists()
    assert "enrichment_workbook" not in outputs
    assert outputs["figure_volcano"].suffix == ".html"
    assert outputs["figure_heatmap"].suffix == ".png"
    assert all(path.exists() for path in outputs.values())


def test_demo_run_figures(demo_context):
    assert {"library_sizes", "normalization_comparison", "pca", "tsne", "volcano", "heatmap"} <= set(
        demo_context.figures
    )


def test_demo_run_finds_planted_genes(demo_context):
    significant = demo_context.partition.all.set_index("gene")
    planted_up = [g for g in UPREGULATED_GENES if g in significant.index]
    planted_down = [g for g in DOWNREGULATED_GENES if g in significant.index]
    assert len(planted_up) >= len(UPREGULATED_GENES) // 2
    assert len(planted_down) >= len(DOWNREGULATED_GENES) // 2
    assert (significant.loc[planted_up, "log2FoldChange"] > 0).all()
    assert (significant.loc[planted_down, "log2FoldChange"] < 0).all()


def test_demo_run_preprocessing(demo_context):
    assert demo_context.raw_matrix.shape == (600, 10)
    assert demo_gene_names()[-1] in demo_context.imputation.dropped_genes
    assert demo_context.sample_conditions["HC01"] == "Healthy"
    assert demo_context.sample_conditions["LS06"] == "LS"
    assert demo_context.container.n_genes <= 599


def test_workbook_matches_partition(demo_context):
    sheets = pd.read_excel(demo_context.outputs["deg_workbook"], sheet_name=None)
    assert len(sheets["All"]) == len(demo_context.partition.all)
    assert len(sheets["Up"]) + len(sheets["Down"]) == len(sheets["All"])
    assert (sheets["All"]["padj"] < 0.05).all()


def test_report_mentions_counts(demo_context):
    text = demo_context.outputs["report"].read_text(encoding="utf-8")
    assert "Differential expression" in text
    assert str(demo_context.de_summary["significant_genes"]) in text


def test_context_is_frozen(demo_context):
    with pytest.raises(FrozenInstanceError):
        demo_context.log_cpm = None


def test_enrichment_disabled_leaves_context(demo_context):
    assert demo_context.go_result is None
    assert demo_context.gsea_result is None


def test_missing_input_path(tmp_path):
    with pytest.raises(ConfigError):
        run_pipeline(PipelineConfig(output_dir=str(tmp_path)))


def test_input_file_not_found(tmp_path):
    config = PipelineConfig(input_path=str(tmp_path / "nope.csv.gz"), output_dir=str(tmp_path))
    with pytest.raises(ExpressionValidationError):
        run_pipeline(config)
    assert not (tmp_path / config.deg_workbook).exists()


def test_stage_before_inputs_fails(demo_config):
    with pytest.raises(PipelineError, match="missing"):
        normalization_stage(AnalysisContext(), demo_config)


def test_enrichment_stage_with_mocked_services(demo_config, mock_gseapy, tmp_path):
    filler = [g for g in demo_gene_names() if g.startswith("GENE")]
    mock_gseapy.get_library.return_value = {
        "interferon signaling (GO:0060337)": UPREGULATED_GENES[:12] + filler[:10],
        "epidermis development (GO:0008544)": DOWNREGULATED_GENES + filler[10:20],
        "filler process (GO:9999999)": filler[20:60],
    }
    mock_gseapy.Msigdb.return_value.get_gmt.return_value = {
        "HALLMARK_INTERFERON_GAMMA_RESPONSE": UPREGULATED_GENES + filler[:10],
        "HALLMARK_FATTY_ACID_METABOLISM": DOWNREGULATED_GENES + filler[10:20],
        "HALLMARK_EPITHELIAL_MESENCHYMAL_TRANSITION": filler[20:60],
    }
    config = replace(demo_config, output_dir=str(tmp_path), run_enrichment=True)

    context = AnalysisContext()
    for stage in (load_stage, metadata_stage, normalization_stage, exploration_stage, differential_stage):
        context = stage(context, config)
    context = enrichment_stage(context, config)

    assert context.outputs["enrichment_workbook"].exists()
    assert {"go_bp", "gsea_hallmark", "gsea_running_score"} <= set(context.figures)
    assert context.gsea_result.top_pathway == "HALLMARK_INTERFERON_GAMMA_RESPONSE"

    _, kwargs = mock_gseapy.enrich.call_args
    assert set(kwargs["gene_list"]) <= set(context.partition.all["gene"])
    _, kwargs = mock_gseapy.prerank.call_args
    assert kwargs["seed"] == 42
    assert kwargs["rnk"].is_monotonic_decreasing


def test_cli_demo_run(tmp_path, caplog):
    caplog.set_level(logging.INFO)
    status = main(["--demo", "--skip-enrichment", "--output-dir", str(tmp_path)])
    assert status == 0
    assert (tmp_path / "demo_HC_LS_FPKM.csv.gz").exists()
    assert (tmp_path / "HC_vs_LS_deg.xlsx").exists()
    assert (tmp_path / "HC_vs_LS_report.html").exists()
    assert "HC vs LS Demo Dataset" in caplog.text


def test_cli_missing_input(tmp_path):
    status = main(["--input", str(tmp_path / "nope.csv.gz"), "--output-dir", str(tmp_path), "--skip-enrichment"])
    assert status == 1


def test_cli_unknown_config_key(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("not_a_setting: 1\n")
    assert main(["--config", str(path)]) == 1


def _null_matrix(n_genes=200, seed=3):
    """Per-gene HC and LS values mirror each other, so no gene differs between groups."""
    rng = np.random.RandomState(seed)
    base = rng.lognormal(mean=3.0, sigma=1.0, size=n_genes)
    f, g, h = (rng.lognormal(0.0, 0.3, size=n_genes) for _ in range(3))
    hc = np.column_stack([base / f, base * f, base / g, base * g])
    ls = np.column_stack([base / f, base * f, base / g, base * g, base / h, base * h])
    return pd.DataFrame(
        np.hstack([hc, ls]),
        index=pd.Index([f"GENE{i:03d}" for i in range(n_genes)], name="gene"),
        columns=HC_SAMPLES + LS_SAMPLES,
    )


def test_run_without_significant_genes_still_reports(mock_gseapy, tmp_path):
    input_path = tmp_path / "null.csv.gz"
    write_expression_matrix(_null_matrix(), input_path)
    config = PipelineConfig(
        input_path=str(input_path), output_dir=str(tmp_path / "results"), resolve_symbols=False
    )

    context = run_pipeline(config)

    assert context.partition.all.empty
    assert context.go_result is None
    assert any(w.startswith("GO enrichment skipped") for w in context.warnings)
    mock_gseapy.enrich.assert_not_called()
    assert context.gsea_result is not None
    mock_gseapy.prerank.assert_called_once()
    assert "heatmap" not in context.figures
    assert context.outputs["enrichment_workbook"].exists()
    assert context.outputs["report"].exists()
    sheets = pd.read_excel(context.outputs["enrichment_workbook"], sheet_name=None)
    assert sheets["GO_BP"].empty
    assert len(sheets["GSEA_Hallmark"]) == 3
