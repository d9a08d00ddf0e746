"""
HC vs LS analysis pipeline.

Each stage takes the current AnalysisContext and the run configuration and
returns a new context with its own fields filled in; contexts are never
mutated. Stages run strictly in order and any failure halts the run.

    load → metadata → normalization → exploration → differential
         → report → enrichment → summary
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple
from pathlib import Path
import logging
import numpy as np
import pandas as pd

from de_analysis import (
    DEAnalysisEngine,
    DEPartition,
    DEResult,
    PADJ_THRESHOLD,
    compute_de_summary,
    partition_results,
)
from exploration import PCAResult, TSNEResult, run_pca, run_tsne
from export_engine import ExportEngine, ReportSummary
from expression_loader import ImputationResult, impute_missing_values, load_expression_matrix
from gene_annotation import resolve_gene_symbols
from normalization import (
    MIN_CPM,
    MIN_SAMPLES,
    CountContainer,
    filter_low_expression,
    make_count_container,
    normalize,
    normalized_log_cpm,
)
from pathway_enrichment import GOEnrichmentResult, GSEAResult, PathwayEnrichment
from pipeline_config import PipelineConfig
from qc_plots import create_library_size_barplot, create_normalization_comparison_plot
from sample_metadata import build_design_matrix, build_sample_metadata, sample_conditions_dict
from schemas import ConfigError, InsufficientDataError, PipelineError
from visualizations import (
    create_clustered_heatmap,
    create_go_barplot,
    create_gsea_barplot,
    create_gsea_running_score_plot,
    create_pca_plot,
    create_tsne_plot,
    create_volcano_plot,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisContext:
    """Immutable state handed from stage to stage."""

    raw_matrix: Optional[pd.DataFrame] = None
    imputation: Optional[ImputationResult] = None
    metadata: Optional[pd.DataFrame] = None
    design: Optional[pd.DataFrame] = None
    contrast: Optional[np.ndarray] = None
    container: Optional[CountContainer] = None
    log_cpm: Optional[pd.DataFrame] = None
    pca: Optional[PCAResult] = None
    tsne: Optional[TSNEResult] = None
    de_result: Optional[DEResult] = None
    partition: Optional[DEPartition] = None
    de_summary: Optional[Dict[str, Any]] = None
    go_result: Optional[GOEnrichmentResult] = None
    gsea_result: Optional[GSEAResult] = None
    figures: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Path] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    @property
    def sample_conditions(self) -> Dict[str, str]:
        return sample_conditions_dict(self.metadata) if self.metadata is not None else {}

    def with_figures(self, **figures) -> Dict[str, Any]:
        return {**self.figures, **figures}

    def with_outputs(self, **outputs) -> Dict[str, Path]:
        return {**self.outputs, **outputs}


def _require(context: AnalysisContext, *names: str) -> None:
    missing = [n for n in names if getattr(context, n) is None]
    if missing:
        raise PipelineError(
            f"Stage called before its inputs were produced: missing {', '.join(missing)}",
            details={"missing": missing},
        )


def load_stage(context: AnalysisContext, config: PipelineConfig) -> AnalysisContext:
    """Read the expression matrix and impute missing values."""
    if not config.input_path:
        raise ConfigError("No input expression file configured (input_path / --input).")
    raw = load_expression_matrix(config.input_path)
    imputation = impute_missing_values(raw)
    return replace(context, raw_matrix=raw, imputation=imputation)


def metadata_stage(context: AnalysisContext, config: PipelineConfig) -> AnalysisContext:
    """Assign conditions to samples and build the design matrix."""
    _require(context, "imputation")
    metadata = build_sample_metadata(
        context.imputation.matrix.columns.tolist(),
        sample_sheet=config.sample_sheet,
        prefix=config.healthy_prefix,
        healthy_label=config.healthy_label,
        disease_label=config.disease_label,
    )
    design, contrast = build_design_matrix(metadata, config.healthy_label, config.disease_label)
    return replace(context, metadata=metadata, design=design, contrast=contrast)


def normalization_stage(context: AnalysisContext, config: PipelineConfig) -> AnalysisContext:
    """Low-expression filter, TMM factors and normalized log2 CPM."""
    _require(context, "imputation", "metadata")
    container = make_count_container(context.imputation.matrix, context.metadata["condition"].astype(str))
    container = filter_low_expression(container, MIN_CPM, MIN_SAMPLES)
    container = normalize(container)
    log_cpm = normalized_log_cpm(container)

    conditions = context.sample_conditions
    figures = context.with_figures(
        library_sizes=create_library_size_barplot(container, conditions),
        normalization_comparison=create_normalization_comparison_plot(container, conditions),
    )
    return replace(context, container=container, log_cpm=log_cpm, figures=figures)


def exploration_stage(context: AnalysisContext, config: PipelineConfig) -> AnalysisContext:
    """PCA and t-SNE embeddings with their scatter plots."""
    _require(context, "log_cpm", "metadata")
    pca = run_pca(context.log_cpm)
    tsne = run_tsne(context.log_cpm, perplexity=config.tsne_perplexity, random_state=config.tsne_seed)
    conditions = context.sample_conditions
    figures = context.with_figures(
        pca=create_pca_plot(pca, conditions),
        tsne=create_tsne_plot(tsne, conditions),
    )
    return replace(context, pca=pca, tsne=tsne, figures=figures)


def differential_stage(context: AnalysisContext, config: PipelineConfig) -> AnalysisContext:
    """voom / linear model / contrast / empirical Bayes, then the significant split."""
    _require(context, "container", "design", "contrast")
    engine = DEAnalysisEngine(config.healthy_label, config.disease_label)
    de_result = engine.run(context.container, context.design, context.contrast)
    partition = partition_results(de_result.results_df, PADJ_THRESHOLD, config.export_lfc_threshold)
    summary = compute_de_summary(partition, len(de_result.results_df))
    logger.info(
        f"Significant genes (padj < {PADJ_THRESHOLD}): {len(partition.all)} "
        f"({len(partition.up)} up, {len(partition.down)} down)"
    )
    return replace(
        context,
        de_result=de_result,
        partition=partition,
        de_summary=summary,
        warnings=context.warnings + tuple(de_result.warnings),
    )


def report_stage(context: AnalysisContext, config: PipelineConfig) -> AnalysisContext:
    """DEG workbook, volcano plot and clustered heatmap."""
    _require(context, "de_result", "partition", "log_cpm")
    out_dir = config.output_path
    out_dir.mkdir(parents=True, exist_ok=True)
    engine = ExportEngine()

    workbook = out_dir / config.deg_workbook
    settings = {
        "comparison": f"{config.disease_label} vs {config.healthy_label}",
        "genes_tested": len(context.de_result.results_df),
        "cpm_filter": f"CPM > {MIN_CPM} in ≥{MIN_SAMPLES} samples",
        "normalization": "TMM",
        "method": "limma-voom (lmFit, contrasts.fit, eBayes)",
        "padj_method": "Benjamini-Hochberg",
        "df_prior": round(context.de_result.df_prior, 4),
        "s2_prior": round(context.de_result.s2_prior, 6),
    }
    engine.export_deg_workbook(workbook, context.partition, settings, context.sample_conditions)

    figures = {"volcano": create_volcano_plot(context.de_result.results_df)}
    warnings = list(context.warnings)
    if len(context.partition.all) >= 2:
        figures["heatmap"] = create_clustered_heatmap(
            context.log_cpm, context.sample_conditions, context.partition.all
        )
    else:
        warnings.append(f"Heatmap skipped: {len(context.partition.all)} significant gene(s)")
        logger.warning(warnings[-1])

    return replace(
        context,
        figures=context.with_figures(**figures),
        outputs=context.with_outputs(deg_workbook=workbook),
        warnings=tuple(warnings),
    )


def _symbol_table(results_df: pd.DataFrame, resolve: bool) -> pd.DataFrame:
    if not resolve:
        return results_df
    mapping = resolve_gene_symbols(results_df["gene"].astype(str).tolist())
    return results_df.assign(gene=results_df["gene"].astype(str).map(mapping))


def enrichment_stage(context: AnalysisContext, config: PipelineConfig) -> AnalysisContext:
    """GO BP over-representation and hallmark GSEA on the tested genes."""
    _require(context, "de_result")
    if not config.run_enrichment:
        logger.info("Enrichment disabled; skipping GO and GSEA")
        return context

    enrichment = PathwayEnrichment()
    table = _symbol_table(context.de_result.results_df, config.resolve_symbols)
    background = table["gene"].astype(str).unique().tolist()
    warnings = list(context.warnings)

    go_result = None
    try:
        genes, note = enrichment.select_go_genes(table, policy=config.go_gene_selection)
    except InsufficientDataError as e:
        warnings.append(f"GO enrichment skipped: {e.message}")
        logger.warning(warnings[-1])
    else:
        go_library = enrichment.load_go_library(config.go_library)
        go_result = enrichment.run_go_enrichment(genes, go_library, background, selection_note=note)

    ranking = enrichment.build_ranking(table)
    hallmark = enrichment.load_hallmark_gene_sets(config.hallmark_dbver)
    gsea_result = enrichment.run_gsea(
        ranking, hallmark, permutations=config.gsea_permutations, seed=config.gsea_seed
    )

    figures = {
        "go_bp": create_go_barplot(go_result.significant if go_result is not None else None),
        "gsea_hallmark": create_gsea_barplot(gsea_result.significant),
    }
    top = gsea_result.top_pathway
    if top is not None and top in gsea_result.running_scores:
        scores, hits = gsea_result.running_scores[top]
        nes = float(gsea_result.results.set_index("Term").loc[top, "NES"])
        figures["gsea_running_score"] = create_gsea_running_score_plot(ranking, scores, hits, top, nes)
    else:
        warnings.append("No running enrichment score available for the top pathway")
        logger.warning(warnings[-1])

    out_dir = config.output_path
    out_dir.mkdir(parents=True, exist_ok=True)
    workbook = out_dir / config.enrichment_workbook
    ExportEngine().export_enrichment_workbook(workbook, go_result, gsea_result)

    return replace(
        context,
        go_result=go_result,
        gsea_result=gsea_result,
        figures=context.with_figures(**figures),
        outputs=context.with_outputs(enrichment_workbook=workbook),
        warnings=tuple(warnings),
    )


def _report_summary(context: AnalysisContext, config: PipelineConfig) -> ReportSummary:
    counts = context.metadata["condition"].value_counts()
    sections = {
        "Samples": {
            label: int(counts.get(label, 0)) for label in (config.healthy_label, config.disease_label)
        },
        "Preprocessing": {
            "Genes loaded": context.raw_matrix.shape[0],
            "Values imputed": context.imputation.n_imputed,
            "Genes dropped (≤50% observed)": len(context.imputation.dropped_genes),
            "Genes after CPM filter": context.container.n_genes,
        },
        "Differential expression": {
            "Genes tested": context.de_summary["total_genes"],
            f"Significant (padj < {PADJ_THRESHOLD})": context.de_summary["significant_genes"],
            "Up in LS": context.de_summary["upregulated"],
            "Down in LS": context.de_summary["downregulated"],
        },
    }
    if context.pca is not None:
        sections["Exploration"] = {
            "PC1 variance (%)": round(context.pca.pc1_percent, 1),
            "PC2 variance (%)": round(context.pca.pc2_percent, 1),
            "t-SNE perplexity": context.tsne.perplexity if context.tsne is not None else "n/a",
        }
    if context.go_result is not None:
        sections["GO Biological Process"] = {
            "Query genes": context.go_result.selection_note,
            "Background genes": context.go_result.background_size,
            "Terms tested": len(context.go_result.results),
            "Significant terms": len(context.go_result.significant),
        }
    if context.gsea_result is not None:
        sections["GSEA Hallmark"] = {
            "Pathways tested": len(context.gsea_result.results),
            "Significant pathways reported": len(context.gsea_result.significant),
            "Permutations": context.gsea_result.permutations,
            "Seed": context.gsea_result.seed,
        }
    return ReportSummary(
        title=f"{config.disease_label} vs {config.healthy_label} RNA-seq analysis",
        sections=sections,
        warnings=list(context.warnings),
    )


def summary_stage(context: AnalysisContext, config: PipelineConfig) -> AnalysisContext:
    """Write figure files and the HTML report."""
    _require(context, "de_summary", "metadata", "container")
    engine = ExportEngine()
    out_dir = config.output_path
    outputs = {}
    if config.write_figures:
        written = engine.write_figures(context.figures, out_dir / config.figures_dir)
        outputs.update({f"figure_{name}": path for name, path in written.items()})

    report = out_dir / config.report_name
    engine.write_html_report(report, context.figures, _report_summary(context, config))
    outputs["report"] = report
    return replace(context, outputs=context.with_outputs(**outputs))


STAGES: List[Tuple[str, Callable[[AnalysisContext, PipelineConfig], AnalysisContext]]] = [
    ("load", load_stage),
    ("metadata", metadata_stage),
    ("normalization", normalization_stage),
    ("exploration", exploration_stage),
    ("differential", differential_stage),
    ("report", report_stage),
    ("enrichment", enrichment_stage),
    ("summary", summary_stage),
]


def run_pipeline(config: PipelineConfig) -> AnalysisContext:
    """
    Run every stage in order.

    Returns:
        Final AnalysisContext

    Raises:
        PipelineError: From the first failing stage; nothing later runs
    """
    context = AnalysisContext()
    for name, stage in STAGES:
        logger.info(f"Stage '{name}' started")
        try:
            context = stage(context, config)
        except PipelineError:
            logger.error(f"Stage '{name}' failed", exc_info=True)
            raise

    logger.info(
        f"Pipeline finished: {context.de_summary['significant_genes']} significant genes; "
        f"outputs in {config.output_path}"
    )
    for warning in context.warnings:
        logger.warning(f"Run warning: {warning}")
    return context
