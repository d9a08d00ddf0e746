"""
Export module for HC vs LS analysis results.

Writes the differential-expression workbook (All/Up/Down + Settings), the
enrichment workbook, figure files, and a standalone HTML report.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, List, Any, Union
from datetime import datetime
from os import PathLike
from pathlib import Path
import base64
import html
import io
import logging
import re
import sys
import pandas as pd
import plotly.graph_objects as go
import matplotlib.pyplot as plt

from de_analysis import DEPartition
from pathway_enrichment import GOEnrichmentResult, GSEAResult
from schemas import DE_TABLE_COLUMNS, GO_TABLE_COLUMNS, GSEA_TABLE_COLUMNS

logger = logging.getLogger(__name__)

FigureLike = Union[go.Figure, plt.Figure]


@dataclass
class ReportSummary:
    """Key/value facts shown at the top of the HTML report."""

    title: str
    sections: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class ExportEngine:
    """Excel, figure and HTML export for analysis results."""

    def export_deg_workbook(
        self,
        filepath: Union[str, PathLike],
        partition: DEPartition,
        settings: Optional[Dict[str, Any]] = None,
        sample_conditions: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        Write significant genes to a three-sheet workbook plus Settings.

        Sheets:
        - All: every gene with padj below the threshold
        - Up: subset with log2FoldChange > 0
        - Down: subset with log2FoldChange ≤ 0
        - Settings: thresholds, run parameters and sample conditions

        Args:
            filepath: Output Excel file path (.xlsx)
            partition: Output of de_analysis.partition_results
            settings: Extra run parameters for the Settings sheet
            sample_conditions: sample → condition mapping
        """
        with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
            for sheet, table in (("All", partition.all), ("Up", partition.up), ("Down", partition.down)):
                table[DE_TABLE_COLUMNS].to_excel(writer, sheet_name=sheet, index=False)

            settings = dict(settings or {})
            settings.setdefault("padj_threshold", partition.padj_threshold)
            settings.setdefault("lfc_threshold", partition.lfc_threshold)
            settings["n_all"] = len(partition.all)
            settings["n_up"] = len(partition.up)
            settings["n_down"] = len(partition.down)
            self._write_settings_sheet(writer, settings, sample_conditions or {})

        logger.info(
            f"Wrote {filepath}: All={len(partition.all)}, Up={len(partition.up)}, Down={len(partition.down)}"
        )

    def _write_settings_sheet(
        self,
        writer: pd.ExcelWriter,
        settings: Dict[str, Any],
        sample_conditions: Dict[str, str],
    ) -> None:
        """
        Write Settings sheet with analysis metadata.

        Key-value rows: analysis date, Python version, run parameters, then
        the sample → condition mapping.
        """
        settings_data = [
            ["Parameter", "Value"],
            ["Analysis Date", datetime.now().strftime("%Y-%m-%d %H:%M:%S")],
            [
                "Python Version",
                f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ],
        ]

        if settings:
            settings_data.append(["---", "---"])
            settings_data.append(["Run Parameters", ""])
            for key, value in settings.items():
                settings_data.append([key, str(value)])

        if sample_conditions:
            settings_data.append(["---", "---"])
            settings_data.append(["Sample Conditions", ""])
            for sample, condition in sorted(sample_conditions.items()):
                settings_data.append([sample, condition])

        settings_df = pd.DataFrame(settings_data)
        settings_df.to_excel(writer, sheet_name="Settings", index=False, header=False)

    def export_enrichment_workbook(
        self,
        filepath: Union[str, PathLike],
        go_result: Optional[GOEnrichmentResult],
        gsea_result: Optional[GSEAResult],
    ) -> None:
        """
        Write enrichment tables to GO_BP and GSEA_Hallmark sheets.

        GO_BP holds the significant terms; GSEA_Hallmark holds every tested
        pathway sorted by NES, with a GSEA_Significant sheet for the reported
        top pathways. A missing result produces an empty sheet with headers.
        """
        with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
            go_table = go_result.significant if go_result is not None else pd.DataFrame(columns=GO_TABLE_COLUMNS)
            go_table.to_excel(writer, sheet_name="GO_BP", index=False)

            if gsea_result is not None:
                gsea_result.results.to_excel(writer, sheet_name="GSEA_Hallmark", index=False)
                gsea_result.significant.to_excel(writer, sheet_name="GSEA_Significant", index=False)
            else:
                empty = pd.DataFrame(columns=GSEA_TABLE_COLUMNS)
                empty.to_excel(writer, sheet_name="GSEA_Hallmark", index=False)
                empty.to_excel(writer, sheet_name="GSEA_Significant", index=False)

        logger.info(f"Wrote enrichment workbook {filepath}")

    def export_figure(self, fig: FigureLike, filepath: Union[str, PathLike], dpi: int = 300) -> Path:
        """
        Export one figure.

        Plotly figures are written as standalone HTML; matplotlib figures as
        PNG at `dpi`. Returns the written path (suffix set by figure type).
        """
        filepath = Path(filepath)
        if isinstance(fig, go.Figure):
            filepath = filepath.with_suffix(".html")
            fig.write_html(str(filepath), include_plotlyjs="cdn")
        else:
            filepath = filepath.with_suffix(".png")
            fig.savefig(filepath, dpi=dpi, bbox_inches="tight")
        return filepath

    def write_figures(self, figures: Dict[str, FigureLike], out_dir: Union[str, PathLike]) -> Dict[str, Path]:
        """Write every figure to out_dir/<name>.{html,png}."""
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        written = {}
        for name, fig in figures.items():
            written[name] = self.export_figure(fig, out_dir / self.sanitize_file_name(name))
        logger.info(f"Wrote {len(written)} figures to {out_dir}")
        return written

    @staticmethod
    def sanitize_file_name(name: str) -> str:
        return re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip("_") or "figure"

    @staticmethod
    def _figure_html(fig: FigureLike, include_plotlyjs) -> str:
        if isinstance(fig, go.Figure):
            return fig.to_html(full_html=False, include_plotlyjs=include_plotlyjs)
        buf = io.BytesIO()
        fig.savefig(buf, format="png", dpi=150, bbox_inches="tight")
        encoded = base64.b64encode(buf.getvalue()).decode("ascii")
        return f'<img src="data:image/png;base64,{encoded}" style="max-width:100%;">'

    def write_html_report(
        self,
        filepath: Union[str, PathLike],
        figures: Dict[str, FigureLike],
        summary: ReportSummary,
    ) -> None:
        """
        Standalone HTML report with summary tables and every figure.

        Plotly figures stay interactive (plotly.js loaded once from CDN);
        matplotlib figures are embedded as base64 PNG.
        """
        parts = [
            "<!DOCTYPE html>",
            "<html><head><meta charset='utf-8'>",
            f"<title>{html.escape(summary.title)}</title>",
            "<style>body{font-family:sans-serif;margin:2em;} "
            "table{border-collapse:collapse;margin-bottom:1em;} "
            "td,th{border:1px solid #ccc;padding:4px 8px;text-align:left;} "
            ".warning{color:#b35900;}</style>",
            "</head><body>",
            f"<h1>{html.escape(summary.title)}</h1>",
            f"<p>Generated {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}</p>",
        ]

        for warning in summary.warnings:
            parts.append(f"<p class='warning'>⚠ {html.escape(warning)}</p>")

        for section, values in summary.sections.items():
            parts.append(f"<h2>{html.escape(section)}</h2><table>")
            for key, value in values.items():
                parts.append(
                    f"<tr><th>{html.escape(str(key))}</th><td>{html.escape(str(value))}</td></tr>"
                )
            parts.append("</table>")

        plotlyjs = "cdn"
        for name, fig in figures.items():
            parts.append(f"<h2>{html.escape(name.replace('_', ' ').title())}</h2>")
            parts.append(self._figure_html(fig, plotlyjs))
            if isinstance(fig, go.Figure):
                plotlyjs = False

        parts.append("</body></html>")
        Path(filepath).write_text("\n".join(parts), encoding="utf-8")
        logger.info(f"Wrote HTML report {filepath} ({len(figures)} figures)")
