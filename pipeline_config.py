"""
Run configuration for the HC vs LS pipeline.

Values come from a YAML file (config/pipeline.yaml) and may be overridden
from the command line. Analysis thresholds that define the method itself
(imputation retention, CPM filter, significance, enrichment size bounds)
are module constants and are not configurable here.
"""

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional
from pathlib import Path
import logging
import yaml

from pathway_enrichment import (
    GO_LIBRARY,
    GO_SELECTION_POLICIES,
    GSEA_PERMUTATIONS,
    GSEA_SEED,
    HALLMARK_DBVER,
)
from exploration import TSNE_PERPLEXITY, TSNE_SEED
from sample_metadata import HEALTHY_PREFIX, HEALTHY_LABEL, DISEASE_LABEL
from schemas import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/pipeline.yaml"


@dataclass(frozen=True)
class PipelineConfig:
    """All user-facing run settings."""

    input_path: Optional[str] = None
    output_dir: str = "results"
    sample_sheet: Optional[str] = None

    healthy_prefix: str = HEALTHY_PREFIX
    healthy_label: str = HEALTHY_LABEL
    disease_label: str = DISEASE_LABEL

    deg_workbook: str = "HC_vs_LS_deg.xlsx"
    enrichment_workbook: str = "HC_vs_LS_enrichment.xlsx"
    report_name: str = "HC_vs_LS_report.html"
    figures_dir: str = "figures"
    write_figures: bool = True
    export_lfc_threshold: float = 0.0

    tsne_perplexity: float = TSNE_PERPLEXITY
    tsne_seed: int = TSNE_SEED

    run_enrichment: bool = True
    resolve_symbols: bool = True
    go_library: str = GO_LIBRARY
    go_gene_selection: str = "significant"
    hallmark_dbver: str = HALLMARK_DBVER
    gsea_permutations: int = GSEA_PERMUTATIONS
    gsea_seed: int = GSEA_SEED

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir)

    def validate(self) -> "PipelineConfig":
        """Raise ConfigError on inconsistent settings; return self."""
        if not self.healthy_prefix:
            raise ConfigError("healthy_prefix must be a non-empty string.")
        if self.healthy_label == self.disease_label:
            raise ConfigError(
                f"Condition labels must differ, both are '{self.healthy_label}'.",
                details={"healthy_label": self.healthy_label, "disease_label": self.disease_label},
            )
        if self.go_gene_selection not in GO_SELECTION_POLICIES:
            raise ConfigError(
                f"go_gene_selection must be one of {GO_SELECTION_POLICIES}, got '{self.go_gene_selection}'."
            )
        if self.export_lfc_threshold < 0:
            raise ConfigError(f"export_lfc_threshold must be ≥ 0, got {self.export_lfc_threshold}.")
        if self.gsea_permutations < 1:
            raise ConfigError(f"gsea_permutations must be positive, got {self.gsea_permutations}.")
        if self.tsne_perplexity <= 0:
            raise ConfigError(f"tsne_perplexity must be positive, got {self.tsne_perplexity}.")
        if not str(self.deg_workbook).endswith(".xlsx"):
            raise ConfigError(f"deg_workbook must be an .xlsx file name, got '{self.deg_workbook}'.")
        return self


def config_from_dict(values: Dict[str, Any], base: Optional[PipelineConfig] = None) -> PipelineConfig:
    """
    Apply a mapping of settings on top of `base` (defaults if None).

    Unknown keys raise ConfigError; None values are ignored so that unset
    command-line flags do not clobber file values.
    """
    base = base or PipelineConfig()
    known = {f.name for f in fields(PipelineConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(
            f"Unknown configuration keys: {', '.join(unknown)}",
            details={"unknown": unknown, "allowed": sorted(known)},
        )
    updates = {k: v for k, v in values.items() if v is not None}
    try:
        config = replace(base, **updates)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {str(e)}") from e
    return config.validate()


def load_config(
    config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None
) -> PipelineConfig:
    """
    Load configuration from YAML and apply overrides.

    Args:
        config_path: YAML file; None uses built-in defaults
        overrides: Settings taking precedence over the file (e.g. CLI flags)

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigError: Missing file, malformed YAML, unknown keys or bad values
    """
    config = PipelineConfig()
    if config_path is not None:
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            with open(config_file, "r") as f:
                values = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Malformed YAML in {config_path}: {str(e)}") from e
        if not isinstance(values, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping at top level.")
        config = config_from_dict(values, config)
        logger.info(f"Loaded configuration from {config_path}")

    if overrides:
        config = config_from_dict(overrides, config)
    return config.validate()
