"""
Command-line entry point for the HC vs LS RNA-seq pipeline.

    rnaseq-hc-ls --config config/pipeline.yaml --input FPKM.csv.gz --output-dir results
    rnaseq-hc-ls --demo --skip-enrichment
"""

from dataclasses import replace
from pathlib import Path
from typing import List, Optional
import argparse
import logging
import sys

from demo_data import get_demo_description, write_demo_dataset
from pipeline import run_pipeline
from pipeline_config import load_config
from schemas import PipelineError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Healthy control vs localized scleroderma RNA-seq analysis"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file (default: built-in settings)",
    )
    parser.add_argument("--input", type=str, default=None, help="Gzip CSV expression matrix (genes × samples)")
    parser.add_argument("--output-dir", type=str, default=None, help="Directory for workbooks, figures and report")
    parser.add_argument(
        "--sample-sheet",
        type=str,
        default=None,
        help="CSV/TSV with sample and condition columns (default: sample-name prefix rule)",
    )
    parser.add_argument("--skip-enrichment", action="store_true", help="Skip GO and GSEA enrichment")
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Generate the synthetic demo matrix in the output directory and analyse it",
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the pipeline; returns the process exit status."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    overrides = {
        "input_path": args.input,
        "output_dir": args.output_dir,
        "sample_sheet": args.sample_sheet,
    }
    if args.skip_enrichment:
        overrides["run_enrichment"] = False

    try:
        config = load_config(args.config, overrides)
        if args.demo:
            config.output_path.mkdir(parents=True, exist_ok=True)
            demo_path = config.output_path / "demo_HC_LS_FPKM.csv.gz"
            write_demo_dataset(demo_path)
            logger.info(f"Demo matrix written to {demo_path}\n{get_demo_description()}")
            config = replace(config, input_path=str(demo_path), sample_sheet=None)
        context = run_pipeline(config)
    except PipelineError as e:
        logger.error(f"Analysis failed: {e.message}")
        if e.details:
            logger.error(f"Details: {e.details}")
        return 1

    for name, path in sorted(context.outputs.items()):
        logger.info(f"{name}: {Path(path)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
