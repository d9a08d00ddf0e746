"""
Record schemas and error types shared by the HC vs LS pipeline stages.

Each intermediate table (expression matrix, sample metadata, DE table,
enrichment tables) has an explicit column contract checked before a stage
consumes it.
"""

from typing import Any, Dict, List, Optional, Sequence
import pandas as pd
import numpy as np


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


class ExpressionValidationError(PipelineError):
    """Raised when the input expression matrix is unreadable or malformed."""


class SampleMetadataError(PipelineError):
    """Raised when samples cannot be mapped to exactly one condition."""


class SchemaValidationError(PipelineError):
    """Raised when an intermediate table violates its column contract."""


class InsufficientDataError(PipelineError):
    """Raised when a stage receives too little data to run its test."""


class EnrichmentError(PipelineError):
    """Raised when reference gene sets cannot be fetched or enrichment fails."""


class ConfigError(PipelineError):
    """Raised for invalid pipeline configuration."""


DE_TABLE_COLUMNS = ["gene", "log2FoldChange", "AveExpr", "t", "pvalue", "padj"]
GO_TABLE_COLUMNS = [
    "Term",
    "Overlap",
    "Count",
    "P-value",
    "Adjusted P-value",
    "q-value",
    "Genes",
]
GSEA_TABLE_COLUMNS = [
    "Term",
    "ES",
    "NES",
    "P-value",
    "Adjusted P-value",
    "FDR q-value",
    "Genes",
]


def _missing_columns(df: pd.DataFrame, required: Sequence[str]) -> List[str]:
    return [col for col in required if col not in df.columns]


def validate_expression_matrix(matrix: pd.DataFrame, allow_missing: bool = False) -> None:
    """
    Validate a genes × samples expression matrix.

    Args:
        matrix: DataFrame indexed by gene id with one float column per sample
        allow_missing: Accept NaN entries (only before imputation)

    Raises:
        SchemaValidationError: If the matrix breaks the contract
    """
    if matrix is None or matrix.empty:
        raise SchemaValidationError("Expression matrix is empty.")

    if matrix.index.has_duplicates:
        dupes = matrix.index[matrix.index.duplicated()].unique().tolist()
        raise SchemaValidationError(
            f"Expression matrix has {len(dupes)} duplicated gene identifiers: "
            f"{', '.join(map(str, dupes[:5]))}{'...' if len(dupes) > 5 else ''}",
            details={"duplicated_genes": dupes},
        )

    if matrix.columns.has_duplicates:
        dupes = matrix.columns[matrix.columns.duplicated()].unique().tolist()
        raise SchemaValidationError(
            f"Expression matrix has duplicated sample columns: {', '.join(map(str, dupes))}",
            details={"duplicated_samples": dupes},
        )

    non_numeric = [
        col for col in matrix.columns if not pd.api.types.is_numeric_dtype(matrix[col])
    ]
    if non_numeric:
        raise SchemaValidationError(
            f"Expression matrix has non-numeric sample columns: {', '.join(map(str, non_numeric))}",
            details={"non_numeric_columns": non_numeric},
        )

    if not allow_missing and matrix.isna().any().any():
        raise SchemaValidationError(
            f"Expression matrix contains {int(matrix.isna().sum().sum())} missing values."
        )


def validate_sample_metadata(
    metadata: pd.DataFrame, labels: Sequence[str], min_per_group: int = 2
) -> None:
    """Check metadata has a `condition` column holding both labels."""
    if metadata is None or metadata.empty:
        raise SchemaValidationError("Sample metadata is empty.")
    if "condition" not in metadata.columns:
        raise SchemaValidationError(
            "Sample metadata must have a 'condition' column.",
            details={"columns": metadata.columns.tolist()},
        )
    if metadata.index.has_duplicates:
        raise SchemaValidationError("Sample metadata has duplicated sample ids.")

    unknown = sorted(set(metadata["condition"]) - set(labels))
    if unknown:
        raise SchemaValidationError(
            f"Unknown condition labels {unknown}; expected one of {list(labels)}.",
            details={"unknown_labels": unknown},
        )

    counts = metadata["condition"].value_counts()
    for label in labels:
        n = int(counts.get(label, 0))
        if n < min_per_group:
            raise InsufficientDataError(
                f"Condition '{label}' has {n} sample(s), need ≥{min_per_group} "
                f"for a two-group comparison.",
                details={"condition": label, "n_samples": n},
            )


def validate_de_table(table: pd.DataFrame) -> None:
    """Check a DE table carries the canonical columns and finite effect sizes."""
    if table is None:
        raise SchemaValidationError("DE table is None.")
    missing = _missing_columns(table, DE_TABLE_COLUMNS)
    if missing:
        raise SchemaValidationError(
            f"DE table is missing columns {missing}.",
            details={"columns": table.columns.tolist()},
        )
    if table["gene"].duplicated().any():
        raise SchemaValidationError("DE table has duplicated genes.")
    if not np.isfinite(table["log2FoldChange"].to_numpy(dtype=float)).all():
        raise SchemaValidationError("DE table has non-finite log2FoldChange values.")


def validate_enrichment_table(table: pd.DataFrame, kind: str) -> None:
    """Check a GO (`kind='go'`) or GSEA (`kind='gsea'`) result table."""
    required = GO_TABLE_COLUMNS if kind == "go" else GSEA_TABLE_COLUMNS
    missing = _missing_columns(table, required)
    if missing:
        raise SchemaValidationError(
            f"{kind.upper()} enrichment table is missing columns {missing}.",
            details={"columns": table.columns.tolist()},
        )
