"""
Expression matrix loading and missing-value handling.

Reads a gzip-compressed CSV of FPKM values (one gene identifier column, one
column per sample) into a genes × samples float matrix, imputes missing
entries with per-sample means and drops genes that are mostly missing.
"""

from dataclasses import dataclass
from os import PathLike
from typing import Union
import logging
import pandas as pd

from schemas import (
    ExpressionValidationError,
    SchemaValidationError,
    validate_expression_matrix,
)

logger = logging.getLogger(__name__)

# A gene is kept only if strictly more than this fraction of its values was observed.
MIN_OBSERVED_FRACTION = 0.5


@dataclass
class ImputationResult:
    """Imputed matrix plus bookkeeping for the log and the report."""

    matrix: pd.DataFrame  # genes × samples, no missing values
    column_means: pd.Series  # per-sample mean of observed entries
    n_imputed: int  # cells replaced by a column mean
    dropped_genes: list  # genes failing the observed-fraction rule


def load_expression_matrix(file_path: Union[str, PathLike]) -> pd.DataFrame:
    """
    Load a (gzip) CSV expression file into a genes × samples matrix.

    Args:
        file_path: Path to the CSV; compression is inferred from the suffix

    Returns:
        Float DataFrame indexed by gene identifier, one column per sample

    Raises:
        ExpressionValidationError: If the file is missing, empty or malformed
    """
    try:
        df = pd.read_csv(file_path, sep=",", compression="infer")
    except FileNotFoundError:
        raise ExpressionValidationError(
            f"File not found: {file_path}. "
            f"Suggestion: Check the input path in the pipeline configuration."
        )
    except pd.errors.EmptyDataError:
        raise ExpressionValidationError(
            f"File is empty or contains no readable data: {file_path}."
        )
    except (pd.errors.ParserError, UnicodeDecodeError, OSError) as e:
        raise ExpressionValidationError(
            f"Failed to parse expression file {file_path}: {str(e)}. "
            f"Suggestion: Verify the file is a gzip-compressed comma-separated table."
        ) from e

    if df.empty:
        raise ExpressionValidationError(
            "Expression file has a header but no gene rows.",
            details={"path": str(file_path)},
        )

    if len(df.columns) < 2:
        raise ExpressionValidationError(
            f"Expression file must have a gene column plus at least one sample column, "
            f"but found {len(df.columns)} column(s).",
            details={"columns": df.columns.tolist()},
        )

    # pandas renames repeated headers to "name.1", so check the raw header row
    raw_header = pd.read_csv(file_path, header=None, nrows=1, compression="infer")
    header = pd.Index([str(c).strip() for c in raw_header.iloc[0, 1:]])
    if header.has_duplicates:
        dupes = header[header.duplicated()].unique().tolist()
        raise ExpressionValidationError(
            f"Duplicated sample headers in expression file: {', '.join(dupes)}",
            details={"duplicated_samples": dupes},
        )

    gene_col = df.columns[0]
    df[gene_col] = df[gene_col].astype(str).str.strip()
    df = df.set_index(gene_col)
    df.index.name = "gene"
    df.columns = [str(c).strip() for c in df.columns]

    try:
        validate_expression_matrix(df, allow_missing=True)
    except SchemaValidationError as e:
        raise ExpressionValidationError(e.message, details=e.details) from e

    matrix = df.astype(float)
    logger.info(
        f"Loaded expression matrix from {file_path}: "
        f"{matrix.shape[0]} genes × {matrix.shape[1]} samples, "
        f"{int(matrix.isna().sum().sum())} missing values"
    )
    return matrix


def impute_missing_values(matrix: pd.DataFrame) -> ImputationResult:
    """
    Replace missing values with per-sample means and drop mostly-missing genes.

    Column means are taken over the observed entries of the full loaded
    column. A gene survives only if more than half of its values were
    observed before imputation.

    Raises:
        ExpressionValidationError: If a whole sample column is missing
        SchemaValidationError: If no gene survives the filter
    """
    observed = matrix.notna()
    column_means = matrix.mean(axis=0, skipna=True)

    empty_columns = column_means.index[column_means.isna()].tolist()
    if empty_columns:
        raise ExpressionValidationError(
            f"Cannot impute sample(s) with no observed values: {', '.join(empty_columns)}",
            details={"empty_samples": empty_columns},
        )

    n_imputed = int((~observed).sum().sum())
    imputed = matrix.fillna(column_means)

    observed_fraction = observed.mean(axis=1)
    keep = observed_fraction > MIN_OBSERVED_FRACTION
    dropped = matrix.index[~keep].tolist()
    imputed = imputed.loc[keep]

    if imputed.empty:
        raise SchemaValidationError(
            "No gene has more than half of its values observed; nothing left to analyse.",
            details={"n_genes_loaded": int(matrix.shape[0])},
        )

    logger.info(
        f"Imputed {n_imputed} missing values with sample means; "
        f"dropped {len(dropped)} genes with ≤{MIN_OBSERVED_FRACTION:.0%} observed values "
        f"({imputed.shape[0]} genes remaining)"
    )

    return ImputationResult(
        matrix=imputed,
        column_means=column_means,
        n_imputed=n_imputed,
        dropped_genes=dropped,
    )


def write_expression_matrix(matrix: pd.DataFrame, file_path: Union[str, PathLike]) -> None:
    """Write a genes × samples matrix as gzip CSV (the loader's input format)."""
    out = matrix.copy()
    out.index.name = out.index.name or "gene"
    out.to_csv(file_path, compression="gzip")
    logger.debug(f"Wrote {out.shape[0]} × {out.shape[1]} matrix to {file_path}")
