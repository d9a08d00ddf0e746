"""
Sample-to-condition mapping and the two-group design.

Conditions come either from an explicit sample sheet (preferred) or from the
naming convention of the cohort: sample ids starting with the healthy-control
prefix are "Healthy", every other sample is "LS" (localized scleroderma).
"""

from os import PathLike
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging
import pandas as pd
import numpy as np

from schemas import SampleMetadataError, validate_sample_metadata

logger = logging.getLogger(__name__)

HEALTHY_PREFIX = "HC"
HEALTHY_LABEL = "Healthy"
DISEASE_LABEL = "LS"

SAMPLE_SHEET_SAMPLE_COLUMNS = ["sample", "sample_id", "Sample", "SampleID", "Sample_ID"]
SAMPLE_SHEET_CONDITION_COLUMNS = ["condition", "Condition", "group", "Group"]


def label_conditions_by_prefix(
    samples: Sequence[str],
    prefix: str = HEALTHY_PREFIX,
    healthy_label: str = HEALTHY_LABEL,
    disease_label: str = DISEASE_LABEL,
) -> Dict[str, str]:
    """
    Label samples by a literal, case-sensitive prefix match.

    Example:
        >>> label_conditions_by_prefix(["HC01", "LS01"])
        {'HC01': 'Healthy', 'LS01': 'LS'}
    """
    if not prefix:
        raise SampleMetadataError("Healthy sample prefix must be a non-empty string.")
    return {
        str(s): healthy_label if str(s).startswith(prefix) else disease_label
        for s in samples
    }


def _find_column(df: pd.DataFrame, aliases: List[str]) -> Optional[str]:
    for alias in aliases:
        if alias in df.columns:
            return alias
    return None


def load_sample_sheet(
    file_path: Union[str, PathLike],
    samples: Sequence[str],
    labels: Tuple[str, str] = (HEALTHY_LABEL, DISEASE_LABEL),
) -> Dict[str, str]:
    """
    Read an explicit sample → condition table and check it against the matrix.

    The sheet is CSV or TSV with a sample column and a condition column.
    Every matrix sample must appear exactly once; sheet rows for samples that
    are not in the matrix, missing samples and unknown labels all fail.

    Raises:
        SampleMetadataError: On any mismatch between sheet and matrix
    """
    path = Path(file_path)
    if not path.exists():
        raise SampleMetadataError(f"Sample sheet not found: {file_path}")

    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    sheet = pd.read_csv(path, sep=sep, dtype=str)

    sample_col = _find_column(sheet, SAMPLE_SHEET_SAMPLE_COLUMNS)
    condition_col = _find_column(sheet, SAMPLE_SHEET_CONDITION_COLUMNS)
    if sample_col is None or condition_col is None:
        raise SampleMetadataError(
            "Sample sheet needs a sample column and a condition column.",
            details={"columns": sheet.columns.tolist()},
        )

    sheet[sample_col] = sheet[sample_col].str.strip()
    sheet[condition_col] = sheet[condition_col].str.strip()

    duplicated = sheet[sample_col][sheet[sample_col].duplicated()].unique().tolist()
    if duplicated:
        raise SampleMetadataError(
            f"Sample sheet lists samples more than once: {', '.join(duplicated)}",
            details={"duplicated_samples": duplicated},
        )

    mapping = dict(zip(sheet[sample_col], sheet[condition_col]))

    unmatched = [s for s in samples if s not in mapping]
    if unmatched:
        raise SampleMetadataError(
            f"{len(unmatched)} sample(s) in the expression matrix have no condition in the "
            f"sample sheet: {', '.join(unmatched[:5])}{'...' if len(unmatched) > 5 else ''}",
            details={"unmatched_samples": unmatched},
        )

    extra = [s for s in mapping if s not in set(samples)]
    if extra:
        raise SampleMetadataError(
            f"Sample sheet lists {len(extra)} sample(s) absent from the expression matrix: "
            f"{', '.join(extra[:5])}{'...' if len(extra) > 5 else ''}",
            details={"extra_samples": extra},
        )

    bad_labels = sorted({c for c in mapping.values() if c not in labels})
    if bad_labels:
        raise SampleMetadataError(
            f"Sample sheet uses unknown condition labels {bad_labels}; "
            f"allowed: {list(labels)}",
            details={"unknown_labels": bad_labels},
        )

    return {s: mapping[s] for s in samples}


def build_sample_metadata(
    samples: Sequence[str],
    sample_sheet: Optional[Union[str, PathLike]] = None,
    prefix: str = HEALTHY_PREFIX,
    healthy_label: str = HEALTHY_LABEL,
    disease_label: str = DISEASE_LABEL,
) -> pd.DataFrame:
    """
    Build the samples × condition metadata table.

    Returns:
        DataFrame indexed by sample id (matrix column order) with a
        categorical `condition` column ordered (healthy, disease)
    """
    labels = (healthy_label, disease_label)
    if sample_sheet is not None:
        conditions = load_sample_sheet(sample_sheet, samples, labels=labels)
        source = f"sample sheet {sample_sheet}"
    else:
        conditions = label_conditions_by_prefix(samples, prefix, healthy_label, disease_label)
        source = f"prefix rule ('{prefix}*' → {healthy_label})"
        logger.warning(
            f"No sample sheet supplied; conditions derived from the sample-name {source}"
        )

    metadata = pd.DataFrame(
        {"condition": pd.Categorical([conditions[s] for s in samples], categories=list(labels))},
        index=pd.Index(list(samples), name="sample"),
    )
    validate_sample_metadata(metadata, labels)

    counts = metadata["condition"].value_counts()
    logger.info(
        f"Sample conditions from {source}: "
        + ", ".join(f"{label}={int(counts.get(label, 0))}" for label in labels)
    )
    return metadata


def build_design_matrix(
    metadata: pd.DataFrame,
    healthy_label: str = HEALTHY_LABEL,
    disease_label: str = DISEASE_LABEL,
) -> Tuple[pd.DataFrame, np.ndarray]:
    """
    Group-means design (no intercept) and the disease − healthy contrast.

    Returns:
        design: samples × [healthy_label, disease_label] 0/1 indicator matrix
        contrast: vector selecting disease − healthy, i.e. [-1, 1]
    """
    condition = metadata["condition"].astype(str)
    design = pd.DataFrame(
        {
            healthy_label: (condition == healthy_label).astype(float),
            disease_label: (condition == disease_label).astype(float),
        },
        index=metadata.index,
    )
    if (design.sum(axis=1) != 1).any():
        unassigned = design.index[design.sum(axis=1) != 1].tolist()
        raise SampleMetadataError(
            f"Samples without exactly one condition: {', '.join(map(str, unassigned))}",
            details={"unassigned_samples": unassigned},
        )
    contrast = np.array([-1.0, 1.0])
    return design, contrast


def sample_conditions_dict(metadata: pd.DataFrame) -> Dict[str, str]:
    """Sample → condition mapping used by the plotting helpers."""
    return {str(s): str(c) for s, c in metadata["condition"].items()}
