"""
Count container, low-expression filtering and TMM normalization.

Mirrors the edgeR workflow used for the HC vs LS comparison:

1. Wrap the expression matrix with library sizes and groups (DGEList)
2. Keep genes with CPM above MIN_CPM in at least MIN_SAMPLES samples
3. Compute trimmed mean of M-values (TMM) scale factors, Robinson & Oshlack (2010)
"""

from dataclasses import dataclass, replace
from typing import Optional
import logging
import pandas as pd
import numpy as np
from scipy.stats import rankdata

from schemas import InsufficientDataError

logger = logging.getLogger(__name__)

MIN_CPM = 1.0
MIN_SAMPLES = 3

# TMM trimming: 30% of log-ratios and 5% of mean intensities from each end
LOGRATIO_TRIM = 0.3
SUM_TRIM = 0.05
A_CUTOFF = -1e10


@dataclass(frozen=True)
class CountContainer:
    """Expression values with per-sample library sizes, scale factors and groups."""

    counts: pd.DataFrame  # genes × samples
    lib_sizes: pd.Series  # column sums
    norm_factors: pd.Series  # TMM factors (1.0 until normalize() runs)
    groups: pd.Series  # sample → condition

    @property
    def effective_lib_sizes(self) -> pd.Series:
        return self.lib_sizes * self.norm_factors

    @property
    def n_genes(self) -> int:
        return int(self.counts.shape[0])


def make_count_container(counts: pd.DataFrame, groups: pd.Series) -> CountContainer:
    """Build a container with library sizes from column sums and unit factors."""
    if counts.empty:
        raise InsufficientDataError("Cannot build a count container from an empty matrix.")
    if (counts < 0).any().any():
        raise InsufficientDataError(
            "Expression values must be non-negative for library-size normalization.",
            details={"negative_values": int((counts < 0).sum().sum())},
        )
    groups = groups.reindex(counts.columns)
    if groups.isna().any():
        missing = groups.index[groups.isna()].tolist()
        raise InsufficientDataError(
            f"Samples without a group: {', '.join(map(str, missing))}",
            details={"samples": missing},
        )
    return CountContainer(
        counts=counts,
        lib_sizes=counts.sum(axis=0),
        norm_factors=pd.Series(1.0, index=counts.columns),
        groups=groups,
    )


def cpm(
    counts: pd.DataFrame,
    lib_sizes: Optional[pd.Series] = None,
    log: bool = False,
    prior_count: float = 2,
) -> pd.DataFrame:
    """
    Counts per million.

    With `log=True` returns log2 CPM, adding `prior_count` scaled by library
    size (edgeR convention) so that zero values stay finite.
    """
    if lib_sizes is None:
        lib_sizes = counts.sum(axis=0)
    if not log:
        return counts * 1e6 / lib_sizes

    prior = prior_count * lib_sizes / lib_sizes.mean()
    adjusted_lib = lib_sizes + 2 * prior
    return np.log2((counts + prior) * 1e6 / adjusted_lib)


def filter_low_expression(
    container: CountContainer, min_cpm: float = MIN_CPM, min_samples: int = MIN_SAMPLES
) -> CountContainer:
    """
    Drop genes not expressed above `min_cpm` in at least `min_samples` samples.

    Library sizes are recomputed from the kept genes.

    Raises:
        InsufficientDataError: If no gene passes the filter
    """
    expressed = cpm(container.counts, container.lib_sizes) > min_cpm
    keep = expressed.sum(axis=1) >= min_samples
    filtered = container.counts.loc[keep]

    if filtered.empty:
        raise InsufficientDataError(
            f"No gene has CPM > {min_cpm} in at least {min_samples} samples.",
            details={"n_genes_tested": container.n_genes},
        )

    logger.info(
        f"Expression filter (CPM > {min_cpm} in ≥{min_samples} samples): "
        f"kept {int(keep.sum())} of {container.n_genes} genes"
    )
    return replace(
        container,
        counts=filtered,
        lib_sizes=filtered.sum(axis=0),
        norm_factors=pd.Series(1.0, index=filtered.columns),
    )


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float = LOGRATIO_TRIM,
    sum_trim: float = SUM_TRIM,
    a_cutoff: float = A_CUTOFF,
) -> float:
    """TMM scale factor of one sample against the reference sample."""
    obs = np.asarray(obs, dtype=float)
    ref = np.asarray(ref, dtype=float)

    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    finite = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[finite], abs_e[finite], v[finite]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    f = np.sum(log_r[keep] / v[keep]) / np.sum(1 / v[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def _reference_column(counts: pd.DataFrame, lib_sizes: pd.Series) -> str:
    """Sample whose upper quartile is closest to the mean upper quartile."""
    f75 = (counts / lib_sizes).quantile(0.75, axis=0)
    if f75.median() < 1e-20:
        return str(np.sqrt(counts).sum(axis=0).idxmax())
    return str((f75 - f75.mean()).abs().idxmin())


def calc_norm_factors_tmm(counts: pd.DataFrame, lib_sizes: Optional[pd.Series] = None) -> pd.Series:
    """
    TMM normalization factors, rescaled to a geometric mean of one.

    Args:
        counts: genes × samples non-negative values
        lib_sizes: Library sizes (default: column sums)

    Returns:
        Series of strictly positive factors indexed by sample
    """
    if lib_sizes is None:
        lib_sizes = counts.sum(axis=0)

    # genes that are zero everywhere carry no ratio information
    counts = counts.loc[(counts > 0).any(axis=1)]
    if counts.empty:
        raise InsufficientDataError("All genes are zero; TMM factors are undefined.")

    ref = _reference_column(counts, lib_sizes)
    factors = pd.Series(
        {
            sample: _tmm_factor(
                counts[sample].to_numpy(),
                counts[ref].to_numpy(),
                float(lib_sizes[sample]),
                float(lib_sizes[ref]),
            )
            for sample in counts.columns
        }
    )
    factors = factors / np.exp(np.mean(np.log(factors)))
    logger.debug(f"TMM reference sample: {ref}")
    return factors


def normalize(container: CountContainer) -> CountContainer:
    """Attach TMM factors to the container."""
    factors = calc_norm_factors_tmm(container.counts, container.lib_sizes)
    logger.info(
        f"TMM factors: min {factors.min():.3f}, max {factors.max():.3f} "
        f"across {len(factors)} samples"
    )
    return replace(container, norm_factors=factors)


def normalized_log_cpm(container: CountContainer, prior_count: float = 2) -> pd.DataFrame:
    """log2 CPM using TMM-effective library sizes (genes × samples)."""
    return cpm(container.counts, container.effective_lib_sizes, log=True, prior_count=prior_count)
