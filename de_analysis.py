"""
Differential expression analysis with a limma-voom model.

Implements the voom → lmFit → contrasts.fit → eBayes → topTable chain for a
single two-group contrast (disease − healthy). Every step is deterministic.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging
import pandas as pd
import numpy as np
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

from normalization import CountContainer
from schemas import InsufficientDataError, validate_de_table

logger = logging.getLogger(__name__)

PADJ_THRESHOLD = 0.05
VOOM_SPAN = 0.5


def ensure_gene_column(df: pd.DataFrame) -> pd.DataFrame:
    """
    Ensure DataFrame has a 'gene' column, handling various index/column naming conventions.

    Handles cases where:
    - Gene info is in a named index (e.g., index.name = "Gene")
    - Gene column has different casing (e.g., "Gene", "GENE", "GeneSymbol")
    - Gene column has different naming (e.g., "gene_id", "gene_symbol", "SYMBOL")

    Args:
        df: DataFrame that may have gene info in index or with non-standard column name

    Returns:
        DataFrame with a lowercase "gene" column containing gene identifiers
    """
    if "gene" in df.columns:
        return df

    gene_aliases = [
        "Gene", "GENE", "GeneSymbol", "gene_symbol", "gene_id", "SYMBOL",
        "GeneName", "gene_name", "ensembl_gene_id",
    ]
    for alias in gene_aliases:
        if alias in df.columns:
            df = df.copy()
            df.columns = ["gene" if col == alias else col for col in df.columns]
            return df

    if df.index.name and df.index.name.lower() in ["gene", "genesymbol", "gene_symbol", "symbol", "geneid", "gene_id"]:
        df = df.copy()
        df = df.reset_index()
        df.columns = ["gene"] + list(df.columns[1:])
        return df

    if df.index.name is None and len(df) > 0 and isinstance(df.index[0], str):
        df = df.copy()
        df = df.reset_index()
        df.columns = ["gene"] + list(df.columns[1:])
        return df

    return df


@dataclass
class VoomResult:
    """log2 CPM values with observation-level precision weights."""

    expression: pd.DataFrame  # genes × samples, log2 CPM
    weights: pd.DataFrame  # genes × samples
    design: pd.DataFrame
    lib_sizes: pd.Series
    trend_x: np.ndarray  # mean log2 count per gene (lowess input)
    trend_y: np.ndarray  # sqrt residual SD per gene


@dataclass
class LinearFit:
    """Per-gene weighted least squares fit (limma MArrayLM analogue)."""

    coefficients: np.ndarray  # genes × coefficients
    cov_unscaled: np.ndarray  # genes × coef × coef, (X'WX)^-1
    sigma: np.ndarray  # residual standard deviation per gene
    df_residual: np.ndarray
    amean: np.ndarray  # average log expression per gene
    genes: pd.Index
    coef_names: List[str]
    stdev_unscaled: Optional[np.ndarray] = None


@dataclass
class ModeratedFit:
    """Contrast estimate with empirical-Bayes moderated statistics."""

    log_fc: np.ndarray
    stdev_unscaled: np.ndarray
    sigma: np.ndarray
    df_residual: np.ndarray
    amean: np.ndarray
    genes: pd.Index
    df_prior: float
    s2_prior: float
    s2_post: np.ndarray
    t: np.ndarray
    df_total: np.ndarray
    p_value: np.ndarray


@dataclass
class DEPartition:
    """Significant genes split by direction of change."""

    all: pd.DataFrame
    up: pd.DataFrame
    down: pd.DataFrame
    padj_threshold: float
    lfc_threshold: float


@dataclass
class DEResult:
    """Result from differential expression analysis."""

    results_df: pd.DataFrame  # gene, log2FoldChange, AveExpr, t, pvalue, padj
    voom: VoomResult
    comparison: tuple  # (test_condition, reference_condition)
    df_prior: float
    s2_prior: float
    n_significant: int  # genes with padj < PADJ_THRESHOLD
    warnings: List[str] = field(default_factory=list)


def _weighted_fit(
    expr: np.ndarray, design: np.ndarray, weights: Optional[np.ndarray] = None
) -> tuple:
    """Vectorized per-gene WLS. Returns (coef, cov_unscaled, sigma, df)."""
    n_genes, n_samples = expr.shape
    n_coef = design.shape[1]
    if weights is None:
        weights = np.ones_like(expr)

    xtwx = np.einsum("gi,ij,ik->gjk", weights, design, design)
    xtwy = np.einsum("gi,ij,gi->gj", weights, design, expr)
    cov_unscaled = np.linalg.inv(xtwx)
    coef = np.einsum("gjk,gk->gj", cov_unscaled, xtwy)

    fitted = coef @ design.T
    rss = np.sum(weights * (expr - fitted) ** 2, axis=1)
    df_residual = np.full(n_genes, float(n_samples - n_coef))
    if (df_residual <= 0).any():
        raise InsufficientDataError(
            f"No residual degrees of freedom: {n_samples} samples for {n_coef} coefficients."
        )
    sigma = np.sqrt(rss / df_residual)
    return coef, cov_unscaled, sigma, df_residual


def voom(container: CountContainer, design: pd.DataFrame, span: float = VOOM_SPAN) -> VoomResult:
    """
    Transform values to log2 CPM and estimate mean-variance precision weights.

    Uses TMM-effective library sizes. The square-root residual standard
    deviation of an unweighted fit is smoothed against mean log-count with
    lowess; each observation's weight is the inverse fourth power of the
    trend evaluated at its fitted log-count.
    """
    counts = container.counts
    lib_size = container.effective_lib_sizes.reindex(counts.columns).to_numpy(dtype=float)
    x = design.loc[counts.columns].to_numpy(dtype=float)

    values = counts.to_numpy(dtype=float)
    y = np.log2((values + 0.5) / (lib_size + 1) * 1e6)

    coef, _, sigma, _ = _weighted_fit(y, x)
    amean = y.mean(axis=1)

    nonzero = values.sum(axis=1) > 0
    sx = amean + np.mean(np.log2(lib_size + 1)) - np.log2(1e6)
    sy = np.sqrt(sigma)

    if nonzero.sum() < 3:
        raise InsufficientDataError("voom needs at least 3 non-zero genes to fit the trend.")

    sx_fit, sy_fit = sx[nonzero], sy[nonzero]
    delta = 0.01 * float(np.ptp(sx_fit))
    smoothed = lowess(sy_fit, sx_fit, frac=span, it=3, delta=delta, return_sorted=True)

    fitted_values = coef @ x.T
    fitted_cpm = 2 ** fitted_values
    fitted_count = 1e-6 * fitted_cpm * (lib_size + 1)
    fitted_logcount = np.log2(fitted_count)

    trend = np.interp(fitted_logcount, smoothed[:, 0], smoothed[:, 1])
    weights = 1.0 / trend ** 4

    logger.info(
        f"voom: {counts.shape[0]} genes, weight range "
        f"{np.nanmin(weights):.3g}–{np.nanmax(weights):.3g}"
    )
    return VoomResult(
        expression=pd.DataFrame(y, index=counts.index, columns=counts.columns),
        weights=pd.DataFrame(weights, index=counts.index, columns=counts.columns),
        design=design.loc[counts.columns],
        lib_sizes=pd.Series(lib_size, index=counts.columns),
        trend_x=sx,
        trend_y=sy,
    )


def lm_fit(
    expression: pd.DataFrame, design: pd.DataFrame, weights: Optional[pd.DataFrame] = None
) -> LinearFit:
    """Fit one weighted linear model per gene."""
    x = design.loc[expression.columns].to_numpy(dtype=float)
    w = None if weights is None else weights.loc[expression.index, expression.columns].to_numpy(dtype=float)
    y = expression.to_numpy(dtype=float)

    coef, cov_unscaled, sigma, df_residual = _weighted_fit(y, x, w)
    return LinearFit(
        coefficients=coef,
        cov_unscaled=cov_unscaled,
        sigma=sigma,
        df_residual=df_residual,
        amean=y.mean(axis=1),
        genes=expression.index,
        coef_names=list(design.columns),
        stdev_unscaled=np.sqrt(np.diagonal(cov_unscaled, axis1=1, axis2=2)),
    )


def contrasts_fit(fit: LinearFit, contrast: np.ndarray) -> LinearFit:
    """Re-express the fit in terms of a single contrast of the coefficients."""
    contrast = np.asarray(contrast, dtype=float)
    if contrast.shape[0] != fit.coefficients.shape[1]:
        raise ValueError(
            f"Contrast has {contrast.shape[0]} entries but the design has "
            f"{fit.coefficients.shape[1]} coefficients ({', '.join(fit.coef_names)})."
        )
    coef = fit.coefficients @ contrast
    var_unscaled = np.einsum("j,gjk,k->g", contrast, fit.cov_unscaled, contrast)
    return LinearFit(
        coefficients=coef[:, None],
        cov_unscaled=var_unscaled[:, None, None],
        sigma=fit.sigma,
        df_residual=fit.df_residual,
        amean=fit.amean,
        genes=fit.genes,
        coef_names=["contrast"],
        stdev_unscaled=np.sqrt(var_unscaled)[:, None],
    )


def trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = polygamma(1, y)
        dif = tri * (1 - tri / x) / polygamma(2, y)
        y = y + dif
        if -dif / y < 1e-8:
            break
    return float(y)


def fit_f_dist(s2: np.ndarray, df: np.ndarray) -> tuple:
    """
    Moment estimation of the scaled F prior for the gene-wise variances.

    Returns:
        (s2_prior, df_prior); df_prior is inf when the variances show no
        extra dispersion beyond sampling noise
    """
    ok = np.isfinite(s2) & (df > 0)
    s2 = s2[ok]
    df = df[ok]
    median = np.median(s2)
    if median == 0:
        logger.warning("More than half of residual variances are exactly zero")
        median = 1.0
    s2 = np.maximum(s2, 1e-5 * median)

    z = np.log(s2)
    e = z - digamma(df / 2) + np.log(df / 2)
    emean = float(np.mean(e))
    evar = float(np.sum((e - emean) ** 2) / (len(e) - 1))
    evar = evar - float(np.mean(polygamma(1, df / 2)))

    if evar > 0:
        df_prior = 2 * trigamma_inverse(evar)
        s2_prior = float(np.exp(emean + digamma(df_prior / 2) - np.log(df_prior / 2)))
    else:
        df_prior = np.inf
        s2_prior = float(np.exp(emean))
    return s2_prior, df_prior


def ebayes(fit: LinearFit) -> ModeratedFit:
    """Empirical-Bayes moderated t-statistics for a single-contrast fit."""
    if fit.coefficients.shape[1] != 1:
        raise ValueError("ebayes expects a fit reduced to one contrast.")
    if len(fit.sigma) < 2:
        raise InsufficientDataError("Variance moderation needs at least 2 genes.")

    s2 = fit.sigma ** 2
    s2_prior, df_prior = fit_f_dist(s2, fit.df_residual)

    if np.isinf(df_prior):
        s2_post = np.full_like(s2, s2_prior)
    else:
        s2_post = (df_prior * s2_prior + fit.df_residual * s2) / (df_prior + fit.df_residual)

    log_fc = fit.coefficients[:, 0]
    stdev_unscaled = fit.stdev_unscaled[:, 0]
    t = log_fc / (stdev_unscaled * np.sqrt(s2_post))

    df_pooled = float(np.sum(fit.df_residual))
    df_total = np.minimum(fit.df_residual + df_prior, df_pooled)
    p_value = 2 * stats.t.sf(np.abs(t), df_total)

    logger.info(f"eBayes: prior df {df_prior:.2f}, prior variance {s2_prior:.4f}")
    return ModeratedFit(
        log_fc=log_fc,
        stdev_unscaled=stdev_unscaled,
        sigma=fit.sigma,
        df_residual=fit.df_residual,
        amean=fit.amean,
        genes=fit.genes,
        df_prior=float(df_prior),
        s2_prior=s2_prior,
        s2_post=s2_post,
        t=t,
        df_total=df_total,
        p_value=p_value,
    )


def top_table(fit: ModeratedFit) -> pd.DataFrame:
    """All genes with log fold change, moderated t, p-value and BH-adjusted p-value."""
    _, padj, _, _ = multipletests(fit.p_value, method="fdr_bh")
    table = pd.DataFrame(
        {
            "gene": fit.genes.astype(str),
            "log2FoldChange": fit.log_fc,
            "AveExpr": fit.amean,
            "t": fit.t,
            "pvalue": fit.p_value,
            "padj": padj,
        }
    )
    table = table.sort_values(["pvalue", "gene"], kind="mergesort").reset_index(drop=True)
    validate_de_table(table)
    return table


def partition_results(
    results_df: pd.DataFrame,
    padj_threshold: float = PADJ_THRESHOLD,
    lfc_threshold: float = 0.0,
) -> DEPartition:
    """
    Split significant genes into up (log2FoldChange > 0) and down (≤ 0).

    Significance is padj < padj_threshold; when lfc_threshold > 0 genes must
    also reach |log2FoldChange| ≥ lfc_threshold.
    """
    results_df = ensure_gene_column(results_df)
    sig_mask = results_df["padj"] < padj_threshold
    if lfc_threshold > 0:
        sig_mask &= results_df["log2FoldChange"].abs() >= lfc_threshold
    sig = results_df[sig_mask].sort_values("padj", kind="mergesort").reset_index(drop=True)
    up = sig[sig["log2FoldChange"] > 0].reset_index(drop=True)
    down = sig[sig["log2FoldChange"] <= 0].reset_index(drop=True)
    return DEPartition(
        all=sig,
        up=up,
        down=down,
        padj_threshold=padj_threshold,
        lfc_threshold=lfc_threshold,
    )


class DEAnalysisEngine:
    """Differential expression analysis using limma-voom."""

    def __init__(self, healthy_label: str = "Healthy", disease_label: str = "LS"):
        self.healthy_label = healthy_label
        self.disease_label = disease_label

    def run(
        self,
        container: CountContainer,
        design: pd.DataFrame,
        contrast: np.ndarray,
    ) -> DEResult:
        """
        Fit the model and test disease − healthy for every gene.

        Args:
            container: Filtered, TMM-normalized count container
            design: samples × conditions indicator matrix
            contrast: Contrast vector over design columns

        Returns:
            DEResult with the full, p-value sorted results table

        Raises:
            InsufficientDataError: If the data cannot support the model
        """
        if container.n_genes < 2:
            raise InsufficientDataError(
                f"Differential testing needs at least 2 genes, got {container.n_genes}."
            )
        if (design.sum(axis=0) == 0).any():
            empty = design.columns[design.sum(axis=0) == 0].tolist()
            raise InsufficientDataError(
                f"Design has no samples for: {', '.join(map(str, empty))}",
                details={"empty_groups": empty},
            )

        voom_result = voom(container, design)
        fit = lm_fit(voom_result.expression, voom_result.design, voom_result.weights)
        fit = contrasts_fit(fit, contrast)
        moderated = ebayes(fit)
        results_df = top_table(moderated)

        n_sig = int((results_df["padj"] < PADJ_THRESHOLD).sum())
        warnings = []
        if n_sig == 0:
            warnings.append(f"No gene reached padj < {PADJ_THRESHOLD}")
            logger.warning(warnings[-1])

        logger.info(
            f"DE {self.disease_label} vs {self.healthy_label}: {len(results_df)} genes tested, "
            f"{n_sig} with padj < {PADJ_THRESHOLD}"
        )
        return DEResult(
            results_df=results_df,
            voom=voom_result,
            comparison=(self.disease_label, self.healthy_label),
            df_prior=moderated.df_prior,
            s2_prior=moderated.s2_prior,
            n_significant=n_sig,
            warnings=warnings,
        )


def compute_de_summary(partition: DEPartition, n_tested: int) -> Dict[str, object]:
    """Counts and top genes for the report."""
    def top(df: pd.DataFrame) -> list:
        return [
            (r.gene, float(r.log2FoldChange), float(r.padj))
            for r in df.head(10).itertuples(index=False)
        ]

    return {
        "total_genes": n_tested,
        "significant_genes": len(partition.all),
        "upregulated": len(partition.up),
        "downregulated": len(partition.down),
        "top_up_genes": top(partition.up.sort_values("log2FoldChange", ascending=False)),
        "top_down_genes": top(partition.down.sort_values("log2FoldChange")),
        "top_significant": top(partition.all),
    }
