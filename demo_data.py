"""
Demo dataset generator for the HC vs LS pipeline.

Generates a reproducible FPKM-like matrix of healthy control and localized
scleroderma skin samples with built-in differential expression patterns and
a few missing values.
"""

from typing import List, Tuple, Union
from os import PathLike
import pandas as pd
import numpy as np

from expression_loader import write_expression_matrix

HEALTHY_SAMPLES = ["HC01", "HC02", "HC03", "HC04"]
LS_SAMPLES = ["LS01", "LS02", "LS03", "LS04", "LS05", "LS06"]

# Up in LS lesions: interferon response and dermal fibrosis
UPREGULATED_GENES = [
    "CXCL9", "CXCL10", "CXCL11", "IFI27", "IFI44L", "ISG15", "MX1", "OAS1",
    "STAT1", "IRF7", "GBP1", "COL1A1", "COL1A2", "COL3A1", "COL5A1", "FN1",
    "POSTN", "SPARC", "TNC", "THBS2", "LOX", "CTGF", "TGFB1", "SERPINE1",
]
# Down in LS lesions: epidermal barrier, lipid and adnexal genes
DOWNREGULATED_GENES = [
    "FLG", "FLG2", "LOR", "IVL", "CLDN1", "KRT1", "KRT10", "KRT77",
    "AQP3", "ELOVL3", "FADS2", "SCD", "DGAT2", "PPARG", "AWAT1", "AWAT2",
    "THRSP", "MLXIPL",
]
BACKGROUND_GENES = [
    "ACTB", "GAPDH", "B2M", "RPLP0", "TBP", "HPRT1", "PGK1", "PPIA", "YWHAZ", "UBC",
    "KRT5", "KRT14", "TP63", "ITGB1", "VIM", "PTPRC", "CD3E", "CD68", "PECAM1", "VWF",
]


def demo_gene_names(n_genes: int = 600) -> List[str]:
    """Planted genes, housekeeping genes, then numbered filler genes up to n_genes."""
    named = UPREGULATED_GENES + DOWNREGULATED_GENES + BACKGROUND_GENES
    return named + [f"GENE{i:04d}" for i in range(1, n_genes - len(named) + 1)]


def load_demo_dataset(
    n_genes: int = 600, seed: int = 42, missing_fraction: float = 0.002
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Generate a synthetic HC vs LS FPKM dataset.

    Returns:
        Tuple of (fpkm_df, metadata_df):
        - fpkm_df: genes × samples (index "gene"), non-negative floats with
          scattered NaNs plus one gene missing in most samples
        - metadata_df: index=sample names, column "condition" with
          "Healthy" or "LS"

    Dataset characteristics:
    - 10 samples: HC01-HC04 (Healthy), LS01-LS06 (LS)
    - Upregulated in LS: UPREGULATED_GENES, 4-8x
    - Downregulated in LS: DOWNREGULATED_GENES, 0.12-0.25x
    - Log-normal base levels with ~25% multiplicative replicate noise
    - Reproducible for a given seed
    """
    rng = np.random.RandomState(seed)
    samples = HEALTHY_SAMPLES + LS_SAMPLES
    genes = demo_gene_names(n_genes)
    is_ls = np.array([s.startswith("LS") for s in samples])

    base = rng.lognormal(mean=2.5, sigma=1.2, size=len(genes))
    fold = np.ones(len(genes))
    up = np.isin(genes, UPREGULATED_GENES)
    down = np.isin(genes, DOWNREGULATED_GENES)
    fold[up] = rng.uniform(4.0, 8.0, size=int(up.sum()))
    fold[down] = rng.uniform(0.12, 0.25, size=int(down.sum()))

    means = np.outer(base, np.ones(len(samples)))
    means[:, is_ls] *= fold[:, None]
    noise = rng.lognormal(mean=0.0, sigma=0.25, size=means.shape)
    # per-sample depth differences
    depth = rng.uniform(0.8, 1.25, size=len(samples))
    values = np.round(means * noise * depth, 3)

    fpkm = pd.DataFrame(values, index=pd.Index(genes, name="gene"), columns=samples)

    # scattered missing values, never in planted genes
    filler = [i for i, g in enumerate(genes) if g.startswith("GENE")]
    n_missing = max(1, int(missing_fraction * values.size))
    rows = rng.choice(filler, size=n_missing)
    cols = rng.randint(0, len(samples), size=n_missing)
    for r, c in zip(rows, cols):
        fpkm.iat[r, c] = np.nan

    # one gene observed in fewer than half of the samples
    fpkm.iloc[filler[-1], :7] = np.nan

    metadata = pd.DataFrame(
        {"condition": ["LS" if ls else "Healthy" for ls in is_ls]},
        index=pd.Index(samples, name="sample"),
    )
    return fpkm, metadata


def write_demo_dataset(file_path: Union[str, PathLike], seed: int = 42) -> pd.DataFrame:
    """Write the demo matrix as gzip CSV and return it."""
    fpkm, _ = load_demo_dataset(seed=seed)
    write_expression_matrix(fpkm, file_path)
    return fpkm


def get_demo_description() -> str:
    """Markdown description of the demo dataset."""
    return f"""# HC vs LS Demo Dataset

- **Samples**: {len(HEALTHY_SAMPLES)} healthy controls ({', '.join(HEALTHY_SAMPLES)}),
  {len(LS_SAMPLES)} localized scleroderma lesions ({', '.join(LS_SAMPLES)})
- **Values**: FPKM-like, log-normal levels with replicate noise
- **Up in LS** ({len(UPREGULATED_GENES)}): {', '.join(UPREGULATED_GENES)}
- **Down in LS** ({len(DOWNREGULATED_GENES)}): {', '.join(DOWNREGULATED_GENES)}
- **Missing values**: a few scattered cells, plus one gene missing in 7 of 10 samples
  (removed by the >50% observed rule)

Synthetic data for demonstration and testing only.
"""
