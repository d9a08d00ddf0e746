"""
Pytest configuration and fixtures for the HC vs LS pipeline tests.
"""

from unittest.mock import MagicMock
import pytest
import pandas as pd
import numpy as np


HC_SAMPLES = ["HC01", "HC02", "HC03", "HC04"]
LS_SAMPLES = ["LS01", "LS02", "LS03", "LS04", "LS05", "LS06"]
PLANTED_UP = [f"UP{i}" for i in range(1, 11)]
PLANTED_DOWN = [f"DOWN{i}" for i in range(1, 11)]


# ============================================================================
# Sample Data Fixtures
# ============================================================================


def make_planted_matrix(n_background: int = 280, seed: int = 42) -> pd.DataFrame:
    """genes × samples FPKM-like matrix; PLANTED_UP ×6 and PLANTED_DOWN ×1/6 in LS."""
    rng = np.random.RandomState(seed)
    samples = HC_SAMPLES + LS_SAMPLES
    genes = PLANTED_UP + PLANTED_DOWN + [f"BG{i:03d}" for i in range(n_background)]
    base = rng.lognormal(mean=3.0, sigma=1.0, size=len(genes))
    values = np.outer(base, np.ones(len(samples)))
    ls_cols = np.arange(len(HC_SAMPLES), len(samples))
    values[: len(PLANTED_UP), ls_cols] *= 6.0
    values[len(PLANTED_UP): len(PLANTED_UP) + len(PLANTED_DOWN), ls_cols] /= 6.0
    values *= rng.lognormal(mean=0.0, sigma=0.2, size=values.shape)
    return pd.DataFrame(values, index=pd.Index(genes, name="gene"), columns=samples)


@pytest.fixture
def planted_matrix():
    """
    Expression matrix with known differential genes.
    Shape: (300 genes, 10 samples: HC01-HC04, LS01-LS06)
    """
    return make_planted_matrix()


@pytest.fixture
def sample_conditions():
    """Sample → condition mapping for the planted matrix."""
    return {**{s: "Healthy" for s in HC_SAMPLES}, **{s: "LS" for s in LS_SAMPLES}}


@pytest.fixture
def sample_metadata(sample_conditions):
    """Metadata table (index sample, categorical condition)."""
    samples = HC_SAMPLES + LS_SAMPLES
    return pd.DataFrame(
        {
            "condition": pd.Categorical(
                [sample_conditions[s] for s in samples], categories=["Healthy", "LS"]
            )
        },
        index=pd.Index(samples, name="sample"),
    )


@pytest.fixture
def normalized_container(planted_matrix, sample_metadata):
    """Filtered, TMM-normalized container for the planted matrix."""
    from normalization import filter_low_expression, make_count_container, normalize

    container = make_count_container(planted_matrix, sample_metadata["condition"].astype(str))
    return normalize(filter_low_expression(container))


@pytest.fixture
def sample_de_results_df():
    """
    DE results table in the pipeline's column layout.
    20 significant genes (12 up, 8 down) out of 200.
    """
    rng = np.random.RandomState(42)
    n_genes = 200
    lfc = rng.normal(0, 0.5, n_genes)
    pvalue = rng.uniform(0.05, 1, n_genes)
    padj = np.clip(pvalue * 1.5, 0, 1)
    lfc[:12] = rng.uniform(1.0, 3.0, 12)
    lfc[12:20] = -rng.uniform(1.0, 3.0, 8)
    pvalue[:20] = rng.uniform(1e-8, 1e-4, 20)
    padj[:20] = pvalue[:20] * 100
    df = pd.DataFrame(
        {
            "gene": [f"GENE{i:03d}" for i in range(n_genes)],
            "log2FoldChange": lfc,
            "AveExpr": rng.uniform(2, 10, n_genes),
            "t": rng.normal(0, 3, n_genes),
            "pvalue": pvalue,
            "padj": padj,
        }
    )
    return df.sort_values("pvalue").reset_index(drop=True)


# ============================================================================
# External API Mocking Fixtures
# ============================================================================


def _mock_running_score(n: int, hits):
    res = np.zeros(n)
    res[hits[0]:] = np.linspace(0.1, 0.6, n - hits[0])
    return res


@pytest.fixture
def mock_gseapy(monkeypatch):
    """Mock gseapy module for enrichment analysis testing (no network)."""
    mock_gp = MagicMock()

    mock_gp.get_library = MagicMock(
        return_value={
            "immune response (GO:0006955)": [f"GENE{i:03d}" for i in range(0, 30)],
            "collagen fibril organization (GO:0030199)": [f"GENE{i:03d}" for i in range(10, 40)],
            "keratinization (GO:0031424)": [f"GENE{i:03d}" for i in range(100, 130)],
            "tiny term (GO:0000001)": ["GENE000", "GENE001"],
        }
    )

    mock_enrich_result = MagicMock()
    mock_enrich_result.results = pd.DataFrame(
        {
            "Gene_set": ["gs_ind_0"] * 3,
            "Term": [
                "immune response (GO:0006955)",
                "collagen fibril organization (GO:0030199)",
                "keratinization (GO:0031424)",
            ],
            "Overlap": ["18/30", "10/30", "1/30"],
            "P-value": [1e-12, 1e-5, 0.9],
            "Adjusted P-value": [3e-12, 1.5e-5, 0.9],
            "Odds Ratio": [25.0, 8.0, 0.4],
            "Combined Score": [600.0, 90.0, 0.1],
            "Genes": ["GENE000;GENE001;GENE002", "GENE010;GENE011", "GENE100"],
        }
    )
    mock_gp.enrich = MagicMock(return_value=mock_enrich_result)

    mock_msigdb = MagicMock()
    mock_msigdb.get_gmt = MagicMock(
        return_value={
            "HALLMARK_INTERFERON_GAMMA_RESPONSE": [f"GENE{i:03d}" for i in range(0, 40)],
            "HALLMARK_EPITHELIAL_MESENCHYMAL_TRANSITION": [f"GENE{i:03d}" for i in range(40, 80)],
            "HALLMARK_FATTY_ACID_METABOLISM": [f"GENE{i:03d}" for i in range(150, 190)],
        }
    )
    mock_gp.Msigdb = MagicMock(return_value=mock_msigdb)

    mock_gsea_result = MagicMock()
    mock_gsea_result.res2d = pd.DataFrame(
        {
            "Name": ["prerank"] * 3,
            "Term": [
                "HALLMARK_INTERFERON_GAMMA_RESPONSE",
                "HALLMARK_FATTY_ACID_METABOLISM",
                "HALLMARK_EPITHELIAL_MESENCHYMAL_TRANSITION",
            ],
            "ES": [0.62, -0.55, 0.12],
            "NES": [2.1, -1.9, 0.4],
            "NOM p-val": [0.0001, 0.0004, 0.8],
            "FDR q-val": [0.001, 0.002, 0.85],
            "FWER p-val": [0.001, 0.003, 0.9],
            "Tag %": ["20/40", "15/40", "5/40"],
            "Gene %": ["10%", "12%", "30%"],
            "Lead_genes": ["GENE000;GENE001", "GENE150;GENE151", "GENE040"],
        }
    )
    mock_gsea_result.results = {
        "HALLMARK_INTERFERON_GAMMA_RESPONSE": {
            "hits": [0, 1, 5, 9],
            "RES": _mock_running_score(200, [0, 1, 5, 9]),
        },
    }
    mock_gp.prerank = MagicMock(return_value=mock_gsea_result)

    monkeypatch.setattr("pathway_enrichment.gp", mock_gp)
    return mock_gp


@pytest.fixture
def mock_mygene(monkeypatch):
    """Mock mygene module; ENSG000000000NN resolves to SYMNN except the last id."""
    mock_module = MagicMock()
    mock_client = MagicMock()

    def querymany(ids, scopes=None, fields=None, species=None, verbose=True):
        hits = []
        for gene_id in ids[:-1]:
            hits.append({"query": gene_id, "symbol": f"SYM{gene_id[-2:]}"})
        hits.append({"query": ids[-1], "notfound": True})
        return hits

    mock_client.querymany = MagicMock(side_effect=querymany)
    mock_module.MyGeneInfo = MagicMock(return_value=mock_client)
    monkeypatch.setattr("gene_annotation.mygene", mock_module)
    return mock_client
