"""
Pathway Enrichment Analysis Module

GO Biological Process over-representation (hypergeometric test against the
tested-gene universe) and pre-ranked GSEA against the MSigDB hallmark
collection, both through GSEApy.

Classes:
    PathwayEnrichment: Main class for pathway enrichment analysis
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import gseapy as gp
import pandas as pd
import numpy as np
from statsmodels.stats.multitest import multipletests

from de_analysis import ensure_gene_column, PADJ_THRESHOLD
from schemas import (
    EnrichmentError,
    InsufficientDataError,
    validate_enrichment_table,
    GO_TABLE_COLUMNS,
    GSEA_TABLE_COLUMNS,
)

logger = logging.getLogger(__name__)

GO_LIBRARY = "GO_Biological_Process_2023"
GO_PVALUE_CUTOFF = 0.05
GO_QVALUE_CUTOFF = 0.2
GO_MIN_SIZE = 10
GO_MAX_SIZE = 500

HALLMARK_CATEGORY = "h.all"
HALLMARK_DBVER = "2023.2.Hs"
GSEA_MIN_SIZE = 15
GSEA_MAX_SIZE = 500
GSEA_PERMUTATIONS = 10000
GSEA_SEED = 42
GSEA_TOP_N = 10

GO_SELECTION_POLICIES = ("significant", "all")


@dataclass
class GOEnrichmentResult:
    """GO over-representation results for one gene list."""

    results: pd.DataFrame  # every tested term, sorted by Adjusted P-value
    significant: pd.DataFrame  # terms passing the p/q cutoffs
    genes_used: List[str]
    background_size: int
    selection_note: str


@dataclass
class GSEAResult:
    """Pre-ranked GSEA results."""

    results: pd.DataFrame  # every tested pathway, sorted by NES descending
    significant: pd.DataFrame  # adjusted-significant, top N by |NES|
    ranking: pd.Series
    running_scores: Dict[str, Tuple[np.ndarray, List[int]]] = field(default_factory=dict)
    seed: int = GSEA_SEED
    permutations: int = GSEA_PERMUTATIONS

    def significant_pathways(self, top_n: int = GSEA_TOP_N) -> pd.DataFrame:
        """Pathways with adjusted p < 0.05, the top_n by |NES|, sorted by NES."""
        hits = self.results[self.results["Adjusted P-value"] < PADJ_THRESHOLD]
        order = hits["NES"].abs().sort_values(ascending=False, kind="mergesort").index
        return (
            hits.reindex(order)
            .head(top_n)
            .sort_values("NES", ascending=False, kind="mergesort")
            .reset_index(drop=True)
        )

    @property
    def top_pathway(self) -> Optional[str]:
        if not self.significant.empty:
            return str(self.significant.iloc[0]["Term"])
        if not self.results.empty:
            return str(self.results.loc[self.results["NES"].abs().idxmax(), "Term"])
        return None


def storey_qvalues(pvalues: np.ndarray, lam: float = 0.5) -> np.ndarray:
    """
    Storey q-values with a single-lambda estimate of the null proportion.

    q = pi0 × BH-adjusted p, pi0 = #{p > lambda} / (m × (1 − lambda)), capped at 1.
    """
    pvalues = np.asarray(pvalues, dtype=float)
    if pvalues.size == 0:
        return pvalues
    pi0 = min(1.0, float(np.mean(pvalues > lam)) / (1 - lam))
    pi0 = max(pi0, 1.0 / pvalues.size)
    _, bh, _, _ = multipletests(pvalues, method="fdr_bh")
    return np.minimum(pi0 * bh, 1.0)


class PathwayEnrichment:
    """
    Pathway enrichment analysis using GSEApy.

    Supports:
    - Gene selection from DE results under an explicit policy
    - GO Biological Process over-representation with a tested-gene background
    - MSigDB hallmark GSEA on a log2 fold-change ranking
    """

    def select_go_genes(
        self,
        de_results: pd.DataFrame,
        policy: str = "significant",
        padj_threshold: float = PADJ_THRESHOLD,
    ) -> Tuple[List[str], str]:
        """
        Pick the GO query genes.

        Args:
            de_results: DataFrame with columns gene, log2FoldChange, padj
            policy: "significant" (padj < padj_threshold) or "all" tested genes
            padj_threshold: Adjusted p-value threshold for "significant"

        Returns:
            Tuple of (gene_list, selection_note); genes ordered by
            log2FoldChange descending

        Raises:
            InsufficientDataError: If the policy leaves no gene
        """
        if policy not in GO_SELECTION_POLICIES:
            raise ValueError(f"Unknown GO gene selection policy '{policy}'; use one of {GO_SELECTION_POLICIES}")

        de_results = ensure_gene_column(de_results).dropna(subset=["padj", "log2FoldChange"])
        if policy == "significant":
            selected = de_results[de_results["padj"] < padj_threshold]
            note = f"{len(selected)} genes (padj<{padj_threshold})"
        else:
            selected = de_results
            note = f"{len(selected)} genes (all tested)"

        if selected.empty:
            raise InsufficientDataError(
                f"No genes available for GO enrichment under policy '{policy}'.",
                details={"policy": policy, "n_tested": int(len(de_results))},
            )

        genes = (
            selected.sort_values("log2FoldChange", ascending=False)["gene"]
            .astype(str)
            .drop_duplicates()
            .tolist()
        )
        return genes, note

    def load_go_library(self, name: str = GO_LIBRARY, organism: str = "Human") -> Dict[str, List[str]]:
        """Download a GO gene-set library from Enrichr as {term: genes}."""
        try:
            library = gp.get_library(name=name, organism=organism)
        except Exception as e:
            raise EnrichmentError(
                f"Could not retrieve gene-set library {name}: {str(e)}",
                details={"library": name},
            ) from e
        if not library:
            raise EnrichmentError(f"Gene-set library {name} is empty.", details={"library": name})
        logger.info(f"Loaded {len(library)} terms from {name}")
        return library

    def load_hallmark_gene_sets(self, dbver: str = HALLMARK_DBVER) -> Dict[str, List[str]]:
        """Download the MSigDB hallmark collection for Homo sapiens."""
        try:
            gene_sets = gp.Msigdb().get_gmt(category=HALLMARK_CATEGORY, dbver=dbver)
        except Exception as e:
            raise EnrichmentError(
                f"Could not retrieve MSigDB {HALLMARK_CATEGORY} ({dbver}): {str(e)}",
                details={"category": HALLMARK_CATEGORY, "dbver": dbver},
            ) from e
        if not gene_sets:
            raise EnrichmentError(
                f"MSigDB returned no gene sets for {HALLMARK_CATEGORY} ({dbver}).",
                details={"dbver": dbver},
            )
        logger.info(f"Loaded {len(gene_sets)} hallmark gene sets (MSigDB {dbver})")
        return gene_sets

    @staticmethod
    def restrict_gene_sets(
        gene_sets: Dict[str, Sequence[str]],
        universe: Sequence[str],
        min_size: int,
        max_size: int,
    ) -> Dict[str, List[str]]:
        """Intersect each set with the universe and keep those within the size bounds."""
        universe_set = set(universe)
        restricted = {}
        for term, genes in gene_sets.items():
            members = sorted(set(genes) & universe_set)
            if min_size <= len(members) <= max_size:
                restricted[term] = members
        return restricted

    def run_go_enrichment(
        self,
        genes: List[str],
        gene_sets: Dict[str, Sequence[str]],
        background: Sequence[str],
        selection_note: str = "",
    ) -> GOEnrichmentResult:
        """
        Hypergeometric over-representation test of GO terms.

        Terms are restricted to GO_MIN_SIZE..GO_MAX_SIZE genes within the
        background, p-values are BH-adjusted and q-values estimated; a term
        is significant when adjusted p ≤ 0.05 and q ≤ 0.2.

        Raises:
            InsufficientDataError: Empty gene list or no term within size bounds
            EnrichmentError: If the test itself fails
        """
        if not genes:
            raise InsufficientDataError("No genes provided for GO enrichment.")

        tested_sets = self.restrict_gene_sets(gene_sets, background, GO_MIN_SIZE, GO_MAX_SIZE)
        if not tested_sets:
            raise InsufficientDataError(
                f"No GO term has {GO_MIN_SIZE}–{GO_MAX_SIZE} genes within the "
                f"{len(set(background))}-gene background.",
                details={"n_terms_loaded": len(gene_sets)},
            )

        try:
            enr = gp.enrich(
                gene_list=list(genes),
                gene_sets=tested_sets,
                background=list(background),
                outdir=None,
                cutoff=1.0,
                no_plot=True,
                verbose=False,
            )
        except Exception as e:
            raise EnrichmentError(f"GO enrichment failed: {str(e)}") from e

        results = self.format_go_results(enr.results if enr is not None else None)
        significant = results[
            (results["Adjusted P-value"] <= GO_PVALUE_CUTOFF)
            & (results["q-value"] <= GO_QVALUE_CUTOFF)
        ].reset_index(drop=True)

        logger.info(
            f"GO enrichment on {len(genes)} genes ({selection_note or 'unspecified selection'}): "
            f"{len(results)} terms tested, {len(significant)} significant"
        )
        return GOEnrichmentResult(
            results=results,
            significant=significant,
            genes_used=list(genes),
            background_size=len(set(background)),
            selection_note=selection_note,
        )

    def format_go_results(self, raw: Optional[pd.DataFrame]) -> pd.DataFrame:
        """
        Standardize enrich results to the GO table schema.

        Adjusted P-value and q-value are recomputed over all returned terms.
        """
        if raw is None or raw.empty:
            return pd.DataFrame(columns=GO_TABLE_COLUMNS)

        df = raw[["Term", "Overlap", "P-value", "Genes"]].copy()
        df["P-value"] = pd.to_numeric(df["P-value"])
        df["Count"] = df["Overlap"].astype(str).apply(
            lambda x: int(x.split("/")[0]) if "/" in x else 0
        )
        _, padj, _, _ = multipletests(df["P-value"].to_numpy(), method="fdr_bh")
        df["Adjusted P-value"] = padj
        df["q-value"] = storey_qvalues(df["P-value"].to_numpy())
        df = df[GO_TABLE_COLUMNS].sort_values(["Adjusted P-value", "P-value"], kind="mergesort")
        df = df.reset_index(drop=True)
        validate_enrichment_table(df, "go")
        return df

    @staticmethod
    def build_ranking(de_results: pd.DataFrame) -> pd.Series:
        """
        Rank every tested gene by log2FoldChange, highest first.

        Duplicated gene symbols keep the entry with the largest |log2FoldChange|.
        """
        de_results = ensure_gene_column(de_results).dropna(subset=["log2FoldChange"])
        if de_results.empty:
            raise InsufficientDataError("No tested genes to rank for GSEA.")
        df = de_results[["gene", "log2FoldChange"]].copy()
        df["gene"] = df["gene"].astype(str)
        df["abs_lfc"] = df["log2FoldChange"].abs()
        df = df.sort_values("abs_lfc", ascending=False, kind="mergesort").drop_duplicates("gene")
        ranking = df.set_index("gene")["log2FoldChange"].sort_values(ascending=False, kind="mergesort")
        ranking.name = "log2FoldChange"
        return ranking

    def run_gsea(
        self,
        ranking: pd.Series,
        gene_sets: Dict[str, Sequence[str]],
        permutations: int = GSEA_PERMUTATIONS,
        seed: int = GSEA_SEED,
        top_n: int = GSEA_TOP_N,
        threads: int = 1,
    ) -> GSEAResult:
        """
        Pre-ranked GSEA with a fixed permutation seed.

        Args:
            ranking: Gene → log2FoldChange, sorted descending
            gene_sets: {pathway: genes}
            permutations: Number of gene-set permutations
            seed: Random seed; identical inputs and seed give identical results
            top_n: Maximum number of significant pathways reported

        Returns:
            GSEAResult; `significant` holds pathways with BH-adjusted
            nominal p < 0.05, the top_n by |NES|, sorted by NES

        Raises:
            InsufficientDataError: Empty ranking or no set within size bounds
            EnrichmentError: If GSEApy fails
        """
        if ranking is None or ranking.empty:
            raise InsufficientDataError("Empty gene ranking; nothing to test with GSEA.")

        in_bounds = self.restrict_gene_sets(gene_sets, ranking.index, GSEA_MIN_SIZE, GSEA_MAX_SIZE)
        if not in_bounds:
            raise InsufficientDataError(
                f"No gene set has {GSEA_MIN_SIZE}–{GSEA_MAX_SIZE} genes in the ranking.",
                details={"n_sets_loaded": len(gene_sets), "n_ranked": int(len(ranking))},
            )

        try:
            pre_res = gp.prerank(
                rnk=ranking,
                gene_sets=dict(gene_sets),
                min_size=GSEA_MIN_SIZE,
                max_size=GSEA_MAX_SIZE,
                permutation_num=permutations,
                seed=seed,
                threads=threads,
                outdir=None,
                no_plot=True,
                verbose=False,
            )
        except Exception as e:
            raise EnrichmentError(f"GSEA failed: {str(e)}") from e

        results = self.format_gsea_results(pre_res.res2d)

        running_scores = {}
        for term in results["Term"]:
            trace = self._running_score(getattr(pre_res, "results", None), term)
            if trace is not None:
                running_scores[term] = trace

        result = GSEAResult(
            results=results,
            significant=pd.DataFrame(columns=GSEA_TABLE_COLUMNS),
            ranking=ranking,
            running_scores=running_scores,
            seed=seed,
            permutations=permutations,
        )
        result.significant = result.significant_pathways(top_n)

        logger.info(
            f"GSEA on {len(ranking)} ranked genes, {len(results)} pathways tested "
            f"({permutations} permutations, seed {seed}): {len(result.significant)} significant"
        )
        return result

    @staticmethod
    def _running_score(raw_results, term: str) -> Optional[Tuple[np.ndarray, List[int]]]:
        if not isinstance(raw_results, dict) or term not in raw_results:
            return None
        entry = raw_results[term]
        if "RES" not in entry or "hits" not in entry:
            return None
        return np.asarray(entry["RES"], dtype=float), [int(h) for h in entry["hits"]]

    def format_gsea_results(self, res2d: Optional[pd.DataFrame]) -> pd.DataFrame:
        """Standardize prerank res2d to the GSEA table schema, sorted by NES."""
        if res2d is None or res2d.empty:
            return pd.DataFrame(columns=GSEA_TABLE_COLUMNS)

        df = pd.DataFrame(
            {
                "Term": res2d["Term"].astype(str),
                "ES": pd.to_numeric(res2d["ES"]),
                "NES": pd.to_numeric(res2d["NES"]),
                "P-value": pd.to_numeric(res2d["NOM p-val"]),
                "FDR q-value": pd.to_numeric(res2d["FDR q-val"]),
                "Genes": res2d["Lead_genes"].astype(str),
            }
        )
        _, padj, _, _ = multipletests(df["P-value"].to_numpy(), method="fdr_bh")
        df["Adjusted P-value"] = padj
        df = df[GSEA_TABLE_COLUMNS].sort_values("NES", ascending=False, kind="mergesort")
        df = df.reset_index(drop=True)
        validate_enrichment_table(df, "gsea")
        return df
