"""
Gene identifier detection and symbol resolution.

Enrichment libraries are keyed by HGNC symbols, so Ensembl or Entrez
identifiers are translated with the MyGene.info annotation service before
enrichment. Symbols pass through without a network call.
"""

from typing import Dict, List, Sequence
import logging
import mygene

from schemas import EnrichmentError

logger = logging.getLogger(__name__)

QUERY_BATCH_SIZE = 1000

ID_SCOPES = {
    "ensembl": "ensembl.gene",
    "entrez": "entrezgene",
}


def strip_version(gene_id: str) -> str:
    """ENSG00000141510.17 → ENSG00000141510"""
    gene_id = str(gene_id)
    if gene_id.upper().startswith("ENS"):
        return gene_id.split(".")[0]
    return gene_id


def detect_identifier_type(ids: Sequence[str], sample_size: int = 100) -> str:
    """
    Guess the identifier namespace from a sample of ids.

    Returns:
        "ensembl", "entrez" or "symbol" (majority of the first sample_size ids)
    """
    sample = [str(g) for g in list(ids)[:sample_size]]
    if not sample:
        return "symbol"

    ensembl = sum(1 for g in sample if g.upper().startswith("ENSG"))
    entrez = sum(1 for g in sample if g.isdigit())
    logger.debug(f"Identifier detection over {len(sample)} ids: Ensembl={ensembl}, Entrez={entrez}")

    if ensembl > len(sample) * 0.5:
        return "ensembl"
    if entrez > len(sample) * 0.5:
        return "entrez"
    return "symbol"


def resolve_gene_symbols(ids: Sequence[str], species: str = "human") -> Dict[str, str]:
    """
    Map gene identifiers to gene symbols.

    Args:
        ids: Gene identifiers as they appear in the expression matrix
        species: Species passed to MyGene.info

    Returns:
        Dict original_id → symbol; unmapped ids map to themselves

    Raises:
        EnrichmentError: If the annotation service cannot be queried
    """
    ids = [str(g) for g in ids]
    id_type = detect_identifier_type(ids)
    if id_type == "symbol":
        logger.info("Gene identifiers are symbols; no conversion needed")
        return {g: g for g in ids}

    scope = ID_SCOPES[id_type]
    unique_ids: List[str] = sorted({strip_version(g) for g in ids})
    logger.info(f"Converting {len(unique_ids)} {id_type} ids to symbols via MyGene.info")

    resolved: Dict[str, str] = {}
    mg = mygene.MyGeneInfo()
    try:
        for start in range(0, len(unique_ids), QUERY_BATCH_SIZE):
            batch = unique_ids[start:start + QUERY_BATCH_SIZE]
            hits = mg.querymany(batch, scopes=scope, fields="symbol", species=species, verbose=False)
            for hit in hits:
                # first hit wins for ids with several matches
                if "symbol" in hit and hit["query"] not in resolved:
                    resolved[hit["query"]] = hit["symbol"]
    except Exception as e:
        raise EnrichmentError(
            f"Gene symbol lookup failed: {str(e)}",
            details={"scope": scope, "n_ids": len(unique_ids)},
        ) from e

    mapping = {g: resolved.get(strip_version(g), g) for g in ids}
    n_unmapped = sum(1 for g in ids if mapping[g] == g)
    if n_unmapped:
        logger.warning(f"{n_unmapped} of {len(ids)} identifiers had no symbol; keeping original ids")
    logger.info(f"Resolved {len(ids) - n_unmapped}/{len(ids)} identifiers to symbols")
    return mapping
