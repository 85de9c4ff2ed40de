from __future__ import annotations

import logging
from typing import List, Sequence

import pandas as pd

LOGGER = logging.getLogger(__name__)

ENRICHMENT_COLUMNS = [
    "cluster",
    "Gene_set",
    "Term",
    "Overlap",
    "P-value",
    "Adjusted P-value",
    "Odds Ratio",
    "Combined Score",
    "Genes",
]


def _clean_genes(genes: Sequence) -> List[str]:
    seen = set()
    out = []
    for g in map(str, genes):
        if g in ("", "nan", "None") or g in seen:
            continue
        seen.add(g)
        out.append(g)
    return out


def enrich_gene_list(
    genes: Sequence[str],
    *,
    gene_sets: Sequence[str],
    organism: str = "mouse",
    cutoff: float = 0.05,
) -> pd.DataFrame:
    """Enrichr over-representation test for one gene list, significant terms only."""
    import gseapy as gp

    enr = gp.enrichr(
        gene_list=list(genes),
        gene_sets=list(gene_sets),
        organism=organism,
        outdir=None,
        cutoff=cutoff,
    )

    res = getattr(enr, "results", None)
    if res is None or res.empty:
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS[1:])

    res = res.drop(columns=[c for c in ("Old P-value", "Old Adjusted P-value") if c in res.columns])
    padj = pd.to_numeric(res["Adjusted P-value"], errors="coerce")
    return res.loc[(padj <= cutoff).to_numpy()].reset_index(drop=True)


def enrich_clusters(
    table: pd.DataFrame,
    *,
    gene_sets: Sequence[str],
    organism: str = "mouse",
    cutoff: float = 0.05,
    min_genes: int = 5,
) -> pd.DataFrame:
    """
    Run Enrichr on the genes of every cluster in a DE/marker table.

    Clusters are processed in their order of appearance in `table`. Clusters
    with fewer than `min_genes` distinct genes are skipped. An Enrichr failure
    aborts the whole run with the cluster named in the error.
    """
    if table.empty:
        LOGGER.info("[ENRICHR] Empty gene table; nothing to enrich.")
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

    for col in ("cluster", "gene"):
        if col not in table.columns:
            raise KeyError(f"Enrichment input lacks column '{col}'")

    frames = []
    for cl in pd.unique(table["cluster"]):
        genes = _clean_genes(table.loc[table["cluster"] == cl, "gene"])
        if len(genes) < min_genes:
            LOGGER.info(
                "[ENRICHR] Cluster %s: only %d genes (< %d); skipping.", cl, len(genes), min_genes
            )
            continue

        LOGGER.info("[ENRICHR] Cluster %s: %d genes against %s", cl, len(genes), ", ".join(gene_sets))
        try:
            res = enrich_gene_list(genes, gene_sets=gene_sets, organism=organism, cutoff=cutoff)
        except Exception as e:
            raise RuntimeError(f"Enrichr failed for cluster {cl!r}: {e}") from e

        if res.empty:
            LOGGER.info("[ENRICHR] Cluster %s: no significant terms.", cl)
            continue

        res.insert(0, "cluster", cl)
        frames.append(res)

    if not frames:
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)
    return pd.concat(frames, axis=0, ignore_index=True)
