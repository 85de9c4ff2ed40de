# src/scwtko/integrate.py

from __future__ import annotations
import logging
from typing import Dict

import anndata as ad
import numpy as np
import scanpy as sc
from kneed import KneeLocator

from .config import IntegrationConfig

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------
def normalize(adata: ad.AnnData) -> ad.AnnData:
    """counts / cell total * 1e4, then log1p. Raw counts are kept in layers['counts']."""
    adata = adata.copy()
    adata.layers["counts"] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    return adata


def merge_conditions(adata_by_condition: Dict[str, ad.AnnData], condition_key: str = "condition") -> ad.AnnData:
    for cond, a in adata_by_condition.items():
        if condition_key not in a.obs:
            raise KeyError(f"AnnData for condition '{cond}' lacks obs['{condition_key}']")

    merged = ad.concat(list(adata_by_condition.values()), join="inner", merge="same")
    merged.obs[condition_key] = merged.obs[condition_key].astype("category")
    LOGGER.info(
        "Merged %d conditions: %d cells × %d shared genes",
        len(adata_by_condition), merged.n_obs, merged.n_vars,
    )
    return merged


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _choose_n_pcs(adata: ad.AnnData, max_pcs: int) -> int:
    """Elbow of the PCA variance ratio, capped at max_pcs."""
    pvar = np.asarray(adata.uns["pca"]["variance_ratio"])
    n_avail = int(pvar.size)
    try:
        kl = KneeLocator(range(1, n_avail + 1), pvar, curve="convex", direction="decreasing")
        elbow = kl.elbow
    except ValueError:
        elbow = None

    n_pcs = int(elbow) if elbow is not None else min(max_pcs, n_avail)
    n_pcs = max(2, min(n_pcs, max_pcs, n_avail))
    LOGGER.info("Using %d PCs (elbow=%s, max=%d)", n_pcs, elbow, max_pcs)
    return n_pcs


def _run_harmony(adata: ad.AnnData, batch_key: str, *, use_rep: str = "X_pca", n_pcs: int) -> np.ndarray:
    import harmonypy as hm

    if use_rep not in adata.obsm:
        raise KeyError(f"{use_rep} not found in adata.obsm")

    LOGGER.info("Running Harmony over '%s' on %d PCs", batch_key, n_pcs)

    Z = np.asarray(adata.obsm[use_rep])[:, :n_pcs]
    meta = adata.obs[[batch_key]].copy()

    ho = hm.run_harmony(Z, meta, vars_use=[batch_key], verbose=False)

    # harmonypy returns (n_pcs, n_cells) in most releases
    Z_corr = np.asarray(ho.Z_corr)
    if Z_corr.shape[0] != adata.n_obs:
        Z_corr = Z_corr.T

    if Z_corr.shape[0] != adata.n_obs:
        raise RuntimeError(f"Harmony output shape mismatch: {Z_corr.shape}")

    return Z_corr


# ---------------------------------------------------------------------
# Integration + clustering
# ---------------------------------------------------------------------
def integrate_and_cluster(
    adata_by_condition: Dict[str, ad.AnnData],
    cfg: IntegrationConfig,
    *,
    condition_key: str = "condition",
) -> ad.AnnData:
    """
    Normalized per-condition AnnData → one merged AnnData with X_pca,
    (X_pca_harmony), neighbors, obs['leiden'] and X_umap.

    With cfg.regress_umi the scaled HVG matrix has total_counts regressed out
    before PCA. .X of the returned object stays log-normalized for DE.
    """
    adata = merge_conditions(adata_by_condition, condition_key=condition_key)

    n_top = min(int(cfg.n_top_genes), adata.n_vars)
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top, batch_key=condition_key)
    hvg = adata[:, adata.var["highly_variable"].to_numpy()].copy()
    LOGGER.info("Selected %d highly variable genes", hvg.n_vars)

    if cfg.regress_umi:
        if "total_counts" not in hvg.obs:
            raise KeyError("regress_umi=True requires obs['total_counts'] (run QC metrics first)")
        LOGGER.info("Regressing out total_counts before scaling")
        sc.pp.regress_out(hvg, ["total_counts"])

    sc.pp.scale(hvg, max_value=cfg.max_scale_value)

    n_comps = max(2, min(int(cfg.n_pcs), hvg.n_vars - 1, hvg.n_obs - 1))
    sc.tl.pca(hvg, n_comps=n_comps, random_state=cfg.random_state)
    n_pcs = _choose_n_pcs(hvg, max_pcs=n_comps)

    adata.obsm["X_pca"] = hvg.obsm["X_pca"]
    adata.uns["pca"] = hvg.uns["pca"]

    if cfg.use_harmony:
        adata.obsm["X_pca_harmony"] = _run_harmony(adata, condition_key, n_pcs=n_pcs)
        sc.pp.neighbors(
            adata, n_neighbors=cfg.n_neighbors, use_rep="X_pca_harmony", random_state=cfg.random_state
        )
        use_rep = "X_pca_harmony"
    else:
        sc.pp.neighbors(
            adata, n_neighbors=cfg.n_neighbors, n_pcs=n_pcs, use_rep="X_pca", random_state=cfg.random_state
        )
        use_rep = "X_pca"

    sc.tl.leiden(
        adata,
        resolution=cfg.resolution,
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=cfg.random_state,
        key_added="leiden",
    )
    sc.tl.umap(adata, random_state=cfg.random_state)

    adata.uns["integration"] = {
        "regress_umi": bool(cfg.regress_umi),
        "use_rep": use_rep,
        "n_pcs": int(n_pcs),
        "resolution": float(cfg.resolution),
    }

    LOGGER.info(
        "Clustering done: %d Leiden clusters at resolution %.2f (rep=%s)",
        adata.obs["leiden"].nunique(), cfg.resolution, use_rep,
    )
    return adata
