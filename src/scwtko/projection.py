from __future__ import annotations

import logging
from typing import Optional, Sequence

import anndata as ad
import numpy as np
import scanpy as sc
from sklearn.neighbors import NearestNeighbors

LOGGER = logging.getLogger(__name__)


def build_reference_manifold(
    adata_ref: ad.AnnData,
    *,
    genes: Optional[Sequence[str]] = None,
    n_comps: int = 15,
    n_neighbors: int = 15,
    n_pcs: int = 30,
    random_state: int = 0,
) -> ad.AnnData:
    """
    Reference copy restricted to `genes` with its own PCA (loadings in
    varm['PCs']), kNN graph and diffusion map (obsm['X_diffmap']).
    .X is expected to be log-normalized.
    """
    ref = adata_ref.copy() if genes is None else adata_ref[:, list(genes)].copy()

    n_pcs = max(2, min(int(n_pcs), ref.n_vars - 1, ref.n_obs - 1))
    sc.pp.pca(ref, n_comps=n_pcs, random_state=random_state)
    sc.pp.neighbors(ref, n_neighbors=n_neighbors, use_rep="X_pca", random_state=random_state)
    sc.tl.diffmap(ref, n_comps=n_comps)

    LOGGER.info(
        "Reference manifold: %d cells, %d genes, %d PCs, %d diffusion components",
        ref.n_obs, ref.n_vars, n_pcs, ref.obsm["X_diffmap"].shape[1],
    )
    return ref


def diffusion_nystrom(
    query_rep: np.ndarray,
    ref_rep: np.ndarray,
    ref_dc: np.ndarray,
    *,
    n_neighbors: int = 15,
) -> np.ndarray:
    """
    Place query cells in the reference diffusion space as the Gaussian-kernel
    weighted mean of their nearest reference cells' diffusion coordinates.
    The kernel width of each query cell is its median neighbor distance.
    """
    query_rep = np.asarray(query_rep, dtype=float)
    ref_rep = np.asarray(ref_rep, dtype=float)
    ref_dc = np.asarray(ref_dc, dtype=float)

    if ref_rep.shape[0] != ref_dc.shape[0]:
        raise ValueError(
            f"ref_rep has {ref_rep.shape[0]} cells but ref_dc has {ref_dc.shape[0]}"
        )
    if query_rep.shape[1] != ref_rep.shape[1]:
        raise ValueError(
            f"query/reference dimensionality differ: {query_rep.shape[1]} vs {ref_rep.shape[1]}"
        )

    k = max(1, min(int(n_neighbors), ref_rep.shape[0]))
    nn = NearestNeighbors(n_neighbors=k).fit(ref_rep)
    dist, idx = nn.kneighbors(query_rep)

    sigma = np.median(dist, axis=1, keepdims=True)
    sigma[sigma == 0] = 1.0
    w = np.exp(-(dist ** 2) / (sigma ** 2))
    w /= w.sum(axis=1, keepdims=True)

    return np.einsum("qk,qkd->qd", w, ref_dc[idx])


def project_onto_reference(
    adata_query: ad.AnnData,
    adata_ref: ad.AnnData,
    *,
    label_key: Optional[str] = "leiden",
    n_neighbors: int = 15,
) -> ad.AnnData:
    """
    Map a log-normalized query onto a manifold from build_reference_manifold.

    scanpy.tl.ingest projects the query into the reference PCA space and
    transfers `label_key`; diffusion coordinates then come from diffusion_nystrom.
    Returns a new AnnData restricted to the reference genes.
    """
    if "X_diffmap" not in adata_ref.obsm or "PCs" not in adata_ref.varm:
        raise KeyError("Reference lacks X_diffmap / PCs; run build_reference_manifold first")

    missing = adata_ref.var_names.difference(adata_query.var_names)
    if len(missing) > 0:
        raise KeyError(f"{len(missing)} reference genes missing from query (e.g. {list(missing[:5])})")

    query = adata_query[:, adata_ref.var_names].copy()

    obs = None
    if label_key is not None and label_key in adata_ref.obs:
        obs = label_key
    elif label_key is not None:
        LOGGER.warning("label_key '%s' not in reference obs; no labels transferred.", label_key)

    sc.tl.ingest(query, adata_ref, obs=obs, embedding_method="pca")

    query.obsm["X_diffmap"] = diffusion_nystrom(
        query.obsm["X_pca"],
        adata_ref.obsm["X_pca"],
        adata_ref.obsm["X_diffmap"],
        n_neighbors=n_neighbors,
    )

    LOGGER.info("Projected %d query cells onto reference diffusion map", query.n_obs)
    return query
