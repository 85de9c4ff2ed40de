# src/scwtko/de_utils.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Literal, Optional, Protocol, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Design:
# - The statistical test is a pluggable callable; the driver only builds the
#   two cell selectors per cluster and stitches the returned tables together.
# - Output order is fixed by the sorted cluster labels, also when n_jobs > 1.
# - Any per-cluster failure aborts the whole contrast (no partial tables).
# -----------------------------------------------------------------------------

RESULT_COLUMNS = [
    "gene",
    "cluster",
    "scores",
    "logfoldchanges",
    "pvals",
    "pvals_adj",
    "pct_a",
    "pct_b",
    "group_a",
    "group_b",
]


@dataclass(frozen=True)
class ContrastSpec:
    """Thresholds handed to the two-group test."""
    method: Literal["wilcoxon", "t-test", "t-test_overestim_var"] = "wilcoxon"
    min_log_fc: float = 0.4   # |logFC| threshold
    min_pct: float = 0.25     # detection fraction required in at least one group
    only_pos: bool = False


class ContrastTest(Protocol):
    def __call__(
        self,
        adata: ad.AnnData,
        mask_a: np.ndarray,
        mask_b: np.ndarray,
        spec: ContrastSpec,
    ) -> pd.DataFrame:
        ...


class ContrastTestError(RuntimeError):
    """The two-group test failed for one cluster; the whole contrast is aborted."""

    def __init__(self, cluster, group_a: str, group_b: str, reason: str):
        self.cluster = cluster
        self.group_a = group_a
        self.group_b = group_b
        super().__init__(
            f"Contrast test failed for cluster {cluster!r} ({group_a} vs {group_b}): {reason}"
        )


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def ordered_cluster_labels(labels: Iterable) -> List[str]:
    """
    Distinct labels, ascending. Numeric order when every label is an integer
    string ("2" < "10"), lexical otherwise.
    """
    distinct = {str(x) for x in labels}
    try:
        return sorted(distinct, key=int)
    except ValueError:
        return sorted(distinct)


def _coerce_cluster(label: str) -> Union[int, str]:
    try:
        return int(label)
    except ValueError:
        return label


def _coerce_pts_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize scanpy prevalence columns to pct_a / pct_b.

    Scanpy has shipped both pts/pts_rest and pct_nz_group/pct_nz_reference.
    """
    out = df.copy()
    if "pct_nz_group" in out.columns and "pct_nz_reference" in out.columns:
        out = out.rename(columns={"pct_nz_group": "pct_a", "pct_nz_reference": "pct_b"})
    elif "pts" in out.columns and "pts_rest" in out.columns:
        out = out.rename(columns={"pts": "pct_a", "pts_rest": "pct_b"})

    for c in ("pct_a", "pct_b"):
        if c not in out.columns:
            out[c] = np.nan
    return out


def _reference_pts_columns(df: pd.DataFrame, pts) -> pd.DataFrame:
    """
    pct_a / pct_b for an A-vs-B test with an explicit reference.

    With reference="B" scanpy stores no pts_rest; the per-group detection
    fractions live in uns[key]["pts"] (genes x groups, columns "A" and "B").
    """
    out = df.drop(columns=[c for c in ("pct_nz_group", "pct_nz_reference") if c in df.columns])
    if pts is None:
        out["pct_a"] = np.nan
        out["pct_b"] = np.nan
        return out

    pts = pd.DataFrame(pts)
    names = out["names"].astype(str)
    out["pct_a"] = pts["A"].reindex(names).to_numpy(dtype=float)
    out["pct_b"] = pts["B"].reindex(names).to_numpy(dtype=float)
    return out


def _apply_thresholds(df: pd.DataFrame, spec: ContrastSpec) -> pd.DataFrame:
    """Seurat-like gates: min.pct in either group, |logFC| >= logfc.threshold."""
    if df.empty:
        return df

    lfc = pd.to_numeric(df["logfoldchanges"], errors="coerce")
    pct_a = pd.to_numeric(df["pct_a"], errors="coerce")
    pct_b = pd.to_numeric(df["pct_b"], errors="coerce")

    keep = lfc.abs() >= float(spec.min_log_fc)
    if spec.only_pos:
        keep &= lfc > 0

    # Without prevalence columns the min_pct gate is a no-op
    if pct_a.notna().any() or pct_b.notna().any():
        keep &= (pct_a >= float(spec.min_pct)) | (pct_b >= float(spec.min_pct))

    return df.loc[keep.fillna(False).to_numpy()].copy()


# -----------------------------------------------------------------------------
# Default two-group test (scanpy)
# -----------------------------------------------------------------------------
def scanpy_contrast_test(
    adata: ad.AnnData,
    mask_a: np.ndarray,
    mask_b: np.ndarray,
    spec: ContrastSpec,
) -> pd.DataFrame:
    """
    Group A vs group B with scanpy.tl.rank_genes_groups on adata.X (log-normalized).

    Returns a table indexed by gene with columns
    scores, logfoldchanges, pvals, pvals_adj, pct_a, pct_b
    in scanpy's ranking order, restricted to genes passing the thresholds.
    """
    import scanpy as sc
    from scanpy.get import rank_genes_groups_df

    mask_a = np.asarray(mask_a, dtype=bool)
    mask_b = np.asarray(mask_b, dtype=bool)
    n_a, n_b = int(mask_a.sum()), int(mask_b.sum())

    if n_a == 0 or n_b == 0:
        raise ValueError(f"empty group (n_cells_a={n_a}, n_cells_b={n_b})")
    if np.any(mask_a & mask_b):
        raise ValueError("group selectors overlap")

    sel = mask_a | mask_b
    sub = adata[sel].copy()
    sub.obs["_contrast_group"] = pd.Categorical(
        np.where(mask_a[sel], "A", "B"), categories=["A", "B"]
    )

    sc.tl.rank_genes_groups(
        sub,
        groupby="_contrast_group",
        groups=["A"],
        reference="B",
        method=spec.method,
        use_raw=False,
        key_added="_contrast_test",
        n_genes=sub.n_vars,
        pts=True,
    )
    df = rank_genes_groups_df(sub, group="A", key="_contrast_test")
    df = _reference_pts_columns(df, sub.uns["_contrast_test"].get("pts"))
    df = _apply_thresholds(df, spec)

    df = df.set_index(df["names"].astype(str)).drop(columns=["names"])
    df.index.name = "gene"
    return df[["scores", "logfoldchanges", "pvals", "pvals_adj", "pct_a", "pct_b"]]


# -----------------------------------------------------------------------------
# Per-cluster condition contrast
# -----------------------------------------------------------------------------
def _run_cluster_test(
    test: ContrastTest,
    adata: ad.AnnData,
    cluster: str,
    mask_a: np.ndarray,
    mask_b: np.ndarray,
    spec: ContrastSpec,
) -> Tuple[str, Optional[pd.DataFrame], Optional[BaseException]]:
    # Failures are returned, not raised, so the caller reports the first one in cluster order
    try:
        return cluster, test(adata, mask_a, mask_b, spec), None
    except Exception as e:
        return cluster, None, e


def _tag_rows(res: Optional[pd.DataFrame], cluster: str, group_a: str, group_b: str) -> pd.DataFrame:
    if res is None or res.empty:
        return pd.DataFrame(columns=RESULT_COLUMNS)

    out = res.copy()
    out.insert(0, "gene", out.index.astype(str))
    out.insert(1, "cluster", _coerce_cluster(cluster))
    out["group_a"] = group_a
    out["group_b"] = group_b
    return out.reset_index(drop=True)


def cluster_condition_contrast(
    adata: ad.AnnData,
    *,
    test: ContrastTest = scanpy_contrast_test,
    spec: ContrastSpec = ContrastSpec(),
    cluster_key: str = "leiden",
    condition_key: str = "condition",
    condition_a: str = "wt",
    condition_b: str = "ko",
    n_jobs: int = 1,
) -> pd.DataFrame:
    """
    For every cluster c: test (c, condition_a) vs (c, condition_b) cells.

    Rows of all clusters are concatenated in ascending cluster order; within a
    cluster the test's own row order is kept. Each row carries gene, cluster
    and the two group labels ("<c>_<condition>"). The same gene may appear
    under several clusters.

    If the test raises for any cluster (e.g. the cluster exists in only one
    condition) a ContrastTestError naming that cluster is raised and nothing
    is returned.
    """
    for key in (cluster_key, condition_key):
        if key not in adata.obs:
            raise KeyError(f"'{key}' not found in adata.obs. Available columns: {list(adata.obs.columns)}")

    cl_labels = adata.obs[cluster_key].astype(str).to_numpy()
    cond_labels = adata.obs[condition_key].astype(str).to_numpy()
    clusters = ordered_cluster_labels(cl_labels)

    LOGGER.info(
        "Condition contrast %s vs %s over %d clusters (method=%s, min_log_fc=%.2f, min_pct=%.2f, n_jobs=%d)",
        condition_a, condition_b, len(clusters), spec.method, spec.min_log_fc, spec.min_pct, n_jobs,
    )

    jobs = []
    for cl in clusters:
        in_cl = cl_labels == cl
        jobs.append((cl, in_cl & (cond_labels == condition_a), in_cl & (cond_labels == condition_b)))

    if n_jobs == 1:
        results = [_run_cluster_test(test, adata, cl, ma, mb, spec) for cl, ma, mb in jobs]
    else:
        results = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_run_cluster_test)(test, adata, cl, ma, mb, spec) for cl, ma, mb in jobs
        )

    tables = []
    for (cl, ma, mb), (cl_res, res, err) in zip(jobs, results):
        group_a = f"{cl}_{condition_a}"
        group_b = f"{cl}_{condition_b}"

        if err is not None:
            LOGGER.error(
                "Cluster %s: test failed (n_%s=%d, n_%s=%d): %s",
                cl, condition_a, int(ma.sum()), condition_b, int(mb.sum()), err,
            )
            raise ContrastTestError(_coerce_cluster(cl), group_a, group_b, str(err)) from err

        tagged = _tag_rows(res, cl_res, group_a, group_b)
        LOGGER.info(
            "Cluster %s: %d vs %d cells → %d genes",
            cl, int(ma.sum()), int(mb.sum()), tagged.shape[0],
        )
        tables.append(tagged)

    non_empty = [t for t in tables if not t.empty]
    if not non_empty:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    return pd.concat(non_empty, axis=0, ignore_index=True)


# -----------------------------------------------------------------------------
# Cluster markers (one vs rest)
# -----------------------------------------------------------------------------
def find_cluster_markers(
    adata: ad.AnnData,
    *,
    cluster_key: str = "leiden",
    spec: ContrastSpec = ContrastSpec(only_pos=True),
) -> pd.DataFrame:
    """Marker genes of every cluster against all other cells, same table layout as the contrast."""
    import scanpy as sc
    from scanpy.get import rank_genes_groups_df

    if cluster_key not in adata.obs:
        raise KeyError(f"cluster_key '{cluster_key}' not found in adata.obs")

    clusters = ordered_cluster_labels(adata.obs[cluster_key])
    if len(clusters) < 2:
        raise ValueError(f"Need at least 2 clusters for markers, got {clusters}")

    adata_run = adata.copy()
    adata_run.obs[cluster_key] = pd.Categorical(
        adata_run.obs[cluster_key].astype(str), categories=clusters
    )

    sc.tl.rank_genes_groups(
        adata_run,
        groupby=cluster_key,
        method=spec.method,
        use_raw=False,
        key_added="_markers",
        n_genes=adata_run.n_vars,
        pts=True,
    )

    tables = []
    for cl in clusters:
        df = rank_genes_groups_df(adata_run, group=cl, key="_markers")
        df = _coerce_pts_columns(df)
        df = _apply_thresholds(df, spec)
        df = df.set_index(df["names"].astype(str)).drop(columns=["names"])
        tables.append(_tag_rows(df, cl, cl, "rest"))
        LOGGER.info("Markers cluster %s: %d genes", cl, df.shape[0])

    non_empty = [t for t in tables if not t.empty]
    if not non_empty:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    return pd.concat(non_empty, axis=0, ignore_index=True)


# -----------------------------------------------------------------------------
# Table helpers
# -----------------------------------------------------------------------------
def top_genes_per_cluster(
    table: pd.DataFrame,
    n: int = 10,
    *,
    by: str = "logfoldchanges",
    absolute: bool = True,
) -> pd.DataFrame:
    """Top-n rows per cluster by `by`; clusters keep their order of appearance."""
    if table.empty:
        return table.copy()

    key = pd.to_numeric(table[by], errors="coerce")
    if absolute:
        key = key.abs()

    cl_order = list(pd.unique(table["cluster"]))
    d = table.assign(
        _key=key,
        _cl=pd.Categorical(table["cluster"], categories=cl_order, ordered=True),
    )
    d = d.sort_values(["_cl", "_key"], ascending=[True, False], kind="mergesort")
    d = d.groupby("_cl", sort=False, observed=True).head(int(n))
    return d.drop(columns=["_key", "_cl"]).reset_index(drop=True)


def contrast_summary(table: pd.DataFrame) -> pd.DataFrame:
    """Per-cluster counts of up/down genes (condition A relative to B)."""
    if table.empty:
        return pd.DataFrame(columns=["cluster", "n_genes", "n_up", "n_down"])

    lfc = pd.to_numeric(table["logfoldchanges"], errors="coerce")
    d = pd.DataFrame({"cluster": table["cluster"], "up": lfc > 0, "down": lfc < 0})
    out = d.groupby("cluster", sort=False).agg(
        n_genes=("up", "size"), n_up=("up", "sum"), n_down=("down", "sum")
    )
    return out.reset_index()
