from __future__ import annotations

from pathlib import Path
from typing import List, Sequence

import logging

import matplotlib as mpl
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad

LOGGER = logging.getLogger(__name__)

# -------------------------------------------------------------------------
# Global styling
# -------------------------------------------------------------------------
mpl.rcParams["axes.spines.top"] = False
mpl.rcParams["axes.spines.right"] = False
mpl.rcParams["axes.linewidth"] = 0.6
mpl.rcParams["axes.edgecolor"] = "#555555"

mpl.rcParams["xtick.color"] = "#333333"
mpl.rcParams["ytick.color"] = "#333333"

FIGURE_FORMATS = ["png", "pdf"]
ROOT_FIGDIR: Path | None = None

CONDITION_COLORS = {"wt": "#4c72b0", "ko": "#dd8452"}


# -------------------------------------------------------------------------
# Setup + saving
# -------------------------------------------------------------------------
def set_figure_formats(formats: Sequence[str]) -> None:
    global FIGURE_FORMATS
    FIGURE_FORMATS = list(formats)


def setup_scanpy_figs(figdir: Path, formats: Sequence[str] | None = None) -> None:
    """Point scanpy and save_multi at `figdir` and set the output formats."""
    global ROOT_FIGDIR
    figdir = Path(figdir)
    figdir.mkdir(parents=True, exist_ok=True)
    ROOT_FIGDIR = figdir.resolve()

    if formats is not None:
        set_figure_formats(formats)

    sc.settings.figdir = ROOT_FIGDIR
    sc.settings.autoshow = False
    sc.settings.autosave = False

    sc.settings.set_figure_params(
        dpi=100,
        dpi_save=300,
        facecolor="white",
        frameon=False,
        fontsize=10,
        figsize=(6, 5),
        format=FIGURE_FORMATS[0],
    )


def save_multi(stem: str, figdir: Path, fig=None) -> List[Path]:
    """
    Save the current figure (or `fig`) once per format as
    ROOT_FIGDIR / <ext> / figdir / <stem>.<ext> and close it.
    Returns the written paths.
    """
    if ROOT_FIGDIR is None:
        raise RuntimeError("ROOT_FIGDIR is not set. Call setup_scanpy_figs() first.")

    if fig is not None:
        plt.figure(fig.number)

    written = []
    for ext in FIGURE_FORMATS:
        outdir = ROOT_FIGDIR / ext / Path(figdir)
        outdir.mkdir(parents=True, exist_ok=True)
        outfile = outdir / f"{stem}.{ext}"
        LOGGER.info("Saving figure: %s", outfile)
        plt.savefig(outfile, dpi=300, bbox_inches="tight")
        written.append(outfile)

    plt.close()
    return written


def _clean_axes(ax):
    ax.grid(False)
    for spine in ["left", "bottom"]:
        ax.spines[spine].set_visible(True)
        ax.spines[spine].set_alpha(0.5)
    ax.spines["right"].set_visible(False)
    ax.spines["top"].set_visible(False)
    return ax


# -------------------------------------------------------------------------
# QC
# -------------------------------------------------------------------------
def plot_qc_violins(
    obs: pd.DataFrame,
    report: pd.DataFrame,
    *,
    condition_key: str = "condition",
    stage: str = "prefilter",
) -> List[Path]:
    """
    One violin panel per QC metric, split by condition, with the applied
    per-condition acceptance bounds drawn as dashed lines.
    """
    metrics = list(pd.unique(report["metric"]))
    conditions = list(pd.unique(report["condition"]))

    fig, axes = plt.subplots(1, len(metrics), figsize=(4 * len(metrics), 4), squeeze=False)

    for ax, metric in zip(axes[0], metrics):
        data = [
            obs.loc[obs[condition_key].astype(str) == c, metric].to_numpy(dtype=float)
            for c in conditions
        ]
        parts = ax.violinplot(data, showextrema=False)
        for body, c in zip(parts["bodies"], conditions):
            body.set_facecolor(CONDITION_COLORS.get(c, "steelblue"))
            body.set_alpha(0.6)

        for i, c in enumerate(conditions, start=1):
            row = report.loc[(report["condition"] == c) & (report["metric"] == metric)].iloc[0]
            lo = row["lower"] if metric != "pct_counts_mt" else np.nan
            hi = row["applied_upper"]
            for y in (lo, hi):
                if np.isfinite(y):
                    ax.hlines(y, i - 0.4, i + 0.4, colors="#c0392b", linestyles="--", linewidth=1.0)

        ax.set_xticks(range(1, len(conditions) + 1))
        ax.set_xticklabels(conditions)
        ax.set_title(metric)
        _clean_axes(ax)

    fig.suptitle(f"QC metrics ({stage})")
    return save_multi(f"qc_violins_{stage}", Path("QC_plots"), fig=fig)


def plot_cell_counts(report: pd.DataFrame) -> List[Path]:
    """Cells before/after QC per condition."""
    counts = report.drop_duplicates("condition").set_index("condition")[["n_cells_before", "n_cells_after"]]

    fig, ax = plt.subplots(figsize=(5, 4))
    counts.plot(kind="bar", ax=ax, color=["#b0b0b0", "steelblue"], edgecolor="black")
    _clean_axes(ax)
    ax.set_ylabel("Cell count")
    ax.set_title("Cells before / after QC")
    ax.legend(["before", "after"], frameon=False)
    plt.xticks(rotation=0)

    return save_multi("cell_counts_before_after", Path("QC_plots"), fig=fig)


# -------------------------------------------------------------------------
# Clustering
# -------------------------------------------------------------------------
def plot_cluster_umaps(adata: ad.AnnData, keys: Sequence[str]) -> List[Path]:
    keys = [k for k in keys if k in adata.obs]
    if "X_umap" not in adata.obsm or not keys:
        LOGGER.warning("No UMAP or no obs keys to plot; skipping cluster UMAPs.")
        return []

    fig = sc.pl.umap(adata, color=keys, show=False, return_fig=True, legend_loc="on data")
    return save_multi("umap_clusters", Path("clustering"), fig=fig)


def plot_marker_dotplot(adata: ad.AnnData, markers: pd.DataFrame, *, cluster_key: str = "leiden") -> List[Path]:
    if markers.empty:
        LOGGER.warning("No markers to plot; skipping dot plot.")
        return []

    genes = list(dict.fromkeys(markers["gene"].astype(str)))
    genes = [g for g in genes if g in adata.var_names]
    if not genes:
        LOGGER.warning("No marker genes present in adata.var_names; skipping dot plot.")
        return []

    sc.pl.dotplot(adata, var_names=genes, groupby=cluster_key, show=False, standard_scale="var")
    return save_multi("marker_dotplot", Path("markers"))


# -------------------------------------------------------------------------
# Differential expression
# -------------------------------------------------------------------------
def plot_de_heatmap(table: pd.DataFrame, *, stem: str = "condition_de_heatmap") -> List[Path]:
    """Genes × clusters heatmap of log fold-changes (missing = not significant)."""
    if table.empty:
        LOGGER.warning("Empty DE table; skipping heatmap.")
        return []

    mat = table.pivot_table(index="gene", columns="cluster", values="logfoldchanges", aggfunc="first")
    mat = mat.reindex(columns=list(pd.unique(table["cluster"])))
    mat = mat.reindex(index=list(dict.fromkeys(table["gene"].astype(str))))

    vmax = float(np.nanmax(np.abs(mat.to_numpy()))) if mat.size else 1.0
    fig, ax = plt.subplots(figsize=(1.0 + 0.5 * mat.shape[1], 1.0 + 0.18 * mat.shape[0]))
    im = ax.imshow(np.ma.masked_invalid(mat.to_numpy(dtype=float)), aspect="auto", cmap="RdBu_r", vmin=-vmax, vmax=vmax)

    ax.set_xticks(range(mat.shape[1]))
    ax.set_xticklabels([str(c) for c in mat.columns])
    ax.set_yticks(range(mat.shape[0]))
    ax.set_yticklabels(mat.index, fontsize=6)
    ax.set_xlabel("Cluster")
    fig.colorbar(im, ax=ax, label="log fold-change")

    return save_multi(stem, Path("condition_de"), fig=fig)


def plot_de_counts(summary: pd.DataFrame) -> List[Path]:
    if summary.empty:
        return []

    fig, ax = plt.subplots(figsize=(max(4, 0.5 * summary.shape[0] + 2), 4))
    x = np.arange(summary.shape[0])
    ax.bar(x, summary["n_up"], color="#c0392b", label="up")
    ax.bar(x, -summary["n_down"], color="#2e86c1", label="down")
    ax.axhline(0, color="black", linewidth=0.6)
    ax.set_xticks(x)
    ax.set_xticklabels(summary["cluster"].astype(str))
    ax.set_xlabel("Cluster")
    ax.set_ylabel("Genes")
    ax.legend(frameon=False)
    _clean_axes(ax)

    return save_multi("condition_de_counts", Path("condition_de"), fig=fig)


# -------------------------------------------------------------------------
# Enrichment
# -------------------------------------------------------------------------
def plot_enrichment_bars(enr: pd.DataFrame, *, top_n: int = 10) -> List[Path]:
    """One bar chart per cluster of the top terms by Combined Score."""
    written: List[Path] = []
    if enr.empty:
        return written

    for cl in pd.unique(enr["cluster"]):
        d = enr.loc[enr["cluster"] == cl].sort_values("Combined Score", ascending=False).head(top_n)

        fig, ax = plt.subplots(figsize=(8, max(3.0, 0.4 * d.shape[0])))
        ax.barh(d["Term"], d["Combined Score"], color="steelblue")
        ax.invert_yaxis()
        ax.set_xlabel("Combined Score")
        ax.set_title(f"Cluster {cl}")
        _clean_axes(ax)

        written.extend(save_multi(f"enrichment_cluster_{cl}", Path("enrichment"), fig=fig))

    return written


# -------------------------------------------------------------------------
# Projection
# -------------------------------------------------------------------------
def plot_projection(ref: ad.AnnData, query: ad.AnnData, *, label: str = "query") -> List[Path]:
    """Reference and projected query cells on the first two non-trivial diffusion components."""
    ref_dc = np.asarray(ref.obsm["X_diffmap"])
    q_dc = np.asarray(query.obsm["X_diffmap"])
    # scanpy's first diffusion component is the stationary one
    i, j = (1, 2) if ref_dc.shape[1] > 2 else (0, 1)

    fig, ax = plt.subplots(figsize=(6, 5))
    ax.scatter(ref_dc[:, i], ref_dc[:, j], s=3, c="#b0b0b0", label="reference", rasterized=True)
    ax.scatter(q_dc[:, i], q_dc[:, j], s=3, c="#c0392b", label=label, rasterized=True)
    ax.set_xlabel(f"DC{i + 1}")
    ax.set_ylabel(f"DC{j + 1}")
    ax.legend(frameon=False, markerscale=3)
    _clean_axes(ax)

    return save_multi(f"diffmap_projection_{label}", Path("projection"), fig=fig)
