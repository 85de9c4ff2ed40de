# src/scwtko/pipeline.py

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import anndata as ad
import pandas as pd

from scwtko import __version__
from . import io_utils, plot_utils
from .config import ContrastConfig, PipelineConfig, ProjectionConfig
from .de_utils import (
    ContrastSpec,
    cluster_condition_contrast,
    contrast_summary,
    find_cluster_markers,
    top_genes_per_cluster,
)
from .enrichment import enrich_clusters
from .integrate import integrate_and_cluster, normalize
from .projection import build_reference_manifold, project_onto_reference
from .qc_utils import compute_qc_metrics, filter_cells_by_condition

LOGGER = logging.getLogger(__name__)

STAGE_QC = "01_qc_filtered"
STAGE_CLUSTERED = "02_clustered"
STAGE_MARKERS = "03_markers"
STAGE_CONDITION_DE = "04_condition_de"
STAGE_ENRICHMENT = "05_enrichment"


@dataclass
class PipelineResult:
    adata: ad.AnnData
    markers: pd.DataFrame
    condition_de: pd.DataFrame
    enrichment: Optional[pd.DataFrame] = None


def _write_settings(out_dir: Path, name: str, lines: list[str]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / name
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(lines).rstrip() + "\n")


def _stage_settings(cfg: PipelineConfig) -> Dict[str, Dict[str, Any]]:
    """
    Parameters each stage checkpoint depends on. Every stage includes the
    settings of the stages before it, so an upstream change invalidates
    everything downstream.
    """
    qc = {
        "inputs": {c: str(p) for c, p in cfg.condition_dirs.items()},
        "qc": cfg.qc.model_dump(mode="json"),
    }
    clustered = {**qc, "integration": cfg.integration.model_dump(mode="json")}
    contrast = {**clustered, "contrast": cfg.contrast.model_dump(mode="json", exclude={"n_jobs", "top_n_markers"})}
    enrichment = {**contrast, "enrichment": cfg.enrichment.model_dump(mode="json", exclude={"run_enrichment"})}
    return {
        STAGE_QC: qc,
        STAGE_CLUSTERED: clustered,
        STAGE_MARKERS: contrast,
        STAGE_CONDITION_DE: contrast,
        STAGE_ENRICHMENT: enrichment,
    }


def _run_stage(cfg: PipelineConfig, stage: str, fn: Callable[[], object]):
    """
    Load `stage` from its checkpoint when resuming and the recorded settings
    match the current config; otherwise compute and checkpoint it.
    """
    settings = json.loads(json.dumps(_stage_settings(cfg)[stage], default=str))

    if cfg.resume and io_utils.has_checkpoint(cfg.checkpoint_dir, stage):
        recorded = io_utils.load_stage_settings(cfg.checkpoint_dir, stage)
        if recorded == settings:
            return io_utils.load_checkpoint(cfg.checkpoint_dir, stage)
        LOGGER.warning(
            "Checkpoint for stage '%s' was computed with other settings (see %s); recomputing",
            stage, io_utils.stage_settings_path(cfg.checkpoint_dir, stage),
        )

    LOGGER.info("Stage '%s' started", stage)
    try:
        result = fn()
    except Exception:
        LOGGER.error(
            "Stage '%s' failed. Fix the cause and rerun; completed stages are reloaded from %s",
            stage, cfg.checkpoint_dir,
        )
        raise

    io_utils.save_checkpoint(result, cfg.checkpoint_dir, stage, fmt=cfg.checkpoint_format)
    io_utils.save_stage_settings(cfg.checkpoint_dir, stage, settings)
    LOGGER.info("Stage '%s' finished", stage)
    return result


# ---------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------
def _qc_stage(cfg: PipelineConfig) -> ad.AnnData:
    key = cfg.qc.condition_key
    per_condition = io_utils.load_conditions(cfg.condition_dirs, condition_key=key)
    per_condition = {c: compute_qc_metrics(a, cfg.qc) for c, a in per_condition.items()}

    adata = ad.concat(list(per_condition.values()), join="inner", merge="same")
    adata.obs[key] = adata.obs[key].astype(str)
    LOGGER.info("Loaded %d cells × %d genes across %s", adata.n_obs, adata.n_vars, list(per_condition))

    filtered, report = filter_cells_by_condition(adata, cfg.qc)
    io_utils.save_table(report, cfg.output_dir / "tables" / "qc_bounds.csv")

    if cfg.make_figures:
        plot_utils.plot_qc_violins(adata.obs, report, condition_key=key, stage="prefilter")
        plot_utils.plot_cell_counts(report)

    return filtered


def _cluster_stage(cfg: PipelineConfig, adata: ad.AnnData) -> ad.AnnData:
    key = cfg.qc.condition_key
    labels = adata.obs[key].astype(str)
    per_condition = {c: normalize(adata[(labels == c).to_numpy()]) for c in pd.unique(labels)}
    return integrate_and_cluster(per_condition, cfg.integration, condition_key=key)


def _contrast_spec(cfg: PipelineConfig, *, only_pos: bool) -> ContrastSpec:
    c = cfg.contrast
    return ContrastSpec(method=c.method, min_log_fc=c.min_log_fc, min_pct=c.min_pct, only_pos=only_pos)


# ---------------------------------------------------------------------
# Main orchestrator
# ---------------------------------------------------------------------
def run_pipeline(cfg: PipelineConfig) -> PipelineResult:
    LOGGER.info("Starting scwtko pipeline (version %s)", __version__)
    cfg.output_dir.mkdir(parents=True, exist_ok=True)

    _write_settings(
        cfg.output_dir,
        "run_settings.txt",
        [
            f"scwtko {__version__}",
            f"started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            cfg.model_dump_json(indent=2),
        ],
    )

    if cfg.make_figures:
        plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    # ---- QC ----
    adata = _run_stage(cfg, STAGE_QC, lambda: _qc_stage(cfg))

    # ---- Integration + clustering ----
    adata = _run_stage(cfg, STAGE_CLUSTERED, lambda: _cluster_stage(cfg, adata))
    cluster_key = cfg.contrast.cluster_key

    if cfg.make_figures:
        plot_utils.plot_cluster_umaps(adata, [cluster_key, cfg.contrast.condition_key])

    # ---- Markers ----
    markers = _run_stage(
        cfg,
        STAGE_MARKERS,
        lambda: find_cluster_markers(
            adata,
            cluster_key=cluster_key,
            spec=_contrast_spec(cfg, only_pos=cfg.contrast.markers_only_pos),
        ),
    )
    if cfg.make_figures:
        plot_utils.plot_marker_dotplot(
            adata, top_genes_per_cluster(markers, cfg.contrast.top_n_markers), cluster_key=cluster_key
        )

    # ---- wt vs ko per cluster ----
    condition_de = _run_stage(
        cfg,
        STAGE_CONDITION_DE,
        lambda: cluster_condition_contrast(
            adata,
            spec=_contrast_spec(cfg, only_pos=False),
            cluster_key=cluster_key,
            condition_key=cfg.contrast.condition_key,
            condition_a=cfg.contrast.condition_a,
            condition_b=cfg.contrast.condition_b,
            n_jobs=cfg.contrast.n_jobs,
        ),
    )
    summary = contrast_summary(condition_de)
    io_utils.save_table(summary, cfg.output_dir / "tables" / "condition_de_summary.csv")

    if cfg.make_figures:
        plot_utils.plot_de_heatmap(top_genes_per_cluster(condition_de, cfg.contrast.top_n_markers))
        plot_utils.plot_de_counts(summary)

    # ---- Enrichment ----
    enrichment = None
    if cfg.enrichment.run_enrichment:
        source = markers if cfg.enrichment.source == "markers" else condition_de
        genes = top_genes_per_cluster(source, cfg.enrichment.top_n_genes)
        enrichment = _run_stage(
            cfg,
            STAGE_ENRICHMENT,
            lambda: enrich_clusters(
                genes,
                gene_sets=cfg.enrichment.gene_sets,
                organism=cfg.enrichment.organism,
                cutoff=cfg.enrichment.cutoff,
                min_genes=cfg.enrichment.min_genes,
            ),
        )
        if cfg.make_figures:
            plot_utils.plot_enrichment_bars(enrichment)

    LOGGER.info("Finished scwtko pipeline")
    return PipelineResult(adata=adata, markers=markers, condition_de=condition_de, enrichment=enrichment)


# ---------------------------------------------------------------------
# Projection of new data
# ---------------------------------------------------------------------
def run_projection(cfg: ProjectionConfig) -> ad.AnnData:
    LOGGER.info("Starting projection onto %s", cfg.reference_path)
    cfg.output_dir.mkdir(parents=True, exist_ok=True)

    ref = io_utils.load_dataset(cfg.reference_path)
    query = normalize(io_utils.load_condition(cfg.query_dir, cfg.query_label))

    genes = ref.var_names.intersection(query.var_names)
    if "highly_variable" in ref.var:
        genes = genes.intersection(ref.var_names[ref.var["highly_variable"].to_numpy(dtype=bool)])
    if len(genes) < 2:
        raise ValueError(f"Reference and query share only {len(genes)} usable genes")
    LOGGER.info("Projecting on %d shared genes", len(genes))

    manifold = build_reference_manifold(ref, genes=genes, n_comps=cfg.n_comps, n_neighbors=cfg.n_neighbors)
    projected = project_onto_reference(query, manifold, label_key=cfg.label_key, n_neighbors=cfg.n_neighbors)

    io_utils.save_dataset(projected, cfg.output_dir / f"{cfg.query_label}.projected.h5ad")

    if cfg.make_figures:
        plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)
        plot_utils.plot_projection(manifold, projected, label=cfg.query_label)

    LOGGER.info("Finished projection")
    return projected


# ---------------------------------------------------------------------
# Single-stage entry points
# ---------------------------------------------------------------------
def run_qc(cfg: PipelineConfig) -> ad.AnnData:
    """Load both conditions and apply the per-condition outlier filter only."""
    LOGGER.info("Starting QC")
    cfg.output_dir.mkdir(parents=True, exist_ok=True)
    if cfg.make_figures:
        plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    adata = _run_stage(cfg, STAGE_QC, lambda: _qc_stage(cfg))
    LOGGER.info("Finished QC: %d cells retained", adata.n_obs)
    return adata


def run_contrast(
    input_path: Path,
    output_dir: Path,
    contrast: ContrastConfig,
    *,
    make_figures: bool = True,
    figure_formats: Optional[list[str]] = None,
) -> pd.DataFrame:
    """wt vs ko per cluster on an already clustered dataset; writes condition_de.csv."""
    LOGGER.info("Starting condition contrast on %s", input_path)
    output_dir = Path(output_dir)
    adata = io_utils.load_dataset(input_path)

    table = cluster_condition_contrast(
        adata,
        spec=ContrastSpec(
            method=contrast.method,
            min_log_fc=contrast.min_log_fc,
            min_pct=contrast.min_pct,
        ),
        cluster_key=contrast.cluster_key,
        condition_key=contrast.condition_key,
        condition_a=contrast.condition_a,
        condition_b=contrast.condition_b,
        n_jobs=contrast.n_jobs,
    )
    io_utils.save_table(table, output_dir / "condition_de.csv")
    summary = contrast_summary(table)
    io_utils.save_table(summary, output_dir / "condition_de_summary.csv")

    if make_figures:
        plot_utils.setup_scanpy_figs(output_dir / "figures", figure_formats or ["png", "pdf"])
        plot_utils.plot_de_heatmap(top_genes_per_cluster(table, contrast.top_n_markers))
        plot_utils.plot_de_counts(summary)

    LOGGER.info("Finished condition contrast: %d rows", table.shape[0])
    return table
