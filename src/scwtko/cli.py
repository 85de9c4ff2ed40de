from __future__ import annotations
from typing import List, Optional
import logging
from pathlib import Path

import typer
from pydantic import ValidationError

from .config import (
    ContrastConfig,
    EnrichmentConfig,
    IntegrationConfig,
    PipelineConfig,
    ProjectionConfig,
    QCConfig,
    _check_figure_format,
)
from .logging_utils import init_logging, silence_library_warnings
from .pipeline import run_contrast, run_pipeline, run_projection, run_qc

app = typer.Typer(help="scwtko CLI: wild-type vs knockout scRNA-seq analysis pipeline.")

silence_library_warnings()


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _split_csv(values: Optional[List[str]]) -> Optional[List[str]]:
    """Supports e.g. --gene-sets A,B --gene-sets C."""
    if values is None:
        return None
    out = []
    for v in values:
        out.extend([x.strip() for x in v.split(",") if x.strip()])
    return out


def _build(model, **kwargs):
    try:
        return model(**kwargs)
    except ValidationError as e:
        raise typer.BadParameter(str(e))


# ======================================================================
#  run
# ======================================================================
@app.command("run", help="Full pipeline: QC, integration, clustering, markers, wt-vs-ko DE, enrichment.")
def run(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    wt_dir: Path = typer.Option(..., "--wt-dir", help="[I/O] 10x-style matrix directory of the wild-type sample."),
    ko_dir: Path = typer.Option(..., "--ko-dir", help="[I/O] 10x-style matrix directory of the knockout sample."),
    output_dir: Path = typer.Option(..., "--out", "-o", help="[I/O] Output directory."),
    resume: bool = typer.Option(True, "--resume/--no-resume", help="[I/O] Reuse stage checkpoints in <out>/checkpoints."),
    checkpoint_format: str = typer.Option("h5ad", "--checkpoint-format", help="[I/O] h5ad | zarr"),

    # -------------------------------------------------------------
    # QC
    # -------------------------------------------------------------
    max_pct_mt: float = typer.Option(5.0, help="[QC] Hard cap on mitochondrial percentage (0-100)."),
    mt_prefix: str = typer.Option("mt-", help="[QC] Mitochondrial gene prefix."),
    min_cells: int = typer.Option(3, help="[QC] Minimum cells per gene."),

    # -------------------------------------------------------------
    # Integration / clustering
    # -------------------------------------------------------------
    regress_umi: bool = typer.Option(
        False, "--regress-umi/--no-regress-umi",
        help="[Clustering] Regress total UMI counts out before PCA.",
    ),
    n_top_genes: int = typer.Option(2000, help="[Clustering] Number of highly variable genes."),
    n_pcs: int = typer.Option(30, help="[Clustering] Maximum number of PCs."),
    resolution: float = typer.Option(0.5, help="[Clustering] Leiden resolution."),
    use_harmony: bool = typer.Option(True, "--harmony/--no-harmony", help="[Clustering] Harmony over condition."),

    # -------------------------------------------------------------
    # DE
    # -------------------------------------------------------------
    method: str = typer.Option("wilcoxon", help="[DE] wilcoxon | t-test | t-test_overestim_var"),
    min_log_fc: float = typer.Option(0.4, help="[DE] Minimum |log fold-change|."),
    min_pct: float = typer.Option(0.25, help="[DE] Minimum detection fraction in either group."),
    n_jobs: int = typer.Option(1, "--n-jobs", help="[DE] Clusters tested in parallel."),

    # -------------------------------------------------------------
    # Enrichment
    # -------------------------------------------------------------
    run_enrichment: bool = typer.Option(True, "--enrichment/--no-enrichment", help="[Enrichment] Run Enrichr per cluster."),
    gene_sets: Optional[List[str]] = typer.Option(
        None, "--gene-sets",
        help="[Enrichment] Enrichr libraries, comma-separated (default: GO BP 2021 + KEGG mouse).",
    ),
    organism: str = typer.Option("mouse", help="[Enrichment] Enrichr organism."),

    # -------------------------------------------------------------
    # Figures
    # -------------------------------------------------------------
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create plots."),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F", help="[Figures] Formats to save."),
):
    logfile = output_dir / "run.log"
    init_logging(logfile)

    enrichment_kwargs = dict(run_enrichment=run_enrichment, organism=organism)
    if gene_sets:
        enrichment_kwargs["gene_sets"] = _split_csv(gene_sets)

    cfg = _build(
        PipelineConfig,
        wt_dir=wt_dir,
        ko_dir=ko_dir,
        output_dir=output_dir,
        resume=resume,
        checkpoint_format=checkpoint_format,
        qc=_build(QCConfig, max_pct_mt=max_pct_mt, mt_prefix=mt_prefix, min_cells=min_cells),
        integration=_build(
            IntegrationConfig,
            regress_umi=regress_umi,
            n_top_genes=n_top_genes,
            n_pcs=n_pcs,
            resolution=resolution,
            use_harmony=use_harmony,
        ),
        contrast=_build(ContrastConfig, method=method, min_log_fc=min_log_fc, min_pct=min_pct, n_jobs=n_jobs),
        enrichment=_build(EnrichmentConfig, **enrichment_kwargs),
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )

    run_pipeline(cfg)


# ======================================================================
#  qc
# ======================================================================
@app.command("qc", help="Per-condition IQR outlier filter only.")
def qc(
    wt_dir: Path = typer.Option(..., "--wt-dir", help="[I/O] Wild-type matrix directory."),
    ko_dir: Path = typer.Option(..., "--ko-dir", help="[I/O] Knockout matrix directory."),
    output_dir: Path = typer.Option(..., "--out", "-o", help="[I/O] Output directory."),
    max_pct_mt: float = typer.Option(5.0, help="[QC] Hard cap on mitochondrial percentage (0-100)."),
    mt_prefix: str = typer.Option("mt-", help="[QC] Mitochondrial gene prefix."),
    min_cells: int = typer.Option(3, help="[QC] Minimum cells per gene."),
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create QC plots."),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F"),
):
    logfile = output_dir / "qc.log"
    init_logging(logfile)

    cfg = _build(
        PipelineConfig,
        wt_dir=wt_dir,
        ko_dir=ko_dir,
        output_dir=output_dir,
        resume=False,
        qc=_build(QCConfig, max_pct_mt=max_pct_mt, mt_prefix=mt_prefix, min_cells=min_cells),
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_qc(cfg)


# ======================================================================
#  contrast
# ======================================================================
@app.command("contrast", help="wt vs ko differential expression within each cluster of a clustered dataset.")
def contrast(
    input_path: Path = typer.Option(..., "--input", "-i", help="[I/O] Clustered dataset (.h5ad or .zarr)."),
    output_dir: Optional[Path] = typer.Option(None, "--out", "-o", help="[I/O] Output directory (default = input parent)."),
    cluster_key: str = typer.Option("leiden", "--cluster-key", help="Cluster column in .obs."),
    condition_key: str = typer.Option("condition", "--condition-key", help="Condition column in .obs."),
    condition_a: str = typer.Option("wt", "--condition-a", help="First group of each contrast."),
    condition_b: str = typer.Option("ko", "--condition-b", help="Second group of each contrast."),
    method: str = typer.Option("wilcoxon", help="[DE] wilcoxon | t-test | t-test_overestim_var"),
    min_log_fc: float = typer.Option(0.4, help="[DE] Minimum |log fold-change|."),
    min_pct: float = typer.Option(0.25, help="[DE] Minimum detection fraction in either group."),
    n_jobs: int = typer.Option(1, "--n-jobs", help="[DE] Clusters tested in parallel."),
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create plots."),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F"),
):
    output_dir = output_dir or input_path.parent
    init_logging(output_dir / "contrast.log")

    cfg = _build(
        ContrastConfig,
        cluster_key=cluster_key,
        condition_key=condition_key,
        condition_a=condition_a,
        condition_b=condition_b,
        method=method,
        min_log_fc=min_log_fc,
        min_pct=min_pct,
        n_jobs=n_jobs,
    )
    try:
        figure_formats = [_check_figure_format(f) for f in figure_formats]
    except ValueError as e:
        raise typer.BadParameter(str(e))

    run_contrast(input_path, output_dir, cfg, make_figures=make_figures, figure_formats=figure_formats)


# ======================================================================
#  project
# ======================================================================
@app.command("project", help="Project new cells onto the diffusion map of a clustered reference.")
def project(
    reference_path: Path = typer.Option(..., "--reference", "-r", help="[I/O] Clustered reference (.h5ad or .zarr)."),
    query_dir: Path = typer.Option(..., "--query-dir", "-q", help="[I/O] 10x-style matrix directory of the new data."),
    output_dir: Path = typer.Option(..., "--out", "-o", help="[I/O] Output directory."),
    query_label: str = typer.Option("query", "--query-label", help="Label for the projected cells."),
    label_key: str = typer.Option("leiden", "--label-key", help="Reference labels transferred to the query."),
    n_comps: int = typer.Option(15, help="Diffusion components."),
    n_neighbors: int = typer.Option(15, help="Reference neighbors per query cell."),
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create plots."),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F"),
):
    logfile = output_dir / "project.log"
    init_logging(logfile)
    logging.getLogger(__name__).info("Logging initialized")

    cfg = _build(
        ProjectionConfig,
        reference_path=reference_path,
        query_dir=query_dir,
        output_dir=output_dir,
        query_label=query_label,
        label_key=label_key,
        n_comps=n_comps,
        n_neighbors=n_neighbors,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_projection(cfg)


if __name__ == "__main__":
    app()
