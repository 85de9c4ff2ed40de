from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Literal, Optional

from matplotlib.figure import Figure
from pydantic import BaseModel, Field, field_validator, model_validator


def _check_figure_format(fmt: str) -> str:
    supported = Figure().canvas.get_supported_filetypes()
    fmt = fmt.lower()
    if fmt not in supported:
        raise ValueError(
            f"Unsupported figure format '{fmt}'. "
            f"Supported formats include: {', '.join(sorted(supported))}"
        )
    return fmt


# ---------------------------------------------------------------------
# QC
# ---------------------------------------------------------------------
class QCConfig(BaseModel):
    condition_key: str = "condition"

    # Mouse gene symbols ("mt-Co1"); matched case-insensitively
    mt_prefix: str = "mt-"

    # Genes detected in fewer cells than this are dropped
    min_cells: int = Field(3, ge=0)

    # Tukey fences: Q1 - k*IQR, Q3 + k*IQR
    iqr_multiplier: float = Field(1.5, ge=0.0)

    # Hard cap on pct_counts_mt, 0-100 scale (5 == 5%)
    max_pct_mt: float = Field(5.0, gt=0.0, le=100.0)


# ---------------------------------------------------------------------
# Integration + clustering
# ---------------------------------------------------------------------
class IntegrationConfig(BaseModel):
    n_top_genes: int = Field(2000, ge=1)
    n_pcs: int = Field(30, ge=2)
    n_neighbors: int = Field(15, ge=2)
    resolution: float = Field(0.5, gt=0.0)
    random_state: int = 42

    # Regress total UMI counts out before PCA (second clustering variant)
    regress_umi: bool = False

    # Harmony over the condition key; when False PCA is used directly
    use_harmony: bool = True
    max_scale_value: float = 10.0


# ---------------------------------------------------------------------
# Condition contrast
# ---------------------------------------------------------------------
class ContrastConfig(BaseModel):
    cluster_key: str = "leiden"
    condition_key: str = "condition"
    condition_a: str = "wt"
    condition_b: str = "ko"

    method: Literal["wilcoxon", "t-test", "t-test_overestim_var"] = "wilcoxon"
    min_log_fc: float = Field(0.4, ge=0.0)
    min_pct: float = Field(0.25, ge=0.0, le=1.0)

    # Cluster-level parallelism; output order does not depend on it
    n_jobs: int = 1

    # Markers (cluster vs rest)
    markers_only_pos: bool = True
    top_n_markers: int = Field(10, ge=1)

    @model_validator(mode="after")
    def check_conditions(self):
        if self.condition_a == self.condition_b:
            raise ValueError(
                f"condition_a and condition_b must differ (both '{self.condition_a}')"
            )
        return self


# ---------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------
class EnrichmentConfig(BaseModel):
    run_enrichment: bool = True
    # Which per-cluster gene table feeds Enrichr
    source: Literal["markers", "condition_de"] = "markers"
    gene_sets: List[str] = Field(
        default_factory=lambda: ["GO_Biological_Process_2021", "KEGG_2019_Mouse"],
        description="Enrichr library names queried per cluster.",
    )
    organism: str = "mouse"
    cutoff: float = Field(0.05, gt=0.0, le=1.0)

    # Genes per cluster sent to Enrichr (ranked by |logFC|)
    top_n_genes: int = Field(100, ge=1)
    min_genes: int = Field(5, ge=1)


# ---------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------
class PipelineConfig(BaseModel):
    # ---- Input ----
    wt_dir: Path
    ko_dir: Path

    # ---- Output ----
    output_dir: Path
    resume: bool = True
    checkpoint_format: Literal["h5ad", "zarr"] = "h5ad"

    # ---- Stages ----
    qc: QCConfig = Field(default_factory=QCConfig)
    integration: IntegrationConfig = Field(default_factory=IntegrationConfig)
    contrast: ContrastConfig = Field(default_factory=ContrastConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)

    # ---- Figures ----
    make_figures: bool = True
    figdir_name: str = "figures"
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def figdir(self) -> Path:
        return self.output_dir / self.figdir_name

    @property
    def checkpoint_dir(self) -> Path:
        return self.output_dir / "checkpoints"

    @property
    def condition_dirs(self) -> Dict[str, Path]:
        """Condition label -> input directory, in contrast order (A, B)."""
        return {
            self.contrast.condition_a: self.wt_dir,
            self.contrast.condition_b: self.ko_dir,
        }

    @field_validator("figure_formats")
    @classmethod
    def validate_formats(cls, v: List[str]) -> List[str]:
        return [_check_figure_format(fmt) for fmt in v]

    @model_validator(mode="after")
    def check_inputs(self):
        if Path(self.wt_dir) == Path(self.ko_dir):
            raise ValueError("wt_dir and ko_dir must be different directories")
        if self.qc.condition_key != self.contrast.condition_key:
            raise ValueError(
                f"qc.condition_key ('{self.qc.condition_key}') and contrast.condition_key "
                f"('{self.contrast.condition_key}') must match"
            )
        return self


# ---------------------------------------------------------------------
# Projection onto a reference manifold
# ---------------------------------------------------------------------
class ProjectionConfig(BaseModel):
    reference_path: Path = Field(..., description="Clustered reference (.h5ad or .zarr)")
    query_dir: Path = Field(..., description="10x-style directory with the new data")
    query_label: str = "query"
    output_dir: Path

    label_key: str = "leiden"
    n_comps: int = Field(15, ge=2)
    n_neighbors: int = Field(15, ge=1)

    make_figures: bool = True
    figdir_name: str = "figures"
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    logfile: Optional[Path] = None

    @property
    def figdir(self) -> Path:
        return self.output_dir / self.figdir_name

    @field_validator("figure_formats")
    @classmethod
    def validate_formats(cls, v: List[str]) -> List[str]:
        return [_check_figure_format(fmt) for fmt in v]
