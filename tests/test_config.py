import pytest
from pathlib import Path

from scwtko.config import (
    ContrastConfig,
    EnrichmentConfig,
    IntegrationConfig,
    PipelineConfig,
    ProjectionConfig,
    QCConfig,
)


# -------------------------------------------------------------------------
# Stage configs
# -------------------------------------------------------------------------
def test_qc_defaults():
    cfg = QCConfig()
    assert cfg.mt_prefix == "mt-"
    assert cfg.max_pct_mt == 5.0
    assert cfg.iqr_multiplier == 1.5


def test_qc_mito_cap_is_percent_scale():
    with pytest.raises(ValueError):
        QCConfig(max_pct_mt=0)
    with pytest.raises(ValueError):
        QCConfig(max_pct_mt=500)


def test_integration_defaults():
    cfg = IntegrationConfig()
    assert cfg.regress_umi is False
    assert cfg.use_harmony is True
    assert cfg.n_top_genes == 2000


def test_contrast_conditions_must_differ():
    with pytest.raises(ValueError, match="must differ"):
        ContrastConfig(condition_a="wt", condition_b="wt")


def test_contrast_method_is_validated():
    with pytest.raises(ValueError):
        ContrastConfig(method="bogus")
    assert ContrastConfig(method="t-test").method == "t-test"


def test_contrast_min_pct_range():
    with pytest.raises(ValueError):
        ContrastConfig(min_pct=1.5)


def test_enrichment_defaults():
    cfg = EnrichmentConfig()
    assert cfg.source == "markers"
    assert "GO_Biological_Process_2021" in cfg.gene_sets
    with pytest.raises(ValueError):
        EnrichmentConfig(source="everything")


# -------------------------------------------------------------------------
# PipelineConfig
# -------------------------------------------------------------------------
def test_pipeline_paths(tmp_path):
    cfg = PipelineConfig(wt_dir=tmp_path / "wt", ko_dir=tmp_path / "ko", output_dir=tmp_path / "out")

    assert cfg.figdir == tmp_path / "out" / "figures"
    assert cfg.checkpoint_dir == tmp_path / "out" / "checkpoints"
    assert cfg.condition_dirs == {"wt": tmp_path / "wt", "ko": tmp_path / "ko"}
    assert list(cfg.condition_dirs) == ["wt", "ko"]


def test_pipeline_condition_dirs_follow_contrast_labels(tmp_path):
    cfg = PipelineConfig(
        wt_dir=tmp_path / "a",
        ko_dir=tmp_path / "b",
        output_dir=tmp_path / "out",
        contrast=ContrastConfig(condition_a="ctrl", condition_b="mut"),
    )
    assert cfg.condition_dirs == {"ctrl": tmp_path / "a", "mut": tmp_path / "b"}


def test_pipeline_rejects_same_input_dirs(tmp_path):
    with pytest.raises(ValueError, match="different"):
        PipelineConfig(wt_dir=tmp_path, ko_dir=tmp_path, output_dir=tmp_path / "out")


def test_pipeline_condition_keys_must_match(tmp_path):
    with pytest.raises(ValueError, match="must match"):
        PipelineConfig(
            wt_dir=tmp_path / "wt",
            ko_dir=tmp_path / "ko",
            output_dir=tmp_path / "out",
            qc=QCConfig(condition_key="genotype"),
        )


def test_pipeline_figure_formats(tmp_path):
    base = dict(wt_dir=tmp_path / "wt", ko_dir=tmp_path / "ko", output_dir=tmp_path / "out")

    cfg = PipelineConfig(**base, figure_formats=["PNG", "svg"])
    assert cfg.figure_formats == ["png", "svg"]

    with pytest.raises(ValueError, match="Unsupported figure format"):
        PipelineConfig(**base, figure_formats=["docx"])


def test_pipeline_checkpoint_format(tmp_path):
    base = dict(wt_dir=tmp_path / "wt", ko_dir=tmp_path / "ko", output_dir=tmp_path / "out")
    assert PipelineConfig(**base, checkpoint_format="zarr").checkpoint_format == "zarr"
    with pytest.raises(ValueError):
        PipelineConfig(**base, checkpoint_format="loom")


# -------------------------------------------------------------------------
# ProjectionConfig
# -------------------------------------------------------------------------
def test_projection_config(tmp_path):
    cfg = ProjectionConfig(
        reference_path=tmp_path / "ref.h5ad",
        query_dir=tmp_path / "new",
        output_dir=tmp_path / "out",
    )
    assert cfg.label_key == "leiden"
    assert cfg.figdir == Path(tmp_path / "out" / "figures")

    with pytest.raises(ValueError):
        ProjectionConfig(reference_path="r.h5ad", query_dir="q", output_dir="o", n_comps=1)
