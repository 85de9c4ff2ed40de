from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import anndata as ad
import pandas as pd
import scanpy as sc

LOGGER = logging.getLogger(__name__)

Checkpoint = Union[ad.AnnData, pd.DataFrame]


# =====================================================================
# 10x-style input
# =====================================================================
def _check_mtx_dir(directory: Path) -> None:
    if not directory.is_dir():
        raise FileNotFoundError(f"Input directory not found: {directory}")

    has_matrix = any((directory / f).exists() for f in ("matrix.mtx", "matrix.mtx.gz"))
    has_genes = any(
        (directory / f).exists()
        for f in ("genes.tsv", "genes.tsv.gz", "features.tsv", "features.tsv.gz")
    )
    has_barcodes = any((directory / f).exists() for f in ("barcodes.tsv", "barcodes.tsv.gz"))

    if not (has_matrix and has_genes and has_barcodes):
        raise FileNotFoundError(
            f"{directory} must contain matrix.mtx, genes.tsv/features.tsv and barcodes.tsv "
            f"(optionally gzipped)"
        )


def load_condition(directory: Path, condition: str, *, condition_key: str = "condition") -> ad.AnnData:
    """
    Read one condition's sparse triplet matrix + gene/barcode listings.

    Barcodes get a "-<condition>" suffix so both conditions can be concatenated.
    """
    directory = Path(directory)
    _check_mtx_dir(directory)

    adata = sc.read_10x_mtx(str(directory), var_names="gene_symbols", cache=False)
    adata.var_names_make_unique()
    adata.obs_names = [f"{bc}-{condition}" for bc in adata.obs_names]
    adata.obs[condition_key] = condition

    LOGGER.info(
        "[I/O] Loaded %s from %s: %d cells × %d genes, %.2e UMIs",
        condition, directory, adata.n_obs, adata.n_vars, float(adata.X.sum()),
    )
    return adata


def load_conditions(
    condition_dirs: Dict[str, Path],
    *,
    condition_key: str = "condition",
) -> Dict[str, ad.AnnData]:
    return {
        cond: load_condition(path, cond, condition_key=condition_key)
        for cond, path in condition_dirs.items()
    }


def load_dataset(path: Path) -> ad.AnnData:
    """Load an .h5ad file or a .zarr store into memory."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")

    if path.suffix == ".zarr" or path.is_dir():
        LOGGER.info("Loading Zarr store → %s", path)
        return ad.read_zarr(str(path))

    LOGGER.info("Loading H5AD → %s", path)
    return ad.read_h5ad(str(path))


# =====================================================================
# Saving
# =====================================================================
def save_dataset(adata: ad.AnnData, out_path: Path, fmt: Literal["h5ad", "zarr"] = "h5ad") -> Path:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    if fmt == "zarr":
        if out_path.exists():
            shutil.rmtree(out_path)
        adata.write_zarr(str(out_path))
    elif fmt == "h5ad":
        adata.write(str(out_path), compression="gzip")
    else:
        raise ValueError(f"Unknown dataset format '{fmt}' (expected 'h5ad' or 'zarr')")

    LOGGER.info("Wrote %s", out_path)
    return out_path


def save_table(df: pd.DataFrame, out_path: Path) -> Path:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    sep = "\t" if out_path.suffix == ".tsv" else ","
    df.to_csv(out_path, sep=sep, index=False)
    LOGGER.info("Wrote table %s (%d rows)", out_path, df.shape[0])
    return out_path


# =====================================================================
# Stage checkpoints
# =====================================================================
def _checkpoint_candidates(out_dir: Path, stage: str) -> Dict[str, Path]:
    return {
        "h5ad": out_dir / f"{stage}.h5ad",
        "zarr": out_dir / f"{stage}.zarr",
        "csv": out_dir / f"{stage}.csv",
    }


def checkpoint_path(out_dir: Path, stage: str) -> Optional[Path]:
    """Existing snapshot of `stage`, or None."""
    for p in _checkpoint_candidates(Path(out_dir), stage).values():
        if p.exists():
            return p
    return None


def has_checkpoint(out_dir: Path, stage: str) -> bool:
    return checkpoint_path(out_dir, stage) is not None


def save_checkpoint(
    obj: Checkpoint,
    out_dir: Path,
    stage: str,
    *,
    fmt: Literal["h5ad", "zarr"] = "h5ad",
) -> Path:
    """Snapshot a stage result: AnnData as h5ad/zarr, tables as csv."""
    paths = _checkpoint_candidates(Path(out_dir), stage)

    if isinstance(obj, ad.AnnData):
        out = save_dataset(obj, paths[fmt], fmt=fmt)
    elif isinstance(obj, pd.DataFrame):
        out = save_table(obj, paths["csv"])
    else:
        raise TypeError(f"Cannot checkpoint object of type {type(obj).__name__}")

    LOGGER.info("Checkpoint '%s' saved → %s", stage, out)
    return out


def load_checkpoint(out_dir: Path, stage: str) -> Checkpoint:
    path = checkpoint_path(out_dir, stage)
    if path is None:
        raise FileNotFoundError(f"No checkpoint for stage '{stage}' in {out_dir}")

    LOGGER.info("Resuming stage '%s' from %s", stage, path)
    if path.suffix == ".csv":
        return pd.read_csv(path)
    return load_dataset(path)


def stage_settings_path(out_dir: Path, stage: str) -> Path:
    return Path(out_dir) / f"{stage}.settings.json"


def save_stage_settings(out_dir: Path, stage: str, settings: Dict[str, Any]) -> Path:
    """Record the parameters a checkpoint was computed with."""
    path = stage_settings_path(out_dir, stage)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings, indent=2, sort_keys=True, default=str))
    return path


def load_stage_settings(out_dir: Path, stage: str) -> Optional[Dict[str, Any]]:
    path = stage_settings_path(out_dir, stage)
    if not path.exists():
        return None
    return json.loads(path.read_text())
