# src/scwtko/qc_utils.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from .config import QCConfig

LOGGER = logging.getLogger(__name__)

# Metrics with quartile-derived fences that are applied
BOUNDED_METRICS = ("n_genes_by_counts", "total_counts")
# Mitochondrial percentage: fences are computed for the log only, the hard cap decides
MT_METRIC = "pct_counts_mt"
QC_METRICS = BOUNDED_METRICS + (MT_METRIC,)


class InvalidInputError(ValueError):
    """A QC metric column cannot be summarized (empty, all-NaN or non-finite)."""


@dataclass(frozen=True)
class OutlierBounds:
    """Acceptance interval for one metric in one condition."""
    metric: str
    lower: float
    upper: float
    q1: float
    q3: float

    @property
    def iqr(self) -> float:
        return self.q3 - self.q1

    def accepts(self, values) -> np.ndarray:
        # Open interval; a constant column (IQR == 0) therefore rejects everything
        v = np.asarray(values, dtype=float)
        return (v > self.lower) & (v < self.upper)


# -----------------------------------------------------------------------------
# Bounds
# -----------------------------------------------------------------------------
def iqr_bounds(
    values: Sequence[float],
    *,
    metric: str = "metric",
    multiplier: float = 1.5,
) -> OutlierBounds:
    """
    Tukey fences (Q1 - k*IQR, Q3 + k*IQR) of a single metric.

    Quartiles use linear interpolation for both Q1 and Q3. The lower fence is
    not clamped at zero. NaNs are ignored; an empty or all-NaN input raises
    InvalidInputError.
    """
    arr = np.asarray(values, dtype=float).ravel()
    arr = arr[~np.isnan(arr)]

    if arr.size == 0:
        raise InvalidInputError(f"QC metric '{metric}' has no finite values; cannot compute quartiles")
    if not np.all(np.isfinite(arr)):
        raise InvalidInputError(f"QC metric '{metric}' contains infinite values")

    q1, q3 = np.quantile(arr, [0.25, 0.75], method="linear")
    iqr = q3 - q1

    return OutlierBounds(
        metric=metric,
        lower=float(q1 - multiplier * iqr),
        upper=float(q3 + multiplier * iqr),
        q1=float(q1),
        q3=float(q3),
    )


def condition_qc_bounds(obs: pd.DataFrame, cfg: QCConfig) -> Dict[str, OutlierBounds]:
    """Bounds for every QC metric of ONE condition's cells."""
    missing = [m for m in QC_METRICS if m not in obs.columns]
    if missing:
        raise KeyError(f"QC metrics missing from obs: {missing}. Run compute_qc_metrics first.")

    return {
        m: iqr_bounds(obs[m].to_numpy(), metric=m, multiplier=cfg.iqr_multiplier)
        for m in QC_METRICS
    }


def qc_keep_mask(obs: pd.DataFrame, bounds: Dict[str, OutlierBounds], cfg: QCConfig) -> np.ndarray:
    """
    lower < n_genes < upper  AND  lower < total_counts < upper  AND  pct_mt < max_pct_mt
    """
    keep = np.ones(obs.shape[0], dtype=bool)
    for m in BOUNDED_METRICS:
        keep &= bounds[m].accepts(obs[m].to_numpy())

    keep &= obs[MT_METRIC].to_numpy(dtype=float) < float(cfg.max_pct_mt)
    return keep


# -----------------------------------------------------------------------------
# AnnData-level steps
# -----------------------------------------------------------------------------
def compute_qc_metrics(adata: ad.AnnData, cfg: QCConfig) -> ad.AnnData:
    adata = adata.copy()
    adata.var["mt"] = adata.var_names.str.lower().str.startswith(cfg.mt_prefix.lower())
    if not adata.var["mt"].any():
        LOGGER.warning("No genes match mt_prefix='%s'; pct_counts_mt will be 0.", cfg.mt_prefix)

    sc.pp.calculate_qc_metrics(adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True)
    return adata


def filter_cells_by_condition(adata: ad.AnnData, cfg: QCConfig) -> Tuple[ad.AnnData, pd.DataFrame]:
    """
    Apply the outlier filter separately to each condition and return
    (filtered copy, per-condition/per-metric report).
    """
    key = cfg.condition_key
    if key not in adata.obs:
        raise KeyError(f"condition_key '{key}' not found in adata.obs")

    labels = adata.obs[key].astype(str).to_numpy()
    keep = np.zeros(adata.n_obs, dtype=bool)
    rows = []

    for cond in pd.unique(labels):
        in_cond = labels == cond
        obs_c = adata.obs.loc[in_cond]

        try:
            bounds = condition_qc_bounds(obs_c, cfg)
        except InvalidInputError as e:
            raise InvalidInputError(f"condition '{cond}': {e}") from e

        keep_c = qc_keep_mask(obs_c, bounds, cfg)
        keep[np.where(in_cond)[0]] = keep_c

        n_before = int(in_cond.sum())
        n_after = int(keep_c.sum())

        for m, b in bounds.items():
            values = obs_c[m].to_numpy(dtype=float)
            if m == MT_METRIC:
                rejected = int((values >= cfg.max_pct_mt).sum())
                LOGGER.info(
                    "[QC] %s %s: IQR fence upper=%.3f (diagnostic), hard cap %.2f rejects %d cells",
                    cond, m, b.upper, cfg.max_pct_mt, rejected,
                )
            else:
                rejected = int((~b.accepts(values)).sum())
                LOGGER.info(
                    "[QC] %s %s: Q1=%.1f Q3=%.1f bounds=(%.1f, %.1f) rejects %d cells",
                    cond, m, b.q1, b.q3, b.lower, b.upper, rejected,
                )

            rows.append(
                dict(
                    condition=str(cond),
                    metric=m,
                    q1=b.q1,
                    q3=b.q3,
                    lower=b.lower,
                    upper=b.upper,
                    applied_upper=float(cfg.max_pct_mt) if m == MT_METRIC else b.upper,
                    n_rejected=rejected,
                    n_cells_before=n_before,
                    n_cells_after=n_after,
                )
            )

        LOGGER.info("[QC] %s: %d → %d cells retained", cond, n_before, n_after)

    out = adata[keep].copy()
    if cfg.min_cells > 0:
        n_genes = out.n_vars
        sc.pp.filter_genes(out, min_cells=cfg.min_cells)
        LOGGER.info("[QC] Gene filter (min_cells=%d): %d → %d genes", cfg.min_cells, n_genes, out.n_vars)

    return out, pd.DataFrame(rows)
