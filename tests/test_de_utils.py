# tests/test_de_utils.py

import threading

import numpy as np
import pandas as pd
import pytest
import anndata as ad

from scwtko.de_utils import (
    RESULT_COLUMNS,
    ContrastSpec,
    ContrastTestError,
    cluster_condition_contrast,
    contrast_summary,
    find_cluster_markers,
    ordered_cluster_labels,
    scanpy_contrast_test,
    top_genes_per_cluster,
)


# -----------------------------------------------------------------------------
# Synthetic data
# -----------------------------------------------------------------------------
def synthetic_clustered(clusters, conditions, n_genes=20, seed=0):
    """Log-normalized-like AnnData; one row per (cluster, condition) pair entry."""
    rng = np.random.default_rng(seed)
    n = len(clusters)
    X = np.log1p(rng.poisson(1.0, size=(n, n_genes))).astype(np.float32)
    obs = pd.DataFrame(
        {"leiden": [str(c) for c in clusters], "condition": list(conditions)},
        index=[f"cell{i}" for i in range(n)],
    )
    adata = ad.AnnData(X=X, obs=obs)
    adata.var_names = [f"g{i}" for i in range(n_genes)]
    return adata


def balanced(cluster_labels, n_per_group=10, **kwargs):
    clusters, conditions = [], []
    for cl in cluster_labels:
        for cond in ("wt", "ko"):
            clusters += [cl] * n_per_group
            conditions += [cond] * n_per_group
    return synthetic_clustered(clusters, conditions, **kwargs)


def fake_test_factory(n_rows_by_size=True, calls=None, fail_on=None):
    """
    Deterministic stand-in for the two-group test. Returns n_a rows (genes
    g0..g{n_a-1}) so per-cluster counts are predictable.
    """
    lock = threading.Lock()

    def _test(adata, mask_a, mask_b, spec):
        n_a, n_b = int(mask_a.sum()), int(mask_b.sum())
        if calls is not None:
            with lock:
                calls.append((n_a, n_b))
        if n_a == 0 or n_b == 0:
            raise ValueError("empty group")
        if fail_on is not None and n_a == fail_on:
            raise RuntimeError("boom")

        n_rows = n_a if n_rows_by_size else 1
        genes = [f"g{i}" for i in range(n_rows)]
        return pd.DataFrame(
            {
                "scores": np.linspace(5, 1, n_rows),
                "logfoldchanges": np.linspace(2, -2, n_rows),
                "pvals": np.full(n_rows, 1e-3),
                "pvals_adj": np.full(n_rows, 1e-2),
                "pct_a": np.full(n_rows, 0.5),
                "pct_b": np.full(n_rows, 0.5),
            },
            index=pd.Index(genes, name="gene"),
        )

    return _test


# -----------------------------------------------------------------------------
# ordered_cluster_labels
# -----------------------------------------------------------------------------
def test_numeric_labels_sort_numerically():
    assert ordered_cluster_labels(["10", "2", "1", "2"]) == ["1", "2", "10"]
    assert ordered_cluster_labels([3, 0, 11]) == ["0", "3", "11"]


def test_mixed_labels_sort_lexically():
    assert ordered_cluster_labels(["b", "10", "a", "2"]) == ["10", "2", "a", "b"]


# -----------------------------------------------------------------------------
# cluster_condition_contrast (fake test)
# -----------------------------------------------------------------------------
def test_rows_are_concatenated_in_cluster_order():
    # cluster "10" has 3 wt cells, "2" has 2, "1" has 4
    clusters = ["10"] * 6 + ["2"] * 4 + ["1"] * 8
    conditions = ["wt"] * 3 + ["ko"] * 3 + ["wt"] * 2 + ["ko"] * 2 + ["wt"] * 4 + ["ko"] * 4
    adata = synthetic_clustered(clusters, conditions)

    out = cluster_condition_contrast(adata, test=fake_test_factory())

    assert list(out.columns) == RESULT_COLUMNS
    assert out.shape[0] == 4 + 2 + 3
    assert pd.unique(out["cluster"]).tolist() == [1, 2, 10]
    assert out["cluster"].value_counts().to_dict() == {1: 4, 2: 2, 10: 3}

    first = out.loc[out["cluster"] == 2].iloc[0]
    assert first["gene"] == "g0"
    assert first["group_a"] == "2_wt"
    assert first["group_b"] == "2_ko"


def test_within_cluster_order_is_preserved():
    adata = balanced(["0"], n_per_group=5)
    out = cluster_condition_contrast(adata, test=fake_test_factory())
    assert out["gene"].tolist() == ["g0", "g1", "g2", "g3", "g4"]
    assert out["logfoldchanges"].is_monotonic_decreasing


def test_selectors_match_cluster_and_condition():
    clusters = ["0"] * 5 + ["1"] * 7
    conditions = ["wt", "wt", "ko", "ko", "ko"] + ["wt"] * 4 + ["ko"] * 3
    adata = synthetic_clustered(clusters, conditions)

    calls = []
    cluster_condition_contrast(adata, test=fake_test_factory(calls=calls))

    assert calls == [(2, 3), (4, 3)]


def test_same_gene_in_several_clusters_is_kept():
    adata = balanced(["0", "1"], n_per_group=3)
    out = cluster_condition_contrast(adata, test=fake_test_factory())
    assert (out["gene"] == "g0").sum() == 2


def test_cluster_missing_in_one_condition_aborts():
    clusters = ["1"] * 6 + ["2"] * 3
    conditions = ["wt"] * 3 + ["ko"] * 3 + ["wt"] * 3
    adata = synthetic_clustered(clusters, conditions)

    with pytest.raises(ContrastTestError) as exc:
        cluster_condition_contrast(adata, test=fake_test_factory())

    assert exc.value.cluster == 2
    assert exc.value.group_a == "2_wt"
    assert exc.value.group_b == "2_ko"
    assert isinstance(exc.value.__cause__, ValueError)


def test_first_failure_in_cluster_order_is_reported():
    # clusters 0 and 1 both fail; 0 must be the one reported
    clusters = ["1"] * 4 + ["0"] * 4
    conditions = ["wt"] * 4 + ["wt"] * 4
    adata = synthetic_clustered(clusters, conditions)

    with pytest.raises(ContrastTestError) as exc:
        cluster_condition_contrast(adata, test=fake_test_factory(), n_jobs=2)
    assert exc.value.cluster == 0


def test_other_test_errors_are_wrapped():
    adata = balanced(["0", "1"], n_per_group=4)
    # cluster sizes are equal, so every call fails
    with pytest.raises(ContrastTestError, match="boom"):
        cluster_condition_contrast(adata, test=fake_test_factory(fail_on=4))


def test_empty_contribution_adds_no_rows():
    adata = balanced(["0", "1"], n_per_group=3)

    def _test(adata, mask_a, mask_b, spec):
        return pd.DataFrame(columns=["scores", "logfoldchanges", "pvals", "pvals_adj", "pct_a", "pct_b"])

    out = cluster_condition_contrast(adata, test=_test)
    assert out.empty
    assert list(out.columns) == RESULT_COLUMNS


def test_parallel_matches_serial():
    clusters = ["0"] * 6 + ["1"] * 10 + ["2"] * 4 + ["3"] * 8
    conditions = (
        ["wt"] * 3 + ["ko"] * 3
        + ["wt"] * 5 + ["ko"] * 5
        + ["wt"] * 2 + ["ko"] * 2
        + ["wt"] * 4 + ["ko"] * 4
    )
    adata = synthetic_clustered(clusters, conditions)
    test = fake_test_factory()

    serial = cluster_condition_contrast(adata, test=test, n_jobs=1)
    parallel = cluster_condition_contrast(adata, test=test, n_jobs=2)

    pd.testing.assert_frame_equal(serial, parallel)


def test_custom_condition_labels():
    clusters = ["0"] * 6
    conditions = ["ctrl"] * 3 + ["treated"] * 3
    adata = synthetic_clustered(clusters, conditions)

    out = cluster_condition_contrast(
        adata, test=fake_test_factory(), condition_a="ctrl", condition_b="treated"
    )
    assert set(out["group_a"]) == {"0_ctrl"}
    assert set(out["group_b"]) == {"0_treated"}


def test_missing_keys_raise():
    adata = balanced(["0"], n_per_group=2)
    with pytest.raises(KeyError):
        cluster_condition_contrast(adata, test=fake_test_factory(), cluster_key="missing")
    with pytest.raises(KeyError):
        cluster_condition_contrast(adata, test=fake_test_factory(), condition_key="missing")


# -----------------------------------------------------------------------------
# scanpy-backed test
# -----------------------------------------------------------------------------
def test_scanpy_contrast_finds_planted_gene():
    adata = balanced(["0"], n_per_group=30, seed=1)
    is_wt = (adata.obs["condition"] == "wt").to_numpy()
    adata.X[is_wt, 0] = 4.0
    adata.X[~is_wt, 0] = 0.0

    out = cluster_condition_contrast(adata, spec=ContrastSpec(min_log_fc=0.4, min_pct=0.25))

    assert "g0" in out["gene"].tolist()
    row = out.loc[out["gene"] == "g0"].iloc[0]
    assert row["logfoldchanges"] > 0
    assert row["cluster"] == 0
    assert (out["logfoldchanges"].abs() >= 0.4).all()


def test_scanpy_contrast_applies_min_pct_and_keeps_genes_up_in_b():
    adata = balanced(["0"], n_per_group=30, seed=4)
    is_wt = (adata.obs["condition"] == "wt").to_numpy()
    wt_idx = np.where(is_wt)[0]

    # g0: detected in 3/30 wt cells (10%) and no ko cell
    adata.X[:, 0] = 0.0
    adata.X[wt_idx[:3], 0] = 4.0
    # g1: detected only in ko
    adata.X[is_wt, 1] = 0.0
    adata.X[~is_wt, 1] = 4.0

    out = cluster_condition_contrast(adata, spec=ContrastSpec(min_log_fc=0.4, min_pct=0.25))
    genes = out["gene"].tolist()

    assert "g0" not in genes
    assert "g1" in genes

    row = out.loc[out["gene"] == "g1"].iloc[0]
    assert row["logfoldchanges"] < 0
    assert row["pct_a"] == pytest.approx(0.0)
    assert row["pct_b"] == pytest.approx(1.0)

    assert out["pct_a"].notna().all()
    assert out["pct_b"].notna().all()
    assert ((out["pct_a"] >= 0.25) | (out["pct_b"] >= 0.25)).all()


def test_scanpy_contrast_rejects_empty_group():
    adata = balanced(["0"], n_per_group=4)
    mask_a = np.zeros(adata.n_obs, dtype=bool)
    mask_b = ~mask_a
    with pytest.raises(ValueError, match="empty group"):
        scanpy_contrast_test(adata, mask_a, mask_b, ContrastSpec())


def test_scanpy_contrast_rejects_overlap():
    adata = balanced(["0"], n_per_group=4)
    mask = np.ones(adata.n_obs, dtype=bool)
    with pytest.raises(ValueError, match="overlap"):
        scanpy_contrast_test(adata, mask, mask, ContrastSpec())


def test_default_test_aborts_on_single_condition_cluster():
    clusters = ["1"] * 20 + ["2"] * 5
    conditions = ["wt"] * 10 + ["ko"] * 10 + ["wt"] * 5
    adata = synthetic_clustered(clusters, conditions, seed=2)

    with pytest.raises(ContrastTestError) as exc:
        cluster_condition_contrast(adata)
    assert exc.value.cluster == 2


# -----------------------------------------------------------------------------
# Markers
# -----------------------------------------------------------------------------
def test_markers_recover_planted_genes():
    adata = balanced(["0", "1"], n_per_group=15, seed=3)
    in_0 = (adata.obs["leiden"] == "0").to_numpy()
    adata.X[in_0, 0] = 4.0
    adata.X[~in_0, 0] = 0.0
    adata.X[~in_0, 1] = 4.0
    adata.X[in_0, 1] = 0.0

    markers = find_cluster_markers(adata, cluster_key="leiden")

    assert list(markers.columns) == RESULT_COLUMNS
    assert (markers["logfoldchanges"] > 0).all()
    assert (markers["group_b"] == "rest").all()
    assert "g0" in markers.loc[markers["cluster"] == 0, "gene"].tolist()
    assert "g1" in markers.loc[markers["cluster"] == 1, "gene"].tolist()


def test_markers_need_two_clusters():
    adata = balanced(["0"], n_per_group=4)
    with pytest.raises(ValueError, match="at least 2 clusters"):
        find_cluster_markers(adata)


# -----------------------------------------------------------------------------
# Table helpers
# -----------------------------------------------------------------------------
def example_table():
    return pd.DataFrame(
        {
            "gene": ["a", "b", "c", "d", "e"],
            "cluster": [2, 2, 2, 10, 10],
            "logfoldchanges": [0.5, -3.0, 1.0, 2.0, -0.6],
        }
    )


def test_top_genes_per_cluster_by_absolute_lfc():
    top = top_genes_per_cluster(example_table(), n=2)
    assert top["gene"].tolist() == ["b", "c", "d", "e"]


def test_top_genes_per_cluster_signed():
    top = top_genes_per_cluster(example_table(), n=1, absolute=False)
    assert top["gene"].tolist() == ["c", "d"]


def test_top_genes_on_empty_table():
    empty = pd.DataFrame(columns=RESULT_COLUMNS)
    assert top_genes_per_cluster(empty).empty


def test_contrast_summary_counts():
    summary = contrast_summary(example_table())
    assert summary["cluster"].tolist() == [2, 10]
    assert summary["n_genes"].tolist() == [3, 2]
    assert summary["n_up"].tolist() == [2, 1]
    assert summary["n_down"].tolist() == [1, 1]


def test_contrast_summary_empty():
    summary = contrast_summary(pd.DataFrame(columns=RESULT_COLUMNS))
    assert summary.empty
    assert list(summary.columns) == ["cluster", "n_genes", "n_up", "n_down"]
