from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as spr

from backend.data import summaries
from backend.data.enrichment_tables import prepare_enrichment_table, significant_genes, to_json_records
from backend.errors import PreconditionError
from conftest import build_adata


def test_describe_reports_quantiles() -> None:
    stats = summaries.describe([1, 2, 3, 4, 5])

    assert stats["min"] == 1.0
    assert stats["median"] == 3.0
    assert stats["max"] == 5.0
    assert stats["q1"] == 2.0
    assert stats["mean"] == 3.0


def test_quality_summary_ignores_unknown_metrics() -> None:
    adata = build_adata()

    fields = summaries.quality_summary(adata, metrics=["pct_counts_mt", "not_a_column"])

    assert fields["n_cells"] == 40
    assert [metric["name"] for metric in fields["metric_summaries"]] == ["pct_counts_mt"]
    metric = fields["metric_summaries"][0]
    assert metric["summary"]["min"] == 5.0  # zeros are excluded
    assert metric["p95"] == 5.0


def test_quality_summary_accepts_seurat_style_names() -> None:
    adata = build_adata()
    adata.obs = adata.obs.rename(columns={"total_counts": "nCount_RNA", "n_genes_by_counts": "nFeature_RNA"})

    fields = summaries.quality_summary(adata)

    assert fields["count_summary"]["max"] == float(adata.obs["nCount_RNA"].max())


def test_quality_summary_requires_qc_metrics() -> None:
    adata = build_adata()
    del adata.obs["total_counts"]

    with pytest.raises(PreconditionError) as excinfo:
        summaries.quality_summary(adata)

    assert excinfo.value.precondition == "qc_metrics"
    assert "calculate_qc_metrics" in str(excinfo.value)


def test_normalization_summary_uses_counts_layer() -> None:
    adata = build_adata()
    adata.X = np.log1p(adata.X)
    counts = adata.layers["counts"]

    fields = summaries.normalization_summary(adata)

    nonzero = counts[counts != 0]
    assert fields["expression_mean"] == pytest.approx(nonzero.mean())
    assert fields["expression_sd"] == pytest.approx(nonzero.std(ddof=1))
    library = counts.sum(axis=1)
    assert fields["library_size_cv"] == pytest.approx(library.std(ddof=1) / library.mean())


def test_normalization_summary_handles_sparse_counts() -> None:
    adata = build_adata()
    dense = adata.layers["counts"].copy()
    adata.layers["counts"] = spr.csr_matrix(dense)

    fields = summaries.normalization_summary(adata)

    assert fields["expression_mean"] == pytest.approx(dense[dense != 0].mean())


def test_variable_features_ordered_by_rank() -> None:
    assert summaries.variable_features(build_adata(), top_n=3) == ["GENE4", "GENE3", "GENE2"]


def test_variable_features_requires_hvg() -> None:
    adata = build_adata()
    del adata.var["highly_variable"]

    with pytest.raises(PreconditionError) as excinfo:
        summaries.variable_features(adata)

    assert excinfo.value.precondition == "highly_variable_genes"


def test_pc_top_genes_by_absolute_loading() -> None:
    genes = summaries.pc_top_genes(build_adata(), num_pcs=2, top_n=2)

    assert genes == [["GENE0", "GENE1"], ["GENE19", "GENE18"]]


def test_pc_top_genes_requires_pca() -> None:
    adata = build_adata()
    del adata.varm["PCs"]

    with pytest.raises(PreconditionError, match="PCA"):
        summaries.pc_top_genes(adata)


def test_pc_top_genes_rejects_too_many_pcs() -> None:
    with pytest.raises(ValueError, match="num_pcs"):
        summaries.pc_top_genes(build_adata(), num_pcs=4)


def test_variance_explained_in_percent() -> None:
    assert summaries.pca_variance_explained(build_adata()) == pytest.approx([50.0, 30.0, 20.0])


def test_variance_explained_uses_share_of_computed_components() -> None:
    adata = build_adata()
    adata.uns["pca"] = {"variance": np.array([6.0, 3.0, 1.0]), "variance_ratio": np.array([0.06, 0.03, 0.01])}

    percentages = summaries.pca_variance_explained(adata)

    assert percentages == pytest.approx([60.0, 30.0, 10.0])
    assert sum(percentages) == pytest.approx(100.0)


def test_neighbor_summary() -> None:
    adata = build_adata()

    fields = summaries.neighbor_summary(adata)

    assert fields["n_cells"] == 40
    assert fields["n_genes"] == 20
    assert fields["median_neighbor_distance"] == 2.0
    expected_variance = adata.layers["counts"].var(axis=0, ddof=1).mean()
    assert fields["mean_expression_variability"] == pytest.approx(expected_variance)


def test_neighbor_summary_names_missing_graph() -> None:
    adata = build_adata()
    del adata.obsp["distances"]

    with pytest.raises(PreconditionError) as excinfo:
        summaries.neighbor_summary(adata)

    assert excinfo.value.precondition == "neighbors"
    assert "neighbor graph" in str(excinfo.value)


def test_cluster_markers_from_rankings() -> None:
    markers = summaries.cluster_markers(build_adata(), "cluster", top_n=3, compute=False)

    assert markers == {"0": ["CD3E", "CD3D", "IL7R"], "1": ["MS4A1", "CD79A", "CD19"]}


def test_cluster_markers_unknown_key() -> None:
    with pytest.raises(PreconditionError) as excinfo:
        summaries.cluster_markers(build_adata(), "leiden", compute=False)

    assert excinfo.value.precondition == "cluster_key"
    assert "leiden" in str(excinfo.value)


def test_cluster_markers_rejects_rankings_for_another_key() -> None:
    adata = build_adata()
    adata.obs["louvain"] = adata.obs["cluster"].astype(str)

    with pytest.raises(PreconditionError) as excinfo:
        summaries.cluster_markers(adata, "louvain", compute=False)

    assert excinfo.value.precondition == "rank_genes_groups"
    assert "groupby='cluster'" in str(excinfo.value)
    assert "'louvain'" in str(excinfo.value)


def test_cluster_markers_rejects_rankings_without_groupby() -> None:
    adata = build_adata()
    del adata.uns["rank_genes_groups"]["params"]

    with pytest.raises(PreconditionError):
        summaries.cluster_markers(adata, "cluster", compute=False)


def test_markers_from_table_keeps_row_order() -> None:
    table = pd.DataFrame(
        {
            "cluster": [1, 1, 0, 1],
            "gene": ["MS4A1", "CD79A.2", "CD3E", "MS4A1"],
        }
    )

    assert summaries.markers_from_table(table) == {"1": ["MS4A1", "CD79A"], "0": ["CD3E"]}


def test_significant_genes_filters_by_pvalue_and_fold_change() -> None:
    markers = pd.DataFrame(
        {"p_val": [0.01, 0.2, 0.001, 0.03], "avg_log2FC": [2.0, 3.0, -1.5, 0.5]},
        index=["CD3E", "LYZ", "MS4A1.1", "NKG7"],
    )

    assert significant_genes(markers) == ["CD3E", "MS4A1"]


def test_prepare_enrichment_table_from_cluster_profiler_columns() -> None:
    results = pd.DataFrame(
        {
            "ID": ["hsa03010", "hsa04660"],
            "Description": ["Ribosome", "T cell receptor signaling pathway"],
            "pvalue": [0.001, 0.2],
            "geneID": ["RPL3/RPS6", "CD3E/CD3D"],
        }
    )

    table = prepare_enrichment_table(results)

    assert list(table.columns) == ["Description", "pvalue", "Gene"]
    assert table.to_dict(orient="records") == [{"Description": "Ribosome", "pvalue": 0.001, "Gene": "RPL3, RPS6"}]
    assert to_json_records(table) == '[{"Description": "Ribosome", "pvalue": 0.001, "Gene": "RPL3, RPS6"}]'


def test_prepare_enrichment_table_requires_columns() -> None:
    with pytest.raises(KeyError, match="Gene"):
        prepare_enrichment_table(pd.DataFrame({"Description": ["x"], "pvalue": [0.01]}))
