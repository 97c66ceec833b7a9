"""Descriptive summaries pulled from an AnnData object.

Each function checks that the upstream computation it depends on has been
run and raises :class:`PreconditionError` naming the missing step otherwise.
The returned dictionaries are the prompt fields consumed by
:mod:`backend.llm.prompts`.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import numpy as np
import pandas as pd
import scipy.sparse as spr
from anndata import AnnData

from backend.errors import PreconditionError

try:  # Optional at import time; only needed when marker rankings must be computed.
    import scanpy as sc
except ImportError:  # pragma: no cover - handled in _ensure_rankings
    sc = None

COUNT_COLUMNS = ("total_counts", "nCount_RNA")
FEATURE_COLUMNS = ("n_genes_by_counts", "nFeature_RNA")

_VERSION_SUFFIX = re.compile(r"\.\d+$")


def describe(values: Sequence[float] | np.ndarray) -> dict[str, float]:
    """Five-number summary plus mean and 5th/95th percentiles."""

    array = np.asarray(values, dtype=float).ravel()
    if array.size == 0:
        raise ValueError("Cannot summarise an empty set of values.")
    q = np.quantile(array, [0.0, 0.05, 0.25, 0.5, 0.75, 0.95, 1.0])
    return {
        "min": float(q[0]),
        "p5": float(q[1]),
        "q1": float(q[2]),
        "median": float(q[3]),
        "mean": float(array.mean()),
        "q3": float(q[4]),
        "p95": float(q[5]),
        "max": float(q[6]),
    }


def _first_column(obs: pd.DataFrame, candidates: Sequence[str]) -> str | None:
    for column in candidates:
        if column in obs.columns:
            return column
    return None


def quality_summary(adata: AnnData, metrics: Sequence[str] | None = None) -> dict[str, Any]:
    """Summaries of per-cell counts, detected genes and optional QC metric columns.

    Metric names that are not columns of ``adata.obs`` are ignored.
    """

    count_column = _first_column(adata.obs, COUNT_COLUMNS)
    feature_column = _first_column(adata.obs, FEATURE_COLUMNS)
    if count_column is None or feature_column is None:
        raise PreconditionError(
            "qc_metrics",
            "adata.obs has no per-cell count metrics (total_counts / n_genes_by_counts). "
            "Run scanpy.pp.calculate_qc_metrics on the object first.",
        )

    metric_summaries: list[dict[str, Any]] = []
    for metric in metrics or []:
        if metric not in adata.obs.columns:
            continue
        values = adata.obs[metric].to_numpy(dtype=float)
        nonzero = values[values != 0]
        metric_summaries.append(
            {
                "name": metric,
                "summary": describe(nonzero if nonzero.size else values),
                "p95": float(np.quantile(values, 0.95)),
            }
        )

    return {
        "n_cells": int(adata.n_obs),
        "count_summary": describe(adata.obs[count_column].to_numpy(dtype=float)),
        "feature_summary": describe(adata.obs[feature_column].to_numpy(dtype=float)),
        "metric_summaries": metric_summaries,
    }


def _counts_matrix(adata: AnnData, layer: str | None = None) -> Any:
    if layer is not None:
        if layer not in adata.layers:
            raise PreconditionError("counts_layer", f"adata.layers has no '{layer}' layer.")
        return adata.layers[layer]
    if "counts" in adata.layers:
        return adata.layers["counts"]
    if adata.X is None:
        raise PreconditionError("counts", "adata.X is empty and no 'counts' layer is present.")
    return adata.X


def _nonzero_values(matrix: Any) -> np.ndarray:
    if spr.issparse(matrix):
        data = np.asarray(matrix.tocsr().data, dtype=float)
    else:
        data = np.asarray(matrix, dtype=float).ravel()
    return data[data != 0]


def normalization_summary(adata: AnnData, layer: str | None = None) -> dict[str, Any]:
    """Cell count, non-zero expression mean/sd and library-size variation."""

    matrix = _counts_matrix(adata, layer)
    values = _nonzero_values(matrix)
    if values.size == 0:
        raise PreconditionError("counts", "The count matrix contains no non-zero values.")

    library_sizes = np.asarray(matrix.sum(axis=1), dtype=float).ravel()
    library_mean = library_sizes.mean()
    library_cv = float(library_sizes.std(ddof=1) / library_mean) if library_mean else 0.0

    return {
        "n_cells": int(adata.n_obs),
        "expression_mean": float(values.mean()),
        "expression_sd": float(values.std(ddof=1)) if values.size > 1 else 0.0,
        "library_size_cv": library_cv,
    }


def variable_features(adata: AnnData, top_n: int = 30) -> list[str]:
    """Top highly variable genes, best first."""

    if "highly_variable" not in adata.var.columns or not adata.var["highly_variable"].any():
        raise PreconditionError(
            "highly_variable_genes",
            "No highly variable genes found. Run scanpy.pp.highly_variable_genes on the object first.",
        )
    hvg = adata.var[adata.var["highly_variable"].astype(bool)]
    if "highly_variable_rank" in hvg.columns:
        hvg = hvg.sort_values("highly_variable_rank", kind="stable", na_position="last")
    elif "dispersions_norm" in hvg.columns:
        hvg = hvg.sort_values("dispersions_norm", ascending=False, kind="stable", na_position="last")
    return [str(gene) for gene in hvg.index[:top_n]]


def _require_pca_loadings(adata: AnnData) -> np.ndarray:
    if "PCs" not in adata.varm:
        raise PreconditionError(
            "pca",
            "The object has no PCA loadings (adata.varm['PCs']). Run scanpy.tl.pca first.",
        )
    return np.asarray(adata.varm["PCs"], dtype=float)


def pc_top_genes(adata: AnnData, num_pcs: int = 5, top_n: int = 50) -> list[list[str]]:
    """Genes with the largest absolute loading for each of the first ``num_pcs`` PCs."""

    loadings = _require_pca_loadings(adata)
    if num_pcs < 1 or num_pcs > loadings.shape[1]:
        raise ValueError(
            f"num_pcs must be between 1 and {loadings.shape[1]} (computed components), got {num_pcs}."
        )
    var_names = np.asarray(adata.var_names)
    top_genes: list[list[str]] = []
    for pc in range(num_pcs):
        order = np.argsort(-np.abs(loadings[:, pc]), kind="stable")[:top_n]
        top_genes.append([str(gene) for gene in var_names[order]])
    return top_genes


def pca_variance_explained(adata: AnnData) -> list[float]:
    """Percentage of variance explained by each computed PC."""

    pca = adata.uns.get("pca") or {}
    # Shares of the computed components only, so the percentages sum to 100.
    if "variance" in pca:
        variance = np.asarray(pca["variance"], dtype=float)
        ratios = variance / variance.sum()
    elif "variance_ratio" in pca:
        ratios = np.asarray(pca["variance_ratio"], dtype=float)
        ratios = ratios / ratios.sum()
    else:
        raise PreconditionError(
            "pca",
            "The object has no PCA variance (adata.uns['pca']). Run scanpy.tl.pca first.",
        )
    return [float(value) * 100 for value in ratios]


def neighbor_summary(
    adata: AnnData,
    neighbors_key: str | None = None,
    layer: str | None = None,
) -> dict[str, Any]:
    """Dataset size, mean per-gene variance and median neighbour distance."""

    uns_key = neighbors_key or "neighbors"
    distances_key = (adata.uns.get(uns_key) or {}).get("distances_key")
    if distances_key is None:
        distances_key = f"{neighbors_key}_distances" if neighbors_key else "distances"
    if distances_key not in adata.obsp:
        raise PreconditionError(
            "neighbors",
            f"The object has no computed neighbor graph distances (adata.obsp['{distances_key}']). "
            "Run scanpy.pp.neighbors first.",
        )

    distances = _nonzero_values(adata.obsp[distances_key])
    if distances.size == 0:
        raise PreconditionError("neighbors", f"adata.obsp['{distances_key}'] holds no distances.")

    matrix = _counts_matrix(adata, layer)
    return {
        "n_cells": int(adata.n_obs),
        "n_genes": int(adata.n_vars),
        "mean_expression_variability": float(np.mean(_gene_variances(matrix))),
        "median_neighbor_distance": float(np.median(distances)),
    }


def _gene_variances(matrix: Any) -> np.ndarray:
    n_cells = matrix.shape[0]
    if n_cells < 2:
        return np.zeros(matrix.shape[1])
    if spr.issparse(matrix):
        mean = np.asarray(matrix.mean(axis=0), dtype=float).ravel()
        mean_sq = np.asarray(matrix.multiply(matrix).mean(axis=0), dtype=float).ravel()
        return (mean_sq - mean**2) * n_cells / (n_cells - 1)
    return np.asarray(matrix, dtype=float).var(axis=0, ddof=1)


def _ensure_rankings(adata: AnnData, cluster_key: str, *, top_n: int, method: str = "wilcoxon") -> None:
    """Compute rank_genes_groups if missing or for a different cluster key."""

    rankings = adata.uns.get("rank_genes_groups")
    params = (rankings or {}).get("params", {})
    if rankings is not None and params.get("groupby") == cluster_key:
        return

    if sc is None:
        raise PreconditionError(
            "rank_genes_groups",
            "scanpy is required to compute marker rankings. Install scanpy or precompute "
            "`rank_genes_groups` for the AnnData object.",
        )
    sc.tl.rank_genes_groups(adata, groupby=cluster_key, n_genes=top_n, method=method)


def require_cluster_key(adata: AnnData, cluster_key: str) -> None:
    if cluster_key not in adata.obs.columns:
        raise PreconditionError(
            "cluster_key",
            f"Cluster key '{cluster_key}' not found in adata.obs. Available columns: "
            f"{', '.join(map(str, adata.obs.columns)) or 'none'}.",
        )


def _unique_ordered(markers: Iterable[Any]) -> list[str]:
    """Return unique gene symbols in first-seen order, dropping version suffixes."""

    seen: set[str] = set()
    ordered: list[str] = []
    for marker in markers:
        if not isinstance(marker, str):
            continue
        normalised = _VERSION_SUFFIX.sub("", marker.strip())
        if not normalised or normalised in seen:
            continue
        seen.add(normalised)
        ordered.append(normalised)
    return ordered


def cluster_markers(
    adata: AnnData,
    cluster_key: str,
    top_n: int = 30,
    *,
    compute: bool = True,
) -> dict[str, list[str]]:
    """Top marker genes per cluster from ``rank_genes_groups`` results."""

    require_cluster_key(adata, cluster_key)
    if compute:
        _ensure_rankings(adata, cluster_key, top_n=top_n)

    rankings = adata.uns.get("rank_genes_groups")
    if rankings is None or "names" not in rankings:
        raise PreconditionError(
            "rank_genes_groups",
            "AnnData object is missing `rank_genes_groups` results for cluster key "
            f"'{cluster_key}'. Run scanpy.tl.rank_genes_groups beforehand.",
        )
    groupby = (rankings.get("params") or {}).get("groupby")
    if groupby != cluster_key:
        raise PreconditionError(
            "rank_genes_groups",
            f"`rank_genes_groups` was computed for groupby='{groupby}', not cluster key '{cluster_key}'. "
            "Recompute the rankings for this key or allow SCassist to compute them.",
        )

    names = rankings["names"]
    if isinstance(names, np.ndarray) and names.dtype.names:
        return {str(group): _unique_ordered(names[group])[:top_n] for group in names.dtype.names}
    if isinstance(names, Mapping):
        return {str(cluster): _unique_ordered(values)[:top_n] for cluster, values in names.items()}
    raise ValueError("Unsupported structure for `rank_genes_groups['names']`.")


def markers_from_table(
    markers: pd.DataFrame,
    top_n: int = 30,
    *,
    cluster_column: str = "cluster",
    gene_column: str = "gene",
) -> dict[str, list[str]]:
    """Top genes per cluster from a long marker table, keeping its row order."""

    if cluster_column not in markers.columns:
        raise KeyError(f"Marker table has no '{cluster_column}' column.")
    genes = markers[gene_column] if gene_column in markers.columns else markers.index.to_series()
    table = pd.DataFrame({"cluster": markers[cluster_column].astype(str).to_numpy(), "gene": genes.to_numpy()})
    return {
        str(cluster): _unique_ordered(group["gene"])[:top_n]
        for cluster, group in table.groupby("cluster", sort=False)
    }


__all__ = [
    "COUNT_COLUMNS",
    "FEATURE_COLUMNS",
    "cluster_markers",
    "describe",
    "markers_from_table",
    "neighbor_summary",
    "normalization_summary",
    "pc_top_genes",
    "pca_variance_explained",
    "quality_summary",
    "require_cluster_key",
    "variable_features",
]
