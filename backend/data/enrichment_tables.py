"""Helpers that prepare differential-expression and enrichment tables for prompting.

Running the enrichment itself (KEGG/GO, gene-ID mapping) happens upstream;
these helpers only select significant genes and shrink result tables down to
the columns the summary prompts embed.
"""

from __future__ import annotations

import json

import pandas as pd

ENRICHMENT_COLUMNS = ["Description", "pvalue", "Gene"]


def significant_genes(
    markers: pd.DataFrame,
    *,
    pvalue: float = 0.05,
    log2fc: float = 1.0,
    pvalue_column: str = "p_val",
    log2fc_column: str = "avg_log2FC",
    gene_column: str | None = None,
) -> list[str]:
    """Genes with ``p < pvalue`` and ``|log2FC| > log2fc``; gene names from the index by default."""

    missing = {pvalue_column, log2fc_column} - set(markers.columns)
    if missing:
        raise KeyError(f"Marker table is missing column(s): {', '.join(sorted(missing))}")

    mask = (markers[pvalue_column] < pvalue) & (markers[log2fc_column].abs() > log2fc)
    selected = markers.loc[mask]
    genes = selected[gene_column] if gene_column else selected.index.to_series()
    return genes.astype(str).str.replace(r"\.\d+$", "", regex=True).drop_duplicates().tolist()


def prepare_enrichment_table(results: pd.DataFrame, *, pvalue: float = 0.05) -> pd.DataFrame:
    """Keep significant terms as ``Description, pvalue, Gene`` rows.

    ``geneID`` columns in clusterProfiler's slash-separated form are accepted
    when no ``Gene`` column is present.
    """

    table = results.copy()
    if "Gene" not in table.columns and "geneID" in table.columns:
        table["Gene"] = table["geneID"].astype(str).str.replace("/", ", ", regex=False)
    missing = [column for column in ENRICHMENT_COLUMNS if column not in table.columns]
    if missing:
        raise KeyError(f"Enrichment table is missing column(s): {', '.join(missing)}")

    table = table.loc[table["pvalue"] < pvalue, ENRICHMENT_COLUMNS]
    return table.reset_index(drop=True)


def to_json_records(table: pd.DataFrame) -> str:
    """Serialise rows as a JSON array of objects, in row order."""

    return json.dumps(table.to_dict(orient="records"), default=str)


__all__ = ["ENRICHMENT_COLUMNS", "prepare_enrichment_table", "significant_genes", "to_json_records"]
