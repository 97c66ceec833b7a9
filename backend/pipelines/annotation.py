"""Marker-based cluster annotation."""

from __future__ import annotations

import logging
import warnings
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import pandas as pd
from anndata import AnnData

from backend.data import summaries
from backend.errors import AnnotationParseError, ClusterIdMismatchWarning, UnmatchedClusterError
from backend.io.tables import write_annotation_tsv
from backend.llm.models import AnnotationRecord, BackendSelector, GenerationConfig
from backend.llm.parsers import parse_annotation_table
from backend.llm.prompts import TemplateKind
from backend.pipelines.base import AnalysisPipeline

logger = logging.getLogger("scassist.annotation")

UnmatchedPolicy = Literal["raise", "report"]


@dataclass
class AnnotationResult:
    """Parsed records plus what happened when they were written back."""

    records: list[AnnotationRecord]
    column: str | None = None
    unmatched: list[str] = field(default_factory=list)
    mismatched: dict[str, str] = field(default_factory=dict)
    tsv_path: Path | None = None

    def labels(self) -> dict[str, str]:
        return {record.cluster_id: record.label for record in self.records}


def _ensure_unique(records: Sequence[AnnotationRecord]) -> None:
    duplicates = sorted(cid for cid, count in Counter(r.cluster_id for r in records).items() if count > 1)
    if duplicates:
        raise AnnotationParseError(f"Duplicate cluster id(s) in annotation output: {', '.join(duplicates)}")


def _mismatched_ids(requested: Sequence[Any], records: Sequence[AnnotationRecord]) -> dict[str, str]:
    """Requested cluster id -> id the reply used, where the two differ."""

    return {
        str(cluster_id): record.cluster_id
        for cluster_id, record in zip(requested, records)
        if record.cluster_id != str(cluster_id)
    }


def merge_annotations(
    adata: AnnData,
    records: Sequence[AnnotationRecord],
    cluster_key: str,
    column: str,
    *,
    on_unmatched: UnmatchedPolicy = "raise",
) -> list[str]:
    """Write each record's label onto the cells of its cluster.

    Cluster ids are matched exactly against ``adata.obs[cluster_key]`` (as
    strings). Ids with no matching cluster raise ``UnmatchedClusterError``
    before anything is written, or with ``on_unmatched="report"`` are
    returned and their label dropped. Cells of clusters without a record
    get a missing value.
    """

    if on_unmatched not in ("raise", "report"):
        raise ValueError(f"on_unmatched must be 'raise' or 'report', got {on_unmatched!r}.")
    summaries.require_cluster_key(adata, cluster_key)

    clusters = adata.obs[cluster_key].astype(str)
    labels = {record.cluster_id: record.label for record in records}
    unmatched = sorted(set(labels) - set(clusters.unique()))
    if unmatched:
        if on_unmatched == "raise":
            raise UnmatchedClusterError(unmatched, cluster_key)
        logger.warning(
            "annotation.unmatched_clusters",
            extra={"cluster_key": cluster_key, "unmatched": unmatched},
        )

    adata.obs[column] = pd.Categorical(clusters.map(labels))
    return unmatched


class AnnotationPipeline(AnalysisPipeline):
    """Predict a cell type per cluster, one backend call per cluster."""

    template_kind = TemplateKind.ANNOTATE_CLUSTER

    def summarize(
        self,
        adata: AnnData,
        cluster_key: str,
        top_n: int = 30,
        compute_markers: bool = True,
    ) -> dict[str, Any]:
        return {"markers": summaries.cluster_markers(adata, cluster_key, top_n, compute=compute_markers)}

    def run(
        self,
        summary: Mapping[str, Any],
        backend: BackendSelector | str,
        config: GenerationConfig | None = None,
        credential_path: str | Path | None = None,
    ) -> list[AnnotationRecord]:
        """Annotate every cluster in ``summary["markers"]``; ids in the output are unique."""

        selector = BackendSelector.coerce(backend)
        records: list[AnnotationRecord] = []
        for cluster_id, genes in summary["markers"].items():
            raw = self.dispatcher.dispatch(
                self.template_kind,
                {"cluster_id": str(cluster_id), "genes": list(genes)},
                selector,
                config=config,
                credential_path=credential_path,
            )
            records.extend(parse_annotation_table(raw.raise_for_status(), expected_count=1))

        mismatched = _mismatched_ids(list(summary["markers"]), records)
        if mismatched:
            logger.warning("annotation.cluster_id_mismatch", extra={"mismatched": mismatched})
            details = ", ".join(f"asked {asked!r}, got {got!r}" for asked, got in mismatched.items())
            warnings.warn(
                f"Annotation replies named a different cluster than requested: {details}.",
                ClusterIdMismatchWarning,
                stacklevel=2,
            )
        _ensure_unique(records)
        return records

    def analyze(
        self,
        adata: AnnData,
        backend: BackendSelector | str,
        *,
        config: GenerationConfig | None = None,
        credential_path: str | Path | None = None,
        cluster_key: str,
        markers: Mapping[Any, Sequence[str]] | None = None,
        top_n: int = 30,
        compute_markers: bool = True,
        output_path: str | Path | None = None,
        merge: bool = True,
        on_unmatched: UnmatchedPolicy = "raise",
    ) -> AnnotationResult:
        """Annotate the clusters in ``adata.obs[cluster_key]``.

        ``markers`` overrides the ``rank_genes_groups`` lookup. Labels are
        merged into ``adata.obs["<prefix>_<cluster_key>"]`` when ``merge`` is
        true; a TSV of the records is written when ``output_path`` is given.
        """

        selector = BackendSelector.coerce(backend)
        summaries.require_cluster_key(adata, cluster_key)

        if markers is not None:
            summary = {"markers": {str(cid): list(genes)[:top_n] for cid, genes in markers.items()}}
        else:
            summary = self.summarize(adata, cluster_key, top_n=top_n, compute_markers=compute_markers)

        records = self.run(summary, selector, config=config, credential_path=credential_path)
        result = AnnotationResult(
            records=records,
            mismatched=_mismatched_ids(list(summary["markers"]), records),
        )

        if merge:
            column = f"{self.dispatcher.settings.annotation_column_prefix}_{cluster_key}"
            result.unmatched = merge_annotations(
                adata, records, cluster_key, column, on_unmatched=on_unmatched
            )
            result.column = column
        if output_path is not None:
            result.tsv_path = write_annotation_tsv(records, output_path)
        return result


__all__ = ["AnnotationPipeline", "AnnotationResult", "merge_annotations"]
