"""Tab-separated persistence of annotation and network records."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict
from pathlib import Path

import pandas as pd

from backend.llm.models import AnnotationRecord, NetworkTriple

ANNOTATION_COLUMNS = ["cluster_id", "label", "reasoning"]
NETWORK_COLUMNS = ["subject_gene", "relation", "object"]


def annotations_to_dataframe(records: Iterable[AnnotationRecord]) -> pd.DataFrame:
    return pd.DataFrame.from_records([asdict(record) for record in records], columns=ANNOTATION_COLUMNS)


def triples_to_dataframe(triples: Iterable[NetworkTriple]) -> pd.DataFrame:
    return pd.DataFrame.from_records([asdict(triple) for triple in triples], columns=NETWORK_COLUMNS)


def write_annotation_tsv(records: Iterable[AnnotationRecord], path: str | Path) -> Path:
    """Write ``cluster_id, label, reasoning`` rows and return the path."""

    target = Path(path)
    annotations_to_dataframe(records).to_csv(target, sep="\t", index=False)
    return target


def write_network_tsv(triples: Iterable[NetworkTriple], path: str | Path) -> Path:
    """Write ``subject_gene, relation, object`` rows and return the path."""

    target = Path(path)
    triples_to_dataframe(triples).to_csv(target, sep="\t", index=False)
    return target


__all__ = [
    "ANNOTATION_COLUMNS",
    "NETWORK_COLUMNS",
    "annotations_to_dataframe",
    "triples_to_dataframe",
    "write_annotation_tsv",
    "write_network_tsv",
]
