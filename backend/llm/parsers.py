"""Turn free-form backend text into the records each pipeline expects.

The formats are lenient by necessity: the model is only asked (not forced)
to follow the layouts described in :mod:`backend.llm.prompts`.
"""

from __future__ import annotations

import logging
import re
import warnings
from collections import Counter

from backend.errors import AnnotationParseError, EmptyTextError, ParseLeniencyWarning
from backend.llm.models import AnnotationRecord, NetworkTable, NetworkTriple, RawResponse

logger = logging.getLogger("scassist.llm.parsers")

_DIGITS = re.compile(r"\d+")
_WHITESPACE = re.compile(r"\s+")
_ALIGNMENT_CELL = re.compile(r"^:?-{2,}:?$")
_HEADER_CELLS = ("gene", "interaction", "concept")

DEFAULT_NETWORK_HEADER_LINES = 4


def _text(raw: RawResponse) -> str:
    # Never build a parsed result from a failed call.
    raw.raise_for_status()
    return raw.text or ""


def parse_free_text(raw: RawResponse) -> str:
    """Return the response text unchanged, rejecting blank payloads."""

    text = _text(raw)
    if not text.strip():
        raise EmptyTextError("The LLM returned an empty response.")
    return text


def parse_integer(raw: RawResponse) -> int:
    """Extract the first run of digits as a positive integer.

    Falls back to ``0`` with a :class:`ParseLeniencyWarning` when no digits
    are found or the number is not positive.
    """

    text = _text(raw)
    match = _DIGITS.search(text)
    value = int(match.group()) if match else 0
    if value <= 0:
        message = (
            "The LLM could not provide a valid recommendation. "
            "Please check the LLM model and parameters."
        )
        logger.warning(message)
        warnings.warn(message, ParseLeniencyWarning, stacklevel=2)
        return 0
    return value


def parse_annotation_table(raw: RawResponse, expected_count: int | None = None) -> list[AnnotationRecord]:
    """Parse ``cluster:label:reasoning`` lines.

    Each non-blank line is split on its first two colons. Lines with fewer
    than three parts, duplicate cluster ids, or a record count other than
    ``expected_count`` raise :class:`AnnotationParseError`.
    """

    text = _text(raw)
    records: list[AnnotationRecord] = []
    bad_lines: list[str] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        parts = [part.strip() for part in line.split(":", 2)]
        if len(parts) < 3 or not parts[0] or not parts[1]:
            bad_lines.append(line)
            continue
        records.append(AnnotationRecord(cluster_id=parts[0], label=parts[1], reasoning=parts[2]))

    if bad_lines:
        raise AnnotationParseError(
            f"{len(bad_lines)} annotation line(s) are not in 'cluster:cell type:reasoning' "
            f"format: {bad_lines[0]!r}",
            bad_lines=bad_lines,
        )

    counts = Counter(record.cluster_id for record in records)
    duplicates = sorted(cluster_id for cluster_id, count in counts.items() if count > 1)
    if duplicates:
        raise AnnotationParseError(f"Duplicate cluster id(s) in annotation output: {', '.join(duplicates)}")

    if expected_count is not None and len(records) != expected_count:
        raise AnnotationParseError(
            f"Expected {expected_count} annotation record(s), received {len(records)}."
        )
    return records


def _split_row(line: str) -> list[str]:
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|"):
        stripped = stripped[:-1]
    return [_WHITESPACE.sub(" ", cell.strip()) for cell in stripped.split("|")]


def parse_network_table(
    raw: RawResponse,
    header_lines: int = DEFAULT_NETWORK_HEADER_LINES,
) -> NetworkTable:
    """Parse a ``| gene | relation | object |`` table into triples.

    The first ``header_lines`` lines are prose/headers and are ignored, as are
    markdown alignment rows and a repeated ``Gene | Interaction | Concept``
    header. Rows without exactly three cells, or whose gene cell holds more
    than one token, are dropped and counted in ``skipped``.
    """

    text = _text(raw)
    triples: list[NetworkTriple] = []
    skipped = 0
    for line in text.splitlines()[header_lines:]:
        if not line.strip():
            continue
        cells = _split_row(line)
        if all(_ALIGNMENT_CELL.match(cell) for cell in cells if cell):
            continue
        if tuple(cell.lower() for cell in cells) == _HEADER_CELLS:
            continue
        if len(cells) != 3 or not all(cells):
            skipped += 1
            continue
        subject, relation, obj = cells
        if len(subject.replace(",", " ").split()) != 1:
            skipped += 1
            continue
        triples.append(NetworkTriple(subject_gene=subject, relation=relation, object=obj))

    if skipped:
        logger.info("llm.network_rows_skipped", extra={"skipped": skipped, "parsed": len(triples)})
    return NetworkTable(triples=triples, skipped=skipped)


__all__ = [
    "DEFAULT_NETWORK_HEADER_LINES",
    "parse_annotation_table",
    "parse_free_text",
    "parse_integer",
    "parse_network_table",
]
