from __future__ import annotations

import pytest

from backend.errors import AnnotationParseError, BackendError, EmptyTextError, ErrorCode, ParseLeniencyWarning
from backend.llm.models import AnnotationRecord, NetworkTriple, RawResponse
from backend.llm.parsers import (
    parse_annotation_table,
    parse_free_text,
    parse_integer,
    parse_network_table,
)

NETWORK_PREAMBLE = (
    "Here is the extracted network:\n"
    "\n"
    "| Gene | Interaction | Concept |\n"
    "|---|---|---|\n"
)


def ok(text: str) -> RawResponse:
    return RawResponse.success(text, backend="hosted")


def test_free_text_is_returned_unchanged() -> None:
    assert parse_free_text(ok("  Use LogNormalize.\n")) == "  Use LogNormalize.\n"


def test_free_text_rejects_blank() -> None:
    with pytest.raises(EmptyTextError):
        parse_free_text(ok("   \n"))


def test_parsers_refuse_failed_responses() -> None:
    failed = RawResponse.failure(ErrorCode.CONNECTION, "refused", backend="local")

    for parser in (parse_free_text, parse_integer, parse_annotation_table, parse_network_table):
        with pytest.raises(BackendError) as excinfo:
            parser(failed)
        assert excinfo.value.code is ErrorCode.CONNECTION


def test_integer_takes_first_digit_run() -> None:
    assert parse_integer(ok("Based on the elbow I recommend 5 PCs, capturing 80%.")) == 5


def test_integer_without_digits_warns_and_returns_zero() -> None:
    with pytest.warns(ParseLeniencyWarning):
        assert parse_integer(ok("no numbers here")) == 0


def test_integer_zero_is_treated_as_no_recommendation() -> None:
    with pytest.warns(ParseLeniencyWarning):
        assert parse_integer(ok("0 components")) == 0


def test_annotation_single_line() -> None:
    records = parse_annotation_table(ok("3:T-cells:Marker evidence..."))

    assert records == [AnnotationRecord(cluster_id="3", label="T-cells", reasoning="Marker evidence...")]


def test_annotation_splits_on_first_two_colons_and_trims() -> None:
    text = " 8 : Megakaryocyte-precursor cells : ratio 3:1 of GP9 to ITGA2B \n\n1:B cells:MS4A1"

    records = parse_annotation_table(ok(text), expected_count=2)

    assert records[0] == AnnotationRecord(
        cluster_id="8",
        label="Megakaryocyte-precursor cells",
        reasoning="ratio 3:1 of GP9 to ITGA2B",
    )
    assert records[1].cluster_id == "1"


def test_annotation_reports_malformed_lines() -> None:
    with pytest.raises(AnnotationParseError) as excinfo:
        parse_annotation_table(ok("3:T-cells:ok\nHere is the analysis"))

    assert excinfo.value.bad_lines == ["Here is the analysis"]


def test_annotation_rejects_duplicate_cluster_ids() -> None:
    with pytest.raises(AnnotationParseError, match="Duplicate"):
        parse_annotation_table(ok("3:T-cells:a\n3:NK cells:b"))


def test_annotation_checks_expected_count() -> None:
    with pytest.raises(AnnotationParseError, match="Expected 2"):
        parse_annotation_table(ok("3:T-cells:a"), expected_count=2)


def test_network_table_two_rows() -> None:
    text = NETWORK_PREAMBLE + "| G1 | Involved in | Metabolism |\n| G3 | Interacts with | G5 |"

    table = parse_network_table(ok(text))

    assert table.triples == [
        NetworkTriple("G1", "Involved in", "Metabolism"),
        NetworkTriple("G3", "Interacts with", "G5"),
    ]
    assert table.skipped == 0


def test_network_table_counts_short_rows() -> None:
    text = NETWORK_PREAMBLE + "| G1 | Involved in | Metabolism |\n| G2 | Regulates |\n"

    table = parse_network_table(ok(text))

    assert table.triples == [NetworkTriple("G1", "Involved in", "Metabolism")]
    assert table.skipped == 1


def test_network_table_rejects_multi_gene_subjects() -> None:
    text = NETWORK_PREAMBLE + "| CD3E, CD3D | Part of | TCR complex |\n| CD3E | Part of | TCR complex |"

    table = parse_network_table(ok(text))

    assert [triple.subject_gene for triple in table.triples] == ["CD3E"]
    assert table.skipped == 1


def test_network_table_skips_repeated_headers_and_collapses_whitespace() -> None:
    text = (
        NETWORK_PREAMBLE
        + "| Gene | Interaction | Concept |\n"
        + "|:---|:---:|---:|\n"
        + "|  IL7R  |  Promotes   survival of |  T cells |\n"
    )

    table = parse_network_table(ok(text))

    assert table.triples == [NetworkTriple("IL7R", "Promotes survival of", "T cells")]
    assert table.skipped == 0


def test_network_table_empty_is_valid() -> None:
    table = parse_network_table(ok(NETWORK_PREAMBLE))

    assert table.triples == []
    assert table.skipped == 0


def test_network_table_header_line_count_is_configurable() -> None:
    table = parse_network_table(ok("| A | binds | B |"), header_lines=0)

    assert table.triples == [NetworkTriple("A", "binds", "B")]
