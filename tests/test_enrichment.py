from __future__ import annotations

import json
from pathlib import Path

import pandas as pd
import pytest

from backend.errors import BackendError, EnrichmentAbortedError, ErrorCode
from backend.llm.models import NetworkTriple, RawResponse
from backend.pipelines.enrichment import EnrichmentOrchestrator
from backend.pipelines.session_store import EnrichmentSource, EnrichmentState, SessionStore

HEADER = "Here is the table:\n\n| Gene | Interaction | Concept |\n|---|---|---|\n"

KEGG = pd.DataFrame(
    {"Description": ["Ribosome"], "pvalue": [0.001], "Gene": ["RPL3, RPS6"]},
)
GO = pd.DataFrame(
    {"Description": ["T cell activation"], "pvalue": [0.002], "Gene": ["CD3E, CD3D"]},
)


def network(*rows: str) -> str:
    return HEADER + "\n".join(rows)


def full_script() -> list[str]:
    return [
        "KEGG summary text",
        network("| RPL3 | Part of | Ribosome |", "| RPS6 | Part of | Ribosome |", "| RPL3 | oops |"),
        "GO summary text",
        network("| CD3E | Drives | T cell activation |"),
        "Overall summary text",
    ]


def test_both_sources_reach_done(make_dispatcher) -> None:
    dispatcher, hosted, _ = make_dispatcher(hosted=full_script())

    result = EnrichmentOrchestrator(dispatcher).run({"KEGG": KEGG, "GO": GO}, "hosted")

    assert result.state is EnrichmentState.DONE
    assert len(result.triples) == 3
    assert result.triples[-1] == NetworkTriple("CD3E", "Drives", "T cell activation")
    assert result.skipped == {"KEGG": 1, "GO": 0}
    assert result.summaries == {"KEGG": "KEGG summary text", "GO": "GO summary text"}
    assert result.overall_summary == "Overall summary text"
    assert [request.template_kind for request, _ in hosted.calls] == [
        "enrichment_kegg",
        "network_extraction",
        "enrichment_go",
        "network_extraction",
        "enrichment_overall",
    ]
    assert "KEGG summary text" in hosted.prompts[1]
    assert "KEGG summary text" in hosted.prompts[4] and "GO summary text" in hosted.prompts[4]
    assert '"Description": "Ribosome"' in hosted.prompts[0]


def test_kegg_summary_failure_aborts_before_go(make_dispatcher) -> None:
    failure = RawResponse.failure(ErrorCode.CONNECTION, "refused", backend="local")
    dispatcher, _, local = make_dispatcher(local=[failure])

    with pytest.raises(EnrichmentAbortedError) as excinfo:
        EnrichmentOrchestrator(dispatcher).run({"KEGG": KEGG, "GO": GO}, "local")

    assert excinfo.value.stage == EnrichmentState.SUMMARIZE.value
    assert excinfo.value.source == "KEGG"
    assert isinstance(excinfo.value.__cause__, BackendError)
    assert len(local.calls) == 1
    assert all(request.template_kind != "enrichment_go" for request, _ in local.calls)


def test_single_source_skips_combine_and_overall(make_dispatcher) -> None:
    dispatcher, hosted, _ = make_dispatcher(hosted=["GO only", network("| CD3E | Drives | T cell activation |")])

    result = EnrichmentOrchestrator(dispatcher).run({EnrichmentSource.GO: GO}, "hosted")

    assert len(hosted.calls) == 2
    assert result.overall_summary is None
    assert result.triples == [NetworkTriple("CD3E", "Drives", "T cell activation")]
    assert "GO terms" in hosted.prompts[1]


def test_empty_network_is_not_an_error(make_dispatcher) -> None:
    dispatcher, _, _ = make_dispatcher(hosted=["KEGG only", HEADER])

    result = EnrichmentOrchestrator(dispatcher).run({"kegg": KEGG}, "hosted")

    assert result.triples == []
    assert result.state is EnrichmentState.DONE


def test_requires_at_least_one_source(make_dispatcher) -> None:
    dispatcher, _, _ = make_dispatcher()

    with pytest.raises(ValueError):
        EnrichmentOrchestrator(dispatcher).run({"KEGG": None}, "hosted")


def test_checkpoint_resumes_after_last_completed_stage(make_dispatcher, tmp_path: Path) -> None:
    checkpoint = tmp_path / "session.json"
    script = full_script()
    failure = RawResponse.failure(ErrorCode.TIMEOUT, "timed out", backend="hosted")
    dispatcher, hosted, _ = make_dispatcher(hosted=[*script[:3], failure])

    with pytest.raises(EnrichmentAbortedError) as excinfo:
        EnrichmentOrchestrator(dispatcher).run(
            {"KEGG": KEGG, "GO": GO}, "hosted", checkpoint_path=checkpoint
        )
    assert excinfo.value.stage == "extract_network"
    assert excinfo.value.source == "GO"

    saved = json.loads(checkpoint.read_text(encoding="utf-8"))
    assert saved["sources"][1]["summary_text"] == "GO summary text"
    assert saved["sources"][1]["triples"] is None

    hosted.queue(*script[3:])
    result = EnrichmentOrchestrator(dispatcher).run(
        {"KEGG": KEGG, "GO": GO}, "hosted", checkpoint_path=checkpoint
    )

    assert len(hosted.calls) == 6
    assert [request.template_kind for request, _ in hosted.calls[4:]] == [
        "network_extraction",
        "enrichment_overall",
    ]
    assert len(result.triples) == 3
    assert not checkpoint.exists()


def test_checkpoint_for_different_inputs_is_ignored(make_dispatcher, tmp_path: Path) -> None:
    checkpoint = tmp_path / "session.json"
    dispatcher, hosted, _ = make_dispatcher(hosted=["KEGG only", network("| RPL3 | Part of | Ribosome |")])
    store = SessionStore(checkpoint)
    checkpoint.write_text(
        json.dumps({"fingerprint": "other", "run_id": "x", "sources": []}),
        encoding="utf-8",
    )

    assert store.load("mine") is None
    EnrichmentOrchestrator(dispatcher).run({"KEGG": KEGG}, "hosted", checkpoint_path=checkpoint)

    assert len(hosted.calls) == 2
    assert not checkpoint.exists()
