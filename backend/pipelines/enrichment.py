"""Multi-stage summarisation of KEGG/GO enrichment results.

For each enabled source (KEGG first, then GO) the orchestrator asks for a
summary of the enrichment table and then extracts gene/concept triples from
that summary. When both sources ran, their triples are combined and a final
overall summary is requested. The first failing stage aborts the run; no
partial result is returned.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pandas as pd
import structlog

from backend.data.enrichment_tables import to_json_records
from backend.errors import EnrichmentAbortedError, SCassistError
from backend.llm.dispatcher import Dispatcher
from backend.llm.models import BackendSelector, GenerationConfig, NetworkTriple, RawResponse
from backend.llm.parsers import parse_free_text, parse_network_table
from backend.llm.prompts import TemplateKind
from backend.pipelines.session_store import (
    EnrichmentSession,
    EnrichmentSource,
    EnrichmentState,
    SessionStore,
    SourceStage,
    session_fingerprint,
)

logger = structlog.get_logger("scassist.enrichment")

_SUMMARY_TEMPLATES = {
    EnrichmentSource.KEGG: TemplateKind.ENRICHMENT_KEGG,
    EnrichmentSource.GO: TemplateKind.ENRICHMENT_GO,
}


@dataclass
class EnrichmentResult:
    summaries: dict[str, str]
    triples: list[NetworkTriple]
    source_triples: dict[str, list[NetworkTriple]] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)
    overall_summary: str | None = None
    state: EnrichmentState = EnrichmentState.DONE


def _records_json(table: pd.DataFrame | str) -> str:
    if isinstance(table, pd.DataFrame):
        return to_json_records(table)
    return str(table)


class EnrichmentOrchestrator:
    def __init__(self, dispatcher: Dispatcher | None = None, *, header_lines: int | None = None) -> None:
        self.dispatcher = dispatcher or Dispatcher()
        self.header_lines = (
            header_lines if header_lines is not None else self.dispatcher.settings.network_header_lines
        )

    def run(
        self,
        tables: Mapping[EnrichmentSource | str, pd.DataFrame | str],
        backend: BackendSelector | str,
        config: GenerationConfig | None = None,
        credential_path: str | Path | None = None,
        *,
        experimental_design: str | None = None,
        checkpoint_path: str | Path | None = None,
    ) -> EnrichmentResult:
        """Run the enrichment chain over ``tables`` (source -> filtered table or JSON records).

        With ``checkpoint_path`` the session is saved after every completed
        stage; a rerun with identical inputs continues from there. The
        checkpoint is removed once the run is done.
        """

        selector = BackendSelector.coerce(backend)
        payloads = self._payloads(tables)
        resolved_config = config or self.dispatcher.default_config(selector)

        fingerprint = session_fingerprint(
            {
                "backend": selector.value,
                "config": resolved_config.model_dump(),
                "experimental_design": experimental_design,
                "header_lines": self.header_lines,
                "sources": {source.value: records for source, records in payloads.items()},
            }
        )
        store = SessionStore(checkpoint_path) if checkpoint_path is not None else None
        session = store.load(fingerprint) if store else None
        resumed = session is not None
        if session is None:
            session = EnrichmentSession(
                fingerprint=fingerprint,
                run_id=uuid.uuid4().hex,
                sources=[SourceStage(source=source) for source in payloads],
            )

        structlog.contextvars.bind_contextvars(run_id=session.run_id)
        logger.info("enrichment.started", sources=[s.value for s in payloads], resumed=resumed)
        try:
            return self._advance(
                session,
                payloads,
                selector,
                resolved_config,
                credential_path,
                experimental_design,
                store,
            )
        finally:
            structlog.contextvars.unbind_contextvars("run_id", "stage", "source")

    # Internal helpers -----------------------------------------------------------

    def _payloads(
        self, tables: Mapping[EnrichmentSource | str, pd.DataFrame | str]
    ) -> dict[EnrichmentSource, str]:
        given = {EnrichmentSource(str(getattr(key, "value", key)).upper()): value for key, value in tables.items()}
        payloads = {
            source: _records_json(given[source]) for source in EnrichmentSource if given.get(source) is not None
        }
        if not payloads:
            raise ValueError("At least one of the KEGG or GO enrichment tables is required.")
        return payloads

    def _enter(
        self,
        session: EnrichmentSession,
        state: EnrichmentState,
        source: EnrichmentSource | None = None,
    ) -> None:
        session.state = state
        structlog.contextvars.bind_contextvars(stage=state.value, source=source.value if source else None)
        logger.info("enrichment.stage")

    def _call(
        self,
        kind: TemplateKind,
        fields: dict[str, Any],
        backend: BackendSelector,
        config: GenerationConfig,
        credential_path: str | Path | None,
    ) -> RawResponse:
        raw = self.dispatcher.dispatch(kind, fields, backend, config=config, credential_path=credential_path)
        return raw.raise_for_status()

    def _advance(
        self,
        session: EnrichmentSession,
        payloads: dict[EnrichmentSource, str],
        backend: BackendSelector,
        config: GenerationConfig,
        credential_path: str | Path | None,
        experimental_design: str | None,
        store: SessionStore | None,
    ) -> EnrichmentResult:
        def checkpoint() -> None:
            if store is not None:
                store.save(session)

        source: EnrichmentSource | None = None
        try:
            for stage in session.sources:
                source = stage.source
                if stage.summary_text is None:
                    self._enter(session, EnrichmentState.SUMMARIZE, source)
                    fields: dict[str, Any] = {"records_json": payloads[source]}
                    if experimental_design:
                        fields["experimental_design"] = experimental_design
                    raw = self._call(_SUMMARY_TEMPLATES[source], fields, backend, config, credential_path)
                    stage.summary_text = parse_free_text(raw)
                    checkpoint()

                if stage.triples is None:
                    self._enter(session, EnrichmentState.EXTRACT_NETWORK, source)
                    raw = self._call(
                        TemplateKind.NETWORK_EXTRACTION,
                        {"summary_text": stage.summary_text, "source": source.value},
                        backend,
                        config,
                        credential_path,
                    )
                    table = parse_network_table(raw, header_lines=self.header_lines)
                    stage.triples = table.triples
                    stage.skipped = table.skipped
                    checkpoint()

            source = None
            if len(session.sources) > 1:
                self._enter(session, EnrichmentState.COMBINE)
                session.combined = [triple for stage in session.sources for triple in stage.triples or []]

                if session.overall_summary is None:
                    self._enter(session, EnrichmentState.OVERALL_SUMMARY)
                    fields = {
                        "kegg_summary": session.stage(EnrichmentSource.KEGG).summary_text,
                        "go_summary": session.stage(EnrichmentSource.GO).summary_text,
                    }
                    if experimental_design:
                        fields["experimental_design"] = experimental_design
                    raw = self._call(TemplateKind.ENRICHMENT_OVERALL, fields, backend, config, credential_path)
                    session.overall_summary = parse_free_text(raw)
                    checkpoint()
        except SCassistError as exc:
            failed_stage = session.state
            session.state = EnrichmentState.ABORTED
            logger.error("enrichment.aborted", error=str(exc))
            raise EnrichmentAbortedError(
                failed_stage.value,
                source.value if source else None,
                str(exc),
            ) from exc

        self._enter(session, EnrichmentState.DONE)
        if store is not None:
            store.clear()

        if session.combined is not None:
            triples = list(session.combined)
        else:
            triples = list(session.sources[0].triples or [])
        return EnrichmentResult(
            summaries={stage.source.value: stage.summary_text or "" for stage in session.sources},
            triples=triples,
            source_triples={stage.source.value: list(stage.triples or []) for stage in session.sources},
            skipped={stage.source.value: stage.skipped for stage in session.sources},
            overall_summary=session.overall_summary,
            state=session.state,
        )


__all__ = ["EnrichmentOrchestrator", "EnrichmentResult"]
