"""Enrichment session state and its JSON checkpoint file."""

from __future__ import annotations

import json
import logging
from enum import Enum
from hashlib import sha256
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from backend.llm.models import NetworkTriple

logger = logging.getLogger("scassist.enrichment")


class EnrichmentSource(str, Enum):
    KEGG = "KEGG"
    GO = "GO"


class EnrichmentState(str, Enum):
    START = "start"
    SUMMARIZE = "summarize"
    EXTRACT_NETWORK = "extract_network"
    COMBINE = "combine"
    OVERALL_SUMMARY = "overall_summary"
    DONE = "done"
    ABORTED = "aborted"


class SourceStage(BaseModel):
    """Progress for one source; ``None`` marks a stage that has not completed."""

    source: EnrichmentSource
    summary_text: str | None = None
    triples: list[NetworkTriple] | None = None
    skipped: int = 0


class EnrichmentSession(BaseModel):
    fingerprint: str
    run_id: str
    state: EnrichmentState = EnrichmentState.START
    sources: list[SourceStage] = Field(default_factory=list)
    combined: list[NetworkTriple] | None = None
    overall_summary: str | None = None

    def stage(self, source: EnrichmentSource) -> SourceStage:
        for stage in self.sources:
            if stage.source is source:
                return stage
        raise KeyError(source.value)


def session_fingerprint(payload: dict[str, Any]) -> str:
    """Stable digest of everything that determines an enrichment run's prompts."""

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return sha256(canonical.encode("utf-8")).hexdigest()


class SessionStore:
    """Keep one session as JSON at ``path`` so an interrupted run can resume."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self, fingerprint: str) -> EnrichmentSession | None:
        if not self.path.exists():
            return None
        try:
            session = EnrichmentSession.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            logger.warning(
                "enrichment.checkpoint_invalid",
                extra={"path": str(self.path), "error": str(exc)},
            )
            return None
        if session.fingerprint != fingerprint:
            logger.info("enrichment.checkpoint_stale", extra={"path": str(self.path)})
            return None
        return session

    def save(self, session: EnrichmentSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


__all__ = [
    "EnrichmentSession",
    "EnrichmentSource",
    "EnrichmentState",
    "SessionStore",
    "SourceStage",
    "session_fingerprint",
]
