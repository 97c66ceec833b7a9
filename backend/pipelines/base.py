"""Shared run loop for the single-prompt analysis pipelines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar

from anndata import AnnData

from backend.llm.dispatcher import Dispatcher
from backend.llm.models import BackendSelector, GenerationConfig, RawResponse
from backend.llm.parsers import parse_free_text
from backend.llm.prompts import TemplateKind


class AnalysisPipeline(ABC):
    """Summary -> prompt -> dispatch -> parse for one analysis kind.

    Subclasses declare the ``template_kind`` they render, pull their prompt
    fields from an AnnData object in :meth:`summarize` and may override
    :meth:`parse` when the answer is not free text.
    """

    template_kind: ClassVar[TemplateKind]

    def __init__(self, dispatcher: Dispatcher | None = None) -> None:
        self.dispatcher = dispatcher or Dispatcher()

    @abstractmethod
    def summarize(self, adata: AnnData, **params: Any) -> dict[str, Any]:
        """Return the prompt fields, raising ``PreconditionError`` when inputs are missing."""

    def parse(self, raw: RawResponse) -> Any:
        return parse_free_text(raw)

    def run(
        self,
        summary: Mapping[str, Any],
        backend: BackendSelector | str,
        config: GenerationConfig | None = None,
        credential_path: str | Path | None = None,
    ) -> Any:
        """Dispatch an already-computed summary and parse the answer.

        A backend failure raises ``BackendError`` before any parsing happens.
        """

        raw = self.dispatcher.dispatch(
            self.template_kind,
            summary,
            backend,
            config=config,
            credential_path=credential_path,
        )
        raw.raise_for_status()
        return self.parse(raw)

    def analyze(
        self,
        adata: AnnData,
        backend: BackendSelector | str,
        *,
        config: GenerationConfig | None = None,
        credential_path: str | Path | None = None,
        **params: Any,
    ) -> Any:
        """Summarize ``adata`` and run the pipeline on the result."""

        selector = BackendSelector.coerce(backend)
        summary = self.summarize(adata, **params)
        return self.run(summary, selector, config=config, credential_path=credential_path)


__all__ = ["AnalysisPipeline"]
