"""Concrete single-dataset analysis pipelines."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from anndata import AnnData

from backend.data import summaries
from backend.llm.models import BackendSelector, GenerationConfig, IntegerRecommendation, RawResponse
from backend.llm.parsers import parse_free_text, parse_integer
from backend.llm.prompts import TemplateKind
from backend.pipelines.base import AnalysisPipeline


def _with_design(fields: dict[str, Any], experimental_design: str | None) -> dict[str, Any]:
    if experimental_design:
        fields["experimental_design"] = experimental_design
    return fields


class QualityPipeline(AnalysisPipeline):
    """Recommend QC filtering cutoffs from count and feature distributions."""

    template_kind = TemplateKind.QUALITY

    def summarize(
        self,
        adata: AnnData,
        metrics: Sequence[str] | None = None,
        experimental_design: str | None = None,
    ) -> dict[str, Any]:
        return _with_design(summaries.quality_summary(adata, metrics), experimental_design)


class NormalizationPipeline(AnalysisPipeline):
    """Recommend a normalization method from raw count characteristics."""

    template_kind = TemplateKind.NORMALIZATION

    def summarize(
        self,
        adata: AnnData,
        layer: str | None = None,
        experimental_design: str | None = None,
    ) -> dict[str, Any]:
        return _with_design(summaries.normalization_summary(adata, layer), experimental_design)


class VariableFeaturesPipeline(AnalysisPipeline):
    """Interpret the top highly variable genes."""

    template_kind = TemplateKind.VARIABLE_FEATURES

    def summarize(
        self,
        adata: AnnData,
        top_n: int = 30,
        experimental_design: str | None = None,
    ) -> dict[str, Any]:
        return _with_design({"genes": summaries.variable_features(adata, top_n)}, experimental_design)


@dataclass(frozen=True)
class PCInterpretation:
    pc_summaries: list[str]
    overall_summary: str


class PCInterpretationPipeline(AnalysisPipeline):
    """Summarize each leading PC from its top-loading genes, then all of them together.

    One call is made per PC followed by one overall call; the first failure
    aborts the run.
    """

    template_kind = TemplateKind.PCS

    def summarize(
        self,
        adata: AnnData,
        num_pcs: int = 5,
        top_n: int = 50,
        experimental_design: str | None = None,
    ) -> dict[str, Any]:
        return _with_design(
            {"pc_genes": summaries.pc_top_genes(adata, num_pcs=num_pcs, top_n=top_n)},
            experimental_design,
        )

    def run(
        self,
        summary: Mapping[str, Any],
        backend: BackendSelector | str,
        config: GenerationConfig | None = None,
        credential_path: str | Path | None = None,
    ) -> PCInterpretation:
        selector = BackendSelector.coerce(backend)
        design = summary.get("experimental_design")
        pc_summaries: list[str] = []
        for index, genes in enumerate(summary["pc_genes"], start=1):
            fields = _with_design({"pc_index": index, "genes": list(genes)}, design)
            raw = self.dispatcher.dispatch(
                TemplateKind.PCS, fields, selector, config=config, credential_path=credential_path
            )
            pc_summaries.append(parse_free_text(raw.raise_for_status()))

        raw = self.dispatcher.dispatch(
            TemplateKind.PCS_OVERALL,
            {"pc_summaries": pc_summaries},
            selector,
            config=config,
            credential_path=credential_path,
        )
        return PCInterpretation(
            pc_summaries=pc_summaries,
            overall_summary=parse_free_text(raw.raise_for_status()),
        )


class RecommendPCsPipeline(AnalysisPipeline):
    """Ask for the number of PCs to keep given the variance explained per PC."""

    template_kind = TemplateKind.RECOMMEND_PCS

    def summarize(self, adata: AnnData, experimental_design: str | None = None) -> dict[str, Any]:
        return _with_design(
            {"variance_explained": summaries.pca_variance_explained(adata)},
            experimental_design,
        )

    def parse(self, raw: RawResponse) -> IntegerRecommendation:
        value = parse_integer(raw)
        return IntegerRecommendation(value=value, text=(raw.text or "").strip())


class KParamPipeline(AnalysisPipeline):
    """Suggest ``k`` for the nearest-neighbour graph."""

    template_kind = TemplateKind.K_PARAM

    def summarize(
        self,
        adata: AnnData,
        num_pcs: int | None = None,
        experimental_design: str | None = None,
    ) -> dict[str, Any]:
        if num_pcs is not None and (isinstance(num_pcs, bool) or int(num_pcs) != num_pcs or num_pcs < 1):
            raise ValueError(f"num_pcs must be a positive integer, got {num_pcs!r}.")
        return _with_design(
            {"n_cells": int(adata.n_obs), "num_pcs": num_pcs},
            experimental_design,
        )


class ResolutionPipeline(AnalysisPipeline):
    """Suggest a clustering resolution range from neighbour-graph statistics."""

    template_kind = TemplateKind.RESOLUTION

    def summarize(
        self,
        adata: AnnData,
        neighbors_key: str | None = None,
        layer: str | None = None,
    ) -> dict[str, Any]:
        return summaries.neighbor_summary(adata, neighbors_key=neighbors_key, layer=layer)


__all__ = [
    "KParamPipeline",
    "NormalizationPipeline",
    "PCInterpretation",
    "PCInterpretationPipeline",
    "QualityPipeline",
    "RecommendPCsPipeline",
    "ResolutionPipeline",
    "VariableFeaturesPipeline",
]
