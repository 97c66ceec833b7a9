"""Scanpy integration helpers and CLI entrypoints for SCassist."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import anndata as ad
import pandas as pd
from anndata import AnnData

from backend.data.enrichment_tables import prepare_enrichment_table, significant_genes
from backend.data.summaries import markers_from_table
from backend.errors import SCassistError
from backend.io.tables import write_network_tsv
from backend.llm.dispatcher import Dispatcher
from backend.llm.models import BackendSelector, GenerationConfig, IntegerRecommendation
from backend.logging_config import configure_logging
from backend.pipelines.analyses import (
    KParamPipeline,
    NormalizationPipeline,
    PCInterpretation,
    PCInterpretationPipeline,
    QualityPipeline,
    RecommendPCsPipeline,
    ResolutionPipeline,
    VariableFeaturesPipeline,
)
from backend.pipelines.annotation import AnnotationPipeline, AnnotationResult
from backend.pipelines.enrichment import EnrichmentOrchestrator, EnrichmentResult
from backend.pipelines.session_store import EnrichmentSource
from config.settings import get_settings

Backend = BackendSelector | str | None


def _resolve(dispatcher: Dispatcher | None, backend: Backend) -> tuple[Dispatcher, BackendSelector]:
    dispatcher = dispatcher or Dispatcher()
    selected = backend if backend is not None else dispatcher.settings.default_backend
    return dispatcher, BackendSelector.coerce(selected)


def analyze_quality(
    adata: AnnData,
    *,
    metrics: Sequence[str] | None = None,
    experimental_design: str | None = None,
    backend: Backend = None,
    config: GenerationConfig | None = None,
    credential_path: str | Path | None = None,
    dispatcher: Dispatcher | None = None,
) -> str:
    """Recommend QC filtering cutoffs from ``total_counts`` and ``n_genes_by_counts``.

    ``metrics`` names additional ``adata.obs`` columns (e.g. ``pct_counts_mt``)
    to include; names that are not present are ignored.
    """

    dispatcher, selector = _resolve(dispatcher, backend)
    return QualityPipeline(dispatcher).analyze(
        adata,
        selector,
        config=config,
        credential_path=credential_path,
        metrics=metrics,
        experimental_design=experimental_design,
    )


def recommend_normalization(
    adata: AnnData,
    *,
    layer: str | None = None,
    experimental_design: str | None = None,
    backend: Backend = None,
    config: GenerationConfig | None = None,
    credential_path: str | Path | None = None,
    dispatcher: Dispatcher | None = None,
) -> str:
    """Recommend a normalization method from the raw counts (``layers["counts"]`` or ``X``)."""

    dispatcher, selector = _resolve(dispatcher, backend)
    return NormalizationPipeline(dispatcher).analyze(
        adata,
        selector,
        config=config,
        credential_path=credential_path,
        layer=layer,
        experimental_design=experimental_design,
    )


def analyze_variable_features(
    adata: AnnData,
    *,
    top_n: int = 30,
    experimental_design: str | None = None,
    backend: Backend = None,
    config: GenerationConfig | None = None,
    credential_path: str | Path | None = None,
    dispatcher: Dispatcher | None = None,
) -> str:
    dispatcher, selector = _resolve(dispatcher, backend)
    return VariableFeaturesPipeline(dispatcher).analyze(
        adata,
        selector,
        config=config,
        credential_path=credential_path,
        top_n=top_n,
        experimental_design=experimental_design,
    )


def analyze_pcs(
    adata: AnnData,
    *,
    num_pcs: int = 5,
    top_n: int = 50,
    experimental_design: str | None = None,
    backend: Backend = None,
    config: GenerationConfig | None = None,
    credential_path: str | Path | None = None,
    dispatcher: Dispatcher | None = None,
) -> PCInterpretation:
    dispatcher, selector = _resolve(dispatcher, backend)
    return PCInterpretationPipeline(dispatcher).analyze(
        adata,
        selector,
        config=config,
        credential_path=credential_path,
        num_pcs=num_pcs,
        top_n=top_n,
        experimental_design=experimental_design,
    )


def recommend_pcs(
    adata: AnnData,
    *,
    experimental_design: str | None = None,
    backend: Backend = None,
    config: GenerationConfig | None = None,
    credential_path: str | Path | None = None,
    dispatcher: Dispatcher | None = None,
) -> IntegerRecommendation:
    """Recommend how many PCs to keep; ``value`` is 0 when no number could be extracted."""

    dispatcher, selector = _resolve(dispatcher, backend)
    return RecommendPCsPipeline(dispatcher).analyze(
        adata,
        selector,
        config=config,
        credential_path=credential_path,
        experimental_design=experimental_design,
    )


def recommend_k(
    adata: AnnData,
    *,
    num_pcs: int,
    experimental_design: str | None = None,
    backend: Backend = None,
    config: GenerationConfig | None = None,
    credential_path: str | Path | None = None,
    dispatcher: Dispatcher | None = None,
) -> str:
    dispatcher, selector = _resolve(dispatcher, backend)
    return KParamPipeline(dispatcher).analyze(
        adata,
        selector,
        config=config,
        credential_path=credential_path,
        num_pcs=num_pcs,
        experimental_design=experimental_design,
    )


def recommend_resolution(
    adata: AnnData,
    *,
    neighbors_key: str | None = None,
    layer: str | None = None,
    backend: Backend = None,
    config: GenerationConfig | None = None,
    credential_path: str | Path | None = None,
    dispatcher: Dispatcher | None = None,
) -> str:
    """Recommend a clustering resolution range; requires ``scanpy.pp.neighbors`` output."""

    dispatcher, selector = _resolve(dispatcher, backend)
    return ResolutionPipeline(dispatcher).analyze(
        adata,
        selector,
        config=config,
        credential_path=credential_path,
        neighbors_key=neighbors_key,
        layer=layer,
    )


def annotate_clusters(
    adata: AnnData,
    cluster_key: str,
    *,
    markers: Mapping[Any, Sequence[str]] | None = None,
    top_n: int = 30,
    compute_markers: bool = True,
    output_path: str | Path | None = None,
    merge: bool = True,
    on_unmatched: str = "raise",
    backend: Backend = None,
    config: GenerationConfig | None = None,
    credential_path: str | Path | None = None,
    dispatcher: Dispatcher | None = None,
) -> AnnotationResult:
    """Annotate the clusters in ``adata.obs[cluster_key]`` from their top marker genes."""

    dispatcher, selector = _resolve(dispatcher, backend)
    return AnnotationPipeline(dispatcher).analyze(
        adata,
        selector,
        config=config,
        credential_path=credential_path,
        cluster_key=cluster_key,
        markers=markers,
        top_n=top_n,
        compute_markers=compute_markers,
        output_path=output_path,
        merge=merge,
        on_unmatched=on_unmatched,  # type: ignore[arg-type]
    )


def analyze_enrichment(
    kegg: pd.DataFrame | None = None,
    go: pd.DataFrame | None = None,
    *,
    experimental_design: str | None = None,
    pvalue: float = 0.05,
    prepare: bool = True,
    network_path: str | Path | None = None,
    checkpoint_path: str | Path | None = None,
    backend: Backend = None,
    config: GenerationConfig | None = None,
    credential_path: str | Path | None = None,
    dispatcher: Dispatcher | None = None,
) -> EnrichmentResult:
    """Summarise KEGG and/or GO enrichment tables and extract a gene/concept network.

    With ``prepare`` the tables are reduced to significant ``Description,
    pvalue, Gene`` rows first. The combined triples are written to
    ``network_path`` as TSV when given.
    """

    dispatcher, selector = _resolve(dispatcher, backend)
    tables: dict[EnrichmentSource, pd.DataFrame] = {}
    for source, table in ((EnrichmentSource.KEGG, kegg), (EnrichmentSource.GO, go)):
        if table is not None:
            tables[source] = prepare_enrichment_table(table, pvalue=pvalue) if prepare else table

    result = EnrichmentOrchestrator(dispatcher).run(
        tables,
        selector,
        config=config,
        credential_path=credential_path,
        experimental_design=experimental_design,
        checkpoint_path=checkpoint_path,
    )
    if network_path is not None:
        write_network_tsv(result.triples, network_path)
    return result


# CLI ----------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--backend",
        help="LLM backend: 'hosted' (Gemini API) or 'local' (Ollama). Defaults to settings.",
    )
    common.add_argument("--model", help="Override the model identifier for the chosen backend.")
    common.add_argument("--temperature", type=float, help="Sampling temperature between 0 and 1.")
    common.add_argument("--max-output-tokens", type=int, help="Output token budget per call.")
    common.add_argument(
        "--api-key-file",
        type=Path,
        help="File whose first line is the hosted backend API key.",
    )

    dataset = argparse.ArgumentParser(add_help=False, parents=[common])
    dataset.add_argument("input", type=Path, help="Path to the input .h5ad file.")

    design = argparse.ArgumentParser(add_help=False)
    design.add_argument("--experimental-design", help="Short description of the experiment.")

    parser = argparse.ArgumentParser(
        prog="scassist",
        description="LLM-assisted recommendations for single-cell RNA-seq analysis.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    quality = subparsers.add_parser(
        "quality", parents=[dataset, design], help="Recommend QC filtering cutoffs."
    )
    quality.add_argument(
        "--metrics",
        nargs="*",
        default=None,
        help="Extra adata.obs QC metric columns to summarise (e.g. pct_counts_mt).",
    )

    normalization = subparsers.add_parser(
        "normalization", parents=[dataset, design], help="Recommend a normalization method."
    )
    normalization.add_argument("--layer", help="Layer holding raw counts. Defaults to 'counts' or X.")

    variable = subparsers.add_parser(
        "variable-features",
        parents=[dataset, design],
        help="Interpret the top highly variable genes.",
    )
    variable.add_argument("--top-n", type=int, default=30, help="Number of variable genes to send.")

    pcs = subparsers.add_parser("pcs", parents=[dataset, design], help="Interpret the leading PCs.")
    pcs.add_argument("--num-pcs", type=int, default=5, help="Number of PCs to interpret.")
    pcs.add_argument("--top-n", type=int, default=50, help="Top-loading genes per PC.")

    subparsers.add_parser(
        "recommend-pcs",
        parents=[dataset, design],
        help="Recommend how many PCs to use downstream.",
    )

    k_param = subparsers.add_parser(
        "k-param", parents=[dataset, design], help="Recommend k for the neighbour graph."
    )
    k_param.add_argument("--num-pcs", type=int, required=True, help="Number of PCs in use.")

    resolution = subparsers.add_parser(
        "resolution", parents=[dataset], help="Recommend a clustering resolution range."
    )
    resolution.add_argument("--neighbors-key", help="Key used when running scanpy.pp.neighbors.")
    resolution.add_argument("--layer", help="Layer used for per-gene variance. Defaults to 'counts' or X.")

    annotate = subparsers.add_parser(
        "annotate", parents=[dataset], help="Annotate clusters from their marker genes."
    )
    annotate.add_argument(
        "--cluster-key",
        required=True,
        help="Column in adata.obs that identifies cluster assignments.",
    )
    annotate.add_argument("--top-n", type=int, default=30, help="Top markers per cluster to send.")
    annotate.add_argument(
        "--markers",
        type=Path,
        help="Optional TSV of markers with 'cluster' and 'gene' columns, best first.",
    )
    annotate.add_argument(
        "--skip-recompute-markers",
        action="store_true",
        help="Assume rank_genes_groups already computed; do not call scanpy.tl.rank_genes_groups.",
    )
    annotate.add_argument(
        "--on-unmatched",
        choices=["raise", "report"],
        default="raise",
        help="What to do with predicted cluster ids that are not in the data.",
    )
    annotate.add_argument("--output-tsv", type=Path, help="Write cluster_id/label/reasoning rows here.")
    annotate.add_argument(
        "--output",
        type=Path,
        help="Destination .h5ad path. Defaults to in-place overwrite.",
    )

    enrichment = subparsers.add_parser(
        "enrichment",
        parents=[common, design],
        help="Summarise KEGG/GO enrichment tables and extract a gene network.",
    )
    enrichment.add_argument("--kegg", type=Path, help="TSV of KEGG enrichment results.")
    enrichment.add_argument("--go", type=Path, help="TSV of GO enrichment results.")
    enrichment.add_argument("--pvalue", type=float, default=0.05, help="Keep terms with p below this.")
    enrichment.add_argument("--network-tsv", type=Path, help="Write the combined network triples here.")
    enrichment.add_argument(
        "--checkpoint",
        type=Path,
        help="Session checkpoint file; an interrupted run with the same inputs resumes from it.",
    )

    significant = subparsers.add_parser(
        "significant-genes",
        help="List differentially expressed genes to submit for KEGG/GO enrichment.",
    )
    significant.add_argument("markers", type=Path, help="TSV of differential expression results.")
    significant.add_argument("--pvalue", type=float, default=0.05, help="Keep genes with p below this.")
    significant.add_argument(
        "--log2fc", type=float, default=1.0, help="Keep genes with absolute log2 fold change above this."
    )
    significant.add_argument("--pvalue-column", default="p_val", help="Column holding p-values.")
    significant.add_argument("--log2fc-column", default="avg_log2FC", help="Column holding log2 fold changes.")
    significant.add_argument(
        "--gene-column",
        help="Column holding gene symbols. Defaults to the first column (the row names).",
    )
    significant.add_argument("--output", type=Path, help="Write one gene per line here instead of stdout.")

    return parser


def _generation_config(
    args: argparse.Namespace,
    dispatcher: Dispatcher,
    backend: BackendSelector,
) -> GenerationConfig | None:
    updates = {
        "model_id": args.model,
        "temperature": args.temperature,
        "max_output_tokens": args.max_output_tokens,
    }
    updates = {key: value for key, value in updates.items() if value is not None}
    if not updates:
        return None
    base = dispatcher.default_config(backend).model_dump()
    return GenerationConfig(**{**base, **updates})


def _read_table(path: Path | None) -> pd.DataFrame | None:
    if path is None:
        return None
    return pd.read_csv(path, sep="\t")


def _print_pcs(result: PCInterpretation) -> None:
    for index, summary in enumerate(result.pc_summaries, start=1):
        print(f"PC{index}:\n{summary}\n")
    print(f"Overall summary:\n{result.overall_summary}")


def _print_enrichment(result: EnrichmentResult) -> None:
    for source, summary in result.summaries.items():
        print(f"{source} summary:\n{summary}\n")
    if result.overall_summary:
        print(f"Overall summary:\n{result.overall_summary}\n")
    skipped = sum(result.skipped.values())
    print(f"Network triples: {len(result.triples)} (skipped rows: {skipped})")


def _run_significant_genes(args: argparse.Namespace) -> None:
    index_col = None if args.gene_column else 0
    markers = pd.read_csv(args.markers, sep="\t", index_col=index_col)
    genes = significant_genes(
        markers,
        pvalue=args.pvalue,
        log2fc=args.log2fc,
        pvalue_column=args.pvalue_column,
        log2fc_column=args.log2fc_column,
        gene_column=args.gene_column,
    )
    if args.output is not None:
        args.output.write_text("".join(f"{gene}\n" for gene in genes), encoding="utf-8")
    else:
        print("\n".join(genes))


def _run(args: argparse.Namespace, dispatcher: Dispatcher) -> None:
    if args.command == "significant-genes":
        _run_significant_genes(args)
        return

    backend = BackendSelector.coerce(args.backend or dispatcher.settings.default_backend)
    options: dict[str, Any] = {
        "backend": backend,
        "config": _generation_config(args, dispatcher, backend),
        "credential_path": args.api_key_file,
        "dispatcher": dispatcher,
    }
    design = getattr(args, "experimental_design", None)

    if args.command == "enrichment":
        result = analyze_enrichment(
            _read_table(args.kegg),
            _read_table(args.go),
            experimental_design=design,
            pvalue=args.pvalue,
            network_path=args.network_tsv,
            checkpoint_path=args.checkpoint,
            **options,
        )
        _print_enrichment(result)
        return

    adata = ad.read_h5ad(args.input)
    if args.command == "quality":
        print(analyze_quality(adata, metrics=args.metrics, experimental_design=design, **options))
    elif args.command == "normalization":
        print(recommend_normalization(adata, layer=args.layer, experimental_design=design, **options))
    elif args.command == "variable-features":
        print(analyze_variable_features(adata, top_n=args.top_n, experimental_design=design, **options))
    elif args.command == "pcs":
        _print_pcs(
            analyze_pcs(
                adata,
                num_pcs=args.num_pcs,
                top_n=args.top_n,
                experimental_design=design,
                **options,
            )
        )
    elif args.command == "recommend-pcs":
        recommendation = recommend_pcs(adata, experimental_design=design, **options)
        print(recommendation.text)
        print(f"\nRecommended number of PCs: {recommendation.value}")
    elif args.command == "k-param":
        print(recommend_k(adata, num_pcs=args.num_pcs, experimental_design=design, **options))
    elif args.command == "resolution":
        print(
            recommend_resolution(
                adata,
                neighbors_key=args.neighbors_key,
                layer=args.layer,
                **options,
            )
        )
    elif args.command == "annotate":
        markers = None
        if args.markers is not None:
            markers = markers_from_table(pd.read_csv(args.markers, sep="\t"), args.top_n)
        result = annotate_clusters(
            adata,
            args.cluster_key,
            markers=markers,
            top_n=args.top_n,
            compute_markers=not args.skip_recompute_markers,
            output_path=args.output_tsv,
            on_unmatched=args.on_unmatched,
            **options,
        )
        for record in result.records:
            print(f"{record.cluster_id}\t{record.label}")
        if result.unmatched:
            print(f"Unmatched cluster ids: {', '.join(result.unmatched)}", file=sys.stderr)
        adata.write(args.output or args.input)


def main(argv: Sequence[str] | None = None, *, dispatcher: Dispatcher | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)

    try:
        _run(args, dispatcher or Dispatcher())
    except SCassistError as exc:
        print(f"scassist: error: {exc}", file=sys.stderr)
        return 1
    except KeyError as exc:
        print(f"scassist: error: {exc.args[0] if exc.args else exc}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        print(f"scassist: error: {exc}", file=sys.stderr)
        return 1
    return 0


__all__ = [
    "analyze_enrichment",
    "analyze_pcs",
    "analyze_quality",
    "analyze_variable_features",
    "annotate_clusters",
    "main",
    "recommend_k",
    "recommend_normalization",
    "recommend_pcs",
    "recommend_resolution",
]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
