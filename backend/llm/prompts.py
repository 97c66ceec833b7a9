"""Prompt builders for SCassist's LLM interactions.

Every template ends with an explicit instruction about the shape of the
answer; the parsers in :mod:`backend.llm.parsers` rely on those instructions,
so changing the wording here means checking the matching parser.
"""

from __future__ import annotations

import numbers
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Any

from backend.errors import MissingFieldError

DEFAULT_EXPERIMENTAL_DESIGN = "Single-cell RNA sequencing"
NORMALIZATION_METHODS = ("LogNormalize", "CLR", "RC", "SCTransform")
NETWORK_EXAMPLE_ROWS = (
    "| Gene1 | Involved in | Metabolism |",
    "| Gene3 | Interacts with | Gene5 |",
)


class TemplateKind(str, Enum):
    QUALITY = "quality"
    NORMALIZATION = "normalization"
    VARIABLE_FEATURES = "variable_features"
    PCS = "pcs"
    PCS_OVERALL = "pcs_overall"
    RECOMMEND_PCS = "recommend_pcs"
    K_PARAM = "k_param"
    RESOLUTION = "resolution"
    ANNOTATE_CLUSTER = "annotate_cluster"
    ENRICHMENT_KEGG = "enrichment_kegg"
    ENRICHMENT_GO = "enrichment_go"
    ENRICHMENT_OVERALL = "enrichment_overall"
    NETWORK_EXTRACTION = "network_extraction"


REQUIRED_FIELDS: dict[TemplateKind, tuple[str, ...]] = {
    TemplateKind.QUALITY: ("n_cells", "count_summary", "feature_summary"),
    TemplateKind.NORMALIZATION: ("n_cells", "expression_mean", "expression_sd", "library_size_cv"),
    TemplateKind.VARIABLE_FEATURES: ("genes",),
    TemplateKind.PCS: ("pc_index", "genes"),
    TemplateKind.PCS_OVERALL: ("pc_summaries",),
    TemplateKind.RECOMMEND_PCS: ("variance_explained",),
    TemplateKind.K_PARAM: ("n_cells", "num_pcs"),
    TemplateKind.RESOLUTION: (
        "n_cells",
        "n_genes",
        "mean_expression_variability",
        "median_neighbor_distance",
    ),
    TemplateKind.ANNOTATE_CLUSTER: ("cluster_id", "genes"),
    TemplateKind.ENRICHMENT_KEGG: ("records_json",),
    TemplateKind.ENRICHMENT_GO: ("records_json",),
    TemplateKind.ENRICHMENT_OVERALL: ("kegg_summary", "go_summary"),
    TemplateKind.NETWORK_EXTRACTION: ("summary_text",),
}


def format_number(value: Any) -> str:
    """Render numbers with at most seven significant digits, matching R's print."""

    if isinstance(value, bool):
        return str(value)
    if isinstance(value, numbers.Integral):
        return str(int(value))
    if isinstance(value, numbers.Real):
        return format(float(value), ".7g")
    return str(value)


def _design(fields: Mapping[str, Any], default: str = "") -> str:
    design = fields.get("experimental_design")
    return str(design) if design else default


def _summary_lines(summary: Mapping[str, Any]) -> str:
    return (
        f"  * Minimum: {format_number(summary['min'])}\n"
        f"  * 1st Quartile: {format_number(summary['q1'])}\n"
        f"  * Median: {format_number(summary['median'])}\n"
        f"  * Maximum: {format_number(summary['max'])}\n\n"
        "  **Quantile Data:**\n"
        f"  * 5th Percentile: {format_number(summary['p5'])}\n"
        f"  * 95th Percentile: {format_number(summary['p95'])}\n\n"
    )


def _build_quality(fields: Mapping[str, Any]) -> str:
    metrics: Sequence[Mapping[str, Any]] = fields.get("metric_summaries") or []
    metric_names = [str(metric["name"]) for metric in metrics]
    listed = ", ".join(["nCount_RNA", "nFeature_RNA", *metric_names])

    header = (
        f"I have summary statistics and quantile data for {listed}, from a single cell experiment. "
        "I want to determine refined cutoff values that are more sensitive to the tails of each "
        "distribution, by combining both the summary statistics and the quantile information. "
        "The goal is to filter out poor quality cells.\n\n"
    )
    body = (
        "  **nCount_RNA**\n\n  **Summary Statistics:**\n"
        + _summary_lines(fields["count_summary"])
        + "  **nFeature_RNA**\n\n  **Summary Statistics:**\n"
        + _summary_lines(fields["feature_summary"])
    )

    metric_blocks = []
    for metric in metrics:
        summary = metric["summary"]
        metric_blocks.append(
            f"Summary statistics for {metric['name']}:\n"
            "   Min. 1st Qu.  Median    Mean 3rd Qu.    Max.\n"
            f"{format_number(summary['min'])} {format_number(summary['q1'])} "
            f"{format_number(summary['median'])} {format_number(summary['mean'])} "
            f"{format_number(summary['q3'])} {format_number(summary['max'])}\n\n"
            f"95th percentile data for {metric['name']}: {format_number(metric['p95'])}\n"
        )

    metric_clause = ""
    if metric_names:
        metric_clause = f"and the upper cutoff values for {', '.join(metric_names)}, "

    closing = (
        f"** Total number of cells : **{format_number(fields['n_cells'])}\n"
        "**Please provide the refined lower and upper cutoff values for nCount_RNA and nFeature_RNA, "
        f"{metric_clause}"
        "calculated based on the provided data and taking into account the potential presence of "
        "tails in the distribution. Do not generate the cutoff ONLY based on the percentiles, "
        "instead combine the percentiles with a logic that we need to remove outliers, but still "
        "keep good data. Make sure to state that the researcher should test a range of values "
        "around your recommendation**. Do not provide any IMPORTANT NOTES. Start the response "
        "saying that, based on your data summary, below are my recommendations for the quality "
        "filtering of the data"
    )
    return header + body + "\n".join(metric_blocks) + "\n\n" + closing


def _build_normalization(fields: Mapping[str, Any]) -> str:
    methods = fields.get("methods") or NORMALIZATION_METHODS
    return (
        "Consider the specific characteristics of the single-cell RNA-seq dataset, such as the "
        "number of cells, the distribution of gene expression values, and the observed library "
        "size variations. Recommend the most appropriate normalization method for this dataset "
        f"from the following options: {', '.join(methods)}. Explain why this method is preferred "
        "and discuss any potential alternatives.\n\n"
        f"The single-cell RNA-seq dataset contains {format_number(fields['n_cells'])} cells. "
        f"The mean gene expression is {format_number(fields['expression_mean'])} with a standard "
        f"deviation of {format_number(fields['expression_sd'])}. The coefficient of variation for "
        f"library sizes is {format_number(fields['library_size_cv'])}."
    )


def _build_variable_features(fields: Mapping[str, Any]) -> str:
    gene_list = ", ".join(fields["genes"])
    prompt = (
        f"Analyze the following list of genes: {gene_list}. "
        "These genes were identified as variable features. Identify the most enriched gene "
        "ontologies or pathways among these genes. Do not provide any p-values or enrichment "
        "scores, just summarize based on these genes known functions. Do not provide any Further "
        "Analysis suggestions."
    )
    design = _design(fields)
    if design:
        prompt += (
            "  Explain the relevance of these categories to the experimental design: "
            f"{design}."
        )
    return prompt


def _build_pcs(fields: Mapping[str, Any]) -> str:
    genes = ", ".join(fields["genes"])
    return (
        f"{_design(fields)}"
        "We performed QC, normalization and PCA on this data. Here is the list of top PC's and "
        "their genes from our analysis:\n\n"
        f"PC{fields['pc_index']}: {genes}\n\n"
        "\nIdentify the top contributing genes for this PC. Based on the gene functions and "
        "biological pathways associated with these genes, suggest potential biological processes "
        "that might be driving the variations captured by this PC. Present your results in a "
        "short paragraph\n\n"
    )


def _build_pcs_overall(fields: Mapping[str, Any]) -> str:
    sections = "".join(
        f"\n**PC{index} Summary:**\n{summary}\n"
        for index, summary in enumerate(fields["pc_summaries"], start=1)
    )
    return (
        "Please provide an overall summary based on the individual summaries of each PC:\n"
        f"{sections}"
    )


def _build_recommend_pcs(fields: Mapping[str, Any]) -> str:
    variance_text = ", ".join(
        f"PC{index}: {round(float(value), 2):g}%"
        for index, value in enumerate(fields["variance_explained"], start=1)
    )
    design = _design(fields)
    if design:
        start = (
            "I have a single-cell experiment where I performed principal component analysis "
            f"(PCA) on {design}. The variance explained by each PC is:\n\n"
        )
    else:
        start = (
            "I have a single-cell experiment where I performed principal component analysis "
            "(PCA). The variance explained by each PC is:\n\n"
        )
    return (
        f"{start}{variance_text}\n\n"
        "Based on this information, determine the optimal number of PCs to use for downstream "
        "analysis, such as finding neighbors or running UMAP. Explain your reasoning and consider "
        "the following factors:\n\n"
        "* **Elbow point:** Is there a clear 'elbow' in the scree plot?\n"
        "* **Variance explained:**  What percentage of the total variance is captured by the "
        "chosen number of PCs?\n"
        "* **Balance between complexity and interpretability:** A higher number of PCs might "
        "capture more subtle variation but make the analysis more complex.\n\n"
        "Provide your recommendation as a single number (e.g., 5) and a concise explanation.\n"
    )


def _build_k_param(fields: Mapping[str, Any]) -> str:
    num_pcs = format_number(fields["num_pcs"])
    return (
        f"I'm analyzing single-cell RNA sequencing data from \n{_design(fields)}\n"
        f"The dataset contains approximately {format_number(fields['n_cells'])} cells \n"
        f"I've determined that using {num_pcs} PCs (`dims` = {num_pcs}) is suitable for my data. "
        "I'm interested in identifying distinct cell populations. "
        "My goal is to identify biologically meaningful clusters representing the diverse cell "
        "types in the sample. \n"
        "Can you suggest a range of potential `k.param` values, in whole number, to explore for "
        "building the nearest-neighbor graph based on this information? Provide the output as, "
        "Recommended K: and a two short reasoning paragraph under Reasoning: "
    )


def _build_resolution(fields: Mapping[str, Any]) -> str:
    return (
        "I am analyzing single-cell RNA sequencing data. My dataset consists of "
        f"{format_number(fields['n_cells'])} cells and {format_number(fields['n_genes'])} genes. \n"
        "The mean expression variability across genes is "
        f"{format_number(fields['mean_expression_variability'])} and the median neighbor distance "
        f"in the k-nearest neighbor graph is {format_number(fields['median_neighbor_distance'])}. "
        "\n\n"
        "What resolution range would be most suitable for identifying distinct and subtle "
        "populations of cells in my data? Provide the output as, Recommended Resolution, EXAMPLE: "
        "seq(starting resolution number,ending resolution number,increment number), : and a short "
        "reasoning paragraph under Reasoning. Start your response saying that, based on the data "
        "characteristics i recommend; "
    )


def _build_annotate_cluster(fields: Mapping[str, Any]) -> str:
    return (
        "The provided genes are the top markers of this single cell cluster. Analyze it and "
        "predict a potential cell type based on the markers. provide output in three columns. the "
        "first column should be the cluster number, second column should be the name of the "
        "potential cell type, third column should be a one paragraph reasoning. separate the "
        "columns using a colon. do not provide any other additional content generated by you, "
        "like: here is the analysis, etc. Here is an EXAMPLE output - '8:Megakaryocyte-precursor "
        "cells: The combination of markers LY6G6F, GP9, ITGA2B, and TMEM40 suggests a "
        "megakaryocytic origin, with involvement in platelet development and function'. Here is "
        "the input cluster number and corresponding markers for your analysis:"
        f"cluster {fields['cluster_id']}: {', '.join(fields['genes'])}"
    )


def _enrichment_summary(fields: Mapping[str, Any], *, kind: str, items: str, scope: str) -> str:
    design = _design(fields, DEFAULT_EXPERIMENTAL_DESIGN)
    return (
        f"\nThis below Data is a list of {kind} enrichment results for a set of differentially "
        "expressed genes obtained from a single cell experiment involving "
        f"{design}.\n\nData:\n```json \n{fields['records_json']}```\n\n"
        f"Analyze all of the {items} from my above Data and provide insights in a structured "
        "format. Include:\n\n"
        f"        1. **Significant {items.title()}:** Analyze all the {items} in my list, in the "
        f"context of the system involving {design} and summarize common themes, in 2 paragraph, "
        "with a total of no more than 10 lines.\n\n"
        "        2. **Regulators:** Include potential involvement of any transcription factors "
        f"from the given list, in the context of the system involving {design} in a 5 line "
        "paragraph.\n\n"
        "        3. **Key Genes or Potential Targets:** Suggest which genes from the enriched "
        f"{scope}, in my data input, might be important to the system or a target based on their "
        f"potential impact on the system involving {design} in a 10 line paragraph.\n\n"
        "        Do not provide any Further Investigation or comments, not asked for."
    )


def _build_enrichment_kegg(fields: Mapping[str, Any]) -> str:
    return _enrichment_summary(fields, kind="KEGG pathway", items="pathways", scope="pathways")


def _build_enrichment_go(fields: Mapping[str, Any]) -> str:
    return _enrichment_summary(fields, kind="GO", items="concepts", scope="ontologies")


def _build_enrichment_overall(fields: Mapping[str, Any]) -> str:
    design = _design(fields, DEFAULT_EXPERIMENTAL_DESIGN)
    return (
        "\nThis is a combined summary of KEGG and GO enrichment results for a set of "
        f"differentially expressed genes obtained from a single cell experiment involving {design}."
        "\n\nPlease provide a comprehensive summary based on the following information:\n"
        f"{fields['kegg_summary']}\n\n{fields['go_summary']}\n\n"
        "Do not provide any Further Investigation or comments, not asked for."
    )


def _build_network_extraction(fields: Mapping[str, Any]) -> str:
    concept_scope = "GO terms" if str(fields.get("source", "")).upper() == "GO" else "biological pathways"
    return (
        "Extract important named entities and relationships between key genes and potential "
        "concepts, not cell types, and format it in three columns as Gene, Interaction, Concept, "
        "one gene - one interaction per row.\n"
        f"The gene column should only contain one gene. Include only concepts related to {concept_scope}.\n"
        "The concept column should only contain ONE gene or ONE concept.\n"
        "Add potential gene-gene interactions as well, for the core system.\n"
        "Do not provide any concept - concept associations.\n"
        "EXAMPLE OUTPUT:\n"
        + "\n".join(NETWORK_EXAMPLE_ROWS)
        + "\n"
        + str(fields["summary_text"])
    )


_BUILDERS: dict[TemplateKind, Callable[[Mapping[str, Any]], str]] = {
    TemplateKind.QUALITY: _build_quality,
    TemplateKind.NORMALIZATION: _build_normalization,
    TemplateKind.VARIABLE_FEATURES: _build_variable_features,
    TemplateKind.PCS: _build_pcs,
    TemplateKind.PCS_OVERALL: _build_pcs_overall,
    TemplateKind.RECOMMEND_PCS: _build_recommend_pcs,
    TemplateKind.K_PARAM: _build_k_param,
    TemplateKind.RESOLUTION: _build_resolution,
    TemplateKind.ANNOTATE_CLUSTER: _build_annotate_cluster,
    TemplateKind.ENRICHMENT_KEGG: _build_enrichment_kegg,
    TemplateKind.ENRICHMENT_GO: _build_enrichment_go,
    TemplateKind.ENRICHMENT_OVERALL: _build_enrichment_overall,
    TemplateKind.NETWORK_EXTRACTION: _build_network_extraction,
}


def build(template_kind: TemplateKind | str, fields: Mapping[str, Any]) -> str:
    """Render the prompt for ``template_kind`` from ``fields``.

    Raises :class:`MissingFieldError` when a required field is absent or None.
    """

    kind = TemplateKind(template_kind)
    missing = [name for name in REQUIRED_FIELDS[kind] if fields.get(name) is None]
    if missing:
        raise MissingFieldError(kind.value, missing)
    return _BUILDERS[kind](fields)


__all__ = [
    "DEFAULT_EXPERIMENTAL_DESIGN",
    "NETWORK_EXAMPLE_ROWS",
    "NORMALIZATION_METHODS",
    "REQUIRED_FIELDS",
    "TemplateKind",
    "build",
    "format_number",
]
