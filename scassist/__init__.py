"""Public helpers for using SCassist from Python workflows.

The Scanpy-facing helpers are imported lazily so that importing the package
does not pull in the LLM clients and AnnData stack up front.
"""

from __future__ import annotations

from types import ModuleType
from typing import Any

__all__ = [
    "analyze_enrichment",
    "analyze_pcs",
    "analyze_quality",
    "analyze_variable_features",
    "annotate_clusters",
    "recommend_k",
    "recommend_normalization",
    "recommend_pcs",
    "recommend_resolution",
]


def _load_scanpy_module() -> ModuleType:
    from . import scanpy  # local import to avoid eager dependency loading

    return scanpy


def __getattr__(name: str) -> Any:
    if name in __all__:
        module = _load_scanpy_module()
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
