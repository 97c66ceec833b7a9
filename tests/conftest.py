from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as spr

from backend.llm.clients import BackendClient
from backend.llm.dispatcher import Dispatcher
from backend.llm.models import PromptRequest, RawResponse
from config.settings import Settings


class FakeBackendClient(BackendClient):
    """Scripted backend: returns queued responses and records every request."""

    def __init__(
        self,
        name: str = "hosted",
        responses: list[Any] | None = None,
        *,
        requires_credential: bool = False,
        default: Any = "ok",
    ) -> None:
        self.name = name
        self.requires_credential = requires_credential
        self._responses = list(responses or [])
        self._default = default
        self.calls: list[tuple[PromptRequest, str | None]] = []

    def queue(self, *responses: Any) -> None:
        self._responses.extend(responses)

    @property
    def prompts(self) -> list[str]:
        return [request.text for request, _ in self.calls]

    def send(self, request: PromptRequest, credential: str | None = None) -> RawResponse:
        self.calls.append((request, credential))
        item = self._responses.pop(0) if self._responses else self._default
        if callable(item):
            item = item(request)
        if isinstance(item, RawResponse):
            return item
        return RawResponse.success(str(item), backend=self.name)


@pytest.fixture
def key_file(tmp_path: Path) -> Path:
    path = tmp_path / "api_keys.txt"
    path.write_text("test-key\n", encoding="utf-8")
    return path


@pytest.fixture
def settings(key_file: Path) -> Settings:
    return Settings(
        hosted_model="gemini-test",
        local_model="llama-test",
        api_key_file=str(key_file),
        requests_per_minute=0,
    )


@pytest.fixture
def make_dispatcher(settings: Settings) -> Callable[..., tuple[Dispatcher, FakeBackendClient, FakeBackendClient]]:
    def _make(
        hosted: list[Any] | None = None,
        local: list[Any] | None = None,
    ) -> tuple[Dispatcher, FakeBackendClient, FakeBackendClient]:
        hosted_client = FakeBackendClient("hosted", hosted, requires_credential=True)
        local_client = FakeBackendClient("local", local)
        dispatcher = Dispatcher(settings, hosted_client=hosted_client, local_client=local_client)
        return dispatcher, hosted_client, local_client

    return _make


def build_adata(n_cells: int = 40, n_genes: int = 20) -> ad.AnnData:
    """Small AnnData with QC metrics, HVGs, PCA, neighbours and marker rankings."""

    rng = np.random.default_rng(0)
    counts = rng.poisson(2.0, size=(n_cells, n_genes)).astype(float)
    counts[:, 0] += 1.0  # no empty cells

    half = n_cells // 2
    obs = pd.DataFrame(
        {"cluster": pd.Categorical(["0"] * half + ["1"] * (n_cells - half))},
        index=[f"cell{i}" for i in range(n_cells)],
    )
    var = pd.DataFrame(index=[f"GENE{j}" for j in range(n_genes)])
    adata = ad.AnnData(X=counts.copy(), obs=obs, var=var)
    adata.layers["counts"] = counts.copy()

    adata.obs["total_counts"] = counts.sum(axis=1)
    adata.obs["n_genes_by_counts"] = (counts > 0).sum(axis=1)
    adata.obs["pct_counts_mt"] = np.where(np.arange(n_cells) % 2 == 0, 0.0, 5.0)

    hvg = np.zeros(n_genes, dtype=bool)
    hvg[:5] = True
    adata.var["highly_variable"] = hvg
    adata.var["highly_variable_rank"] = np.where(hvg, np.arange(n_genes)[::-1], np.nan)

    loadings = np.zeros((n_genes, 3))
    loadings[:, 0] = np.linspace(1.0, 0.0, n_genes)
    loadings[:, 1] = np.linspace(0.0, 1.0, n_genes)
    loadings[:, 2] = rng.normal(size=n_genes)
    adata.varm["PCs"] = loadings
    adata.uns["pca"] = {"variance_ratio": np.array([0.5, 0.3, 0.2])}

    distances = spr.lil_matrix((n_cells, n_cells))
    for i in range(n_cells):
        distances[i, (i + 1) % n_cells] = 1.0 + (i % 3)
    adata.obsp["distances"] = distances.tocsr()
    adata.uns["neighbors"] = {"distances_key": "distances", "connectivities_key": "connectivities"}

    names = np.rec.fromarrays(
        [
            np.array(["CD3E", "CD3D", "IL7R.1", "CD3E"]),
            np.array(["MS4A1", "CD79A", "CD19", "CD74"]),
        ],
        names=["0", "1"],
    )
    adata.uns["rank_genes_groups"] = {"params": {"groupby": "cluster"}, "names": names}
    return adata


@pytest.fixture
def adata() -> ad.AnnData:
    return build_adata()
