"""Unit tests for PCA of normalised expression."""

import numpy as np
import pytest

from her2seq.services.analysis.pca_service import PCAError, PCAService


@pytest.fixture
def service():
    return PCAService()


def test_embedding_stored(service, normalized_adata):
    adata, stats, ir = service.run_pca(normalized_adata, top_n_genes=100)

    assert adata.obsm["X_pca"].shape == (normalized_adata.n_obs, 2)
    assert len(adata.uns["pca"]["genes"]) == 100
    assert adata.uns["pca"]["loadings"].shape == (100, 2)
    assert stats["n_genes_used"] == 100
    assert stats["explained_variance_pct"][0] >= stats["explained_variance_pct"][1]
    assert "X_pca" not in normalized_adata.obsm
    assert ir.execution_context["random_state"] == 42


def test_first_component_separates_groups(service, normalized_adata):
    adata, _, _ = service.run_pca(normalized_adata, top_n_genes=50)
    pc1 = adata.obsm["X_pca"][:, 0]
    positive = (adata.obs["her2_status"] == "positive").to_numpy()
    assert (pc1[positive].max() < pc1[~positive].min()) or (
        pc1[positive].min() > pc1[~positive].max()
    )


def test_top_genes_capped_at_gene_count(service, normalized_adata):
    _, stats, _ = service.run_pca(normalized_adata, top_n_genes=10_000)
    assert stats["n_genes_used"] == normalized_adata.n_vars


def test_deterministic(service, normalized_adata):
    first, _, _ = service.run_pca(normalized_adata, random_state=1)
    second, _, _ = service.run_pca(normalized_adata, random_state=1)
    np.testing.assert_allclose(first.obsm["X_pca"], second.obsm["X_pca"])


def test_missing_layer(service, two_group_adata):
    with pytest.raises(PCAError, match="run normalisation first"):
        service.run_pca(two_group_adata)


def test_too_many_components(service, normalized_adata):
    with pytest.raises(PCAError, match="n_components must be between"):
        service.run_pca(normalized_adata, n_components=normalized_adata.n_obs + 1)


def test_unscaled(service, normalized_adata):
    _, stats, ir = service.run_pca(normalized_adata, scale=False, top_n_genes=100)
    assert stats["scale"] is False
    assert "scale=False" in ir.render()
