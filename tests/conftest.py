"""
pytest configuration and shared fixtures for the her2seq test suite.

Fixtures build small synthetic TCGA-like cohorts (see ``tests.mock_data``)
at the stages the services expect: raw tables, annotated AnnData,
filtered/normalised AnnData and written source files.
"""

import logging
from pathlib import Path

import pandas as pd
import pytest
from faker import Faker

from her2seq.services.analysis.r_backend import check_r_availability
from tests.mock_data import (
    DEFAULT_COHORT_CONFIG,
    SMALL_COHORT_CONFIG,
    MockDataConfig,
    make_cohort,
    tcga_annotated_adata,
    write_portal_study,
)

logging.getLogger("anndata").setLevel(logging.ERROR)

fake = Faker()
Faker.seed(42)

R_AVAILABLE = check_r_availability()["ready_for_r"]
requires_r = pytest.mark.skipif(
    not R_AVAILABLE, reason="R with limma and edgeR not installed"
)


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        path = str(item.fspath)
        if f"{Path('tests', 'unit')}" in path:
            item.add_marker(pytest.mark.unit)
        elif f"{Path('tests', 'integration')}" in path:
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Environment
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Point data and results directories at a per-test temp directory."""
    from her2seq.config.settings import settings

    monkeypatch.setattr(settings, "DATA_DIR", tmp_path / "data")
    monkeypatch.setattr(settings, "RESULTS_DIR", tmp_path / "results")
    yield tmp_path


# ==============================================================================
# Synthetic cohorts
# ==============================================================================


@pytest.fixture
def mock_config() -> MockDataConfig:
    return DEFAULT_COHORT_CONFIG


@pytest.fixture
def cohort(mock_config):
    """Raw counts, Biotab-style clinical table and gene annotation."""
    return make_cohort(mock_config)


@pytest.fixture
def small_cohort():
    return make_cohort(SMALL_COHORT_CONFIG)


@pytest.fixture
def annotated_adata():
    """Primary tumours of the default cohort with her2_status in obs."""
    return tcga_annotated_adata(DEFAULT_COHORT_CONFIG)


@pytest.fixture
def two_group_adata():
    """HER2 positive vs negative primary tumours, gene IDs as var_names."""
    return tcga_annotated_adata(DEFAULT_COHORT_CONFIG, groups=["positive", "negative"])


@pytest.fixture
def normalized_adata(two_group_adata):
    """Symbol-aggregated, filterByExpr-filtered, TMM-normalised dataset."""
    if not R_AVAILABLE:
        pytest.skip("R with limma and edgeR not installed")
    from her2seq.services.analysis.preprocessing_service import PreprocessingService

    service = PreprocessingService()
    adata, _, _ = service.aggregate_genes(two_group_adata, "gene_name")
    adata, _, _ = service.filter_by_expr(adata, group_key="her2_status")
    adata, _, _ = service.normalize(adata)
    return adata


@pytest.fixture
def de_adata(normalized_adata):
    """Dataset after PCA and limma-voom positive vs negative."""
    from her2seq.services.analysis.limma_voom_service import LimmaVoomService
    from her2seq.services.analysis.pca_service import PCAService

    adata, _, _ = PCAService().run_pca(normalized_adata, top_n_genes=100)
    adata, _, _ = LimmaVoomService().run(
        adata, "~her2_status", ("her2_status", "positive", "negative")
    )
    return adata


@pytest.fixture
def portal_study(tmp_path):
    """A cBioPortal study export written to disk."""
    return write_portal_study(tmp_path / "brca_tcga_test", DEFAULT_COHORT_CONFIG)


@pytest.fixture
def clinical_frame() -> pd.DataFrame:
    """Clinical table covering every HER2 rule."""
    return pd.DataFrame(
        {
            "her2_immunohistochemistry_level_result": [
                "3+", "2+", "2+", "2+", "1+", "0", None, "1+", "[Not Evaluated]",
            ],
            "her2_fish_status": [
                None, "Positive", "Negative", "Equivocal", None, None, "Positive",
                "Positive", None,
            ],
        },
        index=pd.Index([f"TCGA-AA-{i:04d}" for i in range(9)], name="patient_id"),
    )
