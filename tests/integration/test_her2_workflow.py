"""
End-to-end run of the HER2 workflow on a synthetic cBioPortal study.

Checks that every report output is written and can be read back, and
that the induced genes come out on top.
"""

import json

import anndata
import nbformat
import pandas as pd
import pytest

from her2seq.services.workflow.her2_workflow_service import (
    Her2DifferentialExpressionWorkflow,
    Her2WorkflowConfig,
)
from tests.conftest import requires_r

pytestmark = requires_r


@pytest.fixture
def finished_run(portal_study, tmp_path, mock_config):
    config = Her2WorkflowConfig(
        source="portal",
        study_dir=portal_study["study_dir"],
        output_dir=tmp_path / "report",
        pca_top_genes=100,
    )
    workflow = Her2DifferentialExpressionWorkflow(config)
    outputs = workflow.run()
    induced = {f"GENE{i}" for i in range(1, mock_config.n_de_genes + 1)}
    return workflow, outputs, induced


def test_outputs_written(finished_run):
    _, outputs, _ = finished_run

    expected = {
        "top_table",
        "samples",
        "dataset",
        "provenance",
        "notebook",
        "figure_density",
        "figure_rle",
        "figure_pca",
        "figure_mean_variance",
        "figure_volcano",
        "figure_ma",
        "figure_top_genes_heatmap",
    }
    assert set(outputs) == expected
    for path in outputs.values():
        assert path.exists(), path


def test_top_table(finished_run):
    workflow, outputs, induced = finished_run
    table = pd.read_csv(outputs["top_table"], index_col="gene")

    assert len(table) == workflow.adata.n_vars
    assert table["P.Value"].is_monotonic_increasing
    assert set(table.index[:10]) <= induced
    significant = table[table["adj.P.Val"] < 0.05]
    assert (significant.loc[significant.index.isin(induced), "logFC"] > 0).all()


def test_samples_table(finished_run):
    _, outputs, _ = finished_run
    samples = pd.read_csv(outputs["samples"], index_col=0)
    assert samples["her2_status"].value_counts().to_dict() == {"positive": 6, "negative": 6}
    assert samples.index.str[13:15].unique().tolist() == ["01"]


def test_dataset_carries_provenance(finished_run):
    workflow, outputs, _ = finished_run
    adata = anndata.read_h5ad(outputs["dataset"])

    assert adata.shape == workflow.adata.shape
    assert {"cpm", "logcpm", "voom_weights"} <= set(adata.layers)
    record = json.loads(adata.uns["provenance"])
    assert record["namespace"] == "her2seq"

    with open(outputs["provenance"]) as f:
        saved = json.load(f)
    tools = [a["type"] for a in saved["activities"]]
    assert tools[0] == "PortalExportService.load_study"
    assert "LimmaVoomService.run" in tools
    assert tools[-1] == "BulkVisualizationService.create_top_genes_heatmap"


def test_notebook_replays_every_step(finished_run):
    workflow, outputs, _ = finished_run
    notebook = nbformat.read(outputs["notebook"], as_version=4)
    nbformat.validate(notebook)

    steps = [c for c in notebook.cells if c.cell_type == "markdown" and c.source.startswith("## Step")]
    assert len(steps) == len(workflow.provenance.activities)
    code = "\n".join(c.source for c in notebook.cells if c.cell_type == "code")
    assert "PortalExportService" in code
    assert "LimmaVoomService" in code
    for plot in (
        "create_density_plot",
        "create_rle_plot",
        "create_pca_plot",
        "create_mean_variance_plot",
        "create_volcano_plot",
        "create_ma_plot",
        "create_top_genes_heatmap",
    ):
        assert f"BulkVisualizationService().{plot}(" in code
    assert code.count("fig.show()") == 7


def test_summary(finished_run):
    workflow, _, induced = finished_run
    summary = workflow.summary()

    assert summary["contrast"] == "her2_status_positive_vs_negative"
    assert summary["group_sizes"] == {"positive": 6, "negative": 6}
    assert summary["n_up"] >= 10
    assert set(summary["top_genes"][:5]) <= induced
    assert len(summary["pca_variance_pct"]) == 2
