"""Unit tests for provenance tracking."""

import json

import numpy as np
import pytest

from her2seq.core.analysis_ir import AnalysisStep
from her2seq.core.provenance import ProvenanceTracker


@pytest.fixture
def tracker():
    return ProvenanceTracker()


@pytest.fixture
def step():
    return AnalysisStep(
        operation="tidybulk.reduce_dimensions",
        tool_name="PCAService.run_pca",
        description="PCA of the most variable genes",
        library="sklearn",
        code_template="adata, pca_stats, _ = PCAService().run_pca(adata, top_n_genes={{ n }})",
        imports=["from her2seq.services.analysis.pca_service import PCAService"],
        parameters={"n": 500},
        parameter_schema={},
    )


class TestActivities:
    def test_create_activity(self, tracker, step):
        activity_id = tracker.create_activity(
            "run_pca", "PCAService", parameters={"n": np.int64(500)}, ir=step
        )
        activity = tracker.activities[0]
        assert activity["id"] == activity_id
        assert activity_id.startswith("her2seq:activity:")
        assert activity["parameters"] == {"n": 500}
        assert isinstance(activity["parameters"]["n"], int)
        assert activity["ir"]["operation"] == "tidybulk.reduce_dimensions"
        assert "numpy" in activity["software_versions"]

    def test_log_step_records_stats_entity(self, tracker, step):
        tracker.log_step(
            tool_name="PCAService.run_pca",
            agent="her2_workflow",
            parameters={"n": 500},
            stats={"explained_variance_pct": np.array([40.0, 20.0])},
            ir=step,
        )
        activity = tracker.activities[0]
        assert activity["description"] == step.description
        entity_id = activity["outputs"][0]["entity"]
        assert tracker.entities[entity_id]["metadata"] == {
            "explained_variance_pct": [40.0, 20.0]
        }
        assert "her2seq:agent:her2_workflow" in tracker.agents

    def test_nan_becomes_null(self, tracker):
        tracker.create_activity("x", "agent", parameters={"value": float("nan")})
        assert tracker.activities[0]["parameters"]["value"] is None


class TestEntities:
    def test_file_checksum_and_format(self, tracker, tmp_path):
        path = tmp_path / "top_table.csv"
        path.write_text("gene,logFC\nERBB2,3.1\n")
        entity_id = tracker.create_entity("table", uri=path)
        entity = tracker.entities[entity_id]
        assert entity["format"] == "csv"
        assert len(entity["checksum"]) == 64

    def test_missing_file_has_no_checksum(self, tracker, tmp_path):
        entity_id = tracker.create_entity("table", uri=tmp_path / "absent.tsv")
        assert tracker.entities[entity_id]["checksum"] is None
        assert tracker.entities[entity_id]["format"] == "tsv"


class TestPersistence:
    def test_save_and_load(self, tracker, step, tmp_path):
        tracker.log_step("PCAService.run_pca", "her2_workflow", {"n": 500}, ir=step)
        path = tracker.save(tmp_path / "out" / "provenance.json")

        with open(path) as f:
            data = json.load(f)
        assert len(data["activities"]) == 1

        restored = ProvenanceTracker.load(path)
        assert restored.activities == tracker.activities
        assert restored.agents == tracker.agents

    def test_add_to_anndata(self, tracker, step, two_group_adata):
        tracker.log_step("PCAService.run_pca", "her2_workflow", {"n": 500}, ir=step)
        adata = tracker.add_to_anndata(two_group_adata)
        assert json.loads(adata.uns["provenance"])["namespace"] == "her2seq"
