"""Unit tests for notebook export from provenance."""

import nbformat
import pytest

from her2seq.core.analysis_ir import AnalysisStep, ParameterSpec
from her2seq.core.notebook_exporter import NotebookExporter
from her2seq.core.provenance import ProvenanceTracker


def _step(template="adata, _, _ = prep.normalize(adata, method={{ method | pprint }})"):
    return AnalysisStep(
        operation="edger.calcNormFactors",
        tool_name="PreprocessingService.normalize",
        description="TMM normalisation",
        library="her2seq",
        code_template=template,
        imports=["from her2seq.services.analysis.preprocessing_service import PreprocessingService"],
        parameters={"method": "TMM"},
        parameter_schema={
            "method": ParameterSpec("str", True, "TMM", False, description="Method"),
        },
    )


@pytest.fixture
def tracker():
    tracker = ProvenanceTracker()
    tracker.log_step("PreprocessingService.normalize", "her2_workflow", {"method": "TMM"}, ir=_step())
    return tracker


def test_export_structure(tracker, tmp_path):
    path = NotebookExporter(tracker).export(tmp_path / "nb" / "workflow.ipynb", title="Test run")
    nb = nbformat.read(str(path), as_version=4)

    assert nb.cells[0].cell_type == "markdown"
    assert nb.cells[0].source.startswith("# Test run")
    assert "PreprocessingService" in nb.cells[1].source
    assert nb.cells[2].metadata["tags"] == ["parameters"]
    assert "method = 'TMM'" in nb.cells[2].source
    assert "## Step 1: PreprocessingService.normalize" in nb.cells[3].source
    assert "method='TMM'" in nb.cells[4].source
    assert nb.metadata["her2seq"]["ir_statistics"]["n_irs_extracted"] == 1


def test_no_activities_raises(tmp_path):
    with pytest.raises(ValueError, match="No activities"):
        NotebookExporter(ProvenanceTracker()).export(tmp_path / "empty.ipynb")


def test_activity_without_ir_becomes_placeholder(tracker, tmp_path):
    tracker.create_activity("manual_curation", "analyst", parameters={"n": 3})
    nb = nbformat.read(str(NotebookExporter(tracker).export(tmp_path / "x.ipynb")), as_version=4)
    code_cells = [c.source for c in nb.cells if c.cell_type == "code"]
    assert any(c.startswith("# Manual step: manual_curation") for c in code_cells)


def test_syntax_errors_are_commented_out(tmp_path):
    tracker = ProvenanceTracker()
    tracker.log_step("broken", "her2_workflow", {}, ir=_step(template="def broken(:"))
    nb = nbformat.read(str(NotebookExporter(tracker).export(tmp_path / "x.ipynb")), as_version=4)
    code = [c.source for c in nb.cells if c.cell_type == "code"][-1]
    assert code.startswith("# SYNTAX ERROR")
    assert "# def broken(:" in code


def test_failed_operations_skipped(tracker, tmp_path):
    tracker.create_activity("failed_operation", "her2_workflow")
    nb = nbformat.read(str(NotebookExporter(tracker).export(tmp_path / "x.ipynb")), as_version=4)
    assert not any("failed_operation" in c.source for c in nb.cells)
