"""Tests for the her2seq command line."""

import pandas as pd
import pytest
from typer.testing import CliRunner

from her2seq.cli import app
from her2seq.version import __version__
from tests.conftest import requires_r

runner = CliRunner()


@pytest.fixture
def clinical_csv(cohort, tmp_path):
    path = tmp_path / "clinical.csv"
    cohort["clinical"].to_csv(path)
    return path


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_classify_csv(clinical_csv, tmp_path):
    output = tmp_path / "her2.csv"
    result = runner.invoke(
        app, ["classify", "--clinical", str(clinical_csv), "--output", str(output)]
    )

    assert result.exit_code == 0, result.output
    assert "HER2 status" in result.output
    annotated = pd.read_csv(output, index_col=0)
    assert list(annotated.columns) == ["her2_ihc_score", "her2_fish_positive", "her2_status"]
    assert annotated["her2_status"].value_counts().to_dict() == {
        "positive": 6, "negative": 6, "low": 2, "unknown": 1,
    }


def test_classify_portal_format(portal_study):
    path = portal_study["study_dir"] / "data_clinical_patient.txt"
    result = runner.invoke(app, ["classify", "--clinical", str(path)])
    assert result.exit_code == 0, result.output
    assert "HER2_IHC_SCORE" in result.output


def test_classify_without_her2_columns_fails(tmp_path):
    path = tmp_path / "clinical.csv"
    pd.DataFrame({"age": [50, 61]}, index=["TCGA-AA-0001", "TCGA-AA-0002"]).to_csv(path)

    result = runner.invoke(app, ["classify", "--clinical", str(path)])

    assert result.exit_code == 1
    assert "Her2AnnotationError" in result.output
    assert "No HER2 IHC or FISH column" in result.output


def test_classify_unknown_format(clinical_csv):
    result = runner.invoke(
        app, ["classify", "--clinical", str(clinical_csv), "--format", "xlsx"]
    )
    assert result.exit_code == 2


@requires_r
def test_run_portal(portal_study, tmp_path):
    out_dir = tmp_path / "results"
    result = runner.invoke(
        app,
        [
            "run",
            "--study-dir", str(portal_study["study_dir"]),
            "--out-dir", str(out_dir),
            "--no-notebook",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "her2_status_positive_vs_negative" in result.output
    assert (out_dir / "top_table.csv").exists()
    assert not (out_dir / "her2_de_workflow.ipynb").exists()


def test_run_invalid_config(tmp_path):
    result = runner.invoke(app, ["run", "--source", "geo", "--out-dir", str(tmp_path)])
    assert result.exit_code == 1
    assert "WorkflowError" in result.output


def test_run_passes_her2_columns(portal_study, tmp_path, mocker):
    workflow_class = mocker.patch(
        "her2seq.services.workflow.her2_workflow_service.Her2DifferentialExpressionWorkflow"
    )
    workflow_class.return_value.run.return_value = {}
    workflow_class.return_value.summary.return_value = {}

    result = runner.invoke(
        app,
        [
            "run",
            "--study-dir", str(portal_study["study_dir"]),
            "--out-dir", str(tmp_path),
            "--ihc-column", "HER2_IHC_SCORE",
            "--fish-column", "HER2_FISH_STATUS",
            "--covariate", "AGE",
        ],
    )

    assert result.exit_code == 0, result.output
    config = workflow_class.call_args.args[0]
    assert config.ihc_column == "HER2_IHC_SCORE"
    assert config.fish_column == "HER2_FISH_STATUS"
    assert config.covariates == ["AGE"]
    workflow_class.return_value.run.assert_called_once_with()
