"""
Unit tests for the GDC download service.

HTTP traffic is mocked with ``responses``; the API returns synthetic STAR
count files and a BCR Biotab clinical table built from the mock cohort.
"""

import hashlib
import json

import pandas as pd
import pytest
import requests
import responses

from her2seq.services.data_access.gdc_download_service import (
    GDCDownloadError,
    GDCDownloadService,
)
from tests.mock_data import SMALL_COHORT_CONFIG, biotab_text, make_cohort, star_counts_text

API = "https://gdc.test/api"


@pytest.fixture
def service(tmp_path):
    return GDCDownloadService(
        api_url=API, cache_dir=tmp_path / "cache", max_retries=1, backoff_seconds=0
    )


@pytest.fixture
def gdc_cohort():
    """Small cohort with its GDC file hits and file contents."""
    cohort = make_cohort(SMALL_COHORT_CONFIG)
    counts = cohort["counts"]
    hits, bodies = [], {}
    for i, sample_id in enumerate(counts.columns):
        file_id = f"file-{i:03d}"
        body = star_counts_text(counts[sample_id], cohort["gene_info"])
        bodies[file_id] = body
        hits.append(
            {
                "file_id": file_id,
                "file_name": f"{file_id}.rna_seq.augmented_star_gene_counts.tsv",
                "md5sum": hashlib.md5(body.encode()).hexdigest(),
                "file_size": len(body),
                "cases": [
                    {
                        "case_id": f"case-{i:03d}",
                        "submitter_id": sample_id[:12],
                        "samples": [{"submitter_id": sample_id, "sample_type": "Primary Tumor"}],
                    }
                ],
            }
        )
    clinical_body = biotab_text(cohort["clinical"])
    bodies["clinical-file"] = clinical_body
    cohort.update(
        hits=hits,
        bodies=bodies,
        clinical_hit={
            "file_id": "clinical-file",
            "file_name": "clinical_patient_brca.txt",
            "md5sum": hashlib.md5(clinical_body.encode()).hexdigest(),
        },
    )
    return cohort


def _register_api(cohort):
    """Answer /files with expression or clinical hits depending on the filters."""

    def files_callback(request):
        payload = json.loads(request.body)
        fields = [c["content"]["field"] for c in payload["filters"]["content"]]
        if "files.data_format" in fields:
            hits = [cohort["clinical_hit"]]
        else:
            start = payload["from"]
            hits = cohort["hits"][start : start + payload["size"]]
        body = {"data": {"hits": hits, "pagination": {"total": len(cohort["hits"])}}}
        return 200, {}, json.dumps(body)

    responses.add_callback(
        responses.POST, f"{API}/files", callback=files_callback, content_type="application/json"
    )
    for file_id, body in cohort["bodies"].items():
        responses.add(responses.GET, f"{API}/data/{file_id}", body=body)


class TestQuery:
    @responses.activate
    def test_manifest_columns(self, service, gdc_cohort):
        _register_api(gdc_cohort)
        manifest = service.query_expression_files("TCGA-BRCA")
        assert len(manifest) == len(gdc_cohort["hits"])
        assert manifest.loc[0, "patient_id"] == gdc_cohort["hits"][0]["cases"][0]["submitter_id"]
        assert manifest.loc[0, "sample_type"] == "Primary Tumor"

    @responses.activate
    def test_limit(self, service, gdc_cohort):
        _register_api(gdc_cohort)
        assert len(service.query_expression_files("TCGA-BRCA", limit=2)) == 2

    @responses.activate
    def test_pagination(self, service, gdc_cohort, monkeypatch):
        _register_api(gdc_cohort)
        monkeypatch.setattr(GDCDownloadService, "PAGE_SIZE", 2)
        manifest = service.query_expression_files("TCGA-BRCA")
        assert len(manifest) == len(gdc_cohort["hits"])
        assert manifest["file_id"].is_unique

    @responses.activate
    def test_filters_sent(self, service, gdc_cohort):
        _register_api(gdc_cohort)
        service.query_expression_files("TCGA-BRCA", sample_types=("Primary Tumor",))
        payload = json.loads(responses.calls[0].request.body)
        fields = {c["content"]["field"]: c["content"]["value"] for c in payload["filters"]["content"]}
        assert fields["cases.project.project_id"] == ["TCGA-BRCA"]
        assert fields["files.analysis.workflow_type"] == ["STAR - Counts"]
        assert fields["cases.samples.sample_type"] == ["Primary Tumor"]


class TestRequests:
    @responses.activate
    def test_retries_server_errors(self, service):
        responses.add(responses.POST, f"{API}/files", status=503)
        responses.add(
            responses.POST,
            f"{API}/files",
            json={"data": {"hits": [], "pagination": {"total": 0}}},
        )
        assert service.query_expression_files("TCGA-BRCA").empty
        assert len(responses.calls) == 2

    @responses.activate
    def test_client_error_raises(self, service):
        responses.add(responses.POST, f"{API}/files", status=400)
        with pytest.raises(GDCDownloadError) as excinfo:
            service.query_expression_files("TCGA-BRCA")
        assert excinfo.value.details["status_code"] == 400

    @responses.activate
    def test_connection_error_after_retries(self, service):
        responses.add(
            responses.POST, f"{API}/files", body=requests.ConnectionError("refused")
        )
        with pytest.raises(GDCDownloadError, match="Could not reach"):
            service.query_expression_files("TCGA-BRCA")

    @responses.activate
    def test_non_json_response(self, service):
        responses.add(responses.POST, f"{API}/files", body="<html>maintenance</html>")
        with pytest.raises(GDCDownloadError, match="non-JSON"):
            service.query_expression_files("TCGA-BRCA")


class TestDownload:
    @responses.activate
    def test_download_and_cache(self, service, gdc_cohort):
        _register_api(gdc_cohort)
        manifest = pd.DataFrame(gdc_cohort["hits"][:2])
        paths = service.download_files(manifest)
        assert all(p.exists() for p in paths)
        assert paths[0].parent.name == "file-000"
        n_calls = len(responses.calls)

        service.download_files(manifest)
        assert len(responses.calls) == n_calls

    @responses.activate
    def test_md5_mismatch(self, service, gdc_cohort):
        _register_api(gdc_cohort)
        record = dict(gdc_cohort["hits"][0], md5sum="0" * 32)
        with pytest.raises(GDCDownloadError, match="MD5"):
            service.download_files(pd.DataFrame([record]))
        assert not list(service.cache_dir.rglob("*.part"))
        assert not (service.cache_dir / "file-000" / record["file_name"]).exists()

    @responses.activate
    def test_stream_interrupted_once_restarts(self, service, gdc_cohort, mocker):
        _register_api(gdc_cohort)
        original = requests.Response.iter_content
        attempts = []

        def flaky_iter_content(self, *args, **kwargs):
            attempts.append(self.url)
            if len(attempts) == 1:

                def broken():
                    yield b"gene_id\tgene_name"
                    raise requests.exceptions.ChunkedEncodingError("connection reset")

                return broken()
            return original(self, *args, **kwargs)

        mocker.patch.object(requests.Response, "iter_content", flaky_iter_content)
        record = gdc_cohort["hits"][0]

        [path] = service.download_files(pd.DataFrame([record]))

        assert len(attempts) == 2
        assert len([c for c in responses.calls if c.request.method == "GET"]) == 2
        assert path.read_text() == gdc_cohort["bodies"]["file-000"]
        assert not list(service.cache_dir.rglob("*.part"))

    @responses.activate
    def test_stream_keeps_failing(self, service, gdc_cohort, mocker):
        _register_api(gdc_cohort)

        def broken_iter_content(self, *args, **kwargs):
            raise requests.exceptions.ChunkedEncodingError("connection reset")

        mocker.patch.object(requests.Response, "iter_content", broken_iter_content)
        with pytest.raises(GDCDownloadError, match="Download of file-000 failed"):
            service.download_files(["file-000"])
        assert not list(service.cache_dir.rglob("*.part"))

    @responses.activate
    def test_plain_file_ids(self, service, gdc_cohort):
        _register_api(gdc_cohort)
        [path] = service.download_files(["file-001"])
        assert path.name == "file-001.tsv"


class TestParsing:
    def test_read_star_counts(self, service, gdc_cohort, tmp_path):
        sample_id = gdc_cohort["counts"].columns[0]
        path = tmp_path / "star.tsv"
        path.write_text(gdc_cohort["bodies"]["file-000"])

        counts, gene_info = service.read_star_counts(path)
        assert not counts.index.str.startswith("N_").any()
        assert "." not in counts.index[0]
        pd.testing.assert_series_equal(
            counts,
            gdc_cohort["counts"][sample_id].astype(float),
            check_names=False,
        )
        assert list(gene_info.columns) == ["gene_name", "gene_type"]

    def test_unknown_count_column(self, service, tmp_path):
        with pytest.raises(GDCDownloadError, match="Unknown STAR count column"):
            service.read_star_counts(tmp_path / "x.tsv", count_column="raw")

    def test_not_a_star_file(self, service, tmp_path):
        path = tmp_path / "other.tsv"
        path.write_text("a\tb\n1\t2\n")
        with pytest.raises(GDCDownloadError, match="not a STAR gene counts file"):
            service.read_star_counts(path)

    def test_read_clinical_biotab(self, service, gdc_cohort, tmp_path):
        path = tmp_path / "clinical_patient_brca.txt"
        path.write_text(gdc_cohort["bodies"]["clinical-file"])
        clinical = service.read_clinical_biotab(path)
        assert clinical.index.name == "patient_id"
        assert len(clinical) == len(gdc_cohort["clinical"])
        assert not clinical.index.str.startswith("CDE").any()

    def test_build_count_matrix_skips_duplicate_samples(self, service, gdc_cohort, tmp_path):
        path = tmp_path / "star.tsv"
        path.write_text(gdc_cohort["bodies"]["file-000"])
        sample_id = gdc_cohort["counts"].columns[0]
        manifest = pd.DataFrame({"sample_submitter_id": [sample_id, sample_id]})
        matrix, gene_info = service.build_count_matrix(manifest, [path, path])
        assert matrix.shape[1] == 1
        assert gene_info.index.equals(matrix.index)


@responses.activate
def test_download_project(service, gdc_cohort):
    _register_api(gdc_cohort)
    counts, clinical, gene_info, stats = service.download_project("TCGA-BRCA")

    assert counts.shape == gdc_cohort["counts"].shape
    assert set(counts.columns) == set(gdc_cohort["counts"].columns)
    assert stats["n_files"] == len(gdc_cohort["hits"])
    assert stats["n_patients_clinical"] == len(gdc_cohort["clinical"])
    assert "gene_name" in gene_info.columns


@responses.activate
def test_download_project_without_files(service):
    responses.add(
        responses.POST, f"{API}/files", json={"data": {"hits": [], "pagination": {"total": 0}}}
    )
    with pytest.raises(GDCDownloadError, match="No STAR - Counts files"):
        service.download_project("TCGA-XXXX")


def test_download_ir_renders(service):
    ir = service.create_download_ir("TCGA-BRCA")
    assert ir.validate_rendered_code()
    assert "project='TCGA-BRCA'" in ir.render()
