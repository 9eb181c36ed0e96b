"""
GDC data portal access for TCGA expression counts and clinical data.

Queries the GDC REST API for STAR gene count files of a project, downloads
them into a local cache (streamed, checksum-verified, written atomically),
assembles a genes × samples count matrix and fetches the BCR Biotab clinical
patient table. This is the Python counterpart of the GDCquery / GDCdownload /
GDCprepare sequence used in R tutorials.
"""

import hashlib
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import requests

from her2seq.config.constants import MISSING_TOKENS
from her2seq.config.settings import get_settings
from her2seq.core.analysis_ir import AnalysisStep, ParameterSpec
from her2seq.core.exceptions import DataAccessError
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

FILE_FIELDS = (
    "file_id",
    "file_name",
    "md5sum",
    "file_size",
    "cases.case_id",
    "cases.submitter_id",
    "cases.samples.submitter_id",
    "cases.samples.sample_type",
)

STAR_COUNT_COLUMNS = (
    "unstranded",
    "stranded_first",
    "stranded_second",
    "tpm_unstranded",
    "fpkm_unstranded",
    "fpkm_uq_unstranded",
)


class GDCDownloadError(DataAccessError):
    """Raised when the GDC API or a downloaded GDC file cannot be used."""

    pass


class GDCDownloadService:
    """
    Client for the GDC REST API.

    Downloads are cached under ``cache_dir/<file_id>/<file_name>``, the same
    layout the gdc-client tool uses, so a second run only re-reads files.
    """

    CHUNK_SIZE = 1024 * 1024
    PAGE_SIZE = 500

    def __init__(
        self,
        api_url: Optional[str] = None,
        cache_dir: Optional[Union[str, Path]] = None,
        timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        session: Optional[requests.Session] = None,
        backoff_seconds: float = 2.0,
    ):
        settings = get_settings()
        self.api_url = (api_url or settings.GDC_API_URL).rstrip("/")
        self.cache_dir = Path(cache_dir or settings.gdc_cache_dir)
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self.max_retries = settings.HTTP_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = backoff_seconds
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "her2seq (GDC client)"})

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query_expression_files(
        self,
        project: str,
        workflow_type: str = "STAR - Counts",
        sample_types: Sequence[str] = ("Primary Tumor",),
        limit: Optional[int] = None,
    ) -> pd.DataFrame:
        """
        List open-access gene expression files of a project.

        Args:
            project: GDC project ID (e.g. "TCGA-BRCA")
            workflow_type: GDC analysis workflow producing the files
            sample_types: Sample types to keep (GDC vocabulary)
            limit: Stop after this many files

        Returns:
            pd.DataFrame: one row per file with file_id, file_name, case_id,
            patient_id, sample_submitter_id, sample_type, md5sum, file_size

        Raises:
            GDCDownloadError: If the API request fails
        """
        content = [
            _in_filter("cases.project.project_id", [project]),
            _in_filter("files.data_category", ["Transcriptome Profiling"]),
            _in_filter("files.data_type", ["Gene Expression Quantification"]),
            _in_filter("files.analysis.workflow_type", [workflow_type]),
            _in_filter("files.access", ["open"]),
        ]
        if sample_types:
            content.append(_in_filter("cases.samples.sample_type", list(sample_types)))
        filters = {"op": "and", "content": content}

        logger.info(
            f"Querying GDC for {workflow_type} files in {project} "
            f"(sample types: {', '.join(sample_types) or 'all'})"
        )
        hits = self._paginate_files(filters, FILE_FIELDS, limit)

        rows = []
        for hit in hits:
            cases = hit.get("cases") or [{}]
            case = cases[0]
            samples = case.get("samples") or [{}]
            sample = samples[0]
            rows.append(
                {
                    "file_id": hit["file_id"],
                    "file_name": hit.get("file_name", f"{hit['file_id']}.tsv"),
                    "case_id": case.get("case_id"),
                    "patient_id": case.get("submitter_id"),
                    "sample_submitter_id": sample.get("submitter_id"),
                    "sample_type": sample.get("sample_type"),
                    "md5sum": hit.get("md5sum"),
                    "file_size": hit.get("file_size"),
                }
            )

        manifest = pd.DataFrame(
            rows,
            columns=[
                "file_id",
                "file_name",
                "case_id",
                "patient_id",
                "sample_submitter_id",
                "sample_type",
                "md5sum",
                "file_size",
            ],
        )
        logger.info(f"GDC query returned {len(manifest)} files")
        return manifest

    def _paginate_files(
        self,
        filters: Dict[str, Any],
        fields: Iterable[str],
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        hits: List[Dict[str, Any]] = []
        offset = 0
        page_size = min(self.PAGE_SIZE, limit) if limit else self.PAGE_SIZE

        while True:
            payload = {
                "filters": filters,
                "fields": ",".join(fields),
                "format": "JSON",
                "size": page_size,
                "from": offset,
            }
            data = self._post_json(f"{self.api_url}/files", payload)
            page = data.get("data", {})
            page_hits = page.get("hits", [])
            hits.extend(page_hits)

            total = page.get("pagination", {}).get("total", len(hits))
            offset += len(page_hits)
            logger.debug(f"Fetched {offset}/{total} file records")

            if not page_hits or offset >= total:
                break
            if limit and len(hits) >= limit:
                break

        return hits[:limit] if limit else hits

    def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._request("POST", url, json=payload)
        try:
            return response.json()
        except ValueError as e:
            raise GDCDownloadError(
                f"GDC API returned a non-JSON response from {url}", {"url": url}
            ) from e

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        Issue a request, retrying connection errors and 429/5xx responses.

        Raises:
            GDCDownloadError: After the last failed attempt or on 4xx errors
        """
        sleep_time = self.backoff_seconds
        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.request(
                    method, url, timeout=self.timeout, **kwargs
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt < self.max_retries:
                    logger.warning(
                        f"Network error: {e}. Retrying after {sleep_time}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(sleep_time)
                    sleep_time *= 2
                    continue
                raise GDCDownloadError(
                    f"Could not reach the GDC API at {url}: {e}",
                    {
                        "url": url,
                        "suggestions": [
                            "Check network access to api.gdc.cancer.gov",
                            "Set HER2SEQ_GDC_API_URL to a reachable mirror",
                        ],
                    },
                ) from e

            if response.status_code == 429 or response.status_code >= 500:
                if attempt < self.max_retries:
                    logger.warning(
                        f"HTTP {response.status_code} from {url}. Retrying after "
                        f"{sleep_time}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    response.close()
                    time.sleep(sleep_time)
                    sleep_time *= 2
                    continue

            if not response.ok:
                raise GDCDownloadError(
                    f"GDC API request failed with HTTP {response.status_code}: {url}",
                    {"url": url, "status_code": response.status_code},
                )
            return response

        raise GDCDownloadError(f"GDC API request failed: {url}", {"url": url})

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download_files(
        self, files: Union[pd.DataFrame, Sequence[str]]
    ) -> List[Path]:
        """
        Download files by GDC file ID into the cache.

        Args:
            files: Manifest from ``query_expression_files`` (uses file_name and
                md5sum) or a plain list of file IDs

        Returns:
            List[Path]: Local paths, in input order

        Raises:
            GDCDownloadError: If a download fails or its MD5 does not match
        """
        if isinstance(files, pd.DataFrame):
            records = files.to_dict("records")
        else:
            records = [{"file_id": file_id} for file_id in files]

        paths = []
        n_cached = 0
        for i, record in enumerate(records, start=1):
            file_id = record["file_id"]
            file_name = record.get("file_name") or f"{file_id}.tsv"
            expected_md5 = record.get("md5sum")
            if isinstance(expected_md5, float):
                expected_md5 = None
            local_path = self.cache_dir / file_id / file_name

            if local_path.exists() and (
                expected_md5 is None or _md5(local_path) == expected_md5
            ):
                n_cached += 1
                paths.append(local_path)
                continue

            logger.debug(f"Downloading {i}/{len(records)}: {file_name}")
            self._download_file(file_id, local_path, expected_md5)
            paths.append(local_path)

        logger.info(
            f"{len(paths)} files available ({n_cached} from cache, "
            f"{len(paths) - n_cached} downloaded)"
        )
        return paths

    def _download_file(
        self, file_id: str, output_path: Path, expected_md5: Optional[str] = None
    ) -> Path:
        """
        Stream one file to ``<output>.part`` and rename it once verified.

        A connection dropped mid-stream restarts the download, up to
        ``max_retries`` times.
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = output_path.with_suffix(output_path.suffix + ".part")
        url = f"{self.api_url}/data/{file_id}"

        sleep_time = self.backoff_seconds
        try:
            for attempt in range(self.max_retries + 1):
                try:
                    response = self._request("GET", url, stream=True)
                    with response, open(temp_path, "wb") as f:
                        for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                            if chunk:
                                f.write(chunk)
                    break
                except (
                    requests.exceptions.ChunkedEncodingError,
                    requests.ConnectionError,
                    requests.Timeout,
                ) as e:
                    if attempt >= self.max_retries:
                        raise
                    logger.warning(
                        f"Download of {file_id} interrupted: {e}. Restarting after "
                        f"{sleep_time}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(sleep_time)
                    sleep_time *= 2

            if expected_md5:
                actual_md5 = _md5(temp_path)
                if actual_md5 != expected_md5:
                    raise GDCDownloadError(
                        f"MD5 checksum mismatch for {file_id}",
                        {
                            "file_id": file_id,
                            "expected_md5": expected_md5,
                            "actual_md5": actual_md5,
                        },
                    )

            temp_path.replace(output_path)
            return output_path
        except requests.RequestException as e:
            raise GDCDownloadError(
                f"Download of {file_id} failed: {e}", {"url": url}
            ) from e
        finally:
            if temp_path.exists():
                temp_path.unlink()

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def read_star_counts(
        self, path: Union[str, Path], count_column: str = "unstranded"
    ) -> Tuple[pd.Series, pd.DataFrame]:
        """
        Read a GDC STAR - Counts ``augmented_star_gene_counts.tsv`` file.

        Args:
            path: Path to the TSV
            count_column: Which count column to use

        Returns:
            Tuple of counts Series indexed by Ensembl gene ID (version
            stripped) and a gene annotation DataFrame (gene_name, gene_type)

        Raises:
            GDCDownloadError: If the file lacks the expected columns
        """
        path = Path(path)
        if count_column not in STAR_COUNT_COLUMNS:
            raise GDCDownloadError(
                f"Unknown STAR count column '{count_column}'",
                {"valid_columns": list(STAR_COUNT_COLUMNS)},
            )

        table = pd.read_csv(path, sep="\t", comment="#")
        missing = {"gene_id", count_column} - set(table.columns)
        if missing:
            raise GDCDownloadError(
                f"{path.name} is not a STAR gene counts file (missing {sorted(missing)})",
                {"path": str(path), "columns": list(table.columns)},
            )

        table = table[~table["gene_id"].astype(str).str.startswith("N_")]
        gene_ids = table["gene_id"].astype(str).str.split(".").str[0]

        counts = pd.Series(
            table[count_column].to_numpy(dtype=np.float64),
            index=pd.Index(gene_ids, name="gene_id"),
            name=path.name,
        )
        annotation_columns = [c for c in ("gene_name", "gene_type") if c in table]
        gene_info = table[annotation_columns].set_index(pd.Index(gene_ids, name="gene_id"))

        # PAR_Y duplicates share a stripped ID; keep the first (X copy)
        keep = ~counts.index.duplicated()
        return counts[keep], gene_info[keep]

    def build_count_matrix(
        self,
        manifest: pd.DataFrame,
        paths: Sequence[Union[str, Path]],
        count_column: str = "unstranded",
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Combine per-sample STAR files into a genes × samples matrix.

        Columns are named by sample submitter ID (the TCGA sample barcode).
        When several files map to the same sample the first one is used.
        """
        if len(manifest) != len(paths):
            raise GDCDownloadError(
                "Manifest and path list have different lengths",
                {"manifest": len(manifest), "paths": len(paths)},
            )

        columns = {}
        gene_info = None
        for sample_id, path in zip(manifest["sample_submitter_id"], paths):
            if sample_id in columns:
                logger.warning(f"Skipping duplicate file for sample {sample_id}")
                continue
            counts, info = self.read_star_counts(path, count_column=count_column)
            columns[sample_id] = counts
            if gene_info is None:
                gene_info = info

        if not columns:
            raise GDCDownloadError("No count files to combine")

        matrix = pd.DataFrame(columns).fillna(0.0)
        matrix.index.name = "gene_id"
        logger.info(f"Built count matrix: {matrix.shape[0]} genes × {matrix.shape[1]} samples")
        return matrix, gene_info.reindex(matrix.index)

    def fetch_clinical(self, project: str) -> pd.DataFrame:
        """
        Download and parse the BCR Biotab clinical patient table of a project.

        Returns:
            pd.DataFrame indexed by patient barcode

        Raises:
            GDCDownloadError: If the project has no clinical patient file
        """
        disease = project.split("-", 1)[-1].lower()
        file_name = f"clinical_patient_{disease}.txt"
        filters = {
            "op": "and",
            "content": [
                _in_filter("cases.project.project_id", [project]),
                _in_filter("files.data_format", ["BCR Biotab"]),
                _in_filter("files.file_name", [file_name]),
            ],
        }
        hits = self._paginate_files(filters, ("file_id", "file_name", "md5sum"), limit=1)
        if not hits:
            raise GDCDownloadError(
                f"No clinical patient file ({file_name}) found for {project}",
                {"project": project, "file_name": file_name},
            )

        manifest = pd.DataFrame(hits)
        path = self.download_files(manifest)[0]
        return self.read_clinical_biotab(path)

    def read_clinical_biotab(self, path: Union[str, Path]) -> pd.DataFrame:
        """
        Parse a BCR Biotab clinical table.

        The first row holds column names and the next two hold CDE
        descriptors, which are dropped.
        """
        table = pd.read_csv(
            path,
            sep="\t",
            skiprows=[1, 2],
            dtype=str,
            na_values=list(MISSING_TOKENS),
            keep_default_na=False,
        )
        if "bcr_patient_barcode" not in table.columns:
            raise GDCDownloadError(
                f"{Path(path).name} has no bcr_patient_barcode column",
                {"path": str(path), "columns": list(table.columns)[:20]},
            )
        table = table.set_index("bcr_patient_barcode")
        table.index.name = "patient_id"
        logger.info(f"Read clinical table: {len(table)} patients, {table.shape[1]} fields")
        return table

    def download_project(
        self,
        project: Optional[str] = None,
        workflow_type: str = "STAR - Counts",
        sample_types: Sequence[str] = ("Primary Tumor",),
        count_column: str = "unstranded",
        limit: Optional[int] = None,
    ) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
        """
        Query, download and assemble counts plus clinical data for a project.

        Returns:
            Tuple of (counts genes × samples, clinical by patient, gene_info, stats)
        """
        project = project or get_settings().GDC_PROJECT
        try:
            manifest = self.query_expression_files(
                project, workflow_type=workflow_type, sample_types=sample_types, limit=limit
            )
            if manifest.empty:
                raise GDCDownloadError(
                    f"No {workflow_type} files found for {project}",
                    {"project": project, "sample_types": list(sample_types)},
                )
            paths = self.download_files(manifest)
            counts, gene_info = self.build_count_matrix(
                manifest, paths, count_column=count_column
            )
            clinical = self.fetch_clinical(project)

            stats = {
                "source": "gdc",
                "project": project,
                "workflow_type": workflow_type,
                "n_files": int(len(manifest)),
                "n_samples": int(counts.shape[1]),
                "n_genes": int(counts.shape[0]),
                "n_patients_clinical": int(len(clinical)),
            }
            return counts, clinical, gene_info, stats

        except Exception as e:
            if isinstance(e, GDCDownloadError):
                raise
            logger.exception(f"Error downloading {project} from GDC: {e}")
            raise GDCDownloadError(f"GDC download failed: {str(e)}") from e

    def create_download_ir(
        self,
        project: str,
        workflow_type: str = "STAR - Counts",
        sample_types: Sequence[str] = ("Primary Tumor",),
        count_column: str = "unstranded",
    ) -> AnalysisStep:
        """AnalysisStep describing ``download_project`` for notebook replay."""
        return AnalysisStep(
            operation="gdc.download_project",
            tool_name="GDCDownloadService.download_project",
            description=(
                f"Download {workflow_type} gene counts and BCR Biotab clinical data "
                f"for {project} from the GDC data portal."
            ),
            library="requests",
            code_template="""gdc = GDCDownloadService(cache_dir={{ cache_dir | pprint }})
counts, clinical, gene_info, load_stats = gdc.download_project(
    project={{ project | pprint }},
    workflow_type={{ workflow_type | pprint }},
    sample_types={{ sample_types | pprint }},
    count_column={{ count_column | pprint }},
)
print(f"Loaded {counts.shape[1]} samples x {counts.shape[0]} genes")
""",
            imports=[
                "from her2seq.services.data_access.gdc_download_service import GDCDownloadService"
            ],
            parameters={
                "project": project,
                "workflow_type": workflow_type,
                "sample_types": list(sample_types),
                "count_column": count_column,
                "cache_dir": str(self.cache_dir),
            },
            parameter_schema={
                "project": ParameterSpec(
                    param_type="str",
                    papermill_injectable=True,
                    default_value="TCGA-BRCA",
                    required=True,
                    description="GDC project ID",
                ),
                "count_column": ParameterSpec(
                    param_type="str",
                    papermill_injectable=False,
                    default_value="unstranded",
                    required=False,
                    description="STAR count column",
                ),
            },
            input_entities=[],
            output_entities=["counts", "clinical", "gene_info"],
        )


def _in_filter(field: str, values: List[Any]) -> Dict[str, Any]:
    return {"op": "in", "content": {"field": field, "value": values}}


def _md5(path: Path) -> str:
    md5 = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            md5.update(chunk)
    return md5.hexdigest()

