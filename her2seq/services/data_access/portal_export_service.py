"""
Reader for static cBioPortal study exports.

A study export (for example ``brca_tcga_pan_can_atlas_2018``) is a directory
of tab-separated files. The expression file has a ``Hugo_Symbol`` column,
an optional ``Entrez_Gene_Id`` column and one column per sample; clinical
files start with ``#`` comment lines describing each attribute.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np
import pandas as pd

from her2seq.config.constants import MISSING_TOKENS
from her2seq.core.analysis_ir import AnalysisStep, ParameterSpec
from her2seq.core.exceptions import DataAccessError, UnsupportedFormatError
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_EXPRESSION_FILE = "data_mrna_seq_v2_rsem.txt"
DEFAULT_PATIENT_FILE = "data_clinical_patient.txt"
DEFAULT_SAMPLE_FILE = "data_clinical_sample.txt"

GENE_ID_COLUMNS = ("Hugo_Symbol", "Entrez_Gene_Id")


class PortalExportError(DataAccessError):
    """Raised when a portal study export is missing files or is malformed."""

    pass


class PortalExportService:
    """Load expression and clinical tables from a cBioPortal study directory."""

    def read_expression(
        self, path: Union[str, Path]
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Read an expression matrix.

        Rows with an empty symbol are dropped; missing values become 0 and
        values are rounded to integers, since RSEM expected counts are
        fractional.

        Returns:
            Tuple of (counts indexed by row position, gene_info with
            Hugo_Symbol and Entrez_Gene_Id)

        Raises:
            PortalExportError: If the file is missing
            UnsupportedFormatError: If required columns are missing or values are negative
        """
        path = Path(path)
        if not path.exists():
            raise PortalExportError(
                f"Expression file not found: {path}", {"path": str(path)}
            )

        table = pd.read_csv(path, sep="\t", comment="#", low_memory=False)
        if "Hugo_Symbol" not in table.columns:
            raise UnsupportedFormatError(
                f"{path.name} has no Hugo_Symbol column",
                {"path": str(path), "columns": list(table.columns)[:10]},
            )

        symbols = table["Hugo_Symbol"]
        blank = symbols.isna() | (symbols.astype(str).str.strip() == "")
        if blank.any():
            logger.warning(f"Dropping {int(blank.sum())} rows without a gene symbol")
        table = table[~blank].reset_index(drop=True)

        gene_columns = [c for c in GENE_ID_COLUMNS if c in table.columns]
        gene_info = table[gene_columns].copy()
        gene_info["Hugo_Symbol"] = gene_info["Hugo_Symbol"].astype(str)

        values = table.drop(columns=gene_columns).apply(pd.to_numeric, errors="coerce")
        n_missing = int(values.isna().sum().sum())
        if n_missing:
            logger.warning(f"{n_missing} missing expression values set to 0")
        values = values.fillna(0.0)

        if (values.to_numpy() < 0).any():
            raise UnsupportedFormatError(
                f"{path.name} contains negative values; expected counts, "
                "not z-scores or log values",
                {"path": str(path)},
            )

        counts = np.round(values).astype(np.int64)
        logger.info(
            f"Read expression export: {counts.shape[0]} genes × {counts.shape[1]} samples"
        )
        return counts, gene_info

    def read_clinical(self, path: Union[str, Path]) -> pd.DataFrame:
        """
        Read a clinical attribute file.

        Returns:
            pd.DataFrame indexed by SAMPLE_ID if present, else PATIENT_ID

        Raises:
            PortalExportError: If the file is missing
            UnsupportedFormatError: If neither ID column is present
        """
        path = Path(path)
        if not path.exists():
            raise PortalExportError(
                f"Clinical file not found: {path}", {"path": str(path)}
            )

        table = pd.read_csv(
            path,
            sep="\t",
            comment="#",
            dtype=str,
            na_values=list(MISSING_TOKENS),
            keep_default_na=False,
        )
        table.columns = [str(c).strip().upper() for c in table.columns]

        for id_column in ("SAMPLE_ID", "PATIENT_ID"):
            if id_column in table.columns:
                return table.set_index(id_column, drop=id_column == "SAMPLE_ID")

        raise UnsupportedFormatError(
            f"{path.name} has neither SAMPLE_ID nor PATIENT_ID",
            {"path": str(path), "columns": list(table.columns)[:10]},
        )

    def load_study(
        self,
        study_dir: Union[str, Path],
        expression_file: str = DEFAULT_EXPRESSION_FILE,
        patient_file: str = DEFAULT_PATIENT_FILE,
        sample_file: Optional[str] = DEFAULT_SAMPLE_FILE,
    ) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
        """
        Load a whole study export.

        Sample-level attributes, when the sample file exists, are merged onto
        the patient table through PATIENT_ID, so clinical rows end up keyed
        by patient like the GDC route.

        Returns:
            Tuple of (counts genes × samples, clinical by patient, gene_info, stats).
            Counts are indexed by row number; gene symbols live in gene_info.
        """
        study_dir = Path(study_dir)
        try:
            if not study_dir.is_dir():
                raise PortalExportError(
                    f"Study directory not found: {study_dir}",
                    {"path": str(study_dir)},
                )

            counts, gene_info = self.read_expression(study_dir / expression_file)
            clinical = self.read_clinical(study_dir / patient_file)
            if clinical.index.name != "PATIENT_ID":
                raise UnsupportedFormatError(
                    f"{patient_file} is not a patient-level table",
                    {"index": clinical.index.name},
                )

            n_sample_attributes = 0
            if sample_file and (study_dir / sample_file).exists():
                samples = self.read_clinical(study_dir / sample_file)
                if "PATIENT_ID" in samples.columns:
                    sample_attrs = (
                        samples.groupby("PATIENT_ID", sort=True)
                        .first()
                        .drop(columns=["SAMPLE_ID"], errors="ignore")
                    )
                    new_columns = sample_attrs.columns.difference(clinical.columns)
                    n_sample_attributes = len(new_columns)
                    clinical = clinical.join(sample_attrs[new_columns], how="left")

            clinical.index.name = "patient_id"
            stats = {
                "source": "portal",
                "study_dir": str(study_dir),
                "n_samples": int(counts.shape[1]),
                "n_genes": int(counts.shape[0]),
                "n_patients_clinical": int(len(clinical)),
                "n_sample_attributes": n_sample_attributes,
            }
            logger.info(
                f"Loaded portal study {study_dir.name}: {stats['n_samples']} samples, "
                f"{stats['n_patients_clinical']} patients"
            )
            return counts, clinical, gene_info, stats

        except Exception as e:
            if isinstance(e, DataAccessError):
                raise
            logger.exception(f"Error loading portal study {study_dir}: {e}")
            raise PortalExportError(f"Failed to load portal study: {str(e)}") from e

    def create_load_ir(
        self,
        study_dir: Union[str, Path],
        expression_file: str = DEFAULT_EXPRESSION_FILE,
        patient_file: str = DEFAULT_PATIENT_FILE,
        sample_file: Optional[str] = DEFAULT_SAMPLE_FILE,
    ) -> AnalysisStep:
        """AnalysisStep describing ``load_study`` for notebook replay."""
        return AnalysisStep(
            operation="portal.load_study",
            tool_name="PortalExportService.load_study",
            description=(
                "Read RNA-seq expected counts and clinical attributes from a static "
                "cBioPortal study export."
            ),
            library="pandas",
            code_template="""portal = PortalExportService()
counts, clinical, gene_info, load_stats = portal.load_study(
    {{ study_dir | pprint }},
    expression_file={{ expression_file | pprint }},
    patient_file={{ patient_file | pprint }},
    sample_file={{ sample_file | pprint }},
)
print(f"Loaded {counts.shape[1]} samples x {counts.shape[0]} genes")
""",
            imports=[
                "from her2seq.services.data_access.portal_export_service import PortalExportService"
            ],
            parameters={
                "study_dir": str(study_dir),
                "expression_file": expression_file,
                "patient_file": patient_file,
                "sample_file": sample_file,
            },
            parameter_schema={
                "study_dir": ParameterSpec(
                    param_type="str",
                    papermill_injectable=True,
                    default_value=str(study_dir),
                    required=True,
                    description="cBioPortal study export directory",
                ),
            },
            input_entities=[],
            output_entities=["counts", "clinical", "gene_info"],
        )
