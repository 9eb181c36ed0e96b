"""
HER2 status annotation and sample/clinical joining.

HER2 status is derived from the immunohistochemistry (IHC) score and the
in situ hybridisation (FISH) result reported in the clinical data:

* positive: FISH amplified, or IHC 3+
* low:      IHC 1+, or IHC 2+ with a negative FISH result
* negative: IHC 0
* unknown:  IHC 2+ without a FISH result, or no usable IHC score

Expression samples are TCGA sample barcodes
(``TCGA-A1-A0SB-01A-11R-A144-07``); clinical rows are patient barcodes
(the first 12 characters), so the join goes through the patient.
"""

import re
from typing import Any, Dict, Iterable, Optional, Tuple

import anndata
import numpy as np
import pandas as pd

from her2seq.config.constants import (
    FISH_STATUS_COLUMNS,
    HER2_LOW,
    HER2_NEGATIVE,
    HER2_POSITIVE,
    HER2_STATUS_COLUMN,
    HER2_STATUSES,
    HER2_UNKNOWN,
    IHC_SCORE_COLUMNS,
    PRIMARY_TUMOR_CODE,
    TCGA_PATIENT_BARCODE_LENGTH,
    TCGA_SAMPLE_TYPE_SLICE,
)
from her2seq.core.analysis_ir import AnalysisStep, ParameterSpec
from her2seq.core.exceptions import ClinicalAnnotationError
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

_IHC_PATTERN = re.compile(r"^(?:ihc\s*)?\+?\s*([0-3])\s*\+?$")

_FISH_POSITIVE = {"positive", "amplified", "pos"}
_FISH_NEGATIVE = {"negative", "not amplified", "non-amplified", "neg"}


class Her2AnnotationError(ClinicalAnnotationError):
    """Raised when HER2 status cannot be annotated or samples cannot be joined."""

    pass


def patient_barcode(sample_id: str) -> str:
    """TCGA patient barcode (``TCGA-XX-XXXX``) of a sample or aliquot barcode."""
    return str(sample_id)[:TCGA_PATIENT_BARCODE_LENGTH]


def sample_type_code(sample_id: str) -> Optional[str]:
    """Two-digit sample type code of a TCGA barcode, e.g. ``01`` for primary tumour."""
    code = str(sample_id)[TCGA_SAMPLE_TYPE_SLICE]
    return code if len(code) == 2 and code.isdigit() else None


def is_primary_tumor(sample_id: str) -> bool:
    return sample_type_code(sample_id) == PRIMARY_TUMOR_CODE


def parse_ihc_score(value: Any) -> Optional[int]:
    """
    Parse an IHC score such as ``0``, ``1+``, ``+2``, ``3+`` or ``IHC 2+``.

    Returns:
        Score 0-3, or None when the value is missing or not a score
    """
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    if isinstance(value, (int, np.integer)) and 0 <= int(value) <= 3:
        return int(value)
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return parse_ihc_score(int(value))
    match = _IHC_PATTERN.match(str(value).strip().lower())
    return int(match.group(1)) if match else None


def parse_fish_status(value: Any) -> Optional[bool]:
    """
    Parse a FISH result.

    Returns:
        True for positive/amplified, False for negative/not amplified,
        None for equivocal, indeterminate or missing
    """
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    text = str(value).strip().lower()
    if text in _FISH_POSITIVE:
        return True
    if text in _FISH_NEGATIVE:
        return False
    return None


def classify_her2(ihc_score: Optional[int], fish_positive: Optional[bool]) -> str:
    """Combine IHC score and FISH result into a HER2 status."""
    if fish_positive is True:
        return HER2_POSITIVE
    if ihc_score == 3:
        return HER2_POSITIVE
    if ihc_score == 2:
        return HER2_LOW if fish_positive is False else HER2_UNKNOWN
    if ihc_score == 1:
        return HER2_LOW
    if ihc_score == 0:
        return HER2_NEGATIVE
    return HER2_UNKNOWN


class Her2AnnotationService:
    """
    Annotate clinical tables with HER2 status and attach them to expression samples.

    All public methods return ``(result, stats, ir)`` like the analysis services.
    """

    def annotate(
        self,
        clinical: pd.DataFrame,
        ihc_column: Optional[str] = None,
        fish_column: Optional[str] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Add ``her2_ihc_score``, ``her2_fish_positive`` and ``her2_status`` columns.

        Args:
            clinical: Patient-level clinical table
            ihc_column: Column holding the IHC score (auto-detected if None)
            fish_column: Column holding the FISH result (auto-detected if None)

        Raises:
            Her2AnnotationError: If no IHC or FISH column can be found
        """
        try:
            ihc_column = ihc_column or _first_present(clinical, IHC_SCORE_COLUMNS)
            fish_column = fish_column or _first_present(clinical, FISH_STATUS_COLUMNS)

            if ihc_column is None and fish_column is None:
                raise Her2AnnotationError(
                    "No HER2 IHC or FISH column found in the clinical table",
                    {
                        "looked_for": list(IHC_SCORE_COLUMNS) + list(FISH_STATUS_COLUMNS),
                        "suggestions": ["Pass ihc_column / fish_column explicitly"],
                    },
                )
            for column in (ihc_column, fish_column):
                if column is not None and column not in clinical.columns:
                    raise Her2AnnotationError(
                        f"Column '{column}' not found in the clinical table",
                        {"available": list(clinical.columns)[:30]},
                    )

            annotated = clinical.copy()
            if ihc_column is not None:
                ihc = clinical[ihc_column].map(parse_ihc_score)
            else:
                logger.warning("No IHC score column; status relies on FISH only")
                ihc = pd.Series(None, index=clinical.index, dtype=object)
            if fish_column is not None:
                fish = clinical[fish_column].map(parse_fish_status)
            else:
                logger.warning("No FISH column; IHC 2+ cases will be 'unknown'")
                fish = pd.Series(None, index=clinical.index, dtype=object)

            annotated["her2_ihc_score"] = pd.array(
                [np.nan if v is None or pd.isna(v) else v for v in ihc], dtype="Int64"
            )
            annotated["her2_fish_positive"] = pd.array(
                [None if v is None or pd.isna(v) else bool(v) for v in fish],
                dtype="boolean",
            )
            annotated[HER2_STATUS_COLUMN] = [
                classify_her2(
                    None if pd.isna(i) else int(i), None if pd.isna(f) else bool(f)
                )
                for i, f in zip(annotated["her2_ihc_score"], annotated["her2_fish_positive"])
            ]
            annotated[HER2_STATUS_COLUMN] = pd.Categorical(
                annotated[HER2_STATUS_COLUMN], categories=list(HER2_STATUSES)
            )

            counts = annotated[HER2_STATUS_COLUMN].value_counts()
            stats = {
                "n_patients": int(len(annotated)),
                "ihc_column": ihc_column,
                "fish_column": fish_column,
                "status_counts": {s: int(counts.get(s, 0)) for s in HER2_STATUSES},
            }
            logger.info(f"HER2 status: {stats['status_counts']}")

            ir = self._create_annotate_ir(ihc_column, fish_column)
            return annotated, stats, ir

        except Exception as e:
            if isinstance(e, Her2AnnotationError):
                raise
            logger.exception(f"Error annotating HER2 status: {e}")
            raise Her2AnnotationError(f"HER2 annotation failed: {str(e)}") from e

    def join_samples(
        self,
        counts: pd.DataFrame,
        clinical: pd.DataFrame,
        primary_tumor_only: bool = True,
        one_sample_per_patient: bool = True,
    ) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Match expression samples to clinical rows through their patient barcode.

        Args:
            counts: genes × samples matrix with TCGA sample barcodes as columns
            clinical: Patient-level table indexed by patient barcode
            primary_tumor_only: Keep only sample type ``01``
            one_sample_per_patient: Keep the first barcode (sorted) per patient

        Returns:
            Tuple of (counts restricted to the joined samples, sample table
            indexed by ``sample_id`` with a ``patient_id`` column, stats, ir)

        Raises:
            Her2AnnotationError: If no sample can be joined
        """
        try:
            samples = pd.DataFrame(
                {"sample_id": counts.columns.astype(str)},
            )
            samples["patient_id"] = samples["sample_id"].map(patient_barcode)
            samples["sample_type_code"] = samples["sample_id"].map(sample_type_code)
            n_input = len(samples)

            n_non_primary = 0
            if primary_tumor_only:
                primary = samples["sample_type_code"] == PRIMARY_TUMOR_CODE
                n_non_primary = int((~primary).sum())
                samples = samples[primary]

            n_duplicates = 0
            if one_sample_per_patient:
                samples = samples.sort_values("sample_id")
                duplicated = samples["patient_id"].duplicated(keep="first")
                n_duplicates = int(duplicated.sum())
                samples = samples[~duplicated]

            clinical = clinical.copy()
            clinical.index = clinical.index.astype(str).map(patient_barcode)
            clinical = clinical[~clinical.index.duplicated(keep="first")]
            clinical = clinical.drop(columns=["patient_id"], errors="ignore")

            has_clinical = samples["patient_id"].isin(clinical.index)
            n_no_clinical = int((~has_clinical).sum())
            samples = samples[has_clinical]

            if samples.empty:
                raise Her2AnnotationError(
                    "No expression sample could be matched to a clinical record",
                    {
                        "n_samples": n_input,
                        "example_sample": str(counts.columns[0]) if n_input else None,
                        "example_patient": str(clinical.index[0]) if len(clinical) else None,
                    },
                )

            sample_table = samples.merge(
                clinical, left_on="patient_id", right_index=True, how="inner"
            ).set_index("sample_id")
            sample_table = sample_table.loc[sorted(sample_table.index)]

            if n_non_primary:
                logger.warning(f"Dropped {n_non_primary} non-primary-tumour samples")
            if n_duplicates:
                logger.warning(f"Dropped {n_duplicates} extra samples of the same patient")
            if n_no_clinical:
                logger.warning(f"Dropped {n_no_clinical} samples without clinical data")

            stats = {
                "n_input_samples": n_input,
                "n_non_primary_dropped": n_non_primary,
                "n_duplicate_patient_dropped": n_duplicates,
                "n_without_clinical_dropped": n_no_clinical,
                "n_samples": int(len(sample_table)),
            }
            logger.info(f"Joined {stats['n_samples']}/{n_input} samples to clinical data")

            ir = AnalysisStep(
                operation="her2.join_samples",
                tool_name="Her2AnnotationService.join_samples",
                description=(
                    "Map each sample barcode to its patient, keep one primary tumour "
                    "sample per patient and attach the clinical annotation."
                ),
                library="pandas",
                code_template="""counts, samples, join_stats, _ = her2.join_samples(
    counts, clinical,
    primary_tumor_only={{ primary_tumor_only }},
    one_sample_per_patient={{ one_sample_per_patient }},
)
adata = BulkCountsAdapter().from_counts(counts, samples, gene_info)
print(join_stats)
""",
                imports=["from her2seq.core.adapters import BulkCountsAdapter"],
                parameters={
                    "primary_tumor_only": primary_tumor_only,
                    "one_sample_per_patient": one_sample_per_patient,
                },
                parameter_schema={
                    "primary_tumor_only": ParameterSpec(
                        param_type="bool",
                        papermill_injectable=False,
                        default_value=True,
                        required=False,
                        description="Keep only primary tumour samples",
                    ),
                },
                input_entities=["counts", "clinical", "gene_info"],
                output_entities=["adata"],
            )
            return counts[sample_table.index], sample_table, stats, ir

        except Exception as e:
            if isinstance(e, Her2AnnotationError):
                raise
            logger.exception(f"Error joining samples to clinical data: {e}")
            raise Her2AnnotationError(f"Sample join failed: {str(e)}") from e

    def select_groups(
        self,
        adata: anndata.AnnData,
        groups: Iterable[str],
        status_column: str = HER2_STATUS_COLUMN,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Keep samples whose HER2 status is one of ``groups``.

        Raises:
            Her2AnnotationError: If the status column is missing or nothing is kept
        """
        groups = list(groups)
        unknown = [g for g in groups if g not in HER2_STATUSES]
        if unknown:
            raise Her2AnnotationError(
                f"Unknown HER2 group(s): {unknown}", {"valid": list(HER2_STATUSES)}
            )
        if status_column not in adata.obs.columns:
            raise Her2AnnotationError(
                f"Column '{status_column}' not found in sample annotation",
                {"available": list(adata.obs.columns)},
            )

        status = adata.obs[status_column].astype(str)
        mask = status.isin(groups).to_numpy()
        if not mask.any():
            raise Her2AnnotationError(
                f"No samples with HER2 status in {groups}",
                {"status_counts": status.value_counts().to_dict()},
            )

        adata = adata[mask].copy()
        adata.obs[status_column] = pd.Categorical(
            adata.obs[status_column].astype(str), categories=groups
        )
        group_sizes = adata.obs[status_column].value_counts()
        stats = {
            "groups": groups,
            "group_sizes": {g: int(group_sizes.get(g, 0)) for g in groups},
            "n_samples": int(adata.n_obs),
            "n_dropped": int((~mask).sum()),
        }
        logger.info(f"Selected HER2 groups {stats['group_sizes']}")

        ir = AnalysisStep(
            operation="her2.select_groups",
            tool_name="Her2AnnotationService.select_groups",
            description=f"Keep samples with HER2 status in {', '.join(groups)}.",
            library="anndata",
            code_template="""adata, group_stats, _ = her2.select_groups(adata, {{ groups | pprint }})
print(group_stats["group_sizes"])
""",
            imports=[],
            parameters={"groups": groups},
            parameter_schema={
                "groups": ParameterSpec(
                    param_type="List[str]",
                    papermill_injectable=True,
                    default_value=[HER2_POSITIVE, HER2_NEGATIVE],
                    required=True,
                    description="HER2 groups to compare",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata"],
        )
        return adata, stats, ir

    def _create_annotate_ir(
        self, ihc_column: Optional[str], fish_column: Optional[str]
    ) -> AnalysisStep:
        return AnalysisStep(
            operation="her2.annotate",
            tool_name="Her2AnnotationService.annotate",
            description=(
                "Classify patients as HER2 positive, low, negative or unknown from "
                "the IHC score and FISH result."
            ),
            library="pandas",
            code_template="""her2 = Her2AnnotationService()
clinical, her2_stats, _ = her2.annotate(
    clinical, ihc_column={{ ihc_column | pprint }}, fish_column={{ fish_column | pprint }}
)
print(her2_stats["status_counts"])
""",
            imports=[
                "from her2seq.services.metadata.her2_status_service import Her2AnnotationService"
            ],
            parameters={"ihc_column": ihc_column, "fish_column": fish_column},
            parameter_schema={},
            input_entities=["clinical"],
            output_entities=["clinical"],
        )


def _first_present(df: pd.DataFrame, candidates: Iterable[str]) -> Optional[str]:
    for column in candidates:
        if column in df.columns:
            return column
    return None
