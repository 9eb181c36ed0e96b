"""
Synthetic data for the her2seq test suite.

Cohorts are fully reproducible from a MockDataConfig and come in the
layouts the workflow reads: raw count matrices, BCR Biotab and cBioPortal
clinical tables, STAR count files and portal study exports.
"""

from .base import DEFAULT_COHORT_CONFIG, SMALL_COHORT_CONFIG, MockDataConfig
from .factories import (
    STATUS_TO_CLINICAL,
    BulkCountsFactory,
    ClinicalTableFactory,
    biotab_text,
    make_cohort,
    make_gene_info,
    make_patient_ids,
    sample_barcode,
    star_counts_text,
    tcga_annotated_adata,
    write_portal_study,
)

__all__ = [
    # Configuration
    "MockDataConfig",
    "DEFAULT_COHORT_CONFIG",
    "SMALL_COHORT_CONFIG",
    # Factories
    "BulkCountsFactory",
    "ClinicalTableFactory",
    "STATUS_TO_CLINICAL",
    # Builders
    "make_cohort",
    "make_gene_info",
    "make_patient_ids",
    "sample_barcode",
    "tcga_annotated_adata",
    # Source file layouts
    "biotab_text",
    "star_counts_text",
    "write_portal_study",
]
