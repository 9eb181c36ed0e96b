"""Clinical annotation: HER2 status and TCGA barcode handling."""

from her2seq.services.metadata.her2_status_service import (
    Her2AnnotationError,
    Her2AnnotationService,
    classify_her2,
    parse_fish_status,
    parse_ihc_score,
    patient_barcode,
)

__all__ = [
    "Her2AnnotationError",
    "Her2AnnotationService",
    "classify_her2",
    "parse_fish_status",
    "parse_ihc_score",
    "patient_barcode",
]
