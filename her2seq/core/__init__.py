"""
her2seq core module with the exception hierarchy, analysis IR and provenance.
"""

from her2seq.core.exceptions import (
    ClinicalAnnotationError,
    DataAccessError,
    DesignMatrixError,
    DifferentialExpressionError,
    FilteringError,
    FormulaError,
    Her2SeqError,
    NormalizationError,
    ProvenanceError,
    UnsupportedFormatError,
    ValidationError,
    VisualizationError,
)

__all__ = [
    "Her2SeqError",
    "DataAccessError",
    "UnsupportedFormatError",
    "ClinicalAnnotationError",
    "ValidationError",
    "FilteringError",
    "NormalizationError",
    "FormulaError",
    "DesignMatrixError",
    "DifferentialExpressionError",
    "VisualizationError",
    "ProvenanceError",
]
