"""
Core exceptions for her2seq.

This module provides the exception hierarchy used throughout the data loading,
annotation and analysis pipeline. Every error carries a human-readable
``message`` and a structured ``details`` dict.
"""

from typing import Any, Dict, Optional


class Her2SeqError(Exception):
    """Base exception for all her2seq errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class DataAccessError(Her2SeqError):
    """
    Raised when expression or clinical data cannot be fetched or read.

    Attributes:
        details: May contain:
            - url / path: Resource that failed
            - status_code: HTTP status, when the failure came from the GDC API
            - suggestions: List of things to try
    """

    pass


class UnsupportedFormatError(DataAccessError):
    """
    Raised when a file exists but its layout is not one we can parse.

    Example:
        try:
            counts = service.read_expression(path)
        except UnsupportedFormatError as e:
            print(f"Cannot parse file: {e.message}")
            print(f"Columns seen: {e.details.get('columns')}")
    """

    pass


class ClinicalAnnotationError(Her2SeqError):
    """Raised when HER2 status cannot be derived from the clinical table."""

    pass


class ValidationError(Her2SeqError):
    """Raised for malformed count matrices or sample tables."""

    pass


class FilteringError(Her2SeqError):
    """Raised when gene filtering fails or removes every gene."""

    pass


class NormalizationError(Her2SeqError):
    """Raised when library-size normalisation cannot be computed."""

    pass


class FormulaError(Her2SeqError):
    """Raised when formula parsing fails."""

    pass


class DesignMatrixError(Her2SeqError):
    """Raised when design matrix construction fails."""

    pass


class DifferentialExpressionError(Her2SeqError):
    """Raised when a differential expression test cannot be run."""

    pass


class VisualizationError(Her2SeqError):
    """Raised when a plot cannot be produced from the data at hand."""

    pass


class ProvenanceError(Her2SeqError):
    """Raised for provenance tracking and notebook export failures."""

    pass


class RBackendError(Her2SeqError):
    """
    Raised when R, rpy2 or a required Bioconductor package is unavailable.

    Attributes:
        details: May contain:
            - missing_packages: R packages that are not installed
            - suggestions: Installation instructions
    """

    pass
