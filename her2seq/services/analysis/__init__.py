"""Filtering, normalisation, PCA and limma-voom differential expression."""

from her2seq.services.analysis.differential_formula_service import (
    DifferentialFormulaService,
)
from her2seq.services.analysis.limma_voom_service import (
    LimmaVoomError,
    LimmaVoomService,
    VoomResult,
)
from her2seq.services.analysis.pca_service import PCAError, PCAService
from her2seq.services.analysis.preprocessing_service import (
    PreprocessingError,
    PreprocessingService,
)
from her2seq.services.analysis.r_backend import check_r_availability

__all__ = [
    "DifferentialFormulaService",
    "LimmaVoomError",
    "LimmaVoomService",
    "VoomResult",
    "PCAError",
    "PCAService",
    "PreprocessingError",
    "PreprocessingService",
    "check_r_availability",
]
