"""Unit tests for the exception hierarchy."""

import pytest

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


@pytest.mark.parametrize(
    "error_class",
    [
        DataAccessError,
        UnsupportedFormatError,
        ClinicalAnnotationError,
        ValidationError,
        FilteringError,
        NormalizationError,
        FormulaError,
        DesignMatrixError,
        DifferentialExpressionError,
        VisualizationError,
        ProvenanceError,
    ],
)
def test_subclasses_base(error_class):
    assert issubclass(error_class, Her2SeqError)


def test_message_and_details():
    error = UnsupportedFormatError("Cannot parse", {"columns": ["a", "b"]})
    assert str(error) == "Cannot parse"
    assert error.details["columns"] == ["a", "b"]
    assert isinstance(error, DataAccessError)


def test_details_default_to_empty_dict():
    assert Her2SeqError("boom").details == {}
