"""Plotly figures for quality control and differential expression results."""

from her2seq.services.visualization.bulk_visualization_service import (
    BulkVisualizationError,
    BulkVisualizationService,
)

__all__ = ["BulkVisualizationError", "BulkVisualizationService"]
