"""The end-to-end HER2 differential expression workflow."""

from her2seq.services.workflow.her2_workflow_service import (
    Her2DifferentialExpressionWorkflow,
    Her2WorkflowConfig,
    WorkflowError,
)

__all__ = [
    "Her2DifferentialExpressionWorkflow",
    "Her2WorkflowConfig",
    "WorkflowError",
]
