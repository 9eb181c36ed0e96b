"""
Jupyter notebook exporter for workflow replay.

Turns a provenance record into a narrated, executable notebook in the
tutorial style the workflow grew out of: a markdown cell explaining each
step, followed by the code that performs it. Code comes from the
AnalysisStep IR each service emitted, so no mapping table is needed.
"""

import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import nbformat
from nbformat import NotebookNode
from nbformat.v4 import new_code_cell, new_markdown_cell, new_notebook

from her2seq.core.analysis_ir import AnalysisStep, extract_unique_imports
from her2seq.core.provenance import ProvenanceTracker
from her2seq.utils.logger import get_logger
from her2seq.version import __version__

logger = get_logger(__name__)


class NotebookExporter:
    """
    Convert a provenance record to an executable Jupyter notebook using IR.

    Attributes:
        provenance: ProvenanceTracker with the recorded workflow steps
    """

    def __init__(self, provenance: ProvenanceTracker) -> None:
        self.provenance = provenance

    def export(
        self,
        path: Union[str, Path],
        title: str = "HER2 differential expression",
        description: str = "",
        validate_syntax: bool = True,
    ) -> Path:
        """
        Generate a Jupyter notebook from the recorded activities.

        Args:
            path: Output .ipynb path
            title: Notebook title
            description: Introductory paragraph
            validate_syntax: Whether to syntax-check rendered code cells

        Returns:
            Path to generated .ipynb file

        Raises:
            ValueError: If no activities were recorded
        """
        if not self.provenance.activities:
            raise ValueError("No activities recorded - nothing to export")

        activities = [
            a for a in self.provenance.activities if a.get("type") != "failed_operation"
        ]
        irs = self._extract_irs(activities)
        logger.info(
            f"Exporting notebook: {len(irs)} IR steps from {len(activities)} activities"
        )

        notebook = new_notebook()
        notebook.cells.append(self._create_header_cell(title, description, len(irs)))
        notebook.cells.append(self._create_imports_cell(irs))
        notebook.cells.append(self._create_parameters_cell(irs))

        for idx, activity in enumerate(activities, start=1):
            notebook.cells.append(self._create_doc_cell(activity, idx))
            notebook.cells.append(
                self._activity_to_code(activity, validate=validate_syntax)
            )

        notebook.cells.append(self._create_footer_cell())
        notebook.metadata["her2seq"] = self._create_metadata(len(irs), len(activities))

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            nbformat.write(notebook, f)

        logger.info(f"Notebook exported: {path}")
        return path

    def _extract_irs(self, activities: List[Dict[str, Any]]) -> List[AnalysisStep]:
        irs = []
        for activity in activities:
            ir_dict = activity.get("ir")
            if not isinstance(ir_dict, dict):
                continue
            try:
                ir = AnalysisStep.from_dict(ir_dict)
            except ValueError as e:
                logger.warning(
                    f"Failed to deserialize IR for activity {activity.get('type')}: {e}"
                )
                continue
            if ir.exportable:
                irs.append(ir)
        return irs

    def _create_header_cell(
        self, title: str, description: str, n_irs: int
    ) -> NotebookNode:
        n_activities = len(self.provenance.activities)
        header_content = f"""# {title}

{description or "RNA-seq differential expression of TCGA breast cancer samples stratified by HER2 status."}

**Created:** {datetime.now().strftime("%Y-%m-%d %H:%M:%S")}
**her2seq version:** {__version__}
**Reproducible steps:** {n_irs}/{n_activities}

---

## Workflow

1. Load expression counts and clinical annotation
2. Classify samples by HER2 status (IHC score + FISH result) and join to expression
3. Aggregate duplicate genes, filter lowly expressed genes, normalise (TMM)
4. Explore with density, RLE and PCA plots
5. Test for differential expression with limma-voom
"""
        return new_markdown_cell(header_content)

    def _create_imports_cell(self, irs: List[AnalysisStep]) -> NotebookNode:
        if irs:
            imports = extract_unique_imports(irs)
        else:
            imports = ["import anndata as ad", "import pandas as pd"]
        return new_code_cell("# Required imports\n" + "\n".join(imports))

    def _create_parameters_cell(self, irs: List[AnalysisStep]) -> NotebookNode:
        """Papermill-tagged parameters cell, filled from the IR schemas."""
        injectable_params: Dict[str, Any] = {}
        for ir in irs:
            injectable_params.update(ir.get_papermill_parameters())

        code = """# Parameters (tagged for Papermill parameter injection)
# Override with: papermill notebook.ipynb output.ipynb -p param_name value
"""
        for param_name, param_value in sorted(injectable_params.items()):
            code += f"{param_name} = {param_value!r}\n"

        cell = new_code_cell(code)
        cell.metadata["tags"] = ["parameters"]
        return cell

    def _create_doc_cell(self, activity: Dict[str, Any], step_number: int) -> NotebookNode:
        ir_dict = activity.get("ir") or {}
        description = activity.get("description") or ir_dict.get("description", "")

        doc_content = f"## Step {step_number}: {activity.get('type', 'unknown')}\n\n"
        if description:
            doc_content += f"{description}\n\n"

        params = activity.get("parameters", {})
        if params:
            doc_content += "**Parameters:**\n"
            for key, value in params.items():
                if isinstance(value, (list, tuple)) and len(value) > 5:
                    value_str = (
                        f"[{', '.join(str(x) for x in value[:3])}...] "
                        f"(length: {len(value)})"
                    )
                else:
                    value_str = str(value)
                doc_content += f"- `{key}`: {value_str}\n"

        return new_markdown_cell(doc_content)

    def _activity_to_code(
        self, activity: Dict[str, Any], validate: bool = True
    ) -> Optional[NotebookNode]:
        ir_dict = activity.get("ir")
        tool_name = activity.get("type", "unknown")

        if ir_dict is None:
            logger.warning(f"No IR for activity: {tool_name}")
            return new_code_cell(
                f"# Manual step: {tool_name}\n"
                f"# Parameters: {activity.get('parameters', {})}\n"
                f"pass"
            )

        try:
            ir = AnalysisStep.from_dict(ir_dict)
            code = ir.render()
        except ValueError as e:
            logger.error(f"Failed to render code for {tool_name}: {e}")
            return new_code_cell(f"# ERROR: could not render {tool_name}\n# {e}\npass")

        if validate and ir.validates_on_export:
            try:
                ir.validate_rendered_code()
            except SyntaxError as e:
                code = f"# SYNTAX ERROR in generated code: {e}\n" + "\n".join(
                    f"# {line}" for line in code.splitlines()
                )

        return new_code_cell(code.strip() + "\n")

    def _create_footer_cell(self) -> NotebookNode:
        footer_content = """---

## Re-running

```bash
papermill her2_de_workflow.ipynb output.ipynb -p fdr 0.01
```

*Generated with her2seq.*
"""
        return new_markdown_cell(footer_content)

    def _create_metadata(self, n_irs: int, n_activities: int) -> Dict[str, Any]:
        return {
            "created_by": os.getenv("USER", "unknown"),
            "created_at": datetime.now().isoformat(),
            "her2seq_version": __version__,
            "python": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            "ir_statistics": {
                "n_irs_extracted": n_irs,
                "n_activities": n_activities,
            },
        }
