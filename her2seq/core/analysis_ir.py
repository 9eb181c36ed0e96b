"""
Intermediate Representation (IR) for reproducible analysis steps.

Every service operation returns an ``AnalysisStep`` next to its result. The
step carries a Jinja2 code template plus the parameter values actually used,
which is enough for the notebook exporter to rebuild the workflow as an
executable, narrated notebook.
"""

import ast
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from jinja2 import Template

from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

STDLIB_MODULES = {
    "os",
    "sys",
    "pathlib",
    "datetime",
    "json",
    "re",
    "math",
    "typing",
}


@dataclass
class ParameterSpec:
    """
    Type and behavior specification for an analysis parameter.

    Attributes:
        param_type: Python type as string (e.g., "int", "float", "List[str]")
        papermill_injectable: Whether Papermill may override this parameter
        default_value: Default value if not specified
        required: Whether this parameter must be provided
        validation_rule: Optional validation expression (e.g., "min_count > 0")
        description: Human-readable parameter description

    Example:
        >>> spec = ParameterSpec(
        ...     param_type="int",
        ...     papermill_injectable=True,
        ...     default_value=10,
        ...     required=False,
        ...     validation_rule="min_count > 0",
        ...     description="Minimum count for filterByExpr"
        ... )
    """

    param_type: str
    papermill_injectable: bool
    default_value: Any
    required: bool
    validation_rule: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to JSON-compatible dictionary.

        Raises:
            TypeError: If default_value is not JSON-serializable
        """
        try:
            json.dumps({"value": self.default_value})
        except TypeError as e:
            raise TypeError(
                f"ParameterSpec default_value is not JSON-serializable: "
                f"{type(self.default_value).__name__} = {self.default_value!r}. "
                f"Parameter: '{self.description or self.param_type}'"
            ) from e

        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParameterSpec":
        return cls(**data)


@dataclass
class AnalysisStep:
    """
    Intermediate Representation of one analysis operation.

    Attributes:
        operation: Fully-qualified operation name (e.g., "limma.voom")
        tool_name: Service method that produced the step
        description: Narrative text (becomes the notebook markdown cell)
        library: Main library behind the operation
        code_template: Jinja2 template with {{ variable }} placeholders
        imports: Import statements the code needs
        parameters: Actual parameter values used in this execution
        parameter_schema: Type info and Papermill flags for each parameter
        input_entities: Names of the inputs the code reads
        output_entities: Names of the outputs the code writes
        execution_context: Seeds, versions and other run facts
        validates_on_export: Run an AST syntax check on export
        requires_validation: Whether a human should review the cell
        exportable: Whether to include in notebook export

    Example:
        >>> ir = AnalysisStep(
        ...     operation="edger.filterByExpr",
        ...     tool_name="filter_by_expr",
        ...     description="Drop lowly expressed genes",
        ...     library="her2seq",
        ...     code_template="adata, _, _ = prep.filter_by_expr(adata, min_count={{ min_count }})",
        ...     imports=["from her2seq.services.analysis.preprocessing_service import PreprocessingService"],
        ...     parameters={"min_count": 10},
        ...     parameter_schema={},
        ... )
    """

    # Identity
    operation: str
    tool_name: str
    description: str

    # Code generation
    library: str
    code_template: str
    imports: List[str]

    # Parameters
    parameters: Dict[str, Any]
    parameter_schema: Dict[str, ParameterSpec]

    # Data flow
    input_entities: List[str] = field(default_factory=list)
    output_entities: List[str] = field(default_factory=list)

    # Metadata
    execution_context: Dict[str, Any] = field(default_factory=dict)

    # Validation flags
    validates_on_export: bool = True
    requires_validation: bool = False

    exportable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to a JSON-compatible dictionary.

        ParameterSpec objects inside parameter_schema are converted too.
        """
        data = asdict(self)
        data["parameter_schema"] = {
            k: v.to_dict() if isinstance(v, ParameterSpec) else v
            for k, v in self.parameter_schema.items()
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisStep":
        """
        Deserialize from dictionary produced by ``to_dict``.

        Raises:
            ValueError: If required fields are missing
        """
        required_fields = [
            "operation",
            "tool_name",
            "description",
            "library",
            "code_template",
            "imports",
            "parameters",
            "parameter_schema",
        ]
        missing_fields = [name for name in required_fields if name not in data]
        if missing_fields:
            raise ValueError(f"Missing required fields: {missing_fields}")

        data = dict(data)
        data["parameter_schema"] = {
            k: ParameterSpec.from_dict(v) if isinstance(v, dict) else v
            for k, v in data["parameter_schema"].items()
        }
        return cls(**data)

    def validate_template(self) -> bool:
        """
        Validate that the code template is valid Jinja2.

        Raises:
            ValueError: If template has invalid syntax
        """
        try:
            Template(self.code_template)
            return True
        except Exception as e:
            raise ValueError(f"Invalid Jinja2 template: {e}") from e

    def render(self, **override_params) -> str:
        """
        Render code template with parameters.

        Args:
            **override_params: Optional parameter overrides

        Raises:
            ValueError: If template rendering fails
        """
        try:
            params = {**self.parameters, **override_params}
            return Template(self.code_template).render(**params)
        except Exception as e:
            logger.error(f"Failed to render template for {self.operation}: {e}")
            raise ValueError(f"Template rendering failed: {e}") from e

    def validate_rendered_code(self, **override_params) -> bool:
        """
        Render and parse the generated code.

        Raises:
            SyntaxError: If generated code is invalid
        """
        code = self.render(**override_params)
        try:
            ast.parse(code)
            return True
        except SyntaxError as e:
            logger.error(f"Invalid generated code for {self.operation}: {e}")
            raise

    def get_papermill_parameters(self) -> Dict[str, Any]:
        """Parameters that Papermill may override, with their current values."""
        return {
            param_name: self.parameters.get(param_name, spec.default_value)
            for param_name, spec in self.parameter_schema.items()
            if spec.papermill_injectable
        }

    def __repr__(self) -> str:
        return (
            f"AnalysisStep(operation={self.operation}, "
            f"tool={self.tool_name}, "
            f"params={len(self.parameters)})"
        )


def extract_unique_imports(irs: List[AnalysisStep]) -> List[str]:
    """
    Extract and deduplicate imports from several IR objects.

    Imports are sorted stdlib → third-party → her2seq.
    """
    imports = set()
    for ir in irs:
        imports.update(ir.imports)

    def import_sort_key(import_str: str) -> tuple:
        parts = import_str.split()
        module = parts[1].split(".")[0] if len(parts) > 1 else ""

        if module in STDLIB_MODULES:
            return (0, import_str)
        elif module == "her2seq":
            return (2, import_str)
        return (1, import_str)

    return sorted(imports, key=import_sort_key)
