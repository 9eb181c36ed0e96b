"""
Unit tests for the analysis IR.

Covers ParameterSpec/AnalysisStep serialisation, Jinja2 rendering of code
templates and import ordering for notebook export.
"""

from typing import Optional

import numpy as np
import pytest

from her2seq.core.analysis_ir import AnalysisStep, ParameterSpec, extract_unique_imports


@pytest.fixture
def filter_step():
    return AnalysisStep(
        operation="edger.filterByExpr",
        tool_name="PreprocessingService.filter_by_expr",
        description="Drop lowly expressed genes",
        library="her2seq",
        code_template=(
            "adata, filter_stats, _ = prep.filter_by_expr(\n"
            "    adata, group_key={{ group_key | pprint }}, min_count={{ min_count }}\n"
            ")"
        ),
        imports=[
            "from her2seq.services.analysis.preprocessing_service import PreprocessingService"
        ],
        parameters={"group_key": "her2_status", "min_count": 10},
        parameter_schema={
            "min_count": ParameterSpec(
                param_type="int",
                papermill_injectable=True,
                default_value=10,
                required=False,
                validation_rule="min_count > 0",
                description="Minimum count",
            ),
            "group_key": ParameterSpec(
                param_type="str",
                papermill_injectable=False,
                default_value=None,
                required=False,
            ),
        },
    )


class TestParameterSpec:
    def test_to_dict_round_trip(self):
        spec = ParameterSpec("float", True, 0.05, False, "0 < fdr < 1", "FDR")
        assert ParameterSpec.from_dict(spec.to_dict()) == spec

    def test_validation_rule_is_optional(self):
        spec = ParameterSpec("str", False, None, False)
        assert spec.validation_rule is None
        assert ParameterSpec.__dataclass_fields__["validation_rule"].type == Optional[str]
        assert spec.to_dict()["validation_rule"] is None

    def test_non_serialisable_default_rejected(self):
        spec = ParameterSpec("array", False, np.arange(3), False)
        with pytest.raises(TypeError, match="not JSON-serializable"):
            spec.to_dict()


class TestAnalysisStep:
    def test_render_uses_parameters(self, filter_step):
        code = filter_step.render()
        assert "group_key='her2_status'" in code
        assert "min_count=10" in code

    def test_render_overrides(self, filter_step):
        assert "min_count=25" in filter_step.render(min_count=25)

    def test_none_renders_as_python(self, filter_step):
        code = filter_step.render(group_key=None)
        assert "group_key=None" in code
        assert filter_step.validate_rendered_code(group_key=None)

    def test_invalid_template(self, filter_step):
        filter_step.code_template = "{{ unclosed"
        with pytest.raises(ValueError, match="Invalid Jinja2 template"):
            filter_step.validate_template()

    def test_syntax_error_detected(self, filter_step):
        filter_step.code_template = "def broken(:\n    pass"
        with pytest.raises(SyntaxError):
            filter_step.validate_rendered_code()

    def test_dict_round_trip_restores_specs(self, filter_step):
        restored = AnalysisStep.from_dict(filter_step.to_dict())
        assert isinstance(restored.parameter_schema["min_count"], ParameterSpec)
        assert restored.render() == filter_step.render()

    def test_from_dict_missing_fields(self):
        with pytest.raises(ValueError, match="Missing required fields"):
            AnalysisStep.from_dict({"operation": "x"})

    def test_papermill_parameters(self, filter_step):
        assert filter_step.get_papermill_parameters() == {"min_count": 10}


def test_extract_unique_imports_order(filter_step):
    other = AnalysisStep(
        operation="x",
        tool_name="x",
        description="",
        library="pandas",
        code_template="pass",
        imports=[
            "import pandas as pd",
            "from pathlib import Path",
            "from her2seq.core.adapters import BulkCountsAdapter",
        ],
        parameters={},
        parameter_schema={},
    )
    imports = extract_unique_imports([filter_step, other, other])
    assert imports == [
        "from pathlib import Path",
        "import pandas as pd",
        "from her2seq.core.adapters import BulkCountsAdapter",
        "from her2seq.services.analysis.preprocessing_service import PreprocessingService",
    ]
