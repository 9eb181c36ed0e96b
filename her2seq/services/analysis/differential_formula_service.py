"""
Formula parsing and design matrices for linear-model differential expression.

Parses R-style model formulas (``~ her2_status + age``) against the sample
annotation and builds treatment-coded design matrices and contrast vectors
for the limma-voom service.
"""

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd

from her2seq.config.constants import MISSING_TOKENS
from her2seq.core.analysis_ir import AnalysisStep
from her2seq.core.exceptions import DesignMatrixError, FormulaError
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

INTERCEPT = "(Intercept)"


def coefficient_name(factor: str, level: str) -> str:
    """Design column name of a non-reference factor level."""
    return f"{factor}[T.{level}]"


class DifferentialFormulaService:
    """
    Service for formula-based differential expression design.

    Categorical variables are treatment-coded against a reference level
    (the first level after sorting unless one is given); numeric variables
    enter the design as-is.
    """

    def parse_formula(
        self,
        formula: str,
        metadata: pd.DataFrame,
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Parse an R-style formula into components and validate against metadata.

        Args:
            formula: Formula string (e.g., "~her2_status + age")
            metadata: Sample annotation
            reference_levels: Optional reference level per categorical variable

        Returns:
            Dict[str, Any]: formula_string, predictor_terms, variable_info,
            reference_levels, n_samples, design_rank

        Raises:
            FormulaError: If the formula is malformed or uses unknown variables
        """
        logger.info(f"Parsing formula: {formula}")

        try:
            formula = self._clean_formula(formula)
            predictors = self._split_formula(formula)
            terms = self._parse_terms(predictors)
            self._validate_variables(terms, metadata)
            variable_info = self._analyze_variables(terms, metadata, reference_levels)

            components = {
                "formula_string": formula,
                "predictor_terms": terms,
                "variable_info": variable_info,
                "reference_levels": reference_levels or {},
                "n_samples": len(metadata),
                "design_rank": self._estimate_design_rank(variable_info),
            }
            logger.debug(
                f"Formula parsed: {len(terms)} terms, rank ≈ {components['design_rank']}"
            )
            return components

        except Exception as e:
            if isinstance(e, FormulaError):
                raise
            raise FormulaError(f"Failed to parse formula '{formula}': {e}") from e

    def prepare_covariates(
        self, adata: anndata.AnnData, covariates: Sequence[str]
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Make clinical covariates usable as model terms.

        Clinical tables are read as text, so a column such as ``AGE`` arrives
        as strings. Columns whose non-missing values all parse as numbers are
        converted to numeric and enter the design as continuous terms; TCGA
        missing-value tokens count as missing. Samples missing any covariate
        are dropped.

        Returns:
            Tuple of (adata restricted to complete samples, stats, ir)

        Raises:
            FormulaError: If a covariate is not in the sample annotation or no
                sample has every covariate
        """
        covariates = list(covariates)
        missing = [name for name in covariates if name not in adata.obs.columns]
        if missing:
            raise FormulaError(
                f"Variables not found in metadata: {missing}",
                {"available": list(adata.obs.columns)},
            )

        obs = adata.obs.copy()
        converted = []
        for name in covariates:
            if pd.api.types.is_numeric_dtype(obs[name]) and not pd.api.types.is_bool_dtype(
                obs[name]
            ):
                continue
            values = obs[name].astype(object)
            values = values.where(~values.isin(MISSING_TOKENS))
            numeric = pd.to_numeric(values, errors="coerce")
            if values.notna().any() and numeric.notna().sum() == values.notna().sum():
                obs[name] = numeric.astype(np.float64)
                converted.append(name)
            else:
                obs[name] = values

        complete = obs[covariates].notna().all(axis=1).to_numpy()
        n_dropped = int((~complete).sum())
        if not complete.any():
            raise FormulaError(
                f"No sample has a value for every covariate in {covariates}",
                {"n_samples": int(adata.n_obs)},
            )
        if n_dropped:
            logger.warning(
                f"Dropping {n_dropped} of {adata.n_obs} samples with missing values in {covariates}"
            )
        if converted:
            logger.info(f"Covariates treated as numeric: {converted}")

        result = adata.copy()
        result.obs = obs
        result = result[complete].copy()

        stats = {
            "covariates": covariates,
            "converted_to_numeric": converted,
            "n_samples_dropped": n_dropped,
            "n_samples": int(result.n_obs),
        }
        ir = AnalysisStep(
            operation="her2seq.prepare_covariates",
            tool_name="DifferentialFormulaService.prepare_covariates",
            description=(
                "Convert numeric clinical covariates read as text and drop samples "
                "with a missing covariate value."
            ),
            library="pandas",
            code_template="""adata, covariate_stats, _ = DifferentialFormulaService().prepare_covariates(
    adata, {{ covariates | pprint }}
)
print(f"{covariate_stats['n_samples_dropped']} samples dropped for missing covariates")
""",
            imports=[
                "from her2seq.services.analysis.differential_formula_service import "
                "DifferentialFormulaService"
            ],
            parameters={"covariates": covariates},
            parameter_schema={},
            input_entities=["adata"],
            output_entities=["adata"],
        )
        return result, stats, ir

    def construct_design_matrix(
        self, formula_components: Dict[str, Any], metadata: pd.DataFrame
    ) -> Dict[str, Any]:
        """
        Build the design matrix from parsed formula components.

        Returns:
            Dict[str, Any]: design_matrix (ndarray), design_df, coefficient_names,
            n_coefficients, rank

        Raises:
            DesignMatrixError: On missing values or a rank-deficient design
        """
        try:
            design_df = pd.DataFrame(index=metadata.index)
            design_df[INTERCEPT] = 1.0

            for term in formula_components["predictor_terms"]:
                if term["type"] == "main_effect":
                    self._add_main_effect(design_df, term, metadata, formula_components)
                else:
                    self._add_interaction(design_df, term, metadata, formula_components)

            design_matrix = design_df.to_numpy(dtype=np.float64)
            rank = self._validate_design_matrix(design_matrix, list(design_df.columns))

            logger.info(
                f"Design matrix: {design_matrix.shape[0]} samples × "
                f"{design_matrix.shape[1]} coefficients"
            )
            return {
                "design_matrix": design_matrix,
                "design_df": design_df,
                "coefficient_names": list(design_df.columns),
                "n_coefficients": design_matrix.shape[1],
                "rank": rank,
            }

        except Exception as e:
            if isinstance(e, DesignMatrixError):
                raise
            raise DesignMatrixError(f"Failed to construct design matrix: {e}") from e

    def build_contrast(
        self,
        coefficient_names: Sequence[str],
        factor: str,
        level: str,
        reference: str,
    ) -> Tuple[np.ndarray, str]:
        """
        Contrast vector for ``level - reference`` of a treatment-coded factor.

        A level that is the design's reference has no column; its effect is 0.

        Returns:
            Tuple of (contrast vector, contrast name)

        Raises:
            FormulaError: If neither level has a column in the design
        """
        coefficient_names = list(coefficient_names)
        if level == reference:
            raise FormulaError(f"Contrast compares '{level}' with itself")

        contrast = np.zeros(len(coefficient_names))
        level_col = coefficient_name(factor, level)
        reference_col = coefficient_name(factor, reference)
        has_level = level_col in coefficient_names
        has_reference = reference_col in coefficient_names

        if not has_level and not has_reference:
            raise FormulaError(
                f"Neither '{level}' nor '{reference}' of '{factor}' is a design coefficient",
                {"coefficients": coefficient_names},
            )
        if has_level:
            contrast[coefficient_names.index(level_col)] = 1.0
        if has_reference:
            contrast[coefficient_names.index(reference_col)] = -1.0

        return contrast, f"{factor}_{level}_vs_{reference}"

    def validate_experimental_design(
        self, metadata: pd.DataFrame, formula: str, min_replicates: int = 2
    ) -> Dict[str, Any]:
        """
        Check a design for replication and missing values.

        Returns:
            Dict[str, Any]: valid, errors, warnings, design_summary
        """
        try:
            components = self.parse_formula(formula, metadata)
        except FormulaError as e:
            return {
                "valid": False,
                "errors": [str(e)],
                "warnings": [],
                "design_summary": {},
            }

        results = {"valid": True, "errors": [], "warnings": [], "design_summary": {}}

        n_samples = len(metadata)
        if n_samples < 6:
            results["warnings"].append(f"Small sample size: {n_samples} samples")

        for var, info in components["variable_info"].items():
            if info["type"] != "categorical":
                continue
            counts = metadata[var].astype(str).value_counts()
            results["design_summary"][var] = {k: int(v) for k, v in counts.items()}
            if counts.min() < min_replicates:
                results["errors"].append(
                    f"Variable '{var}' has levels with < {min_replicates} replicates: "
                    f"{results['design_summary'][var]}"
                )

        missing_vars = [v for v in components["variable_info"] if metadata[v].isna().any()]
        if missing_vars:
            results["errors"].append(f"Missing values in: {missing_vars}")

        df_residual = n_samples - components["design_rank"]
        if df_residual < 1:
            results["errors"].append(
                f"No residual degrees of freedom ({n_samples} samples, "
                f"{components['design_rank']} coefficients)"
            )

        results["valid"] = not results["errors"]
        return results

    def _clean_formula(self, formula: str) -> str:
        formula = re.sub(r"\s+", " ", str(formula).strip())
        if not formula.startswith("~"):
            formula = "~" + formula
        if formula.strip() == "~":
            raise FormulaError("Empty formula")
        return formula

    def _split_formula(self, formula: str) -> str:
        parts = formula.split("~")
        if len(parts) != 2:
            raise FormulaError(f"Invalid formula format: {formula}")
        if parts[0].strip():
            raise FormulaError(
                "Formulas take no response variable; expression is the response",
                {"formula": formula},
            )
        predictors = parts[1].strip()
        if not predictors:
            raise FormulaError("No predictor variables specified")
        return predictors

    def _parse_terms(self, predictor_string: str) -> List[Dict[str, Any]]:
        terms = []
        for term_str in (t.strip() for t in predictor_string.split("+")):
            if not term_str or term_str == "1":
                continue
            if "*" in term_str or ":" in term_str:
                variables = [v.strip() for v in re.split(r"[*:]", term_str)]
                if "*" in term_str:
                    for var in variables:
                        if not any(t["variables"] == [var] for t in terms):
                            terms.append(
                                {"term": var, "type": "main_effect", "variables": [var], "order": 1}
                            )
                terms.append(
                    {
                        "term": term_str,
                        "type": "interaction",
                        "variables": variables,
                        "order": len(variables),
                    }
                )
            elif not any(t["variables"] == [term_str] for t in terms):
                terms.append(
                    {"term": term_str, "type": "main_effect", "variables": [term_str], "order": 1}
                )
        if not terms:
            raise FormulaError("No predictor variables specified")
        return terms

    def _validate_variables(self, terms: List[Dict[str, Any]], metadata: pd.DataFrame) -> None:
        variables = {v for term in terms for v in term["variables"]}
        missing = sorted(v for v in variables if v not in metadata.columns)
        if missing:
            raise FormulaError(
                f"Variables not found in metadata: {missing}",
                {"available": list(metadata.columns)},
            )

    def _analyze_variables(
        self,
        terms: List[Dict[str, Any]],
        metadata: pd.DataFrame,
        reference_levels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Dict[str, Any]]:
        variable_info = {}
        variables = []
        for term in terms:
            for var in term["variables"]:
                if var not in variables:
                    variables.append(var)

        for var in variables:
            series = metadata[var]
            if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
                variable_info[var] = {
                    "type": "continuous",
                    "levels": None,
                    "n_levels": None,
                    "n_missing": int(series.isna().sum()),
                    "reference_level": None,
                }
                continue

            levels = sorted(series.dropna().astype(str).unique())
            if reference_levels and var in reference_levels:
                ref_level = str(reference_levels[var])
                if ref_level in levels:
                    levels = [ref_level] + [level for level in levels if level != ref_level]
                else:
                    raise FormulaError(
                        f"Reference level '{ref_level}' not found for variable '{var}'",
                        {"levels": levels},
                    )

            variable_info[var] = {
                "type": "categorical",
                "levels": levels,
                "n_levels": len(levels),
                "n_missing": int(series.isna().sum()),
                "reference_level": levels[0] if levels else None,
            }
        return variable_info

    def _estimate_design_rank(self, variable_info: Dict[str, Dict[str, Any]]) -> int:
        rank = 1
        for info in variable_info.values():
            if info["type"] == "continuous":
                rank += 1
            else:
                rank += max(0, info["n_levels"] - 1)
        return rank

    def _add_main_effect(
        self,
        design_df: pd.DataFrame,
        term: Dict[str, Any],
        metadata: pd.DataFrame,
        formula_components: Dict[str, Any],
    ) -> None:
        var = term["variables"][0]
        info = formula_components["variable_info"][var]
        if info["type"] == "continuous":
            design_df[var] = metadata[var].to_numpy(dtype=np.float64)
            return
        values = _as_level_strings(metadata[var])
        if pd.isna(values).any():
            raise DesignMatrixError(
                f"Variable '{var}' has {int(pd.isna(values).sum())} missing values; "
                "remove those samples first"
            )
        for level in info["levels"][1:]:
            design_df[coefficient_name(var, level)] = (values == level).astype(float)

    def _add_interaction(
        self,
        design_df: pd.DataFrame,
        term: Dict[str, Any],
        metadata: pd.DataFrame,
        formula_components: Dict[str, Any],
    ) -> None:
        variables = term["variables"]
        if len(variables) != 2:
            raise DesignMatrixError(
                f"Only two-way interactions are supported, got '{term['term']}'"
            )
        var1, var2 = variables
        cols1 = self._interaction_columns(var1, formula_components["variable_info"][var1], metadata)
        cols2 = self._interaction_columns(var2, formula_components["variable_info"][var2], metadata)
        for name1, values1 in cols1.items():
            for name2, values2 in cols2.items():
                design_df[f"{name1}:{name2}"] = values1 * values2

    def _interaction_columns(
        self, var: str, info: Dict[str, Any], metadata: pd.DataFrame
    ) -> Dict[str, np.ndarray]:
        if info["type"] == "continuous":
            return {var: metadata[var].to_numpy(dtype=np.float64)}
        values = _as_level_strings(metadata[var])
        return {
            coefficient_name(var, level): (values == level).astype(float)
            for level in info["levels"][1:]
        }

    def _validate_design_matrix(
        self, design_matrix: np.ndarray, column_names: List[str]
    ) -> int:
        if np.any(np.isnan(design_matrix)):
            raise DesignMatrixError(
                "Design matrix contains NaN values; remove samples with missing covariates"
            )
        if np.any(np.isinf(design_matrix)):
            raise DesignMatrixError("Design matrix contains infinite values")

        rank = int(np.linalg.matrix_rank(design_matrix))
        if rank < design_matrix.shape[1]:
            raise DesignMatrixError(
                f"Design matrix is rank deficient: rank {rank} < "
                f"{design_matrix.shape[1]} columns",
                {"columns": column_names},
            )
        for i, name in enumerate(column_names):
            if name != INTERCEPT and np.all(design_matrix[:, i] == design_matrix[0, i]):
                logger.warning(f"Column '{name}' is constant")
        return rank


def _as_level_strings(series: pd.Series) -> np.ndarray:
    """Level labels as strings, with missing values kept as NaN."""
    return np.array(
        [np.nan if pd.isna(v) else str(v) for v in series], dtype=object
    )
