"""
limma-voom differential expression.

The statistics are limma's own, called through rpy2:

1. ``voom``: log2-CPM values and observation-level precision weights from
   the mean-variance trend.
2. ``moderated_t_test``: ``lmFit``, ``contrasts.fit``, ``eBayes`` and
   ``topTable`` for one contrast, with BH-adjusted p-values.
3. ``decide_tests``: up/down calls from FDR and fold-change thresholds.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd

from her2seq.config.constants import DEFAULT_FDR, DEFAULT_LFC, VOOM_SPAN
from her2seq.core.analysis_ir import AnalysisStep, ParameterSpec
from her2seq.core.exceptions import (
    DifferentialExpressionError,
    Her2SeqError,
    RBackendError,
)
from her2seq.services.analysis.differential_formula_service import (
    DifferentialFormulaService,
)
from her2seq.services.analysis.r_backend import import_r_package, to_numpy, to_pandas, to_r
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

TOP_TABLE_COLUMNS = ["logFC", "AveExpr", "t", "P.Value", "adj.P.Val"]


class LimmaVoomError(DifferentialExpressionError):
    """Raised when the limma-voom pipeline cannot be run."""

    pass


@dataclass
class VoomResult:
    """
    Output of ``voom``.

    Attributes:
        E: log2-CPM values, genes × samples
        weights: Precision weights, genes × samples
        lib_size: Library sizes used
        design: Design matrix, samples × coefficients
        trend: Mean-variance trend (sx, sy, and the lowess curve); empty
            when the design has no replication
        elist: The R EList, kept for ``lmFit``
    """

    E: np.ndarray
    weights: np.ndarray
    lib_size: np.ndarray
    design: np.ndarray
    trend: Dict[str, np.ndarray] = field(default_factory=dict)
    elist: Any = field(default=None, repr=False)


def voom(
    counts: np.ndarray,
    design: Optional[np.ndarray] = None,
    lib_size: Optional[np.ndarray] = None,
    span: float = VOOM_SPAN,
) -> VoomResult:
    """
    limma ``voom``: log2-CPM and precision weights.

    Args:
        counts: Raw counts, genes × samples
        design: Design matrix, samples × coefficients (intercept only if None)
        lib_size: Library sizes (column sums if None); pass effective sizes
            (raw × normalisation factor) to include TMM factors
        span: Lowess span of the mean-variance trend

    Returns:
        VoomResult
    """
    counts = np.asarray(counts, dtype=np.float64)
    if design is None:
        design = np.ones((counts.shape[1], 1))
    design = np.asarray(design, dtype=np.float64)
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=np.float64)

    limma = import_r_package("limma")
    elist = limma.voom(
        to_r(counts),
        to_r(design),
        lib_size=to_r(lib_size),
        span=float(span),
        plot=False,
        save_plot=True,
    )

    names = list(elist.names)
    trend = {}
    if "voom.xy" in names:
        xy, line = elist.rx2("voom.xy"), elist.rx2("voom.line")
        trend = {
            "sx": to_numpy(xy.rx2("x")),
            "sy": to_numpy(xy.rx2("y")),
            "trend_x": to_numpy(line.rx2("x")),
            "trend_y": to_numpy(line.rx2("y")),
        }
    else:
        logger.warning("The experimental design has no replication; weights are all 1")

    return VoomResult(
        E=to_numpy(elist.rx2("E")),
        weights=to_numpy(elist.rx2("weights")),
        lib_size=lib_size,
        design=design,
        trend=trend,
        elist=elist,
    )


def moderated_t_test(
    voom_result: VoomResult,
    contrast: np.ndarray,
    genes: Sequence[str],
) -> Tuple[pd.DataFrame, Dict[str, float]]:
    """
    limma ``lmFit`` → ``contrasts.fit`` → ``eBayes`` → ``topTable`` for one contrast.

    Args:
        voom_result: Output of ``voom``
        contrast: Contrast vector over the design's coefficients
        genes: Gene labels, in the row order of the counts

    Returns:
        Tuple of (table sorted by P.Value with columns logFC, AveExpr, t,
        P.Value and adj.P.Val; dict with the eBayes df_prior and s2_prior)

    Raises:
        LimmaVoomError: If the contrast length does not match the coefficients
    """
    contrast = np.asarray(contrast, dtype=np.float64).reshape(-1, 1)
    if contrast.shape[0] != voom_result.design.shape[1]:
        raise LimmaVoomError(
            f"Contrast has {contrast.shape[0]} rows but the design has "
            f"{voom_result.design.shape[1]} coefficients"
        )

    limma = import_r_package("limma")
    fit = limma.lmFit(voom_result.elist, to_r(voom_result.design))
    fit = limma.contrasts_fit(fit, contrasts=to_r(contrast))
    fit = limma.eBayes(fit)
    table = limma.topTable(
        fit,
        coef=1,
        number=len(genes),
        sort_by="none",
        adjust_method="BH",
    )

    # sort.by="none" keeps the input row order
    table = to_pandas(table)[TOP_TABLE_COLUMNS]
    table.index = pd.Index([str(g) for g in genes], name="gene")
    table = table.sort_values("P.Value", kind="mergesort")

    priors = {
        "df_prior": float(to_numpy(fit.rx2("df.prior")).ravel()[0]),
        "s2_prior": float(to_numpy(fit.rx2("s2.prior")).ravel()[0]),
    }
    return table, priors


def decide_tests(
    table: pd.DataFrame, fdr: float = DEFAULT_FDR, lfc: float = DEFAULT_LFC
) -> pd.Series:
    """Classify genes as ``up``, ``down`` or ``not_significant``."""
    significant = (table["adj.P.Val"] < fdr) & (table["logFC"].abs() >= lfc)
    status = np.where(
        significant, np.where(table["logFC"] > 0, "up", "down"), "not_significant"
    )
    return pd.Series(status, index=table.index, name="de_status")


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------


class LimmaVoomService:
    """
    Run limma-voom on an AnnData dataset.

    Raw counts are taken from ``X``; effective library sizes from
    ``obs['eff_lib_size']`` when normalisation has been run.
    """

    def __init__(self):
        self.formula_service = DifferentialFormulaService()

    def run(
        self,
        adata: anndata.AnnData,
        formula: str,
        contrast: Tuple[str, str, str],
        fdr: float = DEFAULT_FDR,
        lfc: float = DEFAULT_LFC,
        span: float = VOOM_SPAN,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Test ``level`` against ``reference`` of ``factor`` under ``formula``.

        Args:
            adata: Filtered (and ideally normalised) dataset
            formula: Model formula, e.g. ``"~her2_status"``
            contrast: ``(factor, level, reference)``
            fdr: Adjusted p-value threshold for calling genes
            lfc: Minimum absolute log2 fold change for calling genes
            span: voom lowess span

        Returns:
            Tuple of (adata with results, stats, ir). The top table is stored
            in ``uns['de_results']`` and per-gene columns in ``var``.

        Raises:
            LimmaVoomError: On invalid factors/levels, fewer than two samples
                per group or no residual degrees of freedom
        """
        try:
            if len(contrast) != 3:
                raise LimmaVoomError("contrast must be (factor, level, reference)")
            factor, level, reference = (str(c) for c in contrast)
            metadata = adata.obs

            if factor not in metadata.columns:
                raise LimmaVoomError(
                    f"Factor '{factor}' not found in sample annotation",
                    {"available": list(metadata.columns)},
                )
            group_values = metadata[factor].astype(str)
            group_sizes = group_values.value_counts()
            for name in (level, reference):
                if group_sizes.get(name, 0) < 2:
                    raise LimmaVoomError(
                        f"Group '{name}' of '{factor}' has {int(group_sizes.get(name, 0))} "
                        "samples; at least 2 are needed",
                        {"group_sizes": {k: int(v) for k, v in group_sizes.items()}},
                    )

            logger.info(
                f"Running limma-voom: {level} vs {reference} "
                f"({group_sizes[level]} vs {group_sizes[reference]} samples, "
                f"{adata.n_vars} genes)"
            )

            components = self.formula_service.parse_formula(
                formula, metadata, reference_levels={factor: reference}
            )
            if factor not in components["variable_info"]:
                raise LimmaVoomError(
                    f"Factor '{factor}' is not part of formula '{formula}'"
                )
            design_info = self.formula_service.construct_design_matrix(components, metadata)
            design = design_info["design_matrix"]
            coef_names = design_info["coefficient_names"]
            contrast_vector, contrast_name = self.formula_service.build_contrast(
                coef_names, factor, level, reference
            )

            if design.shape[0] - design.shape[1] < 1:
                raise LimmaVoomError(
                    "No residual degrees of freedom: more coefficients than samples allow",
                    {"n_samples": design.shape[0], "n_coefficients": design.shape[1]},
                )

            counts = np.asarray(adata.X, dtype=np.float64).T
            if "eff_lib_size" in metadata.columns:
                lib_size = metadata["eff_lib_size"].to_numpy(dtype=np.float64)
            else:
                lib_size = counts.sum(axis=0)

            voom_result = voom(counts, design, lib_size=lib_size, span=span)
            table, priors = moderated_t_test(voom_result, contrast_vector, adata.var_names)
            table["de_status"] = decide_tests(table, fdr=fdr, lfc=lfc)
            for column in ("gene_name", "Hugo_Symbol", "gene_id"):
                if column in adata.var.columns:
                    table.insert(0, column, adata.var.loc[table.index, column].astype(str))
                    break

            result = adata.copy()
            result.layers["voom_E"] = voom_result.E.T
            result.layers["voom_weights"] = voom_result.weights.T
            aligned = table.reindex(result.var_names)
            for column in ("logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "de_status"):
                result.var[column] = aligned[column].to_numpy()
            result.uns["de_results"] = table
            result.uns["voom"] = {k: np.asarray(v) for k, v in voom_result.trend.items()}
            result.uns["de_params"] = {
                "formula": components["formula_string"],
                "factor": factor,
                "level": level,
                "reference": reference,
                "contrast_name": contrast_name,
                "fdr": fdr,
                "lfc": lfc,
                "s2_prior": priors["s2_prior"],
                "df_prior": priors["df_prior"],
            }

            status_counts = table["de_status"].value_counts()
            stats_dict = {
                "method": "limma-voom",
                "formula": components["formula_string"],
                "contrast": contrast_name,
                "group_sizes": {level: int(group_sizes[level]), reference: int(group_sizes[reference])},
                "n_genes_tested": int(len(table)),
                "n_up": int(status_counts.get("up", 0)),
                "n_down": int(status_counts.get("down", 0)),
                "n_not_significant": int(status_counts.get("not_significant", 0)),
                "fdr": fdr,
                "lfc": lfc,
                "df_prior": priors["df_prior"],
                "s2_prior": priors["s2_prior"],
                "top_genes": table.index[:10].tolist(),
            }
            logger.info(
                f"limma-voom {contrast_name}: {stats_dict['n_up']} up, "
                f"{stats_dict['n_down']} down at FDR {fdr}"
            )

            ir = self._create_ir(formula, factor, level, reference, fdr, lfc, span)
            return result, stats_dict, ir

        except Exception as e:
            if isinstance(e, (LimmaVoomError, RBackendError)):
                raise
            if isinstance(e, Her2SeqError):
                raise LimmaVoomError(e.message, e.details) from e
            logger.exception(f"Error running limma-voom: {e}")
            raise LimmaVoomError(f"limma-voom failed: {str(e)}") from e

    def _create_ir(
        self,
        formula: str,
        factor: str,
        level: str,
        reference: str,
        fdr: float,
        lfc: float,
        span: float,
    ) -> AnalysisStep:
        return AnalysisStep(
            operation="limma.voom_eBayes",
            tool_name="LimmaVoomService.run",
            description=(
                f"Differential expression of HER2 {level} versus {reference} tumours: "
                "voom precision weights, gene-wise weighted linear models and "
                "empirical Bayes moderated t-statistics, with Benjamini-Hochberg FDR."
            ),
            library="limma",
            code_template="""adata, de_stats, _ = LimmaVoomService().run(
    adata,
    formula={{ formula | pprint }},
    contrast=({{ factor | pprint }}, {{ level | pprint }}, {{ reference | pprint }}),
    fdr={{ fdr }},
    lfc={{ lfc }},
    span={{ span }},
)
print(f"{de_stats['n_up']} up, {de_stats['n_down']} down")
adata.uns["de_results"].head(20)
""",
            imports=["from her2seq.services.analysis.limma_voom_service import LimmaVoomService"],
            parameters={
                "formula": formula,
                "factor": factor,
                "level": level,
                "reference": reference,
                "fdr": fdr,
                "lfc": lfc,
                "span": span,
            },
            parameter_schema={
                "fdr": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_FDR,
                    required=False,
                    validation_rule="0 < fdr < 1",
                    description="Adjusted p-value threshold",
                ),
                "lfc": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_LFC,
                    required=False,
                    validation_rule="lfc >= 0",
                    description="Minimum absolute log2 fold change",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata"],
        )
