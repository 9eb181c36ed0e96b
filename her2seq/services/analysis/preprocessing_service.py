"""
Count preprocessing for bulk RNA-seq: duplicate aggregation, low-count
filtering and library-size normalisation.

Filtering and normalisation call edgeR (filterByExpr, calcNormFactors, cpm)
through rpy2, so results match the R tutorials this workflow is modelled on.
"""

from typing import Any, Dict, Optional, Sequence, Tuple, Union

import anndata
import numpy as np
import pandas as pd

from her2seq.config.constants import (
    FILTER_LARGE_N,
    FILTER_MIN_COUNT,
    FILTER_MIN_PROP,
    FILTER_MIN_TOTAL_COUNT,
    LOGCPM_PRIOR_COUNT,
    TMM_LOGRATIO_TRIM,
    TMM_SUM_TRIM,
)
from her2seq.core.analysis_ir import AnalysisStep, ParameterSpec
from her2seq.core.exceptions import (
    FilteringError,
    NormalizationError,
    RBackendError,
)
from her2seq.services.analysis.r_backend import (
    import_r_package,
    r_null,
    to_numpy,
    to_r,
    to_r_factor,
)
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

NORM_METHODS = ("TMM", "upperquartile", "none")


class PreprocessingError(FilteringError):
    """Raised when aggregation or filtering of counts fails."""

    pass


# ----------------------------------------------------------------------
# Array-level functions
# ----------------------------------------------------------------------


def aggregate_duplicates(
    counts: pd.DataFrame, gene_symbols: Union[pd.Series, np.ndarray, list]
) -> Tuple[pd.DataFrame, int]:
    """
    Sum the rows of a genes × samples matrix that share a gene symbol.

    Rows without a symbol keep their original row label.

    Returns:
        Tuple of (matrix indexed by symbol in first-seen order, number of rows merged away)
    """
    symbols = _fill_symbols(pd.Series(np.asarray(gene_symbols, dtype=object)), counts.index)
    aggregated = counts.groupby(symbols.to_numpy(), sort=False).sum()
    aggregated.index.name = "gene_symbol"
    n_merged = int(counts.shape[0] - aggregated.shape[0])
    return aggregated, n_merged


def filter_by_expr_mask(
    counts: np.ndarray,
    lib_size: Optional[np.ndarray] = None,
    group: Optional[Sequence[Any]] = None,
    design: Optional[np.ndarray] = None,
    min_count: float = FILTER_MIN_COUNT,
    min_total_count: float = FILTER_MIN_TOTAL_COUNT,
    large_n: int = FILTER_LARGE_N,
    min_prop: float = FILTER_MIN_PROP,
) -> np.ndarray:
    """
    edgeR ``filterByExpr`` on a genes × samples array.

    Returns:
        Boolean keep mask over genes
    """
    edger = import_r_package("edgeR")
    # filterByExpr, calcNormFactors and cpm are S3 generics: dotted argument
    # names must be passed verbatim to reach the default method
    keep = edger.filterByExpr(
        to_r(counts),
        design=to_r(design) if design is not None else r_null(),
        group=to_r_factor(group) if group is not None else r_null(),
        **{
            "lib.size": to_r(lib_size) if lib_size is not None else r_null(),
            "min.count": float(min_count),
            "min.total.count": float(min_total_count),
            "large.n": float(large_n),
            "min.prop": float(min_prop),
        },
    )
    return to_numpy(keep).astype(bool)


def calc_norm_factors(
    counts: np.ndarray,
    lib_size: Optional[np.ndarray] = None,
    method: str = "TMM",
    logratio_trim: float = TMM_LOGRATIO_TRIM,
    sum_trim: float = TMM_SUM_TRIM,
    do_weighting: bool = True,
) -> np.ndarray:
    """
    edgeR ``calcNormFactors`` on a genes × samples array.

    Factors multiply to one.

    Raises:
        NormalizationError: For an unknown method or empty libraries
    """
    if method not in NORM_METHODS:
        raise NormalizationError(
            f"Unknown normalisation method '{method}'", {"valid": list(NORM_METHODS)}
        )
    counts = np.asarray(counts, dtype=np.float64)
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=np.float64)
    if np.any(lib_size <= 0):
        raise NormalizationError(
            "Library sizes must be positive",
            {"empty_samples": np.flatnonzero(lib_size <= 0).tolist()},
        )

    edger = import_r_package("edgeR")
    factors = edger.calcNormFactors(
        to_r(counts),
        method=method,
        logratioTrim=float(logratio_trim),
        sumTrim=float(sum_trim),
        doWeighting=bool(do_weighting),
        **{"lib.size": to_r(lib_size)},
    )
    factors = to_numpy(factors).astype(np.float64)
    if not np.all(np.isfinite(factors)):
        raise NormalizationError(
            f"{method} produced non-finite factors; use TMM instead",
            {"factors": factors.tolist()[:10]},
        )
    return factors


def cpm(
    counts: np.ndarray,
    lib_size: np.ndarray,
    log: bool = False,
    prior_count: float = LOGCPM_PRIOR_COUNT,
) -> np.ndarray:
    """
    edgeR ``cpm`` on a genes × samples array.

    ``lib_size`` is the effective library size (raw size × norm factor).
    With ``log=True`` the prior count is scaled by library size.
    """
    edger = import_r_package("edgeR")
    values = edger.cpm(
        to_r(counts),
        log=bool(log),
        **{"lib.size": to_r(lib_size), "prior.count": float(prior_count)},
    )
    return to_numpy(values).astype(np.float64)


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------


class PreprocessingService:
    """
    AnnData-level preprocessing steps.

    Every public method returns ``(adata, stats, ir)`` and works on a copy.
    """

    def aggregate_genes(
        self, adata: anndata.AnnData, symbol_column: str
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Collapse genes sharing a symbol by summing their counts.

        Raises:
            PreprocessingError: If the symbol column does not exist
        """
        try:
            if symbol_column not in adata.var.columns:
                raise PreprocessingError(
                    f"Gene annotation column '{symbol_column}' not found",
                    {"available": list(adata.var.columns)},
                )
            if adata.layers:
                logger.warning(
                    f"Dropping layers {list(adata.layers.keys())}: they no longer "
                    "match the aggregated counts"
                )

            counts = pd.DataFrame(
                np.asarray(adata.X).T, index=adata.var_names, columns=adata.obs_names
            )
            aggregated, n_merged = aggregate_duplicates(counts, adata.var[symbol_column])

            var = adata.var.copy()
            var["gene_id"] = adata.var_names.astype(str)
            var.index = _fill_symbols(adata.var[symbol_column], adata.var_names)
            var = var.groupby(level=0, sort=False).first().reindex(aggregated.index)
            var = var.drop(columns=[symbol_column, "total_counts"], errors="ignore")
            var["total_counts"] = aggregated.sum(axis=1).to_numpy()

            result = anndata.AnnData(
                X=aggregated.T.to_numpy(dtype=np.float64),
                obs=adata.obs.copy(),
                var=var,
                uns=dict(adata.uns),
            )

            stats = {
                "n_genes_before": int(adata.n_vars),
                "n_genes_after": int(result.n_vars),
                "n_rows_merged": n_merged,
                "symbol_column": symbol_column,
            }
            logger.info(
                f"Aggregated duplicates: {adata.n_vars} → {result.n_vars} genes "
                f"({n_merged} rows merged)"
            )

            ir = AnalysisStep(
                operation="tidybulk.aggregate_duplicates",
                tool_name="PreprocessingService.aggregate_genes",
                description=(
                    "Sum the counts of transcripts mapping to the same gene symbol so "
                    "each gene appears once."
                ),
                library="pandas",
                code_template="""prep = PreprocessingService()
adata, agg_stats, _ = prep.aggregate_genes(adata, symbol_column={{ symbol_column | pprint }})
print(f"{agg_stats['n_rows_merged']} duplicate rows merged, {adata.n_vars} genes left")
""",
                imports=[
                    "from her2seq.services.analysis.preprocessing_service import PreprocessingService"
                ],
                parameters={"symbol_column": symbol_column},
                parameter_schema={},
                input_entities=["adata"],
                output_entities=["adata"],
            )
            return result, stats, ir

        except Exception as e:
            if isinstance(e, PreprocessingError):
                raise
            logger.exception(f"Error aggregating duplicate genes: {e}")
            raise PreprocessingError(f"Duplicate aggregation failed: {str(e)}") from e

    def filter_by_expr(
        self,
        adata: anndata.AnnData,
        group_key: Optional[str] = None,
        design: Optional[Union[pd.DataFrame, np.ndarray]] = None,
        min_count: float = FILTER_MIN_COUNT,
        min_total_count: float = FILTER_MIN_TOTAL_COUNT,
        large_n: int = FILTER_LARGE_N,
        min_prop: float = FILTER_MIN_PROP,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Keep genes with enough counts in enough samples (edgeR filterByExpr).

        The minimum number of samples is the size of the smallest group when
        ``group_key`` is given, otherwise derived from the design's leverage.

        Raises:
            PreprocessingError: If every gene is filtered out
        """
        try:
            group = None
            if group_key is not None:
                if group_key not in adata.obs.columns:
                    raise PreprocessingError(
                        f"Group column '{group_key}' not found",
                        {"available": list(adata.obs.columns)},
                    )
                group = adata.obs[group_key].astype(str).to_numpy()
            design_array = None
            if design is not None:
                design_array = np.asarray(design, dtype=np.float64)

            counts = np.asarray(adata.X, dtype=np.float64).T
            lib_size = counts.sum(axis=0)
            median_lib_size = float(np.median(lib_size))
            if median_lib_size <= 0:
                raise PreprocessingError(
                    "Median library size is zero; cannot compute a CPM cutoff",
                    {"lib_sizes": lib_size.tolist()[:10]},
                )
            cpm_cutoff = min_count / median_lib_size * 1e6

            keep = filter_by_expr_mask(
                counts,
                lib_size=lib_size,
                group=group,
                design=design_array,
                min_count=min_count,
                min_total_count=min_total_count,
                large_n=large_n,
                min_prop=min_prop,
            )

            if not keep.any():
                raise PreprocessingError(
                    "filterByExpr removed every gene",
                    {"cpm_cutoff": cpm_cutoff, "n_genes": int(adata.n_vars)},
                )

            result = adata[:, keep].copy()
            stats = {
                "method": "filterByExpr",
                "n_genes_before": int(adata.n_vars),
                "n_genes_after": int(result.n_vars),
                "n_genes_removed": int((~keep).sum()),
                "cpm_cutoff": cpm_cutoff,
                "median_lib_size": median_lib_size,
            }
            logger.info(
                f"filterByExpr kept {stats['n_genes_after']}/{stats['n_genes_before']} genes "
                f"(CPM cutoff {cpm_cutoff:.3f})"
            )

            ir = AnalysisStep(
                operation="edger.filterByExpr",
                tool_name="PreprocessingService.filter_by_expr",
                description=(
                    "Remove lowly expressed genes: keep genes reaching "
                    "min_count/median(library size) CPM in at least as many samples "
                    "as the smallest group, with a minimum total count."
                ),
                library="edgeR",
                code_template="""adata, filter_stats, _ = prep.filter_by_expr(
    adata,
    group_key={{ group_key | pprint }},
    min_count={{ min_count }},
    min_total_count={{ min_total_count }},
    large_n={{ large_n }},
    min_prop={{ min_prop }},
)
print(f"Kept {filter_stats['n_genes_after']} of {filter_stats['n_genes_before']} genes")
""",
                imports=[],
                parameters={
                    "group_key": group_key,
                    "min_count": min_count,
                    "min_total_count": min_total_count,
                    "large_n": large_n,
                    "min_prop": min_prop,
                },
                parameter_schema={
                    "min_count": ParameterSpec(
                        param_type="float",
                        papermill_injectable=True,
                        default_value=FILTER_MIN_COUNT,
                        required=False,
                        validation_rule="min_count > 0",
                        description="Minimum count in a typical library",
                    ),
                    "min_total_count": ParameterSpec(
                        param_type="float",
                        papermill_injectable=True,
                        default_value=FILTER_MIN_TOTAL_COUNT,
                        required=False,
                        description="Minimum total count over all samples",
                    ),
                },
                input_entities=["adata"],
                output_entities=["adata"],
            )
            return result, stats, ir

        except Exception as e:
            if isinstance(e, (PreprocessingError, RBackendError)):
                raise
            logger.exception(f"Error in filterByExpr: {e}")
            raise PreprocessingError(f"filterByExpr failed: {str(e)}") from e

    def filter_by_quantile(
        self,
        adata: anndata.AnnData,
        mean_quantile: float = 0.2,
        var_quantile: float = 0.0,
        prior_count: float = LOGCPM_PRIOR_COUNT,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Keep genes whose mean logCPM is above the ``mean_quantile`` quantile.

        With ``var_quantile > 0`` genes must also exceed that quantile of the
        logCPM variance.

        Raises:
            PreprocessingError: If quantiles are outside [0, 1) or nothing is kept
        """
        try:
            for name, q in (("mean_quantile", mean_quantile), ("var_quantile", var_quantile)):
                if not 0 <= q < 1:
                    raise PreprocessingError(
                        f"{name} must be in [0, 1), got {q}", {name: q}
                    )

            counts = np.asarray(adata.X, dtype=np.float64).T
            logcpm = cpm(counts, counts.sum(axis=0), log=True, prior_count=prior_count)
            gene_mean = logcpm.mean(axis=1)
            mean_cutoff = float(np.quantile(gene_mean, mean_quantile))
            keep = gene_mean > mean_cutoff if mean_quantile > 0 else np.ones_like(gene_mean, dtype=bool)

            var_cutoff = None
            if var_quantile > 0:
                gene_var = logcpm.var(axis=1, ddof=1) if counts.shape[1] > 1 else np.zeros_like(gene_mean)
                var_cutoff = float(np.quantile(gene_var, var_quantile))
                keep &= gene_var > var_cutoff

            if not keep.any():
                raise PreprocessingError(
                    "Quantile filter removed every gene",
                    {"mean_cutoff": mean_cutoff, "var_cutoff": var_cutoff},
                )

            result = adata[:, keep].copy()
            stats = {
                "method": "quantile",
                "n_genes_before": int(adata.n_vars),
                "n_genes_after": int(result.n_vars),
                "n_genes_removed": int((~keep).sum()),
                "mean_cutoff": mean_cutoff,
                "var_cutoff": var_cutoff,
            }
            logger.info(
                f"Quantile filter kept {stats['n_genes_after']}/{stats['n_genes_before']} genes "
                f"(mean logCPM > {mean_cutoff:.2f})"
            )

            ir = AnalysisStep(
                operation="her2seq.filter_by_quantile",
                tool_name="PreprocessingService.filter_by_quantile",
                description=(
                    "Remove the least expressed genes by dropping those whose mean "
                    "logCPM falls in the lowest quantile."
                ),
                library="edgeR",
                code_template="""adata, filter_stats, _ = prep.filter_by_quantile(
    adata, mean_quantile={{ mean_quantile }}, var_quantile={{ var_quantile }}
)
print(f"Kept {filter_stats['n_genes_after']} of {filter_stats['n_genes_before']} genes")
""",
                imports=[],
                parameters={"mean_quantile": mean_quantile, "var_quantile": var_quantile},
                parameter_schema={
                    "mean_quantile": ParameterSpec(
                        param_type="float",
                        papermill_injectable=True,
                        default_value=0.2,
                        required=False,
                        validation_rule="0 <= mean_quantile < 1",
                        description="Quantile of mean logCPM below which genes are dropped",
                    ),
                },
                input_entities=["adata"],
                output_entities=["adata"],
            )
            return result, stats, ir

        except Exception as e:
            if isinstance(e, (PreprocessingError, RBackendError)):
                raise
            logger.exception(f"Error in quantile filter: {e}")
            raise PreprocessingError(f"Quantile filtering failed: {str(e)}") from e

    def normalize(
        self,
        adata: anndata.AnnData,
        method: str = "TMM",
        prior_count: float = LOGCPM_PRIOR_COUNT,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Compute normalisation factors and CPM / logCPM layers.

        Adds ``obs['lib_size']``, ``obs['norm_factor']``,
        ``obs['eff_lib_size']``, ``layers['cpm']`` and ``layers['logcpm']``.

        Raises:
            NormalizationError: For an unknown method or empty libraries
        """
        try:
            counts = np.asarray(adata.X, dtype=np.float64).T
            lib_size = counts.sum(axis=0)
            factors = calc_norm_factors(counts, lib_size=lib_size, method=method)
            eff_lib = lib_size * factors

            result = adata.copy()
            result.obs["lib_size"] = lib_size
            result.obs["norm_factor"] = factors
            result.obs["eff_lib_size"] = eff_lib
            result.layers["cpm"] = cpm(counts, eff_lib).T
            result.layers["logcpm"] = cpm(counts, eff_lib, log=True, prior_count=prior_count).T
            result.uns["normalization"] = {"method": method, "prior_count": prior_count}

            stats = {
                "method": method,
                "prior_count": prior_count,
                "norm_factor_min": float(factors.min()),
                "norm_factor_max": float(factors.max()),
                "lib_size_min": float(lib_size.min()),
                "lib_size_max": float(lib_size.max()),
            }
            logger.info(
                f"{method} normalisation: factors in "
                f"[{stats['norm_factor_min']:.3f}, {stats['norm_factor_max']:.3f}]"
            )

            ir = AnalysisStep(
                operation="edger.calcNormFactors",
                tool_name="PreprocessingService.normalize",
                description=(
                    "Scale library sizes with trimmed mean of M-values (TMM) factors "
                    "and compute counts per million and log2 CPM with a prior count."
                ),
                library="edgeR",
                code_template="""adata, norm_stats, _ = prep.normalize(
    adata, method={{ method | pprint }}, prior_count={{ prior_count }}
)
adata.obs[["lib_size", "norm_factor"]].describe()
""",
                imports=[],
                parameters={"method": method, "prior_count": prior_count},
                parameter_schema={
                    "method": ParameterSpec(
                        param_type="str",
                        papermill_injectable=True,
                        default_value="TMM",
                        required=False,
                        validation_rule="method in ('TMM', 'upperquartile', 'none')",
                        description="Normalisation method",
                    ),
                },
                input_entities=["adata"],
                output_entities=["adata"],
            )
            return result, stats, ir

        except Exception as e:
            if isinstance(e, (NormalizationError, RBackendError)):
                raise
            logger.exception(f"Error normalising counts: {e}")
            raise NormalizationError(f"Normalisation failed: {str(e)}") from e


def _fill_symbols(symbols: pd.Series, gene_ids: pd.Index) -> pd.Index:
    values = symbols.astype(object).to_numpy()
    ids = gene_ids.astype(str).to_numpy()
    filled = [
        str(ids[i]) if v is None or pd.isna(v) or str(v).strip() == "" else str(v)
        for i, v in enumerate(values)
    ]
    return pd.Index(filled, name="gene_symbol")
