"""
Principal component analysis of normalised bulk expression.

Follows tidybulk's ``reduce_dimensions(method = "PCA")``: the most variable
genes on the logCPM scale are selected, optionally standardised, and
projected onto the leading principal components.
"""

from typing import Any, Dict, Optional, Tuple

import anndata
import numpy as np
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from her2seq.config.constants import PCA_COMPONENTS, PCA_TOP_GENES
from her2seq.config.settings import get_settings
from her2seq.core.analysis_ir import AnalysisStep, ParameterSpec
from her2seq.core.exceptions import Her2SeqError
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)


class PCAError(Her2SeqError):
    """Raised when PCA cannot be computed on the data."""

    pass


class PCAService:
    """Run PCA on a normalised layer and store the embedding in ``obsm``."""

    def run_pca(
        self,
        adata: anndata.AnnData,
        layer: str = "logcpm",
        n_components: int = PCA_COMPONENTS,
        top_n_genes: int = PCA_TOP_GENES,
        scale: bool = True,
        random_state: Optional[int] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Compute principal components of the ``top_n_genes`` most variable genes.

        Args:
            adata: Normalised dataset
            layer: Layer to use (``None`` for ``X``)
            n_components: Number of components
            top_n_genes: Number of most variable genes to keep
            scale: Standardise genes to unit variance before PCA
            random_state: Seed for the randomized solver

        Returns:
            Tuple of (adata with ``obsm['X_pca']`` and ``uns['pca']``, stats, ir)

        Raises:
            PCAError: If the layer is missing or the request exceeds the data
        """
        try:
            if layer is not None and layer not in adata.layers:
                raise PCAError(
                    f"Layer '{layer}' not found; run normalisation first",
                    {"available_layers": list(adata.layers.keys())},
                )
            if adata.n_obs < 2:
                raise PCAError(
                    "PCA needs at least 2 samples", {"n_samples": int(adata.n_obs)}
                )

            values = np.asarray(adata.layers[layer] if layer else adata.X, dtype=np.float64)
            variances = values.var(axis=0, ddof=1)
            n_top = min(top_n_genes, adata.n_vars)
            top_idx = np.sort(np.argsort(variances)[::-1][:n_top])
            matrix = values[:, top_idx]

            max_components = min(adata.n_obs, n_top)
            if n_components < 1 or n_components > max_components:
                raise PCAError(
                    f"n_components must be between 1 and {max_components}",
                    {"n_components": n_components, "n_samples": int(adata.n_obs), "n_genes": n_top},
                )

            if scale:
                matrix = StandardScaler(with_mean=True, with_std=True).fit_transform(matrix)
            else:
                matrix = matrix - matrix.mean(axis=0)

            seed = get_settings().RANDOM_SEED if random_state is None else random_state
            pca = PCA(n_components=n_components, random_state=seed)
            coordinates = pca.fit_transform(matrix)

            result = adata.copy()
            result.obsm["X_pca"] = coordinates
            result.uns["pca"] = {
                "variance_ratio": pca.explained_variance_ratio_,
                "variance": pca.explained_variance_,
                "genes": np.asarray(adata.var_names[top_idx], dtype=str),
                "loadings": pca.components_.T,
                "layer": layer or "X",
                "scale": scale,
            }

            variance_pct = [round(float(v) * 100, 2) for v in pca.explained_variance_ratio_]
            stats = {
                "n_components": n_components,
                "n_genes_used": int(n_top),
                "n_samples": int(adata.n_obs),
                "explained_variance_pct": variance_pct,
                "scale": scale,
            }
            logger.info(
                f"PCA on {n_top} genes: "
                + ", ".join(f"PC{i + 1} {v}%" for i, v in enumerate(variance_pct))
            )

            ir = AnalysisStep(
                operation="tidybulk.reduce_dimensions",
                tool_name="PCAService.run_pca",
                description=(
                    f"Principal component analysis of the {top_n_genes} most variable "
                    "genes on the logCPM scale."
                ),
                library="sklearn",
                code_template="""adata, pca_stats, _ = PCAService().run_pca(
    adata,
    layer={{ layer | pprint }},
    n_components={{ n_components }},
    top_n_genes={{ top_n_genes }},
    scale={{ scale }},
    random_state={{ random_state }},
)
print(pca_stats["explained_variance_pct"])
""",
                imports=["from her2seq.services.analysis.pca_service import PCAService"],
                parameters={
                    "layer": layer,
                    "n_components": n_components,
                    "top_n_genes": top_n_genes,
                    "scale": scale,
                    "random_state": seed,
                },
                parameter_schema={
                    "top_n_genes": ParameterSpec(
                        param_type="int",
                        papermill_injectable=True,
                        default_value=PCA_TOP_GENES,
                        required=False,
                        validation_rule="top_n_genes > 1",
                        description="Number of most variable genes used for PCA",
                    ),
                },
                input_entities=["adata"],
                output_entities=["adata"],
                execution_context={"random_state": seed},
            )
            return result, stats, ir

        except Exception as e:
            if isinstance(e, PCAError):
                raise
            logger.exception(f"Error running PCA: {e}")
            raise PCAError(f"PCA failed: {str(e)}") from e
