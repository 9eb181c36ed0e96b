"""
Bulk RNA-seq count adapter.

Builds the in-memory dataset of the workflow: an AnnData object with samples
as observations and genes as variables. Raw counts live in ``X``, the
clinical annotation in ``obs`` and gene annotation in ``var``. Analysis
results are added later by the services (``layers``, ``obsm``, ``uns``).
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import anndata
import numpy as np
import pandas as pd

from her2seq.core.exceptions import ValidationError
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)


class BulkCountsAdapter:
    """
    Convert count tables to AnnData and back.

    Expression tables follow the genomics convention (genes as rows, samples
    as columns) and are transposed on the way in.
    """

    def __init__(self, name: Optional[str] = None):
        self.name = name or self.__class__.__name__

    def from_counts(
        self,
        counts: pd.DataFrame,
        clinical: Optional[pd.DataFrame] = None,
        gene_info: Optional[pd.DataFrame] = None,
    ) -> anndata.AnnData:
        """
        Create an AnnData object from a genes × samples count matrix.

        Args:
            counts: Raw counts, genes as rows and samples as columns
            clinical: Optional sample annotation indexed by sample ID
            gene_info: Optional gene annotation indexed by gene ID

        Returns:
            anndata.AnnData: samples × genes dataset

        Raises:
            ValidationError: If the counts are not a valid count matrix
        """
        self._validate_counts(counts)

        X = counts.T.to_numpy(dtype=np.float64)
        sample_ids = counts.columns.astype(str)
        gene_ids = counts.index.astype(str)

        obs = pd.DataFrame(index=pd.Index(sample_ids, name="sample_id"))
        if clinical is not None:
            clinical = clinical.copy()
            clinical.index = clinical.index.astype(str)
            if clinical.index.has_duplicates:
                raise ValidationError(
                    "Clinical table has duplicated sample IDs",
                    {"duplicates": clinical.index[clinical.index.duplicated()].tolist()[:10]},
                )
            missing = sample_ids.difference(clinical.index)
            if len(missing) > 0:
                logger.warning(
                    f"{len(missing)} samples have no clinical annotation; "
                    "their fields are left empty"
                )
            obs = clinical.reindex(sample_ids)
            obs.index.name = "sample_id"

        var = pd.DataFrame(index=pd.Index(gene_ids, name="gene_id"))
        if gene_info is not None:
            gene_info = gene_info.copy()
            gene_info.index = gene_info.index.astype(str)
            gene_info = gene_info[~gene_info.index.duplicated()]
            var = gene_info.reindex(gene_ids)
            var.index.name = "gene_id"

        adata = anndata.AnnData(X=X, obs=obs, var=var)
        adata.obs["lib_size_raw"] = X.sum(axis=1)
        adata.var["total_counts"] = X.sum(axis=0)

        logger.info(f"Created dataset: {adata.n_obs} samples × {adata.n_vars} genes")
        return adata

    def to_count_frame(
        self, adata: anndata.AnnData, layer: Optional[str] = None
    ) -> pd.DataFrame:
        """Return ``X`` (or a layer) as a genes × samples DataFrame."""
        matrix = adata.layers[layer] if layer else adata.X
        if hasattr(matrix, "toarray"):
            matrix = matrix.toarray()
        return pd.DataFrame(
            np.asarray(matrix).T,
            index=adata.var_names.copy(),
            columns=adata.obs_names.copy(),
        )

    def save_h5ad(self, adata: anndata.AnnData, path: Union[str, Path]) -> Path:
        """
        Write the dataset to H5AD.

        DataFrames stored in ``uns`` are written as column dictionaries and
        mixed-type annotation columns as categoricals, since HDF5 needs one
        dtype per column.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        out = adata.copy()
        out.obs = _h5ad_safe_frame(out.obs)
        out.var = _h5ad_safe_frame(out.var)
        out.uns = {key: _h5ad_safe_value(value) for key, value in out.uns.items()}
        out.uns = {key: value for key, value in out.uns.items() if value is not None}

        out.write_h5ad(path)
        logger.info(f"Saved dataset to {path}")
        return path

    def load_h5ad(self, path: Union[str, Path]) -> anndata.AnnData:
        """Read a dataset written by ``save_h5ad``."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"H5AD file not found: {path}")
        adata = anndata.read_h5ad(path)
        logger.info(
            f"Loaded H5AD data from {path}: {adata.n_obs} samples × {adata.n_vars} genes"
        )
        return adata

    def get_quality_metrics(self, adata: anndata.AnnData) -> Dict[str, Any]:
        """Basic library-size and detection metrics."""
        X = np.asarray(adata.X)
        lib_sizes = X.sum(axis=1)
        return {
            "n_samples": int(adata.n_obs),
            "n_genes": int(adata.n_vars),
            "total_counts": float(X.sum()),
            "median_lib_size": float(np.median(lib_sizes)) if X.size else 0.0,
            "min_lib_size": float(lib_sizes.min()) if X.size else 0.0,
            "zero_genes": int((X.sum(axis=0) == 0).sum()),
        }

    def _validate_counts(self, counts: pd.DataFrame) -> None:
        if not isinstance(counts, pd.DataFrame):
            raise ValidationError(
                f"Counts must be a pandas DataFrame, got {type(counts).__name__}"
            )
        if counts.shape[0] == 0 or counts.shape[1] == 0:
            raise ValidationError(
                "Count matrix is empty", {"shape": list(counts.shape)}
            )
        non_numeric = [
            c for c in counts.columns if not pd.api.types.is_numeric_dtype(counts[c])
        ]
        if non_numeric:
            raise ValidationError(
                f"Count matrix has {len(non_numeric)} non-numeric sample columns",
                {"columns": [str(c) for c in non_numeric[:10]]},
            )
        if counts.columns.has_duplicates:
            raise ValidationError(
                "Sample IDs must be unique",
                {"duplicates": counts.columns[counts.columns.duplicated()].tolist()[:10]},
            )
        values = counts.to_numpy(dtype=np.float64)
        if np.isnan(values).any():
            raise ValidationError(
                "Count matrix contains missing values",
                {"n_missing": int(np.isnan(values).sum())},
            )
        if (values < 0).any():
            raise ValidationError(
                "Count matrix contains negative values",
                {"n_negative": int((values < 0).sum())},
            )


def _h5ad_safe_frame(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    for column in df.columns:
        series = df[column]
        if series.dtype == object:
            df[column] = series.map(lambda v: v if pd.isna(v) else str(v)).astype(
                "category"
            )
    return df


def _h5ad_safe_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, pd.DataFrame):
        frame = value.reset_index()
        return {
            str(column): _h5ad_safe_array(frame[column]) for column in frame.columns
        }
    if isinstance(value, pd.Series):
        return _h5ad_safe_array(value)
    if isinstance(value, dict):
        cleaned = {str(k): _h5ad_safe_value(v) for k, v in value.items()}
        return {k: v for k, v in cleaned.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return _h5ad_safe_array(pd.Series(list(value)))
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


def _h5ad_safe_array(series: pd.Series) -> np.ndarray:
    if pd.api.types.is_bool_dtype(series) or pd.api.types.is_numeric_dtype(series):
        return series.to_numpy()
    return series.astype(str).to_numpy()
