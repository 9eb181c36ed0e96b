"""
Access to the Bioconductor packages doing the count statistics.

Filtering, TMM normalisation and limma-voom are delegated to edgeR and limma
through rpy2. rpy2 is imported lazily, so loading, annotation and plotting
keep working on machines without an R installation.
"""

import importlib.util
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from her2seq.core.exceptions import RBackendError
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

R_PACKAGES = ("limma", "edgeR")


def check_r_availability(packages: Sequence[str] = R_PACKAGES) -> Dict[str, Any]:
    """
    Check if rpy2 and the R packages are available.

    Returns:
        Dictionary with availability status and the missing packages
    """
    try:
        rpy2_available = importlib.util.find_spec("rpy2") is not None
        missing = list(packages)
        if rpy2_available:
            from rpy2.robjects.packages import isinstalled

            missing = [name for name in packages if not isinstalled(name)]

        return {
            "rpy2_available": rpy2_available,
            "missing_packages": missing,
            "ready_for_r": rpy2_available and not missing,
            "installation_needed": not rpy2_available or bool(missing),
        }

    except Exception as e:
        # rpy2 is importable but R itself cannot be started
        return {
            "rpy2_available": False,
            "missing_packages": list(packages),
            "ready_for_r": False,
            "installation_needed": True,
            "error": str(e),
        }


def get_installation_message(info: Optional[Dict[str, Any]] = None) -> str:
    """Instructions for installing whatever ``check_r_availability`` reports missing."""
    info = info or check_r_availability()
    if info.get("error"):
        return (
            f"R could not be started ({info['error']}). Install R and make sure "
            "R_HOME points to it."
        )
    if not info["rpy2_available"]:
        return "rpy2 is not installed. Install it with: pip install her2seq[r]"
    packages = ", ".join(f'"{name}"' for name in info["missing_packages"])
    return (
        f"Missing R packages: {', '.join(info['missing_packages'])}. Install them in R "
        f"with: BiocManager::install(c({packages}))"
    )


_PACKAGES: Dict[str, Any] = {}


def import_r_package(name: str):
    """
    Import an R package with ``importr``, once per process.

    Raises:
        RBackendError: If rpy2, R or the package is not available
    """
    if name in _PACKAGES:
        return _PACKAGES[name]

    info = check_r_availability((name,))
    if not info["ready_for_r"]:
        raise RBackendError(
            f"R package '{name}' is not available",
            {"suggestions": [get_installation_message(info)], **info},
        )

    from rpy2.robjects.packages import importr

    logger.debug(f"Loading R package {name}")
    _PACKAGES[name] = importr(name)
    return _PACKAGES[name]


def to_r(values):
    """Convert a numpy array (matrix, numeric, logical or string vector) to R."""
    import rpy2.robjects as ro
    from rpy2.robjects import numpy2ri
    from rpy2.robjects.conversion import localconverter

    values = np.asarray(values)
    if values.dtype.kind in "iuf":
        values = np.ascontiguousarray(values, dtype=np.float64)
    elif values.dtype.kind not in "b":
        values = values.astype(str)
    with localconverter(ro.default_converter + numpy2ri.converter) as cv:
        return cv.py2rpy(values)


def to_r_factor(values: Sequence[Any]):
    """Convert labels to an R factor with levels in first-seen order."""
    import rpy2.robjects as ro

    labels = [str(v) for v in values]
    levels = list(dict.fromkeys(labels))
    return ro.FactorVector(ro.StrVector(labels), levels=ro.StrVector(levels))


def to_numpy(obj) -> np.ndarray:
    """Convert an R vector or matrix to numpy, keeping the matrix shape."""
    import rpy2.robjects as ro
    from rpy2.robjects import numpy2ri
    from rpy2.robjects.conversion import localconverter

    with localconverter(ro.default_converter + numpy2ri.converter) as cv:
        values = np.asarray(cv.rpy2py(obj))
    if "dim" in obj.list_attrs():
        dims = tuple(int(d) for d in obj.do_slot("dim"))
        if values.shape != dims:
            # R stores matrices column-major
            values = values.reshape(dims, order="F")
    return values


def to_pandas(obj) -> pd.DataFrame:
    """Convert an R data.frame to pandas, row names becoming the index."""
    import rpy2.robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.conversion import localconverter

    with localconverter(ro.default_converter + pandas2ri.converter) as cv:
        return cv.rpy2py(obj)


def r_null():
    """R ``NULL``, for optional arguments left unset."""
    import rpy2.robjects as ro

    return ro.NULL
