"""
her2seq - HER2-stratified RNA-seq differential expression for TCGA breast cancer.

The package loads TCGA-BRCA expression counts and clinical annotation (from the
GDC API or a static cBioPortal study export), classifies samples by HER2
status, filters and normalises counts, explores them with PCA and tests for
differential expression with limma-voom style moderated linear models.
"""

from her2seq.version import __version__

__all__ = ["__version__"]
