"""
Analysis constants shared across services.

Defaults mirror the values used by the edgeR / limma / tidybulk functions the
workflow follows, so results stay comparable with the R tutorials.
"""

# filterByExpr defaults (edgeR)
FILTER_MIN_COUNT = 10
FILTER_MIN_TOTAL_COUNT = 15
FILTER_LARGE_N = 10
FILTER_MIN_PROP = 0.7

# TMM defaults (edgeR calcNormFactors)
TMM_LOGRATIO_TRIM = 0.3
TMM_SUM_TRIM = 0.05

# cpm(log=TRUE) prior count
LOGCPM_PRIOR_COUNT = 2.0

# voom lowess span
VOOM_SPAN = 0.5

# PCA (tidybulk reduce_dimensions)
PCA_TOP_GENES = 500
PCA_COMPONENTS = 2

# Differential expression
DEFAULT_FDR = 0.05
DEFAULT_LFC = 0.0

# HER2 groups
HER2_POSITIVE = "positive"
HER2_LOW = "low"
HER2_NEGATIVE = "negative"
HER2_UNKNOWN = "unknown"
HER2_STATUSES = (HER2_POSITIVE, HER2_LOW, HER2_NEGATIVE, HER2_UNKNOWN)
HER2_STATUS_COLUMN = "her2_status"

# Clinical column names as they appear in the supported sources, in order of
# preference. GDC BCR Biotab names first, then cBioPortal export names.
IHC_SCORE_COLUMNS = (
    "her2_ihc_score",
    "her2_immunohistochemistry_level_result",
    "HER2_IHC_SCORE",
    "IHC_HER2_SCORE",
)
FISH_STATUS_COLUMNS = (
    "her2_fish_status",
    "HER2_FISH_STATUS",
    "FISH_HER2",
)

# Tokens used by TCGA clinical files for missing values
MISSING_TOKENS = (
    "[Not Available]",
    "[Not Evaluated]",
    "[Unknown]",
    "[Not Applicable]",
    "[Discrepancy]",
    "[Completed]",
    "[Not Reported]",
    "NA",
    "",
)

# TCGA barcode layout: TCGA-TSS-PARTICIPANT-SAMPLEVIAL-...
TCGA_PATIENT_BARCODE_LENGTH = 12
TCGA_SAMPLE_TYPE_SLICE = slice(13, 15)
PRIMARY_TUMOR_CODE = "01"
TCGA_SAMPLE_TYPES = {
    "01": "Primary Tumor",
    "02": "Recurrent Tumor",
    "06": "Metastatic",
    "11": "Solid Tissue Normal",
}
