"""
End-to-end HER2 differential expression workflow.

Runs the analysis in a single linear pass:

    load -> annotate -> preprocess -> explore -> test -> report

Each step delegates to a service, records its statistics and AnalysisStep in
the provenance tracker, and keeps the intermediate objects on the workflow
instance so the steps can also be run one at a time from a notebook.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import anndata
import pandas as pd
import plotly.graph_objects as go

from her2seq.config.constants import (
    DEFAULT_FDR,
    DEFAULT_LFC,
    FILTER_MIN_COUNT,
    HER2_NEGATIVE,
    HER2_POSITIVE,
    HER2_STATUS_COLUMN,
    HER2_STATUSES,
    PCA_TOP_GENES,
)
from her2seq.config.settings import get_settings
from her2seq.core.adapters import BulkCountsAdapter
from her2seq.core.exceptions import Her2SeqError
from her2seq.core.notebook_exporter import NotebookExporter
from her2seq.core.provenance import ProvenanceTracker
from her2seq.services.analysis.differential_formula_service import (
    DifferentialFormulaService,
)
from her2seq.services.analysis.limma_voom_service import LimmaVoomService
from her2seq.services.analysis.pca_service import PCAService
from her2seq.services.analysis.preprocessing_service import PreprocessingService
from her2seq.services.data_access.gdc_download_service import GDCDownloadService
from her2seq.services.data_access.portal_export_service import (
    DEFAULT_EXPRESSION_FILE,
    PortalExportService,
)
from her2seq.services.metadata.her2_status_service import Her2AnnotationService
from her2seq.services.visualization.bulk_visualization_service import (
    BulkVisualizationService,
)
from her2seq.utils.logger import get_logger

logger = get_logger(__name__)

AGENT = "her2_workflow"
SOURCES = ("gdc", "portal")
FILTER_METHODS = ("filterByExpr", "quantile")
SYMBOL_COLUMNS = {"gdc": "gene_name", "portal": "Hugo_Symbol"}


class WorkflowError(Her2SeqError):
    """Raised when a workflow step is run out of order or misconfigured."""

    pass


@dataclass
class Her2WorkflowConfig:
    """
    Settings of one workflow run.

    ``group`` is tested against ``reference``; both are HER2 statuses.
    """

    source: str = "portal"
    study_dir: Optional[Path] = None
    expression_file: str = DEFAULT_EXPRESSION_FILE
    project: Optional[str] = None
    cache_dir: Optional[Path] = None
    file_limit: Optional[int] = None
    ihc_column: Optional[str] = None
    fish_column: Optional[str] = None
    group: str = HER2_POSITIVE
    reference: str = HER2_NEGATIVE
    covariates: List[str] = field(default_factory=list)
    filter_method: str = "filterByExpr"
    min_count: float = FILTER_MIN_COUNT
    mean_quantile: float = 0.2
    norm_method: str = "TMM"
    pca_top_genes: int = PCA_TOP_GENES
    fdr: float = DEFAULT_FDR
    lfc: float = DEFAULT_LFC
    output_dir: Path = field(default_factory=lambda: get_settings().RESULTS_DIR)
    export_notebook: bool = True

    def __post_init__(self):
        if self.source not in SOURCES:
            raise WorkflowError(
                f"Unknown source '{self.source}'", {"valid": list(SOURCES)}
            )
        if self.source == "portal" and self.study_dir is None:
            raise WorkflowError("The portal source needs study_dir")
        if self.filter_method not in FILTER_METHODS:
            raise WorkflowError(
                f"Unknown filter method '{self.filter_method}'",
                {"valid": list(FILTER_METHODS)},
            )
        for status in (self.group, self.reference):
            if status not in HER2_STATUSES:
                raise WorkflowError(
                    f"Unknown HER2 status '{status}'", {"valid": list(HER2_STATUSES)}
                )
        if self.group == self.reference:
            raise WorkflowError("group and reference must differ")
        self.output_dir = Path(self.output_dir)
        if self.study_dir is not None:
            self.study_dir = Path(self.study_dir)

    @property
    def formula(self) -> str:
        return "~" + " + ".join([HER2_STATUS_COLUMN] + list(self.covariates))

    def to_dict(self) -> Dict[str, Any]:
        return {
            k: str(v) if isinstance(v, Path) else v for k, v in asdict(self).items()
        }


class Her2DifferentialExpressionWorkflow:
    """
    HER2 group comparison on TCGA-BRCA RNA-seq counts.

    Example:
        config = Her2WorkflowConfig(source="portal", study_dir="brca_tcga")
        workflow = Her2DifferentialExpressionWorkflow(config)
        outputs = workflow.run()
    """

    def __init__(
        self,
        config: Her2WorkflowConfig,
        provenance: Optional[ProvenanceTracker] = None,
        gdc_service: Optional[GDCDownloadService] = None,
    ):
        self.config = config
        self.provenance = provenance or ProvenanceTracker()
        self.gdc_service = gdc_service
        self.portal_service = PortalExportService()
        self.her2_service = Her2AnnotationService()
        self.adapter = BulkCountsAdapter()
        self.preprocessing_service = PreprocessingService()
        self.pca_service = PCAService()
        self.formula_service = DifferentialFormulaService()
        self.limma_service = LimmaVoomService()
        self.visualization_service = BulkVisualizationService()

        self.counts: Optional[pd.DataFrame] = None
        self.clinical: Optional[pd.DataFrame] = None
        self.gene_info: Optional[pd.DataFrame] = None
        self.adata: Optional[anndata.AnnData] = None
        self.figures: Dict[str, go.Figure] = {}
        self.stats: Dict[str, Dict[str, Any]] = {}

    def _record(self, step: str, result: Tuple, parameters: Dict[str, Any]):
        *payload, stats, ir = result
        self.stats[step] = stats
        self.provenance.log_step(
            tool_name=ir.tool_name, agent=AGENT, parameters=parameters, stats=stats, ir=ir
        )
        return payload[0] if len(payload) == 1 else tuple(payload)

    def _require(self, attribute: str, step: str):
        if getattr(self, attribute) is None:
            raise WorkflowError(f"Run {step}() first")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def load(self) -> "Her2DifferentialExpressionWorkflow":
        """Read counts and clinical data from the configured source."""
        config = self.config
        logger.info(f"Loading data from {config.source}")
        if config.source == "gdc":
            service = self.gdc_service or GDCDownloadService(cache_dir=config.cache_dir)
            self.gdc_service = service
            project = config.project or get_settings().GDC_PROJECT
            counts, clinical, gene_info, stats = service.download_project(
                project=project, limit=config.file_limit
            )
            ir = service.create_download_ir(project)
            parameters = {"project": project, "limit": config.file_limit}
        else:
            counts, clinical, gene_info, stats = self.portal_service.load_study(
                config.study_dir, expression_file=config.expression_file
            )
            ir = self.portal_service.create_load_ir(
                config.study_dir, expression_file=config.expression_file
            )
            parameters = {"study_dir": str(config.study_dir)}

        self.counts, self.clinical, self.gene_info = self._record(
            "load", (counts, clinical, gene_info, stats, ir), parameters
        )
        return self

    def annotate(self) -> "Her2DifferentialExpressionWorkflow":
        """Classify HER2 status, join samples to patients and keep the two groups."""
        self._require("counts", "load")
        config = self.config

        self.clinical = self._record(
            "annotate",
            self.her2_service.annotate(
                self.clinical, ihc_column=config.ihc_column, fish_column=config.fish_column
            ),
            {"ihc_column": config.ihc_column, "fish_column": config.fish_column},
        )
        counts, samples = self._record(
            "join_samples",
            self.her2_service.join_samples(self.counts, self.clinical),
            {"primary_tumor_only": True, "one_sample_per_patient": True},
        )
        adata = self.adapter.from_counts(counts, samples, self.gene_info)
        self.adata = self._record(
            "select_groups",
            self.her2_service.select_groups(adata, [config.group, config.reference]),
            {"groups": [config.group, config.reference]},
        )
        return self

    def preprocess(self) -> "Her2DifferentialExpressionWorkflow":
        """Aggregate duplicate symbols, filter lowly expressed genes and normalise."""
        self._require("adata", "annotate")
        config = self.config

        symbol_column = SYMBOL_COLUMNS[config.source]
        self.adata = self._record(
            "aggregate_genes",
            self.preprocessing_service.aggregate_genes(self.adata, symbol_column),
            {"symbol_column": symbol_column},
        )
        if config.filter_method == "filterByExpr":
            self.adata = self._record(
                "filter",
                self.preprocessing_service.filter_by_expr(
                    self.adata, group_key=HER2_STATUS_COLUMN, min_count=config.min_count
                ),
                {"group_key": HER2_STATUS_COLUMN, "min_count": config.min_count},
            )
        else:
            self.adata = self._record(
                "filter",
                self.preprocessing_service.filter_by_quantile(
                    self.adata, mean_quantile=config.mean_quantile
                ),
                {"mean_quantile": config.mean_quantile},
            )
        self.adata = self._record(
            "normalize",
            self.preprocessing_service.normalize(self.adata, method=config.norm_method),
            {"method": config.norm_method},
        )
        return self

    def explore(self) -> "Her2DifferentialExpressionWorkflow":
        """PCA and library diagnostics."""
        self._require("adata", "annotate")
        if "logcpm" not in self.adata.layers:
            raise WorkflowError("Run preprocess() first")

        self.adata = self._record(
            "pca",
            self.pca_service.run_pca(self.adata, top_n_genes=self.config.pca_top_genes),
            {"top_n_genes": self.config.pca_top_genes},
        )
        viz = self.visualization_service
        self.figures["density"] = self._record(
            "plot_density",
            viz.create_density_plot(self.adata, color_by=HER2_STATUS_COLUMN),
            {"color_by": HER2_STATUS_COLUMN},
        )
        self.figures["rle"] = self._record(
            "plot_rle",
            viz.create_rle_plot(self.adata, color_by=HER2_STATUS_COLUMN),
            {"color_by": HER2_STATUS_COLUMN},
        )
        self.figures["pca"] = self._record(
            "plot_pca",
            viz.create_pca_plot(self.adata, color_by=HER2_STATUS_COLUMN),
            {"color_by": HER2_STATUS_COLUMN},
        )
        return self

    def test(self) -> "Her2DifferentialExpressionWorkflow":
        """limma-voom test of ``group`` against ``reference``."""
        self._require("adata", "annotate")
        config = self.config
        contrast = (HER2_STATUS_COLUMN, config.group, config.reference)

        if config.covariates:
            self.adata = self._record(
                "prepare_covariates",
                self.formula_service.prepare_covariates(self.adata, config.covariates),
                {"covariates": list(config.covariates)},
            )
        self.adata = self._record(
            "limma_voom",
            self.limma_service.run(
                self.adata, config.formula, contrast, fdr=config.fdr, lfc=config.lfc
            ),
            {"formula": config.formula, "contrast": list(contrast), "fdr": config.fdr},
        )
        viz = self.visualization_service
        self.figures["mean_variance"] = self._record(
            "plot_mean_variance", viz.create_mean_variance_plot(self.adata), {}
        )
        self.figures["volcano"] = self._record(
            "plot_volcano",
            viz.create_volcano_plot(
                self.adata, fdr_threshold=config.fdr, lfc_threshold=config.lfc
            ),
            {"fdr_threshold": config.fdr, "lfc_threshold": config.lfc},
        )
        self.figures["ma"] = self._record(
            "plot_ma",
            viz.create_ma_plot(self.adata, fdr_threshold=config.fdr),
            {"fdr_threshold": config.fdr},
        )
        self.figures["top_genes_heatmap"] = self._record(
            "plot_top_genes_heatmap",
            viz.create_top_genes_heatmap(self.adata, group_by=HER2_STATUS_COLUMN),
            {"group_by": HER2_STATUS_COLUMN},
        )
        return self

    def report(self) -> Dict[str, Path]:
        """
        Write results to ``output_dir``.

        Returns:
            Mapping of output name to path
        """
        self._require("adata", "annotate")
        if "de_results" not in self.adata.uns:
            raise WorkflowError("Run test() first")

        out = self.config.output_dir
        out.mkdir(parents=True, exist_ok=True)
        outputs: Dict[str, Path] = {}

        outputs["top_table"] = out / "top_table.csv"
        self.adata.uns["de_results"].to_csv(outputs["top_table"])

        outputs["samples"] = out / "her2_samples.csv"
        self.adata.obs.to_csv(outputs["samples"])

        figure_dir = out / "figures"
        for name, fig in self.figures.items():
            outputs[f"figure_{name}"] = self.visualization_service.save_figure(
                fig, figure_dir / f"{name}.html"
            )[0]

        self.provenance.add_to_anndata(self.adata)
        outputs["dataset"] = self.adapter.save_h5ad(self.adata, out / "dataset.h5ad")
        outputs["provenance"] = self.provenance.save(out / "provenance.json")

        if self.config.export_notebook:
            exporter = NotebookExporter(self.provenance)
            outputs["notebook"] = exporter.export(
                out / "her2_de_workflow.ipynb",
                title=f"HER2 {self.config.group} vs {self.config.reference} tumours",
                description=(
                    "Differential expression between HER2 groups of TCGA breast "
                    "cancer primary tumours with limma-voom."
                ),
            )

        logger.info(f"Wrote {len(outputs)} outputs to {out}")
        return outputs

    def run(self) -> Dict[str, Path]:
        """Run every step in order and write the report."""
        logger.info(f"Starting HER2 workflow: {self.config.to_dict()}")
        self.load().annotate().preprocess().explore().test()
        return self.report()

    def summary(self) -> Dict[str, Any]:
        """Headline numbers of the run so far."""
        summary: Dict[str, Any] = {}
        if "select_groups" in self.stats:
            summary["group_sizes"] = self.stats["select_groups"]["group_sizes"]
        if "filter" in self.stats:
            summary["n_genes"] = self.stats["filter"]["n_genes_after"]
        if "pca" in self.stats:
            summary["pca_variance_pct"] = self.stats["pca"]["explained_variance_pct"]
        if "limma_voom" in self.stats:
            de = self.stats["limma_voom"]
            summary.update(
                contrast=de["contrast"],
                n_up=de["n_up"],
                n_down=de["n_down"],
                top_genes=de["top_genes"],
            )
        return summary
