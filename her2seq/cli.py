"""
Command-line interface for her2seq.

Commands:
    download  Fetch TCGA counts and clinical data from the GDC
    classify  Derive HER2 status from a clinical table
    run       Run the full differential expression workflow
    version   Show the installed version
"""

import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from her2seq.config.constants import (
    HER2_NEGATIVE,
    HER2_POSITIVE,
    HER2_STATUS_COLUMN,
    HER2_STATUSES,
)
from her2seq.config.settings import get_settings
from her2seq.core.exceptions import Her2SeqError
from her2seq.utils.logger import setup_logging
from her2seq.version import __version__

console = Console()

app = typer.Typer(
    name="her2seq",
    help="HER2-stratified RNA-seq differential expression for TCGA breast cancer",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)


def _fail(error: Her2SeqError) -> None:
    body = f"[bold red]{error.message}[/bold red]"
    suggestions = error.details.get("suggestions") if error.details else None
    if suggestions:
        body += "\n\n" + "\n".join(f"• {s}" for s in suggestions)
    console.print(
        Panel.fit(
            body,
            title=type(error).__name__,
            border_style="red",
            padding=(1, 2),
        )
    )
    raise typer.Exit(code=1)


@app.callback()
def main(
    log_level: str = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR); defaults to HER2SEQ_LOG_LEVEL",
    ),
):
    """her2seq command-line interface."""
    settings = get_settings()
    if settings.config_error:
        console.print(f"[yellow]⚠ {settings.config_error}[/yellow]")
    level_name = (log_level or settings.LOG_LEVEL).upper()
    setup_logging(getattr(logging, level_name, logging.WARNING))


@app.command()
def download(
    project: str = typer.Option(
        None, "--project", "-p", help="GDC project (default: HER2SEQ_GDC_PROJECT)"
    ),
    out_dir: Path = typer.Option(
        Path("data"), "--out-dir", "-o", help="Directory for the CSV tables"
    ),
    cache_dir: Optional[Path] = typer.Option(
        None, "--cache-dir", help="Where raw GDC files are cached"
    ),
    limit: Optional[int] = typer.Option(
        None, "--limit", help="Download at most this many count files"
    ),
):
    """Download STAR gene counts and clinical data from the GDC."""
    from her2seq.services.data_access.gdc_download_service import GDCDownloadService

    try:
        service = GDCDownloadService(cache_dir=cache_dir)
        with console.status("[bold]Downloading from the GDC...[/bold]"):
            counts, clinical, gene_info, stats = service.download_project(
                project=project, limit=limit
            )
    except Her2SeqError as e:
        _fail(e)

    out_dir.mkdir(parents=True, exist_ok=True)
    counts.to_csv(out_dir / "counts.csv")
    clinical.to_csv(out_dir / "clinical.csv")
    gene_info.to_csv(out_dir / "gene_info.csv")

    console.print(
        Panel.fit(
            f"[bold green]✅ Downloaded {stats['project']}[/bold green]\n\n"
            f"{stats['n_samples']} samples × {stats['n_genes']} genes\n"
            f"{stats['n_patients_clinical']} patients with clinical data\n\n"
            f"Written to [bold]{out_dir}[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )


@app.command()
def classify(
    clinical: Path = typer.Option(
        ..., "--clinical", "-c", exists=True, dir_okay=False, help="Clinical table"
    ),
    ihc_column: Optional[str] = typer.Option(None, "--ihc-column", help="IHC score column"),
    fish_column: Optional[str] = typer.Option(None, "--fish-column", help="FISH result column"),
    file_format: str = typer.Option(
        "auto",
        "--format",
        help="csv, tsv, biotab (GDC BCR Biotab) or portal (cBioPortal); auto guesses",
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the annotated table as CSV"
    ),
):
    """Classify patients as HER2 positive, low, negative or unknown."""
    from her2seq.services.metadata.her2_status_service import Her2AnnotationService

    try:
        table = _read_clinical(clinical, file_format)
        annotated, stats, _ = Her2AnnotationService().annotate(
            table, ihc_column=ihc_column, fish_column=fish_column
        )
    except Her2SeqError as e:
        _fail(e)

    summary = Table(title="HER2 status", box=box.ROUNDED)
    summary.add_column("Status", style="bold")
    summary.add_column("Patients", justify="right")
    for status in HER2_STATUSES:
        summary.add_row(status, str(stats["status_counts"][status]))
    console.print(summary)
    console.print(
        f"[dim]IHC column: {stats['ihc_column']} · FISH column: {stats['fish_column']}[/dim]"
    )

    if output:
        columns = ["her2_ihc_score", "her2_fish_positive", HER2_STATUS_COLUMN]
        annotated[columns].to_csv(output)
        console.print(f"[green]Written to {output}[/green]")


def _read_clinical(path: Path, file_format: str) -> pd.DataFrame:
    from her2seq.services.data_access.gdc_download_service import GDCDownloadService
    from her2seq.services.data_access.portal_export_service import PortalExportService

    if file_format == "auto":
        if path.name.startswith("clinical_patient_"):
            file_format = "biotab"
        elif path.name.startswith("data_clinical_"):
            file_format = "portal"
        elif path.suffix.lower() in (".tsv", ".txt"):
            file_format = "tsv"
        else:
            file_format = "csv"

    if file_format == "biotab":
        return GDCDownloadService().read_clinical_biotab(path)
    if file_format == "portal":
        return PortalExportService().read_clinical(path)
    if file_format in ("csv", "tsv"):
        return pd.read_csv(path, sep="," if file_format == "csv" else "\t", index_col=0)
    raise typer.BadParameter(f"Unknown format '{file_format}'", param_hint="--format")


@app.command()
def run(
    source: str = typer.Option("portal", "--source", "-s", help="gdc or portal"),
    study_dir: Optional[Path] = typer.Option(
        None, "--study-dir", help="cBioPortal study export directory (portal source)"
    ),
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", help="Cache directory for GDC downloads (gdc source)"
    ),
    project: Optional[str] = typer.Option(None, "--project", help="GDC project"),
    limit: Optional[int] = typer.Option(
        None, "--limit", help="Download at most this many GDC count files"
    ),
    ihc_column: Optional[str] = typer.Option(None, "--ihc-column", help="IHC score column"),
    fish_column: Optional[str] = typer.Option(None, "--fish-column", help="FISH result column"),
    group: str = typer.Option(HER2_POSITIVE, "--group", "-g", help="HER2 group to test"),
    reference: str = typer.Option(
        HER2_NEGATIVE, "--reference", "-r", help="Reference HER2 group"
    ),
    covariate: Optional[List[str]] = typer.Option(
        None, "--covariate", help="Additional model covariate (repeatable)"
    ),
    filter_method: str = typer.Option(
        "filterByExpr", "--filter", help="filterByExpr or quantile"
    ),
    fdr: float = typer.Option(0.05, "--fdr", help="Adjusted p-value threshold"),
    lfc: float = typer.Option(0.0, "--lfc", help="Minimum absolute log2 fold change"),
    out_dir: Path = typer.Option(
        None, "--out-dir", "-o", help="Output directory (default: HER2SEQ_RESULTS_DIR)"
    ),
    notebook: bool = typer.Option(
        True, "--notebook/--no-notebook", help="Export a reproducible notebook"
    ),
):
    """Run the HER2 differential expression workflow end to end."""
    from her2seq.services.workflow.her2_workflow_service import (
        Her2DifferentialExpressionWorkflow,
        Her2WorkflowConfig,
    )

    try:
        config = Her2WorkflowConfig(
            source=source,
            study_dir=study_dir,
            project=project,
            cache_dir=data_dir,
            file_limit=limit,
            ihc_column=ihc_column,
            fish_column=fish_column,
            group=group,
            reference=reference,
            covariates=list(covariate or []),
            filter_method=filter_method,
            fdr=fdr,
            lfc=lfc,
            output_dir=out_dir or get_settings().RESULTS_DIR,
            export_notebook=notebook,
        )
        workflow = Her2DifferentialExpressionWorkflow(config)
        with console.status("[bold]Running HER2 workflow...[/bold]"):
            outputs = workflow.run()
    except Her2SeqError as e:
        _fail(e)

    summary = workflow.summary()
    sizes = ", ".join(f"{k}: {v}" for k, v in summary.get("group_sizes", {}).items())
    console.print(
        Panel.fit(
            f"[bold green]✅ {summary.get('contrast', '')}[/bold green]\n\n"
            f"Samples: {sizes}\n"
            f"Genes tested: {summary.get('n_genes', '?')}\n"
            f"Up: {summary.get('n_up', 0)} · Down: {summary.get('n_down', 0)} "
            f"(FDR < {fdr})\n"
            f"Top genes: {', '.join(summary.get('top_genes', [])[:5])}",
            border_style="green",
            padding=(1, 2),
        )
    )

    table = Table(title="Outputs", box=box.SIMPLE)
    table.add_column("Output", style="bold")
    table.add_column("Path")
    for name, path in outputs.items():
        table.add_row(name, str(path))
    console.print(table)


@app.command()
def version():
    """Show the her2seq version."""
    console.print(f"her2seq version {__version__}")


if __name__ == "__main__":
    app()
