from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click

from sexdiff.classifier import classify
from sexdiff.config import EnrichmentConfig, PipelineConfig
from sexdiff.io import (
    align_inputs,
    read_annotation,
    read_count_matrix,
    read_gene_sets,
    read_sample_metadata,
    write_results,
)
from sexdiff.pipeline import run_pipeline


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Sex-stratified differential expression and GO enrichment."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command("run")
@click.option(
    "--counts",
    "counts_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Gene x sample raw count table (TSV/CSV, first column gene_id).",
)
@click.option(
    "--metadata",
    "metadata_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Sample metadata with sample_id, age_at_index, gender, sample_type, vital_status.",
)
@click.option(
    "--annotation",
    "annotation_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Two-column gene_id -> gene_name table.",
)
@click.option(
    "--gene-sets",
    "gene_sets_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="GMT file of ontology gene sets (enrichment is skipped without it).",
)
@click.option(
    "--outdir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("results"),
    show_default=True,
    help="Directory for result tables and summary.json.",
)
@click.option(
    "--age-threshold",
    type=float,
    default=50.0,
    show_default=True,
    help="Strata are age <= threshold and age > threshold.",
)
@click.option(
    "--sample-type",
    default="Metastatic",
    show_default=True,
    help="Sample type to analyse; pass an empty string to keep every type.",
)
@click.option(
    "--min-total-count",
    type=click.IntRange(0, None),
    default=0,
    show_default=True,
    help="Skip genes whose total count in a stratum is below this.",
)
@click.option(
    "--min-term-size",
    type=click.IntRange(1, None),
    default=10,
    show_default=True,
    help="Smallest ontology term (genes in the background) to test.",
)
@click.option(
    "--max-term-size",
    type=click.IntRange(1, None),
    default=500,
    show_default=True,
    help="Largest ontology term to test.",
)
@click.option(
    "--threads",
    type=click.IntRange(1, 256),
    default=1,
    show_default=True,
    help="Worker threads for per-gene model fitting.",
)
def run_command(
    counts_path: Path,
    metadata_path: Path,
    annotation_path: Optional[Path],
    gene_sets_path: Optional[Path],
    outdir: Path,
    age_threshold: float,
    sample_type: str,
    min_total_count: int,
    min_term_size: int,
    max_term_size: int,
    threads: int,
) -> None:
    """Run every age stratum and write result tables."""
    try:
        enrichment = EnrichmentConfig(min_term_size=min_term_size, max_term_size=max_term_size)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="'--max-term-size'") from e
    config = PipelineConfig(
        age_threshold=age_threshold,
        sample_type=sample_type or None,
        min_total_count=min_total_count,
        n_threads=threads,
        enrichment=enrichment,
    )

    counts, metadata = align_inputs(
        read_count_matrix(counts_path), read_sample_metadata(metadata_path)
    )
    annotation = read_annotation(annotation_path) if annotation_path else None
    ontology = read_gene_sets(gene_sets_path) if gene_sets_path else None

    result = run_pipeline(counts, metadata, config=config, annotation=annotation, ontology=ontology)
    write_results(result, outdir)

    for name, stratum in result.strata.items():
        report = stratum.report
        click.echo(
            f"{name}: {stratum.cohort.n_samples} samples, {report.n_tested} genes tested, "
            f"{report.n_na_pvalue} NA, {stratum.de_result.n_upregulated} Male, "
            f"{stratum.de_result.n_downregulated} Female, "
            f"{len(stratum.enrichment_up.terms)}/{len(stratum.enrichment_down.terms)} "
            "enriched terms (up/down)"
        )
    for name, reason in result.failures.items():
        click.echo(f"{name}: skipped ({reason})", err=True)

    if not result.strata:
        raise click.ClickException("No stratum could be analysed.")
    click.echo(f"Results written to {outdir}")


@cli.command("classify")
@click.argument("log2fc", type=float)
@click.argument("padj", type=float)
def classify_command(log2fc: float, padj: float) -> None:
    """Print the significance label for LOG2FC and PADJ."""
    click.echo(classify(log2fc, padj))


if __name__ == "__main__":
    cli()
