"""Command-line interface for the MHO vs MUO miRNA pipeline."""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Optional

import click

from .config import PipelineConfig
from .errors import MirnaPipelineError
from .geo_loader import GEODatasetLoader, LoaderConfig
from .pipeline import MirnaPipeline
from .report import JOIN_STRATEGY_NOTES
from .targets import (
    CUTOFF_TYPES,
    JOIN_STRATEGIES,
    PREDICTED_TABLES,
    VALIDATED_TABLES,
    AnnotationConfig,
    TargetAnnotator,
)


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Differential expression and target analysis of circulating miRNAs (MHO vs MUO)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("run")
@click.argument("accession")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON config file with one object per stage.",
)
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for downloaded GEO files.",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for tables, figures and the JSON summary.",
)
@click.option("--no-filter", is_flag=True, help="Keep all probes, not only mature miRNAs (MIMAT).")
@click.option("--reference-group", help="Group label used as the reference (default MHO).")
@click.option("--test-group", help="Group label compared against the reference (default MUO).")
@click.option("--group-field", help="Sample attribute holding the group label.")
@click.option("--pvalue", type=click.FloatRange(0, 1, min_open=True), help="P-value threshold.")
@click.option(
    "--adjust",
    help="Multiple-testing adjustment (none, fdr_bh, bonferroni, ...).",
)
@click.option(
    "--join-strategy",
    type=click.Choice(JOIN_STRATEGIES),
    help="How one target gene is chosen per miRNA in summary tables.",
)
@click.option("--skip-enrichment", is_flag=True, help="Stop after target annotation.")
def run_command(
    accession: str,
    config_path: Optional[Path],
    cache_dir: Optional[Path],
    output_dir: Optional[Path],
    no_filter: bool,
    reference_group: Optional[str],
    test_group: Optional[str],
    group_field: Optional[str],
    pvalue: Optional[float],
    adjust: Optional[str],
    join_strategy: Optional[str],
    skip_enrichment: bool,
) -> None:
    """Run the full pipeline on a GEO series ACCESSION."""
    try:
        config = PipelineConfig.from_json(config_path) if config_path else PipelineConfig()
        apply_overrides(
            config,
            cache_dir=cache_dir,
            output_dir=output_dir,
            no_filter=no_filter,
            reference_group=reference_group,
            test_group=test_group,
            group_field=group_field,
            pvalue=pvalue,
            adjust=adjust,
            join_strategy=join_strategy,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    pipeline = MirnaPipeline(config, skip_enrichment=skip_enrichment)
    try:
        result = pipeline.run(accession)
    except MirnaPipelineError as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc

    click.echo(f"\nWrote {len(result.artifacts)} files:")
    for name, path in sorted(result.artifacts.items()):
        click.echo(f"  {name}: {path}")


def apply_overrides(config: PipelineConfig, **options) -> PipelineConfig:
    """Apply command-line values on top of a loaded config (``None`` means unset)."""
    if options.get("cache_dir") is not None:
        config.loader.cache_dir = Path(options["cache_dir"])
    if options.get("output_dir") is not None:
        config.report.output_dir = Path(options["output_dir"])
    if options.get("no_filter"):
        config.filter.enabled = False

    de_changes = {
        "reference_group": options.get("reference_group"),
        "test_group": options.get("test_group"),
        "group_field": options.get("group_field"),
        "pvalue_threshold": options.get("pvalue"),
        "adjust_method": options.get("adjust"),
    }
    de_changes = {k: v for k, v in de_changes.items() if v is not None}
    if de_changes:
        config.de = replace(config.de, **de_changes)
        config.loader.group_field = config.de.group_field
        if "reference_group" in de_changes:
            config.enrichment.reference_prefix = config.de.reference_group
        if "test_group" in de_changes:
            config.enrichment.sample_prefix = config.de.test_group

    if options.get("join_strategy") is not None:
        config.annotation.join_strategy = options["join_strategy"]
    return config


@cli.command("download")
@click.argument("accession")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("data/geo"),
    show_default=True,
    help="Directory for downloaded GEO files.",
)
@click.option(
    "--matrix-pattern",
    help="Regex selecting series-matrix files when the series bundles several.",
)
@click.option("--group-field", default="group", show_default=True, help="Sample attribute holding the group label.")
def download_command(
    accession: str,
    cache_dir: Path,
    matrix_pattern: Optional[str],
    group_field: str,
) -> None:
    """Download (or reuse from cache) every series matrix of ACCESSION."""
    loader = GEODatasetLoader(LoaderConfig(cache_dir=cache_dir, matrix_pattern=matrix_pattern, group_field=group_field))
    try:
        datasets = loader.load_all(accession)
    except MirnaPipelineError as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc

    for dataset in datasets:
        groups = dataset.group_labels(group_field).value_counts()
        counts = ", ".join(f"{g}={n}" for g, n in groups.items())
        click.echo(
            f"{dataset.accession} {dataset.platform}: "
            f"{dataset.n_features} features x {dataset.n_samples} samples ({counts})"
        )


@cli.command("targets")
@click.argument("mirnas", nargs=-1, required=True)
@click.option("--organism", default="hsa", show_default=True, help="miRBase organism code.")
@click.option(
    "--table",
    type=click.Choice(sorted(VALIDATED_TABLES) + sorted(PREDICTED_TABLES)),
    default="mirtarbase",
    show_default=True,
    help="Interaction table to query.",
)
@click.option("--cutoff", type=float, default=20.0, show_default=True, help="Predicted score cutoff.")
@click.option(
    "--cutoff-type",
    type=click.Choice(CUTOFF_TYPES),
    default="p",
    show_default=True,
    help="'p' keeps the top percentage of rows, 'n' the top number.",
)
@click.option(
    "--join-strategy",
    type=click.Choice(JOIN_STRATEGIES),
    default="first",
    show_default=True,
    help="How one target gene is chosen per miRNA.",
)
def targets_command(
    mirnas: Iterable[str],
    organism: str,
    table: str,
    cutoff: float,
    cutoff_type: str,
    join_strategy: str,
) -> None:
    """Look up target genes of one or more MIRNAS."""
    try:
        config = AnnotationConfig(
            organism=organism,
            cutoff=cutoff,
            cutoff_type=cutoff_type,
            join_strategy=join_strategy,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    annotator = TargetAnnotator(config)
    try:
        if table in VALIDATED_TABLES:
            annotation = annotator.validated(list(mirnas), table=table)
        else:
            annotation = annotator.predicted(list(mirnas), table=table)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="MIRNAS") from exc
    except MirnaPipelineError as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc

    first = annotation.first_target_per_mirna(list(mirnas), strategy=join_strategy)
    click.echo(f"{annotation.database} ({annotation.interaction_type}): {len(annotation)} interactions")
    for mirna, gene in first.items():
        click.echo(f"  {mirna:<22} {gene or '-'}")
    click.echo(f"Note: {JOIN_STRATEGY_NOTES[join_strategy]}")


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
