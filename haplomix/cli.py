"""Command-line interface for haplomix.

Provides commands for:
- infer: Fit haplotypes, frequencies and error model to count files
- simulate: Generate synthetic time-series count files
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import click
import numpy as np

from haplomix import __version__

logger = logging.getLogger("haplomix")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """haplomix: haplotype mixture inference from time-series read counts."""
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# infer
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file_list", type=click.Path(exists=True, dir_okay=False))
@click.option("-n", "--haplotypes", default=2, show_default=True, help="Number of haplotypes.")
@click.option("--max-iterations", default=10, show_default=True, help="Maximum outer iterations.")
@click.option("--tolerance", default=1e-6, show_default=True,
              help="Relative log-likelihood change that stops the outer loop (0 disables).")
@click.option("--prune-threshold", default=0.01, show_default=True,
              help="Posterior mass below which assignments are ignored during fits.")
@click.option("--subsample", nargs=2, type=float, default=(1.0, 1.0), show_default=True,
              help="Fraction of sites for the error-model fit (first, later iterations).")
@click.option("--gamma-cache", default=0, show_default=True,
              help="Scalar log-gamma cache size (0 disables). Only conserved-site "
                   "likelihoods use it; variable sites are evaluated in bulk.")
@click.option("--seed", default=42, show_default=True, help="Random seed.")
@click.option("-o", "--output-dir", type=click.Path(file_okay=False), default=None,
              help="Write report, FASTA, frequencies, JSON and plots here.")
@click.option("--no-plots", is_flag=True, help="Skip figure generation.")
def infer(
    file_list: str,
    haplotypes: int,
    max_iterations: int,
    tolerance: float,
    prune_threshold: float,
    subsample: tuple[float, float],
    gamma_cache: int,
    seed: int,
    output_dir: str | None,
    no_plots: bool,
) -> None:
    """Infer haplotypes from the count files named in FILE_LIST."""
    from haplomix.corpus import Corpus, FitConfig
    from haplomix.report import format_report, write_fasta, write_frequencies_csv

    start = time.time()
    try:
        config = FitConfig(
            n_haplotypes=haplotypes,
            max_iterations=max_iterations,
            convergence_threshold=tolerance,
            prune_threshold=prune_threshold,
            subsample_fractions=tuple(subsample),
            gamma_cache_size=gamma_cache,
            random_seed=seed,
        )
        corpus = Corpus.from_file_list(Path(file_list), config)
    except (ValueError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc

    result = corpus.fit()
    report = format_report(result)
    click.echo(report, nl=False)

    if output_dir is not None:
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        (out / "report.txt").write_text(report)
        write_fasta(result, out / "haplotypes.fasta")
        write_frequencies_csv(result, out / "frequencies.csv")
        result.save(out / "result.json")
        if not no_plots:
            from haplomix.plots import plot_frequency_trajectories, plot_log_likelihood_trace

            plot_frequency_trajectories(result, out / "frequencies.pdf")
            plot_log_likelihood_trace(result, out / "log_likelihood.pdf")
        click.echo(f"Results written to {out}/")

    logger.debug("Execution time: %.2fs", time.time() - start)


# ---------------------------------------------------------------------------
# simulate
# ---------------------------------------------------------------------------


@cli.command()
@click.option("-n", "--haplotypes", default=2, show_default=True, help="Number of haplotypes.")
@click.option("--sites", default=500, show_default=True, help="Number of sites.")
@click.option("--timepoints", default=3, show_default=True, help="Number of timepoints.")
@click.option("--divergence", default=0.02, show_default=True, help="Per-site haplotype divergence.")
@click.option("--coverage", default=200.0, show_default=True, help="Mean read depth.")
@click.option("--error-rate", default=0.005, show_default=True, help="Per-read error rate.")
@click.option("--frequencies", default=None,
              help="Explicit frequencies, timepoints separated by ';' and haplotypes by ',' "
                   "(e.g. '0.9,0.1;0.5,0.5').")
@click.option("--seed", default=42, show_default=True, help="Random seed.")
@click.option("-o", "--output-dir", required=True, type=click.Path(file_okay=False), help="Output directory.")
def simulate(
    haplotypes: int,
    sites: int,
    timepoints: int,
    divergence: float,
    coverage: float,
    error_rate: float,
    frequencies: str | None,
    seed: int,
    output_dir: str,
) -> None:
    """Generate synthetic count files with known ground truth."""
    from haplomix.simulator import SimulationConfig, simulate_time_series, write_count_files

    freqs = None
    if frequencies:
        try:
            freqs = np.array(
                [[float(v) for v in row.split(",")] for row in frequencies.split(";")]
            )
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--frequencies") from exc

    config = SimulationConfig(
        n_haplotypes=haplotypes,
        n_sites=sites,
        n_timepoints=timepoints,
        divergence=divergence,
        frequencies=freqs,
        coverage=coverage,
        error_rate=error_rate,
        random_seed=seed,
    )
    logger.info(
        "Simulating %d haplotypes over %d sites and %d timepoints",
        haplotypes, sites, timepoints,
    )
    try:
        records, truth = simulate_time_series(config)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    out = Path(output_dir)
    list_path = write_count_files(records, out)
    truth.save(out / "ground_truth.json")

    click.echo(f"Simulated {timepoints} timepoints x {sites} sites -> {list_path}")
    click.echo(f"  Variable sites: {len(truth.variable_positions)}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
