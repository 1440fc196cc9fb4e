"""Text, FASTA and CSV output for haplomix results."""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from haplomix.types import HaplotypeResult

logger = logging.getLogger(__name__)

FASTA_LINE_WIDTH = 80


def format_report(result: HaplotypeResult) -> str:
    """Human-readable summary of a fit, followed by the consensus FASTA."""
    mass = "\t".join(f"{m:.6g}" for m in result.cardinality_mass[1:])
    lines = [
        f"Results for nHaplotypes = {result.n_haplotypes}",
        f"Number of adjustable parameters: {result.n_parameters}",
        f"Final likelihood: {result.log_likelihood:.6f}",
        f"Dirichlet parameters for errors: {result.alpha0:.6g}\t{result.alpha_e:.6g}\t{mass}",
        f"Error rate: {result.error_rate:.6g}",
        f"Sites: {result.n_sites} read, {result.n_active_sites} active, "
        f"{result.n_variable_sites} variable",
        "Haplotype frequencies",
    ]
    for timepoint, row in enumerate(result.pi_hap):
        lines.append(f"{timepoint}\t" + "\t".join(f"{p:.6f}" for p in row))
    lines.append("Haplotypes")
    lines.append(format_fasta(result).rstrip("\n"))
    return "\n".join(lines) + "\n"


def format_fasta(result: HaplotypeResult, width: int = FASTA_LINE_WIDTH) -> str:
    """Consensus haplotypes as FASTA, wrapped at ``width`` columns."""
    out = []
    for i, seq in enumerate(result.haplotypes):
        out.append(f">Haplo_{i}")
        for start in range(0, len(seq), width):
            out.append(seq[start : start + width])
        if not seq:
            out.append("")
    return "\n".join(out) + "\n"


def write_fasta(result: HaplotypeResult, path: Path) -> None:
    """Write consensus haplotypes to a FASTA file."""
    Path(path).write_text(format_fasta(result))
    logger.info("Wrote %d haplotypes to %s", result.n_haplotypes, path)


def write_frequencies_csv(result: HaplotypeResult, path: Path) -> None:
    """Write per-timepoint haplotype frequencies as CSV."""
    with open(path, "w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(["timepoint"] + [f"Haplo_{h}" for h in range(result.n_haplotypes)])
        for timepoint, row in enumerate(result.pi_hap):
            writer.writerow([timepoint] + [f"{p:.6f}" for p in row])
