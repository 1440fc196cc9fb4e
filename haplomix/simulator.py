"""Synthetic time-series read-count simulator for haplomix.

Generates strand-resolved base counts for a mixture of haplotypes whose
frequencies change across timepoints, with known ground truth:
- A random template sequence; haplotype 0 is the template and the others
  carry independent substitutions at a controlled divergence
- Per-timepoint haplotype frequencies (explicit or Dirichlet-drawn)
- Poisson read depth, symmetric substitution errors, binomial strand split

All randomness flows through numpy's Generator API for full reproducibility.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np

from haplomix.types import BASES, N_BASES, CountRecord, SimulationGroundTruth
from haplomix.utils import write_count_file, write_file_list

_BASES = np.array(BASES)
_BASE_TO_IDX = {b: i for i, b in enumerate(BASES)}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class SimulationConfig:
    """Configuration for synthetic count generation.

    Attributes:
        n_haplotypes: Number of haplotypes in the mixture.
        n_sites: Number of consecutive sites.
        n_timepoints: Number of sequencing timepoints.
        divergence: Per-site probability that a non-template haplotype
            differs from the template.
        frequencies: Explicit (n_timepoints, n_haplotypes) frequencies. If
            None, each timepoint is drawn from a symmetric Dirichlet(1).
        coverage: Mean read depth per site and timepoint.
        error_rate: Probability a read reports a different base than the
            haplotype it came from.
        strand_bias: Probability a read lies on the forward strand.
        missing_fraction: Fraction of (site, timepoint) pairs with no line
            in the output.
        start_position: Position of the first site.
        random_seed: Seed for the numpy random number generator.
    """

    n_haplotypes: int = 2
    n_sites: int = 500
    n_timepoints: int = 3
    divergence: float = 0.02
    frequencies: np.ndarray | None = None
    coverage: float = 200.0
    error_rate: float = 0.005
    strand_bias: float = 0.5
    missing_fraction: float = 0.0
    start_position: int = 1
    random_seed: int = 42


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _generate_template(length: int, rng: np.random.Generator) -> str:
    """Random ACGT sequence with uniform base composition."""
    return "".join(_BASES[rng.integers(0, N_BASES, size=length)])


def _mutate(template: str, divergence: float, rng: np.random.Generator) -> str:
    """Copy of *template* with each site substituted with prob. *divergence*.

    Substitutions always change the base (uniform among the three
    alternatives).
    """
    seq = list(template)
    for i in np.flatnonzero(rng.random(len(seq)) < divergence):
        new_idx = (_BASE_TO_IDX[seq[i]] + rng.integers(1, N_BASES)) % N_BASES
        seq[i] = _BASES[new_idx]
    return "".join(seq)


def _draw_frequencies(
    config: SimulationConfig, rng: np.random.Generator
) -> np.ndarray:
    if config.frequencies is None:
        return rng.dirichlet(np.ones(config.n_haplotypes), size=config.n_timepoints)
    freqs = np.array(config.frequencies, dtype=np.float64)
    if freqs.shape != (config.n_timepoints, config.n_haplotypes):
        raise ValueError(
            f"frequencies shape {freqs.shape} != "
            f"({config.n_timepoints}, {config.n_haplotypes})"
        )
    if np.any(freqs < 0):
        raise ValueError("frequencies must be non-negative")
    return freqs / freqs.sum(axis=1, keepdims=True)


def _sample_site_counts(
    site_bases: np.ndarray,
    pi_t: np.ndarray,
    config: SimulationConfig,
    rng: np.random.Generator,
) -> np.ndarray:
    """(2, 4) read counts for one site at one timepoint."""
    mixture = np.zeros(N_BASES)
    np.add.at(mixture, site_bases, pi_t)
    e = config.error_rate
    observed = mixture * (1.0 - e) + (1.0 - mixture) * e / (N_BASES - 1)
    depth = rng.poisson(config.coverage)
    counts = rng.multinomial(depth, observed / observed.sum())
    forward = rng.binomial(counts, config.strand_bias)
    return np.stack([forward, counts - forward])


# ---------------------------------------------------------------------------
# Main simulation entry point
# ---------------------------------------------------------------------------


def simulate_time_series(
    config: SimulationConfig,
) -> tuple[list[list[CountRecord]], SimulationGroundTruth]:
    """Generate per-timepoint count records with ground truth.

    Returns:
        A tuple ``(records_by_timepoint, truth)`` where
        ``records_by_timepoint[t]`` lists the CountRecords of timepoint
        ``t`` in position order.
    """
    if config.n_haplotypes < 1:
        raise ValueError(f"n_haplotypes must be >= 1, got {config.n_haplotypes}")
    rng = np.random.default_rng(config.random_seed)

    template = _generate_template(config.n_sites, rng)
    haplotypes = [template] + [
        _mutate(template, config.divergence, rng)
        for _ in range(config.n_haplotypes - 1)
    ]
    pi_hap = _draw_frequencies(config, rng)

    # (n_sites, H) base index per haplotype.
    hap_bases = np.array(
        [[_BASE_TO_IDX[b] for b in hap] for hap in haplotypes]
    ).T

    records_by_timepoint: list[list[CountRecord]] = []
    for t in range(config.n_timepoints):
        records = []
        for i in range(config.n_sites):
            if config.missing_fraction > 0 and rng.random() < config.missing_fraction:
                continue
            counts = _sample_site_counts(hap_bases[i], pi_hap[t], config, rng)
            records.append(CountRecord(config.start_position + i, counts))
        records_by_timepoint.append(records)

    variable = [
        config.start_position + i
        for i in range(config.n_sites)
        if len(set(hap_bases[i])) > 1
    ]
    truth = SimulationGroundTruth(
        haplotypes=haplotypes,
        pi_hap=pi_hap,
        variable_positions=variable,
        error_rate=config.error_rate,
        start_position=config.start_position,
    )
    return records_by_timepoint, truth


def write_count_files(
    records_by_timepoint: list[list[CountRecord]],
    output_dir: Path,
    prefix: str = "timepoint",
) -> Path:
    """Write one count file per timepoint plus a file list.

    Returns:
        Path to the file list, ready for ``Corpus.from_file_list``.
    """
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    paths = []
    for t, records in enumerate(records_by_timepoint):
        path = out / f"{prefix}_{t:02d}.csv"
        write_count_file(records, path)
        paths.append(path)
    list_path = out / "files.txt"
    write_file_list(paths, list_path)
    return list_path
